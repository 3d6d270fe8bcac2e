"""JSON logs carrying trace, provider event and account identifiers.

Handlers set the identifiers once (`log_context`) and every record emitted
underneath, including those from library loggers, picks them up.
"""

import logging
import sys
from contextlib import contextmanager
from contextvars import ContextVar

from pythonjsonlogger.json import JsonFormatter

from cravledger.common.config import settings


trace_id_ctx: ContextVar[str] = ContextVar("trace_id", default="")
event_id_ctx: ContextVar[str] = ContextVar("event_id", default="")
account_id_ctx: ContextVar[str] = ContextVar("account_id", default="")

_CONTEXT_VARS = {"trace_id": trace_id_ctx, "event_id": event_id_ctx, "account_id": account_id_ctx}
# Chatty third-party loggers kept at WARNING regardless of LOG_LEVEL.
QUIET_LOGGERS = ("aiokafka", "kafka", "stripe", "httpx")


class ContextFilter(logging.Filter):
    """Stamp service name and the current context identifiers on each record."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.service_name = settings.service_name
        for field, var in _CONTEXT_VARS.items():
            setattr(record, field, var.get())
        return True


@contextmanager
def log_context(**fields: str | None):
    """Bind `trace_id`, `event_id` and/or `account_id` for the enclosed block."""

    tokens = [(_CONTEXT_VARS[name], _CONTEXT_VARS[name].set(value)) for name, value in fields.items() if value]
    try:
        yield
    finally:
        for var, token in reversed(tokens):
            var.reset(token)


def configure_logging() -> None:
    """Install the JSON stdout handler on the root logger; safe to call again."""

    handler = logging.StreamHandler(sys.stdout)
    context_filter = ContextFilter()
    handler.addFilter(context_filter)
    handler.setFormatter(
        JsonFormatter(
            "%(asctime)s %(levelname)s %(name)s %(service_name)s %(trace_id)s %(event_id)s %(account_id)s %(message)s",
            rename_fields={"levelname": "level", "name": "logger"},
        )
    )

    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(settings.log_level)
    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


logger = logging.getLogger("cravledger")
