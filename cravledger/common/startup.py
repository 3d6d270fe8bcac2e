"""Startup summary of the effective configuration, secrets redacted."""

from cravledger.common.config import CommonSettings
from cravledger.common.logging import logger


SECRET_MARKERS = ("key", "secret", "password", "token", "dsn")


def redacted(name: str, value) -> object:
    """Mask values of secret-looking fields; empty values stay visible as unset."""

    if value in (None, ""):
        return "<unset>"
    if any(marker in name.lower() for marker in SECRET_MARKERS):
        return "<redacted>"
    return value


def log_startup_config(settings: CommonSettings, fields: list[str]) -> dict:
    """Log the chosen settings fields plus the loaded plan and package ids."""

    config = {"service": settings.service_name}
    config.update({name: redacted(name, getattr(settings, name)) for name in fields})
    config["plans"] = sorted(settings.plans)
    config["credit_packages"] = sorted(settings.credit_packages)
    logger.info("startup_config=%s", config)
    return config
