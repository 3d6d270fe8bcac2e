"""Shared plumbing: log context binding, config redaction, locks and plans."""

import logging
from datetime import datetime, timezone
from types import SimpleNamespace

from cravledger.common.config import settings
from cravledger.common.locks import AccountLocks
from cravledger.common.logging import ContextFilter, account_id_ctx, event_id_ctx, log_context
from cravledger.common.startup import log_startup_config, redacted
from cravledger.services.ledger.plans import get_plan, plan_and_window


def test_log_context_binds_and_restores():
    record = logging.LogRecord("cravledger", logging.INFO, __file__, 1, "msg", None, None)

    with log_context(account_id="acct-1", event_id="evt_1"):
        ContextFilter().filter(record)
        with log_context(account_id="acct-2"):
            assert account_id_ctx.get() == "acct-2"
        assert account_id_ctx.get() == "acct-1"

    assert record.account_id == "acct-1"
    assert record.event_id == "evt_1"
    assert account_id_ctx.get() == ""
    assert event_id_ctx.get() == ""


def test_startup_config_redacts_secrets():
    assert redacted("stripe_api_key", "sk_live_123") == "<redacted>"
    assert redacted("postgres_dsn", "postgresql://u:p@h/db") == "<redacted>"
    assert redacted("stripe_webhook_secret", "") == "<unset>"
    assert redacted("redis_url", "redis://redis:6379/0") == "redis://redis:6379/0"

    config = log_startup_config(settings, ["api_key", "rate_limit_per_minute"])
    assert config["api_key"] == "<redacted>"
    assert config["rate_limit_per_minute"] == settings.rate_limit_per_minute
    assert "starter" in config["plans"]


def test_account_locks_are_stable_per_account():
    locks = AccountLocks(stripes=8)
    assert locks._lock_for("acct-1") is locks._lock_for("acct-1")
    with locks.hold("acct-1"):
        assert locks._lock_for("acct-1").locked()
    assert not locks._lock_for("acct-1").locked()


def test_plan_lookup_aliases_and_fallback():
    assert get_plan("Professional").plan_id == "pro"
    assert get_plan("platinum").plan_id == "free"
    assert get_plan(None).api_call_limit == 1000


def test_lapsed_subscription_period_falls_back_to_calendar_month():
    now = datetime(2026, 12, 20, tzinfo=timezone.utc)
    lapsed = SimpleNamespace(
        status="active",
        plan_id="starter",
        current_period_start=datetime(2026, 10, 1, tzinfo=timezone.utc),
        current_period_end=datetime(2026, 11, 1, tzinfo=timezone.utc),
    )

    plan, start, end = plan_and_window(lapsed, now)

    assert plan.plan_id == "starter"
    assert (start, end) == (datetime(2026, 12, 1, tzinfo=timezone.utc), datetime(2027, 1, 1, tzinfo=timezone.utc))
    canceled = SimpleNamespace(**{**vars(lapsed), "status": "canceled"})
    assert plan_and_window(canceled, now)[0].plan_id == "free"
