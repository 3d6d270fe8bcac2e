"""Usage summaries and platform totals."""

from datetime import datetime, timedelta, timezone

import pytest


BASE = datetime(2026, 5, 10, 9, tzinfo=timezone.utc)


def _history(ledger):
    ledger.store.append("acct-1", 1000, "purchase", created_at=BASE - timedelta(days=1))
    ledger.store.append("acct-1", -100, "spend", created_at=BASE)
    ledger.store.append("acct-1", -40, "usage", created_at=BASE + timedelta(hours=3))
    ledger.store.append("acct-1", -60, "spend", created_at=BASE + timedelta(days=1))
    ledger.store.append("acct-1", -200, "refund", created_at=BASE + timedelta(days=1))
    ledger.store.append("acct-1", -7, "usage", created_at=BASE + timedelta(days=5))
    ledger.store.append("acct-2", 30, "purchase", created_at=BASE)
    ledger.store.append("acct-2", -30, "spend", created_at=BASE)


def test_usage_summary_sums_consumption_only(ledger):
    _history(ledger)

    summary = ledger.reporter.usage_summary("acct-1", BASE - timedelta(days=2), BASE + timedelta(days=2))

    assert summary.total == 200
    assert summary.by_kind == {"spend": 160, "usage": 40}
    assert summary.by_day == [(BASE.date(), 140), ((BASE + timedelta(days=1)).date(), 60)]
    assert sum(summary.by_kind.values()) == summary.total == sum(v for _, v in summary.by_day)


def test_usage_window_is_half_open(ledger):
    _history(ledger)

    summary = ledger.reporter.usage_summary("acct-1", BASE, BASE + timedelta(days=1))

    assert summary.total == 140


def test_usage_summary_rejects_inverted_window(ledger):
    with pytest.raises(ValueError):
        ledger.reporter.usage_summary("acct-1", BASE, BASE - timedelta(days=1))


def test_usage_for_period(ledger):
    _history(ledger)

    summary = ledger.reporter.usage_for_period("acct-1", "7d", now=BASE + timedelta(days=6))

    assert summary.total == 207
    with pytest.raises(ValueError):
        ledger.reporter.usage_for_period("acct-1", "1y")


def test_recent_transactions_newest_first(ledger):
    _history(ledger)

    recent = ledger.reporter.recent_transactions("acct-1", limit=2)
    assert [e.amount for e in recent] == [-7, -200]
    assert len(ledger.reporter.recent_transactions(limit=100)) == 8


def test_platform_summary(ledger):
    _history(ledger)

    summary = ledger.reporter.platform_summary(now=BASE)

    assert summary["account_count"] == 2
    assert summary["total_balance"] == 593
    assert summary["total_earned"] == 830
    assert summary["total_spent"] == 237
    assert summary["monthly_earned"] == 1030
    assert summary["monthly_spent"] == 237
