"""Ledger store: append-only writes, sign rules and idempotent replay."""

import threading
from datetime import datetime, timedelta, timezone

import pytest

from cravledger.services.ledger.audit import list_audit_logs
from cravledger.services.ledger.models import LedgerEntry, OutboxEvent
from cravledger.services.ledger.store import BALANCE_CHANGED_TOPIC, validate_entry


def test_append_updates_projection(ledger):
    first = ledger.store.append("acct-1", 500, "purchase", source_event_id="evt_1")
    second = ledger.store.append("acct-1", -120, "spend")

    assert not first.duplicate and not second.duplicate
    assert second.balance == 380
    snapshot = ledger.projector.get_balance("acct-1", verify=True)
    assert snapshot.totals() == (380, 500, 120)
    assert snapshot.last_seq == 2
    assert snapshot.as_of_entry_id == second.entry_id


def test_replayed_source_event_is_a_noop(ledger, session_factory):
    """The same external event id yields exactly one entry."""

    original = ledger.store.append("acct-1", 500, "purchase", source_event_id="evt_1")
    replay = ledger.store.append("acct-1", 500, "purchase", source_event_id="evt_1")

    assert replay.duplicate
    assert replay.entry_id == original.entry_id
    assert replay.balance == 500
    with session_factory() as db:
        assert db.query(LedgerEntry).filter_by(source_event_id="evt_1").count() == 1


def test_concurrent_replays_write_once(ledger, session_factory):
    results = []

    def deliver():
        results.append(ledger.store.append("acct-1", 250, "purchase", source_event_id="evt_dup"))

    threads = [threading.Thread(target=deliver) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert sum(1 for r in results if not r.duplicate) == 1
    assert ledger.projector.get_balance("acct-1", verify=True).balance == 250


@pytest.mark.parametrize(
    "amount,kind",
    [(0, "purchase"), (10, "spend"), (10, "usage"), (-10, "purchase"), (-5, "bonus"), (5, "chargeback"), (1, "gift")],
)
def test_validate_entry_rejects_bad_sign_or_kind(amount, kind):
    with pytest.raises(ValueError):
        validate_entry(amount, kind)


def test_refund_and_adjustment_accept_either_sign():
    validate_entry(-200, "refund")
    validate_entry(200, "refund")
    validate_entry(-1, "adjustment")
    validate_entry(1, "adjustment")


def test_append_stages_audit_and_outbox(ledger, session_factory):
    result = ledger.store.append("acct-1", 100, "bonus", description="welcome")

    with session_factory() as db:
        logs, total = list_audit_logs(db, account_id="acct-1")
        outbox = db.query(OutboxEvent).all()
    assert total == 1
    assert logs[0].action == "credits.bonus"
    assert logs[0].target_id == result.entry_id
    assert len(outbox) == 1
    assert outbox[0].topic == BALANCE_CHANGED_TOPIC
    assert outbox[0].payload["payload"]["balance"] == 100


def test_list_for_account_is_oldest_first(ledger):
    base = datetime(2026, 3, 1, tzinfo=timezone.utc)
    ledger.store.append("acct-1", 10, "purchase", created_at=base + timedelta(hours=2))
    ledger.store.append("acct-1", 20, "purchase", created_at=base)
    ledger.store.append("acct-2", 30, "purchase", created_at=base)

    entries = ledger.store.list_for_account("acct-1")
    assert [e.amount for e in entries] == [20, 10]
    assert [e.amount for e in ledger.store.list_for_account("acct-1", since=base + timedelta(hours=1))] == [10]


def test_list_for_account_normalizes_since_offset(ledger):
    base = datetime(2026, 3, 1, tzinfo=timezone.utc)
    ledger.store.append("acct-1", 20, "purchase", created_at=base)
    ledger.store.append("acct-1", 10, "purchase", created_at=base + timedelta(hours=2))

    # 02:00+02:00 is midnight UTC, so both entries are on or after it.
    since = datetime(2026, 3, 1, 2, 0, tzinfo=timezone(timedelta(hours=2)))
    assert [e.amount for e in ledger.store.list_for_account("acct-1", since=since)] == [20, 10]
    # 01:00-01:00 is 02:00 UTC.
    since = datetime(2026, 3, 1, 1, 0, tzinfo=timezone(timedelta(hours=-1)))
    assert [e.amount for e in ledger.store.list_for_account("acct-1", since=since)] == [10]


def test_adjustment_is_idempotent_per_key(ledger):
    first = ledger.adjust("acct-1", 75, "support credit", "ops@example.com", idempotency_key="ticket-991")
    again = ledger.adjust("acct-1", 75, "support credit", "ops@example.com", idempotency_key="ticket-991")

    assert again.duplicate and again.entry_id == first.entry_id
    assert ledger.projector.get_balance("acct-1").balance == 75
