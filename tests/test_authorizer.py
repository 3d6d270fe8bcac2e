"""Spend authorization: balance checks, races, reservations and plan limits."""

import threading
from datetime import datetime, timedelta, timezone

import pytest

from cravledger.common.config import settings
from cravledger.common.errors import InsufficientCredits, PlanLimitExceeded, ReservationExpired
from cravledger.services.billing.models import Subscription
from cravledger.services.ledger.authorizer import Reservation
from cravledger.services.ledger.models import LedgerEntry


def test_purchase_spend_replay_then_overspend(ledger, session_factory):
    """Purchase 500, spend 120, replay the purchase, then try to spend 500."""

    ledger.store.append("acct-1", 500, "purchase", source_event_id="E1")
    decision = ledger.authorizer.authorize("acct-1", 120)
    assert decision.approved and decision.remaining_balance == 380

    replay = ledger.store.append("acct-1", 500, "purchase", source_event_id="E1")
    assert replay.duplicate and replay.balance == 380

    with pytest.raises(InsufficientCredits) as excinfo:
        ledger.authorizer.authorize("acct-1", 500)
    assert excinfo.value.balance == 380
    assert excinfo.value.requested == 500

    with session_factory() as db:
        assert db.query(LedgerEntry).filter_by(account_id="acct-1").count() == 2
    assert ledger.projector.get_balance("acct-1", verify=True).balance == 380


def test_denied_spend_on_empty_account_writes_nothing(ledger, session_factory):
    with pytest.raises(InsufficientCredits):
        ledger.authorizer.authorize("acct-empty", 1)
    with session_factory() as db:
        assert db.query(LedgerEntry).count() == 0


def test_concurrent_authorize_approves_exactly_one(ledger):
    """Two or more callers racing for the last credits: one wins, balance never negative."""

    ledger.store.append("acct-1", 100, "purchase")
    approved, denied = [], []
    barrier = threading.Barrier(10)

    def attempt():
        barrier.wait()
        try:
            approved.append(ledger.authorizer.authorize("acct-1", 100))
        except InsufficientCredits:
            denied.append(True)

    threads = [threading.Thread(target=attempt) for _ in range(10)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert len(approved) == 1
    assert len(denied) == 9
    assert ledger.projector.get_balance("acct-1", verify=True).balance == 0


def test_idempotency_key_returns_original_decision(ledger):
    ledger.store.append("acct-1", 300, "purchase")
    first = ledger.authorizer.authorize("acct-1", 100, idempotency_key="req-12345")
    again = ledger.authorizer.authorize("acct-1", 100, idempotency_key="req-12345")

    assert again.duplicate
    assert again.entry_id == first.entry_id
    assert ledger.projector.get_balance("acct-1").balance == 200


def test_usage_kind_counts_as_spent(ledger):
    ledger.store.append("acct-1", 50, "purchase")
    ledger.authorizer.authorize("acct-1", 5, kind="usage")

    assert ledger.projector.get_balance("acct-1").totals() == (45, 50, 5)


@pytest.mark.parametrize("amount,kind", [(0, "spend"), (-5, "spend"), (5, "refund")])
def test_authorize_rejects_invalid_requests(ledger, amount, kind):
    with pytest.raises(ValueError):
        ledger.authorizer.authorize("acct-1", amount, kind=kind)


def test_reservation_holds_credits_until_commit(ledger):
    ledger.store.append("acct-1", 100, "purchase")
    reservation = ledger.authorizer.reserve("acct-1", 80)

    with pytest.raises(InsufficientCredits) as excinfo:
        ledger.authorizer.authorize("acct-1", 30)
    assert excinfo.value.available == 20

    decision = ledger.authorizer.commit(reservation)
    assert decision.remaining_balance == 20
    assert ledger.authorizer.authorize("acct-1", 20).remaining_balance == 0


def test_released_reservation_frees_credits(ledger):
    ledger.store.append("acct-1", 100, "purchase")
    reservation = ledger.authorizer.reserve("acct-1", 100)

    assert ledger.authorizer.release(reservation)
    assert not ledger.authorizer.release(reservation)
    assert ledger.authorizer.authorize("acct-1", 100).remaining_balance == 0


def test_expired_reservation_cannot_be_committed(ledger):
    ledger.store.append("acct-1", 100, "purchase")
    reservation = ledger.authorizer.reserve("acct-1", 60, ttl_seconds=0)

    with pytest.raises(ReservationExpired):
        ledger.authorizer.commit(reservation)
    assert ledger.authorizer.authorize("acct-1", 100).remaining_balance == 0


def test_unknown_reservation_is_expired(ledger):
    stray = Reservation("acct-1", 10, datetime.now(timezone.utc) + timedelta(minutes=1))
    with pytest.raises(ReservationExpired):
        ledger.authorizer.commit(stray)


def _subscribe(session_factory, account_id, plan_id, start, end):
    with session_factory() as db:
        db.add(
            Subscription(
                account_id=account_id,
                plan_id=plan_id,
                status="active",
                current_period_start=start,
                current_period_end=end,
            )
        )
        db.commit()


def test_limit_status_uses_subscription_period(ledger, session_factory):
    now = datetime.now(timezone.utc)
    _subscribe(session_factory, "acct-1", "starter", now - timedelta(days=3), now + timedelta(days=27))
    ledger.store.append("acct-1", 1000, "purchase")
    ledger.authorizer.authorize("acct-1", 200)
    ledger.authorizer.authorize("acct-1", 3, kind="usage")

    status = ledger.authorizer.limit_status("acct-1")
    assert status.plan_id == "starter"
    assert status.credits_used == 203
    assert status.credit_limit == 500
    assert status.api_calls_used == 1
    assert status.credits_used_percent == pytest.approx(40.6)
    assert ledger.authorizer.check_limit("acct-1", "credits")
    assert ledger.authorizer.check_limit("acct-1", "api_calls")


def test_without_subscription_free_plan_and_calendar_month_apply(ledger):
    status = ledger.authorizer.limit_status("acct-1", now=datetime(2026, 2, 14, 12, tzinfo=timezone.utc))

    assert status.plan_id == "free"
    assert status.period_start == datetime(2026, 2, 1, tzinfo=timezone.utc)
    assert status.period_end == datetime(2026, 3, 1, tzinfo=timezone.utc)
    with pytest.raises(ValueError):
        ledger.authorizer.check_limit("acct-1", "storage")


def test_plan_limit_enforced_when_enabled(ledger, monkeypatch):
    monkeypatch.setattr(settings, "enforce_plan_limits", True)
    ledger.store.append("acct-1", 1000, "purchase")
    ledger.authorizer.authorize("acct-1", 100)

    with pytest.raises(PlanLimitExceeded) as excinfo:
        ledger.authorizer.authorize("acct-1", 1)
    assert excinfo.value.kind == "credits"
    assert excinfo.value.limit == 100
    assert ledger.projector.get_balance("acct-1").balance == 900
    assert not ledger.authorizer.check_limit("acct-1", "credits")
