"""Entitlement decisions: may this account spend these credits right now?

A spend is approved and written in one critical section: the account lock is
taken, the projection row is locked `FOR UPDATE`, available credits are
checked, and the negative entry is appended before commit. Two callers racing
for the last N credits therefore serialize and exactly one is approved.

Reservations let a caller hold credits while it does work, then `commit` the
spend. They live only in this process's memory with a lease; a lapsed lease is
dropped without leaving anything in the database.
"""

import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from uuid import uuid4

from sqlalchemy import func, select

from cravledger.common.config import settings
from cravledger.common.errors import (
    DuplicateSourceEvent,
    InsufficientCredits,
    PlanLimitExceeded,
    ReservationExpired,
)
from cravledger.common.locks import AccountLocks
from cravledger.common.logging import logger
from cravledger.common.metrics import reservations_expired_total, spend_decisions_total, spend_latency_seconds
from cravledger.common.tracing import tracer
from cravledger.services.billing.models import Subscription
from cravledger.services.ledger.models import CONSUMPTION_KINDS, AccountBalance, LedgerEntry, utcnow
from cravledger.services.ledger.plans import plan_and_window
from cravledger.services.ledger.projector import lock_balance_row
from cravledger.services.ledger.store import LedgerStore


LIMIT_KINDS = ("credits", "api_calls")


@dataclass(frozen=True)
class Decision:
    """Approved spend; denials raise instead."""

    approved: bool
    remaining_balance: int
    entry_id: str | None = None
    duplicate: bool = False


@dataclass(frozen=True)
class Reservation:
    account_id: str
    amount: int
    expires_at: datetime
    reservation_id: str = field(default_factory=lambda: str(uuid4()))


@dataclass(frozen=True)
class LimitStatus:
    plan_id: str
    period_start: datetime
    period_end: datetime
    credits_used: int
    credit_limit: int
    api_calls_used: int
    api_call_limit: int

    @property
    def credits_used_percent(self) -> float:
        if self.credit_limit <= 0:
            return 0.0
        return self.credits_used / self.credit_limit * 100


class ReservationBook:
    """Process-local holds on credits, pruned lazily by expiry."""

    def __init__(self, service_name: str = "ledger") -> None:
        self._guard = threading.Lock()
        self._held: dict[str, dict[str, Reservation]] = {}
        self.service_name = service_name

    def _prune(self, account_id: str, now: datetime) -> dict[str, Reservation]:
        bucket = self._held.get(account_id, {})
        expired = [rid for rid, res in bucket.items() if res.expires_at <= now]
        for rid in expired:
            del bucket[rid]
            reservations_expired_total.labels(service=self.service_name).inc()
            logger.info("reservation_expired account_id=%s reservation_id=%s", account_id, rid)
        if not bucket:
            self._held.pop(account_id, None)
        return bucket

    def held(self, account_id: str, now: datetime) -> int:
        with self._guard:
            return sum(res.amount for res in self._prune(account_id, now).values())

    def add(self, reservation: Reservation) -> None:
        with self._guard:
            self._held.setdefault(reservation.account_id, {})[reservation.reservation_id] = reservation

    def take(self, reservation: Reservation, now: datetime) -> bool:
        """Remove the reservation; False when it already expired or was released."""

        with self._guard:
            bucket = self._prune(reservation.account_id, now)
            if bucket.pop(reservation.reservation_id, None) is None:
                return False
            if not bucket:
                self._held.pop(reservation.account_id, None)
            return True


def spend_source_id(account_id: str, idempotency_key: str) -> str:
    """Namespace client idempotency keys apart from provider event ids."""

    return f"spend:{account_id}:{idempotency_key}"


class EntitlementAuthorizer:
    """Authorizes spends against balance, reservations and plan limits."""

    def __init__(
        self,
        session_factory,
        store: LedgerStore,
        locks: AccountLocks,
        reservations: ReservationBook | None = None,
        service_name: str = "ledger",
    ) -> None:
        self.session_factory = session_factory
        self.store = store
        self.locks = locks
        self.reservations = reservations or ReservationBook(service_name)
        self.service_name = service_name

    def _count(self, outcome: str) -> None:
        spend_decisions_total.labels(service=self.service_name, outcome=outcome).inc()

    def _limit_status(self, db, account_id: str, now: datetime) -> LimitStatus:
        plan, start, end = plan_and_window(db.get(Subscription, account_id), now)
        in_period = (
            LedgerEntry.account_id == account_id,
            LedgerEntry.kind.in_(CONSUMPTION_KINDS),
            LedgerEntry.created_at >= start,
            LedgerEntry.created_at < end,
        )
        credits_used = db.execute(select(func.coalesce(func.sum(-LedgerEntry.amount), 0)).where(*in_period)).scalar_one()
        api_calls_used = db.execute(
            select(func.count()).select_from(LedgerEntry).where(*in_period, LedgerEntry.kind == "usage")
        ).scalar_one()
        return LimitStatus(
            plan_id=plan.plan_id,
            period_start=start,
            period_end=end,
            credits_used=int(credits_used),
            credit_limit=plan.credit_limit,
            api_calls_used=int(api_calls_used),
            api_call_limit=plan.api_call_limit,
        )

    def _enforce_plan_limits(self, db, account_id: str, amount: int, kind: str) -> None:
        status = self._limit_status(db, account_id, utcnow())
        if status.credits_used + amount > status.credit_limit:
            raise PlanLimitExceeded(account_id, "credits", status.credits_used, status.credit_limit)
        if kind == "usage" and status.api_calls_used + 1 > status.api_call_limit:
            raise PlanLimitExceeded(account_id, "api_calls", status.api_calls_used, status.api_call_limit)

    def _spend_locked(
        self,
        db,
        row: AccountBalance,
        amount: int,
        kind: str,
        reserved: int,
        description: str,
        idempotency_key: str | None,
        meta: dict | None,
    ) -> Decision:
        """Check and append inside the caller's locked transaction, then commit."""

        account_id = row.account_id
        source_event_id = spend_source_id(account_id, idempotency_key) if idempotency_key else None
        if source_event_id is not None:
            existing = self.store.find_by_source_event(db, source_event_id)
            if existing is not None:
                self._count("duplicate")
                return Decision(True, row.balance, existing.entry_id, duplicate=True)

        available = row.balance - reserved
        if amount > available:
            balance = row.balance
            db.rollback()
            self._count("insufficient_credits")
            logger.info(
                "spend_denied account_id=%s requested=%s balance=%s reserved=%s",
                account_id,
                amount,
                balance,
                reserved,
            )
            raise InsufficientCredits(account_id, amount, balance, available)

        if settings.enforce_plan_limits:
            try:
                self._enforce_plan_limits(db, account_id, amount, kind)
            except PlanLimitExceeded:
                db.rollback()
                self._count("plan_limit")
                raise

        try:
            entry = self.store.post(
                db, row, -amount, kind, source_event_id=source_event_id, description=description, meta=meta
            )
        except DuplicateSourceEvent as dup:
            current = db.get(AccountBalance, account_id)
            self._count("duplicate")
            return Decision(True, current.balance if current else 0, dup.entry_id, duplicate=True)
        db.commit()
        spend_decisions_total.labels(service=self.service_name, outcome="approved").inc()
        logger.info(
            "spend_approved account_id=%s amount=%s kind=%s balance=%s entry_id=%s",
            account_id,
            amount,
            kind,
            row.balance,
            entry.entry_id,
        )
        return Decision(True, row.balance, entry.entry_id)

    @staticmethod
    def _validate(amount: int, kind: str) -> None:
        if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
            raise ValueError("amount must be a positive integer")
        if kind not in CONSUMPTION_KINDS:
            raise ValueError(f"kind must be one of {sorted(CONSUMPTION_KINDS)}")

    def authorize(
        self,
        account_id: str,
        amount: int,
        kind: str = "spend",
        description: str = "",
        idempotency_key: str | None = None,
        meta: dict | None = None,
    ) -> Decision:
        """Atomically check balance and append the spend.

        Raises `InsufficientCredits` (no ledger write) when `amount` exceeds the
        balance minus active reservations.
        """

        self._validate(amount, kind)
        with spend_latency_seconds.labels(service=self.service_name).time(), tracer.start_as_current_span(
            "ledger.authorize", attributes={"ledger.account_id": account_id, "ledger.amount": amount, "ledger.kind": kind}
        ):
            with self.locks.hold(account_id), self.session_factory() as db:
                row = lock_balance_row(db, account_id)
                reserved = self.reservations.held(account_id, utcnow())
                return self._spend_locked(db, row, amount, kind, reserved, description, idempotency_key, meta)

    def reserve(self, account_id: str, amount: int, ttl_seconds: int | None = None) -> Reservation:
        """Hold `amount` credits for a bounded lease without writing the ledger."""

        self._validate(amount, "spend")
        ttl = settings.reservation_ttl_seconds if ttl_seconds is None else ttl_seconds
        with self.locks.hold(account_id), self.session_factory() as db:
            now = utcnow()
            row = db.get(AccountBalance, account_id)
            balance = row.balance if row else 0
            available = balance - self.reservations.held(account_id, now)
            if amount > available:
                self._count("insufficient_credits")
                raise InsufficientCredits(account_id, amount, balance, available)
            reservation = Reservation(account_id, amount, now + timedelta(seconds=ttl))
            self.reservations.add(reservation)
        logger.info(
            "reservation_created account_id=%s amount=%s reservation_id=%s",
            account_id,
            amount,
            reservation.reservation_id,
        )
        return reservation

    def commit(
        self,
        reservation: Reservation,
        kind: str = "spend",
        description: str = "",
        idempotency_key: str | None = None,
        meta: dict | None = None,
    ) -> Decision:
        """Convert a live reservation into a ledger spend."""

        self._validate(reservation.amount, kind)
        account_id = reservation.account_id
        with self.locks.hold(account_id), self.session_factory() as db:
            now = utcnow()
            if not self.reservations.take(reservation, now):
                self._count("reservation_expired")
                raise ReservationExpired(reservation.reservation_id)
            row = lock_balance_row(db, account_id)
            reserved = self.reservations.held(account_id, now)
            return self._spend_locked(
                db, row, reservation.amount, kind, reserved, description, idempotency_key, meta
            )

    def release(self, reservation: Reservation) -> bool:
        with self.locks.hold(reservation.account_id):
            return self.reservations.take(reservation, utcnow())

    def limit_status(self, account_id: str, now: datetime | None = None) -> LimitStatus:
        with self.session_factory() as db:
            return self._limit_status(db, account_id, now or utcnow())

    def check_limit(self, account_id: str, kind: str) -> bool:
        """True while period usage of `kind` is still below the plan limit."""

        if kind not in LIMIT_KINDS:
            raise ValueError(f"kind must be one of {LIMIT_KINDS}")
        status = self.limit_status(account_id)
        if kind == "credits":
            return status.credits_used < status.credit_limit
        return status.api_calls_used < status.api_call_limit
