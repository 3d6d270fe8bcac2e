"""Append-only credit ledger.

Every write goes through `post`, inside a transaction that already holds the
account's projection row lock (`lock_balance_row`). The new entry takes
`last_seq + 1`; the `(account_id, seq)` unique constraint rejects an append
computed from a stale projection, and the `source_event_id` unique index
rejects a second application of the same external event.
"""

from dataclasses import dataclass
from datetime import datetime
from uuid import uuid4

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from cravledger.common.errors import DuplicateSourceEvent
from cravledger.common.events import EventEnvelope
from cravledger.common.locks import AccountLocks
from cravledger.common.logging import logger
from cravledger.common.metrics import credits_appended_total, duplicate_events_skipped_total
from cravledger.common.outbox import enqueue_event
from cravledger.services.ledger.audit import ENTRY_KIND_ACTIONS, record_audit
from cravledger.services.ledger.models import (
    CONSUMPTION_KINDS,
    ENTRY_KINDS,
    AccountBalance,
    LedgerEntry,
    OutboxEvent,
    as_utc,
    utcnow,
)
from cravledger.services.ledger.projector import apply_entry, lock_balance_row


BALANCE_CHANGED_TOPIC = "credits.balance_changed"


@dataclass(frozen=True)
class AppendResult:
    """Outcome of `LedgerStore.append`; `duplicate` marks an idempotent replay."""

    entry_id: str
    account_id: str
    duplicate: bool
    balance: int


def validate_entry(amount: int, kind: str) -> None:
    """Reject amounts whose sign contradicts their kind."""

    if kind not in ENTRY_KINDS:
        raise ValueError(f"unknown ledger entry kind: {kind}")
    if isinstance(amount, bool) or not isinstance(amount, int) or amount == 0:
        raise ValueError("amount must be a non-zero integer")
    if kind in CONSUMPTION_KINDS and amount > 0:
        raise ValueError(f"{kind} entries must be negative")
    if kind in ("purchase", "bonus") and amount < 0:
        raise ValueError(f"{kind} entries must be positive")
    if kind == "chargeback" and amount > 0:
        raise ValueError("chargeback entries must be negative")


class LedgerStore:
    """Owns `ledger_entries` rows; the only code path that inserts them."""

    def __init__(self, session_factory, locks: AccountLocks, service_name: str = "ledger") -> None:
        self.session_factory = session_factory
        self.locks = locks
        self.service_name = service_name

    def find_by_source_event(self, db, source_event_id: str) -> LedgerEntry | None:
        return db.execute(
            select(LedgerEntry).where(LedgerEntry.source_event_id == source_event_id)
        ).scalar_one_or_none()

    def _duplicate(self, db, source_event_id: str, exc: Exception | None = None) -> None:
        """Roll back and raise `DuplicateSourceEvent` if the event is recorded."""

        db.rollback()
        existing = self.find_by_source_event(db, source_event_id)
        if existing is None:
            return
        duplicate_events_skipped_total.labels(service=self.service_name, topic="ledger").inc()
        raise DuplicateSourceEvent(source_event_id, existing.entry_id, existing.account_id) from exc

    def post(
        self,
        db,
        row: AccountBalance,
        amount: int,
        kind: str,
        source_event_id: str | None = None,
        description: str = "",
        meta: dict | None = None,
        created_at: datetime | None = None,
    ) -> LedgerEntry:
        """Append one entry inside the caller's transaction and advance the projection.

        `row` must have been obtained with `lock_balance_row` in the same
        transaction. On a duplicate `source_event_id` the transaction is rolled
        back and `DuplicateSourceEvent` is raised.
        """

        validate_entry(amount, kind)
        if source_event_id is not None:
            existing = self.find_by_source_event(db, source_event_id)
            if existing is not None:
                self._duplicate(db, source_event_id)

        entry = LedgerEntry(
            entry_id=str(uuid4()),
            account_id=row.account_id,
            seq=row.last_seq + 1,
            amount=amount,
            kind=kind,
            source_event_id=source_event_id,
            description=description,
            meta=meta or {},
            created_at=as_utc(created_at) if created_at else utcnow(),
        )
        db.add(entry)
        apply_entry(row, entry)
        record_audit(
            db,
            ENTRY_KIND_ACTIONS[kind],
            row.account_id,
            target="ledger_entry",
            target_id=entry.entry_id,
            meta={"amount": amount, "source_event_id": source_event_id, "description": description},
        )
        enqueue_event(
            db,
            OutboxEvent,
            BALANCE_CHANGED_TOPIC,
            EventEnvelope(
                event_type=BALANCE_CHANGED_TOPIC,
                aggregate_id=row.account_id,
                payload={
                    "entry_id": entry.entry_id,
                    "seq": entry.seq,
                    "amount": amount,
                    "kind": kind,
                    "balance": row.balance,
                },
            ),
        )
        try:
            db.flush()
        except IntegrityError as exc:
            if source_event_id is not None:
                self._duplicate(db, source_event_id, exc)
            else:
                db.rollback()
            raise
        credits_appended_total.labels(service=self.service_name, kind=kind).inc()
        return entry

    def append(
        self,
        account_id: str,
        amount: int,
        kind: str,
        source_event_id: str | None = None,
        description: str = "",
        meta: dict | None = None,
        created_at: datetime | None = None,
    ) -> AppendResult:
        """Append one entry in its own transaction.

        Replaying a recorded `source_event_id` is a no-op that returns the
        original entry id with `duplicate=True`.
        """

        with self.locks.hold(account_id), self.session_factory() as db:
            row = lock_balance_row(db, account_id)
            try:
                entry = self.post(
                    db,
                    row,
                    amount,
                    kind,
                    source_event_id=source_event_id,
                    description=description,
                    meta=meta,
                    created_at=created_at,
                )
            except DuplicateSourceEvent as dup:
                logger.info(
                    "duplicate source event skipped source_event_id=%s entry_id=%s",
                    dup.source_event_id,
                    dup.entry_id,
                )
                current = db.get(AccountBalance, dup.account_id)
                return AppendResult(dup.entry_id, dup.account_id, True, current.balance if current else 0)
            db.commit()
            logger.info(
                "ledger_append account_id=%s kind=%s amount=%s balance=%s entry_id=%s",
                account_id,
                kind,
                amount,
                row.balance,
                entry.entry_id,
            )
            return AppendResult(entry.entry_id, account_id, False, row.balance)

    def list_for_account(
        self, account_id: str, since: datetime | None = None, limit: int | None = None
    ) -> list[LedgerEntry]:
        """Entries for one account, oldest first (ties broken by seq, then id)."""

        stmt = select(LedgerEntry).where(LedgerEntry.account_id == account_id)
        if since is not None:
            stmt = stmt.where(LedgerEntry.created_at >= as_utc(since))
        stmt = stmt.order_by(LedgerEntry.created_at, LedgerEntry.seq, LedgerEntry.entry_id)
        if limit is not None:
            stmt = stmt.limit(limit)
        with self.session_factory() as db:
            return db.execute(stmt).scalars().all()
