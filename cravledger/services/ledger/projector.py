"""Balance projection over the ledger.

The `account_balances` row is kept current by applying each entry as it is
appended (`apply_entry`). `fold` computes the same figures from scratch; both
paths share `_step`, so for any entry set they must agree. Disagreement is a
bug and is surfaced as `ProjectionDriftDetected`, never patched over.
"""

from dataclasses import asdict, dataclass

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError

from cravledger.common.errors import ProjectionDriftDetected
from cravledger.common.locks import AccountLocks
from cravledger.common.logging import logger
from cravledger.common.metrics import projection_drift_total
from cravledger.services.ledger.models import CONSUMPTION_KINDS, AccountBalance, LedgerEntry, utcnow


@dataclass(frozen=True)
class BalanceSnapshot:
    """Read-only view of an account's projected totals."""

    account_id: str
    balance: int = 0
    lifetime_earned: int = 0
    lifetime_spent: int = 0
    last_seq: int = 0
    as_of_entry_id: str | None = None

    def totals(self) -> tuple[int, int, int]:
        return self.balance, self.lifetime_earned, self.lifetime_spent

    def as_dict(self) -> dict:
        return asdict(self)


def _step(balance: int, earned: int, spent: int, amount: int, kind: str) -> tuple[int, int, int]:
    balance += amount
    if amount > 0:
        earned += amount
    elif kind in CONSUMPTION_KINDS:
        spent += -amount
    else:
        # refund/chargeback/negative adjustment reverse earnings
        earned += amount
    return balance, earned, spent


def fold(account_id: str, entries) -> BalanceSnapshot:
    """Compute totals for `entries` (one account, any iterable) from zero."""

    balance = earned = spent = 0
    last_seq = 0
    as_of = None
    for entry in sorted(entries, key=lambda e: e.seq):
        balance, earned, spent = _step(balance, earned, spent, entry.amount, entry.kind)
        last_seq = entry.seq
        as_of = entry.entry_id
    return BalanceSnapshot(account_id, balance, earned, spent, last_seq, as_of)


def apply_entry(row: AccountBalance, entry: LedgerEntry) -> None:
    """Advance the projection row by one freshly appended entry."""

    row.balance, row.lifetime_earned, row.lifetime_spent = _step(
        row.balance, row.lifetime_earned, row.lifetime_spent, entry.amount, entry.kind
    )
    row.last_seq = entry.seq
    row.as_of_entry_id = entry.entry_id
    row.updated_at = utcnow()


def snapshot_of(row: AccountBalance | None, account_id: str) -> BalanceSnapshot:
    if row is None:
        return BalanceSnapshot(account_id)
    return BalanceSnapshot(
        account_id=row.account_id,
        balance=row.balance,
        lifetime_earned=row.lifetime_earned,
        lifetime_spent=row.lifetime_spent,
        last_seq=row.last_seq,
        as_of_entry_id=row.as_of_entry_id,
    )


def lock_balance_row(db, account_id: str) -> AccountBalance:
    """`SELECT ... FOR UPDATE` the projection row, creating it on first use.

    Must be called before anything else in the transaction: losing the create
    race rolls the transaction back and retries the select.
    """

    stmt = select(AccountBalance).where(AccountBalance.account_id == account_id).with_for_update()
    row = db.execute(stmt).scalar_one_or_none()
    if row is not None:
        return row
    row = AccountBalance(account_id=account_id, balance=0, lifetime_earned=0, lifetime_spent=0, last_seq=0)
    db.add(row)
    try:
        db.flush()
    except IntegrityError:
        db.rollback()
        row = db.execute(stmt).scalar_one()
    return row


class BalanceProjector:
    """Serves balances from the projection and verifies/rebuilds it from the ledger."""

    def __init__(self, session_factory, locks: AccountLocks, service_name: str = "ledger") -> None:
        self.session_factory = session_factory
        self.locks = locks
        self.service_name = service_name

    def _fold_from_db(self, db, account_id: str) -> BalanceSnapshot:
        entries = db.execute(
            select(LedgerEntry).where(LedgerEntry.account_id == account_id).order_by(LedgerEntry.seq)
        ).scalars()
        return fold(account_id, entries)

    def get_balance(self, account_id: str, verify: bool = False) -> BalanceSnapshot:
        """Return the projected balance; with `verify`, cross-check a full fold."""

        with self.session_factory() as db:
            projected = snapshot_of(db.get(AccountBalance, account_id), account_id)
            if not verify:
                return projected
            folded = self._fold_from_db(db, account_id)
        if projected != folded:
            projection_drift_total.labels(service=self.service_name).inc()
            logger.error(
                "projection_drift account_id=%s projected=%s folded=%s",
                account_id,
                projected.as_dict(),
                folded.as_dict(),
            )
            raise ProjectionDriftDetected(account_id, projected, folded)
        return projected

    def rebuild(self, account_id: str) -> BalanceSnapshot:
        """Recompute the projection row from the full ledger; safe to repeat."""

        with self.locks.hold(account_id), self.session_factory() as db:
            row = lock_balance_row(db, account_id)
            before = snapshot_of(row, account_id)
            folded = self._fold_from_db(db, account_id)
            row.balance, row.lifetime_earned, row.lifetime_spent = folded.totals()
            row.last_seq = folded.last_seq
            row.as_of_entry_id = folded.as_of_entry_id
            row.updated_at = utcnow()
            db.commit()
        if before != folded:
            logger.warning(
                "projection_rebuilt_with_changes account_id=%s before=%s after=%s",
                account_id,
                before.as_dict(),
                folded.as_dict(),
            )
        return folded

    def find_drift(self, limit: int = 1000) -> list[dict]:
        """Compare every projected account against aggregated ledger sums."""

        with self.session_factory() as db:
            sums = {
                row.account_id: (int(row.total or 0), int(row.max_seq or 0))
                for row in db.execute(
                    select(
                        LedgerEntry.account_id,
                        func.sum(LedgerEntry.amount).label("total"),
                        func.max(LedgerEntry.seq).label("max_seq"),
                    ).group_by(LedgerEntry.account_id)
                ).all()
            }
            rows = db.execute(select(AccountBalance).order_by(AccountBalance.account_id).limit(limit)).scalars().all()
        drifted = []
        for row in rows:
            total, max_seq = sums.pop(row.account_id, (0, 0))
            if row.balance != total or row.last_seq != max_seq or row.balance != row.lifetime_earned - row.lifetime_spent:
                drifted.append(
                    {
                        "account_id": row.account_id,
                        "projected_balance": row.balance,
                        "ledger_balance": total,
                        "projected_seq": row.last_seq,
                        "ledger_seq": max_seq,
                    }
                )
        # Ledger rows without any projection row; only meaningful when the
        # projection scan above was not truncated.
        leftovers = sorted(sums.items()) if len(rows) < limit else []
        for account_id, (total, max_seq) in leftovers:
            drifted.append(
                {
                    "account_id": account_id,
                    "projected_balance": None,
                    "ledger_balance": total,
                    "projected_seq": None,
                    "ledger_seq": max_seq,
                }
            )
        if drifted:
            projection_drift_total.labels(service=self.service_name).inc(len(drifted))
        return drifted
