"""Read-only usage and platform views over the ledger."""

from dataclasses import dataclass
from datetime import date, datetime, timedelta

from sqlalchemy import func, select

from cravledger.services.ledger.models import CONSUMPTION_KINDS, AccountBalance, LedgerEntry, as_utc, utcnow
from cravledger.services.ledger.plans import calendar_month


PERIOD_DAYS = {"7d": 7, "30d": 30, "90d": 90}
EARNING_KINDS = ("purchase", "bonus", "refund")


@dataclass(frozen=True)
class UsageSummary:
    period_start: datetime
    period_end: datetime
    total: int
    by_kind: dict[str, int]
    by_day: list[tuple[date, int]]

    def as_dict(self) -> dict:
        return {
            "period_start": self.period_start.isoformat(),
            "period_end": self.period_end.isoformat(),
            "total": self.total,
            "by_kind": dict(self.by_kind),
            "by_day": [{"date": day.isoformat(), "amount": amount} for day, amount in self.by_day],
        }


def summarize(entries, period_start: datetime, period_end: datetime) -> UsageSummary:
    """Aggregate consumption magnitudes of `entries` by kind and UTC day."""

    total = 0
    by_kind: dict[str, int] = {}
    by_day: dict[date, int] = {}
    for entry in entries:
        if entry.kind not in CONSUMPTION_KINDS or entry.amount >= 0:
            continue
        used = -entry.amount
        total += used
        by_kind[entry.kind] = by_kind.get(entry.kind, 0) + used
        day = as_utc(entry.created_at).date()
        by_day[day] = by_day.get(day, 0) + used
    return UsageSummary(period_start, period_end, total, by_kind, sorted(by_day.items()))


class UsageReporter:
    """Query facade for dashboards; never writes."""

    def __init__(self, session_factory) -> None:
        self.session_factory = session_factory

    def usage_summary(self, account_id: str, period_start: datetime, period_end: datetime) -> UsageSummary:
        """Consumption in `[period_start, period_end)`."""

        period_start, period_end = as_utc(period_start), as_utc(period_end)
        if period_end < period_start:
            raise ValueError("period_end must not be before period_start")
        with self.session_factory() as db:
            entries = db.execute(
                select(LedgerEntry)
                .where(
                    LedgerEntry.account_id == account_id,
                    LedgerEntry.kind.in_(CONSUMPTION_KINDS),
                    LedgerEntry.created_at >= period_start,
                    LedgerEntry.created_at < period_end,
                )
                .order_by(LedgerEntry.created_at, LedgerEntry.seq)
            ).scalars().all()
        return summarize(entries, period_start, period_end)

    def usage_for_period(self, account_id: str, period: str = "30d", now: datetime | None = None) -> UsageSummary:
        """Trailing window ending now; `period` is one of 7d, 30d, 90d."""

        if period not in PERIOD_DAYS:
            raise ValueError(f"period must be one of {sorted(PERIOD_DAYS)}")
        end = as_utc(now) if now else utcnow()
        return self.usage_summary(account_id, end - timedelta(days=PERIOD_DAYS[period]), end)

    def recent_transactions(self, account_id: str | None = None, limit: int = 50) -> list[LedgerEntry]:
        stmt = select(LedgerEntry)
        if account_id:
            stmt = stmt.where(LedgerEntry.account_id == account_id)
        stmt = stmt.order_by(LedgerEntry.created_at.desc(), LedgerEntry.seq.desc()).limit(limit)
        with self.session_factory() as db:
            return db.execute(stmt).scalars().all()

    def platform_summary(self, now: datetime | None = None) -> dict:
        """Totals across all accounts plus this calendar month's flows."""

        month_start, month_end = calendar_month(now or utcnow())
        with self.session_factory() as db:
            totals = db.execute(
                select(
                    func.coalesce(func.sum(AccountBalance.balance), 0),
                    func.coalesce(func.sum(AccountBalance.lifetime_earned), 0),
                    func.coalesce(func.sum(AccountBalance.lifetime_spent), 0),
                    func.count(AccountBalance.account_id),
                )
            ).one()
            in_month = (LedgerEntry.created_at >= month_start, LedgerEntry.created_at < month_end)
            monthly_earned = db.execute(
                select(func.coalesce(func.sum(LedgerEntry.amount), 0)).where(
                    *in_month, LedgerEntry.kind.in_(EARNING_KINDS), LedgerEntry.amount > 0
                )
            ).scalar_one()
            monthly_spent = db.execute(
                select(func.coalesce(func.sum(-LedgerEntry.amount), 0)).where(
                    *in_month, LedgerEntry.kind.in_(CONSUMPTION_KINDS)
                )
            ).scalar_one()
        return {
            "total_balance": int(totals[0]),
            "total_earned": int(totals[1]),
            "total_spent": int(totals[2]),
            "account_count": int(totals[3]),
            "month_start": month_start.isoformat(),
            "monthly_earned": int(monthly_earned),
            "monthly_spent": int(monthly_spent),
        }
