"""Plan lookup and billing-period windows."""

from dataclasses import dataclass
from datetime import datetime

from cravledger.common.config import settings
from cravledger.services.ledger.models import as_utc


PLAN_ALIASES = {"professional": "pro"}
ENTITLED_STATUSES = frozenset({"trialing", "active", "past_due"})


@dataclass(frozen=True)
class Plan:
    plan_id: str
    periodic_credit_grant: int
    credit_limit: int
    api_call_limit: int


def normalize_plan_id(plan_id: str | None) -> str:
    plan_id = (plan_id or settings.default_plan_id).strip().lower()
    return PLAN_ALIASES.get(plan_id, plan_id)


def get_plan(plan_id: str | None) -> Plan:
    """Return plan config; unknown ids fall back to the default plan."""

    key = normalize_plan_id(plan_id)
    config = settings.plans.get(key)
    if config is None:
        key = settings.default_plan_id
        config = settings.plans[key]
    return Plan(key, config.periodic_credit_grant, config.credit_limit, config.api_call_limit)


def calendar_month(now: datetime) -> tuple[datetime, datetime]:
    now = as_utc(now)
    start = now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
    if start.month == 12:
        end = start.replace(year=start.year + 1, month=1)
    else:
        end = start.replace(month=start.month + 1)
    return start, end


def plan_and_window(subscription, now: datetime) -> tuple[Plan, datetime, datetime]:
    """Resolve the plan in force and the usage window containing `now`.

    Entitled subscriptions use their current provider period; everything else
    (no subscription, canceled, or a period that has already lapsed) uses the
    UTC calendar month and, for plan, the default plan.
    """

    now = as_utc(now)
    if subscription is None or subscription.status not in ENTITLED_STATUSES:
        return (get_plan(None), *calendar_month(now))
    plan = get_plan(subscription.plan_id)
    start, end = subscription.current_period_start, subscription.current_period_end
    if start is not None and end is not None and as_utc(start) <= now < as_utc(end):
        return plan, as_utc(start), as_utc(end)
    return (plan, *calendar_month(now))
