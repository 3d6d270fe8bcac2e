"""Audit trail for credit and billing changes."""

from sqlalchemy import func, select

from cravledger.services.ledger.models import AuditLog


AUDIT_ACTIONS = frozenset(
    {
        "credits.spend",
        "credits.usage",
        "credits.topup",
        "credits.bonus",
        "credits.refund",
        "credits.chargeback",
        "credits.adjustment",
        "billing.subscription_created",
        "billing.subscription_updated",
        "billing.subscription_canceled",
        "billing.subscription_reactivated",
        "billing.payment_succeeded",
        "billing.payment_failed",
    }
)

ENTRY_KIND_ACTIONS = {
    "purchase": "credits.topup",
    "bonus": "credits.bonus",
    "refund": "credits.refund",
    "spend": "credits.spend",
    "usage": "credits.usage",
    "chargeback": "credits.chargeback",
    "adjustment": "credits.adjustment",
}


def record_audit(
    db,
    action: str,
    account_id: str | None,
    target: str | None = None,
    target_id: str | None = None,
    meta: dict | None = None,
) -> AuditLog:
    """Stage one audit row in the caller's transaction."""

    if action not in AUDIT_ACTIONS:
        raise ValueError(f"unknown audit action: {action}")
    row = AuditLog(account_id=account_id, action=action, target=target, target_id=target_id, meta=meta or {})
    db.add(row)
    return row


def list_audit_logs(
    db,
    account_id: str | None = None,
    action: str | None = None,
    limit: int = 50,
    offset: int = 0,
) -> tuple[list[AuditLog], int]:
    """Newest-first page of audit rows plus the total matching count."""

    filters = []
    if account_id:
        filters.append(AuditLog.account_id == account_id)
    if action:
        filters.append(AuditLog.action == action)
    logs = (
        db.execute(
            select(AuditLog)
            .where(*filters)
            .order_by(AuditLog.created_at.desc(), AuditLog.id)
            .limit(limit)
            .offset(offset)
        )
        .scalars()
        .all()
    )
    total = db.execute(select(func.count()).select_from(AuditLog).where(*filters)).scalar_one()
    return logs, total
