"""Billing event reconciliation: provider webhooks into ledger entries, exactly once.

Each event walks `received -> validated -> applied -> acknowledged`, or stops
at `rejected`, or short-circuits through `duplicate` or `ignored`. A replayed
delivery is caught by the `billing_events` primary key. Credit grants are keyed
on the provider object they pay for (checkout session, invoice, refunded
charge total), so two different event types describing the same payment hit
the ledger's unique `source_event_id`. Neither check depends on timing, so
concurrent duplicate deliveries are safe.
"""

import json
from dataclasses import dataclass, field
from datetime import datetime, timezone

import stripe
from pydantic import ValidationError
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError

from cravledger.common.config import settings
from cravledger.common.errors import DuplicateSourceEvent, InvalidEvent, InvalidTransition
from cravledger.common.events import EventEnvelope
from cravledger.common.locks import AccountLocks
from cravledger.common.logging import log_context, logger
from cravledger.common.metrics import billing_events_total, duplicate_events_skipped_total
from cravledger.common.outbox import enqueue_event
from cravledger.common.state_machine import validate_event_transition, validate_subscription_transition
from cravledger.common.tracing import tracer
from cravledger.services.billing.models import BillingEvent, Subscription
from cravledger.services.billing.schemas import ProviderEvent
from cravledger.services.ledger.audit import record_audit
from cravledger.services.ledger.models import LedgerEntry, OutboxEvent, as_utc, utcnow
from cravledger.services.ledger.plans import get_plan, normalize_plan_id
from cravledger.services.ledger.projector import lock_balance_row
from cravledger.services.ledger.store import LedgerStore


SUBSCRIPTION_CHANGED_TOPIC = "billing.subscription_changed"

# Provider subscription statuses mapped onto the local lifecycle.
PROVIDER_STATUS = {
    "trialing": "trialing",
    "active": "active",
    "past_due": "past_due",
    "unpaid": "past_due",
    "incomplete": "past_due",
    "paused": "past_due",
    "canceled": "canceled",
    "incomplete_expired": "canceled",
}

PAID_CHECKOUT_STATUSES = ("paid", "no_payment_required")


@dataclass(frozen=True)
class ReconcileResult:
    """Final state of one delivery: applied, duplicate, ignored or rejected."""

    status: str
    event_id: str | None
    event_type: str | None = None
    account_id: str | None = None
    entry_id: str | None = None
    error: str | None = None

    @property
    def acknowledged(self) -> bool:
        return self.status != "rejected"


@dataclass
class SubscriptionChange:
    status: str | None = None
    plan_id: str | None = None
    provider_subscription_id: str | None = None
    provider_customer_id: str | None = None
    period_start: datetime | None = None
    period_end: datetime | None = None
    cancel_at_period_end: bool | None = None
    create_if_missing: bool = False


@dataclass
class EventEffect:
    """What one provider event does locally."""

    account_id: str
    kind: str | None = None
    amount: int = 0
    description: str = ""
    meta: dict = field(default_factory=dict)
    subscription: SubscriptionChange | None = None
    renewal: bool = False
    audit_action: str | None = None
    # Ledger idempotency key; defaults to the provider event id.
    source_event_id: str | None = None
    # `amount` is a running total across entries keyed `<cumulative_key>:*`;
    # only the difference from what is already posted is appended.
    cumulative_key: str | None = None


class _Skip(Exception):
    """A well-formed event that needs no local change yet."""

    def __init__(self, reason: str) -> None:
        super().__init__(reason)
        self.reason = reason


class _Pipeline:
    """Tracks one event through the reconcile states."""

    def __init__(self) -> None:
        self.state = "received"

    def advance(self, new: str) -> None:
        validate_event_transition(self.state, new)
        self.state = new


def _ts(value) -> datetime | None:
    if value in (None, ""):
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc)


def _metadata(obj: dict) -> dict:
    return obj.get("metadata") or {}


def _int_field(values: dict, key: str, event_id: str) -> int | None:
    raw = values.get(key)
    if raw in (None, ""):
        return None
    try:
        return int(raw)
    except (TypeError, ValueError) as exc:
        raise InvalidEvent(f"{key} is not an integer: {raw!r}", event_id) from exc


class BillingReconciler:
    """Translates provider events into subscription changes and ledger entries."""

    def __init__(self, session_factory, store: LedgerStore, locks: AccountLocks, service_name: str = "billing") -> None:
        self.session_factory = session_factory
        self.store = store
        self.locks = locks
        self.service_name = service_name
        self._mappers = {
            "checkout.session.completed": self._map_checkout_completed,
            "checkout.session.async_payment_succeeded": self._map_checkout_completed,
            "invoice.paid": self._map_invoice_paid,
            "invoice.payment_succeeded": self._map_invoice_paid,
            "invoice.payment_failed": self._map_invoice_failed,
            "customer.subscription.created": self._map_subscription,
            "customer.subscription.updated": self._map_subscription,
            "customer.subscription.deleted": self._map_subscription_deleted,
            "charge.refunded": self._map_charge_refunded,
            "charge.dispute.created": self._map_dispute_created,
        }

    # -- validation -------------------------------------------------------

    def parse(self, raw, signature: str | None = None) -> ProviderEvent:
        """Verify the signature (when configured) and validate the envelope."""

        if isinstance(raw, (bytes, bytearray)):
            raw = raw.decode("utf-8")
        if isinstance(raw, str):
            if settings.stripe_webhook_secret:
                if not signature:
                    raise InvalidEvent("missing signature header")
                try:
                    stripe.WebhookSignature.verify_header(
                        raw,
                        signature,
                        settings.stripe_webhook_secret,
                        settings.stripe_webhook_tolerance_seconds,
                    )
                except (ValueError, stripe.SignatureVerificationError) as exc:
                    raise InvalidEvent(f"signature verification failed: {exc}") from exc
            try:
                return ProviderEvent.model_validate_json(raw)
            except ValidationError as exc:
                raise InvalidEvent(f"malformed event: {exc.errors()[0]['msg']}", _peek_id(raw)) from exc
        try:
            return ProviderEvent.model_validate(raw)
        except ValidationError as exc:
            event_id = raw.get("id") if isinstance(raw, dict) else None
            raise InvalidEvent(f"malformed event: {exc.errors()[0]['msg']}", event_id) from exc

    # -- mapping ----------------------------------------------------------

    def _subscription_by(self, db, **criteria) -> Subscription | None:
        for column, value in criteria.items():
            if value:
                found = db.execute(
                    select(Subscription).where(getattr(Subscription, column) == value).limit(1)
                ).scalars().first()
                if found is not None:
                    return found
        return None

    def _resolve_account(self, db, event: ProviderEvent, subscription_id=None, customer_id=None) -> str:
        metadata = _metadata(event.data.object)
        account_id = metadata.get("account_id") or metadata.get("user_id")
        if account_id:
            return str(account_id)
        found = self._subscription_by(
            db, provider_subscription_id=subscription_id, provider_customer_id=customer_id
        )
        if found is None:
            raise InvalidEvent("unable to resolve account for event", event.id)
        return found.account_id

    def _map_checkout_completed(self, db, event: ProviderEvent) -> EventEffect | None:
        obj = event.data.object
        metadata = _metadata(obj)
        if metadata.get("type") != "credit_purchase":
            return None
        if obj.get("payment_status") not in PAID_CHECKOUT_STATUSES:
            # Delayed methods complete unpaid; the grant waits for async_payment_succeeded.
            raise _Skip("payment_pending")
        account_id = self._resolve_account(db, event, customer_id=obj.get("customer"))
        credits = _int_field(metadata, "credits", event.id)
        if credits is None:
            package = settings.credit_packages.get(str(metadata.get("package_id", "")))
            if package is None:
                raise InvalidEvent("credit purchase without credits or known package_id", event.id)
            credits = package.credits
        if credits <= 0:
            raise InvalidEvent("credit purchase must grant a positive amount", event.id)
        return EventEffect(
            account_id=account_id,
            kind="purchase",
            amount=credits,
            description=f"Purchased {credits} credits",
            meta={
                "checkout_session": obj.get("id"),
                "payment_intent": obj.get("payment_intent"),
                "package_id": metadata.get("package_id"),
            },
            source_event_id=f"checkout:{obj['id']}" if obj.get("id") else None,
        )

    def _map_invoice_paid(self, db, event: ProviderEvent) -> EventEffect | None:
        obj = event.data.object
        subscription_id = obj.get("subscription")
        if not subscription_id:
            return None
        account_id = self._resolve_account(db, event, subscription_id, obj.get("customer"))
        lines = (obj.get("lines") or {}).get("data") or []
        period = (lines[0].get("period") or {}) if lines else {}
        metadata = _metadata(obj)
        return EventEffect(
            account_id=account_id,
            kind="purchase",
            description="Plan renewal credit grant",
            meta={"invoice": obj.get("id"), "billing_reason": obj.get("billing_reason")},
            renewal=True,
            audit_action="billing.payment_succeeded",
            # invoice.paid and invoice.payment_succeeded both arrive for one invoice.
            source_event_id=f"invoice:{obj['id']}" if obj.get("id") else None,
            subscription=SubscriptionChange(
                status="active",
                plan_id=metadata.get("plan_id"),
                provider_subscription_id=subscription_id,
                provider_customer_id=obj.get("customer"),
                period_start=_ts(period.get("start") or obj.get("period_start")),
                period_end=_ts(period.get("end") or obj.get("period_end")),
                create_if_missing=True,
            ),
        )

    def _map_invoice_failed(self, db, event: ProviderEvent) -> EventEffect | None:
        obj = event.data.object
        subscription_id = obj.get("subscription")
        if not subscription_id:
            return None
        account_id = self._resolve_account(db, event, subscription_id, obj.get("customer"))
        return EventEffect(
            account_id=account_id,
            audit_action="billing.payment_failed",
            subscription=SubscriptionChange(status="past_due", provider_subscription_id=subscription_id),
        )

    def _map_subscription(self, db, event: ProviderEvent) -> EventEffect:
        obj = event.data.object
        status = PROVIDER_STATUS.get(obj.get("status", ""))
        if status is None:
            raise InvalidEvent(f"unknown subscription status: {obj.get('status')!r}", event.id)
        account_id = self._resolve_account(db, event, obj.get("id"), obj.get("customer"))
        items = (obj.get("items") or {}).get("data") or [{}]
        price = items[0].get("price") or {}
        plan_id = _metadata(obj).get("plan_id") or price.get("lookup_key") or _metadata(price).get("plan_id")
        return EventEffect(
            account_id=account_id,
            subscription=SubscriptionChange(
                status=status,
                plan_id=plan_id,
                provider_subscription_id=obj.get("id"),
                provider_customer_id=obj.get("customer"),
                period_start=_ts(obj.get("current_period_start") or items[0].get("current_period_start")),
                period_end=_ts(obj.get("current_period_end") or items[0].get("current_period_end")),
                cancel_at_period_end=bool(obj.get("cancel_at_period_end", False)),
                create_if_missing=status in ("trialing", "active"),
            ),
        )

    def _map_subscription_deleted(self, db, event: ProviderEvent) -> EventEffect:
        obj = event.data.object
        account_id = self._resolve_account(db, event, obj.get("id"), obj.get("customer"))
        # Granted credits stay; cancellation is never a clawback.
        return EventEffect(
            account_id=account_id,
            subscription=SubscriptionChange(
                status="canceled",
                provider_subscription_id=obj.get("id"),
                cancel_at_period_end=False,
            ),
        )

    def _map_charge_refunded(self, db, event: ProviderEvent) -> EventEffect | None:
        obj = event.data.object
        metadata = _metadata(obj)
        if metadata.get("type") not in (None, "credit_purchase"):
            return None
        # `amount_refunded` is the charge's running total, so `credits` is too.
        refunded = int(obj.get("amount_refunded") or 0)
        credits = _int_field(metadata, "refund_credits", event.id)
        if credits is not None:
            credits = credits if refunded > 0 else 0
        else:
            purchased = _int_field(metadata, "credits", event.id)
            amount = int(obj.get("amount") or 0)
            if purchased is None or amount <= 0:
                return None
            credits = purchased * min(refunded, amount) // amount
        if credits <= 0:
            return None
        charge_id = obj.get("id") or event.id
        account_id = self._resolve_account(db, event, customer_id=obj.get("customer"))
        return EventEffect(
            account_id=account_id,
            kind="refund",
            amount=-credits,
            description=f"Refund on charge {charge_id}",
            meta={"charge": charge_id, "payment_intent": obj.get("payment_intent"), "amount_refunded": refunded},
            source_event_id=f"refund:{charge_id}:{refunded}",
            cumulative_key=f"refund:{charge_id}",
        )

    def _map_dispute_created(self, db, event: ProviderEvent) -> EventEffect | None:
        obj = event.data.object
        credits = _int_field(_metadata(obj), "credits", event.id)
        if not credits:
            return None
        account_id = self._resolve_account(db, event)
        return EventEffect(
            account_id=account_id,
            kind="chargeback",
            amount=-abs(credits),
            description=f"Chargeback of {abs(credits)} credits",
            meta={"dispute": obj.get("id"), "charge": obj.get("charge"), "reason": obj.get("reason")},
        )

    # -- application ------------------------------------------------------

    def _apply_subscription(self, db, account_id: str, change: SubscriptionChange, event_at: datetime | None):
        """Upsert the subscription row; returns (row, audit action).

        The action is None when nothing changed: no row to update, or an event
        older than the last one applied.
        """

        sub = db.get(Subscription, account_id)
        if sub is None:
            if not change.create_if_missing:
                return None, None
            sub = Subscription(account_id=account_id)
            db.add(sub)
            self._start_subscription(sub, change, event_at)
            return sub, "billing.subscription_created"

        if (
            sub.status == "canceled"
            and change.create_if_missing
            and change.provider_subscription_id
            and change.provider_subscription_id != sub.provider_subscription_id
        ):
            # A fresh provider subscription replaces the canceled one.
            self._start_subscription(sub, change, event_at)
            return sub, "billing.subscription_created"

        if event_at is not None and sub.last_event_at is not None and event_at < as_utc(sub.last_event_at):
            return sub, None

        previous = sub.status
        if change.status is not None:
            validate_subscription_transition(sub.status, change.status)
            sub.status = change.status
            if change.status == "canceled" and sub.canceled_at is None:
                sub.canceled_at = event_at or utcnow()
            elif change.status != "canceled":
                sub.canceled_at = None
        if change.plan_id:
            sub.plan_id = normalize_plan_id(change.plan_id)
        if change.provider_subscription_id:
            sub.provider_subscription_id = change.provider_subscription_id
        if change.provider_customer_id:
            sub.provider_customer_id = change.provider_customer_id
        if change.period_start is not None:
            sub.current_period_start = change.period_start
        if change.period_end is not None:
            sub.current_period_end = change.period_end
        if change.cancel_at_period_end is not None:
            sub.cancel_at_period_end = change.cancel_at_period_end
        if event_at is not None:
            sub.last_event_at = event_at
        sub.updated_at = utcnow()
        if sub.status == "canceled" and previous != "canceled":
            return sub, "billing.subscription_canceled"
        return sub, "billing.subscription_updated"

    @staticmethod
    def _start_subscription(sub: Subscription, change: SubscriptionChange, event_at: datetime | None) -> None:
        sub.plan_id = normalize_plan_id(change.plan_id)
        sub.status = change.status or "active"
        sub.provider_subscription_id = change.provider_subscription_id
        sub.provider_customer_id = change.provider_customer_id or sub.provider_customer_id
        sub.current_period_start = change.period_start
        sub.current_period_end = change.period_end
        sub.cancel_at_period_end = bool(change.cancel_at_period_end)
        sub.canceled_at = None
        sub.cancellation_reason = None
        sub.last_event_at = event_at
        sub.updated_at = utcnow()

    def _record(self, event_id: str | None, event_type: str | None, account_id: str | None, status: str, **fields) -> None:
        """Upsert the inbox row outside the business transaction."""

        if not event_id:
            return
        with self.session_factory() as db:
            existing = db.get(BillingEvent, event_id)
            if existing is not None and existing.status == "APPLIED":
                return
            db.merge(
                BillingEvent(
                    event_id=event_id,
                    event_type=event_type or "unknown",
                    account_id=account_id,
                    status=status,
                    entry_id=fields.get("entry_id"),
                    error=fields.get("error"),
                    acknowledged_at=None if status == "REJECTED" else utcnow(),
                )
            )
            try:
                db.commit()
            except IntegrityError:
                # A concurrent delivery recorded the row first.
                db.rollback()

    def _finish(self, result: ReconcileResult) -> ReconcileResult:
        billing_events_total.labels(
            service=self.service_name,
            event_type=result.event_type or "unknown",
            status=result.status,
        ).inc()
        return result

    def _reject(self, event_id, event_type, account_id, reason: str) -> ReconcileResult:
        logger.warning("billing_event_rejected event_id=%s type=%s reason=%s", event_id, event_type, reason)
        self._record(event_id, event_type, account_id, "REJECTED", error=reason)
        return self._finish(ReconcileResult("rejected", event_id, event_type, account_id, error=reason))

    def _duplicate(self, pipeline: _Pipeline, event: ProviderEvent, account_id, entry_id=None) -> ReconcileResult:
        pipeline.advance("duplicate")
        pipeline.advance("acknowledged")
        duplicate_events_skipped_total.labels(service=self.service_name, topic=event.type).inc()
        logger.info("duplicate billing event skipped event_id=%s type=%s", event.id, event.type)
        return self._finish(ReconcileResult("duplicate", event.id, event.type, account_id, entry_id=entry_id))

    def _ignore(self, pipeline: _Pipeline, event: ProviderEvent, account_id, reason: str) -> ReconcileResult:
        pipeline.advance("ignored")
        pipeline.advance("acknowledged")
        logger.info("billing_event_ignored event_id=%s type=%s reason=%s", event.id, event.type, reason)
        self._record(event.id, event.type, account_id, "IGNORED", error=reason)
        return self._finish(ReconcileResult("ignored", event.id, event.type, account_id, error=reason))

    def handle_event(self, raw, signature: str | None = None) -> ReconcileResult:
        """Reconcile one delivery; safe to call any number of times per event."""

        pipeline = _Pipeline()
        try:
            event = self.parse(raw, signature)
        except InvalidEvent as exc:
            pipeline.advance("rejected")
            return self._reject(exc.event_id, None, None, exc.reason)
        with log_context(event_id=event.id), tracer.start_as_current_span(
            "billing.reconcile", attributes={"billing.event_id": event.id, "billing.event_type": event.type}
        ):
            return self._reconcile(pipeline, event)

    def _reconcile(self, pipeline: _Pipeline, event: ProviderEvent) -> ReconcileResult:
        mapper = self._mappers.get(event.type)
        try:
            with self.session_factory() as db:
                effect = mapper(db, event) if mapper else None
        except InvalidEvent as exc:
            pipeline.advance("rejected")
            return self._reject(event.id, event.type, None, exc.reason)
        except _Skip as skip:
            pipeline.advance("validated")
            return self._ignore(pipeline, event, None, skip.reason)
        pipeline.advance("validated")
        if effect is None:
            return self._ignore(pipeline, event, None, "unhandled_event")

        account_id = effect.account_id
        event_at = _ts(event.created)
        with log_context(account_id=account_id), self.locks.hold(account_id), self.session_factory() as db:
            recorded = db.get(BillingEvent, event.id)
            if recorded is not None and recorded.status in ("APPLIED", "IGNORED"):
                return self._duplicate(pipeline, event, account_id, recorded.entry_id)
            row = lock_balance_row(db, account_id)
            try:
                sub, action = (None, None)
                if effect.subscription is not None:
                    sub, action = self._apply_subscription(db, account_id, effect.subscription, event_at)
                amount = effect.amount
                if effect.renewal:
                    plan = get_plan(sub.plan_id if sub is not None else effect.subscription.plan_id)
                    amount = plan.periodic_credit_grant
                if effect.cumulative_key is not None:
                    amount = self._outstanding(db, account_id, effect.cumulative_key, amount)
                if action is None and not amount:
                    db.rollback()
                    reason = "stale_event" if sub is not None else "no_effect"
                    return self._ignore(pipeline, event, account_id, reason)

                entry = None
                if effect.kind is not None and amount:
                    entry = self.store.post(
                        db,
                        row,
                        amount,
                        effect.kind,
                        source_event_id=effect.source_event_id or event.id,
                        description=effect.description,
                        meta={**effect.meta, "event_id": event.id, "event_type": event.type},
                    )
                if action is not None:
                    self._stage_subscription_side_effects(db, sub, action, effect, event)
                db.merge(
                    BillingEvent(
                        event_id=event.id,
                        event_type=event.type,
                        account_id=account_id,
                        status="APPLIED",
                        entry_id=entry.entry_id if entry else None,
                        acknowledged_at=utcnow(),
                    )
                )
                db.commit()
            except DuplicateSourceEvent as dup:
                return self._duplicate(pipeline, event, account_id, dup.entry_id)
            except InvalidTransition as exc:
                # Out-of-order status change: acknowledged, reason recorded.
                db.rollback()
                return self._ignore(pipeline, event, account_id, str(exc))
            except IntegrityError:
                db.rollback()
                if db.get(BillingEvent, event.id) is None:
                    raise
                return self._duplicate(pipeline, event, account_id)

        pipeline.advance("applied")
        pipeline.advance("acknowledged")
        logger.info(
            "billing_event_applied event_id=%s type=%s account_id=%s amount=%s",
            event.id,
            event.type,
            account_id,
            amount,
        )
        return self._finish(
            ReconcileResult("applied", event.id, event.type, account_id, entry_id=entry.entry_id if entry else None)
        )

    @staticmethod
    def _outstanding(db, account_id: str, key: str, total: int) -> int:
        """Part of the running `total` not yet posted under `key`."""

        posted = db.execute(
            select(func.coalesce(func.sum(LedgerEntry.amount), 0)).where(
                LedgerEntry.account_id == account_id,
                LedgerEntry.source_event_id.startswith(f"{key}:", autoescape=True),
            )
        ).scalar_one()
        outstanding = total - int(posted)
        # Totals only grow; an older, smaller total arriving late changes nothing.
        return outstanding if (outstanding < 0) == (total < 0) else 0

    def _stage_subscription_side_effects(self, db, sub: Subscription, action: str, effect: EventEffect, event) -> None:
        for audit_action in filter(None, (action, effect.audit_action)):
            record_audit(
                db,
                audit_action,
                sub.account_id,
                target="subscription",
                target_id=sub.provider_subscription_id,
                meta={"status": sub.status, "plan_id": sub.plan_id, "event_id": event.id},
            )
        enqueue_event(
            db,
            OutboxEvent,
            SUBSCRIPTION_CHANGED_TOPIC,
            EventEnvelope(
                event_type=SUBSCRIPTION_CHANGED_TOPIC,
                aggregate_id=sub.account_id,
                payload={
                    "status": sub.status,
                    "plan_id": sub.plan_id,
                    "cancel_at_period_end": sub.cancel_at_period_end,
                    "source_event_id": event.id,
                },
            ),
            aggregate_type="subscription",
        )

    async def handle_relayed(self, envelope: EventEnvelope) -> None:
        """Kafka ingress: the envelope payload carries the raw provider event."""

        result = self.handle_event(envelope.payload)
        if not result.acknowledged:
            logger.error("relayed billing event rejected event_id=%s error=%s", result.event_id, result.error)


def _peek_id(raw: str) -> str | None:
    try:
        payload = json.loads(raw)
    except ValueError:
        return None
    if isinstance(payload, dict) and isinstance(payload.get("id"), str):
        return payload["id"]
    return None
