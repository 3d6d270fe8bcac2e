"""Account-initiated subscription commands: cancel, reactivate, buy credits."""

from cravledger.common.config import settings
from cravledger.common.locks import AccountLocks
from cravledger.common.logging import logger
from cravledger.common.state_machine import validate_subscription_transition
from cravledger.services.billing.models import Subscription
from cravledger.services.billing.provider import StripeBillingProvider
from cravledger.services.ledger.audit import record_audit
from cravledger.services.ledger.models import utcnow


class SubscriptionNotFound(LookupError):
    def __init__(self, account_id: str) -> None:
        self.account_id = account_id
        super().__init__(f"no subscription for account {account_id}")


class SubscriptionService:
    """Calls the provider first, then records the outcome locally.

    The provider call happens without the account lock held; only the local
    update runs under it. The webhook that follows is reconciled as usual and
    lands as a no-op self-transition.
    """

    def __init__(self, session_factory, locks: AccountLocks, provider: StripeBillingProvider | None = None) -> None:
        self.session_factory = session_factory
        self.locks = locks
        self.provider = provider or StripeBillingProvider()

    def get(self, account_id: str) -> Subscription | None:
        with self.session_factory() as db:
            return db.get(Subscription, account_id)

    def _require(self, account_id: str) -> Subscription:
        sub = self.get(account_id)
        if sub is None:
            raise SubscriptionNotFound(account_id)
        return sub

    def cancel(self, account_id: str, reason: str | None = None, at_period_end: bool = False) -> Subscription:
        """Cancel now, or schedule cancellation for the end of the current period."""

        sub = self._require(account_id)
        if not at_period_end:
            validate_subscription_transition(sub.status, "canceled")
        if sub.provider_subscription_id:
            self.provider.cancel_subscription(sub.provider_subscription_id, at_period_end)

        with self.locks.hold(account_id), self.session_factory() as db:
            sub = db.get(Subscription, account_id)
            if at_period_end:
                sub.cancel_at_period_end = True
            else:
                validate_subscription_transition(sub.status, "canceled")
                sub.status = "canceled"
                sub.cancel_at_period_end = False
                sub.canceled_at = sub.canceled_at or utcnow()
            sub.cancellation_reason = reason
            sub.updated_at = utcnow()
            record_audit(
                db,
                "billing.subscription_canceled",
                account_id,
                target="subscription",
                target_id=sub.provider_subscription_id,
                meta={"reason": reason, "at_period_end": at_period_end, "status": sub.status},
            )
            db.commit()
        logger.info("subscription_canceled account_id=%s at_period_end=%s", account_id, at_period_end)
        return sub

    def reactivate(self, account_id: str) -> Subscription:
        """Clear a pending cancellation and return the subscription to `active`."""

        sub = self._require(account_id)
        validate_subscription_transition(sub.status, "active", reactivate=True)
        if sub.provider_subscription_id:
            self.provider.resume_subscription(sub.provider_subscription_id)

        with self.locks.hold(account_id), self.session_factory() as db:
            sub = db.get(Subscription, account_id)
            validate_subscription_transition(sub.status, "active", reactivate=True)
            sub.status = "active"
            sub.cancel_at_period_end = False
            sub.canceled_at = None
            sub.cancellation_reason = None
            sub.updated_at = utcnow()
            record_audit(
                db,
                "billing.subscription_reactivated",
                account_id,
                target="subscription",
                target_id=sub.provider_subscription_id,
                meta={"plan_id": sub.plan_id},
            )
            db.commit()
        logger.info("subscription_reactivated account_id=%s", account_id)
        return sub

    def create_credit_checkout(self, account_id: str, package_id: str, customer_id: str | None = None) -> dict:
        """Checkout session for a credit package; credits arrive with the webhook."""

        package = settings.credit_packages.get(package_id)
        if package is None:
            raise ValueError(f"unknown credit package: {package_id}")
        if customer_id is None:
            sub = self.get(account_id)
            customer_id = sub.provider_customer_id if sub is not None else None
        session = self.provider.create_checkout_session(account_id, package_id, package, customer_id)
        logger.info("checkout_created account_id=%s package_id=%s session_id=%s", account_id, package_id, session["id"])
        return session
