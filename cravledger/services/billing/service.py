"""Billing service wiring."""

from cravledger.common.events import consume_forever
from cravledger.common.locks import AccountLocks
from cravledger.common.outbox import OutboxPublisher
from cravledger.services.billing.provider import StripeBillingProvider
from cravledger.services.billing.reconciler import BillingReconciler
from cravledger.services.billing.subscriptions import SubscriptionService
from cravledger.services.ledger.models import OutboxEvent
from cravledger.services.ledger.store import LedgerStore


BILLING_EVENTS_TOPIC = "billing.events"


class BillingService:
    def __init__(
        self,
        session_factory,
        service_name: str = "billing",
        locks: AccountLocks | None = None,
        provider: StripeBillingProvider | None = None,
    ) -> None:
        self.session_factory = session_factory
        self.service_name = service_name
        self.locks = locks or AccountLocks()
        self.store = LedgerStore(session_factory, self.locks, service_name)
        self.reconciler = BillingReconciler(session_factory, self.store, self.locks, service_name)
        self.subscriptions = SubscriptionService(session_factory, self.locks, provider)
        self.publisher = OutboxPublisher(session_factory, OutboxEvent, service_name)

    async def start_consumers(self) -> None:
        """Reconcile provider events relayed through Kafka."""

        await consume_forever(BILLING_EVENTS_TOPIC, "billing-reconciler", self.reconciler.handle_relayed)
