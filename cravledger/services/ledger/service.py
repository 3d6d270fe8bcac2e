"""Ledger service wiring: one object per process holding the ledger components."""

from cravledger.common.locks import AccountLocks
from cravledger.common.outbox import OutboxPublisher
from cravledger.services.ledger.audit import list_audit_logs
from cravledger.services.ledger.authorizer import EntitlementAuthorizer, ReservationBook
from cravledger.services.ledger.models import OutboxEvent
from cravledger.services.ledger.projector import BalanceProjector
from cravledger.services.ledger.reporting import UsageReporter
from cravledger.services.ledger.store import AppendResult, LedgerStore


class LedgerService:
    """Shares one lock registry between store, projector and authorizer."""

    def __init__(self, session_factory, service_name: str = "ledger", locks: AccountLocks | None = None) -> None:
        self.session_factory = session_factory
        self.service_name = service_name
        self.locks = locks or AccountLocks()
        self.store = LedgerStore(session_factory, self.locks, service_name)
        self.projector = BalanceProjector(session_factory, self.locks, service_name)
        self.authorizer = EntitlementAuthorizer(
            session_factory, self.store, self.locks, ReservationBook(service_name), service_name
        )
        self.reporter = UsageReporter(session_factory)
        self.publisher = OutboxPublisher(session_factory, OutboxEvent, service_name)

    def adjust(self, account_id: str, amount: int, reason: str, actor: str, idempotency_key: str | None = None) -> AppendResult:
        """Admin correction; always a new `adjustment` entry, never an edit."""

        source_event_id = f"adjustment:{account_id}:{idempotency_key}" if idempotency_key else None
        return self.store.append(
            account_id,
            amount,
            "adjustment",
            source_event_id=source_event_id,
            description=reason,
            meta={"actor": actor},
        )

    def audit_logs(self, account_id: str | None = None, action: str | None = None, limit: int = 50, offset: int = 0):
        with self.session_factory() as db:
            return list_audit_logs(db, account_id=account_id, action=action, limit=limit, offset=offset)
