"""Typed failures raised by the ledger, authorizer and reconciler."""


class LedgerError(Exception):
    """Base class for credit ledger failures."""


class InsufficientCredits(LedgerError):
    """A spend was denied; nothing was written to the ledger."""

    def __init__(self, account_id: str, requested: int, balance: int, available: int | None = None) -> None:
        self.account_id = account_id
        self.requested = requested
        self.balance = balance
        self.available = balance if available is None else available
        super().__init__(
            f"insufficient credits for account {account_id}: requested={requested} available={self.available}"
        )


class PlanLimitExceeded(LedgerError):
    """A spend would push period usage past the plan limit."""

    def __init__(self, account_id: str, kind: str, used: int, limit: int) -> None:
        self.account_id = account_id
        self.kind = kind
        self.used = used
        self.limit = limit
        super().__init__(f"plan {kind} limit reached for account {account_id}: used={used} limit={limit}")


class DuplicateSourceEvent(LedgerError):
    """The external event id was already recorded; carries the existing entry."""

    def __init__(self, source_event_id: str, entry_id: str, account_id: str) -> None:
        self.source_event_id = source_event_id
        self.entry_id = entry_id
        self.account_id = account_id
        super().__init__(f"source event {source_event_id} already recorded as entry {entry_id}")


class InvalidEvent(LedgerError):
    """A billing webhook failed signature or schema validation."""

    def __init__(self, reason: str, event_id: str | None = None) -> None:
        self.reason = reason
        self.event_id = event_id
        super().__init__(reason)


class ProjectionDriftDetected(LedgerError):
    """The incremental balance disagrees with a full fold of the ledger."""

    def __init__(self, account_id: str, projected, folded) -> None:
        self.account_id = account_id
        self.projected = projected
        self.folded = folded
        super().__init__(
            f"projection drift for account {account_id}: projected={projected.balance} folded={folded.balance}"
        )


class ReservationExpired(LedgerError):
    """A reservation lease lapsed before it was committed."""

    def __init__(self, reservation_id: str) -> None:
        self.reservation_id = reservation_id
        super().__init__(f"reservation {reservation_id} expired or was released")


class InvalidTransition(ValueError):
    """Raised when a status transition is not allowed."""
