"""Status transition tables for subscriptions and billing event reconciliation."""

from cravledger.common.errors import InvalidTransition


SUBSCRIPTION_TRANSITIONS: dict[str, set[str]] = {
    "trialing": {"active", "past_due", "canceled"},
    "active": {"past_due", "canceled"},
    "past_due": {"active", "canceled"},
    "canceled": set(),
}

# The only way out of `canceled`, and only through the reactivate command.
REACTIVATION = ("canceled", "active")

# Per-event reconcile pipeline.
EVENT_TRANSITIONS: dict[str, set[str]] = {
    "received": {"validated", "rejected", "duplicate"},
    "validated": {"applied", "duplicate", "ignored", "rejected"},
    "applied": {"acknowledged"},
    "duplicate": {"acknowledged"},
    "ignored": {"acknowledged"},
    "rejected": set(),
    "acknowledged": set(),
}


def validate_subscription_transition(current: str, new: str, reactivate: bool = False) -> None:
    """Raise when a subscription status change is not allowed.

    Re-applying the current status is accepted so repeated provider updates are
    harmless. `canceled -> active` needs `reactivate=True`; provider webhooks
    never pass it.
    """

    if current == new:
        return
    if reactivate and (current, new) == REACTIVATION:
        return
    if new not in SUBSCRIPTION_TRANSITIONS.get(current, set()):
        raise InvalidTransition(f"Invalid subscription transition: {current} -> {new}")


def validate_event_transition(current: str, new: str) -> None:
    """Raise when a reconcile pipeline step is taken out of order."""

    if new not in EVENT_TRANSITIONS.get(current, set()):
        raise InvalidTransition(f"Invalid event transition: {current} -> {new}")
