"""Unit tests for subscription and reconcile pipeline transition guardrails."""

import pytest

from cravledger.common.errors import InvalidTransition
from cravledger.common.state_machine import validate_event_transition, validate_subscription_transition


def test_valid_subscription_transition():
    """Sanity check: a legal transition should pass."""

    validate_subscription_transition("trialing", "active")
    validate_subscription_transition("past_due", "active")


def test_same_status_is_a_noop():
    """Repeated provider updates with the same status are accepted."""

    validate_subscription_transition("canceled", "canceled")


def test_invalid_subscription_transition():
    """Illegal moves raise `InvalidTransition`, a `ValueError`."""

    with pytest.raises(ValueError):
        validate_subscription_transition("canceled", "past_due")
    with pytest.raises(InvalidTransition):
        validate_subscription_transition("active", "trialing")


def test_canceled_is_only_left_by_reactivation():
    with pytest.raises(InvalidTransition):
        validate_subscription_transition("canceled", "active")

    validate_subscription_transition("canceled", "active", reactivate=True)
    with pytest.raises(InvalidTransition):
        validate_subscription_transition("canceled", "past_due", reactivate=True)


def test_event_pipeline_happy_path():
    for current, new in (("received", "validated"), ("validated", "applied"), ("applied", "acknowledged")):
        validate_event_transition(current, new)


def test_event_pipeline_rejects_skipping_validation():
    """An event cannot be applied before it is validated."""

    with pytest.raises(InvalidTransition):
        validate_event_transition("received", "applied")
    with pytest.raises(InvalidTransition):
        validate_event_transition("rejected", "acknowledged")
