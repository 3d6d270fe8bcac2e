"""Subscription commands and the Stripe provider wrapper."""

import pytest
import stripe

from cravledger.common.config import settings
from cravledger.services.billing.models import Subscription
from cravledger.services.billing.provider import ProviderError, StripeBillingProvider
from cravledger.services.billing.subscriptions import SubscriptionNotFound
from cravledger.services.ledger.audit import list_audit_logs


@pytest.fixture
def subscribed(session_factory):
    with session_factory() as db:
        db.add(
            Subscription(
                account_id="acct-1",
                plan_id="pro",
                status="active",
                provider_subscription_id="sub_1",
                provider_customer_id="cus_1",
            )
        )
        db.commit()


def test_cancel_immediately(billing, provider, session_factory, subscribed):
    sub = billing.subscriptions.cancel("acct-1", reason="too expensive")

    assert provider.calls == [("cancel", "sub_1", False)]
    assert sub.status == "canceled"
    assert sub.cancellation_reason == "too expensive"
    assert sub.canceled_at is not None
    with session_factory() as db:
        logs, _ = list_audit_logs(db, account_id="acct-1", action="billing.subscription_canceled")
    assert len(logs) == 1


def test_cancel_at_period_end_keeps_status(billing, provider, subscribed):
    sub = billing.subscriptions.cancel("acct-1", at_period_end=True)

    assert provider.calls == [("cancel", "sub_1", True)]
    assert sub.status == "active"
    assert sub.cancel_at_period_end


def test_reactivate_after_cancel(billing, provider, subscribed):
    billing.subscriptions.cancel("acct-1")
    sub = billing.subscriptions.reactivate("acct-1")

    assert provider.calls[-1] == ("resume", "sub_1")
    assert sub.status == "active"
    assert sub.canceled_at is None
    assert not sub.cancel_at_period_end


def test_commands_need_a_subscription(billing):
    with pytest.raises(SubscriptionNotFound):
        billing.subscriptions.cancel("acct-none")
    with pytest.raises(SubscriptionNotFound):
        billing.subscriptions.reactivate("acct-none")



def test_cancel_without_provider_subscription_is_local_only(billing, provider, session_factory):
    with session_factory() as db:
        db.add(Subscription(account_id="acct-2", plan_id="free", status="past_due"))
        db.commit()

    assert billing.subscriptions.cancel("acct-2").status == "canceled"
    assert provider.calls == []


def test_credit_checkout_uses_customer_on_file(billing, provider, subscribed):
    session = billing.subscriptions.create_credit_checkout("acct-1", "large")

    assert session["id"] == "cs_test_1"
    assert provider.calls == [("checkout", "acct-1", "large", 2000, "cus_1")]


def test_credit_checkout_rejects_unknown_package(billing, provider):
    with pytest.raises(ValueError):
        billing.subscriptions.create_credit_checkout("acct-1", "jumbo")
    assert provider.calls == []


def test_stripe_checkout_metadata_round_trips(monkeypatch):
    captured = {}

    def fake_create(**params):
        captured.update(params)
        return {"id": "cs_live_1", "url": "https://checkout.stripe.com/c/cs_live_1"}

    monkeypatch.setattr(stripe.checkout.Session, "create", fake_create)
    provider = StripeBillingProvider(api_key="sk_test_123", site_url="https://app.example")

    result = provider.create_checkout_session("acct-1", "small", settings.credit_packages["small"], "cus_1")

    assert result == {"id": "cs_live_1", "url": "https://checkout.stripe.com/c/cs_live_1"}
    assert captured["api_key"] == "sk_test_123"
    assert captured["customer"] == "cus_1"
    assert captured["metadata"] == {
        "type": "credit_purchase",
        "account_id": "acct-1",
        "package_id": "small",
        "credits": "100",
    }
    assert captured["payment_intent_data"]["metadata"] == captured["metadata"]
    assert captured["line_items"][0]["price_data"]["unit_amount"] == 499
    assert captured["success_url"].startswith("https://app.example/")


def test_stripe_cancel_calls(monkeypatch):
    calls = []
    monkeypatch.setattr(stripe.Subscription, "cancel", lambda sid, **kw: calls.append(("cancel", sid)))
    monkeypatch.setattr(stripe.Subscription, "modify", lambda sid, **kw: calls.append(("modify", sid, kw)))
    provider = StripeBillingProvider(api_key="sk_test_123")

    provider.cancel_subscription("sub_1", at_period_end=False)
    provider.cancel_subscription("sub_1", at_period_end=True)
    provider.resume_subscription("sub_1")

    assert calls == [
        ("cancel", "sub_1"),
        ("modify", "sub_1", {"cancel_at_period_end": True, "api_key": "sk_test_123"}),
        ("modify", "sub_1", {"cancel_at_period_end": False, "api_key": "sk_test_123"}),
    ]


def test_stripe_errors_become_provider_errors(monkeypatch):
    def failing(sid, **kw):
        raise stripe.InvalidRequestError("No such subscription", "id")

    monkeypatch.setattr(stripe.Subscription, "cancel", failing)

    with pytest.raises(ProviderError):
        StripeBillingProvider(api_key="sk_test_123").cancel_subscription("sub_missing", at_period_end=False)
