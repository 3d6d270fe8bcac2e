"""HTTP mapping for the ledger and billing services."""

import json

import pytest
from fastapi.testclient import TestClient

from cravledger.services.billing import main as billing_main
from cravledger.services.ledger import main as ledger_main
from cravledger.services.ledger.models import AccountBalance

HEADERS = {"x-api-key": "test-key"}


@pytest.fixture
def ledger_client(ledger, monkeypatch):
    monkeypatch.setattr(ledger_main, "service", ledger)
    monkeypatch.setattr(ledger_main, "enforce_token_bucket", lambda account_id: None)
    return TestClient(ledger_main.app)


@pytest.fixture
def billing_client(billing, monkeypatch):
    monkeypatch.setattr(billing_main, "service", billing)
    return TestClient(billing_main.app)


def test_api_key_required(ledger_client):
    assert ledger_client.get("/accounts/acct-1/balance").status_code == 401
    assert ledger_client.get("/accounts/acct-1/balance", headers={"x-api-key": "wrong"}).status_code == 401


def test_spend_flow(ledger_client, ledger):
    ledger.store.append("acct-1", 500, "purchase", source_event_id="E1")

    resp = ledger_client.post(
        "/accounts/acct-1/spend", json={"amount": 120, "idempotency_key": "order-1"}, headers=HEADERS
    )
    assert resp.status_code == 200
    assert resp.json()["remaining_balance"] == 380

    resp = ledger_client.post("/accounts/acct-1/spend", json={"amount": 500}, headers=HEADERS)
    assert resp.status_code == 402
    assert resp.json() == {"error": "insufficient_credits", "requested": 500, "balance": 380, "available": 380}

    balance = ledger_client.get("/accounts/acct-1/balance", params={"verify": True}, headers=HEADERS).json()
    assert balance["balance"] == 380
    assert balance["lifetime_earned"] == 500
    assert balance["lifetime_spent"] == 120


def test_spend_validation(ledger_client):
    resp = ledger_client.post("/accounts/acct-1/spend", json={"amount": 0}, headers=HEADERS)
    assert resp.status_code == 422
    resp = ledger_client.post("/accounts/acct-1/spend", json={"amount": 5, "kind": "refund"}, headers=HEADERS)
    assert resp.status_code == 422


def test_drift_is_409_until_rebuilt(ledger_client, ledger, session_factory):
    ledger.store.append("acct-1", 100, "purchase")
    with session_factory() as db:
        db.get(AccountBalance, "acct-1").balance = 7
        db.commit()

    resp = ledger_client.get("/accounts/acct-1/balance", params={"verify": True}, headers=HEADERS)
    assert resp.status_code == 409
    assert resp.json()["folded"]["balance"] == 100
    assert ledger_client.get("/reconciliation", headers=HEADERS).json()["drifted_count"] == 1

    assert ledger_client.post("/accounts/acct-1/rebuild", headers=HEADERS).json()["balance"] == 100
    assert ledger_client.get("/reconciliation", headers=HEADERS).json()["drifted_count"] == 0


def test_adjustments(ledger_client):
    body = {"amount": 40, "reason": "goodwill", "actor": "ops", "idempotency_key": "ticket-1"}
    first = ledger_client.post("/accounts/acct-1/adjustments", json=body, headers=HEADERS).json()
    again = ledger_client.post("/accounts/acct-1/adjustments", json=body, headers=HEADERS).json()

    assert first["balance"] == 40
    assert again["duplicate"] and again["entry_id"] == first["entry_id"]

    zero = {**body, "amount": 0, "idempotency_key": "ticket-2"}
    assert ledger_client.post("/accounts/acct-1/adjustments", json=zero, headers=HEADERS).status_code == 400


def test_reporting_endpoints(ledger_client, ledger):
    ledger.store.append("acct-1", 300, "purchase")
    ledger.authorizer.authorize("acct-1", 50)
    ledger.authorizer.authorize("acct-1", 2, kind="usage")

    usage = ledger_client.get("/accounts/acct-1/usage", params={"period": "7d"}, headers=HEADERS).json()
    assert usage["credits"]["balance"] == 248
    assert usage["usage"]["total"] == 52
    assert usage["usage"]["by_kind"] == {"spend": 50, "usage": 2}
    assert ledger_client.get("/accounts/acct-1/usage", params={"period": "2w"}, headers=HEADERS).status_code == 400
    half_window = {"start": "2026-01-01T00:00:00Z"}
    assert ledger_client.get("/accounts/acct-1/usage", params=half_window, headers=HEADERS).status_code == 400

    entries = ledger_client.get("/accounts/acct-1/entries", headers=HEADERS).json()
    assert [e["amount"] for e in entries] == [300, -50, -2]

    limits = ledger_client.get("/accounts/acct-1/limits", headers=HEADERS).json()
    assert limits["plan"] == "free"
    assert limits["credits_used"] == 52
    assert limits["api_calls_used"] == 1
    assert limits["within"] == {"credits": True, "api_calls": True}

    assert len(ledger_client.get("/transactions", headers=HEADERS).json()) == 3
    assert ledger_client.get("/summary", headers=HEADERS).json()["total_balance"] == 248
    audit = ledger_client.get("/audit", params={"account_id": "acct-1"}, headers=HEADERS).json()
    assert audit["total"] == 3


def test_health_and_metrics(ledger_client, billing_client):
    assert ledger_client.get("/health").json() == {"ok": True}
    assert billing_client.get("/health").json() == {"ok": True}
    assert "spend_decisions_total" in ledger_client.get("/metrics").text


def _checkout_event(event_id="evt_api_1"):
    return {
        "id": event_id,
        "type": "checkout.session.completed",
        "created": 1_760_000_000,
        "data": {
            "object": {
                "id": "cs_1",
                "payment_status": "paid",
                "metadata": {"type": "credit_purchase", "account_id": "acct-1", "credits": "25"},
            }
        },
    }


def test_webhook_acknowledges_applied_and_duplicate(billing_client):
    payload = json.dumps(_checkout_event())

    first = billing_client.post("/webhooks/stripe", content=payload)
    again = billing_client.post("/webhooks/stripe", content=payload)

    assert first.status_code == 200 and first.json()["status"] == "applied"
    assert again.status_code == 200 and again.json()["status"] == "duplicate"


def test_webhook_rejection_is_400(billing_client):
    resp = billing_client.post("/webhooks/stripe", content="{not json")
    assert resp.status_code == 400
    assert resp.json()["status"] == "rejected"


def test_subscription_endpoints(billing_client, billing):
    assert billing_client.get("/subscriptions/acct-1", headers=HEADERS).status_code == 404
    assert billing_client.post("/subscriptions/acct-1/cancel", json={}, headers=HEADERS).status_code == 404

    billing.reconciler.handle_event(
        {
            "id": "evt_inv_1",
            "type": "invoice.paid",
            "created": 1_760_000_000,
            "data": {"object": {"id": "in_1", "subscription": "sub_1", "metadata": {"account_id": "acct-1"}}},
        }
    )
    sub = billing_client.get("/subscriptions/acct-1", headers=HEADERS).json()
    assert sub["status"] == "active"

    canceled = billing_client.post(
        "/subscriptions/acct-1/cancel", json={"reason": "switching", "at_period_end": True}, headers=HEADERS
    ).json()
    assert canceled["cancel_at_period_end"] is True
    reactivated = billing_client.post("/subscriptions/acct-1/reactivate", headers=HEADERS).json()
    assert reactivated["cancel_at_period_end"] is False


def test_checkout_endpoint(billing_client, provider):
    resp = billing_client.post("/credits/checkout", json={"account_id": "acct-1", "package_id": "small"}, headers=HEADERS)
    assert resp.status_code == 200
    assert resp.json()["id"] == "cs_test_1"

    bad = billing_client.post("/credits/checkout", json={"account_id": "acct-1", "package_id": "nope"}, headers=HEADERS)
    assert bad.status_code == 400
