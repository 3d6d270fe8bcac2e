"""Billing service API + worker lifecycle.

Receives provider webhooks, exposes subscription commands and credit
checkout, and publishes subscription/balance changes from the outbox.
"""

import asyncio
from contextlib import asynccontextmanager

from fastapi import FastAPI, Header, HTTPException, Request
from fastapi.responses import JSONResponse

from cravledger.common.config import settings
from cravledger.common.db import SessionLocal
from cravledger.common.errors import InvalidTransition
from cravledger.common.http import enforce_api_key, install_request_metrics
from cravledger.common.logging import configure_logging
from cravledger.common.metrics import metrics_response
from cravledger.common.startup import log_startup_config
from cravledger.common.tracing import instrument_app, setup_tracing
from cravledger.services.billing.models import Subscription
from cravledger.services.billing.provider import ProviderError
from cravledger.services.billing.schemas import CancelRequest, CheckoutRequest, SubscriptionResponse
from cravledger.services.billing.service import BillingService
from cravledger.services.billing.subscriptions import SubscriptionNotFound
from cravledger.services.ledger.models import as_utc

configure_logging()
setup_tracing(settings.service_name)
log_startup_config(
    settings,
    ["postgres_dsn", "kafka_bootstrap_servers", "stripe_api_key", "stripe_webhook_secret", "site_url"],
)
service = BillingService(SessionLocal)


@asynccontextmanager
async def lifespan(_: FastAPI):
    """Run outbox publisher + relay consumer with app lifecycle."""

    publisher_task = asyncio.create_task(service.publisher.run_forever())
    consumer_task = asyncio.create_task(service.start_consumers())
    yield
    publisher_task.cancel()
    consumer_task.cancel()
    await service.publisher.close()


app = FastAPI(title="CRAV Billing", lifespan=lifespan)
instrument_app(app)
install_request_metrics(app)


def _subscription_response(sub: Subscription) -> SubscriptionResponse:
    return SubscriptionResponse(
        account_id=sub.account_id,
        plan_id=sub.plan_id,
        status=sub.status,
        provider_subscription_id=sub.provider_subscription_id,
        cancel_at_period_end=bool(sub.cancel_at_period_end),
        current_period_end=as_utc(sub.current_period_end).isoformat() if sub.current_period_end else None,
    )


@app.post("/webhooks/stripe")
async def stripe_webhook(request: Request, stripe_signature: str | None = Header(default=None)):
    """Provider webhook; 400 on rejection so the provider retries delivery."""

    payload = await request.body()
    result = await asyncio.to_thread(service.reconciler.handle_event, payload, stripe_signature)
    body = {"status": result.status, "event_id": result.event_id, "entry_id": result.entry_id}
    if not result.acknowledged:
        return JSONResponse(status_code=400, content={**body, "error": result.error})
    return {"received": True, **body}


@app.get("/subscriptions/{account_id}", response_model=SubscriptionResponse)
def get_subscription(account_id: str, x_api_key: str | None = Header(default=None)):
    enforce_api_key(x_api_key)
    sub = service.subscriptions.get(account_id)
    if sub is None:
        raise HTTPException(status_code=404, detail="subscription not found")
    return _subscription_response(sub)


@app.post("/subscriptions/{account_id}/cancel", response_model=SubscriptionResponse)
def cancel_subscription(account_id: str, req: CancelRequest, x_api_key: str | None = Header(default=None)):
    """Cancel immediately or at period end; credits already granted are kept."""

    enforce_api_key(x_api_key)
    try:
        sub = service.subscriptions.cancel(account_id, reason=req.reason, at_period_end=req.at_period_end)
    except SubscriptionNotFound as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except InvalidTransition as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    except ProviderError as exc:
        raise HTTPException(status_code=502, detail=str(exc)) from exc
    return _subscription_response(sub)


@app.post("/subscriptions/{account_id}/reactivate", response_model=SubscriptionResponse)
def reactivate_subscription(account_id: str, x_api_key: str | None = Header(default=None)):
    enforce_api_key(x_api_key)
    try:
        sub = service.subscriptions.reactivate(account_id)
    except SubscriptionNotFound as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except InvalidTransition as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    except ProviderError as exc:
        raise HTTPException(status_code=502, detail=str(exc)) from exc
    return _subscription_response(sub)


@app.post("/credits/checkout")
def credit_checkout(req: CheckoutRequest, x_api_key: str | None = Header(default=None)):
    """Create a checkout session for a credit package."""

    enforce_api_key(x_api_key)
    try:
        return service.subscriptions.create_credit_checkout(req.account_id, req.package_id, req.customer_id)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except ProviderError as exc:
        raise HTTPException(status_code=502, detail=str(exc)) from exc


@app.get("/health")
def health():
    """Container health probe endpoint."""

    return {"ok": True}


@app.get("/metrics")
def metrics():
    """Prometheus scrape endpoint."""

    return metrics_response()
