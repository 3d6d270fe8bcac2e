"""Ledger service API + lifecycle.

Serves balances, spend authorization, usage reports and the projection
reconciliation sweep; publishes `credits.balance_changed` from the outbox.
"""

import asyncio
from contextlib import asynccontextmanager
from datetime import datetime
from time import time

import redis
from fastapi import FastAPI, Header, HTTPException
from fastapi.responses import JSONResponse

from cravledger.common.config import settings
from cravledger.common.db import SessionLocal
from cravledger.common.errors import InsufficientCredits, PlanLimitExceeded, ProjectionDriftDetected
from cravledger.common.http import enforce_api_key, install_request_metrics
from cravledger.common.logging import configure_logging, log_context, logger
from cravledger.common.metrics import metrics_response
from cravledger.common.startup import log_startup_config
from cravledger.common.tracing import instrument_app, setup_tracing
from cravledger.services.ledger.authorizer import LIMIT_KINDS
from cravledger.services.ledger.models import as_utc
from cravledger.services.ledger.schemas import (
    AdjustmentRequest,
    BalanceResponse,
    EntryResponse,
    SpendRequest,
    SpendResponse,
)
from cravledger.services.ledger.service import LedgerService

configure_logging()
setup_tracing(settings.service_name)
log_startup_config(
    settings,
    ["postgres_dsn", "kafka_bootstrap_servers", "redis_url", "enforce_plan_limits", "reservation_ttl_seconds"],
)
service = LedgerService(SessionLocal)
rdb = redis.Redis.from_url(settings.redis_url, decode_responses=True)


@asynccontextmanager
async def lifespan(_: FastAPI):
    """Run the outbox publisher with the app lifecycle."""

    publisher_task = asyncio.create_task(service.publisher.run_forever())
    yield
    publisher_task.cancel()
    await service.publisher.close()


app = FastAPI(title="CRAV Credit Ledger", lifespan=lifespan)
instrument_app(app)
install_request_metrics(app)


def enforce_token_bucket(account_id: str) -> None:
    # Redis token bucket (capacity = refill rate = limit per minute).
    key = f"tokenbucket:spend:{account_id}"
    now = time()
    capacity = float(settings.rate_limit_per_minute)
    refill_per_sec = capacity / 60.0

    values = rdb.hmget(key, "tokens", "updated_at")
    tokens = float(values[0]) if values[0] is not None else capacity
    updated_at = float(values[1]) if values[1] is not None else now
    tokens = min(capacity, tokens + max(0.0, now - updated_at) * refill_per_sec)

    allowed = tokens >= 1.0
    if allowed:
        tokens -= 1.0
    rdb.hset(key, mapping={"tokens": tokens, "updated_at": now})
    rdb.expire(key, 120)
    if not allowed:
        raise HTTPException(status_code=429, detail="rate limit exceeded")


def _drift_response(exc: ProjectionDriftDetected) -> JSONResponse:
    return JSONResponse(
        status_code=409,
        content={
            "error": "projection_drift",
            "account_id": exc.account_id,
            "projected": exc.projected.as_dict(),
            "folded": exc.folded.as_dict(),
        },
    )


@app.get("/accounts/{account_id}/balance", response_model=BalanceResponse)
def get_balance(account_id: str, verify: bool = False, x_api_key: str | None = Header(default=None)):
    """Projected balance; `verify=true` cross-checks a full ledger fold."""

    enforce_api_key(x_api_key)
    try:
        snapshot = service.projector.get_balance(account_id, verify=verify)
    except ProjectionDriftDetected as exc:
        return _drift_response(exc)
    return BalanceResponse(**{k: v for k, v in snapshot.as_dict().items() if k != "last_seq"})


@app.post("/accounts/{account_id}/rebuild", response_model=BalanceResponse)
def rebuild_balance(account_id: str, x_api_key: str | None = Header(default=None)):
    """Recompute the projection row from the ledger."""

    enforce_api_key(x_api_key)
    snapshot = service.projector.rebuild(account_id)
    return BalanceResponse(**{k: v for k, v in snapshot.as_dict().items() if k != "last_seq"})


@app.post("/accounts/{account_id}/spend", response_model=SpendResponse)
def spend(account_id: str, req: SpendRequest, x_api_key: str | None = Header(default=None)):
    """Authorize and record a spend, or answer 402 with the current balance."""

    enforce_api_key(x_api_key)
    enforce_token_bucket(account_id)
    try:
        with log_context(account_id=account_id):
            decision = service.authorizer.authorize(
                account_id,
                req.amount,
                kind=req.kind,
                description=req.description,
                idempotency_key=req.idempotency_key,
                meta=req.metadata,
            )
    except InsufficientCredits as exc:
        return JSONResponse(
            status_code=402,
            content={
                "error": "insufficient_credits",
                "requested": exc.requested,
                "balance": exc.balance,
                "available": exc.available,
            },
        )
    except PlanLimitExceeded as exc:
        return JSONResponse(
            status_code=402,
            content={"error": "plan_limit_exceeded", "kind": exc.kind, "used": exc.used, "limit": exc.limit},
        )
    return SpendResponse(
        approved=decision.approved,
        remaining_balance=decision.remaining_balance,
        entry_id=decision.entry_id,
        duplicate=decision.duplicate,
    )


@app.post("/accounts/{account_id}/adjustments")
def adjust(account_id: str, req: AdjustmentRequest, x_api_key: str | None = Header(default=None)):
    """Append an admin correction entry."""

    enforce_api_key(x_api_key)
    try:
        result = service.adjust(account_id, req.amount, req.reason, req.actor, req.idempotency_key)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    logger.info("adjustment account_id=%s amount=%s actor=%s", account_id, req.amount, req.actor)
    return {
        "entry_id": result.entry_id,
        "duplicate": result.duplicate,
        "balance": result.balance,
    }


@app.get("/accounts/{account_id}/entries", response_model=list[EntryResponse])
def list_entries(
    account_id: str,
    since: datetime | None = None,
    limit: int = 500,
    x_api_key: str | None = Header(default=None),
):
    """Ledger entries oldest first."""

    enforce_api_key(x_api_key)
    entries = service.store.list_for_account(account_id, since=since, limit=limit)
    return [
        EntryResponse(
            entry_id=e.entry_id,
            account_id=e.account_id,
            seq=e.seq,
            amount=e.amount,
            kind=e.kind,
            source_event_id=e.source_event_id,
            description=e.description,
            created_at=as_utc(e.created_at),
        )
        for e in entries
    ]


@app.get("/accounts/{account_id}/usage")
def usage(
    account_id: str,
    period: str = "30d",
    start: datetime | None = None,
    end: datetime | None = None,
    x_api_key: str | None = Header(default=None),
):
    """Consumption by kind and day, for a trailing period or explicit window."""

    enforce_api_key(x_api_key)
    if (start is None) != (end is None):
        raise HTTPException(status_code=400, detail="start and end must be given together")
    try:
        if start is not None:
            summary = service.reporter.usage_summary(account_id, start, end)
        else:
            summary = service.reporter.usage_for_period(account_id, period)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    balance = service.projector.get_balance(account_id)
    return {
        "credits": {
            "balance": balance.balance,
            "lifetime_earned": balance.lifetime_earned,
            "lifetime_spent": balance.lifetime_spent,
        },
        "usage": summary.as_dict(),
    }


@app.get("/accounts/{account_id}/limits")
def limits(account_id: str, x_api_key: str | None = Header(default=None)):
    """Plan limits and usage in the current billing period."""

    enforce_api_key(x_api_key)
    status = service.authorizer.limit_status(account_id)
    return {
        "plan": status.plan_id,
        "period_start": status.period_start.isoformat(),
        "period_end": status.period_end.isoformat(),
        "credits_used": status.credits_used,
        "credits_limit": status.credit_limit,
        "api_calls_used": status.api_calls_used,
        "api_calls_limit": status.api_call_limit,
        "credits_used_percent": status.credits_used_percent,
        "within": {kind: service.authorizer.check_limit(account_id, kind) for kind in LIMIT_KINDS},
    }


@app.get("/transactions")
def transactions(account_id: str | None = None, limit: int = 50, x_api_key: str | None = Header(default=None)):
    """Most recent ledger entries, platform-wide or for one account."""

    enforce_api_key(x_api_key)
    return [
        {
            "entry_id": e.entry_id,
            "account_id": e.account_id,
            "amount": e.amount,
            "kind": e.kind,
            "description": e.description,
            "created_at": as_utc(e.created_at).isoformat(),
        }
        for e in service.reporter.recent_transactions(account_id, limit=limit)
    ]


@app.get("/summary")
def summary(x_api_key: str | None = Header(default=None)):
    """Platform-wide credit totals."""

    enforce_api_key(x_api_key)
    return service.reporter.platform_summary()


@app.get("/audit")
def audit(
    account_id: str | None = None,
    action: str | None = None,
    limit: int = 50,
    offset: int = 0,
    x_api_key: str | None = Header(default=None),
):
    """Paged audit trail, newest first."""

    enforce_api_key(x_api_key)
    logs, total = service.audit_logs(account_id=account_id, action=action, limit=limit, offset=offset)
    return {
        "total": total,
        "logs": [
            {
                "id": log.id,
                "account_id": log.account_id,
                "action": log.action,
                "target": log.target,
                "target_id": log.target_id,
                "meta": log.meta,
                "created_at": as_utc(log.created_at).isoformat(),
            }
            for log in logs
        ],
    }


@app.get("/reconciliation")
def reconciliation_report(limit: int = 1000, x_api_key: str | None = Header(default=None)):
    """Accounts whose projection disagrees with the ledger."""

    enforce_api_key(x_api_key)
    drifted = service.projector.find_drift(limit=limit)
    return {"drifted_count": len(drifted), "drifted_accounts": drifted}


@app.get("/metrics")
def metrics():
    """Prometheus scrape endpoint."""

    return metrics_response()


@app.get("/health")
def health():
    """Container health probe endpoint."""

    return {"ok": True}
