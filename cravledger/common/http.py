"""Request plumbing shared by the ledger and billing apps."""

from time import perf_counter
from uuid import uuid4

from fastapi import FastAPI, HTTPException, Request

from cravledger.common.config import settings
from cravledger.common.logging import trace_id_ctx
from cravledger.common.metrics import http_request_duration_seconds, http_requests_total


def _route_template(request: Request) -> str:
    # Label by path template so `/accounts/{account_id}/...` stays one series.
    route = request.scope.get("route")
    return getattr(route, "path", None) or request.url.path


def install_request_metrics(app: FastAPI) -> None:
    """Bind a trace id per request and record count and latency by route."""

    @app.middleware("http")
    async def request_metrics(request: Request, call_next):
        started = perf_counter()
        status_code = 500
        trace_id_ctx.set(request.headers.get("x-trace-id") or str(uuid4()))
        try:
            response = await call_next(request)
            status_code = response.status_code
            return response
        finally:
            labels = {"service": settings.service_name, "route": _route_template(request), "method": request.method}
            http_request_duration_seconds.labels(**labels).observe(max(0.0, perf_counter() - started))
            http_requests_total.labels(**labels, status_code=str(status_code)).inc()


def enforce_api_key(x_api_key: str | None) -> None:
    if x_api_key != settings.api_key:
        raise HTTPException(status_code=401, detail="invalid API key")
