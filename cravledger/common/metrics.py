"""Prometheus metric definitions shared across services."""

from prometheus_client import Counter, Gauge, Histogram, generate_latest
from starlette.responses import Response


credits_appended_total = Counter(
    "credits_appended_total",
    "Ledger entries appended",
    ["service", "kind"],
)
spend_decisions_total = Counter(
    "spend_decisions_total",
    "Spend authorization outcomes",
    ["service", "outcome"],
)
spend_latency_seconds = Histogram("spend_latency_seconds", "Spend authorization latency seconds", ["service"])
billing_events_total = Counter(
    "billing_events_total",
    "Billing provider events by reconcile status",
    ["service", "event_type", "status"],
)
projection_drift_total = Counter(
    "projection_drift_total",
    "Accounts whose projected balance disagreed with a full ledger fold",
    ["service"],
)
http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["service", "route", "method", "status_code"],
)
http_request_duration_seconds = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration seconds",
    ["service", "route", "method"],
)
event_queue_delay_seconds = Histogram(
    "event_queue_delay_seconds",
    "Event queue delay seconds between occurred_at and consume time",
    ["service", "topic"],
)
outbox_pending_total = Gauge(
    "outbox_pending_total",
    "Current count of outbox events not yet sent",
    ["service"],
)
outbox_oldest_pending_age_seconds = Gauge(
    "outbox_oldest_pending_age_seconds",
    "Age in seconds of the oldest pending outbox event",
    ["service"],
)
duplicate_events_skipped_total = Counter(
    "duplicate_events_skipped_total",
    "Duplicate billing events skipped",
    ["service", "topic"],
)
reservations_expired_total = Counter(
    "reservations_expired_total",
    "Credit reservations discarded after their lease lapsed",
    ["service"],
)


def metrics_response() -> Response:
    """Expose all registered Prometheus metrics in text format."""

    return Response(content=generate_latest(), media_type="text/plain")
