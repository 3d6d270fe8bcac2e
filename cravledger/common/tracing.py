"""OpenTelemetry wiring: OTLP export, FastAPI spans and a shared tracer.

`tracer` is safe to use before `setup_tracing` runs (or when it is disabled);
spans then go to the no-op provider.
"""

from fastapi import FastAPI
from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor

from cravledger.common.config import settings


tracer = trace.get_tracer("cravledger")


def setup_tracing(service_name: str) -> bool:
    """Register an OTLP HTTP exporting provider; returns False when disabled."""

    if not settings.otel_exporter_otlp_endpoint:
        return False
    provider = TracerProvider(resource=Resource.create({"service.name": service_name}))
    provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=settings.otel_exporter_otlp_endpoint)))
    trace.set_tracer_provider(provider)
    return True


def instrument_app(app: FastAPI) -> None:
    # Health and scrape endpoints would dominate span volume.
    FastAPIInstrumentor.instrument_app(app, excluded_urls="health,metrics")
