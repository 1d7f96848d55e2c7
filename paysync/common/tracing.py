"""OpenTelemetry wiring: OTLP export, request spans and gateway call spans.

`gateway_span` works with tracing disabled too; without an installed provider
the API hands out no-op spans.
"""

from fastapi import FastAPI
from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.sdk.resources import SERVICE_NAME, Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.trace import SpanKind

from paysync.common.config import settings


TRACER_NAME = "paysync"
# Scraped and polled constantly; spans for them are noise.
UNTRACED_ROUTES = "metrics,health"


def setup_tracing(service_name: str, endpoint: str | None = None) -> TracerProvider | None:
    if not settings.otel_enabled:
        return None
    provider = TracerProvider(
        resource=Resource.create({SERVICE_NAME: service_name, "service.namespace": TRACER_NAME})
    )
    exporter = OTLPSpanExporter(endpoint=endpoint or settings.otel_exporter_otlp_endpoint)
    provider.add_span_processor(BatchSpanProcessor(exporter))
    trace.set_tracer_provider(provider)
    return provider


def instrument_app(app: FastAPI) -> None:
    if settings.otel_enabled:
        FastAPIInstrumentor.instrument_app(app, excluded_urls=UNTRACED_ROUTES)


def gateway_span(operation: str, http_method: str, path: str):
    """Client span covering one gateway operation, retries included.

    Only the path is recorded; query strings can carry payer emails.
    """

    return trace.get_tracer(TRACER_NAME).start_as_current_span(
        f"gateway {operation}",
        kind=SpanKind.CLIENT,
        attributes={
            "gateway.operation": operation,
            "http.request.method": http_method,
            "url.path": path.split("?", 1)[0],
        },
    )
