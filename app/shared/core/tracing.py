"""
OpenTelemetry tracing for the billing service.

Spans are opened around the payment operations (renewal, verification,
reconciliation sweeps) and carry the tenant and order identifiers so a
trace can be lined up with the structured logs for the same request.
"""

from contextlib import contextmanager
from typing import Any, Iterator, Optional

import structlog
from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor, ConsoleSpanExporter
from opentelemetry.semconv.resource import ResourceAttributes
from opentelemetry.trace import Status, StatusCode

from app.shared.core.config import get_settings

logger = structlog.get_logger()

_tracer = trace.get_tracer("medora.billing")


def setup_tracing(app=None) -> None:
    """Install the tracer provider and instrument the FastAPI app."""
    settings = get_settings()
    if settings.TESTING:
        logger.info("billing_tracing_skipped", reason="testing")
        return

    provider = TracerProvider(resource=Resource(attributes={
        ResourceAttributes.SERVICE_NAME: "medora-billing",
        ResourceAttributes.DEPLOYMENT_ENVIRONMENT: settings.ENVIRONMENT,
    }))
    trace.set_tracer_provider(provider)

    if settings.OTEL_EXPORTER_OTLP_ENDPOINT:
        exporter = OTLPSpanExporter(
            endpoint=settings.OTEL_EXPORTER_OTLP_ENDPOINT,
            insecure=settings.OTEL_EXPORTER_OTLP_INSECURE,
        )
        logger.info("billing_tracing_enabled", exporter="otlp", endpoint=settings.OTEL_EXPORTER_OTLP_ENDPOINT)
    else:
        exporter = ConsoleSpanExporter()
        logger.info("billing_tracing_enabled", exporter="console")
    provider.add_span_processor(BatchSpanProcessor(exporter))

    if app is not None:
        FastAPIInstrumentor.instrument_app(app, excluded_urls="health,metrics")


@contextmanager
def billing_span(operation: str, tenant_id: Optional[Any] = None, **attributes: Any) -> Iterator[trace.Span]:
    """
    Span around one billing operation.

    Attributes are namespaced under ``billing.``; errors mark the span
    failed with the billing error kind when there is one.
    """
    with _tracer.start_as_current_span(f"billing.{operation}", record_exception=False) as span:
        if tenant_id is not None:
            span.set_attribute("billing.tenant_id", str(tenant_id))
        for name, value in attributes.items():
            if value is not None:
                span.set_attribute(f"billing.{name}", value)
        try:
            yield span
        except Exception as e:
            kind = getattr(e, "kind", None)
            span.set_attribute("billing.error_kind", getattr(kind, "value", type(e).__name__))
            span.set_status(Status(StatusCode.ERROR, str(e)))
            raise


def bind_correlation_id(correlation_id: str) -> None:
    """Tags the current span and every following log line with the correlation ID."""
    structlog.contextvars.bind_contextvars(correlation_id=correlation_id)
    span = trace.get_current_span()
    if span.is_recording():
        span.set_attribute("correlation_id", correlation_id)
