"""OpenTelemetry tracing setup and span helpers."""

import logging
from contextlib import contextmanager
from typing import Iterator, Optional

from opentelemetry import trace
from opentelemetry.propagate import set_global_textmap
from opentelemetry.sdk.resources import SERVICE_NAME, SERVICE_VERSION, Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor, ConsoleSpanExporter
from opentelemetry.trace import Span, Status, StatusCode
from opentelemetry.trace.propagation.tracecontext import TraceContextTextMapPropagator

logger = logging.getLogger(__name__)

TRACER_NAME = "tenant_billing"

_provider: Optional[TracerProvider] = None


def setup_tracing(
    service_name: str,
    service_version: str,
    environment: str = "development",
    enable_console_export: bool = False,
) -> trace.Tracer:
    """Install a tracer provider for the process.

    Args:
        service_name: Reported service name
        service_version: Reported service version
        environment: Deployment environment label
        enable_console_export: Print finished spans to stdout

    Returns:
        Tracer for the billing engine
    """
    global _provider

    resource = Resource.create({
        SERVICE_NAME: service_name,
        SERVICE_VERSION: service_version,
        "deployment.environment": environment,
    })
    _provider = TracerProvider(resource=resource)

    if enable_console_export:
        _provider.add_span_processor(BatchSpanProcessor(ConsoleSpanExporter()))

    trace.set_tracer_provider(_provider)
    set_global_textmap(TraceContextTextMapPropagator())

    logger.info(f"Tracing initialized for {service_name} v{service_version}")
    return trace.get_tracer(TRACER_NAME, service_version)


def get_tracer() -> trace.Tracer:
    # Falls back to the no-op provider until setup_tracing() runs.
    return trace.get_tracer(TRACER_NAME)


def _current_context() -> Optional[trace.SpanContext]:
    span = trace.get_current_span()
    context = span.get_span_context()
    return context if context.is_valid else None


def get_trace_id() -> Optional[str]:
    context = _current_context()
    return format(context.trace_id, "032x") if context else None


def get_span_id() -> Optional[str]:
    context = _current_context()
    return format(context.span_id, "016x") if context else None


@contextmanager
def create_span(
    name: str,
    attributes: Optional[dict] = None,
    kind: trace.SpanKind = trace.SpanKind.INTERNAL,
) -> Iterator[Span]:
    """Open a span around a block.

    Args:
        name: Span name
        attributes: Initial span attributes
        kind: Span kind

    Yields:
        The active span
    """
    with get_tracer().start_as_current_span(
        name, kind=kind, attributes=attributes or {}
    ) as span:
        yield span


def add_span_attributes(attributes: dict) -> None:
    span = trace.get_current_span()
    for key, value in attributes.items():
        span.set_attribute(key, value)


def record_exception(exception: BaseException) -> None:
    """Mark the current span as failed with the given exception."""
    span = trace.get_current_span()
    span.record_exception(exception)
    span.set_status(Status(StatusCode.ERROR, str(exception)))


def shutdown_tracing() -> None:
    """Flush pending spans."""
    if _provider:
        _provider.shutdown()
        logger.info("Tracing shutdown complete")
