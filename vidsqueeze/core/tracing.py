"""OpenTelemetry tracing.

The HTTP layer opens one server span per request. Inside a job, the
probe, the thumbnail and each encode pass get their own internal span
tagged with the job id, so a slow pass shows up under its job's trace.
"""

import logging
from contextlib import contextmanager
from typing import Any, Iterator, Optional

from opentelemetry import trace
from opentelemetry.sdk.resources import SERVICE_NAME, SERVICE_VERSION, Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor, ConsoleSpanExporter
from opentelemetry.trace import Span, Status, StatusCode

logger = logging.getLogger(__name__)

TRACER_NAME = "vidsqueeze"

_provider: Optional[TracerProvider] = None


def setup_tracing(
    service_name: str,
    service_version: str,
    environment: str = "development",
    enable_console_export: bool = False,
) -> trace.Tracer:
    """Install a tracer provider for this process.

    Args:
        service_name: Reported as ``service.name``
        service_version: Reported as ``service.version``
        environment: Deployment environment
        enable_console_export: Print finished spans to stdout

    Returns:
        Tracer bound to the new provider
    """
    global _provider

    _provider = TracerProvider(resource=Resource.create({
        SERVICE_NAME: service_name,
        SERVICE_VERSION: service_version,
        "deployment.environment": environment,
    }))
    if enable_console_export:
        _provider.add_span_processor(BatchSpanProcessor(ConsoleSpanExporter()))

    # Only the first provider becomes global; later app instances in the
    # same process trace through their own provider via get_tracer().
    trace.set_tracer_provider(_provider)

    logger.info(
        f"Tracing initialized for {service_name} v{service_version}",
        extra={"console_export": enable_console_export},
    )
    return _provider.get_tracer(TRACER_NAME, service_version)


def get_tracer() -> trace.Tracer:
    if _provider is None:
        return trace.get_tracer(TRACER_NAME)
    return _provider.get_tracer(TRACER_NAME)


def current_ids() -> tuple[Optional[str], Optional[str]]:
    """Trace and span id of the active span, hex encoded."""
    context = trace.get_current_span().get_span_context()
    if not context.is_valid:
        return None, None
    return format(context.trace_id, "032x"), format(context.span_id, "016x")


def _clean(attributes: Optional[dict]) -> dict[str, Any]:
    # None is not a valid attribute value
    return {k: v for k, v in (attributes or {}).items() if v is not None}


@contextmanager
def create_span(
    name: str,
    attributes: Optional[dict] = None,
    kind: trace.SpanKind = trace.SpanKind.INTERNAL,
) -> Iterator[Span]:
    """Open ``name`` as the current span for the block."""
    with get_tracer().start_as_current_span(name, kind=kind, attributes=_clean(attributes)) as span:
        yield span


def job_span(name: str, job_id: str, attributes: Optional[dict] = None):
    """Internal span for one stage of a transcode job."""
    return create_span(name, attributes={"job.id": job_id, **(attributes or {})})


def add_span_attributes(attributes: dict) -> None:
    span = trace.get_current_span()
    for key, value in _clean(attributes).items():
        span.set_attribute(key, value)


def record_exception(exception: BaseException, attributes: Optional[dict] = None) -> None:
    """Attach ``exception`` to the current span and mark the span failed."""
    span = trace.get_current_span()
    span.record_exception(exception, attributes=_clean(attributes))
    span.set_status(Status(StatusCode.ERROR, str(exception)))


def shutdown_tracing() -> None:
    """Flush pending spans and drop the provider."""
    global _provider
    if _provider is None:
        return
    _provider.shutdown()
    _provider = None
    logger.info("Tracing shutdown complete")
