"""
OpenTelemetry tracing for queue operations.

Every queue call opens one span named after the operation (push_job,
reserve_job, ...). Until a process entry point calls setup_tracing() the
spans go to whatever global provider is installed, which is a no-op by
default, so library users pay nothing for them.
"""

from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.sqlalchemy import SQLAlchemyInstrumentor
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor, SpanExporter
from opentelemetry.trace import Span, Tracer

from jobqueue import __version__
from jobqueue.config import Settings, get_settings

TRACER_NAME = "jobqueue"

_tracer: Tracer | None = None
_provider: TracerProvider | None = None


def setup_tracing(
    settings: Settings | None = None,
    *,
    exporter: SpanExporter | None = None,
) -> Tracer:
    """
    Install a tracer provider for a worker or reaper process.

    Spans are exported over OTLP/gRPC to settings.otel_exporter_otlp_endpoint.
    An empty endpoint disables export; the provider still records spans so
    trace ids show up in logs.

    Args:
        settings: Application settings. Defaults to get_settings().
        exporter: Exporter to use instead of OTLP.

    Returns:
        The queue tracer.
    """
    global _tracer, _provider

    settings = settings or get_settings()

    _provider = provider = TracerProvider(
        resource=Resource.create(
            {
                "service.name": settings.otel_service_name,
                "service.version": __version__,
            }
        )
    )

    if exporter is None and settings.otel_exporter_otlp_endpoint:
        exporter = OTLPSpanExporter(endpoint=settings.otel_exporter_otlp_endpoint, insecure=True)
    if exporter is not None:
        provider.add_span_processor(BatchSpanProcessor(exporter))

    trace.set_tracer_provider(provider)

    # Bound to our provider, not the global one: the global provider can
    # only be set once per process
    _tracer = provider.get_tracer(TRACER_NAME, __version__)
    return _tracer


def reset_tracing() -> None:
    """Flush pending spans and forget the tracer installed by setup_tracing()."""
    global _tracer, _provider
    if _provider is not None:
        _provider.shutdown()
    _tracer = None
    _provider = None


def instrument_sqlalchemy(engine: Any) -> None:
    """
    Emit a child span for every SQL statement run by the queue.

    Args:
        engine: The Database's AsyncEngine.
    """
    SQLAlchemyInstrumentor().instrument(engine=engine.sync_engine)


def get_tracer() -> Tracer:
    """Get the queue tracer, falling back to the global provider."""
    if _tracer is None:
        return trace.get_tracer(TRACER_NAME, __version__)
    return _tracer


@contextmanager
def queue_span(name: str, **attributes: Any) -> Iterator[Span]:
    """
    Open a span for one queue operation.

    Attributes whose value is None are left off, since OpenTelemetry
    rejects them. Exceptions are recorded on the span and re-raised.

    Example:
        with queue_span(SPAN_ACK_JOB, job_id=job_id) as span:
            ...
            span.set_attribute("updated", True)
    """
    with get_tracer().start_as_current_span(
        name,
        attributes={key: value for key, value in attributes.items() if value is not None},
    ) as span:
        yield span
