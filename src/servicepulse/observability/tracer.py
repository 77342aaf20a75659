"""
OpenTelemetry tracing

Evaluations and polling cycles run inside spans tagged with the service
being evaluated. Until ``initialize_tracing`` installs a provider the
no-op tracer is used, so every helper here is safe to call.
"""

import functools
import inspect
import logging
from contextlib import contextmanager
from typing import Any, Callable, Iterator, Optional, TypeVar

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.sdk.trace.sampling import ParentBased, TraceIdRatioBased

from ..context import get_service
from .config import ObservabilityConfig

logger = logging.getLogger(__name__)

_tracer: Optional[trace.Tracer] = None

F = TypeVar("F", bound=Callable[..., Any])


def initialize_tracing(config: ObservabilityConfig) -> None:
    """Install an SDK tracer provider, exporting over OTLP when an endpoint is set"""
    global _tracer

    if not config.enabled or not config.tracing.enabled:
        logger.info("Tracing is disabled")
        return

    tracing = config.tracing
    provider = TracerProvider(
        resource=Resource.create(config.get_resource_attributes()),
        sampler=ParentBased(TraceIdRatioBased(tracing.sample_rate)),
    )

    if config.should_export_traces():
        exporter = OTLPSpanExporter(
            endpoint=tracing.otlp_endpoint,
            headers=tracing.otlp_headers,
            insecure=tracing.otlp_insecure,
        )
        provider.add_span_processor(BatchSpanProcessor(exporter))
        logger.info(f"Exporting spans to {tracing.otlp_endpoint}")

    trace.set_tracer_provider(provider)
    _tracer = trace.get_tracer("servicepulse", tracing.service_version)
    logger.info(f"Tracing enabled (sample_rate={tracing.sample_rate})")


def get_tracer() -> trace.Tracer:
    if _tracer is None:
        return trace.NoOpTracer()
    return _tracer


@contextmanager
def span(name: str, attributes: Optional[dict[str, Any]] = None) -> Iterator[trace.Span]:
    """
    Run a block inside a span

    The service of the current ServiceContext, if any, is attached as
    ``service.id``. Exceptions are recorded on the span and re-raised.
    """
    span_attributes = dict(attributes or {})
    service_id = get_service()
    if service_id is not None:
        span_attributes.setdefault("service.id", service_id)

    with get_tracer().start_as_current_span(name, attributes=span_attributes) as current:
        yield current


def traced(name: Optional[str] = None) -> Callable[[F], F]:
    """Wrap a function or coroutine function in a span named ``name``"""

    def decorator(func: F) -> F:
        span_name = name or f"{func.__module__}.{func.__qualname__}"

        if inspect.iscoroutinefunction(func):

            @functools.wraps(func)
            async def async_wrapper(*args, **kwargs):
                with span(span_name):
                    return await func(*args, **kwargs)

            return async_wrapper  # type: ignore[return-value]

        @functools.wraps(func)
        def wrapper(*args, **kwargs):
            with span(span_name):
                return func(*args, **kwargs)

        return wrapper  # type: ignore[return-value]

    return decorator


def add_event(name: str, attributes: Optional[dict[str, Any]] = None) -> None:
    current = trace.get_current_span()
    if current.is_recording():
        current.add_event(name, attributes or {})


def set_attribute(key: str, value: Any) -> None:
    current = trace.get_current_span()
    if current.is_recording():
        current.set_attribute(key, value)


def is_tracing_enabled() -> bool:
    return _tracer is not None
