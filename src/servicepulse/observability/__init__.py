"""
Observability module for servicepulse

Provides logging configuration, OpenTelemetry tracing and Prometheus
metrics for the evaluation engine and its pollers.
"""

from .config import ObservabilityConfig
from .init import (
    initialize_observability,
    is_observability_initialized,
    shutdown_observability,
)
from .metrics import MetricsCollector, get_metrics
from .tracer import add_event, get_tracer, set_attribute, span, traced

__all__ = [
    "ObservabilityConfig",
    "get_tracer",
    "span",
    "traced",
    "add_event",
    "set_attribute",
    "get_metrics",
    "MetricsCollector",
    "initialize_observability",
    "shutdown_observability",
    "is_observability_initialized",
]
