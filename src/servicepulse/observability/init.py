"""
Observability bootstrap

``initialize_observability`` wires console logging, tracing and metrics from
one ObservabilityConfig. The CLI calls it once per process; an application
embedding the engine can skip it and keep its own handlers.
"""

import logging
import logging.config
from typing import Any, Optional

from opentelemetry import trace
from opentelemetry.sdk.trace import TracerProvider

from ..context import get_service
from .config import ObservabilityConfig
from .metrics import initialize_metrics, reset_metrics
from .tracer import initialize_tracing

logger = logging.getLogger(__name__)

_active: Optional[ObservabilityConfig] = None


class LogCorrelationFilter(logging.Filter):
    """Stamps records with the service being evaluated and the current span"""

    def __init__(self, include_trace: bool = False):
        super().__init__()
        self.include_trace = include_trace

    def filter(self, record: logging.LogRecord) -> bool:
        record.service_id = get_service() or "-"
        if self.include_trace:
            span_context = trace.get_current_span().get_span_context()
            valid = span_context.is_valid
            record.trace_id = format(span_context.trace_id, "032x") if valid else ""
            record.span_id = format(span_context.span_id, "016x") if valid else ""
        return True


def _include_trace(config: ObservabilityConfig) -> bool:
    return config.tracing.enabled and config.logging.include_trace_id


def _formatter(config: ObservabilityConfig) -> dict[str, Any]:
    correlation = "%(service_id)s"
    if _include_trace(config):
        correlation += " %(trace_id)s %(span_id)s"

    if config.logging.format == "json":
        return {
            "()": "pythonjsonlogger.json.JsonFormatter",
            "fmt": f"%(asctime)s %(name)s %(levelname)s {correlation} %(message)s",
        }
    return {"format": f"%(asctime)s %(levelname)-8s %(name)s [{correlation}] %(message)s"}


def configure_logging(config: ObservabilityConfig) -> None:
    """Route all logging to one stderr handler, keeping stdout for command output"""
    level = config.logging.level
    logging.config.dictConfig(
        {
            "version": 1,
            "disable_existing_loggers": False,
            "filters": {
                "correlation": {
                    "()": LogCorrelationFilter,
                    "include_trace": _include_trace(config),
                }
            },
            "formatters": {"default": _formatter(config)},
            "handlers": {
                "console": {
                    "class": "logging.StreamHandler",
                    "level": level,
                    "formatter": "default",
                    "filters": ["correlation"],
                    "stream": "ext://sys.stderr",
                }
            },
            "root": {"level": level, "handlers": ["console"]},
        }
    )


def initialize_observability(config: ObservabilityConfig) -> bool:
    """
    Set up logging, tracing and metrics

    Returns:
        False when observability is switched off or was already initialized
    """
    global _active

    if _active is not None:
        logger.warning("Observability already initialized, skipping")
        return False
    if not config.enabled:
        logger.debug("Observability is disabled")
        return False

    if config.logging.enabled:
        configure_logging(config)
    if config.tracing.enabled:
        initialize_tracing(config)
    if config.metrics.enabled:
        initialize_metrics(config)

    _active = config
    logger.info(
        f"Observability ready ({config.environment}): "
        f"tracing={config.tracing.enabled} metrics={config.metrics.enabled}"
    )
    return True


def get_observability_config() -> Optional[ObservabilityConfig]:
    return _active


def is_observability_initialized() -> bool:
    return _active is not None


def shutdown_observability() -> None:
    """Flush pending spans and drop the metrics collector"""
    global _active

    if _active is None:
        return

    provider = trace.get_tracer_provider()
    if isinstance(provider, TracerProvider):
        provider.shutdown()
    reset_metrics()

    _active = None
    logger.info("Observability shut down")
