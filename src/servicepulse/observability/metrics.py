"""
Prometheus metrics collection for servicepulse

Tracks evaluation cycles, published health and risk values, anomaly
activity, ingestion rejects and fetch failures.
"""

import logging
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Optional

from prometheus_client import (
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    Info,
    generate_latest,
    start_http_server,
)

from .config import ObservabilityConfig

logger = logging.getLogger(__name__)


@dataclass
class MetricsCollector:
    """
    Central metrics collector for engine operations

    Each collector owns its registry so several engines (or tests) can
    coexist in one process.
    """

    config: ObservabilityConfig
    registry: CollectorRegistry = field(default_factory=CollectorRegistry)

    # Evaluation metrics
    evaluations_total: Counter = field(init=False)
    evaluation_duration: Histogram = field(init=False)
    health_score: Gauge = field(init=False)
    current_risk: Gauge = field(init=False)
    service_stale: Gauge = field(init=False)

    # Anomaly metrics
    anomalies_detected_total: Counter = field(init=False)
    open_anomalies: Gauge = field(init=False)

    # Ingestion and fetch metrics
    out_of_order_total: Counter = field(init=False)
    fetch_errors_total: Counter = field(init=False)
    fetch_duration: Histogram = field(init=False)
    active_fetches: Gauge = field(init=False)

    system_info: Info = field(init=False)

    def __post_init__(self):
        """Initialize all metrics after dataclass creation"""
        self._initialize_metrics()

        if self.config.should_start_metrics_server():
            self._start_metrics_server()

    def _initialize_metrics(self):
        labels = list(self.config.metrics.default_labels.keys())

        self.evaluations_total = Counter(
            "servicepulse_evaluations_total",
            "Total number of service evaluations",
            labelnames=["outcome"] + labels,
            registry=self.registry,
        )

        self.evaluation_duration = Histogram(
            "servicepulse_evaluation_duration_seconds",
            "Duration of a score/detect/correlate/assess pass",
            labelnames=labels,
            buckets=self.config.metrics.evaluation_buckets,
            registry=self.registry,
        )

        self.health_score = Gauge(
            "servicepulse_health_score",
            "Most recently published health score",
            labelnames=["service"] + labels,
            registry=self.registry,
        )

        self.current_risk = Gauge(
            "servicepulse_current_risk",
            "Most recently published risk value",
            labelnames=["service"] + labels,
            registry=self.registry,
        )

        self.service_stale = Gauge(
            "servicepulse_service_stale",
            "1 when the published report is stale",
            labelnames=["service"] + labels,
            registry=self.registry,
        )

        self.anomalies_detected_total = Counter(
            "servicepulse_anomalies_detected_total",
            "Total number of newly detected anomalies",
            labelnames=["type", "severity"] + labels,
            registry=self.registry,
        )

        self.open_anomalies = Gauge(
            "servicepulse_open_anomalies",
            "Number of unresolved anomalies",
            labelnames=["service"] + labels,
            registry=self.registry,
        )

        self.out_of_order_total = Counter(
            "servicepulse_out_of_order_samples_total",
            "Total number of samples rejected as out of order",
            labelnames=["service"] + labels,
            registry=self.registry,
        )

        self.fetch_errors_total = Counter(
            "servicepulse_fetch_errors_total",
            "Total number of failed telemetry or deployment fetches",
            labelnames=["source"] + labels,
            registry=self.registry,
        )

        self.fetch_duration = Histogram(
            "servicepulse_fetch_duration_seconds",
            "Duration of remote fetches",
            labelnames=["source"] + labels,
            buckets=self.config.metrics.fetch_buckets,
            registry=self.registry,
        )

        self.active_fetches = Gauge(
            "servicepulse_active_fetches",
            "Number of in-flight remote fetches",
            labelnames=labels,
            registry=self.registry,
        )

        self.system_info = Info(
            "servicepulse_system", "System information", registry=self.registry
        )
        self.system_info.info(
            {
                "version": self.config.tracing.service_version,
                "environment": self.config.environment,
            }
        )

        logger.info("Prometheus metrics initialized")

    def _start_metrics_server(self):
        try:
            start_http_server(port=self.config.metrics.port, registry=self.registry)
            logger.info(f"Metrics server started on port {self.config.metrics.port}")
        except OSError as e:
            logger.error(f"Failed to start metrics server: {e}")

    def _labels(self, **labels: str) -> dict[str, str]:
        return {**self.config.metrics.default_labels, **labels}

    def _unlabelled(self, metric):
        """Metric child for collectors that only carry the default labels"""
        labels = self._labels()
        return metric.labels(**labels) if labels else metric

    @contextmanager
    def time_evaluation(self):
        start_time = time.perf_counter()
        try:
            yield
        finally:
            self._unlabelled(self.evaluation_duration).observe(
                time.perf_counter() - start_time
            )

    @contextmanager
    def track_fetch(self, source: str):
        """Time a remote fetch and count it as in flight"""
        self._unlabelled(self.active_fetches).inc()
        start_time = time.perf_counter()
        try:
            yield
        finally:
            self._unlabelled(self.active_fetches).dec()
            self.fetch_duration.labels(**self._labels(source=source)).observe(
                time.perf_counter() - start_time
            )

    def record_evaluation(
        self,
        service_id: str,
        outcome: str,
        score: Optional[float] = None,
        risk: Optional[float] = None,
        open_anomalies: Optional[int] = None,
    ):
        self.evaluations_total.labels(**self._labels(outcome=outcome)).inc()
        self.service_stale.labels(**self._labels(service=service_id)).set(
            1 if outcome == "stale" else 0
        )
        if score is not None:
            self.health_score.labels(**self._labels(service=service_id)).set(score)
        if risk is not None:
            self.current_risk.labels(**self._labels(service=service_id)).set(risk)
        if open_anomalies is not None:
            self.open_anomalies.labels(**self._labels(service=service_id)).set(
                open_anomalies
            )

    def record_anomaly_detected(self, anomaly_type: str, severity: str):
        self.anomalies_detected_total.labels(
            **self._labels(type=anomaly_type, severity=severity)
        ).inc()

    def record_out_of_order(self, service_id: str):
        self.out_of_order_total.labels(**self._labels(service=service_id)).inc()

    def record_fetch_error(self, source: str):
        self.fetch_errors_total.labels(**self._labels(source=source)).inc()

    def get_metrics_text(self) -> str:
        """Get metrics in Prometheus text format"""
        return generate_latest(self.registry).decode("utf-8")


# Global metrics instance
_metrics: Optional[MetricsCollector] = None


def initialize_metrics(config: ObservabilityConfig) -> MetricsCollector:
    """Initialize the global metrics collector"""
    global _metrics
    _metrics = MetricsCollector(config)
    return _metrics


def get_metrics() -> Optional[MetricsCollector]:
    """Get the global metrics collector (None when metrics are disabled)"""
    return _metrics


def reset_metrics() -> None:
    global _metrics
    _metrics = None
