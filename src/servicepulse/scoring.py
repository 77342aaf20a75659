"""
Health scoring

Maps a metrics snapshot to a 0-100 health score by subtracting one
deduction per metric from 100, then bands the score into a status.
"""

import logging
from collections.abc import Sequence
from datetime import datetime
from statistics import fmean
from typing import Optional

from .config import HealthConfig, MetricThreshold
from .models import HealthScore, HealthStatus, MetricsSnapshot, TelemetrySample

logger = logging.getLogger(__name__)

_STATUS_ORDER = {
    HealthStatus.CRITICAL: 0,
    HealthStatus.DEGRADING: 1,
    HealthStatus.HEALTHY: 2,
}


def deduction(value: Optional[float], threshold: MetricThreshold) -> float:
    """
    Points removed from the health score for one metric value

    Zero at or better than ``good``, linear up to ``warning_deduction`` at
    ``warning`` and capped at ``max_deduction`` beyond it.
    """
    if value is None:
        return 0.0

    distance = threshold.good - value if threshold.inverted else value - threshold.good
    if distance <= 0:
        return 0.0

    slope = threshold.warning_deduction / abs(threshold.warning - threshold.good)
    return min(threshold.max_deduction, distance * slope)


def classify_status(
    score: float, healthy_min: float = 80.0, degrading_min: float = 60.0
) -> HealthStatus:
    """Status band for a score (pure, no hysteresis)"""
    if score >= healthy_min:
        return HealthStatus.HEALTHY
    if score >= degrading_min:
        return HealthStatus.DEGRADING
    return HealthStatus.CRITICAL


def summarize(
    window: Sequence[TelemetrySample], samples: int = 1
) -> Optional[MetricsSnapshot]:
    """
    Recompute a current snapshot from the tail of a window

    Averages the last ``samples`` samples; returns None for an empty window.
    """
    if not window:
        return None

    tail = list(window[-samples:])
    if len(tail) == 1:
        return tail[0].snapshot()

    throughputs = [s.throughput_per_sec for s in tail if s.throughput_per_sec is not None]
    return MetricsSnapshot(
        cpu_percent=fmean(s.cpu_percent for s in tail),
        memory_percent=fmean(s.memory_percent for s in tail),
        latency_ms=fmean(s.latency_ms for s in tail),
        error_rate_percent=fmean(s.error_rate_percent for s in tail),
        throughput_per_sec=fmean(throughputs) if throughputs else None,
        timestamp=tail[-1].timestamp,
    )


class HealthScorer:
    """Converts snapshots into HealthScore records"""

    def __init__(self, config: HealthConfig):
        self.config = config

    def metric_deductions(self, snapshot: MetricsSnapshot) -> dict[str, float]:
        """Per-metric deduction breakdown, in a fixed metric order"""
        return {
            "cpu": deduction(snapshot.cpu_percent, self.config.cpu),
            "memory": deduction(snapshot.memory_percent, self.config.memory),
            "latency": deduction(snapshot.latency_ms, self.config.latency),
            "error_rate": deduction(snapshot.error_rate_percent, self.config.error_rate),
            "throughput": deduction(snapshot.throughput_per_sec, self.config.throughput),
        }

    def compute(self, snapshot: MetricsSnapshot) -> float:
        total = sum(self.metric_deductions(snapshot).values())
        return round(max(0.0, min(100.0, 100.0 - total)), 1)

    def status_for(
        self, score: float, previous: Optional[HealthStatus] = None
    ) -> HealthStatus:
        """
        Status band for a score, debounced against the previous status

        With ``status_hysteresis`` set, a band change is accepted only after
        the score clears the crossed boundary by that margin.
        """
        cfg = self.config
        status = classify_status(score, cfg.healthy_min, cfg.degrading_min)
        margin = cfg.status_hysteresis
        if previous is None or margin <= 0 or status == previous:
            return status

        if _STATUS_ORDER[status] > _STATUS_ORDER[previous]:
            # Improving: score must exceed the boundary by the margin
            shifted = classify_status(
                score - margin, cfg.healthy_min, cfg.degrading_min
            )
        else:
            shifted = classify_status(
                score + margin, cfg.healthy_min, cfg.degrading_min
            )

        if shifted == status:
            return status
        # Not far enough past a boundary; move at most as far as the margin allows
        if _STATUS_ORDER[shifted] == _STATUS_ORDER[previous]:
            return previous
        return shifted

    def score(
        self,
        service_id: str,
        snapshot: MetricsSnapshot,
        computed_at: datetime,
        previous: Optional[HealthScore] = None,
    ) -> HealthScore:
        value = self.compute(snapshot)
        status = self.status_for(value, previous.status if previous else None)
        logger.debug(f"Health score for {service_id}: {value} ({status.value})")
        return HealthScore(
            service_id=service_id,
            score=value,
            status=status,
            computed_at=computed_at,
        )
