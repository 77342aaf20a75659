"""
Risk assessment

Combines the current health score, the unresolved anomalies and their
correlated deployments into one RiskAssessment per service and cycle.
"""

import logging
from collections.abc import Sequence
from datetime import datetime
from typing import Optional

from .config import HealthConfig, RiskConfig
from .models import (
    Anomaly,
    HealthScore,
    HealthStatus,
    MetricsSnapshot,
    RiskAssessment,
    Trend,
)

logger = logging.getLogger(__name__)

_TREND_BY_STATUS = {
    HealthStatus.HEALTHY: Trend.IMPROVING,
    HealthStatus.DEGRADING: Trend.STABLE,
    HealthStatus.CRITICAL: Trend.WORSENING,
}


def trend_for(status: HealthStatus) -> Trend:
    """Trend implied by a health band"""
    return _TREND_BY_STATUS[status]


class RiskAssessor:
    """Builds RiskAssessment records with factors and recommendations"""

    def __init__(self, config: RiskConfig, health_config: HealthConfig):
        self.config = config
        self.health_config = health_config

    def risk_band(self, risk: float) -> str:
        if risk > self.config.high_risk:
            return "High"
        if risk > self.config.elevated_risk:
            return "Elevated"
        return "Low"

    def metric_facts(self, snapshot: Optional[MetricsSnapshot]) -> list[str]:
        """Metrics currently past their warning threshold, as readable facts"""
        if snapshot is None:
            return []

        health = self.health_config
        facts = []
        if health.cpu.is_over_warning(snapshot.cpu_percent):
            facts.append(f"CPU: {snapshot.cpu_percent:.1f}%")
        if health.memory.is_over_warning(snapshot.memory_percent):
            facts.append(f"Memory: {snapshot.memory_percent:.1f}%")
        if health.latency.is_over_warning(snapshot.latency_ms):
            facts.append(f"Latency: {snapshot.latency_ms:.0f}ms")
        if health.error_rate.is_over_warning(snapshot.error_rate_percent):
            facts.append(f"Error rate: {snapshot.error_rate_percent:.1f}%")
        if snapshot.throughput_per_sec is not None and health.throughput.is_over_warning(
            snapshot.throughput_per_sec
        ):
            facts.append(f"Throughput: {snapshot.throughput_per_sec:.1f} req/s")
        return facts

    def recommendations(
        self,
        risk: float,
        snapshot: Optional[MetricsSnapshot],
        anomalies: Sequence[Anomaly],
    ) -> list[str]:
        cfg = self.config
        if risk > cfg.high_risk:
            items = ["Immediate investigation required"]
        elif risk > cfg.elevated_risk:
            items = ["Schedule maintenance soon"]
        else:
            items = ["Monitor closely"]

        if snapshot is not None:
            if snapshot.memory_percent > cfg.memory_pressure:
                items.append("Optimize memory usage")
            if snapshot.cpu_percent > cfg.cpu_pressure:
                items.append("Scale up resources")

        for anomaly in anomalies:
            if not anomaly.suspects:
                continue
            top = anomaly.suspects[0]
            if top.risk_score >= cfg.rollback_risk_score:
                items.append(f"Consider rolling back {top.commit_hash}")
            else:
                items.append(f"Review deployment {top.commit_hash}")

        # Keep the first occurrence of each recommendation
        return list(dict.fromkeys(items))

    def assess(
        self,
        health: HealthScore,
        snapshot: Optional[MetricsSnapshot],
        anomalies: Sequence[Anomaly],
        computed_at: datetime,
    ) -> RiskAssessment:
        risk = round(max(0.0, min(100.0, 100.0 - health.score)), 1)
        open_anomalies = sorted(
            (a for a in anomalies if not a.resolved),
            key=lambda a: (a.detected_at, a.type.value, a.id),
        )

        factors = [f"{self.risk_band(risk)} reliability risk ({risk:.0f}/100)"]
        factors.extend(self.metric_facts(snapshot))
        factors.extend(a.description for a in open_anomalies if a.description)
        for anomaly in open_anomalies:
            if not anomaly.suspects:
                continue
            top = anomaly.suspects[0]
            author = f" by {top.author}" if top.author else ""
            factors.append(
                f"Deployment {top.commit_hash}{author} {top.gap_minutes:.0f} min "
                f"before {anomaly.type.value}"
            )

        assessment = RiskAssessment(
            service_id=health.service_id,
            current_risk=risk,
            trend=trend_for(health.status),
            factors=list(dict.fromkeys(factors)),
            recommendations=self.recommendations(risk, snapshot, open_anomalies),
            computed_at=computed_at,
        )
        logger.debug(
            f"Risk for {health.service_id}: {risk} ({assessment.trend.value})"
        )
        return assessment
