"""
Core data models for servicepulse

Defines the telemetry, health, anomaly, deployment and risk records using
Pydantic. All records are frozen: updates produce a new value via
``model_copy`` so published snapshots can be shared between readers.
"""

from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Annotated, Any, Optional

from pydantic import AfterValidator, BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


def utcnow() -> datetime:
    """Current time as a timezone-aware UTC datetime"""
    return datetime.now(timezone.utc)


def _as_utc(value: datetime) -> datetime:
    # Naive timestamps are taken as UTC
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


UtcDatetime = Annotated[datetime, AfterValidator(_as_utc)]
Percent = Annotated[float, Field(ge=0.0, le=100.0)]


class HealthStatus(str, Enum):
    HEALTHY = "healthy"
    DEGRADING = "degrading"
    CRITICAL = "critical"


class AnomalyType(str, Enum):
    LATENCY_SPIKE = "latency_spike"
    ERROR_RATE = "error_rate"
    MEMORY_LEAK = "memory_leak"
    CPU_SATURATION = "cpu_saturation"


class Severity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _SEVERITY_RANK[self]


_SEVERITY_RANK = {
    Severity.LOW: 0,
    Severity.MEDIUM: 1,
    Severity.HIGH: 2,
    Severity.CRITICAL: 3,
}


class Trend(str, Enum):
    IMPROVING = "improving"
    STABLE = "stable"
    WORSENING = "worsening"


class TimeRange(str, Enum):
    """Query ranges offered to consumers of the telemetry window"""

    LAST_HOUR = "1h"
    LAST_6_HOURS = "6h"
    LAST_DAY = "24h"
    LAST_WEEK = "7d"

    @property
    def delta(self) -> timedelta:
        return _RANGE_DELTAS[self]


_RANGE_DELTAS = {
    TimeRange.LAST_HOUR: timedelta(hours=1),
    TimeRange.LAST_6_HOURS: timedelta(hours=6),
    TimeRange.LAST_DAY: timedelta(hours=24),
    TimeRange.LAST_WEEK: timedelta(days=7),
}


class WireModel(BaseModel):
    """Base for records exchanged with consumers as plain JSON"""

    model_config = ConfigDict(
        frozen=True,
        populate_by_name=True,
        alias_generator=to_camel,
    )

    def to_dict(self) -> dict[str, Any]:
        """JSON-ready dictionary with camelCase keys and ISO timestamps"""
        return self.model_dump(mode="json", by_alias=True)

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True)


class Service(WireModel):
    """A registered service"""

    id: str
    name: str
    metrics_url: str = ""
    repo_url: str = ""
    registered_at: UtcDatetime = Field(default_factory=utcnow)
    last_checked: Optional[UtcDatetime] = None
    health: Optional[HealthStatus] = None
    health_score: Optional[float] = None


class MetricsSnapshot(WireModel):
    """Current operational metrics of a service, possibly precomputed"""

    cpu_percent: Percent
    memory_percent: Percent
    latency_ms: float = Field(ge=0.0)
    error_rate_percent: Percent
    throughput_per_sec: Optional[float] = Field(default=None, ge=0.0)
    timestamp: Optional[UtcDatetime] = None


class TelemetrySample(WireModel):
    """One timestamped measurement of a service's metrics"""

    service_id: str
    timestamp: UtcDatetime
    cpu_percent: Percent
    memory_percent: Percent
    latency_ms: float = Field(ge=0.0)
    error_rate_percent: Percent
    throughput_per_sec: Optional[float] = Field(default=None, ge=0.0)

    def snapshot(self) -> MetricsSnapshot:
        return MetricsSnapshot(
            cpu_percent=self.cpu_percent,
            memory_percent=self.memory_percent,
            latency_ms=self.latency_ms,
            error_rate_percent=self.error_rate_percent,
            throughput_per_sec=self.throughput_per_sec,
            timestamp=self.timestamp,
        )


class HealthScore(WireModel):
    service_id: str
    score: float = Field(ge=0.0, le=100.0)
    status: HealthStatus
    computed_at: UtcDatetime


class Deployment(WireModel):
    """A deployment supplied by the VCS/CI integration (read-only)"""

    id: str
    service_id: str
    commit_hash: str
    author: str = ""
    time: UtcDatetime
    risk_score: float = Field(ge=0.0, le=100.0)
    summary: str = ""


class DeploymentSuspect(WireModel):
    """A deployment ranked as a likely cause of an anomaly"""

    deployment_id: str
    commit_hash: str
    author: str = ""
    time: UtcDatetime
    risk_score: float = Field(ge=0.0, le=100.0)
    gap_minutes: float = Field(ge=0.0)
    score: float = Field(ge=0.0, le=100.0)


class Anomaly(WireModel):
    """A detected rule violation for one service and anomaly type"""

    id: str
    service_id: str
    type: AnomalyType
    severity: Severity
    confidence: float = Field(ge=0.0, le=100.0)
    detected_at: UtcDatetime
    updated_at: Optional[UtcDatetime] = None
    resolved: bool = False
    description: str = ""
    commit_hash: Optional[str] = None
    deployment_time: Optional[UtcDatetime] = None
    suspects: list[DeploymentSuspect] = Field(default_factory=list)

    def resolve(self) -> "Anomaly":
        """Return the acknowledged (resolved) form of this anomaly"""
        if self.resolved:
            return self
        return self.model_copy(update={"resolved": True})


class RiskAssessment(WireModel):
    service_id: str
    current_risk: float = Field(ge=0.0, le=100.0)
    trend: Trend
    factors: list[str] = Field(default_factory=list)
    recommendations: list[str] = Field(default_factory=list)
    computed_at: UtcDatetime


class ServiceReport(WireModel):
    """Published per-service snapshot read by dashboards and APIs"""

    service_id: str
    health: Optional[HealthScore] = None
    anomalies: list[Anomaly] = Field(default_factory=list)
    risk: Optional[RiskAssessment] = None
    stale: bool = False
    evaluated_at: Optional[UtcDatetime] = None
    last_error: Optional[str] = None
