"""
servicepulse - telemetry intelligence engine

Turns per-service telemetry and deployment history into health scores,
deduplicated anomalies correlated with likely-culprit deployments, and
reliability risk assessments.
"""

__version__ = "0.1.0"

# Core API exports
from .config import PulseConfig
from .engine import EvaluationResult, TelemetryEngine, evaluate_snapshot
from .models import (
    Anomaly,
    Deployment,
    HealthScore,
    MetricsSnapshot,
    RiskAssessment,
    Service,
    ServiceReport,
    TelemetrySample,
)

__all__ = [
    "PulseConfig",
    "TelemetryEngine",
    "EvaluationResult",
    "evaluate_snapshot",
    "Anomaly",
    "Deployment",
    "HealthScore",
    "MetricsSnapshot",
    "RiskAssessment",
    "Service",
    "ServiceReport",
    "TelemetrySample",
    "__version__",
]
