"""
Error taxonomy for servicepulse

Configuration errors are fatal and raised before any evaluation runs.
Everything else is scoped to a single service and recovered locally.
"""

from datetime import datetime
from typing import Optional


class ServicePulseError(Exception):
    """Base class for all servicepulse errors"""


class ConfigurationError(ServicePulseError):
    """Invalid thresholds, window sizes or intervals at startup"""


class OutOfOrderSampleError(ServicePulseError):
    """A telemetry sample is older than the newest stored sample"""

    def __init__(self, service_id: str, timestamp: datetime, head: datetime):
        self.service_id = service_id
        self.timestamp = timestamp
        self.head = head
        super().__init__(
            f"Sample for service '{service_id}' at {timestamp.isoformat()} "
            f"is older than the current head {head.isoformat()}"
        )


class DataGapError(ServicePulseError):
    """No telemetry is available to evaluate a service"""

    def __init__(self, service_id: str, reason: str = "no telemetry available"):
        self.service_id = service_id
        self.reason = reason
        super().__init__(f"Data gap for service '{service_id}': {reason}")


class DataSourceError(DataGapError):
    """Fetching telemetry or deployments from an external source failed"""

    def __init__(self, service_id: str, source: str, reason: str):
        self.source = source
        super().__init__(service_id, f"{source} fetch failed: {reason}")


class UnknownServiceError(ServicePulseError):
    """Lookup of a service that was never registered"""

    def __init__(self, service_id: str):
        self.service_id = service_id
        super().__init__(f"Unknown service: {service_id}")


class UnknownAnomalyError(ServicePulseError):
    """Lookup of an anomaly id that the ledger does not hold"""

    def __init__(self, service_id: str, anomaly_id: str, detail: Optional[str] = None):
        self.service_id = service_id
        self.anomaly_id = anomaly_id
        message = f"Unknown anomaly '{anomaly_id}' for service '{service_id}'"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)
