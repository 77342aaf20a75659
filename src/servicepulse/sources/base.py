"""
Base source interfaces

Defines the protocols for the external collaborators that supply
telemetry and deployments to the engine.
"""

from dataclasses import dataclass, field
from typing import Optional, Protocol, runtime_checkable

from ..models import Deployment, MetricsSnapshot, Service, TelemetrySample, TimeRange


@dataclass(frozen=True)
class TelemetryBatch:
    """
    Samples fetched for one service

    ``current`` is the source's precomputed snapshot, when it supplies one;
    otherwise the engine recomputes it from the samples.
    """

    samples: list[TelemetrySample] = field(default_factory=list)
    current: Optional[MetricsSnapshot] = None

    def is_empty(self) -> bool:
        return not self.samples and self.current is None


@runtime_checkable
class MetricsSource(Protocol):
    """
    Protocol for telemetry sources

    Sources return samples ordered oldest first. A failed fetch raises
    DataSourceError; an empty batch is a data gap, not an error.
    """

    name: str

    async def fetch_telemetry(self, service: Service, time_range: TimeRange) -> TelemetryBatch:
        """
        Fetch recent telemetry for a service

        Args:
            service: The service to fetch for
            time_range: How far back to fetch

        Returns:
            Batch of samples, optionally with a precomputed snapshot
        """
        ...


@runtime_checkable
class DeploymentSource(Protocol):
    """Protocol for the VCS/CI integration that lists deployments"""

    name: str

    async def fetch_deployments(self, service: Service) -> list[Deployment]:
        ...
