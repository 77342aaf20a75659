"""
In-memory sources

Serve fixed telemetry and deployments, for file-driven evaluation and
tests. A service can be configured to fail, which exercises the same
stale-report path as a remote outage.
"""

import logging
from collections.abc import Iterable, Mapping
from typing import Optional

from ..errors import DataSourceError
from ..models import Deployment, MetricsSnapshot, Service, TelemetrySample, TimeRange
from .base import TelemetryBatch

logger = logging.getLogger(__name__)


class StaticMetricsSource:
    """Telemetry served from a fixed per-service list of samples"""

    name = "metrics"

    def __init__(
        self,
        samples: Optional[Mapping[str, Iterable[TelemetrySample]]] = None,
        current: Optional[Mapping[str, MetricsSnapshot]] = None,
    ):
        self._samples = {
            key: sorted(value, key=lambda s: s.timestamp)
            for key, value in (samples or {}).items()
        }
        self._current = dict(current or {})
        self._failures: dict[str, str] = {}

    def add_samples(self, service_id: str, samples: Iterable[TelemetrySample]) -> None:
        merged = self._samples.get(service_id, []) + list(samples)
        self._samples[service_id] = sorted(merged, key=lambda s: s.timestamp)

    def set_current(self, service_id: str, snapshot: Optional[MetricsSnapshot]) -> None:
        if snapshot is None:
            self._current.pop(service_id, None)
        else:
            self._current[service_id] = snapshot

    def fail(self, service_id: str, reason: str = "source unavailable") -> None:
        """Make fetches for a service raise DataSourceError until recover()"""
        self._failures[service_id] = reason

    def recover(self, service_id: str) -> None:
        self._failures.pop(service_id, None)

    async def fetch_telemetry(self, service: Service, time_range: TimeRange) -> TelemetryBatch:
        if service.id in self._failures:
            raise DataSourceError(service.id, self.name, self._failures[service.id])

        samples = self._samples.get(service.id, [])
        if samples:
            start = samples[-1].timestamp - time_range.delta
            samples = [s for s in samples if s.timestamp >= start]
        return TelemetryBatch(samples=list(samples), current=self._current.get(service.id))


class StaticDeploymentSource:
    """Deployments served from a fixed list"""

    name = "deployments"

    def __init__(self, deployments: Iterable[Deployment] = ()):
        self._deployments = list(deployments)
        self._failures: dict[str, str] = {}

    def add(self, deployment: Deployment) -> None:
        self._deployments.append(deployment)

    def fail(self, service_id: str, reason: str = "source unavailable") -> None:
        self._failures[service_id] = reason

    def recover(self, service_id: str) -> None:
        self._failures.pop(service_id, None)

    async def fetch_deployments(self, service: Service) -> list[Deployment]:
        if service.id in self._failures:
            raise DataSourceError(service.id, self.name, self._failures[service.id])
        return [d for d in self._deployments if d.service_id == service.id]
