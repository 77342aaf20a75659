"""
HTTP sources for the remote metrics and deployment API

Both sources share one httpx AsyncClient with an explicit timeout taken
from configuration. Any transport, status or payload failure surfaces as
DataSourceError so the scheduler can mark the service stale.
"""

import logging
from typing import Any, Optional

import httpx

from ..config import SourcesConfig
from ..errors import DataSourceError
from ..models import Deployment, Service, TimeRange
from .base import TelemetryBatch
from .payloads import parse_batch, parse_deployments

logger = logging.getLogger(__name__)


class HttpClientBase:
    """Owns (or borrows) the AsyncClient used by the HTTP sources"""

    name = "http"

    def __init__(self, config: SourcesConfig, client: Optional[httpx.AsyncClient] = None):
        self.config = config
        self._owns_client = client is None
        self.client = client or httpx.AsyncClient(
            base_url=config.base_url.rstrip("/"),
            timeout=config.timeout,
            headers=config.headers,
        )

    async def _get_json(self, service_id: str, path: str, params: Optional[dict[str, str]] = None) -> Any:
        try:
            resp = await self.client.get(path, params=params)
            resp.raise_for_status()
            return resp.json()
        except httpx.HTTPStatusError as e:
            raise DataSourceError(
                service_id, self.name, f"HTTP {e.response.status_code} from {path}"
            ) from e
        except httpx.HTTPError as e:
            raise DataSourceError(service_id, self.name, f"{type(e).__name__}: {e}") from e
        except ValueError as e:
            raise DataSourceError(service_id, self.name, f"invalid JSON from {path}") from e

    async def check_health(self) -> bool:
        """True when the backend answers its health endpoint"""
        try:
            resp = await self.client.get("/health")
        except httpx.HTTPError as e:
            logger.warning(f"Backend health check failed: {e}")
            return False
        return resp.status_code == 200

    async def aclose(self) -> None:
        if self._owns_client:
            await self.client.aclose()


class HttpMetricsSource(HttpClientBase):
    """Telemetry from ``GET /api/services/{id}/telemetry?range=...``"""

    name = "metrics"

    async def fetch_telemetry(self, service: Service, time_range: TimeRange) -> TelemetryBatch:
        path = f"/api/services/{service.id}/telemetry"
        payload = await self._get_json(service.id, path, {"range": time_range.value})
        try:
            batch = parse_batch(service.id, payload)
        except ValueError as e:
            raise DataSourceError(service.id, self.name, f"malformed telemetry: {e}") from e

        logger.debug(f"Fetched {len(batch.samples)} samples for {service.id}")
        return batch


class HttpDeploymentSource(HttpClientBase):
    """Deployments from ``GET /api/deployments?serviceId=...``"""

    name = "deployments"

    async def fetch_deployments(self, service: Service) -> list[Deployment]:
        payload = await self._get_json(service.id, "/api/deployments", {"serviceId": service.id})
        try:
            deployments = parse_deployments(payload)
        except ValueError as e:
            raise DataSourceError(service.id, self.name, f"malformed deployments: {e}") from e

        # The API may ignore the filter and return every service's deployments
        return [d for d in deployments if d.service_id == service.id]
