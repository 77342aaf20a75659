"""
Periodic per-service polling

Each service runs in its own task: fetch telemetry and deployments with a
timeout, ingest, evaluate, publish. A failed fetch marks that service stale
and never touches any other service's cycle.
"""

import asyncio
import logging
from contextlib import nullcontext
from typing import Awaitable, Callable, Optional, Sequence, TypeVar

from .concurrency import AsyncSemaphore
from .config import PollingConfig
from .context import ServiceContext
from .engine import TelemetryEngine
from .errors import DataSourceError
from .models import Deployment, Service, ServiceReport
from .observability.metrics import get_metrics
from .observability.tracer import traced
from .repository import ServiceRepository
from .sources.base import DeploymentSource, MetricsSource, TelemetryBatch

logger = logging.getLogger(__name__)

T = TypeVar("T")


class PollHandle:
    """Cancellation handle for a service's polling task"""

    def __init__(self, service_id: str, task: "asyncio.Task[None]"):
        self.service_id = service_id
        self.task = task

    def cancel(self) -> None:
        self.task.cancel()

    @property
    def running(self) -> bool:
        return not self.task.done()

    async def wait(self) -> None:
        """Wait for the task to finish, treating cancellation as normal"""
        try:
            await self.task
        except asyncio.CancelledError:
            pass


class PollingScheduler:
    """Drives TelemetryEngine evaluations from remote sources"""

    def __init__(
        self,
        engine: TelemetryEngine,
        metrics_source: MetricsSource,
        deployment_source: DeploymentSource,
        config: Optional[PollingConfig] = None,
        repository: Optional[ServiceRepository] = None,
    ):
        self.engine = engine
        self.metrics_source = metrics_source
        self.deployment_source = deployment_source
        self.config = config or engine.config.polling
        self.repository = repository
        self.fetch_semaphore = AsyncSemaphore(self.config.max_concurrent_fetches, name="fetch")
        self._handles: dict[str, PollHandle] = {}

    @traced("scheduler.run_cycle")
    async def run_cycle(self, service: Service) -> ServiceReport:
        """
        One fetch-and-evaluate cycle for a service

        Fetch failures and timeouts are recovered here: the service's last
        report is marked stale and returned.
        """
        with ServiceContext(service.id):
            results = await asyncio.gather(
                self._fetch(
                    service.id,
                    self.metrics_source.name,
                    lambda: self.metrics_source.fetch_telemetry(service, self.config.time_range),
                ),
                self._fetch(
                    service.id,
                    self.deployment_source.name,
                    lambda: self.deployment_source.fetch_deployments(service),
                ),
                return_exceptions=True,
            )

            failures = [r for r in results if isinstance(r, BaseException)]
            for failure in failures:
                if not isinstance(failure, DataSourceError):
                    raise failure
            if failures:
                metrics = get_metrics()
                for failure in failures:
                    if metrics:
                        metrics.record_fetch_error(failure.source)
                    logger.warning(f"Fetch failed for {service.id}: {failure.reason}")
                return self.engine.mark_stale(service.id, failures[0].reason)

            batch, deployments = results
            return self._evaluate(service, batch, deployments)

    def _evaluate(
        self, service: Service, batch: TelemetryBatch, deployments: list[Deployment]
    ) -> ServiceReport:
        if batch.is_empty():
            return self.engine.mark_stale(service.id, "no telemetry returned")

        self.engine.ingest(service.id, batch.samples)
        report = self.engine.evaluate(service.id, deployments, snapshot=batch.current)

        if self.repository is not None and not report.stale:
            self.repository.record_evaluation(service.id, report.health, report.evaluated_at)
        return report

    async def _fetch(self, service_id: str, source: str, call: Callable[[], Awaitable[T]]) -> T:
        """
        Run a source call under the fetch semaphore, with a timeout

        The timeout covers waiting for a permit and the call together.
        """
        timeout = self.config.fetch_timeout_seconds
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        metrics = get_metrics()
        tracker = metrics.track_fetch(source) if metrics else nullcontext()
        try:
            async with self.fetch_semaphore.acquire(source, timeout=timeout):
                remaining = max(0.0, deadline - loop.time())
                with tracker:
                    return await asyncio.wait_for(call(), timeout=remaining)
        except asyncio.TimeoutError as e:
            raise DataSourceError(service_id, source, f"timed out after {timeout}s") from e

    async def run_once(self, services: Sequence[Service]) -> list[ServiceReport]:
        """One cycle for every service, concurrently and independently"""
        results = await asyncio.gather(
            *(self.run_cycle(service) for service in services), return_exceptions=True
        )

        reports = []
        for service, result in zip(services, results):
            if isinstance(result, BaseException):
                if isinstance(result, asyncio.CancelledError):
                    raise result
                logger.error(f"Evaluation cycle failed for {service.id}: {result}")
                reports.append(self.engine.mark_stale(service.id, f"evaluation failed: {result}"))
            else:
                reports.append(result)
        return reports

    def start(self, service: Service) -> PollHandle:
        """Start polling a service at the configured interval"""
        existing = self._handles.get(service.id)
        if existing is not None and existing.running:
            return existing

        task = asyncio.create_task(self._poll(service), name=f"poll-{service.id}")
        handle = PollHandle(service.id, task)
        self._handles[service.id] = handle
        logger.info(
            f"Polling {service.id} every {self.config.interval_seconds:.0f}s"
        )
        return handle

    async def _poll(self, service: Service) -> None:
        while True:
            try:
                await self.run_cycle(service)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                # Keep polling; the next cycle may succeed
                logger.error(f"Evaluation cycle failed for {service.id}: {e}")
                self.engine.mark_stale(service.id, f"evaluation failed: {e}")
            await asyncio.sleep(self.config.interval_seconds)

    async def stop(self, service_id: str) -> None:
        handle = self._handles.pop(service_id, None)
        if handle is None:
            return
        handle.cancel()
        await handle.wait()
        logger.info(f"Stopped polling {service_id}")

    async def stop_all(self) -> None:
        for service_id in list(self._handles):
            await self.stop(service_id)

    @property
    def running(self) -> list[str]:
        """Ids of services with an active polling task"""
        return sorted(sid for sid, handle in self._handles.items() if handle.running)
