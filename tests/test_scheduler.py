"""
Test suite for the polling scheduler

Tests fetch-and-evaluate cycles over in-memory sources, per-service failure
isolation, fetch timeouts and the polling task lifecycle.
"""

import asyncio

import pytest

from conftest import make_sample, make_series
from servicepulse.engine import TelemetryEngine
from servicepulse.errors import DataSourceError
from servicepulse.models import AnomalyType, HealthStatus, Service
from servicepulse.observability.config import ObservabilityConfig
from servicepulse.observability.metrics import initialize_metrics
from servicepulse.repository import InMemoryServiceRepository
from servicepulse.scheduler import PollingScheduler
from servicepulse.sources import StaticDeploymentSource, StaticMetricsSource

USER_API = Service(id="user-api", name="user-api")
AUTH = Service(id="auth", name="auth")
PAYMENTS = Service(id="payments", name="payments")


class SlowMetricsSource:
    """Telemetry source that never answers within the fetch timeout"""

    name = "metrics"

    async def fetch_telemetry(self, service, time_range):
        await asyncio.sleep(5)


class BrokenDeploymentSource:
    """Deployment source failing with something other than a fetch error"""

    name = "deployments"

    async def fetch_deployments(self, service):
        raise RuntimeError("boom")


@pytest.fixture
def metrics_source(base_time):
    return StaticMetricsSource(
        {
            "user-api": make_series(
                "user-api", base_time, 3, cpu=92, memory=95, latency=1250, error_rate=12.5, throughput=420
            ),
            "auth": make_series("auth", base_time, 3),
            "payments": make_series("payments", base_time, 3),
        }
    )


@pytest.fixture
def deployment_source(sample_deployments):
    return StaticDeploymentSource(sample_deployments)


class TestRunCycle:
    """Test single fetch-and-evaluate cycles"""

    @pytest.mark.asyncio
    async def test_cycle_publishes_report(self, test_config, metrics_source, deployment_source):
        engine = TelemetryEngine(test_config)
        scheduler = PollingScheduler(engine, metrics_source, deployment_source)

        report = await scheduler.run_cycle(USER_API)

        assert not report.stale
        assert report.health.status == HealthStatus.CRITICAL
        assert engine.report("user-api") == report
        error = next(a for a in report.anomalies if a.type == AnomalyType.ERROR_RATE)
        assert error.commit_hash == "a1b2c3d4"

    @pytest.mark.asyncio
    async def test_repeated_cycles_do_not_duplicate(self, test_config, metrics_source, deployment_source):
        engine = TelemetryEngine(test_config)
        scheduler = PollingScheduler(engine, metrics_source, deployment_source)

        first = await scheduler.run_cycle(USER_API)
        second = await scheduler.run_cycle(USER_API)

        assert first.to_json() == second.to_json()
        assert engine.store.size("user-api") == 3

    @pytest.mark.asyncio
    async def test_uses_precomputed_snapshot(
        self, test_config, metrics_source, deployment_source, critical_snapshot
    ):
        metrics_source.set_current("payments", critical_snapshot)
        scheduler = PollingScheduler(TelemetryEngine(test_config), metrics_source, deployment_source)

        report = await scheduler.run_cycle(PAYMENTS)
        assert report.health.status == HealthStatus.CRITICAL

    @pytest.mark.asyncio
    async def test_empty_telemetry_is_stale(self, test_config, deployment_source):
        scheduler = PollingScheduler(
            TelemetryEngine(test_config), StaticMetricsSource(), deployment_source
        )
        report = await scheduler.run_cycle(AUTH)

        assert report.stale
        assert report.last_error == "no telemetry returned"

    @pytest.mark.asyncio
    async def test_fetch_failure_keeps_last_report(
        self, test_config, metrics_source, deployment_source
    ):
        engine = TelemetryEngine(test_config)
        scheduler = PollingScheduler(engine, metrics_source, deployment_source)
        published = await scheduler.run_cycle(AUTH)

        metrics_source.fail("auth", "backend down")
        stale = await scheduler.run_cycle(AUTH)

        assert stale.stale
        assert stale.last_error == "metrics fetch failed: backend down"
        assert stale.health == published.health

        metrics_source.recover("auth")
        assert not (await scheduler.run_cycle(AUTH)).stale

    @pytest.mark.asyncio
    async def test_deployment_failure_is_stale(self, test_config, metrics_source, deployment_source):
        deployment_source.fail("user-api", "HTTP 500 from /api/deployments")
        scheduler = PollingScheduler(TelemetryEngine(test_config), metrics_source, deployment_source)

        report = await scheduler.run_cycle(USER_API)
        assert report.stale
        assert report.last_error.startswith("deployments fetch failed")

    @pytest.mark.asyncio
    async def test_fetch_timeout(self, test_config, deployment_source):
        test_config.polling.fetch_timeout_seconds = 0.05
        scheduler = PollingScheduler(
            TelemetryEngine(test_config), SlowMetricsSource(), deployment_source
        )

        report = await scheduler.run_cycle(USER_API)

        assert report.stale
        assert report.last_error == "metrics fetch failed: timed out after 0.05s"

    @pytest.mark.asyncio
    async def test_fetch_timeout_raises_data_source_error(self, test_config, deployment_source):
        test_config.polling.fetch_timeout_seconds = 0.05
        scheduler = PollingScheduler(
            TelemetryEngine(test_config), SlowMetricsSource(), deployment_source
        )
        with pytest.raises(DataSourceError):
            await scheduler._fetch(
                "user-api", "metrics", lambda: scheduler.metrics_source.fetch_telemetry(USER_API, None)
            )
        assert scheduler.fetch_semaphore.get_stats().in_use == 0

    @pytest.mark.asyncio
    async def test_fetch_timeout_includes_permit_wait(self, test_config, metrics_source, deployment_source):
        test_config.polling.fetch_timeout_seconds = 0.2
        test_config.polling.max_concurrent_fetches = 1
        scheduler = PollingScheduler(TelemetryEngine(test_config), metrics_source, deployment_source)

        async def hold_permit():
            async with scheduler.fetch_semaphore.acquire("deployments"):
                await asyncio.sleep(0.12)

        async def slow_call():
            await asyncio.sleep(0.15)
            return []

        holder = asyncio.create_task(hold_permit())
        await asyncio.sleep(0)
        with pytest.raises(DataSourceError, match="timed out after 0.2s"):
            await scheduler._fetch("user-api", "metrics", slow_call)
        await holder

        assert scheduler.fetch_semaphore.get_stats().in_use == 0

    @pytest.mark.asyncio
    async def test_repository_is_stamped(self, test_config, metrics_source, deployment_source):
        repository = InMemoryServiceRepository()
        service = repository.create("user-api")
        scheduler = PollingScheduler(
            TelemetryEngine(test_config), metrics_source, deployment_source, repository=repository
        )

        report = await scheduler.run_cycle(service)

        stored = repository.get("user-api")
        assert stored.health == HealthStatus.CRITICAL
        assert stored.health_score == report.health.score
        assert stored.last_checked == report.evaluated_at

    @pytest.mark.asyncio
    async def test_stale_cycle_does_not_stamp_repository(self, test_config, deployment_source):
        repository = InMemoryServiceRepository()
        service = repository.create("auth")
        scheduler = PollingScheduler(
            TelemetryEngine(test_config), StaticMetricsSource(), deployment_source, repository=repository
        )

        await scheduler.run_cycle(service)
        assert repository.get("auth").last_checked is None

    @pytest.mark.asyncio
    async def test_fetch_errors_are_counted(self, test_config, metrics_source, deployment_source):
        observability = ObservabilityConfig()
        observability.metrics.enabled = True
        collector = initialize_metrics(observability)

        metrics_source.fail("auth")
        scheduler = PollingScheduler(TelemetryEngine(test_config), metrics_source, deployment_source)
        await scheduler.run_cycle(AUTH)

        text = collector.get_metrics_text()
        assert 'servicepulse_fetch_errors_total{source="metrics"} 1.0' in text
        assert 'servicepulse_service_stale{service="auth"} 1.0' in text


class TestRunOnce:
    """Test concurrent cycles across services"""

    @pytest.mark.asyncio
    async def test_failure_is_isolated(self, test_config, metrics_source, deployment_source):
        metrics_source.fail("auth", "backend down")
        engine = TelemetryEngine(test_config)
        scheduler = PollingScheduler(engine, metrics_source, deployment_source)

        reports = await scheduler.run_once([USER_API, AUTH, PAYMENTS])

        assert [r.service_id for r in reports] == ["user-api", "auth", "payments"]
        assert [r.stale for r in reports] == [False, True, False]
        assert reports[0].health.status == HealthStatus.CRITICAL
        assert reports[2].health.status == HealthStatus.HEALTHY

    @pytest.mark.asyncio
    async def test_unexpected_error_marks_stale(self, test_config, metrics_source):
        scheduler = PollingScheduler(
            TelemetryEngine(test_config), metrics_source, BrokenDeploymentSource()
        )

        reports = await scheduler.run_once([AUTH])

        assert reports[0].stale
        assert reports[0].last_error == "evaluation failed: boom"

    @pytest.mark.asyncio
    async def test_concurrency_is_bounded(self, test_config, deployment_source, base_time):
        test_config.polling.max_concurrent_fetches = 1
        services = [Service(id=f"svc-{i}", name=f"svc-{i}") for i in range(4)]
        source = StaticMetricsSource({s.id: [make_sample(s.id, base_time)] for s in services})
        scheduler = PollingScheduler(TelemetryEngine(test_config), source, deployment_source)

        reports = await scheduler.run_once(services)

        assert all(not r.stale for r in reports)
        stats = scheduler.fetch_semaphore.get_stats()
        assert stats.capacity == 1
        assert stats.total_acquisitions == 8


class TestPolling:
    """Test the per-service polling tasks"""

    @pytest.mark.asyncio
    async def test_start_and_stop(self, test_config, metrics_source, deployment_source):
        test_config.polling.interval_seconds = 0.01
        engine = TelemetryEngine(test_config)
        scheduler = PollingScheduler(engine, metrics_source, deployment_source)

        handle = scheduler.start(USER_API)
        assert scheduler.start(USER_API) is handle

        await asyncio.sleep(0.05)
        assert scheduler.running == ["user-api"]
        assert engine.report("user-api") is not None

        await scheduler.stop("user-api")
        assert scheduler.running == []
        assert not handle.running

    @pytest.mark.asyncio
    async def test_polling_survives_failures(self, test_config, metrics_source, deployment_source):
        test_config.polling.interval_seconds = 0.01
        metrics_source.fail("auth")
        engine = TelemetryEngine(test_config)
        scheduler = PollingScheduler(engine, metrics_source, deployment_source)

        scheduler.start(AUTH)
        scheduler.start(PAYMENTS)
        await asyncio.sleep(0.05)

        assert scheduler.running == ["auth", "payments"]
        assert engine.report("auth").stale
        assert not engine.report("payments").stale

        await scheduler.stop_all()
        assert scheduler.running == []

    @pytest.mark.asyncio
    async def test_stop_unknown_is_noop(self, test_config, metrics_source, deployment_source):
        scheduler = PollingScheduler(TelemetryEngine(test_config), metrics_source, deployment_source)
        await scheduler.stop("ghost")
        assert scheduler.running == []
