"""
Pytest configuration and shared fixtures for servicepulse tests

Provides common fixtures for configuration, telemetry samples and
deployments, modelled on the three reference services (payments, auth,
user-api).
"""

import json
import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from servicepulse import config as config_module
from servicepulse.config import PulseConfig
from servicepulse.models import Deployment, MetricsSnapshot, TelemetrySample
from servicepulse.observability import metrics as metrics_module

BASE_TIME = datetime(2024, 1, 20, 14, 30, tzinfo=timezone.utc)


def make_sample(
    service_id: str = "user-api",
    timestamp: datetime = BASE_TIME,
    cpu: float = 42.0,
    memory: float = 68.0,
    latency: float = 125.0,
    error_rate: float = 0.2,
    throughput: float = 1250.0,
) -> TelemetrySample:
    return TelemetrySample(
        service_id=service_id,
        timestamp=timestamp,
        cpu_percent=cpu,
        memory_percent=memory,
        latency_ms=latency,
        error_rate_percent=error_rate,
        throughput_per_sec=throughput,
    )


def make_series(service_id: str, start: datetime, count: int, step=timedelta(minutes=1), **metrics):
    """``count`` samples one step apart; metric values may be lists or scalars"""
    samples = []
    for i in range(count):
        values = {
            key: value[i] if isinstance(value, (list, tuple)) else value
            for key, value in metrics.items()
        }
        samples.append(make_sample(service_id, start + i * step, **values))
    return samples


@pytest.fixture(autouse=True)
def isolate_globals(monkeypatch):
    """Reset the global config and metrics collector around every test"""
    monkeypatch.setattr(config_module, "_config", None)
    monkeypatch.setattr(metrics_module, "_metrics", None)
    yield


@pytest.fixture
def test_config():
    """Provide a configuration with defaults and observability switched off"""
    config = PulseConfig()
    config.observability.enabled = False
    return config


@pytest.fixture
def base_time():
    return BASE_TIME


@pytest.fixture
def healthy_snapshot():
    """payments: every metric inside its good threshold"""
    return MetricsSnapshot(
        cpu_percent=42,
        memory_percent=68,
        latency_ms=125,
        error_rate_percent=0.2,
        throughput_per_sec=1250,
    )


@pytest.fixture
def degrading_snapshot():
    """auth: moderately loaded with an elevated error rate"""
    return MetricsSnapshot(
        cpu_percent=78,
        memory_percent=85,
        latency_ms=320,
        error_rate_percent=4.2,
        throughput_per_sec=890,
    )


@pytest.fixture
def critical_snapshot():
    """user-api: saturated CPU and memory, slow and failing"""
    return MetricsSnapshot(
        cpu_percent=92,
        memory_percent=95,
        latency_ms=1250,
        error_rate_percent=12.5,
        throughput_per_sec=420,
    )


@pytest.fixture
def critical_sample():
    return make_sample(
        "user-api", BASE_TIME, cpu=92, memory=95, latency=1250, error_rate=12.5, throughput=420
    )


@pytest.fixture
def healthy_sample():
    return make_sample("payments", BASE_TIME)


@pytest.fixture
def sample_deployments():
    """Deployments 45 min and 4 h before BASE_TIME"""
    return [
        Deployment(
            id="d1",
            service_id="user-api",
            commit_hash="a1b2c3d4",
            author="Alex Chen",
            time=BASE_TIME - timedelta(minutes=45),
            risk_score=84,
            summary="Updated database connection pooling",
        ),
        Deployment(
            id="d2",
            service_id="auth",
            commit_hash="e5f6g7h8",
            author="Maria Rodriguez",
            time=BASE_TIME - timedelta(hours=4),
            risk_score=62,
            summary="Added new authentication middleware",
        ),
    ]


@pytest.fixture
def temp_dir():
    """Provide a temporary directory for testing"""
    with tempfile.TemporaryDirectory() as temp_dir:
        yield Path(temp_dir)


@pytest.fixture
def telemetry_payload():
    """Dashboard-shaped telemetry for user-api, oldest first"""
    return [
        {
            "serviceId": "user-api",
            "timestamp": (BASE_TIME - timedelta(minutes=2 - i)).isoformat(),
            "metrics": {
                "cpu": 92,
                "memory": 95,
                "latency": 1250,
                "errorRate": 12.5,
                "throughput": 420,
            },
        }
        for i in range(3)
    ]


@pytest.fixture
def temp_telemetry_file(temp_dir, telemetry_payload):
    telemetry_file = temp_dir / "telemetry.json"
    telemetry_file.write_text(json.dumps(telemetry_payload))
    return telemetry_file


@pytest.fixture
def temp_deployments_file(temp_dir, sample_deployments):
    deployments_file = temp_dir / "deployments.json"
    deployments_file.write_text(json.dumps([d.to_dict() for d in sample_deployments]))
    return deployments_file


def pytest_configure(config):
    """Configure custom pytest markers"""
    config.addinivalue_line("markers", "unit: Unit tests for individual components")
    config.addinivalue_line(
        "markers", "integration: Integration tests across multiple components"
    )
