"""
Test suite for data models
"""

from datetime import datetime, timedelta, timezone

import pytest
from pydantic import ValidationError

from servicepulse.models import (
    Anomaly,
    AnomalyType,
    MetricsSnapshot,
    Service,
    Severity,
    TelemetrySample,
    TimeRange,
)


class TestTelemetrySample:
    def test_wire_format(self, base_time):
        sample = TelemetrySample(
            service_id="auth",
            timestamp=base_time,
            cpu_percent=78,
            memory_percent=85,
            latency_ms=320,
            error_rate_percent=4.2,
        )
        data = sample.to_dict()

        assert data["serviceId"] == "auth"
        assert data["errorRatePercent"] == 4.2
        assert data["throughputPerSec"] is None
        assert data["timestamp"].startswith("2024-01-20T14:30:00")
        assert TelemetrySample.model_validate(data) == sample

    def test_naive_and_offset_timestamps_normalized(self):
        naive = TelemetrySample(
            service_id="auth",
            timestamp=datetime(2024, 1, 20, 14, 30),
            cpu_percent=1,
            memory_percent=1,
            latency_ms=1,
            error_rate_percent=0,
        )
        offset = naive.model_copy(
            update={"timestamp": datetime(2024, 1, 20, 16, 30, tzinfo=timezone(timedelta(hours=2)))}
        )
        assert naive.timestamp.tzinfo == timezone.utc
        assert TelemetrySample.model_validate(offset.to_dict()).timestamp == naive.timestamp

    @pytest.mark.parametrize("field,value", [("cpu_percent", 101), ("error_rate_percent", -1), ("latency_ms", -5)])
    def test_out_of_range_rejected(self, field, value, base_time):
        values = dict(
            service_id="auth",
            timestamp=base_time,
            cpu_percent=10,
            memory_percent=10,
            latency_ms=10,
            error_rate_percent=0,
        )
        values[field] = value
        with pytest.raises(ValidationError):
            TelemetrySample(**values)

    def test_records_are_frozen(self, critical_sample):
        with pytest.raises(ValidationError):
            critical_sample.cpu_percent = 10

    def test_snapshot(self, critical_sample):
        snapshot = critical_sample.snapshot()
        assert isinstance(snapshot, MetricsSnapshot)
        assert snapshot.latency_ms == 1250
        assert snapshot.timestamp == critical_sample.timestamp


class TestAnomaly:
    def test_resolve_returns_new_value(self, base_time):
        anomaly = Anomaly(
            id="anom-1",
            service_id="user-api",
            type=AnomalyType.ERROR_RATE,
            severity=Severity.CRITICAL,
            confidence=95,
            detected_at=base_time,
        )
        resolved = anomaly.resolve()

        assert resolved.resolved
        assert not anomaly.resolved
        assert resolved.resolve() is resolved

    def test_severity_rank(self):
        ranks = [s.rank for s in (Severity.LOW, Severity.MEDIUM, Severity.HIGH, Severity.CRITICAL)]
        assert ranks == sorted(ranks)


class TestMisc:
    def test_time_ranges(self):
        assert TimeRange("6h").delta == timedelta(hours=6)
        assert TimeRange.LAST_WEEK.delta == timedelta(days=7)

    def test_service_accepts_camel_case(self):
        service = Service.model_validate(
            {"id": "payments", "name": "payments", "metricsUrl": "http://metrics/payments"}
        )
        assert service.metrics_url == "http://metrics/payments"
        assert service.registered_at.tzinfo == timezone.utc
