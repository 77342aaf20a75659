"""
Test suite for observability

Tests log correlation through ServiceContext, logging configuration,
Prometheus metric recording and the no-op tracing path.
"""

import asyncio
import inspect
import json
import logging

import pytest
from opentelemetry import trace
from pythonjsonlogger.json import JsonFormatter

from servicepulse.context import ServiceContext, get_service
from servicepulse.observability import (
    MetricsCollector,
    ObservabilityConfig,
    get_metrics,
    get_tracer,
    initialize_observability,
    is_observability_initialized,
    shutdown_observability,
    span,
    traced,
)
from servicepulse.observability.config import TracingConfig
from servicepulse.observability.init import LogCorrelationFilter, configure_logging
from servicepulse.observability.metrics import initialize_metrics, reset_metrics
from servicepulse.observability.tracer import add_event, is_tracing_enabled, set_attribute


def metrics_config(**default_labels) -> ObservabilityConfig:
    config = ObservabilityConfig()
    config.metrics.enabled = True
    config.metrics.default_labels = default_labels
    return config


@pytest.fixture
def restore_logging():
    """Put the root logger back the way the test found it"""
    root = logging.getLogger()
    handlers, level = root.handlers[:], root.level
    yield
    root.handlers = handlers
    root.setLevel(level)


class TestServiceContext:
    """Test per-service log correlation"""

    def test_context_sets_and_resets(self):
        assert get_service() is None
        with ServiceContext("auth") as service_id:
            assert service_id == "auth"
            assert get_service() == "auth"
        assert get_service() is None

    def test_nested_contexts(self):
        with ServiceContext("auth"):
            with ServiceContext("payments"):
                assert get_service() == "payments"
            assert get_service() == "auth"

    @pytest.mark.asyncio
    async def test_tasks_are_isolated(self):
        seen = {}

        async def evaluate(service_id):
            with ServiceContext(service_id):
                await asyncio.sleep(0.01)
                seen[service_id] = get_service()

        await asyncio.gather(evaluate("auth"), evaluate("payments"), evaluate("user-api"))
        assert seen == {"auth": "auth", "payments": "payments", "user-api": "user-api"}

    def test_filter_stamps_records(self):
        record = logging.LogRecord("servicepulse", logging.INFO, __file__, 1, "msg", None, None)
        log_filter = LogCorrelationFilter()

        assert log_filter.filter(record)
        assert record.service_id == "-"

        with ServiceContext("user-api"):
            log_filter.filter(record)
        assert record.service_id == "user-api"
        assert not hasattr(record, "trace_id")

    def test_filter_without_active_span(self):
        record = logging.LogRecord("servicepulse", logging.INFO, __file__, 1, "msg", None, None)
        LogCorrelationFilter(include_trace=True).filter(record)
        assert record.trace_id == ""
        assert record.span_id == ""


class TestLoggingConfiguration:
    """Test logging handler setup"""

    def test_json_format(self, restore_logging):
        config = ObservabilityConfig()
        config.logging.format = "json"
        configure_logging(config)

        handler = logging.getLogger().handlers[0]
        assert isinstance(handler.formatter, JsonFormatter)

        record = logging.LogRecord("servicepulse.engine", logging.WARNING, __file__, 1, "stale", None, None)
        with ServiceContext("auth"):
            assert handler.filter(record)
        data = json.loads(handler.format(record))
        assert data["message"] == "stale"
        assert data["service_id"] == "auth"
        assert data["levelname"] == "WARNING"

    def test_text_format(self, restore_logging):
        config = ObservabilityConfig()
        config.logging.level = "DEBUG"
        configure_logging(config)

        root = logging.getLogger()
        assert root.level == logging.DEBUG

        record = logging.LogRecord("servicepulse.scheduler", logging.INFO, __file__, 1, "polling", None, None)
        handler = root.handlers[0]
        handler.filter(record)
        assert "[-] polling" in handler.format(record)

    def test_disabled_observability_is_noop(self):
        config = ObservabilityConfig(enabled=False)
        assert not initialize_observability(config)

        assert not is_observability_initialized()
        assert get_metrics() is None
        shutdown_observability()

    def test_initialize_with_metrics(self, restore_logging):
        config = metrics_config()
        assert initialize_observability(config)
        try:
            assert not initialize_observability(config)
            assert is_observability_initialized()
            assert isinstance(get_metrics(), MetricsCollector)
        finally:
            shutdown_observability()

        assert not is_observability_initialized()
        assert get_metrics() is None


class TestMetricsCollector:
    """Test Prometheus metric recording"""

    def setup_method(self):
        self.collector = MetricsCollector(metrics_config())

    def test_record_evaluation(self):
        self.collector.record_evaluation("user-api", "success", score=7.0, risk=93.0, open_anomalies=4)
        text = self.collector.get_metrics_text()

        assert 'servicepulse_evaluations_total{outcome="success"} 1.0' in text
        assert 'servicepulse_health_score{service="user-api"} 7.0' in text
        assert 'servicepulse_current_risk{service="user-api"} 93.0' in text
        assert 'servicepulse_open_anomalies{service="user-api"} 4.0' in text
        assert 'servicepulse_service_stale{service="user-api"} 0.0' in text

    def test_record_stale(self):
        self.collector.record_evaluation("auth", "stale")
        text = self.collector.get_metrics_text()

        assert 'servicepulse_evaluations_total{outcome="stale"} 1.0' in text
        assert 'servicepulse_service_stale{service="auth"} 1.0' in text
        assert 'servicepulse_health_score{service="auth"}' not in text

    def test_anomaly_and_ingestion_counters(self):
        self.collector.record_anomaly_detected("error_rate", "critical")
        self.collector.record_anomaly_detected("error_rate", "critical")
        self.collector.record_out_of_order("auth")
        self.collector.record_fetch_error("deployments")
        text = self.collector.get_metrics_text()

        assert 'servicepulse_anomalies_detected_total{type="error_rate",severity="critical"} 2.0' in text
        assert 'servicepulse_out_of_order_samples_total{service="auth"} 1.0' in text
        assert 'servicepulse_fetch_errors_total{source="deployments"} 1.0' in text

    def test_timers(self):
        with self.collector.time_evaluation():
            pass
        with self.collector.track_fetch("metrics"):
            pass
        text = self.collector.get_metrics_text()

        assert "servicepulse_evaluation_duration_seconds_count 1.0" in text
        assert 'servicepulse_fetch_duration_seconds_count{source="metrics"} 1.0' in text
        assert "servicepulse_active_fetches 0.0" in text

    def test_default_labels(self):
        collector = MetricsCollector(metrics_config(env="test"))
        with collector.time_evaluation():
            collector.record_out_of_order("auth")
        text = collector.get_metrics_text()

        assert 'servicepulse_evaluation_duration_seconds_count{env="test"} 1.0' in text
        assert 'servicepulse_out_of_order_samples_total{service="auth",env="test"} 1.0' in text

    def test_collectors_are_independent(self):
        other = MetricsCollector(metrics_config())
        self.collector.record_fetch_error("metrics")
        assert "servicepulse_fetch_errors_total{" not in other.get_metrics_text()

    def test_global_collector(self):
        collector = initialize_metrics(metrics_config())
        assert get_metrics() is collector
        reset_metrics()
        assert get_metrics() is None


class TestTracing:
    """Test tracing helpers without an installed provider"""

    def test_noop_tracer(self):
        assert not is_tracing_enabled()
        assert isinstance(get_tracer(), trace.NoOpTracer)

    def test_traced_function(self):
        @traced("test.add")
        def add(a, b):
            set_attribute("sum", a + b)
            add_event("added")
            return a + b

        assert add(2, 3) == 5
        assert add.__name__ == "add"

    def test_traced_reraises(self):
        @traced()
        def fail():
            raise ValueError("bad input")

        with pytest.raises(ValueError):
            fail()

    @pytest.mark.asyncio
    async def test_traced_coroutine(self):
        @traced("test.double")
        async def double(value):
            await asyncio.sleep(0)
            return value * 2

        assert inspect.iscoroutinefunction(double)
        assert await double(21) == 42

    def test_span_inside_service_context(self):
        with ServiceContext("auth"):
            with span("test.block", {"cycle": 1}) as current:
                assert current is not None


class TestObservabilityConfig:
    def test_header_string(self):
        config = TracingConfig(otlp_headers="api-key=secret, team=sre")
        assert config.otlp_headers == {"api-key": "secret", "team": "sre"}

    def test_log_level_normalized(self):
        config = ObservabilityConfig.model_validate({"logging": {"level": "debug"}})
        assert config.logging.level == "DEBUG"

    def test_invalid_log_format(self):
        with pytest.raises(ValueError):
            ObservabilityConfig.model_validate({"logging": {"format": "xml"}})

    def test_trace_export_needs_endpoint(self):
        config = ObservabilityConfig.model_validate({"tracing": {"enabled": True}})
        assert not config.should_export_traces()
        config.tracing.otlp_endpoint = "http://collector:4317"
        assert config.should_export_traces()
