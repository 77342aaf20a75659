"""
Observability configuration

Nested under ``PulseConfig.observability``, so every value can come from
servicepulse.yml or a ``SERVICEPULSE_OBSERVABILITY__...`` environment
variable. Tracing and metrics default to off; only console logging is on.
"""

from typing import Literal, Optional, Union

from pydantic import BaseModel, Field, field_validator


class TracingConfig(BaseModel):
    """OpenTelemetry spans around evaluations and fetches"""

    enabled: bool = Field(default=False, description="Record evaluation and fetch spans")
    service_name: str = Field(default="servicepulse", description="Resource service.name")
    service_version: str = Field(default="0.1.0", description="Resource service.version")

    otlp_endpoint: Optional[str] = Field(
        default=None, description="OTLP gRPC collector, e.g. http://localhost:4317"
    )
    otlp_headers: dict[str, str] = Field(
        default_factory=dict, description="Headers sent to the collector"
    )
    otlp_insecure: bool = Field(default=True, description="Plaintext gRPC to the collector")

    sample_rate: float = Field(
        default=1.0, ge=0.0, le=1.0, description="Fraction of evaluation traces kept"
    )

    @field_validator("otlp_headers", mode="before")
    @classmethod
    def parse_header_string(cls, value: Union[str, dict]) -> dict:
        """Accept the OTEL ``key=value,key=value`` form as well as a mapping"""
        if not isinstance(value, str):
            return value
        headers = {}
        for pair in value.split(","):
            key, sep, item = pair.partition("=")
            if sep:
                headers[key.strip()] = item.strip()
        return headers


class MetricsConfig(BaseModel):
    """Prometheus collectors for evaluations, anomalies and fetches"""

    enabled: bool = Field(default=False, description="Create the metrics collector")
    serve: bool = Field(default=False, description="Expose /metrics over HTTP")
    port: int = Field(default=9108, ge=1024, le=65535, description="Exposition port")

    default_labels: dict[str, str] = Field(
        default_factory=dict, description="Constant labels, e.g. cluster or region"
    )

    # A full score/detect/correlate/assess pass is sub-millisecond
    evaluation_buckets: list[float] = Field(
        default_factory=lambda: [0.0001, 0.0005, 0.001, 0.0025, 0.005, 0.01, 0.05, 0.1]
    )
    # Remote fetches are bounded by polling.fetch_timeout_seconds
    fetch_buckets: list[float] = Field(
        default_factory=lambda: [0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0]
    )


class LoggingConfig(BaseModel):
    """Console logging with service correlation"""

    enabled: bool = Field(default=True, description="Install the console handler")
    level: str = Field(default="INFO", description="Root and servicepulse log level")
    format: Literal["text", "json"] = Field(default="text", description="Line format")
    include_trace_id: bool = Field(
        default=True, description="Stamp trace_id/span_id when tracing is on"
    )

    @field_validator("level")
    @classmethod
    def normalize_level(cls, value: str) -> str:
        level = value.upper()
        if level not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"Unknown log level: {value}")
        return level


class ObservabilityConfig(BaseModel):
    """Logging, tracing and metrics settings behind one master switch"""

    enabled: bool = Field(default=True, description="Master switch")
    environment: str = Field(default="development", description="deployment.environment")

    tracing: TracingConfig = Field(default_factory=TracingConfig)
    metrics: MetricsConfig = Field(default_factory=MetricsConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    def get_resource_attributes(self) -> dict[str, str]:
        return {
            "service.name": self.tracing.service_name,
            "service.version": self.tracing.service_version,
            "deployment.environment": self.environment,
        }

    def should_export_traces(self) -> bool:
        return self.enabled and self.tracing.enabled and bool(self.tracing.otlp_endpoint)

    def should_start_metrics_server(self) -> bool:
        return self.enabled and self.metrics.enabled and self.metrics.serve
