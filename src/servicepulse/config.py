"""
Configuration management for servicepulse

Provides pydantic-based configuration with environment variable support
and YAML file loading. Invalid thresholds, window sizes or intervals are
configuration errors and stop the engine before any evaluation cycle.
"""

from datetime import timedelta
from pathlib import Path
from typing import Any, Optional

import yaml
from pydantic import BaseModel, Field, ValidationError, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .errors import ConfigurationError
from .models import TimeRange
from .observability.config import ObservabilityConfig


class StoreConfig(BaseModel):
    """Telemetry window bounds per service"""

    capacity: int = Field(default=720, gt=0)
    max_age_hours: Optional[float] = Field(default=168.0, gt=0)

    @property
    def max_age(self) -> Optional[timedelta]:
        if self.max_age_hours is None:
            return None
        return timedelta(hours=self.max_age_hours)


class MetricThreshold(BaseModel):
    """Deduction curve for one metric"""

    good: float
    warning: float
    warning_deduction: float = Field(ge=0.0)
    max_deduction: float = Field(ge=0.0, le=100.0)
    # Inverted metrics degrade as they fall (throughput)
    inverted: bool = False

    @model_validator(mode="after")
    def _check_ordering(self) -> "MetricThreshold":
        if self.inverted and not self.warning < self.good:
            raise ValueError(
                f"inverted threshold needs warning < good (got {self.warning} >= {self.good})"
            )
        if not self.inverted and not self.warning > self.good:
            raise ValueError(
                f"threshold needs warning > good (got {self.warning} <= {self.good})"
            )
        if self.max_deduction < self.warning_deduction:
            raise ValueError("max_deduction must be >= warning_deduction")
        return self

    def is_over_warning(self, value: float) -> bool:
        if self.inverted:
            return value < self.warning
        return value > self.warning


class HealthConfig(BaseModel):
    """Health scoring thresholds and status bands"""

    cpu: MetricThreshold = Field(
        default_factory=lambda: MetricThreshold(
            good=70, warning=85, warning_deduction=10, max_deduction=20
        )
    )
    memory: MetricThreshold = Field(
        default_factory=lambda: MetricThreshold(
            good=75, warning=90, warning_deduction=10, max_deduction=20
        )
    )
    latency: MetricThreshold = Field(
        default_factory=lambda: MetricThreshold(
            good=200, warning=500, warning_deduction=10, max_deduction=25
        )
    )
    error_rate: MetricThreshold = Field(
        default_factory=lambda: MetricThreshold(
            good=1, warning=5, warning_deduction=15, max_deduction=40
        )
    )
    throughput: MetricThreshold = Field(
        default_factory=lambda: MetricThreshold(
            good=50, warning=10, warning_deduction=5, max_deduction=10, inverted=True
        )
    )

    healthy_min: float = Field(default=80.0, ge=0.0, le=100.0)
    degrading_min: float = Field(default=60.0, ge=0.0, le=100.0)
    # 0 disables debouncing of band transitions
    status_hysteresis: float = Field(default=0.0, ge=0.0, le=20.0)
    # Samples averaged when no precomputed snapshot is supplied
    snapshot_samples: int = Field(default=1, ge=1)

    @model_validator(mode="after")
    def _check_bands(self) -> "HealthConfig":
        if not self.degrading_min < self.healthy_min:
            raise ValueError("degrading_min must be below healthy_min")
        return self


class ErrorRateRule(BaseModel):
    trigger: float = Field(default=5.0, ge=0.0)
    critical: float = Field(default=10.0, ge=0.0)
    confidence_multiplier: float = Field(default=8.0, gt=0.0)
    confidence_cap: float = Field(default=95.0, ge=0.0, le=100.0)


class LatencyRule(BaseModel):
    trigger: float = Field(default=500.0, ge=0.0)
    critical: float = Field(default=1000.0, ge=0.0)
    confidence_divisor: float = Field(default=20.0, gt=0.0)
    confidence_cap: float = Field(default=90.0, ge=0.0, le=100.0)


class CpuRule(BaseModel):
    trigger: float = Field(default=85.0, ge=0.0, le=100.0)
    critical: float = Field(default=95.0, ge=0.0, le=100.0)
    sustained_samples: int = Field(default=3, ge=1)
    confidence_cap: float = Field(default=90.0, ge=0.0, le=100.0)


class MemoryRule(BaseModel):
    trigger: float = Field(default=90.0, ge=0.0, le=100.0)
    critical: float = Field(default=97.0, ge=0.0, le=100.0)
    # Below trigger, a leak trend is medium severity above this level
    elevated: float = Field(default=75.0, ge=0.0, le=100.0)
    trend_samples: int = Field(default=5, ge=2)
    min_growth: float = Field(default=10.0, gt=0.0)
    confidence_cap: float = Field(default=90.0, ge=0.0, le=100.0)


class DetectionConfig(BaseModel):
    """Anomaly rule thresholds"""

    error_rate: ErrorRateRule = Field(default_factory=ErrorRateRule)
    latency: LatencyRule = Field(default_factory=LatencyRule)
    cpu: CpuRule = Field(default_factory=CpuRule)
    memory: MemoryRule = Field(default_factory=MemoryRule)

    window_range: TimeRange = TimeRange.LAST_HOUR
    max_resolved_history: int = Field(default=100, ge=0)

    @model_validator(mode="after")
    def _check_rules(self) -> "DetectionConfig":
        for name in ("error_rate", "latency", "cpu", "memory"):
            rule = getattr(self, name)
            if rule.critical < rule.trigger:
                raise ValueError(f"{name}: critical threshold below trigger")
        if not self.memory.elevated < self.memory.trigger:
            raise ValueError("memory: elevated level must be below trigger")
        return self


class CorrelationConfig(BaseModel):
    """Anomaly-to-deployment correlation window and ranking"""

    window_minutes: float = Field(default=120.0, gt=0.0)
    recency_weight: float = Field(default=0.6, ge=0.0)
    risk_weight: float = Field(default=0.4, ge=0.0)
    max_suspects: int = Field(default=3, ge=1)

    @model_validator(mode="after")
    def _check_weights(self) -> "CorrelationConfig":
        if self.recency_weight + self.risk_weight <= 0:
            raise ValueError("correlation weights must have a positive sum")
        return self

    @property
    def window(self) -> timedelta:
        return timedelta(minutes=self.window_minutes)


class RiskConfig(BaseModel):
    """Risk bands and recommendation triggers"""

    high_risk: float = Field(default=70.0, ge=0.0, le=100.0)
    elevated_risk: float = Field(default=40.0, ge=0.0, le=100.0)
    memory_pressure: float = Field(default=85.0, ge=0.0, le=100.0)
    cpu_pressure: float = Field(default=80.0, ge=0.0, le=100.0)
    rollback_risk_score: float = Field(default=70.0, ge=0.0, le=100.0)

    @model_validator(mode="after")
    def _check_bands(self) -> "RiskConfig":
        if not self.elevated_risk < self.high_risk:
            raise ValueError("elevated_risk must be below high_risk")
        return self


class PollingConfig(BaseModel):
    """Periodic evaluation settings"""

    interval_seconds: float = Field(default=10.0, gt=0.0)
    fetch_timeout_seconds: float = Field(default=5.0, gt=0.0)
    max_concurrent_fetches: int = Field(default=10, ge=1)
    time_range: TimeRange = TimeRange.LAST_DAY


class SourcesConfig(BaseModel):
    """Remote metrics and deployment API"""

    base_url: str = "http://localhost:5000"
    timeout: float = Field(default=5.0, gt=0.0)
    headers: dict[str, str] = Field(default_factory=dict)


class PulseConfig(BaseSettings):
    """Main servicepulse configuration"""

    model_config = SettingsConfigDict(
        env_prefix="SERVICEPULSE_",
        env_nested_delimiter="__",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    store: StoreConfig = Field(default_factory=StoreConfig)
    health: HealthConfig = Field(default_factory=HealthConfig)
    detection: DetectionConfig = Field(default_factory=DetectionConfig)
    correlation: CorrelationConfig = Field(default_factory=CorrelationConfig)
    risk: RiskConfig = Field(default_factory=RiskConfig)
    polling: PollingConfig = Field(default_factory=PollingConfig)
    sources: SourcesConfig = Field(default_factory=SourcesConfig)
    observability: ObservabilityConfig = Field(default_factory=ObservabilityConfig)

    @classmethod
    def load_from_file(cls, config_path: str = "servicepulse.yml") -> "PulseConfig":
        """Load configuration from YAML file with environment variable override"""
        config_file = Path(config_path)
        config_data: dict[str, Any] = {}

        if config_file.exists():
            with open(config_file, encoding="utf-8") as f:
                config_data = yaml.safe_load(f) or {}

        try:
            return cls(**config_data)
        except ValidationError as e:
            raise ConfigurationError(f"Invalid configuration in {config_path}: {e}") from e


def validate_config(config: PulseConfig) -> PulseConfig:
    """
    Re-validate a configuration instance

    Sections are plain models and can be mutated after construction, so the
    engine checks the whole tree again before its first cycle.
    """
    try:
        PulseConfig.model_validate(config.model_dump())
    except ValidationError as e:
        raise ConfigurationError(f"Invalid configuration: {e}") from e
    return config


# Global configuration instance
_config: Optional[PulseConfig] = None


def get_config() -> PulseConfig:
    """Get the global configuration instance"""
    global _config
    if _config is None:
        _config = PulseConfig.load_from_file()
    return _config


def set_config(config: PulseConfig) -> None:
    """Set the global configuration instance"""
    global _config
    _config = config
