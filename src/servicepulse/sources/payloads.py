"""
Wire payload parsing

Telemetry arrives in two record shapes: flat samples using the model's
own field names, and the dashboard shape with short metric keys (``cpu``,
``memory``, ``latency``, ``errorRate``, ``throughput``), either nested under
``metrics`` or at the top level. A
payload is either a list of records or ``{"samples": [...], "current": {...}}``.
"""

from typing import Any

from ..models import Deployment, MetricsSnapshot, TelemetrySample
from .base import TelemetryBatch

# Dashboard metric keys mapped to sample field names
_NESTED_METRICS = {
    "cpu": "cpu_percent",
    "memory": "memory_percent",
    "latency": "latency_ms",
    "errorRate": "error_rate_percent",
    "throughput": "throughput_per_sec",
}


def _flatten(record: dict[str, Any]) -> dict[str, Any]:
    metrics = record.get("metrics")
    source = metrics if isinstance(metrics, dict) else record

    flat = {
        k: v for k, v in record.items() if k != "metrics" and k not in _NESTED_METRICS
    }
    for key, field_name in _NESTED_METRICS.items():
        if key in source:
            flat[field_name] = source[key]
    return flat


def parse_sample(service_id: str, record: dict[str, Any]) -> TelemetrySample:
    """Parse one telemetry record; the record's own serviceId is ignored"""
    if not isinstance(record, dict):
        raise ValueError(f"Telemetry record must be an object, got {type(record).__name__}")
    data = _flatten(record)
    data.pop("serviceId", None)
    data["service_id"] = service_id
    return TelemetrySample.model_validate(data)


def parse_snapshot(record: dict[str, Any]) -> MetricsSnapshot:
    if not isinstance(record, dict):
        raise ValueError(f"Snapshot must be an object, got {type(record).__name__}")
    data = _flatten(record)
    data.pop("serviceId", None)
    return MetricsSnapshot.model_validate(data)


def parse_batch(service_id: str, payload: Any) -> TelemetryBatch:
    """
    Parse a telemetry payload into a batch sorted by timestamp

    Raises:
        ValueError: If the payload has neither shape
        pydantic.ValidationError: If a record has invalid metric values
    """
    current = None
    if isinstance(payload, dict):
        records = payload.get("samples", [])
        if payload.get("current") is not None:
            current = parse_snapshot(payload["current"])
    elif isinstance(payload, list):
        records = payload
    else:
        raise ValueError(f"Unexpected telemetry payload type {type(payload).__name__}")

    if not isinstance(records, list):
        raise ValueError("'samples' must be a list")

    samples = sorted(
        (parse_sample(service_id, record) for record in records),
        key=lambda s: s.timestamp,
    )
    return TelemetryBatch(samples=samples, current=current)


def parse_deployments(payload: Any) -> list[Deployment]:
    if isinstance(payload, dict):
        payload = payload.get("deployments", [])
    if not isinstance(payload, list):
        raise ValueError(f"Unexpected deployments payload type {type(payload).__name__}")
    return [Deployment.model_validate(record) for record in payload]
