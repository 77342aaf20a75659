"""
Anomaly detection

Evaluates the current telemetry window against one rule per anomaly type
and keeps at most one open anomaly per service and type. Anomalies never
resolve themselves; resolution is an external acknowledgement recorded in
the ledger.
"""

import hashlib
import logging
import threading
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from .config import DetectionConfig
from .errors import UnknownAnomalyError
from .models import (
    Anomaly,
    AnomalyType,
    MetricsSnapshot,
    Severity,
    TelemetrySample,
)

logger = logging.getLogger(__name__)


def clamp(value: float, low: float = 0.0, high: float = 100.0) -> float:
    return max(low, min(high, value))


def anomaly_id(service_id: str, anomaly_type: AnomalyType, detected_at: datetime) -> str:
    """Deterministic id so re-running a cycle reproduces the same records"""
    content = f"{service_id}:{anomaly_type.value}:{detected_at.isoformat()}"
    return "anom-" + hashlib.sha256(content.encode("utf-8")).hexdigest()[:16]


@dataclass(frozen=True)
class Finding:
    """A rule trigger before it is merged into an Anomaly record"""

    type: AnomalyType
    severity: Severity
    confidence: float
    description: str


class AnomalyDetector:
    """
    Rule-based detector

    Rules:
    - error_rate: current error rate above the trigger threshold
    - latency_spike: current latency above the trigger threshold
    - cpu_saturation: current cpu above threshold, severity grows with the
      number of consecutive saturated samples
    - memory_leak: memory above threshold or a sustained monotonic climb
    """

    def __init__(self, config: DetectionConfig):
        self.config = config

    def evaluate_rules(
        self, window: Sequence[TelemetrySample], snapshot: MetricsSnapshot
    ) -> list[Finding]:
        """All rule triggers for a window, in a fixed rule order"""
        findings = [
            self._check_error_rate(snapshot),
            self._check_latency(snapshot),
            self._check_cpu(window, snapshot),
            self._check_memory(window, snapshot),
        ]
        return [f for f in findings if f is not None]

    def detect(
        self,
        service_id: str,
        window: Sequence[TelemetrySample],
        snapshot: MetricsSnapshot,
        open_anomalies: Iterable[Anomaly],
        now: datetime,
    ) -> list[Anomaly]:
        """
        Anomalies created or updated by this cycle

        A trigger with an open anomaly of the same type updates that record
        (same id and detected_at); otherwise a new record is created.
        """
        open_by_type = {a.type: a for a in open_anomalies if not a.resolved}
        results = []

        for finding in self.evaluate_rules(window, snapshot):
            existing = open_by_type.get(finding.type)
            if existing is not None:
                anomaly = existing.model_copy(
                    update={
                        "severity": finding.severity,
                        "confidence": finding.confidence,
                        "description": finding.description,
                        "updated_at": now,
                    }
                )
                logger.debug(f"Updated {finding.type.value} anomaly {existing.id}")
            else:
                anomaly = Anomaly(
                    id=anomaly_id(service_id, finding.type, now),
                    service_id=service_id,
                    type=finding.type,
                    severity=finding.severity,
                    confidence=finding.confidence,
                    detected_at=now,
                    updated_at=now,
                    description=finding.description,
                )
                logger.info(
                    f"Detected {finding.type.value} anomaly for {service_id} "
                    f"(severity={finding.severity.value}, confidence={finding.confidence})"
                )
            results.append(anomaly)

        return results

    def _check_error_rate(self, snapshot: MetricsSnapshot) -> Optional[Finding]:
        rule = self.config.error_rate
        rate = snapshot.error_rate_percent
        if rate <= rule.trigger:
            return None

        severity = Severity.CRITICAL if rate > rule.critical else Severity.HIGH
        confidence = clamp(min(rule.confidence_cap, rate * rule.confidence_multiplier))
        return Finding(
            type=AnomalyType.ERROR_RATE,
            severity=severity,
            confidence=round(confidence, 1),
            description=f"Error rate at {rate:.1f}% exceeds {rule.trigger:.1f}% threshold",
        )

    def _check_latency(self, snapshot: MetricsSnapshot) -> Optional[Finding]:
        rule = self.config.latency
        latency = snapshot.latency_ms
        if latency <= rule.trigger:
            return None

        severity = Severity.CRITICAL if latency > rule.critical else Severity.HIGH
        confidence = clamp(min(rule.confidence_cap, latency / rule.confidence_divisor))
        return Finding(
            type=AnomalyType.LATENCY_SPIKE,
            severity=severity,
            confidence=round(confidence, 1),
            description=f"Latency at {latency:.0f}ms exceeds {rule.trigger:.0f}ms threshold",
        )

    def _check_cpu(
        self, window: Sequence[TelemetrySample], snapshot: MetricsSnapshot
    ) -> Optional[Finding]:
        rule = self.config.cpu
        cpu = snapshot.cpu_percent
        if cpu <= rule.trigger:
            return None

        run = max(1, _trailing_run(window, lambda s: s.cpu_percent > rule.trigger))
        sustained = run >= rule.sustained_samples
        severe = cpu > rule.critical

        if severe and sustained:
            severity = Severity.CRITICAL
        elif severe or sustained:
            severity = Severity.HIGH
        else:
            severity = Severity.MEDIUM

        confidence = 50 + 2 * (cpu - rule.trigger) + 10 * (min(run, rule.sustained_samples) - 1)
        confidence = clamp(min(rule.confidence_cap, confidence))

        description = f"CPU at {cpu:.1f}% above {rule.trigger:.0f}%"
        if run > 1:
            description += f" for {run} consecutive samples"
        return Finding(
            type=AnomalyType.CPU_SATURATION,
            severity=severity,
            confidence=round(confidence, 1),
            description=description,
        )

    def _check_memory(
        self, window: Sequence[TelemetrySample], snapshot: MetricsSnapshot
    ) -> Optional[Finding]:
        rule = self.config.memory
        memory = snapshot.memory_percent
        above = memory > rule.trigger
        leak = _leak_run(window, rule.trend_samples)
        trending = leak is not None and leak[0] >= rule.min_growth

        if not above and not trending:
            return None

        if memory > rule.critical or (above and trending):
            severity = Severity.CRITICAL
        elif above:
            severity = Severity.HIGH
        elif memory > rule.elevated:
            severity = Severity.MEDIUM
        else:
            severity = Severity.LOW

        confidence = 40 + 3 * max(0.0, memory - rule.trigger) + (30 if trending else 0)
        confidence = clamp(min(rule.confidence_cap, confidence))

        if trending:
            growth, run = leak
            description = (
                f"Memory grew {growth:.1f} points to {memory:.1f}% "
                f"over {run} consecutive samples"
            )
        else:
            description = f"Memory at {memory:.1f}% exceeds {rule.trigger:.0f}% threshold"
        return Finding(
            type=AnomalyType.MEMORY_LEAK,
            severity=severity,
            confidence=round(confidence, 1),
            description=description,
        )


def _trailing_run(window: Sequence[TelemetrySample], predicate) -> int:
    run = 0
    for sample in reversed(window):
        if not predicate(sample):
            break
        run += 1
    return run


def _leak_run(
    window: Sequence[TelemetrySample], min_samples: int
) -> Optional[tuple[float, int]]:
    """
    Growth and length of the trailing non-decreasing memory run

    Returns None when the run is shorter than ``min_samples``.
    """
    if len(window) < min_samples:
        return None

    run_start = len(window) - 1
    while run_start > 0 and window[run_start - 1].memory_percent <= window[run_start].memory_percent:
        run_start -= 1

    run = len(window) - run_start
    if run < min_samples:
        return None
    return window[-1].memory_percent - window[run_start].memory_percent, run


class AnomalyLedger:
    """
    Anomaly records per service

    Holds open anomalies for deduplication and a bounded history of
    resolved ones. Records are replaced, never mutated.
    """

    def __init__(self, max_resolved_history: int = 100):
        self.max_resolved_history = max_resolved_history
        self._records: dict[str, dict[str, Anomaly]] = {}
        self._lock = threading.RLock()

    def open(self, service_id: str) -> list[Anomaly]:
        """Unresolved anomalies, oldest first"""
        with self._lock:
            records = self._records.get(service_id, {})
            return _ordered(a for a in records.values() if not a.resolved)

    def all(self, service_id: str) -> list[Anomaly]:
        with self._lock:
            return _ordered(self._records.get(service_id, {}).values())

    def get(self, service_id: str, anomaly_id: str) -> Optional[Anomaly]:
        with self._lock:
            return self._records.get(service_id, {}).get(anomaly_id)

    def upsert(self, anomalies: Iterable[Anomaly], reopen: bool = True) -> list[Anomaly]:
        """
        Store created or updated anomalies, returning the stored records

        Args:
            anomalies: Records produced by an evaluation cycle
            reopen: Whether these records come from a fresh trigger. A
                triggered record whose stored copy was resolved is stored
                under a new id; any other record is dropped in that case.
        """
        stored = []
        with self._lock:
            for anomaly in anomalies:
                records = self._records.setdefault(anomaly.service_id, {})
                current = records.get(anomaly.id)
                if current is not None and current.resolved:
                    # Resolved records are final; a fresh trigger needs its own id
                    if anomaly.resolved or not reopen:
                        continue
                    anomaly = anomaly.model_copy(
                        update={"id": _reissue_id(anomaly.id, records)}
                    )
                records[anomaly.id] = anomaly
                stored.append(anomaly)
        return stored

    def is_resolved(self, service_id: str, anomaly_id: str) -> bool:
        anomaly = self.get(service_id, anomaly_id)
        return anomaly is not None and anomaly.resolved

    def resolve(self, service_id: str, anomaly_id: str) -> Anomaly:
        """
        Mark an anomaly resolved (external acknowledgement)

        Raises:
            UnknownAnomalyError: If the ledger holds no such anomaly
        """
        with self._lock:
            records = self._records.get(service_id, {})
            anomaly = records.get(anomaly_id)
            if anomaly is None:
                raise UnknownAnomalyError(service_id, anomaly_id)

            resolved = anomaly.resolve()
            records[anomaly_id] = resolved
            self._prune(service_id)

        logger.info(f"Anomaly {anomaly_id} for {service_id} resolved")
        return resolved

    def _prune(self, service_id: str) -> None:
        records = self._records.get(service_id, {})
        resolved = _ordered(a for a in records.values() if a.resolved)
        excess = len(resolved) - self.max_resolved_history
        for anomaly in resolved[:max(0, excess)]:
            del records[anomaly.id]


def _ordered(anomalies: Iterable[Anomaly]) -> list[Anomaly]:
    return sorted(anomalies, key=lambda a: (a.detected_at, a.type.value, a.id))


def _reissue_id(previous_id: str, taken: dict[str, Anomaly]) -> str:
    candidate = previous_id
    while candidate in taken:
        digest = hashlib.sha256(f"{candidate}:reopened".encode("utf-8")).hexdigest()
        candidate = "anom-" + digest[:16]
    return candidate
