"""
Evaluation engine - core logic for per-service health analysis

Orchestrates the flow from a telemetry window and deployment list to a
published ServiceReport: score, detect, correlate, assess.
"""

import logging
import threading
from contextlib import nullcontext
from dataclasses import dataclass, field
from datetime import datetime
from typing import Iterable, Optional, Sequence

from .config import PulseConfig, validate_config
from .context import ServiceContext
from .correlation import DeploymentCorrelator
from .detection import AnomalyDetector, AnomalyLedger
from .errors import DataGapError, OutOfOrderSampleError, UnknownServiceError
from .models import (
    Anomaly,
    Deployment,
    HealthScore,
    MetricsSnapshot,
    RiskAssessment,
    ServiceReport,
    TelemetrySample,
    utcnow,
)
from .observability.metrics import get_metrics
from .observability.tracer import add_event, set_attribute, traced
from .risk import RiskAssessor
from .scoring import HealthScorer, summarize
from .store import TelemetryStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class EvaluationResult:
    """
    Outcome of one evaluation: the report plus anomalies to store

    ``triggered`` holds the records whose rule fired this cycle and
    ``carried`` the open records from earlier cycles that did not fire
    again. ``new_anomalies`` is the part of ``triggered`` with no prior
    record.
    """

    report: ServiceReport
    triggered: list[Anomaly] = field(default_factory=list)
    carried: list[Anomaly] = field(default_factory=list)
    new_anomalies: list[Anomaly] = field(default_factory=list)

    @property
    def anomalies(self) -> list[Anomaly]:
        return self.report.anomalies


def evaluation_time(
    window: Sequence[TelemetrySample],
    snapshot: Optional[MetricsSnapshot] = None,
    now: Optional[datetime] = None,
) -> datetime:
    """
    Timestamp an evaluation is stamped with

    Derived from the input data when ``now`` is not given, so evaluating an
    unchanged window twice produces identical records.
    """
    if now is not None:
        return now
    if snapshot is not None and snapshot.timestamp is not None:
        return snapshot.timestamp
    if window:
        return window[-1].timestamp
    return utcnow()


def evaluate_snapshot(
    service_id: str,
    window: Sequence[TelemetrySample],
    deployments: Sequence[Deployment],
    config: PulseConfig,
    snapshot: Optional[MetricsSnapshot] = None,
    open_anomalies: Iterable[Anomaly] = (),
    previous_health: Optional[HealthScore] = None,
    now: Optional[datetime] = None,
) -> EvaluationResult:
    """
    Run score, detect, correlate and assess over explicit inputs

    Args:
        service_id: Service being evaluated
        window: Recent samples, oldest first
        deployments: Candidate deployments (other services are ignored)
        config: Engine configuration
        snapshot: Precomputed current metrics; recomputed from the window if omitted
        open_anomalies: Unresolved anomalies from earlier cycles
        previous_health: Last published score, for status hysteresis
        now: Evaluation time

    Raises:
        DataGapError: If there is neither a snapshot nor any sample
    """
    current = snapshot
    if current is None:
        current = summarize(window, config.health.snapshot_samples)
    if current is None:
        raise DataGapError(service_id)

    evaluated_at = evaluation_time(window, snapshot, now)
    prior = [a for a in open_anomalies if not a.resolved and a.service_id == service_id]

    scorer = HealthScorer(config.health)
    health = scorer.score(service_id, current, evaluated_at, previous_health)

    detector = AnomalyDetector(config.detection)
    detected = detector.detect(service_id, window, current, prior, evaluated_at)

    merged = {a.id: a for a in prior}
    merged.update((a.id, a) for a in detected)
    known_ids = {a.id for a in prior}
    triggered_ids = {a.id for a in detected}

    correlator = DeploymentCorrelator(config.correlation)
    correlated = correlator.correlate_all(merged.values(), deployments)
    correlated.sort(key=_report_order)

    assessor = RiskAssessor(config.risk, config.health)
    risk = assessor.assess(health, current, correlated, evaluated_at)

    report = ServiceReport(
        service_id=service_id,
        health=health,
        anomalies=correlated,
        risk=risk,
        stale=False,
        evaluated_at=evaluated_at,
    )
    triggered = [a for a in correlated if a.id in triggered_ids]
    return EvaluationResult(
        report=report,
        triggered=triggered,
        carried=[a for a in correlated if a.id not in triggered_ids],
        new_anomalies=[a for a in triggered if a.id not in known_ids],
    )


def _report_order(anomaly: Anomaly) -> tuple:
    return (anomaly.detected_at, anomaly.type.value, anomaly.id)


class TelemetryEngine:
    """
    Per-service evaluation engine

    Owns the telemetry windows, the anomaly ledger and the published
    reports. Each service is expected to have a single writer; reads of a
    published report are always a complete, immutable value.
    """

    def __init__(
        self,
        config: PulseConfig,
        store: Optional[TelemetryStore] = None,
        ledger: Optional[AnomalyLedger] = None,
    ):
        self.config = validate_config(config)
        self.store = store or TelemetryStore(
            capacity=config.store.capacity, max_age=config.store.max_age
        )
        self.ledger = ledger or AnomalyLedger(config.detection.max_resolved_history)
        self._reports: dict[str, ServiceReport] = {}
        self._lock = threading.Lock()

    # Ingestion

    def record_sample(self, sample: TelemetrySample) -> bool:
        """
        Append one sample to its service window

        Returns False (and leaves the window untouched) for a sample older
        than the newest one already held.
        """
        try:
            self.store.append(sample.service_id, sample)
        except OutOfOrderSampleError as e:
            logger.warning(f"Rejected sample: {e}")
            metrics = get_metrics()
            if metrics:
                metrics.record_out_of_order(sample.service_id)
            return False
        return True

    def ingest(self, service_id: str, samples: Iterable[TelemetrySample]) -> int:
        """Add a fetched batch; samples already covered by the window are skipped"""
        return self.store.ingest(service_id, samples)

    # Evaluation

    @traced("engine.evaluate")
    def evaluate(
        self,
        service_id: str,
        deployments: Sequence[Deployment] = (),
        snapshot: Optional[MetricsSnapshot] = None,
        now: Optional[datetime] = None,
    ) -> ServiceReport:
        """
        Evaluate a service and publish its report

        A service with no samples and no snapshot keeps its last report,
        marked stale.
        """
        metrics = get_metrics()
        set_attribute("service.id", service_id)

        with ServiceContext(service_id):
            window = self.store.window(
                service_id, self.config.detection.window_range, now
            )
            previous = self.report(service_id)

            timer = metrics.time_evaluation() if metrics else nullcontext()
            try:
                with timer:
                    result = evaluate_snapshot(
                        service_id,
                        window,
                        deployments,
                        self.config,
                        snapshot=snapshot,
                        open_anomalies=self.ledger.open(service_id),
                        previous_health=previous.health if previous else None,
                        now=now,
                    )
            except DataGapError as e:
                return self.mark_stale(service_id, e.reason)

            # Records acknowledged since the cycle read the ledger stay resolved
            triggered = self.ledger.upsert(result.triggered)
            carried = self.ledger.upsert(result.carried, reopen=False)
            report = result.report.model_copy(
                update={"anomalies": sorted(triggered + carried, key=_report_order)}
            )
            report = self._publish(report)

            updated_ids = {a.id for a in result.triggered} - {a.id for a in result.new_anomalies}
            for anomaly in (a for a in triggered if a.id not in updated_ids):
                add_event(
                    "anomaly.detected",
                    {"anomaly.type": anomaly.type.value, "anomaly.severity": anomaly.severity.value},
                )
                if metrics:
                    metrics.record_anomaly_detected(anomaly.type.value, anomaly.severity.value)

            if metrics:
                metrics.record_evaluation(
                    service_id,
                    "success",
                    score=report.health.score,
                    risk=report.risk.current_risk,
                    open_anomalies=len(report.anomalies),
                )

            set_attribute("health.score", report.health.score)
            set_attribute("health.status", report.health.status.value)
            logger.info(
                f"Evaluated {service_id}: score={report.health.score} "
                f"status={report.health.status.value} "
                f"risk={report.risk.current_risk} anomalies={len(report.anomalies)}"
            )
            return report

    def mark_stale(self, service_id: str, reason: str) -> ServiceReport:
        """Keep the last known report for a service, flagged as stale"""
        with self._lock:
            previous = self._reports.get(service_id)
            if previous is None:
                report = ServiceReport(service_id=service_id, stale=True, last_error=reason)
            else:
                report = previous.model_copy(update={"stale": True, "last_error": reason})
            self._reports[service_id] = report

        metrics = get_metrics()
        if metrics:
            metrics.record_evaluation(service_id, "stale")
        logger.warning(f"Service {service_id} marked stale: {reason}")
        return report

    def _publish(self, report: ServiceReport) -> ServiceReport:
        with self._lock:
            acknowledged = {
                a.id for a in report.anomalies if self.ledger.is_resolved(a.service_id, a.id)
            }
            if acknowledged:
                report = report.model_copy(
                    update={"anomalies": [a for a in report.anomalies if a.id not in acknowledged]}
                )
            self._reports[report.service_id] = report
        return report

    # Published state

    def report(self, service_id: str) -> Optional[ServiceReport]:
        with self._lock:
            return self._reports.get(service_id)

    def reports(self) -> list[ServiceReport]:
        with self._lock:
            return [self._reports[key] for key in sorted(self._reports)]

    def health(self, service_id: str) -> Optional[HealthScore]:
        report = self.report(service_id)
        return report.health if report else None

    def open_anomalies(self, service_id: str) -> list[Anomaly]:
        return self.ledger.open(service_id)

    def risk(self, service_id: str) -> Optional[RiskAssessment]:
        report = self.report(service_id)
        return report.risk if report else None

    def resolve_anomaly(self, service_id: str, anomaly_id: str) -> Anomaly:
        """
        Acknowledge an anomaly; the published report drops it immediately

        Raises:
            UnknownServiceError: If the service has never been evaluated
            UnknownAnomalyError: If the anomaly is not known for the service
        """
        if self.report(service_id) is None and not self.ledger.all(service_id):
            raise UnknownServiceError(service_id)

        resolved = self.ledger.resolve(service_id, anomaly_id)
        with self._lock:
            current = self._reports.get(service_id)
            if current is not None:
                self._reports[service_id] = current.model_copy(
                    update={
                        "anomalies": [a for a in current.anomalies if a.id != anomaly_id]
                    }
                )
        return resolved
