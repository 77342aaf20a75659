"""
Deployment correlation

Ranks the deployments that shortly preceded an anomaly as its likely causes.
A deployment qualifies when it belongs to the same service and happened no
more than the correlation window before the anomaly was detected.
"""

import logging
from collections.abc import Iterable, Sequence

from .config import CorrelationConfig
from .models import Anomaly, Deployment, DeploymentSuspect

logger = logging.getLogger(__name__)


class DeploymentCorrelator:
    """Matches unresolved anomalies to recent deployments"""

    def __init__(self, config: CorrelationConfig):
        self.config = config

    def rank(
        self, anomaly: Anomaly, deployments: Iterable[Deployment]
    ) -> list[DeploymentSuspect]:
        """
        Candidate deployments ordered from most to least likely cause

        Score combines recency inside the window with the deployment's own
        risk score. Ties go to the most recent deployment.
        """
        window = self.config.window
        total_weight = self.config.recency_weight + self.config.risk_weight
        recency_weight = self.config.recency_weight / total_weight
        risk_weight = self.config.risk_weight / total_weight

        candidates = []
        for deployment in deployments:
            if deployment.service_id != anomaly.service_id:
                continue
            gap = anomaly.detected_at - deployment.time
            if gap.total_seconds() < 0 or gap > window:
                continue

            recency = 1.0 - gap / window
            score = recency_weight * recency * 100.0 + risk_weight * deployment.risk_score
            candidates.append(
                DeploymentSuspect(
                    deployment_id=deployment.id,
                    commit_hash=deployment.commit_hash,
                    author=deployment.author,
                    time=deployment.time,
                    risk_score=deployment.risk_score,
                    gap_minutes=round(gap.total_seconds() / 60.0, 1),
                    score=round(max(0.0, min(100.0, score)), 1),
                )
            )

        candidates.sort(
            key=lambda s: (-s.score, -s.time.timestamp(), s.deployment_id)
        )
        return candidates[: self.config.max_suspects]

    def correlate(self, anomaly: Anomaly, deployments: Sequence[Deployment]) -> Anomaly:
        """
        Attach ranked suspects to an unresolved anomaly

        The top suspect supplies commit_hash and deployment_time. Without a
        candidate inside the window the anomaly is left uncorrelated.
        """
        if anomaly.resolved:
            return anomaly

        suspects = self.rank(anomaly, deployments)
        if not suspects:
            logger.debug(
                f"No deployment within {self.config.window_minutes:.0f} min "
                f"of anomaly {anomaly.id} ({anomaly.type.value})"
            )
            return anomaly.model_copy(
                update={"suspects": [], "commit_hash": None, "deployment_time": None}
            )

        top = suspects[0]
        logger.debug(
            f"Anomaly {anomaly.id} correlated with commit {top.commit_hash} "
            f"({top.gap_minutes} min earlier, score {top.score})"
        )
        return anomaly.model_copy(
            update={
                "suspects": suspects,
                "commit_hash": top.commit_hash,
                "deployment_time": top.time,
            }
        )

    def correlate_all(
        self, anomalies: Iterable[Anomaly], deployments: Sequence[Deployment]
    ) -> list[Anomaly]:
        return [self.correlate(anomaly, deployments) for anomaly in anomalies]
