"""
Telemetry and deployment sources

HTTP clients for the remote metrics/VCS API plus in-memory sources.
"""

from .base import DeploymentSource, MetricsSource, TelemetryBatch
from .http import HttpDeploymentSource, HttpMetricsSource
from .payloads import parse_batch, parse_deployments, parse_sample
from .static import StaticDeploymentSource, StaticMetricsSource

__all__ = [
    "DeploymentSource",
    "MetricsSource",
    "TelemetryBatch",
    "HttpDeploymentSource",
    "HttpMetricsSource",
    "StaticDeploymentSource",
    "StaticMetricsSource",
    "parse_batch",
    "parse_deployments",
    "parse_sample",
]
