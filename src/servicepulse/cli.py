"""
Command-line interface for servicepulse

Provides CLI commands for:
- Evaluating recorded telemetry: servicepulse evaluate --telemetry-file telemetry.json
- Polling live services: servicepulse watch --services-file services.yml
- Managing configuration: servicepulse config --show
"""

import asyncio
import json
import sys
from pathlib import Path
from typing import Any, Optional

import click
import yaml

from . import __version__
from .config import PulseConfig, get_config, set_config
from .engine import TelemetryEngine
from .errors import ServicePulseError
from .models import Service, ServiceReport
from .observability import initialize_observability, shutdown_observability
from .repository import InMemoryServiceRepository, JsonFileServiceRepository
from .scheduler import PollingScheduler
from .sources import HttpDeploymentSource, HttpMetricsSource, parse_batch, parse_deployments

_STATUS_ICONS = {"healthy": "🟢", "degrading": "🟡", "critical": "🔴"}


@click.group()
@click.version_option(version=__version__, prog_name="servicepulse")
@click.option(
    "--config",
    "config_path",
    type=click.Path(exists=True, dir_okay=False),
    help="YAML configuration file (default: servicepulse.yml if present)",
)
def cli(config_path: Optional[str]):
    """servicepulse - service health scoring, anomaly detection and deployment risk"""
    if config_path:
        try:
            set_config(PulseConfig.load_from_file(config_path))
        except ServicePulseError as e:
            click.echo(f"❌ {e}", err=True)
            sys.exit(1)


def _load_json(path: str) -> Any:
    with open(path, encoding="utf-8") as f:
        return json.load(f)


def _infer_service_id(payload: Any, fallback: str) -> str:
    records = payload.get("samples", []) if isinstance(payload, dict) else payload
    if isinstance(records, list):
        for record in records:
            if isinstance(record, dict) and record.get("serviceId"):
                return str(record["serviceId"])
    return fallback


def render_report(report: ServiceReport) -> str:
    """Human-readable report"""
    lines = [f"📈 Service Report: {report.service_id}", "=" * 50]

    if report.stale:
        lines.append(f"⚠️  Stale: {report.last_error or 'no recent data'}")

    if report.health is None:
        lines.append("Health: unknown")
        return "\n".join(lines)

    status = report.health.status.value
    lines.append(f"Health: {_STATUS_ICONS.get(status, '')} {report.health.score:.1f}/100 ({status})")

    if report.risk is not None:
        lines.append(
            f"Risk: {report.risk.current_risk:.1f}/100 (trend: {report.risk.trend.value})"
        )

    lines.append(f"\n🚨 Open Anomalies ({len(report.anomalies)}):")
    for anomaly in report.anomalies:
        lines.append(
            f"  - [{anomaly.severity.value}] {anomaly.type.value}: {anomaly.description} "
            f"(confidence {anomaly.confidence:.0f}%)"
        )
        if anomaly.commit_hash:
            lines.append(f"      suspected commit: {anomaly.commit_hash}")

    if report.risk is not None:
        lines.append("\nFactors:")
        lines.extend(f"  - {factor}" for factor in report.risk.factors)
        lines.append("\nRecommendations:")
        lines.extend(
            f"  {i}. {item}" for i, item in enumerate(report.risk.recommendations, 1)
        )

    return "\n".join(lines)


@cli.command()
@click.option(
    "--telemetry-file",
    type=click.Path(exists=True, dir_okay=False),
    required=True,
    help="JSON file with telemetry samples (list, or {samples, current})",
)
@click.option(
    "--deployments-file",
    type=click.Path(exists=True, dir_okay=False),
    help="JSON file with deployment records",
)
@click.option("--service-id", help="Service id (default: taken from the samples)")
@click.option("--format", "output_format", type=click.Choice(["text", "json"]), default="text", help="Output format")
def evaluate(
    telemetry_file: str,
    deployments_file: Optional[str],
    service_id: Optional[str],
    output_format: str,
):
    """Evaluate recorded telemetry and print the service report"""
    try:
        payload = _load_json(telemetry_file)
        service_id = service_id or _infer_service_id(payload, Path(telemetry_file).stem)
        batch = parse_batch(service_id, payload)
        deployments = parse_deployments(_load_json(deployments_file)) if deployments_file else []

        engine = TelemetryEngine(get_config())
        engine.ingest(service_id, batch.samples)
        report = engine.evaluate(service_id, deployments, snapshot=batch.current)
    except (ServicePulseError, ValueError, OSError) as e:
        click.echo(f"❌ Evaluation failed: {e}", err=True)
        sys.exit(1)

    if output_format == "json":
        click.echo(json.dumps(report.to_dict(), indent=2))
    else:
        click.echo(render_report(report))


def _load_services(path: str, repository: InMemoryServiceRepository) -> list[Service]:
    with open(path, encoding="utf-8") as f:
        data = yaml.safe_load(f) or []
    if isinstance(data, dict):
        data = data.get("services", [])
    if not isinstance(data, list):
        raise ValueError(f"{path}: expected a list of services")

    services = []
    for entry in data:
        if isinstance(entry, str):
            entry = {"name": entry}
        services.append(
            repository.create(
                entry["name"],
                metrics_url=entry.get("metricsUrl", entry.get("metrics_url", "")),
                repo_url=entry.get("repoUrl", entry.get("repo_url", "")),
            )
        )
    # A name listed twice registers once
    return list({s.id: s for s in services}.values())


async def _watch(
    scheduler: PollingScheduler,
    services: list[Service],
    cycles: int,
    output_format: str,
) -> None:
    metrics_source = scheduler.metrics_source
    deployment_source = scheduler.deployment_source
    try:
        if not await metrics_source.check_health():
            click.echo("⚠️  Backend health check failed; reports will be stale until it recovers", err=True)

        cycle = 0
        while cycles == 0 or cycle < cycles:
            if cycle:
                await asyncio.sleep(scheduler.config.interval_seconds)
            reports = await scheduler.run_once(services)
            for report in reports:
                if output_format == "json":
                    click.echo(json.dumps(report.to_dict()))
                else:
                    click.echo(_summary_line(report))
            cycle += 1
    finally:
        await metrics_source.aclose()
        await deployment_source.aclose()


def _summary_line(report: ServiceReport) -> str:
    if report.health is None:
        return f"{report.service_id}: no data ({report.last_error or 'pending'})"
    stale = " [stale]" if report.stale else ""
    return (
        f"{report.service_id}: {report.health.score:.1f} {report.health.status.value}"
        f" risk={report.risk.current_risk:.1f} anomalies={len(report.anomalies)}{stale}"
    )


@cli.command()
@click.option(
    "--services-file",
    type=click.Path(exists=True, dir_okay=False),
    required=True,
    help="YAML/JSON list of services (name, metricsUrl, repoUrl)",
)
@click.option("--cycles", type=click.IntRange(min=0), default=0, help="Number of polling cycles (0 = until interrupted)")
@click.option("--registry", type=click.Path(dir_okay=False), help="Persist registered services to this JSON file")
@click.option("--format", "output_format", type=click.Choice(["text", "json"]), default="text", help="Output format")
def watch(services_file: str, cycles: int, registry: Optional[str], output_format: str):
    """Poll services against the configured metrics backend"""
    config = get_config()
    initialize_observability(config.observability)

    try:
        repository = JsonFileServiceRepository(registry) if registry else InMemoryServiceRepository()
        services = _load_services(services_file, repository)
        engine = TelemetryEngine(config)
    except (ServicePulseError, ValueError, KeyError, OSError) as e:
        click.echo(f"❌ Failed to start watch: {e}", err=True)
        sys.exit(1)

    scheduler = PollingScheduler(
        engine,
        HttpMetricsSource(config.sources),
        HttpDeploymentSource(config.sources),
        config.polling,
        repository=repository,
    )

    try:
        asyncio.run(_watch(scheduler, services, cycles, output_format))
    except KeyboardInterrupt:
        click.echo("Stopped")
    finally:
        shutdown_observability()


@cli.command()
@click.option("--show", is_flag=True, help="Show current configuration")
@click.option("--format", "output_format", type=click.Choice(["yaml", "json"]), default="yaml", help="Output format")
def config(show: bool, output_format: str):
    """Manage servicepulse configuration"""
    if show:
        try:
            config_dict = get_config().model_dump(mode="json")
        except ServicePulseError as e:
            click.echo(f"❌ Failed to load configuration: {e}", err=True)
            sys.exit(1)

        click.echo("🔧 Current servicepulse Configuration")
        click.echo("=" * 40)
        if output_format == "yaml":
            click.echo(yaml.safe_dump(config_dict, default_flow_style=False, indent=2))
        else:
            click.echo(json.dumps(config_dict, indent=2))
    else:
        click.echo("Use --show to display current configuration")
        click.echo("Available options:")
        click.echo("  --show          Show current configuration")
        click.echo("  --format yaml   Output in YAML format (default)")
        click.echo("  --format json   Output in JSON format")


def main():
    """Entry point for the CLI"""
    cli()


if __name__ == "__main__":
    main()
