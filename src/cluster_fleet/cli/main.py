"""cluster-fleet CLI: command-line interface for cluster-fleet.

Commands:
    sync                Run the watch + reconcile loop until interrupted
    clusters            Show aggregated info for every known cluster
    resolve namespace   Show clusters a namespace works in
    resolve project     Show clusters hosting namespaces of a project
    assigned            Show quota already assigned on a cluster
    validate-config     Check a cluster-fleet.yaml file
"""

from __future__ import annotations

import json
import logging
import sys
import threading

import click

from cluster_fleet import __version__
from cluster_fleet.aggregate.aggregator import AggregationCancelled, AggregationError
from cluster_fleet.config import FleetConfig, load_config
from cluster_fleet.fleet import Fleet
from cluster_fleet.models import ClusterInfoFilter
from cluster_fleet.sync.watcher import SyncError

DEFAULT_SYNC_TIMEOUT = 60.0


def _load(config_path: str | None) -> FleetConfig:
    try:
        return load_config(config_path)
    except (FileNotFoundError, ValueError) as e:
        click.echo(f"Error loading config: {e}", err=True)
        sys.exit(1)


def _build_fleet(config_path: str | None) -> Fleet:
    cfg = _load(config_path)
    try:
        return Fleet.from_config(cfg)
    except Exception as e:
        click.echo(f"Error connecting to pivot cluster: {e}", err=True)
        sys.exit(1)


def _started_fleet(
    config_path: str | None,
    with_scout: bool | None,
    sync_timeout: float | None,
) -> tuple[Fleet, threading.Event]:
    """Build a Fleet and run its first full sync."""
    fleet = _build_fleet(config_path)
    stop = threading.Event()
    try:
        fleet.start_sync(stop, monitoring_enabled=with_scout, sync_timeout=sync_timeout)
    except SyncError as e:
        click.echo(click.style("ERROR", fg="red") + f"  {e}", err=True)
        stop.set()
        sys.exit(1)
    return fleet, stop


# --- Root group ---


@click.group()
@click.version_option(version=__version__)
@click.option(
    "--log-level", default="WARNING",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    help="Logging level",
)
def cli(log_level: str) -> None:
    """cluster-fleet: multi-cluster registry sync and fleet queries."""
    logging.basicConfig(
        level=getattr(logging, log_level.upper()),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


# --- sync ---


@cli.command()
@click.option("--config", "config_path", default=None, help="Path to cluster-fleet.yaml")
@click.option(
    "--with-scout/--no-scout", default=None,
    help="Monitor cluster health (default from config)",
)
@click.option(
    "--sync-timeout", default=DEFAULT_SYNC_TIMEOUT, type=float,
    help="Seconds to wait for the initial cache sync",
)
def sync(config_path: str | None, with_scout: bool | None, sync_timeout: float) -> None:
    """Keep the cluster registry in sync until interrupted."""
    fleet, stop = _started_fleet(config_path, with_scout, sync_timeout)
    summary = fleet.summary()
    click.echo(
        f"Synced {len(summary['live'])}/{len(summary['known'])} clusters. "
        "Press Ctrl-C to stop."
    )
    try:
        while not stop.wait(1.0):
            pass
    except KeyboardInterrupt:
        click.echo("Stopping...")
    finally:
        fleet.stop()


# --- clusters ---


@cli.command()
@click.option("--config", "config_path", default=None, help="Path to cluster-fleet.yaml")
@click.option("--status", default=None, help="Only clusters in this status")
@click.option("--node-selector", default="", help="Label selector for nodes")
@click.option("--prune", is_flag=True, help="Skip live data collection")
@click.option("--timeout", default=None, type=float, help="Overall query timeout (s)")
@click.option(
    "--sync-timeout", default=DEFAULT_SYNC_TIMEOUT, type=float,
    help="Seconds to wait for the initial cache sync",
)
@click.option("--json-output", is_flag=True, help="Output as JSON")
def clusters(
    config_path: str | None,
    status: str | None,
    node_selector: str,
    prune: bool,
    timeout: float | None,
    sync_timeout: float,
    json_output: bool,
) -> None:
    """Show aggregated info for every known cluster."""
    fleet, _ = _started_fleet(config_path, False, sync_timeout)
    opts = ClusterInfoFilter(status=status, node_label_selector=node_selector, prune=prune)
    try:
        infos = fleet.aggregate(opts, timeout=timeout)
    except (AggregationError, AggregationCancelled) as e:
        click.echo(click.style("ERROR", fg="red") + f"  {e}", err=True)
        sys.exit(1)
    finally:
        fleet.stop()

    if json_output:
        click.echo(json.dumps([i.to_dict() for i in infos], indent=2))
        return

    if not infos:
        click.echo("No clusters found.")
        return
    for info in infos:
        line = f"  {info.name:<24} {info.status:<12}"
        if info.livedata is not None:
            d = info.livedata
            line += (
                f" nodes={d.node_count} ns={d.namespace_count}"
                f" cpu={d.used_cpu}/{d.total_cpu}m mem={d.used_mem}/{d.total_mem}Mi"
            )
        click.echo(line)


# --- resolve group ---


@cli.group()
def resolve() -> None:
    """Find the clusters related to a namespace or project."""


@resolve.command("namespace")
@click.argument("name")
@click.option("--config", "config_path", default=None, help="Path to cluster-fleet.yaml")
@click.option(
    "--sync-timeout", default=DEFAULT_SYNC_TIMEOUT, type=float,
    help="Seconds to wait for the initial cache sync",
)
def resolve_namespace(name: str, config_path: str | None, sync_timeout: float) -> None:
    """Show clusters the namespace NAME works in."""
    fleet, _ = _started_fleet(config_path, False, sync_timeout)
    try:
        names = fleet.resolve_clusters_for_namespace(name)
    except Exception as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)
    finally:
        fleet.stop()
    click.echo(json.dumps(names))


@resolve.command("project")
@click.argument("name")
@click.option("--config", "config_path", default=None, help="Path to cluster-fleet.yaml")
@click.option(
    "--sync-timeout", default=DEFAULT_SYNC_TIMEOUT, type=float,
    help="Seconds to wait for the initial cache sync",
)
def resolve_project(name: str, config_path: str | None, sync_timeout: float) -> None:
    """Show clusters hosting namespaces of project NAME."""
    fleet, _ = _started_fleet(config_path, False, sync_timeout)
    try:
        related = fleet.resolve_clusters_for_project(name)
    except Exception as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)
    finally:
        fleet.stop()
    click.echo(json.dumps([c.name for c in related]))


# --- assigned ---


@cli.command()
@click.argument("cluster")
@click.option("--config", "config_path", default=None, help="Path to cluster-fleet.yaml")
def assigned(cluster: str, config_path: str | None) -> None:
    """Show quota already assigned on CLUSTER."""
    fleet = _build_fleet(config_path)
    try:
        result = fleet.assigned_resources(cluster)
    except Exception as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)
    click.echo(json.dumps(result.model_dump(), indent=2))


# --- validate-config ---


@cli.command("validate-config")
@click.argument("config_file")
def validate_config(config_file: str) -> None:
    """Check that CONFIG_FILE parses and its values are in range."""
    try:
        cfg = load_config(config_file)
    except Exception as e:
        click.echo(click.style("INVALID", fg="red", bold=True) + f"  {e}")
        sys.exit(1)
    click.echo(
        click.style("VALID", fg="green", bold=True)
        + f"  namespace={cfg.namespace} workers={cfg.queue.workers}"
        + f" scout={'on' if cfg.scout.enabled else 'off'}"
    )


def main() -> None:
    cli()


if __name__ == "__main__":
    main()
