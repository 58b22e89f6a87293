"""Fleet: the single public entry point.

Wires together every internal component (watcher, registry, health
scout, sync manager, aggregator) behind one class.  The registry is an
explicit shared instance owned by the Fleet, not process-global state.

Usage::

    from cluster_fleet import Fleet, load_config

    fleet = Fleet.from_config(load_config())
    stop = threading.Event()
    fleet.start_sync(stop)
    infos = fleet.aggregate(ClusterInfoFilter(status="normal"))
    names = fleet.resolve_clusters_for_namespace("team-a-dev")
    fleet.stop()
"""

from __future__ import annotations

import logging
import threading
from typing import Any

from cluster_fleet.aggregate.aggregator import ClusterAggregator, QuotaLister
from cluster_fleet.clients.kube import (
    KubeClusterClient,
    KubeClusterSource,
    build_cluster_client,
    load_pivot_api_client,
)
from cluster_fleet.config import FleetConfig
from cluster_fleet.models import (
    AssignedResources,
    ClusterDescriptor,
    ClusterInfo,
    ClusterInfoFilter,
)
from cluster_fleet.registry.registry import ClientFactory, ClusterRegistry
from cluster_fleet.resolve.relationships import (
    get_clusters_by_namespace,
    get_clusters_by_project,
)
from cluster_fleet.scout.scout import HealthScout, Scout
from cluster_fleet.sync.manager import SyncManager
from cluster_fleet.sync.queue import ExponentialRateLimiter
from cluster_fleet.sync.watcher import ClusterSource, ClusterWatcher, SyncError

logger = logging.getLogger(__name__)


class FleetError(Exception):
    """Raised for configuration or lifecycle errors."""


class Fleet:
    """Public API for cluster-fleet."""

    def __init__(
        self,
        source: ClusterSource,
        client_factory: ClientFactory = build_cluster_client,
        config: FleetConfig | None = None,
        scout: Scout | None = None,
        quota_lister: QuotaLister | None = None,
    ) -> None:
        """Initialize a Fleet.

        Args:
            source: List/watch access to the cluster resources.
            client_factory: Builds a live client from a descriptor.
            config: Tuning values (defaults if omitted).
            scout: Health scout used when monitoring is enabled. Built
                from ``config.scout`` when omitted.
            quota_lister: Lists quota objects on the pivot cluster
                (optional, enables ``assigned_resources()``).
        """
        self._config = config or FleetConfig()
        self._scout = scout or HealthScout(
            interval=self._config.scout.interval_seconds,
            failure_threshold=self._config.scout.failure_threshold,
        )
        self._watcher = ClusterWatcher(source)
        self._registry = ClusterRegistry(client_factory, scout=self._scout)
        self._aggregator = ClusterAggregator(
            self._watcher,
            self._registry,
            metrics_timeout=self._config.aggregate.metrics_timeout,
            max_workers=self._config.aggregate.max_workers,
            quota_lister=quota_lister,
        )
        self._sync: SyncManager | None = None

    @classmethod
    def from_config(cls, config: FleetConfig) -> Fleet:
        """Build a Fleet talking to the pivot cluster described by *config*."""
        api_client = load_pivot_api_client(config)
        pivot = KubeClusterClient(api_client)
        return cls(
            source=KubeClusterSource(api_client),
            config=config,
            quota_lister=pivot.list_resource_quotas,
        )

    # --- Properties ---

    @property
    def config(self) -> FleetConfig:
        return self._config

    @property
    def registry(self) -> ClusterRegistry:
        return self._registry

    @property
    def watcher(self) -> ClusterWatcher:
        return self._watcher

    @property
    def aggregator(self) -> ClusterAggregator:
        return self._aggregator

    @property
    def sync_manager(self) -> SyncManager | None:
        return self._sync

    # --- Lifecycle ---

    def start_sync(
        self,
        stop_event: threading.Event,
        monitoring_enabled: bool | None = None,
        sync_timeout: float | None = None,
    ) -> None:
        """Begin the watch + reconcile loop.

        Returns once the cache is synced and every known cluster has been
        reconciled once.  Raises SyncError if the cache cannot start.
        """
        if self._sync is not None:
            raise FleetError("sync already started")
        if monitoring_enabled is None:
            monitoring_enabled = self._config.scout.enabled

        logger.info(
            "Starting cluster sync in namespace %s (monitoring=%s)",
            self._config.namespace, monitoring_enabled,
        )
        queue_cfg = self._config.queue
        self._sync = SyncManager(
            self._watcher,
            self._registry,
            with_scout=monitoring_enabled,
            workers=queue_cfg.workers,
            max_retries=queue_cfg.max_retries,
            rate_limiter=ExponentialRateLimiter(queue_cfg.base_delay, queue_cfg.max_delay),
        )
        try:
            self._sync.start(stop_event, sync_timeout=sync_timeout)
        except SyncError:
            # the manager has already stopped itself; allow another start
            self._sync = None
            raise

    def stop(self) -> None:
        if self._sync is not None:
            self._sync.stop()

    # --- Queries ---

    def aggregate(
        self,
        opts: ClusterInfoFilter | None = None,
        cancel: threading.Event | None = None,
        timeout: float | None = None,
    ) -> list[ClusterInfo]:
        return self._aggregator.aggregate(opts, cancel=cancel, timeout=timeout)

    def resolve_clusters_for_namespace(self, namespace: str) -> list[str]:
        return get_clusters_by_namespace(self._registry, namespace)

    def resolve_clusters_for_project(self, project: str) -> list[ClusterDescriptor]:
        return get_clusters_by_project(self._registry, project)

    def assigned_resources(self, cluster: str) -> AssignedResources:
        return self._aggregator.assigned_resources(cluster)

    def list_cluster_names(self) -> list[str]:
        return self._aggregator.list_cluster_names()

    def summary(self) -> dict[str, Any]:
        """Small status snapshot for logging and the CLI."""
        return {
            "known": [d.name for d in self._watcher.list()],
            "live": sorted(self._registry.names()),
            "synced": self._watcher.has_synced,
        }
