"""Keep the cluster registry converged with the cluster resources.

Watch events only say *which* cluster to look at.  Each reconcile re-reads
the cluster from the watcher cache and converges the registry to it:
present means add or refresh, absent means delete.  Lost or reordered
events therefore correct themselves on the next reconcile.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Hashable

from cluster_fleet.models import (
    ClusterAdded,
    ClusterDeleted,
    ClusterDescriptor,
    ClusterEvent,
    ClusterState,
    ClusterUpdated,
    ClusterWideKey,
    InvalidKeyError,
)
from cluster_fleet.registry.registry import ClusterNotFoundError, ClusterRegistry
from cluster_fleet.sync.queue import (
    DropKeyError,
    ExponentialRateLimiter,
    RateLimitedQueue,
    Worker,
)
from cluster_fleet.sync.watcher import ClusterWatcher, SyncError

logger = logging.getLogger(__name__)


class InvalidQueueKeyError(InvalidKeyError, DropKeyError):
    """Raised when the queue hands over something that is not a ClusterWideKey."""


class SyncManager:
    """Watcher -> queue -> reconcile -> registry."""

    def __init__(
        self,
        watcher: ClusterWatcher,
        registry: ClusterRegistry,
        with_scout: bool = False,
        workers: int = 1,
        max_retries: int = 0,
        rate_limiter: ExponentialRateLimiter | None = None,
    ) -> None:
        self._watcher = watcher
        self._registry = registry
        self._with_scout = with_scout
        self._workers = workers
        self._queue = RateLimitedQueue(rate_limiter)
        self._worker = Worker(
            "cluster", self.reconcile_cluster, self._queue, max_retries=max_retries,
        )
        self._stop_event: threading.Event | None = None
        watcher.add_handler(self.handle_event)

    @property
    def worker(self) -> Worker:
        return self._worker

    @property
    def queue(self) -> RateLimitedQueue:
        return self._queue

    @property
    def with_scout(self) -> bool:
        return self._with_scout

    # --- Event handlers ---

    def handle_event(self, event: ClusterEvent) -> None:
        if isinstance(event, ClusterAdded):
            self.on_cluster_add(event.cluster)
        elif isinstance(event, ClusterUpdated):
            self.on_cluster_update(event.old, event.new)
        elif isinstance(event, ClusterDeleted):
            self.on_cluster_delete(event.cluster)

    def on_cluster_add(self, cluster: ClusterDescriptor) -> None:
        self._worker.add_rate_limited(ClusterWideKey.for_cluster(cluster))

    def on_cluster_delete(self, cluster: ClusterDescriptor) -> None:
        self.on_cluster_add(cluster)

    def on_cluster_update(self, old: ClusterDescriptor, new: ClusterDescriptor) -> None:
        """Only a retry of a failed admission needs a reconcile here.

        Other transitions are driven by the health scout.
        """
        if (
            old.effective_state == ClusterState.INIT_FAILED
            and new.effective_state == ClusterState.PROCESSING
        ):
            self._worker.add_rate_limited(ClusterWideKey.for_cluster(new))

    # --- Reconcile ---

    def reconcile_cluster(self, key: Hashable) -> None:
        """Converge the registry entry for *key* with the cache.

        Raises InvalidQueueKeyError for non-cluster keys (dropped by the
        worker); any other exception means retry with backoff.
        """
        if not isinstance(key, ClusterWideKey):
            logger.error("Found invalid key %r when reconciling resource cluster", key)
            raise InvalidQueueKeyError(f"invalid key: {key!r}")

        try:
            cluster = self._watcher.get(key.name)
        except ClusterNotFoundError:
            self._registry.delete(key.name)
            return

        try:
            if self._with_scout:
                self._registry.add_with_monitoring(cluster)
            else:
                self._registry.add(cluster)
        except Exception as exc:
            logger.error("Add internal cluster %s failed: %s", cluster.name, exc)
            raise

    # --- Lifecycle ---

    def start(
        self, stop_event: threading.Event, sync_timeout: float | None = None,
    ) -> None:
        """Start workers and watcher, wait for sync, reconcile every cluster once.

        Returns when the initial pass is complete.  Raises SyncError if the
        cache cannot start or sync; everything started so far is stopped
        first.
        """
        self._stop_event = stop_event
        self._worker.run(self._workers, stop_event)
        self._watcher.start(stop_event)

        try:
            synced = self._watcher.wait_for_cache_sync(stop_event, sync_timeout)
        except SyncError:
            logger.error("Cluster sync cache failed, stopping sync manager")
            self.stop()
            raise
        if not synced:
            self.stop()
            raise SyncError("cluster sync cache can not wait for sync")

        for cluster in self._watcher.list():
            key = ClusterWideKey.for_cluster(cluster)
            try:
                self.reconcile_cluster(key)
            except Exception:
                # The worker retries it with backoff.
                self._worker.add_rate_limited(key)

        logger.info("Sync manager is running with %d clusters", len(self._registry))

    def stop(self, timeout: float | None = 5.0) -> None:
        if self._stop_event is not None:
            self._stop_event.set()
        self._queue.shut_down()
        self._watcher.remove_handler(self.handle_event)
        self._worker.join(timeout)
        for entry in self._registry.fuzzy_copy():
            if entry.scout is not None:
                entry.scout.stop()
        logger.info("Sync manager exit")
