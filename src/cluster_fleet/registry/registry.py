"""In-memory registry of live member clusters.

Maps cluster name to a live client handle plus the descriptor it was built
from.  Exactly one writer (the reconciler) and any number of readers
(aggregation, relationship lookups) share one instance; every read returns
an independent copy so no caller ever holds a reference into the map.

Thread-safe via a single lock, following the same pattern as the queue
and the watcher cache.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass, replace

from cluster_fleet.clients.kube import ClientBuildError, ClusterClient
from cluster_fleet.models import ClusterDescriptor
from cluster_fleet.scout.scout import Scout, ScoutHandle

logger = logging.getLogger(__name__)

ClientFactory = Callable[[ClusterDescriptor], ClusterClient]


class ClusterNotFoundError(Exception):
    """Raised when a cluster is not present."""


@dataclass
class InternalCluster:
    """One registry entry."""

    name: str
    client: ClusterClient
    raw_cluster: ClusterDescriptor
    scout: ScoutHandle | None = None
    is_down: bool = False


class ClusterRegistry:
    """Concurrency-safe name -> InternalCluster map."""

    def __init__(
        self,
        client_factory: ClientFactory,
        scout: Scout | None = None,
    ) -> None:
        self._client_factory = client_factory
        self._scout = scout
        self._lock = threading.Lock()
        self._clusters: dict[str, InternalCluster] = {}

    def add(self, descriptor: ClusterDescriptor) -> InternalCluster:
        """Install or replace the entry for *descriptor*.

        The client is built before the lock is taken; if that fails nothing
        is installed and ClientBuildError is raised.
        """
        entry = self._build(descriptor)
        with self._lock:
            old = self._clusters.get(descriptor.name)
            self._clusters[descriptor.name] = entry
            snapshot = self._copy(entry)
        self._stop_scout(old)
        logger.info("Cluster %s added to registry", descriptor.name)
        return snapshot

    def add_with_monitoring(self, descriptor: ClusterDescriptor) -> InternalCluster:
        """Install the entry together with a running health scout.

        The scout is started on the new client before the entry is swapped
        in.  If the client cannot be built or the scout cannot be started,
        the registry is left exactly as it was, including any previous
        entry and its scout.
        """
        if self._scout is None:
            raise ValueError("add_with_monitoring requires a scout")

        entry = self._build(descriptor)
        entry.scout = self._scout.start(descriptor.name, entry.client, self.set_down)
        with self._lock:
            old = self._clusters.get(descriptor.name)
            self._clusters[descriptor.name] = entry
            snapshot = self._copy(entry)
        self._stop_scout(old)
        logger.info("Cluster %s added to registry with monitoring", descriptor.name)
        return snapshot

    def delete(self, name: str) -> None:
        """Remove *name* if present. Absence is not an error."""
        with self._lock:
            old = self._clusters.pop(name, None)
        if old is None:
            logger.debug("Cluster %s not in registry, nothing to delete", name)
            return
        self._stop_scout(old)
        logger.info("Cluster %s deleted from registry", name)

    def get(self, name: str) -> InternalCluster:
        with self._lock:
            entry = self._clusters.get(name)
            if entry is None:
                raise ClusterNotFoundError(f"Cluster {name} not found")
            return self._copy(entry)

    def fuzzy_copy(self) -> list[InternalCluster]:
        """Point-in-time copies of every entry."""
        with self._lock:
            return [self._copy(e) for e in self._clusters.values()]

    def names(self) -> list[str]:
        with self._lock:
            return list(self._clusters)

    def set_down(self, name: str, down: bool) -> None:
        """Record the health reported by a scout. Unknown names are ignored."""
        with self._lock:
            entry = self._clusters.get(name)
            if entry is not None:
                entry.is_down = down

    def __contains__(self, name: object) -> bool:
        with self._lock:
            return name in self._clusters

    def __len__(self) -> int:
        with self._lock:
            return len(self._clusters)

    # --- Private ---

    def _build(self, descriptor: ClusterDescriptor) -> InternalCluster:
        try:
            cluster_client = self._client_factory(descriptor)
        except ClientBuildError:
            raise
        except Exception as exc:
            raise ClientBuildError(
                f"Build client for cluster {descriptor.name} failed: {exc}"
            ) from exc
        return InternalCluster(
            name=descriptor.name,
            client=cluster_client,
            raw_cluster=descriptor,
        )

    @staticmethod
    def _copy(entry: InternalCluster) -> InternalCluster:
        # Client and scout handles are shared; everything else is copied.
        return replace(
            entry,
            raw_cluster=entry.raw_cluster.model_copy(deep=True),
        )

    @staticmethod
    def _stop_scout(entry: InternalCluster | None) -> None:
        if entry is not None and entry.scout is not None:
            entry.scout.stop()
