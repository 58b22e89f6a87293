"""Mirrored cache of cluster resources fed by list + watch.

The watcher lists every cluster object once, replaces its local cache with
the result, and then follows a watch stream from the listed resource
version.  Each change is turned into a typed ``ClusterEvent`` at this
boundary and handed to the registered handlers, so nothing downstream ever
inspects a raw payload.

A failure of the very first list is fatal: it is recorded and surfaced by
``wait_for_cache_sync()``.  After that, an expired resource version or
an error event triggers a relist and any other stream error is retried
after a pause.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Iterator
from typing import Any, Protocol, runtime_checkable

from kubernetes.client.exceptions import ApiException

from cluster_fleet.models import (
    ClusterAdded,
    ClusterDeleted,
    ClusterDescriptor,
    ClusterEvent,
    ClusterUpdated,
)
from cluster_fleet.registry.registry import ClusterNotFoundError

logger = logging.getLogger(__name__)

EventHandler = Callable[[ClusterEvent], None]


class SyncError(Exception):
    """Raised when the cluster cache cannot be started or synced."""


class _RelistRequired(Exception):
    """Internal: the watch must restart from a fresh list."""


@runtime_checkable
class ClusterSource(Protocol):
    """List/watch access to the authoritative cluster resources."""

    def list(self) -> tuple[list[dict[str, Any]], str]: ...

    def watch(
        self, resource_version: str, stop_event: threading.Event,
    ) -> Iterator[tuple[str, dict[str, Any]]]: ...


class ClusterWatcher:
    """Keeps a local, thread-safe mirror of the cluster resources."""

    def __init__(self, source: ClusterSource, resync_backoff: float = 5.0) -> None:
        self._source = source
        self._resync_backoff = resync_backoff
        self._lock = threading.Lock()
        self._cache: dict[str, ClusterDescriptor] = {}
        self._handlers: list[EventHandler] = []
        self._resource_version = ""
        self._synced = threading.Event()
        self._failed = threading.Event()
        self._error: BaseException | None = None
        self._thread: threading.Thread | None = None

    # --- Handlers ---

    def add_handler(self, handler: EventHandler) -> None:
        self._handlers.append(handler)

    def remove_handler(self, handler: EventHandler) -> None:
        if handler in self._handlers:
            self._handlers.remove(handler)

    # --- Cache reads ---

    @property
    def has_synced(self) -> bool:
        return self._synced.is_set()

    def get(self, name: str) -> ClusterDescriptor:
        with self._lock:
            descriptor = self._cache.get(name)
        if descriptor is None:
            raise ClusterNotFoundError(f"Cluster {name} not found")
        return descriptor

    def list(self) -> list[ClusterDescriptor]:
        with self._lock:
            return sorted(self._cache.values(), key=lambda d: d.name)

    # --- Lifecycle ---

    def start(self, stop_event: threading.Event) -> threading.Thread:
        """Run the list/watch loop on a daemon thread."""
        # a previous failed start must not poison this one
        self._failed.clear()
        self._error = None
        self._thread = threading.Thread(
            target=self.run, args=(stop_event,), name="cluster-watcher", daemon=True,
        )
        self._thread.start()
        return self._thread

    def wait_for_cache_sync(
        self, stop_event: threading.Event | None = None, timeout: float | None = None,
    ) -> bool:
        """Block until the first list has been applied.

        Returns False if *stop_event* fires or *timeout* elapses first.
        Raises SyncError if the initial list failed.
        """
        waited = 0.0
        step = 0.05
        while True:
            if self._synced.is_set():
                return True
            if self._failed.is_set():
                raise SyncError("cluster sync cache failed to start") from self._error
            if stop_event is not None and stop_event.is_set():
                return False
            if timeout is not None and waited >= timeout:
                return False
            self._synced.wait(step)
            waited += step

    def run(self, stop_event: threading.Event) -> None:
        """List, then watch, until *stop_event* is set."""
        try:
            self._relist()
        except Exception as exc:
            logger.exception("Initial list of clusters failed")
            self._error = exc
            self._failed.set()
            return
        self._synced.set()
        logger.info("Cluster cache synced with %d clusters", len(self._cache))

        while not stop_event.is_set():
            try:
                self._watch_once(stop_event)
            except _RelistRequired:
                logger.info("Cluster watch needs a relist")
                self._relist_with_retry(stop_event)
            except Exception as exc:
                logger.error("Cluster watch error: %s", exc)
                stop_event.wait(self._resync_backoff)
        logger.info("Cluster watcher stopped")

    # --- Event application ---

    def apply(self, event_type: str, obj: dict[str, Any]) -> None:
        """Apply one raw watch event to the cache and notify handlers."""
        if event_type == "ERROR":
            code = (obj or {}).get("code")
            if code != 410:
                logger.warning("Cluster watch error event: %s", obj)
            raise _RelistRequired()
        if event_type == "BOOKMARK":
            self._remember_version(obj)
            return

        try:
            descriptor = ClusterDescriptor.from_object(obj)
        except ValueError as exc:
            logger.error("Dropping malformed cluster event %s: %s", event_type, exc)
            return
        self._remember_version(obj)

        if event_type == "DELETED":
            with self._lock:
                old = self._cache.pop(descriptor.name, None)
            self._dispatch(ClusterDeleted(cluster=old or descriptor))
            return

        with self._lock:
            old = self._cache.get(descriptor.name)
            self._cache[descriptor.name] = descriptor
        if old is None:
            self._dispatch(ClusterAdded(cluster=descriptor))
        else:
            self._dispatch(ClusterUpdated(old=old, new=descriptor))

    # --- Private ---

    def _watch_once(self, stop_event: threading.Event) -> None:
        try:
            for event_type, obj in self._source.watch(self._resource_version, stop_event):
                if stop_event.is_set():
                    return
                self.apply(event_type, obj)
        except ApiException as exc:
            if exc.status == 410:
                raise _RelistRequired() from exc
            raise

    def _relist(self) -> None:
        items, resource_version = self._source.list()
        fresh: dict[str, ClusterDescriptor] = {}
        for obj in items:
            try:
                descriptor = ClusterDescriptor.from_object(obj)
            except ValueError as exc:
                logger.error("Skipping malformed cluster object: %s", exc)
                continue
            fresh[descriptor.name] = descriptor

        with self._lock:
            old_cache = self._cache
            self._cache = fresh
            self._resource_version = resource_version

        events: list[ClusterEvent] = []
        for name, descriptor in fresh.items():
            old = old_cache.get(name)
            if old is None:
                events.append(ClusterAdded(cluster=descriptor))
            elif old != descriptor:
                events.append(ClusterUpdated(old=old, new=descriptor))
        for name, descriptor in old_cache.items():
            if name not in fresh:
                events.append(ClusterDeleted(cluster=descriptor))
        for event in events:
            self._dispatch(event)

    def _relist_with_retry(self, stop_event: threading.Event) -> None:
        while not stop_event.is_set():
            try:
                self._relist()
                return
            except Exception as exc:
                logger.error("Relist of clusters failed: %s", exc)
                stop_event.wait(self._resync_backoff)

    def _remember_version(self, obj: dict[str, Any]) -> None:
        version = ((obj or {}).get("metadata") or {}).get("resourceVersion")
        if version:
            with self._lock:
                self._resource_version = version

    def _dispatch(self, event: ClusterEvent) -> None:
        for handler in self._handlers:
            try:
                handler(event)
            except Exception:
                logger.exception("Cluster event handler failed")
