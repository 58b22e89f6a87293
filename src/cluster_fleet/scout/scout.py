"""Per-cluster health monitoring.

A scout is started for a cluster once the registry has admitted it and
stopped when the cluster is removed or replaced.  It probes the cluster's
API server on a fixed interval and reports transitions between healthy
and down through a callback; the registry records the result and the
aggregator reports down clusters as abnormal.

Usage::

    scout = HealthScout(interval=10, failure_threshold=3)
    handle = scout.start("member-1", cluster_client, registry.set_down)
    ...
    handle.stop()
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from typing import Protocol, runtime_checkable

from cluster_fleet.clients.kube import ClusterClient

logger = logging.getLogger(__name__)

HealthCallback = Callable[[str, bool], None]
"""Called with ``(cluster_name, is_down)`` whenever health flips."""


class ScoutHandle:
    """Stops one running monitor."""

    def __init__(self, name: str, stop_event: threading.Event,
                 thread: threading.Thread | None = None) -> None:
        self._name = name
        self._stop_event = stop_event
        self._thread = thread

    @property
    def name(self) -> str:
        return self._name

    @property
    def stopped(self) -> bool:
        return self._stop_event.is_set()

    def stop(self, timeout: float | None = None) -> None:
        self._stop_event.set()
        if (
            timeout is not None
            and self._thread is not None
            and self._thread is not threading.current_thread()
        ):
            self._thread.join(timeout)


@runtime_checkable
class Scout(Protocol):
    """Anything that can start monitoring one cluster."""

    def start(
        self, name: str, cluster_client: ClusterClient, on_change: HealthCallback,
    ) -> ScoutHandle: ...


class HealthScout:
    """Thread-per-cluster API server prober."""

    def __init__(
        self,
        interval: float = 10.0,
        failure_threshold: int = 3,
        probe_timeout: float | None = 5.0,
    ) -> None:
        if interval <= 0:
            raise ValueError("interval must be positive")
        if failure_threshold < 1:
            raise ValueError("failure_threshold must be at least 1")
        self._interval = interval
        self._failure_threshold = failure_threshold
        self._probe_timeout = probe_timeout

    def start(
        self, name: str, cluster_client: ClusterClient, on_change: HealthCallback,
    ) -> ScoutHandle:
        stop_event = threading.Event()
        thread = threading.Thread(
            target=self._run,
            args=(name, cluster_client, on_change, stop_event),
            name=f"scout-{name}",
            daemon=True,
        )
        thread.start()
        logger.info("Scout started for cluster %s", name)
        return ScoutHandle(name, stop_event, thread)

    def _run(
        self,
        name: str,
        cluster_client: ClusterClient,
        on_change: HealthCallback,
        stop_event: threading.Event,
    ) -> None:
        failures = 0
        down = False
        while not stop_event.is_set():
            try:
                cluster_client.ping(timeout=self._probe_timeout)
            except Exception as exc:
                failures += 1
                logger.debug("Probe of cluster %s failed (%d): %s", name, failures, exc)
                if not down and failures >= self._failure_threshold:
                    down = True
                    logger.warning(
                        "Cluster %s unreachable after %d probes, marking down",
                        name, failures,
                    )
                    on_change(name, True)
            else:
                failures = 0
                if down:
                    down = False
                    logger.info("Cluster %s reachable again", name)
                    on_change(name, False)
            stop_event.wait(self._interval)
        logger.info("Scout for cluster %s stopped", name)
