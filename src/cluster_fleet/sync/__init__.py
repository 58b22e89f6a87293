"""Watch, queue and reconcile loop that keeps the registry converged.

Pieces: ClusterWatcher (list + watch cache), RateLimitedQueue and Worker
(deduplicating backoff queue), SyncManager (reconciler).
"""

from cluster_fleet.sync.manager import SyncManager
from cluster_fleet.sync.queue import (
    DropKeyError,
    ExponentialRateLimiter,
    RateLimitedQueue,
    Worker,
)
from cluster_fleet.sync.watcher import ClusterWatcher, SyncError

__all__ = [
    "ClusterWatcher",
    "DropKeyError",
    "ExponentialRateLimiter",
    "RateLimitedQueue",
    "SyncError",
    "SyncManager",
    "Worker",
]
