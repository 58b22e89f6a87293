"""cluster-fleet: registry, sync and fleet-wide queries for member clusters."""

__version__ = "0.1.0"

from cluster_fleet.aggregate.aggregator import (
    AggregationCancelled,
    AggregationError,
    ClusterAggregator,
)
from cluster_fleet.config import FleetConfig, find_config, load_config
from cluster_fleet.fleet import Fleet, FleetError
from cluster_fleet.models import (
    AssignedResources,
    ClusterDescriptor,
    ClusterInfo,
    ClusterInfoFilter,
    ClusterLivedataInfo,
    ClusterMetaInfo,
    ClusterState,
    ClusterWideKey,
)
from cluster_fleet.registry.registry import (
    ClusterNotFoundError,
    ClusterRegistry,
    InternalCluster,
)
from cluster_fleet.sync.watcher import SyncError

__all__ = [
    "AggregationCancelled",
    "AggregationError",
    "AssignedResources",
    "ClusterAggregator",
    "ClusterDescriptor",
    "ClusterInfo",
    "ClusterInfoFilter",
    "ClusterLivedataInfo",
    "ClusterMetaInfo",
    "ClusterNotFoundError",
    "ClusterRegistry",
    "ClusterState",
    "ClusterWideKey",
    "find_config",
    "Fleet",
    "FleetConfig",
    "FleetError",
    "InternalCluster",
    "load_config",
    "SyncError",
    "__version__",
]
