"""Core data models for cluster-fleet.

Defines the schemas for:
- Cluster descriptors (what the authoritative store says a cluster is)
- Queue keys (what the reconciler works on)
- Watch events (what changed in the store)
- Aggregation results (what callers get back from a fleet query)
"""

from __future__ import annotations

import enum
from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError

# --- Well-known labels and annotations ---

CUBE_CN_ANNOTATION = "cluster.kubecube.io/cn-name"
TENANT_LABEL = "kubecube.io/tenant"
PROJECT_LABEL = "kubecube.io/project"
CLUSTER_LABEL = "kubecube.io/cluster"

HNC_SUFFIX = ".tree.hnc.x-k8s.io/depth"
HNC_CURRENT_DEPTH = "0"
HNC_TENANT_DEPTH = "1"
HNC_PROJECT_DEPTH = "2"
PROJECT_NS_PREFIX = "kubecube-project-"


class InvalidKeyError(Exception):
    """Raised when a queue key cannot be derived from an object."""


# --- Enums ---


class ClusterState(enum.StrEnum):
    PROCESSING = "processing"
    NORMAL = "normal"
    ABNORMAL = "abnormal"
    INIT_FAILED = "initFailed"
    DELETING = "deleting"


# --- Cluster descriptor ---


class ClusterSpec(BaseModel):
    """Connection and placement spec of a cluster resource."""

    model_config = ConfigDict(frozen=True)

    kubernetes_api_endpoint: str = ""
    is_writable: bool = False
    is_member_cluster: bool = False
    network_type: str = ""
    ingress_domain_suffix: str = ""
    harbor_addr: str = ""
    description: str = ""
    kubeconfig: str = ""
    """Base64-encoded kubeconfig document used to reach the cluster."""


class ClusterDescriptor(BaseModel):
    """Immutable snapshot of one cluster resource from the store."""

    model_config = ConfigDict(frozen=True)

    name: str = Field(..., min_length=1)
    spec: ClusterSpec = Field(default_factory=ClusterSpec)
    state: ClusterState | None = None
    creation_timestamp: datetime | None = None
    labels: dict[str, str] = Field(default_factory=dict)
    annotations: dict[str, str] = Field(default_factory=dict)
    resource_version: str = ""

    @property
    def effective_state(self) -> ClusterState:
        """The lifecycle state, ``PROCESSING`` when the store has none yet."""
        return self.state or ClusterState.PROCESSING

    @classmethod
    def from_object(cls, obj: dict[str, Any]) -> ClusterDescriptor:
        """Parse a raw cluster object (``metadata``/``spec``/``status``).

        Raises ValueError if the object is not a well-formed cluster.
        """
        if not isinstance(obj, dict):
            raise ValueError(f"Expected a mapping, got {type(obj).__name__}")

        metadata = obj.get("metadata") or {}
        spec = obj.get("spec") or {}
        status = obj.get("status") or {}

        try:
            return cls(
                name=metadata.get("name", ""),
                spec=ClusterSpec(
                    kubernetes_api_endpoint=spec.get("kubernetesAPIEndpoint", ""),
                    is_writable=spec.get("isWritable", False),
                    is_member_cluster=spec.get("isMemberCluster", False),
                    network_type=spec.get("networkType", ""),
                    ingress_domain_suffix=spec.get("ingressDomainSuffix", ""),
                    harbor_addr=spec.get("harborAddr", ""),
                    description=spec.get("description", ""),
                    kubeconfig=spec.get("kubeconfig", ""),
                ),
                state=status.get("state") or None,
                creation_timestamp=metadata.get("creationTimestamp"),
                labels=metadata.get("labels") or {},
                annotations=metadata.get("annotations") or {},
                resource_version=metadata.get("resourceVersion", ""),
            )
        except ValidationError as exc:
            raise ValueError(f"Malformed cluster object: {exc}") from exc


# --- Queue key ---


class ClusterWideKey(BaseModel):
    """Dedup key for the work queue. Only the cluster name matters."""

    model_config = ConfigDict(frozen=True)

    name: str

    @classmethod
    def for_cluster(cls, obj: Any) -> ClusterWideKey:
        """Derive the key for a descriptor or raw cluster object."""
        if isinstance(obj, ClusterDescriptor):
            return cls(name=obj.name)
        if isinstance(obj, dict):
            name = (obj.get("metadata") or {}).get("name")
            if name:
                return cls(name=name)
        raise InvalidKeyError(f"Cannot derive cluster key from {type(obj).__name__}")

    def __str__(self) -> str:
        return self.name


# --- Watch events ---


class ClusterAdded(BaseModel):
    cluster: ClusterDescriptor


class ClusterUpdated(BaseModel):
    old: ClusterDescriptor
    new: ClusterDescriptor


class ClusterDeleted(BaseModel):
    cluster: ClusterDescriptor


ClusterEvent = ClusterAdded | ClusterUpdated | ClusterDeleted


# --- Aggregation results ---


class ClusterInfoFilter(BaseModel):
    """Options for a fleet-wide cluster info query."""

    status: str | None = None
    """Exact-match status filter. None or empty means no filter."""

    node_label_selector: str = ""
    """Label selector applied to node and node-metrics listings."""

    prune: bool = False
    """Skip live-data collection entirely."""


class ClusterMetaInfo(BaseModel):
    """Cheap cluster facts built straight from the descriptor."""

    cluster_name: str
    status: str
    cluster_description: str = ""
    create_time: datetime | None = None
    is_member_cluster: bool = False
    is_writable: bool = False
    harbor_addr: str = ""
    kube_api_server: str = ""
    network_type: str = ""
    ingress_domain_suffix: str = ""
    labels: dict[str, str] = Field(default_factory=dict)
    annotations: dict[str, str] = Field(default_factory=dict)


class ClusterLivedataInfo(BaseModel):
    """Live capacity and usage. CPU in millicores, sizes in Mi."""

    node_count: int = 0
    namespace_count: int = 0
    used_cpu: int = 0
    total_cpu: int = 0
    used_cpu_request: int = 0
    used_cpu_limit: int = 0
    used_mem: int = 0
    total_mem: int = 0
    used_mem_request: int = 0
    used_mem_limit: int = 0
    used_storage: int = 0
    total_storage: int = 0
    used_storage_ephemeral: int = 0
    total_storage_ephemeral: int = 0


class ClusterInfo(BaseModel):
    """One cluster's entry in an aggregation result."""

    metadata: ClusterMetaInfo
    livedata: ClusterLivedataInfo | None = None

    @property
    def name(self) -> str:
        return self.metadata.cluster_name

    @property
    def status(self) -> str:
        return self.metadata.status

    def to_dict(self) -> dict[str, Any]:
        return self.model_dump(mode="json")


class AssignedResources(BaseModel):
    """Quota already handed out on a cluster. CPU in millicores, memory in Mi."""

    cluster: str
    cpu: int = 0
    memory: int = 0
    gpu: int = 0
