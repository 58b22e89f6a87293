"""Fleet-wide cluster info aggregation.

Builds one ``ClusterInfo`` per known cluster descriptor, live or not:

1. metadata from the descriptor (fetch errors: logged, cluster skipped)
2. status override to Abnormal for clusters the scout reports down
3. status filter
4. live data for registered, non-abnormal clusters unless pruned

Live data is gathered in a thread pool.  A failing metrics call is
tolerated (usage stays zero); a failing node, namespace or pod listing
aborts the whole call with AggregationError.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from concurrent.futures import FIRST_EXCEPTION, Future, ThreadPoolExecutor, wait
from typing import Any, Protocol

from cluster_fleet.aggregate.resources import (
    CPU,
    EPHEMERAL_STORAGE,
    MEMORY,
    STORAGE,
    Mi,
    convert_unit,
    milli_value,
    pod_requests_and_limits,
    to_decimal,
)
from cluster_fleet.clients.kube import ClusterClient
from cluster_fleet.models import (
    CLUSTER_LABEL,
    CUBE_CN_ANNOTATION,
    AssignedResources,
    ClusterDescriptor,
    ClusterInfo,
    ClusterInfoFilter,
    ClusterLivedataInfo,
    ClusterMetaInfo,
    ClusterState,
)
from cluster_fleet.registry.registry import (
    ClusterNotFoundError,
    ClusterRegistry,
    InternalCluster,
)

logger = logging.getLogger(__name__)

REQUESTS_CPU = "requests.cpu"
REQUESTS_MEMORY = "requests.memory"
NVIDIA_GPU = "nvidia.com/gpu"

_FINISHED_PHASES = frozenset({"Succeeded", "Failed"})


class AggregationError(Exception):
    """Raised when live data for a cluster cannot be listed."""


class AggregationCancelled(Exception):
    """Raised when an aggregation is cancelled or runs past its deadline."""


class ClusterLister(Protocol):
    """Read access to the known cluster descriptors."""

    def get(self, name: str) -> ClusterDescriptor: ...

    def list(self) -> list[ClusterDescriptor]: ...


QuotaLister = Callable[[str], list[dict[str, Any]]]
"""Lists resource quota objects matching a label selector."""


class ClusterAggregator:
    """Answers fan-out queries over every known cluster."""

    def __init__(
        self,
        lister: ClusterLister,
        registry: ClusterRegistry,
        metrics_timeout: float = 1.0,
        max_workers: int = 8,
        quota_lister: QuotaLister | None = None,
    ) -> None:
        self._lister = lister
        self._registry = registry
        self._metrics_timeout = metrics_timeout
        self._max_workers = max_workers
        self._quota_lister = quota_lister

    # --- Public ---

    def aggregate(
        self,
        opts: ClusterInfoFilter | None = None,
        cancel: threading.Event | None = None,
        timeout: float | None = None,
    ) -> list[ClusterInfo]:
        """Cluster info for every known cluster matching *opts*.

        Raises AggregationError if any live-data listing fails and
        AggregationCancelled if *cancel* fires or *timeout* elapses.
        """
        opts = opts or ClusterInfoFilter()
        deadline = None if timeout is None else time.monotonic() + timeout

        names = [d.name for d in self._lister.list()]
        metas = [m for m in (self._safe_metadata(n) for n in names) if m is not None]
        live = {e.name: e for e in self._registry.fuzzy_copy()}
        metas = [self._with_health(m, live.get(m.cluster_name)) for m in metas]

        # live data is gathered before the status filter, so a listing
        # failure on any live cluster aborts the call
        need_livedata = [
            m for m in metas
            if not opts.prune and self._is_live(m, live.get(m.cluster_name))
        ]
        livedata = self._collect_livedata(need_livedata, live, opts, cancel, deadline)

        return [
            ClusterInfo(metadata=m, livedata=livedata.get(m.cluster_name))
            for m in metas
            if self._matches_status(m, opts)
        ]

    def make_metadata_info(self, name: str) -> ClusterMetaInfo:
        """Metadata for *name* straight from its descriptor."""
        cluster = self._lister.get(name)
        annotations = dict(cluster.annotations)
        # short name defaults to the cluster name
        annotations.setdefault(CUBE_CN_ANNOTATION, cluster.name)

        return ClusterMetaInfo(
            cluster_name=cluster.name,
            status=cluster.effective_state.value,
            cluster_description=cluster.spec.description,
            create_time=cluster.creation_timestamp,
            is_member_cluster=cluster.spec.is_member_cluster,
            is_writable=cluster.spec.is_writable,
            harbor_addr=cluster.spec.harbor_addr,
            kube_api_server=cluster.spec.kubernetes_api_endpoint,
            network_type=cluster.spec.network_type,
            ingress_domain_suffix=cluster.spec.ingress_domain_suffix,
            labels=dict(cluster.labels),
            annotations=annotations,
        )

    def make_livedata_info(
        self, name: str, cluster_client: ClusterClient, node_label_selector: str = "",
    ) -> ClusterLivedataInfo:
        """Capacity and usage of one cluster. Can be slow."""
        info = ClusterLivedataInfo()

        try:
            node_metrics = cluster_client.list_node_metrics(
                label_selector=node_label_selector, timeout=self._metrics_timeout,
            )
        except Exception as exc:
            # metrics are best effort
            logger.warning("Get cluster %s nodes metrics failed: %s", name, exc)
        else:
            for m in node_metrics:
                usage = m.get("usage") or {}
                info.used_cpu += milli_value(usage.get(CPU, 0))
                info.used_mem += convert_unit(usage.get(MEMORY, 0), Mi)
                info.used_storage += convert_unit(usage.get(STORAGE, 0), Mi)
                info.used_storage_ephemeral += convert_unit(
                    usage.get(EPHEMERAL_STORAGE, 0), Mi,
                )

        try:
            nodes = cluster_client.list_nodes(label_selector=node_label_selector)
        except Exception as exc:
            raise AggregationError(f"get cluster {name} nodes failed: {exc}") from exc

        info.node_count = len(nodes)
        for n in nodes:
            capacity = (n.status.capacity if n.status else None) or {}
            info.total_cpu += milli_value(capacity.get(CPU, 0))
            info.total_mem += convert_unit(capacity.get(MEMORY, 0), Mi)
            info.total_storage += convert_unit(capacity.get(STORAGE, 0), Mi)
            info.total_storage_ephemeral += convert_unit(
                capacity.get(EPHEMERAL_STORAGE, 0), Mi,
            )

        try:
            namespaces = cluster_client.list_namespaces()
        except Exception as exc:
            raise AggregationError(f"get cluster {name} namespace failed: {exc}") from exc
        info.namespace_count = len(namespaces)

        try:
            pods = cluster_client.list_pods()
        except Exception as exc:
            raise AggregationError(f"get cluster {name} pods failed: {exc}") from exc

        node_names = {n.metadata.name for n in nodes}
        for pod in pods:
            phase = pod.status.phase if pod.status else None
            if pod.spec.node_name not in node_names or phase in _FINISHED_PHASES:
                continue
            reqs, limits = pod_requests_and_limits(pod)
            info.used_cpu_request += milli_value(reqs.get(CPU, 0))
            info.used_cpu_limit += milli_value(limits.get(CPU, 0))
            info.used_mem_request += convert_unit(reqs.get(MEMORY, 0), Mi)
            info.used_mem_limit += convert_unit(limits.get(MEMORY, 0), Mi)

        return info

    def assigned_resources(self, cluster: str) -> AssignedResources:
        """Sum of quota hard requests already assigned on *cluster*."""
        if self._quota_lister is None:
            raise AggregationError("no quota lister configured")

        quotas = self._quota_lister(f"{CLUSTER_LABEL}={cluster}")
        cpu = mem = gpu = to_decimal(0)
        for obj in quotas:
            hard = (obj.get("spec") or {}).get("hard") or {}
            if REQUESTS_CPU in hard:
                cpu += to_decimal(hard[REQUESTS_CPU])
            if REQUESTS_MEMORY in hard:
                mem += to_decimal(hard[REQUESTS_MEMORY])
            if NVIDIA_GPU in hard:
                gpu += to_decimal(hard[NVIDIA_GPU])

        return AssignedResources(
            cluster=cluster,
            cpu=milli_value(cpu),
            memory=convert_unit(mem, Mi),
            gpu=int(gpu),
        )

    def list_cluster_names(self) -> list[str]:
        """Names of every cluster currently in the registry."""
        return [c.name for c in self._registry.fuzzy_copy()]

    # --- Pipeline steps ---

    def _safe_metadata(self, name: str) -> ClusterMetaInfo | None:
        try:
            return self.make_metadata_info(name)
        except ClusterNotFoundError as exc:
            logger.warning("Get cluster %s failed: %s", name, exc)
        except Exception as exc:
            logger.warning("Make metadata of cluster %s failed: %s", name, exc)
        return None

    @staticmethod
    def _with_health(
        meta: ClusterMetaInfo, entry: InternalCluster | None,
    ) -> ClusterMetaInfo:
        if entry is not None and entry.is_down:
            return meta.model_copy(update={"status": ClusterState.ABNORMAL.value})
        return meta

    @staticmethod
    def _is_live(meta: ClusterMetaInfo, entry: InternalCluster | None) -> bool:
        return entry is not None and meta.status != ClusterState.ABNORMAL.value

    @staticmethod
    def _matches_status(meta: ClusterMetaInfo, opts: ClusterInfoFilter) -> bool:
        return not opts.status or meta.status == opts.status

    def _collect_livedata(
        self,
        metas: list[ClusterMetaInfo],
        live: dict[str, InternalCluster],
        opts: ClusterInfoFilter,
        cancel: threading.Event | None,
        deadline: float | None,
    ) -> dict[str, ClusterLivedataInfo]:
        if not metas:
            return {}
        self._check_cancelled(cancel, deadline)

        results: dict[str, ClusterLivedataInfo] = {}
        pool = ThreadPoolExecutor(
            max_workers=min(self._max_workers, len(metas)),
            thread_name_prefix="aggregate",
        )
        try:
            futures: dict[Future[ClusterLivedataInfo], str] = {
                pool.submit(
                    self._livedata_unless_cancelled,
                    m.cluster_name,
                    live[m.cluster_name].client,
                    opts.node_label_selector,
                    cancel,
                    deadline,
                ): m.cluster_name
                for m in metas
            }
            pending = set(futures)
            while pending:
                done, pending = wait(pending, timeout=0.1, return_when=FIRST_EXCEPTION)
                for fut in done:
                    results[futures[fut]] = fut.result()
                if pending:
                    self._check_cancelled(cancel, deadline)
        finally:
            pool.shutdown(wait=False, cancel_futures=True)
        return results

    def _livedata_unless_cancelled(
        self,
        name: str,
        cluster_client: ClusterClient,
        node_label_selector: str,
        cancel: threading.Event | None,
        deadline: float | None,
    ) -> ClusterLivedataInfo:
        self._check_cancelled(cancel, deadline)
        return self.make_livedata_info(name, cluster_client, node_label_selector)

    @staticmethod
    def _check_cancelled(cancel: threading.Event | None, deadline: float | None) -> None:
        if cancel is not None and cancel.is_set():
            raise AggregationCancelled("aggregation cancelled")
        if deadline is not None and time.monotonic() >= deadline:
            raise AggregationCancelled("aggregation deadline exceeded")
