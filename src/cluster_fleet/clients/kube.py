"""Kubernetes-backed access to the pivot store and to member clusters.

Two narrow surfaces live here:

- ``KubeClusterClient``: the live handle the registry keeps per cluster
  (list nodes/namespaces/pods, read node metrics, probe health).
- ``KubeClusterSource``: get/list/watch over the ``Cluster`` custom
  resources held by the pivot cluster.

Everything else in the package talks to the ``ClusterClient`` protocol,
so tests can swap in plain fakes.
"""

from __future__ import annotations

import base64
import threading
from collections.abc import Iterator
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

import yaml
from kubernetes import client, config, watch
from kubernetes.client.exceptions import ApiException

if TYPE_CHECKING:
    from cluster_fleet.config import FleetConfig
    from cluster_fleet.models import ClusterDescriptor

CLUSTER_GROUP = "cluster.kubecube.io"
CLUSTER_VERSION = "v1"
CLUSTER_PLURAL = "clusters"

METRICS_GROUP = "metrics.k8s.io"
METRICS_VERSION = "v1beta1"

QUOTA_GROUP = "quota.kubecube.io"
QUOTA_VERSION = "v1"
QUOTA_PLURAL = "cuberesourcequotas"


class ClientBuildError(Exception):
    """Raised when a live client cannot be built for a cluster."""


def is_not_found(exc: BaseException) -> bool:
    """True if *exc* is a kubernetes API 404."""
    return isinstance(exc, ApiException) and exc.status == 404


@runtime_checkable
class ClusterClient(Protocol):
    """What the registry, aggregator and resolver need from a cluster."""

    def list_nodes(self, label_selector: str = "") -> list[Any]: ...

    def list_namespaces(self, label_selector: str = "") -> list[Any]: ...

    def get_namespace(self, name: str) -> Any | None: ...

    def list_pods(self) -> list[Any]: ...

    def list_node_metrics(
        self, label_selector: str = "", timeout: float | None = None,
    ) -> list[dict[str, Any]]: ...

    def ping(self, timeout: float | None = None) -> None: ...


class KubeClusterClient:
    """ClusterClient over the official kubernetes Python client."""

    def __init__(self, api_client: Any) -> None:
        self._api_client = api_client
        self._core = client.CoreV1Api(api_client)
        self._custom = client.CustomObjectsApi(api_client)

    @property
    def api_client(self) -> Any:
        return self._api_client

    def list_nodes(self, label_selector: str = "") -> list[Any]:
        return self._core.list_node(label_selector=label_selector).items

    def list_namespaces(self, label_selector: str = "") -> list[Any]:
        return self._core.list_namespace(label_selector=label_selector).items

    def get_namespace(self, name: str) -> Any | None:
        """Read a namespace, or None if it does not exist."""
        try:
            return self._core.read_namespace(name=name)
        except ApiException as exc:
            if exc.status == 404:
                return None
            raise

    def list_pods(self) -> list[Any]:
        return self._core.list_pod_for_all_namespaces().items

    def list_node_metrics(
        self, label_selector: str = "", timeout: float | None = None,
    ) -> list[dict[str, Any]]:
        kwargs: dict[str, Any] = {"label_selector": label_selector}
        if timeout is not None:
            kwargs["_request_timeout"] = timeout
        resp = self._custom.list_cluster_custom_object(
            METRICS_GROUP, METRICS_VERSION, "nodes", **kwargs,
        )
        return resp.get("items", [])

    def list_resource_quotas(self, label_selector: str = "") -> list[dict[str, Any]]:
        resp = self._custom.list_cluster_custom_object(
            QUOTA_GROUP, QUOTA_VERSION, QUOTA_PLURAL, label_selector=label_selector,
        )
        return resp.get("items", [])

    def ping(self, timeout: float | None = None) -> None:
        kwargs: dict[str, Any] = {}
        if timeout is not None:
            kwargs["_request_timeout"] = timeout
        client.VersionApi(self._api_client).get_code(**kwargs)


def build_cluster_client(descriptor: ClusterDescriptor) -> KubeClusterClient:
    """Build a live client from the kubeconfig carried by *descriptor*."""
    if not descriptor.spec.kubeconfig:
        raise ClientBuildError(f"Cluster {descriptor.name} has no kubeconfig")
    try:
        raw = base64.b64decode(descriptor.spec.kubeconfig, validate=True)
        kubeconfig = yaml.safe_load(raw)
        api_client = config.new_client_from_config_dict(kubeconfig)
    except Exception as exc:
        raise ClientBuildError(
            f"Build client for cluster {descriptor.name} failed: {exc}"
        ) from exc
    return KubeClusterClient(api_client)


def load_pivot_api_client(cfg: FleetConfig) -> Any:
    """ApiClient for the pivot cluster that holds the Cluster resources."""
    if cfg.in_cluster:
        config.load_incluster_config()
        return client.ApiClient()

    kwargs: dict[str, Any] = {}
    if cfg.kubeconfig:
        kwargs["config_file"] = cfg.kubeconfig
    if cfg.context:
        kwargs["context"] = cfg.context
    return config.new_client_from_config(**kwargs)


class KubeClusterSource:
    """List/watch ``clusters.cluster.kubecube.io`` on the pivot cluster."""

    def __init__(self, api_client: Any, watch_timeout: int = 300) -> None:
        self._custom = client.CustomObjectsApi(api_client)
        self._watch_timeout = watch_timeout

    def list(self) -> tuple[list[dict[str, Any]], str]:
        resp = self._custom.list_cluster_custom_object(
            CLUSTER_GROUP, CLUSTER_VERSION, CLUSTER_PLURAL,
        )
        resource_version = (resp.get("metadata") or {}).get("resourceVersion", "")
        return resp.get("items", []), resource_version

    def watch(
        self, resource_version: str, stop_event: threading.Event,
    ) -> Iterator[tuple[str, dict[str, Any]]]:
        w = watch.Watch()
        try:
            for event in w.stream(
                self._custom.list_cluster_custom_object,
                CLUSTER_GROUP,
                CLUSTER_VERSION,
                CLUSTER_PLURAL,
                resource_version=resource_version,
                timeout_seconds=self._watch_timeout,
            ):
                if stop_event.is_set():
                    return
                obj = event.get("raw_object") or event.get("object")
                yield event["type"], obj
        finally:
            w.stop()
