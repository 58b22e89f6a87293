"""Shared fakes for cluster-fleet tests.

No real cluster is needed: member clusters are FakeClusterClient objects
holding kubernetes model instances, and the pivot store is a FakeSource.
"""

from __future__ import annotations

import threading
from collections.abc import Iterator
from typing import Any

import pytest
from kubernetes.client import (
    V1Container,
    V1Namespace,
    V1Node,
    V1NodeStatus,
    V1ObjectMeta,
    V1Pod,
    V1PodSpec,
    V1PodStatus,
    V1ResourceRequirements,
)

from cluster_fleet.models import ClusterDescriptor
from cluster_fleet.registry.registry import ClusterNotFoundError, ClusterRegistry
from cluster_fleet.scout.scout import ScoutHandle

# --- Object builders ---


def cluster_obj(
    name: str,
    state: str | None = "normal",
    kubeconfig: str = "a3ViZWNvbmZpZw==",
    resource_version: str = "1",
    **spec: Any,
) -> dict[str, Any]:
    """A raw Cluster custom object as the pivot API returns it."""
    obj: dict[str, Any] = {
        "apiVersion": "cluster.kubecube.io/v1",
        "kind": "Cluster",
        "metadata": {
            "name": name,
            "resourceVersion": resource_version,
            "creationTimestamp": "2024-01-02T03:04:05Z",
        },
        "spec": {"kubeconfig": kubeconfig, **spec},
        "status": {},
    }
    if state is not None:
        obj["status"]["state"] = state
    return obj


def descriptor(name: str, state: str | None = "normal", **kwargs: Any) -> ClusterDescriptor:
    return ClusterDescriptor.from_object(cluster_obj(name, state, **kwargs))


def namespace(name: str, labels: dict[str, str] | None = None) -> V1Namespace:
    return V1Namespace(metadata=V1ObjectMeta(name=name, labels=labels))


def node(name: str, capacity: dict[str, str] | None = None,
         labels: dict[str, str] | None = None) -> V1Node:
    return V1Node(
        metadata=V1ObjectMeta(name=name, labels=labels),
        status=V1NodeStatus(capacity=capacity or {}),
    )


def container(name: str, requests: dict[str, str] | None = None,
              limits: dict[str, str] | None = None) -> V1Container:
    return V1Container(
        name=name,
        resources=V1ResourceRequirements(requests=requests, limits=limits),
    )


def pod(
    name: str,
    containers: list[V1Container],
    node_name: str | None = None,
    phase: str = "Running",
    init_containers: list[V1Container] | None = None,
    overhead: dict[str, str] | None = None,
) -> V1Pod:
    return V1Pod(
        metadata=V1ObjectMeta(name=name, namespace="default"),
        spec=V1PodSpec(
            containers=containers,
            init_containers=init_containers,
            node_name=node_name,
            overhead=overhead,
        ),
        status=V1PodStatus(phase=phase),
    )


# --- Fakes ---


def _matches(labels: dict[str, str] | None, selector: str) -> bool:
    if not selector:
        return True
    labels = labels or {}
    for term in selector.split(","):
        key, _, value = term.partition("=")
        if labels.get(key) != value:
            return False
    return True


class FakeClusterClient:
    """In-memory ClusterClient. Set ``fail_*`` to an exception to make calls fail."""

    def __init__(
        self,
        nodes: list[V1Node] | None = None,
        namespaces: list[V1Namespace] | None = None,
        pods: list[V1Pod] | None = None,
        node_metrics: list[dict[str, Any]] | None = None,
    ) -> None:
        self.nodes = nodes or []
        self.namespaces = namespaces or []
        self.pods = pods or []
        self.node_metrics = node_metrics or []
        self.fail_nodes: Exception | None = None
        self.fail_namespaces: Exception | None = None
        self.fail_get_namespace: Exception | None = None
        self.fail_pods: Exception | None = None
        self.fail_metrics: Exception | None = None
        self.fail_ping: Exception | None = None
        self.calls: list[tuple[str, Any]] = []

    def list_nodes(self, label_selector: str = "") -> list[V1Node]:
        self.calls.append(("list_nodes", label_selector))
        if self.fail_nodes:
            raise self.fail_nodes
        return [n for n in self.nodes if _matches(n.metadata.labels, label_selector)]

    def list_namespaces(self, label_selector: str = "") -> list[V1Namespace]:
        self.calls.append(("list_namespaces", label_selector))
        if self.fail_namespaces:
            raise self.fail_namespaces
        return [
            ns for ns in self.namespaces if _matches(ns.metadata.labels, label_selector)
        ]

    def get_namespace(self, name: str) -> V1Namespace | None:
        self.calls.append(("get_namespace", name))
        if self.fail_get_namespace:
            raise self.fail_get_namespace
        for ns in self.namespaces:
            if ns.metadata.name == name:
                return ns
        return None

    def list_pods(self) -> list[V1Pod]:
        self.calls.append(("list_pods", None))
        if self.fail_pods:
            raise self.fail_pods
        return list(self.pods)

    def list_node_metrics(
        self, label_selector: str = "", timeout: float | None = None,
    ) -> list[dict[str, Any]]:
        self.calls.append(("list_node_metrics", (label_selector, timeout)))
        if self.fail_metrics:
            raise self.fail_metrics
        return list(self.node_metrics)

    def ping(self, timeout: float | None = None) -> None:
        self.calls.append(("ping", timeout))
        if self.fail_ping:
            raise self.fail_ping

    def call_names(self) -> list[str]:
        return [c[0] for c in self.calls]


class FakeClientFactory:
    """ClientFactory handing out a fixed client per cluster name."""

    def __init__(self, clients: dict[str, FakeClusterClient] | None = None) -> None:
        self.clients = clients or {}
        self.failing: set[str] = set()
        self.built: list[str] = []

    def __call__(self, desc: ClusterDescriptor) -> FakeClusterClient:
        if desc.name in self.failing:
            raise RuntimeError(f"cannot reach {desc.name}")
        self.built.append(desc.name)
        return self.clients.setdefault(desc.name, FakeClusterClient())


class FakeScout:
    """Scout that records starts and never probes."""

    def __init__(self, fail: Exception | None = None) -> None:
        self.fail = fail
        self.started: list[str] = []
        self.handles: list[ScoutHandle] = []
        self.callbacks: dict[str, Any] = {}

    def start(self, name, cluster_client, on_change) -> ScoutHandle:
        if self.fail:
            raise self.fail
        self.started.append(name)
        self.callbacks[name] = on_change
        handle = ScoutHandle(name, threading.Event())
        self.handles.append(handle)
        return handle


class FakeSource:
    """ClusterSource over a list of objects plus scripted watch events."""

    def __init__(self, items: list[dict[str, Any]] | None = None,
                 resource_version: str = "100") -> None:
        self.items = items or []
        self.resource_version = resource_version
        self.list_error: Exception | None = None
        self.list_calls = 0
        self.watch_versions: list[str] = []
        self.scripts: list[list[tuple[str, dict[str, Any]]]] = []

    def list(self) -> tuple[list[dict[str, Any]], str]:
        self.list_calls += 1
        if self.list_error:
            raise self.list_error
        return list(self.items), self.resource_version

    def watch(
        self, resource_version: str, stop_event: threading.Event,
    ) -> Iterator[tuple[str, dict[str, Any]]]:
        self.watch_versions.append(resource_version)
        if self.scripts:
            yield from self.scripts.pop(0)
            return
        stop_event.wait(0.02)


class FakeLister:
    """ClusterLister over a fixed set of descriptors."""

    def __init__(self, descriptors: list[ClusterDescriptor]) -> None:
        self._by_name = {d.name: d for d in descriptors}

    def get(self, name: str) -> ClusterDescriptor:
        if name not in self._by_name:
            raise ClusterNotFoundError(f"Cluster {name} not found")
        return self._by_name[name]

    def list(self) -> list[ClusterDescriptor]:
        return sorted(self._by_name.values(), key=lambda d: d.name)


# --- Fixtures ---


@pytest.fixture()
def factory() -> FakeClientFactory:
    return FakeClientFactory()


@pytest.fixture()
def scout() -> FakeScout:
    return FakeScout()


@pytest.fixture()
def registry(factory: FakeClientFactory, scout: FakeScout) -> ClusterRegistry:
    return ClusterRegistry(factory, scout=scout)


@pytest.fixture()
def stop_event() -> Iterator[threading.Event]:
    stop = threading.Event()
    yield stop
    stop.set()
