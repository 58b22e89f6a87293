"""Which member clusters does a namespace or project live on?

Tenants and projects are hierarchical namespaces (HNC).  Every namespace
below a root carries a ``<root>.tree.hnc.x-k8s.io/depth`` label holding
its distance from that root, which is what these lookups key on.
"""

from __future__ import annotations

import logging

from cluster_fleet.clients.kube import ClusterClient
from cluster_fleet.models import (
    HNC_CURRENT_DEPTH,
    HNC_PROJECT_DEPTH,
    HNC_SUFFIX,
    HNC_TENANT_DEPTH,
    PROJECT_LABEL,
    PROJECT_NS_PREFIX,
    TENANT_LABEL,
    ClusterDescriptor,
)
from cluster_fleet.registry.registry import ClusterRegistry

logger = logging.getLogger(__name__)

_HIERARCHY_LABELS = (
    (TENANT_LABEL, HNC_TENANT_DEPTH),
    (PROJECT_LABEL, HNC_PROJECT_DEPTH),
)


def is_relate_with(ancestor: str, cluster_client: ClusterClient, depth: str) -> bool:
    """True if a namespace sits *depth* levels below *ancestor* on the cluster.

    The current depth needs no lookup.
    """
    if depth == HNC_CURRENT_DEPTH:
        return True

    hnc_label = ancestor + HNC_SUFFIX
    for ns in cluster_client.list_namespaces():
        labels = (ns.metadata.labels if ns.metadata else None) or {}
        if labels.get(hnc_label) == depth:
            return True
    return False


def get_clusters_by_namespace(registry: ClusterRegistry, namespace: str) -> list[str]:
    """Names of the registered clusters the namespace works in.

    A cluster without the namespace is unrelated.  A namespace labeled with
    a tenant and/or project is related only if every such label checks out.
    Any other lookup error propagates.
    """
    cluster_names: list[str] = []

    for cluster in registry.fuzzy_copy():
        cli = cluster.client
        try:
            ns = cli.get_namespace(namespace)
        except Exception as exc:
            logger.error(
                "Get namespace %s from cluster %s failed: %s", namespace, cluster.name, exc,
            )
            raise
        if ns is None:
            logger.debug("Cluster %s not work with namespace %s", cluster.name, namespace)
            continue

        labels = (ns.metadata.labels if ns.metadata else None) or {}
        related = True
        for label, depth in _HIERARCHY_LABELS:
            ancestor = labels.get(label)
            if ancestor is None:
                continue
            try:
                ok = is_relate_with(ancestor, cli, depth)
            except Exception as exc:
                logger.error(
                    "Judge relationship of cluster %s and namespace %s failed: %s",
                    cluster.name, namespace, exc,
                )
                raise
            if not ok:
                related = False
                break

        if related:
            cluster_names.append(cluster.name)

    return cluster_names


def get_clusters_by_project(
    registry: ClusterRegistry, project: str,
) -> list[ClusterDescriptor]:
    """Registered clusters hosting at least one namespace under *project*."""
    selector = f"{PROJECT_NS_PREFIX}{project}{HNC_SUFFIX}=1"
    related: list[ClusterDescriptor] = []

    for cluster in registry.fuzzy_copy():
        namespaces = cluster.client.list_namespaces(label_selector=selector)
        if namespaces:
            related.append(cluster.raw_cluster)

    return related
