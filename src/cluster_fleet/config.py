"""Config file loading and auto-discovery for cluster-fleet.

Searches for ``cluster-fleet.yaml`` in the current directory and parent
directories, parses it, and resolves relative paths against the config
file's location.  Every value is resolved once here and passed down by
parameter; nothing reads the environment lazily later on.
"""

from __future__ import annotations

import logging
import os
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)

CONFIG_FILENAME = "cluster-fleet.yaml"
NAMESPACE_ENV = "CUBE_NAMESPACE"
DEFAULT_NAMESPACE = "kubecube-system"


class QueueConfig(BaseModel):
    """Reconcile queue tuning."""

    workers: int = Field(1, ge=1)
    """Number of concurrent reconcile workers."""

    max_retries: int = Field(0, ge=0)
    """Give up on a key after this many requeues. 0 means retry forever."""

    base_delay: float = Field(0.005, gt=0)
    """First backoff delay in seconds; doubles on every failure."""

    max_delay: float = Field(1000.0, gt=0)
    """Upper bound on the backoff delay in seconds."""


class ScoutConfig(BaseModel):
    """Per-cluster health monitoring."""

    enabled: bool = False
    interval_seconds: float = Field(10.0, gt=0)
    failure_threshold: int = Field(3, ge=1)
    """Consecutive failed probes before a cluster is reported down."""


class AggregateConfig(BaseModel):
    """Fan-out query tuning."""

    metrics_timeout: float = Field(1.0, gt=0)
    """Independent timeout for the metrics call of each cluster."""

    max_workers: int = Field(8, ge=1)
    """Clusters queried in parallel."""


@dataclass(frozen=True)
class FleetConfig:
    """Parsed cluster-fleet configuration."""

    config_path: Path | None = None
    kubeconfig: str | None = None
    context: str | None = None
    in_cluster: bool = False
    namespace: str = DEFAULT_NAMESPACE
    queue: QueueConfig = field(default_factory=QueueConfig)
    scout: ScoutConfig = field(default_factory=ScoutConfig)
    aggregate: AggregateConfig = field(default_factory=AggregateConfig)


def find_config(start: Path | None = None) -> Path | None:
    """Walk from *start* (default ``cwd()``) up to the filesystem root.

    Returns the first ``cluster-fleet.yaml`` found, or ``None``.
    """
    current = (start or Path.cwd()).resolve()
    while True:
        candidate = current / CONFIG_FILENAME
        if candidate.is_file():
            return candidate
        parent = current.parent
        if parent == current:
            return None
        current = parent


def load_config(
    path: str | Path | None = None,
    *,
    auto_discover: bool = True,
    environ: Mapping[str, str] | None = None,
) -> FleetConfig:
    """Load a cluster-fleet config file.

    Resolution order:

    1. Explicit *path* (error if it doesn't exist).
    2. Auto-discover by walking parent directories.
    3. Defaults only.

    The control-plane namespace is taken from ``CUBE_NAMESPACE`` when set,
    then from the file, then ``kubecube-system``.
    """
    env = os.environ if environ is None else environ
    config_path: Path | None = None

    if path is not None:
        config_path = Path(path).resolve()
        if not config_path.is_file():
            msg = f"Config file not found: {config_path}"
            raise FileNotFoundError(msg)
    elif auto_discover:
        config_path = find_config()

    data: dict[str, Any] = {}
    if config_path is not None:
        data = _read_yaml(config_path)

    namespace = env.get(NAMESPACE_ENV) or data.get("namespace") or DEFAULT_NAMESPACE
    logger.info("cluster-fleet running in namespace %s", namespace)

    kubeconfig = data.get("kubeconfig")
    if kubeconfig is not None and config_path is not None:
        kubeconfig = str((config_path.parent / Path(kubeconfig).expanduser()).resolve())

    return FleetConfig(
        config_path=config_path,
        kubeconfig=kubeconfig,
        context=data.get("context"),
        in_cluster=bool(data.get("in_cluster", False)),
        namespace=namespace,
        queue=QueueConfig(**(data.get("queue") or {})),
        scout=ScoutConfig(**(data.get("scout") or {})),
        aggregate=AggregateConfig(**(data.get("aggregate") or {})),
    )


def _read_yaml(config_path: Path) -> dict[str, Any]:
    """Read a YAML config file and check it is a mapping."""
    text = config_path.read_text(encoding="utf-8")
    data = yaml.safe_load(text) or {}

    if not isinstance(data, dict):
        msg = f"Expected a YAML mapping in {config_path}, got {type(data).__name__}"
        raise ValueError(msg)
    return data
