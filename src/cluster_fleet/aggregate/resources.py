"""Effective pod resource accounting and binary unit conversion.

A pod's effective request for a resource is the sum over its regular
containers, raised to at least the largest single init container (init
containers run one at a time, before the regular ones), plus pod overhead.
Overhead is added to a limit only when that limit is non-zero; a zero
limit means unbounded and stays that way.

Quantities are parsed with ``kubernetes.utils.parse_quantity`` and kept as
``Decimal`` until the final conversion to integers.
"""

from __future__ import annotations

import logging
from decimal import ROUND_CEILING, Decimal
from typing import Any

from kubernetes.utils import parse_quantity

logger = logging.getLogger(__name__)

ResourceList = dict[str, Decimal]

CPU = "cpu"
MEMORY = "memory"
STORAGE = "storage"
EPHEMERAL_STORAGE = "ephemeral-storage"

BINARY_UNITS: dict[str, int] = {
    "": 1,
    "Ki": 1024,
    "Mi": 1024 ** 2,
    "Gi": 1024 ** 3,
    "Ti": 1024 ** 4,
    "Pi": 1024 ** 5,
    "Ei": 1024 ** 6,
}

Mi = "Mi"


def to_decimal(quantity: Any) -> Decimal:
    """Parse a quantity (``"100m"``, ``"1Gi"``, int, Decimal) to Decimal."""
    if isinstance(quantity, Decimal):
        return quantity
    if quantity is None:
        return Decimal(0)
    return parse_quantity(quantity)


def add_resource_list(target: ResourceList, new: dict[str, Any] | None) -> None:
    """Add every quantity in *new* into *target*."""
    for name, quantity in (new or {}).items():
        target[name] = target.get(name, Decimal(0)) + to_decimal(quantity)


def max_resource_list(target: ResourceList, new: dict[str, Any] | None) -> None:
    """Raise every resource in *target* to at least its value in *new*."""
    for name, quantity in (new or {}).items():
        value = to_decimal(quantity)
        if name not in target or value > target[name]:
            target[name] = value


def pod_requests_and_limits(pod: Any) -> tuple[ResourceList, ResourceList]:
    """Effective requests and limits of a V1Pod."""
    reqs: ResourceList = {}
    limits: ResourceList = {}
    spec = pod.spec

    for container in spec.containers or []:
        resources = container.resources
        if resources is None:
            continue
        add_resource_list(reqs, resources.requests)
        add_resource_list(limits, resources.limits)

    # init containers define the minimum of any resource
    for container in spec.init_containers or []:
        resources = container.resources
        if resources is None:
            continue
        max_resource_list(reqs, resources.requests)
        max_resource_list(limits, resources.limits)

    if spec.overhead:
        add_resource_list(reqs, spec.overhead)
        for name, quantity in spec.overhead.items():
            value = limits.get(name)
            if value is not None and value != 0:
                limits[name] = value + to_decimal(quantity)

    return reqs, limits


def milli_value(quantity: Any) -> int:
    """Quantity in thousandths, rounded up (``"1"`` -> 1000, ``"1n"`` -> 1)."""
    try:
        value = to_decimal(quantity) * 1000
    except ValueError as exc:
        logger.warning("Cannot parse quantity %r: %s", quantity, exc)
        return 0
    return int(value.to_integral_value(rounding=ROUND_CEILING))


def binary_unit_convert(data: Any, expected_unit: str) -> Decimal:
    """Convert *data* to *expected_unit* (``"Ki"``, ``"Mi"``, ...).

    Raises ValueError for an unknown unit or unparsable quantity.
    """
    factor = BINARY_UNITS.get(expected_unit)
    if factor is None:
        raise ValueError(f"unsupported binary unit: {expected_unit!r}")
    return to_decimal(data) / factor


def convert_unit(data: Any, expected_unit: str) -> int:
    """Like binary_unit_convert, truncated toward zero; errors become 0."""
    try:
        value = binary_unit_convert(data, expected_unit)
    except ValueError as exc:
        logger.warning("Convert %r to %s failed: %s", data, expected_unit, exc)
        return 0
    # note: decimal point is truncated
    return int(value)
