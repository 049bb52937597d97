"""Typed limit-set merging.

One rule per field: an override value replaces the base value only when it
is explicitly set (not None). Fields an allocation cannot express (gateway,
department and member ceilings) always come from the base.
"""

from __future__ import annotations

from dataclasses import fields
from functools import reduce

from quotaflow.core.constants import UNLIMITED
from quotaflow.core.types import ResourceKind, ResourceLimitSet

RESOURCE_FIELDS: dict[ResourceKind, str] = {
    ResourceKind.WORKFLOW: "max_workflows",
    ResourceKind.PLUGIN: "max_plugins",
    ResourceKind.API_CALL: "max_api_calls",
    ResourceKind.STORAGE: "max_storage",
    ResourceKind.WORKFLOW_STEP: "max_steps",
    ResourceKind.GATEWAY: "max_gateways",
    ResourceKind.DEPARTMENT: "max_departments",
    ResourceKind.MEMBER: "max_members",
}

# Fields a department or member allocation may override.
ALLOCATION_FIELDS: frozenset[str] = frozenset({
    "max_workflows",
    "max_plugins",
    "max_api_calls",
    "max_storage",
    "max_steps",
})

UNLIMITED_LIMITS = ResourceLimitSet(**{f.name: UNLIMITED for f in fields(ResourceLimitSet)})


def limit_field(resource: ResourceKind) -> str:
    return RESOURCE_FIELDS[resource]


def limit_for(limits: ResourceLimitSet, resource: ResourceKind) -> int | None:
    return getattr(limits, RESOURCE_FIELDS[resource])


def is_overridable(resource: ResourceKind) -> bool:
    return RESOURCE_FIELDS[resource] in ALLOCATION_FIELDS


def is_unlimited(value: int | None) -> bool:
    """Negative and absent ceilings both mean no ceiling."""
    return value is None or value < 0


def merge_limits(
    base: ResourceLimitSet,
    override: ResourceLimitSet | None,
    overridable: frozenset[str] = ALLOCATION_FIELDS,
) -> ResourceLimitSet:
    """Compose ``override`` over ``base`` field by field."""
    if override is None:
        return base

    merged: dict[str, int | None] = {}
    for f in fields(ResourceLimitSet):
        base_value = getattr(base, f.name)
        override_value = getattr(override, f.name) if f.name in overridable else None
        merged[f.name] = override_value if override_value is not None else base_value
    return ResourceLimitSet(**merged)


def merge_chain(base: ResourceLimitSet, *overrides: ResourceLimitSet | None) -> ResourceLimitSet:
    """Apply overrides in order; later overrides win."""
    return reduce(lambda acc, item: merge_limits(acc, item), overrides, base)


def allocation_subset(limits: ResourceLimitSet) -> ResourceLimitSet:
    """Drop fields an allocation cannot carry."""
    return ResourceLimitSet(**{
        name: getattr(limits, name) for name in ALLOCATION_FIELDS
    })
