"""Allocation administration — carving department and member quotas out of a pool.

A department allocation plus its sibling department allocations may not
exceed the organization plan, field by field. A member allocation plus its
sibling member allocations may not exceed the department allocation; a
department without an allocation imposes no ceiling on its members.
Violations raise ``AllocationValidationError`` and are never downgraded.
"""

from __future__ import annotations

from dataclasses import replace
from datetime import datetime, timezone

from quotaflow.core.exceptions import AllocationNotFoundError, AllocationValidationError
from quotaflow.core.interfaces import AllocationRepository, PlanDirectory
from quotaflow.core.logging import get_logger
from quotaflow.core.types import (
    Allocation,
    AllocationMode,
    AllocationScope,
    AllocationSummary,
    AllocationViolation,
    ResourceLimitSet,
)
from quotaflow.quota.cache import LimitLookupCache
from quotaflow.quota.limits import ALLOCATION_FIELDS, allocation_subset

log = get_logger(__name__)

_FIELD_ORDER = sorted(ALLOCATION_FIELDS)


def sum_allocations(allocations: list[Allocation]) -> ResourceLimitSet:
    """Field-wise total of allocated amounts; unset and unlimited count as zero."""
    totals = {name: 0 for name in ALLOCATION_FIELDS}
    for allocation in allocations:
        for name in ALLOCATION_FIELDS:
            value = getattr(allocation.limits, name)
            if value is not None and value > 0:
                totals[name] += value
    return ResourceLimitSet(**totals)


def remaining(limit: int | None, allocated: int) -> int | None:
    """None means the parent has no ceiling for the field."""
    if limit is None or limit < 0:
        return None
    return max(0, limit - allocated)


def find_violations(
    requested: ResourceLimitSet,
    parent: ResourceLimitSet,
    siblings: list[Allocation],
) -> list[AllocationViolation]:
    allocated = sum_allocations(siblings)
    violations: list[AllocationViolation] = []
    for name in _FIELD_ORDER:
        value = getattr(requested, name)
        parent_limit = getattr(parent, name)
        if value is None or parent_limit is None or parent_limit < 0:
            continue
        already = getattr(allocated, name) or 0
        # an unlimited request never fits under a finite parent
        if value < 0 or already + value > parent_limit:
            violations.append(AllocationViolation(
                field=name,
                requested=value,
                available=max(0, parent_limit - already),
                parent_limit=parent_limit,
            ))
    return violations


def _describe(violations: list[AllocationViolation]) -> str:
    return ", ".join(
        f"{v.field}: requesting {v.requested}, only {v.available} of {v.parent_limit} available"
        for v in violations
    )


class AllocationService:
    """Administrative writes for member and department allocations."""

    def __init__(
        self,
        plans: PlanDirectory,
        allocations: AllocationRepository,
        cache: LimitLookupCache | None = None,
    ) -> None:
        self._plans = plans
        self._allocations = allocations
        self._cache = cache

    async def _org_pool(self, organization_id: str) -> ResourceLimitSet:
        organization = await self._plans.organization_plan(organization_id)
        if organization is None:
            raise AllocationValidationError(
                "Organization not found or has an unknown plan",
                [],
            )
        return organization.limits

    # ── Departments ──────────────────────────────────────────────

    async def set_department_allocation(
        self,
        actor_id: str,
        organization_id: str,
        department_id: str,
        limits: ResourceLimitSet,
        mode: AllocationMode = AllocationMode.SOFT_CAP,
    ) -> Allocation:
        requested = allocation_subset(limits)
        pool = await self._org_pool(organization_id)
        siblings = [
            a for a in await self._allocations.department_allocations(organization_id)
            if a.department_id != department_id
        ]
        violations = find_violations(requested, pool, siblings)
        if violations:
            log.warning(
                "department_allocation_rejected",
                organization_id=organization_id,
                department_id=department_id,
                fields=[v.field for v in violations],
            )
            raise AllocationValidationError(
                f"Allocation exceeds organization pool: {_describe(violations)}",
                violations,
            )

        existing = await self._allocations.department_allocation(department_id)
        now = datetime.now(timezone.utc)
        allocation = Allocation(
            scope=AllocationScope.DEPARTMENT,
            organization_id=organization_id,
            department_id=department_id,
            limits=requested,
            mode=mode,
            set_by=actor_id,
            created_at=existing.created_at if existing else now,
            updated_at=now,
        )
        saved = await self._allocations.save(allocation)
        if self._cache is not None:
            self._cache.invalidate_department(department_id)
        log.info(
            "department_allocation_set",
            organization_id=organization_id,
            department_id=department_id,
            mode=mode.value,
            actor_id=actor_id,
        )
        return saved

    async def remove_department_allocation(self, department_id: str) -> None:
        if not await self._allocations.delete_department(department_id):
            raise AllocationNotFoundError(
                "Department allocation not found",
                {"department_id": department_id},
            )
        if self._cache is not None:
            self._cache.invalidate_department(department_id)
        log.info("department_allocation_removed", department_id=department_id)

    async def on_department_removed(self, department_id: str) -> None:
        """Drop the department's allocation and every member allocation under it."""
        members = await self._allocations.delete_department_members(department_id)
        await self._allocations.delete_department(department_id)
        if self._cache is not None:
            self._cache.invalidate_department(department_id)
        log.info("department_allocations_purged", department_id=department_id, members=members)

    # ── Members ──────────────────────────────────────────────────

    async def set_member_allocation(
        self,
        actor_id: str,
        organization_id: str,
        department_id: str,
        user_id: str,
        limits: ResourceLimitSet,
        mode: AllocationMode = AllocationMode.SOFT_CAP,
    ) -> Allocation:
        requested = allocation_subset(limits)
        department = await self._allocations.department_allocation(department_id)
        if department is not None:
            siblings = [
                a for a in await self._allocations.member_allocations(department_id)
                if a.user_id != user_id
            ]
            violations = find_violations(requested, department.limits, siblings)
            if violations:
                log.warning(
                    "member_allocation_rejected",
                    department_id=department_id,
                    user_id=user_id,
                    fields=[v.field for v in violations],
                )
                raise AllocationValidationError(
                    f"Allocation exceeds department pool: {_describe(violations)}",
                    violations,
                )

        existing = await self._allocations.member_allocation(user_id, department_id)
        now = datetime.now(timezone.utc)
        allocation = Allocation(
            scope=AllocationScope.MEMBER,
            organization_id=organization_id,
            department_id=department_id,
            user_id=user_id,
            limits=requested,
            mode=mode,
            set_by=actor_id,
            created_at=existing.created_at if existing else now,
            updated_at=now,
        )
        saved = await self._allocations.save(allocation)
        if self._cache is not None:
            self._cache.invalidate_member(user_id, department_id)
        log.info(
            "member_allocation_set",
            department_id=department_id,
            user_id=user_id,
            mode=mode.value,
            actor_id=actor_id,
        )
        return saved

    async def remove_member_allocation(self, user_id: str, department_id: str) -> None:
        if not await self._allocations.delete_member(user_id, department_id):
            raise AllocationNotFoundError(
                "Member allocation not found",
                {"user_id": user_id, "department_id": department_id},
            )
        if self._cache is not None:
            self._cache.invalidate_member(user_id, department_id)
        log.info("member_allocation_removed", user_id=user_id, department_id=department_id)

    async def on_member_removed(self, user_id: str, department_id: str) -> None:
        await self._allocations.delete_member(user_id, department_id)
        if self._cache is not None:
            self._cache.invalidate_member(user_id, department_id)

    # ── Pools ────────────────────────────────────────────────────

    async def organization_summary(self, organization_id: str) -> AllocationSummary:
        pool = allocation_subset(await self._org_pool(organization_id))
        allocations = await self._allocations.department_allocations(organization_id)
        return self._summary(organization_id, pool, allocations)

    async def department_summary(self, department_id: str) -> AllocationSummary:
        department = await self._allocations.department_allocation(department_id)
        pool = department.limits if department else ResourceLimitSet()
        allocations = await self._allocations.member_allocations(department_id)
        return self._summary(department_id, pool, allocations)

    async def unallocated_organization(self, organization_id: str) -> ResourceLimitSet:
        return (await self.organization_summary(organization_id)).unallocated

    async def unallocated_department(self, department_id: str) -> ResourceLimitSet:
        return (await self.department_summary(department_id)).unallocated

    @staticmethod
    def _summary(owner_id: str, pool: ResourceLimitSet, allocations: list[Allocation]) -> AllocationSummary:
        allocated = sum_allocations(allocations)
        unallocated = ResourceLimitSet(**{
            name: remaining(getattr(pool, name), getattr(allocated, name) or 0)
            for name in ALLOCATION_FIELDS
        })
        return AllocationSummary(
            owner_id=owner_id,
            pool=pool,
            allocated=allocated,
            unallocated=unallocated,
            allocations=allocations,
        )


class InMemoryAllocationRepository(AllocationRepository):
    """Allocation records held in dicts, for dev mode and tests."""

    def __init__(self) -> None:
        self._departments: dict[str, Allocation] = {}
        self._members: dict[tuple[str, str], Allocation] = {}

    async def member_allocation(self, user_id: str, department_id: str) -> Allocation | None:
        return self._members.get((user_id, department_id))

    async def department_allocation(self, department_id: str) -> Allocation | None:
        return self._departments.get(department_id)

    async def department_allocations(self, organization_id: str) -> list[Allocation]:
        return [
            a for _, a in sorted(self._departments.items())
            if a.organization_id == organization_id
        ]

    async def member_allocations(self, department_id: str) -> list[Allocation]:
        return [
            a for (_, dept), a in sorted(self._members.items())
            if dept == department_id
        ]

    async def save(self, allocation: Allocation) -> Allocation:
        stored = replace(allocation)
        if allocation.scope == AllocationScope.MEMBER:
            self._members[(allocation.user_id or "", allocation.department_id)] = stored
        else:
            self._departments[allocation.department_id] = stored
        return stored

    async def delete_member(self, user_id: str, department_id: str) -> bool:
        return self._members.pop((user_id, department_id), None) is not None

    async def delete_department(self, department_id: str) -> bool:
        return self._departments.pop(department_id, None) is not None

    async def delete_department_members(self, department_id: str) -> int:
        stale = [key for key in self._members if key[1] == department_id]
        for key in stale:
            del self._members[key]
        return len(stale)
