"""Allocation administration — admin-only department and member overrides."""

from __future__ import annotations

from fastapi import APIRouter, Depends, Response, status

from quotaflow.api.deps import get_quota_engine, require_admin
from quotaflow.api.models.schemas import AllocationIn, AllocationOut, AllocationSummaryOut
from quotaflow.api.routes.quota import limit_set_out
from quotaflow.core.types import Allocation, AllocationSummary, ResourceLimitSet
from quotaflow.quota.engine import QuotaEngine

router = APIRouter(prefix="/quota/organizations", tags=["allocations"])


def allocation_out(allocation: Allocation) -> AllocationOut:
    return AllocationOut(
        scope=allocation.scope.value,
        organization_id=allocation.organization_id,
        department_id=allocation.department_id,
        user_id=allocation.user_id,
        limits=limit_set_out(allocation.limits),
        mode=allocation.mode,
        set_by=allocation.set_by,
        created_at=allocation.created_at,
        updated_at=allocation.updated_at,
    )


def summary_out(summary: AllocationSummary) -> AllocationSummaryOut:
    return AllocationSummaryOut(
        owner_id=summary.owner_id,
        pool=limit_set_out(summary.pool),
        allocated=limit_set_out(summary.allocated),
        unallocated=limit_set_out(summary.unallocated),
        allocations=[allocation_out(a) for a in summary.allocations],
    )


def _limits_from(body: AllocationIn) -> ResourceLimitSet:
    return ResourceLimitSet(**body.model_dump(exclude={"mode"}))


# ── Organization Pool ─────────────────────────────────────────────


@router.get("/{organization_id}/allocations", response_model=AllocationSummaryOut)
async def get_organization_allocations(
    organization_id: str,
    _actor: str = Depends(require_admin),
    engine: QuotaEngine = Depends(get_quota_engine),
) -> AllocationSummaryOut:
    summary = await engine.allocations.organization_summary(organization_id)
    return summary_out(summary)


# ── Departments ───────────────────────────────────────────────────


@router.put(
    "/{organization_id}/departments/{department_id}/allocation",
    response_model=AllocationOut,
)
async def set_department_allocation(
    organization_id: str,
    department_id: str,
    body: AllocationIn,
    actor_id: str = Depends(require_admin),
    engine: QuotaEngine = Depends(get_quota_engine),
) -> AllocationOut:
    """Create or replace a department's slice of the organization pool."""
    allocation = await engine.allocations.set_department_allocation(
        actor_id, organization_id, department_id, _limits_from(body), body.mode,
    )
    return allocation_out(allocation)


@router.delete(
    "/{organization_id}/departments/{department_id}/allocation",
    status_code=status.HTTP_204_NO_CONTENT,
)
async def remove_department_allocation(
    organization_id: str,
    department_id: str,
    _actor: str = Depends(require_admin),
    engine: QuotaEngine = Depends(get_quota_engine),
) -> Response:
    await engine.allocations.remove_department_allocation(department_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get(
    "/{organization_id}/departments/{department_id}/allocations",
    response_model=AllocationSummaryOut,
)
async def get_department_allocations(
    organization_id: str,
    department_id: str,
    _actor: str = Depends(require_admin),
    engine: QuotaEngine = Depends(get_quota_engine),
) -> AllocationSummaryOut:
    summary = await engine.allocations.department_summary(department_id)
    return summary_out(summary)


# ── Members ───────────────────────────────────────────────────────


@router.put(
    "/{organization_id}/departments/{department_id}/members/{user_id}/allocation",
    response_model=AllocationOut,
)
async def set_member_allocation(
    organization_id: str,
    department_id: str,
    user_id: str,
    body: AllocationIn,
    actor_id: str = Depends(require_admin),
    engine: QuotaEngine = Depends(get_quota_engine),
) -> AllocationOut:
    """Create or replace a member's slice of the department allocation."""
    allocation = await engine.allocations.set_member_allocation(
        actor_id, organization_id, department_id, user_id, _limits_from(body), body.mode,
    )
    return allocation_out(allocation)


@router.delete(
    "/{organization_id}/departments/{department_id}/members/{user_id}/allocation",
    status_code=status.HTTP_204_NO_CONTENT,
)
async def remove_member_allocation(
    organization_id: str,
    department_id: str,
    user_id: str,
    _actor: str = Depends(require_admin),
    engine: QuotaEngine = Depends(get_quota_engine),
) -> Response:
    await engine.allocations.remove_member_allocation(user_id, department_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)
