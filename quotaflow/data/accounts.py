"""DB-backed plan directory and allocation repository."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from sqlalchemy import Table, delete, select, text
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine

from quotaflow.core.exceptions import PlanLookupError
from quotaflow.core.interfaces import AllocationRepository, PlanDirectory
from quotaflow.core.logging import get_logger
from quotaflow.core.types import (
    AccountPlan,
    Allocation,
    AllocationMode,
    AllocationScope,
    ExecutionMode,
    OrganizationPlan,
    ResourceLimitSet,
)
from quotaflow.data.db import department_allocations, member_allocations
from quotaflow.quota.limits import ALLOCATION_FIELDS
from quotaflow.quota.plans import build_account_plan, build_organization_plan

log = get_logger(__name__)


def _utc(value: datetime | None) -> datetime:
    if value is None:
        return datetime.now(timezone.utc)
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class SqlPlanDirectory(PlanDirectory):
    """Plan ids stored on organization and account rows."""

    def __init__(self, engine: AsyncEngine) -> None:
        self._engine = engine

    async def organization_plan(self, organization_id: str) -> OrganizationPlan | None:
        try:
            async with self._engine.begin() as conn:
                row = await conn.execute(
                    text("SELECT plan FROM organizations WHERE organization_id = :oid"),
                    {"oid": organization_id},
                )
                r = row.mappings().first()
        except SQLAlchemyError as exc:
            raise PlanLookupError("organization plan lookup failed", {"organization_id": organization_id}) from exc
        if r is None:
            return None
        return build_organization_plan(organization_id, r["plan"])

    async def account_plan(self, user_id: str) -> AccountPlan | None:
        try:
            async with self._engine.begin() as conn:
                row = await conn.execute(
                    text(
                        "SELECT plan, execution_mode, workspace_addon "
                        "FROM accounts WHERE user_id = :uid"
                    ),
                    {"uid": user_id},
                )
                r = row.mappings().first()
        except SQLAlchemyError as exc:
            raise PlanLookupError("account plan lookup failed", {"user_id": user_id}) from exc
        if r is None:
            return None

        mode: ExecutionMode | None = None
        if r["execution_mode"]:
            try:
                mode = ExecutionMode(r["execution_mode"])
            except ValueError:
                log.warning("unknown_execution_mode", user_id=user_id, mode=r["execution_mode"])
        return build_account_plan(
            user_id,
            r["plan"],
            execution_mode=mode,
            has_workspace_addon=bool(r["workspace_addon"]),
        )


class SqlAllocationRepository(AllocationRepository):
    """Member and department allocation rows."""

    def __init__(self, engine: AsyncEngine) -> None:
        self._engine = engine

    def _insert(self, table: Table) -> Any:
        if self._engine.dialect.name == "postgresql":
            return postgresql.insert(table)
        return sqlite.insert(table)

    async def _fetch(self, query: Any) -> list[Allocation]:
        async with self._engine.begin() as conn:
            result = await conn.execute(query)
            return [self._row_to_allocation(r) for r in result.mappings().all()]

    async def member_allocation(self, user_id: str, department_id: str) -> Allocation | None:
        rows = await self._fetch(
            select(member_allocations).where(
                member_allocations.c.user_id == user_id,
                member_allocations.c.department_id == department_id,
            )
        )
        return rows[0] if rows else None

    async def department_allocation(self, department_id: str) -> Allocation | None:
        rows = await self._fetch(
            select(department_allocations).where(
                department_allocations.c.department_id == department_id,
            )
        )
        return rows[0] if rows else None

    async def department_allocations(self, organization_id: str) -> list[Allocation]:
        return await self._fetch(
            select(department_allocations)
            .where(department_allocations.c.organization_id == organization_id)
            .order_by(department_allocations.c.department_id)
        )

    async def member_allocations(self, department_id: str) -> list[Allocation]:
        return await self._fetch(
            select(member_allocations)
            .where(member_allocations.c.department_id == department_id)
            .order_by(member_allocations.c.user_id)
        )

    async def save(self, allocation: Allocation) -> Allocation:
        limits = {name: getattr(allocation.limits, name) for name in ALLOCATION_FIELDS}
        values: dict[str, Any] = {
            "department_id": allocation.department_id,
            "organization_id": allocation.organization_id,
            "alloc_mode": allocation.mode.value,
            "set_by": allocation.set_by,
            "created_at": allocation.created_at,
            "updated_at": allocation.updated_at,
            **limits,
        }
        if allocation.scope == AllocationScope.MEMBER:
            table = member_allocations
            values["user_id"] = allocation.user_id
            conflict = ["user_id", "department_id"]
        else:
            table = department_allocations
            conflict = ["department_id"]

        updates = {k: v for k, v in values.items() if k not in (*conflict, "created_at")}
        stmt = self._insert(table).values(**values).on_conflict_do_update(
            index_elements=conflict,
            set_=updates,
        )
        async with self._engine.begin() as conn:
            await conn.execute(stmt)

        log.info(
            "allocation_saved",
            scope=allocation.scope.value,
            department_id=allocation.department_id,
            user_id=allocation.user_id,
            mode=allocation.mode.value,
        )
        return allocation

    async def delete_member(self, user_id: str, department_id: str) -> bool:
        async with self._engine.begin() as conn:
            result = await conn.execute(
                delete(member_allocations).where(
                    member_allocations.c.user_id == user_id,
                    member_allocations.c.department_id == department_id,
                )
            )
        return bool(result.rowcount)

    async def delete_department(self, department_id: str) -> bool:
        async with self._engine.begin() as conn:
            result = await conn.execute(
                delete(department_allocations).where(
                    department_allocations.c.department_id == department_id
                )
            )
        return bool(result.rowcount)

    async def delete_department_members(self, department_id: str) -> int:
        async with self._engine.begin() as conn:
            result = await conn.execute(
                delete(member_allocations).where(member_allocations.c.department_id == department_id)
            )
        return int(result.rowcount or 0)

    @staticmethod
    def _row_to_allocation(r: Any) -> Allocation:
        """Convert a DB row mapping to an Allocation."""
        user_id = r.get("user_id")
        try:
            mode = AllocationMode(r["alloc_mode"])
        except ValueError:
            mode = AllocationMode.SOFT_CAP
        return Allocation(
            scope=AllocationScope.MEMBER if user_id else AllocationScope.DEPARTMENT,
            organization_id=r["organization_id"],
            department_id=r["department_id"],
            user_id=user_id,
            limits=ResourceLimitSet(**{name: r[name] for name in ALLOCATION_FIELDS}),
            mode=mode,
            set_by=r["set_by"],
            created_at=_utc(r["created_at"]),
            updated_at=_utc(r["updated_at"]),
        )
