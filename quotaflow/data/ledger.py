"""SQL-backed durable usage ledger."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from sqlalchemy import and_, case, select
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine

from quotaflow.core.exceptions import LedgerError
from quotaflow.core.interfaces import UsageLedger
from quotaflow.core.logging import get_logger
from quotaflow.core.types import (
    OwnerKind,
    PeriodType,
    UsageLedgerRow,
    UsageMetrics,
)
from quotaflow.data.db import usage_ledger

log = get_logger(__name__)

_ADDITIVE = ("api_calls", "workflow_runs", "plugin_executions", "errors")
_CONFLICT_KEY = ["owner_kind", "owner_id", "period_start", "period_type"]


def _utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class SqlUsageLedger(UsageLedger):
    """Usage rows keyed by (owner_kind, owner_id, period_start, period_type).

    Period starts are stored in UTC. Works on PostgreSQL and SQLite, which
    share the ``ON CONFLICT DO UPDATE`` upsert.
    """

    def __init__(self, engine: AsyncEngine) -> None:
        self._engine = engine

    def _insert(self) -> Any:
        if self._engine.dialect.name == "postgresql":
            return postgresql.insert(usage_ledger)
        return sqlite.insert(usage_ledger)

    async def increment(
        self,
        owner_kind: OwnerKind,
        owner_id: str,
        period_type: PeriodType,
        period_start: datetime,
        deltas: UsageMetrics,
        storage_value: int | None = None,
    ) -> None:
        now = datetime.now(timezone.utc)
        initial_storage = max(0, deltas.storage_used if storage_value is None else storage_value)
        stmt = self._insert().values(
            owner_kind=owner_kind.value,
            owner_id=owner_id,
            period_type=period_type.value,
            period_start=_utc(period_start),
            api_calls=deltas.api_calls,
            workflow_runs=deltas.workflow_runs,
            plugin_executions=deltas.plugin_executions,
            errors=deltas.errors,
            storage_used=initial_storage,
            created_at=now,
            updated_at=now,
        )
        updates: dict[str, Any] = {
            name: usage_ledger.c[name] + getattr(deltas, name) for name in _ADDITIVE
        }
        if storage_value is not None:
            updates["storage_used"] = initial_storage
        elif deltas.storage_used:
            adjusted_storage = usage_ledger.c.storage_used + deltas.storage_used
            updates["storage_used"] = case((adjusted_storage < 0, 0), else_=adjusted_storage)
        updates["updated_at"] = now
        stmt = stmt.on_conflict_do_update(index_elements=_CONFLICT_KEY, set_=updates)

        try:
            async with self._engine.begin() as conn:
                await conn.execute(stmt)
        except SQLAlchemyError as exc:
            raise LedgerError(
                "ledger increment failed",
                {"owner_id": owner_id, "period_type": period_type.value},
            ) from exc

    async def upsert(self, row: UsageLedgerRow) -> None:
        now = datetime.now(timezone.utc)
        metrics = row.metrics
        values = {
            "api_calls": metrics.api_calls,
            "workflow_runs": metrics.workflow_runs,
            "plugin_executions": metrics.plugin_executions,
            "errors": metrics.errors,
            "storage_used": max(0, metrics.storage_used),
        }
        stmt = self._insert().values(
            owner_kind=row.owner_kind.value,
            owner_id=row.owner_id,
            period_type=row.period_type.value,
            period_start=_utc(row.period_start),
            created_at=now,
            updated_at=now,
            **values,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=_CONFLICT_KEY,
            set_={**values, "updated_at": now},
        )

        try:
            async with self._engine.begin() as conn:
                await conn.execute(stmt)
        except SQLAlchemyError as exc:
            raise LedgerError(
                "ledger upsert failed",
                {"owner_id": row.owner_id, "period_type": row.period_type.value},
            ) from exc

    async def rows(
        self,
        period_type: PeriodType,
        start: datetime,
        end: datetime,
        owner_kind: OwnerKind | None = None,
        owner_id: str | None = None,
    ) -> list[UsageLedgerRow]:
        conditions = [
            usage_ledger.c.period_type == period_type.value,
            usage_ledger.c.period_start >= _utc(start),
            usage_ledger.c.period_start < _utc(end),
        ]
        if owner_kind is not None:
            conditions.append(usage_ledger.c.owner_kind == owner_kind.value)
        if owner_id is not None:
            conditions.append(usage_ledger.c.owner_id == owner_id)

        query = (
            select(usage_ledger)
            .where(and_(*conditions))
            .order_by(usage_ledger.c.period_start, usage_ledger.c.owner_kind, usage_ledger.c.owner_id)
        )
        try:
            async with self._engine.begin() as conn:
                result = await conn.execute(query)
                return [self._row_to_usage(r) for r in result.mappings().all()]
        except SQLAlchemyError as exc:
            raise LedgerError("ledger read failed", {"period_type": period_type.value}) from exc

    async def latest_storage(
        self,
        owner_kind: OwnerKind,
        owner_id: str,
        before: datetime,
    ) -> int | None:
        query = (
            select(usage_ledger.c.storage_used)
            .where(
                and_(
                    usage_ledger.c.owner_kind == owner_kind.value,
                    usage_ledger.c.owner_id == owner_id,
                    usage_ledger.c.period_type == PeriodType.HOURLY.value,
                    usage_ledger.c.period_start < _utc(before),
                )
            )
            .order_by(usage_ledger.c.period_start.desc())
            .limit(1)
        )
        try:
            async with self._engine.begin() as conn:
                result = await conn.execute(query)
                value = result.scalar()
        except SQLAlchemyError as exc:
            raise LedgerError("ledger read failed", {"owner_id": owner_id}) from exc
        return None if value is None else int(value)

    @staticmethod
    def _row_to_usage(r: Any) -> UsageLedgerRow:
        """Convert a DB row mapping to a UsageLedgerRow."""
        updated_at = r.get("updated_at")
        return UsageLedgerRow(
            owner_kind=OwnerKind(r["owner_kind"]),
            owner_id=r["owner_id"],
            period_start=_utc(r["period_start"]),
            period_type=PeriodType(r["period_type"]),
            metrics=UsageMetrics(
                api_calls=int(r["api_calls"]),
                workflow_runs=int(r["workflow_runs"]),
                plugin_executions=int(r["plugin_executions"]),
                storage_used=int(r["storage_used"]),
                errors=int(r["errors"]),
            ),
            updated_at=_utc(updated_at) if isinstance(updated_at, datetime) else None,
        )
