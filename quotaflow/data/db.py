"""PostgreSQL connection and schema definitions."""

from __future__ import annotations

from typing import Any

from sqlalchemy import (
    BigInteger,
    Boolean,
    Column,
    DateTime,
    Integer,
    MetaData,
    PrimaryKeyConstraint,
    String,
    Table,
    UniqueConstraint,
    func,
)
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

from config.settings import get_settings
from quotaflow.core.logging import get_logger

log = get_logger(__name__)

metadata = MetaData()

# ── Tables ───────────────────────────────────────────────────────

usage_ledger = Table(
    "usage_ledger",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("owner_kind", String(16), nullable=False),
    Column("owner_id", String, nullable=False, index=True),
    Column("period_start", DateTime(timezone=True), nullable=False, index=True),
    Column("period_type", String(16), nullable=False),
    Column("api_calls", BigInteger, nullable=False, default=0),
    Column("workflow_runs", BigInteger, nullable=False, default=0),
    Column("plugin_executions", BigInteger, nullable=False, default=0),
    Column("storage_used", BigInteger, nullable=False, default=0),
    Column("errors", BigInteger, nullable=False, default=0),
    Column("created_at", DateTime(timezone=True), nullable=False, server_default=func.now()),
    Column("updated_at", DateTime(timezone=True), nullable=False, server_default=func.now()),
    UniqueConstraint("owner_kind", "owner_id", "period_start", "period_type", name="uq_usage_ledger_period"),
)

_ALLOCATION_LIMIT_COLUMNS = (
    "max_workflows",
    "max_plugins",
    "max_api_calls",
    "max_storage",
    "max_steps",
)


def _limit_columns() -> list[Column[Any]]:
    return [Column(name, Integer, nullable=True) for name in _ALLOCATION_LIMIT_COLUMNS]


department_allocations = Table(
    "department_allocations",
    metadata,
    Column("department_id", String, primary_key=True),
    Column("organization_id", String, nullable=False, index=True),
    *_limit_columns(),
    Column("alloc_mode", String(16), nullable=False, default="SOFT_CAP"),
    Column("set_by", String, nullable=True),
    Column("created_at", DateTime(timezone=True), nullable=False),
    Column("updated_at", DateTime(timezone=True), nullable=False),
)

member_allocations = Table(
    "member_allocations",
    metadata,
    Column("user_id", String, nullable=False),
    Column("department_id", String, nullable=False, index=True),
    Column("organization_id", String, nullable=False, index=True),
    *_limit_columns(),
    Column("alloc_mode", String(16), nullable=False, default="SOFT_CAP"),
    Column("set_by", String, nullable=True),
    Column("created_at", DateTime(timezone=True), nullable=False),
    Column("updated_at", DateTime(timezone=True), nullable=False),
    PrimaryKeyConstraint("user_id", "department_id", name="pk_member_allocations"),
)

organizations = Table(
    "organizations",
    metadata,
    Column("organization_id", String, primary_key=True),
    Column("plan", String(32), nullable=False, default="ORG_FREE"),
)

accounts = Table(
    "accounts",
    metadata,
    Column("user_id", String, primary_key=True),
    Column("plan", String(32), nullable=False, default="FREE"),
    Column("execution_mode", String(16), nullable=True),
    Column("workspace_addon", Boolean, nullable=False, default=False),
)


# ── Engine ───────────────────────────────────────────────────────

_engine: AsyncEngine | None = None


async def get_engine() -> AsyncEngine:
    """Get or create the async database engine (singleton)."""
    global _engine  # noqa: PLW0603
    if _engine is None:
        settings = get_settings()
        db_url = settings.database_url.get_secret_value()
        options: dict[str, Any] = {"echo": False}
        if not db_url.startswith("sqlite"):
            options.update(pool_size=10, max_overflow=20)
        _engine = create_async_engine(db_url, **options)
        log.info("database_engine_created", host=db_url.split("@")[-1].split("?")[0])
    return _engine


async def init_schema(engine: AsyncEngine | None = None) -> None:
    """Create all tables."""
    engine = engine or await get_engine()

    async with engine.begin() as conn:
        await conn.run_sync(metadata.create_all)

    log.info("schema_initialized")


async def close_engine() -> None:
    """Dispose the database engine."""
    global _engine  # noqa: PLW0603
    if _engine is not None:
        await _engine.dispose()
        _engine = None
        log.info("database_engine_closed")
