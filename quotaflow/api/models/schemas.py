"""Pydantic V2 request/response schemas for the quota API."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, Field

from quotaflow.core.types import (
    AllocationMode,
    LimitSource,
    PeriodType,
    ResourceKind,
    WarningLevel,
)


# ── Limits ────────────────────────────────────────────────────────

class LimitSetOut(BaseModel):
    """-1 = unlimited, null = not set."""

    max_workflows: int | None = None
    max_plugins: int | None = None
    max_api_calls: int | None = None
    max_storage: int | None = None
    max_steps: int | None = None
    max_gateways: int | None = None
    max_departments: int | None = None
    max_members: int | None = None


class EffectiveLimitOut(BaseModel):
    resource: ResourceKind
    limit: int
    mode: AllocationMode
    source: LimitSource


class LimitsResponse(BaseModel):
    owner_kind: str
    owner_id: str
    limits: LimitSetOut
    effective: list[EffectiveLimitOut]


# ── Enforcement ───────────────────────────────────────────────────

class ConsumeRequest(BaseModel):
    resource: ResourceKind
    amount: int = Field(default=1, ge=1)


class DecisionOut(BaseModel):
    resource: ResourceKind
    allowed: bool
    current: int
    limit: int
    mode: AllocationMode
    source: LimitSource
    is_warning: bool = False
    message: str | None = None
    degraded: bool = False


class ReleaseOut(BaseModel):
    resource: ResourceKind
    current: int
    degraded: bool = False


# ── Executions ────────────────────────────────────────────────────

class ExecutionResultOut(BaseModel):
    success: bool
    new_count: int
    warning_level: WarningLevel
    message: str | None = None


class ExecutionCountOut(BaseModel):
    current: int
    limit: int | None
    percentage: int
    period_start: datetime
    period_end: datetime
    metered: bool


class ExecutionStatusOut(ExecutionCountOut):
    allowed: bool
    warning_level: WarningLevel
    message: str | None = None
    resets_at: datetime
    degraded: bool = False


# ── Usage ─────────────────────────────────────────────────────────

class UsageMetricsOut(BaseModel):
    api_calls: int = 0
    workflow_runs: int = 0
    plugin_executions: int = 0
    storage_used: int = 0
    errors: int = 0


class UsageSnapshotOut(BaseModel):
    resource: ResourceKind
    current: int
    limit: int
    mode: AllocationMode
    source: LimitSource
    percentage: int
    warning_level: WarningLevel


class UsageSummaryOut(BaseModel):
    owner_kind: str
    owner_id: str
    resources: list[UsageSnapshotOut]
    today: UsageMetricsOut
    executions: ExecutionCountOut | None = None
    degraded: bool = False


class UsageHistoryRowOut(BaseModel):
    period_start: datetime
    period_type: PeriodType
    metrics: UsageMetricsOut


class UsageHistoryOut(BaseModel):
    owner_kind: str
    owner_id: str
    period_type: PeriodType
    rows: list[UsageHistoryRowOut] = Field(default_factory=list)


# ── Aggregation ───────────────────────────────────────────────────

class AggregationOut(BaseModel):
    job: str
    rows: int
    degraded: bool = False


# ── Allocations ───────────────────────────────────────────────────

class AllocationIn(BaseModel):
    """Request body for setting a department or member allocation."""

    max_workflows: int | None = Field(default=None, ge=-1)
    max_plugins: int | None = Field(default=None, ge=-1)
    max_api_calls: int | None = Field(default=None, ge=-1)
    max_storage: int | None = Field(default=None, ge=-1)
    max_steps: int | None = Field(default=None, ge=-1)
    mode: AllocationMode = AllocationMode.SOFT_CAP


class AllocationOut(BaseModel):
    scope: str
    organization_id: str
    department_id: str
    user_id: str | None = None
    limits: LimitSetOut
    mode: AllocationMode
    set_by: str | None = None
    created_at: datetime
    updated_at: datetime


class AllocationSummaryOut(BaseModel):
    owner_id: str
    pool: LimitSetOut
    allocated: LimitSetOut
    unallocated: LimitSetOut
    allocations: list[AllocationOut] = Field(default_factory=list)


# ── Generic ───────────────────────────────────────────────────────

class HealthResponse(BaseModel):
    status: str = "ok"
    version: str = "0.1.0"
    environment: str = "dev"
    counter_store: str = "unknown"


class ErrorResponse(BaseModel):
    detail: str
