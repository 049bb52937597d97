"""Quota endpoints — limits, enforcement, executions and usage for the calling owner."""

from __future__ import annotations

from datetime import datetime, timedelta

from fastapi import APIRouter, Depends, HTTPException, Query, status

from quotaflow.api.deps import get_owner, get_quota_engine, require_admin
from quotaflow.api.models.schemas import (
    AggregationOut,
    ConsumeRequest,
    DecisionOut,
    EffectiveLimitOut,
    ExecutionCountOut,
    ExecutionResultOut,
    ExecutionStatusOut,
    LimitSetOut,
    LimitsResponse,
    ReleaseOut,
    UsageHistoryOut,
    UsageHistoryRowOut,
    UsageMetricsOut,
    UsageSnapshotOut,
    UsageSummaryOut,
)
from quotaflow.core.exceptions import LedgerError
from quotaflow.core.logging import get_logger
from quotaflow.core.types import (
    Decision,
    ExecutionCount,
    OwnerContext,
    PeriodType,
    ResourceLimitSet,
    UsageMetrics,
)
from quotaflow.quota.engine import QuotaEngine
from quotaflow.quota.execution import preview

log = get_logger(__name__)

router = APIRouter(prefix="/quota", tags=["quota"])

_MAX_HISTORY = timedelta(days=366)


def limit_set_out(limits: ResourceLimitSet) -> LimitSetOut:
    return LimitSetOut(**limits.to_dict())


def metrics_out(metrics: UsageMetrics) -> UsageMetricsOut:
    return UsageMetricsOut(**metrics.to_dict())


def decision_out(decision: Decision, degraded: bool = False) -> DecisionOut:
    return DecisionOut(
        resource=decision.resource,
        allowed=decision.allowed,
        current=decision.current,
        limit=decision.limit,
        mode=decision.mode,
        source=decision.source,
        is_warning=decision.is_warning,
        message=decision.message,
        degraded=degraded,
    )


def execution_count_out(count: ExecutionCount) -> ExecutionCountOut:
    return ExecutionCountOut(
        current=count.current,
        limit=count.limit,
        percentage=count.percentage,
        period_start=count.period_start,
        period_end=count.period_end,
        metered=count.metered,
    )


# ── Limits ────────────────────────────────────────────────────────


@router.get("/limits", response_model=LimitsResponse)
async def get_limits(
    owner: OwnerContext = Depends(get_owner),
    engine: QuotaEngine = Depends(get_quota_engine),
) -> LimitsResponse:
    """Merged limit set plus the effective limit and its source per resource."""
    limits = await engine.resolve_limits(owner)
    effective = await engine.effective_limits(owner)
    return LimitsResponse(
        owner_kind=owner.owner_kind.value,
        owner_id=owner.owner_id,
        limits=limit_set_out(limits),
        effective=[
            EffectiveLimitOut(resource=resource, limit=lim.limit, mode=lim.mode, source=lim.source)
            for resource, lim in effective.items()
        ],
    )


# ── Enforcement ───────────────────────────────────────────────────


@router.post("/check", response_model=DecisionOut)
async def check_quota(
    body: ConsumeRequest,
    owner: OwnerContext = Depends(get_owner),
    engine: QuotaEngine = Depends(get_quota_engine),
) -> DecisionOut:
    """Evaluate a request without consuming anything."""
    outcome = await engine.gate.evaluate(owner, body.resource, body.amount)
    return decision_out(outcome.value, outcome.degraded)


@router.post("/enforce", response_model=DecisionOut)
async def enforce_quota(
    body: ConsumeRequest,
    owner: OwnerContext = Depends(get_owner),
    engine: QuotaEngine = Depends(get_quota_engine),
) -> DecisionOut:
    """Consume ``amount`` units or fail with 403 when the quota denies it."""
    outcome = await engine.gate.enforce_outcome(owner, body.resource, body.amount)
    return decision_out(outcome.value, outcome.degraded)


@router.post("/release", response_model=ReleaseOut)
async def release_quota(
    body: ConsumeRequest,
    owner: OwnerContext = Depends(get_owner),
    engine: QuotaEngine = Depends(get_quota_engine),
) -> ReleaseOut:
    """Give back units of an occurrence resource (a workflow was deleted, ...)."""
    outcome = await engine.gate.release(owner, body.resource, body.amount)
    return ReleaseOut(resource=body.resource, current=outcome.value, degraded=outcome.degraded)


# ── Executions ────────────────────────────────────────────────────


@router.get("/executions", response_model=ExecutionStatusOut)
async def get_execution_status(
    owner: OwnerContext = Depends(get_owner),
    engine: QuotaEngine = Depends(get_quota_engine),
) -> ExecutionStatusOut:
    """Monthly execution count and whether the next execution would be allowed."""
    outcome = await engine.executions.status(owner)
    check = preview(outcome.value)
    return ExecutionStatusOut(
        **execution_count_out(outcome.value).model_dump(),
        allowed=check.allowed,
        warning_level=check.warning_level,
        message=check.message,
        resets_at=engine.executions.reset_time(),
        degraded=outcome.degraded,
    )


@router.post("/executions", response_model=ExecutionResultOut)
async def track_execution(
    owner: OwnerContext = Depends(get_owner),
    engine: QuotaEngine = Depends(get_quota_engine),
) -> ExecutionResultOut:
    """Count one execution. ``success`` is false once a metered account is blocked."""
    result = await engine.track_execution(owner)
    return ExecutionResultOut(
        success=result.success,
        new_count=result.new_count,
        warning_level=result.warning_level,
        message=result.message,
    )


# ── Usage ─────────────────────────────────────────────────────────


@router.get("/usage", response_model=UsageSummaryOut)
async def get_usage_summary(
    owner: OwnerContext = Depends(get_owner),
    engine: QuotaEngine = Depends(get_quota_engine),
) -> UsageSummaryOut:
    """Dashboard view: current usage against every effective limit."""
    summary = await engine.get_usage_summary(owner)
    return UsageSummaryOut(
        owner_kind=summary.owner_kind.value,
        owner_id=summary.owner_id,
        resources=[
            UsageSnapshotOut(
                resource=snap.resource,
                current=snap.current,
                limit=snap.limit,
                mode=snap.mode,
                source=snap.source,
                percentage=snap.percentage,
                warning_level=snap.warning_level,
            )
            for snap in summary.per_resource.values()
        ],
        today=metrics_out(summary.today),
        executions=execution_count_out(summary.executions) if summary.executions else None,
        degraded=summary.degraded,
    )


@router.get("/usage/history", response_model=UsageHistoryOut)
async def get_usage_history(
    start: datetime,
    end: datetime,
    period_type: PeriodType = Query(default=PeriodType.DAILY),
    owner: OwnerContext = Depends(get_owner),
    engine: QuotaEngine = Depends(get_quota_engine),
) -> UsageHistoryOut:
    """Ledger rows in ``[start, end)`` for the calling owner."""
    if start.tzinfo is None or end.tzinfo is None:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail="start and end must carry a timezone offset",
        )
    if end <= start or end - start > _MAX_HISTORY:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail="end must be after start and within one year of it",
        )

    try:
        rows = await engine.usage.usage_history(owner, period_type, start, end)
    except LedgerError as exc:
        log.error("usage_history_failed", owner_id=owner.owner_id, error=str(exc))
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Usage history temporarily unavailable",
        ) from exc

    return UsageHistoryOut(
        owner_kind=owner.owner_kind.value,
        owner_id=owner.owner_id,
        period_type=period_type,
        rows=[
            UsageHistoryRowOut(
                period_start=row.period_start,
                period_type=row.period_type,
                metrics=metrics_out(row.metrics),
            )
            for row in rows
        ],
    )


# ── Scheduled Jobs ────────────────────────────────────────────────


@router.post("/aggregate/{period_type}", response_model=AggregationOut)
async def run_aggregation(
    period_type: PeriodType,
    _actor: str = Depends(require_admin),
    engine: QuotaEngine = Depends(get_quota_engine),
) -> AggregationOut:
    """Trigger one rollup job; meant for the external scheduler."""
    outcome = await engine.run_aggregation(period_type)
    return AggregationOut(job=period_type.value, rows=outcome.value, degraded=outcome.degraded)
