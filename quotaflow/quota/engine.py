"""Quota engine facade — the surface request handlers and the scheduler call."""

from __future__ import annotations

from collections.abc import Callable
from datetime import datetime
from functools import partial

from config.settings import Settings, get_settings
from quotaflow.core.constants import UNLIMITED
from quotaflow.core.exceptions import CounterStoreError, PlanLookupError
from quotaflow.core.interfaces import (
    AllocationRepository,
    CounterStore,
    PlanDirectory,
    ResourceCountSource,
    UsageLedger,
)
from quotaflow.core.logging import get_logger
from quotaflow.core.types import (
    AllocationMode,
    Decision,
    EffectiveLimit,
    ExecutionCount,
    ExecutionResult,
    OwnerContext,
    Outcome,
    PeriodType,
    ResourceKind,
    ResourceLimitSet,
    UsageSnapshot,
    UsageSummary,
)
from quotaflow.quota.aggregation import AggregationPipeline
from quotaflow.quota.allocations import AllocationService
from quotaflow.quota.cache import LimitLookupCache
from quotaflow.quota.execution import ExecutionTracker, calc_percentage, warning_level
from quotaflow.quota.gate import QuotaEnforcementGate
from quotaflow.quota.periods import local_now
from quotaflow.quota.resolver import LimitResolver
from quotaflow.quota.usage import UsageTracker

log = get_logger(__name__)


def snapshot_for(resource: ResourceKind, current: int, limit: EffectiveLimit) -> UsageSnapshot:
    ceiling = None if limit.unlimited else limit.limit
    return UsageSnapshot(
        resource=resource,
        current=current,
        limit=UNLIMITED if ceiling is None else ceiling,
        mode=AllocationMode.UNLIMITED if ceiling is None else limit.mode,
        source=limit.source,
        percentage=calc_percentage(current, ceiling),
        warning_level=warning_level(current, ceiling),
    )


class QuotaEngine:
    """Wires the quota services together over a set of collaborators."""

    def __init__(
        self,
        resolver: LimitResolver,
        usage: UsageTracker,
        gate: QuotaEnforcementGate,
        executions: ExecutionTracker,
        aggregation: AggregationPipeline,
        allocations: AllocationService,
    ) -> None:
        self.resolver = resolver
        self.usage = usage
        self.gate = gate
        self.executions = executions
        self.aggregation = aggregation
        self.allocations = allocations

    @classmethod
    def create(
        cls,
        plans: PlanDirectory,
        allocations: AllocationRepository,
        counters: CounterStore,
        ledger: UsageLedger,
        counts: ResourceCountSource | None = None,
        namespace: str = "quota",
        clock: Callable[[], datetime] | None = None,
        cache: LimitLookupCache | None = None,
        ledger_timeout: float = 5.0,
        execution_ttl_grace: int = 86400,
    ) -> QuotaEngine:
        clock = clock or local_now
        cache = cache or LimitLookupCache()
        resolver = LimitResolver(plans, allocations, cache)
        usage = UsageTracker(counters, ledger, namespace=namespace, clock=clock, ledger_timeout=ledger_timeout)
        return cls(
            resolver=resolver,
            usage=usage,
            gate=QuotaEnforcementGate(resolver, usage, counts=counts, namespace=namespace),
            executions=ExecutionTracker(
                counters, resolver, namespace=namespace, clock=clock, ttl_grace_seconds=execution_ttl_grace,
            ),
            aggregation=AggregationPipeline(usage, clock=clock),
            allocations=AllocationService(plans, allocations, cache),
        )

    # ── Limits ───────────────────────────────────────────────────

    async def resolve_limits(self, owner: OwnerContext) -> ResourceLimitSet:
        return (await self.gate.resolve_limits(owner)).value

    async def effective_limits(self, owner: OwnerContext) -> dict[ResourceKind, EffectiveLimit]:
        return (await self.gate.effective_limits(owner)).value

    # ── Enforcement ──────────────────────────────────────────────

    async def check(self, owner: OwnerContext, resource: ResourceKind, amount: int = 1) -> Decision:
        return await self.gate.check(owner, resource, amount)

    async def enforce(self, owner: OwnerContext, resource: ResourceKind, amount: int = 1) -> Decision:
        return await self.gate.enforce(owner, resource, amount)

    async def release(self, owner: OwnerContext, resource: ResourceKind, amount: int = 1) -> int:
        return (await self.gate.release(owner, resource, amount)).value

    async def track_execution(self, owner: OwnerContext) -> ExecutionResult:
        return await self.executions.track(owner)

    # ── Dashboards ───────────────────────────────────────────────

    async def get_usage_summary(self, owner: OwnerContext) -> UsageSummary:
        limits = await self.gate.effective_limits(owner)
        degraded = limits.degraded

        per_resource: dict[ResourceKind, UsageSnapshot] = {}
        for resource, limit in limits.value.items():
            try:
                current = await self.gate.current_usage(owner, resource)
            except CounterStoreError as exc:
                log.warning("usage_summary_degraded", owner_id=owner.owner_id, resource=resource.value, error=str(exc))
                current = 0
                degraded = True
            per_resource[resource] = snapshot_for(resource, current, limit)

        executions: ExecutionCount | None
        try:
            executions = await self.executions.execution_count(owner)
        except (CounterStoreError, PlanLookupError) as exc:
            log.warning("execution_summary_degraded", owner_id=owner.owner_id, error=str(exc))
            executions = None
            degraded = True

        today = await self.usage.real_time_usage(owner)
        return UsageSummary(
            owner_kind=owner.owner_kind,
            owner_id=owner.owner_id,
            per_resource=per_resource,
            executions=executions,
            today=today.value,
            degraded=degraded or today.degraded,
        )

    # ── Scheduled Jobs ───────────────────────────────────────────

    async def aggregate_hourly(self) -> int:
        return await self.aggregation.aggregate_hourly()

    async def aggregate_daily(self) -> int:
        return await self.aggregation.aggregate_daily()

    async def aggregate_weekly(self) -> int:
        return await self.aggregation.aggregate_weekly()

    async def aggregate_monthly(self) -> int:
        return await self.aggregation.aggregate_monthly()

    async def run_aggregation(self, period_type: PeriodType) -> Outcome[int]:
        """Run the job that produces ``period_type`` ledger rows."""
        if period_type == PeriodType.HOURLY:
            return await self.aggregation.run_hourly()
        return await self.aggregation.run_rollup(period_type)

    async def close(self) -> None:
        """Flush pending ledger writes and release the counter store."""
        await self.usage.drain()
        await self.usage.counters.close()


async def build_engine(settings: Settings | None = None) -> QuotaEngine:
    """Production wiring: SQL plan/allocation/ledger storage plus the configured counters."""
    from quotaflow.data.accounts import SqlAllocationRepository, SqlPlanDirectory
    from quotaflow.data.cache import RedisCounterStore
    from quotaflow.data.db import get_engine
    from quotaflow.data.ledger import SqlUsageLedger
    from quotaflow.quota.counters import InMemoryCounterStore

    settings = settings or get_settings()
    db = await get_engine()

    counters: CounterStore
    if settings.counter_backend == "memory":
        counters = InMemoryCounterStore()
    else:
        counters = RedisCounterStore(settings.redis_url.get_secret_value())

    engine = QuotaEngine.create(
        plans=SqlPlanDirectory(db),
        allocations=SqlAllocationRepository(db),
        counters=counters,
        ledger=SqlUsageLedger(db),
        namespace=settings.counter_key_prefix,
        clock=partial(local_now, settings.quota_timezone),
        cache=LimitLookupCache(
            ttl_seconds=settings.limit_cache_ttl_seconds,
            max_entries=settings.limit_cache_max_entries,
        ),
        ledger_timeout=settings.ledger_write_timeout_seconds,
        execution_ttl_grace=settings.execution_ttl_grace_seconds,
    )
    log.info(
        "quota_engine_built",
        counter_backend=settings.counter_backend,
        timezone=settings.quota_timezone,
    )
    return engine
