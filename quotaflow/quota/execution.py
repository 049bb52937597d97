"""Execution tracker — monthly execution allowance with a warning ladder.

    none < warning (>= 80%) < critical (>= 95%) < blocked (>= 100%)

Metered (serverless) accounts are blocked once the month's count reaches the
plan limit; nothing is counted for a blocked attempt. Workspace accounts and
organizations are counted for analytics but never blocked. Any failure in
the tracking path fails open.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime

from quotaflow.core.constants import (
    BLOCKED_THRESHOLD_PCT,
    CRITICAL_THRESHOLD_PCT,
    DEFAULT_EXECUTION_LIMIT,
    MONTHLY_TTL_GRACE,
    WARNING_THRESHOLD_PCT,
)
from quotaflow.core.exceptions import CounterStoreError, PlanLookupError
from quotaflow.core.interfaces import CounterStore
from quotaflow.core.logging import get_logger
from quotaflow.core.types import (
    CanExecuteResult,
    ExecutionCount,
    ExecutionMode,
    ExecutionResult,
    OwnerContext,
    Outcome,
    PeriodType,
    TrackingError,
    WarningLevel,
)
from quotaflow.quota.counters import counter_expiry, execution_key, increment_for_period
from quotaflow.quota.periods import local_now, next_period_start, period_end, period_start
from quotaflow.quota.resolver import LimitResolver

log = get_logger(__name__)


def warning_level(current: int, limit: int | None) -> WarningLevel:
    """Ladder position of ``current`` against ``limit``."""
    if limit is None or limit < 0:
        return WarningLevel.NONE
    if limit == 0:
        return WarningLevel.BLOCKED

    percentage = current / limit * 100
    if percentage >= BLOCKED_THRESHOLD_PCT:
        return WarningLevel.BLOCKED
    if percentage >= CRITICAL_THRESHOLD_PCT:
        return WarningLevel.CRITICAL
    if percentage >= WARNING_THRESHOLD_PCT:
        return WarningLevel.WARNING
    return WarningLevel.NONE


def calc_percentage(current: int, limit: int | None) -> int:
    """Whole percent used, capped at 100; 0 for unlimited or zero limits."""
    if limit is None or limit <= 0:
        return 0
    return min(100, round(current / limit * 100))


def preview(count: ExecutionCount) -> CanExecuteResult:
    """Whether one more execution would be allowed at ``count``."""
    if not count.metered or count.limit is None:
        return CanExecuteResult(
            allowed=True,
            warning_level=WarningLevel.NONE,
            current=count.current,
            limit=None,
        )

    allowed = count.current < count.limit
    return CanExecuteResult(
        allowed=allowed,
        warning_level=warning_level(count.current, count.limit),
        current=count.current,
        limit=count.limit,
        reason=None if allowed else "limit_reached",
        message=None if allowed else f"Limit reached ({count.current}/{count.limit})",
    )


@dataclass(frozen=True)
class ExecutionAllowance:
    limit: int | None
    metered: bool


class ExecutionTracker:
    """Counts monthly executions per owner."""

    def __init__(
        self,
        counters: CounterStore,
        resolver: LimitResolver,
        namespace: str = "quota",
        clock: Callable[[], datetime] | None = None,
        ttl_grace_seconds: int = MONTHLY_TTL_GRACE,
    ) -> None:
        self._counters = counters
        self._resolver = resolver
        self._namespace = namespace
        self._clock = clock or local_now
        self._ttl_grace = ttl_grace_seconds

    def key_for(self, owner: OwnerContext, now: datetime | None = None) -> str:
        return execution_key(self._namespace, owner.owner_kind, owner.owner_id, now or self._clock())

    async def allowance(self, owner: OwnerContext) -> ExecutionAllowance:
        """Monthly limit and whether it is enforced. Raises PlanLookupError."""
        if owner.organization_id:
            organization = await self._resolver.organization_plan(owner.organization_id)
            if organization is not None:
                return ExecutionAllowance(limit=None, metered=False)

        account = await self._resolver.account_plan(owner.user_id)
        if account is None:
            return ExecutionAllowance(limit=DEFAULT_EXECUTION_LIMIT, metered=True)

        metered = account.execution_mode == ExecutionMode.SERVERLESS
        return ExecutionAllowance(
            limit=account.executions_per_month if metered else None,
            metered=metered,
        )

    async def execution_count(self, owner: OwnerContext) -> ExecutionCount:
        """Current month's count. Raises CounterStoreError / PlanLookupError."""
        now = self._clock()
        allowance = await self.allowance(owner)
        current = await self._counters.get(self.key_for(owner, now)) or 0
        return ExecutionCount(
            current=current,
            limit=allowance.limit,
            percentage=calc_percentage(current, allowance.limit),
            period_start=period_start(PeriodType.MONTHLY, now),
            period_end=period_end(PeriodType.MONTHLY, now),
            metered=allowance.metered,
        )

    async def _increment(self, owner: OwnerContext) -> int:
        now = self._clock()
        return await increment_for_period(
            self._counters,
            self.key_for(owner, now),
            1,
            counter_expiry(PeriodType.MONTHLY, now, self._ttl_grace),
        )

    async def track_outcome(self, owner: OwnerContext) -> Outcome[ExecutionResult]:
        try:
            count = await self.execution_count(owner)

            if not count.metered:
                new_count = await self._increment(owner)
                return Outcome(ExecutionResult(success=True, new_count=new_count))

            if count.limit is not None and count.current >= count.limit:
                log.warning(
                    "execution_blocked",
                    user_id=owner.user_id,
                    organization_id=owner.organization_id,
                    current=count.current,
                    limit=count.limit,
                )
                return Outcome(ExecutionResult(
                    success=False,
                    new_count=count.current,
                    warning_level=WarningLevel.BLOCKED,
                    message=f"Execution limit reached ({count.current}/{count.limit})",
                ))

            new_count = await self._increment(owner)
        except (CounterStoreError, PlanLookupError) as exc:
            log.error("execution_tracking_failed", user_id=owner.user_id, error=str(exc))
            component = "limits" if isinstance(exc, PlanLookupError) else "counter_store"
            return Outcome(
                ExecutionResult(success=True, new_count=0),
                TrackingError(component, str(exc)),
            )

        level = warning_level(new_count, count.limit)
        if level == WarningLevel.CRITICAL:
            log.warning("execution_limit_critical", user_id=owner.user_id, current=new_count, limit=count.limit)
        elif level == WarningLevel.WARNING:
            log.info("execution_limit_warning", user_id=owner.user_id, current=new_count, limit=count.limit)

        return Outcome(ExecutionResult(
            success=True,
            new_count=new_count,
            warning_level=level,
            message=(
                f"{calc_percentage(new_count, count.limit)}% of monthly limit used"
                if level != WarningLevel.NONE else None
            ),
        ))

    async def track(self, owner: OwnerContext) -> ExecutionResult:
        """Count one execution; blocked only for metered accounts at their limit."""
        return (await self.track_outcome(owner)).value

    async def status(self, owner: OwnerContext) -> Outcome[ExecutionCount]:
        """``execution_count`` that falls back to zero usage instead of raising."""
        try:
            return Outcome(await self.execution_count(owner))
        except (CounterStoreError, PlanLookupError) as exc:
            log.warning("execution_status_degraded", user_id=owner.user_id, error=str(exc))
            component = "limits" if isinstance(exc, PlanLookupError) else "counter_store"
            now = self._clock()
            fallback = ExecutionCount(
                current=0,
                limit=None,
                percentage=0,
                period_start=period_start(PeriodType.MONTHLY, now),
                period_end=period_end(PeriodType.MONTHLY, now),
                metered=False,
            )
            return Outcome(fallback, TrackingError(component, str(exc)))

    async def can_execute(self, owner: OwnerContext) -> CanExecuteResult:
        """Non-mutating preview of ``track``."""
        return preview((await self.status(owner)).value)

    def reset_time(self) -> datetime:
        """When the monthly count starts over."""
        return next_period_start(PeriodType.MONTHLY, self._clock())
