"""Quota enforcement gate — allow / warn / deny decisions per resource.

Policy given ``would_be = current + amount``:

    UNLIMITED  always allowed
    SOFT_CAP   always allowed, warning once would_be > limit
    HARD_CAP   allowed while would_be <= limit
    RESERVED   same check as HARD_CAP, carved out of a shared pool

Unlimited ceilings (negative or absent) short-circuit to UNLIMITED whatever
the configured mode. When the current usage or the limit cannot be
determined the gate allows the action and reports the degradation.
"""

from __future__ import annotations

from quotaflow.core.constants import UNLIMITED
from quotaflow.core.exceptions import CounterStoreError, PlanLookupError, QuotaExceededError
from quotaflow.core.interfaces import CounterStore, ResourceCountSource
from quotaflow.core.logging import get_logger
from quotaflow.core.types import (
    AllocationMode,
    Decision,
    EffectiveLimit,
    LimitSource,
    Outcome,
    OwnerContext,
    ResourceKind,
    ResourceLimitSet,
    TrackingError,
    UsageMetric,
)
from quotaflow.quota.counters import gauge_key
from quotaflow.quota.limits import UNLIMITED_LIMITS
from quotaflow.quota.resolver import DEFAULT_LIMIT, LimitResolver
from quotaflow.quota.usage import UsageTracker

log = get_logger(__name__)

# Counted per day; the counter is shared with the usage tracker.
METERED: dict[ResourceKind, UsageMetric] = {
    ResourceKind.API_CALL: UsageMetric.API_CALLS,
}

# Ceilings on a single request (steps of one workflow); never counted.
PER_REQUEST: frozenset[ResourceKind] = frozenset({ResourceKind.WORKFLOW_STEP})

# Occurrence counts that go up on create and down on delete.
OCCURRENCE: frozenset[ResourceKind] = frozenset({
    ResourceKind.WORKFLOW,
    ResourceKind.PLUGIN,
    ResourceKind.GATEWAY,
    ResourceKind.DEPARTMENT,
    ResourceKind.MEMBER,
})


def apply_policy(
    resource: ResourceKind,
    current: int,
    amount: int,
    limit: EffectiveLimit,
) -> Decision:
    """Pure allocation-mode policy."""
    if limit.unlimited:
        return Decision(
            resource=resource,
            allowed=True,
            current=current,
            limit=UNLIMITED,
            mode=AllocationMode.UNLIMITED,
            source=limit.source,
        )

    would_be = current + amount
    exceeded = would_be > limit.limit

    if limit.mode == AllocationMode.SOFT_CAP:
        return Decision(
            resource=resource,
            allowed=True,
            current=current,
            limit=limit.limit,
            mode=limit.mode,
            source=limit.source,
            is_warning=exceeded,
            message=(
                f"Soft quota limit reached for {resource.value}: {would_be}/{limit.limit}"
                if exceeded else None
            ),
        )

    prefix = "Reserved quota" if limit.mode == AllocationMode.RESERVED else "Quota"
    return Decision(
        resource=resource,
        allowed=not exceeded,
        current=current,
        limit=limit.limit,
        mode=limit.mode,
        source=limit.source,
        message=f"{prefix} exceeded for {resource.value}: {would_be}/{limit.limit}" if exceeded else None,
    )


def fail_open_decision(resource: ResourceKind) -> Decision:
    return Decision(
        resource=resource,
        allowed=True,
        current=0,
        limit=UNLIMITED,
        mode=AllocationMode.UNLIMITED,
        source=LimitSource.PLAN,
        message="Quota tracking unavailable",
    )


class QuotaEnforcementGate:
    """Decides whether a resource-consuming action may proceed."""

    def __init__(
        self,
        resolver: LimitResolver,
        usage: UsageTracker,
        counts: ResourceCountSource | None = None,
        namespace: str = "quota",
    ) -> None:
        self._resolver = resolver
        self._usage = usage
        self._counts = counts
        self._namespace = namespace

    @property
    def resolver(self) -> LimitResolver:
        return self._resolver

    @property
    def _counters(self) -> CounterStore:
        return self._usage.counters

    def occurrence_key(self, owner: OwnerContext, resource: ResourceKind) -> str:
        return gauge_key(self._namespace, resource.value, owner.owner_kind, owner.owner_id)

    # ── Current Usage ────────────────────────────────────────────

    async def current_usage(self, owner: OwnerContext, resource: ResourceKind) -> int:
        """Usage the limit is compared against. Raises CounterStoreError."""
        if resource in PER_REQUEST:
            return 0
        if resource in METERED:
            return await self._usage.daily_count(owner, METERED[resource])
        if resource == ResourceKind.STORAGE:
            return await self._usage.storage_used(owner)

        if self._counts is not None:
            try:
                counted = await self._counts.count(owner, resource)
            except Exception as exc:
                log.warning(
                    "resource_count_unavailable",
                    owner_id=owner.owner_id,
                    resource=resource.value,
                    error=str(exc),
                )
                counted = None
            if counted is not None:
                return counted
        return await self._counters.get(self.occurrence_key(owner, resource)) or 0

    # ── Decisions ────────────────────────────────────────────────

    async def evaluate(
        self,
        owner: OwnerContext,
        resource: ResourceKind,
        amount: int = 1,
    ) -> Outcome[Decision]:
        """Non-mutating check that reports degradation separately from denial."""
        try:
            limit = await self._resolver.resolve(owner, resource)
            current = await self.current_usage(owner, resource)
        except (PlanLookupError, CounterStoreError) as exc:
            component = "limits" if isinstance(exc, PlanLookupError) else "counter_store"
            log.warning(
                "quota_check_degraded",
                user_id=owner.user_id,
                organization_id=owner.organization_id,
                resource=resource.value,
                component=component,
                error=str(exc),
            )
            return Outcome(fail_open_decision(resource), TrackingError(component, str(exc)))

        return Outcome(apply_policy(resource, current, amount, limit))

    async def check(self, owner: OwnerContext, resource: ResourceKind, amount: int = 1) -> Decision:
        return (await self.evaluate(owner, resource, amount)).value

    async def enforce_outcome(
        self,
        owner: OwnerContext,
        resource: ResourceKind,
        amount: int = 1,
    ) -> Outcome[Decision]:
        """Evaluate, raise on denial, otherwise consume ``amount``."""
        outcome = await self.evaluate(owner, resource, amount)
        decision = outcome.value

        if not decision.allowed:
            log.warning(
                "quota_enforcement_blocked",
                user_id=owner.user_id,
                organization_id=owner.organization_id,
                department_id=owner.department_id,
                resource=resource.value,
                current=decision.current,
                limit=decision.limit,
                mode=decision.mode.value,
                source=decision.source.value,
            )
            raise QuotaExceededError(resource.value, decision.current, decision.limit)

        if decision.is_warning:
            log.warning(
                "soft_quota_limit_reached",
                user_id=owner.user_id,
                resource=resource.value,
                current=decision.current,
                limit=decision.limit,
            )

        error = await self._consume(owner, resource, amount)
        return Outcome(decision, outcome.error or error)

    async def enforce(self, owner: OwnerContext, resource: ResourceKind, amount: int = 1) -> Decision:
        """Raises QuotaExceededError on a hard denial."""
        return (await self.enforce_outcome(owner, resource, amount)).value

    async def _consume(
        self,
        owner: OwnerContext,
        resource: ResourceKind,
        amount: int,
    ) -> TrackingError | None:
        if resource in PER_REQUEST or amount <= 0:
            return None
        if resource in METERED:
            return (await self._usage.record(owner, METERED[resource], amount)).error
        if resource == ResourceKind.STORAGE:
            return (await self._usage.track_storage_change(owner, amount)).error

        try:
            await self._counters.adjust_gauge(self.occurrence_key(owner, resource), amount)
        except CounterStoreError as exc:
            log.warning("occurrence_counter_unavailable", owner_id=owner.owner_id, resource=resource.value)
            return TrackingError("counter_store", str(exc))
        return None

    async def release(self, owner: OwnerContext, resource: ResourceKind, amount: int = 1) -> Outcome[int]:
        """Give back gauge capacity on deletion; clamped at zero.

        Period counters (api calls) are monotonic and are not released.
        """
        if resource in PER_REQUEST or resource in METERED:
            log.debug("release_ignored", resource=resource.value)
            return Outcome(0)
        if resource == ResourceKind.STORAGE:
            return await self._usage.track_storage_change(owner, -amount)

        try:
            value = await self._counters.adjust_gauge(self.occurrence_key(owner, resource), -amount)
        except CounterStoreError as exc:
            log.warning("occurrence_counter_unavailable", owner_id=owner.owner_id, resource=resource.value)
            return Outcome(0, TrackingError("counter_store", str(exc)))
        return Outcome(value)

    # ── Limits for Display ───────────────────────────────────────

    async def effective_limits(self, owner: OwnerContext) -> Outcome[dict[ResourceKind, EffectiveLimit]]:
        """Every resource's effective limit, keyed by kind."""
        try:
            return Outcome(await self._resolver.resolve_all(owner))
        except PlanLookupError as exc:
            log.warning("effective_limits_degraded", user_id=owner.user_id, error=str(exc))
            return Outcome(
                {resource: DEFAULT_LIMIT for resource in ResourceKind},
                TrackingError("limits", str(exc)),
            )

    async def resolve_limits(self, owner: OwnerContext) -> Outcome[ResourceLimitSet]:
        try:
            return Outcome(await self._resolver.resolve_limit_set(owner))
        except PlanLookupError as exc:
            log.warning("limit_set_degraded", user_id=owner.user_id, error=str(exc))
            return Outcome(UNLIMITED_LIMITS, TrackingError("limits", str(exc)))
