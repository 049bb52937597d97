"""Limit resolver — effective ceiling per (owner, resource).

Precedence, first explicitly set value wins:

    member allocation -> department allocation -> organization plan (SOFT_CAP)
    -> personal plan (HARD_CAP) -> unlimited default
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass
from typing import TypeVar

from quotaflow.core.constants import UNLIMITED
from quotaflow.core.exceptions import PlanLookupError
from quotaflow.core.interfaces import AllocationRepository, PlanDirectory
from quotaflow.core.logging import get_logger
from quotaflow.core.types import (
    AccountPlan,
    Allocation,
    AllocationMode,
    EffectiveLimit,
    LimitSource,
    OrganizationPlan,
    OwnerContext,
    ResourceKind,
    ResourceLimitSet,
)
from quotaflow.quota.cache import LimitLookupCache
from quotaflow.quota.limits import (
    UNLIMITED_LIMITS,
    is_overridable,
    limit_for,
    merge_chain,
)

log = get_logger(__name__)

V = TypeVar("V")

DEFAULT_LIMIT = EffectiveLimit(limit=UNLIMITED, mode=AllocationMode.UNLIMITED, source=LimitSource.PLAN)

_PLAN_LEVELS = ("organization", "account")


@dataclass(frozen=True)
class ResolvedConfig:
    """Everything the precedence chain can draw from for one owner."""

    member: Allocation | None = None
    department: Allocation | None = None
    organization: OrganizationPlan | None = None
    account: AccountPlan | None = None


def _from_allocation(
    allocation: Allocation | None,
    resource: ResourceKind,
    source: LimitSource,
) -> EffectiveLimit | None:
    if allocation is None or not is_overridable(resource):
        return None
    value = limit_for(allocation.limits, resource)
    if value is None:
        return None
    return EffectiveLimit(limit=value, mode=allocation.mode, source=source)


def _from_organization(plan: OrganizationPlan | None, resource: ResourceKind) -> EffectiveLimit | None:
    if plan is None:
        return None
    value = limit_for(plan.limits, resource)
    return EffectiveLimit(
        limit=UNLIMITED if value is None else value,
        mode=AllocationMode.SOFT_CAP,
        source=LimitSource.ORGANIZATION,
    )


def _from_account(plan: AccountPlan | None, resource: ResourceKind) -> EffectiveLimit | None:
    if plan is None:
        return None
    value = limit_for(plan.limits, resource)
    return EffectiveLimit(
        limit=UNLIMITED if value is None else value,
        mode=AllocationMode.HARD_CAP,
        source=LimitSource.PLAN,
    )


_CHAIN: tuple[tuple[str, Callable[[ResolvedConfig, ResourceKind], EffectiveLimit | None]], ...] = (
    ("member", lambda c, r: _from_allocation(c.member, r, LimitSource.MEMBER)),
    ("department", lambda c, r: _from_allocation(c.department, r, LimitSource.DEPARTMENT)),
    ("organization", lambda c, r: _from_organization(c.organization, r)),
    ("account", lambda c, r: _from_account(c.account, r)),
)


def pick_limit(
    config: ResolvedConfig,
    resource: ResourceKind,
    failures: Mapping[str, PlanLookupError] | None = None,
) -> EffectiveLimit:
    """Apply the precedence chain to already-fetched configuration.

    ``failures`` maps levels whose lookup failed to the error. One is raised
    only when the chain reaches that level for ``resource``; allocation levels
    are never reached for kinds that cannot be overridden.
    """
    failures = failures or {}
    for level, pick in _CHAIN:
        failure = failures.get(level)
        if failure is not None and (level in _PLAN_LEVELS or is_overridable(resource)):
            raise failure
        found = pick(config, resource)
        if found is not None:
            return found
    return DEFAULT_LIMIT


class LimitResolver:
    """Resolves effective limits from plan and allocation collaborators."""

    def __init__(
        self,
        plans: PlanDirectory,
        allocations: AllocationRepository,
        cache: LimitLookupCache | None = None,
    ) -> None:
        self._plans = plans
        self._allocations = allocations
        self._cache = cache or LimitLookupCache()

    @property
    def cache(self) -> LimitLookupCache:
        return self._cache

    # ── Lookups ──────────────────────────────────────────────────

    async def _load(self, key: tuple[str, ...], loader: Callable[[], Awaitable[V]]) -> V:
        try:
            return await self._cache.get_or_load(key, loader)
        except PlanLookupError:
            raise
        except Exception as exc:
            log.error("limit_lookup_failed", lookup=key[0], key=list(key[1:]), error=str(exc))
            raise PlanLookupError(
                f"Failed to load {key[0]} configuration",
                {"lookup": key[0], "key": list(key[1:])},
            ) from exc

    async def member_allocation(self, owner: OwnerContext) -> Allocation | None:
        if not owner.department_id:
            return None
        return await self._load(
            ("member", owner.user_id, owner.department_id),
            lambda: self._allocations.member_allocation(owner.user_id, owner.department_id or ""),
        )

    async def department_allocation(self, owner: OwnerContext) -> Allocation | None:
        if not owner.department_id:
            return None
        return await self._load(
            ("department", owner.department_id),
            lambda: self._allocations.department_allocation(owner.department_id or ""),
        )

    async def organization_plan(self, organization_id: str | None) -> OrganizationPlan | None:
        if not organization_id:
            return None
        return await self._load(
            ("organization", organization_id),
            lambda: self._plans.organization_plan(organization_id),
        )

    async def account_plan(self, user_id: str) -> AccountPlan | None:
        return await self._load(
            ("account", user_id),
            lambda: self._plans.account_plan(user_id),
        )

    async def load_config(self, owner: OwnerContext) -> tuple[ResolvedConfig, dict[str, PlanLookupError]]:
        """Fetch all four lookups at once, collecting failures by level."""
        results = await asyncio.gather(
            self.member_allocation(owner),
            self.department_allocation(owner),
            self.organization_plan(owner.organization_id),
            self.account_plan(owner.user_id),
            return_exceptions=True,
        )
        values: dict[str, object] = {}
        failures: dict[str, PlanLookupError] = {}
        for (level, _), result in zip(_CHAIN, results):
            if isinstance(result, PlanLookupError):
                failures[level] = result
            elif isinstance(result, BaseException):
                raise result
            else:
                values[level] = result
        return ResolvedConfig(**values), failures

    # ── Resolution ───────────────────────────────────────────────

    async def resolve(self, owner: OwnerContext, resource: ResourceKind) -> EffectiveLimit:
        """Walk the chain lazily; later lookups are skipped once a level answers."""
        found = _from_allocation(await self.member_allocation(owner), resource, LimitSource.MEMBER)
        if found is None:
            found = _from_allocation(
                await self.department_allocation(owner), resource, LimitSource.DEPARTMENT,
            )
        if found is None:
            found = _from_organization(await self.organization_plan(owner.organization_id), resource)
        if found is None:
            found = _from_account(await self.account_plan(owner.user_id), resource)
        if found is None:
            log.debug("no_plan_data", user_id=owner.user_id, resource=resource.value)
            found = DEFAULT_LIMIT
        return found

    async def resolve_all(
        self,
        owner: OwnerContext,
        resources: tuple[ResourceKind, ...] = tuple(ResourceKind),
    ) -> dict[ResourceKind, EffectiveLimit]:
        """Batch variant of ``resolve``; one round of lookups for every kind."""
        config, failures = await self.load_config(owner)
        return {resource: pick_limit(config, resource, failures) for resource in resources}

    async def resolve_limit_set(self, owner: OwnerContext) -> ResourceLimitSet:
        """Full limit set: plan base, then department, then member overrides."""
        config, failures = await self.load_config(owner)
        for level in ("member", "department", "organization"):
            if level in failures:
                raise failures[level]
        if config.organization is None and "account" in failures:
            raise failures["account"]

        if config.organization is not None:
            base = config.organization.limits
        elif config.account is not None:
            base = config.account.limits
        else:
            base = UNLIMITED_LIMITS
        return merge_chain(
            base,
            config.department.limits if config.department else None,
            config.member.limits if config.member else None,
        )
