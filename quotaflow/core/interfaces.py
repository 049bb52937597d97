"""Abstract base classes — collaborators the quota services are constructed with."""

from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime

from quotaflow.core.types import (
    AccountPlan,
    Allocation,
    OrganizationPlan,
    OwnerContext,
    OwnerKind,
    PeriodType,
    ResourceKind,
    UsageLedgerRow,
    UsageMetrics,
)


class PlanDirectory(ABC):
    """Plan identifiers and their limit sets, keyed by organization or user."""

    @abstractmethod
    async def organization_plan(self, organization_id: str) -> OrganizationPlan | None:
        ...

    @abstractmethod
    async def account_plan(self, user_id: str) -> AccountPlan | None:
        ...


class AllocationRepository(ABC):
    """Member and department override records."""

    @abstractmethod
    async def member_allocation(self, user_id: str, department_id: str) -> Allocation | None:
        ...

    @abstractmethod
    async def department_allocation(self, department_id: str) -> Allocation | None:
        ...

    @abstractmethod
    async def department_allocations(self, organization_id: str) -> list[Allocation]:
        """All department allocations of an organization."""
        ...

    @abstractmethod
    async def member_allocations(self, department_id: str) -> list[Allocation]:
        """All member allocations of a department."""
        ...

    @abstractmethod
    async def save(self, allocation: Allocation) -> Allocation:
        """Create or replace the allocation for its member/department."""
        ...

    @abstractmethod
    async def delete_member(self, user_id: str, department_id: str) -> bool:
        ...

    @abstractmethod
    async def delete_department(self, department_id: str) -> bool:
        ...

    @abstractmethod
    async def delete_department_members(self, department_id: str) -> int:
        """Delete every member allocation of a department; returns the count."""
        ...


class CounterStore(ABC):
    """Fast, TTL-bearing integer counters.

    ``increment`` and ``adjust_gauge`` must be atomic at the store: concurrent
    callers never lose an update.
    """

    @abstractmethod
    async def increment(self, key: str, amount: int = 1) -> int:
        """Atomically add ``amount`` and return the new value."""
        ...

    async def increment_with_expiry(self, key: str, amount: int, instant: datetime) -> int:
        """``increment``, then set the expiry if the key has none.

        The default sets it only when this call created the key; stores that
        can see a key's TTL should override.
        """
        new_value = await self.increment(key, amount)
        if new_value == amount:
            await self.expire_at(key, instant)
        return new_value

    @abstractmethod
    async def get(self, key: str) -> int | None:
        ...

    @abstractmethod
    async def get_many(self, keys: list[str]) -> list[int | None]:
        ...

    @abstractmethod
    async def expire_at(self, key: str, instant: datetime) -> None:
        ...

    @abstractmethod
    async def adjust_gauge(self, key: str, delta: int) -> int:
        """Atomically add ``delta``, clamping the stored value at zero."""
        ...

    @abstractmethod
    async def set_value(self, key: str, value: int, expire_at: datetime | None = None) -> None:
        ...

    @abstractmethod
    async def mark_active(self, set_key: str, member: str, expire_at: datetime) -> None:
        """Add ``member`` to the set at ``set_key``."""
        ...

    @abstractmethod
    async def members(self, set_key: str) -> set[str]:
        ...

    async def ping(self) -> bool:
        return True

    async def close(self) -> None:
        """Release connections. No-op for in-process stores."""
        return None


class UsageLedger(ABC):
    """Durable period-keyed usage rows."""

    @abstractmethod
    async def increment(
        self,
        owner_kind: OwnerKind,
        owner_id: str,
        period_type: PeriodType,
        period_start: datetime,
        deltas: UsageMetrics,
        storage_value: int | None = None,
    ) -> None:
        """Create the row or add ``deltas`` to it.

        ``deltas.storage_used`` is a signed adjustment and the stored gauge is
        clamped at zero. When ``storage_value`` is given it replaces the gauge
        instead.
        """
        ...

    @abstractmethod
    async def upsert(self, row: UsageLedgerRow) -> None:
        """Create the row or overwrite every metric of it."""
        ...

    @abstractmethod
    async def rows(
        self,
        period_type: PeriodType,
        start: datetime,
        end: datetime,
        owner_kind: OwnerKind | None = None,
        owner_id: str | None = None,
    ) -> list[UsageLedgerRow]:
        """Rows with ``start <= period_start < end``, oldest first."""
        ...

    @abstractmethod
    async def latest_storage(
        self,
        owner_kind: OwnerKind,
        owner_id: str,
        before: datetime,
    ) -> int | None:
        """Most recent HOURLY storage gauge strictly before ``before``."""
        ...


class ResourceCountSource(ABC):
    """Occurrence counts owned by other services (gateways, workflows, ...)."""

    @abstractmethod
    async def count(self, owner: OwnerContext, resource: ResourceKind) -> int | None:
        """Current number of ``resource`` owned, or None when not tracked here."""
        ...
