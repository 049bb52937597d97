"""Real-time counter keys and the in-process counter store.

Keys are ``prefix:ownerKind:ownerId:periodKey``; the period key encodes the
calendar window, so a new period means a new key and counters never need an
explicit reset.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from datetime import datetime, timedelta, timezone

from quotaflow.core.constants import (
    ACTIVE_OWNERS_KEY_PREFIX,
    DAILY_TTL_GRACE,
    EXECUTION_KEY_PREFIX,
    GAUGE_KEY_PREFIX,
    GAUGE_PERIOD_KEY,
    HOURLY_TTL_GRACE,
    MONTHLY_TTL_GRACE,
    USAGE_KEY_PREFIX,
    WEEKLY_TTL_GRACE,
)
from quotaflow.core.interfaces import CounterStore
from quotaflow.core.types import OwnerKind, PeriodType, UsageMetric
from quotaflow.quota.periods import period_end, period_key

_TTL_GRACE: dict[PeriodType, int] = {
    PeriodType.HOURLY: HOURLY_TTL_GRACE,
    PeriodType.DAILY: DAILY_TTL_GRACE,
    PeriodType.WEEKLY: WEEKLY_TTL_GRACE,
    PeriodType.MONTHLY: MONTHLY_TTL_GRACE,
}


# ── Key Construction ─────────────────────────────────────────────

def counter_key(prefix: str, owner_kind: OwnerKind, owner_id: str, period: str) -> str:
    return f"{prefix}:{owner_kind.value}:{owner_id}:{period}"


def usage_key(
    namespace: str,
    metric: UsageMetric,
    period_type: PeriodType,
    owner_kind: OwnerKind,
    owner_id: str,
    now: datetime,
) -> str:
    """e.g. ``quota:usage:api_calls:daily:org:o1:2026-10-17``."""
    prefix = f"{namespace}:{USAGE_KEY_PREFIX}:{metric.value}:{period_type.value.lower()}"
    return counter_key(prefix, owner_kind, owner_id, period_key(period_type, now))


def execution_key(namespace: str, owner_kind: OwnerKind, owner_id: str, now: datetime) -> str:
    """e.g. ``quota:exec:monthly:user:u1:2026-10``."""
    prefix = f"{namespace}:{EXECUTION_KEY_PREFIX}"
    return counter_key(prefix, owner_kind, owner_id, period_key(PeriodType.MONTHLY, now))


def gauge_key(namespace: str, name: str, owner_kind: OwnerKind, owner_id: str) -> str:
    """Non-period key for values that go up and down (storage, occurrence counts)."""
    return counter_key(f"{namespace}:{GAUGE_KEY_PREFIX}:{name}", owner_kind, owner_id, GAUGE_PERIOD_KEY)


def active_owners_key(namespace: str, now: datetime) -> str:
    """Set of owners that recorded usage during the hour containing ``now``."""
    return f"{namespace}:{ACTIVE_OWNERS_KEY_PREFIX}:{period_key(PeriodType.HOURLY, now)}"


def owner_token(owner_kind: OwnerKind, owner_id: str) -> str:
    return f"{owner_kind.value}:{owner_id}"


def parse_owner_token(token: str) -> tuple[OwnerKind, str]:
    kind, _, owner_id = token.partition(":")
    return OwnerKind(kind), owner_id


def counter_expiry(period_type: PeriodType, now: datetime, grace_seconds: int | None = None) -> datetime:
    """Period end plus the grace buffer for ``period_type``."""
    grace = _TTL_GRACE[period_type] if grace_seconds is None else grace_seconds
    return period_end(period_type, now) + timedelta(seconds=grace)


async def increment_for_period(
    store: CounterStore,
    key: str,
    amount: int,
    expire_at: datetime,
) -> int:
    """Increment and make sure the key carries an expiry.

    An existing expiry is never moved, so the first writer of a period
    decides it. A key left without one by an earlier failed write gets one
    on its next increment.
    """
    return await store.increment_with_expiry(key, amount, expire_at)


# ── In-Process Store ─────────────────────────────────────────────

class InMemoryCounterStore(CounterStore):
    """Counter store backed by dicts, for dev mode and tests.

    Honors expiries on read. Not shared across processes.
    """

    def __init__(self, clock: Callable[[], datetime] | None = None) -> None:
        self._values: dict[str, int] = {}
        self._sets: dict[str, set[str]] = {}
        self._expiries: dict[str, datetime] = {}
        self._lock = asyncio.Lock()
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def _purge(self, key: str) -> None:
        expiry = self._expiries.get(key)
        if expiry is not None and self._clock() >= expiry:
            self._values.pop(key, None)
            self._sets.pop(key, None)
            self._expiries.pop(key, None)

    async def increment(self, key: str, amount: int = 1) -> int:
        async with self._lock:
            self._purge(key)
            value = self._values.get(key, 0) + amount
            self._values[key] = value
            return value

    async def increment_with_expiry(self, key: str, amount: int, instant: datetime) -> int:
        async with self._lock:
            self._purge(key)
            value = self._values.get(key, 0) + amount
            self._values[key] = value
            self._expiries.setdefault(key, instant)
            return value

    async def get(self, key: str) -> int | None:
        self._purge(key)
        return self._values.get(key)

    async def get_many(self, keys: list[str]) -> list[int | None]:
        return [await self.get(key) for key in keys]

    async def expire_at(self, key: str, instant: datetime) -> None:
        if key in self._values or key in self._sets:
            self._expiries[key] = instant

    async def adjust_gauge(self, key: str, delta: int) -> int:
        async with self._lock:
            self._purge(key)
            value = max(0, self._values.get(key, 0) + delta)
            self._values[key] = value
            return value

    async def set_value(self, key: str, value: int, expire_at: datetime | None = None) -> None:
        async with self._lock:
            self._values[key] = value
            if expire_at is not None:
                self._expiries[key] = expire_at

    async def mark_active(self, set_key: str, member: str, expire_at: datetime) -> None:
        async with self._lock:
            self._purge(set_key)
            self._sets.setdefault(set_key, set()).add(member)
            self._expiries[set_key] = expire_at

    async def members(self, set_key: str) -> set[str]:
        self._purge(set_key)
        return set(self._sets.get(set_key, set()))

    def expiry_of(self, key: str) -> datetime | None:
        return self._expiries.get(key)
