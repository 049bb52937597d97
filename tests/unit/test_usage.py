"""Tests for UsageTracker — counters, storage gauge and ledger nudges."""

from __future__ import annotations

from datetime import datetime, timezone
from unittest.mock import AsyncMock

import pytest

from quotaflow.core.exceptions import CounterStoreError, LedgerError
from quotaflow.core.interfaces import CounterStore, UsageLedger
from quotaflow.core.types import (
    OwnerContext,
    OwnerKind,
    PeriodType,
    UsageLedgerRow,
    UsageMetric,
    UsageMetrics,
)
from quotaflow.quota.counters import InMemoryCounterStore
from quotaflow.quota.usage import UsageTracker

UTC = timezone.utc
NOW = datetime(2026, 10, 17, 14, 5, tzinfo=UTC)
ORG_MEMBER = OwnerContext(user_id="u1", organization_id="o1")
SOLO = OwnerContext(user_id="u1")


class _Clock:
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now


def _ledger() -> AsyncMock:
    ledger = AsyncMock(spec=UsageLedger)
    ledger.rows.return_value = []
    ledger.latest_storage.return_value = None
    return ledger


def _broken_counters() -> AsyncMock:
    counters = AsyncMock(spec=CounterStore)
    error = CounterStoreError("redis unreachable")
    for name in (
        "increment", "increment_with_expiry", "get", "get_many", "expire_at",
        "adjust_gauge", "set_value", "mark_active", "members",
    ):
        getattr(counters, name).side_effect = error
    return counters


def _tracker(counters: CounterStore | None = None, ledger: AsyncMock | None = None) -> UsageTracker:
    clock = _Clock(NOW)
    return UsageTracker(
        counters or InMemoryCounterStore(clock=clock),
        ledger or _ledger(),
        clock=clock,
    )


class TestRecord:
    @pytest.mark.asyncio
    async def test_counts_against_organization(self) -> None:
        tracker = _tracker()
        await tracker.track_api_call(ORG_MEMBER)
        outcome = await tracker.track_api_call(ORG_MEMBER, 4)
        await tracker.drain()

        assert outcome.value == 5
        assert not outcome.degraded
        assert await tracker.daily_count(ORG_MEMBER, UsageMetric.API_CALLS) == 5
        hourly = await tracker.counters.get(tracker.hourly_key(OwnerKind.ORG, "o1", UsageMetric.API_CALLS, NOW))
        assert hourly == 5
        # personal context of the same user is a separate owner
        assert await tracker.daily_count(SOLO, UsageMetric.API_CALLS) == 0

    @pytest.mark.asyncio
    async def test_marks_owner_active(self) -> None:
        tracker = _tracker()
        await tracker.track_workflow_run(ORG_MEMBER)
        await tracker.track_error(SOLO)
        await tracker.drain()

        assert await tracker.counters.members(tracker.active_key(NOW)) == {"org:o1", "user:u1"}

    @pytest.mark.asyncio
    async def test_nudges_hourly_ledger_row(self) -> None:
        ledger = _ledger()
        tracker = _tracker(ledger=ledger)
        await tracker.track_plugin_execution(SOLO, 2)
        await tracker.drain()

        ledger.increment.assert_awaited_once_with(
            OwnerKind.USER,
            "u1",
            PeriodType.HOURLY,
            datetime(2026, 10, 17, 14, tzinfo=UTC),
            UsageMetrics(plugin_executions=2),
            storage_value=None,
        )
        assert tracker.pending_writes == 0

    @pytest.mark.asyncio
    async def test_ledger_failure_is_dropped(self) -> None:
        ledger = _ledger()
        ledger.increment.side_effect = LedgerError("db down")
        tracker = _tracker(ledger=ledger)

        outcome = await tracker.track_api_call(SOLO)
        await tracker.drain()
        assert outcome.value == 1
        assert not outcome.degraded

    @pytest.mark.asyncio
    async def test_counter_failure_fails_open(self) -> None:
        ledger = _ledger()
        tracker = _tracker(counters=_broken_counters(), ledger=ledger)

        outcome = await tracker.track_api_call(SOLO)
        await tracker.drain()
        assert outcome.value == 0
        assert outcome.degraded
        assert outcome.error is not None and outcome.error.component == "counter_store"
        ledger.increment.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_rejects_non_positive_amounts(self) -> None:
        tracker = _tracker()
        with pytest.raises(ValueError):
            await tracker.record(SOLO, UsageMetric.API_CALLS, 0)


class TestStorage:
    @pytest.mark.asyncio
    async def test_decrement_clamps_at_zero(self) -> None:
        tracker = _tracker()
        await tracker.track_storage_change(SOLO, 30)
        outcome = await tracker.track_storage_change(SOLO, -50)
        await tracker.drain()

        assert outcome.value == 0
        assert await tracker.storage_used(SOLO) == 0

    @pytest.mark.asyncio
    async def test_snapshots_hourly_value(self) -> None:
        ledger = _ledger()
        tracker = _tracker(ledger=ledger)
        await tracker.track_storage_change(SOLO, 120)
        await tracker.track_storage_change(SOLO, -20)
        await tracker.drain()

        snapshot = await tracker.counters.get(tracker.hourly_key(OwnerKind.USER, "u1", UsageMetric.STORAGE, NOW))
        assert snapshot == 100
        assert ledger.increment.await_args is not None
        assert ledger.increment.await_args.kwargs["storage_value"] == 100

    @pytest.mark.asyncio
    async def test_record_storage_routes_to_gauge(self) -> None:
        tracker = _tracker()
        outcome = await tracker.record(SOLO, UsageMetric.STORAGE, 15)
        await tracker.drain()
        assert outcome.value == 15


class TestReads:
    @pytest.mark.asyncio
    async def test_real_time_usage_from_counters(self) -> None:
        tracker = _tracker()
        await tracker.track_api_call(SOLO, 3)
        await tracker.track_workflow_run(SOLO)
        await tracker.track_storage_change(SOLO, 42)
        await tracker.drain()

        outcome = await tracker.real_time_usage(SOLO)
        assert not outcome.degraded
        assert outcome.value == UsageMetrics(api_calls=3, workflow_runs=1, storage_used=42)

    @pytest.mark.asyncio
    async def test_real_time_usage_falls_back_to_ledger(self) -> None:
        ledger = _ledger()
        ledger.rows.return_value = [
            UsageLedgerRow(OwnerKind.USER, "u1", datetime(2026, 10, 17, 9, tzinfo=UTC), PeriodType.HOURLY,
                           UsageMetrics(api_calls=4, storage_used=10)),
            UsageLedgerRow(OwnerKind.USER, "u1", datetime(2026, 10, 17, 10, tzinfo=UTC), PeriodType.HOURLY,
                           UsageMetrics(api_calls=6, storage_used=8)),
        ]
        tracker = _tracker(counters=_broken_counters(), ledger=ledger)

        outcome = await tracker.real_time_usage(SOLO)
        assert outcome.degraded
        assert outcome.value.api_calls == 10
        assert outcome.value.storage_used == 10

    @pytest.mark.asyncio
    async def test_real_time_usage_zero_when_everything_down(self) -> None:
        ledger = _ledger()
        ledger.rows.side_effect = LedgerError("db down")
        tracker = _tracker(counters=_broken_counters(), ledger=ledger)

        outcome = await tracker.real_time_usage(SOLO)
        assert outcome.value == UsageMetrics()
        assert outcome.error is not None and outcome.error.component == "ledger"
