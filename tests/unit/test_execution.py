"""Tests for the monthly execution tracker and warning ladder."""

from __future__ import annotations

from datetime import datetime, timezone
from unittest.mock import AsyncMock

import pytest

from quotaflow.core.exceptions import CounterStoreError
from quotaflow.core.interfaces import CounterStore
from quotaflow.core.types import OwnerContext, WarningLevel
from quotaflow.quota.allocations import InMemoryAllocationRepository
from quotaflow.quota.counters import InMemoryCounterStore
from quotaflow.quota.execution import ExecutionTracker, calc_percentage, warning_level
from quotaflow.quota.plans import OrgPlan, PersonalPlan, StaticPlanDirectory
from quotaflow.quota.resolver import LimitResolver

UTC = timezone.utc
NOW = datetime(2026, 10, 17, 14, 5, tzinfo=UTC)
SERVERLESS = OwnerContext(user_id="free")          # FREE: 500 per month
WORKSPACE = OwnerContext(user_id="pro")            # PRO: unmetered
ORG_MEMBER = OwnerContext(user_id="free", organization_id="o1")
UNKNOWN = OwnerContext(user_id="ghost")


class _Clock:
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now


def _tracker(counters: CounterStore | None = None) -> ExecutionTracker:
    clock = _Clock(NOW)
    plans = StaticPlanDirectory()
    plans.assign_account("free", PersonalPlan.FREE)
    plans.assign_account("pro", PersonalPlan.PRO)
    plans.assign_organization("o1", OrgPlan.ORG_FREE)
    resolver = LimitResolver(plans, InMemoryAllocationRepository())
    return ExecutionTracker(counters or InMemoryCounterStore(clock=clock), resolver, clock=clock)


async def _preset(tracker: ExecutionTracker, owner: OwnerContext, value: int) -> None:
    await tracker._counters.set_value(tracker.key_for(owner), value)


class TestWarningLadder:
    @pytest.mark.parametrize(
        ("current", "limit", "expected"),
        [
            (0, 500, WarningLevel.NONE),
            (399, 500, WarningLevel.NONE),
            (400, 500, WarningLevel.WARNING),
            (475, 500, WarningLevel.CRITICAL),
            (500, 500, WarningLevel.BLOCKED),
            (900, 500, WarningLevel.BLOCKED),
            (10, None, WarningLevel.NONE),
            (10, -1, WarningLevel.NONE),
            (0, 0, WarningLevel.BLOCKED),
        ],
    )
    def test_levels(self, current: int, limit: int | None, expected: WarningLevel) -> None:
        assert warning_level(current, limit) == expected

    def test_percentage(self) -> None:
        assert calc_percentage(250, 500) == 50
        assert calc_percentage(900, 500) == 100
        assert calc_percentage(5, None) == 0
        assert calc_percentage(5, 0) == 0


class TestTrack:
    @pytest.mark.asyncio
    async def test_counts_executions(self) -> None:
        tracker = _tracker()
        first = await tracker.track(SERVERLESS)
        second = await tracker.track(SERVERLESS)
        assert first.success and first.new_count == 1
        assert second.new_count == 2
        assert second.warning_level == WarningLevel.NONE

    @pytest.mark.asyncio
    async def test_warning_message(self) -> None:
        tracker = _tracker()
        await _preset(tracker, SERVERLESS, 399)
        result = await tracker.track(SERVERLESS)
        assert result.success
        assert result.warning_level == WarningLevel.WARNING
        assert result.message == "80% of monthly limit used"

    @pytest.mark.asyncio
    async def test_blocked_at_limit_without_incrementing(self) -> None:
        tracker = _tracker()
        await _preset(tracker, SERVERLESS, 499)

        last = await tracker.track(SERVERLESS)
        assert last.success and last.new_count == 500
        assert last.warning_level == WarningLevel.BLOCKED

        blocked = await tracker.track(SERVERLESS)
        assert not blocked.success
        assert blocked.new_count == 500
        assert blocked.message == "Execution limit reached (500/500)"
        assert (await tracker.execution_count(SERVERLESS)).current == 500

    @pytest.mark.asyncio
    async def test_workspace_never_blocked(self) -> None:
        tracker = _tracker()
        await _preset(tracker, WORKSPACE, 10_000)

        result = await tracker.track(WORKSPACE)
        assert result.success
        assert result.new_count == 10_001
        assert result.warning_level != WarningLevel.BLOCKED

    @pytest.mark.asyncio
    async def test_organization_unmetered(self) -> None:
        tracker = _tracker()
        await _preset(tracker, ORG_MEMBER, 5_000)
        result = await tracker.track(ORG_MEMBER)
        assert result.success
        assert result.warning_level == WarningLevel.NONE
        # the personal counter of the same user is untouched
        assert (await tracker.execution_count(SERVERLESS)).current == 0

    @pytest.mark.asyncio
    async def test_unknown_account_gets_default_limit(self) -> None:
        count = await _tracker().execution_count(UNKNOWN)
        assert count.metered
        assert count.limit == 500

    @pytest.mark.asyncio
    async def test_counter_outage_fails_open(self) -> None:
        counters = AsyncMock(spec=CounterStore)
        counters.get.side_effect = CounterStoreError("redis unreachable")
        tracker = _tracker(counters)

        outcome = await tracker.track_outcome(SERVERLESS)
        assert outcome.value.success
        assert outcome.value.warning_level == WarningLevel.NONE
        assert outcome.degraded


class TestPreview:
    @pytest.mark.asyncio
    async def test_can_execute_is_read_only(self) -> None:
        tracker = _tracker()
        await _preset(tracker, SERVERLESS, 500)

        preview = await tracker.can_execute(SERVERLESS)
        assert not preview.allowed
        assert preview.reason == "limit_reached"
        assert (await tracker.execution_count(SERVERLESS)).current == 500

    @pytest.mark.asyncio
    async def test_can_execute_workspace(self) -> None:
        preview = await _tracker().can_execute(WORKSPACE)
        assert preview.allowed
        assert preview.limit is None

    @pytest.mark.asyncio
    async def test_execution_count_window(self) -> None:
        count = await _tracker().execution_count(SERVERLESS)
        assert count.period_start == datetime(2026, 10, 1, tzinfo=UTC)
        assert count.period_end == datetime(2026, 11, 1, tzinfo=UTC)

    def test_reset_time(self) -> None:
        assert _tracker().reset_time() == datetime(2026, 11, 1, tzinfo=UTC)

    @pytest.mark.asyncio
    async def test_status_falls_back_to_zero_usage(self) -> None:
        counters = AsyncMock(spec=CounterStore)
        counters.get.side_effect = CounterStoreError("redis down")
        tracker = _tracker(counters)

        outcome = await tracker.status(SERVERLESS)
        assert outcome.degraded
        assert outcome.error is not None and outcome.error.component == "counter_store"
        assert outcome.value.current == 0
        assert outcome.value.limit is None
        assert outcome.value.period_start == datetime(2026, 10, 1, tzinfo=UTC)

        check = await tracker.can_execute(SERVERLESS)
        assert check.allowed
        assert check.warning_level == WarningLevel.NONE
