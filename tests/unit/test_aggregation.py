"""Tests for the aggregation pipeline against an in-memory SQLite ledger."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock
from zoneinfo import ZoneInfo

import pytest
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine
from sqlalchemy.pool import StaticPool

from quotaflow.core.exceptions import LedgerError
from quotaflow.core.interfaces import UsageLedger
from quotaflow.core.types import (
    OwnerContext,
    OwnerKind,
    PeriodType,
    UsageLedgerRow,
    UsageMetrics,
)
from quotaflow.data.db import init_schema
from quotaflow.data.ledger import SqlUsageLedger
from quotaflow.quota.aggregation import AggregationPipeline
from quotaflow.quota.counters import InMemoryCounterStore
from quotaflow.quota.usage import UsageTracker

UTC = timezone.utc
HOUR = datetime(2026, 10, 17, 14, tzinfo=UTC)
ORG = OwnerContext(user_id="u1", organization_id="o1")
SOLO = OwnerContext(user_id="u2")


class _Clock:
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now


@pytest.fixture()
def engine() -> AsyncEngine:
    return create_async_engine("sqlite+aiosqlite:///:memory:", poolclass=StaticPool)


async def _pipeline(engine: AsyncEngine, clock: _Clock) -> AggregationPipeline:
    await init_schema(engine)
    usage = UsageTracker(InMemoryCounterStore(clock=clock), SqlUsageLedger(engine), clock=clock)
    return AggregationPipeline(usage, clock=clock)


def _hourly(owner_id: str, hour: datetime, api_calls: int, storage: int) -> UsageLedgerRow:
    return UsageLedgerRow(
        owner_kind=OwnerKind.ORG,
        owner_id=owner_id,
        period_start=hour,
        period_type=PeriodType.HOURLY,
        metrics=UsageMetrics(api_calls=api_calls, storage_used=storage),
    )


class TestHourly:
    @pytest.mark.asyncio
    async def test_rolls_previous_hour(self, engine: AsyncEngine) -> None:
        clock = _Clock(HOUR + timedelta(minutes=10))
        pipeline = await _pipeline(engine, clock)
        usage = pipeline._usage
        await usage.track_api_call(ORG, 3)
        await usage.track_workflow_run(ORG)
        await usage.track_storage_change(SOLO, 25)
        await usage.drain()

        clock.now = HOUR + timedelta(hours=1, minutes=5)
        outcome = await pipeline.run_hourly()
        assert outcome.value == 2
        assert not outcome.degraded

        rows = await usage.ledger.rows(PeriodType.HOURLY, HOUR, HOUR + timedelta(hours=1))
        by_owner = {r.owner_id: r.metrics for r in rows}
        assert by_owner["o1"] == UsageMetrics(api_calls=3, workflow_runs=1)
        assert by_owner["u2"].storage_used == 25

    @pytest.mark.asyncio
    async def test_idempotent(self, engine: AsyncEngine) -> None:
        clock = _Clock(HOUR + timedelta(minutes=10))
        pipeline = await _pipeline(engine, clock)
        await pipeline._usage.track_api_call(ORG, 7)
        await pipeline._usage.drain()

        now = HOUR + timedelta(hours=1, minutes=1)
        await pipeline.aggregate_hourly(now)
        first = await pipeline._usage.ledger.rows(PeriodType.HOURLY, HOUR, HOUR + timedelta(hours=1))
        await pipeline.aggregate_hourly(now)
        second = await pipeline._usage.ledger.rows(PeriodType.HOURLY, HOUR, HOUR + timedelta(hours=1))

        assert len(second) == 1
        assert first[0].metrics == second[0].metrics
        assert second[0].metrics.api_calls == 7

    @pytest.mark.asyncio
    async def test_storage_carried_from_earlier_hour(self, engine: AsyncEngine) -> None:
        clock = _Clock(HOUR + timedelta(minutes=10))
        pipeline = await _pipeline(engine, clock)
        ledger = pipeline._usage.ledger
        await ledger.upsert(_hourly("o1", HOUR - timedelta(hours=3), api_calls=0, storage=80))
        await pipeline._usage.track_api_call(ORG)
        await pipeline._usage.drain()

        await pipeline.aggregate_hourly(HOUR + timedelta(hours=1))
        rows = await ledger.rows(PeriodType.HOURLY, HOUR, HOUR + timedelta(hours=1))
        assert rows[0].metrics.storage_used == 80

    @pytest.mark.asyncio
    async def test_quiet_hour_writes_nothing(self, engine: AsyncEngine) -> None:
        clock = _Clock(HOUR)
        pipeline = await _pipeline(engine, clock)
        assert await pipeline.aggregate_hourly() == 0

    @pytest.mark.asyncio
    async def test_repeated_hour_of_dst_fall_back(self, engine: AsyncEngine) -> None:
        new_york = ZoneInfo("America/New_York")
        clock = _Clock(datetime(2026, 11, 1, 1, 30, tzinfo=new_york))  # EDT
        pipeline = await _pipeline(engine, clock)
        usage = pipeline._usage
        await usage.track_api_call(ORG, 3)
        clock.now = datetime(2026, 11, 1, 1, 30, tzinfo=new_york, fold=1)  # EST
        await usage.track_api_call(ORG, 4)
        await usage.drain()

        clock.now = datetime(2026, 11, 1, 1, 5, tzinfo=new_york, fold=1)
        assert await pipeline.aggregate_hourly() == 1
        clock.now = datetime(2026, 11, 1, 2, 5, tzinfo=new_york)
        assert await pipeline.aggregate_hourly() == 1

        rows = await usage.ledger.rows(
            PeriodType.HOURLY,
            datetime(2026, 11, 1, 4, tzinfo=UTC),
            datetime(2026, 11, 1, 8, tzinfo=UTC),
        )
        assert {r.period_start: r.metrics.api_calls for r in rows} == {
            datetime(2026, 11, 1, 5, tzinfo=UTC): 3,
            datetime(2026, 11, 1, 6, tzinfo=UTC): 4,
        }

        clock.now = datetime(2026, 11, 2, 0, 5, tzinfo=new_york)
        assert await pipeline.aggregate_daily() == 1
        daily = await usage.ledger.rows(
            PeriodType.DAILY,
            datetime(2026, 11, 1, tzinfo=new_york),
            datetime(2026, 11, 2, tzinfo=new_york),
        )
        assert daily[0].metrics.api_calls == 7


class TestRollups:
    @pytest.mark.asyncio
    async def test_daily_sums_and_takes_max_storage(self, engine: AsyncEngine) -> None:
        clock = _Clock(datetime(2026, 10, 18, 0, 10, tzinfo=UTC))
        pipeline = await _pipeline(engine, clock)
        ledger = pipeline._usage.ledger
        day = datetime(2026, 10, 17, tzinfo=UTC)
        await ledger.upsert(_hourly("o1", day + timedelta(hours=9), api_calls=4, storage=10))
        await ledger.upsert(_hourly("o1", day + timedelta(hours=15), api_calls=6, storage=30))
        await ledger.upsert(_hourly("o1", day + timedelta(hours=23), api_calls=1, storage=20))
        # outside the window
        await ledger.upsert(_hourly("o1", day - timedelta(hours=1), api_calls=100, storage=999))

        assert await pipeline.aggregate_daily() == 1
        rows = await ledger.rows(PeriodType.DAILY, day, day + timedelta(days=1))
        assert rows[0].metrics == UsageMetrics(api_calls=11, storage_used=30)

        assert await pipeline.aggregate_daily() == 1
        again = await ledger.rows(PeriodType.DAILY, day, day + timedelta(days=1))
        assert again[0].metrics == rows[0].metrics

    @pytest.mark.asyncio
    async def test_weekly_uses_iso_week(self, engine: AsyncEngine) -> None:
        monday = datetime(2026, 10, 26, tzinfo=UTC)
        clock = _Clock(monday + timedelta(days=7, minutes=5))
        pipeline = await _pipeline(engine, clock)
        ledger = pipeline._usage.ledger
        for offset in range(7):
            await ledger.upsert(UsageLedgerRow(
                OwnerKind.ORG, "o1", monday + timedelta(days=offset), PeriodType.DAILY,
                UsageMetrics(api_calls=1, storage_used=offset),
            ))

        assert await pipeline.aggregate_weekly() == 1
        rows = await ledger.rows(PeriodType.WEEKLY, monday, monday + timedelta(days=7))
        assert rows[0].period_start == monday
        assert rows[0].metrics == UsageMetrics(api_calls=7, storage_used=6)

    @pytest.mark.asyncio
    async def test_monthly_in_progress_window(self, engine: AsyncEngine) -> None:
        clock = _Clock(datetime(2026, 10, 17, 3, tzinfo=UTC))
        pipeline = await _pipeline(engine, clock)
        ledger = pipeline._usage.ledger
        for day in (1, 16, 17):
            await ledger.upsert(UsageLedgerRow(
                OwnerKind.USER, "u2", datetime(2026, 10, day, tzinfo=UTC), PeriodType.DAILY,
                UsageMetrics(errors=2),
            ))

        assert await pipeline.aggregate_monthly() == 1
        rows = await ledger.rows(PeriodType.MONTHLY, datetime(2026, 10, 1, tzinfo=UTC), datetime(2026, 11, 1, tzinfo=UTC))
        # today's row is not complete yet
        assert rows[0].metrics.errors == 4

    @pytest.mark.asyncio
    async def test_ledger_failure_reported(self) -> None:
        clock = _Clock(HOUR)
        ledger = AsyncMock(spec=UsageLedger)
        ledger.rows.side_effect = LedgerError("db down")
        usage = UsageTracker(InMemoryCounterStore(clock=clock), ledger, clock=clock)
        pipeline = AggregationPipeline(usage, clock=clock)

        outcome = await pipeline.run_rollup(PeriodType.DAILY)
        assert outcome.value == 0
        assert outcome.degraded
        assert outcome.error is not None and outcome.error.component == "ledger"
