"""Tests for SqlUsageLedger against an in-memory SQLite database."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine
from sqlalchemy.pool import StaticPool

from quotaflow.core.exceptions import LedgerError
from quotaflow.core.types import OwnerKind, PeriodType, UsageLedgerRow, UsageMetrics
from quotaflow.data.db import init_schema
from quotaflow.data.ledger import SqlUsageLedger

UTC = timezone.utc
HOUR = datetime(2026, 10, 17, 14, tzinfo=UTC)


@pytest.fixture()
def engine() -> AsyncEngine:
    return create_async_engine("sqlite+aiosqlite:///:memory:", poolclass=StaticPool)


async def _ledger(engine: AsyncEngine) -> SqlUsageLedger:
    await init_schema(engine)
    return SqlUsageLedger(engine)


class TestIncrement:
    @pytest.mark.asyncio
    async def test_increments_accumulate(self, engine: AsyncEngine) -> None:
        ledger = await _ledger(engine)
        await ledger.increment(OwnerKind.ORG, "o1", PeriodType.HOURLY, HOUR, UsageMetrics(api_calls=2))
        await ledger.increment(OwnerKind.ORG, "o1", PeriodType.HOURLY, HOUR, UsageMetrics(api_calls=3, errors=1))

        rows = await ledger.rows(PeriodType.HOURLY, HOUR, HOUR + timedelta(hours=1))
        assert len(rows) == 1
        assert rows[0].metrics.api_calls == 5
        assert rows[0].metrics.errors == 1
        assert rows[0].period_start == HOUR

    @pytest.mark.asyncio
    async def test_storage_value_overwrites(self, engine: AsyncEngine) -> None:
        ledger = await _ledger(engine)
        await ledger.increment(OwnerKind.USER, "u1", PeriodType.HOURLY, HOUR, UsageMetrics(), storage_value=40)
        await ledger.increment(OwnerKind.USER, "u1", PeriodType.HOURLY, HOUR, UsageMetrics(), storage_value=25)

        rows = await ledger.rows(PeriodType.HOURLY, HOUR, HOUR + timedelta(hours=1), OwnerKind.USER, "u1")
        assert rows[0].metrics.storage_used == 25

    @pytest.mark.asyncio
    async def test_storage_delta_clamps_at_zero(self, engine: AsyncEngine) -> None:
        ledger = await _ledger(engine)
        await ledger.increment(OwnerKind.USER, "u1", PeriodType.HOURLY, HOUR, UsageMetrics(storage_used=30))
        await ledger.increment(OwnerKind.USER, "u1", PeriodType.HOURLY, HOUR, UsageMetrics(storage_used=-50))

        rows = await ledger.rows(PeriodType.HOURLY, HOUR, HOUR + timedelta(hours=1))
        assert rows[0].metrics.storage_used == 0

    @pytest.mark.asyncio
    async def test_missing_schema_raises_ledger_error(self, engine: AsyncEngine) -> None:
        ledger = SqlUsageLedger(engine)
        with pytest.raises(LedgerError):
            await ledger.increment(OwnerKind.USER, "u1", PeriodType.HOURLY, HOUR, UsageMetrics(api_calls=1))


class TestUpsertAndRead:
    @pytest.mark.asyncio
    async def test_upsert_is_idempotent(self, engine: AsyncEngine) -> None:
        ledger = await _ledger(engine)
        row = UsageLedgerRow(
            owner_kind=OwnerKind.ORG,
            owner_id="o1",
            period_start=datetime(2026, 10, 17, tzinfo=UTC),
            period_type=PeriodType.DAILY,
            metrics=UsageMetrics(api_calls=10, storage_used=7),
        )
        await ledger.upsert(row)
        await ledger.upsert(row)

        rows = await ledger.rows(PeriodType.DAILY, row.period_start, row.period_start + timedelta(days=1))
        assert len(rows) == 1
        assert rows[0].metrics == row.metrics

    @pytest.mark.asyncio
    async def test_rows_filtered_by_window_and_owner(self, engine: AsyncEngine) -> None:
        ledger = await _ledger(engine)
        for offset in range(3):
            await ledger.increment(
                OwnerKind.ORG, "o1", PeriodType.HOURLY, HOUR + timedelta(hours=offset), UsageMetrics(api_calls=1),
            )
        await ledger.increment(OwnerKind.ORG, "o2", PeriodType.HOURLY, HOUR, UsageMetrics(api_calls=9))

        window = await ledger.rows(PeriodType.HOURLY, HOUR, HOUR + timedelta(hours=2))
        assert len(window) == 3  # o1 x2 + o2 x1, end exclusive
        owned = await ledger.rows(PeriodType.HOURLY, HOUR, HOUR + timedelta(hours=3), OwnerKind.ORG, "o1")
        assert [r.period_start for r in owned] == [HOUR + timedelta(hours=h) for h in range(3)]

    @pytest.mark.asyncio
    async def test_latest_storage_strictly_before(self, engine: AsyncEngine) -> None:
        ledger = await _ledger(engine)
        await ledger.increment(OwnerKind.USER, "u1", PeriodType.HOURLY, HOUR, UsageMetrics(), storage_value=10)
        await ledger.increment(
            OwnerKind.USER, "u1", PeriodType.HOURLY, HOUR + timedelta(hours=1), UsageMetrics(), storage_value=20,
        )

        assert await ledger.latest_storage(OwnerKind.USER, "u1", HOUR + timedelta(hours=1)) == 10
        assert await ledger.latest_storage(OwnerKind.USER, "u1", HOUR + timedelta(hours=5)) == 20
        assert await ledger.latest_storage(OwnerKind.USER, "u1", HOUR) is None
