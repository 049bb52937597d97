"""Aggregation pipeline — idempotent ledger rollups run by an external scheduler.

- Hourly: counters of the just-completed hour -> HOURLY rows (overwrite).
- Daily: completed HOURLY rows of the day -> DAILY row.
- Weekly / monthly: completed DAILY rows of the ISO week / month.

Every job overwrites its target rows, so re-running a job for the same
window yields the same rows. Additive metrics are summed; storage is a gauge
and takes the maximum observed value.
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import datetime

from quotaflow.core.exceptions import CounterStoreError, LedgerError
from quotaflow.core.interfaces import CounterStore, UsageLedger
from quotaflow.core.logging import get_logger
from quotaflow.core.types import (
    OwnerKind,
    Outcome,
    PeriodType,
    TrackingError,
    UsageLedgerRow,
    UsageMetric,
    UsageMetrics,
)
from quotaflow.quota.counters import parse_owner_token
from quotaflow.quota.periods import (
    local_now,
    period_end,
    period_start,
    previous_period_start,
)
from quotaflow.quota.usage import ADDITIVE_METRICS, UsageTracker

log = get_logger(__name__)

# target period -> the finer period it is built from
_SOURCE_PERIOD: dict[PeriodType, PeriodType] = {
    PeriodType.DAILY: PeriodType.HOURLY,
    PeriodType.WEEKLY: PeriodType.DAILY,
    PeriodType.MONTHLY: PeriodType.DAILY,
}


class AggregationPipeline:
    """Rolls counters and ledger rows up into coarser ledger rows."""

    def __init__(
        self,
        usage: UsageTracker,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._usage = usage
        self._clock = clock or local_now

    @property
    def _counters(self) -> CounterStore:
        return self._usage.counters

    @property
    def _ledger(self) -> UsageLedger:
        return self._usage.ledger

    # ── Hourly ───────────────────────────────────────────────────

    async def run_hourly(self, now: datetime | None = None) -> Outcome[int]:
        now = now or self._clock()
        hour_start = previous_period_start(PeriodType.HOURLY, now)

        try:
            tokens = await self._counters.members(self._usage.active_key(hour_start))
        except CounterStoreError as exc:
            log.error("hourly_rollup_failed", hour=hour_start.isoformat(), error=str(exc))
            return Outcome(0, TrackingError("counter_store", str(exc)))

        written = 0
        error: TrackingError | None = None
        for token in sorted(tokens):
            owner_kind, owner_id = parse_owner_token(token)
            try:
                row = await self._hour_row(owner_kind, owner_id, hour_start)
                await self._ledger.upsert(row)
            except (CounterStoreError, LedgerError) as exc:
                log.error("hourly_rollup_owner_failed", owner=token, hour=hour_start.isoformat(), error=str(exc))
                component = "ledger" if isinstance(exc, LedgerError) else "counter_store"
                error = TrackingError(component, str(exc))
                continue
            written += 1

        log.info("hourly_rollup_complete", hour=hour_start.isoformat(), owners=len(tokens), rows=written)
        return Outcome(written, error)

    async def _hour_row(self, owner_kind: OwnerKind, owner_id: str, hour_start: datetime) -> UsageLedgerRow:
        keys = [self._usage.hourly_key(owner_kind, owner_id, metric, hour_start) for metric in ADDITIVE_METRICS]
        keys.append(self._usage.hourly_key(owner_kind, owner_id, UsageMetric.STORAGE, hour_start))
        values = await self._counters.get_many(keys)

        storage = values[-1]
        if storage is None:
            storage = await self._ledger.latest_storage(owner_kind, owner_id, hour_start) or 0

        api_calls, workflow_runs, plugin_executions, errors = (v or 0 for v in values[:-1])
        return UsageLedgerRow(
            owner_kind=owner_kind,
            owner_id=owner_id,
            period_start=hour_start,
            period_type=PeriodType.HOURLY,
            metrics=UsageMetrics(
                api_calls=api_calls,
                workflow_runs=workflow_runs,
                plugin_executions=plugin_executions,
                storage_used=storage,
                errors=errors,
            ),
        )

    async def aggregate_hourly(self, now: datetime | None = None) -> int:
        """Number of HOURLY rows written for the just-completed hour."""
        return (await self.run_hourly(now)).value

    # ── Daily / Weekly / Monthly ─────────────────────────────────

    async def run_rollup(self, target: PeriodType, now: datetime | None = None) -> Outcome[int]:
        """Roll completed source rows into ``target`` rows.

        The window is the ``target`` period containing the last completed
        source period, so a run just after midnight finalizes yesterday.
        """
        source = _SOURCE_PERIOD[target]
        now = now or self._clock()
        anchor = previous_period_start(source, now)
        window_start = period_start(target, anchor)
        window_end = min(period_end(target, anchor), period_start(source, now))

        try:
            rows = await self._ledger.rows(source, window_start, window_end)
        except LedgerError as exc:
            log.error("rollup_failed", target=target.value, window=window_start.isoformat(), error=str(exc))
            return Outcome(0, TrackingError("ledger", str(exc)))

        totals: dict[tuple[OwnerKind, str], UsageMetrics] = {}
        for row in rows:
            key = (row.owner_kind, row.owner_id)
            totals[key] = totals.get(key, UsageMetrics()).merge(row.metrics)

        written = 0
        error: TrackingError | None = None
        for (owner_kind, owner_id), metrics in totals.items():
            try:
                await self._ledger.upsert(UsageLedgerRow(
                    owner_kind=owner_kind,
                    owner_id=owner_id,
                    period_start=window_start,
                    period_type=target,
                    metrics=metrics,
                ))
            except LedgerError as exc:
                log.error("rollup_owner_failed", target=target.value, owner_id=owner_id, error=str(exc))
                error = TrackingError("ledger", str(exc))
                continue
            written += 1

        log.info(
            "rollup_complete",
            target=target.value,
            window=window_start.isoformat(),
            source_rows=len(rows),
            rows=written,
        )
        return Outcome(written, error)

    async def aggregate_daily(self, now: datetime | None = None) -> int:
        return (await self.run_rollup(PeriodType.DAILY, now)).value

    async def aggregate_weekly(self, now: datetime | None = None) -> int:
        return (await self.run_rollup(PeriodType.WEEKLY, now)).value

    async def aggregate_monthly(self, now: datetime | None = None) -> int:
        return (await self.run_rollup(PeriodType.MONTHLY, now)).value
