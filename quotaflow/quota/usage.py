"""Usage metering — real-time counters plus best-effort ledger writes.

Tracks, per owner (organization when present, otherwise user):
- API calls, workflow runs, plugin executions and errors (hourly + daily counters)
- Storage in MB (a gauge clamped at zero, snapshotted per hour)

Counters are authoritative for the current period. Every event also nudges
the HOURLY ledger row in a background task; ledger failures are logged and
dropped, never surfaced to the caller.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from datetime import datetime

from quotaflow.core.exceptions import CounterStoreError, LedgerError
from quotaflow.core.interfaces import CounterStore, UsageLedger
from quotaflow.core.logging import get_logger
from quotaflow.core.types import (
    OwnerContext,
    OwnerKind,
    Outcome,
    PeriodType,
    TrackingError,
    UsageLedgerRow,
    UsageMetric,
    UsageMetrics,
)
from quotaflow.quota.counters import (
    active_owners_key,
    counter_expiry,
    gauge_key,
    increment_for_period,
    owner_token,
    usage_key,
)
from quotaflow.quota.periods import local_now, period_end, period_start

log = get_logger(__name__)

# Metrics summed per period; storage is handled as a gauge.
ADDITIVE_METRICS: tuple[UsageMetric, ...] = (
    UsageMetric.API_CALLS,
    UsageMetric.WORKFLOW_RUNS,
    UsageMetric.PLUGIN_EXECUTIONS,
    UsageMetric.ERRORS,
)

_METRIC_FIELDS: dict[UsageMetric, str] = {
    UsageMetric.API_CALLS: "api_calls",
    UsageMetric.WORKFLOW_RUNS: "workflow_runs",
    UsageMetric.PLUGIN_EXECUTIONS: "plugin_executions",
    UsageMetric.STORAGE: "storage_used",
    UsageMetric.ERRORS: "errors",
}


def metrics_for(metric: UsageMetric, amount: int) -> UsageMetrics:
    """A UsageMetrics with only ``metric`` set to ``amount``."""
    return UsageMetrics(**{_METRIC_FIELDS[metric]: amount})


class UsageTracker:
    """Records metered usage events for owners."""

    def __init__(
        self,
        counters: CounterStore,
        ledger: UsageLedger,
        namespace: str = "quota",
        clock: Callable[[], datetime] | None = None,
        ledger_timeout: float = 5.0,
    ) -> None:
        self._counters = counters
        self._ledger = ledger
        self._namespace = namespace
        self._clock = clock or local_now
        self._ledger_timeout = ledger_timeout
        self._pending: set[asyncio.Task[None]] = set()

    @property
    def counters(self) -> CounterStore:
        return self._counters

    @property
    def ledger(self) -> UsageLedger:
        return self._ledger

    def now(self) -> datetime:
        return self._clock()

    # ── Keys ─────────────────────────────────────────────────────

    def daily_key(self, owner_kind: OwnerKind, owner_id: str, metric: UsageMetric, now: datetime) -> str:
        return usage_key(self._namespace, metric, PeriodType.DAILY, owner_kind, owner_id, now)

    def hourly_key(self, owner_kind: OwnerKind, owner_id: str, metric: UsageMetric, now: datetime) -> str:
        return usage_key(self._namespace, metric, PeriodType.HOURLY, owner_kind, owner_id, now)

    def storage_key(self, owner_kind: OwnerKind, owner_id: str) -> str:
        return gauge_key(self._namespace, UsageMetric.STORAGE.value, owner_kind, owner_id)

    def active_key(self, now: datetime) -> str:
        return active_owners_key(self._namespace, now)

    # ── Event Tracking ───────────────────────────────────────────

    async def track_api_call(self, owner: OwnerContext, count: int = 1) -> Outcome[int]:
        return await self.record(owner, UsageMetric.API_CALLS, count)

    async def track_workflow_run(self, owner: OwnerContext, count: int = 1) -> Outcome[int]:
        return await self.record(owner, UsageMetric.WORKFLOW_RUNS, count)

    async def track_plugin_execution(self, owner: OwnerContext, count: int = 1) -> Outcome[int]:
        return await self.record(owner, UsageMetric.PLUGIN_EXECUTIONS, count)

    async def track_error(self, owner: OwnerContext, count: int = 1) -> Outcome[int]:
        return await self.record(owner, UsageMetric.ERRORS, count)

    async def record(self, owner: OwnerContext, metric: UsageMetric, amount: int = 1) -> Outcome[int]:
        """Count ``amount`` units of an additive metric; returns today's total."""
        if metric == UsageMetric.STORAGE:
            return await self.track_storage_change(owner, amount)
        if amount <= 0:
            msg = f"usage amount must be positive, got {amount}"
            raise ValueError(msg)

        now = self._clock()
        kind, owner_id = owner.owner_kind, owner.owner_id
        error: TrackingError | None = None
        daily_total = 0
        try:
            daily_total = await increment_for_period(
                self._counters,
                self.daily_key(kind, owner_id, metric, now),
                amount,
                counter_expiry(PeriodType.DAILY, now),
            )
            await increment_for_period(
                self._counters,
                self.hourly_key(kind, owner_id, metric, now),
                amount,
                counter_expiry(PeriodType.HOURLY, now),
            )
            await self._counters.mark_active(
                self.active_key(now), owner_token(kind, owner_id), counter_expiry(PeriodType.HOURLY, now),
            )
        except CounterStoreError as exc:
            log.warning(
                "usage_counter_unavailable",
                owner_kind=kind.value,
                owner_id=owner_id,
                metric=metric.value,
                error=str(exc),
            )
            error = TrackingError(component="counter_store", reason=str(exc))

        self.schedule_ledger_write(kind, owner_id, now, metrics_for(metric, amount))
        log.debug("usage_recorded", owner_id=owner_id, metric=metric.value, amount=amount)
        return Outcome(daily_total, error)

    async def track_storage_change(self, owner: OwnerContext, delta_mb: int) -> Outcome[int]:
        """Adjust the storage gauge by ``delta_mb``; the result never drops below zero."""
        now = self._clock()
        kind, owner_id = owner.owner_kind, owner.owner_id
        hourly_expiry = counter_expiry(PeriodType.HOURLY, now)
        try:
            new_value = await self._counters.adjust_gauge(self.storage_key(kind, owner_id), delta_mb)
            await self._counters.set_value(
                self.hourly_key(kind, owner_id, UsageMetric.STORAGE, now), new_value, hourly_expiry,
            )
            await self._counters.mark_active(self.active_key(now), owner_token(kind, owner_id), hourly_expiry)
        except CounterStoreError as exc:
            log.warning(
                "storage_counter_unavailable",
                owner_kind=kind.value,
                owner_id=owner_id,
                delta_mb=delta_mb,
                error=str(exc),
            )
            self.schedule_ledger_write(kind, owner_id, now, UsageMetrics(storage_used=delta_mb))
            return Outcome(0, TrackingError(component="counter_store", reason=str(exc)))

        self.schedule_ledger_write(kind, owner_id, now, UsageMetrics(), storage_value=new_value)
        log.debug("storage_changed", owner_id=owner_id, delta_mb=delta_mb, storage_mb=new_value)
        return Outcome(new_value)

    # ── Reads ────────────────────────────────────────────────────

    async def daily_count(self, owner: OwnerContext, metric: UsageMetric) -> int:
        """Today's counter value. Raises CounterStoreError."""
        now = self._clock()
        value = await self._counters.get(self.daily_key(owner.owner_kind, owner.owner_id, metric, now))
        return value or 0

    async def storage_used(self, owner: OwnerContext) -> int:
        """Current storage gauge in MB. Raises CounterStoreError."""
        value = await self._counters.get(self.storage_key(owner.owner_kind, owner.owner_id))
        return value or 0

    async def real_time_usage(self, owner: OwnerContext) -> Outcome[UsageMetrics]:
        """Today's usage from counters, falling back to the ledger."""
        now = self._clock()
        kind, owner_id = owner.owner_kind, owner.owner_id
        keys = [self.daily_key(kind, owner_id, metric, now) for metric in ADDITIVE_METRICS]
        keys.append(self.storage_key(kind, owner_id))
        try:
            values = await self._counters.get_many(keys)
        except CounterStoreError as exc:
            log.warning("real_time_usage_fallback", owner_id=owner_id, error=str(exc))
            return await self._ledger_usage_today(owner, now, TrackingError("counter_store", str(exc)))

        api_calls, workflow_runs, plugin_executions, errors, storage = (v or 0 for v in values)
        return Outcome(UsageMetrics(
            api_calls=api_calls,
            workflow_runs=workflow_runs,
            plugin_executions=plugin_executions,
            storage_used=storage,
            errors=errors,
        ))

    async def _ledger_usage_today(
        self,
        owner: OwnerContext,
        now: datetime,
        error: TrackingError,
    ) -> Outcome[UsageMetrics]:
        try:
            rows = await self._ledger.rows(
                PeriodType.HOURLY,
                period_start(PeriodType.DAILY, now),
                period_end(PeriodType.DAILY, now),
                owner.owner_kind,
                owner.owner_id,
            )
        except LedgerError as exc:
            log.error("ledger_usage_unavailable", owner_id=owner.owner_id, error=str(exc))
            return Outcome(UsageMetrics(), TrackingError("ledger", str(exc)))

        total = UsageMetrics()
        for row in rows:
            total = total.merge(row.metrics)
        return Outcome(total, error)

    async def usage_history(
        self,
        owner: OwnerContext,
        period_type: PeriodType,
        start: datetime,
        end: datetime,
    ) -> list[UsageLedgerRow]:
        """Ledger rows for ``owner`` in ``[start, end)``. Raises LedgerError."""
        return await self._ledger.rows(period_type, start, end, owner.owner_kind, owner.owner_id)

    # ── Ledger Nudges ────────────────────────────────────────────

    def schedule_ledger_write(
        self,
        owner_kind: OwnerKind,
        owner_id: str,
        now: datetime,
        deltas: UsageMetrics,
        storage_value: int | None = None,
    ) -> None:
        """Fire-and-forget HOURLY ledger increment."""
        task = asyncio.create_task(
            self._write_ledger(owner_kind, owner_id, now, deltas, storage_value),
        )
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _write_ledger(
        self,
        owner_kind: OwnerKind,
        owner_id: str,
        now: datetime,
        deltas: UsageMetrics,
        storage_value: int | None,
    ) -> None:
        try:
            await asyncio.wait_for(
                self._ledger.increment(
                    owner_kind,
                    owner_id,
                    PeriodType.HOURLY,
                    period_start(PeriodType.HOURLY, now),
                    deltas,
                    storage_value=storage_value,
                ),
                timeout=self._ledger_timeout,
            )
        except Exception as exc:
            log.warning(
                "ledger_write_dropped",
                owner_kind=owner_kind.value,
                owner_id=owner_id,
                error=str(exc) or type(exc).__name__,
            )

    @property
    def pending_writes(self) -> int:
        return len(self._pending)

    async def drain(self) -> None:
        """Wait for in-flight ledger writes (shutdown, tests)."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)
