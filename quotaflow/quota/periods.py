"""Period clock — calendar windows for counters and ledger rows.

All functions are pure. ``now`` must be timezone-aware; windows are computed
in ``now``'s own timezone, so pass a local datetime to get local midnight.

Weeks are ISO weeks: they start Monday 00:00 and may span two months.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone, tzinfo
from zoneinfo import ZoneInfo

from quotaflow.core.types import PeriodType


def _require_aware(now: datetime) -> None:
    if now.tzinfo is None or now.utcoffset() is None:
        msg = "period computations require a timezone-aware datetime"
        raise ValueError(msg)


def local_now(tz: str | tzinfo = "UTC") -> datetime:
    """Current time in ``tz`` (IANA name or tzinfo)."""
    zone = ZoneInfo(tz) if isinstance(tz, str) else tz
    return datetime.now(zone)


def period_start(period_type: PeriodType, now: datetime) -> datetime:
    """Inclusive start of the window containing ``now``."""
    _require_aware(now)
    if period_type == PeriodType.HOURLY:
        return now.replace(minute=0, second=0, microsecond=0)

    midnight = now.replace(hour=0, minute=0, second=0, microsecond=0)
    if period_type == PeriodType.DAILY:
        return midnight
    if period_type == PeriodType.WEEKLY:
        return midnight - timedelta(days=midnight.weekday())
    if period_type == PeriodType.MONTHLY:
        return midnight.replace(day=1)

    msg = f"Unknown period type: {period_type}"
    raise ValueError(msg)


def next_period_start(period_type: PeriodType, now: datetime) -> datetime:
    """Start of the window following the one containing ``now``."""
    start = period_start(period_type, now)

    if period_type == PeriodType.HOURLY:
        # Step in UTC so DST transitions never yield a skipped or repeated hour.
        following = start.astimezone(timezone.utc) + timedelta(hours=1)
        return following.astimezone(start.tzinfo)
    if period_type == PeriodType.DAILY:
        following = start + timedelta(days=1)
    elif period_type == PeriodType.WEEKLY:
        following = start + timedelta(days=7)
    elif start.month == 12:
        following = start.replace(year=start.year + 1, month=1)
    else:
        following = start.replace(month=start.month + 1)

    return following.replace(hour=0, minute=0, second=0, microsecond=0)


def period_end(period_type: PeriodType, now: datetime) -> datetime:
    """Exclusive end of the window containing ``now``."""
    return next_period_start(period_type, now)


def previous_period_start(period_type: PeriodType, now: datetime) -> datetime:
    """Start of the window immediately before the one containing ``now``."""
    start = period_start(period_type, now)
    if period_type == PeriodType.HOURLY:
        preceding = start.astimezone(timezone.utc) - timedelta(hours=1)
        return preceding.astimezone(start.tzinfo)
    return period_start(period_type, start - timedelta(microseconds=1))


def period_key(period_type: PeriodType, now: datetime) -> str:
    """Calendar label of the window: ``2026-10-17T14``, ``2026-10-17``, ``2026-W42``, ``2026-10``.

    Hourly labels name the UTC hour, so the repeated local hour of a DST
    fall-back gets its own label.
    """
    start = period_start(period_type, now)
    if period_type == PeriodType.HOURLY:
        return start.astimezone(timezone.utc).strftime("%Y-%m-%dT%H")
    if period_type == PeriodType.DAILY:
        return start.strftime("%Y-%m-%d")
    if period_type == PeriodType.WEEKLY:
        iso_year, iso_week, _ = start.isocalendar()
        return f"{iso_year}-W{iso_week:02d}"
    return start.strftime("%Y-%m")


def seconds_until(instant: datetime, now: datetime) -> int:
    """Whole seconds from ``now`` to ``instant``, never negative."""
    _require_aware(now)
    return max(0, int((instant - now).total_seconds()))
