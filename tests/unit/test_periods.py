"""Tests for the period clock — calendar windows and keys."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from zoneinfo import ZoneInfo

import pytest

from quotaflow.core.types import PeriodType
from quotaflow.quota.periods import (
    next_period_start,
    period_end,
    period_key,
    period_start,
    previous_period_start,
    seconds_until,
)

UTC = timezone.utc
NOW = datetime(2026, 10, 17, 14, 37, 12, 500, tzinfo=UTC)  # a Saturday


class TestPeriodStart:
    def test_hourly(self) -> None:
        assert period_start(PeriodType.HOURLY, NOW) == datetime(2026, 10, 17, 14, tzinfo=UTC)

    def test_daily(self) -> None:
        assert period_start(PeriodType.DAILY, NOW) == datetime(2026, 10, 17, tzinfo=UTC)

    def test_weekly_starts_monday(self) -> None:
        start = period_start(PeriodType.WEEKLY, NOW)
        assert start == datetime(2026, 10, 12, tzinfo=UTC)
        assert start.weekday() == 0

    def test_weekly_crossing_month_boundary(self) -> None:
        early_month = datetime(2026, 11, 2, 9, tzinfo=UTC)  # Monday
        assert period_start(PeriodType.WEEKLY, early_month) == datetime(2026, 11, 2, tzinfo=UTC)
        sunday = datetime(2026, 11, 1, 9, tzinfo=UTC)
        assert period_start(PeriodType.WEEKLY, sunday) == datetime(2026, 10, 26, tzinfo=UTC)

    def test_monthly(self) -> None:
        assert period_start(PeriodType.MONTHLY, NOW) == datetime(2026, 10, 1, tzinfo=UTC)

    def test_naive_datetime_rejected(self) -> None:
        with pytest.raises(ValueError):
            period_start(PeriodType.DAILY, datetime(2026, 10, 17, 12))

    def test_local_midnight(self) -> None:
        tokyo = ZoneInfo("Asia/Tokyo")
        late_utc = datetime(2026, 10, 17, 20, tzinfo=UTC)  # already the 18th in Tokyo
        start = period_start(PeriodType.DAILY, late_utc.astimezone(tokyo))
        assert start == datetime(2026, 10, 18, tzinfo=tokyo)


class TestPeriodEnd:
    def test_end_is_next_start(self) -> None:
        for period_type in PeriodType:
            assert period_end(period_type, NOW) == next_period_start(period_type, NOW)

    def test_monthly_rolls_year(self) -> None:
        december = datetime(2026, 12, 15, tzinfo=UTC)
        assert period_end(PeriodType.MONTHLY, december) == datetime(2027, 1, 1, tzinfo=UTC)

    def test_weekly_spans_seven_days(self) -> None:
        start = period_start(PeriodType.WEEKLY, NOW)
        assert period_end(PeriodType.WEEKLY, NOW) - start == timedelta(days=7)

    def test_hourly_across_dst_fall_back(self) -> None:
        new_york = ZoneInfo("America/New_York")
        before_change = datetime(2026, 11, 1, 1, 30, tzinfo=new_york)  # first 01:30, EDT
        start = period_start(PeriodType.HOURLY, before_change)
        end = period_end(PeriodType.HOURLY, before_change)
        assert end.astimezone(UTC) - start.astimezone(UTC) == timedelta(hours=1)

    def test_previous_hour_across_dst_fall_back(self) -> None:
        new_york = ZoneInfo("America/New_York")
        after_change = datetime(2026, 11, 1, 2, 5, tzinfo=new_york)  # 07:05 UTC, EST
        previous = previous_period_start(PeriodType.HOURLY, after_change)
        assert previous.astimezone(UTC) == datetime(2026, 11, 1, 6, tzinfo=UTC)

        repeated_hour = datetime(2026, 11, 1, 1, 5, tzinfo=new_york, fold=1)  # second 01:05, EST
        previous = previous_period_start(PeriodType.HOURLY, repeated_hour)
        assert previous.astimezone(UTC) == datetime(2026, 11, 1, 5, tzinfo=UTC)

    def test_previous_period(self) -> None:
        just_after_midnight = datetime(2026, 10, 17, 0, 30, tzinfo=UTC)
        assert previous_period_start(PeriodType.DAILY, just_after_midnight) == datetime(2026, 10, 16, tzinfo=UTC)
        assert previous_period_start(PeriodType.HOURLY, just_after_midnight) == datetime(2026, 10, 16, 23, tzinfo=UTC)
        assert previous_period_start(PeriodType.MONTHLY, NOW) == datetime(2026, 9, 1, tzinfo=UTC)


class TestPeriodKey:
    def test_keys(self) -> None:
        assert period_key(PeriodType.HOURLY, NOW) == "2026-10-17T14"
        assert period_key(PeriodType.DAILY, NOW) == "2026-10-17"
        assert period_key(PeriodType.WEEKLY, NOW) == "2026-W42"
        assert period_key(PeriodType.MONTHLY, NOW) == "2026-10"

    def test_repeated_local_hour_gets_its_own_key(self) -> None:
        new_york = ZoneInfo("America/New_York")
        first = datetime(2026, 11, 1, 1, 30, tzinfo=new_york)  # EDT
        second = datetime(2026, 11, 1, 1, 30, tzinfo=new_york, fold=1)  # EST
        assert period_key(PeriodType.HOURLY, first) == "2026-11-01T05"
        assert period_key(PeriodType.HOURLY, second) == "2026-11-01T06"
        assert period_key(PeriodType.DAILY, first) == period_key(PeriodType.DAILY, second)

    def test_hourly_key_names_utc_hour(self) -> None:
        tokyo = NOW.astimezone(ZoneInfo("Asia/Tokyo"))
        assert period_key(PeriodType.HOURLY, tokyo) == period_key(PeriodType.HOURLY, NOW)

    def test_iso_week_spanning_new_year(self) -> None:
        new_year = datetime(2027, 1, 1, 12, tzinfo=UTC)  # Friday
        assert period_key(PeriodType.WEEKLY, new_year) == "2026-W53"
        assert period_start(PeriodType.WEEKLY, new_year) == datetime(2026, 12, 28, tzinfo=UTC)

    def test_same_window_same_key(self) -> None:
        later = NOW + timedelta(minutes=20)
        assert period_key(PeriodType.HOURLY, later) == period_key(PeriodType.HOURLY, NOW)
        assert period_key(PeriodType.HOURLY, NOW + timedelta(hours=1)) != period_key(PeriodType.HOURLY, NOW)


class TestSecondsUntil:
    def test_positive(self) -> None:
        assert seconds_until(NOW + timedelta(seconds=90), NOW) == 90

    def test_never_negative(self) -> None:
        assert seconds_until(NOW - timedelta(hours=1), NOW) == 0
