"""
Tests for the business calendar.
"""

from datetime import datetime, time, timedelta, timezone

import pytest

from repairshopr_sync.business_hours import (
    BusinessCalendar,
    CalendarConfigError,
    format_business_minutes,
)

from conftest import utc


class TestBusinessMinutes:
    """Tests for business_minutes_between."""

    def test_same_day_within_hours(self, calendar):
        """Monday 09:00 -> 15:00 is six business hours."""
        assert calendar.business_minutes_between(utc(2024, 1, 15, 9), utc(2024, 1, 15, 15)) == 360

    def test_spans_weekend(self, calendar):
        """Friday 16:00 -> Monday 10:00 counts 2h Friday + 2h Monday."""
        assert calendar.business_minutes_between(utc(2024, 1, 19, 16), utc(2024, 1, 22, 10)) == 240

    def test_reversed_interval_is_zero(self, calendar):
        assert calendar.business_minutes_between(utc(2024, 1, 15, 15), utc(2024, 1, 15, 9)) == 0

    def test_equal_endpoints_is_zero(self, calendar):
        assert calendar.business_minutes_between(utc(2024, 1, 15, 9), utc(2024, 1, 15, 9)) == 0

    def test_entirely_outside_hours(self, calendar):
        """Saturday and a weeknight contribute nothing."""
        assert calendar.business_minutes_between(utc(2024, 1, 20, 9), utc(2024, 1, 20, 17)) == 0
        assert calendar.business_minutes_between(utc(2024, 1, 15, 19), utc(2024, 1, 16, 7)) == 0

    def test_clamped_to_window(self, calendar):
        """Time before 08:00 and after 18:00 is ignored."""
        assert calendar.business_minutes_between(utc(2024, 1, 15, 6), utc(2024, 1, 15, 20)) == 600

    def test_full_week(self, calendar):
        start = utc(2024, 1, 15)
        assert calendar.business_minutes_between(start, start + timedelta(days=7)) == 5 * 600

    def test_seconds_are_truncated(self, calendar):
        start = datetime(2024, 1, 15, 9, 0, 59, tzinfo=timezone.utc)
        end = datetime(2024, 1, 15, 9, 10, 1, tzinfo=timezone.utc)
        assert calendar.business_minutes_between(start, end) == 10

    def test_additive_over_split_points(self, calendar):
        """a->b plus b->c always equals a->c."""
        a = datetime(2024, 1, 15, 7, 13, 44, tzinfo=timezone.utc)
        c = datetime(2024, 1, 24, 16, 2, 9, tzinfo=timezone.utc)
        whole = calendar.business_minutes_between(a, c)
        for hours in (1, 5, 26, 49, 100, 170):
            b = a + timedelta(hours=hours, seconds=37)
            assert (
                calendar.business_minutes_between(a, b) + calendar.business_minutes_between(b, c)
                == whole
            )

    def test_naive_datetimes_treated_as_utc(self, calendar):
        assert calendar.business_minutes_between(
            datetime(2024, 1, 15, 9), datetime(2024, 1, 15, 10)
        ) == 60

    def test_local_timezone_window(self):
        """08:00-18:00 in Johannesburg is 06:00-16:00 UTC."""
        cal = BusinessCalendar(timezone_name="Africa/Johannesburg")
        assert cal.business_minutes_between(utc(2024, 1, 15, 5), utc(2024, 1, 15, 7)) == 60

    def test_custom_work_week(self):
        cal = BusinessCalendar(work_days=frozenset({5}), day_start=time(9), day_end=time(13))
        assert cal.business_minutes_between(utc(2024, 1, 15), utc(2024, 1, 22)) == 240


class TestCalendarConfig:
    """Tests for calendar validation."""

    def test_empty_week_rejected(self):
        with pytest.raises(CalendarConfigError):
            BusinessCalendar(work_days=frozenset())

    def test_weekday_out_of_range(self):
        with pytest.raises(CalendarConfigError):
            BusinessCalendar(work_days=frozenset({0, 7}))

    def test_start_after_end(self):
        with pytest.raises(CalendarConfigError):
            BusinessCalendar(day_start=time(18), day_end=time(8))

    def test_unknown_timezone(self):
        with pytest.raises(CalendarConfigError):
            BusinessCalendar(timezone_name="Mars/Olympus_Mons")

    def test_minutes_per_day(self, calendar):
        assert calendar.minutes_per_day == 600

    def test_is_business_time(self, calendar):
        assert calendar.is_business_time(utc(2024, 1, 15, 8))
        assert not calendar.is_business_time(utc(2024, 1, 15, 18))
        assert not calendar.is_business_time(utc(2024, 1, 21, 12))


class TestFormatBusinessMinutes:
    """Tests for duration rendering."""

    def test_minutes(self):
        assert format_business_minutes(45) == "45m"

    def test_hours(self):
        assert format_business_minutes(390) == "6h 30m"
        assert format_business_minutes(120) == "2h"

    def test_days(self):
        assert format_business_minutes(27 * 60) == "3d 3h"
        assert format_business_minutes(24 * 60) == "3d"
