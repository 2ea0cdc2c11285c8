"""
Business Calendar

Converts wall-clock intervals into "business minutes": minutes that fall
inside the configured work week and daily work window. Every wait-time,
active-time and efficiency figure in the system is computed with this module,
so it is kept free of I/O and side effects.
"""

from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta, timezone, tzinfo
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError


# Monday=0 ... Sunday=6 (datetime.weekday convention)
DEFAULT_WORK_DAYS = frozenset({0, 1, 2, 3, 4})
DEFAULT_DAY_START = time(8, 0)
DEFAULT_DAY_END = time(18, 0)


class CalendarConfigError(ValueError):
    """Raised when the work week/day definition is invalid."""
    pass


def resolve_timezone(name: str) -> tzinfo:
    """Resolve a zone name, treating UTC specially so no tz database is needed."""
    if name.upper() in ("UTC", "Z", "ETC/UTC"):
        return timezone.utc
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError) as e:
        raise CalendarConfigError(f"Unknown timezone '{name}'") from e


def _truncate_to_minute(dt: datetime) -> datetime:
    return dt.replace(second=0, microsecond=0)


@dataclass(frozen=True)
class BusinessCalendar:
    """
    Work week + work day definition.

    Example:
        cal = BusinessCalendar()  # Mon-Fri, 08:00-18:00, UTC
        cal.business_minutes_between(monday_9am, monday_3pm)  # 360
    """
    work_days: frozenset[int] = DEFAULT_WORK_DAYS
    day_start: time = DEFAULT_DAY_START
    day_end: time = DEFAULT_DAY_END
    timezone_name: str = "UTC"
    _tz: tzinfo = field(init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        days = frozenset(self.work_days)
        if not days:
            raise CalendarConfigError("work_days must contain at least one weekday")
        bad = sorted(d for d in days if not 0 <= d <= 6)
        if bad:
            raise CalendarConfigError(f"work_days out of range 0-6: {bad}")
        if self.day_start.tzinfo is not None or self.day_end.tzinfo is not None:
            raise CalendarConfigError("day_start/day_end must be naive clock times")
        if self.day_start >= self.day_end:
            raise CalendarConfigError(
                f"day_start {self.day_start} must be before day_end {self.day_end}"
            )
        object.__setattr__(self, "work_days", days)
        object.__setattr__(self, "_tz", resolve_timezone(self.timezone_name))

    @property
    def tz(self) -> tzinfo:
        return self._tz

    @property
    def minutes_per_day(self) -> int:
        start = datetime.combine(date.min, self.day_start)
        end = datetime.combine(date.min, self.day_end)
        return int((end - start).total_seconds() // 60)

    def localize(self, dt: datetime) -> datetime:
        """Convert to the calendar's zone. Naive datetimes are taken as UTC."""
        if dt.tzinfo is None:
            dt = dt.replace(tzinfo=timezone.utc)
        return dt.astimezone(self._tz)

    def _window(self, day: date) -> tuple[datetime, datetime]:
        return (
            datetime.combine(day, self.day_start, tzinfo=self._tz),
            datetime.combine(day, self.day_end, tzinfo=self._tz),
        )

    def is_business_time(self, dt: datetime) -> bool:
        local = self.localize(dt)
        if local.weekday() not in self.work_days:
            return False
        return self.day_start <= local.time().replace(tzinfo=None) < self.day_end

    def business_minutes_between(self, start: datetime, end: datetime) -> int:
        """
        Whole business minutes in [start, end].

        Both ends are truncated to the minute before the day-by-day walk,
        so a->b plus b->c always equals a->c. Returns 0 when end <= start.
        """
        start = _truncate_to_minute(self.localize(start))
        end = _truncate_to_minute(self.localize(end))
        if end <= start:
            return 0

        total_seconds = 0.0
        day = start.date()
        last_day = end.date()
        while day <= last_day:
            if day.weekday() in self.work_days:
                window_start, window_end = self._window(day)
                effective_start = max(start, window_start)
                effective_end = min(end, window_end)
                if effective_start < effective_end:
                    # Subtract in UTC: same-zone aware subtraction ignores DST shifts
                    total_seconds += (
                        effective_end.astimezone(timezone.utc)
                        - effective_start.astimezone(timezone.utc)
                    ).total_seconds()
            day += timedelta(days=1)

        return int(total_seconds // 60)


def format_business_minutes(minutes: int, hours_per_day: int = 8) -> str:
    """
    Render a business-minute duration the way the dashboard shows it.

    Under an hour: "45m"; under a day: "6h 30m"; otherwise whole business
    days of `hours_per_day` plus leftover hours: "2d 3h".
    """
    if minutes < 60:
        return f"{max(0, minutes)}m"
    hours, rem = divmod(minutes, 60)
    if hours < 24:
        return f"{hours}h {rem}m" if rem else f"{hours}h"
    days, leftover = divmod(hours, hours_per_day)
    return f"{days}d {leftover}h" if leftover else f"{days}d"
