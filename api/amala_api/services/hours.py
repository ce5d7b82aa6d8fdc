from __future__ import annotations

import re

from amala_api.schemas.locations import DayHours, default_weekly_hours
from amala_api.schemas.places import OpeningHoursPeriod, OpeningHoursPoint

# Places day index: 0 = sunday.
PLACES_DAY_NAMES: tuple[str, ...] = ("sunday", "monday", "tuesday", "wednesday", "thursday", "friday", "saturday")
DEFAULT_CLOSE_TIME = "23:00"

_COMPACT_TIME_RE = re.compile(r"^(\d{2})(\d{2})$")
_COLON_TIME_RE = re.compile(r"^(\d{1,2}):(\d{2})$")


def hours_from_periods(periods: list[OpeningHoursPeriod]) -> dict[str, DayHours] | None:
    """Translate Places opening periods into the seven-day hours map.

    Returns None when no period could be read, so callers keep their own hours.
    The first period seen for a day wins; days without a period keep the default
    schedule and stay closed.
    """
    matched: dict[str, DayHours] = {}
    for period in periods:
        if period.open is None or period.open.day is None:
            continue
        day = PLACES_DAY_NAMES[period.open.day]
        if day in matched:
            continue
        open_time = format_point_time(period.open)
        if open_time is None:
            continue
        close_time = format_point_time(period.close) if period.close is not None else None
        matched[day] = DayHours(open=open_time, close=close_time or DEFAULT_CLOSE_TIME, is_open=True)

    if not matched:
        return None

    hours = default_weekly_hours()
    hours.update(matched)
    return hours


def format_point_time(point: OpeningHoursPoint) -> str | None:
    if point.hour is not None:
        if point.hour >= 24:
            return "23:59"
        return f"{point.hour:02d}:{point.minute or 0:02d}"
    if point.time:
        return parse_time_text(point.time)
    return None


def parse_time_text(raw: str) -> str | None:
    value = raw.strip()
    match = _COMPACT_TIME_RE.match(value) or _COLON_TIME_RE.match(value)
    if not match:
        return None
    hour, minute = int(match.group(1)), int(match.group(2))
    if minute > 59:
        return None
    if hour >= 24:
        return "23:59"
    return f"{hour:02d}:{minute:02d}"
