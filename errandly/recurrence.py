"""Recurrence rules for repeating tasks.

All times are UTC. ``day_of_week`` counts from Sunday (0) to Saturday (6).
"""

from __future__ import annotations

import calendar
import re
from datetime import datetime, timedelta

from errandly.db_models import Frequency
from errandly.utils import as_utc

_TIME_RE = re.compile(r"^([01]\d|2[0-3]):([0-5]\d)$")

WEEKDAY_NAMES = ["Sunday", "Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday"]


def parse_time_of_day(value: str) -> tuple[int, int]:
    match = _TIME_RE.match(value or "")
    if not match:
        raise ValueError(f"time_of_day must be HH:MM, got {value!r}")
    return int(match.group(1)), int(match.group(2))


def sunday_based_weekday(dt: datetime) -> int:
    # datetime.weekday() is Monday=0
    return (dt.weekday() + 1) % 7


def add_months(dt: datetime, months: int) -> datetime:
    month_index = dt.month - 1 + months
    year = dt.year + month_index // 12
    month = month_index % 12 + 1
    day = min(dt.day, calendar.monthrange(year, month)[1])
    return dt.replace(year=year, month=month, day=day)


def next_occurrence(
    frequency: Frequency | str,
    time_of_day: str,
    day_of_week: int | None = None,
    *,
    after: datetime,
    previous: datetime | None = None,
) -> datetime:
    """Return the first occurrence strictly after ``after``.

    ``previous`` anchors biweekly and monthly schedules to the last
    occurrence so the cadence does not drift when a tick runs late.
    """
    frequency = Frequency(frequency)
    after = as_utc(after)
    previous = as_utc(previous)
    if previous is not None and previous > after:
        after = previous
    hour, minute = parse_time_of_day(time_of_day)

    if frequency == Frequency.daily:
        candidate = after.replace(hour=hour, minute=minute, second=0, microsecond=0)
        if candidate <= after:
            candidate += timedelta(days=1)
        return candidate

    if frequency in (Frequency.weekly, Frequency.biweekly):
        if day_of_week is None or not 0 <= day_of_week <= 6:
            raise ValueError("day_of_week (0-6) is required for weekly schedules")
        step = timedelta(days=7 if frequency == Frequency.weekly else 14)
        if previous is not None and frequency == Frequency.biweekly:
            candidate = previous.replace(hour=hour, minute=minute, second=0, microsecond=0)
            shift = (day_of_week - sunday_based_weekday(candidate)) % 7
            candidate += timedelta(days=shift)
            while candidate <= after:
                candidate += step
            return candidate
        candidate = after.replace(hour=hour, minute=minute, second=0, microsecond=0)
        candidate += timedelta(days=(day_of_week - sunday_based_weekday(candidate)) % 7)
        if candidate <= after:
            candidate += step
        return candidate

    # monthly
    base = previous or after
    base = base.replace(hour=hour, minute=minute, second=0, microsecond=0)
    months = 1
    candidate = add_months(base, months)
    while candidate <= after:
        months += 1
        candidate = add_months(base, months)
    return candidate
