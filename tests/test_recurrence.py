"""Tests for recurrence rules."""

from __future__ import annotations

from datetime import UTC, datetime

import pytest

from errandly.recurrence import add_months, next_occurrence, parse_time_of_day, sunday_based_weekday


def _dt(*args):
    return datetime(*args, tzinfo=UTC)


def test_parse_time_of_day():
    assert parse_time_of_day("09:00") == (9, 0)
    assert parse_time_of_day("23:59") == (23, 59)
    for bad in ("9:00", "24:00", "12:60", "noon", ""):
        with pytest.raises(ValueError):
            parse_time_of_day(bad)


def test_sunday_based_weekday():
    # 2026-01-04 is a Sunday
    assert sunday_based_weekday(_dt(2026, 1, 4)) == 0
    assert sunday_based_weekday(_dt(2026, 1, 7)) == 3
    assert sunday_based_weekday(_dt(2026, 1, 10)) == 6


def test_daily_later_today():
    assert next_occurrence("daily", "18:30", after=_dt(2026, 1, 7, 9, 0)) == _dt(2026, 1, 7, 18, 30)


def test_daily_rolls_to_tomorrow():
    assert next_occurrence("daily", "08:00", after=_dt(2026, 1, 7, 9, 0)) == _dt(2026, 1, 8, 8, 0)


def test_weekly_next_wednesday():
    # Monday 2026-01-05 -> Wednesday 2026-01-07 09:00
    result = next_occurrence("weekly", "09:00", 3, after=_dt(2026, 1, 5, 12, 0))
    assert result == _dt(2026, 1, 7, 9, 0)


def test_weekly_same_day_after_time_skips_a_week():
    result = next_occurrence("weekly", "09:00", 3, after=_dt(2026, 1, 7, 9, 0))
    assert result == _dt(2026, 1, 14, 9, 0)


def test_weekly_requires_day_of_week():
    with pytest.raises(ValueError):
        next_occurrence("weekly", "09:00", after=_dt(2026, 1, 5))


def test_biweekly_anchored_on_previous():
    previous = _dt(2026, 1, 7, 9, 0)
    # Tick runs late, two days after the occurrence
    result = next_occurrence("biweekly", "09:00", 3, after=_dt(2026, 1, 9, 10, 0), previous=previous)
    assert result == _dt(2026, 1, 21, 9, 0)


def test_biweekly_catches_up_after_long_gap():
    previous = _dt(2026, 1, 7, 9, 0)
    result = next_occurrence("biweekly", "09:00", 3, after=_dt(2026, 2, 10), previous=previous)
    assert result == _dt(2026, 2, 18, 9, 0)


def test_monthly_clamps_to_month_end():
    result = next_occurrence("monthly", "10:00", after=_dt(2026, 1, 31, 12, 0))
    assert result == _dt(2026, 2, 28, 10, 0)


def test_monthly_anchored_on_previous():
    previous = _dt(2026, 3, 15, 10, 0)
    result = next_occurrence("monthly", "10:00", after=_dt(2026, 3, 16), previous=previous)
    assert result == _dt(2026, 4, 15, 10, 0)


def test_result_is_strictly_after_previous():
    previous = _dt(2026, 1, 7, 9, 0)
    result = next_occurrence("daily", "09:00", after=_dt(2026, 1, 1), previous=previous)
    assert result == _dt(2026, 1, 8, 9, 0)


def test_naive_datetimes_are_utc():
    result = next_occurrence("daily", "09:00", after=datetime(2026, 1, 7, 8, 0))
    assert result == _dt(2026, 1, 7, 9, 0)


def test_add_months_across_year():
    assert add_months(_dt(2026, 11, 30), 3) == _dt(2027, 2, 28)
