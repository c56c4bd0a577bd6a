from datetime import datetime, timezone
from zoneinfo import ZoneInfo

import pytest

from backend.app.services.deadline_service import (
    MonthlyOverride,
    as_utc,
    clamp_cutoff_day,
    default_deadline,
    deadline_zone,
    next_period,
    parse_month_name,
    resolve_deadline,
)


def test_parse_month_name_accepts_full_and_short_names():
    assert parse_month_name("January") == 0
    assert parse_month_name("jan") == 0
    assert parse_month_name(" Dec ") == 11
    assert parse_month_name("Sept") == -1
    assert parse_month_name("") == -1
    assert parse_month_name(None) == -1


def test_default_deadline_is_end_of_cutoff_day_next_month():
    deadline = resolve_deadline("Jan", 2026, 6)
    assert deadline == datetime(2026, 2, 6, 23, 59, 59, 999000, tzinfo=timezone.utc)


def test_december_rolls_into_next_year():
    deadline = resolve_deadline("December", 2025, 6)
    assert deadline == datetime(2026, 1, 6, 23, 59, 59, 999000, tzinfo=timezone.utc)


def test_cutoff_day_is_clamped_to_a_day_every_month_has():
    assert clamp_cutoff_day(31) == 28
    assert clamp_cutoff_day(0) == 6
    assert clamp_cutoff_day(None) == 6
    assert clamp_cutoff_day(-3) == 1

    deadline = resolve_deadline("Jan", 2026, 31)
    assert deadline.day == 28
    assert deadline.month == 2


def test_override_lock_date_wins_verbatim():
    lock_date = datetime(2026, 3, 31, 17, 0, tzinfo=timezone.utc)
    overrides = [MonthlyOverride(month_index=1, year=2026, lock_date=lock_date)]

    assert resolve_deadline("Feb", 2026, 6, overrides) == lock_date
    # Other periods keep the default rule.
    assert resolve_deadline("Mar", 2026, 6, overrides) == datetime(
        2026, 4, 6, 23, 59, 59, 999000, tzinfo=timezone.utc
    )


def test_force_open_override_without_date_keeps_default_deadline():
    overrides = [MonthlyOverride(month_index=0, year=2026, lock_date=None, is_force_open=True)]
    assert resolve_deadline("Jan", 2026, 6, overrides) == datetime(
        2026, 2, 6, 23, 59, 59, 999000, tzinfo=timezone.utc
    )


def test_bad_period_input_has_no_deadline():
    assert resolve_deadline("Foo", 2026, 6) is None
    assert resolve_deadline("Jan", None, 6) is None
    assert resolve_deadline(None, 2026, 6) is None


def test_deadline_respects_configured_timezone():
    deadline = default_deadline(0, 2026, 6, ZoneInfo("Asia/Jakarta"))
    assert deadline == datetime(2026, 2, 6, 16, 59, 59, 999000, tzinfo=timezone.utc)


def test_unknown_timezone_falls_back_to_utc(monkeypatch):
    monkeypatch.setenv("LOCK_TIMEZONE", "Mars/Olympus_Mons")
    assert deadline_zone() == timezone.utc


def test_next_period_wraps_the_year():
    assert next_period("Jan", 2026) == ("Feb", 2026)
    assert next_period("December", 2026) == ("Jan", 2027)
    with pytest.raises(ValueError):
        next_period("Smarch", 2026)


def test_as_utc_treats_naive_values_as_utc():
    naive = datetime(2026, 1, 1, 12, 0)
    assert as_utc(naive) == datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)
    assert as_utc(None) is None
