from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone, tzinfo
from typing import Iterable, Optional, Tuple
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from backend.app.api.config import lock_timezone

logger = logging.getLogger(__name__)

MONTH_NAMES = [
    "January",
    "February",
    "March",
    "April",
    "May",
    "June",
    "July",
    "August",
    "September",
    "October",
    "November",
    "December",
]
MONTH_SHORT_NAMES = [name[:3] for name in MONTH_NAMES]

_MONTH_LOOKUP = {name.lower(): idx for idx, name in enumerate(MONTH_NAMES)}
_MONTH_LOOKUP.update({name.lower(): idx for idx, name in enumerate(MONTH_SHORT_NAMES)})

DEFAULT_CUTOFF_DAY = 6
MIN_CUTOFF_DAY = 1
MAX_CUTOFF_DAY = 28


@dataclass(frozen=True)
class MonthlyOverride:
    month_index: int
    year: int
    lock_date: Optional[datetime]
    is_force_open: bool = False


def parse_month_name(name: Optional[str]) -> int:
    """Zero-based month index for a full or three-letter month name, -1 when unknown."""
    if not name or not isinstance(name, str):
        return -1
    return _MONTH_LOOKUP.get(name.strip().lower(), -1)


def month_short_name(index: int) -> str:
    return MONTH_SHORT_NAMES[index]


def next_period(month: str, year: int) -> Tuple[str, int]:
    index = parse_month_name(month)
    if index < 0:
        raise ValueError(f"invalid month: {month!r}")
    if index == 11:
        return MONTH_SHORT_NAMES[0], year + 1
    return MONTH_SHORT_NAMES[index + 1], year


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite hands back naive datetimes; everything we store is UTC.
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def deadline_zone() -> tzinfo:
    name = lock_timezone()
    if name.upper() == "UTC":
        return timezone.utc
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning("Unknown LOCK_TIMEZONE=%r; deadlines computed in UTC", name)
        return timezone.utc


def clamp_cutoff_day(cutoff_day: Optional[int]) -> int:
    day = cutoff_day or DEFAULT_CUTOFF_DAY
    return max(MIN_CUTOFF_DAY, min(MAX_CUTOFF_DAY, int(day)))


def find_monthly_override(
    month_index: int,
    year: Optional[int],
    overrides: Iterable[MonthlyOverride],
) -> Optional[MonthlyOverride]:
    for override in overrides or ():
        if override.month_index == month_index and override.year == year:
            return override
    return None


def default_deadline(
    month_index: int,
    year: int,
    cutoff_day: Optional[int] = DEFAULT_CUTOFF_DAY,
    tz: Optional[tzinfo] = None,
) -> datetime:
    """
    Last instant of the cutoff day in the month after (month_index, year).

    The cutoff day is clamped to 1..28 so it exists in every month.
    """
    zone = tz or deadline_zone()
    day = clamp_cutoff_day(cutoff_day)
    if month_index >= 11:
        deadline_year, deadline_month = year + 1, 1
    else:
        deadline_year, deadline_month = year, month_index + 2
    local = datetime(deadline_year, deadline_month, day, 23, 59, 59, 999000, tzinfo=zone)
    return local.astimezone(timezone.utc)


def resolve_deadline(
    month: Optional[str],
    year: Optional[int],
    cutoff_day: Optional[int] = DEFAULT_CUTOFF_DAY,
    overrides: Iterable[MonthlyOverride] = (),
    tz: Optional[tzinfo] = None,
) -> Optional[datetime]:
    """
    Lock deadline for a reporting period, as an aware UTC datetime.

    An override carrying a lock_date wins verbatim (no clamping, any date).
    Returns None for an unparseable month or a missing year so callers fail
    open instead of locking on bad input.
    """
    month_index = parse_month_name(month)
    if month_index < 0 or not year:
        return None
    override = find_monthly_override(month_index, year, overrides)
    if override is not None and override.lock_date is not None:
        return as_utc(override.lock_date)
    return default_deadline(month_index, year, cutoff_day, tz)
