"""Calendar-day arithmetic for plan windows.

Every value is a calendar day without a time-zone component. Functions
accept ``date`` objects, ``datetime`` objects (the time part is dropped) or
``YYYY-MM-DD`` strings, and never read the wall clock: callers pass
``today`` in explicitly.
"""

from __future__ import annotations

import re
from datetime import date, datetime, timedelta
from typing import Union

DayLike = Union[date, datetime, str]

_ISO_DAY_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")


def as_day(value: DayLike) -> date:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    raw = str(value or "").strip()
    if not _ISO_DAY_RE.match(raw):
        raise ValueError(f"Expected a YYYY-MM-DD date, got {value!r}")
    return date.fromisoformat(raw)


def iso_day(value: DayLike) -> str:
    return as_day(value).isoformat()


def optional_day(value: DayLike | None) -> date | None:
    if value is None or value == "":
        return None
    return as_day(value)


def days_between(a: DayLike, b: DayLike) -> int:
    """Signed number of calendar days from ``a`` to ``b``."""
    return (as_day(b) - as_day(a)).days


def add_days(day: DayLike, n: int) -> date:
    return as_day(day) + timedelta(days=int(n))


def is_within(day: DayLike, start: DayLike | None, end: DayLike | None) -> bool:
    """True when ``start <= day <= end``; an open bound never matches."""
    if start is None or end is None:
        return False
    d = as_day(day)
    return as_day(start) <= d <= as_day(end)


def is_future(day: DayLike, today: DayLike) -> bool:
    return as_day(day) > as_day(today)


def is_past(day: DayLike, today: DayLike) -> bool:
    return as_day(day) < as_day(today)


def window_length(start: DayLike | None, end: DayLike | None) -> int | None:
    """Inclusive day count of ``[start, end]``, or None when a bound is missing."""
    if start is None or end is None:
        return None
    return days_between(start, end) + 1


def windows_overlap(
    start_a: DayLike | None,
    end_a: DayLike | None,
    start_b: DayLike,
    end_b: DayLike,
) -> bool:
    if start_a is None or end_a is None:
        return False
    return as_day(start_a) <= as_day(end_b) and as_day(end_a) >= as_day(start_b)
