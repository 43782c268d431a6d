from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from typing import Any, Iterable

from sqlalchemy.orm import Session

from db.models import DailyProgress
from utils.date_range import as_day, days_between

# Snack and shopping completion do not count toward a streak.
STREAK_MEAL_FLAGS = ("breakfast_completed", "lunch_completed", "dinner_completed")


@dataclass(frozen=True)
class StreakResult:
    current: int
    longest: int

    def as_dict(self) -> dict[str, int]:
        return {"current_streak": self.current, "longest_streak": self.longest}


def _field(record: Any, name: str) -> Any:
    if isinstance(record, dict):
        return record.get(name)
    return getattr(record, name, None)


def _record_day(record: Any) -> date:
    return as_day(_field(record, "date"))


def is_streak_day(record: Any) -> bool:
    return any(bool(_field(record, flag)) for flag in STREAK_MEAL_FLAGS)


def _current_streak(records_desc: list[Any]) -> int:
    streak = 0
    last_day: date | None = None
    for record in records_desc:
        if not is_streak_day(record):
            break
        day = _record_day(record)
        if last_day is not None and days_between(day, last_day) != 1:
            break
        streak += 1
        last_day = day
    return streak


def _longest_streak(records_asc: list[Any]) -> int:
    longest = 0
    running = 0
    last_day: date | None = None
    for record in records_asc:
        day = _record_day(record)
        if is_streak_day(record):
            if last_day is not None and days_between(last_day, day) == 1:
                running += 1
            else:
                running = 1
            longest = max(longest, running)
        else:
            running = 0
        last_day = day
    return longest


def compute_streaks(records: Iterable[Any]) -> StreakResult:
    """Current and longest runs of consecutive days with a breakfast, lunch, or dinner done.

    The current streak is counted back from the most recent record; a gap or
    an inactive day ends it. Both scans run over the full log on every call.
    """
    rows = list(records)
    if not rows:
        return StreakResult(current=0, longest=0)
    descending = sorted(rows, key=_record_day, reverse=True)
    ascending = sorted(rows, key=_record_day)
    return StreakResult(current=_current_streak(descending), longest=_longest_streak(ascending))


def compute_user_streaks(db: Session, user_id: int) -> StreakResult:
    rows = (
        db.query(DailyProgress)
        .filter(DailyProgress.user_id == user_id)
        .order_by(DailyProgress.date.desc())
        .all()
    )
    return compute_streaks(rows)
