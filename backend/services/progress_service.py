from __future__ import annotations

import logging
from typing import Any, Mapping

from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.orm import Session

from db.models import DailyProgress, MealPlan
from services.achievement_service import AchievementTrigger, fire_trigger, in_session_trigger
from services.errors import NotFoundError
from utils.date_range import DayLike, iso_day
from utils.datetime_utils import utcnow

logger = logging.getLogger(__name__)

COMPLETION_FLAGS = {
    "breakfast": "breakfast_completed",
    "lunch": "lunch_completed",
    "dinner": "dinner_completed",
    "snack": "snack_completed",
    "shopping": "shopping_completed",
}


def normalize_flags(flags: Mapping[str, Any]) -> dict[str, bool]:
    """Map ``{"breakfast": True}`` or ``{"breakfast_completed": True}`` onto column names."""
    columns = set(COMPLETION_FLAGS.values())
    normalized: dict[str, bool] = {}
    for raw_key, value in (flags or {}).items():
        key = str(raw_key or "").strip().lower()
        column = COMPLETION_FLAGS.get(key) or (key if key in columns else None)
        if column is None:
            raise ValueError(f"Unknown completion flag: {raw_key}")
        if value is None:
            continue
        normalized[column] = bool(value)
    return normalized


def record_daily_completion(
    db: Session,
    user_id: int,
    day: DayLike,
    flags: Mapping[str, Any],
    *,
    meal_plan_id: int | None = None,
    notes: str | None = None,
    trigger: AchievementTrigger | None = None,
) -> DailyProgress:
    """Upsert the (user, day) progress record, touching only the flags supplied.

    The achievement trigger fires after every attempt, including one that
    raised; its own failures are logged and never reach the caller.
    """
    d_iso = iso_day(day)
    values = normalize_flags(flags)
    if trigger is None:
        trigger = in_session_trigger(db)

    try:
        if meal_plan_id is not None:
            owned = (
                db.query(MealPlan.id)
                .filter(MealPlan.id == meal_plan_id, MealPlan.user_id == user_id)
                .first()
            )
            if not owned:
                raise NotFoundError("Meal plan not found")

        update_set: dict[str, Any] = dict(values)
        if meal_plan_id is not None:
            update_set["meal_plan_id"] = meal_plan_id
        if notes is not None:
            update_set["notes"] = notes
        update_set["updated_at"] = utcnow()

        stmt = sqlite_insert(DailyProgress).values(
            user_id=user_id,
            date=d_iso,
            meal_plan_id=meal_plan_id,
            notes=notes,
            created_at=utcnow(),
            **{column: values.get(column, False) for column in COMPLETION_FLAGS.values()},
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=[DailyProgress.user_id, DailyProgress.date],
            set_=update_set,
        )
        db.execute(stmt)
        db.flush()

        row = (
            db.query(DailyProgress)
            .filter(DailyProgress.user_id == user_id, DailyProgress.date == d_iso)
            .populate_existing()
            .one()
        )
        logger.debug("Recorded progress for user %s on %s: %s", user_id, d_iso, values)
        return row
    finally:
        fire_trigger(trigger, user_id)


def mark_shopping_completed(
    db: Session,
    user_id: int,
    day: DayLike,
    *,
    trigger: AchievementTrigger | None = None,
) -> DailyProgress:
    return record_daily_completion(db, user_id, day, {"shopping": True}, trigger=trigger)


def get_progress_for_date(db: Session, user_id: int, day: DayLike) -> DailyProgress | None:
    return (
        db.query(DailyProgress)
        .filter(DailyProgress.user_id == user_id, DailyProgress.date == iso_day(day))
        .first()
    )


def get_progress_range(db: Session, user_id: int, start: DayLike, end: DayLike) -> list[DailyProgress]:
    start_iso = iso_day(start)
    end_iso = iso_day(end)
    if end_iso < start_iso:
        raise ValueError("end must not be before start")
    return (
        db.query(DailyProgress)
        .filter(
            DailyProgress.user_id == user_id,
            DailyProgress.date >= start_iso,
            DailyProgress.date <= end_iso,
        )
        .order_by(DailyProgress.date.asc())
        .all()
    )


def progress_to_dict(row: DailyProgress | None, day: DayLike | None = None) -> dict[str, Any]:
    if row is None:
        payload: dict[str, Any] = {column: False for column in COMPLETION_FLAGS.values()}
        payload.update({"id": None, "date": iso_day(day) if day is not None else None, "meal_plan_id": None, "notes": None})
        return payload
    return {
        "id": row.id,
        "date": row.date,
        "meal_plan_id": row.meal_plan_id,
        "breakfast_completed": bool(row.breakfast_completed),
        "lunch_completed": bool(row.lunch_completed),
        "dinner_completed": bool(row.dinner_completed),
        "snack_completed": bool(row.snack_completed),
        "shopping_completed": bool(row.shopping_completed),
        "notes": row.notes,
        "updated_at": row.updated_at.isoformat() if row.updated_at else None,
    }
