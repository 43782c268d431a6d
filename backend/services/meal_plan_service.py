from __future__ import annotations

import json
import logging
from datetime import datetime
from typing import Any, Iterable, NamedTuple

from sqlalchemy import or_
from sqlalchemy.orm import Session, selectinload

from config import settings as app_settings
from db.models import MealPlan, MealPlanRecipe
from services.current_plan_service import clear_current_flag, resolve_and_persist_current_plan
from services.errors import InvariantViolation, NotFoundError
from services.plan_sequencer import day_picker_span, effective_span, next_plan_window, plan_timing
from utils.date_range import DayLike, add_days, as_day, optional_day, windows_overlap
from utils.datetime_utils import start_of_sunday_week, utcnow

logger = logging.getLogger(__name__)

PLAN_STATUSES = {"active", "archived"}
SORT_FIELDS = {"created_at", "start_date"}
EDITABLE_FIELDS = {"name", "description", "category", "tags", "is_favorite", "start_date", "end_date"}


class SlotKey(NamedTuple):
    recipe_id: str
    day_index: int
    meal_type: str


def _safe_json_loads(raw: str | None, fallback: Any) -> Any:
    if not raw:
        return fallback
    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        return fallback


def _json_dump(value: Any) -> str:
    return json.dumps(value, ensure_ascii=True)


def _slot_value(slot: Any, key: str, default: Any = None) -> Any:
    if isinstance(slot, dict):
        return slot.get(key, default)
    return getattr(slot, key, default)


def _normalize_tags(tags: Iterable[str] | None) -> list[str]:
    seen: set[str] = set()
    out: list[str] = []
    for raw in tags or []:
        tag = " ".join(str(raw or "").strip().split())
        if tag and tag.lower() not in seen:
            seen.add(tag.lower())
            out.append(tag)
    return out


def _build_slot(slot: Any) -> MealPlanRecipe:
    recipe_id = str(_slot_value(slot, "recipe_id", "") or "").strip()
    if not recipe_id:
        raise ValueError("recipe_id is required for every slot")
    try:
        day_index = int(_slot_value(slot, "day_index", 0))
    except (TypeError, ValueError):
        raise ValueError("day_index must be an integer")
    if day_index < 0:
        raise InvariantViolation("day_index must be zero or greater")
    meal_type = str(_slot_value(slot, "meal_type", "") or "").strip().lower()
    if meal_type not in app_settings.meal_types:
        raise ValueError(f"meal_type must be one of: {', '.join(app_settings.meal_types)}")
    recipe_data = _slot_value(slot, "recipe_data")
    return MealPlanRecipe(
        recipe_id=recipe_id,
        recipe_data=_json_dump(recipe_data) if recipe_data is not None else None,
        day_index=day_index,
        meal_type=meal_type,
        notes=_slot_value(slot, "notes"),
        is_cooked=bool(_slot_value(slot, "is_cooked", False)),
    )


def get_meal_plan(db: Session, user_id: int, plan_id: int) -> MealPlan:
    plan = (
        db.query(MealPlan)
        .options(selectinload(MealPlan.recipes))
        .filter(MealPlan.user_id == user_id, MealPlan.id == plan_id)
        .first()
    )
    if not plan:
        raise NotFoundError("Meal plan not found")
    return plan


def create_sequenced_plan(
    db: Session,
    user_id: int,
    *,
    name: str,
    slots: list[Any],
    today: DayLike,
    requested_span_days: int | None = None,
    description: str | None = None,
    category: str | None = None,
    tags: Iterable[str] | None = None,
) -> MealPlan:
    """Create a plan whose window starts the day after the latest active plan ends."""
    clean_name = " ".join(str(name or "").strip().split())
    if not clean_name:
        raise ValueError("name is required")
    built = [_build_slot(slot) for slot in slots or []]
    span = requested_span_days
    if span is None:
        span = effective_span(built, app_settings.DEFAULT_PLAN_SPAN_DAYS)
    if int(span) > app_settings.MAX_PLAN_SPAN_DAYS:
        raise ValueError(f"A meal plan may span at most {app_settings.MAX_PLAN_SPAN_DAYS} days")

    existing = (
        db.query(MealPlan)
        .filter(MealPlan.user_id == user_id, MealPlan.status == "active")
        .all()
    )
    window = next_plan_window(existing, int(span), today)

    plan = MealPlan(
        user_id=user_id,
        name=clean_name,
        description=description,
        category=category,
        tags=_json_dump(_normalize_tags(tags)),
        status="active",
        is_favorite=False,
        is_current=False,
        start_date=window.start.isoformat(),
        end_date=window.end.isoformat(),
    )
    plan.recipes = built
    db.add(plan)
    db.flush()
    logger.info(
        "Created meal plan %s for user %s: %s to %s (%s days, %s slots)",
        plan.id, user_id, plan.start_date, plan.end_date, window.span_days, len(built),
    )

    resolve_and_persist_current_plan(db, user_id, today)
    return plan


def list_meal_plans(
    db: Session,
    user_id: int,
    *,
    status: str | None = None,
    category: str | None = None,
    is_favorite: bool | None = None,
    is_current: bool | None = None,
    search: str | None = None,
    sort_by: str = "created_at",
    sort_direction: str = "desc",
) -> list[MealPlan]:
    query = (
        db.query(MealPlan)
        .options(selectinload(MealPlan.recipes))
        .filter(MealPlan.user_id == user_id)
    )
    if status:
        if status not in PLAN_STATUSES:
            raise ValueError("status must be active or archived")
        query = query.filter(MealPlan.status == status)
    if category:
        query = query.filter(MealPlan.category == category)
    if is_favorite is not None:
        query = query.filter(MealPlan.is_favorite.is_(is_favorite))
    if is_current is not None:
        query = query.filter(MealPlan.is_current.is_(is_current))
    if search and search.strip():
        pattern = f"%{search.strip()}%"
        query = query.filter(or_(MealPlan.name.ilike(pattern), MealPlan.description.ilike(pattern)))

    if sort_by not in SORT_FIELDS:
        raise ValueError("sort_by must be created_at or start_date")
    column = getattr(MealPlan, sort_by)
    if str(sort_direction).lower() == "asc":
        query = query.order_by(column.asc(), MealPlan.id.asc())
    else:
        query = query.order_by(column.desc(), MealPlan.id.desc())
    return query.all()


def update_meal_plan(db: Session, user_id: int, plan_id: int, updates: dict[str, Any]) -> MealPlan:
    plan = get_meal_plan(db, user_id, plan_id)
    unknown = set(updates) - EDITABLE_FIELDS
    if unknown:
        raise ValueError(f"Fields cannot be edited: {', '.join(sorted(unknown))}")

    if "name" in updates:
        clean_name = " ".join(str(updates["name"] or "").strip().split())
        if not clean_name:
            raise ValueError("name is required")
        plan.name = clean_name
    if "description" in updates:
        plan.description = updates["description"]
    if "category" in updates:
        plan.category = updates["category"]
    if "tags" in updates:
        plan.tags = _json_dump(_normalize_tags(updates["tags"]))
    if "is_favorite" in updates:
        plan.is_favorite = bool(updates["is_favorite"])

    if "start_date" in updates or "end_date" in updates:
        start = optional_day(updates.get("start_date", plan.start_date))
        end = optional_day(updates.get("end_date", plan.end_date))
        if start is not None and end is not None and end < start:
            raise InvariantViolation("end_date must not be before start_date")
        plan.start_date = start.isoformat() if start else None
        plan.end_date = end.isoformat() if end else None

    db.flush()
    return plan


def toggle_favorite(db: Session, user_id: int, plan_id: int) -> MealPlan:
    plan = get_meal_plan(db, user_id, plan_id)
    plan.is_favorite = not bool(plan.is_favorite)
    db.flush()
    return plan


def archive_meal_plan(db: Session, user_id: int, plan_id: int) -> MealPlan:
    plan = get_meal_plan(db, user_id, plan_id)
    clear_current_flag(db, plan)
    plan.status = "archived"
    db.flush()
    logger.info("Archived meal plan %s for user %s", plan.id, user_id)
    return plan


def restore_meal_plan(db: Session, user_id: int, plan_id: int) -> MealPlan:
    plan = get_meal_plan(db, user_id, plan_id)
    if plan.status != "archived":
        return plan
    plan.status = "active"
    plan.is_current = False
    db.flush()
    return plan


def delete_meal_plan(db: Session, user_id: int, plan_id: int) -> None:
    plan = get_meal_plan(db, user_id, plan_id)
    db.delete(plan)
    db.flush()
    logger.info("Deleted meal plan %s for user %s", plan_id, user_id)


def update_plan_slots(
    db: Session,
    user_id: int,
    plan_id: int,
    slots: list[Any],
    *,
    replace_all: bool = True,
) -> MealPlan:
    plan = get_meal_plan(db, user_id, plan_id)
    if replace_all:
        built = [_build_slot(slot) for slot in slots or []]
        plan.recipes = built
    else:
        # Slots that already carry an id are existing rows, not additions.
        additions = [_build_slot(slot) for slot in slots or [] if _slot_value(slot, "id") is None]
        plan.recipes.extend(additions)
    db.flush()
    return plan


def _find_slot(plan: MealPlan, slot_key: int | SlotKey) -> MealPlanRecipe | None:
    for slot in plan.recipes:
        if isinstance(slot_key, SlotKey):
            if (
                slot.recipe_id == slot_key.recipe_id
                and int(slot.day_index) == int(slot_key.day_index)
                and slot.meal_type == slot_key.meal_type
            ):
                return slot
        elif int(slot.id) == int(slot_key):
            return slot
    return None


def toggle_slot_cooked(
    db: Session,
    user_id: int,
    plan_id: int,
    slot_key: int | SlotKey,
    is_cooked: bool | None = None,
) -> MealPlanRecipe:
    """Flip (or set) a slot's cooked flag. Streaks are day-level and are not touched."""
    plan = get_meal_plan(db, user_id, plan_id)
    slot = _find_slot(plan, slot_key)
    if slot is None:
        raise NotFoundError("Recipe slot not found")
    slot.is_cooked = (not bool(slot.is_cooked)) if is_cooked is None else bool(is_cooked)
    db.flush()
    return slot


def week_meal_plans(db: Session, user_id: int, today: DayLike) -> list[MealPlan]:
    """Active plans overlapping the Sunday-Saturday week containing ``today``."""
    week_start = start_of_sunday_week(as_day(today))
    week_end = add_days(week_start, 6)
    rows = (
        db.query(MealPlan)
        .options(selectinload(MealPlan.recipes))
        .filter(
            MealPlan.user_id == user_id,
            MealPlan.status == "active",
            MealPlan.start_date <= week_end.isoformat(),
            MealPlan.end_date >= week_start.isoformat(),
        )
        .order_by(MealPlan.start_date.asc(), MealPlan.id.asc())
        .all()
    )
    return [row for row in rows if windows_overlap(row.start_date, row.end_date, week_start, week_end)]


def slot_to_dict(slot: MealPlanRecipe) -> dict[str, Any]:
    return {
        "id": slot.id,
        "meal_plan_id": slot.meal_plan_id,
        "recipe_id": slot.recipe_id,
        "recipe_data": _safe_json_loads(slot.recipe_data, None),
        "day_index": int(slot.day_index),
        "meal_type": slot.meal_type,
        "notes": slot.notes,
        "is_cooked": bool(slot.is_cooked),
    }


def serialize_meal_plan(plan: MealPlan, today: DayLike | None = None, *, include_slots: bool = True) -> dict[str, Any]:
    tags = _safe_json_loads(plan.tags, [])
    payload: dict[str, Any] = {
        "id": plan.id,
        "user_id": plan.user_id,
        "name": plan.name,
        "description": plan.description,
        "category": plan.category,
        "tags": tags if isinstance(tags, list) else [],
        "status": plan.status,
        "is_favorite": bool(plan.is_favorite),
        "is_current": bool(plan.is_current),
        "start_date": plan.start_date,
        "end_date": plan.end_date,
        "effective_span": effective_span(plan.recipes or [], 0),
        "day_picker_span": day_picker_span(plan, app_settings.DAY_PICKER_FALLBACK_DAYS),
        "created_at": plan.created_at.isoformat() if plan.created_at else None,
        "updated_at": plan.updated_at.isoformat() if plan.updated_at else None,
    }
    if today is not None:
        payload["timing"] = plan_timing(plan, today)
    if include_slots:
        payload["recipes"] = [slot_to_dict(slot) for slot in plan.recipes or []]
    return payload


def export_meal_plan(plan: MealPlan, exported_at: datetime | None = None) -> str:
    payload = serialize_meal_plan(plan)
    payload["exported_at"] = (exported_at or utcnow()).isoformat()
    payload["version"] = "1.0"
    return json.dumps(payload, indent=2, ensure_ascii=False)
