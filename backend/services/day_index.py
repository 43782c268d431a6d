from __future__ import annotations

from datetime import date

from sqlalchemy.orm import Session, selectinload

from db.models import MealPlan, MealPlanRecipe
from utils.date_range import DayLike, add_days, as_day, days_between, is_within, iso_day


def date_to_day_index(day: DayLike, plan_start: DayLike) -> int:
    """Zero-based day index of ``day`` in a plan starting on ``plan_start``.

    Negative values and values beyond the plan's span are returned as-is;
    callers treat them as "no slot for this date".
    """
    return days_between(plan_start, day)


def day_index_to_date(day_index: int, plan_start: DayLike) -> date:
    return add_days(plan_start, day_index)


def slots_for_day(plan: MealPlan, day: DayLike) -> list[MealPlanRecipe]:
    if not plan.start_date:
        return []
    index = date_to_day_index(day, plan.start_date)
    if index < 0:
        return []
    return [slot for slot in (plan.recipes or []) if int(slot.day_index) == index]


def _meal_type_rank(meal_type: str, order: tuple[str, ...]) -> int:
    try:
        return order.index(str(meal_type or "").lower())
    except ValueError:
        return len(order)


def project_slots_for_date(
    db: Session,
    user_id: int,
    day: DayLike,
    meal_type_order: tuple[str, ...] = ("breakfast", "lunch", "dinner", "snack"),
) -> list[MealPlanRecipe]:
    """Slots scheduled on ``day`` across every active plan whose window contains it.

    Overlapping plans each contribute their own slots; nothing is deduplicated.
    """
    d_iso = iso_day(day)
    plans = (
        db.query(MealPlan)
        .options(selectinload(MealPlan.recipes))
        .filter(
            MealPlan.user_id == user_id,
            MealPlan.status == "active",
            MealPlan.start_date.isnot(None),
            MealPlan.end_date.isnot(None),
            MealPlan.start_date <= d_iso,
            MealPlan.end_date >= d_iso,
        )
        .order_by(MealPlan.start_date.asc(), MealPlan.id.asc())
        .all()
    )
    target = as_day(day)
    projected: list[MealPlanRecipe] = []
    for plan in plans:
        if not is_within(target, plan.start_date, plan.end_date):
            continue
        slots = slots_for_day(plan, target)
        slots.sort(key=lambda s: (_meal_type_rank(s.meal_type, meal_type_order), s.id))
        projected.extend(slots)
    return projected
