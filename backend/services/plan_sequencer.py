from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from typing import Any, Iterable

from db.models import MealPlan
from services.errors import InvariantViolation
from utils.date_range import DayLike, add_days, as_day, is_future, is_past, is_within, window_length


PLAN_TIMINGS = ("current", "next", "upcoming", "past", "undated", "archived")


@dataclass(frozen=True)
class PlanWindow:
    start: date
    end: date

    @property
    def span_days(self) -> int:
        return (self.end - self.start).days + 1


def _is_active(plan: MealPlan) -> bool:
    return str(plan.status or "active") == "active"


def _slot_day_index(slot: Any) -> int:
    if isinstance(slot, dict):
        return int(slot.get("day_index", 0))
    return int(slot.day_index)


def next_plan_window(
    existing_plans: Iterable[MealPlan],
    requested_span_days: int,
    today: DayLike,
) -> PlanWindow:
    """Window for a new plan, appended right after the latest-ending active plan."""
    span = int(requested_span_days)
    if span < 1:
        raise InvariantViolation("A meal plan must span at least one day")

    latest_end: date | None = None
    for plan in existing_plans:
        if not _is_active(plan) or not plan.end_date:
            continue
        end = as_day(plan.end_date)
        if latest_end is None or end > latest_end:
            latest_end = end

    start = add_days(latest_end, 1) if latest_end is not None else as_day(today)
    return PlanWindow(start=start, end=add_days(start, span - 1))


def effective_span(slots: Iterable[Any], default: int) -> int:
    """Number of days the attached slots actually cover: ``max(day_index) + 1``."""
    indices = [_slot_day_index(slot) for slot in slots]
    if not indices:
        return int(default)
    if min(indices) < 0:
        raise InvariantViolation("day_index must be zero or greater")
    return max(indices) + 1


def day_picker_span(plan: MealPlan, default: int) -> int:
    if plan.recipes:
        return effective_span(plan.recipes, default)
    length = window_length(plan.start_date, plan.end_date)
    if length is not None and length > 0:
        return length
    return int(default)


def is_plan_current_candidate(plan: MealPlan, today: DayLike) -> bool:
    return _is_active(plan) and is_within(today, plan.start_date, plan.end_date)


def plan_timing(plan: MealPlan, today: DayLike) -> str:
    if not _is_active(plan):
        return "archived"
    if not plan.start_date or not plan.end_date:
        return "undated"
    if is_plan_current_candidate(plan, today):
        return "current"
    if is_future(plan.start_date, today):
        return "upcoming"
    if is_past(plan.end_date, today):
        return "past"
    return "undated"


def nearest_upcoming(plans: Iterable[MealPlan], today: DayLike) -> MealPlan | None:
    """Active plan with the earliest start strictly after ``today``."""
    candidates = [
        plan
        for plan in plans
        if _is_active(plan) and plan.start_date and is_future(plan.start_date, today)
    ]
    if not candidates:
        return None
    return min(candidates, key=lambda p: (as_day(p.start_date), p.id or 0))


def label_plans(plans: Iterable[MealPlan], today: DayLike) -> dict[int, str]:
    """Badge each plan with one of PLAN_TIMINGS."""
    rows = list(plans)
    next_plan = nearest_upcoming(rows, today)
    labels: dict[int, str] = {}
    for plan in rows:
        label = plan_timing(plan, today)
        if next_plan is not None and plan.id == next_plan.id:
            label = "next"
        labels[int(plan.id)] = label
    return labels
