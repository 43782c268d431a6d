"""Selection and persistence of the single "current" meal plan per user.

Resolution order:

1. A plan already flagged current wins, even when its window has elapsed.
2. Otherwise the plan whose window covers ``today`` (latest start first).
3. Otherwise the nearest upcoming plan.
4. Otherwise nothing is current.

Changing the current plan is two ordered single-row writes: every other
flag is cleared first, then the chosen row is set. A crash between them
leaves zero current plans, which the next resolution repairs.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Iterable

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, selectinload

from db.models import MealPlan
from services.errors import InvariantViolation, NotFoundError
from services.plan_sequencer import is_plan_current_candidate, nearest_upcoming
from utils.date_range import DayLike, as_day

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Resolution:
    plan: MealPlan | None
    reason: str | None  # pinned | covers_today | nearest_upcoming


def _updated_key(plan: MealPlan) -> tuple[datetime, int]:
    return (plan.updated_at or plan.created_at or datetime.min, int(plan.id or 0))


def resolve_current(plans: Iterable[MealPlan], today: DayLike) -> Resolution:
    active = [plan for plan in plans if str(plan.status or "active") == "active"]

    pinned = [plan for plan in active if bool(plan.is_current)]
    if pinned:
        return Resolution(max(pinned, key=_updated_key), "pinned")

    covering = [plan for plan in active if is_plan_current_candidate(plan, today)]
    if covering:
        chosen = max(covering, key=lambda p: (as_day(p.start_date), int(p.id or 0)))
        return Resolution(chosen, "covers_today")

    upcoming = nearest_upcoming(active, today)
    if upcoming is not None:
        return Resolution(upcoming, "nearest_upcoming")

    return Resolution(None, None)


def _active_plans(db: Session, user_id: int) -> list[MealPlan]:
    return (
        db.query(MealPlan)
        .options(selectinload(MealPlan.recipes))
        .filter(MealPlan.user_id == user_id, MealPlan.status == "active")
        .order_by(MealPlan.start_date.asc(), MealPlan.id.asc())
        .all()
    )


def commit_resolution(
    db: Session,
    user_id: int,
    plan: MealPlan,
    *,
    expected_cleared: int | None = None,
) -> bool:
    """Make ``plan`` the user's only current plan. Returns True when anything was written."""
    if plan.user_id != user_id:
        raise InvariantViolation("Meal plan belongs to another user")
    if str(plan.status or "active") != "active":
        raise InvariantViolation("An archived meal plan cannot be current")

    cleared = (
        db.query(MealPlan)
        .filter(
            MealPlan.user_id == user_id,
            MealPlan.id != plan.id,
            MealPlan.status == "active",
            MealPlan.is_current.is_(True),
        )
        .update({MealPlan.is_current: False}, synchronize_session="fetch")
    )
    if expected_cleared is not None and cleared > expected_cleared:
        # Another resolution set a flag after our read; the later write wins.
        logger.info("Cleared %s current flag(s) set concurrently for user %s", cleared - expected_cleared, user_id)
    db.flush()

    if bool(plan.is_current):
        return bool(cleared)

    plan.is_current = True
    try:
        db.flush()
    except IntegrityError as exc:
        raise InvariantViolation("Another meal plan is already current for this user") from exc
    logger.info("Meal plan %s is now current for user %s", plan.id, user_id)
    return True


def resolve_and_persist_current_plan(db: Session, user_id: int, today: DayLike) -> MealPlan | None:
    plans = _active_plans(db, user_id)
    resolution = resolve_current(plans, today)
    if resolution.plan is None:
        logger.debug("No current meal plan for user %s on %s", user_id, today)
        return None
    flagged_others = [p for p in plans if bool(p.is_current) and p.id != resolution.plan.id]
    commit_resolution(db, user_id, resolution.plan, expected_cleared=len(flagged_others))
    return resolution.plan


def set_current_plan(db: Session, user_id: int, plan_id: int) -> MealPlan:
    """Explicit user override: pin ``plan_id`` as current."""
    plan = (
        db.query(MealPlan)
        .filter(MealPlan.user_id == user_id, MealPlan.id == plan_id)
        .first()
    )
    if not plan:
        raise NotFoundError("Meal plan not found")
    commit_resolution(db, user_id, plan)
    return plan


def clear_current_flag(db: Session, plan: MealPlan) -> None:
    if bool(plan.is_current):
        plan.is_current = False
        db.flush()
