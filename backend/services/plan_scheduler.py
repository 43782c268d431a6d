from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date

from sqlalchemy import or_
from sqlalchemy.orm import Session

from db.models import PlanResolutionCursor, User
from services.current_plan_service import resolve_and_persist_current_plan
from utils.date_range import DayLike, as_day, iso_day

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DailyResolutionOutcome:
    ran: bool
    plan_id: int | None
    checked_date: date


def _cursor_for(db: Session, user_id: int) -> PlanResolutionCursor:
    cursor = (
        db.query(PlanResolutionCursor)
        .filter(PlanResolutionCursor.user_id == user_id)
        .first()
    )
    if cursor is None:
        cursor = PlanResolutionCursor(user_id=user_id)
        db.add(cursor)
        db.flush()
    return cursor


def run_daily_plan_resolution(
    db: Session,
    user_id: int,
    today: DayLike,
    *,
    force: bool = False,
) -> DailyResolutionOutcome:
    """Re-resolve the current plan once per calendar day.

    Calling again on the same day is a no-op unless ``force`` is set.
    """
    day = as_day(today)
    cursor = _cursor_for(db, user_id)
    if not force and cursor.last_checked_date == day.isoformat():
        logger.debug("Plan resolution already ran for user %s on %s", user_id, day)
        return DailyResolutionOutcome(ran=False, plan_id=cursor.last_plan_id, checked_date=day)

    plan = resolve_and_persist_current_plan(db, user_id, day)
    cursor.last_checked_date = day.isoformat()
    cursor.last_plan_id = plan.id if plan else None
    db.flush()
    return DailyResolutionOutcome(ran=True, plan_id=cursor.last_plan_id, checked_date=day)


def run_due_resolutions(db: Session, today: DayLike) -> list[DailyResolutionOutcome]:
    """Sweep every user whose cursor is behind ``today``.

    Owns its transaction: each user is committed on its own so one failure
    does not undo the others.
    """
    d_iso = iso_day(today)
    user_ids = [
        int(row.id)
        for row in (
            db.query(User.id)
            .outerjoin(PlanResolutionCursor, PlanResolutionCursor.user_id == User.id)
            .filter(
                or_(
                    PlanResolutionCursor.id.is_(None),
                    PlanResolutionCursor.last_checked_date.is_(None),
                    PlanResolutionCursor.last_checked_date < d_iso,
                )
            )
            .order_by(User.id.asc())
            .all()
        )
    ]
    outcomes: list[DailyResolutionOutcome] = []
    for user_id in user_ids:
        try:
            outcome = run_daily_plan_resolution(db, user_id, today)
            db.commit()
            outcomes.append(outcome)
        except Exception as exc:
            db.rollback()
            logger.warning("Daily plan resolution failed for user %s (%s): %s", user_id, d_iso, exc)
    return outcomes
