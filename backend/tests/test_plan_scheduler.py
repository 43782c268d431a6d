from __future__ import annotations

import sys
from datetime import date
from pathlib import Path

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker


ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from db.database import Base  # noqa: E402
from db.models import MealPlan, PlanResolutionCursor, User  # noqa: E402
from services.plan_scheduler import run_daily_plan_resolution, run_due_resolutions  # noqa: E402


def _new_db():
    engine = create_engine("sqlite:///:memory:", connect_args={"check_same_thread": False})
    Base.metadata.create_all(bind=engine)
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)()


def _new_user(db, username: str) -> User:
    user = User(username=username, display_name=username, timezone="UTC")
    db.add(user)
    db.commit()
    db.refresh(user)
    return user


def _plan(db, user, start, end) -> MealPlan:
    plan = MealPlan(user_id=user.id, name=f"{start}", status="active", start_date=start, end_date=end)
    db.add(plan)
    db.commit()
    db.refresh(plan)
    return plan


def test_daily_resolution_runs_once_per_day():
    db = _new_db()
    user = _new_user(db, "cursor_user")
    plan = _plan(db, user, "2024-01-05", "2024-01-11")

    first = run_daily_plan_resolution(db, user.id, date(2024, 1, 3))
    db.commit()
    again = run_daily_plan_resolution(db, user.id, date(2024, 1, 3))

    assert first.ran is True
    assert first.plan_id == plan.id
    assert again.ran is False
    assert again.plan_id == plan.id

    forced = run_daily_plan_resolution(db, user.id, date(2024, 1, 3), force=True)
    assert forced.ran is True


def test_day_boundary_crossing_re_resolves():
    db = _new_db()
    user = _new_user(db, "boundary_user")
    _plan(db, user, "2024-01-05", "2024-01-11")

    run_daily_plan_resolution(db, user.id, date(2024, 1, 3))
    db.commit()
    cursor = db.query(PlanResolutionCursor).filter(PlanResolutionCursor.user_id == user.id).one()
    assert cursor.last_checked_date == "2024-01-03"

    outcome = run_daily_plan_resolution(db, user.id, date(2024, 1, 4))
    db.commit()
    assert outcome.ran is True
    assert cursor.last_checked_date == "2024-01-04"


def test_due_sweep_skips_users_already_checked_today():
    db = _new_db()
    fresh = _new_user(db, "fresh_user")
    checked = _new_user(db, "checked_user")
    _plan(db, fresh, "2024-01-01", "2024-01-07")
    run_daily_plan_resolution(db, checked.id, date(2024, 1, 3))
    db.commit()

    outcomes = run_due_resolutions(db, date(2024, 1, 3))

    assert len(outcomes) == 1
    assert outcomes[0].ran is True
    assert outcomes[0].plan_id is not None
    assert run_due_resolutions(db, date(2024, 1, 3)) == []
