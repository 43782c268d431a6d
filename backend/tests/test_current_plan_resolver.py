from __future__ import annotations

import logging
import sys
from datetime import date, datetime, timedelta
from pathlib import Path

import pytest
from sqlalchemy import create_engine
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm import sessionmaker


ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from db.database import Base  # noqa: E402
from db.models import MealPlan, User  # noqa: E402
from services.current_plan_service import (  # noqa: E402
    commit_resolution,
    resolve_and_persist_current_plan,
    resolve_current,
    set_current_plan,
)
from services.errors import InvariantViolation, NotFoundError  # noqa: E402


TODAY = date(2024, 3, 10)


def _new_db():
    engine = create_engine("sqlite:///:memory:", connect_args={"check_same_thread": False})
    Base.metadata.create_all(bind=engine)
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)()


def _new_user(db, username: str = "resolver_user") -> User:
    user = User(username=username, display_name="Resolver", timezone="UTC")
    db.add(user)
    db.commit()
    db.refresh(user)
    return user


def _plan(db, user, offset_start: int, offset_end: int, *, status="active", is_current=False, name=None) -> MealPlan:
    plan = MealPlan(
        user_id=user.id,
        name=name or f"plan {offset_start}",
        status=status,
        is_current=is_current,
        start_date=(TODAY + timedelta(days=offset_start)).isoformat(),
        end_date=(TODAY + timedelta(days=offset_end)).isoformat(),
    )
    db.add(plan)
    db.commit()
    db.refresh(plan)
    return plan


def _current_ids(db, user) -> list[int]:
    return [
        row.id
        for row in db.query(MealPlan).filter(MealPlan.user_id == user.id, MealPlan.is_current.is_(True)).all()
    ]


def test_nearest_future_plan_is_selected():
    db = _new_db()
    user = _new_user(db)
    far = _plan(db, user, 10, 16)
    near = _plan(db, user, 2, 4)
    mid = _plan(db, user, 5, 9)

    chosen = resolve_and_persist_current_plan(db, user.id, TODAY)
    db.commit()

    assert chosen.id == near.id
    assert _current_ids(db, user) == [near.id]
    assert far.is_current is False
    assert mid.is_current is False


def test_covering_plan_beats_future_and_latest_start_wins():
    db = _new_db()
    user = _new_user(db, "covering_user")
    older = _plan(db, user, -6, 3)
    newer = _plan(db, user, -1, 5)
    _plan(db, user, 1, 7)

    resolution = resolve_current(db.query(MealPlan).all(), TODAY)
    assert resolution.plan.id == newer.id
    assert resolution.reason == "covers_today"
    assert older.id != newer.id


def test_archived_plans_are_never_selected():
    db = _new_db()
    user = _new_user(db, "archived_user")
    _plan(db, user, -1, 5, status="archived")

    assert resolve_and_persist_current_plan(db, user.id, TODAY) is None
    assert _current_ids(db, user) == []


def test_pinned_plan_stays_current_after_window_ends():
    db = _new_db()
    user = _new_user(db, "pin_user")
    elapsed = _plan(db, user, -20, -14)
    _plan(db, user, -1, 5)

    set_current_plan(db, user.id, elapsed.id)
    db.commit()

    chosen = resolve_and_persist_current_plan(db, user.id, TODAY)
    db.commit()

    assert chosen.id == elapsed.id
    assert _current_ids(db, user) == [elapsed.id]


def test_pinning_clears_every_other_current_flag():
    db = _new_db()
    user = _new_user(db, "switch_user")
    first = _plan(db, user, -1, 5)
    second = _plan(db, user, 6, 12)
    resolve_and_persist_current_plan(db, user.id, TODAY)
    db.commit()
    assert _current_ids(db, user) == [first.id]

    set_current_plan(db, user.id, second.id)
    db.commit()

    assert _current_ids(db, user) == [second.id]


def test_repeated_resolution_keeps_a_single_current_plan():
    db = _new_db()
    user = _new_user(db, "repeat_user")
    for offset in (3, -2, 8, 15):
        _plan(db, user, offset, offset + 6)

    for step in range(5):
        resolve_and_persist_current_plan(db, user.id, TODAY + timedelta(days=step * 4))
        db.commit()
        assert len(_current_ids(db, user)) == 1


def test_most_recently_updated_pin_wins_for_legacy_rows():
    plans = [
        MealPlan(id=1, user_id=1, name="a", status="active", is_current=True, updated_at=datetime(2024, 1, 1)),
        MealPlan(id=2, user_id=1, name="b", status="active", is_current=True, updated_at=datetime(2024, 2, 1)),
    ]
    resolution = resolve_current(plans, TODAY)
    assert resolution.plan.id == 2
    assert resolution.reason == "pinned"


def test_database_rejects_a_second_current_plan():
    db = _new_db()
    user = _new_user(db, "index_user")
    _plan(db, user, 0, 6, is_current=True)
    db.add(
        MealPlan(
            user_id=user.id,
            name="second",
            status="active",
            is_current=True,
            start_date="2024-04-01",
            end_date="2024-04-07",
        )
    )
    with pytest.raises(IntegrityError):
        db.commit()
    db.rollback()


def test_archived_rows_may_keep_a_stale_flag_without_tripping_the_index():
    db = _new_db()
    user = _new_user(db, "archived_flag_user")
    _plan(db, user, 0, 6, is_current=True)
    _plan(db, user, 7, 13, is_current=True, status="archived")
    assert len(_current_ids(db, user)) == 2


def test_pinning_rejects_archived_foreign_and_missing_plans():
    db = _new_db()
    user = _new_user(db, "reject_user")
    other = _new_user(db, "other_user")
    archived = _plan(db, user, 0, 6, status="archived")
    foreign = _plan(db, other, 0, 6)

    with pytest.raises(InvariantViolation):
        set_current_plan(db, user.id, archived.id)
    with pytest.raises(NotFoundError):
        set_current_plan(db, user.id, foreign.id)
    with pytest.raises(InvariantViolation):
        commit_resolution(db, user.id, foreign)
    with pytest.raises(NotFoundError):
        set_current_plan(db, user.id, 9999)


def test_failure_between_clear_and_set_leaves_zero_current_plans(monkeypatch):
    db = _new_db()
    user = _new_user(db, "crash_user")
    first = _plan(db, user, -1, 5)
    second = _plan(db, user, 6, 12)
    resolve_and_persist_current_plan(db, user.id, TODAY)
    db.commit()
    assert _current_ids(db, user) == [first.id]

    real_flush = db.flush
    seen_during_set: list[int] = []

    def _failing_flush(*args, **kwargs):
        if second in db.dirty and second.is_current:
            seen_during_set.append(
                db.query(MealPlan).filter(MealPlan.user_id == user.id, MealPlan.is_current.is_(True)).count()
            )
            raise OperationalError("UPDATE meal_plans", {}, Exception("disk I/O error"))
        return real_flush(*args, **kwargs)

    monkeypatch.setattr(db, "flush", _failing_flush)
    with pytest.raises(OperationalError):
        set_current_plan(db, user.id, second.id)

    # The clear already landed; drop the unsent set and persist what reached the store.
    db.expire(second, ["is_current"])
    db.commit()
    monkeypatch.undo()

    assert seen_during_set == [0]
    assert _current_ids(db, user) == []

    healed = resolve_and_persist_current_plan(db, user.id, TODAY)
    db.commit()
    assert _current_ids(db, user) == [healed.id]


def test_stale_archived_flag_is_not_reported_as_a_race(caplog):
    db = _new_db()
    user = _new_user(db, "stale_archived_user")
    _plan(db, user, 7, 13, is_current=True, status="archived")
    active = _plan(db, user, -1, 5)

    with caplog.at_level(logging.INFO, logger="services.current_plan_service"):
        chosen = resolve_and_persist_current_plan(db, user.id, TODAY)
    db.commit()

    assert chosen.id == active.id
    assert "concurrently" not in caplog.text
