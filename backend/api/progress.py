from __future__ import annotations

from datetime import date
from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Depends
from pydantic import BaseModel
from sqlalchemy.orm import Session

from api.deps import get_user, request_today, service_errors
from db.database import get_db
from db.models import User
from services import achievement_service
from services.progress_service import (
    get_progress_for_date,
    get_progress_range,
    mark_shopping_completed,
    progress_to_dict,
    record_daily_completion,
)
from services.streak_service import compute_user_streaks


router = APIRouter(prefix="/users/{user_id}", tags=["progress"])


class ProgressUpdate(BaseModel):
    day: Optional[date] = None
    breakfast: Optional[bool] = None
    lunch: Optional[bool] = None
    dinner: Optional[bool] = None
    snack: Optional[bool] = None
    shopping: Optional[bool] = None
    meal_plan_id: Optional[int] = None
    notes: Optional[str] = None


class ShoppingUpdate(BaseModel):
    day: Optional[date] = None


def _background_trigger(background_tasks: BackgroundTasks):
    def _trigger(user_id: int) -> None:
        background_tasks.add_task(achievement_service.sync_achievements_for_user_id, user_id)

    return _trigger


@router.get("/progress")
def progress_for_day(
    day: Optional[date] = None,
    user: User = Depends(get_user),
    today: date = Depends(request_today),
    db: Session = Depends(get_db),
):
    target = day or today
    return progress_to_dict(get_progress_for_date(db, user.id, target), target)


@router.get("/progress/range")
def progress_for_range(
    start: date,
    end: date,
    user: User = Depends(get_user),
    db: Session = Depends(get_db),
):
    with service_errors():
        rows = get_progress_range(db, user.id, start, end)
    return {
        "start": start.isoformat(),
        "end": end.isoformat(),
        "progress": [progress_to_dict(row) for row in rows],
    }


@router.put("/progress")
def record_progress(
    payload: ProgressUpdate,
    background_tasks: BackgroundTasks,
    user: User = Depends(get_user),
    today: date = Depends(request_today),
    db: Session = Depends(get_db),
):
    flags = payload.model_dump(include={"breakfast", "lunch", "dinner", "snack", "shopping"}, exclude_none=True)
    target = payload.day or today
    with service_errors():
        row = record_daily_completion(
            db,
            user.id,
            target,
            flags,
            meal_plan_id=payload.meal_plan_id,
            notes=payload.notes,
            trigger=_background_trigger(background_tasks),
        )
    db.commit()
    return progress_to_dict(row)


@router.post("/progress/shopping")
def complete_shopping(
    background_tasks: BackgroundTasks,
    payload: Optional[ShoppingUpdate] = None,
    user: User = Depends(get_user),
    today: date = Depends(request_today),
    db: Session = Depends(get_db),
):
    target = (payload.day if payload else None) or today
    with service_errors():
        row = mark_shopping_completed(db, user.id, target, trigger=_background_trigger(background_tasks))
    db.commit()
    return progress_to_dict(row)


@router.get("/streaks")
def streaks(
    user: User = Depends(get_user),
    db: Session = Depends(get_db),
):
    return compute_user_streaks(db, user.id).as_dict()
