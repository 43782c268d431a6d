from __future__ import annotations

import re
from datetime import date
from typing import Any, Optional

from fastapi import APIRouter, BackgroundTasks, Depends, Response
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from api.deps import get_user, request_today, service_errors
from db.database import get_db
from db.models import User
from services import achievement_service
from services.current_plan_service import resolve_and_persist_current_plan, set_current_plan
from services.day_index import project_slots_for_date
from services.meal_plan_service import (
    archive_meal_plan,
    create_sequenced_plan,
    delete_meal_plan,
    export_meal_plan,
    get_meal_plan,
    list_meal_plans,
    restore_meal_plan,
    serialize_meal_plan,
    slot_to_dict,
    toggle_favorite,
    toggle_slot_cooked,
    update_meal_plan,
    update_plan_slots,
    week_meal_plans,
)
from services.plan_scheduler import run_daily_plan_resolution
from services.plan_sequencer import label_plans
from utils.datetime_utils import start_of_sunday_week


router = APIRouter(prefix="/users/{user_id}", tags=["meal-plans"])


class SlotIn(BaseModel):
    id: Optional[int] = None
    recipe_id: str
    recipe_data: Optional[dict[str, Any]] = None
    day_index: int = 0
    meal_type: str
    notes: Optional[str] = None
    is_cooked: bool = False


class MealPlanCreate(BaseModel):
    name: str
    description: Optional[str] = None
    category: Optional[str] = None
    tags: list[str] = Field(default_factory=list)
    slots: list[SlotIn] = Field(default_factory=list)
    span_days: Optional[int] = None


class MealPlanUpdate(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
    category: Optional[str] = None
    tags: Optional[list[str]] = None
    is_favorite: Optional[bool] = None
    start_date: Optional[date] = None
    end_date: Optional[date] = None


class SlotsReplace(BaseModel):
    slots: list[SlotIn]
    replace_all: bool = True


class SlotCookedUpdate(BaseModel):
    is_cooked: Optional[bool] = None  # omit to flip


def _queue_achievement_sync(background_tasks: BackgroundTasks, user_id: int) -> None:
    background_tasks.add_task(achievement_service.sync_achievements_for_user_id, user_id)


@router.get("/meal-plans")
def list_plans(
    status: Optional[str] = None,
    category: Optional[str] = None,
    is_favorite: Optional[bool] = None,
    is_current: Optional[bool] = None,
    search: Optional[str] = None,
    sort_by: str = "created_at",
    sort_direction: str = "desc",
    user: User = Depends(get_user),
    today: date = Depends(request_today),
    db: Session = Depends(get_db),
):
    with service_errors():
        plans = list_meal_plans(
            db,
            user.id,
            status=status,
            category=category,
            is_favorite=is_favorite,
            is_current=is_current,
            search=search,
            sort_by=sort_by,
            sort_direction=sort_direction,
        )
    labels = label_plans(plans, today)
    items = []
    for plan in plans:
        payload = serialize_meal_plan(plan, today, include_slots=False)
        payload["timing"] = labels.get(int(plan.id), payload.get("timing"))
        payload["slot_count"] = len(plan.recipes or [])
        items.append(payload)
    return {"meal_plans": items, "today": today.isoformat()}


@router.post("/meal-plans", status_code=201)
def create_plan(
    payload: MealPlanCreate,
    background_tasks: BackgroundTasks,
    user: User = Depends(get_user),
    today: date = Depends(request_today),
    db: Session = Depends(get_db),
):
    with service_errors():
        plan = create_sequenced_plan(
            db,
            user.id,
            name=payload.name,
            slots=payload.slots,
            today=today,
            requested_span_days=payload.span_days,
            description=payload.description,
            category=payload.category,
            tags=payload.tags,
        )
    db.commit()
    db.refresh(plan)
    _queue_achievement_sync(background_tasks, user.id)
    return serialize_meal_plan(plan, today)


@router.get("/meal-plans/current")
def current_plan(
    user: User = Depends(get_user),
    today: date = Depends(request_today),
    db: Session = Depends(get_db),
):
    with service_errors():
        plan = resolve_and_persist_current_plan(db, user.id, today)
    db.commit()
    return {
        "today": today.isoformat(),
        "meal_plan": serialize_meal_plan(plan, today) if plan else None,
    }


@router.post("/meal-plans/refresh")
def refresh_current_plan(
    force: bool = False,
    user: User = Depends(get_user),
    today: date = Depends(request_today),
    db: Session = Depends(get_db),
):
    with service_errors():
        outcome = run_daily_plan_resolution(db, user.id, today, force=force)
    db.commit()
    return {
        "ran": outcome.ran,
        "current_plan_id": outcome.plan_id,
        "checked_date": outcome.checked_date.isoformat(),
    }


@router.get("/meal-plans/week")
def plans_for_week(
    user: User = Depends(get_user),
    today: date = Depends(request_today),
    db: Session = Depends(get_db),
):
    plans = week_meal_plans(db, user.id, today)
    week_start = start_of_sunday_week(today)
    return {
        "week_start": week_start.isoformat(),
        "meal_plans": [serialize_meal_plan(plan, today) for plan in plans],
    }


@router.get("/slots")
def slots_for_date(
    day: Optional[date] = None,
    user: User = Depends(get_user),
    today: date = Depends(request_today),
    db: Session = Depends(get_db),
):
    target = day or today
    slots = project_slots_for_date(db, user.id, target)
    return {"date": target.isoformat(), "slots": [slot_to_dict(slot) for slot in slots]}


@router.get("/meal-plans/{plan_id}")
def read_plan(
    plan_id: int,
    user: User = Depends(get_user),
    today: date = Depends(request_today),
    db: Session = Depends(get_db),
):
    with service_errors():
        plan = get_meal_plan(db, user.id, plan_id)
    return serialize_meal_plan(plan, today)


@router.patch("/meal-plans/{plan_id}")
def patch_plan(
    plan_id: int,
    payload: MealPlanUpdate,
    user: User = Depends(get_user),
    today: date = Depends(request_today),
    db: Session = Depends(get_db),
):
    with service_errors():
        plan = update_meal_plan(db, user.id, plan_id, payload.model_dump(exclude_unset=True))
    db.commit()
    db.refresh(plan)
    return serialize_meal_plan(plan, today)


@router.delete("/meal-plans/{plan_id}")
def remove_plan(
    plan_id: int,
    user: User = Depends(get_user),
    db: Session = Depends(get_db),
):
    with service_errors():
        delete_meal_plan(db, user.id, plan_id)
    db.commit()
    return {"status": "ok", "deleted_id": plan_id}


@router.post("/meal-plans/{plan_id}/favorite")
def favorite_plan(
    plan_id: int,
    user: User = Depends(get_user),
    db: Session = Depends(get_db),
):
    with service_errors():
        plan = toggle_favorite(db, user.id, plan_id)
    db.commit()
    return {"status": "ok", "id": plan.id, "is_favorite": bool(plan.is_favorite)}


@router.post("/meal-plans/{plan_id}/archive")
def archive_plan(
    plan_id: int,
    user: User = Depends(get_user),
    today: date = Depends(request_today),
    db: Session = Depends(get_db),
):
    with service_errors():
        plan = archive_meal_plan(db, user.id, plan_id)
    db.commit()
    db.refresh(plan)
    return serialize_meal_plan(plan, today, include_slots=False)


@router.post("/meal-plans/{plan_id}/restore")
def restore_plan(
    plan_id: int,
    user: User = Depends(get_user),
    today: date = Depends(request_today),
    db: Session = Depends(get_db),
):
    with service_errors():
        plan = restore_meal_plan(db, user.id, plan_id)
    db.commit()
    db.refresh(plan)
    return serialize_meal_plan(plan, today, include_slots=False)


@router.post("/meal-plans/{plan_id}/current")
def pin_current_plan(
    plan_id: int,
    user: User = Depends(get_user),
    today: date = Depends(request_today),
    db: Session = Depends(get_db),
):
    with service_errors():
        plan = set_current_plan(db, user.id, plan_id)
    db.commit()
    db.refresh(plan)
    return serialize_meal_plan(plan, today, include_slots=False)


@router.put("/meal-plans/{plan_id}/slots")
def replace_slots(
    plan_id: int,
    payload: SlotsReplace,
    user: User = Depends(get_user),
    today: date = Depends(request_today),
    db: Session = Depends(get_db),
):
    with service_errors():
        plan = update_plan_slots(db, user.id, plan_id, payload.slots, replace_all=payload.replace_all)
    db.commit()
    db.refresh(plan)
    return serialize_meal_plan(plan, today)


@router.post("/meal-plans/{plan_id}/slots/{slot_id}/cooked")
def mark_slot_cooked(
    plan_id: int,
    slot_id: int,
    payload: Optional[SlotCookedUpdate] = None,
    user: User = Depends(get_user),
    db: Session = Depends(get_db),
):
    with service_errors():
        slot = toggle_slot_cooked(
            db,
            user.id,
            plan_id,
            slot_id,
            is_cooked=payload.is_cooked if payload else None,
        )
    db.commit()
    return slot_to_dict(slot)


@router.get("/meal-plans/{plan_id}/export")
def export_plan(
    plan_id: int,
    user: User = Depends(get_user),
    db: Session = Depends(get_db),
):
    with service_errors():
        plan = get_meal_plan(db, user.id, plan_id)
    safe_name = re.sub(r"[^A-Za-z0-9_-]+", "_", plan.name or "meal_plan").strip("_") or "meal_plan"
    return Response(
        content=export_meal_plan(plan),
        media_type="application/json",
        headers={"Content-Disposition": f'attachment; filename="{safe_name}.json"'},
    )
