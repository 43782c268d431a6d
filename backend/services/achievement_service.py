from __future__ import annotations

import json
import logging
from typing import Any, Callable

from sqlalchemy import func
from sqlalchemy.orm import Session

from config import settings as app_settings
from db.database import SessionLocal
from db.models import AchievementType, DailyProgress, MealPlan, MealPlanRecipe, User, UserAchievement
from services.streak_service import compute_user_streaks
from utils.datetime_utils import utcnow

logger = logging.getLogger(__name__)

AchievementTrigger = Callable[[int], None]

PROGRESS_COUNTERS = (
    "meal_plans_created",
    "recipes_cooked",
    "consecutive_days",
    "shopping_lists_completed",
)

DEFAULT_ACHIEVEMENT_TYPES: list[dict[str, Any]] = [
    {
        "name": "First Plan",
        "description": "Create your first meal plan.",
        "category": "planning",
        "icon": "calendar",
        "points": 10,
        "requirements": {"meal_plans_created": 1},
    },
    {
        "name": "Planner Pro",
        "description": "Create 10 meal plans.",
        "category": "planning",
        "icon": "calendar-check",
        "points": 50,
        "requirements": {"meal_plans_created": 10},
    },
    {
        "name": "Home Cook",
        "description": "Cook 10 planned recipes.",
        "category": "cooking",
        "icon": "chef-hat",
        "points": 25,
        "requirements": {"recipes_cooked": 10},
    },
    {
        "name": "Kitchen Veteran",
        "description": "Cook 50 planned recipes.",
        "category": "cooking",
        "icon": "award",
        "points": 100,
        "requirements": {"recipes_cooked": 50},
    },
    {
        "name": "On a Roll",
        "description": "Complete a meal 3 days in a row.",
        "category": "consistency",
        "icon": "flame",
        "points": 15,
        "requirements": {"consecutive_days": 3},
    },
    {
        "name": "Week Warrior",
        "description": "Complete a meal 7 days in a row.",
        "category": "consistency",
        "icon": "trophy",
        "points": 50,
        "requirements": {"consecutive_days": 7},
    },
    {
        "name": "Monthly Master",
        "description": "Complete a meal 30 days in a row.",
        "category": "consistency",
        "icon": "crown",
        "points": 200,
        "requirements": {"consecutive_days": 30},
    },
    {
        "name": "Shopping Starter",
        "description": "Finish your first shopping trip.",
        "category": "shopping",
        "icon": "shopping-cart",
        "points": 10,
        "requirements": {"shopping_lists_completed": 1},
    },
    {
        "name": "Smart Shopper",
        "description": "Finish 10 shopping trips.",
        "category": "shopping",
        "icon": "shopping-bag",
        "points": 40,
        "requirements": {"shopping_lists_completed": 10},
    },
]


def _safe_json_loads(raw: str | None, fallback: Any) -> Any:
    if not raw:
        return fallback
    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        return fallback


def _json_dump(value: Any) -> str:
    return json.dumps(value, ensure_ascii=True, sort_keys=True)


def ensure_default_achievement_types(db: Session) -> list[AchievementType]:
    existing = {row.name: row for row in db.query(AchievementType).all()}
    for spec in DEFAULT_ACHIEVEMENT_TYPES:
        if spec["name"] in existing:
            continue
        row = AchievementType(
            name=spec["name"],
            description=spec["description"],
            category=spec["category"],
            icon=spec["icon"],
            points=spec["points"],
            requirements=_json_dump(spec["requirements"]),
        )
        db.add(row)
        existing[row.name] = row
    db.flush()
    return sorted(existing.values(), key=lambda r: (r.category, r.points, r.name))


def collect_progress_counters(db: Session, user_id: int) -> dict[str, int]:
    meal_plans_created = (
        db.query(func.count(MealPlan.id)).filter(MealPlan.user_id == user_id).scalar() or 0
    )
    recipes_cooked = (
        db.query(func.count(MealPlanRecipe.id))
        .join(MealPlan, MealPlan.id == MealPlanRecipe.meal_plan_id)
        .filter(MealPlan.user_id == user_id, MealPlanRecipe.is_cooked.is_(True))
        .scalar()
        or 0
    )
    shopping_completed = (
        db.query(func.count(DailyProgress.id))
        .filter(DailyProgress.user_id == user_id, DailyProgress.shopping_completed.is_(True))
        .scalar()
        or 0
    )
    streaks = compute_user_streaks(db, user_id)
    return {
        "meal_plans_created": int(meal_plans_created),
        "recipes_cooked": int(recipes_cooked),
        "consecutive_days": int(streaks.longest),
        "shopping_lists_completed": int(shopping_completed),
    }


def _requirements_met(requirements: dict[str, Any], counters: dict[str, int]) -> bool:
    if not requirements:
        return False
    for key, target in requirements.items():
        if key not in counters:
            # Counter not evaluated here (e.g. needs the recipe API).
            return False
        if counters[key] < int(target):
            return False
    return True


def sync_achievement_progress(db: Session, user_id: int) -> list[UserAchievement]:
    """Recompute every achievement row for a user. Completed achievements never revert."""
    types = ensure_default_achievement_types(db)
    counters = collect_progress_counters(db, user_id)
    rows = {
        row.achievement_type_id: row
        for row in db.query(UserAchievement).filter(UserAchievement.user_id == user_id).all()
    }
    now = utcnow()
    unlocked: list[str] = []
    for achievement_type in types:
        requirements = _safe_json_loads(achievement_type.requirements, {})
        if not isinstance(requirements, dict):
            requirements = {}
        progress = {
            key: min(int(counters.get(key, 0)), int(target))
            for key, target in requirements.items()
        }
        row = rows.get(achievement_type.id)
        if row is None:
            row = UserAchievement(
                user_id=user_id,
                achievement_type_id=achievement_type.id,
                completed=False,
            )
            db.add(row)
            rows[achievement_type.id] = row
        if row.completed:
            continue
        row.progress = _json_dump(progress)
        if _requirements_met(requirements, counters):
            row.completed = True
            row.achieved_at = now
            unlocked.append(achievement_type.name)
    db.flush()
    if unlocked:
        logger.info("User %s unlocked achievements: %s", user_id, ", ".join(unlocked))
    return list(rows.values())


def in_session_trigger(db: Session) -> AchievementTrigger:
    """Trigger that syncs inside a SAVEPOINT of ``db`` so a failure leaves the caller's write intact."""

    def _trigger(user_id: int) -> None:
        if not app_settings.ACHIEVEMENT_SYNC_ENABLED:
            return
        with db.begin_nested():
            sync_achievement_progress(db, user_id)

    return _trigger


def sync_achievements_for_user_id(user_id: int) -> None:
    """Fire-and-forget entry point; runs on its own session."""
    if not app_settings.ACHIEVEMENT_SYNC_ENABLED:
        return
    db = SessionLocal()
    try:
        if not db.get(User, user_id):
            return
        try:
            sync_achievement_progress(db, user_id)
            db.commit()
        except Exception as exc:
            db.rollback()
            logger.warning("Async achievement sync failed for user %s: %s", user_id, exc)
    finally:
        db.close()


def fire_trigger(trigger: AchievementTrigger | None, user_id: int) -> None:
    if trigger is None:
        return
    try:
        trigger(user_id)
    except Exception as exc:
        logger.warning("Achievement sync trigger failed for user %s: %s", user_id, exc)


def _achievement_to_dict(row: UserAchievement) -> dict[str, Any]:
    achievement_type = row.achievement_type
    progress = _safe_json_loads(row.progress, {})
    return {
        "id": row.id,
        "achievement_type_id": row.achievement_type_id,
        "name": achievement_type.name if achievement_type else None,
        "description": achievement_type.description if achievement_type else None,
        "category": achievement_type.category if achievement_type else None,
        "icon": achievement_type.icon if achievement_type else None,
        "points": int(achievement_type.points or 0) if achievement_type else 0,
        "requirements": _safe_json_loads(achievement_type.requirements, {}) if achievement_type else {},
        "progress": progress if isinstance(progress, dict) else {},
        "completed": bool(row.completed),
        "achieved_at": row.achieved_at.isoformat() if row.achieved_at else None,
    }


def list_user_achievements(db: Session, user_id: int, completed: bool | None = None) -> list[dict[str, Any]]:
    query = db.query(UserAchievement).filter(UserAchievement.user_id == user_id)
    if completed is not None:
        query = query.filter(UserAchievement.completed.is_(completed))
    rows = query.order_by(UserAchievement.completed.desc(), UserAchievement.achievement_type_id.asc()).all()
    return [_achievement_to_dict(row) for row in rows]


def get_user_stats(db: Session, user_id: int) -> dict[str, int]:
    counters = collect_progress_counters(db, user_id)
    streaks = compute_user_streaks(db, user_id)
    completed_rows = (
        db.query(UserAchievement)
        .filter(UserAchievement.user_id == user_id, UserAchievement.completed.is_(True))
        .all()
    )
    total_points = sum(
        int(row.achievement_type.points or 0) for row in completed_rows if row.achievement_type
    )
    return {
        "total_meals_cooked": counters["recipes_cooked"],
        "total_meal_plans_created": counters["meal_plans_created"],
        "current_streak": streaks.current,
        "longest_streak": streaks.longest,
        "completed_achievements": len(completed_rows),
        "total_points": total_points,
    }
