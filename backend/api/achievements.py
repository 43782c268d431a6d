from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from api.deps import get_user
from db.database import get_db
from db.models import User
from services.achievement_service import get_user_stats, list_user_achievements, sync_achievement_progress


router = APIRouter(prefix="/users/{user_id}", tags=["achievements"])


@router.get("/achievements")
def achievements(
    completed: Optional[bool] = None,
    user: User = Depends(get_user),
    db: Session = Depends(get_db),
):
    # Brings rows for newly seeded achievement types into existence.
    sync_achievement_progress(db, user.id)
    db.commit()
    return {"achievements": list_user_achievements(db, user.id, completed=completed)}


@router.get("/stats")
def stats(
    user: User = Depends(get_user),
    db: Session = Depends(get_db),
):
    return get_user_stats(db, user.id)
