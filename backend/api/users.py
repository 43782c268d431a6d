from __future__ import annotations

import logging
from typing import Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel
from sqlalchemy.orm import Session

from api.deps import get_user
from db.database import get_db
from db.models import User

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/users", tags=["users"])


class UserCreate(BaseModel):
    username: str
    display_name: Optional[str] = None
    timezone: Optional[str] = None


def _user_to_dict(user: User) -> dict:
    return {
        "id": user.id,
        "username": user.username,
        "display_name": user.display_name,
        "timezone": user.timezone,
        "created_at": user.created_at.isoformat() if user.created_at else None,
    }


@router.post("", status_code=201)
def create_user(payload: UserCreate, db: Session = Depends(get_db)):
    username = payload.username.strip().lower()
    if not username:
        raise HTTPException(status_code=400, detail="username is required")
    if db.query(User).filter(User.username == username).first():
        raise HTTPException(status_code=409, detail="Username already exists")
    tz_name = (payload.timezone or "").strip() or None
    if tz_name:
        try:
            ZoneInfo(tz_name)
        except (ZoneInfoNotFoundError, ValueError):
            raise HTTPException(status_code=400, detail=f"Unknown timezone: {tz_name}")
    user = User(
        username=username,
        display_name=(payload.display_name or "").strip() or username,
        timezone=tz_name,
    )
    db.add(user)
    db.commit()
    db.refresh(user)
    logger.info("Created user %s (%s)", user.id, user.username)
    return _user_to_dict(user)


@router.get("/{user_id}")
def read_user(user: User = Depends(get_user)):
    return _user_to_dict(user)
