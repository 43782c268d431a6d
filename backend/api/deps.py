from __future__ import annotations

from contextlib import contextmanager
from datetime import date
from typing import Iterator, Optional

from fastapi import Depends, HTTPException, Query
from sqlalchemy.orm import Session

from config import settings
from db.database import get_db
from db.models import User
from services.errors import InvariantViolation, NotFoundError
from utils.datetime_utils import today_for_tz


def get_user(user_id: int, db: Session = Depends(get_db)) -> User:
    user = db.get(User, user_id)
    if not user:
        raise HTTPException(status_code=404, detail="User not found")
    return user


def request_today(
    today: Optional[date] = Query(None, description="Override for the user's local date (YYYY-MM-DD)"),
    user: User = Depends(get_user),
) -> date:
    if today is not None:
        return today
    return today_for_tz(user.timezone or settings.DEFAULT_TIMEZONE)


@contextmanager
def service_errors() -> Iterator[None]:
    """Translate service exceptions into HTTP responses."""
    try:
        yield
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc))
    except InvariantViolation as exc:
        raise HTTPException(status_code=409, detail=str(exc))
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
