"""User settings, onboarding and the cached derived profile."""

import logging
from decimal import Decimal
from typing import Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from ..db import upsert_insert
from ..dates import local_date
from ..infra.user_cache import InvalidationReason, UserCache
from ..models import GoalRange, UserSettings
from ..settings import settings
from .goals import goal_on_date, schedule_goal, seed_goal_history

logger = logging.getLogger("hydrotrack.users")


def get_or_create_settings(db: Session, user_id: str, lock: bool = False) -> UserSettings:
    """Settings row for a user, inserted with defaults on first sight."""
    stmt = select(UserSettings).where(UserSettings.user_id == user_id)
    if lock:
        stmt = stmt.with_for_update()
    user = db.scalar(stmt)
    if user is not None:
        return user

    insert = upsert_insert(db, UserSettings).values(
        user_id=user_id,
        timezone=settings.default_timezone,
        daily_goal=Decimal(str(settings.default_daily_goal)),
    )
    db.execute(insert.on_conflict_do_nothing(index_elements=["user_id"]))
    return db.scalar(stmt)


def upsert_user_settings(
    db: Session,
    cache: Optional[UserCache],
    user_id: str,
    *,
    timezone: Optional[str] = None,
    daily_goal: Optional[float] = None,
    sip_size: Optional[str] = None,
    hand_size: Optional[str] = None,
) -> UserSettings:
    """Onboarding and settings edits.

    The first goal a user sets seeds their goal history. Later goal changes
    open a new range starting next Monday, committed together with the other
    edits.
    """
    goal_changed = False
    try:
        user = get_or_create_settings(db, user_id, lock=True)
        if timezone is not None:
            user.timezone = timezone
        if sip_size is not None:
            user.sip_size = sip_size
        if hand_size is not None:
            user.hand_size = hand_size

        if daily_goal is not None:
            has_history = db.scalar(select(GoalRange.id).where(GoalRange.user_id == user_id).limit(1))
            if has_history:
                if float(user.daily_goal) != float(daily_goal):
                    schedule_goal(db, user, daily_goal)
                    goal_changed = True
            else:
                user.daily_goal = Decimal(str(daily_goal))
                seed_goal_history(db, user_id, daily_goal)
        db.commit()
    except Exception:
        db.rollback()
        raise

    if cache is not None:
        reason = InvalidationReason.GOAL_CHANGED if goal_changed else InvalidationReason.SETTINGS_CHANGED
        cache.invalidate_user(user_id, reason)
    if goal_changed:
        logger.info(f"Goal for {user_id} set to {daily_goal} oz from next week")
    db.refresh(user)
    return user


def get_user_profile(db: Session, cache: UserCache, user_id: str) -> dict:
    def compute():
        user = get_or_create_settings(db, user_id)
        today = local_date(user.timezone)
        profile = {
            "user_id": user_id,
            "timezone": user.timezone,
            "daily_goal": float(user.daily_goal),
            "sip_size": user.sip_size,
            "hand_size": user.hand_size,
            "today": today.isoformat(),
            "goal_today": goal_on_date(db, user_id, today),
        }
        db.commit()
        return profile

    profile, _ = cache.get_or_set(user_id, "profile", compute)
    return profile
