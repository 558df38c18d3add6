"""Daily usage counters stored on user_settings.

Counters reset the first time a request sees a new local calendar day for the
user. None of these functions commit; the caller owns the transaction.
"""

import enum
import logging
from dataclasses import dataclass
from datetime import date, datetime
from typing import Optional

from sqlalchemy import update
from sqlalchemy.orm import Session

from ..dates import as_date, local_date
from ..errors import DailyLimitExceeded
from ..models import UserSettings
from ..settings import settings
from .users import get_or_create_settings

logger = logging.getLogger("hydrotrack.limits")


class LimitKind(str, enum.Enum):
    IMAGE_UPLOADS = "image_uploads"
    TEXT_DESCRIPTIONS = "text_descriptions"
    MANUAL_ADDS = "manual_adds"


COUNTER_COLUMNS = {
    LimitKind.IMAGE_UPLOADS: UserSettings.daily_image_uploads,
    LimitKind.TEXT_DESCRIPTIONS: UserSettings.daily_text_descriptions,
    LimitKind.MANUAL_ADDS: UserSettings.daily_manual_adds,
}


def limit_for(kind: LimitKind) -> int:
    return {
        LimitKind.IMAGE_UPLOADS: settings.limit_image_uploads,
        LimitKind.TEXT_DESCRIPTIONS: settings.limit_text_descriptions,
        LimitKind.MANUAL_ADDS: settings.limit_manual_adds,
    }[kind]


@dataclass
class LimitStatus:
    kind: LimitKind
    current: int
    limit: int

    @property
    def allowed(self) -> bool:
        return self.current < self.limit

    @property
    def remaining(self) -> int:
        return max(0, self.limit - self.current)


def refresh_daily_counters(db: Session, user: UserSettings, today: date) -> bool:
    """Zero all three counters if they were last touched on another day."""
    if user.last_limit_date is not None and as_date(user.last_limit_date) == today:
        return False
    user.daily_image_uploads = 0
    user.daily_text_descriptions = 0
    user.daily_manual_adds = 0
    user.last_limit_date = today
    db.flush()
    logger.debug(f"Reset daily counters for {user.user_id} on {today}")
    return True


def check_daily_limit(
    db: Session, user_id: str, kind: LimitKind, now: Optional[datetime] = None
) -> LimitStatus:
    user = get_or_create_settings(db, user_id, lock=True)
    refresh_daily_counters(db, user, local_date(user.timezone, now))
    current = getattr(user, COUNTER_COLUMNS[kind].key)
    return LimitStatus(kind=kind, current=current, limit=limit_for(kind))


def increment_daily_limit(
    db: Session, user_id: str, kind: LimitKind, now: Optional[datetime] = None
) -> None:
    user = get_or_create_settings(db, user_id, lock=True)
    refresh_daily_counters(db, user, local_date(user.timezone, now))
    column = COUNTER_COLUMNS[kind]
    db.execute(
        update(UserSettings)
        .where(UserSettings.user_id == user_id)
        .values({column: column + 1})
        .execution_options(synchronize_session=False)
    )
    db.expire(user, [column.key])


def enforce_daily_limit(
    db: Session, user_id: str, kind: LimitKind, now: Optional[datetime] = None
) -> LimitStatus:
    """check_daily_limit that raises DailyLimitExceeded when the counter is used up."""
    status = check_daily_limit(db, user_id, kind, now)
    if not status.allowed:
        raise DailyLimitExceeded(kind.value, status.current, status.limit)
    return status
