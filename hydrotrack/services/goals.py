"""Effective-dated daily goal history.

For one user the ranges never overlap and together cover every date from the
first range's start onward; exactly one range is open (until NULL) and it is
always the latest. goal_on_date / goals_on_dates are read-only.
"""

import logging
from dataclasses import dataclass
from datetime import date, timedelta
from decimal import Decimal
from typing import Iterable, Optional

from sqlalchemy import select, delete, func
from sqlalchemy.orm import Session

from ..dates import as_date, next_monday, week_start
from ..infra.user_cache import InvalidationReason, UserCache
from ..models import ConsumptionEntry, GoalRange, UserSettings, WeeklySummary
from ..settings import settings

logger = logging.getLogger("hydrotrack.goals")

# First range start for users without any entries
HISTORY_START = date(2020, 1, 1)


@dataclass
class CoverageIssue:
    kind: str  # "gap" | "overlap" | "open_before_end" | "closed_tail"
    start: date
    end: Optional[date]


def _fallback_goal(db: Session, user_id: str) -> float:
    current = db.scalar(select(UserSettings.daily_goal).where(UserSettings.user_id == user_id))
    if current is not None:
        return float(current)
    return settings.default_daily_goal


def goal_on_date(db: Session, user_id: str, day) -> float:
    day = as_date(day)
    goal = db.scalar(
        select(GoalRange.daily_goal)
        .where(
            GoalRange.user_id == user_id,
            GoalRange.effective_from_date <= day,
            (GoalRange.effective_until_date.is_(None)) | (GoalRange.effective_until_date >= day),
        )
        .order_by(GoalRange.effective_from_date.desc())
        .limit(1)
    )
    if goal is not None:
        return float(goal)
    return _fallback_goal(db, user_id)


def goals_on_dates(db: Session, user_id: str, days: Iterable) -> dict[date, float]:
    """Goal for each requested day from a single load of the user's ranges."""
    rows = db.execute(
        select(GoalRange.daily_goal, GoalRange.effective_from_date, GoalRange.effective_until_date)
        .where(GoalRange.user_id == user_id)
        .order_by(GoalRange.effective_from_date.desc())
    ).all()
    ranges = [
        (float(goal), as_date(start), as_date(until) if until is not None else None)
        for goal, start, until in rows
    ]

    fallback = None
    result: dict[date, float] = {}
    for raw in days:
        day = as_date(raw)
        for goal, start, until in ranges:
            if start <= day and (until is None or until >= day):
                result[day] = goal
                break
        else:
            if fallback is None:
                fallback = _fallback_goal(db, user_id)
            result[day] = fallback
    return result


def seed_goal_history(db: Session, user_id: str, daily_goal) -> Optional[GoalRange]:
    """Create the first open range. No-op when the user already has history.

    Back-dated to the Monday of the earliest live entry so past weeks resolve
    to a goal. Runs inside the caller's transaction.
    """
    existing = db.scalar(select(GoalRange.id).where(GoalRange.user_id == user_id).limit(1))
    if existing:
        return None

    earliest = db.scalar(
        select(func.min(ConsumptionEntry.entry_date)).where(
            ConsumptionEntry.user_id == user_id,
            ConsumptionEntry.is_deleted.is_(False),
        )
    )
    start = week_start(as_date(earliest)) if earliest is not None else HISTORY_START

    seed = GoalRange(
        user_id=user_id,
        daily_goal=Decimal(str(daily_goal)),
        effective_from_date=start,
        effective_until_date=None,
    )
    db.add(seed)
    db.flush()
    logger.info(f"Seeded goal history for {user_id}: {daily_goal} oz from {start}")
    return seed


def schedule_goal(db: Session, user: UserSettings, daily_goal: float, effective_from=None) -> GoalRange:
    """Open a new range for an already locked settings row. Does not commit.

    Defaults to next Monday in the user's timezone so the current week keeps
    the goal it started with.
    """
    from .aggregates import refresh_week_stats

    user_id = user.user_id
    start = as_date(effective_from) if effective_from is not None else next_monday(user.timezone)
    seed_goal_history(db, user_id, user.daily_goal)

    # A later change replaces anything already scheduled from this date on
    db.execute(
        delete(GoalRange).where(
            GoalRange.user_id == user_id,
            GoalRange.effective_from_date >= start,
        )
    )

    previous = db.scalar(
        select(GoalRange)
        .where(GoalRange.user_id == user_id, GoalRange.effective_from_date < start)
        .order_by(GoalRange.effective_from_date.desc())
        .limit(1)
    )
    if previous is not None:
        previous.effective_until_date = start - timedelta(days=1)

    new_range = GoalRange(
        user_id=user_id,
        daily_goal=Decimal(str(daily_goal)),
        effective_from_date=start,
        effective_until_date=None,
    )
    db.add(new_range)
    user.daily_goal = Decimal(str(daily_goal))
    db.flush()

    affected_weeks = db.scalars(
        select(WeeklySummary.week_start_date).where(
            WeeklySummary.user_id == user_id,
            WeeklySummary.week_start_date >= week_start(start),
        )
    ).all()
    for monday in affected_weeks:
        refresh_week_stats(db, user_id, as_date(monday))
    return new_range


def set_goal(
    db: Session,
    user_id: str,
    daily_goal: float,
    *,
    effective_from=None,
    cache: Optional[UserCache] = None,
) -> GoalRange:
    """Start a new goal range, closing the one before it."""
    try:
        user = db.scalar(
            select(UserSettings).where(UserSettings.user_id == user_id).with_for_update()
        )
        if user is None:
            user = UserSettings(
                user_id=user_id,
                timezone=settings.default_timezone,
                daily_goal=Decimal(str(settings.default_daily_goal)),
            )
            db.add(user)
            db.flush()

        new_range = schedule_goal(db, user, daily_goal, effective_from)
        start = new_range.effective_from_date
        db.commit()
    except Exception:
        db.rollback()
        raise

    db.refresh(new_range)
    if cache is not None:
        cache.invalidate_user(user_id, InvalidationReason.GOAL_CHANGED)
    logger.info(f"Goal for {user_id} set to {daily_goal} oz from {start}")
    return new_range


def goal_timeline(db: Session, user_id: str) -> list[GoalRange]:
    return list(
        db.scalars(
            select(GoalRange)
            .where(GoalRange.user_id == user_id)
            .order_by(GoalRange.effective_from_date)
        ).all()
    )


def check_coverage(ranges: Iterable[GoalRange]) -> list[CoverageIssue]:
    """Gaps and overlaps in a user's ranges. Empty when the history is sound."""
    ordered = sorted(
        (
            (as_date(r.effective_from_date), as_date(r.effective_until_date) if r.effective_until_date else None)
            for r in ranges
        ),
        key=lambda pair: pair[0],
    )
    issues: list[CoverageIssue] = []
    for (start, until), (next_start, _) in zip(ordered, ordered[1:]):
        if until is None:
            issues.append(CoverageIssue("open_before_end", start, next_start))
        elif until >= next_start:
            issues.append(CoverageIssue("overlap", next_start, until))
        elif until + timedelta(days=1) < next_start:
            issues.append(CoverageIssue("gap", until + timedelta(days=1), next_start - timedelta(days=1)))

    if ordered and ordered[-1][1] is not None:
        issues.append(CoverageIssue("closed_tail", ordered[-1][1] + timedelta(days=1), None))
    return issues
