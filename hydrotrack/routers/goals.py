from dataclasses import asdict
from datetime import date
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from ..db import get_db
from ..dates import as_date, local_date
from ..deps import get_cache, get_user_id
from ..infra.user_cache import UserCache
from ..schemas import GoalHistoryOut, GoalRangeOut, GoalSet
from ..services.goals import check_coverage, goal_on_date, goal_timeline, goals_on_dates, set_goal
from ..services.users import get_user_profile

router = APIRouter()


@router.get("/goal")
def get_goal(
    day: Optional[date] = None,
    db: Session = Depends(get_db),
    cache: UserCache = Depends(get_cache),
    user_id: str = Depends(get_user_id),
):
    if day is None:
        day = local_date(get_user_profile(db, cache, user_id)["timezone"])
    return {"date": day.isoformat(), "daily_goal": goal_on_date(db, user_id, day)}


@router.get("/goals")
def get_goals(
    days: str,
    db: Session = Depends(get_db),
    user_id: str = Depends(get_user_id),
):
    """Goals for a comma-separated list of ISO dates."""
    try:
        requested = [as_date(d) for d in days.split(",") if d.strip()]
    except ValueError:
        raise HTTPException(status_code=400, detail="days must be ISO dates separated by commas")
    if len(requested) > 366:
        raise HTTPException(status_code=400, detail="At most 366 days per request")

    goals = goals_on_dates(db, user_id, requested)
    return {"goals": {day.isoformat(): goal for day, goal in goals.items()}}


@router.post("/goal", response_model=GoalRangeOut)
def update_goal(
    body: GoalSet,
    db: Session = Depends(get_db),
    cache: UserCache = Depends(get_cache),
    user_id: str = Depends(get_user_id),
):
    return set_goal(db, user_id, body.daily_goal, effective_from=body.effective_from, cache=cache)


@router.get("/goal/history", response_model=GoalHistoryOut)
def get_goal_history(
    db: Session = Depends(get_db),
    user_id: str = Depends(get_user_id),
):
    ranges = goal_timeline(db, user_id)
    issues = [
        {**asdict(issue), "start": issue.start.isoformat(), "end": issue.end.isoformat() if issue.end else None}
        for issue in check_coverage(ranges)
    ]
    return {"ranges": ranges, "issues": issues}
