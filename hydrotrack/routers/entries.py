from datetime import date
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session

from ..db import get_db
from ..dates import local_date, week_start
from ..deps import get_cache, get_user_id
from ..errors import DailyLimitExceeded, ZeroHydrationError
from ..infra.user_cache import UserCache
from ..schemas import EntryCreate, EntryWriteOut, FavoriteOut
from ..services.aggregates import create_entry, daily_summary, delete_entry, set_favorite, weekly_summary
from ..services.hydration import calculate_consumption
from ..services.limits import LimitKind, enforce_daily_limit
from ..services.users import get_user_profile

router = APIRouter()


@router.post("/entries", response_model=EntryWriteOut, status_code=201)
def add_entry(
    body: EntryCreate,
    db: Session = Depends(get_db),
    cache: UserCache = Depends(get_cache),
    user_id: str = Depends(get_user_id),
):
    try:
        consumption = calculate_consumption(body.ounces, servings=body.servings, liquid_type=body.liquid_type)
    except ZeroHydrationError as e:
        raise HTTPException(status_code=422, detail=str(e))

    try:
        enforce_daily_limit(db, user_id, LimitKind.MANUAL_ADDS, body.timestamp)
    except DailyLimitExceeded as e:
        db.rollback()
        raise HTTPException(status_code=429, detail=str(e))

    write = create_entry(
        db,
        cache,
        user_id=user_id,
        ounces=consumption.ounces,
        classification="favorite" if body.created_from_favorite else "manual",
        liquid_type=consumption.liquid_type,
        timestamp=body.timestamp,
        servings=body.servings,
        description=body.description,
        created_from_favorite=body.created_from_favorite,
    )
    return write


@router.delete("/entries/{entry_id}", response_model=EntryWriteOut)
def remove_entry(
    entry_id: str,
    db: Session = Depends(get_db),
    cache: UserCache = Depends(get_cache),
    user_id: str = Depends(get_user_id),
):
    write = delete_entry(db, cache, user_id, entry_id)
    if write is None:
        raise HTTPException(status_code=404, detail="Entry not found")
    return write


@router.post("/entries/{entry_id}/favorite", response_model=FavoriteOut)
def favorite_entry(
    entry_id: str,
    db: Session = Depends(get_db),
    cache: UserCache = Depends(get_cache),
    user_id: str = Depends(get_user_id),
):
    entry = set_favorite(db, cache, user_id, entry_id, True)
    if entry is None:
        raise HTTPException(status_code=404, detail="Entry not found")
    return entry


@router.delete("/entries/{entry_id}/favorite", response_model=FavoriteOut)
def unfavorite_entry(
    entry_id: str,
    db: Session = Depends(get_db),
    cache: UserCache = Depends(get_cache),
    user_id: str = Depends(get_user_id),
):
    entry = set_favorite(db, cache, user_id, entry_id, False)
    if entry is None:
        raise HTTPException(status_code=404, detail="Entry not found")
    return entry


@router.get("/daily")
def get_daily(
    day: Optional[date] = None,
    db: Session = Depends(get_db),
    cache: UserCache = Depends(get_cache),
    user_id: str = Depends(get_user_id),
):
    if day is None:
        day = local_date(get_user_profile(db, cache, user_id)["timezone"])
    return daily_summary(db, cache, user_id, day)


@router.get("/weekly-summary")
def get_weekly_summary(
    week_start_date: Optional[date] = Query(None, alias="week_start"),
    db: Session = Depends(get_db),
    cache: UserCache = Depends(get_cache),
    user_id: str = Depends(get_user_id),
):
    if week_start_date is None:
        week_start_date = week_start(local_date(get_user_profile(db, cache, user_id)["timezone"]))
    return weekly_summary(db, cache, user_id, week_start_date)
