from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from ..db import get_db
from ..deps import get_cache, get_user_id
from ..infra.user_cache import UserCache
from ..schemas import SettingsUpdate, UserSettingsOut
from ..services.users import get_user_profile, upsert_user_settings

router = APIRouter()


@router.get("/settings")
def get_settings(
    db: Session = Depends(get_db),
    cache: UserCache = Depends(get_cache),
    user_id: str = Depends(get_user_id),
):
    return get_user_profile(db, cache, user_id)


@router.post("/settings", response_model=UserSettingsOut)
def update_settings(
    body: SettingsUpdate,
    db: Session = Depends(get_db),
    cache: UserCache = Depends(get_cache),
    user_id: str = Depends(get_user_id),
):
    return upsert_user_settings(db, cache, user_id, **body.model_dump(exclude_none=True))
