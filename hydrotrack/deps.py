"""FastAPI dependencies for the hydrotrack API.

Provides:
- Database session dependency (re-exported from db)
- Caller identity from the X-User-Id header (authentication happens upstream)
- The per-user cache, inference provider and session factory
"""

from typing import Callable, Optional

from fastapi import Header, HTTPException
from sqlalchemy.orm import Session

from .core.ai_client import InferenceProvider, get_provider as _get_provider
from .db import get_db, SessionLocal
from .infra.user_cache import UserCache

__all__ = ["get_db", "get_user_id", "get_cache", "get_provider", "get_session_factory"]


def get_user_id(x_user_id: Optional[str] = Header(None, alias="X-User-Id")) -> str:
    if not x_user_id or not x_user_id.strip():
        raise HTTPException(status_code=401, detail="Missing X-User-Id header")
    user_id = x_user_id.strip()
    if len(user_id) > 36:
        raise HTTPException(status_code=400, detail="Invalid X-User-Id header")
    return user_id


def get_cache() -> UserCache:
    return UserCache()


def get_provider() -> InferenceProvider:
    return _get_provider()


def get_session_factory() -> Callable[[], Session]:
    return SessionLocal()
