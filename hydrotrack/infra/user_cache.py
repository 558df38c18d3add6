"""Short-TTL per-user read cache.

Every key lives under ``hydrotrack:user:{user_id}:`` and is recorded in a
per-user index set, so invalidating a user deletes exactly that user's keys
without a SCAN. Redis is shared by API and worker processes, which keeps
invalidation consistent across them. A failed Redis call never fails the
request: reads fall through to the database and the TTL bounds staleness.
"""

import enum
import json
import logging
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Callable, Optional

from redis import Redis
from redis.exceptions import RedisError

from ..settings import settings
from .redis_client import get_sync_redis

logger = logging.getLogger("hydrotrack.cache")

KEY_PREFIX = "hydrotrack:user"


class InvalidationReason(str, enum.Enum):
    ENTRY_CREATED = "entry_created"
    ENTRY_DELETED = "entry_deleted"
    FAVORITE_CHANGED = "favorite_changed"
    GOAL_CHANGED = "goal_changed"
    SETTINGS_CHANGED = "settings_changed"


def _json_default(value):
    if isinstance(value, Decimal):
        return float(value)
    if isinstance(value, (date, datetime)):
        return value.isoformat()
    if isinstance(value, enum.Enum):
        return value.value
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


def user_key(user_id: str, name: str) -> str:
    return f"{KEY_PREFIX}:{user_id}:{name}"


def _index_key(user_id: str) -> str:
    return f"{KEY_PREFIX}:{user_id}:__index"


class UserCache:
    def __init__(self, redis: Optional[Redis] = None, ttl_seconds: Optional[int] = None):
        self._redis = redis
        self.ttl_seconds = ttl_seconds or settings.cache_ttl_seconds

    @property
    def redis(self) -> Redis:
        return self._redis if self._redis is not None else get_sync_redis()

    def get(self, user_id: str, name: str) -> Any:
        try:
            raw = self.redis.get(user_key(user_id, name))
        except RedisError as e:
            logger.warning(f"Cache read failed for {user_key(user_id, name)}: {e}")
            return None
        return json.loads(raw) if raw else None

    def set(self, user_id: str, name: str, value: Any, ttl: Optional[int] = None) -> None:
        ttl = ttl or self.ttl_seconds
        key = user_key(user_id, name)
        try:
            pipe = self.redis.pipeline()
            pipe.set(key, json.dumps(value, default=_json_default), ex=ttl)
            pipe.sadd(_index_key(user_id), key)
            pipe.expire(_index_key(user_id), ttl)
            pipe.execute()
        except RedisError as e:
            logger.warning(f"Cache write failed for {key}: {e}")

    def get_or_set(self, user_id: str, name: str, compute: Callable[[], Any], ttl: Optional[int] = None):
        """Return (value, hit). ``compute`` runs only on a miss."""
        hit = self.get(user_id, name)
        if hit is not None:
            return hit, True
        value = compute()
        self.set(user_id, name, value, ttl)
        # Callers always get the JSON shape, hit or miss
        return json.loads(json.dumps(value, default=_json_default)), False

    def invalidate_user(self, user_id: str, reason: InvalidationReason) -> int:
        """Drop every cached key for one user. Returns the number of keys removed."""
        index = _index_key(user_id)
        try:
            keys = list(self.redis.smembers(index))
            removed = self.redis.delete(*keys) if keys else 0
            self.redis.delete(index)
        except RedisError as e:
            logger.warning(f"Cache invalidation failed for user {user_id} ({reason.value}): {e}")
            return 0
        logger.debug(f"Invalidated {removed} cache keys for user {user_id} ({reason.value})")
        return removed
