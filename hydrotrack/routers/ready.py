import logging

from fastapi import APIRouter
from redis.exceptions import RedisError

from ..core.ai_client import get_provider
from ..infra.redis_client import get_redis

router = APIRouter()
logger = logging.getLogger("hydrotrack.ready")


@router.get("/ready")
async def ready():
    redis_ok = False
    try:
        r = await get_redis()
        redis_ok = bool(await r.ping())
    except (RedisError, OSError) as e:
        logger.warning(f"Redis ping failed: {e}")
    return {"ok": True, "redis_ok": redis_ok, "inference": get_provider().name}
