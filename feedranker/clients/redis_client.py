"""
Redis client wrapper.

Redis holds the per-user ranking models (see ranking/model_cache.py for the
key layout). The connection is opened once at startup and shared by every
request through app.state.model_cache.
"""
import logging
from typing import Optional

import redis.asyncio as aioredis

from feedranker.config import settings

logger = logging.getLogger(__name__)

_redis: Optional[aioredis.Redis] = None


async def init_redis() -> aioredis.Redis:
    global _redis
    _redis = aioredis.Redis(
        host=settings.redis_host,
        port=settings.redis_port,
        decode_responses=True,
    )
    await _redis.ping()
    logger.info("Redis connected at %s:%s", settings.redis_host, settings.redis_port)
    return _redis


async def close_redis() -> None:
    global _redis
    if _redis is not None:
        await _redis.aclose()
        _redis = None

