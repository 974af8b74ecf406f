from __future__ import annotations

import logging
from functools import lru_cache

import redis.asyncio as redis

from homehero.core.config import get_settings

logger = logging.getLogger(__name__)


class CacheUnavailableError(RuntimeError):
    """Raised when the key-value cache is not configured or cannot be reached."""


@lru_cache
def get_cache_client() -> redis.Redis | None:
    settings = get_settings()
    if not settings.redis_url:
        return None
    return redis.from_url(
        settings.redis_url,
        decode_responses=True,
        socket_timeout=2.0,
        socket_connect_timeout=2.0,
    )


def require_cache(client: redis.Redis | None) -> redis.Redis:
    if client is None:
        raise CacheUnavailableError("HH_REDIS_URL is not configured")
    return client


async def close_cache_client() -> None:
    if get_cache_client.cache_info().currsize == 0:
        return
    client = get_cache_client()
    get_cache_client.cache_clear()
    if client is None:
        return
    try:
        await client.aclose()
    except redis.RedisError:
        logger.warning("failed to close redis client cleanly", exc_info=True)
