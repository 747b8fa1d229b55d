"""Redis connection management."""

from __future__ import annotations

import redis.asyncio as redis

from orgguard.core.config import get_settings

settings = get_settings()

_redis_pool: redis.Redis | None = None


def get_redis() -> redis.Redis | None:
    """Get or create the Redis client. Returns None when Redis is not configured."""
    global _redis_pool
    if not settings.redis_url:
        return None
    if _redis_pool is None:
        _redis_pool = redis.from_url(
            settings.redis_url,
            decode_responses=True,
            socket_connect_timeout=2,
            socket_timeout=2,
        )
    return _redis_pool


async def close_redis() -> None:
    """Close the Redis connection pool."""
    global _redis_pool
    if _redis_pool is not None:
        await _redis_pool.aclose()
        _redis_pool = None
