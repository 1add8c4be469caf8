"""
Shared Redis connection pool for LearnHub API.
Redis carries the Celery broker and (in production) slowapi counters; the API
itself only needs it for readiness checks.
"""

import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

from redis.asyncio import ConnectionPool, Redis, RedisError

from learnhub.core.config import settings

logger = logging.getLogger(__name__)

_redis_pool: Optional[ConnectionPool] = None


def get_redis_pool() -> ConnectionPool:
    """Lazy-initialize the shared pool from settings.REDIS_URL."""
    global _redis_pool
    if _redis_pool is None:
        _redis_pool = ConnectionPool.from_url(
            settings.REDIS_URL,
            max_connections=10,
            socket_timeout=5,
            socket_connect_timeout=5,
            health_check_interval=30,
        )
        logger.info("Redis connection pool initialized")
    return _redis_pool


@asynccontextmanager
async def get_redis_client() -> AsyncGenerator[Redis, None]:
    client = Redis(connection_pool=get_redis_pool())
    try:
        yield client
    finally:
        await client.aclose()  # returns connection to pool


async def check_redis_health() -> bool:
    try:
        async with get_redis_client() as redis:
            return bool(await redis.ping())
    except (RedisError, OSError) as e:
        logger.error(f"Redis health check failed: {e}")
        return False


async def close_redis_pool() -> None:
    """Close shared Redis connection pool on application shutdown."""
    global _redis_pool
    if _redis_pool is not None:
        await _redis_pool.disconnect()
        _redis_pool = None
        logger.info("Redis connection pool closed")
