"""Shared Redis connection for the queue, broadcast channel and usage counters."""

import asyncio

from redis.asyncio import Redis
from redis.asyncio.connection import ConnectionPool
from redis.exceptions import RedisError

from chatstream.core.config import settings
from chatstream.core.logging import get_logger

logger = get_logger(__name__)

_redis: Redis | None = None
_pool: ConnectionPool | None = None

CONNECT_ATTEMPTS = 5
CONNECT_RETRY_DELAY = 2


async def get_redis() -> Redis:
    """Get the process-wide Redis client, connecting with retries on first use."""
    global _redis, _pool
    if _redis is not None:
        return _redis

    for attempt in range(CONNECT_ATTEMPTS):
        try:
            logger.info(
                f"Connecting to Redis (attempt {attempt + 1}/{CONNECT_ATTEMPTS})..."
            )
            pool = ConnectionPool.from_url(settings.redis_url, decode_responses=True)
            client = Redis(connection_pool=pool)
            await client.ping()
        except (RedisError, OSError) as e:
            logger.warning(f"Redis connection failed: {e}")
            if attempt == CONNECT_ATTEMPTS - 1:
                logger.error("Failed to connect to Redis after all retries")
                raise
            await asyncio.sleep(CONNECT_RETRY_DELAY)
        else:
            _pool, _redis = pool, client
            logger.info("Redis connection established")
            break
    return _redis


async def close_redis() -> None:
    """Close the shared Redis connection."""
    global _redis, _pool
    if _redis is not None:
        await _redis.aclose()
        _redis = None
    if _pool is not None:
        await _pool.disconnect()
        _pool = None
