"""Redis async connection pool shared by the lock manager and event sink."""

import redis.asyncio as aioredis

from carpool.config import settings

_pool = aioredis.ConnectionPool.from_url(
    settings.redis_url,
    decode_responses=True,
    socket_connect_timeout=2,
    socket_timeout=2,
)


async def get_redis() -> aioredis.Redis:
    """Return a Redis client backed by the shared connection pool."""
    return aioredis.Redis(connection_pool=_pool)


async def close_redis() -> None:
    await _pool.disconnect()
