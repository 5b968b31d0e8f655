"""
Redis-based distributed lock manager.

Guards every seat-changing critical section with a per-ride key
(``lock:seat:{ride_id}``) and the ride-expiry sweeper with a singleton key.

Implementation uses SET NX EX for acquire and a Lua script for atomic
check-and-delete on release, so a holder whose TTL lapsed can never delete
a lock that somebody else acquired in the meantime.

Acquire never blocks.  ``acquire_with_retry`` layers a few jittered retries
on top for request handlers; anything smarter belongs to the caller.

Failure policy is fail-closed: if Redis is unreachable ``acquire`` raises
``LockStoreUnavailable`` instead of pretending the lock was granted.
"""

from __future__ import annotations

import asyncio
import logging
import random
import uuid
from contextlib import asynccontextmanager
from typing import AsyncIterator, Awaitable, Callable, Optional, TypeVar

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from carpool.domain.errors import LockStoreUnavailable, ResourceLocked

logger = logging.getLogger(__name__)

T = TypeVar("T")

RELEASE_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("del", KEYS[1])
else
    return 0
end
"""


def seat_lock_key(ride_id: str) -> str:
    return f"lock:seat:{ride_id}"


class LockManager:
    def __init__(self, client: aioredis.Redis, default_ttl: int = 30):
        self.redis = client
        self.default_ttl = default_ttl

    async def acquire(self, key: str, ttl: Optional[int] = None) -> Optional[str]:
        """Try once. Returns the owner token on success, ``None`` if held."""
        token = str(uuid.uuid4())
        try:
            acquired = await self.redis.set(
                key, token, nx=True, ex=ttl or self.default_ttl
            )
        except RedisError as exc:
            logger.error("Lock store unreachable while acquiring %s: %s", key, exc)
            raise LockStoreUnavailable(
                "Lock service unavailable, please try again later"
            ) from exc
        if acquired:
            logger.debug("Lock acquired: %s", key)
            return token
        logger.debug("Lock busy: %s", key)
        return None

    async def release(self, key: str, token: str) -> bool:
        """Release only if we still own the lock (atomic via Lua)."""
        try:
            result = await self.redis.eval(RELEASE_SCRIPT, 1, key, token)
        except RedisError as exc:
            # TTL reclaims the key; nothing else is safe to do here
            logger.warning("Lock release failed for %s: %s", key, exc)
            return False
        released = int(result or 0) == 1
        if not released:
            logger.warning("Lock %s was not ours to release (expired or stolen)", key)
        return released

    async def acquire_with_retry(
        self,
        key: str,
        ttl: Optional[int] = None,
        attempts: int = 3,
        base_delay: float = 0.05,
    ) -> str:
        """Bounded retries with jitter; raises ``ResourceLocked`` when exhausted."""
        for attempt in range(1, max(attempts, 1) + 1):
            token = await self.acquire(key, ttl)
            if token:
                return token
            if attempt < attempts:
                await asyncio.sleep(base_delay * random.uniform(0.5, 1.5))
        logger.warning("Lock %s still busy after %d attempts", key, attempts)
        raise ResourceLocked(
            "Resource is locked. Please try again shortly.", details={"key": key}
        )

    @asynccontextmanager
    async def hold(
        self,
        key: str,
        ttl: Optional[int] = None,
        attempts: int = 1,
        base_delay: float = 0.05,
    ) -> AsyncIterator[str]:
        token = await self.acquire_with_retry(key, ttl, attempts, base_delay)
        try:
            yield token
        finally:
            await self.release(key, token)

    async def with_lock(
        self, key: str, ttl: Optional[int], fn: Callable[[], Awaitable[T]]
    ) -> T:
        """Acquire-or-fail, run *fn*, always release."""
        async with self.hold(key, ttl):
            return await fn()
