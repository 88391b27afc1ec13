"""
Distributed locks on Redis.

A lock is the key ``lock:<resource>`` holding an ownership token, written
with a single ``SET NX EX``. Acquisition never blocks: a held key means
another invocation is already running and the caller should report
"skipped". Release is a compare-and-delete executed server-side, so a
handle whose lock already expired cannot delete a lock re-acquired by
someone else. Locks are never renewed; the TTL is the only backstop for a
holder that dies before releasing.
"""

import secrets
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Optional

import structlog
from redis.asyncio import Redis
from redis.exceptions import RedisError

logger = structlog.get_logger()

DEFAULT_LOCK_TTL_SECONDS = 300

# KEYS[1] = lock key, ARGV[1] = token captured at acquisition
RELEASE_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("del", KEYS[1])
end
return 0
"""


def lock_key(resource: str) -> str:
    return f"lock:{resource}"


def new_lock_token() -> str:
    """Ownership token: wall-clock millis plus a random suffix."""
    return f"{int(time.time() * 1000)}-{secrets.token_hex(8)}"


class LockHandle:
    """Ownership of one acquired lock."""

    def __init__(self, redis: Redis, resource: str, token: str, ttl_seconds: int):
        self.redis = redis
        self.resource = resource
        self.key = lock_key(resource)
        self.token = token
        self.ttl_seconds = ttl_seconds
        self._released = False

    async def release(self) -> bool:
        """
        Delete the lock if this handle still owns it.

        Returns:
            True if the key was deleted, False if it had expired or now
            belongs to another holder (or this handle was already released).
        """
        if self._released:
            return False
        self._released = True

        deleted = await self.redis.eval(RELEASE_SCRIPT, 1, self.key, self.token)
        if not deleted:
            logger.warning("lock_release_skipped", key=self.key, reason="not_owner")
            return False

        logger.debug("lock_released", key=self.key)
        return True

    def __repr__(self) -> str:
        return f"<LockHandle {self.key}>"


class LockManager:
    """
    Named, TTL-bounded mutual exclusion backed by Redis.

    Usage:
        async with lock_manager.hold("pipeline", 900) as handle:
            if handle is None:
                return skipped()
            ...
    """

    def __init__(self, redis: Redis):
        self.redis = redis

    async def acquire(
        self,
        resource: str,
        ttl_seconds: int = DEFAULT_LOCK_TTL_SECONDS,
    ) -> Optional[LockHandle]:
        """
        Try to take the lock for a resource.

        Args:
            resource: Resource name (the key becomes ``lock:<resource>``)
            ttl_seconds: Expiry; must upper-bound the holder's worst-case runtime

        Returns:
            A LockHandle on success, None if the lock is already held
        """
        token = new_lock_token()
        key = lock_key(resource)

        acquired = await self.redis.set(key, token, nx=True, ex=ttl_seconds)
        if not acquired:
            logger.info("lock_contended", key=key)
            return None

        logger.debug("lock_acquired", key=key, ttl_seconds=ttl_seconds)
        return LockHandle(self.redis, resource, token, ttl_seconds)

    @asynccontextmanager
    async def hold(
        self,
        resource: str,
        ttl_seconds: int = DEFAULT_LOCK_TTL_SECONDS,
    ) -> AsyncIterator[Optional[LockHandle]]:
        """
        Scoped acquisition; the lock is released on every exit path.

        A Redis error during release is logged, not raised; the key then
        expires with its TTL.
        """
        handle = await self.acquire(resource, ttl_seconds)
        try:
            yield handle
        finally:
            if handle is not None:
                try:
                    await handle.release()
                except RedisError as e:
                    logger.warning("lock_release_failed", key=handle.key, error=str(e))

    async def inspect(self, resource: str) -> tuple[Optional[str], int]:
        """Current holder token and remaining TTL (-2 when absent)."""
        key = lock_key(resource)
        token = await self.redis.get(key)
        ttl = await self.redis.ttl(key)
        if isinstance(token, bytes):
            token = token.decode()
        return token, ttl
