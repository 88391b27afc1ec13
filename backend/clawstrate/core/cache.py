"""
Redis client and API read-cache invalidation.
"""

import redis.asyncio as redis
import structlog
from redis.exceptions import RedisError

from clawstrate.core.config import settings

logger = structlog.get_logger()


def create_redis() -> redis.Redis:
    """Create the shared async Redis client (locks + caches)."""
    return redis.from_url(str(settings.REDIS_URL), decode_responses=True)


async def invalidate_api_caches(
    client: redis.Redis,
    pattern: str | None = None,
) -> int:
    """
    Drop cached read-API responses after a run has written new data.

    Failures are logged and swallowed: a stale cache must never change the
    verdict of a pipeline run.

    Returns:
        Number of keys deleted
    """
    pattern = pattern or settings.API_CACHE_PATTERN
    deleted = 0
    try:
        keys = [key async for key in client.scan_iter(match=pattern, count=500)]
        if keys:
            deleted = await client.delete(*keys)
    except RedisError as e:
        logger.warning("cache_invalidation_failed", pattern=pattern, error=str(e))
        return 0

    logger.info("api_caches_invalidated", pattern=pattern, deleted=deleted)
    return deleted
