import logging

import redis.asyncio as aioredis

logger = logging.getLogger(__name__)


def create_redis_client(url: str | None) -> aioredis.Redis | None:
    """Build the process-wide Redis client, or None when Redis is not configured.

    Wired as a ``providers.Singleton``, so the client is created on first use
    and reused afterwards. Callers must handle the None case.
    """
    if not url:
        logger.info("Redis URL is not configured, cache-backed features are disabled")
        return None
    return aioredis.from_url(url, decode_responses=True)
