import logging
from enum import StrEnum

import redis.asyncio as aioredis
from pydantic import BaseModel
from redis.exceptions import RedisError

from shop_reconciler.infrastructure.structured_log import log_event

logger = logging.getLogger(__name__)


class RateLimitScope(StrEnum):
    MISSING_SIGNATURE = "missing_sig"
    INVALID_SIGNATURE = "invalid_sig"


class RateLimitDecision(BaseModel):
    allowed: bool
    retry_after: int = 0


class WebhookRateLimiter:
    """Fixed-window counter of rejected webhook calls per provider, scope and client."""

    def __init__(
        self,
        redis: aioredis.Redis | None,
        max_requests: int = 30,
        window_seconds: int = 60,
    ):
        self._redis = redis
        self._max_requests = max_requests
        self._window_seconds = window_seconds

    @staticmethod
    def _key(provider: str, scope: RateLimitScope, client_id: str) -> str:
        return f"webhook_rl:{provider}:{scope}:{client_id}"

    async def hit(
        self, provider: str, scope: RateLimitScope, client_id: str
    ) -> RateLimitDecision:
        if self._redis is None:
            return RateLimitDecision(allowed=True)

        key = self._key(provider, scope, client_id)
        try:
            async with self._redis.pipeline(transaction=True) as pipe:
                pipe.incr(key)
                pipe.ttl(key)
                count, ttl = await pipe.execute()
            if ttl is None or ttl < 0:
                await self._redis.expire(key, self._window_seconds)
                ttl = self._window_seconds
        except RedisError as e:
            log_event(
                logger,
                logging.WARNING,
                "webhook_rate_limit_unavailable",
                provider=provider,
                scope=scope,
                error=str(e),
            )
            return RateLimitDecision(allowed=True)

        if count > self._max_requests:
            retry_after = ttl if ttl and ttl > 0 else self._window_seconds
            return RateLimitDecision(allowed=False, retry_after=retry_after)
        return RateLimitDecision(allowed=True)
