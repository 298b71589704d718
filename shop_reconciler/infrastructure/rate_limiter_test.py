import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from shop_reconciler.infrastructure.rate_limiter import (
    RateLimitScope,
    WebhookRateLimiter,
)


class _FakePipeline:
    def __init__(self, store: dict, ttls: dict, fail: bool):
        self._store = store
        self._ttls = ttls
        self._fail = fail
        self._ops = []

    async def __aenter__(self):
        return self

    async def __aexit__(self, *args):
        return None

    def incr(self, key):
        self._ops.append(("incr", key))
        return self

    def ttl(self, key):
        self._ops.append(("ttl", key))
        return self

    async def execute(self):
        if self._fail:
            raise RedisConnectionError("redis is down")
        results = []
        for op, key in self._ops:
            if op == "incr":
                self._store[key] = self._store.get(key, 0) + 1
                results.append(self._store[key])
            else:
                results.append(self._ttls.get(key, -1))
        return results


class _FakeRedis:
    def __init__(self, fail: bool = False):
        self.store: dict = {}
        self.ttls: dict = {}
        self._fail = fail

    def pipeline(self, transaction: bool = True):
        return _FakePipeline(self.store, self.ttls, self._fail)

    async def expire(self, key, seconds):
        self.ttls[key] = seconds


class TestWebhookRateLimiter:
    @pytest.mark.asyncio
    async def test_allows_everything_without_redis(self):
        limiter = WebhookRateLimiter(redis=None, max_requests=1)

        for _ in range(5):
            decision = await limiter.hit(
                "monobank", RateLimitScope.INVALID_SIGNATURE, "1.2.3.4"
            )
            assert decision.allowed

    @pytest.mark.asyncio
    async def test_blocks_after_limit_with_retry_after(self):
        # Given
        redis = _FakeRedis()
        limiter = WebhookRateLimiter(redis=redis, max_requests=2, window_seconds=60)

        # When
        decisions = [
            await limiter.hit("stripe", RateLimitScope.MISSING_SIGNATURE, "ip")
            for _ in range(3)
        ]

        # Then
        assert [d.allowed for d in decisions] == [True, True, False]
        assert decisions[-1].retry_after == 60

    @pytest.mark.asyncio
    async def test_scopes_are_counted_separately(self):
        redis = _FakeRedis()
        limiter = WebhookRateLimiter(redis=redis, max_requests=1)

        await limiter.hit("stripe", RateLimitScope.MISSING_SIGNATURE, "ip")
        decision = await limiter.hit("stripe", RateLimitScope.INVALID_SIGNATURE, "ip")

        assert decision.allowed
        assert len(redis.store) == 2

    @pytest.mark.asyncio
    async def test_fails_open_when_redis_errors(self):
        limiter = WebhookRateLimiter(redis=_FakeRedis(fail=True), max_requests=0)

        decision = await limiter.hit("stripe", RateLimitScope.INVALID_SIGNATURE, "ip")

        assert decision.allowed
