"""
Unit tests for per-user admission control.

The in-process limiter takes an injected clock so window expiry is tested
without sleeping. The Redis limiter is tested against a mocked client.
"""

import asyncio
import logging
import os
from unittest.mock import AsyncMock, MagicMock

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError

# Mock environment variables before importing app modules
os.environ.setdefault("SUPABASE_URL", "https://test.supabase.co")
os.environ.setdefault("SUPABASE_KEY", "test-anon-key")

from auraiq.config import get_rate_limit_for_tier
from auraiq.errors import QuotaExceededError, RateLimitStoreError
from auraiq.services.rate_limiter import (
    InMemoryRateLimiter,
    RedisRateLimiter,
    build_rate_limiter,
)


class FakeClock:
    def __init__(self, now: float = 1_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


class TestInMemoryRateLimiter:
    """Fixed window: 20 requests per 60 seconds."""

    @pytest.mark.asyncio
    async def test_first_request_starts_window(self):
        """The first request opens a window with limit - 1 remaining."""
        clock = FakeClock()
        limiter = InMemoryRateLimiter(20, 60, clock=clock)

        result = await limiter.allow("user-1")

        assert result.allowed is True
        assert result.remaining == 19
        assert result.reset_at == clock.now + 60

    @pytest.mark.asyncio
    async def test_21st_request_rejected(self):
        """Twenty requests pass and the twenty-first is refused."""
        limiter = InMemoryRateLimiter(20, 60, clock=FakeClock())

        results = [await limiter.allow("user-1") for _ in range(21)]

        assert all(r.allowed for r in results[:20])
        assert [r.remaining for r in results[:20]] == list(range(19, -1, -1))
        assert results[20].allowed is False
        assert results[20].remaining == 0
        assert results[20].retry_after == 60
        assert results[20].limit == 20

    @pytest.mark.asyncio
    async def test_new_window_after_reset(self):
        """After reset_at a fresh window starts with 19 remaining."""
        clock = FakeClock()
        limiter = InMemoryRateLimiter(20, 60, clock=clock)
        for _ in range(21):
            await limiter.allow("user-1")

        clock.now += 60.001
        result = await limiter.allow("user-1")

        assert result.allowed is True
        assert result.remaining == 19

    @pytest.mark.asyncio
    async def test_window_still_closed_exactly_at_reset(self):
        """At exactly reset_at the old window still applies."""
        clock = FakeClock()
        limiter = InMemoryRateLimiter(1, 60, clock=clock)
        await limiter.allow("user-1")

        clock.now += 60
        result = await limiter.allow("user-1")

        assert result.allowed is False

    @pytest.mark.asyncio
    async def test_users_are_independent(self):
        """One user's exhausted window does not affect another."""
        limiter = InMemoryRateLimiter(1, 60, clock=FakeClock())

        assert (await limiter.allow("a")).allowed
        assert not (await limiter.allow("a")).allowed
        assert (await limiter.allow("b")).allowed

    @pytest.mark.asyncio
    async def test_concurrent_requests_never_exceed_limit(self):
        """Concurrent calls for one user never admit more than the limit."""
        limiter = InMemoryRateLimiter(20, 60, clock=FakeClock())

        results = await asyncio.gather(*[limiter.allow("user-1") for _ in range(50)])

        assert sum(r.allowed for r in results) == 20

    @pytest.mark.asyncio
    async def test_sweep_removes_only_expired_windows(self):
        """sweep() drops expired windows and keeps live ones."""
        clock = FakeClock()
        limiter = InMemoryRateLimiter(5, 60, clock=clock)
        await limiter.allow("old")
        clock.now += 30
        await limiter.allow("new")

        clock.now += 31
        removed = await limiter.sweep()

        assert removed == 1
        assert len(limiter) == 1

    @pytest.mark.asyncio
    async def test_background_sweep_start_and_close(self):
        """start() launches the sweep task and close() cancels it."""
        clock = FakeClock()
        limiter = InMemoryRateLimiter(5, 60, clock=clock, sweep_interval=0.01)
        await limiter.allow("user-1")
        clock.now += 61

        await limiter.start()
        await asyncio.sleep(0.05)
        await limiter.close()

        assert len(limiter) == 0

    def test_degraded_mode_is_logged(self, caplog):
        """The in-process limiter warns that it runs in degraded mode."""
        with caplog.at_level(logging.WARNING, logger="auraiq.services.rate_limiter"):
            InMemoryRateLimiter(20, 60)

        assert any("degraded" in r.getMessage() for r in caplog.records)

    def test_invalid_limits_rejected(self):
        """Limits and windows below one are refused."""
        with pytest.raises(ValueError):
            InMemoryRateLimiter(0, 60)


class TestRaiseForQuota:

    @pytest.mark.asyncio
    async def test_rejection_raises_429_with_headers(self):
        """A rejection raises QuotaExceededError carrying the rate-limit headers."""
        limiter = InMemoryRateLimiter(1, 60, clock=FakeClock())
        await limiter.allow("u")
        result = await limiter.allow("u")

        with pytest.raises(QuotaExceededError) as exc_info:
            result.raise_for_quota()

        error = exc_info.value
        assert error.status_code == 429
        assert error.headers == {
            "X-RateLimit-Limit": "1",
            "X-RateLimit-Remaining": "0",
            "Retry-After": "60",
        }

    @pytest.mark.asyncio
    async def test_allowed_result_does_not_raise(self):
        """An admitted result passes through and exposes its headers."""
        limiter = InMemoryRateLimiter(1, 60, clock=FakeClock())
        result = await limiter.allow("u")

        result.raise_for_quota()
        assert result.headers() == {"X-RateLimit-Limit": "1", "X-RateLimit-Remaining": "0"}


class TestRedisRateLimiter:

    def _limiter(self, script_result=None, clock=None, side_effect=None):
        client = MagicMock()
        script = AsyncMock(return_value=script_result, side_effect=side_effect)
        client.register_script.return_value = script
        client.aclose = AsyncMock()
        limiter = RedisRateLimiter(client, 20, 60, prefix="rl:test", clock=clock or FakeClock())
        return limiter, client, script

    @pytest.mark.asyncio
    async def test_allowed_request(self):
        """Script result [1, count, ttl] maps to an admitted result."""
        limiter, _, script = self._limiter([1, 1, 60_000])

        result = await limiter.allow("user-1")

        assert result.allowed is True
        assert result.remaining == 19
        assert result.reset_at == pytest.approx(1_060.0)
        script.assert_awaited_once_with(keys=["rl:test:user-1"], args=[20, 60_000])

    @pytest.mark.asyncio
    async def test_rejected_request(self):
        """Script result [0, count, ttl] maps to a rejection with Retry-After."""
        limiter, _, _ = self._limiter([0, 20, 12_500])

        result = await limiter.allow("user-1")

        assert result.allowed is False
        assert result.remaining == 0
        assert result.retry_after == 60
        assert result.reset_at == pytest.approx(1_012.5)

    @pytest.mark.asyncio
    async def test_missing_ttl_falls_back_to_window(self):
        """A key without a TTL resets after one window."""
        limiter, _, _ = self._limiter([1, 3, -1])

        result = await limiter.allow("user-1")

        assert result.reset_at == pytest.approx(1_060.0)

    @pytest.mark.asyncio
    async def test_unreachable_store_is_503(self, caplog):
        """A Redis connection failure surfaces as a 503, not an unhandled 500."""
        limiter, _, _ = self._limiter(side_effect=RedisConnectionError("Connection refused"))

        with caplog.at_level(logging.ERROR, logger="auraiq.services.rate_limiter"):
            with pytest.raises(RateLimitStoreError) as exc_info:
                await limiter.allow("user-1")

        assert exc_info.value.status_code == 503
        assert exc_info.value.error_code == "rate_limit_unavailable"
        assert any("rl:test" in r.getMessage() for r in caplog.records)

    @pytest.mark.asyncio
    async def test_store_timeout_is_503(self):
        """Timeouts are Redis errors too and map the same way."""
        limiter, _, _ = self._limiter(side_effect=RedisTimeoutError("Timeout reading from socket"))

        with pytest.raises(RateLimitStoreError):
            await limiter.allow("user-1")

    @pytest.mark.asyncio
    async def test_close_releases_client(self):
        """close() closes the Redis connection pool."""
        limiter, client, _ = self._limiter([1, 1, 1])

        await limiter.close()

        client.aclose.assert_awaited_once()


class TestBuildRateLimiter:

    def test_without_redis_url_uses_in_process(self):
        """No REDIS_URL means the in-process store."""
        limiter = build_rate_limiter(20, 60, redis_url=None)

        assert isinstance(limiter, InMemoryRateLimiter)
        assert limiter.mode == "in-process"

    def test_with_redis_url_uses_redis(self, mocker):
        """A REDIS_URL builds a Redis-backed limiter from that URL."""
        fake_client = MagicMock()
        from_url = mocker.patch("auraiq.services.rate_limiter.redis.from_url", return_value=fake_client)

        limiter = build_rate_limiter(30, 60, prefix="rl:iq1", redis_url="redis://cache:6379/0")

        assert isinstance(limiter, RedisRateLimiter)
        assert limiter.limit == 30
        from_url.assert_called_once_with("redis://cache:6379/0", decode_responses=True)


class TestTiers:

    @pytest.mark.parametrize("tier,requests", [
        ("free", 20), ("basic", 50), ("pro", 100), ("enterprise", 500), ("unknown", 20),
    ])
    def test_tier_limits(self, tier, requests):
        """Each plan tier has its ceiling; unknown tiers get free."""
        assert get_rate_limit_for_tier(tier) == {"requests": requests, "window_seconds": 60}
