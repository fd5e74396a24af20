"""
Per-user admission control.

Fixed-window counting keyed by user id:

    no record, or now > reset_at   -> new window, count=1, allow
    count >= limit                 -> reject until reset_at
    otherwise                      -> count += 1, allow

Two stores sit behind the same ``RateLimiter.allow`` interface:

- RedisRateLimiter: shared across server instances; the read-modify-write runs
  as one Lua script so concurrent requests cannot overshoot the limit.
- InMemoryRateLimiter: a lock-guarded dict for single-process deployments. It
  is only used when REDIS_URL is unset and logs a warning saying so.
"""

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Callable, Optional

import redis.asyncio as redis
from redis.exceptions import RedisError

from auraiq import config
from auraiq.errors import QuotaExceededError, RateLimitStoreError

logger = logging.getLogger(__name__)

Clock = Callable[[], float]


@dataclass(frozen=True)
class RateLimitResult:
    allowed: bool
    limit: int
    remaining: int
    reset_at: float                  # epoch seconds
    retry_after: int = 0             # seconds; only meaningful when not allowed

    def headers(self) -> dict:
        return {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
        }

    def raise_for_quota(self) -> None:
        """Raise QuotaExceededError when this result is a rejection."""
        if not self.allowed:
            raise QuotaExceededError(
                limit=self.limit,
                retry_after=self.retry_after,
                reset_at=self.reset_at,
            )


class RateLimiter(ABC):
    """allow(user_id) -> RateLimitResult"""

    mode = "unknown"

    def __init__(
        self,
        limit: int,
        window_seconds: int,
        retry_after: int = config.RATE_LIMIT_RETRY_AFTER_SECONDS,
    ):
        if limit < 1:
            raise ValueError("limit must be at least 1")
        if window_seconds < 1:
            raise ValueError("window_seconds must be at least 1")
        self.limit = limit
        self.window_seconds = window_seconds
        self.retry_after = retry_after

    @abstractmethod
    async def allow(self, user_id: str) -> RateLimitResult:
        ...

    async def start(self) -> None:
        """Begin any background maintenance."""

    async def close(self) -> None:
        """Stop background maintenance and release connections."""


# ---------------------------------------------------------------------------
# In-process store
# ---------------------------------------------------------------------------

@dataclass
class _Window:
    count: int
    reset_at: float


class InMemoryRateLimiter(RateLimiter):
    """
    Rate limiter backed by a dict in this process.

    Counts are not shared between workers, so the effective limit grows with
    the number of processes.
    """

    mode = "in-process"

    def __init__(
        self,
        limit: int,
        window_seconds: int,
        retry_after: int = config.RATE_LIMIT_RETRY_AFTER_SECONDS,
        clock: Clock = time.time,
        sweep_interval: float = config.RATE_LIMIT_SWEEP_SECONDS,
    ):
        super().__init__(limit, window_seconds, retry_after)
        self._clock = clock
        self._sweep_interval = sweep_interval
        self._windows: dict[str, _Window] = {}
        self._lock = asyncio.Lock()
        self._sweep_task: Optional[asyncio.Task] = None

        logger.warning(
            "REDIS_URL not set: rate limiting runs in degraded in-process mode "
            "(limits are per worker, not shared)"
        )

    async def allow(self, user_id: str) -> RateLimitResult:
        async with self._lock:
            now = self._clock()
            window = self._windows.get(user_id)

            if window is None or now > window.reset_at:
                window = _Window(count=1, reset_at=now + self.window_seconds)
                self._windows[user_id] = window
                return RateLimitResult(True, self.limit, self.limit - 1, window.reset_at)

            if window.count >= self.limit:
                return RateLimitResult(False, self.limit, 0, window.reset_at, self.retry_after)

            window.count += 1
            return RateLimitResult(True, self.limit, self.limit - window.count, window.reset_at)

    async def sweep(self) -> int:
        """Delete expired windows. Returns the number removed."""
        async with self._lock:
            now = self._clock()
            expired = [key for key, window in self._windows.items() if now > window.reset_at]
            for key in expired:
                del self._windows[key]
        if expired:
            logger.debug(f"Swept {len(expired)} expired rate-limit windows")
        return len(expired)

    async def _sweep_forever(self) -> None:
        while True:
            await asyncio.sleep(self._sweep_interval)
            try:
                await self.sweep()
            except Exception as e:
                logger.error(f"Rate-limit sweep failed: {e}")

    async def start(self) -> None:
        if self._sweep_task is None:
            self._sweep_task = asyncio.create_task(self._sweep_forever())

    async def close(self) -> None:
        if self._sweep_task is None:
            return
        self._sweep_task.cancel()
        try:
            await self._sweep_task
        except asyncio.CancelledError:
            pass
        self._sweep_task = None

    def __len__(self) -> int:
        return len(self._windows)


# ---------------------------------------------------------------------------
# Shared store (Redis)
# ---------------------------------------------------------------------------

# KEYS[1] = counter key, ARGV[1] = limit, ARGV[2] = window in ms
# Returns {allowed (0/1), count, ttl_ms}
_ALLOW_SCRIPT = """
local count = tonumber(redis.call('GET', KEYS[1]) or '0')
if count >= tonumber(ARGV[1]) then
  return {0, count, redis.call('PTTL', KEYS[1])}
end
count = redis.call('INCR', KEYS[1])
if count == 1 then
  redis.call('PEXPIRE', KEYS[1], ARGV[2])
end
return {1, count, redis.call('PTTL', KEYS[1])}
"""


class RedisRateLimiter(RateLimiter):
    """Rate limiter shared by every instance pointing at the same Redis."""

    mode = "redis"

    def __init__(
        self,
        client,
        limit: int,
        window_seconds: int,
        prefix: str = "ratelimit:chat",
        retry_after: int = config.RATE_LIMIT_RETRY_AFTER_SECONDS,
        clock: Clock = time.time,
    ):
        super().__init__(limit, window_seconds, retry_after)
        self._client = client
        self._prefix = prefix
        self._clock = clock
        self._script = client.register_script(_ALLOW_SCRIPT)

    def _key(self, user_id: str) -> str:
        return f"{self._prefix}:{user_id}"

    async def allow(self, user_id: str) -> RateLimitResult:
        """
        Raises:
            RateLimitStoreError: Redis is unreachable or rejected the script (503)
        """
        try:
            allowed, count, ttl_ms = await self._script(
                keys=[self._key(user_id)],
                args=[self.limit, self.window_seconds * 1000],
            )
        except RedisError as e:
            logger.error(f"Rate-limit store error for {self._prefix}: {e!r}")
            raise RateLimitStoreError("Rate limiting is temporarily unavailable. Please try again later.")

        allowed, count, ttl_ms = int(allowed), int(count), int(ttl_ms)

        # Keys expire on their own; a key without a TTL (-1) would never reset
        if ttl_ms < 0:
            ttl_ms = self.window_seconds * 1000
        reset_at = self._clock() + ttl_ms / 1000

        if not allowed:
            return RateLimitResult(False, self.limit, 0, reset_at, self.retry_after)
        return RateLimitResult(True, self.limit, max(self.limit - count, 0), reset_at)

    async def ping(self) -> bool:
        return bool(await self._client.ping())

    async def close(self) -> None:
        await self._client.aclose()


# ---------------------------------------------------------------------------
# Factory
# ---------------------------------------------------------------------------

def build_rate_limiter(
    limit: int,
    window_seconds: int = config.RATE_LIMIT_WINDOW_SECONDS,
    prefix: str = "ratelimit:chat",
    redis_url: Optional[str] = config.REDIS_URL,
) -> RateLimiter:
    """Redis-backed limiter when ``redis_url`` is set, in-process otherwise."""
    if redis_url:
        client = redis.from_url(redis_url, decode_responses=True)
        logger.info(f"Rate limiting ({prefix}) uses shared Redis store")
        return RedisRateLimiter(client, limit, window_seconds, prefix=prefix)

    return InMemoryRateLimiter(limit, window_seconds)


_limiters: dict[str, RateLimiter] = {}


def get_chat_rate_limiter() -> RateLimiter:
    """FastAPI dependency: the limiter for POST /api/chat."""
    if "chat" not in _limiters:
        _limiters["chat"] = build_rate_limiter(config.RATE_LIMIT_REQUESTS, prefix="ratelimit:chat")
    return _limiters["chat"]


def get_iq1_rate_limiter() -> RateLimiter:
    """FastAPI dependency: the limiter for POST /api/chat/iq1."""
    if "iq1" not in _limiters:
        _limiters["iq1"] = build_rate_limiter(config.IQ1_RATE_LIMIT_REQUESTS, prefix="ratelimit:iq1")
    return _limiters["iq1"]


def active_limiters() -> list[RateLimiter]:
    return list(_limiters.values())


async def close_limiters() -> None:
    for limiter in active_limiters():
        await limiter.close()
    _limiters.clear()
