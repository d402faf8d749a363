"""
Sliding-window rate limiting.

The one piece of shared mutable state in the request path. Keys are
`user:<principal>` for decoded credentials and `ip:<address>` otherwise.

Two backends:
    InMemoryRateLimiter - per-process sliding log under a lock
    RedisRateLimiter    - sorted set per key, shared across processes

The Redis call is the only place a guard may wait on I/O, so it is bounded
by a timeout and fails open or closed by explicit policy.
"""

from __future__ import annotations

import asyncio
import logging
import math
import threading
import time
import uuid
from abc import ABC, abstractmethod
from collections import deque
from typing import Callable

from pydantic import BaseModel
from redis.exceptions import RedisError

from orgaccess.config import RateLimitBackend, Settings, get_settings

logger = logging.getLogger(__name__)


class RateLimitResult(BaseModel):
    """Result of rate limit check."""
    
    allowed: bool
    limit: int
    remaining: int
    retry_after: int | None = None
    
    # True when the backend was unreachable and the fail policy decided
    degraded: bool = False


def rate_limit_key(principal_id: str | None, client_ip: str | None) -> str:
    """Key by principal when known, otherwise by client address."""
    if principal_id:
        return f"user:{principal_id}"
    return f"ip:{client_ip or 'unknown'}"


class RateLimiter(ABC):
    """A counter per key over a sliding time window."""
    
    def __init__(self, max_requests: int, window_seconds: int):
        if max_requests < 1 or window_seconds < 1:
            raise ValueError("Rate limit needs at least one request per window of at least one second")
        self.max_requests = max_requests
        self.window_seconds = window_seconds
    
    @abstractmethod
    async def hit(self, key: str, fail_closed: bool | None = None) -> RateLimitResult:
        """
        Count one request for `key` and report whether it is allowed.
        
        Denied requests are not counted. `fail_closed` overrides the
        backend's failure policy for this call where one applies.
        """
        pass
    
    @abstractmethod
    async def reset(self, key: str | None = None) -> None:
        """Forget one key, or all keys."""
        pass


# =============================================================================
# In-memory backend
# =============================================================================


class InMemoryRateLimiter(RateLimiter):
    """
    Sliding log of request times per key.
    
    Each deque holds at most `max_requests` timestamps. Keys whose newest
    timestamp has left the window are swept once the key count passes
    `max_keys`.
    """
    
    def __init__(
        self,
        max_requests: int,
        window_seconds: int,
        max_keys: int = 100_000,
        clock: Callable[[], float] = time.monotonic,
    ):
        super().__init__(max_requests, window_seconds)
        self.max_keys = max_keys
        self._clock = clock
        self._hits: dict[str, deque[float]] = {}
        self._lock = threading.Lock()
    
    def check(self, key: str) -> RateLimitResult:
        """Synchronous hit; safe to call from any thread."""
        with self._lock:
            now = self._clock()
            cutoff = now - self.window_seconds
            
            hits = self._hits.get(key)
            if hits is None:
                if len(self._hits) >= self.max_keys:
                    self._sweep(cutoff)
                hits = self._hits[key] = deque()
            
            while hits and hits[0] <= cutoff:
                hits.popleft()
            
            if len(hits) >= self.max_requests:
                retry_after = max(1, math.ceil(hits[0] + self.window_seconds - now))
                return RateLimitResult(
                    allowed=False,
                    limit=self.max_requests,
                    remaining=0,
                    retry_after=retry_after,
                )
            
            hits.append(now)
            return RateLimitResult(
                allowed=True,
                limit=self.max_requests,
                remaining=self.max_requests - len(hits),
            )
    
    async def hit(self, key: str, fail_closed: bool | None = None) -> RateLimitResult:
        return self.check(key)
    
    async def reset(self, key: str | None = None) -> None:
        with self._lock:
            if key is None:
                self._hits.clear()
            else:
                self._hits.pop(key, None)
    
    @property
    def tracked_keys(self) -> int:
        return len(self._hits)
    
    def _sweep(self, cutoff: float) -> None:
        """Drop keys with no request inside the window. Caller holds the lock."""
        stale = [k for k, hits in self._hits.items() if not hits or hits[-1] <= cutoff]
        for k in stale:
            del self._hits[k]
        if len(self._hits) >= self.max_keys:
            logger.warning(
                "Rate limiter key table full of active keys",
                extra={"tracked_keys": len(self._hits), "max_keys": self.max_keys},
            )


# =============================================================================
# Redis backend
# =============================================================================


# Trim, count and conditionally add in one server-side step, so a denied
# request never leaves an entry behind even if the client gives up waiting.
SLIDING_WINDOW_SCRIPT = """
local key = KEYS[1]
local now = tonumber(ARGV[1])
local window = tonumber(ARGV[2])
local limit = tonumber(ARGV[3])

redis.call("ZREMRANGEBYSCORE", key, 0, now - window)
local count = redis.call("ZCARD", key)
if count >= limit then
    local oldest = redis.call("ZRANGE", key, 0, 0, "WITHSCORES")
    return {0, count, oldest[2]}
end

redis.call("ZADD", key, now, ARGV[4])
redis.call("EXPIRE", key, window)
return {1, count}
"""


class RedisRateLimiter(RateLimiter):
    """
    Sliding window over a Redis sorted set (score = request time).
    
    The whole check runs as one Lua script; denied requests are never added.
    """
    
    def __init__(
        self,
        client,
        max_requests: int,
        window_seconds: int,
        timeout_ms: int = 50,
        fail_closed: bool = False,
        prefix: str = "ratelimit",
    ):
        super().__init__(max_requests, window_seconds)
        self._client = client
        self.timeout_seconds = timeout_ms / 1000
        self.fail_closed = fail_closed
        self.prefix = prefix
    
    async def hit(self, key: str, fail_closed: bool | None = None) -> RateLimitResult:
        try:
            return await asyncio.wait_for(self._hit(key), timeout=self.timeout_seconds)
        except (asyncio.TimeoutError, RedisError, OSError) as e:
            closed = self.fail_closed if fail_closed is None else fail_closed
            logger.warning(
                "Rate limiter unavailable",
                extra={
                    "key": key,
                    "error": type(e).__name__,
                    "policy": "fail_closed" if closed else "fail_open",
                },
            )
            if closed:
                return RateLimitResult(
                    allowed=False,
                    limit=self.max_requests,
                    remaining=0,
                    retry_after=1,
                    degraded=True,
                )
            return RateLimitResult(
                allowed=True,
                limit=self.max_requests,
                remaining=0,
                degraded=True,
            )
    
    async def _hit(self, key: str) -> RateLimitResult:
        redis_key = f"{self.prefix}:{key}"
        now = time.time()
        member = f"{now:.6f}:{uuid.uuid4().hex[:8]}"
        
        reply = await self._client.eval(
            SLIDING_WINDOW_SCRIPT,
            1,
            redis_key,
            now,
            self.window_seconds,
            self.max_requests,
            member,
        )
        allowed, count = int(reply[0]), int(reply[1])
        
        if not allowed:
            retry_after = self.window_seconds
            if len(reply) > 2 and reply[2] is not None:
                retry_after = max(1, math.ceil(float(reply[2]) + self.window_seconds - now))
            return RateLimitResult(
                allowed=False,
                limit=self.max_requests,
                remaining=0,
                retry_after=retry_after,
            )
        
        return RateLimitResult(
            allowed=True,
            limit=self.max_requests,
            remaining=self.max_requests - count - 1,
        )
    
    async def reset(self, key: str | None = None) -> None:
        if key is not None:
            await self._client.delete(f"{self.prefix}:{key}")
            return
        async for redis_key in self._client.scan_iter(match=f"{self.prefix}:*"):
            await self._client.delete(redis_key)


# =============================================================================
# Factory
# =============================================================================


def create_rate_limiter(settings: Settings | None = None) -> RateLimiter:
    """Build the configured rate limiter."""
    settings = settings or get_settings()
    
    if settings.rate_limit_backend == RateLimitBackend.REDIS:
        from orgaccess.core.redis import get_redis
        return RedisRateLimiter(
            get_redis(),
            max_requests=settings.rate_limit_max_requests,
            window_seconds=settings.rate_limit_window_seconds,
            timeout_ms=settings.rate_limit_timeout_ms,
            fail_closed=settings.rate_limit_fail_closed,
        )
    
    return InMemoryRateLimiter(
        max_requests=settings.rate_limit_max_requests,
        window_seconds=settings.rate_limit_window_seconds,
        max_keys=settings.rate_limit_max_keys,
    )


_default_limiter: RateLimiter | None = None


def get_rate_limiter() -> RateLimiter:
    """Get the default rate limiter instance."""
    global _default_limiter
    if _default_limiter is None:
        _default_limiter = create_rate_limiter()
    return _default_limiter


def set_rate_limiter(limiter: RateLimiter | None) -> None:
    """Replace the default rate limiter (None resets it)."""
    global _default_limiter
    _default_limiter = limiter
