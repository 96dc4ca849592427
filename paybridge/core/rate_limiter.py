"""
Per-client fixed-window rate limiting for the initiate operation.

Two interchangeable backends:
- ``InMemoryRateLimiter``: per-process counters (single replica / development)
- ``RedisRateLimiter``: shared counters with INCR/EXPIRE (multiple replicas)
"""
import asyncio
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Callable, Dict, Optional

import redis.asyncio as aioredis
import structlog

from paybridge.config import Settings
from paybridge.core.exceptions import RateLimitedError
from paybridge.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


@dataclass
class _Window:
    count: int
    reset_at: float


class RateLimiter(ABC):
    """Allows at most ``limit`` requests per client per ``window_seconds``."""

    def __init__(self, limit: int, window_seconds: int):
        self.limit = limit
        self.window_seconds = window_seconds

    @abstractmethod
    async def hit(self, key: str) -> Optional[int]:
        """
        Count one request for ``key``.

        Returns:
            Optional[int]: None if allowed, else seconds until the window resets
        """

    async def check(self, key: str) -> None:
        """
        Count one request and raise if the client is over its limit.

        Raises:
            RateLimitedError: If the limit for ``key`` is exhausted
        """
        if self.limit <= 0:
            return
        retry_after = await self.hit(key)
        if retry_after is not None:
            metrics.record_rate_limit_rejection()
            logger.warning("rate_limit_exceeded", client=key, limit=self.limit)
            raise RateLimitedError("Too Many Requests", retry_after=retry_after, client=key)

    async def close(self) -> None:
        pass


class InMemoryRateLimiter(RateLimiter):
    """Process-local counters; expired windows are pruned lazily."""

    def __init__(
        self,
        limit: int,
        window_seconds: int,
        clock: Callable[[], float] = time.monotonic,
    ):
        super().__init__(limit, window_seconds)
        self._clock = clock
        self._windows: Dict[str, _Window] = {}
        self._lock = asyncio.Lock()

    async def hit(self, key: str) -> Optional[int]:
        async with self._lock:
            now = self._clock()
            window = self._windows.get(key)
            if window is None or now >= window.reset_at:
                if len(self._windows) > 10_000:
                    self._prune(now)
                self._windows[key] = _Window(count=1, reset_at=now + self.window_seconds)
                return None
            if window.count >= self.limit:
                return max(1, int(window.reset_at - now))
            window.count += 1
            return None

    def _prune(self, now: float) -> None:
        expired = [k for k, w in self._windows.items() if now >= w.reset_at]
        for k in expired:
            del self._windows[k]


class RedisRateLimiter(RateLimiter):
    """
    Counters shared by all replicas.

    Fails open when Redis is unavailable: losing abuse protection briefly is
    preferred to refusing every payment.
    """

    def __init__(self, limit: int, window_seconds: int, redis_client: aioredis.Redis):
        super().__init__(limit, window_seconds)
        self.redis = redis_client

    async def hit(self, key: str) -> Optional[int]:
        now = int(time.time())
        bucket = now // self.window_seconds
        window_key = f"paybridge:rl:{key}:{bucket}"
        try:
            count = await self.redis.incr(window_key)
            if count == 1:
                await self.redis.expire(window_key, self.window_seconds)
        except (aioredis.RedisError, OSError) as e:
            logger.warning("rate_limit_store_unavailable", error=str(e))
            return None
        if count > self.limit:
            return max(1, (bucket + 1) * self.window_seconds - now)
        return None

    async def close(self) -> None:
        await self.redis.aclose()


def build_rate_limiter(settings: Settings) -> RateLimiter:
    """Redis-backed limiter when ``redis_url`` is configured, else in-memory."""
    if settings.redis_url:
        logger.info("rate_limiter_configured", backend="redis")
        client = aioredis.from_url(settings.redis_url, encoding="utf-8", decode_responses=True)
        return RedisRateLimiter(settings.rate_limit_requests, settings.rate_limit_window_seconds, client)
    logger.info("rate_limiter_configured", backend="memory")
    return InMemoryRateLimiter(settings.rate_limit_requests, settings.rate_limit_window_seconds)
