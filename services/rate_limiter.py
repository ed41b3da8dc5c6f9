"""Async token bucket used to pace pricing API requests."""

from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable


class AsyncTokenBucket:
    """Refills ``rate`` tokens per second up to ``capacity``; ``acquire`` takes one.

    The lock is held while waiting so callers are served in arrival order.
    """

    def __init__(
        self,
        *,
        rate: float,
        capacity: float,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        if rate <= 0 or capacity <= 0:
            raise ValueError("rate and capacity must be > 0")
        self.rate = float(rate)
        self.capacity = float(capacity)
        self.tokens = float(capacity)
        self._clock = clock
        self._sleep = sleep
        self._updated_at = clock()
        self._lock = asyncio.Lock()

    def _refill(self) -> None:
        now = self._clock()
        elapsed = max(0.0, now - self._updated_at)
        self.tokens = min(self.capacity, self.tokens + elapsed * self.rate)
        self._updated_at = now

    async def acquire(self) -> None:
        async with self._lock:
            self._refill()
            if self.tokens < 1.0:
                await self._sleep((1.0 - self.tokens) / self.rate)
                self._refill()
                self.tokens = max(self.tokens, 1.0)
            self.tokens -= 1.0


def pricing_rate_limiter() -> AsyncTokenBucket:
    """About 10 requests per second with a 5000-token burst."""
    return AsyncTokenBucket(rate=10.0, capacity=5000.0)


__all__ = ["AsyncTokenBucket", "pricing_rate_limiter"]
