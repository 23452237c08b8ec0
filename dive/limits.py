"""
Shared request gates: a token-bucket rate limiter and a concurrency cap.

Both are created once per Datasource and handed to every fetch task, so all
requests a Datasource issues draw from the same budget.
"""

import asyncio
from contextlib import asynccontextmanager
from time import monotonic
from typing import AsyncIterator, Awaitable, Callable, Optional


# =====================
# Rate limiter
# =====================


class AsyncTokenBucket:
    """Token bucket: bursts up to `burst` requests, `rate_per_sec` sustained.

    `rate_per_sec=None` turns `acquire` into a no-op.
    """

    def __init__(
        self,
        rate_per_sec: Optional[float],
        burst: int = 1,
        clock: Callable[[], float] = monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.rate = rate_per_sec
        self.capacity = max(1, int(burst))
        self._clock = clock
        self._sleep = sleep
        self._tokens = float(self.capacity)
        self._ts = clock()
        self._blocked_until = 0.0
        self._lock = asyncio.Lock()

    def _refill(self, now: float) -> None:
        if now > self._ts:
            self._tokens = min(
                float(self.capacity), self._tokens + (now - self._ts) * self.rate
            )
            self._ts = now

    async def acquire(self, permits: int = 1) -> None:
        if self.rate is None or permits <= 0:
            return
        if permits > self.capacity:
            raise ValueError(
                f"Cannot acquire {permits} permits from a bucket of {self.capacity}"
            )
        while True:
            async with self._lock:
                now = self._clock()
                if now >= self._blocked_until:
                    self._refill(now)
                    if self._tokens >= permits:
                        self._tokens -= permits
                        return
                    wait = (permits - self._tokens) / self.rate
                else:
                    wait = self._blocked_until - now
            await self._sleep(wait)

    def throttle(self, seconds: float) -> None:
        """Empty the bucket and hold off every waiter for `seconds`."""
        if self.rate is None or seconds <= 0:
            return
        until = self._clock() + seconds
        if until > self._blocked_until:
            self._blocked_until = until
        self._tokens = 0.0
        self._ts = self._blocked_until


# =====================
# Concurrency gate
# =====================


class ConcurrencyGate:
    def __init__(self, max_concurrency: int):
        if max_concurrency < 1:
            raise ValueError("max_concurrency must be >= 1")
        self.max_concurrency = max_concurrency
        self._semaphore = asyncio.Semaphore(max_concurrency)
        self.in_flight = 0
        self.peak = 0

    @asynccontextmanager
    async def acquire(self) -> AsyncIterator[None]:
        async with self._semaphore:
            self.in_flight += 1
            if self.in_flight > self.peak:
                self.peak = self.in_flight
            try:
                yield
            finally:
                self.in_flight -= 1
