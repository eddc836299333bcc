from __future__ import annotations

import asyncio
from collections import deque
from collections.abc import Callable
from time import monotonic

from analytics_engine.errors import EngineError


class SlidingWindowRateLimiter:
    """Per-key request budget over a rolling 60 second window.

    Keys whose window has fully elapsed are forgotten, so the limiter only
    holds organizations that queried within the last minute.
    """

    def __init__(self, max_requests_per_minute: int, *, clock: Callable[[], float] = monotonic) -> None:
        self._limit = max_requests_per_minute
        self._clock = clock
        self._buckets: dict[str, deque[float]] = {}
        self._lock = asyncio.Lock()

    async def check(self, key: str) -> None:
        if self._limit <= 0:
            return
        now = self._clock()
        window_start = now - 60.0
        async with self._lock:
            idle = [name for name, timestamps in self._buckets.items() if timestamps[-1] <= window_start]
            for name in idle:
                del self._buckets[name]

            bucket = self._buckets.setdefault(key, deque())
            while bucket and bucket[0] <= window_start:
                bucket.popleft()
            if len(bucket) >= self._limit:
                raise EngineError(code="RATE_LIMITED", message="Too many queries for this organization, retry shortly")
            bucket.append(now)

    def __len__(self) -> int:
        return len(self._buckets)
