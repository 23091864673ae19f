"""Sliding-window rate limiter for job processing."""

import asyncio
import time
from collections import deque
from collections.abc import Callable


class RateLimiter:
    """Allow at most ``limit`` acquisitions in any ``window``-second span.

    ``acquire`` waits (instead of rejecting) until a slot frees up.
    """

    def __init__(
        self,
        limit: int = 10,
        window: float = 1.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if limit < 1:
            raise ValueError("limit must be >= 1")
        if window <= 0:
            raise ValueError("window must be positive")
        self.limit = limit
        self.window = window
        self._clock = clock
        self._history: deque[float] = deque()
        self._lock = asyncio.Lock()

    def _expire(self, now: float) -> None:
        while self._history and now - self._history[0] >= self.window:
            self._history.popleft()

    def wait_time(self) -> float:
        """Seconds until the next acquisition would be admitted (0 if now)."""
        now = self._clock()
        self._expire(now)
        if len(self._history) < self.limit:
            return 0.0
        return self.window - (now - self._history[0])

    async def acquire(self) -> None:
        async with self._lock:
            while True:
                delay = self.wait_time()
                if delay <= 0:
                    self._history.append(self._clock())
                    return
                await asyncio.sleep(delay)
