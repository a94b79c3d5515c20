"""Client-side write budget for remote calls.

Every submit or pull spends one slot of a sliding window; once the window is
full the caller waits for its oldest slot to expire instead of hammering the
backend while it is already rejecting us.
"""

import time
import asyncio
import logging
from collections import deque
from typing import Awaitable, Callable, Deque

logger = logging.getLogger(__name__)

DEFAULT_MAX_REQUESTS = 30
DEFAULT_TIME_WINDOW_SECONDS = 60.0

class RateLimiter:
    """Sliding window over the monotonic clock."""

    def __init__(
        self,
        max_requests: int = DEFAULT_MAX_REQUESTS,
        time_window: float = DEFAULT_TIME_WINDOW_SECONDS,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        """
        Args:
            max_requests: Remote calls allowed per window.
            time_window: Window length in seconds.
            clock: Monotonic time source.
            sleep: Coroutine used to wait; tests pass one that advances a fake clock.
        """
        if max_requests < 1 or time_window <= 0:
            raise ValueError("RateLimiter needs max_requests >= 1 and a positive time_window")
        self.max_requests = max_requests
        self.time_window = time_window
        self._slots: Deque[float] = deque()
        self._clock = clock
        self._sleep = sleep
        self._lock = asyncio.Lock()

    def _expire(self, now: float) -> None:
        # A slot frees up exactly one window after it was taken
        while self._slots and now - self._slots[0] >= self.time_window:
            self._slots.popleft()

    def _time_until_free(self, now: float) -> float:
        self._expire(now)
        if len(self._slots) < self.max_requests:
            return 0.0
        return max(0.0, self._slots[0] + self.time_window - now)

    def _reserve(self) -> float:
        """Takes a slot and returns 0.0, or returns how long until one frees up."""
        now = self._clock()
        wait_time = self._time_until_free(now)
        if wait_time == 0.0:
            self._slots.append(now)
        return wait_time

    async def wait_for_permission(self) -> None:
        """Blocks until a slot is available, then takes it."""
        while True:
            async with self._lock:
                wait_time = self._reserve()
            if wait_time == 0.0:
                return
            logger.debug(
                f"Write budget of {self.max_requests}/{self.time_window:g}s spent; waiting {wait_time:.2f}s"
            )
            await self._sleep(wait_time)

    async def get_wait_time(self) -> float:
        """Seconds until the next call would be admitted, without taking a slot."""
        async with self._lock:
            return self._time_until_free(self._clock())
