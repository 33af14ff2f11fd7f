"""Rate-limited, single-lane gateway for one upstream provider.

Every outbound call to a provider (Soroban RPC, Horizon, Kraken) is scheduled
through one RateLimitedGateway. Calls are dispatched strictly in submission
order, one at a time, and never more than burst_limit within any trailing
window_seconds. Callers that would exceed the limit are delayed, not rejected.

The gateway does not retry: a failing task raises to its own caller and the
lane moves on to the next queued task.
"""

import asyncio
import time
from collections import deque
from collections.abc import Awaitable, Callable
from typing import TypeVar

from price_engine.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


class RateLimitedGateway:
    """Sliding-window rate limiter with FIFO dispatch.

    asyncio.Lock hands the lane to waiters in arrival order, which gives the
    FIFO guarantee; the lane is held for the duration of each task.

    Args:
        name: Provider name used in log lines.
        window_seconds: Length of the trailing window.
        burst_limit: Max dispatches allowed inside one window.
        buffer_seconds: Extra sleep added after a computed wait.
        clock: Monotonic time source (injectable for tests).
    """

    def __init__(
        self,
        name: str,
        window_seconds: float = 10.0,
        burst_limit: int = 50,
        buffer_seconds: float = 0.05,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if burst_limit < 1:
            raise ValueError("burst_limit must be >= 1")
        if window_seconds <= 0:
            raise ValueError("window_seconds must be positive")
        self.name = name
        self._window = window_seconds
        self._burst_limit = burst_limit
        self._buffer = buffer_seconds
        self._clock = clock
        self._timestamps: deque[float] = deque()
        self._lane = asyncio.Lock()
        self._dispatch_count = 0

    @property
    def dispatch_count(self) -> int:
        """Total number of tasks dispatched since creation."""
        return self._dispatch_count

    @property
    def burst_limit(self) -> int:
        return self._burst_limit

    @property
    def window_seconds(self) -> float:
        return self._window

    def in_window(self) -> int:
        """Number of dispatches inside the current trailing window."""
        self._purge(self._clock())
        return len(self._timestamps)

    async def schedule(self, task: Callable[[], Awaitable[T]]) -> T:
        """Run task once the lane is free and the window has capacity.

        Args:
            task: Zero-argument callable returning an awaitable.

        Returns:
            Whatever the task returns. Exceptions propagate to this caller only.
        """
        async with self._lane:
            await self._acquire_slot()
            return await task()

    async def _acquire_slot(self) -> None:
        """Block until a dispatch fits in the window, then record it."""
        while True:
            now = self._clock()
            self._purge(now)
            if len(self._timestamps) < self._burst_limit:
                self._timestamps.append(now)
                self._dispatch_count += 1
                return

            oldest = self._timestamps[0]
            wait = max(0.0, self._window - (now - oldest)) + self._buffer
            logger.debug(
                "rate_limit_wait",
                gateway=self.name,
                wait_seconds=round(wait, 3),
                in_window=len(self._timestamps),
            )
            await asyncio.sleep(wait)

    def _purge(self, now: float) -> None:
        cutoff = now - self._window
        while self._timestamps and self._timestamps[0] <= cutoff:
            self._timestamps.popleft()
