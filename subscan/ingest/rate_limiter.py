"""Sliding-window rate limiting for mailbox and LLM calls.

State lives in process memory, so limits only hold within one warm
process. Instances running side by side each get their own budget.
"""

import asyncio
import logging
import time
from collections import defaultdict, deque
from typing import Any, Awaitable, Callable

from subscan.config import settings
from subscan import metrics

logger = logging.getLogger(__name__)


class SlidingWindowRateLimiter:
    """Per-key request budget over a sliding time window."""

    def __init__(
        self,
        max_requests: int,
        window_seconds: float = 60.0,
        name: str = "default",
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        if max_requests < 1:
            raise ValueError("max_requests must be at least 1")
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self.name = name
        self._clock = clock
        self._sleep = sleep
        self.requests: dict[str, deque[float]] = defaultdict(deque)
        self.locks: dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    def _evict(self, key: str, now: float) -> deque[float]:
        timestamps = self.requests[key]
        window_start = now - self.window_seconds
        while timestamps and timestamps[0] <= window_start:
            timestamps.popleft()
        return timestamps

    def can_make_request(self, key: str) -> bool:
        """
        Record a call for ``key`` if the window has room.

        Returns:
            True if the call was recorded, False if the budget is spent
        """
        now = self._clock()
        timestamps = self._evict(key, now)
        if len(timestamps) >= self.max_requests:
            metrics.record_rate_limit_denial(self.name)
            return False
        timestamps.append(now)
        return True

    def get_time_until_reset(self, key: str) -> float:
        """Seconds until the oldest call in the window falls out of it."""
        now = self._clock()
        timestamps = self._evict(key, now)
        if not timestamps:
            return 0.0
        return max(0.0, timestamps[0] + self.window_seconds - now)

    async def wait_for_slot(self, key: str, max_wait: float) -> bool:
        """
        Wait for room in the window, sleeping on the reset hint.

        Args:
            key: Caller identity (user id)
            max_wait: Longest total time to wait in seconds

        Returns:
            True once a call is recorded, False if it would take longer
            than ``max_wait``
        """
        async with self.locks[key]:
            waited = 0.0
            while not self.can_make_request(key):
                delay = self.get_time_until_reset(key)
                if waited + delay > max_wait:
                    logger.debug(
                        f"{self.name} limiter: key {key} needs {delay:.1f}s, "
                        f"over the {max_wait:.1f}s budget"
                    )
                    return False
                await self._sleep(delay)
                waited += delay
            return True

    def reset(self, key: str | None = None) -> None:
        if key is None:
            self.requests.clear()
        else:
            self.requests.pop(key, None)


# Global limiter instances
mailbox_rate_limiter = SlidingWindowRateLimiter(
    settings.mailbox_requests_per_minute, 60.0, name="mailbox"
)
llm_rate_limiter = SlidingWindowRateLimiter(
    settings.llm_requests_per_minute, 60.0, name="llm"
)
