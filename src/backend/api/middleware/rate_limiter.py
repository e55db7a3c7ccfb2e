"""Request-rate window for generation admission.

A fixed request budget per fixed window. The window resets lazily: the first
request observed after the window elapsed starts a fresh one. Check and
increment happen without an intervening await, so concurrent requests on the
event loop cannot overshoot the budget.
"""

from __future__ import annotations

import time

from collections.abc import Callable
from dataclasses import dataclass

from core.exceptions import RateLimitedError
from utils.logger import logger
from utils.metrics import rate_limited_total


@dataclass
class RateLimitEntry:
    """Request count for the current window."""

    window_start: float
    request_count: int = 0


class RateLimitWindow:
    """Global (not per-client) limiter; the gateway only serves loopback callers."""

    def __init__(
        self,
        max_requests: int,
        window_seconds: float,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self._clock = clock
        self._entry = RateLimitEntry(window_start=clock())

    def _roll(self, now: float) -> RateLimitEntry:
        if now - self._entry.window_start >= self.window_seconds:
            self._entry = RateLimitEntry(window_start=now)
        return self._entry

    def check(self) -> None:
        """Admit one request or reject it.

        Raises:
            RateLimitedError: If the current window's budget is spent.
        """
        now = self._clock()
        entry = self._roll(now)
        if entry.request_count >= self.max_requests:
            retry_after = max(0.0, entry.window_start + self.window_seconds - now)
            logger.warning(f"Rate limit exceeded ({self.max_requests}/{self.window_seconds:g}s)")
            rate_limited_total.inc()
            raise RateLimitedError(self.max_requests, self.window_seconds, retry_after)
        entry.request_count += 1

    @property
    def request_count(self) -> int:
        return self._roll(self._clock()).request_count
