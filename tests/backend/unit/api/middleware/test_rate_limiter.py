"""Tests for the request-rate window."""

from __future__ import annotations

import pytest

from api.middleware.rate_limiter import RateLimitWindow
from core.exceptions import RateLimitedError


class FakeClock:
    def __init__(self, now: float = 1000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


class TestRateLimitWindow:
    """Tests for the fixed window with lazy reset."""

    def test_admits_up_to_budget(self) -> None:
        """Exactly ``max_requests`` are admitted within one window."""
        window = RateLimitWindow(3, 60, clock=FakeClock())

        for _ in range(3):
            window.check()

        with pytest.raises(RateLimitedError) as exc_info:
            window.check()
        assert exc_info.value.message == "Rate limit exceeded. Max 3 requests per minute."
        assert window.request_count == 3

    def test_retry_after_counts_down(self) -> None:
        clock = FakeClock()
        window = RateLimitWindow(1, 60, clock=clock)
        window.check()
        clock.now += 45

        with pytest.raises(RateLimitedError) as exc_info:
            window.check()

        assert exc_info.value.retry_after == pytest.approx(15)

    def test_window_resets_lazily(self) -> None:
        """The first request after expiry opens a fresh window."""
        clock = FakeClock()
        window = RateLimitWindow(2, 10, clock=clock)
        window.check()
        window.check()

        clock.now += 10
        window.check()

        assert window.request_count == 1

    def test_rejection_does_not_consume_budget(self) -> None:
        clock = FakeClock()
        window = RateLimitWindow(1, 10, clock=clock)
        window.check()
        for _ in range(5):
            with pytest.raises(RateLimitedError):
                window.check()

        assert window.request_count == 1

    def test_non_minute_window_message(self) -> None:
        window = RateLimitWindow(1, 5, clock=FakeClock())
        window.check()

        with pytest.raises(RateLimitedError, match="per 5s"):
            window.check()
