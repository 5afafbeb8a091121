"""
Sliding Window Rate Limiter - Request admission against a fixed API quota.

The NVD REST API enforces a hard cap on requests per rolling window. This
module keeps the timestamps of recently admitted requests and answers two
questions: "may I send now?" and "how long until I may?".

Design Pattern: Sliding Window Log
"""

import time
from collections import deque
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Deque, Optional

import structlog


@dataclass
class RateLimitConfig:
    """Configuration for rate limiter"""
    max_requests: int = 10          # Quota per window
    window_seconds: float = 60.0    # Length of the trailing window (seconds)


@dataclass(frozen=True)
class Admission:
    """Result of an admission request"""
    allowed: bool
    retry_after: float = 0.0  # Seconds until a slot frees up (0 when allowed)


class SlidingWindowRateLimiter:
    """
    Rate limiter that tracks a trailing window of admitted requests.

    Key features:
    1. Exact sliding window - no bucket boundary bursts
    2. Optimistic recording - a slot is taken as soon as it is admitted
    3. Retraction - a slot can be given back when the request never left
    4. Injectable clock for deterministic tests

    Example:
        >>> limiter = SlidingWindowRateLimiter()
        >>> admission = limiter.admit()
        >>> if not admission.allowed:
        ...     print(f"retry in {admission.retry_after:.0f}s")
    """

    def __init__(
        self,
        config: Optional[RateLimitConfig] = None,
        clock: Optional[Callable[[], float]] = None,
    ):
        """
        Initialize the rate limiter.

        Args:
            config: Rate limit configuration (uses defaults if None)
            clock: Monotonic time source in seconds (defaults to time.monotonic)
        """
        self.config = config or RateLimitConfig()
        self._clock = clock or time.monotonic
        self._timestamps: Deque[float] = deque()

        self.logger = structlog.get_logger(__name__)

        self.logger.info(
            "rate_limiter_initialized",
            max_requests=self.config.max_requests,
            window_seconds=self.config.window_seconds,
        )

    def _discard_expired(self, now: float) -> None:
        cutoff = now - self.config.window_seconds
        while self._timestamps and self._timestamps[0] <= cutoff:
            self._timestamps.popleft()

    def admit(self) -> Admission:
        """
        Ask for permission to send one request now.

        Returns:
            Admission with allowed=True (slot recorded) or allowed=False and
            the number of seconds until the oldest request leaves the window.
        """
        now = self._clock()
        self._discard_expired(now)

        if len(self._timestamps) < self.config.max_requests:
            self._timestamps.append(now)
            return Admission(allowed=True)

        oldest = self._timestamps[0]
        retry_after = self.config.window_seconds - (now - oldest)

        self.logger.debug(
            "rate_limit_denied",
            in_window=len(self._timestamps),
            retry_after=f"{retry_after:.2f}s",
        )
        return Admission(allowed=False, retry_after=retry_after)

    def retract(self) -> None:
        """
        Give back the most recently admitted slot.

        Used when a request failed at the network layer before reaching the
        server, so it never counted against the remote quota.
        """
        if self._timestamps:
            self._timestamps.pop()
            self.logger.debug("rate_limit_slot_retracted", in_window=len(self._timestamps))

    @property
    def requests_in_window(self) -> int:
        self._discard_expired(self._clock())
        return len(self._timestamps)

    def reset(self):
        """Reset the rate limiter to initial state"""
        self._timestamps.clear()
        self.logger.info("rate_limiter_reset")

    def get_stats(self) -> dict:
        """
        Get rate limiter statistics.

        Returns:
            Dictionary with current window usage and the wall-clock time at
            which the oldest recorded request leaves the window
        """
        now = self._clock()
        self._discard_expired(now)

        reset_in = 0.0
        if self._timestamps:
            reset_in = self.config.window_seconds - (now - self._timestamps[0])

        return {
            "requests_made": len(self._timestamps),
            "requests_remaining": max(0, self.config.max_requests - len(self._timestamps)),
            "reset_time": (datetime.now(timezone.utc) + timedelta(seconds=reset_in)).isoformat(),
            "config": {
                "max_requests": self.config.max_requests,
                "window_seconds": self.config.window_seconds,
            },
        }
