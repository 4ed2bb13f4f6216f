"""Fixed-window rate limiting.

Each client key gets a counter for the current window. The window starts
with the key's first request and resets ``window_seconds`` later.
"""

import asyncio
import math
import time
from collections.abc import Callable
from dataclasses import dataclass

import structlog

logger = structlog.get_logger()


@dataclass
class RateLimitResult:
    """Outcome of counting one request.

    Attributes:
        allowed: Whether the request is within the limit.
        limit: Maximum requests per window.
        remaining: Requests left in the current window.
        reset_at: Unix time at which the window resets.
        retry_after: Whole seconds to wait before retrying (at least 1).
    """

    allowed: bool
    limit: int
    remaining: int
    reset_at: float
    retry_after: int


@dataclass
class _Window:
    count: int
    reset_at: float


class FixedWindowRateLimiter:
    """Per-key fixed-window request counter."""

    def __init__(
        self,
        max_requests: int = 100,
        window_seconds: int = 60,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if max_requests < 1 or window_seconds < 1:
            raise ValueError("max_requests and window_seconds must be positive")
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self._clock = clock
        self._windows: dict[str, _Window] = {}
        self._lock = asyncio.Lock()
        self._next_sweep = clock() + window_seconds

    async def hit(self, key: str) -> RateLimitResult:
        """Count a request for ``key`` and report whether it is allowed."""
        async with self._lock:
            now = self._clock()
            if now >= self._next_sweep:
                self._next_sweep = now + self.window_seconds
                self.cleanup_expired()
            window = self._windows.get(key)
            if window is None or now >= window.reset_at:
                window = _Window(count=0, reset_at=now + self.window_seconds)
                self._windows[key] = window
            window.count += 1
            allowed = window.count <= self.max_requests
            retry_after = max(1, math.ceil(window.reset_at - now))

        if not allowed:
            logger.warning("Rate limit exceeded", client_key=key, retry_after=retry_after)
        return RateLimitResult(
            allowed=allowed,
            limit=self.max_requests,
            remaining=max(0, self.max_requests - window.count),
            reset_at=window.reset_at,
            retry_after=retry_after,
        )

    def cleanup_expired(self) -> int:
        """Drop windows that have already reset. Runs once per window from ``hit``."""
        now = self._clock()
        expired = [key for key, window in self._windows.items() if now >= window.reset_at]
        for key in expired:
            del self._windows[key]
        return len(expired)

    @property
    def tracked_keys(self) -> int:
        return len(self._windows)

    def reset(self) -> None:
        self._windows.clear()
