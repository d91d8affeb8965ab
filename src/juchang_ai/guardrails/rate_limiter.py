"""
Sliding-window rate limiter.

In-process and per key (user id, or a client address for anonymous
callers). Multi-process deployments get one window per process.
"""

import threading
import time
from collections import deque
from dataclasses import dataclass
from typing import Callable, Optional

from juchang_ai.config import settings


@dataclass
class RateLimitResult:
    allowed: bool
    remaining: int
    retry_after: float = 0.0


class SlidingWindowRateLimiter:
    """Allows ``max_requests`` per ``window_seconds`` for each key."""

    def __init__(
        self,
        max_requests: Optional[int] = None,
        window_seconds: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.max_requests = max_requests or settings.rate_limit_max_requests
        self.window = window_seconds or settings.rate_limit_window_seconds
        self._clock = clock
        self._lock = threading.Lock()
        self._requests: dict[str, deque[float]] = {}

    def check(self, key: str) -> RateLimitResult:
        """Record a request for ``key`` if the window has room."""
        now = self._clock()
        cutoff = now - self.window

        with self._lock:
            stamps = self._requests.setdefault(key, deque(maxlen=self.max_requests))
            while stamps and stamps[0] <= cutoff:
                stamps.popleft()

            if len(stamps) >= self.max_requests:
                return RateLimitResult(
                    allowed=False,
                    remaining=0,
                    retry_after=max(0.0, stamps[0] + self.window - now),
                )

            stamps.append(now)
            return RateLimitResult(
                allowed=True, remaining=self.max_requests - len(stamps)
            )

    def reset(self, key: Optional[str] = None) -> None:
        with self._lock:
            if key is None:
                self._requests.clear()
            else:
                self._requests.pop(key, None)

    def prune(self) -> int:
        """Drop keys with no requests inside the window. Returns keys removed."""
        cutoff = self._clock() - self.window
        with self._lock:
            stale = [
                key
                for key, stamps in self._requests.items()
                if not stamps or stamps[-1] <= cutoff
            ]
            for key in stale:
                del self._requests[key]
        return len(stale)
