"""Sliding-window admission control."""

from __future__ import annotations

import time
from collections import deque
from typing import Any, Callable


class RateLimiter:
    """Admit at most ``max_requests`` calls within any ``window`` seconds.

    Instances are owned by a single conversation session and are only touched
    from the event loop, so no locking is performed.
    """

    def __init__(
        self,
        max_requests: int = 10,
        window: float = 60.0,
        *,
        clock: Callable[[], float] | None = None,
    ) -> None:
        if max_requests < 1:
            raise ValueError("max_requests must be >= 1")
        if window <= 0:
            raise ValueError("window must be > 0")
        self._max_requests = max_requests
        self._window = window
        self._clock = clock or time.monotonic
        self._requests: deque[float] = deque()

    @property
    def max_requests(self) -> int:
        return self._max_requests

    @property
    def window(self) -> float:
        return self._window

    def _prune(self, now: float) -> None:
        while self._requests and now - self._requests[0] >= self._window:
            self._requests.popleft()

    def admit(self) -> bool:
        """Record a request and return True if it fits in the current window."""

        now = self._clock()
        self._prune(now)
        if len(self._requests) < self._max_requests:
            self._requests.append(now)
            return True
        return False

    def remaining(self) -> int:
        self._prune(self._clock())
        return max(0, self._max_requests - len(self._requests))

    def reset_time(self) -> float:
        """Clock value at which the oldest in-window request expires, or 0 if none."""

        self._prune(self._clock())
        if not self._requests:
            return 0
        return self._requests[0] + self._window

    def reset(self) -> None:
        self._requests.clear()

    def stats(self) -> dict[str, Any]:
        remaining = self.remaining()
        return {
            "max_requests": self._max_requests,
            "window": self._window,
            "current_requests": len(self._requests),
            "remaining": remaining,
            "reset_time": self.reset_time(),
            "allowed": remaining > 0,
        }


__all__ = ["RateLimiter"]
