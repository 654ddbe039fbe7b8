"""Restart backoff policy."""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(slots=True, frozen=True)
class BackoffPolicy:
    """Delay schedule for automatic restarts.

    ``attempt`` is 1-based. ``max_attempts`` of ``None`` means unlimited.
    """

    base_delay: float = 2.0
    multiplier: float = 1.0
    max_delay: float = 60.0
    max_attempts: int | None = 3

    def allows(self, attempt: int) -> bool:
        if attempt < 1:
            return False
        return self.max_attempts is None or attempt <= self.max_attempts

    def delay_for(self, attempt: int) -> float:
        if attempt < 1:
            raise ValueError("attempt must be >= 1")
        delay = self.base_delay * (self.multiplier ** (attempt - 1))
        return min(delay, self.max_delay)


__all__ = ["BackoffPolicy"]
