"""Exponential backoff with a ceiling."""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class BackoffPolicy:
    """Delay schedule for retries.

    Attributes:
        base: Delay after the first failure, in seconds.
        factor: Multiplier applied per further consecutive failure.
        cap: Upper bound for any delay.
    """

    base: float = 1.0
    factor: float = 2.0
    cap: float = 30.0

    def delay(self, attempt: int) -> float:
        """Delay before retry number `attempt` (1-based)."""
        if attempt < 1:
            attempt = 1
        # exponent clamped so huge attempt counts cannot overflow
        exponent = min(attempt - 1, 32)
        return min(self.cap, self.base * (self.factor ** exponent))
