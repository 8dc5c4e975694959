"""
Retry backoff — computes when a failed job runs again.

Usage:
    policy = BackoffPolicy(base=30, maximum=3600)
    next_run_at = policy.next_run_at(attempts=job.attempts, now=time.time())
"""

from __future__ import annotations

import time


class BackoffPolicy:
    """
    Exponential backoff: delay = base * 2**attempts, capped at maximum.

    `attempts` is the number of dispatch attempts already made, so the
    first retry waits base * 2.
    """

    def __init__(self, base: float = 30.0, maximum: float = 3600.0) -> None:
        if base <= 0:
            raise ValueError("Backoff base must be positive")
        if maximum < base:
            raise ValueError("Backoff maximum must be at least the base delay")
        self._base = base
        self._maximum = maximum

    @property
    def base(self) -> float:
        return self._base

    @property
    def maximum(self) -> float:
        return self._maximum

    def delay(self, attempts: int) -> float:
        """Seconds to wait before the next attempt."""
        if attempts < 0:
            raise ValueError("attempts cannot be negative")
        # 2**attempts grows without bound; stop doubling once past the cap
        if attempts >= 64:
            return self._maximum
        return min(self._base * (2 ** attempts), self._maximum)

    def next_run_at(self, attempts: int, now: float | None = None) -> float:
        """Absolute timestamp for the next attempt."""
        t = time.time() if now is None else now
        return t + self.delay(attempts)

    @property
    def description(self) -> str:
        return f"exponential({self._base:g}s x 2^n, max {self._maximum:g}s)"
