"""
Sliding-window operation rate limiter.
"""

import time
from collections import deque
from typing import Callable, Deque


class SlidingWindowRateLimiter:
    """
    Caps accepted operations to ``limit`` per ``window`` seconds.

    Each accepted call records its timestamp; timestamps older than the
    window are discarded before the cap is checked.

    Example:
        >>> limiter = SlidingWindowRateLimiter(limit=2)
        >>> limiter.try_acquire(), limiter.try_acquire(), limiter.try_acquire()
        (True, True, False)
    """

    def __init__(
        self,
        limit: int,
        window: float = 1.0,
        clock: Callable[[], float] = time.monotonic
    ):
        if limit < 1:
            raise ValueError("limit must be at least 1")
        if window <= 0:
            raise ValueError("window must be positive")
        self.limit = limit
        self.window = window
        self._clock = clock
        self._accepted: Deque[float] = deque()
        self.rejected = 0

    def _evict(self, now: float) -> None:
        cutoff = now - self.window
        while self._accepted and self._accepted[0] <= cutoff:
            self._accepted.popleft()

    def try_acquire(self) -> bool:
        """Record an operation if a slot is free. Returns False when over the cap."""
        now = self._clock()
        self._evict(now)
        if len(self._accepted) >= self.limit:
            self.rejected += 1
            return False
        self._accepted.append(now)
        return True

    @property
    def in_window(self) -> int:
        self._evict(self._clock())
        return len(self._accepted)

    def reset(self) -> None:
        self._accepted.clear()
        self.rejected = 0
