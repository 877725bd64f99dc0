"""Fixed-window request counters keyed by client."""
from __future__ import annotations

import math
import time

from limits import RateLimitItemPerSecond
from limits.storage import MemoryStorage
from limits.strategies import FixedWindowRateLimiter

from .errors import RateLimitedError


def login_key(ip: str) -> str:
    return f"rl:login:{ip}"


class RateLimiter:
    """Allow at most ``max_requests`` per ``window_seconds`` for each key.

    Counters live in a ``limits`` memory storage, which drops a key once its
    window has expired.
    """

    def __init__(self, *, max_requests: int = 10, window_seconds: int = 60) -> None:
        if max_requests <= 0:
            raise ValueError("max_requests must be positive")
        if window_seconds <= 0:
            raise ValueError("window_seconds must be positive")
        self._item = RateLimitItemPerSecond(max_requests, window_seconds)
        self._storage = MemoryStorage()
        self._limiter = FixedWindowRateLimiter(self._storage)

    @property
    def max_requests(self) -> int:
        return self._item.amount

    @property
    def window_seconds(self) -> int:
        return self._item.multiples

    def consume(self, key: str) -> int:
        """Count one request against ``key`` and return how many remain.

        Raises :class:`RateLimitedError` once the window is exhausted.
        """

        if not self._limiter.hit(self._item, key):
            stats = self._limiter.get_window_stats(self._item, key)
            raise RateLimitedError(max(1, math.ceil(stats.reset_time - time.time())))
        return self._limiter.get_window_stats(self._item, key).remaining

    def reset(self, key: str) -> None:
        self._limiter.clear(self._item, key)

    def reset_all(self) -> None:
        self._storage.reset()


__all__ = ["RateLimiter", "login_key"]
