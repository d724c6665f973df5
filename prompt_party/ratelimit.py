"""
Sliding-window rate limiter with bounded, TTL-evicted storage.

Each limiter keeps its windows in its own MemoryCache. The windows are
per-process; running several instances multiplies the effective limit.
"""
import time
from typing import Callable, Optional

from .cache import MemoryCache


class SlidingWindowLimiter:
    def __init__(self, max_requests: int = 30, window_seconds: float = 60,
                 max_keys: int = 10_000, clock: Callable[[], float] = time.time):
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self._clock = clock
        # a key idle for a full window has nothing left to remember
        self._store = MemoryCache(max_entries=max_keys, clock=clock)

    def _recent(self, key: str, now: float) -> list[float]:
        cutoff = now - self.window_seconds
        return [t for t in (self._store.get(key) or []) if t > cutoff]

    def check(self, key: str) -> bool:
        """Record a hit for `key`. Returns False when it is over the limit."""
        now = self._clock()
        recent = self._recent(key, now)
        if len(recent) >= self.max_requests:
            self._store.set(key, recent, self.window_seconds)
            return False
        recent.append(now)
        self._store.set(key, recent, self.window_seconds)
        return True

    def retry_after(self, key: str) -> Optional[float]:
        """Seconds until `key` may try again, or None if it is not limited."""
        now = self._clock()
        recent = self._recent(key, now)
        if len(recent) < self.max_requests:
            return None
        return max(0.0, recent[0] + self.window_seconds - now)

    def reset(self) -> None:
        self._store.clear()

    def tracked_keys(self) -> int:
        return len(self._store)
