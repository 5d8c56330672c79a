"""
ratelimit.py
Fixed-window request counters for the login and public endpoints.
"""

from __future__ import annotations

import threading
import time


class MemoryWindowStore:
    """Per-process counters keyed by (key, window start)."""

    def __init__(self):
        self._lock = threading.Lock()
        self._counts: dict[str, tuple[int, int]] = {}
        self._window = 0

    def incr(self, key: str, window_start: int) -> int:
        with self._lock:
            if window_start > self._window:
                # a new window started; earlier counters can never be read again
                self._counts = {k: v for k, v in self._counts.items() if v[0] >= window_start}
                self._window = window_start
            started, count = self._counts.get(key, (window_start, 0))
            if started != window_start:
                started, count = window_start, 0
            count += 1
            self._counts[key] = (started, count)
            return count

    def reset(self, key: str | None = None) -> None:
        with self._lock:
            if key is None:
                self._counts.clear()
            else:
                self._counts.pop(key, None)


class RateLimiter:
    def __init__(self, limit: int, window_seconds: int, store=None, clock=time.time):
        self.limit = limit
        self.window_seconds = window_seconds
        self.store = store or MemoryWindowStore()
        self.clock = clock

    def window_start(self) -> int:
        now = int(self.clock())
        return now - (now % self.window_seconds)

    def allow(self, key: str) -> bool:
        return self.store.incr(key, self.window_start()) <= self.limit

    def retry_after(self) -> int:
        return self.window_start() + self.window_seconds - int(self.clock())
