from __future__ import annotations

import time
from dataclasses import dataclass


@dataclass
class RateLimitResult:
    allowed: bool
    retry_after_seconds: int
    remaining: int


class FixedWindowRateLimiter:
    """Per-key attempt counter over fixed time windows (single process only)."""

    def __init__(self, *, limit: int, window_seconds: int, clock=time.time):
        self.limit = int(limit)
        self.window_seconds = max(1, int(window_seconds))
        self._clock = clock
        # key -> (window_start_epoch, attempts)
        self._buckets: dict[str, tuple[int, int]] = {}

    def _window_start(self, now: int) -> int:
        return now - (now % self.window_seconds)

    def check(self, key: str) -> RateLimitResult:
        now = int(self._clock())
        start = self._window_start(now)

        window, attempts = self._buckets.get(key, (start, 0))
        if window != start:
            attempts = 0

        if attempts >= self.limit:
            return RateLimitResult(False, max(1, start + self.window_seconds - now), 0)

        self._buckets[key] = (start, attempts + 1)
        return RateLimitResult(True, 0, self.limit - attempts - 1)

    def reset(self, key: str) -> None:
        self._buckets.pop(key, None)

    def cleanup(self) -> None:
        current = self._window_start(int(self._clock()))
        for key, (window, _) in list(self._buckets.items()):
            if window < current:
                self._buckets.pop(key, None)
