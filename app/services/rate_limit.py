"""
In-memory per-user rate limiting for the extraction endpoints.

Sliding one-minute window per key. State lives in the process, so with several
instances each one enforces its own budget. Keys with no hit inside the window
are dropped, so memory tracks recently active users only.
"""
import time
from collections import deque
from typing import Callable, Deque, Dict

from app.errors import RateLimitExceeded

WINDOW_SECONDS = 60.0


class SlidingWindowRateLimiter:
    def __init__(self, limit_per_minute: int, clock: Callable[[], float] = time.monotonic):
        self.limit_per_minute = limit_per_minute
        self._clock = clock
        self._hits: Dict[str, Deque[float]] = {}
        self._last_sweep = clock()

    def _prune(self, key: str, now: float) -> Deque[float]:
        hits = self._hits.get(key)
        if hits is None:
            return deque()
        while hits and hits[0] <= now - WINDOW_SECONDS:
            hits.popleft()
        if not hits:
            del self._hits[key]
        return hits

    def _sweep(self, now: float) -> None:
        """Drop every key whose hits have all left the window. Runs at most once per window."""
        if now - self._last_sweep < WINDOW_SECONDS:
            return
        self._last_sweep = now
        for key in list(self._hits):
            self._prune(key, now)

    def check(self, key: str) -> int:
        """Record one request for key. Returns remaining budget; raises RateLimitExceeded when exhausted."""
        now = self._clock()
        self._sweep(now)
        hits = self._prune(key, now)
        if len(hits) >= self.limit_per_minute:
            retry_after = max(1, int(hits[0] + WINDOW_SECONDS - now) + 1)
            raise RateLimitExceeded(retry_after)
        hits.append(now)
        self._hits[key] = hits
        return self.limit_per_minute - len(hits)

    def tracked_keys(self) -> int:
        return len(self._hits)

    def reset(self) -> None:
        self._hits.clear()
