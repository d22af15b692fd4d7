# conveyor/core/admission/ratelimit.py
from __future__ import annotations

import threading
import time
from collections import deque
from typing import Callable

from conveyor.core.models.admission import RateLimitConfig


class SlidingWindowRateLimiter:
    """
    Per-key rolling-window limiter: at most ``limit`` hits in any ``window``.

    Keys are caller supplied (the request origin). Rejected calls do not
    consume budget. Keys idle for a whole window are swept by ``allow`` at
    most once per window.
    """

    def __init__(
        self,
        config: RateLimitConfig,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.limit = config.limit
        self.window_s = config.window_ms / 1000.0
        self._clock = clock
        self._lock = threading.Lock()
        self._hits: dict[str, deque[float]] = {}
        self._last_sweep = self._clock()

    def allow(self, key: str) -> bool:
        now = self._clock()
        cutoff = now - self.window_s
        with self._lock:
            if now - self._last_sweep >= self.window_s:
                self._drop_idle(cutoff)
                self._last_sweep = now
            hits = self._hits.get(key)
            if hits is None:
                hits = deque()
                self._hits[key] = hits
            while hits and hits[0] <= cutoff:
                hits.popleft()
            if len(hits) >= self.limit:
                return False
            hits.append(now)
            return True

    def remaining(self, key: str) -> int:
        now = self._clock()
        with self._lock:
            hits = self._hits.get(key)
            if not hits:
                return self.limit
            live = sum(1 for t in hits if t > now - self.window_s)
            return max(0, self.limit - live)

    def _drop_idle(self, cutoff: float) -> int:
        stale = [k for k, hits in self._hits.items() if not hits or hits[-1] <= cutoff]
        for k in stale:
            del self._hits[k]
        return len(stale)

    def prune(self) -> int:
        """Forget keys with no hit inside the window; returns how many were dropped."""
        now = self._clock()
        with self._lock:
            self._last_sweep = now
            return self._drop_idle(now - self.window_s)

    def tracked_keys(self) -> int:
        with self._lock:
            return len(self._hits)
