# conveyor/core/admission/breaker.py
"""
Process-wide circuit breaker guarding admission.

Closed -> Open once ``failure_count`` reaches the threshold. An open breaker
closes lazily: the first ``allow()`` after more than ``cooldown`` since the
last failure resets the count and lets the call through. Successes only
decrement the count; they never close an open breaker early.
"""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from typing import Callable, Optional

from conveyor.core.logging import get_logger
from conveyor.core.models.admission import BreakerConfig

logger = get_logger('breaker')


@dataclass(frozen=True)
class BreakerState:
    failure_count: int
    last_failure_at: Optional[float]
    last_success_at: Optional[float]
    is_open: bool


class CircuitBreaker:
    def __init__(
        self,
        config: BreakerConfig | None = None,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        cfg = config or BreakerConfig()
        self.threshold = cfg.threshold
        self.cooldown_s = cfg.cooldown_ms / 1000.0
        self._clock = clock
        self._lock = threading.Lock()
        self._failure_count = 0
        self._last_failure_at: Optional[float] = None
        self._last_success_at: Optional[float] = None
        self._is_open = False

    def allow(self) -> bool:
        """Whether a dependency call may proceed. May close an expired open breaker."""
        with self._lock:
            if not self._is_open:
                return True
            now = self._clock()
            if self._last_failure_at is not None and now - self._last_failure_at > self.cooldown_s:
                self._is_open = False
                self._failure_count = 0
                logger.info('Circuit breaker closed after cooldown')
                return True
            return False

    def record_failure(self) -> None:
        with self._lock:
            self._failure_count += 1
            self._last_failure_at = self._clock()
            if not self._is_open and self._failure_count >= self.threshold:
                self._is_open = True
                logger.warning(
                    f'Circuit breaker opened after {self._failure_count} dependency failures'
                )

    def record_success(self) -> None:
        with self._lock:
            self._failure_count = max(0, self._failure_count - 1)
            self._last_success_at = self._clock()

    @property
    def is_open(self) -> bool:
        """Current flag without the lazy cooldown check."""
        with self._lock:
            return self._is_open

    def snapshot(self) -> BreakerState:
        with self._lock:
            return BreakerState(
                failure_count=self._failure_count,
                last_failure_at=self._last_failure_at,
                last_success_at=self._last_success_at,
                is_open=self._is_open,
            )
