"""
Per-capability circuit breaker.

Tracks the failure ratio over a trailing window. Once the ratio exceeds the
threshold the breaker opens and rejects calls outright. After the open period
exactly one trial call is let through (half-open): success closes the
breaker, failure reopens it for another open period.
"""

from __future__ import annotations

import time
from collections import deque
from collections.abc import Callable
from enum import Enum

from loguru import logger

from studyloop.config import Settings


class BreakerState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreaker:
    """Sliding-window failure-ratio breaker."""

    def __init__(
        self,
        name: str,
        window_seconds: float = 60.0,
        failure_ratio: float = 0.5,
        open_seconds: float = 30.0,
        minimum_calls: int = 5,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.name = name
        self.window_seconds = window_seconds
        self.failure_ratio = failure_ratio
        self.open_seconds = open_seconds
        self.minimum_calls = minimum_calls
        self._clock = clock

        self.state = BreakerState.CLOSED
        self._calls: deque[tuple[float, bool]] = deque()
        self._opened_at: float | None = None
        self._trial_in_flight = False

    @classmethod
    def from_settings(
        cls,
        name: str,
        settings: Settings,
        clock: Callable[[], float] = time.monotonic,
    ) -> CircuitBreaker:
        return cls(name, clock=clock, **settings.get_breaker_config())

    # =========================================================================
    # Gate
    # =========================================================================

    def allow(self) -> bool:
        """Check whether a call may go out now. Claims the trial slot when half-open."""
        if self.state == BreakerState.CLOSED:
            return True

        if self.state == BreakerState.OPEN:
            if self.retry_after() > 0:
                return False
            self.state = BreakerState.HALF_OPEN
            self._trial_in_flight = True
            logger.info("Circuit {} half-open: allowing one trial call", self.name)
            return True

        if self._trial_in_flight:
            return False
        self._trial_in_flight = True
        return True

    def retry_after(self) -> float:
        """Seconds until an open breaker lets a trial through."""
        if self.state != BreakerState.OPEN or self._opened_at is None:
            return 0.0
        return max(0.0, self._opened_at + self.open_seconds - self._clock())

    # =========================================================================
    # Outcomes
    # =========================================================================

    def record_success(self) -> None:
        if self.state == BreakerState.HALF_OPEN:
            self._close()
            return
        self._record(True)

    def record_failure(self) -> None:
        if self.state == BreakerState.HALF_OPEN:
            self._open()
            return
        self._record(False)
        total = len(self._calls)
        if total >= self.minimum_calls and self.current_failure_ratio() > self.failure_ratio:
            self._open()

    def release(self) -> None:
        """Give the trial slot back when a trial call was abandoned without an outcome."""
        if self.state == BreakerState.HALF_OPEN:
            self._trial_in_flight = False

    def current_failure_ratio(self) -> float:
        self._prune()
        if not self._calls:
            return 0.0
        failures = sum(1 for _, ok in self._calls if not ok)
        return failures / len(self._calls)

    # =========================================================================
    # Internals
    # =========================================================================

    def _record(self, ok: bool) -> None:
        self._calls.append((self._clock(), ok))
        self._prune()

    def _prune(self) -> None:
        horizon = self._clock() - self.window_seconds
        while self._calls and self._calls[0][0] < horizon:
            self._calls.popleft()

    def _open(self) -> None:
        ratio = self.current_failure_ratio()
        self.state = BreakerState.OPEN
        self._opened_at = self._clock()
        self._trial_in_flight = False
        self._calls.clear()
        logger.warning(
            "Circuit {} opened for {}s (failure ratio {:.0%})",
            self.name,
            self.open_seconds,
            ratio,
        )

    def _close(self) -> None:
        self.state = BreakerState.CLOSED
        self._opened_at = None
        self._trial_in_flight = False
        self._calls.clear()
        logger.info("Circuit {} closed after successful trial", self.name)
