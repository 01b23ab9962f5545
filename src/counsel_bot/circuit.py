"""Circuit breaker guarding calls to the generation service."""

from __future__ import annotations

import logging
import time
from enum import Enum
from typing import Callable

logger = logging.getLogger(__name__)


class CircuitState(str, Enum):
    CLOSED = "CLOSED"
    OPEN = "OPEN"
    HALF_OPEN = "HALF_OPEN"


class CircuitBreaker:
    """
    CLOSED -> OPEN after ``failure_threshold`` consecutive failures.
    OPEN -> HALF_OPEN once ``reset_timeout_s`` has passed; the next call is a trial.
    HALF_OPEN -> CLOSED on success, back to OPEN on failure.
    """

    def __init__(
        self,
        failure_threshold: int = 5,
        reset_timeout_s: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.failure_threshold = failure_threshold
        self.reset_timeout_s = reset_timeout_s
        self._clock = clock
        self._state = CircuitState.CLOSED
        self._failures = 0
        self._opened_at = 0.0

    @property
    def state(self) -> CircuitState:
        if self._state is CircuitState.OPEN and self._clock() - self._opened_at >= self.reset_timeout_s:
            self._state = CircuitState.HALF_OPEN
            logger.info("Circuit half-open, allowing a trial call")
        return self._state

    @property
    def failures(self) -> int:
        return self._failures

    def allow_request(self) -> bool:
        return self.state is not CircuitState.OPEN

    def record_success(self) -> None:
        if self._state is not CircuitState.CLOSED:
            logger.info("Circuit closed after successful call")
        self._state = CircuitState.CLOSED
        self._failures = 0

    def record_failure(self) -> None:
        self._failures += 1
        if self._state is CircuitState.HALF_OPEN or self._failures >= self.failure_threshold:
            if self._state is not CircuitState.OPEN:
                logger.warning(
                    "Circuit opened after %d consecutive failures (cooldown %.0fs)",
                    self._failures,
                    self.reset_timeout_s,
                )
            self._state = CircuitState.OPEN
            self._opened_at = self._clock()

    def remaining_cooldown(self) -> float:
        if self._state is not CircuitState.OPEN:
            return 0.0
        return max(0.0, self.reset_timeout_s - (self._clock() - self._opened_at))
