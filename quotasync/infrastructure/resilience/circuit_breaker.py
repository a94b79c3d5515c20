"""Circuit breaker guarding remote calls.

After `failure_threshold` consecutive failed attempts the circuit opens and
calls fail fast until `reset_timeout` seconds have elapsed. The next call is
then let through (half-open); its success closes the circuit, its failure
re-opens it.
"""

import enum
import logging
import threading
import time
from typing import Callable

logger = logging.getLogger(__name__)

class CircuitState(str, enum.Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"

class CircuitBreaker:
    """Consecutive-failure circuit breaker."""

    def __init__(
        self,
        failure_threshold: int = 5,
        reset_timeout: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.failure_threshold = failure_threshold
        self.reset_timeout = reset_timeout
        self._clock = clock
        self._failures = 0
        self._opened_at = 0.0
        self._state = CircuitState.CLOSED
        self._lock = threading.Lock()

    @property
    def state(self) -> CircuitState:
        with self._lock:
            self._maybe_half_open()
            return self._state

    def _maybe_half_open(self) -> None:
        if self._state is CircuitState.OPEN and self._clock() - self._opened_at >= self.reset_timeout:
            self._state = CircuitState.HALF_OPEN
            logger.info("Circuit breaker half-open; allowing a trial call.")

    def allow_request(self) -> bool:
        with self._lock:
            self._maybe_half_open()
            return self._state is not CircuitState.OPEN

    def retry_in(self) -> float:
        """Seconds until an open circuit lets a trial call through."""
        with self._lock:
            if self._state is not CircuitState.OPEN:
                return 0.0
            return max(0.0, self._opened_at + self.reset_timeout - self._clock())

    def record_success(self) -> None:
        with self._lock:
            if self._state is not CircuitState.CLOSED:
                logger.info("Circuit breaker closed after successful call.")
            self._failures = 0
            self._state = CircuitState.CLOSED

    def record_failure(self) -> None:
        with self._lock:
            self._failures += 1
            if self._state is CircuitState.HALF_OPEN or self._failures >= self.failure_threshold:
                if self._state is not CircuitState.OPEN:
                    logger.warning(f"Circuit breaker opened after {self._failures} consecutive failure(s).")
                self._state = CircuitState.OPEN
                self._opened_at = self._clock()
