"""
Circuit breaker protecting the tracking path from a failing storage backend.

States:
- closed: calls run; max_failures consecutive failures open the circuit
- open: calls fail fast with CircuitOpenError until reset_timeout has elapsed
  since the last failure, then the next state check moves to half_open
- half_open: trial calls run; one failure reopens, two successes close

A single lock is held across the state check, the guarded operation and the
state update, so only one trial call can run per half-open episode. The
guarded operation must not re-enter the same breaker.
"""
import logging
import threading
import time
from dataclasses import dataclass
from datetime import timedelta
from enum import Enum
from typing import Any, Callable, Dict, Optional, TypeVar, Union

from lib.request_tracer.errors import CircuitOpenError, TrackerConfigurationError

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Consecutive half-open successes needed to close the circuit
HALF_OPEN_SUCCESS_THRESHOLD = 2


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass(frozen=True)
class CircuitMetrics:
    """Point-in-time view of a circuit breaker."""
    state: CircuitState
    failure_count: int
    success_count: int
    last_failure_time: Optional[float]

    def to_dict(self) -> Dict[str, Any]:
        return {
            'state': self.state.value,
            'failure_count': self.failure_count,
            'success_count': self.success_count,
            'last_failure_time': self.last_failure_time,
        }


class CircuitBreaker:

    def __init__(
        self,
        max_failures: int,
        reset_timeout: Union[float, timedelta],
        clock: Callable[[], float] = time.monotonic
    ):
        """
        Args:
            max_failures: Consecutive failures that open the circuit
            reset_timeout: Seconds (or a timedelta) to stay open before probing
            clock: Monotonic time source, injectable for tests
        """
        if isinstance(reset_timeout, timedelta):
            reset_timeout = reset_timeout.total_seconds()
        if max_failures < 1:
            raise TrackerConfigurationError("max_failures must be at least 1")
        if reset_timeout < 0:
            raise TrackerConfigurationError("reset_timeout cannot be negative")

        self.max_failures = max_failures
        self.reset_timeout = float(reset_timeout)
        self._clock = clock

        self._lock = threading.Lock()
        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._success_count = 0
        self._last_failure_time: Optional[float] = None

    def call(self, operation: Callable[[], T]) -> T:
        """
        Run operation under the breaker policy.

        Returns the operation's result. Exceptions raised by the operation are
        recorded as failures and re-raised. While the circuit is open the
        operation is not invoked and CircuitOpenError is raised instead.
        """
        with self._lock:
            self._check_reset_timeout()
            if self._state == CircuitState.OPEN:
                raise CircuitOpenError()

            try:
                result = operation()
            except Exception:
                self._record_failure()
                raise

            self._record_success()
            return result

    def get_state(self) -> CircuitState:
        with self._lock:
            self._check_reset_timeout()
            return self._state

    def is_open(self) -> bool:
        return self.get_state() == CircuitState.OPEN

    @property
    def failure_count(self) -> int:
        with self._lock:
            return self._failure_count

    @property
    def success_count(self) -> int:
        with self._lock:
            return self._success_count

    def snapshot(self) -> CircuitMetrics:
        with self._lock:
            self._check_reset_timeout()
            return CircuitMetrics(
                state=self._state,
                failure_count=self._failure_count,
                success_count=self._success_count,
                last_failure_time=self._last_failure_time,
            )

    # Callers below must hold self._lock

    def _check_reset_timeout(self) -> None:
        if self._state != CircuitState.OPEN or self._last_failure_time is None:
            return
        if self._clock() - self._last_failure_time > self.reset_timeout:
            self._state = CircuitState.HALF_OPEN
            self._success_count = 0
            logger.info("Circuit breaker half-open, probing storage")

    def _record_failure(self) -> None:
        self._last_failure_time = self._clock()

        if self._state == CircuitState.HALF_OPEN:
            self._state = CircuitState.OPEN
            logger.warning("Circuit breaker reopened after failed trial call")
            return

        self._failure_count += 1
        if self._failure_count >= self.max_failures:
            self._state = CircuitState.OPEN
            logger.warning(f"Circuit breaker opened after {self._failure_count} consecutive failures")

    def _record_success(self) -> None:
        if self._state == CircuitState.HALF_OPEN:
            self._success_count += 1
            if self._success_count >= HALF_OPEN_SUCCESS_THRESHOLD:
                self._state = CircuitState.CLOSED
                self._failure_count = 0
                logger.info("Circuit breaker closed")
        else:
            self._failure_count = 0
