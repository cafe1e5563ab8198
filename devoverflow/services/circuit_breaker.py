"""Circuit breaker guarding calls to a flaky downstream service.

State machine::

    CLOSED ──[failures >= threshold]──► OPEN
      ▲                                   │
      │                          [reset_timeout elapsed]
      │                                   │
      └──[3 successes]── HALF_OPEN ◄──────┘
                             │
                        [any failure]
                             │
                             ▼
                           OPEN

All durations are milliseconds. State is guarded by a lock, but the wrapped
operation always runs outside of it.
"""
import logging
import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, Optional, TypeVar

from devoverflow.services.error_handling import ErrorKind

logger = logging.getLogger(__name__)

T = TypeVar('T')

HALF_OPEN_SUCCESS_THRESHOLD = 3


class CircuitBreakerState(str, Enum):
    """Circuit breaker states."""
    CLOSED = 'CLOSED'
    OPEN = 'OPEN'
    HALF_OPEN = 'HALF_OPEN'


@dataclass(frozen=True)
class CircuitBreakerOptions:
    """Breaker configuration.

    Attributes:
        failure_threshold: Consecutive failures that open the circuit
        reset_timeout: Milliseconds to stay OPEN before letting a trial call through
    """
    failure_threshold: int = 5
    reset_timeout: float = 60000

    def __post_init__(self):
        if self.failure_threshold < 1:
            raise ValueError("failure_threshold must be >= 1")
        if self.reset_timeout < 0:
            raise ValueError("reset_timeout must be >= 0")


class CircuitBreakerOpenError(Exception):
    """Raised when a call is rejected because the circuit is OPEN."""

    name = 'CircuitBreakerOpenError'

    def __init__(self, operation_name: Optional[str] = None):
        self.operation_name = operation_name
        super().__init__(
            f"Circuit breaker is OPEN for {operation_name or 'operation'}. "
            "Service temporarily unavailable."
        )


class CircuitBreaker:
    """Per-operation circuit breaker.

    Args:
        options: CircuitBreakerOptions (defaults: threshold 5, reset 60s)
        name: Label used in logs and metrics
        error_log: Optional ErrorLogStore receiving an entry when the circuit opens
        clock: Callable returning the current time in seconds
        on_state_change: Optional callback ``(breaker, new_state)``
    """

    def __init__(
        self,
        options: Optional[CircuitBreakerOptions] = None,
        name: str = 'operation',
        error_log=None,
        clock: Callable[[], float] = time.time,
        on_state_change: Optional[Callable[['CircuitBreaker', CircuitBreakerState], None]] = None
    ):
        options = options or CircuitBreakerOptions()
        self.failure_threshold = options.failure_threshold
        self.reset_timeout = options.reset_timeout
        self.name = name
        self._error_log = error_log
        self._clock = clock
        self._on_state_change = on_state_change
        self._lock = threading.Lock()
        self._state = CircuitBreakerState.CLOSED
        self._failure_count = 0
        self._success_count = 0
        self._last_failure_time = 0.0

    @property
    def state(self) -> CircuitBreakerState:
        return self._state

    def execute(self, operation: Callable[[], T], operation_name: Optional[str] = None) -> T:
        """Run ``operation`` through the breaker.

        Raises:
            CircuitBreakerOpenError: The circuit is OPEN and the reset timeout
                has not elapsed; ``operation`` is not invoked.
        """
        self._before_call(operation_name)
        try:
            result = operation()
        except Exception as e:
            self._on_failure(e, operation_name)
            raise
        self._on_success()
        return result

    def _before_call(self, operation_name: Optional[str]) -> None:
        with self._lock:
            if self._state != CircuitBreakerState.OPEN:
                return
            elapsed_ms = (self._clock() - self._last_failure_time) * 1000
            if elapsed_ms <= self.reset_timeout:
                raise CircuitBreakerOpenError(operation_name or self.name)
            self._success_count = 0
            self._transition(CircuitBreakerState.HALF_OPEN)

    def _on_success(self) -> None:
        with self._lock:
            self._failure_count = 0
            if self._state == CircuitBreakerState.HALF_OPEN:
                self._success_count += 1
                if self._success_count >= HALF_OPEN_SUCCESS_THRESHOLD:
                    self._transition(CircuitBreakerState.CLOSED)

    def _on_failure(self, error: Exception, operation_name: Optional[str]) -> None:
        with self._lock:
            self._failure_count += 1
            failure_count = self._failure_count
            self._last_failure_time = self._clock()
            if self._state == CircuitBreakerState.HALF_OPEN:
                self._transition(CircuitBreakerState.OPEN)
                return
            if self._state == CircuitBreakerState.CLOSED and self._failure_count >= self.failure_threshold:
                self._transition(CircuitBreakerState.OPEN)
                opened = True
            else:
                opened = False

        if opened and self._error_log is not None:
            label = operation_name or self.name
            self._error_log.log_error(
                ErrorKind.API_ERROR,
                f"Circuit breaker opened for {label} after {failure_count} failures",
                error,
                {
                    "failureThreshold": self.failure_threshold,
                    "resetTimeout": self.reset_timeout,
                    "operationName": label,
                    "circuitBreakerState": CircuitBreakerState.OPEN.value,
                },
            )

    def _transition(self, new_state: CircuitBreakerState) -> None:
        # Caller holds the lock
        if new_state == self._state:
            return
        logger.info("Circuit breaker %s: %s -> %s", self.name, self._state.value, new_state.value)
        self._state = new_state
        if self._on_state_change is not None:
            self._on_state_change(self, new_state)

    def get_stats(self) -> Dict[str, Any]:
        """Return a read-only snapshot for observability UIs.

        ``last_failure_time`` is in epoch milliseconds (0 before any failure).
        """
        with self._lock:
            return {
                "state": self._state.value,
                "failure_count": self._failure_count,
                "last_failure_time": self._last_failure_time * 1000,
                "success_count": self._success_count,
            }

    def reset(self) -> None:
        """Force the circuit CLOSED with zeroed counters (operator action)."""
        with self._lock:
            self._transition(CircuitBreakerState.CLOSED)
            self._failure_count = 0
            self._success_count = 0
            self._last_failure_time = 0.0
