"""Bounded retries with exponential backoff, composed with circuit breakers.

``RetryMechanism`` owns the registry of circuit breakers, one per operation
key, created lazily on first use. The composition
``execute_with_circuit_breaker_then_retry`` gates the *whole* retry loop once:
a call that retries until success or exhaustion counts as a single breaker
outcome, and attempts inside the loop are not gated individually.

Delays are milliseconds. ``sleep`` and ``random`` are injectable so tests run
instantly and deterministically.
"""
import logging
import random as _random
import threading
import time
from dataclasses import dataclass, replace
from typing import Any, Callable, Dict, Optional, TypeVar

from devoverflow.services.circuit_breaker import (
    CircuitBreaker, CircuitBreakerOpenError, CircuitBreakerOptions, CircuitBreakerState
)
from devoverflow.services.error_handling import ErrorKind, error_message, error_name

logger = logging.getLogger(__name__)

T = TypeVar('T')

NON_RETRYABLE_MARKERS = ('400', '401', '403', '404')

RETRYABLE_MARKERS = (
    'timeout',
    'network',
    'fetch',
    '500',
    '502',
    '503',
    '504',
    'econnrefused',
    'enotfound',
    'etimedout',
    'aborterror',
    'connection_error',
    'service_unavailable',
)


def default_retry_condition(error: BaseException, attempt: int) -> bool:
    """Retry server, network and timeout failures; never retry 400/401/403/404."""
    _ = attempt
    message = error_message(error).lower()
    name = error_name(error).lower()
    if any(marker in message for marker in NON_RETRYABLE_MARKERS):
        return False
    return any(marker in message or marker in name for marker in RETRYABLE_MARKERS)


@dataclass(frozen=True)
class RetryOptions:
    """Retry configuration.

    Attributes:
        max_retries: Retries after the initial attempt
        base_delay: Delay before the first retry, in milliseconds
        max_delay: Upper bound for any delay, in milliseconds
        backoff_multiplier: Growth factor per attempt
        jitter: Scale each delay by a uniform factor in [0.5, 1.0]
        retry_condition: ``(error, attempt) -> bool``; defaults to
            :func:`default_retry_condition`
        on_retry: ``(error, attempt_number) -> None`` called before sleeping
    """
    max_retries: int = 3
    base_delay: float = 1000
    max_delay: float = 30000
    backoff_multiplier: float = 2
    jitter: bool = True
    retry_condition: Optional[Callable[[BaseException, int], bool]] = None
    on_retry: Optional[Callable[[BaseException, int], None]] = None

    def __post_init__(self):
        if self.max_retries < 0:
            raise ValueError("max_retries must be >= 0")
        if self.base_delay < 0 or self.max_delay < 0:
            raise ValueError("delays must be >= 0")

    def merged(self, **overrides) -> 'RetryOptions':
        """Return a copy with the non-None ``overrides`` applied."""
        return replace(self, **{k: v for k, v in overrides.items() if v is not None})


class RetryError(Exception):
    """Raised when a retried operation finally fails.

    ``str(error)`` is the last underlying error's message, so message-based
    classification sees the same text as the original failure.

    Attributes:
        last_error: The exception raised by the final attempt
        attempts: Number of times the operation was invoked
        exhausted: True when the retry budget ran out, False when the retry
            condition refused to retry
    """

    def __init__(self, last_error: BaseException, attempts: int, exhausted: bool):
        self.last_error = last_error
        self.attempts = attempts
        self.exhausted = exhausted
        self.name = error_name(last_error)
        super().__init__(error_message(last_error))


class RetryMechanism:
    """Retry executor plus the process's circuit-breaker registry.

    Args:
        error_log: Optional ErrorLogStore receiving retry and exhaustion records
        metrics: Optional ReliabilityMetrics
        sleep: Callable taking seconds (defaults to time.sleep)
        random: Callable returning a float in [0, 1) used for jitter
        clock: Clock handed to every circuit breaker (seconds)
    """

    def __init__(
        self,
        error_log=None,
        metrics=None,
        sleep: Callable[[float], None] = time.sleep,
        random: Callable[[], float] = _random.random,
        clock: Callable[[], float] = time.time
    ):
        self._error_log = error_log
        self._metrics = metrics
        self._sleep = sleep
        self._random = random
        self._clock = clock
        self._circuit_breakers: Dict[str, CircuitBreaker] = {}
        self._registry_lock = threading.Lock()

    def compute_delay(self, attempt: int, options: RetryOptions) -> float:
        """Return the backoff delay in milliseconds before retry ``attempt + 1``."""
        delay = min(options.base_delay * options.backoff_multiplier ** attempt, options.max_delay)
        if options.jitter:
            delay = delay * (0.5 + self._random() * 0.5)
        return delay

    def execute_with_retry(
        self,
        operation: Callable[[], T],
        options: Optional[RetryOptions] = None,
        operation_name: Optional[str] = None
    ) -> T:
        """Invoke ``operation`` until it succeeds or retrying stops.

        Retries are strictly sequential. Each retry and the final failure are
        recorded in the error log with ``attempt``, ``maxRetries``, ``delay``
        and ``operationName`` context.

        Raises:
            RetryError: The last attempt failed (budget spent or the retry
                condition refused)
        """
        options = options or RetryOptions()
        condition = options.retry_condition or default_retry_condition
        label = operation_name or 'operation'
        last_error: Optional[BaseException] = None
        exhausted = False
        attempt = 0

        for attempt in range(options.max_retries + 1):
            try:
                result = operation()
            except Exception as e:
                last_error = e
            else:
                if attempt > 0 and self._metrics is not None:
                    self._metrics.record_retry_success(label)
                return result

            if attempt == options.max_retries:
                exhausted = True
                break
            if not condition(last_error, attempt):
                break

            delay = self.compute_delay(attempt, options)
            self._log(ErrorKind.API_ERROR,
                      f"Retrying {label} (attempt {attempt + 1}/{options.max_retries + 1})",
                      last_error,
                      {
                          "attempt": attempt + 1,
                          "maxRetries": options.max_retries + 1,
                          "delay": delay,
                          "operationName": label,
                          "retryAttempt": True,
                      })
            if self._metrics is not None:
                self._metrics.record_retry_attempt(label)
            if options.on_retry is not None:
                options.on_retry(last_error, attempt + 1)
            self._sleep(delay / 1000.0)

        self._log(ErrorKind.API_ERROR,
                  f"All retry attempts exhausted for {label}",
                  last_error,
                  {
                      "maxRetries": options.max_retries + 1,
                      "operationName": label,
                      "retryExhausted": exhausted,
                  })
        if self._metrics is not None:
            self._metrics.record_retry_exhausted(label)
        raise RetryError(last_error, attempt + 1, exhausted) from last_error

    def get_circuit_breaker(
        self,
        key: str,
        options: Optional[CircuitBreakerOptions] = None
    ) -> CircuitBreaker:
        """Return the breaker for ``key``, creating it on first use.

        ``options`` only apply when the breaker is created.
        """
        with self._registry_lock:
            breaker = self._circuit_breakers.get(key)
            if breaker is None:
                breaker = CircuitBreaker(
                    options,
                    name=key,
                    error_log=self._error_log,
                    clock=self._clock,
                    on_state_change=self._state_changed,
                )
                self._circuit_breakers[key] = breaker
            return breaker

    def execute_with_circuit_breaker(
        self,
        operation: Callable[[], T],
        key: str,
        options: Optional[CircuitBreakerOptions] = None,
        operation_name: Optional[str] = None
    ) -> T:
        """Run ``operation`` through the breaker registered under ``key``."""
        breaker = self.get_circuit_breaker(key, options)
        try:
            return breaker.execute(operation, operation_name)
        except CircuitBreakerOpenError:
            if self._metrics is not None:
                self._metrics.record_circuit_rejection(key)
            raise

    def execute_with_circuit_breaker_then_retry(
        self,
        operation: Callable[[], T],
        key: str,
        retry_options: Optional[RetryOptions] = None,
        circuit_breaker_options: Optional[CircuitBreakerOptions] = None,
        operation_name: Optional[str] = None
    ) -> T:
        """Gate a whole retry loop behind the breaker for ``key``.

        An OPEN circuit rejects the call before any attempt is made; the
        rejection itself is never retried.
        """
        return self.execute_with_circuit_breaker(
            lambda: self.execute_with_retry(operation, retry_options, operation_name),
            key,
            circuit_breaker_options,
            operation_name,
        )

    execute_with_retry_and_circuit_breaker = execute_with_circuit_breaker_then_retry

    def get_circuit_breaker_stats(self, key: str) -> Optional[Dict[str, Any]]:
        with self._registry_lock:
            breaker = self._circuit_breakers.get(key)
        return breaker.get_stats() if breaker else None

    def get_all_circuit_breaker_stats(self) -> Dict[str, Dict[str, Any]]:
        with self._registry_lock:
            breakers = dict(self._circuit_breakers)
        return {key: breaker.get_stats() for key, breaker in breakers.items()}

    def reset_circuit_breaker(self, key: str) -> bool:
        """Reset the breaker for ``key``; returns False if it does not exist."""
        with self._registry_lock:
            breaker = self._circuit_breakers.get(key)
        if breaker is None:
            return False
        breaker.reset()
        return True

    def _state_changed(self, breaker: CircuitBreaker, state: CircuitBreakerState) -> None:
        if self._metrics is not None:
            self._metrics.set_circuit_state(breaker.name, state)

    def _log(self, kind, message, error, context) -> None:
        if self._error_log is not None:
            self._error_log.log_error(kind, message, error, context)
        else:
            logger.warning("%s: %s", message, error)
