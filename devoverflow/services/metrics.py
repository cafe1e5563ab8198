"""Prometheus metrics for the reliability layer.

Exports:
- Retry attempts, successes after retry, and exhausted retries per operation
- Circuit breaker state and rejections per operation key
- Error log records per kind
- Tracked fetch outcomes and latencies
"""

from prometheus_client import Counter, Gauge, Histogram, CollectorRegistry, generate_latest
from typing import Optional

from devoverflow.services.circuit_breaker import CircuitBreakerState

CIRCUIT_STATE_VALUES = {
    CircuitBreakerState.CLOSED: 0,
    CircuitBreakerState.HALF_OPEN: 1,
    CircuitBreakerState.OPEN: 2,
}


class ReliabilityMetrics:
    """Prometheus metrics collector for DevOverflow.

    Each instance owns its own registry so separate applications (and
    tests) never share counters.
    """

    def __init__(self, registry: Optional[CollectorRegistry] = None):
        """Initialize Prometheus metrics.

        Args:
            registry: Optional custom CollectorRegistry (defaults to a new one)
        """
        self.registry = registry or CollectorRegistry()
        self._initialize_metrics()

    def _initialize_metrics(self):
        """Initialize all Prometheus metrics."""

        # Retry metrics
        self.retry_attempts_total = Counter(
            'devoverflow_retry_attempts_total',
            'Total retry attempts',
            ['operation'],
            registry=self.registry
        )

        self.retry_successes_total = Counter(
            'devoverflow_retry_successes_total',
            'Operations that succeeded after at least one retry',
            ['operation'],
            registry=self.registry
        )

        self.retry_exhausted_total = Counter(
            'devoverflow_retry_exhausted_total',
            'Operations that failed after retrying stopped',
            ['operation'],
            registry=self.registry
        )

        # Circuit breaker metrics
        self.circuit_breaker_state = Gauge(
            'devoverflow_circuit_breaker_state',
            'Circuit breaker state (0=closed, 1=half-open, 2=open)',
            ['key'],
            registry=self.registry
        )

        self.circuit_breaker_rejections_total = Counter(
            'devoverflow_circuit_breaker_rejections_total',
            'Calls rejected by an open circuit breaker',
            ['key'],
            registry=self.registry
        )

        # Error log metrics
        self.errors_logged_total = Counter(
            'devoverflow_errors_logged_total',
            'Error log records by kind',
            ['kind'],
            registry=self.registry
        )

        # Fetch metrics
        self.fetch_requests_total = Counter(
            'devoverflow_fetch_requests_total',
            'Tracked fetch results',
            ['method', 'outcome'],
            registry=self.registry
        )

        self.fetch_duration_seconds = Histogram(
            'devoverflow_fetch_duration_seconds',
            'Tracked fetch latency in seconds, retries included',
            ['method'],
            buckets=(0.1, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 300.0),
            registry=self.registry
        )

    def record_retry_attempt(self, operation: str):
        """Record a retry about to happen."""
        self.retry_attempts_total.labels(operation=operation).inc()

    def record_retry_success(self, operation: str):
        """Record an operation that succeeded after retrying."""
        self.retry_successes_total.labels(operation=operation).inc()

    def record_retry_exhausted(self, operation: str):
        """Record an operation that failed for good."""
        self.retry_exhausted_total.labels(operation=operation).inc()

    def set_circuit_state(self, key: str, state: CircuitBreakerState):
        """Update the state gauge for a breaker."""
        self.circuit_breaker_state.labels(key=key).set(CIRCUIT_STATE_VALUES[state])

    def record_circuit_rejection(self, key: str):
        """Record a call rejected by an open circuit."""
        self.circuit_breaker_rejections_total.labels(key=key).inc()

    def record_error_logged(self, record):
        """Error log listener counting records by kind."""
        self.errors_logged_total.labels(kind=record.kind.value).inc()

    def record_fetch(self, method: str, success: bool, duration_seconds: float):
        """Record a tracked fetch result.

        Args:
            method: HTTP method
            success: Whether the fetch produced a successful response
            duration_seconds: Time spent including retries
        """
        outcome = 'success' if success else 'failure'
        self.fetch_requests_total.labels(method=method, outcome=outcome).inc()
        self.fetch_duration_seconds.labels(method=method).observe(duration_seconds)

    def export_metrics(self) -> bytes:
        """Export metrics in Prometheus format."""
        return generate_latest(self.registry)
