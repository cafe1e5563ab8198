"""HTTP fetch wrapper with timeouts, error tracking, retries and circuit breaking.

``TrackedFetcher.fetch`` never raises: every failure is folded into a
:class:`FetchResponse`. Client errors (4xx other than 429) are returned
immediately without retrying; server errors, 429, timeouts and network
failures go through ``RetryMechanism.execute_with_circuit_breaker_then_retry``.
"""
import json
import logging
import re
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Mapping, Optional
from urllib.parse import urlsplit, urlunsplit

import requests

from devoverflow.services.circuit_breaker import CircuitBreakerOptions
from devoverflow.services.error_handling import (
    ErrorKind, classify, error_message, retry_delay_for, should_retry_error
)
from devoverflow.services.retry import RetryOptions

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_MS = 10000
DEFAULT_RETRIES = 3
DEFAULT_RETRY_DELAY_MS = 1000


class FetchError(Exception):
    """An HTTP request that failed or returned a non-2xx status.

    Attributes:
        status: HTTP status code, when a response was received
        data: Parsed (JSON) or raw (text) error body
        name: Error name used by classification ("AbortError" for timeouts)
    """

    def __init__(
        self,
        message: str,
        status: Optional[int] = None,
        response: Optional[requests.Response] = None,
        data: Any = None,
        name: str = 'FetchError'
    ):
        super().__init__(message)
        self.status = status
        self.response = response
        self.data = data
        self.name = name


@dataclass
class FetchResponse:
    """Outcome of a tracked fetch."""
    success: bool
    data: Any = None
    error: Optional[str] = None
    status: Optional[int] = None
    headers: Dict[str, str] = field(default_factory=dict)


def slugify_url(url: str) -> str:
    """Replace every non-alphanumeric character with an underscore."""
    return re.sub(r'[^a-zA-Z0-9]', '_', url)


def default_circuit_breaker_key(method: str, url: str) -> str:
    return f"fetch_{method.upper()}_{slugify_url(url)}"


def endpoint_of(url: str) -> str:
    """Return ``url`` without its query string and fragment."""
    parts = urlsplit(url)
    return urlunsplit((parts.scheme, parts.netloc, parts.path, '', ''))


def _parse_error_body(response: requests.Response) -> Any:
    try:
        return response.json()
    except ValueError:
        return response.text


def _parse_success_body(response: requests.Response) -> Any:
    content_type = response.headers.get('content-type', '')
    if 'application/json' in content_type:
        try:
            return response.json()
        except ValueError as e:
            raise FetchError(f"Malformed JSON response body: {e}", response.status_code, response) from e
    if 'text/' in content_type:
        return response.text
    return response.content


class TrackedFetcher:
    """Fetch wrapper bound to one RetryMechanism and ErrorLogStore.

    Args:
        retry_mechanism: RetryMechanism providing retries and circuit breakers
        error_log: Optional ErrorLogStore for failure tracking
        session: Optional requests.Session (a new one by default)
        metrics: Optional ReliabilityMetrics
        sleep: Sleep used by the simple retry loop (seconds)
        default_timeout: Timeout in milliseconds when a call gives none
    """

    def __init__(
        self,
        retry_mechanism,
        error_log=None,
        session: Optional[requests.Session] = None,
        metrics=None,
        sleep: Callable[[float], None] = time.sleep,
        default_timeout: float = DEFAULT_TIMEOUT_MS
    ):
        self._retry = retry_mechanism
        self.default_timeout = default_timeout
        self._error_log = error_log
        self._session = session or requests.Session()
        self._metrics = metrics
        self._sleep = sleep

    def fetch(
        self,
        url: str,
        method: str = 'GET',
        headers: Optional[Mapping[str, str]] = None,
        body: Any = None,
        timeout: Optional[float] = None,
        retries: int = DEFAULT_RETRIES,
        retry_delay: float = DEFAULT_RETRY_DELAY_MS,
        track_errors: bool = True,
        use_advanced_retry: bool = True,
        circuit_breaker_key: Optional[str] = None,
        retry_options: Optional[Mapping[str, Any]] = None,
        circuit_breaker_options: Optional[Mapping[str, Any]] = None
    ) -> FetchResponse:
        """Perform a request and fold every failure into the result.

        Args:
            url: Absolute URL
            method: HTTP method
            headers: Optional request headers
            body: Optional request body (str or bytes)
            timeout: Per-attempt timeout in milliseconds (default_timeout if None)
            retries: Retries after the first attempt
            retry_delay: Base retry delay in milliseconds
            track_errors: Record failures in the error log
            use_advanced_retry: Use retry + circuit breaker (else a simple loop)
            circuit_breaker_key: Explicit breaker key; derived from method and URL otherwise
            retry_options: RetryOptions field overrides
            circuit_breaker_options: CircuitBreakerOptions field overrides

        Returns:
            FetchResponse
        """
        method = method.upper()
        timeout = self.default_timeout if timeout is None else timeout
        started = time.monotonic()

        def attempt() -> FetchResponse:
            return self._fetch_once(url, method, headers, body, timeout, track_errors)

        if use_advanced_retry:
            result = self._fetch_with_breaker(
                attempt, url, method, retries, retry_delay, track_errors,
                circuit_breaker_key, retry_options, circuit_breaker_options,
            )
        else:
            result = self._fetch_with_simple_retry(attempt, retries)

        if self._metrics is not None:
            self._metrics.record_fetch(method, result.success, time.monotonic() - started)
        return result

    def _fetch_with_breaker(self, attempt, url, method, retries, retry_delay, track_errors,
                            circuit_breaker_key, retry_options, circuit_breaker_options) -> FetchResponse:
        try:
            options = RetryOptions(
                max_retries=retries,
                base_delay=retry_delay,
                retry_condition=lambda error, _attempt: should_retry_error(error),
            ).merged(**dict(retry_options or {}))
            if options.on_retry is None:
                options = options.merged(on_retry=self._retry_logger(
                    url, method, options.max_retries + 1, track_errors))
            breaker_options = CircuitBreakerOptions(**{
                "failure_threshold": 5,
                "reset_timeout": 60000,
                **dict(circuit_breaker_options or {}),
            })
            key = circuit_breaker_key or default_circuit_breaker_key(method, url)
            return self._retry.execute_with_circuit_breaker_then_retry(
                attempt, key, options, breaker_options, f"{method} {endpoint_of(url)}",
            )
        except Exception as e:
            last_error = getattr(e, 'last_error', e)
            return FetchResponse(
                success=False,
                error=error_message(e),
                status=getattr(last_error, 'status', None),
            )

    def _retry_logger(self, url, method, max_attempts, track_errors) -> Callable[[BaseException, int], None]:
        def on_retry(error: BaseException, attempt_number: int) -> None:
            if track_errors and self._error_log is not None:
                policy = classify(error)
                self._error_log.log_error(
                    ErrorKind.API_ERROR,
                    f"Retrying {method} {url} (attempt {attempt_number}/{max_attempts}) - {policy.title}",
                    error,
                    {
                        "method": method,
                        "url": url,
                        "attempt": attempt_number,
                        "maxRetries": max_attempts,
                        "errorType": policy.title,
                    },
                )
        return on_retry

    def _fetch_with_simple_retry(self, attempt, retries) -> FetchResponse:
        last_error: Optional[BaseException] = None
        for index in range(retries + 1):
            try:
                return attempt()
            except Exception as e:
                last_error = e
            if index == retries or not should_retry_error(last_error):
                break
            self._sleep(retry_delay_for(last_error, index) / 1000.0)

        return FetchResponse(
            success=False,
            error=error_message(last_error) if last_error else "Request failed after all retries",
            status=getattr(last_error, 'status', None),
        )

    def _fetch_once(self, url, method, headers, body, timeout, track_errors) -> FetchResponse:
        try:
            response = self._session.request(
                method, url,
                headers=dict(headers or {}),
                data=body,
                timeout=timeout / 1000.0,
            )
        except requests.Timeout as e:
            error = FetchError(f"Request timeout after {timeout}ms", name='AbortError')
            if track_errors:
                self._track(ErrorKind.NETWORK_ERROR, f"Request timeout for {method} {url}", error,
                            {"method": method, "timeout": timeout, "errorType": "timeout"})
            raise error from e
        except requests.RequestException as e:
            error = self._network_failure(e)
            if track_errors:
                self._track_request_exception(error, url, method, body)
            raise error from e

        if not 200 <= response.status_code < 300:
            return self._handle_error_response(response, url, method, body, track_errors)

        return FetchResponse(
            success=True,
            data=_parse_success_body(response),
            status=response.status_code,
            headers=dict(response.headers),
        )

    def _handle_error_response(self, response, url, method, body, track_errors) -> FetchResponse:
        status = response.status_code
        error_data = _parse_error_body(response)
        error = FetchError(f"HTTP {status}: {response.reason}", status, response, error_data)

        if track_errors:
            if status == 0 or status >= 500:
                self._track(ErrorKind.NETWORK_ERROR, f"Network error for {method} {url}", error,
                            {"method": method, "status": status})
            elif self._error_log is not None:
                self._error_log.log_api_error(
                    f"API request failed: {method} {url}", error,
                    endpoint=url, method=method, status_code=status,
                    request_data=body, response_data=error_data,
                )

        # Client errors are not transient; 429 is the exception
        if 400 <= status < 500 and status != 429:
            return FetchResponse(
                success=False,
                data=error_data,
                error=str(error),
                status=status,
                headers=dict(response.headers),
            )
        raise error

    @staticmethod
    def _network_failure(exc: requests.RequestException) -> FetchError:
        if isinstance(exc, requests.ConnectionError):
            return FetchError(f"Network error: {exc}", name=type(exc).__name__)
        return FetchError(str(exc), name=type(exc).__name__)

    def _track_request_exception(self, error: FetchError, url: str, method: str, body: Any) -> None:
        message = str(error)
        if self._error_log is None:
            logger.warning("Request failed: %s %s: %s", method, url, message)
        elif 'CORS' in message:
            self._error_log.log_cors_error(f"CORS error for {method} {url}", url, method, error)
        elif 'fetch' in message.lower() or 'network' in message.lower():
            self._track(ErrorKind.NETWORK_ERROR, f"Network error for {method} {url}", error,
                        {"method": method, "errorType": "network"})
        else:
            self._error_log.log_api_error(f"Request failed: {method} {url}", error,
                                          endpoint=url, method=method, request_data=body)

    def _track(self, kind, message, error, context) -> None:
        if self._error_log is not None:
            self._error_log.log_error(kind, message, error, context)
        else:
            logger.warning("%s: %s", message, error)

    # Convenience methods

    def get(self, url: str, **options) -> FetchResponse:
        options.setdefault('circuit_breaker_key', f"get_{slugify_url(url)}")
        return self.fetch(url, method='GET', **options)

    def delete(self, url: str, **options) -> FetchResponse:
        options.setdefault('circuit_breaker_key', f"delete_{slugify_url(url)}")
        return self.fetch(url, method='DELETE', **options)

    def post(self, url: str, data: Any = None, **options) -> FetchResponse:
        return self._send_json('POST', url, data, options)

    def put(self, url: str, data: Any = None, **options) -> FetchResponse:
        return self._send_json('PUT', url, data, options)

    def patch(self, url: str, data: Any = None, **options) -> FetchResponse:
        return self._send_json('PATCH', url, data, options)

    def _send_json(self, method: str, url: str, data: Any, options: Dict[str, Any]) -> FetchResponse:
        headers = {"Content-Type": "application/json", **dict(options.pop('headers', None) or {})}
        options.setdefault('circuit_breaker_key', f"{method.lower()}_{slugify_url(url)}")
        body = json.dumps(data) if data is not None else None
        return self.fetch(url, method=method, headers=headers, body=body, **options)
