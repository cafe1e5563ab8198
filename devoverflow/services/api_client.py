"""Typed entry point for calling DevOverflow's own JSON API.

Wraps :class:`TrackedFetcher` with a base URL, default headers, per-endpoint
circuit breaker keys and shared retry/breaker defaults.
"""
import json
from typing import Any, Dict, Mapping, Optional
from urllib.parse import urlencode, urljoin

from devoverflow.services.tracked_fetch import FetchResponse, TrackedFetcher, slugify_url

BODY_METHODS = ('POST', 'PUT', 'PATCH')

CHATGPT_ENDPOINT = '/api/chatgpt'
CHATGPT_CIRCUIT_BREAKER_KEY = 'chatgpt_api'


class APIClient:
    """HTTP client for the application API.

    Args:
        fetcher: TrackedFetcher performing the requests
        base_url: Prefix joined with every endpoint
        default_timeout: Timeout in milliseconds
        default_retries: Retries after the first attempt
        default_headers: Headers sent with every request
        use_advanced_retry: Use retry + circuit breaker
        circuit_breaker_options: Default CircuitBreakerOptions overrides
        retry_options: Default RetryOptions overrides
    """

    def __init__(
        self,
        fetcher: TrackedFetcher,
        base_url: str = '',
        default_timeout: float = 10000,
        default_retries: int = 3,
        default_headers: Optional[Mapping[str, str]] = None,
        use_advanced_retry: bool = True,
        circuit_breaker_options: Optional[Mapping[str, Any]] = None,
        retry_options: Optional[Mapping[str, Any]] = None
    ):
        self.fetcher = fetcher
        self.base_url = base_url
        self.default_timeout = default_timeout
        self.default_retries = default_retries
        self.default_headers = dict(default_headers or {})
        self.use_advanced_retry = use_advanced_retry
        self.circuit_breaker_options = dict(circuit_breaker_options or {
            "failure_threshold": 5,
            "reset_timeout": 60000,
        })
        self.retry_options = dict(retry_options or {
            "max_retries": 3,
            "base_delay": 1000,
            "max_delay": 30000,
            "backoff_multiplier": 2,
            "jitter": True,
        })

    def build_url(self, endpoint: str, params: Optional[Mapping[str, str]] = None) -> str:
        """Join ``endpoint`` onto the base URL and append query ``params``."""
        url = urljoin(self.base_url, endpoint) if self.base_url else endpoint
        if params:
            separator = '&' if '?' in url else '?'
            url = f"{url}{separator}{urlencode(params)}"
        return url

    @staticmethod
    def circuit_breaker_key(method: str, endpoint: str) -> str:
        return f"api_{method.lower()}_{slugify_url(endpoint)}"

    def request(
        self,
        method: str,
        endpoint: str,
        data: Any = None,
        params: Optional[Mapping[str, str]] = None,
        headers: Optional[Mapping[str, str]] = None,
        timeout: Optional[float] = None,
        retries: Optional[int] = None,
        circuit_breaker_key: Optional[str] = None,
        retry_options: Optional[Mapping[str, Any]] = None,
        circuit_breaker_options: Optional[Mapping[str, Any]] = None,
        **fetch_options
    ) -> FetchResponse:
        """Send a request to ``endpoint``; see :meth:`TrackedFetcher.fetch`."""
        method = method.upper()
        request_headers: Dict[str, str] = {**self.default_headers, **dict(headers or {})}
        body = None
        if data is not None and method in BODY_METHODS:
            if isinstance(data, (str, bytes)):
                body = data
            else:
                body = json.dumps(data)
                request_headers = {"Content-Type": "application/json", **request_headers}

        return self.fetcher.fetch(
            self.build_url(endpoint, params),
            method=method,
            headers=request_headers,
            body=body,
            timeout=self.default_timeout if timeout is None else timeout,
            retries=self.default_retries if retries is None else retries,
            use_advanced_retry=self.use_advanced_retry,
            circuit_breaker_key=circuit_breaker_key or self.circuit_breaker_key(method, endpoint),
            retry_options={**self.retry_options, **dict(retry_options or {})},
            circuit_breaker_options={**self.circuit_breaker_options, **dict(circuit_breaker_options or {})},
            **fetch_options
        )

    def get(self, endpoint: str, **options) -> FetchResponse:
        return self.request('GET', endpoint, **options)

    def post(self, endpoint: str, data: Any = None, **options) -> FetchResponse:
        return self.request('POST', endpoint, data=data, **options)

    def put(self, endpoint: str, data: Any = None, **options) -> FetchResponse:
        return self.request('PUT', endpoint, data=data, **options)

    def patch(self, endpoint: str, data: Any = None, **options) -> FetchResponse:
        return self.request('PATCH', endpoint, data=data, **options)

    def delete(self, endpoint: str, **options) -> FetchResponse:
        return self.request('DELETE', endpoint, **options)

    def generate_answer(self, question: str) -> FetchResponse:
        """Ask the completion route to draft an answer for ``question``."""
        return self.post(
            CHATGPT_ENDPOINT,
            data={"question": question},
            circuit_breaker_key=CHATGPT_CIRCUIT_BREAKER_KEY,
            timeout=30000,
            retry_options={
                "max_retries": 3,
                "base_delay": 2000,
                "max_delay": 15000,
            },
        )
