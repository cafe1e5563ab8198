"""Completion provider client and answer drafting.

``CompletionProvider`` calls the upstream chat completion API and maps its
failures to error codes and HTTP statuses for the ``/api/chatgpt`` route.
``AnswerDraftService`` drafts answers with the same provider, in-process,
behind the ``chatgpt_api`` circuit breaker and bounded retries, and turns
failures into the banner payload shown next to the answer form.
"""
import logging
from typing import Any, Dict, Optional

import requests

from devoverflow.services.api_client import CHATGPT_CIRCUIT_BREAKER_KEY
from devoverflow.services.circuit_breaker import CircuitBreakerOptions, CircuitBreakerState
from devoverflow.services.error_handling import error_message, format_for_user
from devoverflow.services.retry import RetryOptions

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = "You are a helpful assistant."

DRAFT_OPERATION = "AI answer generation"
DRAFT_RETRY_OPTIONS = RetryOptions(max_retries=3, base_delay=2000, max_delay=15000)

TRANSIENT_CODES = ('TIMEOUT', 'CONNECTION_ERROR', 'NO_RESPONSE')


class CompletionError(Exception):
    """A completion request failed.

    Attributes:
        code: Error code returned to API callers (e.g. QUOTA_EXCEEDED)
        status: HTTP status the route should answer with
    """

    def __init__(self, message: str, code: str, status: int):
        super().__init__(message)
        self.code = code
        self.status = status

    @property
    def transient(self) -> bool:
        """Whether trying again could succeed (not for configuration or quota errors)."""
        return self.code in TRANSIENT_CODES or (self.code == 'OPENAI_ERROR' and self.status >= 500)

    def to_dict(self) -> Dict[str, Any]:
        return {"success": False, "error": str(self), "code": self.code}


def is_transient_completion_error(error: BaseException, attempt: int) -> bool:
    """Retry condition for drafts: only transient provider failures are retried."""
    _ = attempt
    return isinstance(error, CompletionError) and error.transient


class CompletionProvider:
    """Client for an OpenAI-compatible chat completion endpoint.

    Args:
        api_key: Bearer token; None means the provider is not configured
        api_url: Chat completions URL
        model: Model name
        max_tokens: Completion token limit
        temperature: Sampling temperature
        timeout: Request timeout in milliseconds
        session: Optional requests.Session
    """

    def __init__(
        self,
        api_key: Optional[str],
        api_url: str = 'https://api.openai.com/v1/chat/completions',
        model: str = 'gpt-3.5-turbo',
        max_tokens: int = 1000,
        temperature: float = 0.7,
        timeout: float = 60000,
        session: Optional[requests.Session] = None
    ):
        self.api_key = api_key
        self.api_url = api_url
        self.model = model
        self.max_tokens = max_tokens
        self.temperature = temperature
        self.timeout = timeout
        self._session = session or requests.Session()

    @property
    def configured(self) -> bool:
        return bool(self.api_key)

    @classmethod
    def from_config(cls, config, session: Optional[requests.Session] = None) -> 'CompletionProvider':
        return cls(
            api_key=config.get('OPENAI_API_KEY'),
            api_url=config.get('OPENAI_API_URL', 'https://api.openai.com/v1/chat/completions'),
            model=config.get('OPENAI_MODEL', 'gpt-3.5-turbo'),
            max_tokens=config.get('OPENAI_MAX_TOKENS', 1000),
            temperature=config.get('OPENAI_TEMPERATURE', 0.7),
            timeout=config.get('OPENAI_TIMEOUT_MS', 60000),
            session=session,
        )

    def complete(self, question: str) -> str:
        """Return the model's reply to ``question``.

        Raises:
            CompletionError: With the code and status the route should report
        """
        if not self.configured:
            logger.error("Completion API key is not configured")
            raise CompletionError("AI service is not configured", 'SERVICE_UNAVAILABLE', 503)

        try:
            response = self._session.post(
                self.api_url,
                headers={
                    "Content-Type": "application/json",
                    "Authorization": f"Bearer {self.api_key}",
                },
                json={
                    "model": self.model,
                    "messages": [
                        {"role": "system", "content": SYSTEM_PROMPT},
                        {"role": "user", "content": question},
                    ],
                    "max_tokens": self.max_tokens,
                    "temperature": self.temperature,
                },
                timeout=self.timeout / 1000.0,
            )
        except requests.Timeout as e:
            logger.error("Completion request timed out: %s", e)
            raise CompletionError("Request timeout", 'TIMEOUT', 408) from e
        except requests.ConnectionError as e:
            logger.error("Unable to reach completion API: %s", e)
            raise CompletionError("Unable to connect to AI service", 'CONNECTION_ERROR', 503) from e

        if not response.ok:
            raise self._upstream_error(response)

        try:
            payload = response.json()
        except ValueError as e:
            logger.error("Completion API returned malformed JSON: %s", e)
            raise CompletionError("No response from AI service", 'NO_RESPONSE', 502) from e

        choices = payload.get('choices') if isinstance(payload, dict) else None
        if not choices:
            logger.error("No response from completion API: %s", payload)
            raise CompletionError("No response from AI service", 'NO_RESPONSE', 502)

        return choices[0]['message']['content']

    @staticmethod
    def _upstream_error(response: requests.Response) -> CompletionError:
        message = "Unknown error"
        code = 'OPENAI_ERROR'
        try:
            error = (response.json() or {}).get('error') or {}
            message = error.get('message') or message
            if error.get('type') == 'insufficient_quota':
                code = 'QUOTA_EXCEEDED'
            elif error.get('type') == 'invalid_api_key':
                code = 'INVALID_API_KEY'
        except (ValueError, AttributeError) as e:
            logger.error("Failed to parse completion API error response: %s", e)

        logger.error("Completion API error (%s): %s", response.status_code, message)
        return CompletionError(
            f"AI service error: {message}",
            code,
            503 if response.status_code >= 500 else 400,
        )


class AnswerDraftService:
    """Drafts answers with the completion provider behind retries and a breaker.

    The provider runs in-process; every draft goes through the ``chatgpt_api``
    circuit breaker, so drafts and the breaker observability share one state.

    Args:
        provider: CompletionProvider answering the question
        retry_mechanism: RetryMechanism holding the completion circuit breaker
        retry_options: RetryOptions for one draft (transient errors only are retried)
        circuit_breaker_options: CircuitBreakerOptions used when the breaker is created
    """

    def __init__(self, provider, retry_mechanism, retry_options: Optional[RetryOptions] = None,
                 circuit_breaker_options: Optional[CircuitBreakerOptions] = None):
        self.provider = provider
        self.retry_mechanism = retry_mechanism
        retry_options = retry_options or DRAFT_RETRY_OPTIONS
        if retry_options.retry_condition is None:
            retry_options = retry_options.merged(retry_condition=is_transient_completion_error)
        self.retry_options = retry_options
        self.circuit_breaker_options = circuit_breaker_options

    def draft(self, question: str) -> Dict[str, Any]:
        """Request a draft answer for ``question``.

        Returns:
            ``{"success": True, "reply": ...}`` or a failure payload with the
            user-facing banner fields, ``status``, ``circuitOpen`` and ``canRetry``
        """
        try:
            reply = self.retry_mechanism.execute_with_circuit_breaker_then_retry(
                lambda: self.provider.complete(question),
                CHATGPT_CIRCUIT_BREAKER_KEY,
                self.retry_options,
                self.circuit_breaker_options,
                DRAFT_OPERATION,
            )
        except Exception as e:
            return self._failure(e)
        return {"success": True, "reply": reply}

    def _failure(self, error: Exception) -> Dict[str, Any]:
        cause = getattr(error, 'last_error', error)
        if isinstance(cause, CompletionError):
            # Classify the way a caller of /api/chatgpt would see the response
            classified = {"status": cause.status, "body": cause.to_dict()}
            status = cause.status
        else:
            classified, status = error, None

        retry_status = RetryStatus(self.retry_mechanism, CHATGPT_CIRCUIT_BREAKER_KEY)
        formatted = format_for_user(classified, DRAFT_OPERATION)
        return {
            "success": False,
            "error": formatted,
            "detail": error_message(error),
            "status": status,
            "circuitOpen": retry_status.is_circuit_breaker_open,
            "canRetry": formatted["canRetry"] and retry_status.can_retry,
        }


class RetryStatus:
    """Snapshot of one circuit breaker for retry affordances in the UI."""

    def __init__(self, retry_mechanism, circuit_breaker_key: str):
        self.retry_mechanism = retry_mechanism
        self.circuit_breaker_key = circuit_breaker_key
        self.circuit_breaker_stats = retry_mechanism.get_circuit_breaker_stats(circuit_breaker_key)

    @property
    def is_circuit_breaker_open(self) -> bool:
        return bool(self.circuit_breaker_stats) and \
            self.circuit_breaker_stats['state'] == CircuitBreakerState.OPEN.value

    @property
    def is_circuit_breaker_half_open(self) -> bool:
        return bool(self.circuit_breaker_stats) and \
            self.circuit_breaker_stats['state'] == CircuitBreakerState.HALF_OPEN.value

    @property
    def can_retry(self) -> bool:
        return not self.is_circuit_breaker_open

    def reset_circuit_breaker(self) -> None:
        self.retry_mechanism.reset_circuit_breaker(self.circuit_breaker_key)
        self.circuit_breaker_stats = self.retry_mechanism.get_circuit_breaker_stats(self.circuit_breaker_key)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "circuit_breaker_key": self.circuit_breaker_key,
            "circuit_breaker_stats": self.circuit_breaker_stats,
            "is_circuit_breaker_open": self.is_circuit_breaker_open,
            "is_circuit_breaker_half_open": self.is_circuit_breaker_half_open,
            "can_retry": self.can_retry,
        }
