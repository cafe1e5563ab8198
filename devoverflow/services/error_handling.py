"""Error classification for completion and HTTP failures.

Maps a raw failure (an exception, or a ``{"status": ..., "body": ...}`` mapping
describing a non-2xx response) to an :class:`ErrorKind` and a static
:class:`ErrorPolicy` carrying the user-facing wording, the retryable flag and
a severity tier.

Classification is a prioritized table of ``(predicate, kind)`` rules; the
first matching rule wins. Messages frequently contain several overlapping
substrings ("network timeout"), so the order of ``CLASSIFICATION_RULES`` is
part of the contract.
"""
from dataclasses import dataclass
from enum import Enum
from http import HTTPStatus
from types import MappingProxyType
from typing import Any, Callable, Dict, Mapping, NamedTuple, Optional, Tuple


class ErrorKind(str, Enum):
    """Closed set of failure categories."""
    NETWORK_ERROR = 'NETWORK_ERROR'
    TIMEOUT = 'TIMEOUT'
    CONNECTION_ERROR = 'CONNECTION_ERROR'
    CORS_ERROR = 'CORS_ERROR'
    API_ERROR = 'API_ERROR'
    SERVICE_UNAVAILABLE = 'SERVICE_UNAVAILABLE'
    QUOTA_EXCEEDED = 'QUOTA_EXCEEDED'
    INVALID_API_KEY = 'INVALID_API_KEY'
    VALIDATION_ERROR = 'VALIDATION_ERROR'
    INVALID_JSON = 'INVALID_JSON'
    CIRCUIT_BREAKER_OPEN = 'CIRCUIT_BREAKER_OPEN'
    RETRY_EXHAUSTED = 'RETRY_EXHAUSTED'
    EDITOR_QUOTA_EXCEEDED = 'EDITOR_QUOTA_EXCEEDED'
    EDITOR_INIT_ERROR = 'EDITOR_INIT_ERROR'
    UNKNOWN_ERROR = 'UNKNOWN_ERROR'
    INTERNAL_ERROR = 'INTERNAL_ERROR'


@dataclass(frozen=True)
class ErrorPolicy:
    """Static handling policy for one error kind.

    Attributes:
        kind: The error kind this policy belongs to
        title: Short user-facing headline
        message: User-facing explanation
        actionable: Optional hint telling the user what to do next
        retryable: Whether an automatic or manual retry makes sense
        severity: One of low, medium, high, critical
    """
    kind: ErrorKind
    title: str
    message: str
    actionable: Optional[str]
    retryable: bool
    severity: str


def _policy(kind, title, message, actionable, retryable, severity):
    return kind, ErrorPolicy(kind, title, message, actionable, retryable, severity)


ERROR_POLICIES: Mapping[ErrorKind, ErrorPolicy] = MappingProxyType(dict([
    # Network and connection errors
    _policy(ErrorKind.NETWORK_ERROR, "Connection Problem",
            "Unable to connect to the server. Please check your internet connection.",
            "Try refreshing the page or check your network connection.", True, 'medium'),
    _policy(ErrorKind.TIMEOUT, "Request Timeout",
            "The request took too long to complete.",
            "The server might be busy. Please try again in a moment.", True, 'medium'),
    _policy(ErrorKind.CONNECTION_ERROR, "Connection Failed",
            "Failed to establish connection with the server.",
            "Please check your internet connection and try again.", True, 'medium'),
    _policy(ErrorKind.CORS_ERROR, "Access Blocked",
            "The request was blocked due to security restrictions.",
            "This appears to be a configuration issue. Please contact support if the problem persists.",
            False, 'high'),
    # API errors
    _policy(ErrorKind.API_ERROR, "Service Error",
            "The service encountered an unexpected error.",
            "Please try again. If the problem continues, contact support.", True, 'medium'),
    _policy(ErrorKind.SERVICE_UNAVAILABLE, "Service Temporarily Unavailable",
            "The service is currently unavailable.",
            "We're working to restore service. Please try again in a few minutes.", True, 'high'),
    _policy(ErrorKind.QUOTA_EXCEEDED, "Usage Limit Reached",
            "You've reached the usage limit for this service.",
            "Please wait before making more requests, or contact support to increase your limit.",
            False, 'medium'),
    _policy(ErrorKind.INVALID_API_KEY, "Authentication Error",
            "The service authentication failed.",
            "This appears to be a configuration issue. Please contact support.", False, 'critical'),
    # Input errors
    _policy(ErrorKind.VALIDATION_ERROR, "Invalid Input",
            "The provided information is not valid.",
            "Please check your input and try again.", False, 'low'),
    _policy(ErrorKind.INVALID_JSON, "Data Format Error",
            "The data format is not valid.",
            "Please refresh the page and try again.", False, 'medium'),
    # Reliability layer
    _policy(ErrorKind.CIRCUIT_BREAKER_OPEN, "Service Protection Active",
            "The service is temporarily protected due to repeated failures.",
            "Please wait a moment before trying again. The service will automatically recover.",
            True, 'high'),
    _policy(ErrorKind.RETRY_EXHAUSTED, "Multiple Attempts Failed",
            "We tried multiple times but couldn't complete your request.",
            "Please try again later or contact support if the problem persists.", True, 'high'),
    # Rich text editor
    _policy(ErrorKind.EDITOR_QUOTA_EXCEEDED, "Editor Storage Full",
            "The editor has reached its storage limit.",
            "Try clearing your browser data or use the simplified editor mode.", False, 'medium'),
    _policy(ErrorKind.EDITOR_INIT_ERROR, "Editor Loading Failed",
            "The rich text editor failed to load properly.",
            "You can still use the basic text editor. Try refreshing to restore the full editor.",
            True, 'medium'),
    # Fallbacks
    _policy(ErrorKind.UNKNOWN_ERROR, "Unexpected Error",
            "Something unexpected happened.",
            "Please try again. If the problem continues, contact support.", True, 'medium'),
    _policy(ErrorKind.INTERNAL_ERROR, "Internal Error",
            "An internal error occurred while processing your request.",
            "Please try again later. If the problem persists, contact support.", True, 'high'),
]))

# Exception names treated like a cancelled (timed out) request
TIMEOUT_ERROR_NAMES = frozenset({
    'aborterror', 'timeout', 'timeouterror', 'readtimeout', 'connecttimeout',
})


def error_name(error: Any) -> str:
    """Return the name used for classification (``error.name`` or the class name)."""
    name = getattr(error, 'name', None)
    if isinstance(name, str) and name:
        return name
    return type(error).__name__


def error_message(error: Any) -> str:
    """Return a human readable message for an exception or HTTP failure mapping."""
    if isinstance(error, Mapping):
        return _describe_response(error)
    message = getattr(error, 'message', None)
    if isinstance(message, str) and message:
        return message
    return str(error)


def _describe_response(response: Mapping) -> str:
    status = response.get('status')
    text = f"HTTP {status}"
    try:
        text = f"{text}: {HTTPStatus(int(status)).phrase}"
    except (TypeError, ValueError):
        pass
    body = response.get('body')
    detail = None
    if isinstance(body, Mapping):
        detail = body.get('error') or body.get('message')
        if isinstance(detail, Mapping):
            detail = detail.get('message')
    elif isinstance(body, str) and body:
        detail = body
    if detail:
        text = f"{text} - {detail}"
    return text


def _describe(error: Any) -> Tuple[str, str]:
    if isinstance(error, Mapping):
        return '', error_message(error).lower()
    return error_name(error).lower(), error_message(error).lower()


def _contains(*needles: str) -> Callable[[str, str], bool]:
    def predicate(_name: str, message: str) -> bool:
        return any(needle in message for needle in needles)
    return predicate


class ClassificationRule(NamedTuple):
    """One row of the classification table."""
    kind: ErrorKind
    predicate: Callable[[str, str], bool]


CLASSIFICATION_RULES: Tuple[ClassificationRule, ...] = (
    ClassificationRule(ErrorKind.TIMEOUT,
                       lambda name, message: name in TIMEOUT_ERROR_NAMES or 'timeout' in message),
    ClassificationRule(ErrorKind.NETWORK_ERROR,
                       _contains('network', 'fetch', 'econnrefused', 'enotfound')),
    ClassificationRule(ErrorKind.CORS_ERROR, _contains('cors')),
    ClassificationRule(ErrorKind.QUOTA_EXCEEDED, _contains('quota', 'rate limit')),
    ClassificationRule(ErrorKind.INVALID_API_KEY, _contains('api key', 'unauthorized')),
    ClassificationRule(ErrorKind.SERVICE_UNAVAILABLE, _contains('service unavailable', '503')),
    ClassificationRule(ErrorKind.VALIDATION_ERROR, _contains('validation', 'invalid')),
    ClassificationRule(ErrorKind.INVALID_JSON, _contains('json')),
    ClassificationRule(ErrorKind.CIRCUIT_BREAKER_OPEN, _contains('circuit breaker')),
    ClassificationRule(ErrorKind.EDITOR_QUOTA_EXCEEDED,
                       lambda name, message: 'tinymce' in message and 'quota' in message),
    ClassificationRule(ErrorKind.EDITOR_INIT_ERROR, _contains('tinymce')),
    ClassificationRule(ErrorKind.INTERNAL_ERROR, _contains('500', '502', '504')),
)


def classify_kind(error: Any) -> ErrorKind:
    """Return the first matching :class:`ErrorKind` for ``error``."""
    name, message = _describe(error)
    for rule in CLASSIFICATION_RULES:
        if rule.predicate(name, message):
            return rule.kind
    return ErrorKind.UNKNOWN_ERROR


def classify(error: Any) -> ErrorPolicy:
    """Classify ``error`` and return its static policy.

    Args:
        error: An exception, or a mapping with ``status`` and ``body`` keys

    Returns:
        The ErrorPolicy of the first matching rule (UNKNOWN_ERROR otherwise)
    """
    return ERROR_POLICIES[classify_kind(error)]


def get_error_policy(kind, custom_message: Optional[str] = None) -> ErrorPolicy:
    """Look up a policy by kind name, optionally replacing its message."""
    try:
        policy = ERROR_POLICIES[ErrorKind(kind)]
    except ValueError:
        policy = ERROR_POLICIES[ErrorKind.UNKNOWN_ERROR]
    if custom_message:
        return ErrorPolicy(policy.kind, policy.title, custom_message,
                           policy.actionable, policy.retryable, policy.severity)
    return policy


def format_for_user(error: Any, context: Optional[str] = None) -> Dict[str, Any]:
    """Build the banner payload shown to users for ``error``.

    Returns:
        Dict with title, message, actionable, canRetry and severity
    """
    policy = classify(error)
    return {
        "title": policy.title,
        "message": f"{context}: {policy.message}" if context else policy.message,
        "actionable": policy.actionable,
        "canRetry": policy.retryable,
        "severity": policy.severity,
    }


def should_retry_error(error: Any) -> bool:
    """Retry predicate driven by the classification's retryable flag."""
    return classify(error).retryable


def retry_delay_for(error: Any, attempt: int) -> float:
    """Return the backoff delay in milliseconds for ``attempt`` (0-indexed)."""
    message = error_message(error).lower()
    if 'quota' in message or 'rate limit' in message:
        return min(5000 * 2 ** attempt, 60000)
    if 'network' in message or 'timeout' in message:
        return min(1000 * 1.5 ** attempt, 10000)
    return min(1000 * 2 ** attempt, 30000)
