"""Unit tests for error classification."""
import pytest

from devoverflow.services.circuit_breaker import CircuitBreakerOpenError
from devoverflow.services.error_handling import (
    ERROR_POLICIES,
    ErrorKind,
    classify,
    classify_kind,
    error_message,
    format_for_user,
    get_error_policy,
    retry_delay_for,
    should_retry_error,
)
from devoverflow.services.tracked_fetch import FetchError


class AbortError(Exception):
    """Stand-in for a cancelled request."""


class TestClassifyKind:
    """Test rule order and matching."""

    @pytest.mark.parametrize("message, kind", [
        ("Request timeout after 10000ms", ErrorKind.TIMEOUT),
        ("Failed to fetch", ErrorKind.NETWORK_ERROR),
        ("connect ECONNREFUSED 127.0.0.1:443", ErrorKind.NETWORK_ERROR),
        ("Blocked by CORS policy", ErrorKind.CORS_ERROR),
        ("You exceeded your current quota", ErrorKind.QUOTA_EXCEEDED),
        ("Rate limit reached for requests", ErrorKind.QUOTA_EXCEEDED),
        ("Incorrect API key provided", ErrorKind.INVALID_API_KEY),
        ("401 Unauthorized", ErrorKind.INVALID_API_KEY),
        ("HTTP 503: Service Unavailable", ErrorKind.SERVICE_UNAVAILABLE),
        ("Validation failed for field title", ErrorKind.VALIDATION_ERROR),
        ("Unexpected token in JSON at position 0", ErrorKind.INVALID_JSON),
        ("TinyMCE failed to initialize", ErrorKind.EDITOR_INIT_ERROR),
        ("HTTP 500: Internal Server Error", ErrorKind.INTERNAL_ERROR),
        ("HTTP 502: Bad Gateway", ErrorKind.INTERNAL_ERROR),
        ("something odd happened", ErrorKind.UNKNOWN_ERROR),
    ])
    def test_message_rules(self, message, kind):
        """Each message maps to the first matching kind."""
        assert classify_kind(Exception(message)) == kind

    def test_network_timeout_is_timeout(self):
        """Timeout wins over network when both substrings appear."""
        assert classify_kind(Exception("network timeout")) == ErrorKind.TIMEOUT

    def test_abort_error_name_is_timeout(self):
        """Cancelled requests are timeouts whatever their message."""
        assert classify_kind(AbortError("The operation was aborted")) == ErrorKind.TIMEOUT

    def test_error_name_attribute_is_used(self):
        """An explicit ``name`` attribute overrides the class name."""
        error = FetchError("Request aborted", name='AbortError')
        assert classify_kind(error) == ErrorKind.TIMEOUT

    def test_circuit_breaker_open(self):
        """Breaker rejections get their own kind."""
        assert classify_kind(CircuitBreakerOpenError("chatgpt_api")) == ErrorKind.CIRCUIT_BREAKER_OPEN

    def test_circuit_breaker_plain_message(self):
        """Breaker wording without other markers is CIRCUIT_BREAKER_OPEN."""
        assert classify_kind(Exception("Circuit breaker tripped")) == ErrorKind.CIRCUIT_BREAKER_OPEN

    def test_tinymce_quota_matches_quota_first(self):
        """The generic quota rule is evaluated before the editor quota rule."""
        assert classify_kind(Exception("TinyMCE quota exceeded")) == ErrorKind.QUOTA_EXCEEDED

    def test_case_insensitive(self):
        """Matching ignores case."""
        assert classify_kind(Exception("NETWORK DOWN")) == ErrorKind.NETWORK_ERROR

    def test_response_mapping(self):
        """A non-2xx response mapping is described and classified."""
        response = {"status": 401, "body": {"error": {"message": "Invalid API key"}}}
        assert error_message(response) == "HTTP 401: Unauthorized - Invalid API key"
        assert classify_kind(response) == ErrorKind.INVALID_API_KEY

    def test_response_mapping_text_body(self):
        """A text body is appended verbatim."""
        assert error_message({"status": 503, "body": "down"}) == "HTTP 503: Service Unavailable - down"


class TestPolicies:
    """Test the static policy table."""

    def test_every_kind_has_a_policy(self):
        """The policy table covers the whole enum."""
        assert set(ERROR_POLICIES) == set(ErrorKind)

    def test_retryable_flags(self):
        """Retryable flags match the table."""
        retryable = {k for k, p in ERROR_POLICIES.items() if p.retryable}
        assert ErrorKind.QUOTA_EXCEEDED not in retryable
        assert ErrorKind.INVALID_API_KEY not in retryable
        assert ErrorKind.CORS_ERROR not in retryable
        assert ErrorKind.VALIDATION_ERROR not in retryable
        assert ErrorKind.TIMEOUT in retryable
        assert ErrorKind.UNKNOWN_ERROR in retryable

    def test_classify_is_deterministic(self):
        """Same input, same policy."""
        error = Exception("HTTP 503: Service Unavailable")
        assert classify(error) is classify(error)

    def test_get_error_policy_custom_message(self):
        """A custom message replaces only the message."""
        policy = get_error_policy('TIMEOUT', "Took too long")
        assert policy.message == "Took too long"
        assert policy.title == "Request Timeout"
        assert policy.retryable

    def test_get_error_policy_unknown_kind(self):
        """Unknown kind names fall back to UNKNOWN_ERROR."""
        assert get_error_policy('NOPE').kind == ErrorKind.UNKNOWN_ERROR


class TestFormatting:
    """Test user-facing formatting and retry decisions."""

    def test_format_for_user_with_context(self):
        """Context is prefixed to the message."""
        formatted = format_for_user(Exception("insufficient quota"), "AI answer generation")
        assert formatted == {
            "title": "Usage Limit Reached",
            "message": "AI answer generation: You've reached the usage limit for this service.",
            "actionable": "Please wait before making more requests, or contact support to increase your limit.",
            "canRetry": False,
            "severity": 'medium',
        }

    def test_format_for_user_without_context(self):
        """Without context the policy message is used as is."""
        formatted = format_for_user(Exception("network down"))
        assert formatted["message"] == ERROR_POLICIES[ErrorKind.NETWORK_ERROR].message

    def test_should_retry_error(self):
        """Retry decisions follow the retryable flag."""
        assert should_retry_error(Exception("HTTP 503: Service Unavailable"))
        assert should_retry_error(Exception("Request timeout"))
        assert not should_retry_error(Exception("insufficient quota"))
        assert not should_retry_error(Exception("Invalid API key"))


class TestRetryDelay:
    """Test kind-specific backoff delays."""

    def test_quota_delays(self):
        """Quota backoff starts at 5s and caps at 60s."""
        error = Exception("rate limit")
        assert retry_delay_for(error, 0) == 5000
        assert retry_delay_for(error, 1) == 10000
        assert retry_delay_for(error, 4) == 60000
        assert retry_delay_for(error, 10) == 60000

    def test_network_delays(self):
        """Network backoff grows by 1.5 and caps at 10s."""
        error = Exception("network down")
        assert retry_delay_for(error, 0) == 1000
        assert retry_delay_for(error, 1) == 1500
        assert retry_delay_for(error, 2) == 2250
        assert retry_delay_for(error, 20) == 10000

    def test_default_delays(self):
        """Other errors double from 1s up to 30s."""
        error = Exception("HTTP 500: Internal Server Error")
        assert retry_delay_for(error, 0) == 1000
        assert retry_delay_for(error, 3) == 8000
        assert retry_delay_for(error, 10) == 30000
