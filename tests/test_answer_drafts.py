"""Tests for answer drafting and retry status snapshots."""
from unittest.mock import MagicMock, patch

import pytest
import requests

from devoverflow import create_app
from devoverflow.services.api_client import CHATGPT_CIRCUIT_BREAKER_KEY
from devoverflow.services.circuit_breaker import CircuitBreakerOptions
from devoverflow.services.completion import (
    AnswerDraftService,
    CompletionError,
    CompletionProvider,
    RetryStatus,
)
from devoverflow.services.error_logger import ErrorLogStore
from devoverflow.services.retry import RetryMechanism


def _open_breaker(retry_mechanism, key=CHATGPT_CIRCUIT_BREAKER_KEY):
    def fail():
        raise RuntimeError("HTTP 503")

    options = CircuitBreakerOptions(failure_threshold=1, reset_timeout=60000)
    with pytest.raises(RuntimeError):
        retry_mechanism.execute_with_circuit_breaker(fail, key, options)


def _upstream(status=200, payload=None):
    response = MagicMock()
    response.status_code = status
    response.ok = 200 <= status < 300
    response.json.return_value = payload
    return response


@pytest.fixture(name="sleeps")
def fixture_sleeps():
    return []


@pytest.fixture(name="store")
def fixture_store():
    return ErrorLogStore()


@pytest.fixture(name="retry_mechanism")
def fixture_retry_mechanism(store, sleeps):
    return RetryMechanism(error_log=store, sleep=sleeps.append, random=lambda: 1.0)


@pytest.fixture(name="provider")
def fixture_provider():
    return MagicMock()


@pytest.fixture(name="drafts")
def fixture_drafts(provider, retry_mechanism):
    return AnswerDraftService(provider, retry_mechanism)


class TestAnswerDraftService:
    """Test draft results and failure banners."""

    def test_success(self, drafts, provider, retry_mechanism):
        """The provider's reply is returned through the completion breaker."""
        provider.complete.return_value = "Use a generator."

        assert drafts.draft("How?") == {"success": True, "reply": "Use a generator."}
        provider.complete.assert_called_once_with("How?")
        assert retry_mechanism.get_circuit_breaker_stats(CHATGPT_CIRCUIT_BREAKER_KEY)["state"] == 'CLOSED'

    def test_transient_failure_is_retried(self, drafts, provider, sleeps):
        """Timeouts are retried with the draft backoff."""
        provider.complete.side_effect = [CompletionError("Request timeout", 'TIMEOUT', 408), "ok"]

        assert drafts.draft("How?") == {"success": True, "reply": "ok"}
        assert provider.complete.call_count == 2
        assert sleeps == [2.0]

    def test_server_failure_can_retry(self, drafts, provider, retry_mechanism):
        """Exhausted upstream failures count once and still offer a retry."""
        provider.complete.side_effect = CompletionError("AI service error: overloaded", 'OPENAI_ERROR', 503)

        result = drafts.draft("How?")

        assert provider.complete.call_count == 4
        assert not result["success"]
        assert result["error"]["title"] == "Service Temporarily Unavailable"
        assert result["error"]["message"].startswith("AI answer generation: ")
        assert result["detail"] == "AI service error: overloaded"
        assert result["status"] == 503
        assert result["circuitOpen"] is False
        assert result["canRetry"] is True
        assert retry_mechanism.get_circuit_breaker_stats(CHATGPT_CIRCUIT_BREAKER_KEY)["failure_count"] == 1

    def test_quota_failure_cannot_retry(self, drafts, provider, sleeps):
        """Quota errors are final and drive the banner."""
        provider.complete.side_effect = CompletionError(
            "AI service error: insufficient quota", 'QUOTA_EXCEEDED', 400)

        result = drafts.draft("How?")

        assert provider.complete.call_count == 1
        assert sleeps == []
        assert result["error"]["title"] == "Usage Limit Reached"
        assert result["status"] == 400
        assert result["canRetry"] is False

    def test_not_configured_is_not_retried(self, retry_mechanism, sleeps):
        """A provider without an API key fails once with its own message."""
        session = MagicMock()
        drafts = AnswerDraftService(CompletionProvider(None, session=session), retry_mechanism)

        result = drafts.draft("How?")

        assert sleeps == []
        session.post.assert_not_called()
        assert result["detail"] == "AI service is not configured"
        assert result["status"] == 503
        assert result["error"]["title"] == "Service Temporarily Unavailable"

    def test_open_circuit_blocks_retry(self, drafts, provider, retry_mechanism):
        """An open completion circuit rejects the draft without calling the provider."""
        _open_breaker(retry_mechanism)

        result = drafts.draft("How?")

        provider.complete.assert_not_called()
        assert result["error"]["title"] == "Service Protection Active"
        assert result["status"] is None
        assert result["circuitOpen"] is True
        assert result["canRetry"] is False


class TestRetryStatus:
    """Test circuit breaker snapshots."""

    def test_unknown_key(self, retry_mechanism):
        """Without a breaker everything reads as closed."""
        status = RetryStatus(retry_mechanism, 'nothing')
        assert status.circuit_breaker_stats is None
        assert not status.is_circuit_breaker_open
        assert not status.is_circuit_breaker_half_open
        assert status.can_retry

    def test_open_and_reset(self, retry_mechanism):
        """Reset closes the breaker and refreshes the snapshot."""
        _open_breaker(retry_mechanism)
        status = RetryStatus(retry_mechanism, CHATGPT_CIRCUIT_BREAKER_KEY)
        assert status.is_circuit_breaker_open
        assert not status.can_retry

        status.reset_circuit_breaker()

        assert status.circuit_breaker_stats["state"] == 'CLOSED'
        assert status.to_dict()["can_retry"] is True

    def test_half_open(self):
        """A breaker letting trial calls through reads as half open."""
        now = [0.0]
        retry_mechanism = RetryMechanism(clock=lambda: now[0])
        _open_breaker(retry_mechanism)
        now[0] = 120.0
        retry_mechanism.execute_with_circuit_breaker(lambda: 'ok', CHATGPT_CIRCUIT_BREAKER_KEY)

        status = RetryStatus(retry_mechanism, CHATGPT_CIRCUIT_BREAKER_KEY)
        assert status.is_circuit_breaker_half_open
        assert status.can_retry


class TestDraftRoute:
    """Test POST /api/answers/draft against the same provider as /api/chatgpt."""

    @pytest.fixture(name="app")
    def fixture_app(self):
        return create_app({'TESTING': True, 'LOG_FILE': '', 'OPENAI_API_KEY': 'sk-test'})

    def test_draft_route_success(self, app):
        """Drafts and the completion route answer from the same provider."""
        upstream = _upstream(payload={"choices": [{"message": {"content": "Answer"}}]})

        with patch.object(requests.Session, 'post', return_value=upstream) as post, \
                app.test_client() as client:
            direct = client.post('/api/chatgpt', json={"question": "Why?"})
            resp = client.post('/api/answers/draft', json={"question": "Why?"})

        assert direct.get_json() == {"success": True, "reply": "Answer"}
        assert resp.status_code == 200
        assert resp.get_json() == {"success": True, "reply": "Answer"}
        assert post.call_count == 2

    def test_draft_route_not_configured(self):
        """Without an API key the draft fails at once like /api/chatgpt does."""
        app = create_app({'TESTING': True, 'LOG_FILE': '', 'OPENAI_API_KEY': None})

        with patch.object(requests.Session, 'post') as post, app.test_client() as client:
            direct = client.post('/api/chatgpt', json={"question": "Why?"})
            resp = client.post('/api/answers/draft', json={"question": "Why?"})

        assert direct.status_code == 503
        assert direct.get_json()["error"] == "AI service is not configured"
        assert resp.status_code == 503
        data = resp.get_json()
        assert data["detail"] == "AI service is not configured"
        assert data["circuitOpen"] is False
        post.assert_not_called()
        assert not [r for r in app.config['ERROR_LOG'].get_recent_logs(100)
                    if r.message.startswith("Retrying")]

    def test_draft_route_quota(self, app):
        """Provider statuses pass through for failures the breaker allowed."""
        upstream = _upstream(429, {"error": {"message": "insufficient quota", "type": "insufficient_quota"}})

        with patch.object(requests.Session, 'post', return_value=upstream), app.test_client() as client:
            resp = client.post('/api/answers/draft', json={"question": "Why?"})

        assert resp.status_code == 400
        assert resp.get_json()["error"]["title"] == "Usage Limit Reached"

    def test_draft_route_open_circuit(self, app):
        """An open circuit answers 503 with circuitOpen set."""
        _open_breaker(app.config['RETRY_MECHANISM'])

        with app.test_client() as client:
            resp = client.post('/api/answers/draft', json={"question": "Why?"})

        assert resp.status_code == 503
        assert resp.get_json()["circuitOpen"] is True

    def test_draft_route_validation(self, app):
        """Invalid questions are rejected."""
        with app.test_client() as client:
            resp = client.post('/api/answers/draft', json={"question": ""})
        assert resp.status_code == 400
        assert resp.get_json()["code"] == 'VALIDATION_ERROR'
