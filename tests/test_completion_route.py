"""Contract tests for the /api/chatgpt completion route."""
from unittest.mock import MagicMock

import pytest
import requests

from devoverflow import create_app
from devoverflow.services.completion import CompletionProvider
from devoverflow.services.error_handling import ErrorKind


def _upstream(status=200, payload=None, json_error=None):
    response = MagicMock()
    response.status_code = status
    response.ok = 200 <= status < 300
    if json_error is not None:
        response.json.side_effect = json_error
    else:
        response.json.return_value = payload
    return response


@pytest.fixture(name="app")
def fixture_app():
    app = create_app({'TESTING': True, 'LOG_FILE': '', 'OPENAI_API_KEY': 'sk-test'})
    return app


@pytest.fixture(name="session")
def fixture_session(app):
    session = MagicMock()
    app.config['COMPLETION_PROVIDER'] = CompletionProvider('sk-test', model='gpt-test', session=session)
    return session


@pytest.fixture(name="client")
def fixture_client(app, session):
    _ = session
    with app.test_client() as test_client:
        yield test_client


def test_success(client, session):
    """A completion reply is returned as {success, reply}."""
    session.post.return_value = _upstream(payload={"choices": [{"message": {"content": "Use a dict."}}]})

    resp = client.post('/api/chatgpt', json={"question": "How do I map keys?"})

    assert resp.status_code == 200
    assert resp.get_json() == {"success": True, "reply": "Use a dict."}
    args, kwargs = session.post.call_args
    assert args == ('https://api.openai.com/v1/chat/completions',)
    assert kwargs['headers']['Authorization'] == 'Bearer sk-test'
    assert kwargs['json']['model'] == 'gpt-test'
    assert kwargs['json']['messages'][-1] == {"role": "user", "content": "How do I map keys?"}
    assert kwargs['timeout'] == 60.0


def test_invalid_json(client, session):
    """A body that is not JSON is rejected before calling upstream."""
    resp = client.post('/api/chatgpt', data='not json', content_type='application/json')

    assert resp.status_code == 400
    assert resp.get_json() == {
        "success": False,
        "error": "Invalid JSON in request body",
        "code": "INVALID_JSON",
    }
    session.post.assert_not_called()


@pytest.mark.parametrize("payload", [
    {},
    {"question": ""},
    {"question": 42},
    {"question": "x" * 2001},
    ["question"],
])
def test_validation_error(client, session, payload):
    """Missing, empty, non-string or oversized questions are rejected."""
    resp = client.post('/api/chatgpt', json=payload)

    assert resp.status_code == 400
    data = resp.get_json()
    assert data["code"] == 'VALIDATION_ERROR'
    assert data["error"] == 'Invalid request data'
    session.post.assert_not_called()


def test_null_body_is_a_validation_error(client, session):
    """A literal JSON null parses and fails validation instead of parsing."""
    resp = client.post('/api/chatgpt', data='null', content_type='application/json')

    assert resp.status_code == 400
    data = resp.get_json()
    assert data["code"] == 'VALIDATION_ERROR'
    assert data["details"] == 'Expected JSON object'
    session.post.assert_not_called()


def test_max_length_question_accepted(client, session):
    """Exactly 2000 characters is allowed."""
    session.post.return_value = _upstream(payload={"choices": [{"message": {"content": "ok"}}]})
    resp = client.post('/api/chatgpt', json={"question": "x" * 2000})
    assert resp.status_code == 200


def test_not_configured(app):
    """Without an API key the route answers 503."""
    app.config['COMPLETION_PROVIDER'] = CompletionProvider(None, session=MagicMock())
    with app.test_client() as test_client:
        resp = test_client.post('/api/chatgpt', json={"question": "hi"})

    assert resp.status_code == 503
    assert resp.get_json() == {
        "success": False,
        "error": "AI service is not configured",
        "code": "SERVICE_UNAVAILABLE",
    }


@pytest.mark.parametrize("status, error, code, expected_status", [
    (429, {"message": "You exceeded your current quota", "type": "insufficient_quota"}, 'QUOTA_EXCEEDED', 400),
    (401, {"message": "Incorrect API key provided", "type": "invalid_api_key"}, 'INVALID_API_KEY', 400),
    (500, {"message": "The server had an error"}, 'OPENAI_ERROR', 503),
])
def test_upstream_errors(client, session, status, error, code, expected_status):
    """Upstream error types map to codes and statuses."""
    session.post.return_value = _upstream(status, {"error": error})

    resp = client.post('/api/chatgpt', json={"question": "hi"})

    assert resp.status_code == expected_status
    assert resp.get_json() == {
        "success": False,
        "error": f"AI service error: {error['message']}",
        "code": code,
    }


def test_upstream_error_without_body(client, session):
    """An unreadable error body still yields an upstream error."""
    session.post.return_value = _upstream(502, json_error=ValueError("no json"))

    resp = client.post('/api/chatgpt', json={"question": "hi"})

    assert resp.status_code == 503
    assert resp.get_json()["error"] == "AI service error: Unknown error"


@pytest.mark.parametrize("payload", [{"choices": []}, {"id": "x"}])
def test_no_choices(client, session, payload):
    """A 2xx reply without choices is a 502."""
    session.post.return_value = _upstream(payload=payload)

    resp = client.post('/api/chatgpt', json={"question": "hi"})

    assert resp.status_code == 502
    assert resp.get_json()["code"] == 'NO_RESPONSE'


def test_timeout(client, session):
    """Upstream timeouts answer 408."""
    session.post.side_effect = requests.Timeout("timed out")

    resp = client.post('/api/chatgpt', json={"question": "hi"})

    assert resp.status_code == 408
    assert resp.get_json() == {"success": False, "error": "Request timeout", "code": "TIMEOUT"}


def test_connection_error(client, session):
    """Unreachable upstream answers 503."""
    session.post.side_effect = requests.ConnectionError("refused")

    resp = client.post('/api/chatgpt', json={"question": "hi"})

    assert resp.status_code == 503
    assert resp.get_json()["code"] == 'CONNECTION_ERROR'


def test_unexpected_error(app, client, session):
    """Anything else is a logged 500."""
    session.post.side_effect = RuntimeError("kaboom")

    resp = client.post('/api/chatgpt', json={"question": "hi"})

    assert resp.status_code == 500
    assert resp.get_json()["code"] == 'INTERNAL_ERROR'
    records = app.config['ERROR_LOG'].get_logs_by_kind(ErrorKind.UNKNOWN_ERROR)
    assert records[-1].context == {"path": '/api/chatgpt', "method": 'POST'}


def test_get_not_allowed(client):
    """GET is answered with a JSON 405."""
    resp = client.get('/api/chatgpt')

    assert resp.status_code == 405
    assert resp.get_json() == {
        "success": False,
        "error": "Method not allowed",
        "code": "METHOD_NOT_ALLOWED",
    }


def test_preflight(client):
    """OPTIONS answers 200 with CORS headers."""
    resp = client.options('/api/chatgpt', headers={
        'Origin': 'http://localhost:3000',
        'Access-Control-Request-Method': 'POST',
        'Access-Control-Request-Headers': 'Content-Type',
    })

    assert resp.status_code == 200
    assert resp.headers['Access-Control-Allow-Origin'] == '*'
    assert 'POST' in resp.headers['Access-Control-Allow-Methods']
    assert resp.headers['Access-Control-Max-Age'] == '86400'
