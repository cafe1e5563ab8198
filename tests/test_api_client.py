"""Unit tests for the API client."""
import json
from unittest.mock import MagicMock

import pytest

from devoverflow.services.api_client import APIClient, CHATGPT_CIRCUIT_BREAKER_KEY
from devoverflow.services.tracked_fetch import FetchResponse


@pytest.fixture(name="fetcher")
def fixture_fetcher():
    fetcher = MagicMock()
    fetcher.fetch.return_value = FetchResponse(success=True, data={"ok": True}, status=200)
    return fetcher


@pytest.fixture(name="client")
def fixture_client(fetcher):
    return APIClient(fetcher, base_url='http://localhost:5000', default_headers={"X-App": "devoverflow"})


def test_build_url():
    """Endpoints are joined to the base URL and params encoded."""
    client = APIClient(MagicMock(), base_url='http://localhost:5000')
    assert client.build_url('/api/questions') == 'http://localhost:5000/api/questions'
    assert client.build_url('/api/questions', {"page": 2, "q": "a b"}) == \
        'http://localhost:5000/api/questions?page=2&q=a+b'
    assert client.build_url('/api/questions?sort=new', {"page": 1}) == \
        'http://localhost:5000/api/questions?sort=new&page=1'


def test_get_uses_defaults(client, fetcher):
    """GET requests carry the default timeout, retries and breaker key."""
    client.get('/api/questions')

    _, kwargs = fetcher.fetch.call_args
    assert fetcher.fetch.call_args.args == ('http://localhost:5000/api/questions',)
    assert kwargs['method'] == 'GET'
    assert kwargs['body'] is None
    assert kwargs['timeout'] == 10000
    assert kwargs['retries'] == 3
    assert kwargs['headers'] == {"X-App": "devoverflow"}
    assert kwargs['circuit_breaker_key'] == 'api_get__api_questions'
    assert kwargs['circuit_breaker_options'] == {"failure_threshold": 5, "reset_timeout": 60000}
    assert kwargs['retry_options']['max_retries'] == 3


def test_post_encodes_json(client, fetcher):
    """Object bodies are JSON encoded with a content type."""
    client.post('/api/questions', {"title": "Why?"})

    _, kwargs = fetcher.fetch.call_args
    assert kwargs['method'] == 'POST'
    assert json.loads(kwargs['body']) == {"title": "Why?"}
    assert kwargs['headers']['Content-Type'] == 'application/json'
    assert kwargs['headers']['X-App'] == 'devoverflow'


def test_delete_ignores_body(client, fetcher):
    """Methods without a body never send one."""
    client.request('DELETE', '/api/questions/1', data={"ignored": True})
    _, kwargs = fetcher.fetch.call_args
    assert kwargs['body'] is None
    assert kwargs['circuit_breaker_key'] == 'api_delete__api_questions_1'


def test_per_call_overrides(client, fetcher):
    """Per-call options are merged over the client defaults."""
    client.put('/api/answers/1', {"content": "x"}, timeout=500, retries=0,
               retry_options={"base_delay": 10})
    _, kwargs = fetcher.fetch.call_args
    assert kwargs['timeout'] == 500
    assert kwargs['retries'] == 0
    assert kwargs['retry_options']['base_delay'] == 10
    assert kwargs['retry_options']['max_delay'] == 30000


def test_generate_answer(client, fetcher):
    """Answer generation uses its own breaker and a slower retry profile."""
    result = client.generate_answer("What is a closure?")

    assert result.success
    args, kwargs = fetcher.fetch.call_args
    assert args == ('http://localhost:5000/api/chatgpt',)
    assert json.loads(kwargs['body']) == {"question": "What is a closure?"}
    assert kwargs['circuit_breaker_key'] == CHATGPT_CIRCUIT_BREAKER_KEY
    assert kwargs['timeout'] == 30000
    assert kwargs['retry_options']['base_delay'] == 2000
    assert kwargs['retry_options']['max_delay'] == 15000
