import asyncio
import inspect

import httpx
import pytest
import yaml
from fastapi.testclient import TestClient

from relaystat.api import create_app
from relaystat.config import Settings, WarnThresholds

UPSTREAM_URL = "https://upstream.test/api/v1/chat/completions"

# Mock response payloads
MOCK_COMPLETION_RESPONSE = {
    "id": "chatcmpl-123",
    "object": "chat.completion",
    "created": 1677652288,
    "model": "gpt-4o-mini",
    "system_fingerprint": "fp_44709d6fcb",
    "choices": [
        {
            "index": 0,
            "message": {
                "role": "assistant",
                "content": "Hello there, how may I assist you today?",
            },
            "logprobs": None,
            "finish_reason": "stop",
        }
    ],
    "usage": {"prompt_tokens": 9, "completion_tokens": 12, "total_tokens": 21},
}

MOCK_STREAMING_CHUNKS = [
    b'data: {"id":"chatcmpl-123","object":"chat.completion.chunk","choices":[{"index":0,"delta":{"role":"assistant","content":""}}]}\n\n',
    b'data: {"id":"chatcmpl-123","object":"chat.completion.chunk","choices":[{"index":0,"delta":{"content":"Hello"}}]}\n\n',
    b'data: {"id":"chatcmpl-123","object":"chat.completion.chunk","choices":[{"index":0,"delta":{},"finish_reason":"stop"}]}\n\n',
    b"data: [DONE]\n\n",
]

CHAT_BODY = b'{"model": "gpt-4o-mini", "messages": [{"role": "user", "content": "Hello!"}]}'

MOCK_CONFIG = {
    "warn_tokens": {"manager": 2000, "coder": 6000, "tester": 4000},
}


class FakeUpstream:
    """Stands in for the remote API behind an httpx.MockTransport.

    Every request the proxy sends is kept in ``requests``. Assign ``handler``
    to change the answer; it may be sync or async and may raise.
    """

    def __init__(self):
        self.requests = []
        self.handler = None

    async def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.handler is None:
            result = httpx.Response(200, json=MOCK_COMPLETION_RESPONSE)
        else:
            result = self.handler(request)
            if inspect.isawaitable(result):
                result = await result
        if result.is_stream_consumed:
            # Built from bytes or json, so already read; hand it back unread
            # like a network transport would
            result = httpx.Response(
                result.status_code,
                headers=result.headers,
                stream=httpx.ByteStream(result.content),
            )
        return result

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self)


async def stream_chunks(chunks, delay=0.0):
    for chunk in chunks:
        if delay:
            await asyncio.sleep(delay)
        yield chunk


@pytest.fixture
def config_file(tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text(yaml.dump(MOCK_CONFIG))
    return path


@pytest.fixture
def settings(tmp_path, config_file, monkeypatch):
    """Settings pointing at a throwaway database and a fake upstream"""
    for name in ("WARN_TOKENS_MANAGER", "WARN_TOKENS_CODER", "WARN_TOKENS_TESTER"):
        monkeypatch.delenv(name, raising=False)
    return Settings(
        api_key="server-key",
        upstream_url=UPSTREAM_URL,
        stats_db_path=str(tmp_path / "stats.db"),
        upstream_timeout_ms=500,
        client_timeout_ms=500,
        config_path=str(config_file),
        warn_tokens=WarnThresholds(**MOCK_CONFIG["warn_tokens"]),
    )


@pytest.fixture
def upstream():
    return FakeUpstream()


@pytest.fixture
def app(settings, upstream):
    return create_app(settings, transport=upstream.transport())


@pytest.fixture
def store(app):
    return app.state.proxy.capability.store


@pytest.fixture
def test_client(app):
    """Create a test client around the proxy app"""
    with TestClient(app) as client:
        yield client


@pytest.fixture
def asgi_client(app):
    """Async client talking to the app in-process, for concurrent requests"""
    return httpx.AsyncClient(
        transport=httpx.ASGITransport(app=app), base_url="http://proxy.test"
    )
