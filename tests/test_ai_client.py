"""Tests for the chat-completions transport client."""

from __future__ import annotations

import json
import logging
from types import SimpleNamespace
from typing import Any, cast

import httpx
import pytest
from openai import AsyncOpenAI

from omnichat.ai.client import ChatCompletionsClient, ClientSettings

ENDPOINT = "https://llm.test/v1/chat/completions"


class _FakeModels:
    def __init__(self, payload: list[SimpleNamespace]):
        self._payload = payload
        self.calls = 0

    async def list(self) -> SimpleNamespace:
        self.calls += 1
        return SimpleNamespace(data=self._payload)


def _settings(**overrides: Any) -> ClientSettings:
    options: dict[str, Any] = {
        "endpoint": ENDPOINT,
        "api_key": "secret",
        "model": "deepseek-chat",
        "retry_min_seconds": 0.0,
        "retry_max_seconds": 0.0,
    }
    options.update(overrides)
    return ClientSettings(**options)


def _client(handler: Any, **overrides: Any) -> ChatCompletionsClient:
    return ChatCompletionsClient(
        _settings(**overrides),
        http_client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
    )


def _ok(request: httpx.Request) -> httpx.Response:
    return httpx.Response(200, headers={"content-type": "text/event-stream"}, text="data: [DONE]\n\n")


# -----------------------------------------------------------------------------
# Payload and headers
# -----------------------------------------------------------------------------


def test_base_url_strips_chat_path() -> None:
    assert _settings().base_url == "https://llm.test/v1"
    assert _settings(endpoint="https://llm.test/v1/").base_url == "https://llm.test/v1"


def test_build_payload_without_tools() -> None:
    client = ChatCompletionsClient(_settings())
    payload = client.build_payload([{"role": "user", "content": "hi"}])

    assert payload == {"model": "deepseek-chat", "stream": True, "messages": [{"role": "user", "content": "hi"}]}


def test_build_payload_with_tools_and_model_override() -> None:
    client = ChatCompletionsClient(_settings())
    tools = [{"type": "function", "function": {"name": "get_current_tab", "parameters": {}}}]

    payload = client.build_payload([], tools=cast(Any, tools), model="other")

    assert payload["model"] == "other"
    assert payload["tools"] == tools
    assert payload["tool_choice"] == "auto"


def test_build_headers_keep_required_headers_over_defaults() -> None:
    client = ChatCompletionsClient(
        _settings(default_headers={"X-Trace": "1", "Authorization": "Bearer wrong"})
    )

    headers = client.build_headers()

    assert headers["X-Trace"] == "1"
    assert headers["Authorization"] == "Bearer secret"
    assert headers["Accept"] == "text/event-stream"
    assert headers["Content-Type"] == "application/json"


# -----------------------------------------------------------------------------
# Streaming requests
# -----------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_stream_posts_payload_and_yields_response() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return _ok(request)

    client = _client(handler, default_headers={"X-Trace": "abc"})
    payload = client.build_payload([{"role": "user", "content": "hi"}])

    async with client.stream(payload) as response:
        body = await response.aread()

    assert response.status_code == 200
    assert body == b"data: [DONE]\n\n"
    (request,) = seen
    assert request.method == "POST"
    assert str(request.url) == ENDPOINT
    assert request.headers["authorization"] == "Bearer secret"
    assert request.headers["x-trace"] == "abc"
    assert json.loads(request.content) == payload


@pytest.mark.asyncio
async def test_status_errors_are_returned_not_raised() -> None:
    client = _client(lambda request: httpx.Response(429, json={"error": "slow down"}))

    async with client.stream(client.build_payload([])) as response:
        assert response.status_code == 429


@pytest.mark.asyncio
async def test_connection_errors_are_retried() -> None:
    attempts = 0

    def handler(request: httpx.Request) -> httpx.Response:
        nonlocal attempts
        attempts += 1
        if attempts < 3:
            raise httpx.ConnectError("connection refused", request=request)
        return _ok(request)

    client = _client(handler, max_retries=3)

    async with client.stream(client.build_payload([])) as response:
        assert response.status_code == 200
    assert attempts == 3


@pytest.mark.asyncio
async def test_connection_error_is_raised_after_last_attempt() -> None:
    attempts = 0

    def handler(request: httpx.Request) -> httpx.Response:
        nonlocal attempts
        attempts += 1
        raise httpx.ConnectError("connection refused", request=request)

    client = _client(handler, max_retries=2)

    with pytest.raises(httpx.ConnectError):
        async with client.stream(client.build_payload([])):
            pass
    assert attempts == 2


@pytest.mark.asyncio
async def test_debug_logging_dumps_payload(caplog: pytest.LogCaptureFixture) -> None:
    caplog.set_level(logging.DEBUG, logger="omnichat.ai.client")
    client = _client(_ok, debug_logging=True)

    async with client.stream(client.build_payload([{"role": "user", "content": "marker-text"}])):
        pass

    assert "Chat payload" in caplog.text
    assert "marker-text" in caplog.text


@pytest.mark.asyncio
async def test_update_settings_applies_to_next_request() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return _ok(request)

    client = _client(handler)
    client.update_settings(api_key="rotated", model=None)

    async with client.stream(client.build_payload([])):
        pass

    assert seen[0].headers["authorization"] == "Bearer rotated"
    assert client.settings.model == "deepseek-chat"


# -----------------------------------------------------------------------------
# Model listing
# -----------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_list_models_is_cached_until_connection_changes() -> None:
    models = _FakeModels([SimpleNamespace(id="deepseek-chat"), SimpleNamespace(id="deepseek-reasoner")])
    fake_openai = cast(AsyncOpenAI, SimpleNamespace(models=models))
    client = ChatCompletionsClient(_settings(), openai_client=fake_openai)

    assert await client.list_models() == ["deepseek-chat", "deepseek-reasoner"]
    assert await client.list_models() == ["deepseek-chat", "deepseek-reasoner"]
    assert models.calls == 1

    await client.list_models(force_refresh=True)
    assert models.calls == 2

    client.update_settings(model="deepseek-reasoner")
    await client.list_models()
    assert models.calls == 2

    client.update_settings(api_key="another")
    await client.list_models()
    assert models.calls == 3


@pytest.mark.asyncio
async def test_aclose_leaves_injected_clients_open() -> None:
    http_client = httpx.AsyncClient(transport=httpx.MockTransport(_ok))
    client = ChatCompletionsClient(_settings(), http_client=http_client)

    await client.aclose()

    assert not http_client.is_closed
    await http_client.aclose()
