"""Shared test helpers: SSE builders, a scripted endpoint and a fake tool caller.

Import from here instead of duplicating these in individual test files.
"""

from __future__ import annotations

import asyncio
import json
from typing import Any, AsyncIterator, Iterable, Mapping, Sequence

import httpx

from omnichat.ai.orchestration import ConversationOrchestrator, OrchestratorConfig
from omnichat.chat.message_model import Message

TEST_ENDPOINT = "https://llm.test/v1/chat/completions"
DONE = "data: [DONE]\n\n"


# -----------------------------------------------------------------------------
# SSE builders
# -----------------------------------------------------------------------------


def sse(payload: Mapping[str, Any]) -> str:
    return f"data: {json.dumps(payload)}\n\n"


def text_delta(text: str) -> str:
    return sse({"choices": [{"index": 0, "delta": {"content": text}}]})


def reasoning_delta(text: str) -> str:
    return sse({"choices": [{"index": 0, "delta": {"reasoning_content": text}}]})


def tool_call_delta(
    index: int,
    *,
    call_id: str | None = None,
    name: str | None = None,
    arguments: str | None = None,
) -> str:
    call: dict[str, Any] = {"index": index}
    if call_id is not None:
        call["id"] = call_id
        call["type"] = "function"
    function: dict[str, Any] = {}
    if name is not None:
        function["name"] = name
    if arguments is not None:
        function["arguments"] = arguments
    call["function"] = function
    return sse({"choices": [{"index": 0, "delta": {"tool_calls": [call]}}]})


# -----------------------------------------------------------------------------
# Scripted endpoint
# -----------------------------------------------------------------------------


class ScriptedResponse:
    """One canned HTTP response, optionally held back until ``gate`` is set.

    When ``fail_with`` is given the body raises it after the last chunk.
    """

    def __init__(
        self,
        chunks: Sequence[str] = (),
        *,
        status_code: int = 200,
        gate: asyncio.Event | None = None,
        fail_with: Exception | None = None,
    ) -> None:
        self.chunks = list(chunks)
        self.status_code = status_code
        self.gate = gate
        self.fail_with = fail_with

    def build(self) -> httpx.Response:
        if self.status_code >= 400:
            return httpx.Response(self.status_code, json={"error": {"message": "upstream failure"}})
        return httpx.Response(
            self.status_code,
            headers={"content-type": "text/event-stream"},
            content=self._body(),
        )

    async def _body(self) -> AsyncIterator[bytes]:
        if self.gate is not None:
            await self.gate.wait()
        for chunk in self.chunks:
            yield chunk.encode("utf-8")
        if self.fail_with is not None:
            raise self.fail_with


class ScriptedEndpoint:
    """``httpx.MockTransport`` handler replaying one scripted response per request."""

    def __init__(self, *responses: ScriptedResponse | Sequence[str]) -> None:
        self._responses = [
            item if isinstance(item, ScriptedResponse) else ScriptedResponse(item) for item in responses
        ]
        self.requests: list[httpx.Request] = []
        self.request_seen = asyncio.Event()

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        self.request_seen.set()
        if not self._responses:
            return ScriptedResponse([text_delta("unexpected extra call"), DONE]).build()
        return self._responses.pop(0).build()

    def payload(self, index: int) -> dict[str, Any]:
        return json.loads(self.requests[index].content)

    @property
    def call_count(self) -> int:
        return len(self.requests)


def make_orchestrator(
    endpoint: ScriptedEndpoint,
    *,
    tool_caller: Any = None,
    tools: Iterable[Any] = (),
    **config: Any,
) -> ConversationOrchestrator:
    options: dict[str, Any] = {
        "api_key": "test-key",
        "endpoint": TEST_ENDPOINT,
        "model": "test-model",
        "emission_interval": 0.0,
        "max_retries": 1,
    }
    options.update(config)
    http_client = httpx.AsyncClient(transport=httpx.MockTransport(endpoint))
    return ConversationOrchestrator(
        OrchestratorConfig(tools=tuple(tools), **options),
        tool_caller=tool_caller,
        http_client=http_client,
    )


# -----------------------------------------------------------------------------
# Tool-calling fakes
# -----------------------------------------------------------------------------


class FakeToolCaller:
    """In-memory tool capability recording every invocation."""

    def __init__(
        self,
        results: Mapping[str, Any] | None = None,
        *,
        action_tools: Iterable[str] = (),
        screenshot: str = "data:image/png;base64,AAAA",
        gate: asyncio.Event | None = None,
    ) -> None:
        self.results = dict(results or {})
        self.action_tools = set(action_tools)
        self.screenshot = screenshot
        self.gate = gate
        self.calls: list[tuple[str, Any, str]] = []
        self.screenshots_taken = 0
        self.started = asyncio.Event()

    def check_is_action_tool(self, name: str) -> bool:
        return name in self.action_tools

    async def capture_screenshot(self) -> str:
        self.screenshots_taken += 1
        return self.screenshot

    async def call_tool(self, name: str, arguments: Any, message_id: str) -> Any:
        self.calls.append((name, arguments, message_id))
        self.started.set()
        if self.gate is not None:
            await self.gate.wait()
        result = self.results.get(name, {"success": True, "data": {"tool": name}})
        if isinstance(result, BaseException):
            raise result
        return result


class RecordingWriter:
    """Minimal ConversationWriter used to drive workers without an orchestrator."""

    def __init__(self, messages: Iterable[Message] = ()) -> None:
        self.messages: list[Message] = list(messages)
        self.statuses: list[Any] = []
        self.updates = 0

    def append_message(self, message: Message) -> None:
        self.messages.append(message)

    def update_message(self, message_id: str, mutate: Any) -> Message | None:
        for message in self.messages:
            if message.id == message_id:
                mutate(message)
                self.updates += 1
                return message
        return None

    def append_text(self, message_id: str, text: str) -> None:
        def _append(message: Message) -> None:
            message.text_parts()[-1].text += text

        self.update_message(message_id, _append)

    def set_status(self, status: Any) -> None:
        self.statuses.append(status)


async def wait_for(event: asyncio.Event, timeout: float = 2.0) -> None:
    await asyncio.wait_for(event.wait(), timeout)
