"""Streams one model turn into the conversation history."""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Mapping, Sequence

import httpx
from openai.types.chat import ChatCompletionToolParam

from ...chat.message_model import Message, ReasoningPart, TextPart, ToolPart, ToolState, new_message_id
from ...core.cancellation import CancellationError, CancellationToken
from ..client import ChatCompletionsClient
from .emission import SmoothEmissionScheduler
from .events import ChatStatus
from .message_builder import build_wire_messages
from .sse import SSEDecoder, SSEPayload
from .writer import ConversationWriter

LOGGER = logging.getLogger(__name__)

EMPTY_RESPONSE_TEXT = "⚠️ API returned no response. The model did not generate any content."
_ERROR_BODY_PREVIEW = 500


@dataclass(slots=True)
class _PendingToolCall:
    call_id: str
    name: str
    index: int
    arguments: str = ""
    parsed: bool = False


@dataclass(slots=True)
class StreamOutcome:
    """Summary of one streamed model turn."""

    message_id: str | None = None
    status_code: int | None = None
    text_received: bool = False
    tool_call_ids: list[str] = field(default_factory=list)
    cancelled: bool = False

    @property
    def failed(self) -> bool:
        return self.status_code is not None and not 200 <= self.status_code < 300


class _StreamState:
    __slots__ = ("message_id", "message_created", "text_started", "reasoning_started", "calls", "outcome")

    def __init__(self) -> None:
        self.message_id = new_message_id("assistant")
        self.message_created = False
        self.text_started = False
        self.reasoning_started = False
        self.calls: dict[int, _PendingToolCall] = {}
        self.outcome = StreamOutcome()


class StreamingResponseConsumer:
    """Runs one request against the chat endpoint and folds the stream into history.

    Text deltas are handed to the emission scheduler; tool-call deltas are
    accumulated per stream index and surface as tool parts as soon as their
    arguments parse as JSON. Transport status errors and empty streams turn
    into visible assistant messages rather than exceptions.
    """

    def __init__(
        self,
        client: ChatCompletionsClient,
        writer: ConversationWriter,
        scheduler: SmoothEmissionScheduler,
    ) -> None:
        self._client = client
        self._writer = writer
        self._scheduler = scheduler

    async def consume(
        self,
        history: Sequence[Message],
        *,
        token: CancellationToken,
        tools: Sequence[ChatCompletionToolParam] | None = None,
    ) -> StreamOutcome:
        if token.is_cancelled:
            return StreamOutcome(cancelled=True)

        payload = self._client.build_payload(build_wire_messages(history), tools=tools)
        state = _StreamState()
        task = asyncio.get_running_loop().create_task(self._run(payload, state, token))
        unlink = token.link_task(task)
        try:
            await asyncio.wait({task})
        except asyncio.CancelledError:
            task.cancel()
            raise
        finally:
            unlink()

        if task.cancelled():
            LOGGER.info("Streaming request cancelled (message=%s)", state.message_id)
            state.outcome.cancelled = True
            return state.outcome
        error = task.exception()
        if isinstance(error, CancellationError):
            state.outcome.cancelled = True
            return state.outcome
        if error is not None:
            raise error
        return state.outcome

    async def _run(self, payload: Mapping[str, Any], state: _StreamState, token: CancellationToken) -> None:
        async with self._client.stream(payload) as response:
            state.outcome.status_code = response.status_code
            if not response.is_success:
                await self._report_http_error(response)
                return

            decoder = SSEDecoder()
            async for chunk in response.aiter_text():
                self._handle_payloads(decoder.feed(chunk), state, token)
                if decoder.done:
                    break
            else:
                self._handle_payloads(decoder.flush(), state, token)

        self._finalize_tool_calls(state)
        if not state.text_started and not state.calls:
            LOGGER.warning("Stream completed without any content")
            self._append_empty_response_notice(state)
        await self._scheduler.wait_drained()

    async def _report_http_error(self, response: httpx.Response) -> None:
        reason = response.reason_phrase or ""
        text = f"API Error: {response.status_code} {reason}".strip()
        try:
            body = (await response.aread()).decode("utf-8", errors="replace")
        except httpx.HTTPError:
            body = ""
        LOGGER.warning("Chat endpoint returned %s: %s", response.status_code, body[:_ERROR_BODY_PREVIEW])
        self._writer.append_message(
            Message(id=new_message_id("assistant-error"), role="assistant", parts=[TextPart(text)])
        )
        self._writer.set_status(ChatStatus.ERROR)

    def _handle_payloads(
        self, payloads: Sequence[SSEPayload], state: _StreamState, token: CancellationToken
    ) -> None:
        for item in payloads:
            if item.done:
                return
            try:
                chunk = json.loads(item.data)
            except json.JSONDecodeError as exc:
                LOGGER.warning("Skipping malformed SSE payload (%s): %.200s", exc, item.data)
                continue
            delta = _extract_delta(chunk)
            if delta is None:
                continue

            content = delta.get("content")
            if isinstance(content, str) and content:
                self._on_text(content, state, token)
            reasoning = delta.get("reasoning_content")
            if isinstance(reasoning, str) and reasoning:
                self._on_reasoning(reasoning, state)
            tool_calls = delta.get("tool_calls")
            if isinstance(tool_calls, list):
                for raw_call in tool_calls:
                    if isinstance(raw_call, Mapping):
                        self._on_tool_call_delta(raw_call, state)

    def _ensure_message(self, state: _StreamState, *parts: Any) -> None:
        if state.message_created:
            if parts:
                self._writer.update_message(state.message_id, lambda message: message.parts.extend(parts))
            return
        state.message_created = True
        state.outcome.message_id = state.message_id
        self._writer.append_message(Message(id=state.message_id, role="assistant", parts=list(parts)))
        self._writer.set_status(ChatStatus.STREAMING)

    def _on_text(self, content: str, state: _StreamState, token: CancellationToken) -> None:
        if not state.text_started:
            state.text_started = True
            state.outcome.text_received = True
            self._ensure_message(state, TextPart(""))
        self._scheduler.enqueue(state.message_id, content, token)

    def _on_reasoning(self, content: str, state: _StreamState) -> None:
        if not state.reasoning_started:
            state.reasoning_started = True
            self._ensure_message(state, ReasoningPart(content))
            return

        def _extend(message: Message) -> None:
            for part in reversed(message.parts):
                if isinstance(part, ReasoningPart):
                    part.text += content
                    return
            message.parts.append(ReasoningPart(content))

        self._writer.update_message(state.message_id, _extend)

    def _on_tool_call_delta(self, raw_call: Mapping[str, Any], state: _StreamState) -> None:
        function = raw_call.get("function") if isinstance(raw_call.get("function"), Mapping) else {}
        call_id = raw_call.get("id")
        name = function.get("name")
        arguments = function.get("arguments")
        index = raw_call.get("index")
        if not isinstance(index, int):
            index = len(state.calls) if call_id and name else max(state.calls, default=-1)

        pending = state.calls.get(index)
        if pending is None:
            if not call_id or not name:
                LOGGER.debug("Ignoring tool-call delta without id/name at index %s", index)
                return
            pending = _PendingToolCall(call_id=str(call_id), name=str(name), index=index)
            state.calls[index] = pending
            state.outcome.tool_call_ids.append(pending.call_id)
            LOGGER.debug("Model requested tool %s (id=%s)", pending.name, pending.call_id)
            self._ensure_message(state, ToolPart(tool_name=pending.name, tool_call_id=pending.call_id))

        if isinstance(arguments, str) and arguments:
            pending.arguments += arguments
        self._try_publish_arguments(pending, state)

    def _try_publish_arguments(self, pending: _PendingToolCall, state: _StreamState) -> None:
        if not pending.arguments.strip():
            return
        try:
            parsed = json.loads(pending.arguments)
        except json.JSONDecodeError:
            return
        pending.parsed = True
        self._publish_input(pending, state, parsed)

    def _publish_input(self, pending: _PendingToolCall, state: _StreamState, parsed: Any) -> None:
        def _upsert(message: Message) -> None:
            part = message.find_tool_part(pending.call_id)
            if part is None:
                part = ToolPart(tool_name=pending.name, tool_call_id=pending.call_id)
                message.parts.append(part)
            if part.is_terminal:
                return
            part.input = parsed
            part.transition(ToolState.INPUT_AVAILABLE)

        self._writer.update_message(state.message_id, _upsert)

    def _finalize_tool_calls(self, state: _StreamState) -> None:
        for pending in state.calls.values():
            if pending.parsed:
                continue
            if not pending.arguments.strip():
                self._publish_input(pending, state, {})
                continue
            LOGGER.warning(
                "Tool call %s (%s) ended with unparseable arguments: %.200s",
                pending.call_id,
                pending.name,
                pending.arguments,
            )
            error_text = f"Invalid tool arguments: {pending.arguments[:200]}"

            def _reject(message: Message, call_id: str = pending.call_id, error_text: str = error_text) -> None:
                part = message.find_tool_part(call_id)
                if part is not None and not part.is_terminal:
                    part.fail(error_text)

            self._writer.update_message(state.message_id, _reject)

    def _append_empty_response_notice(self, state: _StreamState) -> None:
        if state.message_created:
            self._writer.update_message(
                state.message_id, lambda message: message.parts.append(TextPart(EMPTY_RESPONSE_TEXT))
            )
            return
        state.outcome.message_id = state.message_id
        self._writer.append_message(
            Message(id=state.message_id, role="assistant", parts=[TextPart(EMPTY_RESPONSE_TEXT)])
        )


def _extract_delta(chunk: Any) -> Mapping[str, Any] | None:
    if not isinstance(chunk, Mapping):
        return None
    choices = chunk.get("choices")
    if not isinstance(choices, list) or not choices or not isinstance(choices[0], Mapping):
        return None
    delta = choices[0].get("delta")
    return delta if isinstance(delta, Mapping) else None


__all__ = ["EMPTY_RESPONSE_TEXT", "StreamOutcome", "StreamingResponseConsumer"]
