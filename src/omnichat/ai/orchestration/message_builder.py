"""Conversion of the conversation history into chat-completions wire messages."""

from __future__ import annotations

import json
import logging
from typing import Any, Dict, List, Sequence, cast

from openai.types.chat import ChatCompletionMessageParam

from ...chat.message_model import ContextPart, FilePart, Message, ToolPart, ToolState

LOGGER = logging.getLogger(__name__)

_CONTEXT_HEADER = "# IMPORTANT: User-Provided Context\n\n"
_CONTEXT_METADATA_LABELS: tuple[tuple[str, str], ...] = (
    ("tabId", "Tab ID"),
    ("url", "URL"),
    ("title", "Title"),
)
_DEFAULT_TOOL_ERROR = "Tool execution failed"


def tool_call_id_for(message: Message, part: ToolPart) -> str:
    """Return the wire id of ``part``, deriving one when the model did not supply it."""

    return part.tool_call_id or f"call_{message.id}_{part.tool_name}"


def build_wire_messages(history: Sequence[Message]) -> List[ChatCompletionMessageParam]:
    """Serialize ``history`` into an OpenAI-compatible ``messages`` array.

    The first assistant message whose tool calls are still in flight stops the
    scan: it and everything after it are left out of the payload.
    """

    wire: List[Dict[str, Any]] = []
    for message in history:
        if message.role == "assistant":
            tool_parts = message.tool_parts()
            if not message.tools_settled():
                LOGGER.debug(
                    "Excluding assistant message %s and later history; tools pending: %s",
                    message.id,
                    [(part.tool_name, part.state.value) for part in tool_parts if not part.is_terminal],
                )
                break
            wire.append(_assistant_entry(message, tool_parts))
            wire.extend(_tool_result_entry(message, part) for part in tool_parts)
            continue

        contexts = [part for part in message.parts if isinstance(part, ContextPart)]
        if contexts:
            wire.append({"role": "system", "content": format_context_block(contexts)})
        wire.append(_content_entry(message))
    return cast(List[ChatCompletionMessageParam], wire)


def format_context_block(contexts: Sequence[ContextPart]) -> str:
    blocks = [_CONTEXT_HEADER]
    for index, context in enumerate(contexts, start=1):
        lines = [
            f"## Context {index}: {context.label}",
            f"- **Type**: {context.context_type}",
        ]
        metadata = dict(context.metadata or {})
        for key, label in _CONTEXT_METADATA_LABELS:
            value = metadata.pop(key, None)
            if value not in (None, ""):
                lines.append(f"- **{label}**: {value}")
        for key, value in metadata.items():
            if value not in (None, ""):
                lines.append(f"- **{key}**: {value}")
        blocks.append("\n".join(lines) + "\n")
        blocks.append(f"\n**Content**:\n```\n{context.value}\n```\n\n---\n\n")
    return "".join(blocks)


def _assistant_entry(message: Message, tool_parts: Sequence[ToolPart]) -> Dict[str, Any]:
    entry: Dict[str, Any] = {"role": "assistant", "content": message.text}
    if tool_parts:
        entry["tool_calls"] = [
            {
                "id": tool_call_id_for(message, part),
                "type": "function",
                "function": {
                    "name": part.tool_name,
                    "arguments": json.dumps(part.input if part.input is not None else {}, ensure_ascii=False),
                },
            }
            for part in tool_parts
        ]
    return entry


def _tool_result_entry(message: Message, part: ToolPart) -> Dict[str, Any]:
    if part.state is ToolState.OUTPUT_AVAILABLE:
        payload: Dict[str, Any] = {"success": True, "data": part.output}
    else:
        payload = {"success": False, "error": part.error_text or _DEFAULT_TOOL_ERROR}
    return {
        "role": "tool",
        "tool_call_id": tool_call_id_for(message, part),
        "name": part.tool_name,
        "content": json.dumps(payload, ensure_ascii=False, default=str),
    }


def _content_entry(message: Message) -> Dict[str, Any]:
    text = message.text
    files = [part for part in message.parts if isinstance(part, FilePart)]
    if not files:
        return {"role": message.role, "content": text}

    content: List[Dict[str, Any]] = []
    if text:
        content.append({"type": "text", "text": text})
    for file in files:
        if file.is_image:
            content.append({"type": "image_url", "image_url": {"url": file.url}})
        else:
            content.append(
                {
                    "type": "text",
                    "text": f"[Attached file: {file.filename or 'file'} ({file.media_type})]",
                }
            )
    return {"role": message.role, "content": content}


__all__ = ["build_wire_messages", "format_context_block", "tool_call_id_for"]
