"""Chat message and part data models."""

from __future__ import annotations

import itertools
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Literal, Mapping, Optional, Sequence, Union

ChatRole = Literal["user", "assistant", "tool", "system"]

_ID_COUNTER = itertools.count(1)


def new_message_id(suffix: str) -> str:
    """Return a unique, time-ordered message id such as ``1718000000000-3-user``."""

    return f"{int(time.time() * 1000)}-{next(_ID_COUNTER)}-{suffix}"


class ToolStateError(ValueError):
    """Raised when a tool part is moved through an illegal state transition."""


class ToolState(str, Enum):
    INPUT_STREAMING = "input-streaming"
    INPUT_AVAILABLE = "input-available"
    EXECUTING = "executing"
    OUTPUT_AVAILABLE = "output-available"
    OUTPUT_ERROR = "output-error"

    @property
    def is_terminal(self) -> bool:
        return self in (ToolState.OUTPUT_AVAILABLE, ToolState.OUTPUT_ERROR)


_TRANSITIONS: Mapping[ToolState, frozenset[ToolState]] = {
    ToolState.INPUT_STREAMING: frozenset(
        {ToolState.INPUT_STREAMING, ToolState.INPUT_AVAILABLE, ToolState.OUTPUT_ERROR}
    ),
    ToolState.INPUT_AVAILABLE: frozenset(
        {ToolState.INPUT_AVAILABLE, ToolState.EXECUTING, ToolState.OUTPUT_ERROR}
    ),
    ToolState.EXECUTING: frozenset({ToolState.OUTPUT_AVAILABLE, ToolState.OUTPUT_ERROR}),
    ToolState.OUTPUT_AVAILABLE: frozenset(),
    ToolState.OUTPUT_ERROR: frozenset(),
}


@dataclass(slots=True)
class TextPart:
    text: str = ""
    type: Literal["text"] = field(default="text", init=False)


@dataclass(slots=True)
class ReasoningPart:
    text: str = ""
    type: Literal["reasoning"] = field(default="reasoning", init=False)


@dataclass(slots=True)
class SourceUrlPart:
    url: str
    type: Literal["source-url"] = field(default="source-url", init=False)


@dataclass(slots=True)
class FilePart:
    """Attachment sent with a user turn; ``url`` may be a data URL or a hosted URL."""

    media_type: str
    url: str
    filename: Optional[str] = None
    type: Literal["file"] = field(default="file", init=False)

    @property
    def is_image(self) -> bool:
        return self.media_type.lower().startswith("image/")


@dataclass(slots=True)
class ContextPart:
    """User-attached context (a tab's content, a bookmark, ...) shown ahead of the ask."""

    context_type: str
    label: str
    value: str
    metadata: Optional[Dict[str, Any]] = None
    type: Literal["context"] = field(default="context", init=False)


@dataclass(slots=True)
class ToolPart:
    """A tool call requested by the model and, once resolved, its outcome."""

    tool_name: str
    tool_call_id: str
    input: Any = None
    state: ToolState = ToolState.INPUT_STREAMING
    output: Any = None
    error_text: Optional[str] = None
    screenshot: Optional[str] = None
    type: Literal["tool"] = field(default="tool", init=False)

    @property
    def is_terminal(self) -> bool:
        return self.state.is_terminal

    def transition(self, state: ToolState) -> None:
        if state not in _TRANSITIONS[self.state]:
            raise ToolStateError(
                f"Tool part {self.tool_call_id} ({self.tool_name}) cannot move from "
                f"{self.state.value} to {state.value}"
            )
        self.state = state

    def resolve(self, output: Any, *, screenshot: str | None = None) -> None:
        self.transition(ToolState.OUTPUT_AVAILABLE)
        self.output = output
        self.screenshot = screenshot

    def fail(self, error_text: str, *, screenshot: str | None = None) -> None:
        self.transition(ToolState.OUTPUT_ERROR)
        self.error_text = error_text
        if screenshot is not None:
            self.screenshot = screenshot


Part = Union[TextPart, ReasoningPart, SourceUrlPart, FilePart, ContextPart, ToolPart]


@dataclass(slots=True)
class Message:
    """One row of the conversation history."""

    id: str
    role: ChatRole
    parts: list[Part] = field(default_factory=list)

    @classmethod
    def create(cls, role: ChatRole, parts: Sequence[Part] | None = None, *, suffix: str | None = None) -> "Message":
        return cls(id=new_message_id(suffix or role), role=role, parts=list(parts or ()))

    @property
    def text(self) -> str:
        return "".join(part.text for part in self.parts if isinstance(part, TextPart))

    @property
    def has_text(self) -> bool:
        return any(isinstance(part, TextPart) and part.text.strip() for part in self.parts)

    def text_parts(self) -> list[TextPart]:
        return [part for part in self.parts if isinstance(part, TextPart)]

    def tool_parts(self) -> list[ToolPart]:
        return [part for part in self.parts if isinstance(part, ToolPart)]

    def find_tool_part(self, tool_call_id: str) -> ToolPart | None:
        for part in self.parts:
            if isinstance(part, ToolPart) and part.tool_call_id == tool_call_id:
                return part
        return None

    def tools_settled(self) -> bool:
        """True when every tool part has reached a terminal state (vacuously for none)."""

        return all(part.is_terminal for part in self.tool_parts())

    def to_dict(self) -> Dict[str, Any]:
        """Serialize the message for logging and persistence."""

        return {
            "id": self.id,
            "role": self.role,
            "parts": [_part_to_dict(part) for part in self.parts],
        }


def _part_to_dict(part: Part) -> Dict[str, Any]:
    payload: Dict[str, Any] = {"type": part.type}
    for name in part.__slots__:  # type: ignore[union-attr]
        if name == "type":
            continue
        value = getattr(part, name)
        if value is None:
            continue
        payload[name] = value.value if isinstance(value, ToolState) else value
    return payload


def build_user_message(
    text: str,
    files: Sequence[FilePart] | None = None,
    contexts: Sequence[ContextPart] | None = None,
) -> Message | None:
    """Assemble a user message: context parts first, then the text, then files.

    Returns ``None`` when there is nothing to send.
    """

    stripped = (text or "").strip()
    if not stripped and not files and not contexts:
        return None
    parts: list[Part] = []
    parts.extend(contexts or ())
    if stripped:
        parts.append(TextPart(stripped))
    parts.extend(files or ())
    return Message.create("user", parts)


__all__ = [
    "ChatRole",
    "ContextPart",
    "FilePart",
    "Message",
    "Part",
    "ReasoningPart",
    "SourceUrlPart",
    "TextPart",
    "ToolPart",
    "ToolState",
    "ToolStateError",
    "build_user_message",
    "new_message_id",
]
