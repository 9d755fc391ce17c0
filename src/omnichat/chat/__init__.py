"""Conversation data model."""

from .message_model import (
    ContextPart,
    FilePart,
    Message,
    Part,
    ReasoningPart,
    SourceUrlPart,
    TextPart,
    ToolPart,
    ToolState,
    ToolStateError,
    build_user_message,
)

__all__ = [
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
]
