"""Shared pytest fixtures."""

from __future__ import annotations

import pytest

from omnichat.chat.message_model import Message, TextPart, ToolPart, ToolState


@pytest.fixture
def user_message() -> Message:
    return Message.create("user", [TextPart("hello")])


@pytest.fixture
def resolved_tool_turn() -> Message:
    message = Message(id="m-assistant", role="assistant", parts=[TextPart("checking")])
    first = ToolPart(tool_name="get_current_tab", tool_call_id="call_a", input={}, state=ToolState.EXECUTING)
    first.resolve({"title": "Example"})
    second = ToolPart(tool_name="close_tab", tool_call_id="call_b", input={"tabId": 3}, state=ToolState.EXECUTING)
    second.fail("Tab is pinned")
    message.parts.extend([first, second])
    return message
