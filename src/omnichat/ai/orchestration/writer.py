"""Interface through which workers mutate the orchestrator-owned history."""

from __future__ import annotations

from typing import Callable, Protocol

from ...chat.message_model import Message
from .events import ChatStatus

MessageMutation = Callable[[Message], None]


class ConversationWriter(Protocol):
    """Mutation entry points exposed by the orchestrator.

    The streaming consumer and the tool coordinator never touch the history
    list directly; each call here is applied by the owner, which then
    publishes ``messages_updated`` / ``status_changed``.
    """

    def append_message(self, message: Message) -> None:
        ...

    def update_message(self, message_id: str, mutate: MessageMutation) -> Message | None:
        """Apply ``mutate`` to the message with ``message_id``; ``None`` when it is gone."""
        ...

    def append_text(self, message_id: str, text: str) -> None:
        ...

    def set_status(self, status: ChatStatus) -> None:
        ...


__all__ = ["ConversationWriter", "MessageMutation"]
