"""Publish/subscribe plumbing between the orchestrator and its observers.

Observers (a UI, a CLI printer, tests) subscribe to one of the
:class:`ChatEventType` channels and receive the payload the orchestrator
publishes after each state change. There is no other coupling between the
engine and whatever renders it.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from enum import Enum
from typing import Any, Callable, DefaultDict
from weakref import WeakMethod

logger = logging.getLogger(__name__)

Handler = Callable[[Any], None]


class ChatStatus(str, Enum):
    IDLE = "idle"
    SUBMITTED = "submitted"
    STREAMING = "streaming"
    ERROR = "error"


class ChatEventType(str, Enum):
    MESSAGES_UPDATED = "messages_updated"
    STATUS_CHANGED = "status_changed"
    QUEUE_CHANGED = "queue_changed"


# Published once per rendered character while streaming; not worth a log line each.
_QUIET_EVENT_TYPES: frozenset[ChatEventType] = frozenset({ChatEventType.MESSAGES_UPDATED})


class ChatEventBus:
    """Channel-keyed publish-subscribe bus.

    Handlers are invoked synchronously in registration order. A handler that
    raises is logged and the remaining handlers still run. Bound methods are
    held through :class:`weakref.WeakMethod` so a discarded observer does not
    stay alive because of its subscription; plain functions and lambdas are
    held strongly.

    Thread Safety:
        Not thread-safe. Use it from the event loop thread only.
    """

    __slots__ = ("_handlers",)

    def __init__(self) -> None:
        self._handlers: DefaultDict[ChatEventType, list[_HandlerRef]] = defaultdict(list)

    def subscribe(self, event: ChatEventType | str, handler: Handler) -> Callable[[], None]:
        """Register ``handler`` on ``event`` and return a callable that removes it."""

        event_type = ChatEventType(event)
        self._handlers[event_type].append(_HandlerRef.create(handler))
        logger.debug("Subscribed handler %s to %s", _handler_name(handler), event_type.value)

        def _unsubscribe() -> None:
            self.unsubscribe(event_type, handler)

        return _unsubscribe

    def unsubscribe(self, event: ChatEventType | str, handler: Handler) -> None:
        """Remove the first registration of ``handler``; unknown handlers are ignored."""

        handlers = self._handlers.get(ChatEventType(event))
        if not handlers:
            return
        for index, handler_ref in enumerate(handlers):
            if handler_ref.matches(handler):
                handlers.pop(index)
                return

    def publish(self, event: ChatEventType, payload: Any) -> None:
        handlers = self._handlers.get(event)
        if not handlers:
            return
        if event not in _QUIET_EVENT_TYPES:
            logger.debug("Publishing %s to %d handler(s)", event.value, len(handlers))

        dead: list[int] = []
        for index, handler_ref in enumerate(list(handlers)):
            handler = handler_ref.resolve()
            if handler is None:
                dead.append(index)
                continue
            try:
                handler(payload)
            except Exception:
                logger.exception(
                    "Handler %s raised while handling %s", _handler_name(handler), event.value
                )

        for index in reversed(dead):
            if index < len(handlers) and handlers[index].resolve() is None:
                handlers.pop(index)

    def clear(self) -> None:
        self._handlers.clear()

    def handler_count(self, event: ChatEventType | str | None = None) -> int:
        if event is not None:
            return len(self._handlers.get(ChatEventType(event), []))
        return sum(len(handlers) for handlers in self._handlers.values())


class _HandlerRef:
    __slots__ = ("_ref", "_is_weak")

    def __init__(self, handler_ref: Any, is_weak: bool) -> None:
        self._ref = handler_ref
        self._is_weak = is_weak

    @classmethod
    def create(cls, handler: Handler) -> "_HandlerRef":
        if hasattr(handler, "__self__") and hasattr(handler, "__func__"):
            try:
                return cls(WeakMethod(handler), is_weak=True)  # type: ignore[arg-type]
            except TypeError:
                pass
        return cls(handler, is_weak=False)

    def resolve(self) -> Handler | None:
        if not self._is_weak:
            return self._ref
        return self._ref()

    def matches(self, handler: Handler) -> bool:
        resolved = self.resolve()
        return resolved is not None and resolved == handler


def _handler_name(handler: Handler) -> str:
    if hasattr(handler, "__self__") and hasattr(handler, "__func__"):
        return f"{type(handler.__self__).__name__}.{handler.__func__.__name__}"
    return getattr(handler, "__name__", repr(handler))


__all__ = ["ChatEventBus", "ChatEventType", "ChatStatus", "Handler"]
