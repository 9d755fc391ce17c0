"""Cooperative cancellation primitives shared by the orchestration layers."""

from __future__ import annotations

import asyncio
import logging
from typing import Callable

__all__ = ["CancellationCallback", "CancellationError", "CancellationToken"]

LOGGER = logging.getLogger(__name__)

CancellationCallback = Callable[[], None]


class CancellationError(Exception):
    """Raised when work is abandoned because its token was cancelled."""

    def __init__(self, message: str = "Operation was cancelled") -> None:
        super().__init__(message)


def _noop() -> None:
    return None


class CancellationToken:
    """Cancellation handle scoped to one unit of work.

    Cancelling is terminal and idempotent: the first ``cancel()`` sets the
    :attr:`signal`, fires every registered callback once and clears them.
    Callbacks registered afterwards run immediately. Child tokens follow
    their parent but never propagate upward.

    Example::

        token = CancellationToken()
        unregister = token.on_cancelled(lambda: print("stopped"))
        child = token.create_child()
        token.cancel()
        assert child.is_cancelled
    """

    __slots__ = ("_cancelled", "_callbacks", "_signal")

    def __init__(self) -> None:
        self._cancelled = False
        # dict keeps insertion order and doubles as an ordered set
        self._callbacks: dict[CancellationCallback, None] = {}
        self._signal = asyncio.Event()

    @property
    def is_cancelled(self) -> bool:
        return self._cancelled

    @property
    def signal(self) -> asyncio.Event:
        """Event set once the token is cancelled; await ``signal.wait()`` to block on it."""

        return self._signal

    def cancel(self) -> None:
        if self._cancelled:
            return
        self._cancelled = True
        self._signal.set()
        callbacks = list(self._callbacks)
        self._callbacks.clear()
        for callback in callbacks:
            try:
                callback()
            except Exception:
                LOGGER.exception("Cancellation callback %r raised", callback)

    def throw_if_cancelled(self) -> None:
        if self._cancelled:
            raise CancellationError()

    def on_cancelled(self, callback: CancellationCallback) -> Callable[[], None]:
        """Register ``callback`` and return a function that unregisters it."""

        if self._cancelled:
            callback()
            return _noop

        self._callbacks[callback] = None

        def _unregister() -> None:
            self._callbacks.pop(callback, None)

        return _unregister

    def create_child(self) -> "CancellationToken":
        child = CancellationToken()
        self.on_cancelled(child.cancel)
        return child

    def link_task(self, task: asyncio.Future) -> Callable[[], None]:
        """Cancel ``task`` when this token is cancelled.

        The returned callable detaches the link; call it once the task has
        finished so the token does not keep a reference to it.
        """

        def _cancel_task() -> None:
            if not task.done():
                task.cancel()

        return self.on_cancelled(_cancel_task)

    def __repr__(self) -> str:
        return f"CancellationToken(cancelled={self._cancelled}, callbacks={len(self._callbacks)})"
