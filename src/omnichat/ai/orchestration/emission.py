"""Frame-paced rendering of streamed assistant text."""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from typing import Callable

from ...core.cancellation import CancellationToken

LOGGER = logging.getLogger(__name__)

DEFAULT_FRAME_INTERVAL = 1.0 / 60.0

TextSink = Callable[[str, str], None]


class SmoothEmissionScheduler:
    """Drains buffered characters into a message a few at a time.

    Text deltas are pushed with :meth:`enqueue`; a single asyncio task then
    appends ``chars_per_frame`` characters per tick through ``sink`` (called
    as ``sink(message_id, chunk)``) until the queue is empty. :meth:`halt`
    stops the drain at once and drops what has not been rendered yet; text
    already handed to the sink is left alone.
    """

    def __init__(
        self,
        sink: TextSink,
        *,
        frame_interval: float = DEFAULT_FRAME_INTERVAL,
        chars_per_frame: int = 1,
    ) -> None:
        self._sink = sink
        self.frame_interval = max(0.0, float(frame_interval))
        self.chars_per_frame = max(1, int(chars_per_frame))
        self._pending: deque[str] = deque()
        self._message_id: str | None = None
        self._task: asyncio.Task[None] | None = None
        self._unlink: Callable[[], None] | None = None

    @property
    def pending(self) -> int:
        return len(self._pending)

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def enqueue(self, message_id: str, text: str, token: CancellationToken | None = None) -> None:
        """Queue ``text`` for ``message_id`` and start draining if idle."""

        if not text:
            return
        if token is not None and token.is_cancelled:
            return
        if self._message_id not in (None, message_id):
            # A new message supersedes whatever was left of the previous one.
            self.halt()
        self._message_id = message_id
        self._pending.extend(text)
        if self.is_running:
            return
        self._task = asyncio.get_running_loop().create_task(self._drain(message_id))
        if token is not None:
            self._unlink = token.on_cancelled(self.halt)

    async def wait_drained(self) -> None:
        task = self._task
        if task is None or task.done():
            return
        await asyncio.wait({task})

    def halt(self) -> None:
        self._pending.clear()
        self._message_id = None
        task, self._task = self._task, None
        if task is not None and not task.done():
            task.cancel()
        self._detach()

    async def _drain(self, message_id: str) -> None:
        try:
            while self._pending:
                await asyncio.sleep(self.frame_interval)
                if not self._pending:
                    break
                count = min(self.chars_per_frame, len(self._pending))
                chunk = "".join(self._pending.popleft() for _ in range(count))
                self._sink(message_id, chunk)
        except Exception:
            LOGGER.exception("Emission sink failed for message %s; dropping %s pending chars", message_id, len(self._pending))
            self._pending.clear()
        finally:
            if self._task is asyncio.current_task():
                self._task = None
                self._message_id = None
                self._detach()

    def _detach(self) -> None:
        unlink, self._unlink = self._unlink, None
        if unlink is not None:
            unlink()


__all__ = ["DEFAULT_FRAME_INTERVAL", "SmoothEmissionScheduler", "TextSink"]
