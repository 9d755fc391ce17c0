"""Incremental decoder for ``text/event-stream`` response bodies."""

from __future__ import annotations

from dataclasses import dataclass
from typing import List

__all__ = ["DONE_SENTINEL", "SSEDecoder", "SSEPayload"]

DONE_SENTINEL = "[DONE]"
_DATA_PREFIX = "data:"


@dataclass(slots=True)
class SSEPayload:
    """The data field of one SSE line, or the terminal marker."""

    data: str
    done: bool = False


class SSEDecoder:
    """Reassembles SSE events from arbitrarily split text chunks.

    Events are separated by a blank line. An event still incomplete at the end
    of a chunk stays buffered until the next :meth:`feed`, and :meth:`flush`
    releases whatever is left once the body ends. Only ``data:`` lines are
    reported; comments and other fields are ignored.
    """

    __slots__ = ("_buffer", "_done")

    def __init__(self) -> None:
        self._buffer = ""
        self._done = False

    @property
    def done(self) -> bool:
        return self._done

    def feed(self, chunk: str) -> List[SSEPayload]:
        if self._done or not chunk:
            return []
        self._buffer += chunk.replace("\r\n", "\n").replace("\r", "\n")
        events = self._buffer.split("\n\n")
        self._buffer = events.pop()
        return self._decode(events)

    def flush(self) -> List[SSEPayload]:
        if self._done or not self._buffer.strip():
            self._buffer = ""
            return []
        remainder, self._buffer = self._buffer, ""
        return self._decode([remainder])

    def _decode(self, events: List[str]) -> List[SSEPayload]:
        payloads: List[SSEPayload] = []
        for event in events:
            for line in event.split("\n"):
                trimmed = line.strip()
                if not trimmed.startswith(_DATA_PREFIX):
                    continue
                data = trimmed[len(_DATA_PREFIX):].strip()
                if not data:
                    continue
                if data == DONE_SENTINEL:
                    self._done = True
                    payloads.append(SSEPayload(data=data, done=True))
                    return payloads
                payloads.append(SSEPayload(data=data))
        return payloads
