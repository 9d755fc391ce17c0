"""Concurrent execution of the tool calls requested by one assistant turn.

The coordinator never talks to a concrete tool. It goes through a
:class:`ToolCallingCapability`, maps each outcome onto the owning tool part
and applies every result to the assistant message in a single update.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Mapping, Protocol, Sequence, runtime_checkable

from ...chat.message_model import Message, ToolPart, ToolState
from ...core.cancellation import CancellationError, CancellationToken
from .writer import ConversationWriter

__all__ = [
    "CANCELLED_TOOL_TEXT",
    "ToolCallResult",
    "ToolCallingCapability",
    "ToolExecutionCoordinator",
]

LOGGER = logging.getLogger(__name__)

CANCELLED_TOOL_TEXT = "Tool execution was cancelled"
DEFAULT_TOOL_ERROR = "Tool execution failed"


# -----------------------------------------------------------------------------
# Capability interface
# -----------------------------------------------------------------------------


@dataclass(slots=True)
class ToolCallResult:
    """Outcome reported by a tool-calling capability.

    Attributes:
        success: Whether the tool completed its work.
        data: Payload returned to the model on success.
        error: Human-readable failure reason when ``success`` is False.
    """

    success: bool
    data: Any = None
    error: str | None = None

    @classmethod
    def ok(cls, data: Any = None) -> "ToolCallResult":
        return cls(success=True, data=data)

    @classmethod
    def failure(cls, error: str) -> "ToolCallResult":
        return cls(success=False, error=error)

    @classmethod
    def from_value(cls, value: Any) -> "ToolCallResult":
        """Normalize whatever a capability returned.

        ``ToolCallResult`` instances pass through; ``{"success": ..., "data"/"error": ...}``
        mappings are unpacked; anything else counts as a successful payload.
        """

        if isinstance(value, ToolCallResult):
            return value
        if isinstance(value, Mapping) and "success" in value:
            if value.get("success"):
                return cls.ok(value.get("data"))
            error = value.get("error")
            return cls.failure(str(error) if error else DEFAULT_TOOL_ERROR)
        return cls.ok(value)

    def to_dict(self) -> dict[str, Any]:
        if self.success:
            return {"success": True, "data": self.data}
        return {"success": False, "error": self.error or DEFAULT_TOOL_ERROR}


@runtime_checkable
class ToolCallingCapability(Protocol):
    """External capability that knows how to run tools.

    Every method may be implemented synchronously or as a coroutine.
    """

    def check_is_action_tool(self, name: str) -> bool | Awaitable[bool]:
        ...

    def capture_screenshot(self) -> str | None | Awaitable[str | None]:
        ...

    def call_tool(self, name: str, arguments: Any, message_id: str) -> Any:
        ...


async def _resolve(value: Any) -> Any:
    if inspect.isawaitable(value):
        return await value
    return value


async def _invoke(capability: ToolCallingCapability, name: str, arguments: Any, message_id: str) -> Any:
    return await _resolve(capability.call_tool(name, arguments, message_id))


# -----------------------------------------------------------------------------
# Coordinator
# -----------------------------------------------------------------------------


@dataclass(slots=True)
class _ToolOutcome:
    tool_call_id: str
    output: Any = None
    error_text: str | None = None
    screenshot: str | None = None

    @property
    def failed(self) -> bool:
        return self.error_text is not None


class ToolExecutionCoordinator:
    """Runs a turn's ``input-available`` tool parts concurrently.

    Example:
        coordinator = ToolExecutionCoordinator(writer, capability)
        await coordinator.execute(message.id, message.tool_parts(), token)
    """

    def __init__(self, writer: ConversationWriter, capability: ToolCallingCapability | None = None) -> None:
        self._writer = writer
        self._capability = capability

    @property
    def capability(self) -> ToolCallingCapability | None:
        return self._capability

    def set_capability(self, capability: ToolCallingCapability | None) -> None:
        self._capability = capability

    async def execute(
        self,
        message_id: str,
        tool_parts: Sequence[ToolPart],
        token: CancellationToken,
    ) -> None:
        """Execute ``tool_parts`` belonging to ``message_id``.

        Args:
            message_id: Id of the assistant message that owns the parts.
            tool_parts: Parts to run; only those in ``input-available`` are considered.
            token: Cycle token checked before each invocation.

        Raises:
            CancellationError: If the whole batch was abandoned because of cancellation.
        """

        targets = [part for part in tool_parts if part.state is ToolState.INPUT_AVAILABLE]
        if not targets:
            return
        call_ids = [part.tool_call_id for part in targets]
        self._mark_executing(message_id, call_ids)

        try:
            outcomes = await asyncio.gather(
                *(self._run_one(message_id, part.tool_name, part.tool_call_id, part.input, token) for part in targets)
            )
        except (CancellationError, asyncio.CancelledError):
            self._fail_executing(message_id, call_ids, CANCELLED_TOOL_TEXT)
            raise
        except Exception as exc:
            LOGGER.exception("Tool batch for message %s failed", message_id)
            self._fail_executing(message_id, call_ids, str(exc) or type(exc).__name__)
            return

        self._apply_outcomes(message_id, outcomes)

    async def _run_one(
        self,
        message_id: str,
        name: str,
        tool_call_id: str,
        arguments: Any,
        token: CancellationToken,
    ) -> _ToolOutcome:
        if token.is_cancelled:
            return _ToolOutcome(tool_call_id, error_text=CANCELLED_TOOL_TEXT)
        capability = self._capability
        if capability is None:
            return _ToolOutcome(tool_call_id, error_text=f"No tool executor configured for '{name}'")

        screenshot = await self._maybe_capture_screenshot(capability, name)
        if token.is_cancelled:
            return _ToolOutcome(tool_call_id, error_text=CANCELLED_TOOL_TEXT, screenshot=screenshot)

        LOGGER.debug("Executing tool %s (call_id=%s)", name, tool_call_id)
        started = time.perf_counter()
        task = asyncio.ensure_future(_invoke(capability, name, arguments, message_id))
        unlink = token.link_task(task)
        try:
            raw = await task
        except asyncio.CancelledError:
            if not token.is_cancelled:
                raise
            LOGGER.info("Tool %s (call_id=%s) cancelled", name, tool_call_id)
            return _ToolOutcome(tool_call_id, error_text=CANCELLED_TOOL_TEXT, screenshot=screenshot)
        except CancellationError:
            return _ToolOutcome(tool_call_id, error_text=CANCELLED_TOOL_TEXT, screenshot=screenshot)
        except Exception as exc:
            LOGGER.warning("Tool %s (call_id=%s) raised: %s", name, tool_call_id, exc)
            return _ToolOutcome(tool_call_id, error_text=str(exc) or type(exc).__name__, screenshot=screenshot)
        finally:
            unlink()

        duration_ms = (time.perf_counter() - started) * 1000
        result = ToolCallResult.from_value(raw)
        if result.success:
            LOGGER.debug("Tool %s completed in %.1fms", name, duration_ms)
            return _ToolOutcome(tool_call_id, output=result.data, screenshot=screenshot)
        LOGGER.debug("Tool %s reported failure in %.1fms: %s", name, duration_ms, result.error)
        return _ToolOutcome(tool_call_id, error_text=result.error or DEFAULT_TOOL_ERROR, screenshot=screenshot)

    async def _maybe_capture_screenshot(self, capability: ToolCallingCapability, name: str) -> str | None:
        try:
            if not await _resolve(capability.check_is_action_tool(name)):
                return None
            return await _resolve(capability.capture_screenshot())
        except Exception:
            LOGGER.warning("Screenshot capture before tool %s failed", name, exc_info=True)
            return None

    def _mark_executing(self, message_id: str, call_ids: Sequence[str]) -> None:
        def _mark(message: Message) -> None:
            for call_id in call_ids:
                part = message.find_tool_part(call_id)
                if part is not None and part.state is ToolState.INPUT_AVAILABLE:
                    part.transition(ToolState.EXECUTING)

        self._writer.update_message(message_id, _mark)

    def _apply_outcomes(self, message_id: str, outcomes: Sequence[_ToolOutcome]) -> None:
        def _apply(message: Message) -> None:
            for outcome in outcomes:
                part = message.find_tool_part(outcome.tool_call_id)
                if part is None or part.is_terminal:
                    continue
                if outcome.failed:
                    part.fail(outcome.error_text or DEFAULT_TOOL_ERROR, screenshot=outcome.screenshot)
                else:
                    part.resolve(outcome.output, screenshot=outcome.screenshot)

        if self._writer.update_message(message_id, _apply) is None:
            LOGGER.warning("Assistant message %s vanished before tool results were applied", message_id)

    def _fail_executing(self, message_id: str, call_ids: Sequence[str], reason: str) -> None:
        def _fail(message: Message) -> None:
            for call_id in call_ids:
                part = message.find_tool_part(call_id)
                if part is not None and part.state is ToolState.EXECUTING:
                    part.fail(reason)

        self._writer.update_message(message_id, _fail)
