"""Conversation orchestrator: the turn-by-turn loop behind the chat panel.

The orchestrator owns the message history and the pending-message queue. A
single processing cycle at a time decides whether to call the model, run the
tools the model asked for, or stop, and every state change is published on the
event bus for whatever renders the conversation.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field, fields, replace
from typing import TYPE_CHECKING, Any, Callable, Mapping, Sequence

import httpx
from openai.types.chat import ChatCompletionToolParam

from ...chat.message_model import (
    ContextPart,
    FilePart,
    Message,
    TextPart,
    ToolState,
    build_user_message,
    new_message_id,
)
from ...core.cancellation import CancellationError, CancellationToken
from ..client import DEFAULT_ENDPOINT, DEFAULT_MODEL, ChatCompletionsClient, ClientSettings
from .emission import DEFAULT_FRAME_INTERVAL, SmoothEmissionScheduler
from .events import ChatEventBus, ChatEventType, ChatStatus, Handler
from .stream_consumer import StreamingResponseConsumer
from .tool_executor import CANCELLED_TOOL_TEXT, ToolCallingCapability, ToolExecutionCoordinator
from .writer import MessageMutation

if TYPE_CHECKING:
    from ...services.settings import Settings

__all__ = [
    "ConversationOrchestrator",
    "DEFAULT_MAX_ITERATIONS",
    "OrchestratorConfig",
]

LOGGER = logging.getLogger(__name__)

DEFAULT_MAX_ITERATIONS = 1000

_CLIENT_FIELDS = frozenset(
    {"model", "endpoint", "api_key", "request_timeout", "max_retries", "default_headers", "debug_logging"}
)


# -----------------------------------------------------------------------------
# Configuration
# -----------------------------------------------------------------------------


@dataclass(slots=True)
class OrchestratorConfig:
    """Runtime configuration for :class:`ConversationOrchestrator`.

    Attributes:
        model: Model identifier sent with every request.
        endpoint: Full chat-completions URL.
        api_key: Bearer token for the endpoint.
        tools: Tool catalog advertised to the model (OpenAI function format).
        max_iterations: Ceiling on loop iterations per processing cycle.
        emission_interval: Seconds between two rendered character frames.
        chars_per_frame: Characters appended per frame.
        initial_messages: History restored by ``reset_messages``.
        request_timeout: Per-request timeout in seconds.
        max_retries: Connection attempts before a request fails.
        default_headers: Extra headers merged into every request.
        debug_logging: Log outbound payloads at DEBUG level.
    """

    model: str = DEFAULT_MODEL
    endpoint: str = DEFAULT_ENDPOINT
    api_key: str = ""
    tools: tuple[ChatCompletionToolParam, ...] = ()
    max_iterations: int = DEFAULT_MAX_ITERATIONS
    emission_interval: float = DEFAULT_FRAME_INTERVAL
    chars_per_frame: int = 1
    initial_messages: tuple[Message, ...] = ()
    request_timeout: float | None = 90.0
    max_retries: int = 3
    default_headers: Mapping[str, str] | None = field(default=None)
    debug_logging: bool = False

    def __post_init__(self) -> None:
        self.tools = tuple(self.tools or ())
        self.initial_messages = tuple(self.initial_messages or ())
        if self.max_iterations < 1:
            raise ValueError("max_iterations must be at least 1")

    @classmethod
    def from_settings(
        cls,
        settings: "Settings",
        *,
        tools: Sequence[ChatCompletionToolParam] = (),
        initial_messages: Sequence[Message] = (),
    ) -> "OrchestratorConfig":
        return cls(
            model=settings.model,
            endpoint=settings.endpoint,
            api_key=settings.api_key,
            tools=tuple(tools),
            max_iterations=settings.max_iterations,
            emission_interval=settings.emission_interval,
            initial_messages=tuple(initial_messages),
            request_timeout=settings.request_timeout,
            max_retries=settings.max_retries,
            default_headers=dict(settings.default_headers) or None,
            debug_logging=settings.debug_logging,
        )

    def client_settings(self) -> ClientSettings:
        return ClientSettings(
            endpoint=self.endpoint,
            api_key=self.api_key,
            model=self.model,
            request_timeout=self.request_timeout,
            max_retries=self.max_retries,
            default_headers=self.default_headers,
            debug_logging=self.debug_logging,
        )


# -----------------------------------------------------------------------------
# Orchestrator
# -----------------------------------------------------------------------------


class ConversationOrchestrator:
    """Owns the conversation and drives model calls and tool rounds.

    Only one processing cycle runs at a time. Messages sent while a cycle is
    active wait in the queue and are drained into history, in submission
    order, before the next model call. Each cycle gets its own
    :class:`CancellationToken`; cancelling it reaches the HTTP request, the
    running tools and the text emission scheduler.

    All methods must be called from the event loop thread. None of the public
    entry points raise on transport or tool failures; those end up in the
    history and in :attr:`status`.

    Example:
        orchestrator = ConversationOrchestrator(config, tool_caller=caller)
        orchestrator.subscribe("messages_updated", render)
        orchestrator.send_message("What's on this page?")
        await orchestrator.wait_until_idle()
    """

    def __init__(
        self,
        config: OrchestratorConfig | None = None,
        *,
        tool_caller: ToolCallingCapability | None = None,
        client: ChatCompletionsClient | None = None,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._config = config or OrchestratorConfig()
        self._owns_client = client is None
        self._client = client or ChatCompletionsClient(self._config.client_settings(), http_client=http_client)
        self._events = ChatEventBus()
        self._messages: list[Message] = list(self._config.initial_messages)
        self._queue: list[Message] = []
        self._status = ChatStatus.IDLE
        self._is_processing = False
        self._token: CancellationToken | None = None
        self._destroyed = False
        self._pending_starts = 0
        self._tasks: set[asyncio.Task[None]] = set()
        self._scheduler = SmoothEmissionScheduler(
            self.append_text,
            frame_interval=self._config.emission_interval,
            chars_per_frame=self._config.chars_per_frame,
        )
        self._consumer = StreamingResponseConsumer(self._client, self, self._scheduler)
        self._tool_coordinator = ToolExecutionCoordinator(self, tool_caller)

    # ------------------------------------------------------------------
    # State accessors
    # ------------------------------------------------------------------
    @property
    def messages(self) -> list[Message]:
        return list(self._messages)

    @property
    def queue(self) -> list[Message]:
        return list(self._queue)

    @property
    def status(self) -> ChatStatus:
        return self._status

    @property
    def is_processing(self) -> bool:
        return self._is_processing

    @property
    def config(self) -> OrchestratorConfig:
        return self._config

    @property
    def client(self) -> ChatCompletionsClient:
        return self._client

    @property
    def destroyed(self) -> bool:
        return self._destroyed

    def find_message(self, message_id: str) -> Message | None:
        for message in reversed(self._messages):
            if message.id == message_id:
                return message
        return None

    # ------------------------------------------------------------------
    # Subscriptions
    # ------------------------------------------------------------------
    def subscribe(self, event: ChatEventType | str, callback: Handler) -> Callable[[], None]:
        return self._events.subscribe(event, callback)

    def unsubscribe(self, event: ChatEventType | str, callback: Handler) -> None:
        self._events.unsubscribe(event, callback)

    # ------------------------------------------------------------------
    # Public commands
    # ------------------------------------------------------------------
    def send_message(
        self,
        text: str,
        files: Sequence[FilePart] | None = None,
        contexts: Sequence[ContextPart] | None = None,
    ) -> Message | None:
        """Submit a user turn.

        Returns the created message, or ``None`` when there was nothing to
        send or the orchestrator has been destroyed.
        """

        if self._destroyed:
            LOGGER.warning("send_message called on a destroyed orchestrator")
            return None
        message = build_user_message(text, files, contexts)
        if message is None:
            return None
        if self._is_processing:
            self._queue.append(message)
            LOGGER.debug("Queued message %s (%d waiting)", message.id, len(self._queue))
            self._publish_queue()
            return message
        # Messages left queued by a stopped cycle go first.
        self._drain_queue()
        self.append_message(message)
        self._schedule_processing()
        return message

    def regenerate(self) -> None:
        """Drop the trailing assistant/tool reply and ask the model again."""

        if self._destroyed or not self._messages:
            return
        if self._is_processing:
            self.stop_stream()
        if self._messages and self._messages[-1].role in ("assistant", "tool"):
            dropped = self._messages.pop()
            LOGGER.debug("Regenerating: dropped message %s", dropped.id)
            self._publish_messages()
        self._schedule_processing()

    def stop_stream(self, preserve_processing: bool = False) -> None:
        """Stop rendering the current reply.

        Args:
            preserve_processing: Only halt text emission; keep the cycle and
                its token alive.
        """

        if not preserve_processing:
            self._cancel_active_cycle()
        self._scheduler.halt()
        if preserve_processing:
            return
        self._is_processing = False
        self._token = None
        if self._status in (ChatStatus.SUBMITTED, ChatStatus.STREAMING):
            self._set_status(ChatStatus.IDLE)

    def abort(self) -> None:
        """Cancel everything in flight and discard queued messages."""

        self._cancel_active_cycle()
        if self._queue:
            self._queue.clear()
            self._publish_queue()
        self._scheduler.halt()
        self._is_processing = False
        self._token = None
        self._set_status(ChatStatus.IDLE)

    def destroy(self) -> None:
        if self._destroyed:
            return
        self.abort()
        self._destroyed = True
        self._events.clear()
        LOGGER.debug("Orchestrator destroyed")

    async def aclose(self) -> None:
        """Destroy the orchestrator, wait for its tasks and close the client it created."""

        self.destroy()
        await self.wait_until_idle()
        if self._owns_client:
            await self._client.aclose()

    def reset_messages(self) -> None:
        """Restore the configured initial history and drop queued messages."""

        if self._is_processing:
            self.abort()
        self._messages = list(self._config.initial_messages)
        self._publish_messages()
        if self._queue:
            self._queue.clear()
            self._publish_queue()

    def update_config(self, **changes: Any) -> OrchestratorConfig:
        """Hot-swap configuration; changes apply from the next model call."""

        known = {item.name for item in fields(OrchestratorConfig)}
        unknown = sorted(set(changes) - known)
        if unknown:
            raise TypeError(f"Unknown orchestrator option(s): {', '.join(unknown)}")
        self._config = replace(self._config, **changes)
        client_changes = {key: value for key, value in changes.items() if key in _CLIENT_FIELDS}
        if client_changes:
            self._client.update_settings(**client_changes)
        if "emission_interval" in changes:
            self._scheduler.frame_interval = max(0.0, float(self._config.emission_interval))
        if "chars_per_frame" in changes:
            self._scheduler.chars_per_frame = max(1, int(self._config.chars_per_frame))
        LOGGER.debug("Orchestrator config updated: %s", sorted(changes))
        return self._config

    def set_tool_caller(self, tool_caller: ToolCallingCapability | None) -> None:
        self._tool_coordinator.set_capability(tool_caller)

    async def wait_until_idle(self) -> None:
        """Wait until no processing cycle is scheduled or running."""

        while True:
            if self._tasks:
                await asyncio.wait(set(self._tasks))
                continue
            if self._pending_starts:
                await asyncio.sleep(0)
                continue
            return

    # ------------------------------------------------------------------
    # ConversationWriter
    # ------------------------------------------------------------------
    def append_message(self, message: Message) -> None:
        self._messages.append(message)
        self._publish_messages()

    def update_message(self, message_id: str, mutate: MessageMutation) -> Message | None:
        message = self.find_message(message_id)
        if message is None:
            LOGGER.debug("Ignoring update for unknown message %s", message_id)
            return None
        mutate(message)
        self._publish_messages()
        return message

    def append_text(self, message_id: str, text: str) -> None:
        def _append(message: Message) -> None:
            text_parts = message.text_parts()
            if text_parts:
                text_parts[-1].text += text
            else:
                message.parts.append(TextPart(text))

        self.update_message(message_id, _append)

    def set_status(self, status: ChatStatus) -> None:
        self._set_status(status)

    # ------------------------------------------------------------------
    # Processing loop
    # ------------------------------------------------------------------
    def _schedule_processing(self) -> None:
        if self._destroyed:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            LOGGER.warning("No running event loop; processing deferred until the next send")
            return
        self._pending_starts += 1
        loop.call_soon(self._start_cycle)

    def _start_cycle(self) -> None:
        self._pending_starts -= 1
        if self._destroyed or self._is_processing:
            return
        task = asyncio.get_running_loop().create_task(self._process_next_action())
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _process_next_action(self) -> None:
        if self._is_processing or self._destroyed:
            return
        token = CancellationToken()
        self._is_processing = True
        self._token = token
        self._set_status(ChatStatus.SUBMITTED)
        iterations = 0
        LOGGER.debug("Processing cycle started")

        try:
            while not token.is_cancelled:
                iterations += 1
                if iterations > self._config.max_iterations:
                    LOGGER.error("Processing cycle exceeded %d iterations; stopping", self._config.max_iterations)
                    self._set_status(ChatStatus.ERROR)
                    break

                self._drain_queue()
                if not self._messages:
                    break
                last = self._messages[-1]

                if last.role in ("user", "tool"):
                    if not await self._call_model(token):
                        break
                    continue

                if last.role != "assistant":
                    break

                ready = [part for part in last.tool_parts() if part.state is ToolState.INPUT_AVAILABLE]
                if ready:
                    await self._tool_coordinator.execute(last.id, ready, token)
                    continue

                tool_parts = last.tool_parts()
                if tool_parts and last.tools_settled():
                    if not await self._call_model(token):
                        break
                    continue

                if not tool_parts and not last.has_text:
                    LOGGER.warning("Assistant message %s is empty; ending cycle", last.id)
                break
        except CancellationError:
            LOGGER.debug("Processing cycle cancelled")
        except Exception as exc:
            LOGGER.exception("Processing cycle failed")
            if self._token is token:
                self._scheduler.halt()
                self._record_cycle_failure(exc)
                self._set_status(ChatStatus.ERROR)
        finally:
            self._finish_cycle(token, iterations)

    async def _call_model(self, token: CancellationToken) -> bool:
        """Stream one model turn; False when the cycle should stop."""

        outcome = await self._consumer.consume(self._messages, token=token, tools=self._config.tools)
        return not (outcome.cancelled or outcome.failed)

    def _finish_cycle(self, token: CancellationToken, iterations: int) -> None:
        if self._token is not token:
            # stop_stream/abort already released this cycle; a newer one may be running.
            LOGGER.debug("Stale processing cycle finished after %d iteration(s)", iterations)
            if self._queue and not self._is_processing and not self._destroyed:
                self._schedule_processing()
            return
        if token.is_cancelled:
            self._settle_unfinished_tools()
        self._token = None
        self._is_processing = False
        LOGGER.debug("Processing cycle finished after %d iteration(s)", iterations)
        if self._queue and not self._destroyed:
            self._schedule_processing()
        elif self._status is not ChatStatus.ERROR:
            self._set_status(ChatStatus.IDLE)

    def _drain_queue(self) -> None:
        if not self._queue:
            return
        self._messages.extend(self._queue)
        self._queue.clear()
        self._publish_messages()
        self._publish_queue()

    def _cancel_active_cycle(self) -> None:
        token = self._token
        if token is None or token.is_cancelled:
            return
        token.cancel()
        self._settle_unfinished_tools()

    def _settle_unfinished_tools(self, reason: str = CANCELLED_TOOL_TEXT) -> None:
        changed = False
        for message in self._messages:
            if message.role != "assistant":
                continue
            for part in message.tool_parts():
                if not part.is_terminal:
                    part.fail(reason)
                    changed = True
        if changed:
            self._publish_messages()

    def _record_cycle_failure(self, exc: Exception) -> None:
        # A tool part left mid-stream would hide every later message from the model.
        reason = str(exc) or type(exc).__name__
        self._settle_unfinished_tools(reason)
        self.append_message(
            Message(id=new_message_id("assistant-error"), role="assistant", parts=[TextPart(f"Error: {reason}")])
        )

    # ------------------------------------------------------------------
    # Event helpers
    # ------------------------------------------------------------------
    def _set_status(self, status: ChatStatus) -> None:
        if status is self._status:
            return
        LOGGER.debug("Status %s -> %s", self._status.value, status.value)
        self._status = status
        self._events.publish(ChatEventType.STATUS_CHANGED, status)

    def _publish_messages(self) -> None:
        self._events.publish(ChatEventType.MESSAGES_UPDATED, list(self._messages))

    def _publish_queue(self) -> None:
        self._events.publish(ChatEventType.QUEUE_CHANGED, list(self._queue))
