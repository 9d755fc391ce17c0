"""Conversation orchestration: the model/tool loop and its building blocks."""

from .emission import SmoothEmissionScheduler
from .events import ChatEventBus, ChatEventType, ChatStatus
from .message_builder import build_wire_messages, format_context_block
from .orchestrator import ConversationOrchestrator, OrchestratorConfig
from .sse import SSEDecoder, SSEPayload
from .stream_consumer import StreamingResponseConsumer, StreamOutcome
from .tool_executor import ToolCallingCapability, ToolCallResult, ToolExecutionCoordinator
from .writer import ConversationWriter

__all__ = [
    "ChatEventBus",
    "ChatEventType",
    "ChatStatus",
    "ConversationOrchestrator",
    "ConversationWriter",
    "OrchestratorConfig",
    "SSEDecoder",
    "SSEPayload",
    "SmoothEmissionScheduler",
    "StreamOutcome",
    "StreamingResponseConsumer",
    "ToolCallResult",
    "ToolCallingCapability",
    "ToolExecutionCoordinator",
    "build_wire_messages",
    "format_context_block",
]
