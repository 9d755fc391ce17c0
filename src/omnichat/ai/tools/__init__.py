"""Tool catalog and registry-backed tool execution."""

from .errors import DuplicateToolError, ErrorCode, InvalidParameterError, ToolError, ToolNotFoundError
from .registry import RegistryToolCaller, ToolRegistry, ToolSpec

__all__ = [
    "DuplicateToolError",
    "ErrorCode",
    "InvalidParameterError",
    "RegistryToolCaller",
    "ToolError",
    "ToolNotFoundError",
    "ToolRegistry",
    "ToolSpec",
]
