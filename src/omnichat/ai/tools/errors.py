"""Error types raised by tool implementations.

Tools raise :class:`ToolError` (or a subclass) for failures the model should
hear about; :class:`RegistryToolCaller` turns them into
``{"success": False, "error": ...}`` results instead of crashing the turn.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, ClassVar


class ErrorCode:
    """Constants for error codes used in tool responses."""

    TOOL_NOT_FOUND = "tool_not_found"
    DUPLICATE_TOOL = "duplicate_tool"
    INVALID_PARAMETER = "invalid_parameter"
    MISSING_PARAMETER = "missing_parameter"
    OPERATION_CANCELLED = "operation_cancelled"
    INTERNAL_ERROR = "internal_error"


@dataclass
class ToolError(Exception):
    """Base exception class for all tool errors.

    Attributes:
        error_code: Machine-readable error identifier.
        message: Human-readable error description.
        details: Additional structured error information.
        suggestion: Actionable guidance for recovery.
    """

    error_code: str
    message: str
    details: dict[str, Any] = field(default_factory=dict)
    suggestion: str = ""

    severity: ClassVar[str] = "error"

    def __post_init__(self) -> None:
        Exception.__init__(self, self.message)

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {
            "error": self.error_code,
            "message": self.message,
        }
        if self.details:
            result["details"] = dict(self.details)
        if self.suggestion:
            result["suggestion"] = self.suggestion
        return result

    def describe(self) -> str:
        """One-line text reported back to the model."""

        if self.suggestion:
            return f"{self.message} ({self.suggestion})"
        return self.message

    def __str__(self) -> str:
        return f"[{self.error_code}] {self.message}"


@dataclass
class ToolNotFoundError(ToolError):
    error_code: str = field(default=ErrorCode.TOOL_NOT_FOUND)
    message: str = field(default="")
    tool_name: str = ""

    def __post_init__(self) -> None:
        if not self.message:
            self.message = f"Tool '{self.tool_name}' not found"
        if self.tool_name and "tool_name" not in self.details:
            self.details["tool_name"] = self.tool_name
        super().__post_init__()


@dataclass
class DuplicateToolError(ToolError):
    error_code: str = field(default=ErrorCode.DUPLICATE_TOOL)
    message: str = field(default="")
    tool_name: str = ""

    def __post_init__(self) -> None:
        if not self.message:
            self.message = f"Tool '{self.tool_name}' is already registered"
        super().__post_init__()


@dataclass
class InvalidParameterError(ToolError):
    """Raised by tools when an argument is present but unusable."""

    error_code: str = field(default=ErrorCode.INVALID_PARAMETER)
    message: str = field(default="Invalid parameter")
    parameter: str = ""

    def __post_init__(self) -> None:
        if self.parameter and "parameter" not in self.details:
            self.details["parameter"] = self.parameter
        super().__post_init__()


__all__ = [
    "DuplicateToolError",
    "ErrorCode",
    "InvalidParameterError",
    "ToolError",
    "ToolNotFoundError",
]
