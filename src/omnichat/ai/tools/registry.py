"""Tool catalog and a registry-backed tool-calling capability.

The orchestrator only needs two things from tools: the catalog it advertises
to the model (``ToolRegistry.as_openai_tools``) and something that can run a
call by name (:class:`RegistryToolCaller`). Both live here.
"""

from __future__ import annotations

import inspect
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Coroutine, Mapping, Sequence

from openai.types.chat import ChatCompletionToolParam

from ..orchestration.tool_executor import ToolCallResult
from .errors import DuplicateToolError, ToolError, ToolNotFoundError

__all__ = [
    "AsyncToolHandler",
    "DEFAULT_CATEGORY",
    "RegistryToolCaller",
    "ScreenshotProvider",
    "ToolHandler",
    "ToolRegistry",
    "ToolSpec",
]

LOGGER = logging.getLogger(__name__)

DEFAULT_CATEGORY = "Other"

ToolHandler = Callable[[Mapping[str, Any]], Any]
AsyncToolHandler = Callable[[Mapping[str, Any]], Coroutine[Any, Any, Any]]
ScreenshotProvider = Callable[[], "str | None | Awaitable[str | None]"]


# -----------------------------------------------------------------------------
# Tool Specification
# -----------------------------------------------------------------------------


@dataclass(slots=True, frozen=True)
class ToolSpec:
    """Specification for a tool's interface.

    Attributes:
        name: Unique identifier for the tool.
        description: Human-readable description shown to the model.
        parameters: JSON Schema for the tool's arguments.
        category: Catalog grouping (``"Tab Management"``, ``"Bookmarks"``...).
        is_action: Whether the tool changes what the user sees; the
            orchestrator captures a screenshot before running action tools.
        handler: Implementation invoked with the parsed arguments.
        examples: Optional usage snippets surfaced by :meth:`ToolRegistry.search`.
    """

    name: str
    description: str
    parameters: Mapping[str, Any] = field(default_factory=dict)
    category: str = DEFAULT_CATEGORY
    is_action: bool = False
    handler: ToolHandler | AsyncToolHandler | None = field(default=None, compare=False, repr=False)
    examples: tuple[str, ...] = ()

    def as_openai_tool(self) -> ChatCompletionToolParam:
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": dict(self.parameters) if self.parameters else {"type": "object", "properties": {}},
            },
        }

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "parameters": dict(self.parameters) if self.parameters else {},
            "category": self.category,
            "is_action": self.is_action,
        }


# -----------------------------------------------------------------------------
# Tool Registry
# -----------------------------------------------------------------------------


class ToolRegistry:
    """Name-keyed catalog of tools grouped by category.

    Example:
        registry = ToolRegistry()
        registry.register_function(
            "get_current_tab",
            lambda args: {"title": "Example"},
            description="Return the active tab",
            category="Tab Management",
        )
        orchestrator.update_config(tools=registry.as_openai_tools())
    """

    def __init__(self, specs: Sequence[ToolSpec] | None = None) -> None:
        self._tools: dict[str, ToolSpec] = {}
        for spec in specs or ():
            self.register(spec)

    def __contains__(self, name: object) -> bool:
        return name in self._tools

    def __len__(self) -> int:
        return len(self._tools)

    def register(self, spec: ToolSpec, *, allow_override: bool = False) -> ToolSpec:
        """Add ``spec`` to the catalog.

        Raises:
            DuplicateToolError: If the name is taken and ``allow_override`` is False.
        """

        if spec.name in self._tools and not allow_override:
            raise DuplicateToolError(tool_name=spec.name)
        self._tools[spec.name] = spec
        LOGGER.debug("Registered tool: %s (%s)", spec.name, spec.category)
        return spec

    def register_function(
        self,
        name: str,
        handler: ToolHandler | AsyncToolHandler,
        *,
        description: str = "",
        parameters: Mapping[str, Any] | None = None,
        category: str = DEFAULT_CATEGORY,
        is_action: bool = False,
        allow_override: bool = False,
    ) -> ToolSpec:
        """Register a plain function (sync or async) as a tool."""

        spec = ToolSpec(
            name=name,
            description=description or (inspect.getdoc(handler) or "").split("\n", 1)[0],
            parameters=dict(parameters or {}),
            category=category,
            is_action=is_action,
            handler=handler,
        )
        return self.register(spec, allow_override=allow_override)

    def unregister(self, name: str) -> bool:
        if self._tools.pop(name, None) is None:
            return False
        LOGGER.debug("Unregistered tool: %s", name)
        return True

    def get(self, name: str) -> ToolSpec | None:
        return self._tools.get(name)

    def require(self, name: str) -> ToolSpec:
        spec = self._tools.get(name)
        if spec is None:
            raise ToolNotFoundError(tool_name=name)
        return spec

    def all(self) -> list[ToolSpec]:
        return list(self._tools.values())

    def names(self) -> list[str]:
        return list(self._tools)

    def categories(self) -> dict[str, list[ToolSpec]]:
        """Tools grouped by category, categories in first-registration order."""

        grouped: dict[str, list[ToolSpec]] = {}
        for spec in self._tools.values():
            grouped.setdefault(spec.category, []).append(spec)
        return grouped

    def by_category(self, category: str) -> list[ToolSpec]:
        return [spec for spec in self._tools.values() if spec.category == category]

    def search(self, query: str) -> list[ToolSpec]:
        """Case-insensitive match against name, description, category and examples."""

        needle = query.strip().lower()
        if not needle:
            return self.all()
        matches: list[ToolSpec] = []
        for spec in self._tools.values():
            haystack = " ".join((spec.name, spec.description, spec.category, *spec.examples)).lower()
            if needle in haystack:
                matches.append(spec)
        return matches

    def is_action(self, name: str) -> bool:
        spec = self._tools.get(name)
        return bool(spec and spec.is_action)

    def as_openai_tools(self) -> list[ChatCompletionToolParam]:
        return [spec.as_openai_tool() for spec in self._tools.values()]


# -----------------------------------------------------------------------------
# Registry-backed capability
# -----------------------------------------------------------------------------


class RegistryToolCaller:
    """Runs tools straight out of a :class:`ToolRegistry`.

    Satisfies the orchestrator's ``ToolCallingCapability``. Handlers receive
    the parsed argument mapping and may be sync or async; whatever they return
    becomes the successful payload unless it already is a ``ToolCallResult``
    or a ``{"success": ...}`` mapping. Raised exceptions become failures.
    """

    def __init__(self, registry: ToolRegistry, *, screenshot_provider: ScreenshotProvider | None = None) -> None:
        self._registry = registry
        self._screenshot_provider = screenshot_provider

    @property
    def registry(self) -> ToolRegistry:
        return self._registry

    def check_is_action_tool(self, name: str) -> bool:
        return self._registry.is_action(name) and self._screenshot_provider is not None

    async def capture_screenshot(self) -> str | None:
        if self._screenshot_provider is None:
            return None
        result = self._screenshot_provider()
        if inspect.isawaitable(result):
            result = await result
        return result

    async def call_tool(self, name: str, arguments: Any, message_id: str) -> ToolCallResult:
        spec = self._registry.get(name)
        if spec is None:
            LOGGER.warning("Model requested unknown tool %s (message=%s)", name, message_id)
            return ToolCallResult.failure(ToolNotFoundError(tool_name=name).message)
        if spec.handler is None:
            return ToolCallResult.failure(f"Tool '{name}' has no implementation")

        payload = arguments if isinstance(arguments, Mapping) else {}
        try:
            result = spec.handler(payload)
            if inspect.isawaitable(result):
                result = await result
        except ToolError as exc:
            LOGGER.info("Tool %s reported %s", name, exc)
            return ToolCallResult.failure(exc.describe())
        except Exception as exc:
            LOGGER.warning("Tool %s raised %s: %s", name, type(exc).__name__, exc)
            return ToolCallResult.failure(str(exc) or type(exc).__name__)
        return ToolCallResult.from_value(result)
