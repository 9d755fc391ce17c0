"""Tests for ai/tools/registry.py and ai/tools/errors.py."""

from __future__ import annotations

import asyncio
from typing import Any, Mapping

import pytest

from omnichat.ai.orchestration.tool_executor import ToolCallResult, ToolCallingCapability
from omnichat.ai.tools import (
    DuplicateToolError,
    ErrorCode,
    InvalidParameterError,
    RegistryToolCaller,
    ToolNotFoundError,
    ToolRegistry,
    ToolSpec,
)


# -----------------------------------------------------------------------------
# Test Fixtures and Helpers
# -----------------------------------------------------------------------------


def make_spec(
    name: str = "get_current_tab",
    description: str = "Return the active tab",
    category: str = "Tab Management",
    **kwargs: Any,
) -> ToolSpec:
    """Helper to create a ToolSpec."""
    return ToolSpec(
        name=name,
        description=description,
        parameters={"type": "object", "properties": {"tabId": {"type": "integer"}}},
        category=category,
        **kwargs,
    )


@pytest.fixture
def registry() -> ToolRegistry:
    return ToolRegistry(
        [
            make_spec(),
            make_spec("close_tab", "Close a tab by id", is_action=True),
            make_spec("search_bookmarks", "Find bookmarks by keyword", "Bookmarks", examples=("search_bookmarks(query='python')",)),
        ]
    )


# -----------------------------------------------------------------------------
# ToolSpec
# -----------------------------------------------------------------------------


class TestToolSpec:
    def test_as_openai_tool(self) -> None:
        spec = make_spec()
        assert spec.as_openai_tool() == {
            "type": "function",
            "function": {
                "name": "get_current_tab",
                "description": "Return the active tab",
                "parameters": {"type": "object", "properties": {"tabId": {"type": "integer"}}},
            },
        }

    def test_empty_parameters_become_empty_object_schema(self) -> None:
        spec = ToolSpec(name="noop", description="Does nothing")
        assert spec.as_openai_tool()["function"]["parameters"] == {"type": "object", "properties": {}}

    def test_to_dict(self) -> None:
        data = make_spec(is_action=True).to_dict()
        assert data["category"] == "Tab Management"
        assert data["is_action"] is True

    def test_handler_is_ignored_for_equality(self) -> None:
        assert make_spec(handler=lambda args: 1) == make_spec(handler=lambda args: 2)


# -----------------------------------------------------------------------------
# ToolRegistry
# -----------------------------------------------------------------------------


class TestToolRegistry:
    def test_register_and_lookup(self, registry: ToolRegistry) -> None:
        assert len(registry) == 3
        assert "close_tab" in registry
        assert registry.get("close_tab").is_action
        assert registry.get("missing") is None
        assert registry.names() == ["get_current_tab", "close_tab", "search_bookmarks"]

    def test_duplicate_registration_raises(self, registry: ToolRegistry) -> None:
        with pytest.raises(DuplicateToolError) as excinfo:
            registry.register(make_spec())
        assert excinfo.value.error_code == ErrorCode.DUPLICATE_TOOL
        assert "get_current_tab" in excinfo.value.message

    def test_override_replaces_existing(self, registry: ToolRegistry) -> None:
        registry.register(make_spec(description="Newer"), allow_override=True)
        assert registry.get("get_current_tab").description == "Newer"
        assert len(registry) == 3

    def test_require_raises_for_unknown(self, registry: ToolRegistry) -> None:
        with pytest.raises(ToolNotFoundError) as excinfo:
            registry.require("nope")
        assert str(excinfo.value) == "[tool_not_found] Tool 'nope' not found"
        assert excinfo.value.details == {"tool_name": "nope"}

    def test_unregister(self, registry: ToolRegistry) -> None:
        assert registry.unregister("close_tab") is True
        assert registry.unregister("close_tab") is False
        assert "close_tab" not in registry

    def test_register_function_uses_docstring(self) -> None:
        registry = ToolRegistry()

        def get_history(args: Mapping[str, Any]) -> list[str]:
            """Return recent history entries.

            Longer explanation that is not part of the description.
            """
            return []

        spec = registry.register_function("get_history", get_history, category="History")
        assert spec.description == "Return recent history entries."
        assert spec.handler is get_history

    def test_categories_keep_first_registration_order(self, registry: ToolRegistry) -> None:
        grouped = registry.categories()
        assert list(grouped) == ["Tab Management", "Bookmarks"]
        assert [spec.name for spec in grouped["Tab Management"]] == ["get_current_tab", "close_tab"]
        assert [spec.name for spec in registry.by_category("Bookmarks")] == ["search_bookmarks"]

    def test_search_matches_name_description_category_and_examples(self, registry: ToolRegistry) -> None:
        assert [spec.name for spec in registry.search("CLOSE")] == ["close_tab"]
        assert [spec.name for spec in registry.search("bookmarks")] == ["search_bookmarks"]
        assert [spec.name for spec in registry.search("python")] == ["search_bookmarks"]
        assert [spec.name for spec in registry.search("tab management")] == ["get_current_tab", "close_tab"]
        assert registry.search("  ") == registry.all()
        assert registry.search("zzz") == []

    def test_as_openai_tools(self, registry: ToolRegistry) -> None:
        tools = registry.as_openai_tools()
        assert [tool["function"]["name"] for tool in tools] == registry.names()


# -----------------------------------------------------------------------------
# RegistryToolCaller
# -----------------------------------------------------------------------------


class TestRegistryToolCaller:
    def test_satisfies_capability_protocol(self, registry: ToolRegistry) -> None:
        assert isinstance(RegistryToolCaller(registry), ToolCallingCapability)

    @pytest.mark.asyncio
    async def test_sync_handler_result_becomes_payload(self) -> None:
        registry = ToolRegistry()
        registry.register_function("get_current_tab", lambda args: {"title": "Example", "args": dict(args)})

        result = await RegistryToolCaller(registry).call_tool("get_current_tab", {"tabId": 1}, "m1")

        assert result == ToolCallResult(True, {"title": "Example", "args": {"tabId": 1}})

    @pytest.mark.asyncio
    async def test_async_handler_is_awaited(self) -> None:
        registry = ToolRegistry()

        async def list_tabs(args: Mapping[str, Any]) -> dict[str, Any]:
            await asyncio.sleep(0)
            return {"success": True, "data": ["a"]}

        registry.register_function("list_tabs", list_tabs)

        result = await RegistryToolCaller(registry).call_tool("list_tabs", None, "m1")

        assert result == ToolCallResult(True, ["a"])

    @pytest.mark.asyncio
    async def test_tool_error_becomes_described_failure(self) -> None:
        registry = ToolRegistry()

        def close_tab(args: Mapping[str, Any]) -> None:
            raise InvalidParameterError(message="Tab 9 does not exist", parameter="tabId", suggestion="Call get_all_tabs first")

        registry.register_function("close_tab", close_tab)

        result = await RegistryToolCaller(registry).call_tool("close_tab", {"tabId": 9}, "m1")

        assert result.success is False
        assert result.error == "Tab 9 does not exist (Call get_all_tabs first)"

    @pytest.mark.asyncio
    async def test_unexpected_exception_becomes_failure(self) -> None:
        registry = ToolRegistry()
        registry.register_function("explode", lambda args: 1 / 0)

        result = await RegistryToolCaller(registry).call_tool("explode", {}, "m1")

        assert result.success is False
        assert result.error == "division by zero"

    @pytest.mark.asyncio
    async def test_unknown_tool_fails(self, registry: ToolRegistry) -> None:
        result = await RegistryToolCaller(registry).call_tool("missing", {}, "m1")
        assert result == ToolCallResult(False, None, "Tool 'missing' not found")

    @pytest.mark.asyncio
    async def test_spec_without_handler_fails(self, registry: ToolRegistry) -> None:
        result = await RegistryToolCaller(registry).call_tool("get_current_tab", {}, "m1")
        assert result.success is False
        assert "no implementation" in result.error

    @pytest.mark.asyncio
    async def test_action_tools_need_a_screenshot_provider(self, registry: ToolRegistry) -> None:
        without = RegistryToolCaller(registry)
        assert without.check_is_action_tool("close_tab") is False
        assert await without.capture_screenshot() is None

        async def provider() -> str:
            return "data:image/png;base64,SHOT"

        caller = RegistryToolCaller(registry, screenshot_provider=provider)
        assert caller.check_is_action_tool("close_tab") is True
        assert caller.check_is_action_tool("get_current_tab") is False
        assert await caller.capture_screenshot() == "data:image/png;base64,SHOT"


# -----------------------------------------------------------------------------
# Errors
# -----------------------------------------------------------------------------


class TestToolErrors:
    def test_to_dict_includes_optional_fields(self) -> None:
        error = InvalidParameterError(message="Bad id", parameter="tabId", suggestion="Use an integer")
        assert error.to_dict() == {
            "error": ErrorCode.INVALID_PARAMETER,
            "message": "Bad id",
            "details": {"parameter": "tabId"},
            "suggestion": "Use an integer",
        }

    def test_describe_without_suggestion(self) -> None:
        assert ToolNotFoundError(tool_name="x").describe() == "Tool 'x' not found"
