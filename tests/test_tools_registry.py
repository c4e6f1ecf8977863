"""Tests for orchestration/tools/registry.py."""

from __future__ import annotations

from typing import Any, Mapping

import pytest

from llamacode.ai.cancellation import CancellationToken
from llamacode.ai.orchestration.tools import (
    DuplicateToolError,
    SimpleTool,
    Tool,
    ToolKind,
    ToolNotFoundError,
    ToolRegistration,
    ToolRegistry,
    ToolSpec,
)
from llamacode.ai.types import ToolDeclaration


# -----------------------------------------------------------------------------
# Test Fixtures and Helpers
# -----------------------------------------------------------------------------


def make_spec(name: str = "test_tool", kind: ToolKind = ToolKind.READ) -> ToolSpec:
    """Helper to create a ToolSpec."""
    return ToolSpec(
        name=name,
        description=f"{name} description",
        parameters={"type": "object", "properties": {"arg": {"type": "string"}}},
        kind=kind,
    )


def make_simple_tool(name: str = "test_tool", handler: Any = None) -> SimpleTool:
    """Helper to create a SimpleTool."""
    if handler is None:
        handler = lambda args: f"result for {name}"
    return SimpleTool(spec=make_spec(name), handler=handler)


# -----------------------------------------------------------------------------
# Tests: registration
# -----------------------------------------------------------------------------


class TestRegistration:
    """Tests for registering and removing tools."""

    def test_register_returns_registration(self) -> None:
        registry = ToolRegistry()
        tool = make_simple_tool("read_file")

        registration = registry.register(tool, metadata={"source": "builtin"})

        assert isinstance(registration, ToolRegistration)
        assert registration.spec is tool.spec
        assert registration.metadata == {"source": "builtin"}
        assert "read_file" in registry
        assert len(registry) == 1

    def test_duplicate_name_is_rejected(self) -> None:
        registry = ToolRegistry()
        registry.register(make_simple_tool("read_file"))

        with pytest.raises(DuplicateToolError, match="already registered"):
            registry.register(make_simple_tool("read_file"))

    def test_allow_override_replaces(self) -> None:
        registry = ToolRegistry()
        registry.register(make_simple_tool("read_file"))
        replacement = make_simple_tool("read_file", handler=lambda args: "new")

        registry.register(replacement, allow_override=True)

        assert registry.get("read_file") is replacement

    def test_unregister(self) -> None:
        registry = ToolRegistry()
        registry.register(make_simple_tool("read_file"))

        assert registry.unregister("read_file") is True
        assert registry.unregister("read_file") is False
        assert registry.get("read_file") is None

    def test_simple_tool_satisfies_protocol(self) -> None:
        assert isinstance(make_simple_tool(), Tool)


# -----------------------------------------------------------------------------
# Tests: lookup and declarations
# -----------------------------------------------------------------------------


class TestLookup:
    def test_disabled_tools_are_hidden(self) -> None:
        registry = ToolRegistry()
        registry.register(make_simple_tool("read_file"))
        registry.register(make_simple_tool("write_file"), enabled=False)

        assert registry.has("write_file") is False
        assert registry.get_spec("write_file") is None
        assert registry.list_names() == ["read_file"]
        assert registry.list_names(include_disabled=True) == ["read_file", "write_file"]
        with pytest.raises(ToolNotFoundError):
            registry.get_required("write_file")

        registry.enable("write_file")
        assert registry.has("write_file") is True
        assert registry.disable("missing") is False

    def test_declarations_in_registration_order(self) -> None:
        registry = ToolRegistry()
        for name in ("list_directory", "read_file", "grep"):
            registry.register(make_simple_tool(name))
        registry.disable("read_file")

        declarations = registry.declarations()

        assert [d.name for d in declarations] == ["list_directory", "grep"]
        assert declarations[0] == ToolDeclaration(
            name="list_directory",
            description="list_directory description",
            parameters={"type": "object", "properties": {"arg": {"type": "string"}}},
        )
        assert [d.name for d in registry.declarations(filter_names=["grep"])] == ["grep"]

    def test_declarations_filtered_by_kind(self) -> None:
        registry = ToolRegistry()
        registry.register(SimpleTool(spec=make_spec("read_file", ToolKind.READ), handler=lambda args: ""))
        registry.register(SimpleTool(spec=make_spec("write_file", ToolKind.EDIT), handler=lambda args: ""))
        registry.register(SimpleTool(spec=make_spec("grep", ToolKind.SEARCH), handler=lambda args: ""))

        read_only = registry.declarations(kinds={ToolKind.READ, ToolKind.SEARCH})

        assert [d.name for d in read_only] == ["read_file", "grep"]
        assert [r.name for r in registry.registrations()] == ["read_file", "write_file", "grep"]

    def test_openai_tool_shape(self) -> None:
        tool = make_spec("grep").to_declaration().to_openai_tool()

        assert tool["type"] == "function"
        assert tool["function"]["name"] == "grep"
        assert tool["function"]["parameters"]["type"] == "object"

    def test_spec_to_dict_includes_kind(self) -> None:
        assert make_spec("rm", ToolKind.DELETE).to_dict()["kind"] == "delete"

    def test_clear(self) -> None:
        registry = ToolRegistry()
        registry.register(make_simple_tool())

        registry.clear()

        assert len(registry) == 0


# -----------------------------------------------------------------------------
# Tests: kinds and SimpleTool
# -----------------------------------------------------------------------------


class TestKindsAndSimpleTool:
    @pytest.mark.parametrize(
        ("kind", "mutating", "edit"),
        [
            (ToolKind.READ, False, False),
            (ToolKind.SEARCH, False, False),
            (ToolKind.EDIT, True, True),
            (ToolKind.DELETE, True, False),
            (ToolKind.EXECUTE, True, False),
        ],
    )
    def test_kind_flags(self, kind: ToolKind, mutating: bool, edit: bool) -> None:
        assert kind.is_mutating is mutating
        assert kind.is_edit is edit

    @pytest.mark.asyncio
    async def test_async_handler_receives_token_when_requested(self) -> None:
        received: list[CancellationToken] = []

        async def handler(args: Mapping[str, Any], token: CancellationToken) -> str:
            received.append(token)
            return args["arg"]

        tool = SimpleTool(spec=make_spec(), handler=handler, accepts_token=True)
        token = CancellationToken()

        assert await tool.execute({"arg": "x"}, token) == "x"
        assert received == [token]

    @pytest.mark.asyncio
    async def test_sync_handler(self) -> None:
        tool = make_simple_tool("echo", handler=lambda args: args["arg"] * 2)

        assert await tool.execute({"arg": "ab"}, CancellationToken()) == "abab"
