from __future__ import annotations

from typing import Optional

import pytest
from pydantic import BaseModel, Field

from codeagent.models import ToolContext, ToolResult
from codeagent.registry import ToolDefinition, ToolRegistry, ToolValidationError
from codeagent.tools.catalog import build_default_registry


class SearchParams(BaseModel):
    query: str = Field(..., min_length=1, description="What to look for")
    limit: int = Field(10, ge=1, le=50)
    exact: bool = False
    path: Optional[str] = None


async def _noop(params: SearchParams, ctx: ToolContext) -> ToolResult:
    return ToolResult(title="noop", output="")


def _tool(tool_id: str = "search", description: str = "Search things") -> ToolDefinition:
    return ToolDefinition(id=tool_id, description=description, parameters=SearchParams, execute=_noop, read_only=True)


def test_first_registration_wins() -> None:
    registry = ToolRegistry()
    assert registry.register(_tool(description="first")) is True
    assert registry.register(_tool(description="second")) is False
    assert len(registry) == 1
    assert registry.get("search").description == "first"
    assert "search" in registry
    assert registry.get("missing") is None


def test_catalog_exposes_function_specs() -> None:
    registry = ToolRegistry()
    registry.register(_tool())

    [spec] = registry.catalog()

    assert spec["name"] == "search"
    assert spec["description"] == "Search things"
    assert "title" not in spec["parameters"]
    assert spec["parameters"]["required"] == ["query"]
    assert spec["parameters"]["properties"]["limit"]["maximum"] == 50


def test_validate_returns_typed_params() -> None:
    registry = ToolRegistry()
    registry.register(_tool())

    params = registry.validate("search", {"query": "needle", "limit": 5})

    assert isinstance(params, SearchParams)
    assert (params.query, params.limit, params.exact, params.path) == ("needle", 5, False, None)
    assert registry.validate("search", {"query": "x"}).limit == 10


def test_validate_collects_every_error() -> None:
    registry = ToolRegistry()
    registry.register(_tool())

    with pytest.raises(ToolValidationError) as exc:
        registry.validate("search", {"limit": 500})

    paths = [err["path"] for err in exc.value.errors]
    assert paths == [[], ["limit"]]
    assert exc.value.tool_name == "search"
    assert "Invalid arguments for tool search" in str(exc.value)
    assert "'query' is a required property" in str(exc.value)


def test_validate_rejects_non_object_arguments() -> None:
    registry = ToolRegistry()
    registry.register(_tool())
    with pytest.raises(ToolValidationError, match="arguments must be an object"):
        registry.validate("search", ["needle"])


def test_validate_coerces_string_booleans() -> None:
    registry = ToolRegistry()
    registry.register(_tool())

    assert registry.validate("search", {"query": "x", "exact": "TRUE"}).exact is True
    assert registry.validate("search", {"query": "x", "exact": "false"}).exact is False
    with pytest.raises(ToolValidationError):
        registry.validate("search", {"query": "x", "exact": "maybe"})


def test_validate_unknown_tool() -> None:
    with pytest.raises(KeyError):
        ToolRegistry().validate("nope", {})


def test_default_registry_contents() -> None:
    registry = build_default_registry()

    assert registry.names() == [
        "read", "write", "edit", "ls", "glob", "grep",
        "shell",
        "web_fetch", "web_search",
        "sync_memory", "read_memory", "write_memory", "search_memory", "list_memory", "get_memory_context",
        "list_skills", "load_skill",
        "todo_read", "todo_write",
    ]
    read_only = {tool.id for tool in registry.list() if tool.read_only}
    assert {"read", "ls", "glob", "grep", "web_fetch", "todo_read"} <= read_only
    assert not {"write", "edit", "shell", "sync_memory", "todo_write"} & read_only
    # Every schema is a valid Draft-7 document.
    assert len(registry.catalog()) == 19


def test_extra_tools_cannot_shadow_builtins() -> None:
    registry = build_default_registry(extra=[_tool("read", "impostor"), _tool("search")])
    assert registry.get("read").description != "impostor"
    assert "search" in registry
