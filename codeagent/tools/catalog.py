from __future__ import annotations

from typing import Iterable, Optional

from ..registry import ToolDefinition, ToolRegistry
from .file_tools import FILE_TOOLS
from .memory_tools import MEMORY_TOOLS
from .shell_tool import SHELL_TOOL
from .skill_tools import SKILL_TOOLS
from .todo_tools import TODO_TOOLS
from .web_tools import WEB_TOOLS


def default_tools() -> list:
    return [*FILE_TOOLS, SHELL_TOOL, *WEB_TOOLS, *MEMORY_TOOLS, *SKILL_TOOLS, *TODO_TOOLS]


def build_default_registry(extra: Optional[Iterable[ToolDefinition]] = None) -> ToolRegistry:
    """Registry with the built-in tool set, plus any `extra` definitions."""
    registry = ToolRegistry()
    for tool in default_tools():
        registry.register(tool)
    for tool in extra or ():
        registry.register(tool)
    return registry
