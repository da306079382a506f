"""
Task list persisted to `todos.json` in the workspace memory directory.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import List, Literal, Optional

from pydantic import BaseModel, Field, ValidationError

from ..memory.store import TODOS_FILE, atomic_write_text
from ..models import ToolContext, ToolResult
from ..registry import ToolDefinition

logger = logging.getLogger("codeagent")

STATUS_MARKS = {"pending": "[ ]", "in_progress": "[~]", "completed": "[x]"}


class TodoItem(BaseModel):
    id: str = Field(..., min_length=1, description="Stable identifier for the item")
    content: str = Field(..., min_length=1, description="What needs to be done")
    status: Literal["pending", "in_progress", "completed"] = Field("pending", description="Current status")


class TodoWriteParams(BaseModel):
    todos: List[TodoItem] = Field(..., description="The complete, updated todo list")


class TodoReadParams(BaseModel):
    pass


def _todos_path(ctx: ToolContext) -> Path:
    return ctx.memory_dir / TODOS_FILE


def load_todos(path: Path) -> List[TodoItem]:
    if not path.exists():
        return []
    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
        return [TodoItem.model_validate(item) for item in raw]
    except (OSError, ValueError, TypeError, ValidationError) as exc:
        logger.warning("todos_corrupt path=%s error=%s", path, exc)
        return []


def format_todos(todos: List[TodoItem]) -> str:
    if not todos:
        return "No todos."
    return "\n".join(f"{STATUS_MARKS[t.status]} {t.id}: {t.content}" for t in todos)


def _summary(todos: List[TodoItem], title: Optional[str] = None) -> ToolResult:
    active = sum(1 for t in todos if t.status != "completed")
    done = len(todos) - active
    return ToolResult(
        title=title or f"{active} active, {done} done",
        output=format_todos(todos),
        metadata={
            "total": len(todos),
            "active": active,
            "completed": done,
            "todos": [t.model_dump() for t in todos],
        },
    )


async def todo_read(params: TodoReadParams, ctx: ToolContext) -> ToolResult:
    return _summary(load_todos(_todos_path(ctx)))


async def todo_write(params: TodoWriteParams, ctx: ToolContext) -> ToolResult:
    path = _todos_path(ctx)
    atomic_write_text(path, json.dumps([t.model_dump() for t in params.todos], indent=2) + "\n")
    return _summary(params.todos)


TODO_TOOLS = [
    ToolDefinition(
        id="todo_read",
        description="Read the current task list.",
        parameters=TodoReadParams,
        execute=todo_read,
        read_only=True,
    ),
    ToolDefinition(
        id="todo_write",
        description=(
            "Replace the task list. Write all planned steps as pending at the start of a multi-step task, "
            "mark one in_progress at a time, and mark each completed as soon as it is done."
        ),
        parameters=TodoWriteParams,
        execute=todo_write,
    ),
]
