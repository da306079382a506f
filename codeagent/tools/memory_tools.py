"""
Agent-facing access to workspace memory (`.agentmemory/`).

`sync_memory` needs a summarization client; the runtime places one in
`ToolContext.services["summarization_client"]`.
"""

from __future__ import annotations

import asyncio
from typing import Optional

from pydantic import BaseModel, Field

from ..memory.store import MemoryStore
from ..memory.sync import MemorySyncEngine
from ..models import ToolContext, ToolResult
from ..registry import ToolDefinition, ToolExecutionError


def _store(ctx: ToolContext) -> MemoryStore:
    return MemoryStore(ctx.workspace_dir, ctx.memory_dir.name)


class EmptyParams(BaseModel):
    pass


class SyncMemoryParams(BaseModel):
    force: bool = Field(False, description="Re-summarize every file, ignoring the manifest")


async def sync_memory(params: SyncMemoryParams, ctx: ToolContext) -> ToolResult:
    client = ctx.services.get("summarization_client")
    if client is None:
        raise ToolExecutionError("No summarization client is configured for memory sync")
    engine = MemorySyncEngine(client, ctx.services.get("settings"))
    result = await engine.sync(ctx.workspace_dir, force=params.force, token=ctx.token)
    if result.error:
        return ToolResult.error("Memory sync failed", result.error, **result.to_dict())
    output = (
        f"Memory sync complete: {result.indexed} indexed, {result.skipped} unchanged, "
        f"{result.errors} errors in {result.duration:.1f}s."
    )
    if result.error_files:
        output += "\nFailed files:\n" + "\n".join(f"- {path}" for path in result.error_files)
    return ToolResult(title="Memory synced", output=output, metadata=result.to_dict())


class ReadMemoryParams(BaseModel):
    path: str = Field("index.md", description="Memory file relative to the memory directory, e.g. files/src-app.py.md")


async def read_memory(params: ReadMemoryParams, ctx: ToolContext) -> ToolResult:
    content = await asyncio.to_thread(_store(ctx).read, params.path)
    if content is None:
        raise ToolExecutionError(f"Memory file not found: {params.path}. Use list_memory to see available files.")
    return ToolResult(title=f"memory: {params.path}", output=content)


class WriteMemoryParams(BaseModel):
    content: str = Field(..., min_length=1, description="Note to append to today's journal")


async def write_memory(params: WriteMemoryParams, ctx: ToolContext) -> ToolResult:
    path = await asyncio.to_thread(_store(ctx).write_journal_entry, params.content)
    return ToolResult(
        title="Journal updated",
        output=f"Saved note to journal/{path.name}",
        metadata={"journal_file": path.name},
    )


class SearchMemoryParams(BaseModel):
    query: str = Field(..., min_length=1, description="Case-insensitive text to look for")


async def search_memory(params: SearchMemoryParams, ctx: ToolContext) -> ToolResult:
    hits = await asyncio.to_thread(_store(ctx).search, params.query)
    title = f"memory search: {params.query}"
    if not hits:
        return ToolResult(title=title, output="No matches found in memory.", metadata={"count": 0})
    sections = [f"{hit.file}:\n" + "\n".join(f"  {line}" for line in hit.matches) for hit in hits]
    return ToolResult(title=title, output="\n\n".join(sections), metadata={"count": len(hits)})


async def list_memory(params: EmptyParams, ctx: ToolContext) -> ToolResult:
    store = _store(ctx)
    files = await asyncio.to_thread(store.list_files)
    status = store.sync_status()
    if not status.initialized:
        return ToolResult(
            title="Memory not initialized",
            output="Workspace memory has not been created yet. Run sync_memory to index the workspace.",
            metadata={"count": 0},
        )
    header = f"index.md {'present' if status.has_index else 'missing'}; {status.file_count} files in manifest"
    listing = "\n".join(files) or "(no file summaries)"
    return ToolResult(title=f"{len(files)} memory files", output=f"{header}\n\n{listing}", metadata={"count": len(files)})


async def get_memory_context(params: EmptyParams, ctx: ToolContext) -> ToolResult:
    context: Optional[str] = await asyncio.to_thread(_store(ctx).load_context)
    if not context:
        return ToolResult(
            title="No memory context",
            output="No workspace memory yet. Run sync_memory to build the index.",
        )
    return ToolResult(title="Memory context", output=context)


MEMORY_TOOLS = [
    ToolDefinition(
        id="sync_memory",
        description="Index the workspace: summarize new or changed files into memory and refresh index.md.",
        parameters=SyncMemoryParams,
        execute=sync_memory,
        path_args=(),
    ),
    ToolDefinition(
        id="read_memory",
        description="Read a file from workspace memory (index.md, files/<slug>.md, journal/<date>.md).",
        parameters=ReadMemoryParams,
        execute=read_memory,
        read_only=True,
        path_args=(),
    ),
    ToolDefinition(
        id="write_memory",
        description="Append a timestamped note to today's memory journal.",
        parameters=WriteMemoryParams,
        execute=write_memory,
    ),
    ToolDefinition(
        id="search_memory",
        description="Search all memory documents for a string.",
        parameters=SearchMemoryParams,
        execute=search_memory,
        read_only=True,
    ),
    ToolDefinition(
        id="list_memory",
        description="List the file summaries stored in workspace memory.",
        parameters=EmptyParams,
        execute=list_memory,
        read_only=True,
    ),
    ToolDefinition(
        id="get_memory_context",
        description="Return the memory index plus the last week of journal entries.",
        parameters=EmptyParams,
        execute=get_memory_context,
        read_only=True,
    ),
]
