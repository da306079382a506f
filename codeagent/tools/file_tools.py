"""
Workspace file tools: read, write, edit, ls, glob, grep.

Every path argument resolves relative to the workspace root and is rejected
if it escapes it.
"""

from __future__ import annotations

import asyncio
import base64
import mimetypes
import os
import re
from pathlib import Path
from typing import List, Optional

from pydantic import BaseModel, Field

from ..memory.sync import SKIP_DIRS, TEXT_EXTENSIONS
from ..models import Attachment, ToolContext, ToolResult
from ..registry import ToolDefinition, ToolExecutionError

MAX_READ_LINES = 2000
MAX_LINE_LENGTH = 2000
MAX_LIST_RESULTS = 100
MAX_SEARCH_DEPTH = 10

ATTACHMENT_TYPES = {
    ".png": "image/png",
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".gif": "image/gif",
    ".webp": "image/webp",
    ".pdf": "application/pdf",
}


def resolve_workspace_path(workspace_dir: Path, raw: Optional[str]) -> Path:
    """Resolve `raw` against the workspace; raise if the result leaves it."""
    root = Path(workspace_dir).resolve()
    if not raw:
        return root
    candidate = Path(raw).expanduser()
    if not candidate.is_absolute():
        candidate = root / candidate
    candidate = candidate.resolve()
    if not candidate.is_relative_to(root):
        raise ToolExecutionError(f"Path is outside the workspace: {raw}")
    return candidate


def _relative(workspace_dir: Path, path: Path) -> str:
    try:
        return path.relative_to(Path(workspace_dir).resolve()).as_posix()
    except ValueError:
        return str(path)


def format_numbered(content: str, offset: int, limit: int) -> tuple:
    lines = content.split("\n")
    window = lines[offset : offset + limit]
    numbered = []
    for number, line in enumerate(window, start=offset + 1):
        if len(line) > MAX_LINE_LENGTH:
            line = line[:MAX_LINE_LENGTH] + "..."
        numbered.append("%5d| %s" % (number, line))
    last_read = offset + len(window)
    has_more = len(lines) > last_read
    output = "<file>\n" + "\n".join(numbered)
    if has_more:
        output += f"\n\n(File has more lines. Use 'offset' to read beyond line {last_read})"
    else:
        output += f"\n\n(End of file - total {len(lines)} lines)"
    output += "\n</file>"
    return output, has_more


# -- read -------------------------------------------------------------------


class ReadParams(BaseModel):
    file_path: str = Field(..., description="Path of the file to read, relative to the workspace")
    offset: int = Field(0, ge=0, description="0-based line to start reading from")
    limit: int = Field(MAX_READ_LINES, ge=1, description="Number of lines to read")


async def read_file(params: ReadParams, ctx: ToolContext) -> ToolResult:
    path = resolve_workspace_path(ctx.workspace_dir, params.file_path)
    if not path.is_file():
        raise ToolExecutionError(f"File not found: {params.file_path}")

    mime_type = ATTACHMENT_TYPES.get(path.suffix.lower())
    if mime_type:
        data = await asyncio.to_thread(path.read_bytes)
        return ToolResult(
            title=path.name,
            output=f"Attached {path.name} ({mime_type}, {len(data)} bytes)",
            metadata={"mime_type": mime_type, "size": len(data)},
            attachments=[
                Attachment(mime_type=mime_type, data=base64.b64encode(data).decode("ascii"), name=path.name)
            ],
        )

    try:
        content = await asyncio.to_thread(path.read_text, encoding="utf-8")
    except UnicodeDecodeError as exc:
        guessed = mimetypes.guess_type(path.name)[0] or "binary"
        raise ToolExecutionError(f"Cannot read {params.file_path}: not a text file ({guessed})") from exc
    output, truncated = format_numbered(content, params.offset, params.limit)
    return ToolResult(title=path.name, output=output, metadata={"truncated": truncated})


# -- write ------------------------------------------------------------------


class WriteParams(BaseModel):
    file_path: str = Field(..., description="Path of the file to write")
    content: str = Field(..., description="Full file content")


async def write_file(params: WriteParams, ctx: ToolContext) -> ToolResult:
    path = resolve_workspace_path(ctx.workspace_dir, params.file_path)
    path.parent.mkdir(parents=True, exist_ok=True)
    await asyncio.to_thread(path.write_text, params.content, encoding="utf-8")
    lines = params.content.count("\n") + 1
    return ToolResult(
        title=path.name,
        output=f"Successfully wrote {lines} lines to {_relative(ctx.workspace_dir, path)}",
        metadata={"lines": lines},
    )


# -- edit -------------------------------------------------------------------


class EditParams(BaseModel):
    file_path: str = Field(..., description="Path of the file to edit")
    old_string: str = Field(..., min_length=1, description="Exact text to replace, including whitespace")
    new_string: str = Field(..., description="Replacement text")
    replace_all: bool = Field(False, description="Replace every occurrence instead of exactly one")


async def edit_file(params: EditParams, ctx: ToolContext) -> ToolResult:
    path = resolve_workspace_path(ctx.workspace_dir, params.file_path)
    if not path.is_file():
        raise ToolExecutionError(f"File not found: {params.file_path}")
    content = await asyncio.to_thread(path.read_text, encoding="utf-8")

    occurrences = content.count(params.old_string)
    if occurrences == 0:
        raise ToolExecutionError(f"Could not find the specified text to replace in {params.file_path}")
    if occurrences > 1 and not params.replace_all:
        raise ToolExecutionError(
            f"Found {occurrences} occurrences of the text in {params.file_path}; "
            "provide more context to make it unique or set replace_all"
        )

    count = occurrences if params.replace_all else 1
    updated = content.replace(params.old_string, params.new_string, count)
    await asyncio.to_thread(path.write_text, updated, encoding="utf-8")
    return ToolResult(
        title=path.name,
        output=f"Successfully edited {_relative(ctx.workspace_dir, path)} ({count} replacement{'s' if count != 1 else ''})",
        metadata={"replacements": count},
    )


# -- ls ---------------------------------------------------------------------


class ListParams(BaseModel):
    path: str = Field(".", description="Directory to list, relative to the workspace")


async def list_directory(params: ListParams, ctx: ToolContext) -> ToolResult:
    path = resolve_workspace_path(ctx.workspace_dir, params.path)
    if not path.is_dir():
        raise ToolExecutionError(f"Directory not found: {params.path}")
    dirs: List[str] = []
    files: List[str] = []
    for entry in os.scandir(path):
        if entry.name.startswith("."):
            continue
        if entry.is_dir():
            if entry.name not in SKIP_DIRS:
                dirs.append(entry.name + "/")
        else:
            files.append(entry.name)
    listing = sorted(dirs) + sorted(files)
    return ToolResult(
        title=_relative(ctx.workspace_dir, path) or ".",
        output="\n".join(listing) or "(empty directory)",
        metadata={"count": len(listing)},
    )


# -- glob -------------------------------------------------------------------


class GlobParams(BaseModel):
    pattern: str = Field(..., description='Glob pattern, e.g. "*.py" or "src/**/*.ts"')
    path: Optional[str] = Field(None, description="Base directory (defaults to the workspace root)")


def _is_ignored(path: Path, base: Path) -> bool:
    parts = path.relative_to(base).parts
    return any(part in SKIP_DIRS or part.startswith(".") for part in parts)


def _glob(base: Path, pattern: str) -> List[Path]:
    matches = [p for p in base.glob(pattern) if p.is_file() and not _is_ignored(p, base)]
    matches.sort(key=lambda p: p.stat().st_mtime, reverse=True)
    return matches


async def glob_files(params: GlobParams, ctx: ToolContext) -> ToolResult:
    base = resolve_workspace_path(ctx.workspace_dir, params.path)
    if not base.is_dir():
        raise ToolExecutionError(f"Directory not found: {params.path}")
    try:
        matches = await asyncio.to_thread(_glob, base, params.pattern)
    except (ValueError, NotImplementedError) as exc:
        raise ToolExecutionError(f"Invalid glob pattern {params.pattern!r}: {exc}") from exc

    title = f"glob: {params.pattern}"
    if not matches:
        return ToolResult(title=title, output="No matches found", metadata={"count": 0})
    shown = [_relative(ctx.workspace_dir, p) for p in matches[:MAX_LIST_RESULTS]]
    return ToolResult(
        title=title,
        output="\n".join(shown),
        metadata={"count": len(matches), "truncated": len(matches) > MAX_LIST_RESULTS},
    )


# -- grep -------------------------------------------------------------------


class GrepParams(BaseModel):
    pattern: str = Field(..., description="Regular expression to search for (case-insensitive)")
    path: Optional[str] = Field(None, description="Directory to search (defaults to the workspace root)")
    file_pattern: Optional[str] = Field(None, description='Only search files matching this glob, e.g. "*.py"')


def _grep(workspace_dir: Path, base: Path, regex: "re.Pattern[str]", file_pattern: Optional[str]) -> List[str]:
    results: List[str] = []

    def search_file(path: Path) -> None:
        try:
            lines = path.read_text(encoding="utf-8").splitlines()
        except (OSError, UnicodeDecodeError):
            return
        for number, line in enumerate(lines, start=1):
            if len(results) >= MAX_LIST_RESULTS:
                return
            if regex.search(line):
                results.append(f"{_relative(workspace_dir, path)}:{number}: {line.strip()}")

    def search(directory: Path, depth: int) -> None:
        if depth > MAX_SEARCH_DEPTH:
            return
        try:
            entries = sorted(os.scandir(directory), key=lambda e: e.name)
        except OSError:
            return
        for entry in entries:
            if len(results) >= MAX_LIST_RESULTS:
                return
            if entry.name.startswith("."):
                continue
            path = Path(entry.path)
            if entry.is_dir():
                if entry.name not in SKIP_DIRS:
                    search(path, depth + 1)
                continue
            if file_pattern and not path.match(file_pattern):
                continue
            if path.suffix.lstrip(".").lower() not in TEXT_EXTENSIONS:
                continue
            search_file(path)

    if base.is_file():
        search_file(base)
    else:
        search(base, 0)
    return results


async def grep_files(params: GrepParams, ctx: ToolContext) -> ToolResult:
    base = resolve_workspace_path(ctx.workspace_dir, params.path)
    if not base.exists():
        raise ToolExecutionError(f"Path not found: {params.path}")
    try:
        regex = re.compile(params.pattern, re.IGNORECASE)
    except re.error as exc:
        raise ToolExecutionError(f"Invalid regular expression {params.pattern!r}: {exc}") from exc

    results = await asyncio.to_thread(_grep, Path(ctx.workspace_dir), base, regex, params.file_pattern)
    title = f"grep: {params.pattern}"
    if not results:
        return ToolResult(title=title, output="No matches found", metadata={"count": 0})
    return ToolResult(
        title=title,
        output="\n".join(results),
        metadata={"count": len(results), "truncated": len(results) >= MAX_LIST_RESULTS},
    )


FILE_TOOLS = [
    ToolDefinition(
        id="read",
        description=(
            "Read a file from the workspace. Output lines are numbered. Use offset and limit "
            "for large files. Images and PDFs are attached for the model to view."
        ),
        parameters=ReadParams,
        execute=read_file,
        read_only=True,
    ),
    ToolDefinition(
        id="write",
        description="Write a file in the workspace, creating parent directories and overwriting existing content.",
        parameters=WriteParams,
        execute=write_file,
    ),
    ToolDefinition(
        id="edit",
        description=(
            "Replace exact text in a file. old_string must match exactly once unless "
            "replace_all is set. Use write to create new files."
        ),
        parameters=EditParams,
        execute=edit_file,
    ),
    ToolDefinition(
        id="ls",
        description="List a directory. Directories end with '/'. Hidden and build directories are skipped.",
        parameters=ListParams,
        execute=list_directory,
        read_only=True,
    ),
    ToolDefinition(
        id="glob",
        description="Find files matching a glob pattern, newest first (at most 100 results).",
        parameters=GlobParams,
        execute=glob_files,
        read_only=True,
    ),
    ToolDefinition(
        id="grep",
        description="Search text files for a regular expression. Returns 'path:line: text' (at most 100 matches).",
        parameters=GrepParams,
        execute=grep_files,
        read_only=True,
    ),
]
