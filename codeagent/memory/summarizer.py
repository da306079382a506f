"""
Prompt construction and response parsing for file summarization.

Files are truncated per type, greedily packed into batches under a character
budget, and each batch becomes one model call.
"""

from __future__ import annotations

import re
from collections import Counter
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Dict, Iterable, List, Mapping, Sequence

PROMPT_OVERHEAD_CHARS = 200
TRUNCATION_MARKER = "\n\n... (truncated)"
MAX_TREE_DIRS = 30
MAX_TYPE_ROWS = 10
MAX_INDEXED_LISTED = 50

SUMMARY_SYSTEM_PROMPT = (
    "You summarize source files for a coding assistant's project memory. "
    "Be accurate and concise."
)

_TRUNCATE_LIMITS = {
    "json": 1500,
    "yaml": 1500,
    "yml": 1500,
    "toml": 1500,
    "txt": 1500,
    "css": 1500,
    "scss": 1500,
    "env": 500,
    "gitignore": 500,
    "md": 2000,
    "sql": 2000,
    "graphql": 2000,
    "prisma": 2000,
    "html": 2000,
    "ts": 3000,
    "tsx": 3000,
    "js": 3000,
    "jsx": 3000,
    "py": 3000,
    "go": 3000,
    "rs": 3000,
}
DEFAULT_TRUNCATE_LIMIT = 2000

_FILE_TYPES = {
    "ts": "TypeScript",
    "tsx": "TypeScript React Component",
    "js": "JavaScript",
    "jsx": "JavaScript React Component",
    "md": "Markdown",
    "json": "JSON",
    "yaml": "YAML",
    "yml": "YAML",
    "toml": "TOML",
    "py": "Python",
    "go": "Go",
    "rs": "Rust",
    "html": "HTML",
    "css": "CSS",
    "scss": "SCSS",
    "less": "Less",
    "java": "Java",
    "c": "C",
    "cpp": "C++",
    "h": "C Header",
    "hpp": "C++ Header",
    "sh": "Shell Script",
    "bash": "Bash Script",
    "zsh": "Zsh Script",
    "sql": "SQL",
    "graphql": "GraphQL",
    "prisma": "Prisma Schema",
    "dockerfile": "Dockerfile",
    "txt": "Text",
}

KEY_FILE_NAMES = {"package.json", "cargo.toml", "pyproject.toml", "setup.py", "go.mod"}


@dataclass
class PreparedFile:
    relative_path: str
    extension: str
    content: str

    @property
    def char_count(self) -> int:
        return len(self.relative_path) + len(self.content) + PROMPT_OVERHEAD_CHARS

    @property
    def file_type(self) -> str:
        return file_type(self.extension)


def truncate_limit(extension: str) -> int:
    return _TRUNCATE_LIMITS.get(extension.lower(), DEFAULT_TRUNCATE_LIMIT)


def file_type(extension: str) -> str:
    return _FILE_TYPES.get(extension.lower(), extension.upper())


def truncate_content(content: str, max_chars: int) -> str:
    """Cut to `max_chars`, preferring a newline in the last fifth of the window."""
    if len(content) <= max_chars:
        return content
    window = content[:max_chars]
    last_newline = window.rfind("\n")
    if last_newline > max_chars * 0.8:
        return window[:last_newline] + TRUNCATION_MARKER
    return window + TRUNCATION_MARKER


def prepare_file(relative_path: str, extension: str, content: str) -> PreparedFile:
    return PreparedFile(
        relative_path=relative_path,
        extension=extension,
        content=truncate_content(content, truncate_limit(extension)),
    )


def pack_batches(
    files: Iterable[PreparedFile],
    max_chars: int = 12000,
    max_files: int = 8,
) -> List[List[PreparedFile]]:
    """
    Greedy packing in input order.

    A batch never exceeds `max_chars` or `max_files`; a file that alone is over
    `max_chars` is emitted as its own single-file batch.
    """
    batches: List[List[PreparedFile]] = []
    current: List[PreparedFile] = []
    current_chars = 0
    for item in files:
        size = item.char_count
        if size > max_chars:
            if current:
                batches.append(current)
                current, current_chars = [], 0
            batches.append([item])
            continue
        if len(current) >= max_files or current_chars + size > max_chars:
            if current:
                batches.append(current)
            current, current_chars = [item], size
        else:
            current.append(item)
            current_chars += size
    if current:
        batches.append(current)
    return batches


def single_file_prompt(item: PreparedFile) -> str:
    return (
        f"Analyze this {item.file_type} file. Reply with a brief summary (max 150 words).\n\n"
        f"File: {item.relative_path}\n\n"
        f"```{item.extension}\n{item.content}\n```\n\n"
        "Format:\n"
        "**Summary**: 1-2 sentences\n"
        "**Key Elements**: Main exports/functions/classes (if any)\n"
        "**Purpose**: Why this file exists"
    )


def batch_prompt(items: Sequence[PreparedFile]) -> str:
    sections = "\n\n".join(
        f"--- FILE {idx}: {item.relative_path} ({item.file_type}) ---\n```{item.extension}\n{item.content}\n```"
        for idx, item in enumerate(items, start=1)
    )
    return (
        f"Analyze these {len(items)} files. For EACH file, provide a brief summary.\n\n"
        f"{sections}\n\n"
        "FORMAT (repeat for each file, using the full path shown above):\n"
        "### <path>\n"
        "**Summary**: 1-2 sentences\n"
        "**Key Elements**: Main exports/functions (if any)\n"
        "**Purpose**: Why it exists\n\n"
        "Keep each summary under 100 words. Be concise."
    )


def extract_file_section(response: str, relative_path: str) -> str:
    """Find the `### <path>` (or `### <basename>`) section for one file in a batch reply."""
    base_name = relative_path.rsplit("/", 1)[-1]
    patterns = [
        rf"###\s*\[?`?{re.escape(relative_path)}`?\]?[^\n]*\n(.*?)(?=\n###|\Z)",
        rf"###\s*\[?`?{re.escape(base_name)}`?\]?[^\n]*\n(.*?)(?=\n###|\Z)",
        rf"\*\*{re.escape(base_name)}\*\*(.*?)(?=\n\*\*[^*\n]+\*\*\s*\n|\n###|\Z)",
    ]
    for pattern in patterns:
        match = re.search(pattern, response, flags=re.IGNORECASE | re.DOTALL)
        if match and match.group(1).strip():
            return match.group(1).strip()
    return ""


def format_header(item: PreparedFile, indexed_at: datetime | None = None) -> str:
    indexed_at = indexed_at or datetime.now(timezone.utc)
    return (
        f"# {item.relative_path.rsplit('/', 1)[-1]}\n"
        f"Path: `{item.relative_path}`\n"
        f"Type: {item.file_type}\n"
        f"Indexed: {indexed_at.isoformat()}\n\n"
        "---\n\n"
    )


def error_stub(item: PreparedFile, message: str) -> str:
    return format_header(item) + f"Summary not generated. Error:\n{message}\n"


def split_batch_response(items: Sequence[PreparedFile], response: str) -> Dict[str, str]:
    """Map each file to its full memory document (header + section)."""
    if len(items) == 1:
        return {items[0].relative_path: format_header(items[0]) + response.strip()}
    return {
        item.relative_path: format_header(item)
        + (extract_file_section(response, item.relative_path) or "Summary not generated.")
        for item in items
    }


# -- index.md ---------------------------------------------------------------


def build_directory_tree(paths: Iterable[str]) -> str:
    dirs = set()
    for path in paths:
        parts = path.split("/")
        for depth in range(1, len(parts)):
            dirs.add("/".join(parts[:depth]))
    ordered = sorted(dirs)
    lines = [
        "  " * (d.count("/")) + d.rsplit("/", 1)[-1] + "/"
        for d in ordered[:MAX_TREE_DIRS]
    ]
    if len(ordered) > MAX_TREE_DIRS:
        lines.append(f"... and {len(ordered) - MAX_TREE_DIRS} more directories")
    return "\n".join(lines) or "(no directories)"


def type_distribution(extensions: Iterable[str]) -> List[tuple]:
    return Counter(extensions).most_common(MAX_TYPE_ROWS)


def key_files(paths: Iterable[str]) -> List[str]:
    found = [p for p in paths if "readme" in p.lower() or p.lower() in KEY_FILE_NAMES]
    return found[:3]


def index_prompt(project: str, paths: Sequence[str], extensions: Sequence[str]) -> str:
    distribution = "\n".join(f"- .{ext}: {count} files" for ext, count in type_distribution(extensions))
    return (
        "Analyze this project structure and create a high-level overview.\n\n"
        f"Project: {project}\n"
        f"Total files indexed: {len(paths)}\n\n"
        f"Directory structure:\n{build_directory_tree(paths)}\n\n"
        f"File type distribution:\n{distribution}\n\n"
        f"Key files found: {', '.join(key_files(paths)) or 'None'}\n\n"
        "Create a concise project overview with:\n"
        "1. **Project Type**: What kind of project is this (web app, CLI tool, library, etc)?\n"
        "2. **Tech Stack**: Main technologies and frameworks used\n"
        "3. **Structure**: Brief description of how the code is organized\n"
        "4. **Key Directories**: What the main directories contain\n\n"
        "Keep it concise (under 300 words). This will be used as context for an AI assistant."
    )


def build_index_document(
    project: str,
    paths: Sequence[str],
    entries: Mapping[str, object],
    overview: str,
    synced_at: datetime | None = None,
) -> str:
    synced_at = synced_at or datetime.now(timezone.utc)
    indexed = sorted(entries.keys())
    listed = "\n".join(f"- `{path}`" for path in indexed[:MAX_INDEXED_LISTED])
    more = (
        f"\n\n... and {len(indexed) - MAX_INDEXED_LISTED} more files"
        if len(indexed) > MAX_INDEXED_LISTED
        else ""
    )
    return (
        f"# {project} - Project Memory\n\n"
        f"Last synced: {synced_at.isoformat()}\n"
        f"Files indexed: {len(paths)}\n\n"
        "---\n\n"
        f"{overview.strip()}\n\n"
        "---\n\n"
        "## Directory Tree\n\n"
        f"```\n{build_directory_tree(paths)}\n```\n\n"
        "## Indexed Files\n\n"
        f"{listed}{more}\n"
    )
