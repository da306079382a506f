from __future__ import annotations

import platform
from datetime import date
from pathlib import Path
from typing import Optional, Sequence

BASE_INSTRUCTIONS = """You are a coding assistant working inside the user's project.

# Working style
- Understand before you change: read the relevant files and search the codebase first.
- Make focused edits with the edit tool; use write only for new files or full rewrites.
- After changing code, verify it (run the tests or the relevant command with the shell tool).
- For multi-step work, keep a task list with todo_write and update it as you go.
- Be concise. Explain what you changed and why in a few sentences when you finish.

# Tools
- Paths are relative to the workspace root. Never touch files outside it.
- Independent read-only lookups (read, grep, glob, ls) can be requested together in one turn.
- If a tool call fails, read the error and adjust; do not repeat the identical call.
- Workspace memory holds per-file summaries and a project index. Use search_memory or
  read_memory to orient yourself in a large codebase, and write_memory to note decisions
  worth keeping across sessions.
- Skills are reusable instructions. Use list_skills and load_skill when a task matches one."""


def build_system_prompt(
    workspace_dir: Path | str,
    *,
    tool_names: Sequence[str] = (),
    context: str = "",
    memory_index: Optional[str] = None,
    today: Optional[date] = None,
) -> str:
    """Base instructions, then environment, tiered instructions and the memory index."""
    today = today or date.today()
    sections = [
        BASE_INSTRUCTIONS,
        "# Environment\n"
        f"- Workspace: {Path(workspace_dir)}\n"
        f"- Platform: {platform.system() or 'unknown'}\n"
        f"- Date: {today.isoformat()}"
        + (f"\n- Available tools: {', '.join(tool_names)}" if tool_names else ""),
    ]
    if context.strip():
        sections.append("# Instructions\n\n" + context.strip())
    if memory_index and memory_index.strip():
        sections.append("# Workspace Memory Index\n\n" + memory_index.strip())
    return "\n\n".join(sections)
