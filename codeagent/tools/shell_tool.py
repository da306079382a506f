"""
Shell command execution inside the workspace.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import re
from typing import Optional

from pydantic import BaseModel, Field

from ..cancellation import AbortedError
from ..models import ToolContext, ToolResult
from ..registry import ToolDefinition, ToolExecutionError
from .file_tools import resolve_workspace_path

logger = logging.getLogger("codeagent")

DEFAULT_TIMEOUT_SECONDS = 30
MAX_TIMEOUT_SECONDS = 120
MAX_OUTPUT_CHARS = 50 * 1024

BLOCKED_COMMANDS = (
    "rm -rf /",
    "rm -rf /*",
    "rm -rf ~",
    "rm -rf ~/*",
    ":(){:|:&};:",
    "chmod -R 777 /",
)

BLOCKED_PATTERNS = (
    (re.compile(r"(^|[\s;&|])mkfs(\.\w+)?\b"), "filesystem formatting"),
    (re.compile(r"(^|[\s;&|])dd\s+[^|;&]*\bof=/dev/"), "raw device writes"),
    (re.compile(r"(^|[\s;&|])chown\s+-R\s+\S+\s+/(\s|$)"), "recursive chown of /"),
    (re.compile(r">\s*/dev/sd[a-z]"), "raw device writes"),
)


def blocked_reason(command: str) -> Optional[str]:
    """Reason a command is refused, or None if it may run."""
    normalized = re.sub(r"\s+", " ", command.strip())
    compact = normalized.replace(" ", "")
    for blocked in BLOCKED_COMMANDS:
        if normalized == blocked or normalized.startswith(blocked + " ") or compact == blocked.replace(" ", ""):
            return f"'{blocked}' is not allowed"
    for pattern, reason in BLOCKED_PATTERNS:
        if pattern.search(normalized):
            return f"{reason} is not allowed"
    return None


def _clip(text: str, label: str) -> str:
    if len(text) <= MAX_OUTPUT_CHARS:
        return text
    return text[:MAX_OUTPUT_CHARS] + f"\n({label} truncated)"


def format_output(stdout: str, stderr: str, exit_code: Optional[int]) -> str:
    output = _clip(stdout, "stdout") if stdout else ""
    if stderr:
        if output:
            output += "\n\n"
        output += "STDERR:\n" + _clip(stderr, "stderr")
    if not output:
        output = "(no output)"
    if exit_code:
        output += f"\n\n[Exit code: {exit_code}]"
    return output


class ShellParams(BaseModel):
    command: str = Field(..., min_length=1, description="Shell command to run")
    cwd: Optional[str] = Field(None, description="Working directory relative to the workspace")
    timeout: int = Field(
        DEFAULT_TIMEOUT_SECONDS,
        ge=1,
        le=MAX_TIMEOUT_SECONDS,
        description=f"Timeout in seconds (max {MAX_TIMEOUT_SECONDS})",
    )


async def _kill(proc: asyncio.subprocess.Process) -> None:
    if proc.returncode is None:
        with contextlib.suppress(ProcessLookupError):
            proc.kill()
        await proc.wait()


async def run_shell(params: ShellParams, ctx: ToolContext) -> ToolResult:
    command = params.command.strip()
    reason = blocked_reason(command)
    if reason:
        raise ToolExecutionError(f"Command blocked for safety: {reason}")
    cwd = resolve_workspace_path(ctx.workspace_dir, params.cwd)
    if not cwd.is_dir():
        raise ToolExecutionError(f"Working directory not found: {params.cwd}")

    logger.info("shell_start call_id=%s cwd=%s", ctx.call_id, cwd)
    proc = await asyncio.create_subprocess_shell(
        command,
        cwd=str(cwd),
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
    )
    try:
        stdout, stderr = await ctx.token.guard(asyncio.wait_for(proc.communicate(), timeout=params.timeout))
    except asyncio.TimeoutError as exc:
        await _kill(proc)
        raise ToolExecutionError(f"Command exceeded its {params.timeout}s limit and was killed") from exc
    except AbortedError:
        await _kill(proc)
        raise

    exit_code = proc.returncode
    logger.info("shell_done call_id=%s exit_code=%s", ctx.call_id, exit_code)
    return ToolResult(
        title=command if len(command) <= 60 else command[:57] + "...",
        output=format_output(
            stdout.decode("utf-8", errors="replace"),
            stderr.decode("utf-8", errors="replace"),
            exit_code,
        ),
        metadata={"exit_code": exit_code, "cwd": str(cwd)},
    )


SHELL_TOOL = ToolDefinition(
    id="shell",
    description=(
        "Run a shell command in the workspace directory. Default timeout is 30 seconds "
        "(max 120). Output is truncated to 50KB. Destructive commands are blocked."
    ),
    parameters=ShellParams,
    execute=run_shell,
    path_args=("cwd",),
)
