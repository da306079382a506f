"""CLI entry point for the codeagent package."""

from __future__ import annotations

import asyncio
import json
import logging
import os
import platform
import shutil
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

OPENROUTER_KEYS_URL = "https://openrouter.ai/keys"
MIN_PYTHON = (3, 10)


def _print_setup_banner(provider: str, port: int, *, for_startup: bool = True) -> None:
    """Print setup/LLM instructions. If for_startup, show 'server started' line; else show 'Setup' header."""
    provider_note = "no API key required" if provider == "stub" else "API key from .env"
    base = f"http://localhost:{port}"
    print()
    if for_startup:
        print("✅ Agent runtime started")
    else:
        print("codeagent - Setup")
    print("Provider: {} ({})".format(provider, provider_note))
    print()
    print("Docs:     {}/docs".format(base))
    print("Tools:    {}/tools".format(base))
    print("Health:   {}/health".format(base))
    print()
    print("────────────────────────────────────────────")
    print("Get an API key from OpenRouter (one key for many models):")
    print("   {}".format(OPENROUTER_KEYS_URL))
    print()
    print("Create a .env file in this folder (or edit it if you already have one).")
    print("   Mac/Linux:  nano .env")
    print("   Windows:    notepad .env")
    print()
    print("Copy the block below into .env and replace YOUR_KEY_HERE with your key.")
    print("   OpenAI (OPENAI_API_KEY) and Gemini (GEMINI_API_KEY) work the same way.")
    print()
    print("   PROVIDER=openrouter")
    print("   OPENROUTER_API_KEY=YOUR_KEY_HERE")
    print("   OPENROUTER_MODEL=openai/gpt-4o-mini")
    print("   APPROVAL_MODE=default        # default | auto_edit | yolo | plan")
    print()
    print("Then restart: stop the server (Ctrl+C) and run codeagent again.")
    print()


def _python_version_str() -> str:
    return ".".join(str(part) for part in sys.version_info[:3])


def _print_help() -> None:
    print("codeagent CLI")
    print()
    print("Usage:")
    print("  codeagent                     Start the HTTP server")
    print("  codeagent serve               Start the HTTP server")
    print("  codeagent setup               Print setup/env guidance")
    print("  codeagent doctor              Print install/environment diagnostics")
    print("  codeagent sync [dir] [--force]")
    print("                                Index a workspace into .agentmemory/")
    print('  codeagent chat "<prompt>"     Run one prompt against the current directory')
    print()


def _print_doctor() -> None:
    from .config import get_settings
    from .memory.store import MemoryStore

    settings = get_settings()
    workspace = Path(settings.workspace_dir).expanduser().resolve()
    status = MemoryStore(workspace, settings.memory_dir_name).sync_status()

    print("codeagent Doctor")
    print()
    print(f"Platform:  {platform.platform()}")
    print(f"Python:    {_python_version_str()}")
    print(f"Exe:       {sys.executable}")
    print(f"In venv:   {'yes' if sys.prefix != sys.base_prefix else 'no'}")
    print(f"PATH bin:  {shutil.which('codeagent') or 'not found'}")
    print()
    print(f"Provider:  {settings.provider_name}")
    keys = {
        "openai": settings.openai_api_key,
        "openrouter": settings.openrouter_api_key,
        "gemini": settings.gemini_api_key,
    }
    for name, key in keys.items():
        print(f"  {name + ' key:':<16}{'set' if key else 'missing'}")
    print(f"Approval:  {settings.approval_mode}")
    print(f"Workspace: {workspace}")
    if status.initialized:
        print(f"Memory:    {status.file_count} files indexed, index {'present' if status.has_index else 'missing'}")
    else:
        print("Memory:    not initialized (run: codeagent sync)")
    if sys.version_info < MIN_PYTHON:
        print(f"Issue: Python is below required minimum {MIN_PYTHON[0]}.{MIN_PYTHON[1]}.")
    if settings.provider_name != "stub" and not keys.get(settings.provider_name):
        print(f"Issue: PROVIDER={settings.provider_name} but its API key is not set; the stub provider will be used.")


def _split_flags(args: List[str]) -> tuple:
    flags = {a for a in args if a.startswith("--")}
    positional = [a for a in args if not a.startswith("--")]
    return positional, flags


def _run_sync(args: List[str]) -> int:
    from .memory.sync import MemorySyncEngine, SyncProgress
    from .providers import build_summarization_client

    positional, flags = _split_flags(args)
    workspace = Path(positional[0] if positional else ".").expanduser().resolve()
    if not workspace.is_dir():
        print(f"Error: workspace directory not found: {workspace}", file=sys.stderr)
        return 2

    def on_progress(progress: SyncProgress) -> None:
        if progress.phase == "summarizing" and progress.total:
            print(f"  summarizing {progress.current}/{progress.total} {progress.message}")
        elif progress.phase in {"scanning", "indexing"}:
            print(f"  {progress.phase}...")

    engine = MemorySyncEngine(build_summarization_client())
    print(f"Syncing {workspace}")
    result = asyncio.run(engine.sync(workspace, force="--force" in flags, on_progress=on_progress))
    if result.error:
        print(f"Error: {result.error}", file=sys.stderr)
        return 1
    print(
        f"Done: {result.indexed} indexed, {result.skipped} unchanged, "
        f"{result.errors} errors ({result.duration:.1f}s)"
    )
    for path in result.error_files:
        print(f"  failed: {path}")
    return 0 if result.errors == 0 else 1


async def _ask_approval(tool_name: str, args: Dict[str, Any]) -> bool:
    if not sys.stdin.isatty():
        return False
    preview = json.dumps(args, sort_keys=True)
    if len(preview) > 200:
        preview = preview[:197] + "..."
    answer = await asyncio.to_thread(input, f"\nAllow {tool_name} {preview}? [y/N] ")
    return answer.strip().lower() in {"y", "yes"}


def _print_event(event: Any) -> None:
    kind = event.type
    if kind in {"block_start", "block_update"} and event.block is not None and event.block.format == "text":
        print(event.data.get("delta", ""), end="", flush=True)
    elif kind == "block_end" and event.block is not None and event.block.format == "text":
        print()
    elif kind == "tool_result" and event.block is not None:
        marker = "✗" if event.block.content.get("is_error") else "✓"
        print(f"  {marker} {event.block.content.get('name')}: {event.block.content.get('title')}")
    elif kind in {"loop_warning", "compressed", "max_iterations"}:
        print(f"  [{kind}] {json.dumps(event.data, sort_keys=True)}")
    elif kind == "policy_blocked":
        print(f"  [blocked] {event.error}")
    elif kind in {"error", "aborted"}:
        print(f"[{kind}] {event.error}", file=sys.stderr)


async def _chat(prompt: str, workspace: Path) -> int:
    from .cancellation import CancellationToken
    from .config import get_settings
    from .context_manager import ContextManager
    from .policy import create_policy_engine
    from .providers import build_provider, build_summarization_client
    from .runtime import AgentRuntime
    from .tools.catalog import build_default_registry

    settings = get_settings()
    runtime = AgentRuntime(
        build_provider(settings),
        build_default_registry(),
        ContextManager(workspace, global_dir=settings.global_memory_dir),
        policy_engine=create_policy_engine(settings.approval_mode),
        approval_handler=_ask_approval,
        summarization_client=build_summarization_client(settings),
        settings=settings,
    )
    token = CancellationToken()
    failed = False
    try:
        async for event in runtime.send_message(prompt, token=token):
            _print_event(event)
            failed = failed or event.type in {"error", "aborted"}
    except (KeyboardInterrupt, asyncio.CancelledError):
        token.cancel("Interrupted")
        return 130
    return 1 if failed else 0


def _run_chat(args: List[str]) -> int:
    positional, _ = _split_flags(args)
    if not positional:
        print('Usage: codeagent chat "<prompt>"', file=sys.stderr)
        return 2
    from .config import get_settings

    workspace = Path(get_settings().workspace_dir).expanduser().resolve()
    return asyncio.run(_chat(" ".join(positional), workspace))


def _configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )


def main(argv: Optional[List[str]] = None) -> None:
    """Run the HTTP server or handle setup/doctor/sync/chat commands."""
    from .config import get_settings

    argv = list(sys.argv[1:] if argv is None else argv)
    settings = get_settings()
    port = settings.http_port
    host = os.environ.get("HOST", "0.0.0.0")
    _configure_logging(settings.log_level)

    subcommand = argv[0].strip().lower() if argv else "serve"
    if subcommand in {"-h", "--help", "help"}:
        _print_help()
        sys.exit(0)
    if subcommand == "setup":
        _print_setup_banner(provider=settings.provider_name, port=port, for_startup=False)
        sys.exit(0)
    if subcommand == "doctor":
        _print_doctor()
        sys.exit(0)
    if subcommand == "sync":
        sys.exit(_run_sync(argv[1:]))
    if subcommand == "chat":
        sys.exit(_run_chat(argv[1:]))
    if subcommand != "serve":
        print(f"Unknown command: {argv[0]}", file=sys.stderr)
        _print_help()
        sys.exit(2)

    import uvicorn

    _print_setup_banner(provider=settings.provider_name, port=port, for_startup=True)

    uvicorn.run(
        "codeagent.main:app",
        host=host,
        port=port,
        factory=False,
    )


if __name__ == "__main__":
    main()
    sys.exit(0)
