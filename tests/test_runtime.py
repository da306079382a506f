from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Any, Dict, List, Optional

import pytest
from pydantic import BaseModel

from codeagent.cancellation import CancellationToken
from codeagent.config import get_settings
from codeagent.context_manager import ContextManager
from codeagent.models import Attachment, AttachmentPart, TextPart, ToolCall, ToolResult
from codeagent.policy import create_policy_engine
from codeagent.providers import StubProvider, StubTurn
from codeagent.registry import ToolDefinition, ToolExecutionError, ToolRegistry
from codeagent.runtime import ATTACHMENTS_PREAMBLE, WRAP_UP_PROMPT, AgentRuntime, truncate_output
from codeagent.tools.catalog import build_default_registry


@pytest.fixture
def workspace(tmp_path: Path) -> Path:
    ws = tmp_path / "ws"
    ws.mkdir()
    return ws


async def _no_sleep(seconds: float, token: Optional[CancellationToken]) -> None:
    return None


def _runtime(
    workspace: Path,
    client: StubProvider,
    *,
    registry: Optional[ToolRegistry] = None,
    policy_engine=None,
    approval_handler=None,
    summarization_client=None,
    sleep=_no_sleep,
    **overrides: Any,
) -> AgentRuntime:
    home = workspace.parent / "home"
    home.mkdir(exist_ok=True)
    settings = get_settings().model_copy(update=overrides)
    return AgentRuntime(
        client,
        registry or build_default_registry(),
        ContextManager(workspace, home_dir=home, global_dir=home / ".codeagent"),
        policy_engine=policy_engine,
        approval_handler=approval_handler,
        summarization_client=summarization_client,
        settings=settings,
        sleep=sleep,
    )


def _collect(runtime: AgentRuntime, text: str, **kwargs: Any) -> List[Any]:
    async def run() -> List[Any]:
        return [event async for event in runtime.send_message(text, **kwargs)]

    return asyncio.run(run())


def _types(events: List[Any]) -> List[str]:
    return [e.type for e in events]


def _call(name: str, call_id: str = "call_1", **arguments: Any) -> ToolCall:
    return ToolCall(id=call_id, name=name, arguments=arguments)


class LabelParams(BaseModel):
    label: str


def _recording_registry(order: List[str]) -> ToolRegistry:
    async def inspect(params: LabelParams, ctx) -> ToolResult:
        await asyncio.sleep(0)
        order.append(f"inspect:{params.label}")
        return ToolResult(title="inspect", output=f"inspected {params.label}")

    async def mutate(params: LabelParams, ctx) -> ToolResult:
        order.append(f"mutate:{params.label}")
        return ToolResult(title="mutate", output=f"mutated {params.label}")

    registry = ToolRegistry()
    registry.register(ToolDefinition(id="inspect", description="Read-only inspection", parameters=LabelParams, execute=inspect, read_only=True))
    registry.register(ToolDefinition(id="mutate", description="Mutating step", parameters=LabelParams, execute=mutate))
    return registry


def test_final_answer_streams_blocks_and_records_history(workspace: Path) -> None:
    provider = StubProvider(["Hello there"])
    runtime = _runtime(workspace, provider)

    events = _collect(runtime, "hi")

    types = _types(events)
    assert types[0] == "processing_start"
    assert types[-1] == "processing_end"
    assert "block_start" in types and "block_end" in types and "message" in types
    start = next(e for e in events if e.type == "block_start")
    end = next(e for e in events if e.type == "block_end")
    assert start.block.id == end.block.id
    assert start.block.content["text"] == "Hello "
    assert end.block.content["text"] == "Hello there"
    assert events[-1].data["status"] == "completed"

    history = runtime.history
    assert [m.role for m in history] == ["user", "assistant"]
    assert history[1].text == "Hello there"
    assert runtime.busy is False


def test_block_snapshots_are_independent_copies(workspace: Path) -> None:
    runtime = _runtime(workspace, StubProvider(["one two three"]))
    events = _collect(runtime, "count")
    texts = [e.block.content["text"] for e in events if e.type in {"block_start", "block_update"}]
    assert texts == ["one ", "one two ", "one two three"]


def test_reasoning_gets_its_own_block(workspace: Path) -> None:
    runtime = _runtime(workspace, StubProvider([StubTurn(text="Answer", reasoning="thinking hard")]))
    events = _collect(runtime, "q")
    formats = {e.block.format for e in events if e.type == "block_end"}
    assert formats == {"reasoning", "text"}


def test_tool_call_then_answer(workspace: Path) -> None:
    (workspace / "hello.txt").write_text("hello world\n", encoding="utf-8")
    provider = StubProvider(
        [
            StubTurn(tool_calls=[_call("read", file_path="hello.txt")]),
            "The file says hello world.",
        ]
    )
    runtime = _runtime(workspace, provider)

    events = _collect(runtime, "what is in hello.txt?")

    results = [e for e in events if e.type == "tool_result"]
    assert len(results) == 1
    assert results[0].block.format == "tool_result"
    assert results[0].block.content["call_id"] == "call_1"

    history = runtime.history
    assert [m.role for m in history] == ["user", "assistant", "tool", "assistant"]
    assert history[1].tool_calls[0].name == "read"
    assert history[2].tool_call_id == "call_1"
    assert "hello world" in history[2].text
    assert history[2].is_error is False

    second_request = provider.stream_calls[1]["messages"]
    assert second_request[-1].role == "tool"
    assert provider.stream_calls[0]["tools"], "tool catalog is sent with every call"


def test_unknown_tool_becomes_error_result(workspace: Path) -> None:
    provider = StubProvider([StubTurn(tool_calls=[_call("teleport")]), "ok"])
    runtime = _runtime(workspace, provider)

    events = _collect(runtime, "go")

    tool_message = runtime.history[2]
    assert tool_message.is_error is True
    assert tool_message.text.startswith("Unknown tool: teleport")
    assert "read" in tool_message.text
    assert any(e.type == "tool_result" and e.block.format == "error" for e in events)
    assert events[-1].data["status"] == "completed"


def test_invalid_arguments_are_reported_to_the_model(workspace: Path) -> None:
    provider = StubProvider([StubTurn(tool_calls=[_call("read")]), "ok"])
    runtime = _runtime(workspace, provider)

    _collect(runtime, "read something")

    tool_message = runtime.history[2]
    assert tool_message.is_error is True
    assert "Invalid arguments for tool read" in tool_message.text
    assert "file_path" in tool_message.text


def test_tool_failure_is_captured_as_error_result(workspace: Path) -> None:
    provider = StubProvider([StubTurn(tool_calls=[_call("read", file_path="missing.txt")]), "ok"])
    runtime = _runtime(workspace, provider)

    _collect(runtime, "read")

    tool_message = runtime.history[2]
    assert tool_message.is_error is True
    assert "File not found: missing.txt" in tool_message.text


class _Sleeps:
    def __init__(self) -> None:
        self.delays: List[float] = []

    async def __call__(self, seconds: float, token: Optional[CancellationToken]) -> None:
        self.delays.append(seconds)


def _flaky_registry(failures: List[BaseException], calls: List[str]) -> ToolRegistry:
    async def fetch(params: LabelParams, ctx) -> ToolResult:
        calls.append(params.label)
        if failures:
            raise failures.pop(0)
        return ToolResult(title="fetch", output=f"fetched {params.label}")

    registry = ToolRegistry()
    registry.register(ToolDefinition(id="fetch", description="Flaky fetch", parameters=LabelParams, execute=fetch, read_only=True))
    return registry


def test_transient_tool_errors_are_retried_with_backoff(workspace: Path) -> None:
    calls: List[str] = []
    sleeps = _Sleeps()
    registry = _flaky_registry([ConnectionError("connection reset"), ConnectionError("connection reset")], calls)
    provider = StubProvider([StubTurn(tool_calls=[_call("fetch", label="docs")]), "done"])
    runtime = _runtime(
        workspace, provider, registry=registry, sleep=sleeps, tool_max_retries=2, tool_retry_base_delay=0.5
    )

    _collect(runtime, "fetch docs")

    assert calls == ["docs", "docs", "docs"]
    assert sleeps.delays == [0.5, 1.0]
    tool_messages = [m for m in runtime.history if m.role == "tool"]
    assert len(tool_messages) == 1
    assert tool_messages[0].is_error is False
    assert tool_messages[0].text == "fetched docs"


def test_transient_tool_errors_give_up_after_retries(workspace: Path) -> None:
    calls: List[str] = []
    sleeps = _Sleeps()
    registry = _flaky_registry([ConnectionError("reset 1"), ConnectionError("reset 2"), ConnectionError("reset 3")], calls)
    provider = StubProvider([StubTurn(tool_calls=[_call("fetch", label="docs")]), "done"])
    runtime = _runtime(
        workspace, provider, registry=registry, sleep=sleeps, tool_max_retries=2, tool_retry_base_delay=0.5
    )

    _collect(runtime, "fetch docs")

    assert len(calls) == 3
    assert sleeps.delays == [0.5, 1.0]
    tool_message = runtime.history[2]
    assert tool_message.is_error is True
    assert "reset 3" in tool_message.text


def test_descriptive_tool_errors_are_not_retried(workspace: Path) -> None:
    calls: List[str] = []
    sleeps = _Sleeps()
    registry = _flaky_registry([ToolExecutionError("File not found: src/network/client.py")], calls)
    provider = StubProvider([StubTurn(tool_calls=[_call("fetch", label="client")]), "done"])
    runtime = _runtime(workspace, provider, registry=registry, sleep=sleeps, tool_max_retries=2)

    _collect(runtime, "open the client")

    assert calls == ["client"]
    assert sleeps.delays == []
    assert runtime.history[2].is_error is True
    assert "File not found: src/network/client.py" in runtime.history[2].text


def test_plan_mode_blocks_every_tool(workspace: Path) -> None:
    (workspace / "a.txt").write_text("a", encoding="utf-8")
    provider = StubProvider([StubTurn(tool_calls=[_call("read", file_path="a.txt")]), "ok"])
    runtime = _runtime(workspace, provider, policy_engine=create_policy_engine("plan"))

    events = _collect(runtime, "plan it")

    blocked = [e for e in events if e.type == "policy_blocked"]
    assert len(blocked) == 1
    assert blocked[0].data["decision"] == "deny"
    assert blocked[0].data["tool"] == "read"
    assert runtime.history[2].is_error is True
    assert "blocked by policy" in runtime.history[2].text


def test_ask_user_approved_runs_the_tool(workspace: Path) -> None:
    asked: List[Dict[str, Any]] = []

    async def approve(tool_name: str, args: Dict[str, Any]) -> bool:
        asked.append({"tool": tool_name, "args": args})
        return True

    provider = StubProvider(
        [StubTurn(tool_calls=[_call("write", file_path="out.txt", content="data")]), "written"]
    )
    runtime = _runtime(
        workspace, provider, policy_engine=create_policy_engine("default"), approval_handler=approve
    )

    events = _collect(runtime, "write it")

    assert asked == [{"tool": "write", "args": {"file_path": "out.txt", "content": "data"}}]
    assert (workspace / "out.txt").read_text(encoding="utf-8") == "data"
    assert not any(e.type == "policy_blocked" for e in events)


def test_ask_user_refused_does_not_run_the_tool(workspace: Path) -> None:
    async def refuse(tool_name: str, args: Dict[str, Any]) -> bool:
        return False

    provider = StubProvider(
        [StubTurn(tool_calls=[_call("write", file_path="out.txt", content="data")]), "skipped"]
    )
    runtime = _runtime(
        workspace, provider, policy_engine=create_policy_engine("default"), approval_handler=refuse
    )

    events = _collect(runtime, "write it")

    assert not (workspace / "out.txt").exists()
    blocked = [e for e in events if e.type == "policy_blocked"]
    assert blocked and blocked[0].data["decision"] == "ask_user"
    assert "requires user approval" in runtime.history[2].text


def test_ask_user_without_handler_is_refused(workspace: Path) -> None:
    provider = StubProvider([StubTurn(tool_calls=[_call("shell", command="echo hi")]), "ok"])
    runtime = _runtime(workspace, provider, policy_engine=create_policy_engine("default"))

    _collect(runtime, "run")

    assert runtime.history[2].is_error is True


def test_read_only_calls_run_before_mutating_calls(workspace: Path) -> None:
    order: List[str] = []
    provider = StubProvider(
        [
            StubTurn(
                tool_calls=[
                    _call("mutate", "c1", label="A"),
                    _call("inspect", "c2", label="B"),
                    _call("mutate", "c3", label="C"),
                    _call("inspect", "c4", label="D"),
                ]
            ),
            "done",
        ]
    )
    runtime = _runtime(workspace, provider, registry=_recording_registry(order))

    _collect(runtime, "go")

    assert sorted(order[:2]) == ["inspect:B", "inspect:D"]
    assert order[2:] == ["mutate:A", "mutate:C"]
    tool_ids = [m.tool_call_id for m in runtime.history if m.role == "tool"]
    assert tool_ids == ["c1", "c2", "c3", "c4"]


def test_long_tool_output_is_truncated(workspace: Path) -> None:
    async def noisy(params: LabelParams, ctx) -> ToolResult:
        return ToolResult(title="noisy", output="x" * 120)

    registry = ToolRegistry()
    registry.register(ToolDefinition(id="noisy", description="Lots of output", parameters=LabelParams, execute=noisy, read_only=True))
    provider = StubProvider([StubTurn(tool_calls=[_call("noisy", label="n")]), "ok"])
    runtime = _runtime(workspace, provider, registry=registry, max_tool_output_chars=50)

    _collect(runtime, "go")

    output = runtime.history[2].text
    assert output.startswith("x" * 50)
    assert output.endswith("[output truncated: 70 characters omitted]")


def test_truncate_output_leaves_short_text_alone() -> None:
    assert truncate_output("short", 10) == "short"


def test_user_attachments_become_content_parts(workspace: Path) -> None:
    runtime = _runtime(workspace, StubProvider(["I see a picture"]))
    attachment = Attachment(mime_type="image/png", data="aGVsbG8=", name="shot.png")

    _collect(runtime, "look at this", attachments=[attachment])

    content = runtime.history[0].content
    assert isinstance(content, list)
    assert isinstance(content[0], TextPart) and content[0].text == "look at this"
    assert isinstance(content[1], AttachmentPart) and content[1].mime_type == "image/png"


def test_tool_attachments_follow_the_tool_results(workspace: Path) -> None:
    (workspace / "diagram.png").write_bytes(b"\x89PNG\r\n\x1a\nfake")
    provider = StubProvider([StubTurn(tool_calls=[_call("read", file_path="diagram.png")]), "nice diagram"])
    runtime = _runtime(workspace, provider)

    _collect(runtime, "open the diagram")

    roles = [m.role for m in runtime.history]
    assert roles == ["user", "assistant", "tool", "user", "assistant"]
    carrier = runtime.history[3]
    assert carrier.text == ATTACHMENTS_PREAMBLE
    assert any(isinstance(p, AttachmentPart) and p.name == "diagram.png" for p in carrier.content)


def test_repeated_identical_calls_trigger_loop_warning(workspace: Path) -> None:
    (workspace / "a.txt").write_text("a", encoding="utf-8")
    same = StubTurn(tool_calls=[_call("read", file_path="a.txt")])
    provider = StubProvider([same, same, same, "giving up"])
    runtime = _runtime(workspace, provider)

    events = _collect(runtime, "read a.txt")

    warnings = [e for e in events if e.type == "loop_warning"]
    assert len(warnings) == 1
    assert warnings[0].data["kind"] == "tool_repeat"
    assert any(m.role == "user" and m.text.startswith("[SYSTEM WARNING]") for m in runtime.history)


def test_history_is_compressed_past_threshold(workspace: Path) -> None:
    (workspace / "a.txt").write_text("a", encoding="utf-8")
    (workspace / "b.txt").write_text("b", encoding="utf-8")
    provider = StubProvider(
        [
            StubTurn(tool_calls=[_call("read", "c1", file_path="a.txt")]),
            StubTurn(tool_calls=[_call("read", "c2", file_path="b.txt")]),
            "both read",
        ]
    )
    summarizer = StubProvider(completions=["User asked to read two files."])
    runtime = _runtime(
        workspace,
        provider,
        summarization_client=summarizer,
        compression_threshold=4,
        preserve_recent=2,
    )

    events = _collect(runtime, "read both")

    compressed = [e for e in events if e.type == "compressed"]
    assert compressed and compressed[0].data == {"original_count": 5, "compressed_count": 3}
    history = runtime.history
    assert history[0].text.startswith("[CONVERSATION SUMMARY]")
    assert "User asked to read two files." in history[0].text
    assert [m.role for m in history[1:]] == ["assistant", "tool", "assistant"]
    assert len(summarizer.complete_calls) == 1


def test_max_iterations_ends_with_wrap_up(workspace: Path) -> None:
    (workspace / "a.txt").write_text("a", encoding="utf-8")
    (workspace / "b.txt").write_text("b", encoding="utf-8")
    provider = StubProvider(
        [
            StubTurn(tool_calls=[_call("read", "c1", file_path="a.txt")]),
            StubTurn(tool_calls=[_call("read", "c2", file_path="b.txt")]),
            "Read two files; nothing else left.",
        ]
    )
    runtime = _runtime(workspace, provider, max_iterations=2)

    events = _collect(runtime, "keep going")

    assert any(e.type == "max_iterations" and e.data["max_iterations"] == 2 for e in events)
    assert provider.stream_calls[-1]["tools"] == []
    assert provider.stream_calls[-1]["messages"][-1].text == WRAP_UP_PROMPT
    history = runtime.history
    assert history[-2].text == WRAP_UP_PROMPT
    assert history[-1].text == "Read two files; nothing else left."
    assert events[-1].data["status"] == "completed"


def test_abort_during_tool_discards_partial_iteration(workspace: Path) -> None:
    async def hang(params: LabelParams, ctx) -> ToolResult:
        ctx.token.cancel("stopped by user")
        await asyncio.sleep(10)
        return ToolResult(title="hang", output="never")

    registry = ToolRegistry()
    registry.register(ToolDefinition(id="hang", description="Never finishes", parameters=LabelParams, execute=hang))
    provider = StubProvider([StubTurn(tool_calls=[_call("hang", label="x")]), "unreachable"])
    runtime = _runtime(workspace, provider, registry=registry)

    events = _collect(runtime, "start", token=CancellationToken())

    aborted = [e for e in events if e.type == "aborted"]
    assert aborted and aborted[0].error == "stopped by user"
    assert events[-1].type == "processing_end"
    assert events[-1].data["status"] == "aborted"
    assert [m.role for m in runtime.history] == ["user"]
    assert runtime.busy is False


def test_cancelled_token_aborts_before_model_call(workspace: Path) -> None:
    provider = StubProvider(["never"])
    runtime = _runtime(workspace, provider)
    token = CancellationToken()
    token.cancel("too late")

    events = _collect(runtime, "hi", token=token)

    assert "aborted" in _types(events)
    assert provider.stream_calls == []


def test_provider_failure_emits_error_event(workspace: Path) -> None:
    runtime = _runtime(workspace, StubProvider([RuntimeError("upstream exploded")]))

    events = _collect(runtime, "hi")

    errors = [e for e in events if e.type == "error"]
    assert errors and errors[0].error == "upstream exploded"
    assert events[-1].data["status"] == "error"
    assert runtime.busy is False


def test_file_access_loads_nested_instructions(workspace: Path) -> None:
    nested = workspace / "pkg"
    nested.mkdir()
    (nested / "CODEAGENT.md").write_text("Always use tabs in pkg.", encoding="utf-8")
    (nested / "mod.py").write_text("x = 1\n", encoding="utf-8")
    provider = StubProvider([StubTurn(tool_calls=[_call("read", file_path="pkg/mod.py")]), "ok"])
    runtime = _runtime(workspace, provider)

    _collect(runtime, "read the module")

    assert "Always use tabs in pkg." not in provider.stream_calls[0]["system_prompt"]
    assert "Always use tabs in pkg." in provider.stream_calls[1]["system_prompt"]


def test_clear_and_load_history(workspace: Path) -> None:
    runtime = _runtime(workspace, StubProvider())
    runtime.load_history([{"role": "user", "content": "earlier"}, {"role": "assistant", "content": "reply"}])
    assert [m.text for m in runtime.history] == ["earlier", "reply"]
    runtime.clear_history()
    assert runtime.history == []
