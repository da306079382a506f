from __future__ import annotations

import asyncio
import base64
import json
import os
import time
from pathlib import Path
from typing import Any, Dict

import httpx
import pytest

from codeagent.cancellation import CancellationToken
from codeagent.config import get_settings
from codeagent.models import ToolContext, ToolResult
from codeagent.providers import StubProvider
from codeagent.registry import ToolExecutionError
from codeagent.tools.catalog import build_default_registry
from codeagent.tools.shell_tool import blocked_reason, format_output
from codeagent.tools.web_tools import extract_main_content, html_to_text, parse_search_results

REGISTRY = build_default_registry()


@pytest.fixture
def workspace(tmp_path: Path) -> Path:
    ws = tmp_path / "ws"
    ws.mkdir()
    return ws


def _ctx(workspace: Path, **services: Any) -> ToolContext:
    return ToolContext(
        session_id="ses_test",
        workspace_dir=workspace,
        call_id="call_test",
        token=CancellationToken(),
        memory_dir=workspace / ".agentmemory",
        services=services,
    )


def _run(name: str, args: Dict[str, Any], ctx: ToolContext) -> ToolResult:
    params = REGISTRY.validate(name, args)
    return asyncio.run(REGISTRY.get(name).execute(params, ctx))


# -- file tools -------------------------------------------------------------


def test_read_numbers_lines_and_paginates(workspace: Path) -> None:
    (workspace / "a.py").write_text("one\ntwo\nthree\nfour", encoding="utf-8")
    ctx = _ctx(workspace)

    full = _run("read", {"file_path": "a.py"}, ctx)
    assert full.output.startswith("<file>\n    1| one\n    2| two")
    assert "(End of file - total 4 lines)" in full.output

    page = _run("read", {"file_path": "a.py", "offset": 1, "limit": 2}, ctx)
    assert "    2| two\n    3| three" in page.output
    assert "    1| one" not in page.output
    assert "Use 'offset' to read beyond line 3" in page.output
    assert page.metadata["truncated"] is True


def test_read_attaches_images(workspace: Path) -> None:
    data = b"\x89PNG\r\n\x1a\n0000"
    (workspace / "logo.png").write_bytes(data)

    result = _run("read", {"file_path": "logo.png"}, _ctx(workspace))

    assert result.attachments[0].mime_type == "image/png"
    assert base64.b64decode(result.attachments[0].data) == data


def test_paths_cannot_escape_the_workspace(workspace: Path) -> None:
    (workspace.parent / "secret.txt").write_text("nope", encoding="utf-8")
    with pytest.raises(ToolExecutionError, match="outside the workspace"):
        _run("read", {"file_path": "../secret.txt"}, _ctx(workspace))
    with pytest.raises(ToolExecutionError, match="outside the workspace"):
        _run("write", {"file_path": "/tmp/evil.txt", "content": "x"}, _ctx(workspace))


def test_write_creates_parent_directories(workspace: Path) -> None:
    result = _run("write", {"file_path": "pkg/new.py", "content": "a\nb\n"}, _ctx(workspace))
    assert (workspace / "pkg" / "new.py").read_text(encoding="utf-8") == "a\nb\n"
    assert result.output == "Successfully wrote 3 lines to pkg/new.py"


def test_edit_requires_unique_match(workspace: Path) -> None:
    target = workspace / "conf.py"
    target.write_text("debug = False\nverbose = False\n", encoding="utf-8")
    ctx = _ctx(workspace)

    with pytest.raises(ToolExecutionError, match="Found 2 occurrences"):
        _run("edit", {"file_path": "conf.py", "old_string": "False", "new_string": "True"}, ctx)
    with pytest.raises(ToolExecutionError, match="Could not find"):
        _run("edit", {"file_path": "conf.py", "old_string": "missing", "new_string": "x"}, ctx)

    _run("edit", {"file_path": "conf.py", "old_string": "debug = False", "new_string": "debug = True"}, ctx)
    assert target.read_text(encoding="utf-8") == "debug = True\nverbose = False\n"

    result = _run(
        "edit",
        {"file_path": "conf.py", "old_string": "e", "new_string": "E", "replace_all": "true"},
        ctx,
    )
    assert result.metadata["replacements"] == 5


def test_ls_lists_directories_first(workspace: Path) -> None:
    (workspace / "src").mkdir()
    (workspace / "node_modules").mkdir()
    (workspace / ".hidden").write_text("", encoding="utf-8")
    (workspace / "b.txt").write_text("", encoding="utf-8")
    (workspace / "a.txt").write_text("", encoding="utf-8")

    result = _run("ls", {}, _ctx(workspace))

    assert result.output.splitlines() == ["src/", "a.txt", "b.txt"]


def test_glob_orders_newest_first(workspace: Path) -> None:
    (workspace / "src").mkdir()
    old = workspace / "src" / "old.py"
    new = workspace / "src" / "new.py"
    old.write_text("", encoding="utf-8")
    new.write_text("", encoding="utf-8")
    past = time.time() - 100
    os.utime(old, (past, past))
    (workspace / "readme.md").write_text("", encoding="utf-8")

    result = _run("glob", {"pattern": "**/*.py"}, _ctx(workspace))

    assert result.output.splitlines() == ["src/new.py", "src/old.py"]
    assert _run("glob", {"pattern": "*.rs"}, _ctx(workspace)).output == "No matches found"


def test_grep_is_case_insensitive_and_filters(workspace: Path) -> None:
    (workspace / "app.py").write_text("import os\n# TODO: fix\n", encoding="utf-8")
    (workspace / "notes.md").write_text("todo list\n", encoding="utf-8")
    (workspace / "image.png").write_bytes(b"todo")
    ctx = _ctx(workspace)

    result = _run("grep", {"pattern": "todo"}, ctx)
    assert result.output.splitlines() == ["app.py:2: # TODO: fix", "notes.md:1: todo list"]

    only_py = _run("grep", {"pattern": "todo", "file_pattern": "*.py"}, ctx)
    assert only_py.output == "app.py:2: # TODO: fix"

    single = _run("grep", {"pattern": "import", "path": "app.py"}, ctx)
    assert single.output == "app.py:1: import os"

    with pytest.raises(ToolExecutionError, match="Invalid regular expression"):
        _run("grep", {"pattern": "("}, ctx)


# -- shell ------------------------------------------------------------------


@pytest.mark.parametrize(
    "command",
    ["rm -rf /", "rm  -rf   /", ":(){ :|:& };:", "mkfs.ext4 /dev/sda1", "dd if=/dev/zero of=/dev/sda", "echo x > /dev/sda"],
)
def test_blocked_commands(command: str) -> None:
    assert blocked_reason(command) is not None


@pytest.mark.parametrize("command", ["rm -rf build/", "ls -la", "dd if=a.img of=b.img", "git status"])
def test_allowed_commands(command: str) -> None:
    assert blocked_reason(command) is None


def test_format_output() -> None:
    assert format_output("", "", 0) == "(no output)"
    assert format_output("out\n", "warn\n", 2) == "out\n\n\nSTDERR:\nwarn\n\n\n[Exit code: 2]"


def test_shell_runs_in_workspace(workspace: Path) -> None:
    (workspace / "sub").mkdir()
    ctx = _ctx(workspace)

    result = _run("shell", {"command": "pwd"}, ctx)
    assert result.output.strip() == str(workspace.resolve())
    assert result.metadata["exit_code"] == 0

    nested = _run("shell", {"command": "pwd", "cwd": "sub"}, ctx)
    assert nested.output.strip().endswith("/sub")


def test_shell_reports_exit_code_and_stderr(workspace: Path) -> None:
    result = _run("shell", {"command": "echo oops 1>&2; exit 3"}, _ctx(workspace))
    assert "STDERR:\noops" in result.output
    assert result.output.endswith("[Exit code: 3]")
    assert result.metadata["exit_code"] == 3


def test_shell_refuses_blocked_command(workspace: Path) -> None:
    with pytest.raises(ToolExecutionError, match="blocked for safety"):
        _run("shell", {"command": "rm -rf /"}, _ctx(workspace))


def test_shell_timeout_kills_process(workspace: Path) -> None:
    with pytest.raises(ToolExecutionError, match="exceeded its 1s limit"):
        _run("shell", {"command": "sleep 5", "timeout": 1}, _ctx(workspace))


def test_shell_timeout_is_bounded() -> None:
    with pytest.raises(ValueError):
        REGISTRY.validate("shell", {"command": "ls", "timeout": 600})


# -- web --------------------------------------------------------------------


def _transport(routes: Dict[str, httpx.Response]) -> httpx.MockTransport:
    def handler(request: httpx.Request) -> httpx.Response:
        key = f"{request.url.host}{request.url.path}"
        if key in routes:
            return routes[key]
        return httpx.Response(404, text="not found")

    return httpx.MockTransport(handler)


def test_web_fetch_converts_html(workspace: Path) -> None:
    page = (
        "<html><head><style>body{}</style><script>var x;</script></head>"
        "<body><nav>menu</nav><p>Hello &amp; welcome</p></body></html>"
    )
    transport = _transport({"example.com/page": httpx.Response(200, text=page, headers={"content-type": "text/html"})})

    result = _run("web_fetch", {"url": "https://example.com/page"}, _ctx(workspace, http_transport=transport))

    assert result.output == "menu Hello & welcome"
    assert result.metadata["status"] == 200


def test_web_fetch_pretty_prints_json(workspace: Path) -> None:
    transport = _transport({"api.example.com/v1": httpx.Response(200, json={"ok": True})})
    result = _run("web_fetch", {"url": "https://api.example.com/v1"}, _ctx(workspace, http_transport=transport))
    assert json.loads(result.output) == {"ok": True}
    assert "\n" in result.output


def test_web_fetch_errors(workspace: Path) -> None:
    ctx = _ctx(workspace, http_transport=_transport({}))
    with pytest.raises(ToolExecutionError, match="HTTP error: 404"):
        _run("web_fetch", {"url": "https://example.com/missing"}, ctx)
    with pytest.raises(ToolExecutionError, match="Unsupported or invalid URL"):
        _run("web_fetch", {"url": "ftp://example.com/file"}, ctx)


def test_web_search_parses_results(workspace: Path) -> None:
    markup = (
        '<div><a rel="nofollow" class="result__a" '
        'href="//duckduckgo.com/l/?uddg=https%3A%2F%2Fdocs.python.org%2F3%2F&amp;rut=abc">Python <b>docs</b></a>'
        '<a class="result__snippet" href="#">The official <b>Python</b> documentation.</a></div>'
    )
    seen: Dict[str, str] = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["q"] = request.url.params["q"]
        return httpx.Response(200, text=markup, headers={"content-type": "text/html"})

    ctx = _ctx(workspace, http_transport=httpx.MockTransport(handler))
    result = _run("web_search", {"query": "asyncio", "site": "docs.python.org"}, ctx)

    assert seen["q"] == "site:docs.python.org asyncio"
    assert result.metadata["result_count"] == 1
    assert "1. Python docs\n   https://docs.python.org/3/\n   The official Python documentation." in result.output


def test_html_helpers() -> None:
    assert html_to_text("<p>a &amp; b</p>\n<p>c</p>") == "a & b c"
    article = "<body><nav>x</nav><article>" + "word " * 30 + "</article></body>"
    assert extract_main_content(article).startswith("word word")
    assert parse_search_results("<p>nothing</p>") == []


# -- memory -----------------------------------------------------------------


def test_memory_tools_end_to_end(workspace: Path) -> None:
    (workspace / "app.py").write_text("print('hi')\n", encoding="utf-8")
    client = StubProvider(completions=["**Summary**: Prints hi.", "Tiny script project."])
    ctx = _ctx(workspace, summarization_client=client, settings=get_settings())

    before = _run("list_memory", {}, ctx)
    assert before.title == "Memory not initialized"

    synced = _run("sync_memory", {}, ctx)
    assert synced.is_error is False
    assert synced.output.startswith("Memory sync complete: 1 indexed, 0 unchanged, 0 errors")

    listing = _run("list_memory", {}, ctx)
    assert "files/app.py.md" in listing.output
    assert "index.md present" in listing.output

    index = _run("read_memory", {}, ctx)
    assert "Tiny script project." in index.output

    _run("write_memory", {"content": "Chose click for the CLI."}, ctx)
    hits = _run("search_memory", {"query": "click"}, ctx)
    assert hits.metadata["count"] == 1
    assert "Chose click for the CLI." in hits.output

    context = _run("get_memory_context", {}, ctx)
    assert "Recent Journal Entries" in context.output

    with pytest.raises(ToolExecutionError, match="Memory file not found"):
        _run("read_memory", {"path": "files/nope.md"}, ctx)


def test_sync_memory_reports_failed_validation(workspace: Path) -> None:
    (workspace / "app.py").write_text("print('hi')\n", encoding="utf-8")
    ctx = _ctx(workspace, summarization_client=StubProvider(valid=False), settings=get_settings())

    result = _run("sync_memory", {}, ctx)

    assert result.is_error is True
    assert result.metadata["errors"] == 1


def test_sync_memory_requires_client(workspace: Path) -> None:
    with pytest.raises(ToolExecutionError, match="No summarization client"):
        _run("sync_memory", {}, _ctx(workspace))


# -- skills -----------------------------------------------------------------


def _skill(root: Path, folder: str, text: str) -> None:
    (root / folder).mkdir(parents=True)
    (root / folder / "SKILL.md").write_text(text, encoding="utf-8")


def test_skills_discovery_and_loading(workspace: Path, tmp_path: Path) -> None:
    home = tmp_path / "home"
    _skill(workspace / "skills", "release", "---\nname: release-notes\ndescription: Draft release notes\n---\nRead git log.\n")
    _skill(home / ".codeagent" / "skills", "release", "---\nname: release-notes\ndescription: shadowed\n---\nOld.\n")
    _skill(home / ".codeagent" / "skills", "review", "Review the diff carefully.\n")
    ctx = _ctx(workspace, home_dir=home)

    listed = _run("list_skills", {}, ctx)
    assert listed.metadata["names"] == ["release-notes", "review"]
    assert "- **release-notes**: Draft release notes" in listed.output
    assert "- **review**: (no description)" in listed.output

    loaded = _run("load_skill", {"name": "release-notes"}, ctx)
    assert loaded.output.startswith("# Skill: release-notes\n\nRead git log.")

    missing = _run("load_skill", {"name": "deploy"}, ctx)
    assert missing.is_error is True
    assert "Available skills: release-notes, review" in missing.output


def test_no_skills(workspace: Path, tmp_path: Path) -> None:
    result = _run("list_skills", {}, _ctx(workspace, home_dir=tmp_path / "nohome"))
    assert result.title == "No skills found"


# -- todos ------------------------------------------------------------------


def test_todo_round_trip(workspace: Path) -> None:
    ctx = _ctx(workspace)
    assert _run("todo_read", {}, ctx).output == "No todos."

    written = _run(
        "todo_write",
        {
            "todos": [
                {"id": "1", "content": "Write tests", "status": "completed"},
                {"id": "2", "content": "Fix bug", "status": "in_progress"},
                {"id": "3", "content": "Ship it"},
            ]
        },
        ctx,
    )
    assert written.title == "2 active, 1 done"

    read = _run("todo_read", {}, ctx)
    assert read.output == "[x] 1: Write tests\n[~] 2: Fix bug\n[ ] 3: Ship it"
    assert (workspace / ".agentmemory" / "todos.json").exists()


def test_todo_rejects_unknown_status(workspace: Path) -> None:
    with pytest.raises(ValueError):
        REGISTRY.validate("todo_write", {"todos": [{"id": "1", "content": "x", "status": "cancelled"}]})


def test_corrupt_todo_file_reads_as_empty(workspace: Path) -> None:
    memory = workspace / ".agentmemory"
    memory.mkdir()
    (memory / "todos.json").write_text("{broken", encoding="utf-8")
    assert _run("todo_read", {}, _ctx(workspace)).output == "No todos."
