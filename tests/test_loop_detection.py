from __future__ import annotations

from typing import Any, Dict, List

from codeagent.loop_detection import LoopDetectionConfig, detect_loop, similarity
from codeagent.models import Message, ToolCall


def _turn(name: str, args: Dict[str, Any], output: str = "ok", is_error: bool = False) -> List[Message]:
    call = ToolCall(id=f"call_{name}_{len(str(args))}", name=name, arguments=args)
    return [
        Message(role="assistant", content="", tool_calls=[call]),
        Message(role="tool", content=output, tool_call_id=call.id, name=name, is_error=is_error),
    ]


def _history(*turns: List[Message]) -> List[Message]:
    history = [Message(role="user", content="fix the bug")]
    for turn in turns:
        history.extend(turn)
    return history


def test_short_history_is_never_looping() -> None:
    history = _history(_turn("read", {"file_path": "a.py"}))
    assert detect_loop(history).is_looping is False


def test_identical_calls_are_a_repeat() -> None:
    history = _history(*[_turn("read", {"file_path": "a.py"}) for _ in range(3)])
    result = detect_loop(history)
    assert result.is_looping
    assert result.kind == "tool_repeat"
    assert "identical arguments" in result.description
    assert result.as_warning().startswith("[SYSTEM WARNING]")


def test_two_identical_calls_are_not_enough() -> None:
    history = _history(_turn("grep", {"pattern": "foo"}), _turn("grep", {"pattern": "foo"}), _turn("ls", {"path": "."}))
    assert detect_loop(history).is_looping is False


def test_near_duplicate_arguments_are_a_repeat() -> None:
    query = "parse config loader yaml settings module python async example"
    widened = "parse config loader yaml settings schema module python async example"
    history = _history(
        _turn("web_search", {"query": query}),
        _turn("web_search", {"query": query}),
        _turn("web_search", {"query": widened}),
    )
    result = detect_loop(history)
    assert result.is_looping
    assert result.kind == "tool_repeat"
    assert "very similar arguments" in result.description


def test_similarity_at_threshold_is_not_a_repeat() -> None:
    query = "parse config loader yaml settings module python example"
    widened = "parse config loader yaml settings schema module python example"
    assert similarity('{"query": "%s"}' % query, '{"query": "%s"}' % widened) == 0.9
    history = _history(
        _turn("web_search", {"query": query}),
        _turn("web_search", {"query": query}),
        _turn("web_search", {"query": widened}),
    )
    assert detect_loop(history).is_looping is False


def test_distinct_arguments_are_progress() -> None:
    history = _history(
        _turn("read", {"file_path": "src/a.py"}),
        _turn("read", {"file_path": "src/b.py"}),
        _turn("read", {"file_path": "src/c.py"}),
    )
    assert detect_loop(history).is_looping is False


def test_alternating_calls_are_oscillation() -> None:
    history = _history(
        _turn("read", {"file_path": "a.py"}),
        _turn("edit", {"file_path": "a.py", "old_string": "x", "new_string": "y"}),
        _turn("read", {"file_path": "a.py"}),
        _turn("edit", {"file_path": "a.py", "old_string": "x", "new_string": "y"}),
    )
    result = detect_loop(history)
    assert result.is_looping
    assert result.kind == "oscillation"
    assert '"read"' in result.description and '"edit"' in result.description


def test_repeated_similar_errors_are_an_error_loop() -> None:
    history = _history(
        _turn("shell", {"command": "pytest -x"}, "ModuleNotFoundError: No module named foo", is_error=True),
        _turn("shell", {"command": "pytest -q"}, "ModuleNotFoundError: No module named foo", is_error=True),
        _turn("shell", {"command": "python -m pytest"}, "ModuleNotFoundError: No module named foo", is_error=True),
    )
    result = detect_loop(history)
    assert result.is_looping
    assert result.kind == "error_loop"
    assert "3 times" in result.description


def test_json_error_payloads_count_as_errors() -> None:
    payload = '{"error": "connection refused on port 5432"}'
    history = _history(
        _turn("shell", {"command": "psql a"}, payload),
        _turn("web_fetch", {"url": "http://b"}, payload),
        _turn("shell", {"command": "psql c"}, payload),
    )
    result = detect_loop(history)
    assert result.is_looping
    assert result.kind == "error_loop"


def test_long_error_is_clipped_in_description() -> None:
    error = "boom " * 100
    history = _history(*[_turn(f"tool{i}", {"n": i}, error, is_error=True) for i in range(3)])
    result = detect_loop(history)
    assert result.kind == "error_loop"
    assert result.description.endswith('...".')


def test_custom_thresholds() -> None:
    history = _history(_turn("ls", {"path": "."}), _turn("ls", {"path": "."}))
    config = LoopDetectionConfig(min_messages=2, repetition_threshold=2)
    assert detect_loop(history, config).kind == "tool_repeat"


def test_similarity() -> None:
    assert similarity("a b c", "a b c") == 1.0
    assert similarity("", "x") == 0.0
    assert similarity("A B", "a b") == 1.0
    assert similarity("a b", "c d") == 0.0
    assert 0.0 < similarity("a b c d", "a b c e") < 1.0
