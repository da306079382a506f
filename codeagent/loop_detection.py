"""
Loop detection over conversation history.

Flags repetitive, non-productive tool call patterns so the runtime can inject
corrective guidance. Everything here is synchronous and side-effect free.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from itertools import combinations
from typing import List, Optional, Sequence, Tuple

from .models import Message

NEAR_DUPLICATE_THRESHOLD = 0.9
OSCILLATION_THRESHOLD = 0.8
ERROR_SIMILARITY_THRESHOLD = 0.8

SUGGESTIONS = {
    "tool_repeat": (
        "You seem to be repeating the same tool call. Try a different approach "
        "or verify the results of your previous call."
    ),
    "oscillation": (
        "You are alternating between the same actions without making progress. "
        "Step back, re-read the relevant files and decide on a single plan."
    ),
    "error_loop": (
        "The same error keeps occurring. Analyze the error message and try a "
        "fundamentally different approach, or explain the blocker to the user."
    ),
}


@dataclass
class LoopDetectionConfig:
    min_messages: int = 4
    repetition_threshold: int = 3
    error_threshold: int = 3


@dataclass
class LoopDetectionResult:
    is_looping: bool
    kind: Optional[str] = None
    description: Optional[str] = None
    suggestion: Optional[str] = None

    def as_warning(self) -> str:
        return f"[SYSTEM WARNING] {self.description} {self.suggestion}"


NOT_LOOPING = LoopDetectionResult(is_looping=False)


def similarity(a: str, b: str) -> float:
    """Jaccard overlap of lowercased whitespace-token sets."""
    if a == b:
        return 1.0
    if not a or not b:
        return 0.0
    set_a = set(a.lower().split())
    set_b = set(b.lower().split())
    if not set_a and not set_b:
        return 1.0
    if not set_a or not set_b:
        return 0.0
    intersection = len(set_a & set_b)
    union = len(set_a | set_b)
    return intersection / union if union else 0.0


def _serialize_args(arguments: object) -> str:
    return json.dumps(arguments, sort_keys=True, ensure_ascii=False, default=str)


def extract_tool_calls(history: Sequence[Message]) -> List[Tuple[str, str]]:
    calls: List[Tuple[str, str]] = []
    for msg in history:
        if msg.role == "assistant" and msg.tool_calls:
            for call in msg.tool_calls:
                calls.append((call.name, _serialize_args(call.arguments)))
    return calls


def extract_errors(history: Sequence[Message]) -> List[str]:
    errors: List[str] = []
    for msg in history:
        if msg.role != "tool":
            continue
        if msg.is_error:
            errors.append(msg.text)
            continue
        try:
            parsed = json.loads(msg.text)
        except (TypeError, ValueError):
            continue
        if isinstance(parsed, dict) and parsed.get("error"):
            errors.append(str(parsed["error"]))
    return errors


def _pairwise_similar(values: Sequence[str], threshold: float) -> bool:
    return all(similarity(a, b) > threshold for a, b in combinations(values, 2))


def _check_tool_repetition(calls: List[Tuple[str, str]], k: int) -> Optional[LoopDetectionResult]:
    if len(calls) < k:
        return None
    recent = calls[-k:]
    name = recent[0][0]
    if all(call == recent[0] for call in recent):
        return LoopDetectionResult(
            is_looping=True,
            kind="tool_repeat",
            description=f'Tool "{name}" was called {k} times with identical arguments.',
            suggestion=SUGGESTIONS["tool_repeat"],
        )
    if all(call[0] == name for call in recent) and _pairwise_similar(
        [call[1] for call in recent], NEAR_DUPLICATE_THRESHOLD
    ):
        return LoopDetectionResult(
            is_looping=True,
            kind="tool_repeat",
            description=f'Tool "{name}" was called {k} times with very similar arguments.',
            suggestion=SUGGESTIONS["tool_repeat"],
        )
    return None


def _check_oscillation(calls: List[Tuple[str, str]]) -> Optional[LoopDetectionResult]:
    if len(calls) < 4:
        return None
    a1, b1, a2, b2 = calls[-4:]
    if (
        a1[0] == a2[0]
        and b1[0] == b2[0]
        and a1[0] != b1[0]
        and similarity(a1[1], a2[1]) > OSCILLATION_THRESHOLD
        and similarity(b1[1], b2[1]) > OSCILLATION_THRESHOLD
    ):
        return LoopDetectionResult(
            is_looping=True,
            kind="oscillation",
            description=(
                f'Oscillating between "{a1[0]}" and "{b1[0]}", alternating back and '
                "forth without progress."
            ),
            suggestion=SUGGESTIONS["oscillation"],
        )
    return None


def _check_error_loop(errors: List[str], k: int) -> Optional[LoopDetectionResult]:
    if len(errors) < k:
        return None
    recent = errors[-k:]
    if not _pairwise_similar(recent, ERROR_SIMILARITY_THRESHOLD):
        return None
    last = recent[-1]
    if len(last) > 200:
        last = last[:200] + "..."
    return LoopDetectionResult(
        is_looping=True,
        kind="error_loop",
        description=f'The same error occurred {k} times consecutively: "{last}".',
        suggestion=SUGGESTIONS["error_loop"],
    )


def detect_loop(
    history: Sequence[Message],
    config: Optional[LoopDetectionConfig] = None,
) -> LoopDetectionResult:
    """Run the repetition, oscillation and error-loop checks; first match wins."""
    config = config or LoopDetectionConfig()
    if len(history) < config.min_messages:
        return NOT_LOOPING

    calls = extract_tool_calls(history)
    for result in (
        _check_tool_repetition(calls, config.repetition_threshold),
        _check_oscillation(calls),
        _check_error_loop(extract_errors(history), config.error_threshold),
    ):
        if result is not None:
            return result
    return NOT_LOOPING
