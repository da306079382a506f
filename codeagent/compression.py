"""
Conversation compression.

Collapses older turns into one synthetic summary message once history grows
past a threshold, keeping the most recent messages verbatim.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import List, Optional, Protocol, Sequence

from .cancellation import AbortedError
from .models import AttachmentPart, Message

logger = logging.getLogger("codeagent")

SUMMARY_SYSTEM_PROMPT = "You are a helpful assistant that summarizes conversations accurately and concisely."

SUMMARY_INSTRUCTIONS = """Please summarize the following conversation between a user and an AI coding assistant.
Focus on:
1. What the user asked for or wanted to accomplish
2. What files were read or modified
3. Key decisions or conclusions reached
4. Any important context that should be remembered

Keep the summary concise but comprehensive (200-400 words).

Conversation:
{conversation}"""

SUMMARY_TEMPLATE = (
    "[CONVERSATION SUMMARY]\n\n"
    "The following is a summary of the earlier conversation:\n\n"
    "{summary}\n\n"
    "[END SUMMARY]\n\n"
    "Please continue the conversation considering this context."
)

# Individual tool outputs are clipped in the transcript sent for summarization.
_MAX_TOOL_OUTPUT_IN_TRANSCRIPT = 1500


class Completer(Protocol):
    async def complete(self, system_prompt: str, prompt: str, max_tokens: int = 1024) -> str:
        ...


@dataclass
class CompressionConfig:
    max_messages: int = 30
    preserve_recent: int = 5
    max_summary_tokens: int = 1024


@dataclass
class CompressionResult:
    messages: List[Message]
    original_count: int
    compressed_count: int
    summary: Optional[str] = None
    error: Optional[str] = None

    @property
    def compressed(self) -> bool:
        return self.summary is not None


def needs_compression(history: Sequence[Message], max_messages: int = 30) -> bool:
    return len(history) > max_messages


def find_split_index(history: Sequence[Message], preserve_recent: int) -> int:
    """
    Index where the verbatim tail starts.

    The boundary is moved backward until the tail does not open with a tool
    result, so a tool call and its results are always kept together.
    """
    split = max(len(history) - preserve_recent, 0)
    while split > 0 and history[split].role == "tool":
        split -= 1
    return split


def format_transcript(messages: Sequence[Message]) -> str:
    lines: List[str] = []
    for msg in messages:
        if msg.role == "tool":
            output = msg.text
            if len(output) > _MAX_TOOL_OUTPUT_IN_TRANSCRIPT:
                output = output[:_MAX_TOOL_OUTPUT_IN_TRANSCRIPT] + "..."
            label = "error" if msg.is_error else "result"
            lines.append(f"Tool {label} ({msg.name or 'unknown'}): {output}")
            continue

        parts = [msg.text] if msg.text else []
        if isinstance(msg.content, list):
            for part in msg.content:
                if isinstance(part, AttachmentPart):
                    parts.append(f"[Attachment: {part.name or part.mime_type}]")
        for call in msg.tool_calls or []:
            parts.append(f"[Called tool: {call.name} {json.dumps(call.arguments, sort_keys=True, default=str)}]")
        lines.append(f"{msg.role.capitalize()}: {' '.join(parts) if parts else '(empty)'}")
    return "\n\n".join(lines)


def build_summary_message(summary: str) -> Message:
    return Message(role="user", content=SUMMARY_TEMPLATE.format(summary=summary))


async def compress(
    history: Sequence[Message],
    client: Completer,
    config: Optional[CompressionConfig] = None,
) -> CompressionResult:
    """
    Replace everything before the preserved tail with a single summary message.

    Any failure to summarize returns the original history untouched with
    `error` set; AbortedError propagates.
    """
    config = config or CompressionConfig()
    original = list(history)
    unchanged = CompressionResult(
        messages=original,
        original_count=len(original),
        compressed_count=len(original),
    )
    if not needs_compression(original, config.max_messages):
        return unchanged

    split = find_split_index(original, config.preserve_recent)
    prefix, tail = original[:split], original[split:]
    if not prefix:
        return unchanged

    prompt = SUMMARY_INSTRUCTIONS.format(conversation=format_transcript(prefix))
    try:
        summary = (await client.complete(SUMMARY_SYSTEM_PROMPT, prompt, config.max_summary_tokens)).strip()
    except AbortedError:
        raise
    except Exception as exc:
        logger.warning("compression failed messages=%s error=%s", len(original), exc)
        unchanged.error = str(exc)
        return unchanged

    if not summary:
        unchanged.error = "Summarization returned empty text"
        return unchanged

    messages = [build_summary_message(summary)] + tail
    logger.info(
        "compression original=%s compressed=%s summary_chars=%s",
        len(original),
        len(messages),
        len(summary),
    )
    return CompressionResult(
        messages=messages,
        original_count=len(original),
        compressed_count=len(messages),
        summary=summary,
    )
