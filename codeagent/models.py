"""
Data models for the agent runtime.

Defines Message, ToolCall, ContentBlock, ToolResult, ToolContext, AgentEvent
and the stream delta types yielded by chat clients.
Do not duplicate these definitions elsewhere.
"""

from __future__ import annotations

import time
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field

from .cancellation import CancellationToken


def new_id(prefix: str = "") -> str:
    value = uuid.uuid4().hex[:16]
    return f"{prefix}_{value}" if prefix else value


def now_ms() -> int:
    return int(time.time() * 1000)


class Attachment(BaseModel):
    """Binary payload (image, PDF) forwarded to the model as its own content part."""

    mime_type: str
    data: str  # base64
    name: Optional[str] = None


class TextPart(BaseModel):
    type: Literal["text"] = "text"
    text: str


class AttachmentPart(BaseModel):
    type: Literal["attachment"] = "attachment"
    mime_type: str
    data: str
    name: Optional[str] = None


ContentPart = Union[TextPart, AttachmentPart]


class ToolCall(BaseModel):
    id: str
    name: str
    arguments: Dict[str, Any] = Field(default_factory=dict)


class Message(BaseModel):
    """A single conversation entry."""

    id: str = Field(default_factory=lambda: new_id("msg"))
    role: Literal["user", "assistant", "system", "tool"]
    content: Union[str, List[ContentPart]] = ""
    tool_calls: Optional[List[ToolCall]] = None
    tool_call_id: Optional[str] = None
    name: Optional[str] = None
    is_error: bool = False
    timestamp: int = Field(default_factory=now_ms)

    @property
    def text(self) -> str:
        """Plain-text view of the content, ignoring attachment parts."""
        if isinstance(self.content, str):
            return self.content
        return "\n".join(part.text for part in self.content if isinstance(part, TextPart))


class ContentBlock(BaseModel):
    """Unit of streamed assistant output, addressable by id for incremental UI merge."""

    id: str = Field(default_factory=lambda: new_id("blk"))
    format: Literal["text", "reasoning", "tool_call", "tool_result", "error"]
    content: Dict[str, Any] = Field(default_factory=dict)
    metadata: Dict[str, Any] = Field(default_factory=dict)


class ToolResult(BaseModel):
    title: str
    output: str
    metadata: Dict[str, Any] = Field(default_factory=dict)
    attachments: List[Attachment] = Field(default_factory=list)
    is_error: bool = False

    @classmethod
    def error(cls, title: str, message: str, **metadata: Any) -> "ToolResult":
        return cls(title=title, output=message, metadata=metadata, is_error=True)


@dataclass
class ToolContext:
    """Per-call execution context handed to a tool. Never persisted."""

    session_id: str
    workspace_dir: Path
    call_id: str
    token: CancellationToken
    memory_dir: Path
    credentials: Dict[str, str] = field(default_factory=dict)
    services: Dict[str, Any] = field(default_factory=dict)


class AgentEvent(BaseModel):
    type: Literal[
        "processing_start",
        "block_start",
        "block_update",
        "block_end",
        "message",
        "tool_result",
        "loop_warning",
        "compressed",
        "policy_blocked",
        "max_iterations",
        "error",
        "aborted",
        "processing_end",
    ]
    block: Optional[ContentBlock] = None
    message: Optional[Message] = None
    error: Optional[str] = None
    data: Dict[str, Any] = Field(default_factory=dict)


@dataclass
class TextDelta:
    text: str


@dataclass
class ReasoningDelta:
    text: str


@dataclass
class ToolCallDelta:
    """Incremental tool-call fragment; `index` is the provider's slot for the call."""

    index: int
    id: Optional[str] = None
    name: Optional[str] = None
    arguments_fragment: str = ""


@dataclass
class FinishSignal:
    reason: str
    text: str = ""
    tool_calls: List[ToolCall] = field(default_factory=list)


StreamDelta = Union[TextDelta, ReasoningDelta, ToolCallDelta, FinishSignal]
