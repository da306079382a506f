"""
Agent conversation loop.

One `send_message` call drives model turns and tool dispatch until the model
answers without tool calls, the iteration ceiling is reached, the token is
cancelled, or an unexpected error occurs. Progress is reported as a stream
of AgentEvents.

History is only mutated between iterations: the assistant message and its
tool results are committed together once every call in the iteration has
finished, so an abort mid-iteration leaves no partial turn behind.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, Iterable, List, Optional, Sequence

from .cancellation import AbortedError, CancellationToken
from .compression import CompressionConfig, compress
from .config import Settings, get_settings
from .context_manager import ContextManager
from .loop_detection import detect_loop
from .memory.store import MemoryStore
from .models import (
    AgentEvent,
    Attachment,
    AttachmentPart,
    ContentBlock,
    ContentPart,
    FinishSignal,
    Message,
    ReasoningDelta,
    TextDelta,
    TextPart,
    ToolCall,
    ToolCallDelta,
    ToolContext,
    ToolResult,
    new_id,
)
from .policy import PolicyDecision, PolicyEngine
from .registry import ToolRegistry, ToolValidationError
from .retry import RetryPolicy, is_transient_error
from .system_prompt import build_system_prompt

logger = logging.getLogger("codeagent")

ApprovalHandler = Callable[[str, Dict[str, Any]], Awaitable[bool]]
SleepFn = Callable[[float, Optional[CancellationToken]], Awaitable[None]]

WRAP_UP_PROMPT = (
    "You have reached the maximum number of steps for this request. Do not call any more tools. "
    "Summarize what you accomplished, what remains unfinished, and the next steps the user should take."
)
ATTACHMENTS_PREAMBLE = "Attachments returned by the tool calls above:"


def truncate_output(output: str, max_chars: int) -> str:
    if len(output) <= max_chars:
        return output
    omitted = len(output) - max_chars
    return output[:max_chars] + f"\n\n... [output truncated: {omitted} characters omitted]"


def build_user_message(text: str, attachments: Optional[Sequence[Attachment]] = None) -> Message:
    if not attachments:
        return Message(role="user", content=text)
    parts: List[ContentPart] = [TextPart(text=text)] if text else []
    parts.extend(AttachmentPart(mime_type=a.mime_type, data=a.data, name=a.name) for a in attachments)
    return Message(role="user", content=parts)


def _snapshot(event_type: str, block: ContentBlock, **data: Any) -> AgentEvent:
    return AgentEvent(type=event_type, block=block.model_copy(deep=True), data=data)


@dataclass
class _TurnState:
    """Accumulates one streamed model response."""

    text: str = ""
    reasoning: str = ""
    text_block: Optional[ContentBlock] = None
    reasoning_block: Optional[ContentBlock] = None
    call_blocks: Dict[int, ContentBlock] = field(default_factory=dict)
    call_slots: Dict[int, Dict[str, str]] = field(default_factory=dict)
    finish: Optional[FinishSignal] = None

    def tool_calls(self) -> List[ToolCall]:
        if self.finish is not None and self.finish.tool_calls:
            return list(self.finish.tool_calls)
        calls = []
        for _, slot in sorted(self.call_slots.items()):
            if not slot["name"]:
                continue
            try:
                arguments = json.loads(slot["arguments"] or "{}")
            except json.JSONDecodeError:
                arguments = {}
            calls.append(
                ToolCall(
                    id=slot["id"] or new_id("call"),
                    name=slot["name"],
                    arguments=arguments if isinstance(arguments, dict) else {},
                )
            )
        return calls

    def blocks(self) -> List[ContentBlock]:
        found = [self.reasoning_block, self.text_block, *self.call_blocks.values()]
        return [b for b in found if b is not None]


@dataclass
class _CallOutcome:
    call: ToolCall
    result: ToolResult
    events: List[AgentEvent] = field(default_factory=list)

    def to_message(self) -> Message:
        return Message(
            role="tool",
            content=self.result.output,
            tool_call_id=self.call.id,
            name=self.call.name,
            is_error=self.result.is_error,
        )


class AgentRuntime:
    def __init__(
        self,
        client: Any,
        registry: ToolRegistry,
        context_manager: ContextManager,
        *,
        memory_store: Optional[MemoryStore] = None,
        policy_engine: Optional[PolicyEngine] = None,
        approval_handler: Optional[ApprovalHandler] = None,
        summarization_client: Any = None,
        settings: Optional[Settings] = None,
        session_id: Optional[str] = None,
        sleep: Optional[SleepFn] = None,
        services: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.client = client
        self.registry = registry
        self.context_manager = context_manager
        self.settings = settings or get_settings()
        self.workspace_dir: Path = context_manager.workspace_dir
        self.memory_store = memory_store or MemoryStore(self.workspace_dir, self.settings.memory_dir_name)
        self.policy_engine = policy_engine
        self.approval_handler = approval_handler
        self.summarization_client = summarization_client or client
        self.session_id = session_id or new_id("ses")

        retry_kwargs: Dict[str, Any] = {"sleep": sleep} if sleep is not None else {}
        self.retry = RetryPolicy(
            max_retries=self.settings.tool_max_retries,
            base_delay=self.settings.tool_retry_base_delay,
            classify=is_transient_error,
            **retry_kwargs,
        )
        self.services: Dict[str, Any] = {
            "summarization_client": self.summarization_client,
            "settings": self.settings,
            "home_dir": context_manager.home_dir,
        }
        self.services.update(services or {})

        self._history: List[Message] = []
        self._busy = False
        if not context_manager.initialized:
            context_manager.initialize()

    # -- history ---------------------------------------------------------

    @property
    def history(self) -> List[Message]:
        return list(self._history)

    @property
    def busy(self) -> bool:
        return self._busy

    def clear_history(self) -> None:
        self._history = []
        self.context_manager.clear_jit_memory()

    def load_history(self, messages: Iterable[Message | Dict[str, Any]]) -> None:
        self._history = [m if isinstance(m, Message) else Message.model_validate(m) for m in messages]

    # -- main loop -------------------------------------------------------

    async def send_message(
        self,
        text: str,
        *,
        token: Optional[CancellationToken] = None,
        attachments: Optional[Sequence[Attachment]] = None,
    ) -> AsyncIterator[AgentEvent]:
        if self._busy:
            yield AgentEvent(type="error", error="Session is already processing a message")
            return

        token = token or CancellationToken()
        self._busy = True
        started = time.monotonic()
        user_message = build_user_message(text, attachments)
        self._history.append(user_message)
        yield AgentEvent(
            type="processing_start",
            message=user_message,
            data={"session_id": self.session_id},
        )
        status = "completed"
        try:
            async for event in self._run(token):
                yield event
        except AbortedError as exc:
            status = "aborted"
            logger.info("agent_aborted session=%s reason=%s", self.session_id, exc)
            yield AgentEvent(type="aborted", error=str(exc))
        except Exception as exc:
            status = "error"
            logger.exception("agent_error session=%s error=%s", self.session_id, exc)
            yield AgentEvent(type="error", error=str(exc) or exc.__class__.__name__)
        finally:
            self._busy = False

        duration_ms = (time.monotonic() - started) * 1000.0
        logger.info(
            "agent_turn session=%s status=%s history=%s latency_ms=%.2f",
            self.session_id,
            status,
            len(self._history),
            duration_ms,
        )
        yield AgentEvent(
            type="processing_end",
            data={"session_id": self.session_id, "status": status, "duration_ms": round(duration_ms, 2)},
        )

    async def _run(self, token: CancellationToken) -> AsyncIterator[AgentEvent]:
        max_iterations = self.settings.max_iterations
        for iteration in range(1, max_iterations + 1):
            token.raise_if_cancelled()
            logger.debug("agent_iteration session=%s iteration=%s history=%s", self.session_id, iteration, len(self._history))

            turn = _TurnState()
            async for event in self._stream_turn(self._history, self.registry.catalog(), token, turn):
                yield event
            tool_calls = turn.tool_calls()

            if not tool_calls:
                final = Message(role="assistant", content=turn.text)
                self._history.append(final)
                yield AgentEvent(type="message", message=final)
                return

            assistant = Message(role="assistant", content=turn.text, tool_calls=tool_calls)
            outcomes: Dict[int, _CallOutcome] = {}
            async for index, outcome in self._dispatch(tool_calls, token):
                outcomes[index] = outcome
                for event in outcome.events:
                    yield event

            token.raise_if_cancelled()
            ordered = [outcomes[i] for i in range(len(tool_calls))]
            committed = [assistant] + [o.to_message() for o in ordered]
            attachments = [a for o in ordered for a in o.result.attachments]
            if attachments:
                committed.append(build_user_message(ATTACHMENTS_PREAMBLE, attachments))
            self._history.extend(committed)
            yield AgentEvent(type="message", message=assistant)

            loop = detect_loop(self._history)
            if loop.is_looping:
                warning = Message(role="user", content=loop.as_warning())
                self._history.append(warning)
                logger.warning("loop_detected session=%s kind=%s", self.session_id, loop.kind)
                yield AgentEvent(
                    type="loop_warning",
                    message=warning,
                    data={"kind": loop.kind, "description": loop.description, "suggestion": loop.suggestion},
                )

            if len(self._history) > self.settings.compression_threshold:
                async for event in self._compress(token):
                    yield event

        async for event in self._wrap_up(token):
            yield event

    async def _stream_turn(
        self,
        history: Sequence[Message],
        tools: Sequence[Dict[str, Any]],
        token: CancellationToken,
        turn: _TurnState,
    ) -> AsyncIterator[AgentEvent]:
        system_prompt = self.build_system_prompt()
        stream = self.client.stream_chat(system_prompt, list(history), list(tools), token=token)
        async for delta in token.iterate(stream):
            if isinstance(delta, TextDelta):
                if not delta.text:
                    continue
                turn.text += delta.text
                if turn.text_block is None:
                    turn.text_block = ContentBlock(format="text", content={"text": turn.text})
                    yield _snapshot("block_start", turn.text_block, delta=delta.text)
                else:
                    turn.text_block.content["text"] = turn.text
                    yield _snapshot("block_update", turn.text_block, delta=delta.text)
            elif isinstance(delta, ReasoningDelta):
                if not delta.text:
                    continue
                turn.reasoning += delta.text
                if turn.reasoning_block is None:
                    turn.reasoning_block = ContentBlock(format="reasoning", content={"text": turn.reasoning})
                    yield _snapshot("block_start", turn.reasoning_block, delta=delta.text)
                else:
                    turn.reasoning_block.content["text"] = turn.reasoning
                    yield _snapshot("block_update", turn.reasoning_block, delta=delta.text)
            elif isinstance(delta, ToolCallDelta):
                slot = turn.call_slots.setdefault(delta.index, {"id": "", "name": "", "arguments": ""})
                if delta.id:
                    slot["id"] = delta.id
                if delta.name:
                    slot["name"] = delta.name
                slot["arguments"] += delta.arguments_fragment
                block = turn.call_blocks.get(delta.index)
                if block is None:
                    block = ContentBlock(format="tool_call", content={})
                    turn.call_blocks[delta.index] = block
                    block.content.update(id=slot["id"], name=slot["name"], arguments=slot["arguments"])
                    yield _snapshot("block_start", block)
                else:
                    block.content.update(id=slot["id"], name=slot["name"], arguments=slot["arguments"])
                    yield _snapshot("block_update", block)
            elif isinstance(delta, FinishSignal):
                turn.finish = delta

        for index, call in enumerate(turn.tool_calls()):
            block = turn.call_blocks.get(index)
            if block is None:
                block = ContentBlock(format="tool_call")
                turn.call_blocks[index] = block
            block.content = {"id": call.id, "name": call.name, "arguments": call.arguments}
        for block in turn.blocks():
            yield _snapshot("block_end", block)

    def build_system_prompt(self) -> str:
        return build_system_prompt(
            self.workspace_dir,
            tool_names=self.registry.names(),
            context=self.context_manager.get_full_context(),
            memory_index=self.memory_store.read_index(),
        )

    # -- tool dispatch ---------------------------------------------------

    def _is_read_only(self, call: ToolCall) -> bool:
        tool = self.registry.get(call.name)
        # Unknown tools never execute, so they are safe to resolve with the concurrent set.
        return tool is None or tool.read_only

    async def _dispatch(
        self, tool_calls: Sequence[ToolCall], token: CancellationToken
    ) -> AsyncIterator[tuple]:
        """Read-only calls concurrently, then mutating calls one at a time in order."""
        read_only = [i for i, call in enumerate(tool_calls) if self._is_read_only(call)]
        mutating = [i for i, call in enumerate(tool_calls) if not self._is_read_only(call)]

        if read_only:
            results = await asyncio.gather(
                *(self._execute_call(tool_calls[i], token) for i in read_only),
                return_exceptions=True,
            )
            for result in results:
                if isinstance(result, BaseException):
                    raise result
            for index, outcome in zip(read_only, results):
                yield index, outcome

        for index in mutating:
            token.raise_if_cancelled()
            yield index, await self._execute_call(tool_calls[index], token)

    async def _execute_call(self, call: ToolCall, token: CancellationToken) -> _CallOutcome:
        started = time.monotonic()
        outcome = await self._resolve_call(call, token)
        result = outcome.result
        if len(result.output) > self.settings.max_tool_output_chars:
            result = result.model_copy(
                update={"output": truncate_output(result.output, self.settings.max_tool_output_chars)}
            )
            outcome.result = result

        block = ContentBlock(
            format="error" if result.is_error else "tool_result",
            content={
                "call_id": call.id,
                "name": call.name,
                "title": result.title,
                "output": result.output,
                "is_error": result.is_error,
            },
            metadata=dict(result.metadata),
        )
        outcome.events.append(AgentEvent(type="tool_result", block=block, message=outcome.to_message()))
        logger.info(
            "tool_call name=%s call_id=%s status=%s latency_ms=%.2f",
            call.name,
            call.id,
            "error" if result.is_error else "ok",
            (time.monotonic() - started) * 1000.0,
        )
        return outcome

    async def _resolve_call(self, call: ToolCall, token: CancellationToken) -> _CallOutcome:
        token.raise_if_cancelled()
        tool = self.registry.get(call.name)
        if tool is None:
            available = ", ".join(self.registry.names()) or "none"
            return _CallOutcome(
                call,
                ToolResult.error(call.name, f"Unknown tool: {call.name}. Available tools: {available}"),
            )

        try:
            params = self.registry.validate(call.name, call.arguments)
        except ToolValidationError as exc:
            return _CallOutcome(call, ToolResult.error(call.name, str(exc), validation_errors=exc.errors))

        events: List[AgentEvent] = []
        if self.policy_engine is not None:
            refusal = await self._check_policy(call, token, events)
            if refusal is not None:
                return _CallOutcome(call, refusal, events)

        self._load_jit_context(call, tool.path_args)

        ctx = ToolContext(
            session_id=self.session_id,
            workspace_dir=self.workspace_dir,
            call_id=call.id,
            token=token,
            memory_dir=self.memory_store.root,
            services=self.services,
        )
        try:
            result = await self.retry.run(
                lambda: token.guard(tool.execute(params, ctx)),
                token=token,
                label=f"tool_{call.name}",
            )
        except AbortedError:
            raise
        except Exception as exc:
            logger.warning("tool_failed name=%s call_id=%s error=%s", call.name, call.id, exc)
            result = ToolResult.error(call.name, f"Error executing {call.name}: {exc}")
        if not isinstance(result, ToolResult):
            result = ToolResult(title=call.name, output=str(result))
        return _CallOutcome(call, result, events)

    async def _check_policy(
        self, call: ToolCall, token: CancellationToken, events: List[AgentEvent]
    ) -> Optional[ToolResult]:
        check = self.policy_engine.check(call.name, call.arguments)
        if check.decision is PolicyDecision.ALLOW:
            return None

        if check.decision is PolicyDecision.ASK_USER:
            approved = False
            if self.approval_handler is not None:
                try:
                    approved = bool(await token.guard(self.approval_handler(call.name, dict(call.arguments))))
                except AbortedError:
                    raise
                except Exception as exc:
                    logger.warning("approval_failed name=%s call_id=%s error=%s", call.name, call.id, exc)
            if approved:
                return None
            message = f"Tool '{call.name}' requires user approval and was not approved."
        else:
            reason = (check.rule.description if check.rule and check.rule.description else check.reason) or "denied"
            message = f"Tool '{call.name}' blocked by policy: {reason}"

        logger.info("policy_blocked name=%s call_id=%s decision=%s", call.name, call.id, check.decision.value)
        events.append(
            AgentEvent(
                type="policy_blocked",
                error=message,
                data={
                    "call_id": call.id,
                    "tool": call.name,
                    "decision": check.decision.value,
                    "rule": check.rule.to_dict() if check.rule else None,
                    "reason": check.reason,
                },
            )
        )
        return ToolResult.error(call.name, message, decision=check.decision.value)

    def _load_jit_context(self, call: ToolCall, path_args: Sequence[str]) -> None:
        for name in path_args:
            value = call.arguments.get(name)
            if not isinstance(value, str) or not value:
                continue
            try:
                self.context_manager.load_jit_memory(value)
            except (OSError, ValueError) as exc:
                logger.debug("context_jit_skip path=%s error=%s", value, exc)

    # -- maintenance -----------------------------------------------------

    async def _compress(self, token: CancellationToken) -> AsyncIterator[AgentEvent]:
        config = CompressionConfig(
            max_messages=self.settings.compression_threshold,
            preserve_recent=self.settings.preserve_recent,
        )
        result = await token.guard(compress(self._history, self.summarization_client, config))
        if result.compressed:
            self._history = result.messages
            yield AgentEvent(
                type="compressed",
                data={"original_count": result.original_count, "compressed_count": result.compressed_count},
            )
        elif result.error:
            logger.warning("compression_skipped session=%s error=%s", self.session_id, result.error)

    async def _wrap_up(self, token: CancellationToken) -> AsyncIterator[AgentEvent]:
        max_iterations = self.settings.max_iterations
        logger.warning("max_iterations session=%s limit=%s", self.session_id, max_iterations)
        yield AgentEvent(type="max_iterations", data={"max_iterations": max_iterations})

        instruction = Message(role="user", content=WRAP_UP_PROMPT)
        turn = _TurnState()
        async for event in self._stream_turn(self._history + [instruction], [], token, turn):
            yield event
        final = Message(
            role="assistant",
            content=turn.text or "Stopped after reaching the step limit without a final summary.",
        )
        self._history.extend([instruction, final])
        yield AgentEvent(type="message", message=final)
