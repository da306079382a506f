"""
Chat clients.

Every provider exposes the same three coroutines so the runtime, the
compression service and the memory sync engine never care which backend is
configured:

- `stream_chat(system_prompt, messages, tools, token)` → async iterator of
  TextDelta / ReasoningDelta / ToolCallDelta, always ending in a FinishSignal
- `complete(system_prompt, prompt, max_tokens)` → text
- `validate()` → whether the credential works
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Callable, Dict, List, Optional, Sequence, Union

import httpx

from .cancellation import CancellationToken
from .config import Settings, get_settings
from .models import (
    AttachmentPart,
    FinishSignal,
    Message,
    ReasoningDelta,
    StreamDelta,
    TextDelta,
    TextPart,
    ToolCall,
    ToolCallDelta,
    new_id,
)

logger = logging.getLogger("codeagent")

OPENAI_API_URL = "https://api.openai.com/v1/chat/completions"
OPENROUTER_API_URL = "https://openrouter.ai/api/v1/chat/completions"
GEMINI_API_BASE = "https://generativelanguage.googleapis.com/v1beta/models"

DEFAULT_TIMEOUT = httpx.Timeout(120.0, connect=10.0)


class ProviderError(RuntimeError):
    """Non-2xx response from a model API."""

    def __init__(self, provider: str, status_code: int, message: str) -> None:
        self.provider = provider
        self.status_code = status_code
        super().__init__(f"{provider} API error: {status_code} - {message}")


def _stream_error_status(code: Any, message: str) -> int:
    """Map an in-stream error code to an HTTP-like status; codes may be symbolic strings."""
    if isinstance(code, int) and not isinstance(code, bool):
        return code
    if isinstance(code, str) and code.strip().isdigit():
        return int(code.strip())
    if "rate" in f"{code or ''} {message}".lower():
        return 429
    return 500


class BaseProvider:
    """Abstract chat client interface."""

    name = "base"

    def stream_chat(
        self,
        system_prompt: str,
        messages: Sequence[Message],
        tools: Sequence[Dict[str, Any]],
        token: Optional[CancellationToken] = None,
    ) -> AsyncIterator[StreamDelta]:  # pragma: no cover - interface only
        raise NotImplementedError

    async def complete(self, system_prompt: str, prompt: str, max_tokens: int = 1024) -> str:  # pragma: no cover - interface only
        raise NotImplementedError

    async def validate(self) -> bool:  # pragma: no cover - interface only
        raise NotImplementedError


# -- stub -------------------------------------------------------------------


@dataclass
class StubTurn:
    """One scripted model reply."""

    text: str = ""
    tool_calls: List[ToolCall] = field(default_factory=list)
    reasoning: str = ""


ScriptItem = Union[StubTurn, str, Callable[[Sequence[Message], Sequence[Dict[str, Any]]], StubTurn], BaseException]


class StubProvider(BaseProvider):
    """
    Deterministic provider for tests and offline use.

    `script` is consumed one item per `stream_chat` call; an item may be a
    StubTurn, plain text, a callable building a StubTurn from the request, or
    an exception to raise. Once the script runs out every call answers with
    `fallback_text`. `completions` feeds `complete()` the same way.
    """

    name = "stub"

    def __init__(
        self,
        script: Optional[Sequence[ScriptItem]] = None,
        *,
        completions: Optional[Sequence[Union[str, BaseException]]] = None,
        fallback_text: str = "stub response",
        fallback_completion: str = "stub summary",
        valid: bool = True,
    ) -> None:
        self.script: List[ScriptItem] = list(script or [])
        self.completions: List[Union[str, BaseException]] = list(completions or [])
        self.fallback_text = fallback_text
        self.fallback_completion = fallback_completion
        self.valid = valid
        self.stream_calls: List[Dict[str, Any]] = []
        self.complete_calls: List[Dict[str, Any]] = []
        self.validate_calls = 0

    def _next_turn(self, messages: Sequence[Message], tools: Sequence[Dict[str, Any]]) -> StubTurn:
        if not self.script:
            return StubTurn(text=self.fallback_text)
        item = self.script.pop(0)
        if isinstance(item, BaseException):
            raise item
        if isinstance(item, str):
            return StubTurn(text=item)
        if callable(item) and not isinstance(item, StubTurn):
            return item(messages, tools)
        return item

    async def stream_chat(
        self,
        system_prompt: str,
        messages: Sequence[Message],
        tools: Sequence[Dict[str, Any]],
        token: Optional[CancellationToken] = None,
    ) -> AsyncIterator[StreamDelta]:
        self.stream_calls.append(
            {"system_prompt": system_prompt, "messages": list(messages), "tools": list(tools)}
        )
        turn = self._next_turn(messages, tools)
        if turn.reasoning:
            yield ReasoningDelta(turn.reasoning)
        for chunk in re.findall(r"\s*\S+\s*", turn.text) or ([turn.text] if turn.text else []):
            if token is not None:
                token.raise_if_cancelled()
            yield TextDelta(chunk)
        for index, call in enumerate(turn.tool_calls):
            yield ToolCallDelta(index=index, id=call.id, name=call.name)
            yield ToolCallDelta(index=index, arguments_fragment=json.dumps(call.arguments))
        yield FinishSignal(
            reason="tool_calls" if turn.tool_calls else "stop",
            text=turn.text,
            tool_calls=list(turn.tool_calls),
        )

    async def complete(self, system_prompt: str, prompt: str, max_tokens: int = 1024) -> str:
        self.complete_calls.append({"system_prompt": system_prompt, "prompt": prompt, "max_tokens": max_tokens})
        if not self.completions:
            return self.fallback_completion
        item = self.completions.pop(0)
        if isinstance(item, BaseException):
            raise item
        return item

    async def validate(self) -> bool:
        self.validate_calls += 1
        return self.valid


# -- OpenAI-compatible ------------------------------------------------------


def _data_url(part: AttachmentPart) -> str:
    return f"data:{part.mime_type};base64,{part.data}"


def to_openai_messages(system_prompt: str, messages: Sequence[Message]) -> List[Dict[str, Any]]:
    converted: List[Dict[str, Any]] = [{"role": "system", "content": system_prompt}]
    for msg in messages:
        if msg.role == "tool":
            converted.append({"role": "tool", "tool_call_id": msg.tool_call_id, "content": msg.text})
            continue
        if msg.role == "assistant":
            entry: Dict[str, Any] = {"role": "assistant", "content": msg.text or None}
            if msg.tool_calls:
                entry["tool_calls"] = [
                    {
                        "id": call.id,
                        "type": "function",
                        "function": {"name": call.name, "arguments": json.dumps(call.arguments)},
                    }
                    for call in msg.tool_calls
                ]
            converted.append(entry)
            continue
        if isinstance(msg.content, str):
            converted.append({"role": msg.role, "content": msg.content})
            continue
        parts: List[Dict[str, Any]] = []
        for part in msg.content:
            if isinstance(part, TextPart):
                parts.append({"type": "text", "text": part.text})
            elif part.mime_type.startswith("image/"):
                parts.append({"type": "image_url", "image_url": {"url": _data_url(part)}})
            else:
                parts.append(
                    {
                        "type": "file",
                        "file": {"filename": part.name or "attachment", "file_data": _data_url(part)},
                    }
                )
        converted.append({"role": msg.role, "content": parts})
    return converted


def to_openai_tools(tools: Sequence[Dict[str, Any]]) -> List[Dict[str, Any]]:
    return [{"type": "function", "function": spec} for spec in tools]


def _parse_arguments(raw: str) -> Dict[str, Any]:
    try:
        parsed = json.loads(raw or "{}")
    except json.JSONDecodeError:
        logger.warning("provider_bad_tool_arguments raw=%r", raw[:200])
        return {}
    return parsed if isinstance(parsed, dict) else {}


class OpenAICompatibleProvider(BaseProvider):
    """Chat Completions API with SSE streaming (OpenAI, OpenRouter)."""

    name = "openai-compatible"
    api_url = OPENAI_API_URL

    def __init__(
        self,
        api_key: str,
        model: str,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        temperature: float = 0.2,
        max_tokens: int = 16384,
    ) -> None:
        self.api_key = api_key
        self.model = model
        self.temperature = temperature
        self.max_tokens = max_tokens
        self._transport = transport

    def _headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=DEFAULT_TIMEOUT, transport=self._transport)

    async def _raise_for_status(self, resp: httpx.Response) -> None:
        if resp.status_code >= 400:
            body = (await resp.aread()).decode("utf-8", errors="replace")
            raise ProviderError(self.name, resp.status_code, body[:500])

    async def stream_chat(
        self,
        system_prompt: str,
        messages: Sequence[Message],
        tools: Sequence[Dict[str, Any]],
        token: Optional[CancellationToken] = None,
    ) -> AsyncIterator[StreamDelta]:
        body: Dict[str, Any] = {
            "model": self.model,
            "messages": to_openai_messages(system_prompt, messages),
            "stream": True,
            "max_tokens": self.max_tokens,
            "temperature": self.temperature,
        }
        if tools:
            body["tools"] = to_openai_tools(tools)
            body["tool_choice"] = "auto"

        text = ""
        finish_reason = ""
        slots: Dict[int, Dict[str, str]] = {}
        async with self._client() as client:
            async with client.stream("POST", self.api_url, headers=self._headers(), json=body) as resp:
                await self._raise_for_status(resp)
                async for line in resp.aiter_lines():
                    if token is not None:
                        token.raise_if_cancelled()
                    line = line.strip()
                    if not line.startswith("data:"):
                        continue
                    data = line[5:].strip()
                    if not data:
                        continue
                    if data == "[DONE]":
                        break
                    try:
                        payload = json.loads(data)
                    except json.JSONDecodeError:
                        continue
                    if payload.get("error"):
                        error = payload["error"]
                        if not isinstance(error, dict):
                            error = {"message": error}
                        message = str(error.get("message"))
                        raise ProviderError(self.name, _stream_error_status(error.get("code"), message), message)
                    choices = payload.get("choices") or []
                    if not choices:
                        continue
                    choice = choices[0]
                    if choice.get("finish_reason"):
                        finish_reason = choice["finish_reason"]
                    delta = choice.get("delta") or {}
                    reasoning = delta.get("reasoning") or delta.get("reasoning_content")
                    if reasoning:
                        yield ReasoningDelta(reasoning)
                    if delta.get("content"):
                        text += delta["content"]
                        yield TextDelta(delta["content"])
                    for fragment in delta.get("tool_calls") or []:
                        index = int(fragment.get("index", 0))
                        slot = slots.setdefault(index, {"id": "", "name": "", "arguments": ""})
                        function = fragment.get("function") or {}
                        if fragment.get("id"):
                            slot["id"] = fragment["id"]
                        if function.get("name"):
                            slot["name"] += function["name"]
                        if function.get("arguments"):
                            slot["arguments"] += function["arguments"]
                        yield ToolCallDelta(
                            index=index,
                            id=fragment.get("id"),
                            name=function.get("name"),
                            arguments_fragment=function.get("arguments") or "",
                        )

        tool_calls = [
            ToolCall(
                id=slot["id"] or new_id("call"),
                name=slot["name"],
                arguments=_parse_arguments(slot["arguments"]),
            )
            for _, slot in sorted(slots.items())
        ]
        yield FinishSignal(reason=finish_reason or ("tool_calls" if tool_calls else "stop"), text=text, tool_calls=tool_calls)

    async def complete(self, system_prompt: str, prompt: str, max_tokens: int = 1024) -> str:
        body = {
            "model": self.model,
            "messages": [
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": prompt},
            ],
            "stream": False,
            "max_tokens": max_tokens,
            "temperature": self.temperature,
        }
        async with self._client() as client:
            resp = await client.post(self.api_url, headers=self._headers(), json=body)
            await self._raise_for_status(resp)
            data = resp.json()
        choices = data.get("choices") or [{}]
        return (choices[0].get("message") or {}).get("content") or ""

    async def validate(self) -> bool:
        try:
            await self.complete("Reply with OK", "Reply with OK", max_tokens=10)
        except (ProviderError, httpx.HTTPError) as exc:
            logger.warning("provider_validate_failed provider=%s error=%s", self.name, exc)
            return False
        return True


class OpenAIProvider(OpenAICompatibleProvider):
    name = "openai"
    api_url = OPENAI_API_URL

    def __init__(self, api_key: str, model: Optional[str] = None, **kwargs: Any) -> None:
        super().__init__(api_key, model or "gpt-4o-mini", **kwargs)


class OpenRouterProvider(OpenAICompatibleProvider):
    """
    OpenRouter provider: one API key, many models (OpenAI, Claude, Gemini, etc.).
    """

    name = "openrouter"
    api_url = OPENROUTER_API_URL

    def __init__(self, api_key: str, model: Optional[str] = None, **kwargs: Any) -> None:
        super().__init__(api_key, model or "openai/gpt-4o-mini", **kwargs)

    def _headers(self) -> Dict[str, str]:
        headers = super()._headers()
        headers["X-Title"] = "codeagent"
        return headers


# -- Gemini -----------------------------------------------------------------

_GEMINI_DROPPED_SCHEMA_KEYS = {"title", "default", "additionalProperties", "$schema", "$defs", "examples"}


def to_gemini_schema(schema: Any, defs: Optional[Dict[str, Any]] = None) -> Any:
    """Reduce a pydantic JSON schema to the OpenAPI subset Gemini accepts, inlining `$ref`s."""
    if isinstance(schema, list):
        return [to_gemini_schema(item, defs) for item in schema]
    if not isinstance(schema, dict):
        return schema
    if defs is None:
        defs = schema.get("$defs", {})
    ref = schema.get("$ref")
    if isinstance(ref, str) and ref.startswith("#/$defs/"):
        target = defs.get(ref.rsplit("/", 1)[-1], {})
        merged = {k: v for k, v in schema.items() if k != "$ref"}
        merged.update(target)
        return to_gemini_schema(merged, defs)
    any_of = schema.get("anyOf")
    if any_of:
        non_null = [branch for branch in any_of if branch.get("type") != "null"]
        if len(non_null) == 1:
            merged = {k: v for k, v in schema.items() if k != "anyOf"}
            merged.update(non_null[0])
            return to_gemini_schema(merged, defs)
    return {k: to_gemini_schema(v, defs) for k, v in schema.items() if k not in _GEMINI_DROPPED_SCHEMA_KEYS}


def to_gemini_contents(messages: Sequence[Message]) -> List[Dict[str, Any]]:
    contents: List[Dict[str, Any]] = []
    for msg in messages:
        if msg.role == "system":
            continue
        parts: List[Dict[str, Any]] = []
        if msg.role == "tool":
            key = "error" if msg.is_error else "output"
            parts.append({"functionResponse": {"name": msg.name or "tool", "response": {key: msg.text}}})
        elif isinstance(msg.content, str):
            if msg.content:
                parts.append({"text": msg.content})
        else:
            for part in msg.content:
                if isinstance(part, TextPart):
                    parts.append({"text": part.text})
                else:
                    parts.append({"inlineData": {"mimeType": part.mime_type, "data": part.data}})
        for call in msg.tool_calls or []:
            parts.append({"functionCall": {"name": call.name, "args": call.arguments}})
        if not parts:
            continue
        role = "model" if msg.role == "assistant" else "user"
        # Consecutive function responses for one model turn share a single content.
        if (
            msg.role == "tool"
            and contents
            and contents[-1]["role"] == "user"
            and all("functionResponse" in p for p in contents[-1]["parts"])
        ):
            contents[-1]["parts"].extend(parts)
            continue
        contents.append({"role": role, "parts": parts})
    return contents


class GeminiProvider(BaseProvider):
    """Google Generative Language REST API with SSE streaming."""

    name = "gemini"

    def __init__(
        self,
        api_key: str,
        model: Optional[str] = None,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        temperature: float = 0.2,
    ) -> None:
        self.api_key = api_key
        self.model = model or "gemini-2.0-flash"
        self.temperature = temperature
        self._transport = transport

    def _headers(self) -> Dict[str, str]:
        return {"x-goog-api-key": self.api_key, "Content-Type": "application/json"}

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=DEFAULT_TIMEOUT, transport=self._transport)

    async def _raise_for_status(self, resp: httpx.Response) -> None:
        if resp.status_code >= 400:
            body = (await resp.aread()).decode("utf-8", errors="replace")
            raise ProviderError(self.name, resp.status_code, body[:500])

    async def stream_chat(
        self,
        system_prompt: str,
        messages: Sequence[Message],
        tools: Sequence[Dict[str, Any]],
        token: Optional[CancellationToken] = None,
    ) -> AsyncIterator[StreamDelta]:
        body: Dict[str, Any] = {
            "contents": to_gemini_contents(messages),
            "systemInstruction": {"parts": [{"text": system_prompt}]},
            "generationConfig": {"temperature": self.temperature},
        }
        if tools:
            body["tools"] = [
                {
                    "functionDeclarations": [
                        {
                            "name": spec["name"],
                            "description": spec["description"],
                            "parameters": to_gemini_schema(spec["parameters"]),
                        }
                        for spec in tools
                    ]
                }
            ]
            body["toolConfig"] = {"functionCallingConfig": {"mode": "AUTO"}}

        url = f"{GEMINI_API_BASE}/{self.model}:streamGenerateContent?alt=sse"
        text = ""
        finish_reason = ""
        tool_calls: List[ToolCall] = []
        async with self._client() as client:
            async with client.stream("POST", url, headers=self._headers(), json=body) as resp:
                await self._raise_for_status(resp)
                async for line in resp.aiter_lines():
                    if token is not None:
                        token.raise_if_cancelled()
                    line = line.strip()
                    if not line.startswith("data:"):
                        continue
                    try:
                        payload = json.loads(line[5:].strip())
                    except json.JSONDecodeError:
                        continue
                    candidates = payload.get("candidates") or []
                    if not candidates:
                        continue
                    candidate = candidates[0]
                    if candidate.get("finishReason"):
                        finish_reason = candidate["finishReason"]
                    for part in (candidate.get("content") or {}).get("parts") or []:
                        if part.get("text"):
                            if part.get("thought"):
                                yield ReasoningDelta(part["text"])
                                continue
                            text += part["text"]
                            yield TextDelta(part["text"])
                        if part.get("functionCall"):
                            call = ToolCall(
                                # Gemini does not assign call ids.
                                id=new_id("call"),
                                name=part["functionCall"].get("name") or "",
                                arguments=part["functionCall"].get("args") or {},
                            )
                            index = len(tool_calls)
                            tool_calls.append(call)
                            yield ToolCallDelta(
                                index=index,
                                id=call.id,
                                name=call.name,
                                arguments_fragment=json.dumps(call.arguments),
                            )

        yield FinishSignal(reason=finish_reason or "STOP", text=text, tool_calls=tool_calls)

    async def complete(self, system_prompt: str, prompt: str, max_tokens: int = 1024) -> str:
        body = {
            "contents": [{"role": "user", "parts": [{"text": prompt}]}],
            "systemInstruction": {"parts": [{"text": system_prompt}]},
            "generationConfig": {"maxOutputTokens": max_tokens, "temperature": self.temperature},
        }
        url = f"{GEMINI_API_BASE}/{self.model}:generateContent"
        async with self._client() as client:
            resp = await client.post(url, headers=self._headers(), json=body)
            await self._raise_for_status(resp)
            data = resp.json()
        candidates = data.get("candidates") or [{}]
        parts = (candidates[0].get("content") or {}).get("parts") or []
        return "".join(part.get("text", "") for part in parts if not part.get("thought"))

    async def validate(self) -> bool:
        try:
            await self.complete("Reply with OK", "Reply with OK", max_tokens=10)
        except (ProviderError, httpx.HTTPError) as exc:
            logger.warning("provider_validate_failed provider=%s error=%s", self.name, exc)
            return False
        return True


# -- factories --------------------------------------------------------------


def build_provider(settings: Optional[Settings] = None, *, model: Optional[str] = None) -> BaseProvider:
    """Factory that chooses the concrete provider implementation."""
    settings = settings or get_settings()
    if settings.provider_name == "openrouter" and settings.openrouter_api_key:
        return OpenRouterProvider(api_key=settings.openrouter_api_key, model=model or settings.openrouter_model)
    if settings.provider_name == "openai" and settings.openai_api_key:
        return OpenAIProvider(api_key=settings.openai_api_key, model=model or settings.openai_model)
    if settings.provider_name == "gemini" and settings.gemini_api_key:
        return GeminiProvider(api_key=settings.gemini_api_key, model=model or settings.gemini_model)
    if settings.provider_name != "stub":
        logger.warning("provider=%s has no API key configured; using stub provider", settings.provider_name)
    return StubProvider()


def build_summarization_client(settings: Optional[Settings] = None) -> BaseProvider:
    """Client used by memory sync and compression; SUMMARY_MODEL overrides the chat model."""
    settings = settings or get_settings()
    return build_provider(settings, model=settings.summary_model)
