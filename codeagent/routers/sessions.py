"""
Session API: create a session, stream a message through its agent, inspect
history, abort the running turn, delete.

Contract: POST /sessions -> 201 + session_id; POST /sessions/{id}/messages ->
200 NDJSON stream of AgentEvents; GET /sessions/{id} -> 200 or 404.
Error responses use the build_error_envelope body.
"""

from __future__ import annotations

from typing import AsyncIterator, List, Optional

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, Field

from ..dependencies import enforce_auth, get_provider, get_session_manager, get_summarization_client
from ..envelope import ErrorEnvelope
from ..models import AgentEvent, Attachment
from ..providers import BaseProvider
from ..sessions import Session, SessionManager

router = APIRouter(prefix="/sessions", tags=["sessions"])


class CreateSessionRequest(BaseModel):
    workspace_dir: Optional[str] = None
    approval_mode: Optional[str] = None
    read_only: bool = False


class SendMessageRequest(BaseModel):
    text: str = Field(..., min_length=1)
    attachments: List[Attachment] = Field(default_factory=list)


def _require_session(manager: SessionManager, session_id: str) -> Session:
    session = manager.get(session_id)
    if session is None:
        raise ErrorEnvelope(404, "NOT_FOUND", f"Session not found: {session_id}")
    return session


@router.post("", status_code=201)
async def post_sessions(
    request: Request,
    body: Optional[CreateSessionRequest] = None,
    provider: BaseProvider = Depends(get_provider),
    summarizer: BaseProvider = Depends(get_summarization_client),
    manager: SessionManager = Depends(get_session_manager),
) -> JSONResponse:
    """Create a new session. Body optional. Returns 201 with { session_id }."""
    enforce_auth(request)
    body = body or CreateSessionRequest()
    try:
        session = manager.create(
            provider,
            workspace_dir=body.workspace_dir,
            approval_mode=body.approval_mode,
            read_only=body.read_only,
            summarization_client=summarizer,
        )
    except FileNotFoundError as exc:
        raise ErrorEnvelope(400, "INVALID_WORKSPACE", str(exc)) from exc
    except ValueError as exc:
        raise ErrorEnvelope(422, "INPUT_VALIDATION_ERROR", str(exc)) from exc
    return JSONResponse(
        status_code=201,
        content={"session_id": session.id, "workspace_dir": str(session.workspace_dir)},
    )


@router.get("/{session_id}")
async def get_session(session_id: str, manager: SessionManager = Depends(get_session_manager)) -> JSONResponse:
    session = _require_session(manager, session_id)
    return JSONResponse(status_code=200, content=session.to_dict())


@router.post("/{session_id}/messages")
async def post_message(
    session_id: str,
    body: SendMessageRequest,
    request: Request,
    manager: SessionManager = Depends(get_session_manager),
) -> StreamingResponse:
    """Run one user message through the agent; the response is newline-delimited JSON events."""
    enforce_auth(request)
    session = _require_session(manager, session_id)
    token = manager.begin_turn(session)
    if token is None:
        raise ErrorEnvelope(409, "SESSION_BUSY", f"Session {session_id} is already processing a message")

    async def events() -> AsyncIterator[str]:
        try:
            stream = session.runtime.send_message(body.text, token=token, attachments=body.attachments or None)
            async for event in stream:
                yield _ndjson(event)
        finally:
            manager.end_turn(session, token)

    return StreamingResponse(events(), media_type="application/x-ndjson")


@router.post("/{session_id}/abort")
async def abort_session(
    session_id: str,
    request: Request,
    manager: SessionManager = Depends(get_session_manager),
) -> JSONResponse:
    enforce_auth(request)
    _require_session(manager, session_id)
    aborted = manager.abort(session_id)
    return JSONResponse(status_code=200, content={"ok": True, "session_id": session_id, "aborted": aborted})


@router.delete("/{session_id}")
async def delete_session(
    session_id: str,
    request: Request,
    manager: SessionManager = Depends(get_session_manager),
) -> JSONResponse:
    enforce_auth(request)
    if not manager.delete(session_id):
        raise ErrorEnvelope(404, "NOT_FOUND", f"Session not found: {session_id}")
    return JSONResponse(status_code=200, content={"ok": True, "session_id": session_id})


def _ndjson(event: AgentEvent) -> str:
    return event.model_dump_json(exclude_none=True) + "\n"
