from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from fastapi import Depends, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from .config import get_settings
from .dependencies import AuthError, get_session_manager
from .envelope import ErrorEnvelope, build_error_envelope, new_request_id
from .policy import ApprovalMode, PolicyLoadError, create_policy_engine
from .routers import memory as memory_router
from .routers import sessions as sessions_router
from .sessions import SessionManager

logger = logging.getLogger("codeagent")


app = FastAPI(title="Coding Agent Runtime", version="0.1.0")


# CORS: controlled by env CORS_ORIGINS (e.g. * or http://localhost:3000)
_cors_origins_list = [o.strip() for o in get_settings().cors_origins.strip().split(",") if o.strip()]
app.add_middleware(
    CORSMiddleware,
    allow_origins=_cors_origins_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.include_router(sessions_router.router)
app.include_router(memory_router.router)


def _error_response(status_code: int, code: str, message: str, details: Any = None) -> JSONResponse:
    request_id = new_request_id()
    status_code, body = build_error_envelope(
        request_id=request_id,
        status_code=status_code,
        code=code,
        message=message,
        details=details,
    )
    logger.info("request_error request_id=%s status=%s code=%s", request_id, status_code, code)
    return JSONResponse(status_code=status_code, content=body)


@app.exception_handler(ErrorEnvelope)
async def handle_error_envelope(request: Request, exc: ErrorEnvelope) -> JSONResponse:
    return _error_response(exc.status_code, exc.code, exc.message, exc.details)


@app.exception_handler(AuthError)
async def handle_auth_error(request: Request, exc: AuthError) -> JSONResponse:
    return _error_response(401, "UNAUTHORIZED", str(exc))


@app.exception_handler(RequestValidationError)
async def handle_validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
    details = [{"path": list(err.get("loc", [])), "message": err.get("msg", "")} for err in exc.errors()]
    return _error_response(422, "INPUT_VALIDATION_ERROR", "Request failed validation", details)


@app.get("/")
async def root() -> Dict[str, Any]:
    """
    Service metadata endpoint.
    """
    return {
        "service": get_settings().service_name,
        "docs": "/docs",
        "health": "/health",
        "tools": "/tools",
    }


@app.get("/health")
async def health(manager: SessionManager = Depends(get_session_manager)) -> JSONResponse:
    """
    Simple health check. Returns 200 when the builtin policy rules load.
    """
    settings = get_settings()
    try:
        create_policy_engine(settings.approval_mode)
    except (PolicyLoadError, ValueError) as exc:
        return _error_response(500, "INTERNAL_ERROR", str(exc))

    payload = {
        "status": "ok",
        "service": settings.service_name,
        "provider": settings.provider_name,
        "approval_mode": settings.approval_mode,
        "tools": len(manager.registry),
        "sessions": len(manager.list()),
    }
    return JSONResponse(status_code=200, content=payload)


@app.get("/tools")
async def tools(manager: SessionManager = Depends(get_session_manager)) -> JSONResponse:
    """Tool catalog as function specs, with each tool's read_only flag."""
    catalog = [{**tool.to_function_spec(), "read_only": tool.read_only} for tool in manager.registry.list()]
    return JSONResponse(status_code=200, content={"tools": catalog})


class PolicyCheckRequest(BaseModel):
    tool_name: str = Field(..., min_length=1)
    args: Dict[str, Any] = Field(default_factory=dict)
    approval_mode: Optional[str] = None
    read_only: bool = False


@app.post("/policy/check")
async def policy_check(body: PolicyCheckRequest) -> JSONResponse:
    """Dry-run the policy engine for one invocation."""
    try:
        mode = ApprovalMode.parse(body.approval_mode or get_settings().approval_mode)
    except ValueError as exc:
        raise ErrorEnvelope(422, "INPUT_VALIDATION_ERROR", str(exc)) from exc
    result = create_policy_engine(mode, read_only=body.read_only).check(body.tool_name, body.args)
    return JSONResponse(
        status_code=200,
        content={
            "tool_name": body.tool_name,
            "approval_mode": mode.value,
            "decision": result.decision.value,
            "rule": result.rule.to_dict() if result.rule else None,
            "reason": result.reason,
        },
    )


def get_app() -> FastAPI:
    """Convenience accessor for external runners."""
    return app
