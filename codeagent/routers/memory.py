"""
Workspace memory API: POST /memory/sync runs a sync, GET /memory/status reports it.
"""

from __future__ import annotations

import dataclasses
from pathlib import Path
from typing import Optional

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from ..config import get_settings
from ..dependencies import enforce_auth, get_summarization_client
from ..envelope import ErrorEnvelope
from ..memory.store import MemoryStore
from ..memory.sync import MemorySyncEngine
from ..providers import BaseProvider

router = APIRouter(prefix="/memory", tags=["memory"])


class SyncRequest(BaseModel):
    workspace_dir: Optional[str] = None
    force: bool = False


def _workspace(raw: Optional[str]) -> Path:
    workspace = Path(raw or get_settings().workspace_dir).expanduser().resolve()
    if not workspace.is_dir():
        raise ErrorEnvelope(400, "INVALID_WORKSPACE", f"Workspace directory not found: {workspace}")
    return workspace


@router.post("/sync")
async def post_sync(
    request: Request,
    body: Optional[SyncRequest] = None,
    client: BaseProvider = Depends(get_summarization_client),
) -> JSONResponse:
    enforce_auth(request)
    body = body or SyncRequest()
    workspace = _workspace(body.workspace_dir)
    result = await MemorySyncEngine(client).sync(workspace, force=body.force)
    if result.error:
        raise ErrorEnvelope(502, "SYNC_FAILED", result.error, details=result.to_dict())
    return JSONResponse(status_code=200, content={"workspace_dir": str(workspace), **result.to_dict()})


@router.get("/status")
async def get_status(workspace_dir: Optional[str] = None) -> JSONResponse:
    workspace = _workspace(workspace_dir)
    status = MemoryStore(workspace, get_settings().memory_dir_name).sync_status()
    return JSONResponse(status_code=200, content={"workspace_dir": str(workspace), **dataclasses.asdict(status)})
