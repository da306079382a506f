"""
In-process session manager for the HTTP surface.

Each session owns one AgentRuntime bound to a workspace. Sessions live only
as long as the process; there is no persistence layer.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

from .cancellation import CancellationToken
from .config import Settings, get_settings
from .context_manager import ContextManager
from .memory.store import MemoryStore
from .models import new_id
from .policy import ApprovalMode, create_policy_engine
from .registry import ToolRegistry
from .runtime import AgentRuntime
from .tools.catalog import build_default_registry

logger = logging.getLogger("codeagent")


@dataclass
class Session:
    id: str
    workspace_dir: Path
    runtime: AgentRuntime
    approval_mode: ApprovalMode
    read_only: bool = False
    created_at: float = field(default_factory=time.time)
    token: Optional[CancellationToken] = None
    turn_active: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "session_id": self.id,
            "workspace_dir": str(self.workspace_dir),
            "approval_mode": self.approval_mode.value,
            "read_only": self.read_only,
            "created_at": self.created_at,
            "busy": self.turn_active or self.runtime.busy,
            "history": [m.model_dump(mode="json") for m in self.runtime.history],
        }


class SessionManager:
    def __init__(self, registry: Optional[ToolRegistry] = None) -> None:
        self._registry = registry
        self._sessions: Dict[str, Session] = {}
        self._lock = threading.Lock()

    @property
    def registry(self) -> ToolRegistry:
        if self._registry is None:
            self._registry = build_default_registry()
        return self._registry

    def create(
        self,
        client: Any,
        *,
        workspace_dir: Optional[str] = None,
        approval_mode: Optional[str] = None,
        read_only: bool = False,
        summarization_client: Any = None,
        settings: Optional[Settings] = None,
    ) -> Session:
        settings = settings or get_settings()
        workspace = Path(workspace_dir or settings.workspace_dir).expanduser().resolve()
        if not workspace.is_dir():
            raise FileNotFoundError(f"Workspace directory not found: {workspace}")
        mode = ApprovalMode.parse(approval_mode or settings.approval_mode)

        session_id = new_id("ses")
        runtime = AgentRuntime(
            client,
            self.registry,
            ContextManager(workspace, global_dir=settings.global_memory_dir),
            memory_store=MemoryStore(workspace, settings.memory_dir_name),
            policy_engine=create_policy_engine(mode, read_only=read_only),
            summarization_client=summarization_client,
            settings=settings,
            session_id=session_id,
        )
        session = Session(id=session_id, workspace_dir=workspace, runtime=runtime, approval_mode=mode, read_only=read_only)
        with self._lock:
            self._sessions[session_id] = session
        logger.info("session_created session=%s workspace=%s mode=%s", session_id, workspace, mode.value)
        return session

    def get(self, session_id: str) -> Optional[Session]:
        with self._lock:
            return self._sessions.get(session_id)

    def list(self) -> List[Session]:
        with self._lock:
            return list(self._sessions.values())

    def begin_turn(self, session: Session) -> Optional[CancellationToken]:
        """Claim the session for one turn; None when a turn is already in flight."""
        with self._lock:
            if session.turn_active or session.runtime.busy:
                return None
            session.turn_active = True
            session.token = CancellationToken()
            return session.token

    def end_turn(self, session: Session, token: CancellationToken) -> None:
        with self._lock:
            if session.token is token:
                session.turn_active = False

    def abort(self, session_id: str, reason: str = "Aborted by client") -> bool:
        session = self.get(session_id)
        if session is None or session.token is None:
            return False
        session.token.cancel(reason)
        return True

    def delete(self, session_id: str) -> bool:
        with self._lock:
            session = self._sessions.pop(session_id, None)
        if session is None:
            return False
        if session.token is not None:
            session.token.cancel("Session deleted")
        logger.info("session_deleted session=%s", session_id)
        return True

    def clear(self) -> None:
        for session_id in [s.id for s in self.list()]:
            self.delete(session_id)


session_manager = SessionManager()
