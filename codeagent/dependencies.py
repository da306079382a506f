from __future__ import annotations

from typing import Optional

from fastapi import Request

from .config import get_settings
from .providers import BaseProvider, build_provider, build_summarization_client
from .sessions import SessionManager, session_manager


def get_provider() -> BaseProvider:
    """
    Dependency returning the active chat provider.

    Tests override this with a scripted StubProvider via FastAPI's
    dependency_overrides.
    """

    return build_provider()


def get_summarization_client() -> BaseProvider:
    """Client used by memory sync; overridable like `get_provider`."""

    return build_summarization_client()


def get_session_manager() -> SessionManager:
    return session_manager


def _get_bearer_token(request: Request) -> Optional[str]:
    auth_header = request.headers.get("Authorization")
    if auth_header and auth_header.startswith("Bearer "):
        token = auth_header.split(" ", 1)[1].strip()
        return token or None
    return None


def enforce_auth(request: Request) -> None:
    """
    Auth guard used by mutating endpoints.

    If AUTH_TOKEN is set, accept only that bearer token. Otherwise
    authentication is disabled (local use and tests).
    """
    settings = get_settings()
    if not settings.auth_token:
        return
    supplied = _get_bearer_token(request)
    if supplied is None:
        raise AuthError("Missing or invalid Authorization header")
    if supplied != settings.auth_token:
        raise AuthError("Invalid bearer token")


class AuthError(RuntimeError):
    """Raised when authentication fails."""
