from __future__ import annotations

import uuid
from typing import Any, Dict, Tuple

from .config import get_settings


class ErrorEnvelope(Exception):
    """
    Custom exception used internally to simplify control flow.

    Handlers in `codeagent.main` convert this into the standardized error envelope.
    """

    def __init__(self, status_code: int, code: str, message: str, details: Any = None):
        self.status_code = status_code
        self.code = code
        self.message = message
        self.details = details
        super().__init__(message)


def new_request_id() -> str:
    return str(uuid.uuid4())


def build_error_envelope(
    *,
    request_id: str,
    status_code: int,
    code: str,
    message: str,
    details: Any = None,
) -> Tuple[int, Dict[str, Any]]:
    body = {
        "error": {
            "code": code,
            "message": message,
            "details": details,
        },
        "meta": {
            "request_id": request_id,
            "service": get_settings().service_name,
        },
    }
    return status_code, body
