"""Observability helpers (correlation IDs, secrets kept out of logs)."""
from __future__ import annotations
import uuid
from typing import Mapping, Optional

REQUEST_ID_HEADER = "X-Request-ID"
_MAX_REQUEST_ID_LENGTH = 128

def ensure_request_id(headers: Mapping[str, str]) -> str:
    """Reuse the caller's correlation id when it is sane, otherwise mint one."""
    incoming = headers.get(REQUEST_ID_HEADER)
    if incoming and len(incoming) <= _MAX_REQUEST_ID_LENGTH:
        return incoming
    return str(uuid.uuid4())

def token_prefix(token: Optional[str]) -> Optional[str]:
    """First characters of a bearer/internal token, safe to log."""
    if not token:
        return None
    return token[:6] + "..." if len(token) > 6 else token

__all__ = ["ensure_request_id", "token_prefix", "REQUEST_ID_HEADER"]
