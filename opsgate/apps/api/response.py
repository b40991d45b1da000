from __future__ import annotations

from typing import Any
from uuid import uuid4

from fastapi import Request


API_VERSION = "v1"
REQUEST_ID_HEADER = "X-Request-Id"


def get_request_id(request: Request) -> str:
    # Use existing request IDs when provided to preserve traceability.
    request_id = getattr(request.state, "request_id", None)
    if request_id:
        return request_id
    header_request_id = request.headers.get(REQUEST_ID_HEADER)
    if header_request_id:
        request.state.request_id = header_request_id
        return header_request_id
    generated = str(uuid4())
    request.state.request_id = generated
    return generated


def error_body(*, message: str, code: str, details: dict[str, Any] | None = None) -> dict[str, Any]:
    # Flat error shape: message and code first, details merged alongside.
    payload: dict[str, Any] = {"error": message, "code": code}
    for key, value in (details or {}).items():
        payload.setdefault(key, value)
    return payload
