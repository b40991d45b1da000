from __future__ import annotations

import logging
from typing import Any

from fastapi import Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError
from starlette.exceptions import HTTPException as StarletteHTTPException

from opsgate.apps.api.response import error_body, get_request_id
from opsgate.core.errors import GatewayError


logger = logging.getLogger(__name__)

_DEFAULT_ERROR_CODES: dict[int, str] = {
    400: "VALIDATION_ERROR",
    401: "AUTH_UNAUTHENTICATED",
    403: "AUTH_FORBIDDEN",
    404: "NOT_FOUND",
    405: "METHOD_NOT_ALLOWED",
    409: "CONFLICT",
    429: "RATE_LIMITED",
    500: "INTERNAL_ERROR",
}


def _default_code(status_code: int) -> str:
    # Map status codes to fallback error codes when none are provided.
    return _DEFAULT_ERROR_CODES.get(status_code, "UNKNOWN_ERROR")


def _validation_issues(exc: RequestValidationError) -> list[dict[str, Any]]:
    # Keep loc/msg/type only; raw ctx values may not be JSON serializable.
    return [
        {
            "loc": [str(part) for part in error.get("loc", ())],
            "msg": error.get("msg"),
            "type": error.get("type"),
        }
        for error in exc.errors()
    ]


async def gateway_error_handler(request: Request, exc: GatewayError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error(
            "request_failed request_id=%s path=%s code=%s message=%s",
            get_request_id(request),
            request.url.path,
            exc.code,
            exc.message,
        )
    payload = error_body(message=exc.message, code=exc.code, details=jsonable_encoder(exc.details))
    headers = {"WWW-Authenticate": "Bearer"} if exc.status_code == 401 else None
    return JSONResponse(content=payload, status_code=exc.status_code, headers=headers)


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    # Shape errors are client errors: 400 with the offending field named.
    issues = _validation_issues(exc)
    field = issues[0]["loc"][-1] if issues and issues[0]["loc"] else None
    payload = error_body(
        message="Invalid request",
        code="VALIDATION_ERROR",
        details={"field": field, "errors": issues},
    )
    return JSONResponse(content=payload, status_code=400)


async def database_error_handler(request: Request, exc: SQLAlchemyError) -> JSONResponse:
    # Never echo store error text; the log keeps the full exception.
    logger.error(
        "database_error request_id=%s path=%s",
        get_request_id(request),
        request.url.path,
        exc_info=exc,
    )
    payload = error_body(message="Database operation failed", code="DEPENDENCY_FAILURE")
    return JSONResponse(content=payload, status_code=500)


async def starlette_http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    message = exc.detail if isinstance(exc.detail, str) else "Request failed"
    payload = error_body(message=message, code=_default_code(exc.status_code))
    return JSONResponse(content=payload, status_code=exc.status_code, headers=exc.headers)


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    # Avoid leaking stack traces; return a stable internal error body.
    logger.exception("unhandled_error request_id=%s path=%s", get_request_id(request), request.url.path)
    payload = error_body(message="Internal server error", code="INTERNAL_ERROR")
    return JSONResponse(content=payload, status_code=500)
