from __future__ import annotations

from typing import Any


class GatewayError(Exception):
    """Base error for the admin gateway; carries the HTTP mapping."""

    status_code = 500
    code = "INTERNAL_ERROR"

    def __init__(self, message: str, *, code: str | None = None, **details: Any) -> None:
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code
        self.details = {key: value for key, value in details.items() if value is not None}


class Unauthenticated(GatewayError):
    """Missing, invalid or expired credential."""

    status_code = 401
    code = "AUTH_UNAUTHENTICATED"


class Unauthorized(GatewayError):
    """Valid principal without the required tier."""

    status_code = 403
    code = "AUTH_FORBIDDEN"


class ValidationFailed(GatewayError):
    """Malformed or missing fields, invalid enum values."""

    status_code = 400
    code = "VALIDATION_ERROR"


class NotFound(GatewayError):
    status_code = 404
    code = "NOT_FOUND"


class Conflict(GatewayError):
    """State invariant would be violated."""

    status_code = 409
    code = "CONFLICT"


class RateLimited(GatewayError):
    status_code = 429
    code = "RATE_LIMITED"


class DependencyFailure(GatewayError):
    """Store or identity provider failure."""

    status_code = 500
    code = "DEPENDENCY_FAILURE"
