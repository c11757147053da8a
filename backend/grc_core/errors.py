"""
Typed API errors.

Every failure the core surfaces to a caller carries a stable code from a fixed
vocabulary (VALIDATION_ERROR, NOT_FOUND, AUDIT_NO_EVIDENCE, ...). The code picks
the HTTP status; the message is meant for humans. main.py renders all of them as

    {"error": {"code": "...", "message": "..."}}
"""
from __future__ import annotations

from fastapi import HTTPException


class ApiError(HTTPException):
    status = 500
    default_code = "INTERNAL_ERROR"

    def __init__(self, message: str, code: str | None = None, status_code: int | None = None):
        super().__init__(status_code=status_code or self.status, detail=message)
        self.code = code or self.default_code
        self.message = message


class ValidationFailed(ApiError):
    status = 400
    default_code = "VALIDATION_ERROR"


class Unauthorized(ApiError):
    status = 401
    default_code = "UNAUTHORIZED"


class Forbidden(ApiError):
    status = 403
    default_code = "FORBIDDEN"


class NotFound(ApiError):
    status = 404
    default_code = "NOT_FOUND"


class Conflict(ApiError):
    status = 409
    default_code = "CONFLICT"


class Unprocessable(ApiError):
    status = 422
    default_code = "UNPROCESSABLE"


class RateLimited(ApiError):
    status = 429
    default_code = "REMINDER_RATE_LIMITED"


class ServiceUnavailable(ApiError):
    status = 503
    default_code = "SERVICE_UNAVAILABLE"


class InvalidTransition(ApiError):
    """A lifecycle change outside the entity's transition table."""

    status = 400
    default_code = "INVALID_STATUS_TRANSITION"

    def __init__(
        self,
        entity: str,
        from_state: str,
        to_state: str,
        code: str | None = None,
        status_code: int | None = None,
    ):
        super().__init__(
            f"Cannot transition {entity} from '{from_state}' to '{to_state}'",
            code=code,
            status_code=status_code,
        )
        self.entity = entity
        self.from_state = from_state
        self.to_state = to_state
