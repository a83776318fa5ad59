"""
auth/errors.py -- Error taxonomy shared by the auth components and the route layer.

Each error carries its HTTP status and a machine-readable code as class
attributes, so the route pipeline can translate any AuthServiceError into the
standard body without a lookup table:

    {"success": false, "error": <message>, "code": <code>, ...extra}

`extra` holds per-error payload such as the field error list of a
ValidationError, a corrective hint under "message", or the retry hint of a
RateLimitError.
"""

from __future__ import annotations

from typing import Any


class AuthServiceError(Exception):
    """Base class for errors that map onto a client-facing response."""

    status_code: int = 500
    code: str = "INTERNAL_ERROR"

    def __init__(self, error: str, /, *, code: str | None = None, **extra: Any) -> None:
        super().__init__(error)
        self.error = error
        if code is not None:
            self.code = code
        self.extra = extra

    def to_body(self) -> dict[str, Any]:
        return {"success": False, "error": self.error, "code": self.code, **self.extra}

    @property
    def headers(self) -> dict[str, str]:
        return {}


class ValidationError(AuthServiceError):
    """Malformed or missing input. `details` is a list of {field, message} dicts."""

    status_code = 400
    code = "VALIDATION_ERROR"


class AuthenticationError(AuthServiceError):
    status_code = 401
    code = "UNAUTHORIZED"


class AuthorizationError(AuthServiceError):
    status_code = 403
    code = "FORBIDDEN"


class NotFoundError(AuthServiceError):
    status_code = 404
    code = "NOT_FOUND"


class ConflictError(AuthServiceError):
    status_code = 409
    code = "CONFLICT"


class RateLimitError(AuthServiceError):
    status_code = 429
    code = "RATE_LIMITED"

    def __init__(self, retry_after: int) -> None:
        super().__init__(
            "Too many requests",
            message="Rate limit exceeded. Please try again later.",
            retryAfter=retry_after,
        )
        self.retry_after = retry_after

    @property
    def headers(self) -> dict[str, str]:
        return {"Retry-After": str(self.retry_after)}


class InternalError(AuthServiceError):
    """Opaque 500. The client never sees the underlying cause."""

    status_code = 500
    code = "INTERNAL_ERROR"

    def __init__(self) -> None:
        super().__init__("Internal server error")
