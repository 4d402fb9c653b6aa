"""API error taxonomy. Each class carries the HTTP status it is rendered with."""
from typing import Any, Optional


class ApiError(Exception):
    status_code = 500

    def __init__(self, message: str, error: Optional[Any] = None):
        super().__init__(message)
        self.message = message
        self.error = error

    def to_dict(self) -> dict:
        body = {"success": False, "message": self.message}
        if self.error is not None:
            body["error"] = self.error
        return body


class ValidationError(ApiError):
    """Missing or malformed input."""

    status_code = 400


class ConflictError(ApiError):
    """Slot already taken or a status change that is not allowed."""

    status_code = 400


class AuthError(ApiError):
    status_code = 401


class ForbiddenError(AuthError):
    status_code = 403


class NotFoundError(ApiError):
    status_code = 404


class UnhandledError(ApiError):
    """Persistence or unexpected failure; the underlying message is passed through."""

    status_code = 500
