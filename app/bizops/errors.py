"""
API error types.

Services raise these; the app factory registers one handler that renders them as
``{"error": ..., "details": ...}`` with the matching status code.
"""
from __future__ import annotations

from typing import Any


class ApiError(Exception):
    status_code = 500

    def __init__(self, message: str, *, details: Any = None, status_code: int | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details
        if status_code is not None:
            self.status_code = status_code

    def to_dict(self) -> dict[str, Any]:
        body: dict[str, Any] = {"error": self.message}
        if self.details is not None:
            body["details"] = self.details
        return body


class ValidationError(ApiError):
    status_code = 400


class AuthError(ApiError):
    status_code = 401


class PermissionDenied(ApiError):
    status_code = 403


class NotFoundError(ApiError):
    status_code = 404


class ConflictError(ApiError):
    status_code = 409


class RateLimited(ApiError):
    status_code = 429
