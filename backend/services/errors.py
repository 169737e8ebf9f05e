"""
Domain errors for the session orchestration core.

Every failure a caller can observe is one of these. Each carries a stable ``code``
for clients, the HTTP status the REST layer maps it to, and whether retrying the
same request may succeed.
"""

from __future__ import annotations

from typing import Any


class DomainError(Exception):
    code: str = "error"
    status_code: int = 500
    retryable: bool = False

    def __init__(self, message: str, **details: Any) -> None:
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"code": self.code, "message": self.message}
        if self.details:
            payload["details"] = self.details
        return payload

    def __str__(self) -> str:
        details = f" {self.details}" if self.details else ""
        return f"[{self.code}] {self.message}{details}"


class NotFoundError(DomainError):
    code = "not_found"
    status_code = 404


class AlreadyActiveError(DomainError):
    code = "already_active"
    status_code = 409


class NotActiveError(DomainError):
    code = "not_active"
    status_code = 409


class FullError(DomainError):
    code = "full"
    status_code = 409


class ForbiddenError(DomainError):
    code = "forbidden"
    status_code = 403


class AlreadyPresentError(DomainError):
    code = "already_present"
    status_code = 409


class ConflictError(DomainError):
    code = "conflict"
    status_code = 409
    retryable = True


class TransientError(DomainError):
    """Store or cache unavailable or timed out. Nothing was committed."""

    code = "transient"
    status_code = 503
    retryable = True


class InvalidError(DomainError):
    code = "invalid"
    status_code = 400


class UnauthorizedError(InvalidError):
    code = "unauthorized"
    status_code = 401
