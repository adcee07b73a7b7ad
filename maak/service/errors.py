from __future__ import annotations

from enum import Enum
from typing import Optional


class CredentialFailure(str, Enum):
    """Why a request could not be tied to a user.

    The value doubles as the stable ``code`` in 401 response bodies so that
    clients can decide whether credential recovery is worth attempting.
    """

    MISSING_CREDENTIAL = "missing_credential"
    MALFORMED_CREDENTIAL = "malformed_credential"
    EXPIRED_CREDENTIAL = "expired_credential"
    UNKNOWN_USER = "unknown_user"
    METHODS_EXHAUSTED = "methods_exhausted"


class ServiceError(Exception):
    """Base class for errors the API turns into ``{"error", "code"}`` bodies.

    Subclasses pin the HTTP status and the stable code; both can be
    overridden per instance. 401s use a CredentialFailure value as code.
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class ValidationError(ServiceError):
    """Input the service cannot accept (400)."""


class BadRequestError(ValidationError):
    """Request is well-formed but missing what the operation needs (400)."""


class AuthenticationError(ServiceError):
    status_code = 401
    error_code = "unauthorized"

    def __init__(
        self,
        message: str,
        *,
        failure: Optional[CredentialFailure] = None,
        detail: Optional[dict] = None,
    ) -> None:
        super().__init__(
            message,
            detail=detail,
            error_code=failure.value if failure is not None else None,
        )
        self.failure = failure


class ForbiddenError(ServiceError):
    """Caller is known but not allowed, e.g. analytics without consent (403)."""

    status_code = 403
    error_code = "forbidden"


class NotFoundError(ServiceError):
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Duplicate account or record (409)."""

    status_code = 409
    error_code = "conflict"


class ServerError(ServiceError):
    """An upstream dependency answered in a way we cannot use (500)."""

    status_code = 500
    error_code = "server_error"


__all__ = [
    "CredentialFailure",
    "ServiceError",
    "ValidationError",
    "BadRequestError",
    "AuthenticationError",
    "ForbiddenError",
    "NotFoundError",
    "ConflictError",
    "ServerError",
]
