from __future__ import annotations

from typing import Optional

from maak.service.errors import CredentialFailure

# Failure kinds worth a credential recovery attempt
RECOVERABLE_FAILURES = frozenset(
    {
        CredentialFailure.MISSING_CREDENTIAL,
        CredentialFailure.EXPIRED_CREDENTIAL,
        CredentialFailure.UNKNOWN_USER,
    }
)


class ApiError(Exception):
    """Base class for everything the API client raises."""

    retryable: bool = False

    def __init__(self, message: str, *, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code


class AuthenticationFailed(ApiError):
    """The server (or the client itself) could not establish who the caller is."""

    user_message = "Your session has expired. Please sign in again."

    def __init__(
        self,
        message: str,
        *,
        kind: CredentialFailure = CredentialFailure.METHODS_EXHAUSTED,
        status_code: Optional[int] = 401,
    ) -> None:
        super().__init__(message, status_code=status_code)
        self.kind = kind


class TokenUnavailable(AuthenticationFailed):
    """No credential could be resolved before sending the request."""

    user_message = "You are not signed in. Please sign in to continue."

    def __init__(self, message: str = "No authentication token available") -> None:
        super().__init__(message, kind=CredentialFailure.MISSING_CREDENTIAL, status_code=None)


class NetworkFailure(ApiError):
    retryable = True


class RequestTimedOut(NetworkFailure):
    pass


class ConnectionFailed(NetworkFailure):
    pass


class ServerFailure(ApiError):
    """5xx from the API."""

    retryable = True


class RequestRejected(ApiError):
    """Non-auth 4xx from the API (bad request, forbidden, not found, ...)."""


class CircuitOpenError(ApiError):
    """Calls are short-circuited while the breaker is open."""


def parse_failure_kind(code: Optional[str]) -> CredentialFailure:
    try:
        return CredentialFailure(code)
    except ValueError:
        return CredentialFailure.METHODS_EXHAUSTED


def is_authentication_failure(exc: BaseException) -> bool:
    """Whether ``exc`` is an auth failure that credential recovery could fix."""
    return isinstance(exc, AuthenticationFailed) and exc.kind in RECOVERABLE_FAILURES


__all__ = [
    "ApiError",
    "AuthenticationFailed",
    "CircuitOpenError",
    "ConnectionFailed",
    "NetworkFailure",
    "RECOVERABLE_FAILURES",
    "RequestRejected",
    "RequestTimedOut",
    "ServerFailure",
    "TokenUnavailable",
    "is_authentication_failure",
    "parse_failure_kind",
]
