from __future__ import annotations

from dataclasses import dataclass
from typing import Mapping, Optional

from maak.service.errors import CredentialFailure
from maak.storage.models import User


@dataclass(frozen=True)
class VerificationResult:
    """Outcome of one verification attempt: exactly one of error or user."""

    error: Optional[str] = None
    user: Optional[User] = None
    kind: Optional[CredentialFailure] = None

    def __post_init__(self) -> None:
        if (self.error is None) == (self.user is None):
            raise ValueError("VerificationResult needs exactly one of error or user")
        if self.user is not None and self.kind is not None:
            raise ValueError("successful VerificationResult cannot carry a failure kind")

    @property
    def ok(self) -> bool:
        return self.user is not None

    @classmethod
    def success(cls, user: User) -> "VerificationResult":
        return cls(user=user)

    @classmethod
    def failure(cls, kind: CredentialFailure, message: str) -> "VerificationResult":
        return cls(error=message, kind=kind)


def _clean(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    value = value.strip()
    return value or None


@dataclass(frozen=True)
class AuthHeaders:
    """The request headers the verification cascade looks at."""

    authorization: Optional[str] = None
    session_id: Optional[str] = None
    user_id: Optional[str] = None
    is_demo: Optional[str] = None
    api_key: Optional[str] = None

    @classmethod
    def from_mapping(cls, headers: Mapping[str, str]) -> "AuthHeaders":
        """Build from any header mapping, matching names case-insensitively."""
        lowered = {str(key).lower(): value for key, value in headers.items()}
        return cls(
            authorization=_clean(lowered.get("authorization")),
            session_id=_clean(lowered.get("x-session-id")),
            user_id=_clean(lowered.get("x-user-id")),
            is_demo=_clean(lowered.get("x-is-demo")),
            api_key=_clean(lowered.get("x-api-key")),
        )

    @property
    def demo_flag(self) -> bool:
        return (self.is_demo or "").lower() == "true"

    @property
    def is_empty(self) -> bool:
        return not (self.authorization or self.session_id or self.user_id)

    def authorization_value(self, scheme: str) -> Optional[str]:
        """Return the credential after ``<scheme> `` or None when the scheme differs."""
        if not self.authorization:
            return None
        prefix = f"{scheme} "
        if not self.authorization.startswith(prefix):
            return None
        return _clean(self.authorization[len(prefix):])


__all__ = ["VerificationResult", "AuthHeaders"]
