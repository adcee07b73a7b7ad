from __future__ import annotations

import json
from dataclasses import dataclass, field, replace
from typing import Any, Dict, Optional, Union

DEMO_USER_PREFIX = "demo-user-"
DEMO_TOKEN_PREFIX = "demo-token-"
DEMO_REFRESH_PREFIX = "demo-refresh-"

# Lifetime of a freshly created demo session backup, in seconds
DEMO_SESSION_EXPIRES_IN = 86400


@dataclass
class User:
    id: str
    email: Optional[str] = None
    phone: Optional[str] = None
    created_at: Optional[str] = None
    app_metadata: Dict[str, Any] = field(default_factory=dict)
    user_metadata: Dict[str, Any] = field(default_factory=dict)
    audience: str = "authenticated"

    @property
    def is_demo(self) -> bool:
        return bool(self.app_metadata.get("demo")) or self.id.startswith(DEMO_USER_PREFIX)

    def tagged(
        self,
        *,
        app_metadata: Optional[Dict[str, Any]] = None,
        user_metadata: Optional[Dict[str, Any]] = None,
    ) -> "User":
        """Return a copy with extra metadata merged in; the original is untouched."""
        return replace(
            self,
            app_metadata={**self.app_metadata, **(app_metadata or {})},
            user_metadata={**self.user_metadata, **(user_metadata or {})},
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "email": self.email,
            "phone": self.phone,
            "created_at": self.created_at,
            "app_metadata": dict(self.app_metadata),
            "user_metadata": dict(self.user_metadata),
            "aud": self.audience,
        }

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "User":
        if not isinstance(payload, dict) or not payload.get("id"):
            raise ValueError("user payload requires an id")
        return cls(
            id=str(payload["id"]),
            email=payload.get("email"),
            phone=payload.get("phone"),
            created_at=payload.get("created_at"),
            app_metadata=dict(payload.get("app_metadata") or {}),
            user_metadata=dict(payload.get("user_metadata") or {}),
            audience=payload.get("aud") or "authenticated",
        )


@dataclass
class StoredSession:
    """Session snapshot persisted in the durable client-side slot."""

    access_token: str
    refresh_token: str
    expires_at: int
    user: User
    expires_in: int = DEMO_SESSION_EXPIRES_IN
    token_type: str = "bearer"

    def to_json(self) -> str:
        return json.dumps(
            {
                "access_token": self.access_token,
                "refresh_token": self.refresh_token,
                "expires_in": self.expires_in,
                "expires_at": self.expires_at,
                "token_type": self.token_type,
                "user": self.user.to_dict(),
            }
        )

    @classmethod
    def from_json(cls, raw: str) -> "StoredSession":
        try:
            payload = json.loads(raw)
        except (TypeError, json.JSONDecodeError) as exc:
            raise ValueError("stored session is not valid JSON") from exc
        if not isinstance(payload, dict):
            raise ValueError("stored session must be a JSON object")
        token = payload.get("access_token")
        if not isinstance(token, str) or not token:
            raise ValueError("stored session has no access token")
        try:
            return cls(
                access_token=token,
                refresh_token=str(payload.get("refresh_token") or ""),
                expires_in=int(payload.get("expires_in", DEMO_SESSION_EXPIRES_IN)),
                expires_at=int(payload.get("expires_at", 0)),
                token_type=str(payload.get("token_type") or "bearer"),
                user=User.from_dict(payload.get("user") or {}),
            )
        except (TypeError, ValueError) as exc:
            raise ValueError(f"stored session is malformed: {exc}") from exc


@dataclass
class ProviderSession:
    """Tokens issued by the identity provider for a real user."""

    access_token: str
    refresh_token: Optional[str]
    expires_at: int
    user: User
    expires_in: int = 3600
    token_type: str = "bearer"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "access_token": self.access_token,
            "refresh_token": self.refresh_token,
            "expires_in": self.expires_in,
            "expires_at": self.expires_at,
            "token_type": self.token_type,
            "user": self.user.to_dict(),
        }

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "ProviderSession":
        token = payload.get("access_token")
        if not token:
            raise ValueError("session payload has no access token")
        return cls(
            access_token=token,
            refresh_token=payload.get("refresh_token"),
            expires_in=int(payload.get("expires_in") or 3600),
            expires_at=int(payload.get("expires_at") or 0),
            token_type=payload.get("token_type") or "bearer",
            user=User.from_dict(payload.get("user") or {}),
        )


# Credentials as they appear on the wire. Each renders its own headers.


def _demo_flag(is_demo: bool) -> str:
    return "true" if is_demo else "false"


@dataclass(frozen=True)
class TokenFreeSession:
    session_id: str
    user_id: str
    is_demo: bool = False

    def to_headers(self) -> Dict[str, str]:
        return {
            "X-Session-Id": self.session_id,
            "X-User-ID": self.user_id,
            "X-Is-Demo": _demo_flag(self.is_demo),
        }


@dataclass(frozen=True)
class LegacySession:
    session_id: str
    user_id: str
    is_demo: bool = False

    def to_headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Session {self.session_id}",
            "X-User-ID": self.user_id,
            "X-Is-Demo": _demo_flag(self.is_demo),
        }


@dataclass(frozen=True)
class BearerToken:
    token: str

    @property
    def is_demo(self) -> bool:
        return self.token.startswith(DEMO_TOKEN_PREFIX)

    def to_headers(self) -> Dict[str, str]:
        return {"Authorization": f"Bearer {self.token}"}


@dataclass(frozen=True)
class DemoMarker:
    user_id: str

    def to_headers(self) -> Dict[str, str]:
        return {"X-Is-Demo": "true", "X-User-ID": self.user_id}


Credential = Union[TokenFreeSession, LegacySession, BearerToken, DemoMarker]
