from __future__ import annotations

import secrets
import threading
import time
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Protocol, Tuple
from urllib.parse import quote

import httpx
from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerifyMismatchError

from maak.logging import get_logger, preview_credential
from maak.service.errors import ConflictError, ServerError, ValidationError
from maak.storage.models import ProviderSession, User

logger = get_logger(__name__)


class IdentityProvider(Protocol):
    """Account system for real (non-demo) users."""

    async def create_user(
        self, email: str, password: str, user_metadata: Optional[dict] = None
    ) -> User: ...

    async def verify_credential(self, access_token: str) -> Optional[User]: ...

    async def get_user_by_id(self, user_id: str) -> Optional[User]: ...

    async def sign_in(self, email: str, password: str) -> Optional[ProviderSession]: ...

    async def refresh(self, refresh_token: str) -> Optional[ProviderSession]: ...


class MemoryIdentityProvider:
    """In-process identity provider with argon2id password hashes.

    Access and refresh tokens are opaque random strings kept in memory, so every
    issued session dies with the process.
    """

    def __init__(
        self,
        *,
        access_token_ttl_minutes: int = 60,
        refresh_token_ttl_minutes: int = 60 * 24 * 7,
    ) -> None:
        self.access_token_ttl_seconds = access_token_ttl_minutes * 60
        self.refresh_token_ttl_seconds = refresh_token_ttl_minutes * 60
        self._pwd_hasher = PasswordHasher(type=Type.ID)
        self._users: Dict[str, User] = {}
        self._ids_by_email: Dict[str, str] = {}
        self._passwords: Dict[str, str] = {}
        self._access_tokens: Dict[str, Tuple[str, float]] = {}
        self._refresh_tokens: Dict[str, Tuple[str, float]] = {}
        self._state_lock = threading.RLock()

    async def create_user(
        self, email: str, password: str, user_metadata: Optional[dict] = None
    ) -> User:
        normalized = (email or "").strip().lower()
        if not normalized or "@" not in normalized:
            raise ValidationError("a valid email is required")
        if not password:
            raise ValidationError("password is required")
        digest = self._pwd_hasher.hash(password)
        with self._state_lock:
            if normalized in self._ids_by_email:
                raise ConflictError("email already registered")
            user = User(
                id=str(uuid.uuid4()),
                email=normalized,
                created_at=datetime.now(timezone.utc).isoformat(),
                app_metadata={"provider": "email"},
                user_metadata=dict(user_metadata or {}),
            )
            self._users[user.id] = user
            self._ids_by_email[normalized] = user.id
            self._passwords[user.id] = digest
        logger.info("identity_user_created", user_id=user.id)
        return user

    async def verify_credential(self, access_token: str) -> Optional[User]:
        with self._state_lock:
            record = self._access_tokens.get(access_token)
            if not record:
                return None
            user_id, expires_at = record
            if expires_at <= time.time():
                self._access_tokens.pop(access_token, None)
                logger.info("identity_access_token_expired", user_id=user_id)
                return None
            return self._users.get(user_id)

    async def get_user_by_id(self, user_id: str) -> Optional[User]:
        with self._state_lock:
            return self._users.get(user_id)

    async def sign_in(self, email: str, password: str) -> Optional[ProviderSession]:
        normalized = (email or "").strip().lower()
        with self._state_lock:
            user_id = self._ids_by_email.get(normalized)
            digest = self._passwords.get(user_id) if user_id else None
        if not user_id or not digest:
            logger.warning("identity_sign_in_unknown_email")
            return None
        try:
            self._pwd_hasher.verify(digest, password)
        except (InvalidHash, VerifyMismatchError):
            logger.warning("identity_sign_in_bad_password", user_id=user_id)
            return None
        return self._issue_session(user_id)

    async def refresh(self, refresh_token: str) -> Optional[ProviderSession]:
        with self._state_lock:
            record = self._refresh_tokens.pop(refresh_token, None)
        if not record:
            return None
        user_id, expires_at = record
        if expires_at <= time.time():
            logger.info("identity_refresh_token_expired", user_id=user_id)
            return None
        return self._issue_session(user_id)

    def _issue_session(self, user_id: str) -> Optional[ProviderSession]:
        now = time.time()
        access_token = secrets.token_urlsafe(32)
        refresh_token = secrets.token_urlsafe(32)
        with self._state_lock:
            user = self._users.get(user_id)
            if user is None:
                return None
            self._access_tokens[access_token] = (user_id, now + self.access_token_ttl_seconds)
            self._refresh_tokens[refresh_token] = (user_id, now + self.refresh_token_ttl_seconds)
        return ProviderSession(
            access_token=access_token,
            refresh_token=refresh_token,
            expires_in=self.access_token_ttl_seconds,
            expires_at=int(now + self.access_token_ttl_seconds),
            user=user,
        )


class HttpIdentityProvider:
    """Client for a GoTrue-compatible identity service."""

    def __init__(
        self,
        base_url: str,
        service_key: Optional[str],
        *,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.service_key = service_key
        self.timeout = timeout
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=f"{self.base_url}/auth/v1",
            timeout=self.timeout,
            transport=self._transport,
        )

    def _service_headers(self) -> Dict[str, str]:
        if not self.service_key:
            return {}
        return {"apikey": self.service_key, "Authorization": f"Bearer {self.service_key}"}

    @staticmethod
    def _json(response: httpx.Response) -> Any:
        try:
            return response.json()
        except ValueError:
            return None

    async def create_user(
        self, email: str, password: str, user_metadata: Optional[dict] = None
    ) -> User:
        body = {
            "email": email,
            "password": password,
            "user_metadata": dict(user_metadata or {}),
            # No email service is wired up, so accounts are confirmed on creation
            "email_confirm": True,
        }
        async with self._client() as client:
            response = await client.post(
                "/admin/users", json=body, headers=self._service_headers()
            )
        payload = self._json(response)
        if response.status_code in (409, 422):
            message = (payload or {}).get("msg") if isinstance(payload, dict) else None
            logger.warning("identity_create_rejected", status_code=response.status_code)
            raise ConflictError(message or "email already registered")
        if response.status_code >= 400 or not isinstance(payload, dict):
            logger.error("identity_create_failed", status_code=response.status_code)
            raise ServerError("identity provider rejected signup")
        return User.from_dict(payload)

    async def verify_credential(self, access_token: str) -> Optional[User]:
        headers = {"Authorization": f"Bearer {access_token}"}
        if self.service_key:
            headers["apikey"] = self.service_key
        async with self._client() as client:
            response = await client.get("/user", headers=headers)
        if response.status_code in (401, 403):
            logger.info(
                "identity_token_rejected",
                status_code=response.status_code,
                token_preview=preview_credential(access_token),
            )
            return None
        response.raise_for_status()
        payload = self._json(response)
        if not isinstance(payload, dict) or not payload.get("id"):
            logger.warning("identity_user_payload_invalid")
            return None
        return User.from_dict(payload)

    async def get_user_by_id(self, user_id: str) -> Optional[User]:
        # user_id comes from request headers; it must stay one path segment
        segment = quote(user_id or "", safe="")
        if segment in ("", ".", ".."):
            logger.warning("identity_user_id_rejected", user_id_preview=preview_credential(user_id))
            return None
        async with self._client() as client:
            response = await client.get(
                f"/admin/users/{segment}", headers=self._service_headers()
            )
        if response.status_code == 404:
            return None
        response.raise_for_status()
        payload = self._json(response)
        if not isinstance(payload, dict) or payload.get("id") != user_id:
            return None
        return User.from_dict(payload)

    async def _token_grant(self, grant_type: str, body: dict) -> Optional[ProviderSession]:
        headers = {"apikey": self.service_key} if self.service_key else {}
        async with self._client() as client:
            response = await client.post(
                "/token", params={"grant_type": grant_type}, json=body, headers=headers
            )
        if response.status_code in (400, 401, 403):
            logger.warning("identity_grant_rejected", grant_type=grant_type, status_code=response.status_code)
            return None
        response.raise_for_status()
        payload = self._json(response)
        if not isinstance(payload, dict):
            return None
        try:
            return ProviderSession.from_dict(payload)
        except ValueError as exc:
            logger.warning("identity_session_payload_invalid", error=str(exc))
            return None

    async def sign_in(self, email: str, password: str) -> Optional[ProviderSession]:
        return await self._token_grant("password", {"email": email, "password": password})

    async def refresh(self, refresh_token: str) -> Optional[ProviderSession]:
        return await self._token_grant("refresh_token", {"refresh_token": refresh_token})


__all__ = ["IdentityProvider", "MemoryIdentityProvider", "HttpIdentityProvider"]
