"""Session creation flows for the client: real logins and demo sessions."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any, Awaitable, Callable, Optional, Union

import httpx

from maak.client.api import ApiClient
from maak.client.errors import ApiError, AuthenticationFailed
from maak.client.recovery import TokenRecovery
from maak.client.retry import AUTH_RETRY_OPTIONS, DATA_RETRY_OPTIONS, RetryOptions, api_circuit_breaker
from maak.client.storage import FileSessionStore, SessionStore
from maak.config import Settings, get_settings
from maak.logging import get_logger
from maak.service.demo import (
    DEFAULT_DEMO_EMAIL_DOMAIN,
    DEFAULT_DEMO_PHONE,
    build_demo_user,
    new_demo_token,
    now_ms,
)
from maak.service.errors import CredentialFailure
from maak.storage.models import (
    DEMO_REFRESH_PREFIX,
    DEMO_SESSION_EXPIRES_IN,
    ProviderSession,
    StoredSession,
)

logger = get_logger(__name__)

DEMO_OTP_CODES = frozenset({"123456", "000000"})
DEMO_PHONE_PREFIX = "+46"
# Refresh provider sessions this many seconds before they expire
REFRESH_MARGIN_SECONDS = 60


@dataclass(frozen=True)
class PhoneLoginResult:
    otp_sent: bool
    demo_session: Optional[StoredSession] = None


class AuthClient:
    """Creates sessions and acts as the session provider for recovery.

    Real sessions live only in memory here. Demo sessions are also written to
    the durable backup so they survive a restart of the client.
    """

    def __init__(
        self,
        api: ApiClient,
        backup: SessionStore,
        recovery: TokenRecovery,
        *,
        demo_email_domain: str = DEFAULT_DEMO_EMAIL_DOMAIN,
        demo_phone: str = DEFAULT_DEMO_PHONE,
        clock: Callable[[], int] = now_ms,
        sms_sender: Optional[Callable[[str], bool]] = None,
        retry_options: Optional[RetryOptions] = AUTH_RETRY_OPTIONS,
    ) -> None:
        self.api = api
        self.backup = backup
        self.recovery = recovery
        self.demo_email_domain = demo_email_domain
        self.demo_phone = demo_phone
        self.clock = clock
        self.sms_sender = sms_sender
        self.retry_options = retry_options
        self._session: Optional[ProviderSession] = None
        api.session_provider = self
        recovery.session_provider = self

    async def _with_auth_retry(self, operation: Callable[[], Awaitable[Any]]) -> Any:
        if self.retry_options is None:
            return await operation()
        return await self.api.retry(operation, self.retry_options)

    def _install(self, session: ProviderSession) -> ProviderSession:
        self._session = session
        self.api.use_token_free_session(None)
        self.api.set_access_token(session.access_token)
        return session

    async def signup(
        self, email: str, password: str, first_name: str, last_name: Optional[str] = None
    ) -> ProviderSession:
        # Signup is sent once; only the login below is retried
        await self.api.signup(email, password, first_name, last_name)
        logger.info("client_signup_complete")
        return await self.login(email, password)

    async def login(self, email: str, password: str) -> ProviderSession:
        payload = await self._with_auth_retry(lambda: self.api.login(email, password))
        try:
            session = ProviderSession.from_dict((payload or {}).get("session") or {})
        except ValueError as exc:
            raise AuthenticationFailed(
                "Login response did not contain a session",
                kind=CredentialFailure.METHODS_EXHAUSTED,
            ) from exc
        logger.info("client_login_complete", user_id=session.user.id)
        return self._install(session)

    async def get_session(self) -> Optional[ProviderSession]:
        """Current real-user session, refreshed first if it is about to expire."""
        session = self._session
        if session is None:
            return None
        expires_soon = session.expires_at and (
            session.expires_at <= self.clock() // 1000 + REFRESH_MARGIN_SECONDS
        )
        if not expires_soon:
            return session
        if not session.refresh_token:
            self._session = None
            return None
        try:
            payload = await self._with_auth_retry(lambda: self.api.refresh_session(session.refresh_token))
            refreshed = ProviderSession.from_dict((payload or {}).get("session") or {})
        except (ApiError, ValueError) as exc:
            logger.warning("client_session_refresh_failed", error=str(exc))
            self._session = None
            return None
        logger.info("client_session_refreshed", user_id=refreshed.user.id)
        return self._install(refreshed)

    def create_demo_session(self) -> StoredSession:
        """Start a demo session and back it up to durable storage."""
        created_ms = self.clock()
        user = build_demo_user(
            created_ms,
            email_domain=self.demo_email_domain,
            phone=self.demo_phone,
        )
        session = StoredSession(
            access_token=new_demo_token(created_ms),
            refresh_token=f"{DEMO_REFRESH_PREFIX}{created_ms}",
            expires_in=DEMO_SESSION_EXPIRES_IN,
            expires_at=created_ms // 1000 + DEMO_SESSION_EXPIRES_IN,
            user=user,
        )
        self.backup.save(session)
        self._session = None
        self.api.use_token_free_session(None)
        self.api.set_access_token(session.access_token)
        logger.info("demo_session_created", user_id=user.id)
        return session

    def login_with_phone(self, phone_number: str) -> PhoneLoginResult:
        """Send an OTP, falling back to a demo session for Swedish numbers."""
        sent = False
        if self.sms_sender is not None:
            try:
                sent = bool(self.sms_sender(phone_number))
            except Exception as exc:
                logger.warning("sms_send_failed", error=str(exc))
        if sent:
            return PhoneLoginResult(otp_sent=True)
        if phone_number.startswith(DEMO_PHONE_PREFIX):
            logger.info("sms_unavailable_demo_fallback")
            return PhoneLoginResult(otp_sent=False, demo_session=self.create_demo_session())
        raise AuthenticationFailed(
            "SMS verification is not available for this number",
            kind=CredentialFailure.METHODS_EXHAUSTED,
            status_code=None,
        )

    def verify_otp(self, phone_number: str, code: str) -> StoredSession:
        if code in DEMO_OTP_CODES:
            return self.create_demo_session()
        raise AuthenticationFailed(
            "Invalid verification code",
            kind=CredentialFailure.MALFORMED_CREDENTIAL,
            status_code=None,
        )

    def logout(self) -> None:
        """Forget every credential, including the durable demo backup.

        Besides expiry detection in TokenRecovery this is the only place the
        backup is deleted, and it still goes through the orchestrator.
        """
        self._session = None
        self.api.set_access_token(None)
        self.api.use_token_free_session(None)
        self.recovery.discard_backup()
        logger.info("client_logout")


@dataclass
class MaakClient:
    """A fully wired client session."""

    api: ApiClient
    recovery: TokenRecovery
    auth: AuthClient

    async def close(self) -> None:
        await self.api.close()


def build_client(
    settings: Optional[Settings] = None,
    *,
    backup: Optional[SessionStore] = None,
    backup_dir: Optional[Union[str, Path]] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
    base_url: Optional[str] = None,
    **api_kwargs,
) -> MaakClient:
    settings = settings or get_settings()
    store = backup or FileSessionStore(backup_dir or settings.session_backup_dir)
    api_kwargs.setdefault("circuit_breaker", api_circuit_breaker())
    api_kwargs.setdefault("read_retry_options", DATA_RETRY_OPTIONS)
    api = ApiClient(
        base_url or settings.api_base_url,
        anon_key=settings.public_anon_key,
        timeout=settings.client_timeout_seconds,
        max_retries=settings.client_max_retries,
        transport=transport,
        **api_kwargs,
    )
    recovery = TokenRecovery(api, store, clock=api.clock)
    auth = AuthClient(
        api,
        store,
        recovery,
        demo_email_domain=settings.demo_email_domain,
        demo_phone=settings.demo_phone,
        clock=api.clock,
    )
    return MaakClient(api=api, recovery=recovery, auth=auth)


__all__ = ["AuthClient", "MaakClient", "PhoneLoginResult", "build_client", "DEMO_OTP_CODES"]
