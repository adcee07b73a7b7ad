from __future__ import annotations

import asyncio
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, Optional, TypeVar

from maak.client.api import ApiClient, BackupCheck, SessionProvider
from maak.client.errors import ApiError, is_authentication_failure
from maak.client.storage import SessionStore
from maak.logging import get_logger, preview_credential
from maak.service.demo import demo_token_age_hours, is_restorable_demo_token, now_ms
from maak.storage.models import StoredSession

logger = get_logger(__name__)

T = TypeVar("T")


class RecoverySource(str, Enum):
    NONE = "none"
    DURABLE_STORAGE = "durable_storage"
    PROVIDER = "provider"


@dataclass(frozen=True)
class RecoveryResult:
    success: bool
    token_found: bool
    token_set: bool
    source: RecoverySource
    error: Optional[str] = None


class TokenRecovery:
    """Repopulates the API client's token slot after it went missing or stale.

    Sources, in order: the token already held (if still valid), the durable
    demo-session backup, then the session provider. This class is the only
    code that deletes the durable backup.
    """

    def __init__(
        self,
        api: ApiClient,
        backup: SessionStore,
        session_provider: Optional[SessionProvider] = None,
        *,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        self.api = api
        self.backup = backup
        self.session_provider = session_provider
        self.clock = clock
        self._lock = asyncio.Lock()
        api.recovery = self

    def _read_backup(self) -> Optional[StoredSession]:
        """Return the backup if it is usable; discard it when it is not."""
        raw = self.backup.load()
        if raw is None:
            return None
        try:
            session = StoredSession.from_json(raw)
        except ValueError as exc:
            logger.warning("session_backup_malformed", error=str(exc))
            self.discard_backup()
            return None

        token = session.access_token
        if not is_restorable_demo_token(token, self.clock()):
            logger.info(
                "session_backup_expired",
                token_preview=preview_credential(token),
                age_hours=demo_token_age_hours(token, self.clock()),
            )
            self.discard_backup()
            return None
        return session

    def discard_backup(self) -> None:
        self.backup.delete()

    def restore_from_backup(self) -> bool:
        """Install the backed-up demo token into the API client, if usable."""
        session = self._read_backup()
        if session is None:
            return False
        self.api.set_access_token(session.access_token)
        logger.info("session_backup_restored", token_preview=preview_credential(session.access_token))
        return True

    def check_backup(self, rejected_token: str) -> BackupCheck:
        session = self._read_backup()
        if session is None:
            return BackupCheck.UNAVAILABLE
        if session.access_token != rejected_token:
            self.api.set_access_token(session.access_token)
            return BackupCheck.REPLACED
        return BackupCheck.UNCHANGED

    async def recover_token(self) -> RecoveryResult:
        # Serialised so a retried request never observes a half-finished recovery
        async with self._lock:
            status = self.api.get_token_status()
            if status.has_token and status.is_valid:
                return RecoveryResult(
                    success=True, token_found=True, token_set=True, source=RecoverySource.NONE
                )

            if self.restore_from_backup():
                return RecoveryResult(
                    success=True,
                    token_found=True,
                    token_set=True,
                    source=RecoverySource.DURABLE_STORAGE,
                )

            provider_error: Optional[str] = None
            if self.session_provider is not None:
                try:
                    session = await self.session_provider.get_session()
                except ApiError as exc:
                    logger.warning("recovery_provider_failed", error=exc.message)
                    provider_error = exc.message
                    session = None
                if session is not None and session.access_token:
                    self.api.set_access_token(session.access_token)
                    logger.info("recovery_provider_session_installed", user_id=session.user.id)
                    return RecoveryResult(
                        success=True,
                        token_found=True,
                        token_set=True,
                        source=RecoverySource.PROVIDER,
                    )

            logger.warning("recovery_failed", provider_error=provider_error)
            return RecoveryResult(
                success=False,
                token_found=False,
                token_set=False,
                source=RecoverySource.NONE,
                error=provider_error or "No valid authentication token could be recovered",
            )

    async def ensure_token_available(self) -> bool:
        result = await self.recover_token()
        return result.success

    async def with_recovery(self, operation: Callable[[], Awaitable[T]]) -> T:
        """Run ``operation``; on a recoverable auth failure recover once and retry once."""
        try:
            return await operation()
        except ApiError as exc:
            if not is_authentication_failure(exc):
                raise
            logger.info("recovery_triggered", kind=exc.kind.value)
            result = await self.recover_token()
            if not result.success:
                raise
            return await operation()


__all__ = ["RecoveryResult", "RecoverySource", "TokenRecovery"]
