from __future__ import annotations

import threading
from typing import Optional, Union
from urllib.parse import urlparse, urlunparse

from maak.config import get_settings, reset_settings_cache
from maak.logging import get_logger
from maak.service.auth import AuthService
from maak.service.chat import ChatService
from maak.service.community import CommunityService
from maak.service.identity import HttpIdentityProvider, IdentityProvider, MemoryIdentityProvider
from maak.service.privacy import PrivacyService
from maak.service.profiles import ProfileService
from maak.storage.memory import MemoryKVStore
from maak.storage.redis_store import RedisKVStore

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password component of a URL for logging."""
    if not url:
        return url
    try:
        parsed = urlparse(url)
    except ValueError:
        return "***url_parse_error***"
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self):
        self.settings = get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )

        self.store: Union[MemoryKVStore, RedisKVStore] = self._build_store()
        self.identity: IdentityProvider = self._build_identity()
        self.auth = AuthService(
            self.identity,
            demo_email_domain=self.settings.demo_email_domain,
            demo_phone=self.settings.demo_phone,
        )
        self.profiles = ProfileService(self.store)
        self.chat = ChatService(self.store)
        self.community = CommunityService(self.store)
        self.privacy = PrivacyService(self.store)
        logger.info(
            "runtime_init_complete",
            store_type=type(self.store).__name__,
            identity_type=type(self.identity).__name__,
        )

    def _build_store(self) -> Union[MemoryKVStore, RedisKVStore]:
        if self.settings.use_memory_store:
            return MemoryKVStore()

        redis_error: Exception | None = None
        try:
            store = RedisKVStore(self.settings.redis_url)
            store.verify_connection()
            return store
        except Exception as exc:
            redis_error = exc

        if not self.settings.test_mode:
            raise RuntimeError(
                "Redis is required for the key-value store; start Redis or set "
                "USE_MEMORY_STORE=true / TEST_MODE=true for an in-memory fallback."
            ) from redis_error

        logger.warning(
            "redis_disabled_fallback",
            redis_url=_mask_url_password(self.settings.redis_url),
            error=str(redis_error),
            message="Running under TEST_MODE with an in-memory key-value store.",
        )
        return MemoryKVStore()

    def _build_identity(self) -> IdentityProvider:
        if self.settings.identity_provider_url:
            return HttpIdentityProvider(
                self.settings.identity_provider_url,
                self.settings.identity_service_key,
                timeout=self.settings.identity_timeout_seconds,
            )
        return MemoryIdentityProvider(
            access_token_ttl_minutes=self.settings.access_token_ttl_minutes,
            refresh_token_ttl_minutes=self.settings.refresh_token_ttl_minutes,
        )

    async def close(self) -> None:
        await self.store.close()


runtime: Optional[Runtime] = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton in a thread-safe manner.

    Double-checked locking: the fast path skips the lock once the runtime
    exists, the slow path re-checks under the lock before creating it.
    """
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime()
        return runtime


__all__ = ["Runtime", "get_runtime", "reset_runtime_for_tests"]
