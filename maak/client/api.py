"""HTTP client for the MÄÄK API.

``ApiClient`` owns the single in-memory access token for a client session and
decides which credential goes on each request. On a 401 it tries to repair
the credential in-flow (backup demo token, or a fresh provider session) and
retries, at most ``max_retries`` times per request.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Dict, Optional, Protocol, Tuple

import httpx

from maak.client.errors import (
    ApiError,
    AuthenticationFailed,
    ConnectionFailed,
    RequestRejected,
    RequestTimedOut,
    ServerFailure,
    TokenUnavailable,
    parse_failure_kind,
)
from maak.client.retry import CircuitBreaker, RetryOptions, with_retry
from maak.logging import get_logger, preview_credential
from maak.service.demo import is_restorable_demo_token, now_ms
from maak.service.errors import CredentialFailure
from maak.storage.models import DEMO_TOKEN_PREFIX, ProviderSession, TokenFreeSession

if TYPE_CHECKING:
    from maak.client.recovery import TokenRecovery

logger = get_logger(__name__)

DEFAULT_TIMEOUT_SECONDS = 10.0
DEFAULT_MAX_RETRIES = 2
BACKOFF_BASE_SECONDS = 1.0
BACKOFF_CAP_SECONDS = 5.0

# Endpoints reachable with the public anon key when no token is held
OPEN_ENDPOINTS = ("/auth/signup", "/auth/login", "/auth/refresh", "/health")


class SessionProvider(Protocol):
    async def get_session(self) -> Optional[ProviderSession]: ...


class RequestState(str, Enum):
    ATTEMPTING = "attempting"
    NEEDS_RECOVERY = "needs_recovery"
    RECOVERING = "recovering"
    RETRYING = "retrying"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class CredentialSource(str, Enum):
    TOKEN = "token"
    ANON_KEY = "anon_key"
    TOKEN_FREE = "token_free"


class BackupCheck(str, Enum):
    """What the durable backup says about a token the server just rejected."""

    REPLACED = "replaced"
    UNCHANGED = "unchanged"
    UNAVAILABLE = "unavailable"


@dataclass(frozen=True)
class TokenStatus:
    has_token: bool
    token_type: Optional[str]
    preview: Optional[str]
    length: int
    is_valid: bool


def is_demo_token(token: Optional[str]) -> bool:
    return bool(token) and token.startswith(DEMO_TOKEN_PREFIX)


def _is_open_endpoint(endpoint: str) -> bool:
    path = endpoint.split("?", 1)[0]
    return any(path == open_path or path.startswith(f"{open_path}/") for open_path in OPEN_ENDPOINTS)


class ApiClient:
    def __init__(
        self,
        base_url: str,
        *,
        anon_key: str,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        max_retries: int = DEFAULT_MAX_RETRIES,
        backoff_base: float = BACKOFF_BASE_SECONDS,
        backoff_cap: float = BACKOFF_CAP_SECONDS,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        clock: Callable[[], int] = now_ms,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        circuit_breaker: Optional[CircuitBreaker] = None,
        read_retry_options: Optional[RetryOptions] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.anon_key = anon_key
        self.timeout = timeout
        self.max_retries = max_retries
        self.backoff_base = backoff_base
        self.backoff_cap = backoff_cap
        self.clock = clock
        self._sleep = sleep
        self.circuit_breaker = circuit_breaker
        # Applied to idempotent reads only
        self.read_retry_options = read_retry_options
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=httpx.Timeout(timeout),
            transport=transport,
        )
        self._access_token: Optional[str] = None
        self._token_free: Optional[TokenFreeSession] = None
        # Wired up by TokenRecovery / AuthClient
        self.recovery: Optional["TokenRecovery"] = None
        self.session_provider: Optional[SessionProvider] = None

    async def close(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> "ApiClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    # -- token slot -------------------------------------------------------

    def set_access_token(self, token: Optional[str]) -> None:
        self._access_token = token or None
        logger.debug(
            "api_token_set",
            has_token=self._access_token is not None,
            token_preview=preview_credential(self._access_token),
        )

    def get_access_token(self) -> Optional[str]:
        return self._access_token

    def get_token_status(self) -> TokenStatus:
        token = self._access_token
        if not token:
            return TokenStatus(has_token=False, token_type=None, preview=None, length=0, is_valid=False)
        demo = is_demo_token(token)
        return TokenStatus(
            has_token=True,
            token_type="demo" if demo else "provider",
            preview=preview_credential(token),
            length=len(token),
            is_valid=is_restorable_demo_token(token, self.clock()) if demo else True,
        )

    def use_token_free_session(self, session: Optional[TokenFreeSession]) -> None:
        """Send session headers plus the anon key when no bearer token is held."""
        self._token_free = session

    # -- request pipeline -------------------------------------------------

    def _resolve_credentials(
        self, endpoint: str, anonymous: bool = False
    ) -> Tuple[Dict[str, str], CredentialSource]:
        if anonymous:
            return {"Authorization": f"Bearer {self.anon_key}"}, CredentialSource.ANON_KEY
        if self._access_token:
            return {"Authorization": f"Bearer {self._access_token}"}, CredentialSource.TOKEN
        if self._token_free is not None:
            headers = self._token_free.to_headers()
            headers["Authorization"] = f"Bearer {self.anon_key}"
            return headers, CredentialSource.TOKEN_FREE
        if _is_open_endpoint(endpoint):
            return {"Authorization": f"Bearer {self.anon_key}"}, CredentialSource.ANON_KEY
        if self.recovery is not None and self.recovery.restore_from_backup():
            return {"Authorization": f"Bearer {self._access_token}"}, CredentialSource.TOKEN
        logger.warning("api_no_token_available", endpoint=endpoint)
        raise TokenUnavailable()

    async def _send(
        self,
        method: str,
        endpoint: str,
        headers: Dict[str, str],
        json: Optional[Any] = None,
    ) -> httpx.Response:
        request_headers = {"Content-Type": "application/json", **headers}
        try:
            return await asyncio.wait_for(
                self._client.request(method, endpoint, headers=request_headers, json=json),
                timeout=self.timeout,
            )
        except (asyncio.TimeoutError, httpx.TimeoutException) as exc:
            logger.warning("api_request_timeout", endpoint=endpoint, timeout=self.timeout)
            raise RequestTimedOut(
                f"Request to {endpoint} timed out after {self.timeout:g}s"
            ) from exc
        except httpx.TransportError as exc:
            logger.warning("api_connection_failed", endpoint=endpoint, error=str(exc))
            raise ConnectionFailed(f"Could not reach the server: {exc}") from exc

    @staticmethod
    def _body(response: httpx.Response) -> Any:
        try:
            return response.json()
        except ValueError:
            return None

    def _error_from_response(self, response: httpx.Response) -> ApiError:
        body = self._body(response)
        body = body if isinstance(body, dict) else {}
        status = response.status_code
        message = body.get("error") or f"HTTP {status}"
        if status == 401:
            return AuthenticationFailed(message, kind=parse_failure_kind(body.get("code")))
        if status >= 500:
            return ServerFailure(message, status_code=status)
        return RequestRejected(message, status_code=status)

    async def _backoff(self, attempt: int) -> None:
        delay = min(self.backoff_base * (2 ** attempt), self.backoff_cap)
        if delay > 0:
            await self._sleep(delay)

    async def _recover_after_unauthorized(
        self, rejected_token: str, attempt: int, response: httpx.Response
    ) -> str:
        """Return the token to retry with, or raise when nothing can be done."""
        if is_demo_token(rejected_token):
            if self.recovery is None:
                raise self._error_from_response(response)
            outcome = self.recovery.check_backup(rejected_token)
            if outcome == BackupCheck.REPLACED and self._access_token:
                return self._access_token
            if outcome == BackupCheck.UNCHANGED:
                await self._backoff(attempt)
                return rejected_token
            self.set_access_token(None)
            raise AuthenticationFailed(
                "Demo session expired, please sign in again",
                kind=CredentialFailure.EXPIRED_CREDENTIAL,
            )

        if self.session_provider is None:
            raise self._error_from_response(response)
        try:
            session = await self.session_provider.get_session()
        except ApiError as exc:
            logger.warning("api_provider_session_failed", error=exc.message)
            raise self._error_from_response(response) from exc
        if session is None or not session.access_token:
            raise self._error_from_response(response)
        if session.access_token == rejected_token:
            await self._backoff(attempt)
        self.set_access_token(session.access_token)
        return session.access_token

    async def retry(
        self, operation: Callable[[], Awaitable[Any]], options: RetryOptions
    ) -> Any:
        """Run ``operation`` under ``options`` using this client's sleep."""
        return await with_retry(operation, options, sleep=self._sleep)

    async def request(
        self,
        endpoint: str,
        *,
        method: str = "GET",
        json: Optional[Any] = None,
        anonymous: bool = False,
        retry_options: Optional[RetryOptions] = None,
    ) -> Any:
        """Send a request and return the decoded JSON body.

        ``anonymous`` requests always carry the anon key and are never
        retried on 401. With ``retry_options`` transient failures (timeouts,
        connection errors, 5xx) are retried with backoff. Each attempt runs
        through the circuit breaker when one is configured.
        """

        async def attempt() -> Any:
            if self.circuit_breaker is None:
                return await self._request_with_recovery(endpoint, method, json, anonymous)
            return await self.circuit_breaker.execute(
                lambda: self._request_with_recovery(endpoint, method, json, anonymous)
            )

        if retry_options is None:
            return await attempt()
        return await self.retry(attempt, retry_options)

    async def _request_with_recovery(
        self,
        endpoint: str,
        method: str,
        json: Optional[Any],
        anonymous: bool,
    ) -> Any:
        headers, source = self._resolve_credentials(endpoint, anonymous)
        state = RequestState.ATTEMPTING
        attempt = 0
        while True:
            response = await self._send(method, endpoint, headers, json)
            if response.is_success:
                state = RequestState.SUCCEEDED
                if attempt:
                    logger.info("api_request_recovered", endpoint=endpoint, attempts=attempt + 1)
                return self._body(response)

            can_recover = (
                response.status_code == 401
                and source == CredentialSource.TOKEN
                and attempt < self.max_retries
            )
            if not can_recover:
                state = RequestState.FAILED
                error = self._error_from_response(response)
                logger.warning(
                    "api_request_failed",
                    endpoint=endpoint,
                    status_code=response.status_code,
                    state=state.value,
                    attempts=attempt + 1,
                )
                raise error

            state = RequestState.NEEDS_RECOVERY
            rejected = headers["Authorization"].split(" ", 1)[1]
            logger.info(
                "api_request_unauthorized",
                endpoint=endpoint,
                attempt=attempt + 1,
                state=state.value,
                token_preview=preview_credential(rejected),
            )
            state = RequestState.RECOVERING
            token = await self._recover_after_unauthorized(rejected, attempt, response)
            attempt += 1
            headers = {"Authorization": f"Bearer {token}"}
            state = RequestState.RETRYING

    # -- operations -------------------------------------------------------

    async def signup(
        self, email: str, password: str, first_name: str, last_name: Optional[str] = None
    ) -> Dict[str, Any]:
        body = {"email": email, "password": password, "firstName": first_name}
        if last_name:
            body["lastName"] = last_name
        return await self.request("/auth/signup", method="POST", json=body, anonymous=True)

    async def login(self, email: str, password: str) -> Dict[str, Any]:
        return await self.request(
            "/auth/login",
            method="POST",
            json={"email": email, "password": password},
            anonymous=True,
        )

    async def refresh_session(self, refresh_token: str) -> Dict[str, Any]:
        return await self.request(
            "/auth/refresh",
            method="POST",
            json={"refresh_token": refresh_token},
            anonymous=True,
        )

    async def create_profile(self, profile: Dict[str, Any]) -> Dict[str, Any]:
        return await self.request("/profile", method="POST", json=profile)

    async def get_profile(self) -> Dict[str, Any]:
        return await self.request("/profile", retry_options=self.read_retry_options)

    async def save_personality_results(self, personality: Dict[str, Any]) -> Dict[str, Any]:
        return await self.request("/personality", method="POST", json=personality)

    async def get_personality_results(self) -> Dict[str, Any]:
        return await self.request("/personality", retry_options=self.read_retry_options)

    async def get_matches(self) -> Dict[str, Any]:
        return await self.request("/matches", retry_options=self.read_retry_options)

    async def send_message(
        self, recipient_id: str, message: str, message_type: str = "text"
    ) -> Dict[str, Any]:
        return await self.request(
            "/chat/send",
            method="POST",
            json={"recipientId": recipient_id, "message": message, "type": message_type},
        )

    async def get_chat_history(self, recipient_id: str) -> Dict[str, Any]:
        return await self.request(f"/chat/{recipient_id}", retry_options=self.read_retry_options)

    async def get_daily_question(self) -> Dict[str, Any]:
        return await self.request("/community/daily-question", retry_options=self.read_retry_options)

    async def answer_daily_question(self, answer_index: int) -> Dict[str, Any]:
        return await self.request(
            "/community/daily-question/answer", method="POST", json={"answerIndex": answer_index}
        )

    async def update_user_consent(self, consent: Dict[str, Any]) -> Dict[str, Any]:
        return await self.request("/privacy/consent", method="POST", json=consent)

    async def get_user_consent(self) -> Dict[str, Any]:
        return await self.request("/privacy/consent", retry_options=self.read_retry_options)

    async def request_data_export(self, details: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        return await self.request("/privacy/export", method="POST", json=details or {})

    async def request_data_deletion(self, details: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        return await self.request("/privacy/delete", method="POST", json=details or {})

    async def log_analytics(self, event: Dict[str, Any]) -> Dict[str, Any]:
        return await self.request("/analytics/track", method="POST", json=event)

    async def health_check(self) -> Dict[str, Any]:
        """Always uses the anon key; never touches the token slot or recovery."""
        response = await self._send(
            "GET", "/health", {"Authorization": f"Bearer {self.anon_key}"}
        )
        body = self._body(response)
        if response.status_code == 503 and isinstance(body, dict):
            return body
        if not response.is_success:
            raise self._error_from_response(response)
        return body


__all__ = [
    "ApiClient",
    "BackupCheck",
    "CredentialSource",
    "OPEN_ENDPOINTS",
    "RequestState",
    "SessionProvider",
    "TokenStatus",
    "is_demo_token",
]
