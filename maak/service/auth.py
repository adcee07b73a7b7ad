"""Request authentication.

Every protected endpoint resolves its caller through ``AuthService.verify``.
Four strategies are tried in a fixed order and the first one that produces a
user wins:

1. token-free sessions (``X-Session-Id`` + ``X-User-ID``)
2. legacy sessions (``Authorization: Session <id>``)
3. bearer tokens (``Authorization: Bearer <token>``)
4. the bare demo marker (``X-Is-Demo: true`` + a demo ``X-User-ID``)

Demo users are synthesized from their id; everyone else goes through the
identity provider. A strategy never raises for an unusable credential, it
returns a failed ``VerificationResult`` instead.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Awaitable, Callable, List, Optional, Tuple

from maak.logging import get_logger, preview_credential
from maak.service.demo import (
    SESSION_WINDOW_HOURS,
    TOKEN_WINDOW_HOURS,
    now_ms,
    parse_demo_timestamp,
    synthesize_demo_user,
)
from maak.service.errors import CredentialFailure
from maak.service.identity import IdentityProvider
from maak.service.verification import AuthHeaders, VerificationResult
from maak.storage.models import DEMO_TOKEN_PREFIX, DEMO_USER_PREFIX

logger = get_logger(__name__)

TOKEN_FREE_AUTH_TYPE = "token-free"


@dataclass
class VerificationContext:
    """Collaborators shared by the strategies for one verification."""

    identity: IdentityProvider
    email_domain: str
    phone: str
    current_ms: int


@dataclass
class StrategyOutcome:
    name: str
    applicable: bool
    result: VerificationResult


Strategy = Callable[[AuthHeaders, VerificationContext], Awaitable[VerificationResult]]


def _not_applicable(reason: str) -> VerificationResult:
    return VerificationResult.failure(CredentialFailure.MISSING_CREDENTIAL, reason)


def _demo(
    user_id: Optional[str],
    ctx: VerificationContext,
    *,
    window_hours: float,
    auth_type: Optional[str] = None,
    token_free: bool = False,
) -> VerificationResult:
    return synthesize_demo_user(
        user_id,
        window_hours=window_hours,
        current_ms=ctx.current_ms,
        email_domain=ctx.email_domain,
        phone=ctx.phone,
        auth_type=auth_type,
        token_free=token_free,
    )


async def verify_token_free(headers: AuthHeaders, ctx: VerificationContext) -> VerificationResult:
    if not (headers.session_id and headers.user_id):
        return _not_applicable("token-free headers missing")

    if headers.demo_flag:
        return _demo(
            headers.user_id,
            ctx,
            window_hours=SESSION_WINDOW_HOURS,
            auth_type=TOKEN_FREE_AUTH_TYPE,
            token_free=True,
        )

    # The session id is not checked against any server-side record; the
    # caller is trusted to be the user it names.
    user = await ctx.identity.get_user_by_id(headers.user_id)
    if user is None:
        return VerificationResult.failure(CredentialFailure.UNKNOWN_USER, "user not found")
    return VerificationResult.success(
        user.tagged(
            app_metadata={"tokenFree": True},
            user_metadata={"authType": TOKEN_FREE_AUTH_TYPE},
        )
    )


async def verify_legacy_session(headers: AuthHeaders, ctx: VerificationContext) -> VerificationResult:
    session_id = headers.authorization_value("Session")
    if not session_id:
        return _not_applicable("legacy session header missing")

    if headers.demo_flag:
        return _demo(headers.user_id, ctx, window_hours=SESSION_WINDOW_HOURS)

    if not headers.user_id:
        return VerificationResult.failure(
            CredentialFailure.MALFORMED_CREDENTIAL, "legacy session requires X-User-ID"
        )
    user = await ctx.identity.get_user_by_id(headers.user_id)
    if user is None:
        return VerificationResult.failure(CredentialFailure.UNKNOWN_USER, "user not found")
    return VerificationResult.success(user)


async def verify_bearer(headers: AuthHeaders, ctx: VerificationContext) -> VerificationResult:
    token = headers.authorization_value("Bearer")
    if not token:
        return _not_applicable("bearer token missing")

    if token.startswith(DEMO_TOKEN_PREFIX):
        timestamp = parse_demo_timestamp(token, DEMO_TOKEN_PREFIX)
        if timestamp is None:
            return VerificationResult.failure(
                CredentialFailure.MALFORMED_CREDENTIAL, "invalid demo token"
            )
        return _demo(
            f"{DEMO_USER_PREFIX}{timestamp}", ctx, window_hours=TOKEN_WINDOW_HOURS
        )

    user = await ctx.identity.verify_credential(token)
    if user is None:
        return VerificationResult.failure(
            CredentialFailure.UNKNOWN_USER, "token not recognised by identity provider"
        )
    return VerificationResult.success(user)


async def verify_demo_marker(headers: AuthHeaders, ctx: VerificationContext) -> VerificationResult:
    if not (headers.demo_flag and headers.user_id and headers.user_id.startswith(DEMO_USER_PREFIX)):
        return _not_applicable("demo marker missing")
    return _demo(headers.user_id, ctx, window_hours=SESSION_WINDOW_HOURS)


# Order matters: the first strategy that yields a user wins.
DEFAULT_STRATEGIES: Tuple[Tuple[str, Strategy], ...] = (
    ("token_free", verify_token_free),
    ("legacy_session", verify_legacy_session),
    ("bearer", verify_bearer),
    ("demo_marker", verify_demo_marker),
)


@dataclass
class CascadeTrace:
    outcomes: List[StrategyOutcome] = field(default_factory=list)

    def first_applicable(self) -> Optional[StrategyOutcome]:
        return next((outcome for outcome in self.outcomes if outcome.applicable), None)


def _describe_headers(headers: AuthHeaders) -> str:
    presented = []
    if headers.authorization:
        scheme = headers.authorization.split(" ", 1)[0]
        presented.append(f"Authorization ({scheme})")
    if headers.session_id:
        presented.append("X-Session-Id")
    if headers.user_id:
        presented.append("X-User-ID")
    if headers.is_demo:
        presented.append("X-Is-Demo")
    return ", ".join(presented) if presented else "none"


def diagnose(headers: AuthHeaders, trace: CascadeTrace) -> VerificationResult:
    """Pick the single failure reported to the caller once every strategy failed."""
    if headers.is_empty:
        return VerificationResult.failure(
            CredentialFailure.MISSING_CREDENTIAL,
            "No authentication credentials provided",
        )

    first = trace.first_applicable()
    presented = _describe_headers(headers)
    if first is None:
        if headers.authorization and not (
            headers.authorization.startswith("Session ")
            or headers.authorization.startswith("Bearer ")
        ):
            detail = "Authorization header must use the Session or Bearer scheme"
        else:
            detail = "incomplete authentication headers"
        return VerificationResult.failure(
            CredentialFailure.MALFORMED_CREDENTIAL,
            f"Malformed credentials: {detail} (presented: {presented})",
        )

    kind = first.result.kind or CredentialFailure.METHODS_EXHAUSTED
    if kind == CredentialFailure.METHODS_EXHAUSTED:
        message = f"All authentication methods exhausted (presented: {presented})"
    else:
        message = f"Authentication failed: {first.result.error} (presented: {presented})"
    return VerificationResult.failure(kind, message)


class AuthService:
    """Resolve request headers to a user through the strategy cascade."""

    def __init__(
        self,
        identity: IdentityProvider,
        *,
        demo_email_domain: str = "maak.se",
        demo_phone: str = "+46701234567",
        strategies: Tuple[Tuple[str, Strategy], ...] = DEFAULT_STRATEGIES,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        self.identity = identity
        self.demo_email_domain = demo_email_domain
        self.demo_phone = demo_phone
        self.strategies = strategies
        self.clock = clock
        self.logger = get_logger(__name__)

    async def verify(self, headers: AuthHeaders) -> VerificationResult:
        ctx = VerificationContext(
            identity=self.identity,
            email_domain=self.demo_email_domain,
            phone=self.demo_phone,
            current_ms=self.clock(),
        )
        trace = CascadeTrace()
        for name, strategy in self.strategies:
            try:
                result = await strategy(headers, ctx)
            except Exception as exc:
                self.logger.warning(
                    "auth_strategy_error",
                    strategy=name,
                    error_type=type(exc).__name__,
                    error=str(exc),
                )
                trace.outcomes.append(
                    StrategyOutcome(
                        name=name,
                        applicable=True,
                        result=VerificationResult.failure(
                            CredentialFailure.METHODS_EXHAUSTED, f"{name} strategy failed"
                        ),
                    )
                )
                continue

            if result.ok:
                self.logger.info(
                    "auth_verified",
                    strategy=name,
                    user_id=result.user.id,
                    demo=result.user.is_demo,
                )
                return result

            applicable = result.kind != CredentialFailure.MISSING_CREDENTIAL
            trace.outcomes.append(StrategyOutcome(name=name, applicable=applicable, result=result))
            if applicable:
                self.logger.info(
                    "auth_strategy_rejected",
                    strategy=name,
                    kind=result.kind.value if result.kind else None,
                    reason=result.error,
                )

        failure = diagnose(headers, trace)
        self.logger.warning(
            "auth_failed",
            kind=failure.kind.value if failure.kind else None,
            strategies_tried=[outcome.name for outcome in trace.outcomes],
            authorization_preview=preview_credential(headers.authorization),
            user_id=headers.user_id,
        )
        return failure

    async def verify_mapping(self, headers) -> VerificationResult:
        """Convenience wrapper accepting any header mapping."""
        return await self.verify(AuthHeaders.from_mapping(headers))


__all__ = [
    "AuthService",
    "CascadeTrace",
    "DEFAULT_STRATEGIES",
    "StrategyOutcome",
    "VerificationContext",
    "diagnose",
    "verify_bearer",
    "verify_demo_marker",
    "verify_legacy_session",
    "verify_token_free",
]
