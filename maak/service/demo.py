"""Deterministic demo identities.

Demo users carry their creation time in their id (``demo-user-<ms>``) and
demo tokens in theirs (``demo-token-<ms>``). Nothing about a demo user is
stored anywhere: the same id always yields the same user record, and the age
encoded in the id decides whether it is still acceptable.
"""

from __future__ import annotations

import re
import time
from datetime import datetime, timezone
from typing import Optional

from maak.service.errors import CredentialFailure
from maak.service.verification import VerificationResult
from maak.storage.models import DEMO_TOKEN_PREFIX, DEMO_USER_PREFIX, User

# Server-side acceptance windows. Session-style credentials get 48 hours,
# bearer demo tokens only 24.
SESSION_WINDOW_HOURS = 48
TOKEN_WINDOW_HOURS = 24

# Client-side window for restoring a backed-up demo token: (-1h, 25h)
CLIENT_MIN_AGE_HOURS = -1
CLIENT_MAX_AGE_HOURS = 25

MS_PER_HOUR = 3_600_000

DEMO_FIRST_NAME = "Demo"
DEMO_LAST_NAME = "Användare"
DEFAULT_DEMO_EMAIL_DOMAIN = "maak.se"
DEFAULT_DEMO_PHONE = "+46701234567"

_TIMESTAMP_RE = re.compile(r"^[0-9]+$")


def now_ms() -> int:
    return int(time.time() * 1000)


def new_demo_user_id(timestamp_ms: Optional[int] = None) -> str:
    return f"{DEMO_USER_PREFIX}{now_ms() if timestamp_ms is None else timestamp_ms}"


def new_demo_token(timestamp_ms: Optional[int] = None) -> str:
    return f"{DEMO_TOKEN_PREFIX}{now_ms() if timestamp_ms is None else timestamp_ms}"


def parse_demo_timestamp(value: Optional[str], prefix: str) -> Optional[int]:
    """Return the positive millisecond timestamp after ``prefix`` or None."""
    if not value or not value.startswith(prefix):
        return None
    digits = value[len(prefix):]
    if not _TIMESTAMP_RE.match(digits):
        return None
    timestamp = int(digits)
    return timestamp if timestamp > 0 else None


def age_hours(timestamp_ms: int, current_ms: Optional[int] = None) -> float:
    current = now_ms() if current_ms is None else current_ms
    return (current - timestamp_ms) / MS_PER_HOUR


def demo_token_age_hours(token: Optional[str], current_ms: Optional[int] = None) -> Optional[float]:
    timestamp = parse_demo_timestamp(token, DEMO_TOKEN_PREFIX)
    if timestamp is None:
        return None
    return age_hours(timestamp, current_ms)


def is_restorable_demo_token(token: Optional[str], current_ms: Optional[int] = None) -> bool:
    """Whether a backed-up demo token is young enough for the client to reuse."""
    age = demo_token_age_hours(token, current_ms)
    if age is None:
        return False
    return CLIENT_MIN_AGE_HOURS < age < CLIENT_MAX_AGE_HOURS


def _iso_millis(moment: datetime) -> str:
    return moment.strftime("%Y-%m-%dT%H:%M:%S") + f".{moment.microsecond // 1000:03d}Z"


def build_demo_user(
    timestamp_ms: int,
    *,
    email_domain: str = DEFAULT_DEMO_EMAIL_DOMAIN,
    phone: str = DEFAULT_DEMO_PHONE,
    auth_type: Optional[str] = None,
    token_free: bool = False,
) -> User:
    """Build the user record for ``demo-user-<timestamp_ms>``.

    Raises ValueError when the timestamp cannot be expressed as a date.
    """
    try:
        created_at = datetime.fromtimestamp(timestamp_ms / 1000, tz=timezone.utc)
    except (OverflowError, OSError, ValueError) as exc:
        raise ValueError(f"timestamp {timestamp_ms} is out of range") from exc

    app_metadata = {"demo": True}
    if token_free:
        app_metadata["tokenFree"] = True
    user_metadata = {
        "firstName": DEMO_FIRST_NAME,
        "lastName": DEMO_LAST_NAME,
        "demo": True,
    }
    if auth_type:
        user_metadata["authType"] = auth_type

    return User(
        id=f"{DEMO_USER_PREFIX}{timestamp_ms}",
        email=f"demo{timestamp_ms}@{email_domain}",
        phone=phone,
        created_at=_iso_millis(created_at),
        app_metadata=app_metadata,
        user_metadata=user_metadata,
    )


def synthesize_demo_user(
    user_id: Optional[str],
    *,
    window_hours: float,
    current_ms: Optional[int] = None,
    email_domain: str = DEFAULT_DEMO_EMAIL_DOMAIN,
    phone: str = DEFAULT_DEMO_PHONE,
    auth_type: Optional[str] = None,
    token_free: bool = False,
) -> VerificationResult:
    """Turn a demo user id into a user, or explain why it cannot be accepted.

    A negative age (id from the future, e.g. client clock skew) is accepted.
    """
    if not user_id or not user_id.startswith(DEMO_USER_PREFIX):
        return VerificationResult.failure(
            CredentialFailure.MALFORMED_CREDENTIAL, "invalid demo id"
        )
    timestamp = parse_demo_timestamp(user_id, DEMO_USER_PREFIX)
    if timestamp is None:
        return VerificationResult.failure(
            CredentialFailure.MALFORMED_CREDENTIAL, "invalid demo timestamp"
        )

    age = age_hours(timestamp, current_ms)
    if age > window_hours:
        return VerificationResult.failure(
            CredentialFailure.EXPIRED_CREDENTIAL,
            f"demo session expired after {window_hours:g} hours",
        )

    try:
        user = build_demo_user(
            timestamp,
            email_domain=email_domain,
            phone=phone,
            auth_type=auth_type,
            token_free=token_free,
        )
    except ValueError:
        return VerificationResult.failure(
            CredentialFailure.MALFORMED_CREDENTIAL, "invalid demo timestamp"
        )
    return VerificationResult.success(user)


__all__ = [
    "SESSION_WINDOW_HOURS",
    "TOKEN_WINDOW_HOURS",
    "CLIENT_MIN_AGE_HOURS",
    "CLIENT_MAX_AGE_HOURS",
    "now_ms",
    "new_demo_user_id",
    "new_demo_token",
    "parse_demo_timestamp",
    "age_hours",
    "demo_token_age_hours",
    "is_restorable_demo_token",
    "build_demo_user",
    "synthesize_demo_user",
]
