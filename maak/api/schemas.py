from __future__ import annotations

import re
import unicodedata
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

_EMAIL_LOCAL_PART = re.compile(r"^[a-z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-z0-9](?:[a-z0-9-]*[a-z0-9])?$")


def _validate_email(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    normalized = unicodedata.normalize("NFKC", value.strip().lower())
    if len(normalized) > 254:
        raise ValueError("email address too long")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain:
        raise ValueError("invalid email address")
    if not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("invalid email address format")
    labels = domain.split(".")
    if len(labels) < 2 or not all(_EMAIL_DOMAIN_LABEL.match(label) for label in labels):
        raise ValueError("invalid email address format")
    return normalized


class ErrorBody(BaseModel):
    """Body of every non-2xx response."""

    error: str
    code: str
    details: Optional[Any] = None


class SignupRequest(BaseModel):
    email: str
    password: str = Field(min_length=6, max_length=128)
    firstName: str = Field(min_length=1, max_length=100)
    lastName: Optional[str] = Field(default=None, max_length=100)

    @field_validator("email")
    @classmethod
    def _validate_signup_email(cls, value: str) -> str:
        return _validate_email(value)


class LoginRequest(BaseModel):
    email: str
    password: str = Field(min_length=1, max_length=128)

    @field_validator("email")
    @classmethod
    def _validate_login_email(cls, value: str) -> str:
        return _validate_email(value)


class RefreshRequest(BaseModel):
    refresh_token: str = Field(min_length=1)


class ProfileRequest(BaseModel):
    """Profile document; unknown fields are stored as sent."""

    model_config = ConfigDict(extra="allow")

    firstName: Optional[str] = Field(default=None, max_length=100)
    lastName: Optional[str] = Field(default=None, max_length=100)
    birthDate: Optional[str] = None
    location: Optional[str] = None
    bio: Optional[str] = Field(default=None, max_length=2000)
    interests: Optional[List[str]] = None
    photos: Optional[List[str]] = None
    lifestyle: Optional[Dict[str, Any]] = None


class PersonalityRequest(BaseModel):
    model_config = ConfigDict(extra="allow")

    type: Optional[str] = Field(default=None, max_length=16)
    name: Optional[str] = None
    category: Optional[str] = None


class ChatSendRequest(BaseModel):
    recipientId: Optional[str] = None
    message: Optional[str] = Field(default=None, max_length=5000)
    type: str = "text"


class DailyAnswerRequest(BaseModel):
    # Validated by the community service so bad values get its message
    answerIndex: Any = None


class ConsentRequest(BaseModel):
    model_config = ConfigDict(extra="allow")

    analytics: Optional[bool] = None
    marketing: Optional[bool] = None
    necessary: Optional[bool] = None


class PrivacyRequest(BaseModel):
    model_config = ConfigDict(extra="allow")

    reason: Optional[str] = None


class AnalyticsEventRequest(BaseModel):
    model_config = ConfigDict(extra="allow")

    event: Optional[str] = None
    critical: bool = False
    properties: Optional[Dict[str, Any]] = None


__all__ = [
    "AnalyticsEventRequest",
    "ChatSendRequest",
    "ConsentRequest",
    "DailyAnswerRequest",
    "ErrorBody",
    "LoginRequest",
    "PersonalityRequest",
    "PrivacyRequest",
    "ProfileRequest",
    "RefreshRequest",
    "SignupRequest",
]
