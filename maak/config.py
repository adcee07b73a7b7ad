from __future__ import annotations

import os
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the MÄÄK API server and client."""

    redis_url: str = env_field("redis://localhost:6379/0", "REDIS_URL")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Allow in-memory fallbacks when Redis is unavailable",
    )
    # Identity provider. When no URL is configured the in-process provider is used.
    identity_provider_url: str | None = env_field(None, "IDENTITY_PROVIDER_URL")
    identity_service_key: str | None = env_field(None, "IDENTITY_SERVICE_KEY")
    identity_timeout_seconds: float = env_field(10.0, "IDENTITY_TIMEOUT_SECONDS")
    public_anon_key: str = env_field("public-anon-key", "PUBLIC_ANON_KEY")
    access_token_ttl_minutes: int = env_field(60, "ACCESS_TOKEN_TTL_MINUTES")
    refresh_token_ttl_minutes: int = env_field(60 * 24 * 7, "REFRESH_TOKEN_TTL_MINUTES")
    # Demo identities
    demo_email_domain: str = env_field("maak.se", "DEMO_EMAIL_DOMAIN")
    demo_phone: str = env_field("+46701234567", "DEMO_PHONE")
    # HTTP surface
    cors_allow_origins: list[str] = env_field(
        [],
        "CORS_ALLOW_ORIGINS",
        description="Comma-separated list of allowed browser origins",
    )
    app_version: str = env_field("0.1.0", "APP_VERSION")
    # Client
    api_base_url: str = env_field("http://localhost:8000/v1", "API_BASE_URL")
    client_timeout_seconds: float = env_field(10.0, "CLIENT_TIMEOUT_SECONDS")
    client_max_retries: int = env_field(2, "CLIENT_MAX_RETRIES")
    session_backup_dir: str = env_field("~/.maak", "SESSION_BACKUP_DIR")

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, str] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [origin.strip() for origin in value.split(",") if origin.strip()]
        return value

    @field_validator("client_max_retries")
    @classmethod
    def _bound_retries(cls, value: int) -> int:
        if value < 0:
            raise ValueError("client_max_retries must be non-negative")
        return value


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
