from __future__ import annotations

import os
from typing import Any, List

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

# One-time OAuth exchange codes live for exactly this long; not configurable.
EXCHANGE_CODE_TTL_SECONDS = 30

MIN_JWT_SECRET_LENGTH = 32


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the credential service."""

    database_url: str = env_field(
        "postgresql://localhost:5432/accountlink", "DATABASE_URL"
    )
    redis_url: str | None = env_field(None, "REDIS_URL")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(
        False,
        "ALLOW_REDIS_FALLBACK_DEV",
        description="Permit the in-process exchange store outside test mode (single instance only)",
    )
    test_mode: bool = env_field(False, "TEST_MODE")
    jwt_secret: str = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_issuer: str = env_field(
        "http://localhost:8080",
        "JWT_ISSUER",
        description="Base identity of this service, embedded as the iss claim",
    )
    access_token_ttl_minutes: int = env_field(60, "ACCESS_TOKEN_TTL_MINUTES")
    refresh_token_ttl_minutes: int = env_field(
        7 * 24 * 60, "REFRESH_TOKEN_TTL_MINUTES"
    )
    refresh_sweep_interval_seconds: int = env_field(
        3600,
        "REFRESH_SWEEP_INTERVAL_SECONDS",
        description="How often expired refresh tokens are purged in the background",
    )
    frontend_url: str = env_field("http://localhost:5173", "FRONTEND_URL")
    oauth_google_client_id: str | None = env_field(None, "OAUTH_GOOGLE_CLIENT_ID")
    oauth_google_client_secret: str | None = env_field(
        None, "OAUTH_GOOGLE_CLIENT_SECRET"
    )
    oauth_redirect_uri: str | None = env_field(None, "OAUTH_REDIRECT_URI")
    cors_allow_origins: List[str] = env_field([], "CORS_ALLOW_ORIGINS")

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

    @field_validator("jwt_secret")
    @classmethod
    def _ensure_jwt_secret(cls, value: str | None) -> str:
        if not value:
            raise ValueError("JWT_SECRET must be set")
        if len(value) < MIN_JWT_SECRET_LENGTH:
            raise ValueError(
                f"JWT_SECRET must be at least {MIN_JWT_SECRET_LENGTH} characters"
            )
        return value

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [origin.strip() for origin in value.split(",") if origin.strip()]
        return value

    @field_validator(
        "access_token_ttl_minutes",
        "refresh_token_ttl_minutes",
        "refresh_sweep_interval_seconds",
    )
    @classmethod
    def _positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("must be positive")
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
