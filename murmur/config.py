from __future__ import annotations

import os
import secrets
from enum import Enum
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from murmur.logging import get_logger

logger = get_logger(__name__)


class Environment(str, Enum):
    DEVELOPMENT = "development"
    TEST = "test"
    PRODUCTION = "production"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Process settings read from the environment and an optional ``.env`` file."""

    environment: Environment = env_field(Environment.DEVELOPMENT, "ENVIRONMENT")
    database_url: str = env_field("postgresql://localhost:5432/murmur", "DATABASE_URL")
    redis_url: str = env_field("redis://localhost:6379/0", "REDIS_URL")
    shared_fs_root: str | None = env_field(
        None,
        "SHARED_FS_ROOT",
        description="Directory for MemoryStore state snapshots; unset keeps state in-process only",
    )
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    use_memory_cache: bool = env_field(False, "USE_MEMORY_CACHE")
    allow_cache_fallback_dev: bool = env_field(
        False,
        "ALLOW_CACHE_FALLBACK_DEV",
        description="Fall back to the in-process cache when Redis is unreachable outside production",
    )
    redis_socket_timeout: float = env_field(5.0, "REDIS_SOCKET_TIMEOUT")
    database_pool_timeout: float = env_field(10.0, "DATABASE_POOL_TIMEOUT")

    # Token signing
    access_token_secret: str | None = env_field(None, "ACCESS_TOKEN_SECRET")
    refresh_token_secret: str | None = env_field(None, "REFRESH_TOKEN_SECRET")
    jwt_issuer: str = env_field("murmur", "JWT_ISSUER")
    jwt_audience: str = env_field("murmur-clients", "JWT_AUDIENCE")
    access_token_ttl_minutes: int = env_field(15, "ACCESS_TOKEN_TTL_MINUTES", gt=0)
    refresh_token_ttl_days: int = env_field(7, "REFRESH_TOKEN_TTL_DAYS", gt=0)
    clock_skew_seconds: int = env_field(30, "CLOCK_SKEW_SECONDS", ge=0)
    cache_key_prefix: str = env_field("murmur", "CACHE_KEY_PREFIX")

    # Verification artifacts
    email_verification_ttl_minutes: int = env_field(
        15, "EMAIL_VERIFICATION_TTL_MINUTES", gt=0
    )
    two_factor_ttl_minutes: int = env_field(10, "TWO_FACTOR_TTL_MINUTES", gt=0)
    two_factor_max_attempts: int = env_field(5, "TWO_FACTOR_MAX_ATTEMPTS", gt=0)

    # Email delivery
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("Murmur", "EMAIL_FROM_NAME")
    app_base_url: str = env_field("http://localhost:8000", "APP_BASE_URL")

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

    @field_validator("environment", mode="before")
    @classmethod
    def _normalize_environment(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.strip().lower()
        return value

    @field_validator("cache_key_prefix")
    @classmethod
    def _validate_prefix(cls, value: str) -> str:
        value = value.strip()
        if not value or ":" in value:
            raise ValueError("cache key prefix must be non-empty and contain no ':'")
        return value

    @model_validator(mode="after")
    def _ensure_token_secrets(self) -> "Settings":
        for field_name in ("access_token_secret", "refresh_token_secret"):
            if getattr(self, field_name):
                continue
            if self.environment == Environment.PRODUCTION:
                raise ValueError(f"{field_name.upper()} must be set in production")
            # Generated secrets do not survive a restart; every issued token is lost.
            logger.warning("token_secret_generated", setting=field_name.upper())
            setattr(self, field_name, secrets.token_urlsafe(64))
        if self.access_token_secret == self.refresh_token_secret:
            raise ValueError("access and refresh token secrets must differ")
        return self

    @property
    def is_production(self) -> bool:
        return self.environment == Environment.PRODUCTION

    @property
    def access_token_ttl_seconds(self) -> int:
        return self.access_token_ttl_minutes * 60

    @property
    def refresh_token_ttl_seconds(self) -> int:
        return self.refresh_token_ttl_days * 24 * 60 * 60


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
