from __future__ import annotations

import os
from enum import Enum
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from pmoguard.logging import get_logger

logger = get_logger(__name__)

# HS256 signing keys shorter than this are rejected at startup
MIN_SECRET_BYTES = 32


class Environment(str, Enum):
    """Deployment environment; only DEVELOPMENT exposes error details."""

    DEVELOPMENT = "development"
    TEST = "test"
    PRODUCTION = "production"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the authorization and tenancy core."""

    # Tokens
    token_secret: str = env_field(
        None,
        "JWT_SECRET",
        description="HS256 signing key, at least 32 bytes",
        validate_default=True,
    )
    token_ttl_days: int = env_field(7, "TOKEN_TTL_DAYS")

    # Cookie transport
    auth_cookie_name: str = env_field("token", "AUTH_COOKIE_NAME")
    cookie_cross_origin: bool = env_field(
        False,
        "COOKIE_CROSS_ORIGIN",
        description="Frontend served from another origin; forces SameSite=None and Secure",
    )
    cookie_secure: bool = env_field(False, "COOKIE_SECURE")

    # Tenancy
    multi_tenant_enabled: bool = env_field(True, "MULTI_TENANT_ENABLED")
    default_tenant_slug: str = env_field("default", "DEFAULT_TENANT_SLUG")
    tenant_base_domain: str | None = env_field(
        None,
        "TENANT_BASE_DOMAIN",
        description="Base domain for <slug>.<base> subdomain resolution",
    )

    # Rate limits
    login_rate_limit_max_attempts: int = env_field(5, "LOGIN_RATE_LIMIT_MAX_ATTEMPTS")
    login_rate_limit_window_seconds: int = env_field(15 * 60, "LOGIN_RATE_LIMIT_WINDOW_SECONDS")
    password_reset_rate_limit_max_attempts: int = env_field(
        3, "PASSWORD_RESET_RATE_LIMIT_MAX_ATTEMPTS"
    )
    password_reset_rate_limit_window_seconds: int = env_field(
        60 * 60, "PASSWORD_RESET_RATE_LIMIT_WINDOW_SECONDS"
    )
    relaxed_rate_limits: bool = env_field(
        False,
        "RELAXED_RATE_LIMITS",
        description="Raise every limiter threshold for test and CI deployments",
    )
    relaxed_rate_limit_max_attempts: int = env_field(1000, "RELAXED_RATE_LIMIT_MAX_ATTEMPTS")

    password_reset_token_ttl_minutes: int = env_field(60, "PASSWORD_RESET_TOKEN_TTL_MINUTES")

    # Infrastructure
    redis_url: str | None = env_field(None, "REDIS_URL")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    state_path: str | None = env_field(
        None,
        "STATE_PATH",
        description="Directory where the memory store persists its JSON state",
    )
    test_mode: bool = env_field(False, "TEST_MODE")
    environment: Environment = env_field(Environment.PRODUCTION, "APP_ENV")

    cors_allow_origins: list[str] = env_field(
        ["http://localhost:3000", "http://localhost:5173"], "CORS_ALLOW_ORIGINS"
    )
    cors_allow_credentials: bool = env_field(True, "CORS_ALLOW_CREDENTIALS")

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

    @field_validator("token_secret")
    @classmethod
    def _ensure_token_secret(cls, value: str | None) -> str:
        if not value:
            raise ValueError("JWT_SECRET must be set")
        if len(value.encode("utf-8")) < MIN_SECRET_BYTES:
            logger.error("token_secret_too_short", required_bytes=MIN_SECRET_BYTES)
            raise ValueError(f"JWT_SECRET must be at least {MIN_SECRET_BYTES} bytes")
        return value

    @field_validator("environment", mode="before")
    @classmethod
    def _normalize_environment(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.strip().lower()
        return value

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [origin.strip() for origin in value.split(",") if origin.strip()]
        return value

    @field_validator(
        "token_ttl_days",
        "login_rate_limit_max_attempts",
        "login_rate_limit_window_seconds",
        "password_reset_rate_limit_max_attempts",
        "password_reset_rate_limit_window_seconds",
        "relaxed_rate_limit_max_attempts",
        "password_reset_token_ttl_minutes",
    )
    @classmethod
    def _ensure_positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("must be a positive integer")
        return value

    @property
    def is_development(self) -> bool:
        return self.environment == Environment.DEVELOPMENT

    @property
    def token_ttl_seconds(self) -> int:
        return self.token_ttl_days * 24 * 60 * 60

    @property
    def login_rate_limit(self) -> tuple[int, int]:
        """(max attempts, window seconds) for login, after relaxation."""
        return (
            self._threshold(self.login_rate_limit_max_attempts),
            self.login_rate_limit_window_seconds,
        )

    @property
    def password_reset_rate_limit(self) -> tuple[int, int]:
        return (
            self._threshold(self.password_reset_rate_limit_max_attempts),
            self.password_reset_rate_limit_window_seconds,
        )

    def _threshold(self, configured: int) -> int:
        if self.relaxed_rate_limits:
            return max(configured, self.relaxed_rate_limit_max_attempts)
        return configured


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
