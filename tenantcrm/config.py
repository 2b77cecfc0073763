from __future__ import annotations

import os
import secrets
from enum import Enum
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from tenantcrm.logging import get_logger

logger = get_logger(__name__)

MIN_JWT_SECRET_LENGTH = 32


class AppEnv(str, Enum):
    """Deployment environments recognised by the service."""

    DEVELOPMENT = "development"
    TEST = "test"
    PRODUCTION = "production"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the tenant CRM API."""

    app_env: AppEnv = env_field(AppEnv.DEVELOPMENT, "APP_ENV")
    database_url: str = env_field(
        "postgresql://localhost:5432/tenantcrm", "DATABASE_URL"
    )
    redis_url: str | None = env_field("redis://localhost:6379/0", "REDIS_URL")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Enables deterministic backends and test-only helpers",
    )
    # Token settings
    jwt_secret: str | None = env_field(None, "JWT_SECRET")
    jwt_issuer: str = env_field("tenantcrm", "JWT_ISSUER")
    jwt_audience: str = env_field("tenantcrm-api", "JWT_AUDIENCE")
    access_token_ttl_minutes: int = env_field(15, "ACCESS_TOKEN_TTL_MINUTES")
    refresh_token_ttl_minutes: int = env_field(60 * 24 * 7, "REFRESH_TOKEN_TTL_MINUTES")
    csrf_token_ttl_minutes: int = env_field(60 * 24, "CSRF_TOKEN_TTL_MINUTES")
    allow_bearer_tokens: bool = env_field(
        False,
        "ALLOW_BEARER_TOKENS",
        description="Accept Authorization: Bearer headers in production",
    )
    # Cookie and host settings
    cookie_domain: str | None = env_field(None, "COOKIE_DOMAIN")
    frontend_url: str = env_field("http://localhost:5173", "FRONTEND_URL")
    base_domain: str | None = env_field(
        None,
        "BASE_DOMAIN",
        description="Apex domain used to read the tenant slug from subdomains",
    )
    cors_allow_origins: list[str] = env_field(
        ["http://localhost:5173"], "CORS_ALLOW_ORIGINS"
    )
    cors_allow_credentials: bool = env_field(True, "CORS_ALLOW_CREDENTIALS")
    enable_hsts: bool = env_field(False, "ENABLE_HSTS")
    build_sha: str | None = env_field(None, "BUILD_SHA")
    # Account lockout
    lockout_threshold: int = env_field(5, "LOCKOUT_THRESHOLD")
    lockout_window_minutes: int = env_field(15, "LOCKOUT_WINDOW_MINUTES")
    lockout_duration_minutes: int = env_field(15, "LOCKOUT_DURATION_MINUTES")
    # Password reset
    password_reset_ttl_minutes: int = env_field(60, "PASSWORD_RESET_TTL_MINUTES")
    password_reset_min_delay_ms: int = env_field(
        150,
        "PASSWORD_RESET_MIN_DELAY_MS",
        description="Lower bound of the padded response time for reset requests",
    )
    password_reset_max_delay_ms: int = env_field(400, "PASSWORD_RESET_MAX_DELAY_MS")
    # Team invites
    invite_ttl_hours: int = env_field(7 * 24, "INVITE_TTL_HOURS")
    invite_accept_rate_limit_per_minute: int = env_field(5, "INVITE_ACCEPT_RATE_LIMIT_PER_MINUTE")
    # Rate limits (requests per minute)
    login_rate_limit_per_minute: int = env_field(5, "LOGIN_RATE_LIMIT_PER_MINUTE")
    register_rate_limit_per_minute: int = env_field(3, "REGISTER_RATE_LIMIT_PER_MINUTE")
    reset_rate_limit_per_minute: int = env_field(3, "RESET_RATE_LIMIT_PER_MINUTE")
    # Email service settings
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("Tenant CRM", "EMAIL_FROM_NAME")

    model_config = ConfigDict(extra="ignore")

    @property
    def is_production(self) -> bool:
        return self.app_env == AppEnv.PRODUCTION

    @property
    def bearer_tokens_enabled(self) -> bool:
        return not self.is_production or self.allow_bearer_tokens

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

    @field_validator("app_env", mode="before")
    @classmethod
    def _validate_app_env(cls, value: Any) -> AppEnv:
        if isinstance(value, str):
            return AppEnv(value.strip().lower())
        return AppEnv(value)

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> list[str]:
        if value is None:
            return []
        if isinstance(value, str):
            return [origin.strip() for origin in value.split(",") if origin.strip()]
        return list(value)

    @field_validator("redis_url", "cookie_domain", "base_domain", mode="before")
    @classmethod
    def _blank_to_none(cls, value: Any) -> Any:
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @model_validator(mode="after")
    def _ensure_jwt_secret(self) -> "Settings":
        if self.jwt_secret and len(self.jwt_secret) >= MIN_JWT_SECRET_LENGTH:
            return self
        if self.is_production:
            raise ValueError(
                f"JWT_SECRET must be set to at least {MIN_JWT_SECRET_LENGTH} characters in production"
            )
        if self.jwt_secret:
            logger.warning(
                "jwt_secret_too_short",
                length=len(self.jwt_secret),
                minimum=MIN_JWT_SECRET_LENGTH,
            )
        # Ephemeral secret: sessions do not survive a restart outside production
        self.jwt_secret = secrets.token_urlsafe(64)
        logger.warning("jwt_secret_generated", app_env=self.app_env.value)
        return self

    @model_validator(mode="after")
    def _check_reset_delay(self) -> "Settings":
        if self.password_reset_max_delay_ms < self.password_reset_min_delay_ms:
            raise ValueError(
                "PASSWORD_RESET_MAX_DELAY_MS must not be lower than PASSWORD_RESET_MIN_DELAY_MS"
            )
        return self


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
