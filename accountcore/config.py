from __future__ import annotations

import os
from datetime import timedelta
from enum import Enum
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from accountcore.logging import get_logger

logger = get_logger(__name__)

# Shipped in sample .env files; never acceptable outside development
PLACEHOLDER_SECRET = "your-super-secret-jwt-key-change-in-production"
MIN_SECRET_LENGTH = 32


class Environment(str, Enum):
    """Deployment environments recognised by the settings validator."""

    DEVELOPMENT = "development"
    PRODUCTION = "production"
    TEST = "test"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the credential lifecycle core."""

    environment: Environment = env_field(Environment.DEVELOPMENT, "APP_ENV")
    database_url: str = env_field(
        "postgresql://localhost:5432/accountcore", "DATABASE_URL"
    )
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    state_path: str | None = env_field(
        None,
        "STATE_PATH",
        description="JSON snapshot file for the memory store; unset keeps state in-process only",
    )

    # Access tokens
    access_token_secret: str | None = env_field(None, "ACCESS_TOKEN_SECRET")
    access_token_issuer: str = env_field("accountcore", "ACCESS_TOKEN_ISSUER")
    access_token_audience: str = env_field("accountcore-clients", "ACCESS_TOKEN_AUDIENCE")
    access_token_ttl_minutes: int = env_field(
        7 * 24 * 60,
        "ACCESS_TOKEN_TTL_MINUTES",
        description="Lifetime of signed access tokens",
    )

    # Opaque token lifetimes
    refresh_token_ttl_days: int = env_field(30, "REFRESH_TOKEN_TTL_DAYS")
    verification_ttl_hours: int = env_field(24, "VERIFICATION_TTL_HOURS")
    reset_ttl_minutes: int = env_field(60, "RESET_TTL_MINUTES")

    # Password hashing (argon2id)
    password_hash_cost: int = env_field(
        3,
        "PASSWORD_HASH_COST",
        description="argon2 time cost (iterations)",
    )
    password_hash_memory_kib: int = env_field(
        65536,
        "PASSWORD_HASH_MEMORY_KIB",
        description="argon2 memory cost in KiB",
    )
    password_min_length: int = env_field(6, "PASSWORD_MIN_LENGTH")
    password_max_length: int = env_field(128, "PASSWORD_MAX_LENGTH")

    # Lifecycle policy
    reclaim_unverified_email: bool = env_field(
        True,
        "RECLAIM_UNVERIFIED_EMAIL",
        description="Delete a stale unverified account when a new registration claims its email",
    )
    revoke_sessions_on_password_reset: bool = env_field(
        True, "REVOKE_SESSIONS_ON_PASSWORD_RESET"
    )
    transition_retries: int = env_field(
        3,
        "TRANSITION_RETRIES",
        description="Attempts per transition when a concurrent write wins the race",
    )

    # Email service settings
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("AccountCore", "EMAIL_FROM_NAME")
    app_base_url: str = env_field("http://localhost:8000", "APP_BASE_URL")

    admin_api_key: str | None = env_field(
        None,
        "ADMIN_API_KEY",
        description="Shared key for the admin endpoints; unset disables them",
    )

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
    def _validate_environment(cls, value: Any) -> Environment:
        if isinstance(value, str):
            value = value.strip().lower()
        return Environment(value)

    @field_validator(
        "access_token_ttl_minutes",
        "refresh_token_ttl_days",
        "verification_ttl_hours",
        "reset_ttl_minutes",
        "password_hash_cost",
        "transition_retries",
    )
    @classmethod
    def _require_positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("must be a positive integer")
        return value

    @model_validator(mode="after")
    def _validate_secret(self) -> "Settings":
        secret = self.access_token_secret
        if not secret:
            raise ValueError("ACCESS_TOKEN_SECRET is required")
        if self.environment is Environment.PRODUCTION:
            if secret == PLACEHOLDER_SECRET:
                raise ValueError(
                    "placeholder ACCESS_TOKEN_SECRET detected in production; configure a unique random secret"
                )
            if len(secret) < MIN_SECRET_LENGTH:
                raise ValueError(
                    f"ACCESS_TOKEN_SECRET must be at least {MIN_SECRET_LENGTH} characters in production"
                )
        elif len(secret) < MIN_SECRET_LENGTH:
            logger.warning(
                "access_token_secret_short",
                length=len(secret),
                recommended=MIN_SECRET_LENGTH,
            )
        if self.password_min_length > self.password_max_length:
            raise ValueError("password_min_length exceeds password_max_length")
        return self

    @property
    def access_token_ttl(self) -> timedelta:
        return timedelta(minutes=self.access_token_ttl_minutes)

    @property
    def refresh_ttl(self) -> timedelta:
        return timedelta(days=self.refresh_token_ttl_days)

    @property
    def verification_ttl(self) -> timedelta:
        return timedelta(hours=self.verification_ttl_hours)

    @property
    def reset_ttl(self) -> timedelta:
        return timedelta(minutes=self.reset_ttl_minutes)


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
