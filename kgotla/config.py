from __future__ import annotations

import os
from datetime import timedelta
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from kgotla.durations import DurationFormatError, parse_duration
from kgotla.logging import get_logger

logger = get_logger(__name__)

# HS256 keys shorter than the digest size weaken the MAC
MIN_SECRET_BYTES = 32


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Process-wide auth settings, read once at startup and immutable afterwards."""

    # Token signing
    jwt_access_secret: str = env_field(..., "JWT_ACCESS_SECRET")
    jwt_refresh_secret: str = env_field(..., "JWT_REFRESH_SECRET")
    jwt_issuer: str = env_field("kgotla-api", "JWT_ISSUER")
    jwt_audience: str = env_field("kgotla-app", "JWT_AUDIENCE")
    access_token_ttl: str = env_field("15m", "JWT_ACCESS_EXPIRES_IN")
    refresh_token_ttl: str = env_field("7d", "JWT_REFRESH_EXPIRES_IN")
    refresh_token_remember_ttl: str = env_field(
        "30d",
        "JWT_REFRESH_REMEMBER_EXPIRES_IN",
        description="Refresh token lifetime when the caller asks to be remembered",
    )
    token_leeway_seconds: int = env_field(0, "TOKEN_LEEWAY_SECONDS", ge=0)

    # Password hashing (argon2id)
    password_time_cost: int = env_field(3, "PASSWORD_TIME_COST", ge=1)
    password_memory_cost: int = env_field(
        64 * 1024, "PASSWORD_MEMORY_COST", ge=8, description="argon2 memory in KiB"
    )
    password_parallelism: int = env_field(4, "PASSWORD_PARALLELISM", ge=1)
    password_forbid_sequences: bool = env_field(
        False,
        "PASSWORD_FORBID_SEQUENCES",
        description="Reject passwords containing 3-character ascending runs (abc, 123)",
    )

    # Login-attempt guard
    login_rate_limit_window: str = env_field("15m", "LOGIN_RATE_LIMIT_WINDOW")
    login_rate_limit_threshold: int = env_field(
        5, "LOGIN_RATE_LIMIT_MAX_FAILURES", ge=1
    )
    login_attempt_retention: str = env_field("30d", "LOGIN_ATTEMPT_RETENTION")

    # Email verification and password reset artifacts
    verification_code_ttl: str = env_field("10m", "VERIFICATION_CODE_EXPIRES_IN")
    verification_link_ttl: str = env_field("24h", "VERIFICATION_LINK_EXPIRES_IN")
    password_reset_ttl: str = env_field("1h", "PASSWORD_RESET_EXPIRES_IN")
    verification_max_attempts: int = env_field(5, "VERIFICATION_MAX_ATTEMPTS", ge=1)

    # Storage
    database_url: str = env_field("postgresql://localhost:5432/kgotla", "DATABASE_URL")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    state_root: str | None = env_field(
        None,
        "AUTH_STATE_ROOT",
        description="Directory for memory store snapshots; unset keeps state in-process only",
    )
    oauth_token_encryption_key: str | None = env_field(None, "OAUTH_TOKEN_ENCRYPTION_KEY")

    # Email service settings
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASS")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "FROM_EMAIL")
    email_from_name: str = env_field("Kgotla", "FROM_NAME")
    app_base_url: str = env_field("http://localhost:5173", "APP_BASE_URL")

    model_config = ConfigDict(extra="ignore", frozen=True)

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
            elif env_name in env_file_values and env_file_values[env_name] is not None:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @field_validator("jwt_access_secret", "jwt_refresh_secret")
    @classmethod
    def _validate_secret_length(cls, value: str) -> str:
        if not value or len(value.encode("utf-8")) < MIN_SECRET_BYTES:
            raise ValueError(
                f"signing secret must be at least {MIN_SECRET_BYTES} bytes"
            )
        return value

    @field_validator(
        "access_token_ttl",
        "refresh_token_ttl",
        "refresh_token_remember_ttl",
        "login_rate_limit_window",
        "login_attempt_retention",
        "verification_code_ttl",
        "verification_link_ttl",
        "password_reset_ttl",
    )
    @classmethod
    def _validate_duration(cls, value: str) -> str:
        try:
            parse_duration(value)
        except DurationFormatError as exc:
            raise ValueError(str(exc)) from exc
        return value.strip()

    @model_validator(mode="after")
    def _ensure_distinct_secrets(self) -> "Settings":
        if self.jwt_access_secret == self.jwt_refresh_secret:
            raise ValueError("access and refresh tokens must use distinct signing secrets")
        return self

    @property
    def login_rate_limit_delta(self) -> timedelta:
        return parse_duration(self.login_rate_limit_window)

    @property
    def login_attempt_retention_delta(self) -> timedelta:
        return parse_duration(self.login_attempt_retention)


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
        logger.info(
            "settings_loaded",
            issuer=_settings_cache.jwt_issuer,
            use_memory_store=_settings_cache.use_memory_store,
        )
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
