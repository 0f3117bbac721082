from __future__ import annotations

import os
import secrets
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from warden.logging import get_logger

logger = get_logger(__name__)


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the auth service, read from the environment."""

    database_url: str = env_field("postgresql://localhost:5432/warden", "DATABASE_URL")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    redis_url: str = env_field("redis://localhost:6379/0", "REDIS_URL")
    allow_cache_fallback_dev: bool = env_field(False, "ALLOW_CACHE_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Deterministic testing behaviors; enables the in-process cache fallback.",
    )

    jwt_secret: str = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_issuer: str = env_field("warden", "JWT_ISSUER")
    jwt_audience: str = env_field("warden-clients", "JWT_AUDIENCE")
    token_ttl_hours: int = env_field(24, "TOKEN_TTL_HOURS", ge=1)
    remember_me_ttl_days: int = env_field(30, "REMEMBER_ME_TTL_DAYS", ge=1)

    app_name: str = env_field(
        "Warden", "APP_NAME", description="Label and issuer shown in authenticator apps"
    )
    mfa_secret_key: str | None = env_field(
        None, "MFA_SECRET_KEY", description="Key material for MFA secrets at rest"
    )

    # Outbound mail
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "APP_EMAIL_ADDRESS")
    email_from_name: str = env_field("Warden", "EMAIL_FROM_NAME")

    # Credentials
    password_hash_iterations: int = env_field(10000, "PASSWORD_HASH_ITERATIONS", ge=10000)
    password_validity_months: int = env_field(1, "PASSWORD_VALIDITY_MONTHS", ge=1)

    # Ephemeral state lifetimes (seconds)
    login_session_ttl_seconds: int = env_field(300, "LOGIN_SESSION_TTL_SECONDS", ge=1)
    mfa_challenge_ttl_seconds: int = env_field(180, "MFA_CHALLENGE_TTL_SECONDS", ge=1)
    mfa_enrollment_ttl_seconds: int = env_field(600, "MFA_ENROLLMENT_TTL_SECONDS", ge=1)
    verification_code_ttl_seconds: int = env_field(
        3600, "VERIFICATION_CODE_TTL_SECONDS", ge=1
    )
    permission_cache_ttl_seconds: int = env_field(600, "PERMISSION_CACHE_TTL_SECONDS", ge=1)

    verification_code_slots: int = env_field(3, "VERIFICATION_CODE_SLOTS", ge=1)
    verification_invalidate_siblings: bool = env_field(
        True,
        "VERIFICATION_INVALIDATE_SIBLINGS",
        description="Clear every outstanding verification code once one matches",
    )
    role_admin_permission: str = env_field("manage-roles", "ROLE_ADMIN_PERMISSION")

    # Job processor
    job_processor_enabled: bool = env_field(True, "JOB_PROCESSOR_ENABLED")
    job_poll_interval_ms: int = env_field(5000, "JOB_POLL_INTERVAL_MS", ge=10)
    job_lease_ms: int = env_field(
        60_000, "JOB_LEASE_MS", ge=1, description="In-flight claim lifetime before requeue"
    )
    job_max_attempts: int = env_field(3, "JOB_MAX_ATTEMPTS", ge=1)
    job_retry_delay_ms: int = env_field(30_000, "JOB_RETRY_DELAY_MS", ge=0)
    job_batch_size: int = env_field(50, "JOB_BATCH_SIZE", ge=1)
    job_dead_letter_max: int = env_field(
        1000, "JOB_DEAD_LETTER_MAX", ge=1, description="Dead-lettered jobs kept for inspection"
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

    @field_validator("jwt_secret", mode="before")
    @classmethod
    def _ensure_jwt_secret(cls, value: str | None) -> str:
        if value:
            return value
        # Tokens signed with a generated secret do not survive a restart
        logger.warning(
            "jwt_secret_generated",
            message="JWT_SECRET is not set; issued tokens are invalidated on restart",
        )
        return secrets.token_urlsafe(64)

    @field_validator("redis_url", mode="before")
    @classmethod
    def _blank_redis_url(cls, value: str | None) -> str:
        return (value or "").strip()

    @property
    def mfa_key_material(self) -> str:
        return self.mfa_secret_key or self.jwt_secret


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
