from __future__ import annotations

import os
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from authcore.logging import get_logger
from authcore.service.errors import ConfigurationError

logger = get_logger(__name__)


DEFAULT_OAUTH_PROVIDERS = ("google", "facebook", "apple", "github", "microsoft")


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the credential and identity core.

    Secrets (``encryption_key`` and ``jwt_secret``) have no defaults. They are
    validated when the runtime is built via :meth:`require_secrets` rather
    than on model construction so tooling can still load partial settings.
    """

    encryption_key: str | None = env_field(
        None,
        "ENCRYPTION_KEY",
        description="Secret the field encryption codec derives its AES keys from",
    )
    jwt_secret: str | None = env_field(None, "JWT_SECRET")
    jwt_issuer: str = env_field("authcore", "JWT_ISSUER")
    jwt_audience: str = env_field("authcore-clients", "JWT_AUDIENCE")
    session_ttl_minutes: int = env_field(
        24 * 60,
        "SESSION_TTL_MINUTES",
        description="Session token lifetime without remember-me",
    )
    session_extended_ttl_minutes: int = env_field(
        30 * 24 * 60,
        "SESSION_EXTENDED_TTL_MINUTES",
        description="Session token lifetime with remember-me",
    )
    max_failed_logins: int = env_field(5, "MAX_FAILED_LOGINS")
    lockout_minutes: int = env_field(15, "LOCKOUT_MINUTES")
    password_reset_ttl_minutes: int = env_field(60, "PASSWORD_RESET_TTL_MINUTES")
    email_verification_ttl_hours: int = env_field(24, "EMAIL_VERIFICATION_TTL_HOURS")
    mfa_issuer: str = env_field("AuthCore", "MFA_ISSUER")
    allowed_oauth_providers: tuple[str, ...] = env_field(
        DEFAULT_OAUTH_PROVIDERS,
        "ALLOWED_OAUTH_PROVIDERS",
        description="Comma separated identity provider names",
    )
    allow_provider_relink_by_email: bool = env_field(
        True,
        "ALLOW_PROVIDER_RELINK_BY_EMAIL",
        description=(
            "Move an existing account to a new provider when the provider asserts "
            "the same email"
        ),
    )
    facebook_app_id: str | None = env_field(None, "FACEBOOK_APP_ID")
    facebook_app_secret: str | None = env_field(None, "FACEBOOK_APP_SECRET")
    apple_client_id: str | None = env_field(
        None, "APPLE_CLIENT_ID", description="Expected audience of Apple identity tokens"
    )
    provider_http_timeout: float = env_field(10.0, "PROVIDER_HTTP_TIMEOUT")
    argon2_time_cost: int = env_field(3, "ARGON2_TIME_COST")
    argon2_memory_cost: int = env_field(65536, "ARGON2_MEMORY_COST")
    database_url: str = env_field(
        "postgresql://localhost:5432/authcore", "DATABASE_URL"
    )
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    test_mode: bool = env_field(False, "TEST_MODE")
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("AuthCore", "EMAIL_FROM_NAME")
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

    @field_validator("allowed_oauth_providers", mode="before")
    @classmethod
    def _split_providers(cls, value: Any) -> tuple[str, ...]:
        if value is None:
            return DEFAULT_OAUTH_PROVIDERS
        if isinstance(value, str):
            value = value.split(",")
        providers = tuple(p.strip().lower() for p in value if p and p.strip())
        return providers or DEFAULT_OAUTH_PROVIDERS

    @field_validator(
        "max_failed_logins",
        "lockout_minutes",
        "session_ttl_minutes",
        "session_extended_ttl_minutes",
        "password_reset_ttl_minutes",
        "email_verification_ttl_hours",
    )
    @classmethod
    def _positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("must be a positive integer")
        return value

    def require_secrets(self) -> None:
        """Fail fast when a secret needed to protect data at rest is missing."""

        missing = [
            env
            for env, value in (
                ("ENCRYPTION_KEY", self.encryption_key),
                ("JWT_SECRET", self.jwt_secret),
            )
            if not value
        ]
        if missing:
            logger.error("settings_missing_secrets", missing=missing)
            raise ConfigurationError(
                "Missing required secret configuration: " + ", ".join(missing)
            )


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
