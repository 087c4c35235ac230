from __future__ import annotations

import os
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from latchkey.logging import get_logger

logger = get_logger(__name__)


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the auth service."""

    database_url: str = env_field(
        "postgresql://localhost:5432/latchkey", "DATABASE_URL"
    )
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    memory_store_root: str | None = env_field(
        None,
        "MEMORY_STORE_ROOT",
        description="Directory the in-memory store snapshots its state to, if set",
    )
    db_pool_min_size: int = env_field(2, "DB_POOL_MIN_SIZE")
    db_pool_max_size: int = env_field(10, "DB_POOL_MAX_SIZE")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Deterministic behaviours for CI; never enable in production.",
    )

    # Session lifetimes, in seconds
    short_session_time: int = env_field(
        60 * 60 * 24,
        "SHORT_SESSION_TIME",
        description="Session lifetime for a plain login",
    )
    long_session_time: int = env_field(
        60 * 60 * 24 * 30,
        "LONG_SESSION_TIME",
        description="Session lifetime when the client asks to be remembered",
    )

    # Emailed token lifetimes, in seconds
    email_token_time: int = env_field(
        60 * 60,
        "EMAIL_TOKEN_TIME",
        description="Default lifetime for emailed single-use tokens",
    )
    verification_token_time: int | None = env_field(
        None,
        "VERIFICATION_TOKEN_TIME",
        description="Overrides EMAIL_TOKEN_TIME for email verification tokens",
    )
    reset_token_time: int | None = env_field(
        None,
        "RESET_TOKEN_TIME",
        description="Overrides EMAIL_TOKEN_TIME for password reset tokens",
    )
    token_length: int = env_field(8, "TOKEN_LENGTH")

    # Template email service
    email_key: str | None = env_field(None, "EMAIL_KEY")
    email_service_url_template: str | None = env_field(
        None, "EMAIL_SERVICE_URL_TEMPLATE"
    )
    email_verification_template_key: str = env_field(
        "email-verification", "EMAIL_VERIFICATION_TEMPLATE_KEY"
    )
    email_reset_password_template_key: str = env_field(
        "password-reset", "EMAIL_RESET_PASSWORD_TEMPLATE_KEY"
    )
    email_sender_address: str = env_field(
        "noreply@localhost", "EMAIL_SENDER_ADDRESS"
    )
    email_timeout_seconds: float = env_field(10.0, "EMAIL_TIMEOUT_SECONDS")
    company: str = env_field("Latchkey", "COMPANY")
    host: str = env_field(
        "http://localhost:8000",
        "HOST",
        description="Public base URL used to build links in emails",
    )

    cookie_secure: bool = env_field(
        False,
        "COOKIE_SECURE",
        description="Mark the session cookie Secure (enable behind HTTPS)",
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

    @field_validator(
        "short_session_time",
        "long_session_time",
        "email_token_time",
        "token_length",
        "db_pool_min_size",
        "db_pool_max_size",
    )
    @classmethod
    def _positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("must be a positive integer")
        return value

    @field_validator("verification_token_time", "reset_token_time")
    @classmethod
    def _positive_or_unset(cls, value: int | None) -> int | None:
        if value is not None and value <= 0:
            raise ValueError("must be a positive integer")
        return value

    @field_validator("host")
    @classmethod
    def _strip_trailing_slash(cls, value: str) -> str:
        return value.rstrip("/")

    @model_validator(mode="after")
    def _warn_short_tokens(self):
        if self.token_length < 8:
            logger.warning("token_length_below_default", token_length=self.token_length)
        return self

    @property
    def verification_token_ttl(self) -> int:
        return self.verification_token_time or self.email_token_time

    @property
    def reset_token_ttl(self) -> int:
        return self.reset_token_time or self.email_token_time

    @property
    def email_configured(self) -> bool:
        return bool(self.email_key and self.email_service_url_template)


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
