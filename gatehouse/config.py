from __future__ import annotations

import json
import os
import secrets
from enum import Enum
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from gatehouse.logging import get_logger

logger = get_logger(__name__)


class HashDriver(str, Enum):
    """Password hashing strategies selectable from configuration."""

    BCRYPT = "bcrypt"
    ARGON2 = "argon2"


class GuardDriver(str, Enum):
    SESSION = "session"
    TOKEN = "token"


BCRYPT_MIN_ROUNDS = 4
BCRYPT_MAX_ROUNDS = 31

DEFAULT_GUARDS: dict[str, dict[str, Any]] = {
    "web": {"driver": GuardDriver.SESSION.value, "provider": "users"},
    "api": {"driver": GuardDriver.TOKEN.value, "provider": "users", "hash": False},
}

DEFAULT_PROVIDERS: dict[str, dict[str, Any]] = {
    "users": {"driver": "memory"},
}


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for guards, hashing, tokens and throttling."""

    # Hashing
    hash_driver: HashDriver = env_field(HashDriver.BCRYPT, "HASH_DRIVER")
    bcrypt_rounds: int = env_field(10, "BCRYPT_ROUNDS")
    argon2_memory: int = env_field(
        65536, "ARGON2_MEMORY", description="Argon2 memory cost in KiB"
    )
    argon2_time: int = env_field(4, "ARGON2_TIME")
    argon2_threads: int = env_field(1, "ARGON2_THREADS")

    # Guards and providers
    default_guard: str = env_field("web", "AUTH_DEFAULT_GUARD")
    guards: dict[str, dict[str, Any]] = env_field(
        DEFAULT_GUARDS, "AUTH_GUARDS", description="JSON object of guard definitions"
    )
    providers: dict[str, dict[str, Any]] = env_field(
        DEFAULT_PROVIDERS,
        "AUTH_PROVIDERS",
        description="JSON object of user provider definitions",
    )
    session_auth_key: str = env_field("auth_id", "AUTH_SESSION_KEY")
    remember_cookie_name: str = env_field("remember_token", "REMEMBER_COOKIE_NAME")
    remember_cookie_lifetime_seconds: int = env_field(
        60 * 60 * 24 * 365, "REMEMBER_COOKIE_LIFETIME_SECONDS"
    )
    cookie_secure: bool = env_field(True, "COOKIE_SECURE")
    cookie_same_site: str = env_field("Lax", "COOKIE_SAME_SITE")

    # Password reset and confirmation
    password_reset_expire_minutes: int = env_field(60, "PASSWORD_RESET_EXPIRE_MINUTES")
    password_reset_throttle_seconds: int = env_field(
        60, "PASSWORD_RESET_THROTTLE_SECONDS"
    )
    password_timeout_seconds: int = env_field(
        60 * 60 * 3,
        "PASSWORD_TIMEOUT_SECONDS",
        description="How long a password confirmation stays valid",
    )

    # Two-factor
    totp_issuer: str = env_field("Gatehouse", "TOTP_ISSUER")
    totp_window: int = env_field(1, "TOTP_WINDOW")
    totp_period: int = env_field(30, "TOTP_PERIOD")
    totp_digits: int = env_field(6, "TOTP_DIGITS")
    recovery_code_count: int = env_field(8, "RECOVERY_CODE_COUNT")
    two_factor_key: str | None = env_field(
        None,
        "TWO_FACTOR_KEY",
        description="Key material used to encrypt TOTP secrets and recovery codes",
        validate_default=True,
    )

    # Email verification
    email_verification_key: str | None = env_field(
        None,
        "EMAIL_VERIFICATION_KEY",
        description="Key used to sign email verification links",
        validate_default=True,
    )

    # Throttling
    login_max_attempts: int = env_field(5, "LOGIN_MAX_ATTEMPTS")
    login_decay_seconds: int = env_field(60, "LOGIN_DECAY_SECONDS")

    # Collaborators
    redis_url: str | None = env_field(None, "REDIS_URL")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Toggle deterministic testing behaviors and in-memory fallbacks",
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

    @field_validator("hash_driver", mode="before")
    @classmethod
    def _validate_hash_driver(cls, value: Any) -> HashDriver:
        if isinstance(value, str):
            value = value.strip().lower()
        try:
            return HashDriver(value)
        except ValueError as exc:
            raise ValueError(f"Unsupported hash driver: {value}") from exc

    @field_validator("bcrypt_rounds")
    @classmethod
    def _validate_bcrypt_rounds(cls, value: int) -> int:
        if value < BCRYPT_MIN_ROUNDS or value > BCRYPT_MAX_ROUNDS:
            raise ValueError(
                f"Bcrypt rounds must be between {BCRYPT_MIN_ROUNDS} and {BCRYPT_MAX_ROUNDS}"
            )
        return value

    @field_validator("guards", "providers", mode="before")
    @classmethod
    def _parse_json_tables(cls, value: Any) -> Any:
        # Env vars and .env files carry these tables as JSON text
        if isinstance(value, str):
            return json.loads(value)
        return value

    @field_validator("totp_window", "password_reset_throttle_seconds")
    @classmethod
    def _non_negative(cls, value: int) -> int:
        if value < 0:
            raise ValueError("value must not be negative")
        return value

    @field_validator(
        "totp_period",
        "totp_digits",
        "login_max_attempts",
        "login_decay_seconds",
        "password_reset_expire_minutes",
        "recovery_code_count",
    )
    @classmethod
    def _positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("value must be positive")
        return value

    @model_validator(mode="after")
    def _check_default_guard(self) -> "Settings":
        if self.default_guard not in self.guards:
            raise ValueError(f"Default auth guard [{self.default_guard}] is not defined")
        return self

    @field_validator("two_factor_key")
    @classmethod
    def _ensure_two_factor_key(cls, value: str | None) -> str:
        if value:
            return value
        logger.warning(
            "two_factor_key_generated",
            message="TWO_FACTOR_KEY not set; enrolled secrets will not survive a restart",
        )
        return secrets.token_urlsafe(64)

    @field_validator("email_verification_key")
    @classmethod
    def _ensure_email_verification_key(cls, value: str | None) -> str:
        if value:
            return value
        logger.warning(
            "email_verification_key_generated",
            message=(
                "EMAIL_VERIFICATION_KEY not set; outstanding verification links "
                "break on restart"
            ),
        )
        return secrets.token_urlsafe(64)


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
