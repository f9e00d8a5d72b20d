from __future__ import annotations

import os
import secrets
from enum import Enum
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from adminguard.logging import get_logger

logger = get_logger(__name__)


class IdentityProviderMode(str, Enum):
    """How bearer tokens are resolved to subjects."""

    SIGNED = "signed"
    REMOTE = "remote"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


def _split_csv(value: Any) -> list[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [item.strip() for item in value.split(",") if item.strip()]
    return [str(item).strip() for item in value if str(item).strip()]


class Settings(BaseModel):
    """Runtime settings for the privileged-operation gateway."""

    redis_url: str | None = env_field(
        None,
        "REDIS_URL",
        description="Redis URL for shared rate-limit counters; in-process counters when unset",
    )
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Toggle deterministic testing behaviors (runtime reset, in-memory fallbacks).",
    )
    build_sha: str = env_field("dev", "BUILD_SHA")

    # Identity provider
    identity_provider: IdentityProviderMode = env_field(
        IdentityProviderMode.SIGNED, "IDENTITY_PROVIDER"
    )
    identity_verify_url: str | None = env_field(None, "IDENTITY_VERIFY_URL")
    identity_timeout_seconds: float = env_field(5.0, "IDENTITY_TIMEOUT_SECONDS")
    identity_retries: int = env_field(
        2,
        "IDENTITY_RETRIES",
        description="Extra attempts for identity provider transport failures",
    )
    token_secret: str | None = env_field(None, "TOKEN_SECRET", validate_default=True)
    token_issuer: str = env_field("adminguard", "TOKEN_ISSUER")
    token_audience: str = env_field("adminguard-clients", "TOKEN_AUDIENCE")
    token_max_length: int = env_field(4096, "TOKEN_MAX_LENGTH")

    # Rate limiting
    general_rate_limit: int = env_field(100, "GENERAL_RATE_LIMIT")
    general_rate_window_seconds: int = env_field(60, "GENERAL_RATE_WINDOW_SECONDS")
    admin_rate_limit: int = env_field(10, "ADMIN_RATE_LIMIT")
    admin_rate_window_seconds: int = env_field(60, "ADMIN_RATE_WINDOW_SECONDS")
    rate_limit_stale_windows: int = env_field(
        5,
        "RATE_LIMIT_STALE_WINDOWS",
        description="Idle windows after which an in-process counter is evicted",
    )
    rate_limit_sweep_interval_seconds: int = env_field(
        60, "RATE_LIMIT_SWEEP_INTERVAL_SECONDS"
    )
    rate_limit_max_keys: int = env_field(100_000, "RATE_LIMIT_MAX_KEYS")
    trust_forwarded_for: bool = env_field(
        False,
        "TRUST_FORWARDED_FOR",
        description="Use the first X-Forwarded-For hop as client address (only behind a trusted proxy)",
    )

    # Store and audit
    store_read_retries: int = env_field(2, "STORE_READ_RETRIES")
    audit_log_path: str | None = env_field(
        None,
        "AUDIT_LOG_PATH",
        description="JSONL audit log path; required outside TEST_MODE (in-memory records under TEST_MODE)",
    )
    expose_field_errors: bool = env_field(
        True,
        "EXPOSE_FIELD_ERRORS",
        description="Echo offending field names and error kinds on validation failures",
    )
    seed_admin_subjects: list[str] = env_field([], "SEED_ADMIN_SUBJECTS")
    seed_user_subjects: list[str] = env_field([], "SEED_USER_SUBJECTS")
    cors_allow_origins: list[str] = env_field([], "CORS_ALLOW_ORIGINS")

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

    @field_validator("seed_admin_subjects", "seed_user_subjects", "cors_allow_origins", mode="before")
    @classmethod
    def _parse_csv(cls, value: Any) -> list[str]:
        return _split_csv(value)

    @field_validator("identity_provider")
    @classmethod
    def _validate_identity_provider(cls, value: IdentityProviderMode) -> IdentityProviderMode:
        return IdentityProviderMode(value)

    @field_validator("token_max_length", "rate_limit_max_keys")
    @classmethod
    def _positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("must be positive")
        return value

    @field_validator("identity_retries", "store_read_retries")
    @classmethod
    def _bounded_retries(cls, value: int) -> int:
        if value < 0 or value > 5:
            raise ValueError("retries must be between 0 and 5")
        return value

    @field_validator("token_secret")
    @classmethod
    def _ensure_token_secret(cls, value: str | None) -> str:
        if value:
            if len(value) < 32:
                raise ValueError("TOKEN_SECRET must be at least 32 characters")
            return value
        # Tokens signed with an ephemeral secret do not survive a restart
        logger.warning(
            "token_secret_generated",
            message="TOKEN_SECRET not set; generated an ephemeral signing secret",
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
