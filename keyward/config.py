from __future__ import annotations

import os
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from keyward.logging import get_logger

logger = get_logger(__name__)

# Bounds on any sign-in token lifetime, in seconds
MIN_TOKEN_TTL_SECONDS = 1
MAX_TOKEN_TTL_SECONDS = 7 * 24 * 60 * 60


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the trust engine and its storage backends."""

    database_url: str = env_field(
        "postgresql://localhost:5432/keyward", "DATABASE_URL"
    )
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    shared_fs_root: str | None = env_field(
        None,
        "SHARED_FS_ROOT",
        description="Directory for the memory store snapshot; unset keeps state in-process only",
    )
    redis_url: str | None = env_field(None, "REDIS_URL")
    use_redis_token_store: bool = env_field(
        False,
        "USE_REDIS_TOKEN_STORE",
        description="Keep sign-in tokens in Redis instead of the primary store",
    )
    token_key_encryption_secret: str | None = env_field(
        None,
        "TOKEN_KEY_ENCRYPTION_SECRET",
        description="Key material used to encrypt token signing keys at rest",
    )
    signin_token_single_use: bool = env_field(
        True,
        "SIGNIN_TOKEN_SINGLE_USE",
        description="Consume sign-in tokens on their first successful verification",
    )
    default_signin_ttl_seconds: int = env_field(120, "DEFAULT_SIGNIN_TTL_SECONDS")
    deletion_grace_months: int = env_field(1, "DELETION_GRACE_MONTHS")
    immediate_deletion_max_age_days: int = env_field(
        3,
        "IMMEDIATE_DELETION_MAX_AGE_DAYS",
        description="Apps younger than this are deleted without a grace period",
    )
    error_docs_base_url: str = env_field(
        "https://docs.keyward.dev/errors", "ERROR_DOCS_BASE_URL"
    )
    test_mode: bool = env_field(False, "TEST_MODE")

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

    @field_validator("default_signin_ttl_seconds")
    @classmethod
    def _validate_default_ttl(cls, value: int) -> int:
        if not MIN_TOKEN_TTL_SECONDS <= value <= MAX_TOKEN_TTL_SECONDS:
            raise ValueError(
                f"default_signin_ttl_seconds must be between {MIN_TOKEN_TTL_SECONDS} and {MAX_TOKEN_TTL_SECONDS}"
            )
        return value

    @field_validator("deletion_grace_months", "immediate_deletion_max_age_days")
    @classmethod
    def _validate_non_negative(cls, value: int) -> int:
        if value < 0:
            raise ValueError("deletion windows cannot be negative")
        return value

    @field_validator("error_docs_base_url")
    @classmethod
    def _strip_trailing_slash(cls, value: str) -> str:
        return value.rstrip("/")


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
        logger.info(
            "settings_loaded",
            use_memory_store=_settings_cache.use_memory_store,
            use_redis_token_store=_settings_cache.use_redis_token_store,
            test_mode=_settings_cache.test_mode,
        )
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
