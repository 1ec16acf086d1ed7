from __future__ import annotations

import os
import re
from enum import Enum
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, SecretStr, field_validator

from credstore.usernames import USERNAME_POLICIES

# Plain or schema-qualified SQL identifier; quoting is still applied when composing
_SQL_IDENTIFIER = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*(\.[A-Za-z_][A-Za-z0-9_]*)?$")


class SessionBackendKind(str, Enum):
    """Where sessions and password-reset ids live."""

    MEMORY = "memory"
    POSTGRES = "postgres"
    REDIS = "redis"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the credential backends and services."""

    database_url: str = env_field(
        "postgresql://localhost:5432/credstore", "DATABASE_URL"
    )
    redis_url: str = env_field("redis://localhost:6379/0", "REDIS_URL")
    use_memory_store: bool = env_field(
        False,
        "USE_MEMORY_STORE",
        description="Keep users and AppAuth records in process instead of Postgres",
    )
    session_backend: SessionBackendKind = env_field(
        SessionBackendKind.REDIS, "SESSION_BACKEND"
    )
    session_alive_seconds: int = env_field(86400, "SESSION_ALIVE_SECONDS")
    session_auto_refresh: bool = env_field(True, "SESSION_AUTO_REFRESH")
    password_reset_ttl_minutes: int = env_field(15, "PASSWORD_RESET_TTL_MINUTES")
    password_pepper: SecretStr = env_field(
        ...,
        "PASSWORD_PEPPER",
        description="Server-side secret mixed into every password hash; never persisted",
    )
    # Floors are enforced by the strategy itself, not here
    argon2_memory_mib: int = env_field(19, "ARGON2_MEMORY_MIB")
    argon2_iterations: int = env_field(2, "ARGON2_ITERATIONS")
    argon2_parallelism: int = env_field(1, "ARGON2_PARALLELISM")
    users_table: str = env_field("users", "USERS_TABLE")
    sessions_table: str = env_field("sessions", "SESSIONS_TABLE")
    password_resets_table: str = env_field("password_resets", "PASSWORD_RESETS_TABLE")
    appauth_table: str = env_field("appauth", "APPAUTH_TABLE")
    pool_min_size: int = env_field(1, "DB_POOL_MIN_SIZE", ge=0)
    pool_max_size: int = env_field(10, "DB_POOL_MAX_SIZE", ge=1)
    username_policy: str = env_field("ascii", "USERNAME_POLICY")

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

    @field_validator("session_backend", mode="before")
    @classmethod
    def _validate_session_backend(cls, value: Any) -> SessionBackendKind:
        if isinstance(value, str):
            value = value.strip().lower()
        return SessionBackendKind(value)

    @field_validator("users_table", "sessions_table", "password_resets_table", "appauth_table")
    @classmethod
    def _validate_table_name(cls, value: str) -> str:
        if not _SQL_IDENTIFIER.match(value):
            raise ValueError(f"invalid SQL table name: {value!r}")
        return value

    @field_validator("username_policy")
    @classmethod
    def _validate_username_policy(cls, value: str) -> str:
        value = value.strip().lower()
        if value not in USERNAME_POLICIES:
            raise ValueError(
                f"username_policy must be one of {sorted(USERNAME_POLICIES)}"
            )
        return value

    @field_validator("pool_max_size")
    @classmethod
    def _validate_pool_bounds(cls, value: int, info) -> int:
        minimum = info.data.get("pool_min_size")
        if minimum is not None and value < minimum:
            raise ValueError("DB_POOL_MAX_SIZE must be >= DB_POOL_MIN_SIZE")
        return value


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
