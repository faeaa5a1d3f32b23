from __future__ import annotations

import os
import secrets
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from schoolgate.durations import try_parse_duration
from schoolgate.logging import get_logger

logger = get_logger(__name__)

# Cost floors for argon2id outside of test mode (memory in KiB)
MIN_ARGON2_MEMORY_COST = 65536
MIN_ARGON2_TIME_COST = 3
MIN_ARGON2_PARALLELISM = 4
MIN_JWT_SECRET_LENGTH = 32


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the auth core and its HTTP front door."""

    database_url: str = env_field(
        "postgresql://localhost:5432/schoolgate", "DATABASE_URL"
    )
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Deterministic testing behaviors: generated secrets, cheap hashing allowed.",
    )
    allow_signup: bool = env_field(
        True, "ALLOW_SIGNUP", description="Allow public self-registration"
    )
    jwt_access_secret: str | None = env_field(None, "JWT_ACCESS_SECRET")
    jwt_refresh_secret: str | None = env_field(None, "JWT_REFRESH_SECRET")
    jwt_algorithm: str = env_field("HS256", "JWT_ALGORITHM")
    jwt_issuer: str = env_field("schoolgate", "JWT_ISSUER")
    jwt_access_expires_in: str = env_field(
        "15m",
        "JWT_ACCESS_EXPIRES_IN",
        description="Access token lifetime, e.g. 15m",
    )
    jwt_refresh_expires_in: str = env_field(
        "7d",
        "JWT_REFRESH_EXPIRES_IN",
        description="Refresh token lifetime, e.g. 7d; unparseable values fall back to 7d",
    )
    max_sessions_per_user: int = env_field(
        5,
        "MAX_SESSIONS_PER_USER",
        description="Live refresh tokens kept per user; the oldest is evicted on overflow",
    )
    argon2_memory_cost: int = env_field(MIN_ARGON2_MEMORY_COST, "ARGON2_MEMORY_COST")
    argon2_time_cost: int = env_field(MIN_ARGON2_TIME_COST, "ARGON2_TIME_COST")
    argon2_parallelism: int = env_field(MIN_ARGON2_PARALLELISM, "ARGON2_PARALLELISM")
    cors_allow_origins: list[str] | None = env_field(None, "CORS_ALLOW_ORIGINS")
    cors_allow_credentials: bool = env_field(False, "CORS_ALLOW_CREDENTIALS")

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

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [origin.strip() for origin in value.split(",") if origin.strip()]
        return value

    @field_validator("jwt_access_expires_in")
    @classmethod
    def _validate_access_ttl(cls, value: str) -> str:
        if try_parse_duration(value) is None:
            raise ValueError(
                f"JWT_ACCESS_EXPIRES_IN must match <number><s|m|h|d>, got {value!r}"
            )
        return value

    @field_validator("jwt_refresh_expires_in")
    @classmethod
    def _warn_refresh_ttl(cls, value: str) -> str:
        if try_parse_duration(value) is None:
            logger.warning(
                "refresh_ttl_unparseable",
                value=value,
                message="refresh tokens will expire after the 7d default",
            )
        return value

    @field_validator("max_sessions_per_user")
    @classmethod
    def _validate_max_sessions(cls, value: int) -> int:
        if value < 1:
            raise ValueError("MAX_SESSIONS_PER_USER must be at least 1")
        return value

    @model_validator(mode="after")
    def _ensure_secrets(self) -> "Settings":
        if not self.jwt_access_secret or not self.jwt_refresh_secret:
            if not self.test_mode:
                raise ValueError(
                    "JWT_ACCESS_SECRET and JWT_REFRESH_SECRET must be set outside TEST_MODE"
                )
            # Per-process secrets; tokens do not survive a restart in test mode
            self.jwt_access_secret = self.jwt_access_secret or secrets.token_urlsafe(48)
            self.jwt_refresh_secret = self.jwt_refresh_secret or secrets.token_urlsafe(48)
            logger.warning("jwt_secrets_generated", test_mode=True)
        for name in ("jwt_access_secret", "jwt_refresh_secret"):
            if len(getattr(self, name)) < MIN_JWT_SECRET_LENGTH:
                raise ValueError(
                    f"{name.upper()} must be at least {MIN_JWT_SECRET_LENGTH} characters"
                )
        if self.jwt_access_secret == self.jwt_refresh_secret:
            raise ValueError("access and refresh tokens must use different secrets")
        return self

    @model_validator(mode="after")
    def _enforce_hash_cost(self) -> "Settings":
        if self.test_mode:
            return self
        if (
            self.argon2_memory_cost < MIN_ARGON2_MEMORY_COST
            or self.argon2_time_cost < MIN_ARGON2_TIME_COST
            or self.argon2_parallelism < MIN_ARGON2_PARALLELISM
        ):
            raise ValueError(
                "argon2 cost parameters below the minimum "
                f"(memory={MIN_ARGON2_MEMORY_COST}KiB, time={MIN_ARGON2_TIME_COST}, "
                f"parallelism={MIN_ARGON2_PARALLELISM})"
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
