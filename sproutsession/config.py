from __future__ import annotations

import os
from enum import Enum
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from sproutsession.logging import get_logger

logger = get_logger(__name__)


class StoreBackend(str, Enum):
    """Where the client-side key-value state lives."""

    MEMORY = "memory"
    FILE = "file"
    REDIS = "redis"


DEFAULT_RESERVED_SEGMENTS = (
    "login",
    "setup",
    "account",
    "home",
    "family-manager",
    "coming-soon",
    "api",
)


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Client session settings."""

    api_base_url: str = env_field("http://localhost:3000", "SPROUT_API_BASE_URL")
    request_timeout_seconds: float = env_field(10.0, "SPROUT_REQUEST_TIMEOUT_SECONDS")
    store_backend: StoreBackend = env_field(StoreBackend.MEMORY, "SPROUT_STORE_BACKEND")
    state_dir: str = env_field(
        str(Path.home() / ".sproutsession"),
        "SPROUT_STATE_DIR",
        description="Directory for the file store backend",
    )
    store_encryption_key: str | None = env_field(
        None,
        "SPROUT_STORE_ENCRYPTION_KEY",
        description="Key material for encrypting the file store at rest",
    )
    redis_url: str = env_field("redis://localhost:6379/0", "SPROUT_REDIS_URL")
    redis_key_prefix: str = env_field("sprout:kv:", "SPROUT_REDIS_KEY_PREFIX")
    allow_store_fallback: bool = env_field(
        True,
        "SPROUT_ALLOW_STORE_FALLBACK",
        description="Use the memory store when Redis is unreachable",
    )
    tick_interval_ms: int = env_field(1000, "SPROUT_TICK_INTERVAL_MS")
    default_idle_time_seconds: int = env_field(
        1800,
        "SPROUT_DEFAULT_IDLE_TIME_SECONDS",
        description="Idle window used until the server value is cached",
    )
    default_auth_life_seconds: int = env_field(1800, "SPROUT_DEFAULT_AUTH_LIFE_SECONDS")
    default_lockout_ms: int = env_field(
        5 * 60 * 1000,
        "SPROUT_DEFAULT_LOCKOUT_MS",
        description="Lockout length assumed when the server omits remainingTime",
    )
    admin_gesture_clicks: int = env_field(10, "SPROUT_ADMIN_GESTURE_CLICKS")
    admin_gesture_window_ms: int = env_field(5000, "SPROUT_ADMIN_GESTURE_WINDOW_MS")
    landing_subpath: str = env_field("log-entry", "SPROUT_LANDING_SUBPATH")
    reset_confirmation_ms: int = env_field(5000, "SPROUT_RESET_CONFIRMATION_MS")
    reserved_root_segments: tuple[str, ...] = env_field(
        DEFAULT_RESERVED_SEGMENTS, "SPROUT_RESERVED_ROOT_SEGMENTS"
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

    @field_validator("store_backend")
    @classmethod
    def _validate_store_backend(cls, value: StoreBackend) -> StoreBackend:
        return StoreBackend(value)

    @field_validator("reserved_root_segments", mode="before")
    @classmethod
    def _split_segments(cls, value: Any) -> Any:
        if isinstance(value, str):
            return tuple(part.strip() for part in value.split(",") if part.strip())
        return value

    @field_validator("tick_interval_ms", "admin_gesture_window_ms", "admin_gesture_clicks")
    @classmethod
    def _ensure_positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("must be positive")
        return value

    @field_validator("api_base_url")
    @classmethod
    def _strip_trailing_slash(cls, value: str) -> str:
        if not value:
            logger.warning("api_base_url_empty")
        return value.rstrip("/")


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
