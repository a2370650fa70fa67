from __future__ import annotations

import os
import secrets
import tempfile
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from kanari.logging import get_logger

logger = get_logger(__name__)


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Gateway settings resolved from the environment and an optional .env file."""

    database_url: str = env_field("postgresql://localhost:5432/kanari", "DATABASE_URL")
    redis_url: str | None = env_field(None, "REDIS_URL")
    shared_fs_root: str = env_field("/srv/kanari", "SHARED_FS_ROOT")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Enables deterministic behaviour and runtime resets for the test suite.",
    )

    jwt_secret: str = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_issuer: str = env_field("kanari", "JWT_ISSUER")
    jwt_audience: str = env_field("kanari-clients", "JWT_AUDIENCE")
    access_token_ttl_minutes: int = env_field(60 * 24, "ACCESS_TOKEN_TTL_MINUTES")

    # Upstream provider
    openrouter_api_key: str | None = env_field(
        None,
        "OPENROUTER_API_KEY",
        description="Server-held credential used for free-tier models.",
    )
    openrouter_base_url: str = env_field(
        "https://openrouter.ai/api/v1", "OPENROUTER_BASE_URL"
    )
    openrouter_stream_timeout_ms: int = env_field(60000, "OPENROUTER_STREAM_TIMEOUT_MS")
    gateway_public_url: str = env_field("http://localhost:3000", "GATEWAY_PUBLIC_URL")
    app_title: str = env_field("Kanari", "APP_TITLE")
    stub_token_delay_ms: int = env_field(
        60,
        "STUB_TOKEN_DELAY_MS",
        description="Pause between stub tokens when no credential is configured.",
    )

    # Context retrieval
    context_max_chunks: int = env_field(6, "CONTEXT_MAX_CHUNKS")
    context_max_chars_per_chunk: int = env_field(1200, "CONTEXT_MAX_CHARS_PER_CHUNK")

    # Files and limits
    max_upload_bytes: int = env_field(10 * 1024 * 1024, "MAX_UPLOAD_BYTES")
    stream_rate_limit_per_minute: int = env_field(20, "STREAM_RATE_LIMIT_PER_MINUTE")
    stream_rate_limit_window_seconds: int = env_field(
        60, "STREAM_RATE_LIMIT_WINDOW_SECONDS"
    )
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

    @field_validator("redis_url", "openrouter_api_key", mode="before")
    @classmethod
    def _blank_to_none(cls, value: str | None) -> str | None:
        if isinstance(value, str) and not value.strip():
            return None
        return value.strip() if isinstance(value, str) else value

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> list[str]:
        if value is None:
            return []
        if isinstance(value, str):
            return [item.strip() for item in value.split(",") if item.strip()]
        return list(value)

    @field_validator("openrouter_stream_timeout_ms", "context_max_chunks", "context_max_chars_per_chunk")
    @classmethod
    def _positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("must be a positive integer")
        return value

    @field_validator("jwt_secret", mode="before")
    @classmethod
    def _ensure_jwt_secret(cls, value: str | None) -> str:
        if value:
            return value
        # Generated secrets are persisted under the shared root
        fs_root = Path(os.getenv("SHARED_FS_ROOT", "/srv/kanari"))
        secret_path = fs_root / ".jwt_secret"
        fs_root.mkdir(parents=True, exist_ok=True)

        if secret_path.exists() and not secret_path.is_symlink():
            persisted = secret_path.read_text().strip()
            if len(persisted) >= 32:
                return persisted
            logger.warning("jwt_secret_too_short", path=str(secret_path))

        generated = secrets.token_urlsafe(64)
        fd, tmp_path = tempfile.mkstemp(
            dir=str(fs_root), prefix=".jwt_secret_", suffix=".tmp"
        )
        try:
            os.write(fd, generated.encode())
            os.fchmod(fd, 0o600)
        finally:
            os.close(fd)
        try:
            os.replace(tmp_path, secret_path)
        except OSError as exc:
            logger.error("jwt_secret_persist_failed", error=str(exc), path=str(secret_path))
            raise RuntimeError(
                "Unable to persist JWT secret; set JWT_SECRET or make SHARED_FS_ROOT writable"
            ) from exc
        return generated


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
