from pathlib import Path

import pytest
from pydantic import ValidationError

from kanari.config import Settings


def test_from_env_reads_named_variables(monkeypatch):
    monkeypatch.setenv("OPENROUTER_STREAM_TIMEOUT_MS", "1500")
    monkeypatch.setenv("OPENROUTER_API_KEY", "  sk-server  ")
    monkeypatch.setenv("CORS_ALLOW_ORIGINS", "https://a.example, https://b.example,")
    monkeypatch.setenv("CONTEXT_MAX_CHUNKS", "3")

    settings = Settings.from_env()

    assert settings.openrouter_stream_timeout_ms == 1500
    assert settings.openrouter_api_key == "sk-server"
    assert settings.cors_allow_origins == ["https://a.example", "https://b.example"]
    assert settings.context_max_chunks == 3


def test_blank_optional_values_become_none(monkeypatch):
    monkeypatch.setenv("OPENROUTER_API_KEY", "")
    monkeypatch.setenv("REDIS_URL", "   ")

    settings = Settings.from_env()

    assert settings.openrouter_api_key is None
    assert settings.redis_url is None


def test_timeouts_must_be_positive():
    with pytest.raises(ValidationError):
        Settings(jwt_secret="x" * 40, openrouter_stream_timeout_ms=0)


def test_defaults():
    settings = Settings(jwt_secret="x" * 40)
    assert settings.openrouter_base_url == "https://openrouter.ai/api/v1"
    assert settings.openrouter_stream_timeout_ms == 60000
    assert settings.stub_token_delay_ms == 60
    assert settings.context_max_chunks == 6
    assert settings.context_max_chars_per_chunk == 1200
    assert settings.max_upload_bytes == 10 * 1024 * 1024


def test_jwt_secret_is_generated_and_reused(monkeypatch, tmp_path: Path):
    monkeypatch.setenv("SHARED_FS_ROOT", str(tmp_path))

    first = Settings(jwt_secret=None)
    second = Settings(jwt_secret=None)

    assert len(first.jwt_secret) >= 32
    assert first.jwt_secret == second.jwt_secret
    assert (tmp_path / ".jwt_secret").read_text().strip() == first.jwt_secret
