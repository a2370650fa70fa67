from __future__ import annotations

import asyncio
import threading
from datetime import datetime
from pathlib import Path
from typing import Dict, Optional, Tuple, Union
from urllib.parse import urlparse, urlunparse

from kanari.config import get_settings, reset_settings_cache
from kanari.logging import get_logger
from kanari.service.auth import AuthService
from kanari.service.chats import ChatService, StreamConfig
from kanari.service.context import ContextService
from kanari.service.files import FileService
from kanari.service.fs import BlobStore
from kanari.service.openrouter import OpenRouterClient
from kanari.service.ownership import OwnershipGuard
from kanari.service.projects import ProjectService
from kanari.storage.memory import MemoryStore
from kanari.storage.postgres import PostgresStore
from kanari.storage.redis_cache import RedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Replace the password component of a URL with ``***`` for logging."""
    if not url:
        return url
    parsed = urlparse(url)
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(parsed._replace(netloc=netloc))


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self):
        self.settings = get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )

        self.store = (
            MemoryStore(fs_root=self.settings.shared_fs_root)
            if self.settings.use_memory_store
            else PostgresStore(self.settings.database_url, fs_root=self.settings.shared_fs_root)
        )

        self.cache: Optional[RedisCache] = None
        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                cache = RedisCache(self.settings.redis_url)
                cache.verify_connection()
                self.cache = cache
            except Exception as exc:
                redis_error = exc

        if not self.cache:
            if not self.settings.test_mode and not self.settings.allow_redis_fallback_dev:
                raise RuntimeError(
                    "Redis is required for shared rate limits; start Redis or set "
                    "TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
                ) from redis_error
            logger.warning(
                "redis_disabled_fallback",
                redis_url=_mask_url_password(self.settings.redis_url),
                error=str(redis_error) if redis_error else "redis_url_missing",
                message="Running without Redis; rate limits are per-process only.",
            )

        self.blobs = BlobStore(Path(self.settings.shared_fs_root))
        self.guard = OwnershipGuard(self.store)
        self.auth = AuthService(self.store, self.settings)
        self.context = ContextService(
            self.store,
            self.blobs,
            max_chunks=self.settings.context_max_chunks,
            max_chars_per_chunk=self.settings.context_max_chars_per_chunk,
        )
        self.provider = OpenRouterClient(
            self.settings.openrouter_base_url,
            referer=self.settings.gateway_public_url,
            title=self.settings.app_title,
        )
        self.chats = ChatService(
            self.store,
            self.context,
            self.provider,
            StreamConfig(
                server_api_key=self.settings.openrouter_api_key,
                timeout_ms=self.settings.openrouter_stream_timeout_ms,
                stub_token_delay_ms=self.settings.stub_token_delay_ms,
            ),
            guard=self.guard,
        )
        self.projects = ProjectService(self.store, self.blobs, guard=self.guard)
        self.files = FileService(
            self.store,
            self.blobs,
            max_upload_bytes=self.settings.max_upload_bytes,
            guard=self.guard,
        )
        self._local_rate_limits: Dict[str, Tuple[float, datetime]] = {}
        self._local_rate_limit_lock = asyncio.Lock()

        logger.info(
            "runtime_initialized",
            store_type="memory" if self.settings.use_memory_store else "postgres",
            redis_enabled=self.cache is not None,
            server_credential_configured=self.settings.openrouter_api_key is not None,
        )

    async def close(self) -> None:
        if self.cache is not None:
            await self.cache.close()
        if isinstance(self.store, PostgresStore):
            self.store.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton using double-checked locking."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Rebuild the runtime from a fresh read of the environment."""
    global runtime

    with _runtime_lock:
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime()
        return runtime


async def check_rate_limit(
    runtime: Runtime,
    key: str,
    limit: int,
    window_seconds: int,
    *,
    return_remaining: bool = False,
    cost: int = 1,
) -> Union[bool, Tuple[bool, int, int]]:
    """Token-bucket rate limit, in Redis when available and in-process otherwise.

    Returns ``allowed`` or, with ``return_remaining``, ``(allowed, remaining,
    reset_seconds)``.
    """
    if limit <= 0:
        return (True, limit, 0) if return_remaining else True
    if window_seconds <= 0:
        logger.warning("rate_limit_invalid_window", key=key, window_seconds=window_seconds)
        window_seconds = 60
    if runtime.cache:
        return await runtime.cache.check_rate_limit(
            key, limit, window_seconds, return_remaining=return_remaining, cost=cost
        )
    now = datetime.utcnow()
    refill_rate = float(limit) / float(window_seconds)
    async with runtime._local_rate_limit_lock:
        tokens, last_ts = runtime._local_rate_limits.get(key, (float(limit), now))
        elapsed = max(0.0, (now - last_ts).total_seconds())
        tokens = min(float(limit), tokens + elapsed * refill_rate)
        allowed = tokens >= cost
        if allowed:
            tokens -= cost
        runtime._local_rate_limits[key] = (tokens, now)
        reset_seconds = int((cost - tokens) / refill_rate) if not allowed else 0
        remaining = int(tokens)
    if return_remaining:
        return (allowed, remaining, reset_seconds)
    return allowed
