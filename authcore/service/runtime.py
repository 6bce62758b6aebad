from __future__ import annotations

import asyncio
import threading
from typing import Optional
from urllib.parse import urlparse, urlunparse

from authcore.config import get_settings, reset_settings_cache
from authcore.logging import get_logger
from authcore.service.auth import AuthService
from authcore.service.email import EmailService
from authcore.service.rate_limit import RateLimiter
from authcore.storage.memory import MemoryStore
from authcore.storage.postgres import PostgresStore
from authcore.storage.redis_cache import RedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Replace the password component of a connection URL with ``***``."""
    if not url:
        return url
    try:
        parsed = urlparse(url)
    except ValueError:
        return "***url_parse_error***"
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


class Runtime:
    """Holds the singleton store, cache and service instances."""

    def __init__(self):
        self.settings = get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )
        key_material = self.settings.mfa_encryption_key or self.settings.jwt_secret
        store_type = "memory" if self.settings.use_memory_store else "postgres"
        try:
            if self.settings.use_memory_store:
                self.store = MemoryStore(
                    fs_root=None if self.settings.test_mode else self.settings.shared_fs_root,
                    mfa_encryption_key=key_material,
                )
            else:
                self.store = PostgresStore(
                    self.settings.database_url, mfa_encryption_key=key_material
                )
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                database_url=_mask_url_password(self.settings.database_url),
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise
        logger.info("runtime_store_initialized", store_type=store_type)

        self.cache: RedisCache | None = None
        redis_error: Exception | None = None
        if self.settings.redis_url and not self.settings.test_mode:
            try:
                cache = RedisCache(self.settings.redis_url)
                cache.verify_connection()
                self.cache = cache
            except Exception as exc:
                redis_error = exc
                self.cache = None

        if self.cache is None:
            if not self.settings.test_mode and not self.settings.allow_redis_fallback_dev:
                raise RuntimeError(
                    "Redis is required for shared rate limits; start Redis or set "
                    "TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
                ) from redis_error
            fallback_mode = "TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
            logger.warning(
                "redis_disabled_fallback",
                redis_url=_mask_url_password(self.settings.redis_url),
                error=str(redis_error) if redis_error else "redis_not_used",
                mode=fallback_mode,
            )

        self.rate_limiter = RateLimiter(self.cache)
        self.email = EmailService.from_settings(self.settings)
        self.auth = AuthService(
            self.store,
            self.settings,
            rate_limiter=self.rate_limiter,
            email_service=self.email,
        )
        logger.info("runtime_init_completed", redis=self.cache is not None)

    def close(self) -> None:
        if isinstance(self.store, PostgresStore):
            self.store.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton (double-checked locking)."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def _close_cache(cache: RedisCache) -> None:
    try:
        loop = asyncio.get_running_loop()
    except RuntimeError:
        asyncio.run(cache.close())
    else:
        loop.create_task(cache.close())


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime
    with _runtime_lock:
        if runtime is not None:
            if runtime.cache is not None:
                try:
                    _close_cache(runtime.cache)
                except (OSError, RuntimeError) as exc:
                    logger.warning("runtime_cache_close_failed", error=str(exc))
            runtime.close()
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime()
        return runtime
