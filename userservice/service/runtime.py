from __future__ import annotations

import asyncio
import threading
from typing import Optional
from urllib.parse import urlparse, urlunparse

from userservice.config import Settings, get_settings, reset_settings_cache
from userservice.logging import get_logger
from userservice.service.auth import AuthService
from userservice.service.email import EmailService
from userservice.service.refresh_tokens import RefreshTokenSweeper
from userservice.storage.memory import MemoryStore
from userservice.storage.postgres import PostgresStore
from userservice.storage.redis_cache import RedisCache, SyncRedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Replace the password in a connection URL with ``***`` for logging."""
    if not url:
        return url
    try:
        parsed = urlparse(url)
    except ValueError:
        return "***invalid-url***"
    if not parsed.password:
        return url
    host = parsed.hostname or ""
    if parsed.port:
        host = f"{host}:{parsed.port}"
    return urlunparse(parsed._replace(netloc=f"{parsed.username or ''}:***@{host}"))


def _build_store(settings: Settings) -> MemoryStore | PostgresStore:
    if settings.use_memory_store:
        return MemoryStore(fs_root=settings.shared_fs_root)
    return PostgresStore(settings.database_url, fs_root=settings.shared_fs_root)


def _build_cache(settings: Settings) -> RedisCache | SyncRedisCache | None:
    """Connect to Redis, or fall back to process-local tokens where allowed."""
    error: Exception | None = None
    if settings.redis_url:
        # Test mode uses the sync client so no connection is tied to one test's loop
        cache_cls = SyncRedisCache if settings.test_mode else RedisCache
        try:
            cache = cache_cls(settings.redis_url)
            cache.verify_connection()
            return cache
        except Exception as exc:
            error = exc

    if not (settings.test_mode or settings.allow_redis_fallback_dev):
        raise RuntimeError(
            "Redis is required so verification and reset tokens are shared by all "
            "instances; start Redis or set TEST_MODE / ALLOW_REDIS_FALLBACK_DEV"
        ) from error
    logger.warning(
        "redis_unavailable_using_local_tokens",
        redis_url=_mask_url_password(settings.redis_url),
        error=str(error) if error else "redis_url_missing",
        mode="TEST_MODE" if settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV",
    )
    return None


class Runtime:
    """Process-wide service graph used by the HTTP layer."""

    def __init__(self):
        self.settings = get_settings()
        store_type = "memory" if self.settings.use_memory_store else "postgres"
        try:
            self.store = _build_store(self.settings)
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise
        self.cache = _build_cache(self.settings)

        self.email = EmailService(
            smtp_host=self.settings.smtp_host,
            smtp_port=self.settings.smtp_port,
            smtp_user=self.settings.smtp_user,
            smtp_password=self.settings.smtp_password,
            smtp_use_tls=self.settings.smtp_use_tls,
            from_email=self.settings.email_from_address,
            from_name=self.settings.email_from_name,
            base_url=self.settings.app_base_url,
            app_name=self.settings.app_name,
            verification_ttl_hours=self.settings.verification_token_ttl_hours,
            reset_ttl_minutes=self.settings.reset_token_ttl_minutes,
        )
        self.auth = AuthService(self.store, self.cache, self.settings, notifier=self.email)
        self.sweeper = RefreshTokenSweeper(
            self.store,
            interval_seconds=self.settings.refresh_token_sweep_interval_seconds,
            ephemeral=self.auth.ephemeral,
        )
        logger.info(
            "runtime_initialized",
            store_type=store_type,
            redis_enabled=self.cache is not None,
            email_configured=self.email.is_configured,
            test_mode=self.settings.test_mode,
        )


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Return the shared ``Runtime``, building it on first use."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def _close_cache(cache: RedisCache | SyncRedisCache) -> None:
    try:
        if isinstance(cache, SyncRedisCache):
            cache.client.close()
            return
        try:
            asyncio.get_running_loop().create_task(cache.close())
        except RuntimeError:
            asyncio.run(cache.close())
    except Exception as exc:
        logger.debug("runtime_cache_close_failed", error=str(exc))


def reset_runtime_for_tests() -> Runtime:
    """Rebuild the runtime from the current environment; TEST_MODE only."""
    global runtime
    with _runtime_lock:
        if runtime is not None and runtime.cache is not None:
            _close_cache(runtime.cache)
        reset_settings_cache()
        if not get_settings().test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime()
        return runtime
