from __future__ import annotations

from typing import Optional
from urllib.parse import urlparse, urlunparse

from gatekeep.config import Settings, get_settings
from gatekeep.logging import get_logger
from gatekeep.service.auth import AuthService
from gatekeep.service.directory import StoreDirectory
from gatekeep.service.notifier import EmailNotifier, LogNotifier, OtpNotifier
from gatekeep.service.otp import OtpEngine
from gatekeep.service.passwords import PasswordService
from gatekeep.service.retention import RetentionReaper
from gatekeep.service.sessions import SessionManager
from gatekeep.storage.common import DocumentStore
from gatekeep.storage.memory import MemoryDocumentStore
from gatekeep.storage.postgres import PostgresDocumentStore
from gatekeep.storage.redis_cache import RedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password in a URL for safe logging.

    Example: redis://:mypassword@localhost:6379 -> redis://:***@localhost:6379
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
        if parsed.password:
            netloc = parsed.hostname or ""
            if parsed.port:
                netloc = f"{netloc}:{parsed.port}"
            if parsed.username:
                netloc = f"{parsed.username}:***@{netloc}"
            else:
                netloc = f":***@{netloc}"
            return urlunparse((
                parsed.scheme,
                netloc,
                parsed.path,
                parsed.params,
                parsed.query,
                parsed.fragment,
            ))
        return url
    except ValueError:
        return "***url_parse_error***"


class Runtime:
    """Composition root wiring store, cache, directory and services.

    Every collaborator is built here and passed to its dependents
    explicitly; pass ``store``, ``cache`` or ``notifier`` to substitute test
    doubles. Nothing is held at module level, so several runtimes can coexist.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        store: Optional[DocumentStore] = None,
        cache: Optional[RedisCache] = None,
        notifier: Optional[OtpNotifier] = None,
    ) -> None:
        self.settings = settings or get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )

        self.store = store if store is not None else self._build_store()
        self.cache = cache if cache is not None else self._build_cache()
        self.notifier = notifier if notifier is not None else self._build_notifier()

        self.directory = StoreDirectory(self.store, self.settings)
        self.passwords = PasswordService(self.store)
        self.otp = OtpEngine(
            self.store,
            self.directory,
            self.settings,
            notifier=self.notifier,
            cache=self.cache,
        )
        self.sessions = SessionManager(self.store, self.directory, self.settings)
        self.auth = AuthService(
            self.directory, self.otp, self.sessions, self.passwords, self.settings
        )
        self.reaper = RetentionReaper(self.store, self.settings)
        logger.info("runtime_init_completed", cache_enabled=self.cache is not None)

    def _build_store(self) -> DocumentStore:
        store_type = "memory" if self.settings.use_memory_store else "postgres"
        try:
            if self.settings.use_memory_store:
                fs_root = (
                    self.settings.shared_fs_root
                    if self.settings.persist_memory_store
                    else None
                )
                store: DocumentStore = MemoryDocumentStore(fs_root=fs_root)
            else:
                store = PostgresDocumentStore(self.settings.database_url)
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise
        logger.info("runtime_store_initialized", store_type=store_type)
        return store

    def _build_cache(self) -> Optional[RedisCache]:
        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                cache = RedisCache(self.settings.redis_url)
                cache.verify_connection()
                return cache
            except Exception as exc:
                redis_error = exc

        if not self.settings.test_mode and not self.settings.allow_redis_fallback_dev:
            raise RuntimeError(
                "Redis is required for OTP locks; "
                "start Redis or set TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
            ) from redis_error

        fallback_mode = (
            "TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
        )
        logger.warning(
            "redis_disabled_fallback",
            redis_url=_mask_url_password(self.settings.redis_url),
            error=str(redis_error) if redis_error else "redis_url_missing",
            message=(
                f"Running without Redis under {fallback_mode}; OTP consumption relies on "
                "the store's conditional update alone."
            ),
            mode=fallback_mode,
        )
        return None

    def _build_notifier(self) -> OtpNotifier:
        if self.settings.test_mode and not self.settings.smtp_host:
            return LogNotifier()
        return EmailNotifier.from_settings(self.settings)

    async def close(self) -> None:
        """Release connections held by the cache and the store."""
        if self.cache is not None:
            await self.cache.close()
        close_store = getattr(self.store, "close", None)
        if callable(close_store):
            close_store()


__all__ = ["Runtime"]
