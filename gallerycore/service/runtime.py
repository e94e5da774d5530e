from __future__ import annotations

import threading
from typing import Optional, Union
from urllib.parse import urlparse, urlunparse

from gallerycore.config import get_settings, reset_settings_cache
from gallerycore.logging import get_logger
from gallerycore.service.account_guard import AccountGuard
from gallerycore.service.auth import AuthService
from gallerycore.service.billing import BillingEventHandler
from gallerycore.service.email import EmailService
from gallerycore.service.notifications import StoreNotificationSink
from gallerycore.service.oauth import HttpOAuthVerifier
from gallerycore.service.quota import QuotaManager
from gallerycore.service.token_lifecycle import TokenLifecycleManager
from gallerycore.service.tokens import TokenCodec
from gallerycore.storage.memory import MemoryStore
from gallerycore.storage.postgres import PostgresStore
from gallerycore.storage.redis_cache import MemoryCache, RedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password component of a URL for logging."""
    if not url:
        return url
    parsed = urlparse(url)
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
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self):
        self.settings = get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )

        try:
            self.store: Union[MemoryStore, PostgresStore] = (
                MemoryStore()
                if self.settings.use_memory_store
                else PostgresStore(self.settings.database_url)
            )
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type="memory" if self.settings.use_memory_store else "postgres",
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.cache: Union[RedisCache, MemoryCache, None] = None
        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                cache = RedisCache(self.settings.redis_url)
                cache.verify_connection()
                self.cache = cache
            except Exception as exc:
                redis_error = exc

        if self.cache is None:
            if not self.settings.test_mode and not self.settings.allow_redis_fallback_dev:
                raise RuntimeError(
                    "Redis is required for quota warning claims and token review flags; "
                    "start Redis or set TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
                ) from redis_error
            logger.warning(
                "redis_disabled_fallback",
                redis_url=_mask_url_password(self.settings.redis_url),
                error=str(redis_error) if redis_error else "redis_url_missing",
                mode="TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV",
            )
            self.cache = MemoryCache()

        quota_policy = self.settings.quota_policy()
        token_policy = self.settings.token_policy()

        self.email = EmailService(
            smtp_host=self.settings.smtp_host,
            smtp_port=self.settings.smtp_port,
            smtp_user=self.settings.smtp_user,
            smtp_password=self.settings.smtp_password,
            smtp_use_tls=self.settings.smtp_use_tls,
            from_email=self.settings.email_from_address,
            from_name=self.settings.email_from_name,
            base_url=self.settings.app_base_url,
        )
        self.notifications = StoreNotificationSink(self.store)
        self.oauth = HttpOAuthVerifier.from_settings(self.settings)
        self.codec = TokenCodec(token_policy)
        self.tokens = TokenLifecycleManager(
            self.store, self.codec, token_policy, flagger=self.cache
        )
        self.quota = QuotaManager(
            self.store, quota_policy, sink=self.notifications, cache=self.cache
        )
        self.guard = AccountGuard(
            self.store,
            self.settings.lockout_policy(),
            email_service=self.email,
            quota_period=quota_policy.period,
        )
        self.auth = AuthService(
            self.store,
            self.tokens,
            self.guard,
            self.codec,
            email_service=self.email,
            oauth_verifier=self.oauth,
        )
        self.billing = BillingEventHandler(self.store, sink=self.notifications)
        logger.info("runtime_init_completed")

    def close(self) -> None:
        if self.cache is not None:
            try:
                self.cache.close()
            except Exception as exc:
                logger.warning("runtime_cache_close_failed", error=str(exc))
        pool = getattr(self.store, "pool", None)
        if pool is not None:
            pool.close()


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


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime
    with _runtime_lock:
        if runtime is not None:
            runtime.close()
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime()
        return runtime
