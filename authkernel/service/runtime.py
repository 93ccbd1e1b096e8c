from __future__ import annotations

import asyncio
import threading
from typing import Optional
from urllib.parse import urlparse, urlunparse

from authkernel.config import get_settings, reset_settings_cache
from authkernel.logging import get_logger
from authkernel.service.auth import AuthService
from authkernel.service.email import EmailService
from authkernel.service.identity import IdentityVerifier
from authkernel.service.messaging import OtpDelivery, WhatsAppSender
from authkernel.service.otp import OtpManager
from authkernel.service.rate_limit import RateLimiter
from authkernel.service.replay import ChallengeReplayGuard
from authkernel.service.sessions import SessionStore
from authkernel.service.tokens import TokenIssuer
from authkernel.storage.local_cache import LocalCache
from authkernel.storage.memory import MemoryStore
from authkernel.storage.postgres import PostgresStore
from authkernel.storage.redis_cache import RedisCache, SyncRedisCache

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
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self):
        self.settings = get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )

        store_type = "memory" if self.settings.use_memory_store else "postgres"
        try:
            self.store = (
                MemoryStore(fs_root=self.settings.shared_fs_root)
                if self.settings.use_memory_store
                else PostgresStore(
                    self.settings.database_url, fs_root=self.settings.shared_fs_root
                )
            )
            logger.info("runtime_store_initialized", store_type=store_type)
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.cache = None
        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                # Sync client in test mode keeps TestClient's loop out of the picture
                if self.settings.test_mode:
                    cache = SyncRedisCache(
                        self.settings.redis_url,
                        socket_timeout=self.settings.redis_socket_timeout,
                    )
                else:
                    cache = RedisCache(
                        self.settings.redis_url,
                        socket_timeout=self.settings.redis_socket_timeout,
                    )
                cache.verify_connection()
                self.cache = cache
            except Exception as exc:
                redis_error = exc
                self.cache = None

        if not self.cache:
            if (
                not self.settings.test_mode
                and not self.settings.allow_redis_fallback_dev
            ):
                raise RuntimeError(
                    "Redis is required for one-time codes, sessions and rate limits; "
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
                    f"Running without Redis under {fallback_mode}; codes, sessions and "
                    "rate limits live in this process only."
                ),
                mode=fallback_mode,
            )
            self.cache = LocalCache()

        self.sessions = SessionStore(self.cache)
        self.tokens = TokenIssuer(self.settings, self.sessions)
        self.otp = OtpManager(self.cache, self.settings)
        self.replay = ChallengeReplayGuard(
            self.cache, ttl_seconds=self.settings.challenge_ttl_seconds
        )
        self.limiter = RateLimiter(self.cache, self.settings)
        self.email = EmailService(
            smtp_host=self.settings.smtp_host,
            smtp_port=self.settings.smtp_port,
            smtp_user=self.settings.smtp_user,
            smtp_password=self.settings.smtp_password,
            smtp_use_tls=self.settings.smtp_use_tls,
            from_email=self.settings.email_from_address,
            from_name=self.settings.email_from_name,
            code_ttl_minutes=max(1, self.settings.otp_ttl_seconds // 60),
        )
        self.whatsapp = WhatsAppSender(
            self.settings.whatsapp_api_url, self.settings.whatsapp_api_token
        )
        self.delivery = OtpDelivery(self.email, self.whatsapp)
        self.identity = IdentityVerifier(self.settings)
        self.auth = AuthService(
            self.store,
            self.cache,
            self.settings,
            otp=self.otp,
            replay=self.replay,
            tokens=self.tokens,
            sessions=self.sessions,
            delivery=self.delivery,
            identity=self.identity,
        )

        logger.info(
            "runtime_initialized",
            store_type=store_type,
            redis_enabled=isinstance(self.cache, RedisCache),
            email_configured=self.email.is_configured,
            whatsapp_configured=self.whatsapp.is_configured,
        )

    async def close(self) -> None:
        """Flush in-flight deliveries and release store connections."""
        await self.delivery.drain()
        await self.cache.close()
        if isinstance(self.store, PostgresStore):
            self.store.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton in a thread-safe manner.

    Uses double-checked locking:
    - First check without lock (fast path for existing runtime)
    - Second check with lock to prevent race condition during creation
    """
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
        # Close Redis connections so the next runtime does not inherit them
        if runtime is not None and isinstance(runtime.cache, RedisCache):
            try:
                if isinstance(runtime.cache, SyncRedisCache):
                    runtime.cache.client.close()
                else:
                    try:
                        loop = asyncio.get_running_loop()
                        loop.create_task(runtime.cache.close())
                    except RuntimeError:
                        asyncio.run(runtime.cache.close())
            except Exception as exc:
                logger.warning("runtime_cache_close_failed", error=str(exc))

        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime()
        return runtime


__all__ = ["Runtime", "get_runtime", "reset_runtime_for_tests"]
