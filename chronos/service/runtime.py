from __future__ import annotations

import asyncio
import threading
import time
from typing import Optional, Tuple, Union
from urllib.parse import urlparse, urlunparse

from chronos.config import get_settings, reset_settings_cache
from chronos.logging import get_logger
from chronos.service.auth import AuthOrchestrator
from chronos.service.credentials import CredentialService
from chronos.service.email import EmailService
from chronos.service.oauth import GoogleOAuthClient, OAuthLinkingService
from chronos.service.password_reset import PasswordResetService
from chronos.service.replay import ReplayGuard
from chronos.service.sessions import SessionStore
from chronos.service.tokens import TokenService
from chronos.service.two_factor import TwoFactorService
from chronos.storage.memory import MemoryStore
from chronos.storage.postgres import PostgresStore
from chronos.storage.redis_cache import RedisCache, SyncRedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password in a connection URL for logging.

    Example: redis://:mypassword@localhost:6379 -> redis://:***@localhost:6379
    """
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
        # TOTP secrets fall back to a key derived from the JWT secret
        mfa_key = self.settings.mfa_encryption_key or self.settings.jwt_secret

        store_type = "memory" if self.settings.use_memory_store else "postgres"
        try:
            self.store: Union[MemoryStore, PostgresStore] = (
                MemoryStore(
                    fs_root=self.settings.shared_fs_root,
                    mfa_encryption_key=mfa_key,
                    persist=self.settings.persist_memory_store,
                )
                if self.settings.use_memory_store
                else PostgresStore(self.settings.database_url, mfa_encryption_key=mfa_key)
            )
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise
        logger.info("runtime_store_initialized", store_type=store_type)

        self.cache: Optional[RedisCache] = None
        if self.settings.redis_url:
            try:
                # sync client in test mode; asyncio.run gives every test its own loop
                if self.settings.test_mode:
                    cache = SyncRedisCache(self.settings.redis_url)
                else:
                    cache = RedisCache(self.settings.redis_url)
                cache.verify_connection()
                self.cache = cache
            except Exception as exc:
                logger.warning(
                    "redis_disabled_fallback",
                    redis_url=_mask_url_password(self.settings.redis_url),
                    error=str(exc),
                    message="Consumed OAuth codes use the primary store; rate limits are per process",
                )

        self.tokens = TokenService(self.settings)
        self.sessions = SessionStore(self.store, self.tokens, self.settings)
        self.credentials = CredentialService(self.store)
        self.two_factor = TwoFactorService(self.store, self.credentials, self.settings)
        self.replay = ReplayGuard(self.store, self.cache, self.settings)
        self.oauth = OAuthLinkingService(
            self.store, GoogleOAuthClient(self.settings), self.settings
        )
        self.email = EmailService(
            smtp_host=self.settings.smtp_host,
            smtp_port=self.settings.smtp_port,
            smtp_user=self.settings.smtp_user,
            smtp_password=self.settings.smtp_password,
            smtp_use_tls=self.settings.smtp_use_tls,
            from_email=self.settings.email_from_address,
            from_name=self.settings.email_from_name,
        )
        self.password_reset = PasswordResetService(
            self.store, self.credentials, self.sessions, self.email, self.settings
        )
        self.auth = AuthOrchestrator(
            store=self.store,
            credentials=self.credentials,
            tokens=self.tokens,
            sessions=self.sessions,
            two_factor=self.two_factor,
            oauth=self.oauth,
            replay=self.replay,
            password_reset=self.password_reset,
            settings=self.settings,
        )
        # fixed windows per key when Redis is unavailable: key -> (count, window start)
        self._local_rate_limits: dict[str, Tuple[int, float]] = {}
        self._local_rate_limit_lock = threading.Lock()
        logger.info("runtime_init_completed", redis_enabled=self.cache is not None)

    def purge_expired(self) -> dict[str, int]:
        """Drop expired sessions and one-time codes."""
        sessions = self.sessions.purge_expired()
        codes = self.store.purge_expired_codes()
        self._purge_rate_windows()
        if sessions or codes:
            logger.info("expired_state_purged", sessions=sessions, codes=codes)
        return {"sessions": sessions, "codes": codes}

    def _purge_rate_windows(self) -> None:
        now = time.monotonic()
        longest = max(
            self.settings.auth_rate_limit_window_seconds,
            self.settings.password_reset_rate_limit_window_seconds,
        )
        with self._local_rate_limit_lock:
            stale = [
                key
                for key, (_, started) in self._local_rate_limits.items()
                if now - started >= longest
            ]
            for key in stale:
                del self._local_rate_limits[key]

    async def close(self) -> None:
        if self.cache is not None:
            await self.cache.close()
        if isinstance(self.store, PostgresStore):
            self.store.close()


runtime: Optional[Runtime] = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Return the process-wide runtime, creating it on first use."""
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
        if runtime is not None and runtime.cache is not None:
            if isinstance(runtime.cache, SyncRedisCache):
                runtime.cache._sync_client.close()
            else:
                try:
                    loop = asyncio.get_running_loop()
                    loop.create_task(runtime.cache.close())
                except RuntimeError:
                    asyncio.run(runtime.cache.close())

        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime()
        return runtime


async def check_rate_limit(
    runtime: Runtime, key: str, limit: int, window_seconds: int
) -> Tuple[bool, int, int]:
    """Count one attempt against ``key``; Redis when configured, else in-process.

    Returns ``(allowed, remaining, reset_seconds)``. A non-positive ``limit``
    disables the check.
    """
    if limit <= 0:
        return True, limit, 0
    if window_seconds <= 0:
        logger.warning(
            "rate_limit_invalid_window",
            key=key,
            window_seconds=window_seconds,
            message="Invalid rate limit window_seconds; defaulting to 60 seconds",
        )
        window_seconds = 60
    if runtime.cache:
        return await runtime.cache.check_rate_limit(key, limit, window_seconds)
    now = time.monotonic()
    with runtime._local_rate_limit_lock:
        count, started = runtime._local_rate_limits.get(key, (0, now))
        if now - started >= window_seconds:
            count, started = 0, now
        count += 1
        runtime._local_rate_limits[key] = (count, started)
    reset_seconds = max(1, int(started + window_seconds - now))
    return count <= limit, max(0, limit - count), reset_seconds
