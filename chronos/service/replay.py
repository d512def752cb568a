from __future__ import annotations

from datetime import timedelta
from typing import Optional, Protocol

from chronos.config import Settings
from chronos.logging import get_logger
from chronos.storage.models import utcnow
from chronos.storage.redis_cache import RedisCache

logger = get_logger(__name__)


class ConsumedCodeBackend(Protocol):
    def is_auth_code_used(self, code: str) -> bool: ...

    def mark_auth_code_used(self, code, expires_at) -> bool: ...

    def release_auth_code(self, code: str) -> None: ...


class ReplayGuard:
    """Remembers OAuth authorization codes that were already presented.

    Markers live in Redis when a cache is configured, otherwise in the
    primary store. Either way ``mark_used`` is an atomic insert-if-absent:
    when two callbacks race with one code, only one of them gets True.
    """

    def __init__(
        self,
        store: ConsumedCodeBackend,
        cache: Optional[RedisCache],
        settings: Settings,
    ) -> None:
        self.store = store
        self.cache = cache
        self.settings = settings

    async def is_used(self, code: str) -> bool:
        if self.cache:
            return await self.cache.is_auth_code_used(code)
        return self.store.is_auth_code_used(code)

    async def mark_used(self, code: str, ttl_minutes: Optional[int] = None) -> bool:
        ttl = ttl_minutes or self.settings.oauth_code_ttl_minutes
        if self.cache:
            marked = await self.cache.mark_auth_code_used(code, ttl * 60)
        else:
            marked = self.store.mark_auth_code_used(code, utcnow() + timedelta(minutes=ttl))
        if not marked:
            logger.warning("oauth_code_replayed")
        return marked

    async def release(self, code: str) -> None:
        """Forget a code whose exchange failed so the user can retry."""
        if self.cache:
            await self.cache.release_auth_code(code)
        else:
            self.store.release_auth_code(code)
