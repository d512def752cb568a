from __future__ import annotations

import hashlib
from typing import Optional, Tuple

import redis.asyncio as aioredis
from redis import Redis


class RedisCache:
    """Thin Redis wrapper for consumed OAuth authorization codes and rate limits."""

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0, client=None):
        self.redis_url = redis_url
        self.client = client or aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        # A short-lived sync client keeps the async client off a throwaway loop
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    @staticmethod
    def _code_key(code: str) -> str:
        # codes are hashed so raw authorization codes never land in Redis
        return f"auth:oauth:used:{hashlib.sha256(code.encode()).hexdigest()}"

    async def is_auth_code_used(self, code: str) -> bool:
        return bool(await self.client.exists(self._code_key(code)))

    async def mark_auth_code_used(self, code: str, ttl_seconds: int) -> bool:
        """SET NX EX: True only for the caller that created the marker."""
        acquired = await self.client.set(
            self._code_key(code), "1", ex=max(1, int(ttl_seconds)), nx=True
        )
        return bool(acquired)

    async def release_auth_code(self, code: str) -> None:
        await self.client.delete(self._code_key(code))

    @staticmethod
    def _normalize_rate_key(key: str) -> str:
        # hashed so emails and client addresses never land in Redis
        return f"auth:rate:{hashlib.sha256(key.encode()).hexdigest()}"

    async def check_rate_limit(
        self, key: str, limit: int, window_seconds: int
    ) -> Tuple[bool, int, int]:
        """Fixed-window counter; returns ``(allowed, remaining, reset_seconds)``.

        The window key is created with its expiry before the increment.
        """
        safe_key = self._normalize_rate_key(key)
        await self.client.set(safe_key, 0, ex=max(1, int(window_seconds)), nx=True)
        count = int(await self.client.incr(safe_key))
        reset_seconds = await self.client.ttl(safe_key)
        if reset_seconds is None or reset_seconds < 0:
            # the window lapsed between SET and INCR
            await self.client.expire(safe_key, max(1, int(window_seconds)))
            reset_seconds = window_seconds
        return count <= limit, max(0, limit - count), int(reset_seconds)

    async def close(self) -> None:
        """Close the connection pool. Call when shutting down or resetting runtime."""
        await self.client.aclose()


class _SyncClientAdapter:
    """Exposes a sync Redis client through the awaitable subset RedisCache uses."""

    def __init__(self, sync_client: Redis):
        self._sync = sync_client

    async def exists(self, key: str) -> int:
        return self._sync.exists(key)

    async def set(
        self, key: str, value: str, ex: Optional[int] = None, nx: bool = False
    ) -> Optional[bool]:
        return self._sync.set(key, value, ex=ex, nx=nx)

    async def delete(self, key: str) -> int:
        return self._sync.delete(key)

    async def incr(self, key: str) -> int:
        return self._sync.incr(key)

    async def ttl(self, key: str) -> int:
        return self._sync.ttl(key)

    async def expire(self, key: str, seconds: int) -> bool:
        return self._sync.expire(key, seconds)

    async def aclose(self) -> None:
        self._sync.close()


class SyncRedisCache(RedisCache):
    """RedisCache over a synchronous client for test mode.

    ``asyncio.run`` in tests creates a fresh loop per call; a sync client is
    not bound to any of them.
    """

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self._sync_client = Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        super().__init__(
            redis_url,
            socket_timeout=socket_timeout,
            client=_SyncClientAdapter(self._sync_client),
        )

    def verify_connection(self) -> None:
        self._sync_client.ping()
