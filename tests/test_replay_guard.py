"""Tests for authorization-code replay protection over both backends."""

from datetime import timedelta

import pytest

from chronos.config import Settings
from chronos.service.replay import ReplayGuard
from chronos.storage.memory import MemoryStore
from chronos.storage.models import utcnow
from chronos.storage.redis_cache import RedisCache


class FakeAsyncRedis:
    """The subset of redis.asyncio.Redis the cache uses, with SET NX semantics."""

    def __init__(self):
        self.data = {}
        self.ttls = {}
        self.closed = False

    async def exists(self, key):
        return int(key in self.data)

    async def set(self, key, value, ex=None, nx=False):
        if nx and key in self.data:
            return None
        self.data[key] = value
        self.ttls[key] = ex
        return True

    async def delete(self, key):
        return int(self.data.pop(key, None) is not None)

    async def aclose(self):
        self.closed = True


@pytest.fixture
def settings():
    return Settings(jwt_secret="Test-Secret-Key_for-Automation-Only-987654321!")


@pytest.fixture
def store(tmp_path):
    return MemoryStore(fs_root=str(tmp_path), mfa_encryption_key="test-mfa-key", persist=False)


@pytest.fixture(params=["store", "redis"])
def guard(request, store, settings):
    cache = None
    if request.param == "redis":
        cache = RedisCache("redis://unused", client=FakeAsyncRedis())
    return ReplayGuard(store, cache, settings)


class TestReplayGuard:
    """A code can be marked exactly once until its marker expires or is released."""

    async def test_first_mark_wins(self, guard):
        assert await guard.is_used("code-1") is False
        assert await guard.mark_used("code-1") is True
        assert await guard.is_used("code-1") is True
        assert await guard.mark_used("code-1") is False

    async def test_codes_are_independent(self, guard):
        assert await guard.mark_used("code-1") is True
        assert await guard.mark_used("code-2") is True

    async def test_release_allows_retry(self, guard):
        await guard.mark_used("code-1")
        await guard.release("code-1")
        assert await guard.is_used("code-1") is False
        assert await guard.mark_used("code-1") is True


class TestStoreBackedMarkers:
    def test_expired_marker_can_be_reused(self, store):
        store.mark_auth_code_used("code-1", utcnow() - timedelta(seconds=1))
        assert store.is_auth_code_used("code-1") is False
        assert store.mark_auth_code_used("code-1", utcnow() + timedelta(minutes=10)) is True

    def test_purge_drops_expired_markers(self, store):
        store.mark_auth_code_used("old", utcnow() - timedelta(seconds=1))
        store.mark_auth_code_used("new", utcnow() + timedelta(minutes=10))

        assert store.purge_expired_codes() == 1
        assert store.is_auth_code_used("new") is True


class TestRedisMarkers:
    async def test_ttl_and_hashed_key(self, settings, store):
        client = FakeAsyncRedis()
        guard = ReplayGuard(store, RedisCache("redis://unused", client=client), settings)

        await guard.mark_used("raw-authorization-code")

        [key] = client.data
        assert "raw-authorization-code" not in key
        assert key.startswith("auth:oauth:used:")
        assert client.ttls[key] == settings.oauth_code_ttl_minutes * 60

    async def test_close(self):
        client = FakeAsyncRedis()
        await RedisCache("redis://unused", client=client).close()
        assert client.closed is True
