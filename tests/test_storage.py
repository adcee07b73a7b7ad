"""Unit tests for the key-value backends."""

from datetime import date

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from maak.storage.common import decode_value, encode_value
from maak.storage.errors import StoreUnavailable
from maak.storage.memory import MemoryKVStore
from maak.storage.models import StoredSession, User
from maak.storage.redis_store import RedisKVStore


class FakeAsyncRedis:
    """Just enough of redis.asyncio.Redis for the store's calls."""

    def __init__(self, fail=False):
        self.data = {}
        self.fail = fail
        self.closed = False

    def _check(self):
        if self.fail:
            raise RedisConnectionError("connection refused")

    async def get(self, key):
        self._check()
        return self.data.get(key)

    async def set(self, key, value):
        self._check()
        self.data[key] = value

    async def delete(self, key):
        self._check()
        self.data.pop(key, None)

    async def scan_iter(self, match=None, count=None):
        self._check()
        prefix = match.rstrip("*")
        for key in list(self.data):
            if key.startswith(prefix):
                yield key

    async def mget(self, keys):
        self._check()
        return [self.data.get(key) for key in keys]

    async def aclose(self):
        self.closed = True


def _redis_store(fake):
    store = RedisKVStore("redis://localhost:6379/0")
    store.client = fake
    return store


class TestMemoryKVStore:
    async def test_set_get_delete(self):
        store = MemoryKVStore()

        await store.set("profile:1", {"firstName": "Anna"})
        assert await store.get("profile:1") == {"firstName": "Anna"}

        await store.delete("profile:1")
        await store.delete("profile:1")
        assert await store.get("profile:1") is None

    async def test_values_are_copied(self):
        store = MemoryKVStore()
        value = {"interests": ["musik"]}

        await store.set("profile:1", value)
        value["interests"].append("resor")
        fetched = await store.get("profile:1")
        fetched["interests"].append("schack")

        assert await store.get("profile:1") == {"interests": ["musik"]}

    async def test_prefix_lookup(self):
        store = MemoryKVStore()
        await store.set("profile:1", {"userId": "1"})
        await store.set("profile:2", {"userId": "2"})
        await store.set("personality:1", {"type": "INTJ"})

        profiles = await store.get_by_prefix("profile:")

        assert set(profiles) == {"profile:1", "profile:2"}
        assert len(store) == 3


class TestRedisKVStore:
    async def test_values_are_namespaced_json(self):
        fake = FakeAsyncRedis()
        store = _redis_store(fake)

        await store.set("consent:1", {"analytics": True})

        assert fake.data == {"maak:kv:consent:1": '{"analytics": true}'}
        assert await store.get("consent:1") == {"analytics": True}

    async def test_prefix_scan_strips_namespace(self):
        fake = FakeAsyncRedis()
        store = _redis_store(fake)
        await store.set("profile:a", {"userId": "a"})
        await store.set("profile:b", {"userId": "b"})
        await store.set("chat:a:b", {"messages": []})

        profiles = await store.get_by_prefix("profile:")

        assert profiles == {"profile:a": {"userId": "a"}, "profile:b": {"userId": "b"}}
        assert await store.get_by_prefix("missing:") == {}

    @pytest.mark.parametrize("operation", ["get", "set", "delete", "get_by_prefix"])
    async def test_redis_errors_become_store_unavailable(self, operation):
        store = _redis_store(FakeAsyncRedis(fail=True))
        args = {"get": ("k",), "set": ("k", {"v": 1}), "delete": ("k",), "get_by_prefix": ("k",)}

        with pytest.raises(StoreUnavailable):
            await getattr(store, operation)(*args[operation])

    async def test_close(self):
        fake = FakeAsyncRedis()
        await _redis_store(fake).close()
        assert fake.closed


class TestCodec:
    def test_decode_none(self):
        assert decode_value(None) is None

    def test_corrupt_value(self):
        with pytest.raises(StoreUnavailable):
            decode_value("{oops")

    def test_datetimes_are_stringified(self):
        assert encode_value({"day": date(2025, 1, 2)}) == '{"day": "2025-01-02"}'


class TestStoredSession:
    def test_json_round_trip_keeps_user(self):
        session = StoredSession(
            access_token="demo-token-1",
            refresh_token="demo-refresh-1",
            expires_at=86401,
            user=User(id="demo-user-1", app_metadata={"demo": True}),
        )

        restored = StoredSession.from_json(session.to_json())

        assert restored.access_token == "demo-token-1"
        assert restored.user.is_demo
        assert restored.token_type == "bearer"

    @pytest.mark.parametrize(
        "raw",
        [
            "",
            "[]",
            '{"access_token": ""}',
            '{"access_token": "t", "user": {}}',
            '{"access_token": "t", "expires_at": "soon", "user": {"id": "u"}}',
        ],
    )
    def test_malformed_payloads(self, raw):
        with pytest.raises(ValueError):
            StoredSession.from_json(raw)
