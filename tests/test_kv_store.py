import asyncio

import pytest
import redis

from storebot.core import actions, kv_store
from storebot.core.charts import ChartEntry
from storebot.core.errors import StoreUnavailable
from storebot.core.kv_store import MemoryStore, RedisStore
from storebot.core.quota import QuotaGate, set_quota_gate


class FakeClock:
    def __init__(self, now=1_700_000_000.0):
        self.now = now

    def time(self):
        return self.now


def test_memory_store_incr_and_expire(monkeypatch):
    clock = FakeClock()
    monkeypatch.setattr(kv_store, "time", clock)
    store = MemoryStore()

    assert store.incr("limit:chart:2024-05-01:u1") == 1
    assert store.incr("limit:chart:2024-05-01:u1") == 2
    assert store.expire("limit:chart:2024-05-01:u1", 10) is True
    assert store.expire("missing", 10) is False
    assert store.size() == 1

    clock.now += 11
    assert store.get("limit:chart:2024-05-01:u1") is None
    assert store.incr("limit:chart:2024-05-01:u1") == 1


def test_memory_store_set_get_delete():
    store = MemoryStore()
    store.set("vip:u1", "1")
    assert store.get("vip:u1") == "1"
    store.delete("vip:u1")
    assert store.get("vip:u1") is None
    store.delete("vip:u1")


def test_memory_store_incr_rejects_non_integer():
    store = MemoryStore()
    store.set("k", "abc")

    with pytest.raises(StoreUnavailable):
        store.incr("k")


def test_redis_store_wraps_connection_errors():
    store = RedisStore("redis://127.0.0.1:6399/0", timeout_ms=50)

    class BrokenRedis:
        def get(self, key):
            raise redis.ConnectionError("refused")

        def incr(self, key):
            raise redis.TimeoutError("slow")

    store._redis = BrokenRedis()

    with pytest.raises(StoreUnavailable):
        store.get("k")
    with pytest.raises(StoreUnavailable):
        store.incr("k")


def test_redis_store_maps_operations():
    store = RedisStore("redis://127.0.0.1:6399/0")
    calls = []

    class RecordingRedis:
        def setex(self, key, ttl, value):
            calls.append(("setex", key, ttl, value))

        def set(self, key, value):
            calls.append(("set", key, value))

        def incr(self, key):
            return "3"

        def expire(self, key, seconds):
            return 1

        def dbsize(self):
            return 7

    store._redis = RecordingRedis()
    store.set("a", "1", 60)
    store.set("b", "2")

    assert calls == [("setex", "a", 60, "1"), ("set", "b", "2")]
    assert store.incr("c") == 3
    assert store.expire("c", 86400) is True
    assert store.size() == 7


def test_get_store_is_lazy_and_injectable(monkeypatch):
    kv_store.set_store(None)
    monkeypatch.setattr(kv_store.SETTINGS, "redis_url", "")
    try:
        first = kv_store.get_store()
        assert isinstance(first, MemoryStore)
        assert kv_store.get_store() is first

        replacement = MemoryStore()
        kv_store.set_store(replacement)
        assert kv_store.get_store() is replacement
    finally:
        kv_store.set_store(None)


def test_build_store_falls_back_to_memory_on_malformed_url():
    store = kv_store.build_store("localhost:6379")

    assert isinstance(store, MemoryStore)


def test_malformed_redis_url_keeps_actions_working(monkeypatch):
    async def fake_get_chart(region, kind):
        return [ChartEntry(id="1", name="Top App", store_url="https://apps.example/1")]

    monkeypatch.setattr(kv_store.SETTINGS, "redis_url", "localhost:6379")
    monkeypatch.setattr(actions, "get_chart", fake_get_chart)
    kv_store.set_store(None)
    set_quota_gate(QuotaGate(admin_user_ids=[]))
    try:
        result = asyncio.run(actions.chart("u1", "us", "free"))
    finally:
        kv_store.set_store(None)
        set_quota_gate(None)

    assert result.ok
