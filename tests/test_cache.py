import asyncio

import pytest

from storebot.core import cache
from storebot.core import kv_store
from storebot.core.errors import StoreUnavailable, UpstreamTimeout
from storebot.core.kv_store import MemoryStore


class FailingStore:
    def get(self, key):
        raise StoreUnavailable("down")

    def set(self, key, value, ttl=None):
        raise StoreUnavailable("down")

    def incr(self, key):
        raise StoreUnavailable("down")

    def expire(self, key, seconds):
        raise StoreUnavailable("down")

    def delete(self, key):
        raise StoreUnavailable("down")

    def size(self):
        raise StoreUnavailable("down")


class FakeClock:
    def __init__(self, now=1_700_000_000.0):
        self.now = now

    def time(self):
        return self.now


def _counting_compute(calls, value):
    async def compute():
        calls.append(1)
        return value

    return compute


def test_with_cache_computes_once_within_ttl():
    store = MemoryStore()
    calls = []
    compute = _counting_compute(calls, {"entries": [1, 2, 3]})

    first = asyncio.run(cache.with_cache("v7:chart:us:free", 600, compute, store=store))
    second = asyncio.run(cache.with_cache("v7:chart:us:free", 600, compute, store=store))

    assert first == ({"entries": [1, 2, 3]}, False)
    assert second == ({"entries": [1, 2, 3]}, True)
    assert len(calls) == 1


def test_with_cache_recomputes_after_expiry(monkeypatch):
    clock = FakeClock()
    monkeypatch.setattr(kv_store, "time", clock)
    store = MemoryStore()
    calls = []
    compute = _counting_compute(calls, "value")

    asyncio.run(cache.with_cache("v4:os:simple_all", 30, compute, store=store))
    clock.now += 29
    asyncio.run(cache.with_cache("v4:os:simple_all", 30, compute, store=store))
    clock.now += 2
    _, hit = asyncio.run(cache.with_cache("v4:os:simple_all", 30, compute, store=store))

    assert hit is False
    assert len(calls) == 2


def test_with_cache_degrades_when_store_unavailable():
    calls = []
    compute = _counting_compute(calls, "fresh")

    for _ in range(3):
        value, hit = asyncio.run(cache.with_cache("v4:price:us:tiktok", 600, compute, store=FailingStore()))
        assert value == "fresh"
        assert hit is False

    assert len(calls) == 3


def test_with_cache_does_not_store_failed_computation():
    store = MemoryStore()

    async def failing():
        raise UpstreamTimeout("slow")

    with pytest.raises(UpstreamTimeout):
        asyncio.run(cache.with_cache("v4:detail:us:maps", 600, failing, store=store))

    assert store.get("v4:detail:us:maps") is None


def test_with_cache_treats_corrupt_payload_as_miss():
    store = MemoryStore()
    store.set("v4:icon:us:maps", "{not json", 600)
    calls = []

    value, hit = asyncio.run(cache.with_cache("v4:icon:us:maps", 600, _counting_compute(calls, [1]), store=store))

    assert (value, hit) == ([1], False)
    assert store.get("v4:icon:us:maps") == "[1]"


def test_with_cache_uses_process_store_by_default():
    store = MemoryStore()
    kv_store.set_store(store)
    try:
        asyncio.run(cache.with_cache("v4:os:detail:iOS", 60, _counting_compute([], {"a": "é"})))
    finally:
        kv_store.set_store(None)

    assert store.get("v4:os:detail:iOS") == '{"a": "é"}'


def test_cache_key_normalizes_terms_and_versions():
    assert cache.normalize_term("  Tik Tok\t") == "tiktok"
    assert cache.cache_key(cache.CATEGORY_PRICE, "us", cache.normalize_term("Tik Tok")) == cache.cache_key(
        cache.CATEGORY_PRICE, "us", cache.normalize_term("tiktok")
    )
    assert cache.cache_key(cache.CATEGORY_PRICE, "us", "tiktok") == "v4:price:us:tiktok"
    assert cache.cache_key(cache.CATEGORY_CHART, "us", "free") == "v7:chart:us:free"
    assert cache.cache_key(cache.CATEGORY_PRICE, "jp", "tiktok") != cache.cache_key(cache.CATEGORY_DETAIL, "jp", "tiktok")


def test_ttl_policy_keeps_os_data_longer():
    assert cache.ttl_for(cache.CATEGORY_OS) == 1800
    for category in (cache.CATEGORY_CHART, cache.CATEGORY_PRICE, cache.CATEGORY_DETAIL, cache.CATEGORY_ICON):
        assert cache.ttl_for(category) == 600
