from __future__ import annotations

import logging
import time
from threading import Lock
from typing import Protocol

import redis

from storebot.core.errors import StoreUnavailable
from storebot.core.settings import SETTINGS

logger = logging.getLogger(__name__)


class KeyValueStore(Protocol):
    def get(self, key: str) -> str | None: ...

    def set(self, key: str, value: str, ttl: int | None = None) -> None: ...

    def incr(self, key: str) -> int: ...

    def expire(self, key: str, seconds: int) -> bool: ...

    def delete(self, key: str) -> None: ...

    def size(self) -> int: ...


class MemoryStore:
    """Process-local store with lazy expiry. Used when no Redis URL is configured."""

    def __init__(self) -> None:
        self._store: dict[str, tuple[float | None, str]] = {}
        self._lock = Lock()

    def _live(self, key: str, now: float) -> tuple[float | None, str] | None:
        entry = self._store.get(key)
        if entry is None:
            return None
        expires_at, _ = entry
        if expires_at is not None and expires_at <= now:
            self._store.pop(key, None)
            return None
        return entry

    def get(self, key: str) -> str | None:
        with self._lock:
            entry = self._live(key, time.time())
            return entry[1] if entry else None

    def set(self, key: str, value: str, ttl: int | None = None) -> None:
        expires_at = None
        if ttl is not None:
            expires_at = time.time() + ttl
        with self._lock:
            self._store[key] = (expires_at, str(value))

    def incr(self, key: str) -> int:
        with self._lock:
            entry = self._live(key, time.time())
            if entry is None:
                expires_at, value = None, 1
            else:
                expires_at, current = entry
                try:
                    value = int(current) + 1
                except ValueError as exc:
                    raise StoreUnavailable(f"value at {key} is not an integer") from exc
            self._store[key] = (expires_at, str(value))
            return value

    def expire(self, key: str, seconds: int) -> bool:
        with self._lock:
            entry = self._live(key, time.time())
            if entry is None:
                return False
            self._store[key] = (time.time() + seconds, entry[1])
            return True

    def delete(self, key: str) -> None:
        with self._lock:
            self._store.pop(key, None)

    def size(self) -> int:
        now = time.time()
        with self._lock:
            return sum(1 for key in list(self._store) if self._live(key, now) is not None)

    def clear(self) -> None:
        with self._lock:
            self._store.clear()


class RedisStore:
    def __init__(self, redis_url: str, timeout_ms: int = 500) -> None:
        timeout_sec = max(0.05, timeout_ms / 1000.0)
        self._redis = redis.Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=timeout_sec,
            socket_connect_timeout=timeout_sec,
        )

    def _call(self, op: str, *args, **kwargs):
        try:
            return getattr(self._redis, op)(*args, **kwargs)
        except (redis.RedisError, OSError) as exc:
            raise StoreUnavailable(f"redis {op} failed: {exc}") from exc

    def get(self, key: str) -> str | None:
        return self._call("get", key)

    def set(self, key: str, value: str, ttl: int | None = None) -> None:
        if ttl is not None:
            self._call("setex", key, ttl, value)
        else:
            self._call("set", key, value)

    def incr(self, key: str) -> int:
        return int(self._call("incr", key))

    def expire(self, key: str, seconds: int) -> bool:
        return bool(self._call("expire", key, seconds))

    def delete(self, key: str) -> None:
        self._call("delete", key)

    def size(self) -> int:
        return int(self._call("dbsize"))


_store: KeyValueStore | None = None


def build_store(redis_url: str | None, timeout_ms: int = 500) -> KeyValueStore:
    if redis_url:
        try:
            store = RedisStore(redis_url, timeout_ms)
        except (ValueError, redis.RedisError) as exc:
            logger.warning("kv store redis_url rejected, falling back to memory error=%s", exc)
            return MemoryStore()
        logger.info("kv store backend=redis")
        return store
    logger.info("kv store backend=memory")
    return MemoryStore()


def get_store() -> KeyValueStore:
    global _store
    if _store is not None:
        return _store
    _store = build_store(SETTINGS.redis_url, SETTINGS.redis_timeout_ms)
    return _store


def set_store(store: KeyValueStore | None) -> None:
    global _store
    _store = store
