from __future__ import annotations

import json
import logging
import re
from typing import Any, Awaitable, Callable

from storebot.core.errors import StoreUnavailable
from storebot.core.kv_store import KeyValueStore, get_store
from storebot.core.metrics import metrics
from storebot.core.settings import SETTINGS

logger = logging.getLogger(__name__)

CATEGORY_CHART = "chart"
CATEGORY_PRICE = "price"
CATEGORY_DETAIL = "detail"
CATEGORY_ICON = "icon"
CATEGORY_AVAILABILITY = "availability"
CATEGORY_OS = "os"

_LONG_TTL_CATEGORIES = {CATEGORY_OS}
_WHITESPACE_RE = re.compile(r"\s+")


def normalize_term(term: str) -> str:
    return _WHITESPACE_RE.sub("", str(term or "")).lower()


def schema_version(category: str) -> str:
    if category == CATEGORY_CHART:
        return SETTINGS.chart_cache_version
    return SETTINGS.cache_version


def cache_key(category: str, *parts: str) -> str:
    segments = [schema_version(category), category]
    segments.extend(str(part) for part in parts)
    return ":".join(segments)


def ttl_for(category: str) -> int:
    if category in _LONG_TTL_CATEGORIES:
        return SETTINGS.cache_ttl_long_sec
    return SETTINGS.cache_ttl_short_sec


def _category_of(key: str) -> str:
    parts = key.split(":", 2)
    return parts[1] if len(parts) > 1 else "unknown"


async def with_cache(
    key: str,
    ttl_seconds: int,
    compute: Callable[[], Awaitable[Any]],
    store: KeyValueStore | None = None,
) -> tuple[Any, bool]:
    """Return ``(value, hit)`` for ``key``, computing and storing it on a miss.

    Store outages degrade to calling ``compute`` every time. Errors raised by
    ``compute`` propagate and leave the key untouched.
    """
    kv = store if store is not None else get_store()
    category = _category_of(key)

    store_ok = True
    try:
        raw = kv.get(key)
    except StoreUnavailable as exc:
        store_ok = False
        raw = None
        logger.warning("cache_degraded op=get key=%s error=%s", key, exc)
        metrics.inc("sb_cache_errors_total", {"op": "get"})

    if raw is not None:
        try:
            value = json.loads(raw)
        except ValueError:
            logger.warning("cache_corrupt key=%s", key)
            metrics.inc("sb_cache_total", {"category": category, "result": "corrupt"})
        else:
            metrics.inc("sb_cache_total", {"category": category, "result": "hit"})
            return value, True

    metrics.inc("sb_cache_total", {"category": category, "result": "miss"})
    value = await compute()

    if store_ok:
        try:
            kv.set(key, json.dumps(value, ensure_ascii=False), ttl_seconds)
        except StoreUnavailable as exc:
            logger.warning("cache_degraded op=set key=%s error=%s", key, exc)
            metrics.inc("sb_cache_errors_total", {"op": "set"})
    return value, False
