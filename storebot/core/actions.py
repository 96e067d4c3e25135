from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any, Awaitable, Callable

from storebot.core.cache import (
    CATEGORY_AVAILABILITY,
    CATEGORY_CHART,
    CATEGORY_DETAIL,
    CATEGORY_ICON,
    CATEGORY_OS,
    CATEGORY_PRICE,
    cache_key,
    normalize_term,
    ttl_for,
    with_cache,
)
from storebot.core.charts import CHART_KINDS, get_chart, normalize_region
from storebot.core.errors import (
    ManifestMalformed,
    QuotaExceeded,
    StoreUnavailable,
    UpstreamEmptyResult,
    UpstreamError,
)
from storebot.core.kv_store import get_store
from storebot.core.lookup import (
    check_availability,
    fetch_exchange_rate,
    find_app_any_region,
    format_price,
    resolve_icon,
    search_app,
)
from storebot.core.metrics import metrics
from storebot.core.quota import get_quota_gate
from storebot.core.releases import (
    PLATFORM_IOS,
    PLATFORMS,
    fetch_manifest,
    latest_by_platform,
    normalize_platform,
    release_history,
)
from storebot.core.settings import SETTINGS

logger = logging.getLogger(__name__)

STATUS_OK = "ok"
STATUS_NO_DATA = "no_data"
STATUS_UNAVAILABLE = "unavailable"
STATUS_QUOTA_EXCEEDED = "quota_exceeded"

ACTION_CHART = "chart"
ACTION_PRICE = "price"
ACTION_DETAIL = "detail"
ACTION_ICON = "icon"
ACTION_OS = "os"
ACTION_AVAILABILITY = "availability"

DEFAULT_DETAIL_REGION = "us"
OS_HISTORY_SIZE = 5


@dataclass
class ActionResult:
    action: str
    status: str
    data: Any = None
    limit: int | None = None
    cached: bool = False
    message: str = ""

    @property
    def ok(self) -> bool:
        return self.status == STATUS_OK

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"action": self.action, "status": self.status, "cached": self.cached}
        if self.data is not None:
            payload["data"] = self.data
        if self.limit is not None:
            payload["limit"] = self.limit
        if self.message:
            payload["message"] = self.message
        return payload


def _require_term(term: str) -> str:
    cleaned = str(term or "").strip()
    if not cleaned:
        raise ValueError("term must not be empty")
    return cleaned


async def _run(
    action: str,
    user_id: str | None,
    key: str,
    ttl: int,
    compute: Callable[[], Awaitable[Any]],
) -> ActionResult:
    try:
        get_quota_gate().check_request(user_id, action).raise_for_denial()
    except QuotaExceeded as exc:
        metrics.inc("sb_action_total", {"action": action, "status": STATUS_QUOTA_EXCEEDED})
        return ActionResult(action, STATUS_QUOTA_EXCEEDED, limit=exc.limit, message=exc.message)

    try:
        value, hit = await with_cache(key, ttl, compute)
    except (UpstreamEmptyResult, ManifestMalformed) as exc:
        metrics.inc("sb_action_total", {"action": action, "status": STATUS_NO_DATA})
        logger.info("action_no_data action=%s key=%s reason=%s", action, key, exc.code)
        return ActionResult(action, STATUS_NO_DATA, message=exc.message)
    except UpstreamError as exc:
        metrics.inc("sb_action_total", {"action": action, "status": STATUS_UNAVAILABLE})
        logger.warning("action_unavailable action=%s key=%s reason=%s", action, key, exc.code)
        return ActionResult(action, STATUS_UNAVAILABLE, message="upstream temporarily unavailable")

    metrics.inc("sb_action_total", {"action": action, "status": STATUS_OK})
    return ActionResult(action, STATUS_OK, data=value, cached=hit)


async def chart(user_id: str | None, region_code: str, kind: str = "free") -> ActionResult:
    region = normalize_region(region_code)
    if kind not in CHART_KINDS:
        raise ValueError(f"invalid chart kind: {kind!r}")

    async def compute() -> dict[str, Any]:
        entries = await get_chart(region, kind)
        return {"region": region, "kind": kind, "entries": [entry.to_dict() for entry in entries]}

    return await _run(ACTION_CHART, user_id, cache_key(CATEGORY_CHART, region, kind), ttl_for(CATEGORY_CHART), compute)


async def _search_or_empty(term: str, region: str):
    record = await search_app(term, region)
    if record is None:
        raise UpstreamEmptyResult(f"no app matches {term!r} in {region}")
    return record


async def price(user_id: str | None, term: str, region_code: str = DEFAULT_DETAIL_REGION) -> ActionResult:
    term = _require_term(term)
    region = normalize_region(region_code)

    async def compute() -> dict[str, Any]:
        record = await _search_or_empty(term, region)
        converted = None
        if record.price and record.price > 0 and record.currency:
            rate = await fetch_exchange_rate(record.currency)
            if rate:
                converted = {"currency": "CNY", "amount": round(record.price * rate, 2)}
        return {"region": region, "app": record.to_dict(), "price_text": format_price(record), "converted": converted}

    key = cache_key(CATEGORY_PRICE, region, normalize_term(term))
    return await _run(ACTION_PRICE, user_id, key, ttl_for(CATEGORY_PRICE), compute)


async def detail(user_id: str | None, term: str, region_code: str = DEFAULT_DETAIL_REGION) -> ActionResult:
    term = _require_term(term)
    region = normalize_region(region_code)

    async def compute() -> dict[str, Any]:
        record = await _search_or_empty(term, region)
        return {"region": region, "app": record.to_dict(), "price_text": format_price(record)}

    key = cache_key(CATEGORY_DETAIL, region, normalize_term(term))
    return await _run(ACTION_DETAIL, user_id, key, ttl_for(CATEGORY_DETAIL), compute)


async def icon(user_id: str | None, term: str, region_code: str = DEFAULT_DETAIL_REGION) -> ActionResult:
    term = _require_term(term)
    region = normalize_region(region_code)

    async def compute() -> dict[str, Any]:
        record = await _search_or_empty(term, region)
        icon_url, high_res = await resolve_icon(record)
        if not icon_url:
            raise UpstreamEmptyResult(f"no artwork for {record.name!r}")
        return {"region": region, "app": record.to_dict(), "icon_url": icon_url, "high_res": high_res}

    key = cache_key(CATEGORY_ICON, region, normalize_term(term))
    return await _run(ACTION_ICON, user_id, key, ttl_for(CATEGORY_ICON), compute)


async def availability(user_id: str | None, term: str) -> ActionResult:
    term = _require_term(term)

    async def compute() -> dict[str, Any]:
        record = await find_app_any_region(term)
        if record is None:
            raise UpstreamEmptyResult(f"no app matches {term!r}")
        regions = await check_availability(record.track_id)
        return {"app": record.to_dict(), "regions": regions}

    key = cache_key(CATEGORY_AVAILABILITY, normalize_term(term))
    return await _run(ACTION_AVAILABILITY, user_id, key, ttl_for(CATEGORY_AVAILABILITY), compute)


async def os_summary(user_id: str | None) -> ActionResult:
    async def compute() -> dict[str, Any]:
        latest = latest_by_platform(await fetch_manifest())
        if not latest:
            raise UpstreamEmptyResult("manifest lists no releases")
        return {"platforms": {platform: release.to_dict() for platform, release in latest.items()}}

    return await _run(ACTION_OS, user_id, cache_key(CATEGORY_OS, "simple_all"), ttl_for(CATEGORY_OS), compute)


async def os_detail(user_id: str | None, platform: str | None = None) -> ActionResult:
    target = normalize_platform(platform or PLATFORM_IOS)
    if target is None:
        raise ValueError(f"unknown platform: {platform!r}; expected one of {', '.join(PLATFORMS)}")

    async def compute() -> dict[str, Any]:
        history = release_history(await fetch_manifest(), target, OS_HISTORY_SIZE)
        if not history:
            raise UpstreamEmptyResult(f"no {target} releases in manifest")
        return {
            "platform": target,
            "latest": history[0].to_dict(),
            "history": [release.to_dict() for release in history],
        }

    return await _run(ACTION_OS, user_id, cache_key(CATEGORY_OS, "detail", target), ttl_for(CATEGORY_OS), compute)


def admin_status(user_id: str | None) -> dict[str, Any] | None:
    if not get_quota_gate().is_admin(user_id):
        return None
    try:
        key_count: int | None = get_store().size()
        store_state = "ok"
    except StoreUnavailable as exc:
        logger.warning("admin_status_store_unavailable error=%s", exc)
        key_count = None
        store_state = "unavailable"
    return {
        "store": store_state,
        "keys": key_count,
        "daily_limit": SETTINGS.daily_request_limit,
        "action_limits": dict(SETTINGS.action_limits),
        "time": datetime.now(UTC).isoformat(),
    }


def manage_vip(admin_id: str | None, user_id: str, enabled: bool) -> bool:
    """Set or clear a VIP flag. Returns False when ``admin_id`` is not an administrator."""
    gate = get_quota_gate()
    if not gate.is_admin(admin_id):
        return False
    gate.set_vip(user_id, enabled)
    return True
