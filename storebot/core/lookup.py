from __future__ import annotations

import asyncio
import logging
from dataclasses import asdict, dataclass
from typing import Any, Iterable

from storebot.core import fetcher
from storebot.core.charts import normalize_region
from storebot.core.errors import UpstreamError
from storebot.core.metrics import metrics
from storebot.core.settings import SETTINGS

logger = logging.getLogger(__name__)

SEARCH_URL = "https://itunes.apple.com/search"
LOOKUP_URL = "https://itunes.apple.com/lookup"
EXCHANGE_URL = "https://api.frankfurter.app/latest"
EXCHANGE_TARGET = "CNY"
ICON_PROBE_TIMEOUT_MS = 2000
AVAILABILITY_SEARCH_REGIONS = ("us", "cn")


@dataclass(frozen=True)
class AppRecord:
    track_id: str
    name: str
    store_url: str
    price: float | None
    currency: str
    formatted_price: str
    rating: float | None
    size_bytes: int | None
    version: str
    minimum_os: str
    released_at: str
    artwork_url_100: str
    artwork_url_512: str

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def _as_float(value: Any) -> float | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value)
        except ValueError:
            return None
    return None


def _as_int(value: Any) -> int | None:
    number = _as_float(value)
    return int(number) if number is not None else None


def parse_app_record(item: dict[str, Any]) -> AppRecord:
    return AppRecord(
        track_id=str(item.get("trackId") or ""),
        name=str(item.get("trackName") or ""),
        store_url=str(item.get("trackViewUrl") or ""),
        price=_as_float(item.get("price")),
        currency=str(item.get("currency") or ""),
        formatted_price=str(item.get("formattedPrice") or ""),
        rating=_as_float(item.get("averageUserRating")),
        size_bytes=_as_int(item.get("fileSizeBytes")),
        version=str(item.get("version") or ""),
        minimum_os=str(item.get("minimumOsVersion") or ""),
        released_at=str(item.get("currentVersionReleaseDate") or ""),
        artwork_url_100=str(item.get("artworkUrl100") or ""),
        artwork_url_512=str(item.get("artworkUrl512") or ""),
    )


def pick_best_match(term: str, results: list[dict[str, Any]]) -> dict[str, Any] | None:
    if not results:
        return None
    query = str(term or "").strip().lower()
    if not query:
        return results[0]
    names = [str(item.get("trackName") or "").lower() for item in results]
    for item, name in zip(results, names):
        if name == query:
            return item
    for item, name in zip(results, names):
        if query in name:
            return item
    return results[0]


async def search_app(term: str, region_code: str, limit: int = 1) -> AppRecord | None:
    region = normalize_region(region_code)
    params = {"term": term, "entity": "software", "country": region, "limit": max(1, limit)}
    data = await fetcher.fetch_json(SEARCH_URL, params=params, timeout_ms=SETTINGS.search_timeout_ms, max_retries=1)
    results = data.get("results") if isinstance(data, dict) else None
    candidates = [item for item in results or [] if isinstance(item, dict)]
    best = pick_best_match(term, candidates)
    metrics.inc("sb_search_total", {"result": "hit" if best else "empty"})
    return parse_app_record(best) if best else None


def format_price(record: AppRecord) -> str:
    if record.formatted_price:
        return record.formatted_price
    if record.price is not None:
        if record.price == 0:
            return "Free"
        return f"{record.currency} {record.price:.2f}".strip()
    return "Unknown"


async def fetch_exchange_rate(currency: str) -> float | None:
    """Rate from ``currency`` to CNY, or None when not needed or not available."""
    source = str(currency or "").strip().upper()
    if not source or source == EXCHANGE_TARGET:
        return None
    try:
        data = await fetcher.fetch_json(
            EXCHANGE_URL,
            params={"from": source, "to": EXCHANGE_TARGET},
            timeout_ms=SETTINGS.exchange_timeout_ms,
            max_retries=0,
        )
    except UpstreamError as exc:
        logger.info("exchange_rate_unavailable currency=%s error=%s", source, exc.code)
        return None
    rates = data.get("rates") if isinstance(data, dict) else None
    if not isinstance(rates, dict):
        return None
    return _as_float(rates.get(EXCHANGE_TARGET))


def high_res_artwork(url: str) -> str:
    return str(url or "").replace("100x100bb.jpg", "1024x1024bb.jpg")


async def resolve_icon(record: AppRecord) -> tuple[str, bool]:
    """Best icon URL for ``record`` and whether it is the 1024px rendition."""
    candidate = high_res_artwork(record.artwork_url_100)
    if candidate and candidate != record.artwork_url_100:
        if await fetcher.probe(candidate, timeout_ms=ICON_PROBE_TIMEOUT_MS):
            return candidate, True
    return record.artwork_url_512 or record.artwork_url_100, False


async def find_app_any_region(term: str, regions: Iterable[str] = AVAILABILITY_SEARCH_REGIONS) -> AppRecord | None:
    """First match across ``regions``. Re-raises the last upstream error when no region matched."""
    last_error: UpstreamError | None = None
    for region in regions:
        try:
            record = await search_app(term, region)
        except UpstreamError as exc:
            logger.warning("availability_search_failed region=%s error=%s", region, exc.code)
            last_error = exc
            continue
        if record is not None:
            return record
    if last_error is not None:
        raise last_error
    return None


async def _listed_in(track_id: str, region: str) -> bool:
    data = await fetcher.fetch_json(
        LOOKUP_URL,
        params={"id": track_id, "country": region},
        timeout_ms=SETTINGS.search_timeout_ms,
        max_retries=0,
    )
    return isinstance(data, dict) and (_as_int(data.get("resultCount")) or 0) > 0


async def check_availability(track_id: str, regions: Iterable[str] | None = None) -> list[str]:
    """Storefronts (in the given order) whose lookup endpoint lists ``track_id``.

    A failed storefront counts as unavailable. When every lookup fails the
    last upstream error is raised instead of reporting an empty list.
    """
    targets = list(regions if regions is not None else SETTINGS.availability_countries)
    outcomes = await asyncio.gather(*(_listed_in(track_id, region) for region in targets), return_exceptions=True)
    available = []
    answered = 0
    last_error: UpstreamError | None = None
    for region, outcome in zip(targets, outcomes):
        if isinstance(outcome, UpstreamError):
            metrics.inc("sb_availability_lookup_total", {"result": outcome.code})
            last_error = outcome
            continue
        if isinstance(outcome, BaseException):
            raise outcome
        answered += 1
        if outcome:
            available.append(region)
    if not answered and last_error is not None:
        logger.warning("availability_all_failed track_id=%s regions=%s", track_id, len(targets))
        raise last_error
    return available
