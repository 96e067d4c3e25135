from __future__ import annotations

import logging
import re
from dataclasses import asdict, dataclass
from typing import Any

from storebot.core import fetcher
from storebot.core.errors import UpstreamEmptyResult, UpstreamError
from storebot.core.metrics import metrics
from storebot.core.settings import SETTINGS

logger = logging.getLogger(__name__)

CHART_KINDS = ("free", "paid")
DEFAULT_CHART_SIZE = 10
_REGION_RE = re.compile(r"^[a-z]{2}$")

LEGACY_CHART_URL = "https://itunes.apple.com/{region}/rss/top{kind}applications/limit={size}/json"
MODERN_CHART_URL = "https://rss.marketingtools.apple.com/api/v2/{region}/apps/top-{kind}/{size}/apps.json"


@dataclass(frozen=True)
class ChartEntry:
    id: str
    name: str
    store_url: str

    def to_dict(self) -> dict[str, str]:
        return asdict(self)


def normalize_region(region_code: str) -> str:
    code = str(region_code or "").strip().lower()
    if not _REGION_RE.match(code):
        raise ValueError(f"invalid region code: {region_code!r}")
    return code


def _label(node: Any, default: str = "") -> str:
    if isinstance(node, dict):
        return str(node.get("label") or default)
    return default


def _legacy_link(link: Any) -> str:
    if isinstance(link, list):
        link = link[0] if link else None
    if isinstance(link, dict):
        attributes = link.get("attributes")
        if isinstance(attributes, dict):
            return str(attributes.get("href") or "")
    return ""


def parse_legacy_feed(data: Any) -> list[ChartEntry]:
    feed = data.get("feed") if isinstance(data, dict) else None
    entries = feed.get("entry") if isinstance(feed, dict) else None
    if isinstance(entries, dict):
        # single-entry feeds collapse the list
        entries = [entries]
    if not isinstance(entries, list):
        return []
    parsed = []
    for entry in entries:
        if not isinstance(entry, dict):
            continue
        id_node = entry.get("id")
        attributes = id_node.get("attributes") if isinstance(id_node, dict) else None
        app_id = str(attributes.get("im:id") or "") if isinstance(attributes, dict) else ""
        parsed.append(
            ChartEntry(
                id=app_id,
                name=_label(entry.get("im:name"), "Unknown app"),
                store_url=_legacy_link(entry.get("link")),
            )
        )
    return parsed


def parse_modern_feed(data: Any) -> list[ChartEntry]:
    feed = data.get("feed") if isinstance(data, dict) else None
    results = feed.get("results") if isinstance(feed, dict) else None
    if not isinstance(results, list):
        return []
    return [
        ChartEntry(
            id=str(item.get("id") or ""),
            name=str(item.get("name") or "Unknown app"),
            store_url=str(item.get("url") or ""),
        )
        for item in results
        if isinstance(item, dict)
    ]


async def get_chart(region_code: str, kind: str, size: int = DEFAULT_CHART_SIZE) -> list[ChartEntry]:
    """Top ``size`` apps for a storefront, legacy feed first, modern feed as fallback.

    Rank order is returned exactly as the serving feed lists it. Raises
    ``UpstreamEmptyResult`` when neither feed yields entries.
    """
    region = normalize_region(region_code)
    if kind not in CHART_KINDS:
        raise ValueError(f"invalid chart kind: {kind!r}")

    legacy_url = LEGACY_CHART_URL.format(region=region, kind=kind, size=size)
    try:
        data = await fetcher.fetch_json(legacy_url, timeout_ms=SETTINGS.chart_primary_timeout_ms, max_retries=0)
        entries = parse_legacy_feed(data)
        if entries:
            metrics.inc("sb_chart_source_total", {"source": "legacy", "result": "ok"})
            return entries
        reason = "empty"
    except UpstreamError as exc:
        reason = exc.code

    metrics.inc("sb_chart_source_total", {"source": "legacy", "result": reason})
    logger.warning("chart_failover region=%s kind=%s reason=%s", region, kind, reason)

    modern_url = MODERN_CHART_URL.format(region=region, kind=kind, size=size)
    try:
        data = await fetcher.fetch_json(modern_url, timeout_ms=SETTINGS.chart_fallback_timeout_ms, max_retries=0)
    except UpstreamError as exc:
        metrics.inc("sb_chart_source_total", {"source": "modern", "result": exc.code})
        logger.warning("chart_unavailable region=%s kind=%s reason=%s", region, kind, exc.code)
        raise UpstreamEmptyResult(f"no chart data for {region}/{kind}: {exc.message}") from exc

    entries = parse_modern_feed(data)
    if not entries:
        metrics.inc("sb_chart_source_total", {"source": "modern", "result": "empty"})
        raise UpstreamEmptyResult(f"no chart data for {region}/{kind}")
    metrics.inc("sb_chart_source_total", {"source": "modern", "result": "ok"})
    return entries
