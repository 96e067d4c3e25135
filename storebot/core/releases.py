"""Firmware manifest parsing.

The manifest served by the OS-update catalog groups release nodes into asset-set
containers keyed by device source. The grouping carries no meaning for
classification, so every array under a known container is scanned in order and
each node is classified from its supported-device identifiers alone.

The schema is undocumented. Field names are resolved through alias lists and
nodes that match none of them are skipped, never treated as errors.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any, Iterable

from storebot.core import fetcher
from storebot.core.errors import ManifestMalformed
from storebot.core.settings import SETTINGS

logger = logging.getLogger(__name__)

MANIFEST_URL = "https://gdmf.apple.com/v2/pmv"

PLATFORM_IOS = "iOS"
PLATFORM_IPADOS = "iPadOS"
PLATFORM_MACOS = "macOS"
PLATFORM_WATCHOS = "watchOS"
PLATFORM_TVOS = "tvOS"
PLATFORM_VISIONOS = "visionOS"
PLATFORMS = (PLATFORM_IOS, PLATFORM_IPADOS, PLATFORM_MACOS, PLATFORM_WATCHOS, PLATFORM_TVOS, PLATFORM_VISIONOS)

STABILITY_STABLE = "stable"
STABILITY_BETA = "beta"
STABILITY_RC = "releaseCandidate"

ASSET_SET_CONTAINERS = ("PublicAssetSets", "AssetSets")
VERSION_FIELDS = ("ProductVersion", "OSVersion", "SystemVersion")
BUILD_FIELDS = ("Build", "BuildID", "BuildVersion")
DATE_FIELDS = ("PostingDate", "ReleaseDate", "Date", "PublishedDate", "PublicationDate")

# iPadOS only appears as its own device family from 13.0 on
IPADOS_FIRST_VERSION = 13.0

_PLATFORM_ALIASES = {
    "ios": PLATFORM_IOS,
    "iphoneos": PLATFORM_IOS,
    "iphone": PLATFORM_IOS,
    "ipados": PLATFORM_IPADOS,
    "ipad": PLATFORM_IPADOS,
    "macos": PLATFORM_MACOS,
    "mac": PLATFORM_MACOS,
    "osx": PLATFORM_MACOS,
    "watchos": PLATFORM_WATCHOS,
    "watch": PLATFORM_WATCHOS,
    "tvos": PLATFORM_TVOS,
    "apple tv": PLATFORM_TVOS,
    "tv": PLATFORM_TVOS,
    "visionos": PLATFORM_VISIONOS,
    "vision": PLATFORM_VISIONOS,
}

_MAC_MODEL_RE = re.compile(r"^[A-Z]\d{3}[A-Z]{2}AP$", flags=re.IGNORECASE)
_VERSION_TOKEN_RE = re.compile(r"\d+|\D+")
_LEADING_NUMBER_RE = re.compile(r"^\s*(\d+(?:\.\d+)?)")


@dataclass(frozen=True)
class Release:
    platform: str
    version: str
    build: str
    release_date: datetime | None
    stability: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "platform": self.platform,
            "version": self.version,
            "build": self.build,
            "release_date": self.release_date.isoformat() if self.release_date else None,
            "stability": self.stability,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "Release":
        return cls(
            platform=str(payload["platform"]),
            version=str(payload["version"]),
            build=str(payload["build"]),
            release_date=parse_release_date(payload.get("release_date")),
            stability=str(payload.get("stability") or STABILITY_STABLE),
        )


def normalize_platform(value: str | None) -> str | None:
    return _PLATFORM_ALIASES.get(str(value or "").strip().lower())


def _platform_for_device(identifier: Any) -> str | None:
    raw = str(identifier or "")
    device = raw.lower()
    if device.startswith(("iphone", "ipod")):
        return PLATFORM_IOS
    if device.startswith("ipad"):
        return PLATFORM_IPADOS
    if device.startswith("watch"):
        return PLATFORM_WATCHOS
    if device.startswith(("appletv", "audioaccessory")):
        return PLATFORM_TVOS
    if (
        device.startswith(("j", "mac-", "vmm", "x86"))
        or "macos" in device
        or _MAC_MODEL_RE.match(raw)
    ):
        return PLATFORM_MACOS
    if device.startswith("realitydevice"):
        return PLATFORM_VISIONOS
    return None


def classify_devices(identifiers: Any) -> frozenset[str]:
    if not isinstance(identifiers, list):
        return frozenset()
    platforms = {_platform_for_device(identifier) for identifier in identifiers}
    platforms.discard(None)
    return frozenset(platforms)


def stability_hint(node: Any) -> str:
    """Guess the release channel from the node's serialized text.

    The manifest has no channel field; beta and candidate builds only leave
    traces in free-form values.
    """
    text = json.dumps(node, ensure_ascii=False, default=str).lower()
    if "beta" in text:
        return STABILITY_BETA
    if "rc" in text or "seed" in text:
        return STABILITY_RC
    return STABILITY_STABLE


def parse_release_date(value: Any) -> datetime | None:
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str) and value.strip():
        raw = value.strip()
        if raw.endswith("Z"):
            raw = raw[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(raw)
        except ValueError:
            return None
    else:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


def version_key(version: str) -> tuple[tuple[int, int, str], ...]:
    """Numeric-aware sort key: "17.5.1" > "17.5" > "17.4.10" > "17.4.9"."""
    tokens = []
    for token in _VERSION_TOKEN_RE.findall(str(version or "")):
        if token.isdigit():
            tokens.append((0, int(token), ""))
        else:
            tokens.append((1, 0, token.lower()))
    return tuple(tokens)


def _leading_number(version: str) -> float | None:
    match = _LEADING_NUMBER_RE.match(str(version or ""))
    return float(match.group(1)) if match else None


def _first_field(node: dict[str, Any], names: Iterable[str]) -> Any:
    for name in names:
        value = node.get(name)
        if value:
            return value
    return None


def _iter_nodes(manifest: dict[str, Any]) -> Iterable[dict[str, Any]]:
    for container_name in ASSET_SET_CONTAINERS:
        container = manifest.get(container_name)
        if not isinstance(container, dict):
            continue
        for source_key, nodes in container.items():
            if not isinstance(nodes, list):
                logger.debug("manifest_skip container=%s key=%s reason=not_a_list", container_name, source_key)
                continue
            for node in nodes:
                if isinstance(node, dict):
                    yield node


def _matches_platform(platforms: frozenset[str], target: str, version: str) -> bool:
    if target in platforms:
        return True
    if target == PLATFORM_IPADOS and PLATFORM_IOS in platforms:
        number = _leading_number(version)
        return number is not None and number >= IPADOS_FIRST_VERSION
    return False


def collect_releases(manifest: Any, platform: str) -> list[Release]:
    """Releases for one platform in manifest scan order, first build wins."""
    target = normalize_platform(platform)
    if target is None or not isinstance(manifest, dict):
        return []

    releases: list[Release] = []
    seen_builds: set[str] = set()
    for node in _iter_nodes(manifest):
        version = _first_field(node, VERSION_FIELDS)
        build = _first_field(node, BUILD_FIELDS)
        if not version or not build:
            logger.debug("manifest_skip_node keys=%s", sorted(node.keys())[:8])
            continue
        version, build = str(version), str(build)
        if build in seen_builds:
            continue
        if not _matches_platform(classify_devices(node.get("SupportedDevices")), target, version):
            continue
        seen_builds.add(build)
        releases.append(
            Release(
                platform=target,
                version=version,
                build=build,
                release_date=parse_release_date(_first_field(node, DATE_FIELDS)),
                stability=stability_hint(node),
            )
        )
    return releases


def _release_sort_key(release: Release):
    has_date = release.release_date is not None
    timestamp = release.release_date.timestamp() if has_date else 0.0
    return (has_date, timestamp, version_key(release.version), version_key(release.build))


def sort_releases(releases: Iterable[Release]) -> list[Release]:
    """Newest first: release date, then version, then build. Undated releases go last."""
    return sorted(releases, key=_release_sort_key, reverse=True)


def release_history(manifest: Any, platform: str, size: int = 5) -> list[Release]:
    return sort_releases(collect_releases(manifest, platform))[: max(0, size)]


def latest_by_platform(manifest: Any) -> dict[str, Release]:
    latest = {}
    for platform in PLATFORMS:
        ordered = sort_releases(collect_releases(manifest, platform))
        if ordered:
            latest[platform] = ordered[0]
    return latest


async def fetch_manifest() -> dict[str, Any]:
    # catalog host certificate chain is not in public trust stores
    data = await fetcher.fetch_json(
        MANIFEST_URL,
        timeout_ms=SETTINGS.manifest_timeout_ms,
        max_retries=1,
        headers={"accept": "application/json, text/plain, */*"},
        verify=False,
    )
    if not isinstance(data, dict):
        raise ManifestMalformed("manifest body is not a JSON object")
    if not any(isinstance(data.get(name), dict) for name in ASSET_SET_CONTAINERS):
        logger.warning("manifest_no_containers keys=%s", sorted(data.keys())[:8])
    return data
