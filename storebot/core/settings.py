import os
from dataclasses import dataclass


def _split_list(raw: str) -> list[str]:
    return [item.strip() for item in raw.split(",") if item.strip()]


DEFAULT_AVAILABILITY_COUNTRIES = "us,cn,jp,kr,hk,tw,sg,gb,de,fr,ca,au,tr,in,br"
DEFAULT_USER_AGENT = "Mozilla/5.0 (storebot)"

ACTION_LIMIT_DEFAULTS = {
    "chart": 20,
    "price": 20,
    "detail": 20,
    "icon": 10,
    "os": 20,
    "availability": 5,
}


@dataclass
class Settings:
    redis_url: str
    redis_timeout_ms: int
    admin_user_ids: list[str]
    daily_request_limit: int
    action_limits: dict[str, int]
    cache_ttl_short_sec: int
    cache_ttl_long_sec: int
    chart_cache_version: str
    cache_version: str
    chart_primary_timeout_ms: int
    chart_fallback_timeout_ms: int
    search_timeout_ms: int
    manifest_timeout_ms: int
    exchange_timeout_ms: int
    availability_countries: list[str]
    user_agent: str
    log_level: str
    cors_allow_origins: list[str]
    vip_key_prefix: str = "vip"
    quota_key_prefix: str = "limit"
    quota_expiry_sec: int = 86400
    global_action: str = "all"

    def action_limit(self, action: str) -> int:
        return self.action_limits.get(action, self.daily_request_limit)


def _action_limits() -> dict[str, int]:
    limits = {}
    for action, default in ACTION_LIMIT_DEFAULTS.items():
        limits[action] = max(0, int(os.getenv(f"SB_LIMIT_{action.upper()}", str(default))))
    return limits


def load_settings() -> Settings:
    return Settings(
        redis_url=os.getenv("SB_REDIS_URL", "").strip(),
        redis_timeout_ms=max(50, int(os.getenv("SB_REDIS_TIMEOUT_MS", "500"))),
        admin_user_ids=_split_list(os.getenv("SB_ADMIN_USER_IDS", "")),
        daily_request_limit=max(0, int(os.getenv("SB_DAILY_REQUEST_LIMIT", "50"))),
        action_limits=_action_limits(),
        cache_ttl_short_sec=max(1, int(os.getenv("SB_CACHE_TTL_SHORT_SEC", "600"))),
        cache_ttl_long_sec=max(1, int(os.getenv("SB_CACHE_TTL_LONG_SEC", "1800"))),
        chart_cache_version=os.getenv("SB_CHART_CACHE_VERSION", "v7").strip() or "v7",
        cache_version=os.getenv("SB_CACHE_VERSION", "v4").strip() or "v4",
        chart_primary_timeout_ms=max(100, int(os.getenv("SB_CHART_PRIMARY_TIMEOUT_MS", "2500"))),
        chart_fallback_timeout_ms=max(100, int(os.getenv("SB_CHART_FALLBACK_TIMEOUT_MS", "3000"))),
        search_timeout_ms=max(100, int(os.getenv("SB_SEARCH_TIMEOUT_MS", "4000"))),
        manifest_timeout_ms=max(100, int(os.getenv("SB_MANIFEST_TIMEOUT_MS", "4000"))),
        exchange_timeout_ms=max(100, int(os.getenv("SB_EXCHANGE_TIMEOUT_MS", "3000"))),
        availability_countries=[
            code.lower() for code in _split_list(os.getenv("SB_AVAILABILITY_COUNTRIES", DEFAULT_AVAILABILITY_COUNTRIES))
        ],
        user_agent=os.getenv("SB_USER_AGENT", DEFAULT_USER_AGENT).strip() or DEFAULT_USER_AGENT,
        log_level=os.getenv("SB_LOG_LEVEL", "INFO").strip().upper() or "INFO",
        cors_allow_origins=_split_list(os.getenv("SB_CORS_ALLOW_ORIGINS", "")),
    )


SETTINGS = load_settings()
