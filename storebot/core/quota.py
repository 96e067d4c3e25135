from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Callable

from storebot.core.errors import QuotaExceeded, StoreUnavailable
from storebot.core.kv_store import KeyValueStore, get_store
from storebot.core.metrics import metrics
from storebot.core.settings import SETTINGS

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class QuotaDecision:
    allowed: bool
    limit: int | None = None
    action: str | None = None

    def raise_for_denial(self) -> None:
        if not self.allowed:
            raise QuotaExceeded(self.limit or 0, action=self.action)


ALLOWED = QuotaDecision(allowed=True)


def _utc_today() -> str:
    return datetime.now(UTC).date().isoformat()


class QuotaGate:
    def __init__(
        self,
        store: KeyValueStore | None = None,
        *,
        admin_user_ids: list[str] | None = None,
        global_limit: int | None = None,
        today: Callable[[], str] = _utc_today,
    ) -> None:
        self._store = store
        self._admins = set(admin_user_ids if admin_user_ids is not None else SETTINGS.admin_user_ids)
        self._global_limit = global_limit
        self._today = today

    @property
    def store(self) -> KeyValueStore:
        if self._store is None:
            self._store = get_store()
        return self._store

    @property
    def global_limit(self) -> int:
        if self._global_limit is not None:
            return self._global_limit
        return SETTINGS.daily_request_limit

    def quota_key(self, action: str, user_id: str) -> str:
        return f"{SETTINGS.quota_key_prefix}:{action}:{self._today()}:{user_id}"

    def vip_key(self, user_id: str) -> str:
        return f"{SETTINGS.vip_key_prefix}:{user_id}"

    def is_admin(self, user_id: str | None) -> bool:
        return bool(user_id) and user_id in self._admins

    def is_vip(self, user_id: str | None) -> bool:
        if not user_id:
            return False
        try:
            return self.store.get(self.vip_key(user_id)) == "1"
        except StoreUnavailable as exc:
            logger.warning("quota_vip_lookup_failed user_id=%s error=%s", user_id, exc)
            return False

    def set_vip(self, user_id: str, enabled: bool) -> None:
        """Grant or revoke VIP. Store errors propagate: this is an admin write."""
        if not user_id:
            raise ValueError("user_id is required")
        key = self.vip_key(user_id)
        if enabled:
            self.store.set(key, "1")
        else:
            self.store.delete(key)
        logger.info("quota_vip_update user_id=%s enabled=%s", user_id, enabled)

    def check_and_consume(self, user_id: str | None, action: str, daily_limit: int) -> QuotaDecision:
        if not user_id or self.is_admin(user_id) or self.is_vip(user_id):
            metrics.inc("sb_quota_total", {"action": action, "result": "bypass"})
            return ALLOWED

        key = self.quota_key(action, user_id)
        try:
            raw = self.store.get(key)
            count = int(raw) if raw else 0
            if count >= daily_limit:
                metrics.inc("sb_quota_total", {"action": action, "result": "denied"})
                logger.info("quota_denied user_id=%s action=%s limit=%s", user_id, action, daily_limit)
                return QuotaDecision(allowed=False, limit=daily_limit, action=action)
            self.store.incr(key)
            self.store.expire(key, SETTINGS.quota_expiry_sec)
        except (StoreUnavailable, ValueError) as exc:
            logger.warning("quota_fail_open user_id=%s action=%s error=%s", user_id, action, exc)
            metrics.inc("sb_quota_total", {"action": action, "result": "fail_open"})
            return ALLOWED

        metrics.inc("sb_quota_total", {"action": action, "result": "allowed"})
        return ALLOWED

    def check_request(self, user_id: str | None, action: str, action_limit: int | None = None) -> QuotaDecision:
        """Global per-user cap first, then the per-action cap."""
        overall = self.check_and_consume(user_id, SETTINGS.global_action, self.global_limit)
        if not overall.allowed:
            return overall
        limit = action_limit if action_limit is not None else SETTINGS.action_limit(action)
        return self.check_and_consume(user_id, action, limit)


_gate: QuotaGate | None = None


def get_quota_gate() -> QuotaGate:
    global _gate
    if _gate is None:
        _gate = QuotaGate()
    return _gate


def set_quota_gate(gate: QuotaGate | None) -> None:
    global _gate
    _gate = gate
