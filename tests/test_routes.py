import pytest
from fastapi.testclient import TestClient

from storebot.core import actions
from storebot.core.charts import ChartEntry
from storebot.core.errors import StoreUnavailable, UpstreamTimeout
from storebot.core.kv_store import MemoryStore, set_store
from storebot.core.quota import QuotaGate, set_quota_gate
from storebot.core.settings import SETTINGS
from storebot.main import app


@pytest.fixture(autouse=True)
def isolated_state():
    store = MemoryStore()
    set_store(store)
    set_quota_gate(QuotaGate(store, admin_user_ids=["admin"], global_limit=100))
    yield store
    set_store(None)
    set_quota_gate(None)


@pytest.fixture
def client():
    return TestClient(app)


def _install_chart(monkeypatch, outcome=None):
    async def fake_get_chart(region, kind):
        if isinstance(outcome, Exception):
            raise outcome
        return [ChartEntry(id="1", name="Top App", store_url="https://apps.example/1")]

    monkeypatch.setattr(actions, "get_chart", fake_get_chart)


def test_health(client):
    response = client.get("/health")

    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


def test_chart_ok_echoes_trace_headers(monkeypatch, client):
    _install_chart(monkeypatch)

    response = client.get(
        "/v1/charts/us",
        params={"kind": "paid"},
        headers={"x-user-id": "u1", "x-trace-id": "trace_1", "x-request-id": "req_1"},
    )

    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "ok"
    assert body["data"]["kind"] == "paid"
    assert body["trace_id"] == "trace_1"
    assert response.headers["x-request-id"] == "req_1"


def test_chart_quota_exceeded_is_429(monkeypatch, client):
    monkeypatch.setitem(SETTINGS.action_limits, actions.ACTION_CHART, 1)
    _install_chart(monkeypatch)

    client.get("/v1/charts/us", headers={"x-user-id": "u1"})
    response = client.get("/v1/charts/jp", headers={"x-user-id": "u1"})

    assert response.status_code == 429
    assert response.json()["limit"] == 1


def test_invalid_region_is_400(client):
    response = client.get("/v1/charts/usa", headers={"x-user-id": "u1"})

    assert response.status_code == 400
    assert response.json()["error"]["code"] == "invalid_request"


def test_upstream_timeout_is_503(monkeypatch, client):
    _install_chart(monkeypatch, UpstreamTimeout("slow"))

    response = client.get("/v1/charts/us")

    assert response.status_code == 503
    assert response.json()["status"] == "unavailable"


def test_missing_app_is_404(monkeypatch, client):
    async def fake_search(term, region):
        return None

    monkeypatch.setattr(actions, "search_app", fake_search)

    response = client.get("/v1/apps/detail", params={"term": "nothing"})

    assert response.status_code == 404


def test_unknown_platform_is_400(client):
    response = client.get("/v1/os/android")

    assert response.status_code == 400


def test_status_requires_admin(client):
    assert client.get("/internal/status", headers={"x-user-id": "u1"}).status_code == 403

    response = client.get("/internal/status", headers={"x-user-id": "admin"})

    assert response.status_code == 200
    assert response.json()["store"] == "ok"


def test_vip_grant_lifts_limits(monkeypatch, client):
    monkeypatch.setitem(SETTINGS.action_limits, actions.ACTION_CHART, 1)
    _install_chart(monkeypatch)

    assert client.put("/internal/vip/u9", headers={"x-user-id": "u1"}).status_code == 403
    granted = client.put("/internal/vip/u9", headers={"x-user-id": "admin"})
    assert granted.json() == {"user_id": "u9", "vip": True}

    statuses = [client.get(f"/v1/charts/{region}", headers={"x-user-id": "u9"}).status_code for region in ("us", "jp")]
    assert statuses == [200, 200]

    client.delete("/internal/vip/u9", headers={"x-user-id": "admin"})
    assert client.get("/v1/charts/gb", headers={"x-user-id": "u9"}).status_code == 200
    assert client.get("/v1/charts/de", headers={"x-user-id": "u9"}).status_code == 429


def test_vip_write_with_store_down_is_503(client):
    class BrokenStore(MemoryStore):
        def set(self, key, value, ttl=None):
            raise StoreUnavailable("down")

    set_quota_gate(QuotaGate(BrokenStore(), admin_user_ids=["admin"], global_limit=100))

    response = client.put("/internal/vip/u9", headers={"x-user-id": "admin"})

    assert response.status_code == 503
    assert response.json()["error"]["code"] == "store_unavailable"


def test_metrics_snapshot(monkeypatch, client):
    _install_chart(monkeypatch)
    client.get("/v1/charts/us", headers={"x-user-id": "u1"})

    snapshot = client.get("/metrics").json()

    assert any(key.startswith("sb_action_total") for key in snapshot)
