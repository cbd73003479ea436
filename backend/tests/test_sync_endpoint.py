import pytest
from fastapi.testclient import TestClient

from backend.app import deps
from backend.app.config import settings
from backend.app.main import app
from backend.app.security import hash_session_token
from backend.app.routers import sync as sync_router
from backend.tests.fake_db import FakeOrdersDb

ACTOR = {"actor_id": "u-1", "company_id": "c-1", "default_store_id": "s-1"}


def _order(oid, created_at="2026-03-01T10:00:00Z", **kw):
    o = {
        "id": oid,
        "items": [{"name": "Idli", "price": 60, "quantity": 1}],
        "totalAmount": 60,
        "status": "COMPLETED",
        "originalStatus": "COMPLETED",
        "createdAt": created_at,
    }
    o.update(kw)
    return o


@pytest.fixture
def db(monkeypatch):
    fake = FakeOrdersDb()
    monkeypatch.setattr(sync_router, "get_conn", lambda: fake.connect())
    app.dependency_overrides[deps.require_actor] = lambda: dict(ACTOR)
    yield fake
    app.dependency_overrides.clear()


@pytest.fixture
def client():
    return TestClient(app)


def test_sync_orders_contract(db, client):
    r = client.post("/sync/orders", json={"orders": [_order("A"), _order("B")]})
    assert r.status_code == 200
    body = r.json()
    assert body["success"] is True
    assert body["results"] == [{"id": "A", "status": "SYNCED"}, {"id": "B", "status": "SYNCED"}]
    assert body["syncedIds"] == ["A", "B"]
    assert body["failedIds"] == []
    assert r.headers.get("X-Request-Id")


def test_empty_or_missing_orders_is_a_noop(db, client):
    for payload in ({}, {"orders": []}, {"orders": None}):
        r = client.post("/sync/orders", json=payload)
        assert r.status_code == 200
        assert r.json() == {"success": True, "count": 0}
    assert db.executed == []


def test_non_array_orders_is_rejected(db, client):
    r = client.post("/sync/orders", json={"orders": {"id": "A"}})
    assert r.status_code == 422
    assert r.json()["detail"] == "validation failed"
    assert db.orders == {}


def test_scenario_resend_after_lost_response(db, client):
    # First push lands on the server but the terminal never sees the answer.
    client.post("/sync/orders", json={"orders": [_order("A"), _order("B")]})

    r = client.post("/sync/orders", json={"orders": [_order("A"), _order("B"), _order("C")]})
    body = r.json()
    assert [x["status"] for x in body["results"]] == ["ALREADY_EXISTS", "ALREADY_EXISTS", "SYNCED"]
    assert body["syncedIds"] == ["A", "B", "C"]
    assert len(db.orders) == 3


def test_one_bad_order_does_not_sink_the_batch(db, client):
    db.fail_insert_ids.add("B")
    r = client.post("/sync/orders", json={"orders": [_order("A"), _order("B"), _order("C")]})
    body = r.json()
    assert r.status_code == 200
    assert body["syncedIds"] == ["A", "C"]
    assert body["failedIds"] == ["B"]
    assert body["results"][1]["status"] == "FAILED"
    assert body["results"][1]["error"]


def test_batch_size_limit(db, client, monkeypatch):
    monkeypatch.setattr(settings, "sync_max_batch", 2)
    r = client.post("/sync/orders", json={"orders": [_order("A"), _order("B"), _order("C")]})
    assert r.status_code == 413
    assert db.orders == {}


def test_missing_token_is_401(client):
    r = client.post("/sync/orders", json={"orders": [_order("A")]})
    assert r.status_code == 401
    assert r.json()["detail"] == "missing token"


class _NoRowCursor:
    def __init__(self, seen):
        self.seen = seen

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        return False

    def execute(self, sql, params):
        self.seen.append(params)

    def fetchone(self):
        return None


class _NoRowConn:
    def __init__(self):
        self.seen = []

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        return False

    def cursor(self):
        return _NoRowCursor(self.seen)


def test_unknown_token_is_401(client, monkeypatch):
    conn = _NoRowConn()
    monkeypatch.setattr(deps, "get_admin_conn", lambda: conn)
    r = client.post("/sync/orders", json={"orders": [_order("A")]}, headers={"Authorization": "Bearer nope"})
    assert r.status_code == 401
    assert r.json()["detail"] == "invalid token"
    # Sessions are matched on the stored hash only.
    assert conn.seen == [(hash_session_token("nope"),)]


def test_actor_without_default_store_is_403(client):
    app.dependency_overrides[deps.get_session] = lambda: {
        "session_id": "sess-1",
        "actor_id": "u-1",
        "company_id": "c-1",
        "default_store_id": None,
    }
    try:
        r = client.post("/sync/orders", json={"orders": [_order("A")]})
    finally:
        app.dependency_overrides.clear()
    assert r.status_code == 403
    assert r.json()["detail"] == "no default store"


def test_health_live_does_not_touch_the_database(client):
    r = client.get("/health/live")
    assert r.status_code == 200
    assert r.json()["status"] == "ok"


def test_terminal_sync_status_on_the_wire_is_accepted(db, client):
    r = client.post(
        "/sync/orders",
        json={"orders": [_order("A", status="PENDING_SYNC", createdAt=1772359200000)]},
    )
    assert r.status_code == 200
    assert r.json()["results"] == [{"id": "A", "status": "SYNCED"}]
    assert db.orders["A"]["status"] == "COMPLETED"
