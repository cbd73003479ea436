import http.client
import io
import json
from urllib.error import HTTPError, URLError

import pytest

from pos_agent import client as client_mod
from pos_agent.client import SyncClient, SyncTransportError, order_to_wire
from pos_agent.dispatcher import SyncDispatcher
from pos_agent.facade import LocalPersistence
from pos_agent.stores.object_store import BrowserStore


class _Resp:
    def __init__(self, body: bytes):
        self._body = body

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        return False

    def read(self):
        return self._body


def test_order_to_wire_uses_camel_case_and_drops_local_fields():
    wire = order_to_wire({
        "id": "o1",
        "kot_no": "K1",
        "customer_mobile": "9876543210",
        "items": [{"name": "Tea", "price": 20, "quantity": 1}],
        "total_amount": 20.0,
        "original_status": "HELD",
        "created_at": "2026-03-01T09:00:00+00:00",
        "table_id": None,
        "sync_status": "PENDING_SYNC",
        "sync_attempts": 3,
        "last_sync_error": "boom",
    })
    assert wire == {
        "id": "o1",
        "kotNo": "K1",
        "customerMobile": "9876543210",
        "items": [{"name": "Tea", "price": 20, "quantity": 1}],
        "totalAmount": 20.0,
        "originalStatus": "HELD",
        "createdAt": "2026-03-01T09:00:00+00:00",
    }


def test_push_orders_posts_batch_with_bearer_token(monkeypatch):
    seen = {}

    def fake_urlopen(req, timeout):
        seen["url"] = req.full_url
        seen["method"] = req.get_method()
        seen["auth"] = req.get_header("Authorization")
        seen["body"] = json.loads(req.data.decode("utf-8"))
        seen["timeout"] = timeout
        return _Resp(b'{"success": true, "results": []}')

    monkeypatch.setattr(client_mod, "urlopen", fake_urlopen)
    c = SyncClient("http://server:8001/", "tok", timeout=3)
    res = c.push_orders([{"id": "o1", "items": [], "created_at": "2026-03-01T09:00:00+00:00"}])

    assert res == {"success": True, "results": []}
    assert seen["url"] == "http://server:8001/sync/orders"
    assert seen["method"] == "POST"
    assert seen["auth"] == "Bearer tok"
    assert seen["body"] == {"orders": [{"id": "o1", "items": [], "createdAt": "2026-03-01T09:00:00+00:00"}]}
    assert seen["timeout"] == 3.0


def test_http_error_becomes_transport_error(monkeypatch):
    def fake_urlopen(req, timeout):
        raise HTTPError(req.full_url, 401, "Unauthorized", {}, io.BytesIO(b'{"detail": "invalid token"}'))

    monkeypatch.setattr(client_mod, "urlopen", fake_urlopen)
    with pytest.raises(SyncTransportError) as ei:
        SyncClient("http://server", "bad").fetch_bootstrap()
    assert ei.value.status == 401
    assert "invalid token" in str(ei.value)


def test_network_error_becomes_transport_error(monkeypatch):
    def fake_urlopen(req, timeout):
        raise URLError("connection refused")

    monkeypatch.setattr(client_mod, "urlopen", fake_urlopen)
    with pytest.raises(SyncTransportError):
        SyncClient("http://server", "tok").push_orders([])


def test_missing_base_url_is_a_transport_error():
    with pytest.raises(SyncTransportError):
        SyncClient("", "tok").push_orders([])
    assert SyncClient("", "tok").health()["ok"] is False


class _TruncatedResp(_Resp):
    def read(self):
        raise http.client.IncompleteRead(b'{"success": tr', 40)


def test_undecodable_body_becomes_transport_error(monkeypatch):
    monkeypatch.setattr(client_mod, "urlopen", lambda req, timeout: _Resp(b"\xff\xfe\x00garbage"))
    with pytest.raises(SyncTransportError) as ei:
        SyncClient("http://server", "tok").push_orders([])
    assert "undecodable" in str(ei.value)


def test_truncated_body_becomes_transport_error(monkeypatch):
    monkeypatch.setattr(client_mod, "urlopen", lambda req, timeout: _TruncatedResp(b""))
    with pytest.raises(SyncTransportError):
        SyncClient("http://server", "tok").fetch_bootstrap()


def test_bad_status_line_becomes_transport_error(monkeypatch):
    def fake_urlopen(req, timeout):
        raise http.client.BadStatusLine("HTTP/1.1 ???")

    monkeypatch.setattr(client_mod, "urlopen", fake_urlopen)
    with pytest.raises(SyncTransportError):
        SyncClient("http://server", "tok").push_orders([])
    assert SyncClient("http://server", "tok").health()["ok"] is False


def test_broken_response_leaves_orders_pending_for_next_cycle(tmp_path, monkeypatch):
    monkeypatch.setattr(client_mod, "urlopen", lambda req, timeout: _TruncatedResp(b""))
    persistence = LocalPersistence(BrowserStore(str(tmp_path / "pos-objects.json")))
    persistence.save_order({"id": "o1", "items": [], "status": "COMPLETED", "created_at": "2026-03-01T09:00:00+00:00"})

    res = SyncDispatcher(persistence, SyncClient("http://server", "tok")).run_cycle()

    assert res["ok"] is False
    assert [o["id"] for o in persistence.get_pending_orders()] == ["o1"]
    assert persistence.get_order("o1")["sync_attempts"] == 0
