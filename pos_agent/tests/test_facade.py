import pytest

from pos_agent import facade
from pos_agent.facade import (
    BROWSER,
    DESKTOP,
    LocalPersistence,
    close_local_persistence,
    detect_runtime,
    get_local_persistence,
    init_local_persistence,
)
from pos_agent.notify import Notifier
from pos_agent.stores.base import LocalStoreUnavailable
from pos_agent.stores.object_store import BrowserStore
from pos_agent.stores.sqlite_store import SqliteStore


@pytest.fixture(autouse=True)
def _reset_facade(monkeypatch):
    monkeypatch.delenv("POS_RUNTIME", raising=False)
    close_local_persistence()
    yield
    close_local_persistence()


def test_detect_runtime():
    assert detect_runtime(platform="linux") == DESKTOP
    assert detect_runtime(platform="emscripten") == BROWSER
    assert detect_runtime("Browser", platform="linux") == BROWSER


def test_detect_runtime_env_override(monkeypatch):
    monkeypatch.setenv("POS_RUNTIME", "browser")
    assert detect_runtime() == BROWSER
    monkeypatch.setenv("POS_RUNTIME", "tablet")
    with pytest.raises(ValueError):
        detect_runtime()


def test_init_picks_backend_once(tmp_path):
    p = init_local_persistence(runtime="browser", db_path=str(tmp_path / "objects.json"))
    assert isinstance(p.store, BrowserStore)
    assert get_local_persistence() is p
    with pytest.raises(RuntimeError):
        init_local_persistence(runtime="desktop", db_path=str(tmp_path / "pos.sqlite"))


def test_get_before_init_raises():
    with pytest.raises(RuntimeError):
        get_local_persistence()


def test_unavailable_store_is_fatal(tmp_path):
    with pytest.raises(LocalStoreUnavailable):
        init_local_persistence(runtime="desktop", db_path=str(tmp_path / "nope" / "pos.sqlite"))
    with pytest.raises(RuntimeError):
        get_local_persistence()


class _BrokenStore(SqliteStore):
    def save_order(self, order):
        raise OSError("disk full")


def test_save_failure_is_reported_not_raised(tmp_path):
    p = LocalPersistence(_BrokenStore(str(tmp_path / "pos.sqlite")))
    res = p.save_order({"id": "A", "items": []})
    assert res == {"success": False, "id": "A", "error": "disk full"}


def test_save_returns_generated_id(tmp_path):
    p = LocalPersistence(SqliteStore(str(tmp_path / "pos.sqlite")))
    res = p.save_order({"items": [], "total_amount": 10})
    assert res["success"] is True
    assert p.get_order(res["id"])["sync_status"] == "PENDING_SYNC"


def test_broken_subscriber_never_blocks_a_save(tmp_path):
    notifier = Notifier()
    seen = []

    @notifier.subscribe
    def _explode(event, payload):
        raise RuntimeError("printer offline")

    @notifier.subscribe
    def _record(event, payload):
        seen.append((event, payload["order_id"]))

    p = LocalPersistence(SqliteStore(str(tmp_path / "pos.sqlite")), notifier=notifier)
    assert p.save_order({"id": "A", "items": []})["success"] is True
    assert p.save_order({"id": "B", "items": []})["success"] is True
    notifier.drain()

    assert seen == [("order.saved", "A"), ("order.saved", "B")]
    assert [o["id"] for o in p.get_pending_orders()] == ["A", "B"]


def test_mark_helpers_ignore_empty_input(tmp_path):
    p = LocalPersistence(SqliteStore(str(tmp_path / "pos.sqlite")))
    p.save_order({"id": "A", "items": []})
    p.mark_orders_synced([None, ""])
    p.mark_orders_failed({})
    assert p.count_pending() == 1


def test_default_paths_per_runtime():
    assert facade.DEFAULT_DB_PATHS[DESKTOP].endswith("pos.sqlite")
    assert facade.DEFAULT_DB_PATHS[BROWSER].endswith(".json")
