import asyncio
from types import SimpleNamespace

import pytest

from pos_agent import facade
from pos_agent.facade import BROWSER, close_local_persistence, init_browser_persistence, open_store
from pos_agent.stores import browser_fs
from pos_agent.stores.base import LocalStoreUnavailable
from pos_agent.stores.browser_fs import IdbfsMount, mount_for, mount_persistent_root
from pos_agent.stores.object_store import BrowserStore


class FakeFS:
    """Just enough of the Emscripten FS API; syncfs completes inline unless `defer` is set."""

    def __init__(self, load_error=None, defer=False):
        self.calls = []
        self.dirs = set()
        self.filesystems = SimpleNamespace(IDBFS="IDBFS")
        self.load_error = load_error
        self.defer = defer
        self.pending = []

    def analyzePath(self, path):
        return SimpleNamespace(exists=path in self.dirs)

    def mkdir(self, path):
        self.calls.append(("mkdir", path))
        self.dirs.add(path)

    def mount(self, fs_type, opts, root):
        self.calls.append(("mount", fs_type, root))

    def syncfs(self, populate, callback):
        self.calls.append(("syncfs", populate))
        if self.defer and not populate:
            self.pending.append(callback)
            return
        callback(self.load_error if populate else None)

    def flushes(self):
        return sum(1 for c in self.calls if c == ("syncfs", False))


@pytest.fixture(autouse=True)
def _no_mounts(monkeypatch):
    monkeypatch.setattr(browser_fs, "_mounts", {})
    close_local_persistence()
    yield
    close_local_persistence()


def _mount(fs, root):
    return asyncio.run(mount_persistent_root(mount=IdbfsMount(fs, str(root))))


def test_mount_loads_from_indexeddb_before_use(tmp_path):
    fs = FakeFS()
    root = str(tmp_path / "pos-data")
    m = _mount(fs, root)

    assert fs.calls == [("mkdir", root), ("mount", "IDBFS", root), ("syncfs", True)]
    assert mount_for(f"{root}/pos-objects.json") is m
    assert mount_for(str(tmp_path / "elsewhere.json")) is None
    assert mount_for(f"{root}-other/pos-objects.json") is None
    # Mounting the same root again is a no-op.
    assert _mount(fs, root) is m
    assert len(fs.calls) == 3


def test_failed_load_is_unavailable_and_not_registered(tmp_path):
    fs = FakeFS(load_error="QuotaExceededError")
    with pytest.raises(LocalStoreUnavailable):
        _mount(fs, tmp_path)
    assert mount_for(str(tmp_path / "pos-objects.json")) is None


def test_browser_store_refuses_memory_only_path_in_pyodide(tmp_path):
    with pytest.raises(LocalStoreUnavailable):
        open_store(BROWSER, str(tmp_path / "pos-objects.json"), platform="emscripten")
    # The default browser path is only usable once its mount is loaded.
    assert facade.PYODIDE_DB_PATH.startswith(browser_fs.PERSISTENT_ROOT + "/")
    with pytest.raises(LocalStoreUnavailable):
        open_store(BROWSER, platform="emscripten")


def test_every_committed_write_is_flushed(tmp_path):
    fs = FakeFS()
    _mount(fs, tmp_path)
    store = open_store(BROWSER, str(tmp_path / "pos-objects.json"), platform="emscripten")
    assert isinstance(store, BrowserStore)

    store.save_order({"id": "A", "items": [], "status": "COMPLETED"})
    assert fs.flushes() == 1
    store.mark_orders_synced(["A"])
    assert fs.flushes() == 2

    with pytest.raises(RuntimeError):
        with store.db.transaction("orders"):
            store.db._put("orders", {"id": "B", "sync_status": "PENDING_SYNC"})
            raise RuntimeError("cashier cancelled")
    assert fs.flushes() == 2
    assert store.get_order("B") is None


def test_flushes_are_coalesced_while_one_is_running(tmp_path):
    fs = FakeFS(defer=True)
    m = _mount(fs, tmp_path)

    m.flush()
    m.flush()
    m.flush()
    assert fs.flushes() == 1

    fs.pending.pop(0)(None)
    # Writes made during the first sync get exactly one follow-up sync.
    assert fs.flushes() == 2
    fs.pending.pop(0)(None)
    assert fs.flushes() == 2
    assert fs.pending == []


def test_failed_flush_is_logged_and_next_write_flushes_again(tmp_path, capsys):
    fs = FakeFS(defer=True)
    m = _mount(fs, tmp_path)

    m.flush()
    fs.pending.pop(0)("IndexedDB closed")
    assert "local.browser_fs.flush_failed" in capsys.readouterr().err

    m.flush()
    assert fs.flushes() == 2


def test_init_browser_persistence_mounts_then_opens(tmp_path):
    fs = FakeFS()
    mount = IdbfsMount(fs, str(tmp_path))
    p = asyncio.run(init_browser_persistence(db_path=str(tmp_path / "pos-objects.json"), mount=mount))

    assert p.runtime == BROWSER
    assert ("syncfs", True) in fs.calls
    assert p.save_order({"id": "A", "items": []})["success"] is True
