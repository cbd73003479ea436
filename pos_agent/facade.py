"""
Local persistence facade: the only way order-taking and sync code touch the
terminal's storage.

The backend is picked once per process from the runtime environment
(desktop interpreter -> SQLite, Pyodide in a browser tab -> object store) and
never renegotiated afterwards.
"""

import os
import sys
from typing import Optional

from .logs import json_log
from .notify import Notifier
from .stores import browser_fs
from .stores.base import LocalStore, LocalStoreUnavailable, RECENT_ORDERS_LIMIT
from .stores.object_store import BrowserStore
from .stores.sqlite_store import SqliteStore

DESKTOP = "desktop"
BROWSER = "browser"

ROOT = os.path.dirname(os.path.abspath(__file__))
DEFAULT_DB_PATHS = {
    DESKTOP: os.path.join(ROOT, "pos.sqlite"),
    BROWSER: os.path.join(ROOT, "pos-objects.json"),
}
# Inside a browser tab only the IDBFS mount survives a reload.
PYODIDE_DB_PATH = browser_fs.PERSISTENT_ROOT + "/pos-objects.json"


def detect_runtime(override: Optional[str] = None, platform: Optional[str] = None) -> str:
    raw = (override if override is not None else os.getenv("POS_RUNTIME") or "").strip().lower()
    if raw:
        if raw not in {DESKTOP, BROWSER}:
            raise ValueError(f"unknown POS runtime: {raw}")
        return raw
    # Pyodide reports itself as emscripten.
    return BROWSER if (platform or sys.platform) == "emscripten" else DESKTOP


def open_store(runtime: str, db_path: Optional[str] = None, platform: Optional[str] = None) -> LocalStore:
    in_pyodide = (platform or sys.platform) == "emscripten"
    if runtime == BROWSER and in_pyodide:
        path = db_path or PYODIDE_DB_PATH
        mount = browser_fs.mount_for(path)
        if mount is None:
            raise LocalStoreUnavailable(
                f"{path} is not on persistent browser storage; await mount_persistent_root() before opening the store"
            )
        return BrowserStore(path, on_persist=mount.flush)
    path = db_path or DEFAULT_DB_PATHS[runtime]
    if runtime == BROWSER:
        return BrowserStore(path)
    return SqliteStore(path)


class LocalPersistence:
    def __init__(self, store: LocalStore, runtime: str = DESKTOP, notifier: Optional[Notifier] = None):
        self.store = store
        self.runtime = runtime
        self.notifier = notifier

    def save_order(self, order: dict) -> dict:
        oid = (order or {}).get("id") if isinstance(order, dict) else None
        try:
            saved = self.store.save_order(order)
        except Exception as ex:
            # Never raises: the caller always gets a result it can show the cashier.
            json_log("error", "local.order.save_failed", order_id=oid, backend=self.store.name, error=str(ex))
            return {"success": False, "id": oid, "error": str(ex)}
        if self.notifier is not None:
            self.notifier.publish("order.saved", {"order_id": saved["id"], "status": saved.get("status")})
        return {"success": True, "id": saved["id"]}

    def save_orders_bulk(self, orders: list) -> None:
        self.store.save_orders_bulk(orders)

    def get_order(self, order_id: str) -> Optional[dict]:
        return self.store.get_order(order_id)

    def get_pending_orders(self) -> list:
        return self.store.get_pending_orders()

    def count_pending(self) -> int:
        return self.store.count_pending()

    def get_recent_orders(self, limit: int = RECENT_ORDERS_LIMIT) -> list:
        return self.store.get_recent_orders(limit)

    def get_held_orders(self) -> list:
        return self.store.get_held_orders()

    def mark_orders_synced(self, ids) -> None:
        ids = [str(i) for i in ids or [] if i]
        if ids:
            self.store.mark_orders_synced(ids)

    def mark_orders_failed(self, errors: dict) -> None:
        if errors:
            self.store.mark_orders_failed(errors)

    def get_sync_issues(self, min_attempts: int) -> list:
        return self.store.get_sync_issues(min_attempts)

    def save_products_bulk(self, products: list) -> None:
        self.store.save_products_bulk(products)

    def save_categories_bulk(self, categories: list) -> None:
        self.store.save_categories_bulk(categories)

    def save_settings_bulk(self, settings: list) -> None:
        self.store.save_settings_bulk(settings)

    def save_tables_bulk(self, tables: list) -> None:
        self.store.save_tables_bulk(tables)

    def get_products(self) -> list:
        return self.store.get_products()

    def get_categories(self) -> list:
        return self.store.get_categories()

    def get_settings(self) -> list:
        return self.store.get_settings()

    def get_tables(self) -> list:
        return self.store.get_tables()


_persistence: Optional[LocalPersistence] = None


def init_local_persistence(runtime: Optional[str] = None, db_path: Optional[str] = None, notifier: Optional[Notifier] = None) -> LocalPersistence:
    global _persistence
    if _persistence is not None:
        raise RuntimeError("local persistence already initialized for this process")
    rt = detect_runtime(runtime)
    try:
        store = open_store(rt, db_path)
    except LocalStoreUnavailable as ex:
        json_log("error", "local.store.unavailable", runtime=rt, db_path=db_path, error=str(ex))
        raise
    _persistence = LocalPersistence(store, runtime=rt, notifier=notifier)
    json_log("info", "local.store.ready", runtime=rt, backend=store.name)
    return _persistence


async def init_browser_persistence(db_path: Optional[str] = None, notifier: Optional[Notifier] = None, mount=None) -> LocalPersistence:
    """Browser-tab startup: load the IDBFS mount from IndexedDB, then open the store on it."""
    await browser_fs.mount_persistent_root(mount=mount)
    return init_local_persistence(runtime=BROWSER, db_path=db_path, notifier=notifier)


def get_local_persistence() -> LocalPersistence:
    if _persistence is None:
        raise RuntimeError("local persistence not initialized (call init_local_persistence at startup)")
    return _persistence


def close_local_persistence() -> None:
    global _persistence
    if _persistence is not None:
        _persistence.store.close()
    _persistence = None
