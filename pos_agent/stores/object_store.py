"""
Browser backend: an IndexedDB-style structured store.

Object stores are declared the way browser stores are, one schema string per
store: the first name is the primary key path, the rest are secondary indexes
(`"id, sync_status, status, created_at_utc"`). Indexes are maintained on every
write, so `where("orders", "status", "HELD")` never scans the whole store.

The whole database is persisted as one JSON document after every committed
transaction, then `on_persist` runs. Under Pyodide the document must sit on an
IDBFS mount and `on_persist` flushes that mount to IndexedDB (see
`browser_fs`); on a regular interpreter it is just a file (or nothing at all
when `path` is None).
"""

import copy
import json
import os
import threading
from contextlib import contextmanager
from typing import Callable, Optional

from ..logs import json_log
from .base import (
    HELD,
    COMPLETED,
    PENDING_SYNC,
    SYNCED,
    RECENT_ORDERS_LIMIT,
    LocalStore,
    LocalStoreUnavailable,
    merge_order,
    normalize_order,
    utc_now_iso,
    utc_sort_key,
)

SCHEMA = {
    "orders": "id, sync_status, status, created_at_utc",
    "products": "id, category_id, sort_order",
    "categories": "id, sort_order",
    "settings": "key",
    "pos_tables": "id, status",
}

FORMAT_VERSION = 1


def parse_schema(spec: str) -> tuple[str, list]:
    parts = [p.strip() for p in (spec or "").split(",") if p.strip()]
    if not parts:
        raise ValueError("object store schema needs a primary key")
    return parts[0], parts[1:]


class ObjectStoreDatabase:
    def __init__(self, schema: dict, path: Optional[str] = None, on_persist: Optional[Callable[[], None]] = None):
        self.path = path
        self.on_persist = on_persist
        self._lock = threading.RLock()
        self._keys = {}
        self._index_names = {}
        self._records = {}
        self._indexes = {}
        self._in_tx = 0
        for store, spec in schema.items():
            key, indexes = parse_schema(spec)
            self._keys[store] = key
            self._index_names[store] = indexes
            self._records[store] = {}
            self._indexes[store] = {ix: {} for ix in indexes}
        if path:
            self._load()

    def _load(self):
        if not os.path.exists(self.path):
            return
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                doc = json.load(f)
        except (OSError, ValueError) as ex:
            raise LocalStoreUnavailable(f"cannot open local object store {self.path}: {ex}") from ex
        for store, rows in (doc.get("stores") or {}).items():
            if store not in self._records:
                # Store dropped from the schema; keep nothing.
                continue
            for rec in rows or []:
                self._put(store, rec)

    def _persist(self):
        if not self.path:
            return
        doc = {
            "version": FORMAT_VERSION,
            "stores": {s: list(rows.values()) for s, rows in self._records.items()},
        }
        tmp = f"{self.path}.tmp"
        with open(tmp, "w", encoding="utf-8") as f:
            json.dump(doc, f)
        os.replace(tmp, self.path)
        if self.on_persist is not None:
            self.on_persist()

    def _require_store(self, store: str):
        if store not in self._records:
            raise KeyError(f"unknown object store: {store}")

    def _unindex(self, store: str, rec: dict):
        key = rec[self._keys[store]]
        for ix, entries in self._indexes[store].items():
            val = rec.get(ix)
            if val is None:
                continue
            bucket = entries.get(val)
            if bucket is not None:
                bucket.discard(key)
                if not bucket:
                    del entries[val]

    def _put(self, store: str, record: dict):
        key_path = self._keys[store]
        key = record.get(key_path)
        if key is None or key == "":
            raise ValueError(f"{store}: record is missing key path '{key_path}'")
        rec = copy.deepcopy(record)
        old = self._records[store].get(key)
        if old is not None:
            self._unindex(store, old)
        self._records[store][key] = rec
        for ix, entries in self._indexes[store].items():
            val = rec.get(ix)
            # Like IndexedDB, records without a value are absent from the index.
            if val is None:
                continue
            entries.setdefault(val, set()).add(key)

    @contextmanager
    def transaction(self, *stores):
        """
        Atomic read-write transaction over `stores`: on error every listed store
        is restored to its state at entry and nothing is persisted.
        """
        for s in stores:
            self._require_store(s)
        with self._lock:
            saved = {s: (copy.deepcopy(self._records[s]), copy.deepcopy(self._indexes[s])) for s in stores}
            self._in_tx += 1
            try:
                yield self
                if self._in_tx == 1:
                    self._persist()
            except BaseException:
                for s, (records, indexes) in saved.items():
                    self._records[s] = records
                    self._indexes[s] = indexes
                raise
            finally:
                self._in_tx -= 1

    def put(self, store: str, record: dict):
        with self.transaction(store):
            self._put(store, record)

    def bulk_put(self, store: str, records: list):
        with self.transaction(store):
            for rec in records or []:
                self._put(store, rec)

    def clear(self, store: str):
        with self.transaction(store):
            self._records[store] = {}
            self._indexes[store] = {ix: {} for ix in self._index_names[store]}

    def get(self, store: str, key) -> Optional[dict]:
        self._require_store(store)
        with self._lock:
            rec = self._records[store].get(key)
            return copy.deepcopy(rec) if rec is not None else None

    def where(self, store: str, index: str, value) -> list:
        self._require_store(store)
        if index not in self._indexes[store]:
            raise KeyError(f"{store}: no index named '{index}'")
        with self._lock:
            keys = self._indexes[store][index].get(value) or set()
            return [copy.deepcopy(self._records[store][k]) for k in keys]

    def count(self, store: str, index: Optional[str] = None, value=None) -> int:
        self._require_store(store)
        with self._lock:
            if index is None:
                return len(self._records[store])
            return len(self._indexes[store][index].get(value) or ())

    def all(self, store: str) -> list:
        self._require_store(store)
        with self._lock:
            return [copy.deepcopy(r) for r in self._records[store].values()]


def _newest_first(rows: list) -> list:
    return sorted(rows, key=lambda o: (o.get("created_at_utc") or "", o.get("id") or ""), reverse=True)


def _oldest_first(rows: list) -> list:
    return sorted(rows, key=lambda o: (o.get("created_at_utc") or "", o.get("id") or ""))


def _by_sort_order(rows: list) -> list:
    return sorted(rows, key=lambda r: (int(r.get("sort_order") or 0), str(r.get("id") or "")))


class BrowserStore(LocalStore):
    name = "browser"

    def __init__(self, path: Optional[str] = None, on_persist: Optional[Callable[[], None]] = None):
        self.db = ObjectStoreDatabase(SCHEMA, path=path, on_persist=on_persist)
        stale = [o for o in self.db.all("orders") if not o.get("created_at_utc")]
        if stale:
            # Documents written before orders carried a UTC sort key.
            with self.db.transaction("orders"):
                for o in stale:
                    o["created_at_utc"] = utc_sort_key(o.get("created_at"))
                    self.db._put("orders", o)

    def _upsert_order(self, order: dict, *, keep_incoming_sync_status: bool) -> dict:
        incoming = normalize_order(order)
        existing = self.db.get("orders", incoming["id"])
        row, kept_synced = merge_order(existing, incoming, keep_incoming_sync_status=keep_incoming_sync_status)
        if kept_synced and not keep_incoming_sync_status:
            json_log("warning", "local.order.updated_after_sync", order_id=row["id"])
        self.db._put("orders", row)
        return row

    def save_order(self, order: dict) -> dict:
        with self.db.transaction("orders"):
            return self._upsert_order(order, keep_incoming_sync_status=False)

    def save_orders_bulk(self, orders: list) -> None:
        with self.db.transaction("orders"):
            for o in orders or []:
                self._upsert_order(o, keep_incoming_sync_status=True)

    def get_order(self, order_id: str) -> Optional[dict]:
        return self.db.get("orders", str(order_id))

    def get_pending_orders(self) -> list:
        return _oldest_first(self.db.where("orders", "sync_status", PENDING_SYNC))

    def count_pending(self) -> int:
        return self.db.count("orders", "sync_status", PENDING_SYNC)

    def get_recent_orders(self, limit: int = RECENT_ORDERS_LIMIT) -> list:
        return _newest_first(self.db.where("orders", "status", COMPLETED))[: int(limit)]

    def get_held_orders(self) -> list:
        return _newest_first(self.db.where("orders", "status", HELD))

    def get_sync_issues(self, min_attempts: int) -> list:
        rows = self.db.where("orders", "sync_status", PENDING_SYNC)
        return _oldest_first([o for o in rows if int(o.get("sync_attempts") or 0) >= int(min_attempts)])

    def mark_orders_synced(self, ids) -> None:
        now = utc_now_iso()
        with self.db.transaction("orders"):
            for oid in ids or []:
                rec = self.db.get("orders", str(oid))
                if not rec or rec.get("sync_status") == SYNCED:
                    continue
                rec.update(sync_status=SYNCED, synced_at=now, last_sync_error=None)
                self.db._put("orders", rec)

    def mark_orders_failed(self, errors: dict) -> None:
        with self.db.transaction("orders"):
            for oid, err in (errors or {}).items():
                rec = self.db.get("orders", str(oid))
                if not rec or rec.get("sync_status") != PENDING_SYNC:
                    continue
                rec["sync_attempts"] = int(rec.get("sync_attempts") or 0) + 1
                rec["last_sync_error"] = str(err or "")[:1000] or None
                self.db._put("orders", rec)

    def _replace(self, store: str, rows: list):
        with self.db.transaction(store):
            self.db.clear(store)
            self.db.bulk_put(store, rows)

    def save_products_bulk(self, products: list) -> None:
        rows = []
        for p in products or []:
            rows.append({
                "id": p.get("id"),
                "name": p.get("name"),
                "price": float(p.get("price") or 0),
                "description": p.get("description"),
                "image": p.get("image"),
                "category_id": p.get("category_id"),
                "sort_order": int(p.get("sort_order") or 0),
                "is_available": bool(p.get("is_available", True)),
                "addons": list(p.get("addons") or []),
            })
        self._replace("products", rows)

    def save_categories_bulk(self, categories: list) -> None:
        rows = [
            {"id": c.get("id"), "name": c.get("name"), "image": c.get("image"), "sort_order": int(c.get("sort_order") or 0)}
            for c in categories or []
        ]
        self._replace("categories", rows)

    def save_settings_bulk(self, settings: list) -> None:
        self._replace("settings", [{"key": s.get("key"), "value": s.get("value")} for s in settings or []])

    def save_tables_bulk(self, tables: list) -> None:
        rows = []
        for t in tables or []:
            rows.append({
                "id": t.get("id"),
                "name": t.get("name"),
                "capacity": int(t.get("capacity") or 4),
                "status": t.get("status") or "AVAILABLE",
                "store_id": t.get("store_id"),
                "sort_order": int(t.get("sort_order") or 0),
            })
        self._replace("pos_tables", rows)

    def get_products(self) -> list:
        return _by_sort_order(self.db.all("products"))

    def get_categories(self) -> list:
        return _by_sort_order(self.db.all("categories"))

    def get_settings(self) -> list:
        return sorted(self.db.all("settings"), key=lambda s: str(s.get("key")))

    def get_tables(self) -> list:
        return _by_sort_order(self.db.all("pos_tables"))
