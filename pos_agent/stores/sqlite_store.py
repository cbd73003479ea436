import json
import os
import sqlite3
from contextlib import contextmanager
from typing import Optional

from ..logs import json_log
from .base import (
    HELD,
    COMPLETED,
    PENDING_SYNC,
    SYNCED,
    ORDER_FIELDS,
    RECENT_ORDERS_LIMIT,
    LocalStore,
    LocalStoreUnavailable,
    merge_order,
    normalize_order,
    utc_now_iso,
    utc_sort_key,
)

SCHEMA_PATH = os.path.join(os.path.dirname(os.path.dirname(os.path.abspath(__file__))), 'sqlite_schema.sql')

# Columns added after the first terminals shipped. Existing databases get them
# via ALTER TABLE at startup; fresh ones too, since the schema file omits them.
ORDER_COLUMNS_WANTED = {
    "store_id": "TEXT",
    "original_status": "TEXT",
    "tax_amount": "REAL DEFAULT 0",
    "discount_amount": "REAL DEFAULT 0",
    "sync_status": "TEXT NOT NULL DEFAULT 'PENDING_SYNC'",
    "synced_at": "TEXT",
    "sync_attempts": "INTEGER DEFAULT 0",
    "last_sync_error": "TEXT",
    "created_at_utc": "TEXT",
}

PRODUCT_COLUMNS_WANTED = {
    "is_available": "INTEGER DEFAULT 1",
    "addons": "TEXT",
}


def _table_columns(cur, table: str) -> set:
    cur.execute(f"PRAGMA table_info({table})")
    return {r[1] for r in cur.fetchall()}


def _add_missing_columns(cur, table: str, wanted: dict) -> list:
    cols = _table_columns(cur, table)
    added = []
    for col, ddl in wanted.items():
        if col not in cols:
            cur.execute(f"ALTER TABLE {table} ADD COLUMN {col} {ddl}")
            added.append(col)
    return added


def _loads(raw, default):
    if raw is None or raw == "":
        return default
    return json.loads(raw)


class SqliteStore(LocalStore):
    """Desktop backend: one SQLite file next to the agent."""

    name = "sqlite"

    def __init__(self, db_path: str):
        self.db_path = db_path
        self.init_db()

    @contextmanager
    def _conn(self):
        conn = sqlite3.connect(self.db_path, timeout=10)
        conn.row_factory = sqlite3.Row
        try:
            # sqlite3's own context manager commits/rolls back but never closes.
            with conn:
                yield conn
        finally:
            conn.close()

    def init_db(self):
        if not os.path.exists(SCHEMA_PATH):
            raise LocalStoreUnavailable(f"Missing schema file: {SCHEMA_PATH}")
        with open(SCHEMA_PATH, 'r', encoding='utf-8') as f:
            schema = f.read()
        try:
            with self._conn() as conn:
                conn.executescript(schema)
                cur = conn.cursor()
                added = _add_missing_columns(cur, "orders", ORDER_COLUMNS_WANTED)
                if "sync_status" in added and "synced" in _table_columns(cur, "orders"):
                    # Pre-sync_status databases tracked a 0/1 flag.
                    cur.execute(
                        "UPDATE orders SET sync_status = CASE WHEN synced = 1 THEN ? ELSE ? END",
                        (SYNCED, PENDING_SYNC),
                    )
                added += _add_missing_columns(cur, "products", PRODUCT_COLUMNS_WANTED)
                cur.execute("SELECT id, created_at FROM orders WHERE created_at_utc IS NULL")
                stale = cur.fetchall()
                cur.executemany(
                    "UPDATE orders SET created_at_utc = ? WHERE id = ?",
                    [(utc_sort_key(r["created_at"]), r["id"]) for r in stale],
                )
                # Earlier builds indexed the verbatim created_at.
                cur.execute("DROP INDEX IF EXISTS idx_orders_sync_status")
                cur.execute("DROP INDEX IF EXISTS idx_orders_status")
                cur.execute("CREATE INDEX IF NOT EXISTS idx_orders_sync_status_utc ON orders(sync_status, created_at_utc)")
                cur.execute("CREATE INDEX IF NOT EXISTS idx_orders_status_utc ON orders(status, created_at_utc)")
        except sqlite3.Error as ex:
            raise LocalStoreUnavailable(f"cannot open local database {self.db_path}: {ex}") from ex
        if added:
            json_log("info", "local.db.migrated", db_path=self.db_path, added_columns=added)

    # Orders

    def _order_from_row(self, row) -> dict:
        out = {k: row[k] for k in ORDER_FIELDS}
        out["items"] = _loads(out["items"], [])
        for k in ("total_amount", "discount_amount", "tax_amount"):
            out[k] = float(out[k] or 0)
        out["sync_attempts"] = int(out["sync_attempts"] or 0)
        return out

    def _fetch_order(self, cur, order_id: str) -> Optional[dict]:
        cur.execute(f"SELECT {', '.join(ORDER_FIELDS)} FROM orders WHERE id = ?", (order_id,))
        row = cur.fetchone()
        return self._order_from_row(row) if row else None

    def _upsert_order(self, cur, order: dict, *, keep_incoming_sync_status: bool) -> dict:
        incoming = normalize_order(order)
        existing = self._fetch_order(cur, incoming["id"])
        row, kept_synced = merge_order(existing, incoming, keep_incoming_sync_status=keep_incoming_sync_status)
        if kept_synced and not keep_incoming_sync_status:
            json_log("warning", "local.order.updated_after_sync", order_id=row["id"])
        values = dict(row, items=json.dumps(row["items"]))
        cur.execute(
            f"""
            INSERT INTO orders ({', '.join(ORDER_FIELDS)})
            VALUES ({', '.join('?' for _ in ORDER_FIELDS)})
            ON CONFLICT(id) DO UPDATE SET
              {', '.join(f'{c}=excluded.{c}' for c in ORDER_FIELDS if c != 'id')}
            """,
            tuple(values[c] for c in ORDER_FIELDS),
        )
        return row

    def save_order(self, order: dict) -> dict:
        with self._conn() as conn:
            return self._upsert_order(conn.cursor(), order, keep_incoming_sync_status=False)

    def save_orders_bulk(self, orders: list) -> None:
        with self._conn() as conn:
            cur = conn.cursor()
            for o in orders or []:
                self._upsert_order(cur, o, keep_incoming_sync_status=True)

    def get_order(self, order_id: str) -> Optional[dict]:
        with self._conn() as conn:
            return self._fetch_order(conn.cursor(), str(order_id))

    def _select_orders(self, where: str, params: tuple, order_by: str, limit: Optional[int] = None) -> list:
        sql = f"SELECT {', '.join(ORDER_FIELDS)} FROM orders WHERE {where} ORDER BY {order_by}"
        if limit is not None:
            sql += " LIMIT ?"
            params = params + (int(limit),)
        with self._conn() as conn:
            cur = conn.cursor()
            cur.execute(sql, params)
            return [self._order_from_row(r) for r in cur.fetchall()]

    def get_pending_orders(self) -> list:
        return self._select_orders("sync_status = ?", (PENDING_SYNC,), "created_at_utc ASC, id ASC")

    def count_pending(self) -> int:
        with self._conn() as conn:
            cur = conn.cursor()
            cur.execute("SELECT COUNT(1) FROM orders WHERE sync_status = ?", (PENDING_SYNC,))
            row = cur.fetchone()
            return int(row[0] if row else 0)

    def get_recent_orders(self, limit: int = RECENT_ORDERS_LIMIT) -> list:
        return self._select_orders("status = ?", (COMPLETED,), "created_at_utc DESC, id DESC", limit=limit)

    def get_held_orders(self) -> list:
        return self._select_orders("status = ?", (HELD,), "created_at_utc DESC, id DESC")

    def get_sync_issues(self, min_attempts: int) -> list:
        return self._select_orders(
            "sync_status = ? AND COALESCE(sync_attempts, 0) >= ?",
            (PENDING_SYNC, int(min_attempts)),
            "created_at_utc ASC, id ASC",
        )

    def mark_orders_synced(self, ids) -> None:
        now = utc_now_iso()
        with self._conn() as conn:
            cur = conn.cursor()
            for oid in ids or []:
                cur.execute(
                    "UPDATE orders SET sync_status = ?, synced_at = ?, last_sync_error = NULL WHERE id = ? AND sync_status != ?",
                    (SYNCED, now, str(oid), SYNCED),
                )

    def mark_orders_failed(self, errors: dict) -> None:
        with self._conn() as conn:
            cur = conn.cursor()
            for oid, err in (errors or {}).items():
                cur.execute(
                    """
                    UPDATE orders
                    SET sync_attempts = COALESCE(sync_attempts, 0) + 1,
                        last_sync_error = ?
                    WHERE id = ? AND sync_status = ?
                    """,
                    (str(err or "")[:1000] or None, str(oid), PENDING_SYNC),
                )

    # Reference data (snapshot pulls: clear then insert)

    def save_products_bulk(self, products: list) -> None:
        with self._conn() as conn:
            cur = conn.cursor()
            cur.execute("DELETE FROM products")
            for p in products or []:
                cur.execute(
                    """
                    INSERT INTO products (id, name, price, description, image, category_id, sort_order, is_available, addons)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        p.get("id"),
                        p.get("name"),
                        float(p.get("price") or 0),
                        p.get("description"),
                        p.get("image"),
                        p.get("category_id"),
                        int(p.get("sort_order") or 0),
                        1 if p.get("is_available", True) else 0,
                        json.dumps(p.get("addons") or []),
                    ),
                )

    def save_categories_bulk(self, categories: list) -> None:
        with self._conn() as conn:
            cur = conn.cursor()
            cur.execute("DELETE FROM categories")
            for c in categories or []:
                cur.execute(
                    "INSERT INTO categories (id, name, image, sort_order) VALUES (?, ?, ?, ?)",
                    (c.get("id"), c.get("name"), c.get("image"), int(c.get("sort_order") or 0)),
                )

    def save_settings_bulk(self, settings: list) -> None:
        with self._conn() as conn:
            cur = conn.cursor()
            cur.execute("DELETE FROM settings")
            for s in settings or []:
                cur.execute(
                    "INSERT INTO settings (key, value) VALUES (?, ?)",
                    (s.get("key"), json.dumps(s.get("value"))),
                )

    def save_tables_bulk(self, tables: list) -> None:
        with self._conn() as conn:
            cur = conn.cursor()
            cur.execute("DELETE FROM pos_tables")
            for t in tables or []:
                cur.execute(
                    """
                    INSERT INTO pos_tables (id, name, capacity, status, store_id, sort_order)
                    VALUES (?, ?, ?, ?, ?, ?)
                    """,
                    (
                        t.get("id"),
                        t.get("name"),
                        int(t.get("capacity") or 4),
                        t.get("status") or "AVAILABLE",
                        t.get("store_id"),
                        int(t.get("sort_order") or 0),
                    ),
                )

    def get_products(self) -> list:
        with self._conn() as conn:
            cur = conn.cursor()
            cur.execute(
                """
                SELECT id, name, price, description, image, category_id, sort_order, is_available, addons
                FROM products
                ORDER BY sort_order ASC, id ASC
                """
            )
            out = []
            for r in cur.fetchall():
                p = dict(r)
                p["price"] = float(p["price"] or 0)
                p["is_available"] = bool(p["is_available"])
                p["addons"] = _loads(p["addons"], [])
                out.append(p)
            return out

    def get_categories(self) -> list:
        with self._conn() as conn:
            cur = conn.cursor()
            cur.execute("SELECT id, name, image, sort_order FROM categories ORDER BY sort_order ASC, id ASC")
            return [dict(r) for r in cur.fetchall()]

    def get_settings(self) -> list:
        with self._conn() as conn:
            cur = conn.cursor()
            cur.execute("SELECT key, value FROM settings ORDER BY key ASC")
            return [{"key": r["key"], "value": _loads(r["value"], None)} for r in cur.fetchall()]

    def get_tables(self) -> list:
        with self._conn() as conn:
            cur = conn.cursor()
            cur.execute(
                "SELECT id, name, capacity, status, store_id, sort_order FROM pos_tables ORDER BY sort_order ASC, id ASC"
            )
            return [dict(r) for r in cur.fetchall()]
