import uuid
from datetime import datetime, timezone
from typing import Optional

PENDING_SYNC = "PENDING_SYNC"
SYNCED = "SYNCED"

HELD = "HELD"
COMPLETED = "COMPLETED"

# Bookkeeping the terminal keeps for itself; never sent to the server.
LOCAL_ONLY_FIELDS = ("sync_status", "synced_at", "sync_attempts", "last_sync_error", "created_at_utc")

ORDER_FIELDS = (
    "id",
    "store_id",
    "kot_no",
    "customer_name",
    "customer_mobile",
    "table_id",
    "table_name",
    "items",
    "total_amount",
    "discount_amount",
    "tax_amount",
    "payment_mode",
    "status",
    "original_status",
    "created_at",
) + LOCAL_ONLY_FIELDS

RECENT_ORDERS_LIMIT = 50


class LocalStoreUnavailable(RuntimeError):
    """The local storage engine could not be opened; the terminal cannot take orders."""


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _to_iso(value) -> str:
    if value is None or value == "":
        return utc_now_iso()
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.isoformat()
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        # Browser terminals historically stored epoch milliseconds.
        seconds = value / 1000.0 if value > 1e11 else float(value)
        return datetime.fromtimestamp(seconds, tz=timezone.utc).isoformat()
    return str(value)


def utc_sort_key(created_at) -> str:
    """
    Fixed-width UTC rendering of `created_at`. Orders are sorted on this, never
    on the verbatim value, which may carry any offset.
    """
    raw = str(created_at or "").strip()
    try:
        dt = datetime.fromisoformat(raw[:-1] + "+00:00" if raw.endswith(("Z", "z")) else raw)
    except ValueError:
        return raw
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


def _money(value) -> float:
    if value is None or value == "":
        return 0.0
    return float(value)


def normalize_order(order: dict) -> dict:
    """
    Canonical local shape of an order, shared by every backend so that both
    return identical records for the same input.
    """
    if not isinstance(order, dict):
        raise ValueError("order must be an object")
    out = {k: order.get(k) for k in ORDER_FIELDS}
    out["id"] = str(order.get("id") or "").strip() or str(uuid.uuid4())
    out["items"] = list(order.get("items") or [])
    out["created_at"] = _to_iso(order.get("created_at"))
    out["created_at_utc"] = utc_sort_key(out["created_at"])
    for k in ("total_amount", "discount_amount", "tax_amount"):
        out[k] = _money(order.get(k))
    out["status"] = (str(order.get("status") or "").strip().upper() or None)
    out["original_status"] = (str(order.get("original_status") or "").strip().upper() or out["status"])
    out["sync_status"] = order.get("sync_status") or PENDING_SYNC
    out["sync_attempts"] = int(order.get("sync_attempts") or 0)
    return out


def merge_order(existing: Optional[dict], incoming: dict, *, keep_incoming_sync_status: bool = False) -> tuple[dict, bool]:
    """
    Row to persist when `incoming` is written over `existing` (upsert).

    Returns (row, kept_synced). An order the server already confirmed stays
    SYNCED: the server keeps its first write, so a local edit cannot travel.
    """
    row = dict(incoming)
    if keep_incoming_sync_status:
        if row.get("sync_status") not in (PENDING_SYNC, SYNCED):
            row["sync_status"] = PENDING_SYNC
        if row["sync_status"] == SYNCED and not row.get("synced_at"):
            row["synced_at"] = utc_now_iso()
    else:
        row["sync_status"] = PENDING_SYNC
        row["synced_at"] = None
        row["sync_attempts"] = 0
        row["last_sync_error"] = None
    if not existing:
        return row, False
    if existing.get("sync_status") == SYNCED:
        row["sync_status"] = SYNCED
        row["synced_at"] = existing.get("synced_at")
        row["sync_attempts"] = existing.get("sync_attempts") or 0
        row["last_sync_error"] = None
        return row, True
    if not keep_incoming_sync_status:
        row["sync_attempts"] = existing.get("sync_attempts") or 0
        row["last_sync_error"] = existing.get("last_sync_error")
    return row, False


class LocalStore:
    """
    Operation set every terminal backend implements. Orders are additive
    upserts; catalog/category/table/settings writers replace the whole cache
    because they receive a full snapshot from the server.
    """

    name = "abstract"

    def save_order(self, order: dict) -> dict:
        raise NotImplementedError

    def save_orders_bulk(self, orders: list) -> None:
        raise NotImplementedError

    def get_order(self, order_id: str) -> Optional[dict]:
        raise NotImplementedError

    def get_pending_orders(self) -> list:
        raise NotImplementedError

    def count_pending(self) -> int:
        raise NotImplementedError

    def get_recent_orders(self, limit: int = RECENT_ORDERS_LIMIT) -> list:
        raise NotImplementedError

    def get_held_orders(self) -> list:
        raise NotImplementedError

    def mark_orders_synced(self, ids) -> None:
        raise NotImplementedError

    def mark_orders_failed(self, errors: dict) -> None:
        raise NotImplementedError

    def get_sync_issues(self, min_attempts: int) -> list:
        raise NotImplementedError

    def save_products_bulk(self, products: list) -> None:
        raise NotImplementedError

    def save_categories_bulk(self, categories: list) -> None:
        raise NotImplementedError

    def save_settings_bulk(self, settings: list) -> None:
        raise NotImplementedError

    def save_tables_bulk(self, tables: list) -> None:
        raise NotImplementedError

    def get_products(self) -> list:
        raise NotImplementedError

    def get_categories(self) -> list:
        raise NotImplementedError

    def get_settings(self) -> list:
        raise NotImplementedError

    def get_tables(self) -> list:
        raise NotImplementedError

    def close(self) -> None:
        pass
