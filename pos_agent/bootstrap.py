"""
Server -> terminal reference data pull (catalog, categories, tables, settings).

Each section is a full snapshot and replaces the local cache wholesale. A
section missing from the response leaves its cache untouched. Orders are never
part of this pull.
"""

from datetime import datetime, timezone

from .client import SyncTransportError
from .logs import json_log


def _store_settings(data: dict) -> list:
    settings = []
    store = data.get("store") or {}
    if store:
        settings.append({"key": "store_id", "value": store.get("id")})
        settings.append({"key": "store_name", "value": store.get("name")})
        settings.append({"key": "store_address", "value": store.get("location") or ""})
    for s in data.get("settings") or []:
        key = str((s or {}).get("key") or "").strip()
        if key:
            settings.append({"key": f"setting_{key}", "value": s.get("value")})
    return settings


def apply_bootstrap(persistence, data: dict) -> dict:
    counts = {}
    if "settings" in data or "store" in data:
        settings = _store_settings(data)
        persistence.save_settings_bulk(settings)
        counts["settings"] = len(settings)
    if "categories" in data:
        persistence.save_categories_bulk(data.get("categories") or [])
        counts["categories"] = len(data.get("categories") or [])
    if "products" in data:
        persistence.save_products_bulk(data.get("products") or [])
        counts["products"] = len(data.get("products") or [])
    if "tables" in data:
        persistence.save_tables_bulk(data.get("tables") or [])
        counts["tables"] = len(data.get("tables") or [])
    return counts


def pull_reference_data(persistence, client) -> dict:
    try:
        data = client.fetch_bootstrap()
    except SyncTransportError as ex:
        json_log("warning", "bootstrap.pull.unreachable", error=str(ex))
        return {"ok": False, "error": str(ex)}
    counts = apply_bootstrap(persistence, data or {})
    server_time = (data or {}).get("server_time") or datetime.now(timezone.utc).isoformat()
    json_log("info", "bootstrap.pull.done", server_time=server_time, **counts)
    return {"ok": True, "server_time": server_time, **counts}
