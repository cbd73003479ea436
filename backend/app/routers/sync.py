from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel
from datetime import datetime, timezone
from typing import Any, Optional
import time

from ..config import settings
from ..db import get_conn, set_company_context
from ..deps import require_actor
from ..logs import json_log
from ..reconcile import reconcile_orders

router = APIRouter(prefix="/sync", tags=["sync"])


class SyncOrdersIn(BaseModel):
    # Orders are validated one by one so a malformed order fails alone.
    orders: Optional[list[Any]] = None


@router.post("/orders")
def sync_orders(data: SyncOrdersIn, actor=Depends(require_actor)):
    orders = data.orders or []
    if not orders:
        return {"success": True, "count": 0}
    if settings.sync_max_batch and len(orders) > settings.sync_max_batch:
        raise HTTPException(status_code=413, detail=f"too many orders (max {settings.sync_max_batch})")

    started = time.time()
    json_log(
        "info",
        "sync.batch.received",
        actor_id=actor["actor_id"],
        company_id=actor["company_id"],
        store_id=actor["default_store_id"],
        count=len(orders),
    )
    with get_conn() as conn:
        res = reconcile_orders(conn, actor, orders)
    json_log(
        "info",
        "sync.batch.done",
        actor_id=actor["actor_id"],
        count=len(orders),
        synced=len(res["syncedIds"]),
        failed=sum(1 for r in res["results"] if r["status"] == "FAILED"),
        duration_ms=int((time.time() - started) * 1000),
    )
    return res


@router.get("/bootstrap")
def sync_bootstrap(actor=Depends(require_actor)):
    store_id = actor["default_store_id"]
    with get_conn() as conn:
        set_company_context(conn, actor["company_id"])
        with conn.cursor() as cur:
            cur.execute(
                """
                SELECT id, name, location
                FROM stores
                WHERE company_id = %s AND id = %s
                """,
                (actor["company_id"], store_id),
            )
            store = cur.fetchone()
            if not store:
                raise HTTPException(status_code=404, detail="store not found")

            cur.execute(
                """
                SELECT key, value
                FROM store_settings
                WHERE store_id = %s
                ORDER BY key
                """,
                (store_id,),
            )
            store_settings = cur.fetchall()

            cur.execute(
                """
                SELECT id, name, image, sort_order
                FROM categories
                WHERE store_id = %s
                ORDER BY sort_order, name
                """,
                (store_id,),
            )
            categories = cur.fetchall()

            cur.execute(
                """
                SELECT id, name, price, category_id, description, image, is_available, sort_order,
                       COALESCE(addons, '[]'::jsonb) AS addons
                FROM products
                WHERE store_id = %s
                ORDER BY sort_order, name
                """,
                (store_id,),
            )
            products = cur.fetchall()

            cur.execute(
                """
                SELECT id, name, capacity, status, store_id, sort_order
                FROM restaurant_tables
                WHERE store_id = %s
                ORDER BY sort_order, name
                """,
                (store_id,),
            )
            tables = cur.fetchall()

    return {
        "store": store,
        "settings": store_settings,
        "categories": categories,
        "products": products,
        "tables": tables,
        "server_time": datetime.now(timezone.utc).isoformat(),
    }
