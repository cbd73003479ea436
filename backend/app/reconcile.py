"""
Server-side order reconciliation for terminal sync batches.

Orders are processed one at a time in submission order. Each runs inside its
own savepoint, so one bad order turns into a FAILED result without aborting
the rest of the batch. The client-generated order id is the idempotency key:
an id already on record is reported ALREADY_EXISTS and never rewritten.
"""

import json
from datetime import datetime
from decimal import Decimal
from typing import Annotated, Any, Optional

from pydantic import BaseModel, BeforeValidator, ConfigDict, Field, ValidationError

from .db import set_company_context
from .logs import json_log
from .validation import OrderStatus, PaymentMode

SYNCED = "SYNCED"
ALREADY_EXISTS = "ALREADY_EXISTS"
FAILED = "FAILED"

DEFAULT_STATUS = "COMPLETED"
MISSING_ORIGINAL_STATUS = "missing_original_status"


def _parse_items(v):
    # Older terminals sent line items as JSON text.
    if isinstance(v, (str, bytes)):
        try:
            return json.loads(v)
        except ValueError as ex:
            raise ValueError(f"items is not valid JSON: {ex}") from ex
    return v


def _opt_str(v):
    if v is None:
        return None
    s = str(v).strip()
    return s or None


OptStr = Annotated[Optional[str], BeforeValidator(_opt_str)]


class SyncOrderIn(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    id: Annotated[str, BeforeValidator(_opt_str), Field(min_length=1, max_length=64)]
    store_id: OptStr = Field(None, alias="storeId")
    kot_no: OptStr = Field(None, alias="kotNo")
    customer_name: OptStr = Field(None, alias="customerName")
    customer_mobile: OptStr = Field(None, alias="customerMobile")
    table_id: OptStr = Field(None, alias="tableId")
    table_name: OptStr = Field(None, alias="tableName")
    items: Annotated[list[dict[str, Any]], BeforeValidator(_parse_items)] = Field(default_factory=list)
    total_amount: Decimal = Field(Decimal("0"), alias="totalAmount")
    discount_amount: Decimal = Field(Decimal("0"), alias="discountAmount")
    tax_amount: Decimal = Field(Decimal("0"), alias="taxAmount")
    payment_mode: Optional[PaymentMode] = Field(None, alias="paymentMode")
    # Terminal-local bookkeeping (e.g. PENDING_SYNC); never stored.
    status: OptStr = None
    original_status: Optional[OrderStatus] = Field(None, alias="originalStatus")
    # Accepts ISO-8601 or epoch seconds/milliseconds; stored as the same instant.
    created_at: datetime = Field(alias="createdAt")


def _validation_message(ex: ValidationError) -> str:
    parts = []
    for err in ex.errors():
        loc = ".".join(str(p) for p in err.get("loc") or ()) or "order"
        parts.append(f"{loc}: {err.get('msg')}")
    return "invalid order: " + "; ".join(parts)


def _raw_id(raw) -> Optional[str]:
    if isinstance(raw, dict):
        return _opt_str(raw.get("id"))
    return None


def _order_exists(cur, company_id: str, order_id: str) -> bool:
    cur.execute(
        """
        SELECT id
        FROM orders
        WHERE company_id = %s AND id = %s
        """,
        (company_id, order_id),
    )
    return cur.fetchone() is not None


def _insert_order(cur, actor: dict, o: SyncOrderIn, status: str, status_source: str) -> bool:
    cur.execute(
        """
        INSERT INTO orders
          (id, company_id, store_id, user_id, kot_no, customer_name, customer_mobile,
           table_id, table_name, items, total_amount, discount_amount, tax_amount,
           payment_mode, status, status_source, created_at)
        VALUES
          (%s, %s, %s, %s, %s, %s, %s,
           %s, %s, %s::jsonb, %s, %s, %s,
           %s, %s, %s, %s)
        ON CONFLICT (id) DO NOTHING
        RETURNING id
        """,
        (
            o.id,
            actor["company_id"],
            actor["default_store_id"],
            actor["actor_id"],
            o.kot_no,
            o.customer_name,
            o.customer_mobile,
            o.table_id,
            o.table_name,
            json.dumps(o.items, default=str),
            o.total_amount,
            o.discount_amount,
            o.tax_amount,
            o.payment_mode,
            status,
            status_source,
            o.created_at,
        ),
    )
    return cur.fetchone() is not None


def reconcile_one(conn, actor: dict, raw) -> dict:
    try:
        o = SyncOrderIn.model_validate(raw)
    except ValidationError as ex:
        return {"id": _raw_id(raw), "status": FAILED, "error": _validation_message(ex)}

    company_id = actor["company_id"]
    warning = None
    if o.original_status:
        status, status_source = o.original_status, "original_status"
    else:
        status, status_source = DEFAULT_STATUS, "legacy_default"
        warning = MISSING_ORIGINAL_STATUS

    # Savepoint: a failing statement only rolls back this order.
    with conn.transaction():
        with conn.cursor() as cur:
            if _order_exists(cur, company_id, o.id):
                return {"id": o.id, "status": ALREADY_EXISTS}
            if not _insert_order(cur, actor, o, status, status_source):
                # Lost a race with a concurrent batch, or the id belongs to another tenant.
                if _order_exists(cur, company_id, o.id):
                    return {"id": o.id, "status": ALREADY_EXISTS}
                return {"id": o.id, "status": FAILED, "error": "order id already in use"}

    res = {"id": o.id, "status": SYNCED}
    if warning:
        res["warning"] = warning
        json_log(
            "warning",
            "sync.order.status_defaulted",
            order_id=o.id,
            company_id=company_id,
            actor_id=actor["actor_id"],
            status=status,
        )
    return res


def reconcile_orders(conn, actor: dict, orders: list) -> dict:
    set_company_context(conn, actor["company_id"])
    results = []
    for raw in orders:
        try:
            res = reconcile_one(conn, actor, raw)
        except Exception as ex:
            res = {"id": _raw_id(raw), "status": FAILED, "error": str(ex)}
        if res["status"] == FAILED:
            json_log(
                "warning",
                "sync.order.failed",
                order_id=res.get("id"),
                company_id=actor["company_id"],
                actor_id=actor["actor_id"],
                error=res.get("error"),
            )
        results.append(res)

    return {
        "success": True,
        "results": results,
        "syncedIds": [r["id"] for r in results if r["status"] in {SYNCED, ALREADY_EXISTS}],
        "failedIds": [r["id"] for r in results if r["status"] == FAILED and r.get("id")],
    }
