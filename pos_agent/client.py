import http.client
import json
import time
from typing import Optional
from urllib.error import HTTPError, URLError
from urllib.request import Request, urlopen

from .stores.base import LOCAL_ONLY_FIELDS

# Local snake_case keys -> /sync/orders wire names.
WIRE_NAMES = {
    "id": "id",
    "store_id": "storeId",
    "kot_no": "kotNo",
    "customer_name": "customerName",
    "customer_mobile": "customerMobile",
    "table_id": "tableId",
    "table_name": "tableName",
    "items": "items",
    "total_amount": "totalAmount",
    "discount_amount": "discountAmount",
    "tax_amount": "taxAmount",
    "payment_mode": "paymentMode",
    "status": "status",
    "original_status": "originalStatus",
    "created_at": "createdAt",
}


class SyncTransportError(Exception):
    """The server could not be reached or did not answer with a usable 2xx response."""

    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.status = status


def order_to_wire(order: dict) -> dict:
    out = {}
    for key, value in order.items():
        if key in LOCAL_ONLY_FIELDS or key not in WIRE_NAMES:
            continue
        if value is None:
            continue
        out[WIRE_NAMES[key]] = value
    return out


def _request_json(method: str, url: str, payload=None, headers=None, timeout: float = 10):
    data = json.dumps(payload, default=str).encode('utf-8') if payload is not None else None
    req = Request(url, data=data, headers=headers or {}, method=method)
    if data is not None:
        req.add_header('Content-Type', 'application/json')
    try:
        with urlopen(req, timeout=timeout) as resp:
            body = resp.read().decode('utf-8')
    except HTTPError as ex:
        # Server responded with a non-2xx status. Capture response body if possible.
        try:
            detail = ex.read().decode("utf-8")
        except Exception:
            detail = ""
        msg = f"http {ex.code} {ex.reason or ''}".strip()
        if detail:
            msg = f"{msg}: {detail[:1000]}"
        raise SyncTransportError(msg, status=ex.code) from ex
    except (URLError, TimeoutError, OSError) as ex:
        raise SyncTransportError(str(ex)) from ex
    except http.client.HTTPException as ex:
        # Truncated body or garbled status line.
        raise SyncTransportError(f"bad response from {url}: {ex!r}") from ex
    except UnicodeDecodeError as ex:
        raise SyncTransportError(f"undecodable response from {url}") from ex
    if not body:
        return {}
    try:
        return json.loads(body)
    except ValueError as ex:
        raise SyncTransportError(f"invalid json from {url}") from ex


class SyncClient:
    def __init__(self, base_url: str, session_token: str, timeout: float = 10):
        self.base_url = (base_url or "").strip().rstrip("/")
        self.session_token = (session_token or "").strip()
        self.timeout = float(timeout or 10)

    def _headers(self) -> dict:
        headers = {}
        if self.session_token:
            headers["Authorization"] = f"Bearer {self.session_token}"
        return headers

    def _url(self, path: str) -> str:
        if not self.base_url:
            raise SyncTransportError("missing api_base_url")
        return f"{self.base_url}{path}"

    def push_orders(self, orders: list) -> dict:
        payload = {"orders": [order_to_wire(o) for o in orders]}
        return _request_json("POST", self._url("/sync/orders"), payload, headers=self._headers(), timeout=self.timeout)

    def fetch_bootstrap(self) -> dict:
        return _request_json("GET", self._url("/sync/bootstrap"), headers=self._headers(), timeout=self.timeout)

    def health(self, timeout_s: float = 0.8) -> dict:
        url = f"{self.base_url}/health/live"
        started = time.time()
        try:
            data = _request_json("GET", self._url("/health/live"), timeout=max(0.2, float(timeout_s or 0.8)))
            ok = (data or {}).get("status") == "ok"
            return {"ok": ok, "error": None, "latency_ms": int((time.time() - started) * 1000), "url": url}
        except SyncTransportError as ex:
            return {"ok": False, "error": str(ex), "latency_ms": int((time.time() - started) * 1000), "url": url}
