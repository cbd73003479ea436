"""
Terminal -> server order sync (one dispatch cycle at a time).

Cycle:
  1. snapshot the PENDING_SYNC queue
  2. push it as one batch to POST /sync/orders
  3. mark exactly the confirmed subset of that snapshot as SYNCED

Orders the server reports FAILED stay PENDING_SYNC (attempt count + last error
recorded) and go out again next cycle; there is no retry cap. A cycle that
cannot reach the server changes nothing locally.
"""

import threading
import time

from .client import SyncTransportError
from .logs import json_log

SYNCED_OUTCOMES = {"SYNCED", "ALREADY_EXISTS"}
FAILED_OUTCOME = "FAILED"

DEFAULT_FAILURE_ALERT_ATTEMPTS = 5


def partition_results(response: dict) -> tuple[list, dict]:
    """
    Split a /sync/orders response into (synced_ids, {failed_id: error}).
    Per-order `results` win; `syncedIds`/`failedIds` cover servers that only send the id lists.
    """
    synced: list = []
    failed: dict = {}
    results = response.get("results")
    if isinstance(results, list):
        for r in results:
            if not isinstance(r, dict) or not r.get("id"):
                continue
            oid = str(r["id"])
            status = str(r.get("status") or "").upper()
            if status in SYNCED_OUTCOMES:
                synced.append(oid)
            elif status == FAILED_OUTCOME:
                failed[oid] = str(r.get("error") or "sync failed")
        return synced, failed
    synced = [str(i) for i in response.get("syncedIds") or [] if i]
    failed = {str(i): "sync failed" for i in response.get("failedIds") or [] if i}
    return synced, failed


class SyncDispatcher:
    def __init__(self, persistence, client, failure_alert_attempts: int = DEFAULT_FAILURE_ALERT_ATTEMPTS):
        self.persistence = persistence
        self.client = client
        self.failure_alert_attempts = max(1, int(failure_alert_attempts or DEFAULT_FAILURE_ALERT_ATTEMPTS))
        self._running = threading.Lock()

    def run_cycle(self) -> dict:
        if not self._running.acquire(blocking=False):
            return {"ok": False, "skipped": True, "error": "sync already running"}
        try:
            return self._run_cycle()
        finally:
            self._running.release()

    def _run_cycle(self) -> dict:
        pending = self.persistence.get_pending_orders()
        if not pending:
            return {"ok": True, "sent": 0, "synced": [], "failed": [], "needs_attention": []}

        snapshot = {o["id"] for o in pending}
        started = time.time()
        try:
            res = self.client.push_orders(pending)
        except SyncTransportError as ex:
            # Offline, timeout or non-2xx: leave every order exactly as it was.
            json_log("warning", "sync.push.unreachable", pending=len(pending), status=ex.status, error=str(ex))
            return {"ok": False, "sent": 0, "error": str(ex)}

        if not isinstance(res, dict) or not res.get("success"):
            err = (res or {}).get("error") if isinstance(res, dict) else None
            json_log("warning", "sync.push.rejected", pending=len(pending), error=err)
            return {"ok": False, "sent": 0, "error": err or "server did not confirm the batch"}

        synced, failed = partition_results(res)
        # Only ever settle what this cycle actually sent; orders saved meanwhile wait for the next cycle.
        synced = [oid for oid in synced if oid in snapshot]
        failed = {oid: err for oid, err in failed.items() if oid in snapshot}

        self.persistence.mark_orders_synced(synced)
        self.persistence.mark_orders_failed(failed)

        for r in res.get("results") or []:
            if isinstance(r, dict) and r.get("warning"):
                json_log("warning", "sync.order.server_warning", order_id=r.get("id"), warning=r.get("warning"))

        needs_attention = []
        if failed:
            for o in self.persistence.get_sync_issues(self.failure_alert_attempts):
                if o["id"] not in failed:
                    continue
                needs_attention.append(o["id"])
                # Still retried every cycle; this only surfaces it to the operator.
                json_log(
                    "error",
                    "sync.order.needs_attention",
                    order_id=o["id"],
                    attempts=o.get("sync_attempts"),
                    error=o.get("last_sync_error"),
                )

        json_log(
            "info",
            "sync.push.done",
            sent=len(pending),
            synced=len(synced),
            failed=len(failed),
            duration_ms=int((time.time() - started) * 1000),
        )
        return {
            "ok": True,
            "sent": len(pending),
            "synced": synced,
            "failed": sorted(failed),
            "needs_attention": needs_attention,
        }
