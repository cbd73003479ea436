"""
Best-effort side channel for order capture (kitchen tickets, activity log, ...).

Events are queued and delivered on a background thread, so a slow or broken
subscriber can never block or fail the save that triggered it.
"""

import json
import queue
import threading
from typing import Callable

from .logs import json_log


class Notifier:
    def __init__(self):
        self._subscribers: list[Callable[[str, dict], None]] = []
        self._queue: queue.Queue = queue.Queue()
        self._thread = None
        self._start_lock = threading.Lock()

    def subscribe(self, fn: Callable[[str, dict], None]):
        self._subscribers.append(fn)
        return fn

    def publish(self, event: str, payload: dict) -> None:
        if not self._subscribers:
            return
        self._ensure_worker()
        self._queue.put((event, payload))

    def drain(self) -> None:
        """Block until every queued event has been delivered (tests, shutdown)."""
        if self._thread is not None:
            self._queue.join()

    def _ensure_worker(self):
        with self._start_lock:
            if self._thread is None:
                self._thread = threading.Thread(target=self._run, name="pos-notifier", daemon=True)
                self._thread.start()

    def _run(self):
        while True:
            event, payload = self._queue.get()
            try:
                for fn in list(self._subscribers):
                    try:
                        fn(event, payload)
                    except Exception as ex:
                        json_log(
                            "warning",
                            "notify.subscriber_failed",
                            notify_event=event,
                            subscriber=getattr(fn, "__name__", repr(fn)),
                            error=str(ex),
                        )
            finally:
                self._queue.task_done()


class ActivityLog:
    """Appends one JSON line per event; the local trail operators read when a sync goes wrong."""

    def __init__(self, path: str):
        self.path = path
        self._lock = threading.Lock()

    def __call__(self, event: str, payload: dict) -> None:
        line = json.dumps({"event": event, **(payload or {})}, default=str)
        with self._lock:
            with open(self.path, "a", encoding="utf-8") as f:
                f.write(line + "\n")
