#!/usr/bin/env python3
"""
Terminal agent: local HTTP API for the order-taking UI plus the background
sync loop.

The UI saves orders here (always succeeds offline); the loop pushes the pending
queue to the server whenever it is reachable and refreshes reference data
afterwards.
"""

import argparse
import json
import os
import sys
import threading
from http.server import ThreadingHTTPServer, BaseHTTPRequestHandler
from typing import Optional
from urllib.parse import urlparse, parse_qs

from . import config as agent_config
from .bootstrap import pull_reference_data
from .client import SyncClient
from .dispatcher import SyncDispatcher
from .facade import init_local_persistence, close_local_persistence
from .logs import json_log
from .notify import Notifier, ActivityLog
from .stores.base import LocalStoreUnavailable

STATE = {
    "cfg": None,
    "persistence": None,
    "client": None,
    "dispatcher": None,
    "last_push": None,
    "last_pull": None,
}


def _is_loopback(ip: str) -> bool:
    ip = (ip or "").strip()
    return ip in {"127.0.0.1", "::1", "localhost"}


def _parse_host_header(host_header: str) -> tuple[Optional[str], Optional[int]]:
    host_header = (host_header or "").strip()
    if not host_header:
        return None, None
    if host_header.startswith("[") and "]" in host_header:
        # IPv6: "[::1]:7070"
        host_part, _, port_part = host_header.partition("]:")
        host = host_part.lstrip("[")
        try:
            port = int(port_part) if port_part else None
        except ValueError:
            port = None
        return host, port
    if ":" in host_header:
        host, _, port_part = host_header.rpartition(":")
        try:
            return host, int(port_part)
        except ValueError:
            return host, None
    return host_header, None


def _origin_is_trusted(origin: str, host_header: str) -> bool:
    """
    A browser-sent Origin is accepted only when it is loopback or same-origin
    as the Host header. Non-browser clients omit Origin and are not affected.
    """
    try:
        u = urlparse((origin or "").strip())
        oh, op, scheme = u.hostname, u.port, u.scheme
    except ValueError:
        return False
    if not oh or scheme not in {"http", "https"}:
        return False
    if oh in {"localhost", "127.0.0.1", "::1"}:
        return True
    hh, hp = _parse_host_header(host_header)
    if not hh:
        return False
    return oh == hh and (hp is None or op is None or hp == op)


def _maybe_send_cors_headers(handler):
    origin = (handler.headers.get("Origin") or "").strip()
    if not origin or not _origin_is_trusted(origin, handler.headers.get("Host") or ""):
        return
    handler.send_header("Access-Control-Allow-Origin", origin)
    handler.send_header("Vary", "Origin")
    handler.send_header("Access-Control-Allow-Headers", "Content-Type")
    handler.send_header("Access-Control-Allow-Methods", "GET,POST,OPTIONS")
    handler.send_header("Access-Control-Max-Age", "600")


def json_response(handler, payload, status=200):
    body = json.dumps(payload, default=str).encode('utf-8')
    handler.send_response(status)
    handler.send_header('Content-Type', 'application/json')
    _maybe_send_cors_headers(handler)
    handler.end_headers()
    handler.wfile.write(body)


def push_now() -> dict:
    res = STATE["dispatcher"].run_cycle()
    STATE["last_push"] = res
    if res.get("ok") and res.get("synced") and STATE["cfg"].get("pull_after_push"):
        STATE["last_pull"] = pull_reference_data(STATE["persistence"], STATE["client"])
    return res


def pull_now() -> dict:
    res = pull_reference_data(STATE["persistence"], STATE["client"])
    STATE["last_pull"] = res
    return res


def sync_loop(stop: threading.Event, interval_s: float):
    # Cadence only; overlapping cycles are refused by the dispatcher lock.
    while not stop.wait(max(1.0, float(interval_s))):
        try:
            push_now()
        except Exception as ex:
            json_log("error", "sync.loop.error", error=str(ex))


class Handler(BaseHTTPRequestHandler):
    def log_message(self, fmt, *args):
        json_log("info", "agent.http", client_ip=self.client_address[0] if self.client_address else None, line=fmt % args)

    def _reject(self) -> bool:
        client_ip = (self.client_address[0] if self.client_address else "")
        if not _is_loopback(client_ip) and not STATE["cfg"].get("allow_lan"):
            json_response(self, {"error": "forbidden", "hint": "agent is bound to localhost clients"}, status=403)
            return True
        origin = (self.headers.get("Origin") or "").strip()
        if origin and not _origin_is_trusted(origin, self.headers.get("Host") or ""):
            json_response(self, {"error": "forbidden"}, status=403)
            return True
        return False

    def do_OPTIONS(self):
        if self._reject():
            return
        self.send_response(200)
        _maybe_send_cors_headers(self)
        self.end_headers()

    def do_GET(self):
        parsed = urlparse(self.path)
        if self._reject():
            return
        if parsed.path.startswith('/api/'):
            self.handle_api_get(parsed)
            return
        json_response(self, {'error': 'not found'}, status=404)

    def do_POST(self):
        parsed = urlparse(self.path)
        if self._reject():
            return
        if parsed.path.startswith('/api/'):
            self.handle_api_post(parsed)
            return
        json_response(self, {'error': 'not found'}, status=404)

    def read_json(self):
        length = int(self.headers.get('Content-Length', 0))
        if length == 0:
            return {}
        raw = self.rfile.read(length).decode('utf-8')
        return json.loads(raw)

    def handle_api_get(self, parsed):
        persistence = STATE["persistence"]
        qs = parse_qs(parsed.query)

        if parsed.path == '/api/health':
            json_response(self, {'ok': True, 'runtime': persistence.runtime, 'backend': persistence.store.name})
            return
        if parsed.path == '/api/config':
            json_response(self, agent_config.public_config(STATE["cfg"]))
            return
        if parsed.path == '/api/orders/pending':
            json_response(self, {'orders': persistence.get_pending_orders()})
            return
        if parsed.path == '/api/orders/held':
            json_response(self, {'orders': persistence.get_held_orders()})
            return
        if parsed.path == '/api/orders/recent':
            try:
                limit = int((qs.get("limit") or ["50"])[0])
            except ValueError:
                limit = 50
            json_response(self, {'orders': persistence.get_recent_orders(limit)})
            return
        if parsed.path.startswith('/api/orders/'):
            order_id = parsed.path[len('/api/orders/'):].strip('/')
            order = persistence.get_order(order_id) if order_id else None
            if not order:
                json_response(self, {'error': 'order not found'}, status=404)
                return
            json_response(self, {'order': order})
            return
        if parsed.path == '/api/catalog':
            json_response(self, {
                'categories': persistence.get_categories(),
                'products': persistence.get_products(),
                'tables': persistence.get_tables(),
                'settings': persistence.get_settings(),
            })
            return
        if parsed.path == '/api/sync/status':
            cfg = STATE["cfg"]
            st = STATE["client"].health(timeout_s=0.8)
            json_response(self, {
                'ok': True,
                'server_ok': bool(st.get('ok')),
                'server_latency_ms': st.get('latency_ms'),
                'server_error': st.get('error'),
                'pending': persistence.count_pending(),
                'issues': persistence.get_sync_issues(int(cfg.get('failure_alert_attempts') or 5)),
                'last_push': STATE["last_push"],
                'last_pull': STATE["last_pull"],
            })
            return
        json_response(self, {'error': 'not found'}, status=404)

    def handle_api_post(self, parsed):
        persistence = STATE["persistence"]

        if parsed.path == '/api/orders':
            try:
                data = self.read_json()
            except ValueError:
                json_response(self, {'success': False, 'error': 'invalid json'}, status=400)
                return
            res = persistence.save_order(data.get('order') if 'order' in data else data)
            json_response(self, res, status=200 if res.get('success') else 500)
            return
        if parsed.path == '/api/sync/push':
            res = push_now()
            json_response(self, res, status=200 if res.get('ok') or res.get('skipped') else 502)
            return
        if parsed.path == '/api/sync/pull':
            res = pull_now()
            json_response(self, res, status=200 if res.get('ok') else 502)
            return
        json_response(self, {'error': 'not found'}, status=404)


def main():
    parser = argparse.ArgumentParser()
    parser.add_argument("--init-db", action="store_true", help="Initialize the local store and exit")
    parser.add_argument(
        "--config",
        default=os.environ.get("POS_CONFIG_PATH", agent_config.CONFIG_PATH),
        help="Config JSON path (default: pos_agent/config.json).",
    )
    parser.add_argument("--db", default=None, help="Local store path (default depends on runtime).")
    parser.add_argument("--runtime", default=None, choices=["desktop", "browser"], help="Override runtime detection.")
    parser.add_argument(
        "--host",
        default=os.environ.get("POS_HOST", "127.0.0.1"),
        help="HTTP host to bind (default: 127.0.0.1). Use 0.0.0.0 only together with allow_lan.",
    )
    parser.add_argument("--port", type=int, default=int(os.environ.get("POS_PORT", "7070")), help="HTTP port (default: 7070)")
    parser.add_argument("--no-sync-loop", action="store_true", help="Only sync on POST /api/sync/push")
    args = parser.parse_args()

    agent_config.CONFIG_PATH = os.path.abspath(args.config)
    cfg = agent_config.load_config()

    notifier = Notifier()
    if cfg.get("activity_log_path"):
        notifier.subscribe(ActivityLog(cfg["activity_log_path"]))

    try:
        persistence = init_local_persistence(
            runtime=args.runtime or cfg.get("runtime") or None,
            db_path=args.db or cfg.get("db_path") or None,
            notifier=notifier,
        )
    except LocalStoreUnavailable as ex:
        print(f"FATAL: local order store unavailable, refusing to take orders: {ex}", file=sys.stderr)
        sys.exit(2)

    if args.init_db:
        print("ok")
        return

    client = SyncClient(cfg.get("api_base_url"), cfg.get("session_token"), timeout=cfg.get("http_timeout_seconds") or 10)
    STATE.update(
        cfg=cfg,
        persistence=persistence,
        client=client,
        dispatcher=SyncDispatcher(persistence, client, failure_alert_attempts=cfg.get("failure_alert_attempts") or 5),
    )

    stop = threading.Event()
    if not args.no_sync_loop:
        threading.Thread(
            target=sync_loop,
            args=(stop, cfg.get("sync_interval_seconds") or 30),
            name="pos-sync-loop",
            daemon=True,
        ).start()

    server = ThreadingHTTPServer((args.host, args.port), Handler)
    public_host = "localhost" if args.host in {"127.0.0.1", "localhost"} else args.host
    print(f"POS Agent running on http://{public_host}:{args.port} ({persistence.runtime})")
    try:
        server.serve_forever()
    except KeyboardInterrupt:
        pass
    finally:
        stop.set()
        notifier.drain()
        close_local_persistence()


if __name__ == "__main__":
    main()
