import json
import os

ROOT = os.path.dirname(os.path.abspath(__file__))
CONFIG_PATH = os.path.join(ROOT, 'config.json')  # can be overridden via CLI/env (see agent.main())

DEFAULT_CONFIG = {
    'api_base_url': 'http://localhost:8001',
    # Bearer session token issued by the auth subsystem for the signed-in actor.
    'session_token': '',
    # Informational only; the server files synced orders under the actor's default store.
    'store_id': '',
    # '' = auto-detect (see facade.detect_runtime).
    'runtime': '',
    'db_path': '',
    'sync_interval_seconds': 30,
    'http_timeout_seconds': 10,
    # Pending orders that failed this many times are reported for operator attention.
    'failure_alert_attempts': 5,
    # Refresh reference data after a push that synced something.
    'pull_after_push': True,
    # Accept API calls from other machines on the LAN (off: localhost only).
    'allow_lan': False,
    # JSON-lines trail of saved orders; '' disables it.
    'activity_log_path': '',
}

_ENV_OVERRIDES = {
    'POS_API_BASE_URL': 'api_base_url',
    'POS_SESSION_TOKEN': 'session_token',
    'POS_STORE_ID': 'store_id',
    'POS_RUNTIME': 'runtime',
    'POS_DB_PATH': 'db_path',
}


def _env_int(name: str, default: int) -> int:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def load_config(path=None):
    path = path or CONFIG_PATH
    if not os.path.exists(path):
        save_config(DEFAULT_CONFIG, path)
    with open(path, 'r', encoding='utf-8') as f:
        data = json.load(f)
    cfg = {**DEFAULT_CONFIG, **data}
    # Allow Docker/ops to override without rewriting the on-disk config.
    for env_name, key in _ENV_OVERRIDES.items():
        if os.environ.get(env_name):
            cfg[key] = os.environ[env_name]
    cfg['sync_interval_seconds'] = _env_int('POS_SYNC_INTERVAL_SECONDS', int(cfg.get('sync_interval_seconds') or 30))
    return cfg


def save_config(data, path=None):
    with open(path or CONFIG_PATH, 'w', encoding='utf-8') as f:
        json.dump(data, f, indent=2)


def public_config(cfg: dict) -> dict:
    """
    Config payload safe to expose via the local HTTP API (never the session token).
    """
    safe = dict(cfg or {})
    safe.pop("session_token", None)
    return safe
