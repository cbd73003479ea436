import os
import sys


# Tests import `backend.*`, which requires the repo root on sys.path.
REPO_ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), "..", ".."))
if REPO_ROOT not in sys.path:
    sys.path.insert(0, REPO_ROOT)

# Settings and pools are built at import time; keep tests off any real database
# and on production-style error bodies.
os.environ.setdefault("APP_ENV", "test")
os.environ.setdefault("DATABASE_URL", "postgresql://localhost:1/restopos_test")
os.environ.setdefault("SYNC_MAX_BATCH", "500")
