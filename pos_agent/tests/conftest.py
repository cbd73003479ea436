import os
import sys

import pytest


# Tests import `pos_agent.*`, which requires the repo root on sys.path.
REPO_ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), "..", ".."))
if REPO_ROOT not in sys.path:
    sys.path.insert(0, REPO_ROOT)

from pos_agent.stores.object_store import BrowserStore  # noqa: E402
from pos_agent.stores.sqlite_store import SqliteStore  # noqa: E402


@pytest.fixture(params=["sqlite", "browser"])
def store(request, tmp_path):
    if request.param == "sqlite":
        s = SqliteStore(str(tmp_path / "pos.sqlite"))
    else:
        s = BrowserStore(str(tmp_path / "pos-objects.json"))
    yield s
    s.close()
