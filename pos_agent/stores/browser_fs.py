"""
Durable storage for the browser runtime.

Pyodide's default filesystem lives in memory and is gone after a page reload.
The object store document therefore has to sit under an IndexedDB-backed
mount (Emscripten IDBFS): the mount is populated from IndexedDB once at
startup, and every committed write is flushed back with `FS.syncfs(false)`.

`open_store` refuses a browser path that is not under a mounted root, so a
terminal can never take orders into memory-only storage.
"""

import asyncio
import posixpath
import threading
from typing import Callable, Optional

from ..logs import json_log
from .base import LocalStoreUnavailable

PERSISTENT_ROOT = "/pos-data"

# root -> IdbfsMount, filled by mount_persistent_root().
_mounts: dict = {}


class IdbfsMount:
    def __init__(self, fs, root: str = PERSISTENT_ROOT, wrap_callback: Optional[Callable] = None, mount_opts=None):
        self.fs = fs
        self.root = posixpath.normpath(root)
        self._wrap = wrap_callback
        self._mount_opts = mount_opts if mount_opts is not None else {}
        self._lock = threading.Lock()
        self._in_flight = False
        self._dirty = False

    def _callback(self, fn):
        if self._wrap is None:
            return fn
        holder = {}

        def _once(*args):
            try:
                fn(*args)
            finally:
                holder["proxy"].destroy()

        holder["proxy"] = self._wrap(_once)
        return holder["proxy"]

    def contains(self, path: str) -> bool:
        p = posixpath.normpath(path or "")
        return p == self.root or p.startswith(self.root.rstrip("/") + "/")

    async def mount(self):
        if not self.fs.analyzePath(self.root).exists:
            self.fs.mkdir(self.root)
        self.fs.mount(self.fs.filesystems.IDBFS, self._mount_opts, self.root)

        done = asyncio.get_running_loop().create_future()

        def _loaded(err=None):
            if done.done():
                return
            if err:
                done.set_exception(LocalStoreUnavailable(f"cannot load {self.root} from IndexedDB: {err}"))
            else:
                done.set_result(None)

        self.fs.syncfs(True, self._callback(_loaded))
        await done
        json_log("info", "local.browser_fs.mounted", root=self.root)

    def flush(self):
        """Start writing the mount back to IndexedDB; at most one sync runs at a time."""
        with self._lock:
            if self._in_flight:
                self._dirty = True
                return
            self._in_flight = True
        self.fs.syncfs(False, self._callback(self._flushed))

    def _flushed(self, err=None):
        if err:
            # syncfs copies the whole mount, so the next flush carries this write too.
            json_log("error", "local.browser_fs.flush_failed", root=self.root, error=str(err))
        with self._lock:
            again = self._dirty
            self._dirty = False
            self._in_flight = again
        if again:
            self.fs.syncfs(False, self._callback(self._flushed))


def pyodide_mount(root: str = PERSISTENT_ROOT) -> IdbfsMount:
    # These modules exist only inside a Pyodide interpreter.
    import pyodide_js
    from js import Object
    from pyodide.ffi import create_proxy, to_js

    return IdbfsMount(
        pyodide_js.FS,
        root,
        wrap_callback=create_proxy,
        mount_opts=to_js({}, dict_converter=Object.fromEntries),
    )


async def mount_persistent_root(root: str = PERSISTENT_ROOT, mount: Optional[IdbfsMount] = None) -> IdbfsMount:
    key = mount.root if mount is not None else posixpath.normpath(root)
    if key in _mounts:
        return _mounts[key]
    m = mount or pyodide_mount(root)
    await m.mount()
    _mounts[m.root] = m
    return m


def mount_for(path: str) -> Optional[IdbfsMount]:
    for m in _mounts.values():
        if m.contains(path):
            return m
    return None
