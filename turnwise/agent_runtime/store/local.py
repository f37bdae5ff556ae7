"""Local filesystem snapshot store.

Stores snapshots as JSON files under a data root with optional namespace
prefix::

    {data_root}/{prefix}/snapshots/{key}/snapshot.json

When prefix is None, the path collapses to::

    {data_root}/snapshots/{key}/snapshot.json

File I/O runs in a worker thread via ``anyio.to_thread.run_sync``.  Writes
go to a temporary file in the target directory and are then renamed into
place, so a reader never sees half a snapshot.
"""

from __future__ import annotations

import contextlib
import os
import shutil
import tempfile
from functools import partial
from pathlib import Path

from anyio import to_thread

from turnwise.agent_runtime.execution.snapshot import dump_snapshot, load_snapshot
from turnwise.agent_runtime.models.snapshot import Snapshot

SNAPSHOT_FILE = "snapshot.json"


class InvalidSnapshotKeyError(ValueError):
    """Key would escape the store directory."""

    def __init__(self, key: str) -> None:
        super().__init__(f"Invalid snapshot key '{key}'")


class LocalSnapshotStore:
    """Local filesystem implementation of the SnapshotStore protocol."""

    def __init__(self, data_root: str | Path, prefix: str | None = None) -> None:
        base = Path(data_root)
        if prefix:
            base = base / prefix
        self._base = base / "snapshots"

    def _path(self, key: str) -> Path:
        if not key or key in {".", ".."} or "/" in key or "\\" in key:
            raise InvalidSnapshotKeyError(key)
        return self._base / key / SNAPSHOT_FILE

    # -- Write -----------------------------------------------------------------

    async def write_snapshot(self, key: str, snapshot: Snapshot) -> None:
        path = self._path(key)
        data = dump_snapshot(snapshot)
        await to_thread.run_sync(partial(_atomic_write, path, data))

    # -- Read ------------------------------------------------------------------

    async def read_snapshot(self, key: str) -> Snapshot:
        raw = await to_thread.run_sync(partial(_read_file, self._path(key)))
        return load_snapshot(raw)

    # -- Utilities -------------------------------------------------------------

    async def exists(self, key: str) -> bool:
        return await to_thread.run_sync(self._path(key).exists)

    async def delete(self, key: str) -> None:
        await to_thread.run_sync(partial(_rmtree, self._path(key).parent))


# -- Sync helpers (run in thread pool) -----------------------------------------


def _atomic_write(path: Path, data: str) -> None:
    """Write *data* to a temp file beside *path*, then rename over it."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(dir=path.parent, suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(data)
        os.replace(tmp_path, path)
    except BaseException:
        with contextlib.suppress(OSError):
            os.unlink(tmp_path)
        raise


def _read_file(path: Path) -> str:
    return path.read_text(encoding="utf-8")


def _rmtree(path: Path) -> None:
    if path.exists():
        shutil.rmtree(path)
