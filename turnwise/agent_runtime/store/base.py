"""Snapshot store interface.

Snapshots are written whenever a run pauses or waits for approval and read
back on resume.  The interface is async so remote backends can implement it
without blocking the loop.
"""

from __future__ import annotations

from typing import Protocol, runtime_checkable

from turnwise.agent_runtime.models.snapshot import Snapshot


@runtime_checkable
class SnapshotStore(Protocol):
    """Async protocol for persisting snapshots.

    Storage layout (keyed by an opaque caller-chosen key):
        {root}/snapshots/{key}/snapshot.json
    """

    async def write_snapshot(self, key: str, snapshot: Snapshot) -> None:
        """Write (or overwrite) the snapshot stored under *key*."""
        ...

    async def read_snapshot(self, key: str) -> Snapshot:
        """Read a snapshot.  Raises ``FileNotFoundError`` if not found."""
        ...

    async def exists(self, key: str) -> bool:
        ...

    async def delete(self, key: str) -> None:
        """Delete the snapshot under *key*.  No-op if not found."""
        ...
