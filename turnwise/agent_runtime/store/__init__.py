"""Snapshot store implementations."""

from __future__ import annotations

from turnwise.agent_runtime.settings import TurnwiseSettings, get_settings
from turnwise.agent_runtime.store.base import SnapshotStore
from turnwise.agent_runtime.store.local import InvalidSnapshotKeyError, LocalSnapshotStore


def create_snapshot_store(settings: TurnwiseSettings | None = None) -> SnapshotStore:
    """Create the snapshot store configured by ``data_root`` / ``data_prefix``."""
    settings = settings or get_settings()
    return LocalSnapshotStore(settings.data_root, prefix=settings.data_prefix)


__all__ = ["InvalidSnapshotKeyError", "LocalSnapshotStore", "SnapshotStore", "create_snapshot_store"]
