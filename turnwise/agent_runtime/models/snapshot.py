"""Serializable snapshot envelope."""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any

from pydantic import BaseModel, Field

from turnwise.agent_runtime.models.state import AgentState


class SnapshotMetadata(BaseModel):
    created_at: datetime = Field(default_factory=lambda: datetime.now(tz=UTC))
    tag: str | None = None
    paused: dict[str, Any] | None = None
    """Pause marker lifted out of ``ctx`` at capture time, if the state was paused."""


class RuntimeHint(BaseModel):
    """Informational description of the agent that produced the snapshot."""

    name: str | None = None
    version: str | None = None
    tools: list[str] = Field(default_factory=list)


class Snapshot(BaseModel):
    state: AgentState
    metadata: SnapshotMetadata = Field(default_factory=SnapshotMetadata)
    runtime_hint: RuntimeHint | None = None
