"""Snapshot capture and restore.

A snapshot is a transport-safe deep copy of an ``AgentState``.  Keys of
``ctx`` that only make sense inside a live run are dropped at capture
time, along with any value that cannot be serialized to JSON.  A pause
marker is lifted into ``metadata.paused`` so callers can see where the run
stopped without digging through ``ctx``.
"""

from __future__ import annotations

import logging
from typing import Any

from pydantic import ValidationError
from pydantic_core import PydanticSerializationError, to_json

from turnwise.agent_runtime.models.enums import CtxKey
from turnwise.agent_runtime.models.snapshot import RuntimeHint, Snapshot, SnapshotMetadata
from turnwise.agent_runtime.models.state import AgentState

logger = logging.getLogger(__name__)

TRANSIENT_CTX_KEYS = frozenset({CtxKey.PAUSED, CtxKey.NEEDS_SUMMARIZATION, CtxKey.GUARDRAIL_STORE})


class SnapshotError(ValueError):
    """Snapshot payload is corrupt or of an unknown shape."""

    def __init__(self, detail: str) -> None:
        super().__init__(f"Invalid snapshot: {detail}")


def _is_serializable(value: Any) -> bool:
    try:
        to_json(value)
    except (PydanticSerializationError, TypeError, ValueError):
        return False
    return True


def sanitize_ctx(ctx: dict[str, Any]) -> dict[str, Any]:
    """Return the durable subset of *ctx*."""
    kept: dict[str, Any] = {}
    for key, value in ctx.items():
        if key in TRANSIENT_CTX_KEYS or key.startswith("_"):
            continue
        if not _is_serializable(value):
            logger.debug("Dropping non-serializable ctx key %r from snapshot", key)
            continue
        kept[key] = value
    return kept


def _runtime_hint(agent: Any) -> RuntimeHint | None:
    if agent is None:
        return None
    tools = getattr(agent, "tool_names", None) or []
    return RuntimeHint(
        name=getattr(agent, "name", None),
        version=getattr(agent, "version", None),
        tools=list(tools),
    )


def capture_snapshot(
    state: AgentState,
    *,
    tag: str | None = None,
    include_runtime_hint: bool = True,
    agent: Any = None,
) -> Snapshot:
    """Take a snapshot of *state*.

    Parameters
    ----------
    state:
        State to capture.  Not modified.
    tag:
        Free-form label stored in ``metadata.tag``.
    include_runtime_hint:
        Record the agent's name, version and tool names.
    agent:
        Agent to describe in the hint; defaults to ``state.agent``.
    """
    paused = state.ctx.get(CtxKey.PAUSED)
    durable = state.model_copy(update={"ctx": sanitize_ctx(state.ctx)})
    # Round-trip through JSON mode for a detached, transport-safe copy.
    copied = AgentState.model_validate(durable.model_dump(mode="json"))

    return Snapshot(
        state=copied,
        metadata=SnapshotMetadata(tag=tag, paused=dict(paused) if isinstance(paused, dict) else None),
        runtime_hint=_runtime_hint(agent if agent is not None else state.agent) if include_runtime_hint else None,
    )


def restore_snapshot(
    snapshot: Snapshot,
    *,
    ctx: dict[str, Any] | None = None,
    merge_ctx: bool = True,
    agent: Any = None,
) -> AgentState:
    """Rebuild a live ``AgentState`` from *snapshot*.

    The snapshot is deep-copied, so the returned state shares nothing with
    it.  *ctx* is merged over the restored ctx (or replaces it when
    *merge_ctx* is false).  ``restored_from_snapshot`` is always set.
    """
    state = AgentState.model_validate(snapshot.state.model_dump(mode="json"))
    if ctx is not None:
        state.ctx = {**state.ctx, **ctx} if merge_ctx else dict(ctx)
    state.ctx[CtxKey.RESTORED_FROM_SNAPSHOT] = True
    state.agent = agent
    return state


def dump_snapshot(snapshot: Snapshot, *, indent: int | None = 2) -> str:
    return snapshot.model_dump_json(indent=indent)


def load_snapshot(data: str | bytes) -> Snapshot:
    """Parse JSON text into a ``Snapshot``.  Raises ``SnapshotError`` if malformed."""
    try:
        return Snapshot.model_validate_json(data)
    except ValidationError as exc:
        raise SnapshotError(str(exc)) from exc
