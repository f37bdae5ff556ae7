from __future__ import annotations

import json
from pathlib import Path
from typing import TYPE_CHECKING

import click

if TYPE_CHECKING:
    from turnwise.agent_runtime.models.snapshot import Snapshot


@click.group()
@click.option("--log-level", default=None, help="Log level (default: from TURNWISE_LOG_LEVEL or INFO).")
def main(log_level: str | None) -> None:
    """Turnwise - turn-loop controller for tool-using agents."""
    from turnwise.agent_runtime.log import setup_logging
    from turnwise.agent_runtime.settings import get_settings

    setup_logging(log_level or get_settings().log_level)


@main.group()
def snapshot() -> None:
    """Inspect saved snapshots."""


def _load(path: Path) -> Snapshot:
    from turnwise.agent_runtime.execution.snapshot import SnapshotError, load_snapshot

    try:
        return load_snapshot(path.read_bytes())
    except SnapshotError as exc:
        raise click.ClickException(str(exc)) from exc


@snapshot.command()
@click.argument("path", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--json", "as_json", is_flag=True, default=False, help="Print machine-readable JSON.")
def inspect(path: Path, as_json: bool) -> None:
    """Show counters, usage and loop markers of the snapshot at PATH."""
    from turnwise.agent_runtime.models.enums import ApprovalStatus, CtxKey

    snap = _load(path)
    state = snap.state
    totals = state.usage.grand_total()
    info = {
        "created_at": snap.metadata.created_at.isoformat(),
        "tag": snap.metadata.tag,
        "agent": snap.runtime_hint.name if snap.runtime_hint else None,
        "messages": len(state.messages),
        "tool_call_count": state.tool_call_count,
        "summaries": len(state.summaries),
        "archived_tool_outputs": len(state.tool_history_archived),
        "pending_approvals": sum(1 for a in state.pending_approvals if a.status == ApprovalStatus.PENDING),
        "usage": totals.model_dump(),
        "paused": snap.metadata.paused,
        "cancelled": state.ctx.get(CtxKey.CANCELLED),
        "awaiting_approval": bool(state.ctx.get(CtxKey.AWAITING_APPROVAL)),
    }
    if as_json:
        click.echo(json.dumps(info, indent=2, default=str))
        return
    for key, value in info.items():
        click.echo(f"{key}: {value}")


@snapshot.command()
@click.argument("key")
def show(key: str) -> None:
    """Print the snapshot stored under KEY in the configured data root as JSON."""
    import anyio

    from turnwise.agent_runtime.execution.snapshot import SnapshotError, dump_snapshot
    from turnwise.agent_runtime.store import InvalidSnapshotKeyError, create_snapshot_store

    store = create_snapshot_store()
    try:
        snap = anyio.run(store.read_snapshot, key)
    except FileNotFoundError as exc:
        msg = f"No snapshot stored under '{key}'"
        raise click.ClickException(msg) from exc
    except (InvalidSnapshotKeyError, SnapshotError) as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(dump_snapshot(snap))


@snapshot.command()
@click.argument("path", type=click.Path(exists=True, dir_okay=False, path_type=Path))
def tokens(path: Path) -> None:
    """Print the estimated token size of the message history at PATH."""
    from turnwise.agent_runtime.execution.tokens import estimate_messages

    snap = _load(path)
    click.echo(str(estimate_messages(snap.state.messages)))
