"""Unit tests for RunRegistry."""

from __future__ import annotations

import asyncio

import pytest

from turnwise.agent_runtime.context import RunContext
from turnwise.agent_runtime.models.enums import CancelReason
from turnwise.agent_runtime.registry import RunAlreadyActiveError, RunRegistry, ShuttingDownError


@pytest.fixture
def registry() -> RunRegistry:
    return RunRegistry()


def test_register_and_unregister(registry: RunRegistry) -> None:
    run = RunContext(run_id="r1")
    registry.register(run)

    assert registry.active_count == 1
    assert registry.get("r1") is run
    assert registry.all_runs() == [run]

    assert registry.unregister("r1") is run
    assert registry.active_count == 0
    assert registry.get("r1") is None
    assert registry.unregister("r1") is None


def test_duplicate_run_id_refused(registry: RunRegistry) -> None:
    registry.register(RunContext(run_id="r1"))
    with pytest.raises(RunAlreadyActiveError, match="'r1' is already active"):
        registry.register(RunContext(run_id="r1"))


def test_cancel_one(registry: RunRegistry) -> None:
    run = RunContext(run_id="r1")
    registry.register(run)

    assert registry.cancel("r1") is True
    assert run.check_cancelled() == CancelReason.CANCELLED
    assert registry.cancel("missing") is False


def test_cancel_all(registry: RunRegistry) -> None:
    runs = [RunContext(run_id=f"r{i}") for i in range(3)]
    for run in runs:
        registry.register(run)

    assert registry.cancel_all() == 3
    assert all(r.check_cancelled() == CancelReason.CANCELLED for r in runs)
    assert RunRegistry().cancel_all() == 0


def test_shutdown_refuses_new_runs(registry: RunRegistry) -> None:
    registry.begin_shutdown()
    assert registry.is_shutting_down
    with pytest.raises(ShuttingDownError):
        registry.register(RunContext())


async def test_wait_until_drained(registry: RunRegistry) -> None:
    assert await registry.wait_until_drained(timeout=0.1) is True

    registry.register(RunContext(run_id="r1"))
    assert await registry.wait_until_drained(timeout=0.01) is False

    async def finish_later() -> None:
        await asyncio.sleep(0.01)
        registry.unregister("r1")

    task = asyncio.create_task(finish_later())
    assert await registry.wait_until_drained(timeout=1) is True
    await task
