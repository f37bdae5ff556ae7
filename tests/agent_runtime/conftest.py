"""Shared fixtures for agent-runtime tests."""

from __future__ import annotations

import pytest

from turnwise.agent_runtime.context import RunContext
from turnwise.agent_runtime.models.events import AgentEvent


@pytest.fixture
def events() -> list[AgentEvent]:
    return []


@pytest.fixture
def run(events: list[AgentEvent]) -> RunContext:
    return RunContext(on_event=events.append)
