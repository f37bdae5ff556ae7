"""Tests for the loguru logging bridge."""

from __future__ import annotations

import logging
from collections.abc import Iterator

import pytest
from loguru import logger

from turnwise.agent_runtime.log import setup_logging


@pytest.fixture
def captured() -> Iterator[list[str]]:
    setup_logging("warning")
    messages: list[str] = []
    sink_id = logger.add(lambda m: messages.append(m.record["message"]), level="WARNING")
    yield messages
    logger.remove(sink_id)
    logging.basicConfig(handlers=[], force=True)


def test_stdlib_records_reach_loguru(captured: list[str]) -> None:
    logging.getLogger("turnwise.agent_runtime.execution.controller").warning("engine %s failed", "x")
    assert captured == ["engine x failed"]


def test_level_filters_records(captured: list[str]) -> None:
    logging.getLogger("turnwise.test").info("too quiet")
    logger.info("also too quiet")
    assert captured == []
