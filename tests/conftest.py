"""Shared test fixtures.

Every test runs with a clean ``TURNWISE_*`` environment and a fresh settings
cache, so process defaults never leak in from the developer's shell or a
local ``.env``.
"""

from __future__ import annotations

import os
from collections.abc import Callable, Iterator

import pytest

from turnwise.agent_runtime.settings import _get_settings_cached


@pytest.fixture(autouse=True)
def _isolated_settings(monkeypatch: pytest.MonkeyPatch, tmp_path_factory: pytest.TempPathFactory) -> Iterator[None]:
    for key in list(os.environ):
        if key.startswith("TURNWISE_"):
            monkeypatch.delenv(key)
    # Run from an empty directory so no stray .env is picked up.
    monkeypatch.chdir(tmp_path_factory.mktemp("cwd"))
    _get_settings_cached.cache_clear()
    yield
    _get_settings_cached.cache_clear()


@pytest.fixture
def set_env(monkeypatch: pytest.MonkeyPatch) -> Callable[[str, str], None]:
    """Return a setter that overrides one env var for the duration of a test."""

    def _setter(key: str, value: str) -> None:
        monkeypatch.setenv(key, value)
        _get_settings_cached.cache_clear()

    return _setter
