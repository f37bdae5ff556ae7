"""In-process run registry.

Tracks in-flight runs with their live ``RunContext`` so an embedding
application can cancel one run, or all of them at shutdown.  Ephemeral --
empty on process restart.  Durable state lives in snapshots.
"""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING

from loguru import logger

if TYPE_CHECKING:
    from turnwise.agent_runtime.context import RunContext


class ShuttingDownError(RuntimeError):
    """Raised when attempting to register a run during shutdown."""


class RunAlreadyActiveError(RuntimeError):
    """A run with the same id is already executing."""

    def __init__(self, run_id: str) -> None:
        super().__init__(f"Run '{run_id}' is already active")


class RunRegistry:
    """Registry of currently executing runs.

    One state is exclusively owned by one run at a time, so registering the
    same ``run_id`` twice is refused.  ``wait_until_drained`` blocks until
    all runs have been unregistered.
    """

    def __init__(self) -> None:
        self._runs: dict[str, RunContext] = {}
        self._drain_event = asyncio.Event()
        self._drain_event.set()  # Starts "drained" (no runs).
        self._shutting_down = False

    # -- Mutation --------------------------------------------------------------

    def register(self, run: RunContext) -> None:
        if self._shutting_down:
            raise ShuttingDownError
        if run.run_id in self._runs:
            raise RunAlreadyActiveError(run.run_id)
        logger.debug("Registry: register run {}", run.run_id)
        self._runs[run.run_id] = run
        self._drain_event.clear()

    def unregister(self, run_id: str) -> RunContext | None:
        run = self._runs.pop(run_id, None)
        if run:
            logger.debug("Registry: unregister run {}", run_id)
        if not self._runs:
            self._drain_event.set()
        return run

    # -- Query -----------------------------------------------------------------

    def get(self, run_id: str) -> RunContext | None:
        return self._runs.get(run_id)

    def all_runs(self) -> list[RunContext]:
        return list(self._runs.values())

    @property
    def active_count(self) -> int:
        return len(self._runs)

    # -- Control ---------------------------------------------------------------

    def cancel(self, run_id: str) -> bool:
        """Request cancellation of one run.  Returns ``False`` if it is not active."""
        run = self._runs.get(run_id)
        if run is None:
            return False
        logger.info("Registry: cancel run {}", run_id)
        run.cancel()
        return True

    def cancel_all(self) -> int:
        """Request cancellation of every active run.  Returns how many were signalled."""
        runs = list(self._runs.values())
        if runs:
            logger.warning("Registry: cancelling {} active run(s)", len(runs))
        for run in runs:
            run.cancel()
        return len(runs)

    # -- Shutdown --------------------------------------------------------------

    def begin_shutdown(self) -> None:
        """Refuse new registrations from now on."""
        self._shutting_down = True
        logger.info("Registry: shutdown started, {} run(s) active", len(self._runs))

    @property
    def is_shutting_down(self) -> bool:
        return self._shutting_down

    async def wait_until_drained(self, timeout: float | None = None) -> bool:
        """Wait for all runs to finish.  Returns ``True`` if drained in time."""
        try:
            await asyncio.wait_for(self._drain_event.wait(), timeout=timeout)
        except TimeoutError:
            logger.warning("Registry: drain timed out with {} run(s) active", len(self._runs))
            return False
        return True
