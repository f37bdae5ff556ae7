"""Run context: the live, non-serializable side of one loop invocation.

``AgentState`` carries everything that survives a snapshot.  ``RunContext``
carries what does not: the event sink, the pause callback, and the three
cancellation sources.  It is created per ``Agent.invoke`` call and is never
persisted.
"""

from __future__ import annotations

import inspect
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Protocol
from uuid import uuid4

from turnwise.agent_runtime.models.enums import CancelReason, EventType
from turnwise.agent_runtime.models.events import AgentEvent

if TYPE_CHECKING:
    from turnwise.agent_runtime.models.state import AgentState

logger = logging.getLogger(__name__)


class AbortSignal(Protocol):
    """Anything with ``is_set()``: ``asyncio.Event``, ``threading.Event``, ``anyio.Event``."""

    def is_set(self) -> bool: ...


class CancellationToken:
    """Cooperative cancellation flag shared between a caller and a run."""

    def __init__(self) -> None:
        self._requested = False

    def cancel(self) -> None:
        self._requested = True

    @property
    def is_cancellation_requested(self) -> bool:
        return self._requested


EventSink = Callable[[AgentEvent], Any]
StateChangeCallback = Callable[["AgentState"], Any]
StreamCallback = Callable[[str], Any]


@dataclass
class RunContext:
    """Live handles for a single run."""

    # -- Identity --------------------------------------------------------------
    run_id: str = field(default_factory=lambda: uuid4().hex)

    # -- Cancellation ----------------------------------------------------------
    abort_signal: AbortSignal | None = None
    cancellation_token: CancellationToken | None = None
    deadline: float | None = None
    """Absolute deadline as a ``time.time()`` timestamp."""

    # -- Callbacks -------------------------------------------------------------
    on_event: EventSink | None = None
    on_state_change: StateChangeCallback | None = None
    """Called at each checkpoint gate; a truthy return pauses the run there."""

    on_stream: StreamCallback | None = None
    checkpoint_reason: str | None = None

    # -- Run-scoped counters ---------------------------------------------------
    model_calls: int = 0
    handoffs: int = 0

    @classmethod
    def with_timeout(cls, timeout: float | None, **kwargs: Any) -> RunContext:
        deadline = time.time() + timeout if timeout is not None else None
        return cls(deadline=deadline, **kwargs)

    def cancel(self) -> None:
        """Request cancellation through the context's own token."""
        if self.cancellation_token is None:
            self.cancellation_token = CancellationToken()
        self.cancellation_token.cancel()

    def check_cancelled(self) -> CancelReason | None:
        """Return the first active cancellation cause, or ``None``.

        Precedence: abort signal, then token, then deadline.
        """
        if self.abort_signal is not None and self.abort_signal.is_set():
            return CancelReason.ABORTED
        if self.cancellation_token is not None and self.cancellation_token.is_cancellation_requested:
            return CancelReason.CANCELLED
        if self.deadline is not None and time.time() >= self.deadline:
            return CancelReason.TIMEOUT
        return None

    async def emit(self, event_type: EventType, **payload: Any) -> None:
        """Deliver an event to the sink.  Sink failures are logged, never raised."""
        if self.on_event is None:
            return
        event = AgentEvent(event_type=event_type, run_id=self.run_id, payload=payload)
        try:
            result = self.on_event(event)
            if inspect.isawaitable(result):
                await result
        except Exception:
            logger.warning("Event sink failed for %s", event_type, exc_info=True)

    async def stream(self, text: str) -> None:
        if self.on_stream is None:
            return
        try:
            result = self.on_stream(text)
            if inspect.isawaitable(result):
                await result
        except Exception:
            logger.warning("Stream callback failed", exc_info=True)

    async def should_pause(self, state: AgentState) -> bool:
        """Ask the state-change callback whether to pause.  Failures count as "no"."""
        if self.on_state_change is None:
            return False
        try:
            result = self.on_state_change(state)
            if inspect.isawaitable(result):
                result = await result
        except Exception:
            logger.warning("State-change callback failed", exc_info=True)
            return False
        return bool(result)
