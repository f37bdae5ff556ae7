"""Collaborator contracts consumed by the loop.

The reasoning engine, the tool dispatcher and the guardrail evaluator are
supplied by the caller.  ``ToolExecutor`` in ``dispatcher`` is the default
dispatcher.
"""

from __future__ import annotations

from collections.abc import AsyncIterator, Sequence
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

if TYPE_CHECKING:
    from turnwise.agent_runtime.context import RunContext
    from turnwise.agent_runtime.models.enums import GuardrailPhase
    from turnwise.agent_runtime.models.guardrails import GuardrailOutcome
    from turnwise.agent_runtime.models.messages import Message
    from turnwise.agent_runtime.models.state import AgentState


@runtime_checkable
class ReasoningEngine(Protocol):
    """A chat model.

    ``invoke`` returns the assistant response as a ``Message`` (or a dict
    that validates as one).  Engines may additionally offer:

    - ``bind_tools(specs) -> ReasoningEngine`` to attach tool schemas
    - ``stream(messages) -> AsyncIterator[str | Message]`` yielding text
      deltas and, optionally, the complete response as a final ``Message``
    - ``model_name`` used to key usage totals
    """

    async def invoke(self, messages: Sequence[Message]) -> Message | dict[str, Any]: ...


@runtime_checkable
class StreamingEngine(Protocol):
    def stream(self, messages: Sequence[Message]) -> AsyncIterator[str | Message]: ...


@runtime_checkable
class ToolDispatcher(Protocol):
    """Executes the tool calls of the latest assistant turn and returns the new state."""

    async def __call__(self, state: AgentState, run: RunContext) -> AgentState: ...


@runtime_checkable
class GuardrailEvaluator(Protocol):
    async def __call__(self, phase: GuardrailPhase, state: AgentState) -> GuardrailOutcome: ...


def engine_model_name(engine: Any) -> str | None:
    """Best-effort model identifier for usage accounting."""
    for attr in ("model_name", "model", "name"):
        value = getattr(engine, attr, None)
        if isinstance(value, str) and value:
            return value
    return None
