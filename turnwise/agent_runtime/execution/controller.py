"""Turn-loop controller.

``TurnLoop.run`` drives one pass of the model/tool cycle::

    cancel? -> pause? -> request guardrails -> budget check -> model
        -> response guardrails -> pause? -> tool-limit gate -> tools -> pause?

and stops when the model answers without tool calls, a gate fires, or the
iteration ceiling is hit.  Stopping is always expressed through ``ctx``
markers on the returned state, never through exceptions; only reasoning
engine failures propagate (as ``EngineInvocationError``).

``Agent`` wraps the loop with the outer driver: when a pass stops because
the history is over budget, the agent summarizes and re-enters.  After the
loop it runs the one-shot structured-output nudge and builds the
``AgentResult``.

When a pass ends on a handoff tool call, the conversation continues with
the target agent on the same ``RunContext``.
"""

from __future__ import annotations

import json
import logging
import re
import time
from collections.abc import Sequence
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any
from uuid import uuid4

from pydantic import BaseModel, ValidationError

from turnwise.agent_runtime.context import RunContext
from turnwise.agent_runtime.execution.approvals import (
    RESUME_STAGE_TOOLS,
    ToolApprovalResolution,
    resolve_tool_approval,
)
from turnwise.agent_runtime.execution.context_tools import context_tools
from turnwise.agent_runtime.execution.dispatcher import OUTPUT_TOOL_NAME, Tool, ToolExecutor
from turnwise.agent_runtime.execution.prompt import (
    render_structured_output_force,
    render_structured_output_hint,
    render_tool_limit_notice,
)
from turnwise.agent_runtime.execution.protocols import engine_model_name
from turnwise.agent_runtime.execution.repair import prepare_messages_for_model
from turnwise.agent_runtime.execution.resolver import AgentConfig, ConfigOverride, ResolvedLoopConfig, resolve_config
from turnwise.agent_runtime.execution.snapshot import capture_snapshot, restore_snapshot
from turnwise.agent_runtime.execution.summarize import needs_summarization, summarize_context
from turnwise.agent_runtime.execution.usage import extract_raw_usage, normalize_usage, record_usage
from turnwise.agent_runtime.models.enums import CheckpointStage, CtxKey, EventType, GuardrailPhase, Role, RunStatus
from turnwise.agent_runtime.models.guardrails import GuardrailOutcome
from turnwise.agent_runtime.models.messages import (
    Message,
    ToolCall,
    assistant_message,
    coerce_message,
    system_message,
    user_message,
)
from turnwise.agent_runtime.models.state import AgentState

if TYPE_CHECKING:
    from turnwise.agent_runtime.execution.protocols import GuardrailEvaluator, ReasoningEngine, ToolDispatcher
    from turnwise.agent_runtime.models.snapshot import Snapshot
    from turnwise.agent_runtime.models.usage import UsageTotals
    from turnwise.agent_runtime.registry import RunRegistry
    from turnwise.agent_runtime.settings import TurnwiseSettings

logger = logging.getLogger(__name__)

GUARDRAIL_MESSAGE_NAME = "guardrail"

# Markers that belong to one run and are cleared when new input arrives.
RUN_SCOPED_KEYS = (
    CtxKey.FINALIZED_DUE_TO_TOOL_LIMIT,
    CtxKey.FINALIZED_DUE_TO_STRUCTURED_OUTPUT,
    CtxKey.STRUCTURED_OUTPUT_PARSED,
    CtxKey.STRUCTURED_OUTPUT_FORCE_FINALIZE,
    CtxKey.GUARDRAIL_BLOCKED,
    CtxKey.NEEDS_SUMMARIZATION,
    CtxKey.APPROVAL_RESOLVED,
    CtxKey.RESUME_STAGE,
    CtxKey.HANDOFF,
)

_FENCED_JSON = re.compile(r"```(?:json)?\s*(.*?)```", re.DOTALL)
_UNSAFE_TOOL_CHARS = re.compile(r"[^A-Za-z0-9_-]+")

MAX_HANDOFFS = 10

# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------


class EngineInvocationError(RuntimeError):
    """The reasoning engine raised.  ``state`` holds the run up to that point."""

    def __init__(self, error: BaseException, state: AgentState) -> None:
        super().__init__(f"Reasoning engine failed: {error}")
        self.state = state


class RunCancelledError(RuntimeError):
    """A cancelled state was fed back into the loop."""

    def __init__(self, marker: Any) -> None:
        reason = marker.get("reason") if isinstance(marker, dict) else marker
        super().__init__(f"State was cancelled ({reason}) and cannot be re-entered")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _now_iso() -> str:
    return datetime.now(tz=UTC).isoformat()


def open_tool_calls(messages: Sequence[Message]) -> list[ToolCall]:
    """Tool calls of the latest assistant turn that have no result yet.

    Empty when the history does not end in an assistant turn followed only
    by tool results.
    """
    answered: set[str] = set()
    for message in reversed(messages):
        if message.role == Role.TOOL:
            answered.add(message.tool_call_id or "")
            continue
        if message.has_tool_calls:
            return [c for c in message.tool_calls or () if c.id not in answered]
        return []
    return []


def parse_json_output(text: str) -> Any:
    """Pull a JSON value out of free text: a fenced block, else from the first ``{`` or ``[``."""
    if not text:
        return None
    candidates: list[str] = [m.strip() for m in _FENCED_JSON.findall(text)]
    starts = [i for i in (text.find("{"), text.find("[")) if i >= 0]
    if starts:
        candidates.append(text[min(starts) :].strip())
    decoder = json.JSONDecoder()
    for candidate in candidates:
        try:
            value, _ = decoder.raw_decode(candidate)
        except json.JSONDecodeError:
            continue
        return value
    return None


# ---------------------------------------------------------------------------
# Turn loop
# ---------------------------------------------------------------------------


class TurnLoop:
    """One pass of the model/tool cycle over an exclusively owned state."""

    def __init__(
        self,
        engine: ReasoningEngine,
        dispatcher: ToolDispatcher,
        config: ResolvedLoopConfig,
        *,
        guardrails: GuardrailEvaluator | None = None,
        output_tool: str | None = None,
        model_name: str | None = None,
    ) -> None:
        self._engine = engine
        self._dispatcher = dispatcher
        self._config = config
        self._guardrails = guardrails
        self._output_tool = output_tool
        self._model_name = model_name

    async def run(self, state: AgentState, run: RunContext, *, waive_budget: bool = False) -> AgentState:
        """Drive turns until the conversation settles or a gate stops it.

        Parameters
        ----------
        state:
            Mutated in place and returned.
        run:
            Live handles for cancellation, pausing and events.
        waive_budget:
            Skip the next budget check once.  Used after a summarization
            attempt that could not shrink the history.
        """
        state.ctx.pop(CtxKey.PAUSED, None)
        resume_stage = state.ctx.pop(CtxKey.RESUME_STAGE, None)
        limit = self._config.iteration_limit

        for iteration in range(1, limit + 1):
            if await self._cancelled(state, run, CheckpointStage.LOOP):
                return state

            if resume_stage != RESUME_STAGE_TOOLS:
                if await self._cancelled(state, run, CheckpointStage.BEFORE_GUARDRAILS):
                    return state
                if await self._pause(state, run, CheckpointStage.BEFORE_GUARDRAILS, iteration):
                    return state
                if await self._request_guardrails(state, run):
                    break
                if not waive_budget and needs_summarization(state, self._config.summarization):
                    logger.info("History over budget, requesting summarization")
                    state.ctx[CtxKey.NEEDS_SUMMARIZATION] = True
                    return state
                waive_budget = False
                if await self._cancelled(state, run, CheckpointStage.BEFORE_AGENT):
                    return state
                await self.call_model(state, run)
                if await self._response_guardrails(state, run):
                    break
                if await self._pause(state, run, CheckpointStage.AFTER_AGENT, iteration):
                    return state
            resume_stage = None

            calls = open_tool_calls(state.messages)
            only_output = bool(calls) and all(c.function.name == self._output_tool for c in calls)
            if state.ctx.get(CtxKey.FINALIZED_DUE_TO_TOOL_LIMIT) and not only_output:
                break
            if not calls:
                break
            if not only_output and self._tool_limit_reached(state):
                self._finalize_for_tool_limit(state)
                continue

            if await self._cancelled(state, run, CheckpointStage.BEFORE_TOOLS):
                return state
            state = await self._dispatcher(state, run)
            if state.ctx.get(CtxKey.AWAITING_APPROVAL):
                logger.info("Run %s awaiting tool approval", run.run_id)
                return state
            if state.ctx.get(CtxKey.HANDOFF):
                break
            if await self._pause(state, run, CheckpointStage.AFTER_TOOLS, iteration):
                return state
            if state.ctx.get(CtxKey.FINALIZED_DUE_TO_STRUCTURED_OUTPUT):
                break
        else:
            logger.warning("Run %s hit the iteration ceiling (%d)", run.run_id, limit)

        await self._pause(state, run, CheckpointStage.AFTER_LOOP, None)
        return state

    # -- Model -----------------------------------------------------------------

    async def call_model(self, state: AgentState, run: RunContext) -> Message:
        """Send the repaired history to the engine and append its response."""
        outgoing = prepare_messages_for_model(state.messages)
        system_prompt = self._system_prompt()
        if system_prompt and not (outgoing and outgoing[0].role == Role.SYSTEM):
            outgoing.insert(0, system_message(system_prompt))

        try:
            if self._config.stream and callable(getattr(self._engine, "stream", None)):
                response = await self._stream(outgoing, run)
            else:
                response = coerce_message(await self._engine.invoke(outgoing))
        except Exception as exc:
            logger.exception("Reasoning engine failed")
            raise EngineInvocationError(exc, state) from exc
        run.model_calls += 1

        response = self._normalize_response(response)
        state.messages.append(response)

        usage = normalize_usage(extract_raw_usage(response))
        if usage is not None:
            entry = record_usage(state.usage, usage, self._model_name)
            await run.emit(
                EventType.METADATA,
                turn=entry.turn,
                model_name=entry.model_name,
                usage=usage.model_dump(mode="json", exclude={"raw"}),
            )
        return response

    async def _stream(self, outgoing: list[Message], run: RunContext) -> Message:
        parts: list[str] = []
        final: Message | None = None
        async for chunk in self._engine.stream(outgoing):  # type: ignore[attr-defined]
            if isinstance(chunk, str):
                parts.append(chunk)
                await run.stream(chunk)
                await run.emit(EventType.STREAM, text=chunk)
            else:
                final = coerce_message(chunk)
        return final if final is not None else assistant_message("".join(parts))

    def _system_prompt(self) -> str | None:
        parts = [self._config.system_prompt or ""]
        if self._output_tool:
            parts.append(render_structured_output_hint(self._output_tool))
        text = "\n".join(p for p in parts if p)
        return text or None

    @staticmethod
    def _normalize_response(response: Message) -> Message:
        update: dict[str, Any] = {}
        if response.role != Role.ASSISTANT:
            update["role"] = Role.ASSISTANT
        if response.tool_calls and any(not c.id for c in response.tool_calls):
            update["tool_calls"] = [
                c if c.id else c.model_copy(update={"id": f"call_{uuid4().hex[:12]}"}) for c in response.tool_calls
            ]
        return response.model_copy(update=update) if update else response

    # -- Tool limit ------------------------------------------------------------

    def _tool_limit_reached(self, state: AgentState) -> bool:
        ceiling = self._config.max_tool_calls
        return ceiling is not None and state.tool_call_count >= ceiling

    def _finalize_for_tool_limit(self, state: AgentState) -> None:
        logger.info("Tool-call limit %s reached, asking for a final answer", self._config.max_tool_calls)
        state.messages.append(user_message(render_tool_limit_notice(self._output_tool)))
        state.ctx[CtxKey.FINALIZED_DUE_TO_TOOL_LIMIT] = True

    # -- Gates -----------------------------------------------------------------

    async def _cancelled(self, state: AgentState, run: RunContext, stage: CheckpointStage) -> bool:
        reason = run.check_cancelled()
        if reason is None:
            return False
        marker = {"stage": str(stage), "reason": str(reason), "timestamp": _now_iso()}
        state.ctx[CtxKey.CANCELLED] = marker
        logger.info("Run %s cancelled at %s (%s)", run.run_id, stage, reason)
        await run.emit(EventType.CANCELLED, **marker)
        return True

    async def _pause(self, state: AgentState, run: RunContext, stage: CheckpointStage, iteration: int | None) -> bool:
        if not await run.should_pause(state):
            return False
        marker = {
            "stage": str(stage),
            "iteration": iteration,
            "reason": run.checkpoint_reason,
            "timestamp": _now_iso(),
        }
        state.ctx[CtxKey.PAUSED] = marker
        if stage in (CheckpointStage.AFTER_AGENT, CheckpointStage.AFTER_LOOP):
            # The model already answered; resuming must not ask it again.
            state.ctx[CtxKey.RESUME_STAGE] = RESUME_STAGE_TOOLS
        logger.info("Run %s paused at %s", run.run_id, stage)
        await run.emit(EventType.PAUSED, **marker)
        return True

    # -- Guardrails ------------------------------------------------------------

    async def _evaluate(self, phase: GuardrailPhase, state: AgentState, run: RunContext) -> GuardrailOutcome | None:
        if self._guardrails is None:
            return None
        try:
            outcome = await self._guardrails(phase, state)
        except Exception as exc:
            logger.warning("Guardrail evaluation failed in %s phase, blocking: %s", phase, exc, exc_info=True)
            outcome = GuardrailOutcome.fail_closed(phase, exc)

        previous = state.guardrail_result
        state.guardrail_result = outcome if previous is None else previous.merge(outcome)
        if outcome.incidents:
            await run.emit(
                EventType.GUARDRAIL,
                phase=str(phase),
                blocked=outcome.blocked,
                incidents=[i.model_dump(mode="json") for i in outcome.incidents],
            )
        return outcome

    async def _request_guardrails(self, state: AgentState, run: RunContext) -> bool:
        """Evaluate the request once per distinct history length.  Returns ``True`` when blocked."""
        store = state.ctx.setdefault(CtxKey.GUARDRAIL_STORE, {})
        length = len(state.messages)
        if store.get("last_request_length") == length:
            return False
        store["last_request_length"] = length

        outcome = await self._evaluate(GuardrailPhase.REQUEST, state, run)
        if outcome is None:
            return False
        if outcome.blocked:
            state.messages.append(assistant_message(_block_text(outcome), name=GUARDRAIL_MESSAGE_NAME))
            state.ctx[CtxKey.GUARDRAIL_BLOCKED] = True
            return True
        _annotate_warnings(state, outcome)
        return False

    async def _response_guardrails(self, state: AgentState, run: RunContext) -> bool:
        store = state.ctx.setdefault(CtxKey.GUARDRAIL_STORE, {})
        length = len(state.messages)
        if store.get("last_response_length") == length:
            return False
        store["last_response_length"] = length

        outcome = await self._evaluate(GuardrailPhase.RESPONSE, state, run)
        if outcome is None:
            return False
        if outcome.blocked:
            state.messages[-1] = assistant_message(_block_text(outcome), name=GUARDRAIL_MESSAGE_NAME)
            state.ctx[CtxKey.GUARDRAIL_BLOCKED] = True
            return True
        _annotate_warnings(state, outcome)
        return False


def _block_text(outcome: GuardrailOutcome) -> str:
    reasons = "; ".join(i.reason for i in outcome.incidents if i.reason) or "policy violation"
    return f"Blocked by guardrail: {reasons}"


def _annotate_warnings(state: AgentState, outcome: GuardrailOutcome) -> None:
    warnings = outcome.warnings
    if not warnings or not state.messages:
        return
    last = state.messages[-1]
    metadata = dict(last.metadata or {})
    metadata.setdefault("guardrail_warnings", []).extend(w.model_dump(mode="json") for w in warnings)
    state.messages[-1] = last.model_copy(update={"metadata": metadata})


# ---------------------------------------------------------------------------
# Agent
# ---------------------------------------------------------------------------


@dataclass
class AgentResult:
    """Outcome of one ``Agent.invoke``."""

    status: RunStatus
    state: AgentState
    content: str = ""
    output: Any = None
    """Structured output when a schema is configured and could be obtained."""

    duration_ms: int = 0
    agent_name: str = ""
    """The agent that produced the result; differs from the invoked one after a handoff."""

    @property
    def messages(self) -> list[Message]:
        return self.state.messages

    @property
    def usage(self) -> UsageTotals:
        return self.state.usage.grand_total()


AgentInput = str | Message | Sequence[Message] | AgentState | None

HANDOFF_PARAMETERS: dict[str, Any] = {
    "type": "object",
    "properties": {"reason": {"type": "string", "description": "Reason for the handoff"}},
}


def _tool_slug(name: str) -> str:
    return _UNSAFE_TOOL_CHARS.sub("_", name).strip("_").lower() or "agent"


@dataclass
class Handoff:
    """Lets the model pass the conversation on to *target*."""

    target: Agent
    tool_name: str | None = None
    description: str | None = None

    @property
    def name(self) -> str:
        return self.tool_name or f"handoff_to_{_tool_slug(self.target.name)}"

    def to_tool(self) -> Tool:
        return Tool(
            name=self.name,
            func=lambda **_: None,
            description=self.description or f"Hand the conversation off to agent {self.target.name}.",
            parameters=HANDOFF_PARAMETERS,
            handoff_to=self.target.name,
        )


class Agent:
    """A configured reasoning engine plus tools, guardrails and loop policy."""

    def __init__(
        self,
        engine: ReasoningEngine,
        *,
        tools: Sequence[Tool] = (),
        dispatcher: ToolDispatcher | None = None,
        guardrails: GuardrailEvaluator | None = None,
        config: AgentConfig | None = None,
        summarizer: ReasoningEngine | None = None,
        registry: RunRegistry | None = None,
        settings: TurnwiseSettings | None = None,
        handoffs: Sequence[Handoff] = (),
    ) -> None:
        self.config = config or AgentConfig()
        self._settings = settings
        defaults = resolve_config(self.config, None, settings)
        self._handoffs = {h.name: h.target for h in handoffs}
        # Archived outputs only exist when the agent has tools of its own.
        with_context_tools = bool(tools) and defaults.summarization.enabled
        tools = [*tools, *(h.to_tool() for h in handoffs)]

        if dispatcher is None:
            if with_context_tools:
                tools += context_tools([t.name for t in tools])
            dispatcher = ToolExecutor(
                tools,
                max_parallel=defaults.max_parallel_tools,
                max_output_chars=defaults.max_tool_output_chars,
                output_schema=self.config.output_schema,
            )
            specs = dispatcher.tool_specs()
            self._tool_names = dispatcher.tool_names
        else:
            specs = [t.to_spec() for t in tools]
            self._tool_names = [t.name for t in tools]
        self._dispatcher = dispatcher
        self._output_tool = OUTPUT_TOOL_NAME if self.config.output_schema is not None else None

        self._specs = specs
        self._base_engine = engine
        self._engine = self._bind(specs)
        self._summarizer = summarizer or engine
        self._model_name = engine_model_name(engine)
        self._guardrails = guardrails
        self._registry = registry

    # -- Identity --------------------------------------------------------------

    @property
    def name(self) -> str:
        return self.config.name

    @property
    def version(self) -> str | None:
        return self.config.version

    @property
    def tool_names(self) -> list[str]:
        return list(self._tool_names)

    # -- Public API ------------------------------------------------------------

    async def invoke(
        self,
        input: AgentInput = None,  # noqa: A002
        *,
        state: AgentState | None = None,
        run: RunContext | None = None,
        override: ConfigOverride | None = None,
        timeout: float | None = None,
    ) -> AgentResult:
        """Run the agent until it settles or a gate stops it.

        Parameters
        ----------
        input:
            New user input (text, message or messages) to append, or a whole
            ``AgentState`` to continue.
        state:
            Existing state to continue; *input* is appended to a copy of it.
        run:
            Live handles.  A fresh ``RunContext`` is created when omitted.
        override:
            Per-invocation configuration overrides.
        timeout:
            Seconds until the run cancels itself with reason ``timeout``.

        Returns
        -------
        AgentResult
            Status, final text, optional structured output and the new state.
            The caller's state is never modified.

        Raises
        ------
        RunCancelledError
            *state* carries a cancellation marker from an earlier run.
        EngineInvocationError
            The reasoning engine raised.
        """
        cfg = resolve_config(self.config, override, self._settings)
        current = self._begin(input, state)
        run = run or RunContext()
        if timeout is not None and run.deadline is None:
            run.deadline = time.time() + timeout

        if self._registry is not None:
            self._registry.register(run)
        started = time.monotonic()
        target: Agent | None = None
        try:
            loop = TurnLoop(
                self._engine,
                self._dispatcher,
                cfg,
                guardrails=self._guardrails,
                output_tool=self._output_tool,
                model_name=self._model_name,
            )
            current = await self._drive(loop, current, run, cfg)
            target = self._take_handoff(current, run)
            if target is None and self._settled(current):
                current = await self._nudge_structured_output(loop, current, run)
        finally:
            if self._registry is not None:
                self._registry.unregister(run.run_id)

        if target is not None:
            logger.info("Run %s handed off from %s to %s", run.run_id, self.name, target.name)
            return await target.invoke(current, run=run)

        result = self._result(current, int((time.monotonic() - started) * 1000))
        await run.emit(EventType.FINAL_ANSWER, status=str(result.status), content=result.content, output=result.output)
        return result

    def snapshot(self, state: AgentState, *, tag: str | None = None, include_runtime_hint: bool = True) -> Snapshot:
        return capture_snapshot(state, tag=tag, include_runtime_hint=include_runtime_hint, agent=self)

    async def resume(
        self,
        snapshot: Snapshot,
        input: AgentInput = None,  # noqa: A002
        *,
        ctx: dict[str, Any] | None = None,
        merge_ctx: bool = True,
        run: RunContext | None = None,
        override: ConfigOverride | None = None,
        timeout: float | None = None,
    ) -> AgentResult:
        """Restore *snapshot* bound to this agent and continue it."""
        restored = restore_snapshot(snapshot, ctx=ctx, merge_ctx=merge_ctx, agent=self)
        return await self.invoke(input, state=restored, run=run, override=override, timeout=timeout)

    def resolve_tool_approval(self, state: AgentState, resolution: ToolApprovalResolution) -> AgentState:
        return resolve_tool_approval(state, resolution)

    # -- Composition -----------------------------------------------------------

    def as_tool(
        self,
        tool_name: str | None = None,
        *,
        description: str | None = None,
        input_description: str | None = None,
    ) -> Tool:
        """Expose this agent as a tool another agent can delegate a task to.

        Each call runs a fresh conversation and returns its final text.
        """

        async def delegate(input: str) -> str:  # noqa: A002
            result = await self.invoke(input)
            return result.content

        return Tool(
            name=tool_name or _tool_slug(self.name),
            func=delegate,
            description=description or f"Delegate a task to agent {self.name}.",
            parameters={
                "type": "object",
                "properties": {
                    "input": {"type": "string", "description": input_description or "Input for the delegated agent"}
                },
                "required": ["input"],
            },
        )

    def as_handoff(self, tool_name: str | None = None, *, description: str | None = None) -> Handoff:
        return Handoff(target=self, tool_name=tool_name, description=description)

    def add_handoff(self, handoff: Handoff) -> None:
        """Register *handoff* after construction, e.g. for two agents that hand off to each other."""
        tool = handoff.to_tool()
        if isinstance(self._dispatcher, ToolExecutor):
            self._dispatcher.add_tool(tool)
        self._handoffs[handoff.name] = handoff.target
        self._tool_names.append(tool.name)
        self._specs.append(tool.to_spec())
        self._engine = self._bind(self._specs)

    # -- Internals -------------------------------------------------------------

    def _bind(self, specs: list[dict[str, Any]]) -> ReasoningEngine:
        bind = getattr(self._base_engine, "bind_tools", None)
        return bind(specs) if specs and callable(bind) else self._base_engine

    def _begin(self, input: AgentInput, state: AgentState | None) -> AgentState:  # noqa: A002
        if isinstance(input, AgentState):
            state, input = input, None
        current = state.fork() if state is not None else AgentState()
        if CtxKey.CANCELLED in current.ctx:
            raise RunCancelledError(current.ctx[CtxKey.CANCELLED])

        new_messages: list[Message] = []
        if isinstance(input, str):
            new_messages = [user_message(input)]
        elif isinstance(input, Message):
            new_messages = [input]
        elif input is not None:
            new_messages = [coerce_message(m) for m in input]

        if new_messages:
            for key in RUN_SCOPED_KEYS:
                current.ctx.pop(key, None)
            current.messages.extend(new_messages)
        current.agent = self
        return current

    async def _drive(self, loop: TurnLoop, state: AgentState, run: RunContext, cfg: ResolvedLoopConfig) -> AgentState:
        waive = False
        for _ in range(cfg.outer_limit):
            state = await loop.run(state, run, waive_budget=waive)
            waive = False
            if not state.ctx.pop(CtxKey.NEEDS_SUMMARIZATION, False):
                return state
            outcome = await summarize_context(state, self._summarizer, cfg.summarization, run)
            if outcome is None:
                logger.info("Summarization made no change, continuing over budget for one turn")
                waive = True
            else:
                state = outcome.state
        logger.warning("Run %s hit the summarization re-entry ceiling (%d)", run.run_id, cfg.outer_limit)
        return state

    def _take_handoff(self, state: AgentState, run: RunContext) -> Agent | None:
        """Pop a settled handoff marker and return the agent to continue with."""
        marker = state.ctx.get(CtxKey.HANDOFF)
        if not marker or not self._settled(state):
            return None
        state.ctx.pop(CtxKey.HANDOFF)
        target = self._handoffs.get(marker.get("tool_name", ""))
        if target is None:
            logger.warning("Handoff via %s has no registered target", marker.get("tool_name"))
            return None
        if run.handoffs >= MAX_HANDOFFS:
            logger.warning("Run %s reached the handoff limit (%d)", run.run_id, MAX_HANDOFFS)
            return None
        for key in RUN_SCOPED_KEYS:
            state.ctx.pop(key, None)
        run.handoffs += 1
        return target

    @staticmethod
    def _settled(state: AgentState) -> bool:
        ctx = state.ctx
        return not any(
            ctx.get(key)
            for key in (CtxKey.CANCELLED, CtxKey.PAUSED, CtxKey.AWAITING_APPROVAL, CtxKey.GUARDRAIL_BLOCKED)
        )

    async def _nudge_structured_output(self, loop: TurnLoop, state: AgentState, run: RunContext) -> AgentState:
        """Ask once, explicitly, for the structured-output tool call."""
        if self._output_tool is None:
            return state
        ctx = state.ctx
        if ctx.get(CtxKey.FINALIZED_DUE_TO_STRUCTURED_OUTPUT) or ctx.get(CtxKey.STRUCTURED_OUTPUT_FORCE_FINALIZE):
            return state
        if open_tool_calls(state.messages) and not ctx.get(CtxKey.FINALIZED_DUE_TO_TOOL_LIMIT):
            return state

        ctx[CtxKey.STRUCTURED_OUTPUT_FORCE_FINALIZE] = True
        state.messages.append(system_message(render_structured_output_force(self._output_tool)))
        try:
            await loop.call_model(state, run)
        except EngineInvocationError as exc:
            logger.warning("Structured-output nudge failed: %s", exc)
            await run.emit(EventType.METADATA, structured_output_error=str(exc))
            return state

        calls = open_tool_calls(state.messages)
        if calls and all(c.function.name == self._output_tool for c in calls):
            state = await self._dispatcher(state, run)
        return state

    def _result(self, state: AgentState, duration_ms: int) -> AgentResult:
        return AgentResult(
            status=_status(state),
            state=state,
            content=_final_text(state),
            output=self._output(state),
            duration_ms=duration_ms,
            agent_name=self.name,
        )

    def _output(self, state: AgentState) -> Any:
        schema = self.config.output_schema
        if schema is None:
            return None
        parsed = state.ctx.get(CtxKey.STRUCTURED_OUTPUT_PARSED)
        if parsed is None:
            parsed = parse_json_output(_final_text(state))
            if parsed is None:
                return None
        if isinstance(schema, type) and issubclass(schema, BaseModel):
            try:
                return schema.model_validate(parsed)
            except ValidationError:
                logger.warning("Structured output does not match %s", schema.__name__)
                return None
        return parsed


def _status(state: AgentState) -> RunStatus:
    ctx = state.ctx
    if ctx.get(CtxKey.CANCELLED):
        return RunStatus.CANCELLED
    if ctx.get(CtxKey.PAUSED):
        return RunStatus.PAUSED
    if ctx.get(CtxKey.AWAITING_APPROVAL):
        return RunStatus.AWAITING_APPROVAL
    if ctx.get(CtxKey.GUARDRAIL_BLOCKED):
        return RunStatus.BLOCKED
    if ctx.get(CtxKey.FINALIZED_DUE_TO_TOOL_LIMIT):
        return RunStatus.FINALIZED_DUE_TO_LIMIT
    return RunStatus.COMPLETED


def _final_text(state: AgentState) -> str:
    for message in reversed(state.messages):
        if message.role == Role.ASSISTANT and message.text():
            return message.text()
    return ""
