"""Default tool dispatcher.

``ToolExecutor`` answers every unanswered tool call of the latest assistant
turn, in call order.  Calls run concurrently up to ``max_parallel``.
Failures never escape: unknown tools, malformed arguments and exceptions
raised by a tool all become error results the model can read.

Tools flagged ``needs_approval`` are not run on first sight.  A
``PendingApproval`` is recorded instead and the run stops with
``awaiting_approval`` until ``resolve_tool_approval`` decides it.

Tools with ``handoff_to`` set are never run either: calling one records a
``handoff`` marker and ends the pass so the agent can pass the
conversation on.
"""

from __future__ import annotations

import inspect
import json
import logging
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

import anyio
from pydantic import BaseModel, ValidationError
from pydantic_core import to_json, to_jsonable_python

from turnwise.agent_runtime.models.enums import ApprovalStatus, CtxKey, EventType, Role
from turnwise.agent_runtime.models.messages import Message, ToolCall, tool_message
from turnwise.agent_runtime.models.state import PendingApproval, ToolHistoryEntry

if TYPE_CHECKING:
    from turnwise.agent_runtime.context import RunContext
    from turnwise.agent_runtime.models.state import AgentState

logger = logging.getLogger(__name__)

OUTPUT_TOOL_NAME = "response"
TRUNCATION_MARKER = "\n... [output truncated; full result kept in tool history]"


@dataclass
class Tool:
    """A callable exposed to the model."""

    name: str
    func: Callable[..., Any]
    description: str = ""
    parameters: dict[str, Any] = field(default_factory=lambda: {"type": "object", "properties": {}})
    needs_approval: bool = False
    approval_prompt: str | None = None
    needs_state: bool = False
    """Pass the current ``AgentState`` as the first positional argument."""

    handoff_to: str | None = None
    """Name of the agent this tool hands the conversation to."""

    @classmethod
    def from_function(cls, func: Callable[..., Any], *, name: str | None = None, **kwargs: Any) -> Tool:
        return cls(
            name=name or func.__name__,
            func=func,
            description=kwargs.pop("description", None) or inspect.getdoc(func) or "",
            **kwargs,
        )

    def to_spec(self) -> dict[str, Any]:
        """Function-calling schema understood by most providers."""
        return {
            "type": "function",
            "function": {"name": self.name, "description": self.description, "parameters": self.parameters},
        }

    async def run(self, args: dict[str, Any], state: AgentState | None = None) -> Any:
        result = self.func(state, **args) if self.needs_state else self.func(**args)
        if inspect.isawaitable(result):
            result = await result
        return result


def output_tool(schema: type[BaseModel] | dict[str, Any]) -> Tool:
    """Build the structured-output tool for *schema*.

    The tool is never executed; ``ToolExecutor`` intercepts it.
    """
    parameters = schema if isinstance(schema, dict) else schema.model_json_schema()
    return Tool(
        name=OUTPUT_TOOL_NAME,
        func=lambda **kwargs: kwargs,
        description="Submit the final structured answer.  Call exactly once when finished.",
        parameters=parameters,
    )


@dataclass
class _CallResult:
    call: ToolCall
    content: str
    entry: ToolHistoryEntry | None = None
    counted: bool = True
    skipped: bool = False
    handoff: dict[str, Any] | None = None


def serialize_output(output: Any) -> str:
    if isinstance(output, str):
        return output
    return to_json(output, fallback=str).decode()


class ToolExecutor:
    """Default ``ToolDispatcher``."""

    def __init__(
        self,
        tools: Sequence[Tool] = (),
        *,
        max_parallel: int = 4,
        max_output_chars: int | None = 100_000,
        output_schema: type[BaseModel] | dict[str, Any] | None = None,
    ) -> None:
        self._tools = {t.name: t for t in tools}
        self._limiter = anyio.CapacityLimiter(max(1, max_parallel))
        self._max_output_chars = max_output_chars
        self._output_schema = output_schema
        if output_schema is not None:
            self._tools[OUTPUT_TOOL_NAME] = output_tool(output_schema)

    @property
    def tool_names(self) -> list[str]:
        return list(self._tools)

    @property
    def output_tool_name(self) -> str | None:
        return OUTPUT_TOOL_NAME if self._output_schema is not None else None

    def tool_specs(self) -> list[dict[str, Any]]:
        return [t.to_spec() for t in self._tools.values()]

    def add_tool(self, tool: Tool) -> None:
        self._tools[tool.name] = tool

    # -- Dispatch --------------------------------------------------------------

    async def __call__(self, state: AgentState, run: RunContext) -> AgentState:
        turn_index = _last_assistant_index(state.messages)
        if turn_index is None:
            return state
        assistant = state.messages[turn_index]
        answered = {m.tool_call_id for m in state.messages[turn_index + 1 :] if m.role == Role.TOOL}
        calls = [c for c in assistant.tool_calls or () if c.id not in answered]
        if not calls:
            return state

        results: list[_CallResult | None] = [None] * len(calls)
        awaiting = False

        async with anyio.create_task_group() as tg:
            for index, call in enumerate(calls):
                outcome = self._prepare(state, call)
                if isinstance(outcome, _CallResult):
                    results[index] = outcome
                elif outcome is None:
                    awaiting = True
                else:
                    tool, args = outcome
                    tg.start_soon(self._execute, tool, call, args, results, index, state, run)

        for index, call in enumerate(calls):
            result = results[index]
            if result is None:
                pending = _find_pending(state, call.id)
                if pending is not None:
                    await run.emit(
                        EventType.TOOL_APPROVAL_REQUIRED,
                        tool_name=call.function.name,
                        tool_call_id=call.id,
                        approval_id=pending.id,
                        args=pending.args,
                    )
                continue
            if result.handoff is not None:
                await run.emit(EventType.HANDOFF, **result.handoff)
            if result.skipped:
                await run.emit(
                    EventType.TOOL_CALL_SKIPPED,
                    tool_name=call.function.name,
                    tool_call_id=call.id,
                    reason=result.content,
                )
            if result.counted:
                state.tool_call_count += 1
            if result.entry is not None:
                state.tool_history.append(result.entry)
            state.messages.append(tool_message(call.id, self._clip(result.content), name=call.function.name))

        if awaiting:
            state.ctx[CtxKey.AWAITING_APPROVAL] = True
        else:
            state.ctx.pop(CtxKey.AWAITING_APPROVAL, None)
        return state

    def _prepare(self, state: AgentState, call: ToolCall) -> _CallResult | tuple[Tool, dict[str, Any]] | None:
        """Decide what to do with one call.

        Returns a finished result, a ``(tool, args)`` pair to execute, or
        ``None`` when the call is waiting for approval.
        """
        name = call.function.name
        tool = self._tools.get(name)
        if tool is None:
            logger.warning("Model requested unknown tool %r", name)
            return _CallResult(
                call, f"Error: tool '{name}' not found.", _entry(call, {}, None, "not found"), skipped=True
            )

        try:
            args = json.loads(call.function.arguments or "{}")
        except json.JSONDecodeError as exc:
            detail = f"Error: invalid JSON arguments for tool '{name}': {exc}"
            return _CallResult(call, detail, _entry(call, {}, None, str(exc)), skipped=True)
        if not isinstance(args, dict):
            detail = f"Error: arguments for tool '{name}' must be a JSON object."
            return _CallResult(call, detail, _entry(call, {}, None, "arguments are not an object"), skipped=True)

        if name == self.output_tool_name:
            return self._structured_output(state, call, args)
        if tool.handoff_to is not None:
            return self._handoff(state, call, tool, args)

        if not tool.needs_approval:
            return tool, args

        approval = _find_approval(state, call.id)
        if approval is None:
            state.pending_approvals.append(
                PendingApproval(tool_call_id=call.id, tool_name=name, args=args, prompt=tool.approval_prompt)
            )
            logger.info("Tool %s (%s) requires approval", name, call.id)
            return None
        match approval.status:
            case ApprovalStatus.PENDING:
                return None
            case ApprovalStatus.APPROVED:
                approval.advance(ApprovalStatus.EXECUTED)
                return tool, dict(approval.approved_args if approval.approved_args is not None else args)
            case ApprovalStatus.REJECTED:
                approval.advance(ApprovalStatus.EXECUTED)
                reason = f": {approval.comment}" if approval.comment else "."
                return _CallResult(call, f"Tool call '{name}' was rejected by the user{reason}", counted=False)
            case _:
                return _CallResult(call, f"Tool call '{name}' was already executed.", counted=False)

    def _structured_output(self, state: AgentState, call: ToolCall, args: dict[str, Any]) -> _CallResult:
        schema = self._output_schema
        parsed: Any = args
        if isinstance(schema, type) and issubclass(schema, BaseModel):
            try:
                parsed = schema.model_validate(args).model_dump(mode="json")
            except ValidationError as exc:
                return _CallResult(call, f"Error: structured output does not match the schema: {exc}", counted=False)
        state.ctx[CtxKey.STRUCTURED_OUTPUT_PARSED] = parsed
        state.ctx[CtxKey.FINALIZED_DUE_TO_STRUCTURED_OUTPUT] = True
        return _CallResult(call, "Structured output received.", counted=False)

    def _handoff(self, state: AgentState, call: ToolCall, tool: Tool, args: dict[str, Any]) -> _CallResult:
        if state.ctx.get(CtxKey.HANDOFF):
            return _CallResult(call, "Error: a handoff was already requested in this turn.", counted=False)
        marker = {
            "tool_name": tool.name,
            "tool_call_id": call.id,
            "target": tool.handoff_to,
            "reason": args.get("reason"),
        }
        state.ctx[CtxKey.HANDOFF] = marker
        logger.info("Handoff to %s requested via %s", tool.handoff_to, tool.name)
        return _CallResult(call, f"Handing off to {tool.handoff_to}.", counted=False, handoff=marker)

    async def _execute(
        self,
        tool: Tool,
        call: ToolCall,
        args: dict[str, Any],
        results: list[_CallResult | None],
        index: int,
        state: AgentState,
        run: RunContext,
    ) -> None:
        await run.emit(EventType.TOOL_CALL_START, tool_name=tool.name, tool_call_id=call.id, args=args)
        async with self._limiter:
            try:
                output = await tool.run(args, state)
            except Exception as exc:
                logger.warning("Tool %s failed: %s", tool.name, exc, exc_info=True)
                await run.emit(EventType.TOOL_CALL_ERROR, tool_name=tool.name, tool_call_id=call.id, error=str(exc))
                results[index] = _CallResult(
                    call, f"Error executing tool '{tool.name}': {exc}", _entry(call, args, None, str(exc))
                )
                return
        entry = _entry(call, args, output, None)
        await run.emit(
            EventType.TOOL_CALL_SUCCESS, tool_name=tool.name, tool_call_id=call.id, execution_id=entry.execution_id
        )
        results[index] = _CallResult(call, serialize_output(output), entry)

    def _clip(self, content: str) -> str:
        limit = self._max_output_chars
        if limit is None or len(content) <= limit:
            return content
        return content[:limit] + TRUNCATION_MARKER


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _last_assistant_index(messages: list[Message]) -> int | None:
    for index in range(len(messages) - 1, -1, -1):
        if messages[index].role == Role.ASSISTANT:
            return index if messages[index].tool_calls else None
    return None


def _find_approval(state: AgentState, tool_call_id: str) -> PendingApproval | None:
    for approval in state.pending_approvals:
        if approval.tool_call_id == tool_call_id:
            return approval
    return None


def _find_pending(state: AgentState, tool_call_id: str) -> PendingApproval | None:
    approval = _find_approval(state, tool_call_id)
    if approval is not None and approval.status == ApprovalStatus.PENDING:
        return approval
    return None


def _entry(call: ToolCall, args: dict[str, Any], output: Any, error: str | None) -> ToolHistoryEntry:
    # Stored in JSON form so a snapshot round trip gives back an equal history.
    return ToolHistoryEntry(
        tool_name=call.function.name,
        tool_call_id=call.id,
        args=to_jsonable_python(args, fallback=str),
        output=to_jsonable_python(output, fallback=str),
        error=error,
    )
