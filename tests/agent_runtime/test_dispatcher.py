"""Unit tests for the default tool dispatcher."""

from __future__ import annotations

import anyio
import pytest
from pydantic import BaseModel

from turnwise.agent_runtime.context import RunContext
from turnwise.agent_runtime.execution.dispatcher import (
    OUTPUT_TOOL_NAME,
    TRUNCATION_MARKER,
    Tool,
    ToolExecutor,
    serialize_output,
)
from turnwise.agent_runtime.models.enums import ApprovalStatus, CtxKey, EventType, Role
from turnwise.agent_runtime.models.events import AgentEvent
from turnwise.agent_runtime.models.messages import (
    Message,
    assistant_message,
    make_tool_call,
    tool_message,
    user_message,
)
from turnwise.agent_runtime.models.state import AgentState


def add(a: int, b: int) -> int:
    """Add two numbers."""
    return a + b


async def shout(text: str) -> str:
    return text.upper()


def explode() -> None:
    msg = "kaboom"
    raise RuntimeError(msg)


class Answer(BaseModel):
    value: int


def _turn(*calls: tuple[str, str, object]) -> AgentState:
    return AgentState(
        messages=[
            user_message("go"),
            assistant_message("", tool_calls=[make_tool_call(cid, name, args) for cid, name, args in calls]),
        ]
    )


def _tool_results(state: AgentState) -> list[Message]:
    return [m for m in state.messages if m.role == Role.TOOL]


# ---------------------------------------------------------------------------
# Tool
# ---------------------------------------------------------------------------


def test_tool_from_function_uses_docstring() -> None:
    tool = Tool.from_function(add)
    spec = tool.to_spec()
    assert spec["type"] == "function"
    assert spec["function"]["name"] == "add"
    assert spec["function"]["description"] == "Add two numbers."


def test_serialize_output() -> None:
    assert serialize_output("plain") == "plain"
    assert serialize_output({"a": [1, 2]}) == '{"a":[1,2]}'
    assert serialize_output(object()).startswith('"<object object')


def test_output_schema_registers_response_tool() -> None:
    executor = ToolExecutor([Tool.from_function(add)], output_schema=Answer)
    assert executor.tool_names == ["add", OUTPUT_TOOL_NAME]
    assert executor.output_tool_name == OUTPUT_TOOL_NAME
    assert executor.tool_specs()[1]["function"]["parameters"]["properties"]["value"]["type"] == "integer"
    assert ToolExecutor([Tool.from_function(add)]).output_tool_name is None


# ---------------------------------------------------------------------------
# Dispatch
# ---------------------------------------------------------------------------


async def test_runs_calls_in_order_and_records_history(run: RunContext, events: list[AgentEvent]) -> None:
    executor = ToolExecutor([Tool.from_function(add), Tool.from_function(shout)])
    state = _turn(("c1", "add", {"a": 1, "b": 2}), ("c2", "shout", {"text": "hi"}))

    state = await executor(state, run)

    results = _tool_results(state)
    assert [(m.tool_call_id, m.content, m.name) for m in results] == [("c1", "3", "add"), ("c2", "HI", "shout")]
    assert state.tool_call_count == 2
    assert [e.output for e in state.tool_history] == [3, "HI"]
    assert [e.args for e in state.tool_history] == [{"a": 1, "b": 2}, {"text": "hi"}]
    types = [e.event_type for e in events]
    assert types.count(EventType.TOOL_CALL_START) == 2
    assert types.count(EventType.TOOL_CALL_SUCCESS) == 2
    success = [e for e in events if e.event_type == EventType.TOOL_CALL_SUCCESS]
    assert {e.payload["execution_id"] for e in success} == {e.execution_id for e in state.tool_history}


async def test_tool_exception_becomes_error_result(run: RunContext, events: list[AgentEvent]) -> None:
    executor = ToolExecutor([Tool.from_function(explode)])
    state = await executor(_turn(("c1", "explode", {})), run)

    assert _tool_results(state)[0].content == "Error executing tool 'explode': kaboom"
    assert state.tool_history[0].error == "kaboom"
    assert state.tool_call_count == 1
    assert EventType.TOOL_CALL_ERROR in [e.event_type for e in events]


async def test_unknown_tool_and_bad_arguments_are_skipped(run: RunContext, events: list[AgentEvent]) -> None:
    executor = ToolExecutor([Tool.from_function(add)])
    state = _turn(("c1", "missing", {}), ("c2", "add", "{not json"), ("c3", "add", "[1, 2]"))

    state = await executor(state, run)

    contents = [m.content for m in _tool_results(state)]
    assert contents[0] == "Error: tool 'missing' not found."
    assert contents[1].startswith("Error: invalid JSON arguments for tool 'add'")
    assert contents[2] == "Error: arguments for tool 'add' must be a JSON object."
    skipped = [e for e in events if e.event_type == EventType.TOOL_CALL_SKIPPED]
    assert [e.payload["tool_call_id"] for e in skipped] == ["c1", "c2", "c3"]


async def test_only_unanswered_calls_run(run: RunContext) -> None:
    calls: list[int] = []

    def count(n: int) -> int:
        calls.append(n)
        return n

    executor = ToolExecutor([Tool.from_function(count)])
    state = _turn(("c1", "count", {"n": 1}), ("c2", "count", {"n": 2}))
    state.messages.append(tool_message("c1", "1", name="count"))

    state = await executor(state, run)

    assert calls == [2]
    assert [m.tool_call_id for m in _tool_results(state)] == ["c1", "c2"]


async def test_no_tool_calls_is_noop(run: RunContext) -> None:
    state = AgentState(messages=[user_message("hi"), assistant_message("hello")])
    assert await ToolExecutor()(state, run) is state
    assert len(state.messages) == 2


async def test_output_is_clipped_but_history_keeps_full_value(run: RunContext) -> None:
    def big() -> str:
        return "z" * 500

    executor = ToolExecutor([Tool.from_function(big)], max_output_chars=100)
    state = await executor(_turn(("c1", "big", {})), run)

    assert _tool_results(state)[0].content == "z" * 100 + TRUNCATION_MARKER
    assert state.tool_history[0].output == "z" * 500


async def test_parallel_limit(run: RunContext) -> None:
    active = 0
    peak = 0

    async def slow(i: int) -> int:
        nonlocal active, peak
        active += 1
        peak = max(peak, active)
        await anyio.sleep(0.01)
        active -= 1
        return i

    calls = [(f"c{i}", "slow", {"i": i}) for i in range(6)]
    state = await ToolExecutor([Tool.from_function(slow)], max_parallel=2)(_turn(*calls), run)

    assert peak == 2
    assert [m.content for m in _tool_results(state)] == [str(i) for i in range(6)]


# ---------------------------------------------------------------------------
# Structured output
# ---------------------------------------------------------------------------


async def test_structured_output_is_intercepted(run: RunContext) -> None:
    executor = ToolExecutor(output_schema=Answer)
    state = await executor(_turn(("c1", OUTPUT_TOOL_NAME, {"value": "42"})), run)

    assert state.ctx[CtxKey.STRUCTURED_OUTPUT_PARSED] == {"value": 42}
    assert state.ctx[CtxKey.FINALIZED_DUE_TO_STRUCTURED_OUTPUT] is True
    assert _tool_results(state)[0].content == "Structured output received."
    assert state.tool_call_count == 0


async def test_structured_output_validation_error(run: RunContext) -> None:
    executor = ToolExecutor(output_schema=Answer)
    state = await executor(_turn(("c1", OUTPUT_TOOL_NAME, {"value": "many"})), run)

    assert CtxKey.STRUCTURED_OUTPUT_PARSED not in state.ctx
    assert _tool_results(state)[0].content.startswith("Error: structured output does not match the schema")


async def test_dict_schema_passes_arguments_through(run: RunContext) -> None:
    executor = ToolExecutor(output_schema={"type": "object", "properties": {"x": {"type": "string"}}})
    state = await executor(_turn(("c1", OUTPUT_TOOL_NAME, {"x": "y"})), run)
    assert state.ctx[CtxKey.STRUCTURED_OUTPUT_PARSED] == {"x": "y"}


# ---------------------------------------------------------------------------
# Approvals
# ---------------------------------------------------------------------------


@pytest.fixture
def guarded() -> ToolExecutor:
    def delete(id: int) -> str:  # noqa: A002
        return f"deleted {id}"

    return ToolExecutor(
        [
            Tool.from_function(delete, needs_approval=True, approval_prompt="Really delete?"),
            Tool.from_function(add),
        ]
    )


async def test_approval_required_pauses_only_guarded_call(
    guarded: ToolExecutor, run: RunContext, events: list[AgentEvent]
) -> None:
    state = _turn(("c1", "delete", {"id": 7}), ("c2", "add", {"a": 1, "b": 1}))

    state = await guarded(state, run)

    assert state.ctx[CtxKey.AWAITING_APPROVAL] is True
    assert [m.tool_call_id for m in _tool_results(state)] == ["c2"]
    approval = state.pending_approvals[0]
    assert (approval.tool_call_id, approval.tool_name, approval.args) == ("c1", "delete", {"id": 7})
    assert approval.prompt == "Really delete?"
    required = [e for e in events if e.event_type == EventType.TOOL_APPROVAL_REQUIRED]
    assert required[0].payload["approval_id"] == approval.id

    # Dispatching again while still pending changes nothing.
    state = await guarded(state, run)
    assert len(state.pending_approvals) == 1
    assert len(_tool_results(state)) == 1


async def test_approved_call_runs_with_approved_args(guarded: ToolExecutor, run: RunContext) -> None:
    state = await guarded(_turn(("c1", "delete", {"id": 7})), run)
    approval = state.pending_approvals[0]
    approval.advance(ApprovalStatus.APPROVED)
    approval.approved_args = {"id": 8}

    state = await guarded(state, run)

    assert _tool_results(state)[0].content == "deleted 8"
    assert approval.status == ApprovalStatus.EXECUTED
    assert CtxKey.AWAITING_APPROVAL not in state.ctx
    assert state.tool_call_count == 1


async def test_rejected_call_reports_comment(guarded: ToolExecutor, run: RunContext) -> None:
    state = await guarded(_turn(("c1", "delete", {"id": 7})), run)
    approval = state.pending_approvals[0]
    approval.advance(ApprovalStatus.REJECTED)
    approval.comment = "too risky"

    state = await guarded(state, run)

    assert _tool_results(state)[0].content == "Tool call 'delete' was rejected by the user: too risky"
    assert state.tool_call_count == 0
    assert state.tool_history == []


# ---------------------------------------------------------------------------
# State-aware tools and history values
# ---------------------------------------------------------------------------


async def test_state_aware_tool_receives_state(run: RunContext) -> None:
    def count_messages(state: AgentState, prefix: str) -> str:
        return f"{prefix}{len(state.messages)}"

    executor = ToolExecutor([Tool(name="count", func=count_messages, needs_state=True)])
    state = await executor(_turn(("c1", "count", {"prefix": "n="})), run)

    assert _tool_results(state)[0].content == "n=2"


async def test_history_stores_json_values(run: RunContext) -> None:
    def pair() -> tuple[int, int]:
        return (1, 2)

    executor = ToolExecutor([Tool.from_function(pair)])
    state = await executor(_turn(("c1", "pair", {})), run)

    assert state.tool_history[0].output == [1, 2]
    assert _tool_results(state)[0].content == "[1,2]"


# ---------------------------------------------------------------------------
# Handoffs
# ---------------------------------------------------------------------------


@pytest.fixture
def with_handoff() -> ToolExecutor:
    return ToolExecutor(
        [
            Tool.from_function(add),
            Tool(name="handoff_to_billing", func=lambda **_: None, handoff_to="billing"),
        ]
    )


async def test_handoff_call_records_marker(
    with_handoff: ToolExecutor, run: RunContext, events: list[AgentEvent]
) -> None:
    state = _turn(("c1", "add", {"a": 1, "b": 1}), ("c2", "handoff_to_billing", {"reason": "invoice question"}))

    state = await with_handoff(state, run)

    assert state.ctx[CtxKey.HANDOFF] == {
        "tool_name": "handoff_to_billing",
        "tool_call_id": "c2",
        "target": "billing",
        "reason": "invoice question",
    }
    assert [m.content for m in _tool_results(state)] == ["2", "Handing off to billing."]
    assert state.tool_call_count == 1
    handoffs = [e for e in events if e.event_type == EventType.HANDOFF]
    assert len(handoffs) == 1
    assert handoffs[0].payload["target"] == "billing"


async def test_second_handoff_in_one_turn_is_refused(with_handoff: ToolExecutor, run: RunContext) -> None:
    state = _turn(("c1", "handoff_to_billing", {}), ("c2", "handoff_to_billing", {}))

    state = await with_handoff(state, run)

    assert state.ctx[CtxKey.HANDOFF]["tool_call_id"] == "c1"
    assert _tool_results(state)[1].content == "Error: a handoff was already requested in this turn."
