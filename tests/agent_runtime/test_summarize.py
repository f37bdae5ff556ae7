"""Unit tests for context summarization."""

from __future__ import annotations

import pytest
from fakes import ScriptedEngine

from turnwise.agent_runtime.context import RunContext
from turnwise.agent_runtime.execution.repair import MISSING_RESULT_PLACEHOLDER
from turnwise.agent_runtime.execution.summarize import (
    OMITTED_NOTE,
    SUMMARIZED_PLACEHOLDER,
    SUMMARY_TOOL_NAME,
    SummarizationConfig,
    build_transcript,
    get_tool_response,
    has_compressible_messages,
    needs_summarization,
    summarize_context,
)
from turnwise.agent_runtime.models.enums import EventType, Role
from turnwise.agent_runtime.models.events import AgentEvent
from turnwise.agent_runtime.models.messages import (
    assistant_message,
    make_tool_call,
    system_message,
    tool_message,
    user_message,
)
from turnwise.agent_runtime.models.state import AgentState, ToolHistoryEntry


def _state_with_tools() -> AgentState:
    return AgentState(
        messages=[
            system_message("be helpful"),
            user_message("look things up"),
            assistant_message("", tool_calls=[make_tool_call("c1", "fetch", {"n": 1})]),
            tool_message("c1", "first result " * 50, name="fetch"),
            assistant_message("", tool_calls=[make_tool_call("c2", "fetch", {"n": 2})]),
            tool_message("c2", "second result " * 50, name="fetch"),
        ],
        tool_history=[
            ToolHistoryEntry(tool_name="fetch", tool_call_id="c1", args={"n": 1}, output="first"),
            ToolHistoryEntry(tool_name="fetch", tool_call_id="c2", args={"n": 2}, output="second"),
        ],
    )


# ---------------------------------------------------------------------------
# Queries
# ---------------------------------------------------------------------------


def test_needs_summarization_respects_budget_and_switch() -> None:
    state = _state_with_tools()
    assert needs_summarization(state, SummarizationConfig(max_tokens=10))
    assert not needs_summarization(state, SummarizationConfig(max_tokens=100_000))
    assert not needs_summarization(state, SummarizationConfig(enabled=False, max_tokens=10))


def test_has_compressible_messages() -> None:
    assert has_compressible_messages(_state_with_tools())
    assert not has_compressible_messages(AgentState(messages=[user_message("hi")]))
    placeholder_only = AgentState(
        messages=[
            assistant_message("", tool_calls=[make_tool_call("c1", "fetch")]),
            tool_message("c1", SUMMARIZED_PLACEHOLDER),
        ]
    )
    assert not has_compressible_messages(placeholder_only)


# ---------------------------------------------------------------------------
# Transcript
# ---------------------------------------------------------------------------


def test_transcript_skips_system_and_labels_roles() -> None:
    transcript = build_transcript(_state_with_tools().messages, 10_000)

    assert "be helpful" not in transcript
    assert transcript.startswith("USER: look things up")
    assert "[tool calls: fetch(" in transcript
    assert "TOOL (fetch): first result" in transcript


def test_transcript_keeps_newest_within_budget() -> None:
    messages = [user_message(f"message {i} " + "x" * 200) for i in range(20)]
    transcript = build_transcript(messages, 200)

    assert transcript.startswith(OMITTED_NOTE)
    assert "message 19" in transcript
    assert "message 0 " not in transcript


def test_transcript_truncates_long_messages() -> None:
    transcript = build_transcript([user_message("y" * 5_000)], 100_000)
    assert transcript.endswith("... [TRUNCATED]")
    assert len(transcript) < 2_100


# ---------------------------------------------------------------------------
# summarize_context
# ---------------------------------------------------------------------------


async def test_summarize_compresses_tool_outputs(run: RunContext, events: list[AgentEvent]) -> None:
    state = _state_with_tools()
    engine = ScriptedEngine([assistant_message("the user fetched two things")])

    outcome = await summarize_context(state, engine, SummarizationConfig(max_tokens=10), run)

    assert outcome is not None
    new = outcome.state
    tool_contents = [m.content for m in new.messages if m.role == Role.TOOL]
    assert tool_contents[:2] == [SUMMARIZED_PLACEHOLDER, SUMMARIZED_PLACEHOLDER]
    assert new.messages[-2].tool_calls[0].function.name == SUMMARY_TOOL_NAME
    assert new.messages[-1].name == SUMMARY_TOOL_NAME
    assert new.messages[-1].content == "the user fetched two things"
    assert new.messages[-1].tool_call_id == new.messages[-2].tool_calls[0].id
    assert new.summaries == ["the user fetched two things"]

    assert new.tool_history == []
    assert [e.tool_call_id for e in new.tool_history_archived] == ["c1", "c2"]
    archived_id = new.tool_history_archived[0].execution_id
    assert get_tool_response(new, archived_id).output == "first"

    assert outcome.event.messages_compressed == 2
    assert outcome.event.token_count_after < outcome.event.token_count_before
    assert [e.event_type for e in events] == [EventType.SUMMARIZATION]
    assert events[0].payload["summary"] == "the user fetched two things"

    # Original state is untouched.
    assert state.messages[3].content.startswith("first result")
    assert state.summaries == []


async def test_summarize_sends_previous_summary_and_no_tools() -> None:
    state = _state_with_tools()
    state.summaries.append("earlier summary text")
    engine = ScriptedEngine([assistant_message("newer")])

    outcome = await summarize_context(state, engine, SummarizationConfig())

    assert outcome is not None
    prompt = engine.calls[0]
    assert [m.role for m in prompt] == [Role.SYSTEM, Role.USER]
    assert "earlier summary text" in prompt[1].content
    assert outcome.event.previous_summary == "earlier summary text"
    assert outcome.state.summaries == ["earlier summary text", "newer"]


async def test_summarize_uses_custom_template() -> None:
    engine = ScriptedEngine([assistant_message("ok")])
    config = SummarizationConfig(prompt_template="Condense:\n{{ conversation }}")

    await summarize_context(_state_with_tools(), engine, config)

    assert engine.calls[0][1].content.startswith("Condense:\nUSER: look things up")


async def test_summarize_reports_provider_usage() -> None:
    response = assistant_message("s").model_copy(update={"usage": {"input_tokens": 300, "output_tokens": 20}})
    outcome = await summarize_context(_state_with_tools(), ScriptedEngine([response]), SummarizationConfig())

    assert outcome is not None
    assert (outcome.event.input_tokens, outcome.event.output_tokens, outcome.event.total_tokens) == (300, 20, 320)


async def test_second_summary_replaces_first(run: RunContext) -> None:
    engine = ScriptedEngine([assistant_message("one"), assistant_message("two")])
    first = await summarize_context(_state_with_tools(), engine, SummarizationConfig(), run)
    assert first is not None
    state = first.state
    state.messages += [
        assistant_message("", tool_calls=[make_tool_call("c3", "fetch")]),
        tool_message("c3", "third result", name="fetch"),
    ]

    second = await summarize_context(state, engine, SummarizationConfig(), run)

    assert second is not None
    summary_results = [m for m in second.state.messages if m.name == SUMMARY_TOOL_NAME and m.role == Role.TOOL]
    assert [m.content for m in summary_results] == [SUMMARIZED_PLACEHOLDER, "two"]
    assert second.event.messages_compressed == 1


async def test_summarize_skips_when_nothing_compressible() -> None:
    engine = ScriptedEngine()
    state = AgentState(messages=[user_message("x" * 10_000)])

    assert await summarize_context(state, engine, SummarizationConfig(max_tokens=1)) is None
    assert engine.calls == []


async def test_summarize_failure_keeps_state(run: RunContext, events: list[AgentEvent]) -> None:
    engine = ScriptedEngine([RuntimeError("model down")])

    assert await summarize_context(_state_with_tools(), engine, SummarizationConfig(), run) is None
    assert [e.event_type for e in events] == [EventType.SUMMARIZATION_FAILED]
    assert events[0].payload["error"] == "model down"


async def test_summarize_fills_unanswered_calls() -> None:
    state = _state_with_tools()
    state.messages.append(assistant_message("", tool_calls=[make_tool_call("c9", "fetch")]))

    outcome = await summarize_context(state, ScriptedEngine([assistant_message("s")]), SummarizationConfig())

    assert outcome is not None
    c9 = [m for m in outcome.state.messages if m.tool_call_id == "c9"]
    assert [m.content for m in c9] == [MISSING_RESULT_PLACEHOLDER]


@pytest.mark.parametrize("text", ["", "   "])
async def test_summarize_empty_response_gets_fallback_text(text: str) -> None:
    outcome = await summarize_context(
        _state_with_tools(), ScriptedEngine([assistant_message(text)]), SummarizationConfig()
    )
    assert outcome is not None
    assert outcome.state.summaries == ["Summary unavailable."]


async def test_summarize_drops_orphan_results_and_keeps_tool_count() -> None:
    state = _state_with_tools()
    state.tool_call_count = 2
    state.messages.insert(2, tool_message("ghost", "stray output", name="fetch"))

    outcome = await summarize_context(state, ScriptedEngine([assistant_message("s")]), SummarizationConfig())

    assert outcome is not None
    new = outcome.state
    call_ids = {c.id for m in new.messages for c in (m.tool_calls or [])}
    assert all(m.tool_call_id in call_ids for m in new.messages if m.role == Role.TOOL)
    assert "ghost" not in {m.tool_call_id for m in new.messages}
    assert new.tool_call_count == state.tool_call_count == 2
