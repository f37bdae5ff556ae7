"""Context summarization.

When the history outgrows its token budget the loop asks a model to
summarize it.  Every tool output that was folded into the summary is
replaced by the ``SUMMARIZED`` placeholder, and the summary itself is
appended as the result of a synthetic ``summarize_context`` tool call.
Full tool outputs move to ``tool_history_archived`` and stay retrievable
through ``get_tool_response``.

Summaries chain: each new summary is produced with the previous one in
the prompt, so ``summaries[-1]`` always covers the whole conversation.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING

from pydantic import BaseModel

from turnwise.agent_runtime.execution.prompt import SUMMARIZER_SYSTEM_PROMPT, render_summary_prompt
from turnwise.agent_runtime.execution.repair import validate_message_sequence
from turnwise.agent_runtime.execution.tokens import estimate_messages, estimate_tokens
from turnwise.agent_runtime.execution.usage import extract_raw_usage, normalize_usage
from turnwise.agent_runtime.models.enums import EventType, Role
from turnwise.agent_runtime.models.messages import (
    Message,
    assistant_message,
    coerce_message,
    make_tool_call,
    system_message,
    tool_message,
    user_message,
)

if TYPE_CHECKING:
    from turnwise.agent_runtime.context import RunContext
    from turnwise.agent_runtime.execution.protocols import ReasoningEngine
    from turnwise.agent_runtime.models.state import AgentState, ToolHistoryEntry

logger = logging.getLogger(__name__)

SUMMARIZED_PLACEHOLDER = "SUMMARIZED"
SUMMARY_TOOL_NAME = "summarize_context"
SUMMARY_NOTICE = "Context limit reached. Summarizing conversation history to reduce token usage."
OMITTED_NOTE = "[Earlier conversation history omitted for brevity]"
TRUNCATED_SUFFIX = "... [TRUNCATED]"
MAX_TRANSCRIPT_MESSAGE_CHARS = 2_000
PROMPT_OVERHEAD_TOKENS = 500


class SummarizationConfig(BaseModel):
    enabled: bool = True
    max_tokens: int = 50_000
    """History budget.  Exceeding it triggers summarization."""

    summary_prompt_max_tokens: int = 8_000
    """Budget for the transcript sent to the summarizer, including overhead."""

    prompt_template: str | None = None


class SummarizationEvent(BaseModel):
    summary: str
    messages_compressed: int
    input_tokens: int
    output_tokens: int
    cached_input_tokens: int = 0
    total_tokens: int
    duration_ms: int
    previous_summary: str | None = None
    token_count_before: int
    token_count_after: int


@dataclass
class SummarizationOutcome:
    state: AgentState
    event: SummarizationEvent


# ---------------------------------------------------------------------------
# Queries
# ---------------------------------------------------------------------------


def _is_summary_result(message: Message) -> bool:
    return message.role == Role.TOOL and message.name == SUMMARY_TOOL_NAME


def _is_compressible(message: Message) -> bool:
    return message.role == Role.TOOL and message.content != SUMMARIZED_PLACEHOLDER and not _is_summary_result(message)


def needs_summarization(state: AgentState, config: SummarizationConfig) -> bool:
    return config.enabled and estimate_messages(state.messages) > config.max_tokens


def has_compressible_messages(state: AgentState) -> bool:
    return any(_is_compressible(m) for m in state.messages)


def get_tool_response(state: AgentState, execution_id: str) -> ToolHistoryEntry | None:
    """Return a tool execution by id, whether live or archived by summarization.

    Falls back to matching the tool-call id, which is the id the model sees
    next to a ``SUMMARIZED`` placeholder.
    """
    entries = (*state.tool_history, *state.tool_history_archived)
    for entry in entries:
        if entry.execution_id == execution_id:
            return entry
    for entry in entries:
        if entry.tool_call_id == execution_id:
            return entry
    return None


# ---------------------------------------------------------------------------
# Transcript
# ---------------------------------------------------------------------------


def _transcript_line(message: Message) -> str:
    label = str(message.role).upper()
    if message.name:
        label = f"{label} ({message.name})"
    body = message.text()
    if message.tool_calls:
        calls = ", ".join(f"{c.function.name}({c.function.arguments})" for c in message.tool_calls)
        body = f"{body}\n[tool calls: {calls}]" if body else f"[tool calls: {calls}]"
    if len(body) > MAX_TRANSCRIPT_MESSAGE_CHARS:
        body = body[:MAX_TRANSCRIPT_MESSAGE_CHARS] + TRUNCATED_SUFFIX
    return f"{label}: {body}"


def build_transcript(messages: list[Message], budget_tokens: int) -> str:
    """Render *messages* newest-first until *budget_tokens* is used, then restore order."""
    lines: list[str] = []
    used = 0
    omitted = False
    for message in reversed(messages):
        if message.role == Role.SYSTEM:
            continue
        line = _transcript_line(message)
        cost = estimate_tokens(line)
        if used + cost > budget_tokens:
            omitted = True
            break
        lines.append(line)
        used += cost
    lines.reverse()
    if omitted:
        lines.insert(0, OMITTED_NOTE)
    return "\n\n".join(lines)


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------


async def summarize_context(
    state: AgentState,
    engine: ReasoningEngine,
    config: SummarizationConfig,
    run: RunContext | None = None,
) -> SummarizationOutcome | None:
    """Summarize *state* and compress its tool outputs.

    Parameters
    ----------
    state:
        Current state.  Never mutated.
    engine:
        Model used for the summary.  Called without tools bound.
    config:
        Budgets and optional prompt template.
    run:
        Receives the ``summarization`` (or ``summarization_failed``) event.

    Returns
    -------
    SummarizationOutcome | None
        ``None`` when no tool output is left to compress, or when the engine
        failed.  In both cases the caller keeps *state* unchanged.
    """
    if not has_compressible_messages(state):
        logger.debug("Summarization skipped: no compressible tool output")
        return None

    previous = state.summaries[-1] if state.summaries else None
    transcript_budget = max(config.summary_prompt_max_tokens - PROMPT_OVERHEAD_TOKENS, 0)
    transcript = build_transcript(state.messages, transcript_budget)
    prompt = [
        system_message(SUMMARIZER_SYSTEM_PROMPT),
        user_message(render_summary_prompt(transcript, previous, template=config.prompt_template)),
    ]
    tokens_before = estimate_messages(state.messages)

    started = time.monotonic()
    try:
        response = coerce_message(await engine.invoke(prompt))
    except Exception as exc:
        logger.warning("Summarization failed, keeping history unchanged: %s", exc, exc_info=True)
        if run is not None:
            await run.emit(EventType.SUMMARIZATION_FAILED, error=str(exc), messages_compressed=0)
        return None
    duration_ms = int((time.monotonic() - started) * 1000)

    summary = response.text().strip() or "Summary unavailable."
    usage = normalize_usage(extract_raw_usage(response))
    input_tokens = usage.prompt_tokens if usage else estimate_messages(prompt)
    output_tokens = usage.completion_tokens if usage else estimate_tokens(summary)
    cached = usage.prompt_tokens_details.cached_tokens if usage else 0

    new_state, compressed = _compress(state, summary)
    event = SummarizationEvent(
        summary=summary,
        messages_compressed=compressed,
        input_tokens=input_tokens,
        output_tokens=output_tokens,
        cached_input_tokens=cached,
        total_tokens=(usage.total_tokens if usage else input_tokens + output_tokens),
        duration_ms=duration_ms,
        previous_summary=previous,
        token_count_before=tokens_before,
        token_count_after=estimate_messages(new_state.messages),
    )
    logger.info(
        "Summarized %d tool output(s): %d -> %d estimated tokens",
        event.messages_compressed,
        event.token_count_before,
        event.token_count_after,
    )
    if run is not None:
        await run.emit(EventType.SUMMARIZATION, **event.model_dump())
    return SummarizationOutcome(state=new_state, event=event)


def _compress(state: AgentState, summary: str) -> tuple[AgentState, int]:
    compressed = 0
    compressed_ids: set[str] = set()
    rewritten: list[Message] = []
    for message in state.messages:
        if message.role == Role.TOOL and message.content != SUMMARIZED_PLACEHOLDER:
            if _is_compressible(message):
                compressed += 1
                if message.tool_call_id:
                    compressed_ids.add(message.tool_call_id)
            message = message.model_copy(update={"content": SUMMARIZED_PLACEHOLDER})
        rewritten.append(message)
    rewritten = validate_message_sequence(rewritten)

    call_id = f"call_summary_{int(time.time() * 1000)}"
    rewritten.append(
        assistant_message(SUMMARY_NOTICE, tool_calls=[make_tool_call(call_id, SUMMARY_TOOL_NAME, "{}")])
    )
    rewritten.append(tool_message(call_id, summary, name=SUMMARY_TOOL_NAME))

    archived = [e for e in state.tool_history if e.tool_call_id in compressed_ids]
    live = [e for e in state.tool_history if e.tool_call_id not in compressed_ids]

    new_state = state.model_copy(
        update={
            "messages": rewritten,
            "summaries": [*state.summaries, summary],
            "tool_history": live,
            "tool_history_archived": [*state.tool_history_archived, *archived],
        }
    )
    return new_state, compressed
