"""Provider-shape repair for outgoing message lists.

Providers reject transcripts where a tool call has no directly following
result, where a tool result answers nothing, or where two tool calls share
an id.  Summarization and pause/resume can produce all three.  These
passes fix the outgoing copy; the stored history is left as-is.
"""

from __future__ import annotations

import logging
from collections import deque
from collections.abc import Sequence
from uuid import uuid4

from turnwise.agent_runtime.models.enums import Role
from turnwise.agent_runtime.models.messages import Message, tool_message

logger = logging.getLogger(__name__)

MISSING_RESULT_PLACEHOLDER = (
    "SUMMARIZED/DEFERRED: tool result missing in transcript; inserted placeholder for tool_result adjacency."
)


def _fresh_id(old_id: str) -> str:
    return f"{old_id or 'call'}_{uuid4().hex[:8]}"


def dedupe_tool_call_ids(messages: Sequence[Message]) -> list[Message]:
    """Rewrite repeated (or empty) tool-call ids to fresh ones.

    Ids are first assigned per assistant turn; the tool results that follow
    are then patched to point at the renamed call.  Results are matched to
    calls in order, so two results for the same original id in one turn map
    to the original call and then to its renamed twin.
    """
    out: list[Message] = []
    seen: set[str] = set()
    pending: dict[str, deque[str]] = {}

    for message in messages:
        if message.has_tool_calls:
            pending = {}
            calls = []
            for call in message.tool_calls or ():
                original = call.id
                final_id = original
                if not final_id or final_id in seen:
                    final_id = _fresh_id(original)
                    logger.debug("Renamed duplicate tool call id %r to %r", original, final_id)
                    call = call.model_copy(update={"id": final_id})
                seen.add(final_id)
                pending.setdefault(original, deque()).append(final_id)
                calls.append(call)
            out.append(message.model_copy(update={"tool_calls": calls}))
            continue

        if message.role == Role.TOOL and pending.get(message.tool_call_id or ""):
            new_id = pending[message.tool_call_id or ""].popleft()
            if new_id != message.tool_call_id:
                message = message.model_copy(update={"tool_call_id": new_id})
        out.append(message)
    return out


def drop_orphan_tool_messages(messages: Sequence[Message]) -> list[Message]:
    """Keep a tool result only if it answers an open call of the preceding assistant turn.

    Each call may be answered once.  Any non-tool message closes the turn.
    """
    out: list[Message] = []
    open_ids: set[str] = set()
    for message in messages:
        if message.role == Role.TOOL:
            if message.tool_call_id in open_ids:
                open_ids.discard(message.tool_call_id)
                out.append(message)
            else:
                logger.debug("Dropped orphan tool result for %r", message.tool_call_id)
            continue
        open_ids = {c.id for c in message.tool_calls or ()} if message.has_tool_calls else set()
        out.append(message)
    return out


def ensure_tool_result_adjacency(messages: Sequence[Message]) -> list[Message]:
    """Insert placeholder results so every tool call is answered directly after its turn."""
    out: list[Message] = []
    items = list(messages)
    i = 0
    while i < len(items):
        message = items[i]
        out.append(message)
        i += 1
        if not message.has_tool_calls:
            continue

        answered: set[str] = set()
        while i < len(items) and items[i].role == Role.TOOL:
            answered.add(items[i].tool_call_id or "")
            out.append(items[i])
            i += 1

        for call in message.tool_calls or ():
            if call.id not in answered:
                out.append(tool_message(call.id, MISSING_RESULT_PLACEHOLDER, name=call.function.name))
    return out


def prepare_messages_for_model(messages: Sequence[Message]) -> list[Message]:
    """Run every repair pass, in order, on a copy of *messages*."""
    repaired = dedupe_tool_call_ids(messages)
    repaired = drop_orphan_tool_messages(repaired)
    return ensure_tool_result_adjacency(repaired)


def validate_message_sequence(messages: Sequence[Message]) -> list[Message]:
    """Drop orphan results and fill missing ones, without renaming ids."""
    return ensure_tool_result_adjacency(drop_orphan_tool_messages(messages))
