"""Heuristic token estimation.

Counts are approximate on purpose: ASCII text is taken at four characters
per token and non-ASCII text at one and a half, which over-estimates CJK
and emoji-heavy text rather than under-estimating it.  The estimate is
used for budget decisions only, never for billing.
"""

from __future__ import annotations

import math
from collections.abc import Sequence

from turnwise.agent_runtime.models.enums import Role
from turnwise.agent_runtime.models.messages import Message

ASCII_CHARS_PER_TOKEN = 4
NON_ASCII_CHARS_PER_TOKEN = 1.5
MESSAGE_FRAMING_TOKENS = 4


def estimate_tokens(text: str) -> int:
    """Estimate tokens in *text*.  Empty text is zero."""
    if not text:
        return 0
    ascii_count = sum(1 for ch in text if ord(ch) < 128)
    other_count = len(text) - ascii_count
    return math.ceil(ascii_count / ASCII_CHARS_PER_TOKEN + other_count / NON_ASCII_CHARS_PER_TOKEN)


def message_text(message: Message) -> str:
    """Every piece of a message that is sent to a provider, joined by newlines."""
    parts: list[str] = [str(message.role)]
    if message.name:
        parts.append(message.name)
    content = message.text()
    if content:
        parts.append(content)
    for call in message.tool_calls or ():
        parts.append(call.function.name)
        parts.append(call.function.arguments)
    return "\n".join(parts)


def estimate_messages(messages: Sequence[Message]) -> int:
    """Estimate tokens for a message list, including per-message framing."""
    if not messages:
        return 0
    text = "\n".join(message_text(m) for m in messages)
    return estimate_tokens(text) + MESSAGE_FRAMING_TOKENS * len(messages)


def apply_token_limits(messages: Sequence[Message], context_token_limit: int) -> list[Message]:
    """Drop the oldest non-system messages until the list fits *context_token_limit*.

    This is a hard fallback for callers that cannot summarize.  System
    messages are always kept, and the newest message is never dropped even if
    it alone exceeds the limit.  A tool result whose assistant turn was
    dropped is removed along with it.
    """
    kept = list(messages)
    while estimate_messages(kept) > context_token_limit:
        index = next(
            (i for i, m in enumerate(kept[:-1]) if m.role != Role.SYSTEM),
            None,
        )
        if index is None:
            break
        dropped = kept.pop(index)
        if dropped.has_tool_calls:
            ids = {c.id for c in dropped.tool_calls or ()}
            kept = [m for m in kept if not (m.role == Role.TOOL and m.tool_call_id in ids)]
    return kept
