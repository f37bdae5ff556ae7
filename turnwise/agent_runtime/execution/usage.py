"""Usage normalization and aggregation.

Providers report token usage under different names (``prompt_tokens`` vs
``input_tokens`` vs ``promptTokens``), nest details in differently named
objects, and sometimes send garbage.  ``normalize_usage`` turns any of those
into a ``UsageRecord`` and never raises.
"""

from __future__ import annotations

import logging
import math
from collections.abc import Mapping
from typing import Any

from pydantic_core import to_jsonable_python

from turnwise.agent_runtime.models.messages import Message
from turnwise.agent_runtime.models.usage import (
    CompletionTokensDetails,
    PromptTokensDetails,
    RequestUsage,
    UsageLedger,
    UsageRecord,
    UsageTotals,
)

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Field aliases, in lookup order
# ---------------------------------------------------------------------------

PROMPT_KEYS = ("prompt_tokens", "input_tokens", "promptTokens", "total_prompt_tokens")
COMPLETION_KEYS = ("completion_tokens", "output_tokens", "completionTokens", "total_completion_tokens")
TOTAL_KEYS = ("total_tokens", "totalTokens")
PROMPT_DETAIL_KEYS = ("prompt_tokens_details", "promptTokensDetails", "input_token_details", "inputTokenDetails")
COMPLETION_DETAIL_KEYS = (
    "completion_tokens_details",
    "completionTokensDetails",
    "output_token_details",
    "outputTokenDetails",
)
CACHED_DETAIL_KEYS = ("cached_tokens", "cached", "cache_read")
CACHED_TOP_LEVEL_KEYS = ("cached_input_tokens", "cached_prompt_tokens", "cache_read_input_tokens")

RESPONSE_METADATA_USAGE_KEYS = ("token_usage", "tokenUsage", "usage")

UNKNOWN_MODEL = "unknown_model"


def _get(source: Any, key: str) -> Any:
    if source is None:
        return None
    if isinstance(source, Mapping):
        return source.get(key)
    return getattr(source, key, None)


def _as_number(value: Any) -> float | None:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int | float):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value.strip())
        except ValueError:
            return None
    return None


def _first_number(source: Any, keys: tuple[str, ...]) -> float | None:
    for key in keys:
        number = _as_number(_get(source, key))
        if number is not None:
            return number
    return None


def _first_object(source: Any, keys: tuple[str, ...]) -> Any:
    for key in keys:
        value = _get(source, key)
        if value is not None:
            return value
    return None


def _safe(value: float | None) -> int:
    """Clamp to a finite, non-negative integer."""
    if value is None or not math.isfinite(value) or value < 0:
        return 0
    return int(value)


def _jsonable(raw: Any) -> Any:
    try:
        return to_jsonable_python(raw, fallback=repr)
    except Exception:
        return repr(raw)


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def normalize_usage(raw: Any) -> UsageRecord | None:
    """Convert a provider usage payload into a ``UsageRecord``.

    Parameters
    ----------
    raw:
        A mapping or attribute object in any supported provider dialect.

    Returns
    -------
    UsageRecord | None
        ``None`` when *raw* is empty or not an object.  Missing fields are
        zero; negative or non-finite counts are clamped to zero.
    """
    if raw is None or isinstance(raw, str | bytes | int | float | bool | list | tuple):
        return None
    if isinstance(raw, Mapping) and not raw:
        return None

    try:
        prompt = _safe(_first_number(raw, PROMPT_KEYS))
        completion = _safe(_first_number(raw, COMPLETION_KEYS))
        total = _safe(_first_number(raw, TOTAL_KEYS)) or prompt + completion

        prompt_details = _first_object(raw, PROMPT_DETAIL_KEYS)
        completion_details = _first_object(raw, COMPLETION_DETAIL_KEYS)

        cached = _safe(_first_number(prompt_details, CACHED_DETAIL_KEYS)) or _safe(
            _first_number(raw, CACHED_TOP_LEVEL_KEYS)
        )

        return UsageRecord(
            prompt_tokens=prompt,
            completion_tokens=completion,
            total_tokens=total,
            prompt_tokens_details=PromptTokensDetails(
                cached_tokens=cached,
                audio_tokens=_safe(_as_number(_get(prompt_details, "audio_tokens"))),
            ),
            completion_tokens_details=CompletionTokensDetails(
                reasoning_tokens=_safe(_as_number(_get(completion_details, "reasoning_tokens"))),
                audio_tokens=_safe(_as_number(_get(completion_details, "audio_tokens"))),
                accepted_prediction_tokens=_safe(_as_number(_get(completion_details, "accepted_prediction_tokens"))),
                rejected_prediction_tokens=_safe(_as_number(_get(completion_details, "rejected_prediction_tokens"))),
            ),
            raw=_jsonable(raw),
        )
    except Exception:
        logger.debug("Could not normalize usage payload %r", raw, exc_info=True)
        return None


def extract_raw_usage(message: Message) -> Any:
    """Find the raw usage payload on a model response, if any."""
    if message.usage:
        return message.usage
    metadata = message.response_metadata or {}
    for key in RESPONSE_METADATA_USAGE_KEYS:
        if metadata.get(key):
            return metadata[key]
    return None


def record_usage(ledger: UsageLedger, usage: UsageRecord, model_name: str | None = None) -> RequestUsage:
    """Append one request to *ledger* and fold it into the per-model totals.

    Mutates *ledger* in place and returns the appended entry.
    """
    name = model_name or UNKNOWN_MODEL
    turn = len(ledger.per_request) + 1
    cached = usage.prompt_tokens_details.cached_tokens
    entry = RequestUsage(
        id=f"req_{turn}",
        model_name=name,
        usage=usage,
        turn=turn,
        cached_input=cached,
    )
    ledger.per_request.append(entry)

    totals = ledger.totals.setdefault(name, UsageTotals())
    totals.input += usage.prompt_tokens
    totals.output += usage.completion_tokens
    totals.total += usage.total_tokens
    totals.cached_input += cached
    return entry
