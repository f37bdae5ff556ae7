"""Normalized token-usage models and the per-state usage ledger."""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any

from pydantic import BaseModel, Field, NonNegativeInt


class PromptTokensDetails(BaseModel):
    cached_tokens: NonNegativeInt = 0
    audio_tokens: NonNegativeInt = 0


class CompletionTokensDetails(BaseModel):
    reasoning_tokens: NonNegativeInt = 0
    audio_tokens: NonNegativeInt = 0
    accepted_prediction_tokens: NonNegativeInt = 0
    rejected_prediction_tokens: NonNegativeInt = 0


class UsageRecord(BaseModel):
    """Provider-independent usage for one model call."""

    prompt_tokens: NonNegativeInt = 0
    completion_tokens: NonNegativeInt = 0
    total_tokens: NonNegativeInt = 0
    prompt_tokens_details: PromptTokensDetails = Field(default_factory=PromptTokensDetails)
    completion_tokens_details: CompletionTokensDetails = Field(default_factory=CompletionTokensDetails)
    raw: Any = None
    """The provider payload this record was derived from (JSON-safe copy)."""


class RequestUsage(BaseModel):
    """One entry of the per-request usage log."""

    id: str
    model_name: str
    usage: UsageRecord
    timestamp: datetime = Field(default_factory=lambda: datetime.now(tz=UTC))
    turn: int
    cached_input: NonNegativeInt = 0


class UsageTotals(BaseModel):
    input: NonNegativeInt = 0
    output: NonNegativeInt = 0
    total: NonNegativeInt = 0
    cached_input: NonNegativeInt = 0


class UsageLedger(BaseModel):
    """Per-request log plus running totals keyed by model name."""

    per_request: list[RequestUsage] = Field(default_factory=list)
    totals: dict[str, UsageTotals] = Field(default_factory=dict)

    def grand_total(self) -> UsageTotals:
        out = UsageTotals()
        for t in self.totals.values():
            out.input += t.input
            out.output += t.output
            out.total += t.total
            out.cached_input += t.cached_input
        return out
