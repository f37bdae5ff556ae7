"""Guardrail outcome models.

The rule engine that produces these lives outside this package; the loop
only consumes ``GuardrailOutcome`` values.
"""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field

from turnwise.agent_runtime.models.enums import GuardrailDisposition, GuardrailPhase


class GuardrailIncident(BaseModel):
    guardrail_id: str | None = None
    rule_id: str | None = None
    disposition: GuardrailDisposition
    phase: GuardrailPhase
    reason: str = ""
    details: dict[str, Any] | None = None


class GuardrailOutcome(BaseModel):
    """Result of evaluating all guardrails for one phase."""

    ok: bool = True
    incidents: list[GuardrailIncident] = Field(default_factory=list)

    @property
    def blocked(self) -> bool:
        return any(i.disposition == GuardrailDisposition.BLOCK for i in self.incidents)

    @property
    def warnings(self) -> list[GuardrailIncident]:
        return [i for i in self.incidents if i.disposition == GuardrailDisposition.WARN]

    def merge(self, other: GuardrailOutcome) -> GuardrailOutcome:
        return GuardrailOutcome(ok=self.ok and other.ok, incidents=[*self.incidents, *other.incidents])

    @classmethod
    def fail_closed(cls, phase: GuardrailPhase, error: BaseException) -> GuardrailOutcome:
        """Outcome used when the evaluator itself raised."""
        return cls(
            ok=False,
            incidents=[
                GuardrailIncident(
                    guardrail_id="guardrail_error",
                    disposition=GuardrailDisposition.BLOCK,
                    phase=phase,
                    reason=f"Guardrail evaluation failed: {error}",
                )
            ],
        )
