"""Agent state: the single unit that is carried between turns, snapshotted
and resumed.
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any
from uuid import uuid4

from pydantic import BaseModel, Field

from turnwise.agent_runtime.models.enums import ApprovalStatus
from turnwise.agent_runtime.models.guardrails import GuardrailOutcome
from turnwise.agent_runtime.models.messages import Message
from turnwise.agent_runtime.models.usage import UsageLedger


def _now() -> datetime:
    return datetime.now(tz=UTC)


class ToolHistoryEntry(BaseModel):
    """One executed tool call with its full, untruncated output."""

    execution_id: str = Field(default_factory=lambda: uuid4().hex)
    tool_name: str
    tool_call_id: str | None = None
    args: dict[str, Any] = Field(default_factory=dict)
    output: Any = None
    error: str | None = None
    timestamp: datetime = Field(default_factory=_now)


_APPROVAL_ORDER = {
    ApprovalStatus.PENDING: 0,
    ApprovalStatus.APPROVED: 1,
    ApprovalStatus.REJECTED: 1,
    ApprovalStatus.EXECUTED: 2,
}


class PendingApproval(BaseModel):
    id: str = Field(default_factory=lambda: f"approval_{uuid4().hex[:12]}")
    tool_call_id: str
    tool_name: str
    args: dict[str, Any] = Field(default_factory=dict)
    prompt: str | None = None
    requested_at: datetime = Field(default_factory=_now)
    status: ApprovalStatus = ApprovalStatus.PENDING
    decided_by: str | None = None
    decided_at: datetime | None = None
    comment: str | None = None
    approved_args: dict[str, Any] | None = None

    def advance(self, status: ApprovalStatus) -> None:
        """Move to *status*.  Raises ``ValueError`` on a backwards or sideways move."""
        if _APPROVAL_ORDER[status] <= _APPROVAL_ORDER[self.status]:
            msg = f"Approval '{self.id}' cannot move from {self.status} to {status}"
            raise ValueError(msg)
        self.status = status


class AgentState(BaseModel):
    """Everything the loop needs to continue a conversation.

    ``ctx`` is an open bag of loop signals (see ``CtxKey``) plus caller
    keys.  Live handles such as callbacks and cancellation tokens belong in
    ``RunContext`` instead; anything in ``ctx`` that cannot be serialized is
    dropped when a snapshot is taken.
    """

    messages: list[Message] = Field(default_factory=list)
    tool_call_count: int = 0
    tool_history: list[ToolHistoryEntry] = Field(default_factory=list)
    tool_history_archived: list[ToolHistoryEntry] = Field(default_factory=list)
    summaries: list[str] = Field(default_factory=list)
    """Newest last.  Each summary already folds in the previous one."""

    usage: UsageLedger = Field(default_factory=UsageLedger)
    pending_approvals: list[PendingApproval] = Field(default_factory=list)
    guardrail_result: GuardrailOutcome | None = None
    metadata: dict[str, Any] | None = None
    ctx: dict[str, Any] = Field(default_factory=dict)

    agent: Any = Field(default=None, exclude=True)
    """Runtime binding attached on restore.  Never serialized."""

    @property
    def last_message(self) -> Message | None:
        return self.messages[-1] if self.messages else None

    def find_approval(self, key: str) -> PendingApproval | None:
        """Look up an approval by its id, falling back to the tool-call id."""
        for approval in self.pending_approvals:
            if approval.id == key:
                return approval
        for approval in self.pending_approvals:
            if approval.tool_call_id == key:
                return approval
        return None

    def fork(self) -> AgentState:
        """Copy with fresh containers so the loop can mutate without touching the caller's value.

        Nested dicts in ``ctx`` (the guardrail store, the pause marker) get their
        own copy; other ``ctx`` values are shared since they may hold live objects.
        """
        return self.model_copy(
            update={
                "messages": [m.model_copy(deep=True) for m in self.messages],
                "tool_history": list(self.tool_history),
                "tool_history_archived": list(self.tool_history_archived),
                "summaries": list(self.summaries),
                "usage": self.usage.model_copy(deep=True),
                "pending_approvals": [a.model_copy(deep=True) for a in self.pending_approvals],
                "metadata": dict(self.metadata) if self.metadata is not None else None,
                "ctx": {k: dict(v) if isinstance(v, dict) else v for k, v in self.ctx.items()},
            }
        )
