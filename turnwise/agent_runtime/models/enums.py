"""Shared enumerations used across the agent runtime."""

from __future__ import annotations

from enum import StrEnum

# -- Messages ----------------------------------------------------------------


class Role(StrEnum):
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"
    TOOL = "tool"


# -- Approvals ---------------------------------------------------------------


class ApprovalStatus(StrEnum):
    """Lifecycle of a human-in-the-loop approval.

    Transitions are forward-only: ``pending -> approved | rejected -> executed``.
    """

    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    EXECUTED = "executed"


# -- Guardrails --------------------------------------------------------------


class GuardrailPhase(StrEnum):
    REQUEST = "request"
    RESPONSE = "response"


class GuardrailDisposition(StrEnum):
    BLOCK = "block"
    WARN = "warn"


# -- Run lifecycle -----------------------------------------------------------


class CancelReason(StrEnum):
    ABORTED = "aborted"
    CANCELLED = "cancelled"
    TIMEOUT = "timeout"


class CheckpointStage(StrEnum):
    """Named gates inside one loop iteration where cancellation or a pause may land."""

    LOOP = "loop"
    BEFORE_GUARDRAILS = "before_guardrails"
    BEFORE_AGENT = "before_agent"
    AFTER_AGENT = "after_agent"
    BEFORE_TOOLS = "before_tools"
    AFTER_TOOLS = "after_tools"
    AFTER_LOOP = "after_loop"


class RunStatus(StrEnum):
    """Outcome of one ``Agent.invoke`` call, derived from ctx markers."""

    COMPLETED = "completed"
    CANCELLED = "cancelled"
    PAUSED = "paused"
    AWAITING_APPROVAL = "awaiting_approval"
    BLOCKED = "blocked"
    FINALIZED_DUE_TO_LIMIT = "finalized_due_to_limit"


class CtxKey(StrEnum):
    """Well-known keys of ``AgentState.ctx``.

    The ctx bag is open: callers may store their own keys next to these.
    """

    CANCELLED = "cancelled"
    PAUSED = "paused"
    AWAITING_APPROVAL = "awaiting_approval"
    RESUME_STAGE = "resume_stage"
    APPROVAL_RESOLVED = "approval_resolved"
    FINALIZED_DUE_TO_TOOL_LIMIT = "finalized_due_to_tool_limit"
    FINALIZED_DUE_TO_STRUCTURED_OUTPUT = "finalized_due_to_structured_output"
    STRUCTURED_OUTPUT_PARSED = "structured_output_parsed"
    STRUCTURED_OUTPUT_FORCE_FINALIZE = "structured_output_force_finalize"
    NEEDS_SUMMARIZATION = "needs_summarization"
    GUARDRAIL_BLOCKED = "guardrail_blocked"
    GUARDRAIL_STORE = "guardrail_store"
    RESTORED_FROM_SNAPSHOT = "restored_from_snapshot"
    HANDOFF = "handoff"


# -- Events ------------------------------------------------------------------


class EventType(StrEnum):
    """Event types delivered to the caller's event sink."""

    # Tool lifecycle
    TOOL_CALL_START = "tool_call_start"
    TOOL_CALL_SUCCESS = "tool_call_success"
    TOOL_CALL_ERROR = "tool_call_error"
    TOOL_CALL_SKIPPED = "tool_call_skipped"
    TOOL_APPROVAL_REQUIRED = "tool_approval_required"

    # Context management
    SUMMARIZATION = "summarization"
    SUMMARIZATION_FAILED = "summarization_failed"

    # Turn lifecycle
    METADATA = "metadata"
    GUARDRAIL = "guardrail"
    HANDOFF = "handoff"
    STREAM = "stream"
    CANCELLED = "cancelled"
    PAUSED = "paused"
    FINAL_ANSWER = "final_answer"
