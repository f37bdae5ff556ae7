"""Data models for the agent runtime."""

from turnwise.agent_runtime.models.enums import (
    ApprovalStatus,
    CancelReason,
    CheckpointStage,
    CtxKey,
    EventType,
    GuardrailDisposition,
    GuardrailPhase,
    Role,
    RunStatus,
)
from turnwise.agent_runtime.models.events import AgentEvent
from turnwise.agent_runtime.models.guardrails import GuardrailIncident, GuardrailOutcome
from turnwise.agent_runtime.models.messages import (
    FunctionCall,
    Message,
    ToolCall,
    assistant_message,
    make_tool_call,
    system_message,
    tool_message,
    user_message,
)
from turnwise.agent_runtime.models.snapshot import RuntimeHint, Snapshot, SnapshotMetadata
from turnwise.agent_runtime.models.state import AgentState, PendingApproval, ToolHistoryEntry
from turnwise.agent_runtime.models.usage import (
    CompletionTokensDetails,
    PromptTokensDetails,
    RequestUsage,
    UsageLedger,
    UsageRecord,
    UsageTotals,
)

__all__ = [
    # Events
    "AgentEvent",
    # State
    "AgentState",
    # Enums
    "ApprovalStatus",
    "CancelReason",
    "CheckpointStage",
    # Usage
    "CompletionTokensDetails",
    "CtxKey",
    "EventType",
    # Messages
    "FunctionCall",
    "GuardrailDisposition",
    # Guardrails
    "GuardrailIncident",
    "GuardrailOutcome",
    "GuardrailPhase",
    "Message",
    "PendingApproval",
    "PromptTokensDetails",
    "RequestUsage",
    "Role",
    "RunStatus",
    "RuntimeHint",
    # Snapshot
    "Snapshot",
    "SnapshotMetadata",
    "ToolCall",
    "ToolHistoryEntry",
    "UsageLedger",
    "UsageRecord",
    "UsageTotals",
    "assistant_message",
    "make_tool_call",
    "system_message",
    "tool_message",
    "user_message",
]
