"""Human-in-the-loop approval resolution."""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel

from turnwise.agent_runtime.models.enums import ApprovalStatus, CtxKey

if TYPE_CHECKING:
    from turnwise.agent_runtime.models.state import AgentState

logger = logging.getLogger(__name__)

RESUME_STAGE_TOOLS = "tools"

# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------


class ApprovalNotFoundError(LookupError):
    """No approval matches the given id or tool-call id."""

    def __init__(self, approval_id: str) -> None:
        super().__init__(f"Pending approval not found: '{approval_id}'")


class ApprovalAlreadyResolvedError(ValueError):
    """The approval has already left the ``pending`` state."""

    def __init__(self, approval_id: str, status: ApprovalStatus) -> None:
        super().__init__(f"Approval '{approval_id}' already completed (status={status})")


# ---------------------------------------------------------------------------
# Resolution
# ---------------------------------------------------------------------------


class ToolApprovalResolution(BaseModel):
    """A human decision on one pending tool call."""

    id: str
    """Approval id, or the tool-call id it guards."""

    approved: bool
    decided_by: str | None = None
    comment: str | None = None
    approved_args: dict[str, Any] | None = None
    """Arguments to execute with.  Defaults to the originally requested ones."""


def resolve_tool_approval(state: AgentState, resolution: ToolApprovalResolution) -> AgentState:
    """Apply *resolution* and return a new state ready to resume at the tool stage.

    *state* is not modified.

    Raises
    ------
    ApprovalNotFoundError
        No approval matches ``resolution.id``.
    ApprovalAlreadyResolvedError
        The matching approval is no longer pending.
    """
    found = state.find_approval(resolution.id)
    if found is None:
        raise ApprovalNotFoundError(resolution.id)
    if found.status != ApprovalStatus.PENDING:
        raise ApprovalAlreadyResolvedError(found.id, found.status)

    new_state = state.fork()
    approval = new_state.find_approval(found.id)
    assert approval is not None  # noqa: S101

    status = ApprovalStatus.APPROVED if resolution.approved else ApprovalStatus.REJECTED
    approval.advance(status)
    approval.decided_by = resolution.decided_by
    approval.decided_at = datetime.now(tz=UTC)
    approval.comment = resolution.comment
    approval.approved_args = (
        resolution.approved_args if resolution.approved_args is not None else dict(approval.args)
    )

    new_state.ctx.pop(CtxKey.AWAITING_APPROVAL, None)
    new_state.ctx[CtxKey.RESUME_STAGE] = RESUME_STAGE_TOOLS
    new_state.ctx[CtxKey.APPROVAL_RESOLVED] = {"id": approval.id, "status": str(status)}
    logger.info("Approval %s for tool %s resolved: %s", approval.id, approval.tool_name, status)
    return new_state
