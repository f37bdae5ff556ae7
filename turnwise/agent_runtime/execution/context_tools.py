"""Tools that let the model read its own run state.

``get_tool_response`` returns the full output of an earlier tool call,
including outputs that summarization replaced with ``SUMMARIZED``.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from turnwise.agent_runtime.execution.dispatcher import Tool
from turnwise.agent_runtime.execution.summarize import get_tool_response

if TYPE_CHECKING:
    from turnwise.agent_runtime.models.state import AgentState

GET_TOOL_RESPONSE_TOOL_NAME = "get_tool_response"


def _read_tool_response(state: AgentState, id: str) -> dict[str, Any]:  # noqa: A002
    entry = get_tool_response(state, id)
    if entry is None:
        return {"found": False, "error": f"No tool response recorded under '{id}'."}
    return {
        "found": True,
        "tool_name": entry.tool_name,
        "tool_call_id": entry.tool_call_id,
        "execution_id": entry.execution_id,
        "args": entry.args,
        "output": entry.output,
        "error": entry.error,
    }


def tool_response_tool() -> Tool:
    return Tool(
        name=GET_TOOL_RESPONSE_TOOL_NAME,
        func=_read_tool_response,
        description=(
            "Fetch the full output of an earlier tool call.  Use it when a tool result reads "
            "SUMMARIZED and you need the original data.  Pass the tool call id (or execution id)."
        ),
        parameters={
            "type": "object",
            "properties": {"id": {"type": "string", "description": "Tool call id or execution id"}},
            "required": ["id"],
        },
        needs_state=True,
    )


def context_tools(existing: list[str] | None = None) -> list[Tool]:
    """Context tools whose names do not clash with *existing*."""
    taken = set(existing or ())
    return [t for t in (tool_response_tool(),) if t.name not in taken]
