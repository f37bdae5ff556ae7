"""Conversation message models.

Messages follow the function-calling chat shape used by most providers:
``role`` + ``content``, assistant turns may carry ``tool_calls``, and tool
results answer a call via ``tool_call_id``.
"""

from __future__ import annotations

import json
from typing import Any, Literal

from pydantic import BaseModel, Field, field_validator

from turnwise.agent_runtime.models.enums import Role


class FunctionCall(BaseModel):
    name: str
    arguments: str = "{}"
    """Raw JSON-encoded arguments exactly as the model produced them."""

    @field_validator("arguments", mode="before")
    @classmethod
    def _encode_arguments(cls, value: Any) -> Any:
        if value is None:
            return "{}"
        if isinstance(value, dict | list):
            return json.dumps(value, ensure_ascii=False)
        return value


class ToolCall(BaseModel):
    id: str = ""
    type: Literal["function"] = "function"
    function: FunctionCall


class Message(BaseModel):
    """A single conversation turn."""

    role: Role
    content: str | list[Any] | dict[str, Any] | None = ""
    name: str | None = None
    tool_calls: list[ToolCall] | None = None
    tool_call_id: str | None = None

    metadata: dict[str, Any] | None = None
    """Free-form annotations (e.g. guardrail warnings).  Never sent to providers."""

    usage: dict[str, Any] | None = None
    """Raw provider usage payload attached to a model response."""

    response_metadata: dict[str, Any] | None = None

    def text(self) -> str:
        """Flatten ``content`` into plain text.

        String content is returned as-is.  Content-block lists contribute
        their ``text`` parts (or nested ``content``); ``tool_use`` blocks
        contribute their name and JSON input; any other object is
        JSON-serialized.
        """
        return content_text(self.content)

    @property
    def has_tool_calls(self) -> bool:
        return self.role == Role.ASSISTANT and bool(self.tool_calls)


def content_text(content: Any) -> str:
    if content is None:
        return ""
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts: list[str] = []
        for block in content:
            if isinstance(block, str):
                parts.append(block)
            elif isinstance(block, dict):
                if isinstance(block.get("text"), str):
                    parts.append(block["text"])
                elif block.get("type") == "tool_use":
                    parts.append(f"{block.get('name', '')} {json.dumps(block.get('input', {}), default=str)}")
                elif "content" in block:
                    parts.append(content_text(block["content"]))
                else:
                    parts.append(json.dumps(block, default=str))
            else:
                parts.append(str(block))
        return "\n".join(p for p in parts if p)
    return json.dumps(content, default=str)


# ---------------------------------------------------------------------------
# Constructors
# ---------------------------------------------------------------------------


def system_message(content: str) -> Message:
    return Message(role=Role.SYSTEM, content=content)


def user_message(content: str | list[Any]) -> Message:
    return Message(role=Role.USER, content=content)


def assistant_message(
    content: str | list[Any] | None = "",
    *,
    tool_calls: list[ToolCall] | None = None,
    name: str | None = None,
) -> Message:
    return Message(role=Role.ASSISTANT, content=content, tool_calls=tool_calls or None, name=name)


def tool_message(tool_call_id: str, content: str, *, name: str | None = None) -> Message:
    return Message(role=Role.TOOL, content=content, tool_call_id=tool_call_id, name=name)


def make_tool_call(call_id: str, name: str, arguments: dict[str, Any] | str | None = None) -> ToolCall:
    return ToolCall(id=call_id, function=FunctionCall(name=name, arguments=arguments))


def coerce_message(value: Message | dict[str, Any]) -> Message:
    if isinstance(value, Message):
        return value
    return Message.model_validate(value)


__all__ = [
    "FunctionCall",
    "Message",
    "ToolCall",
    "assistant_message",
    "coerce_message",
    "content_text",
    "make_tool_call",
    "system_message",
    "tool_message",
    "user_message",
]
