"""Event envelope delivered to the caller's event sink."""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any
from uuid import uuid4

from pydantic import BaseModel, Field

from turnwise.agent_runtime.models.enums import EventType


class AgentEvent(BaseModel):
    event_id: str = Field(default_factory=lambda: uuid4().hex)
    event_type: EventType
    run_id: str
    timestamp: datetime = Field(default_factory=lambda: datetime.now(tz=UTC))
    payload: dict[str, Any] = Field(default_factory=dict)
