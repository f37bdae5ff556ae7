"""Config resolver -- merges agent config, per-invocation override and
process settings into a single ResolvedLoopConfig.

Resolution order (highest priority first):

1. ``ConfigOverride`` passed to ``Agent.invoke``.
2. ``AgentConfig`` the agent was built with.
3. ``TurnwiseSettings`` from the environment.

Only fields explicitly set on the override or the config participate; a
field left unset falls through to the next level.
"""

from __future__ import annotations

from typing import Any, TypeVar

from pydantic import BaseModel, Field

from turnwise.agent_runtime.execution.summarize import SummarizationConfig
from turnwise.agent_runtime.settings import TurnwiseSettings, get_settings

UNLIMITED_ITERATION_LIMIT = 100
MIN_ITERATION_LIMIT = 40
MIN_OUTER_LIMIT = 30

# ---------------------------------------------------------------------------
# Input / Output models
# ---------------------------------------------------------------------------


class AgentConfig(BaseModel):
    """Static configuration of an ``Agent``."""

    name: str = "Agent"
    version: str | None = None
    system_prompt: str | None = None
    max_tool_calls: int | None = None
    unlimited_tool_calls: bool = False
    """Disable the tool-call ceiling entirely."""

    max_parallel_tools: int | None = None
    max_tool_output_chars: int | None = None
    summarization: SummarizationConfig | None = None
    output_schema: Any = None
    """A pydantic model class or JSON schema dict for structured output."""

    stream: bool = False


class ConfigOverride(BaseModel):
    """Per-invocation overrides.  Only explicitly set fields are applied."""

    max_tool_calls: int | None = None
    unlimited_tool_calls: bool | None = None
    summarization_enabled: bool | None = None
    summarization_max_tokens: int | None = None
    stream: bool | None = None


class ResolvedLoopConfig(BaseModel):
    """Fully resolved knobs for one run."""

    name: str
    version: str | None = None
    system_prompt: str | None = None
    max_tool_calls: int | None
    """``None`` means unlimited."""

    max_parallel_tools: int
    max_tool_output_chars: int
    summarization: SummarizationConfig = Field(default_factory=SummarizationConfig)
    stream: bool = False

    @property
    def iteration_limit(self) -> int:
        """Ceiling on iterations of one pass through the turn loop."""
        if self.max_tool_calls is None:
            return UNLIMITED_ITERATION_LIMIT
        return max(self.max_tool_calls * 3 + 10, MIN_ITERATION_LIMIT)

    @property
    def outer_limit(self) -> int:
        """Ceiling on summarize-and-re-enter passes."""
        if self.max_tool_calls is None:
            return UNLIMITED_ITERATION_LIMIT
        return max(self.max_tool_calls * 3 + 5, MIN_OUTER_LIMIT)


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def resolve_config(
    config: AgentConfig,
    override: ConfigOverride | None = None,
    settings: TurnwiseSettings | None = None,
) -> ResolvedLoopConfig:
    """Resolve the effective loop configuration.

    Parameters
    ----------
    config:
        The agent's static configuration.
    override:
        Optional per-invocation overrides (override wins at field level).
    settings:
        Process settings; defaults to ``get_settings()``.

    Returns
    -------
    ResolvedLoopConfig
        Every field filled.  ``max_tool_calls`` is ``None`` only when
        unlimited tool calls were requested.
    """
    settings = settings or get_settings()
    override = override or ConfigOverride()

    unlimited = _first(override.unlimited_tool_calls, config.unlimited_tool_calls)
    max_tool_calls = (
        None if unlimited else _first(override.max_tool_calls, config.max_tool_calls, settings.max_tool_calls)
    )

    base = config.summarization or SummarizationConfig(
        enabled=settings.summarization_enabled,
        max_tokens=settings.summarization_max_tokens,
        summary_prompt_max_tokens=settings.summary_prompt_max_tokens,
    )
    summarization = base.model_copy(
        update={
            "enabled": _first(override.summarization_enabled, base.enabled),
            "max_tokens": _first(override.summarization_max_tokens, base.max_tokens),
        }
    )

    return ResolvedLoopConfig(
        name=config.name,
        version=config.version,
        system_prompt=config.system_prompt,
        max_tool_calls=max_tool_calls,
        max_parallel_tools=_first(config.max_parallel_tools, settings.max_parallel_tools),
        max_tool_output_chars=_first(config.max_tool_output_chars, settings.max_tool_output_chars),
        summarization=summarization,
        stream=bool(_first(override.stream, config.stream)),
    )


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


T = TypeVar("T")


def _first(*values: T | None) -> T | None:
    """Return the first non-None value."""
    for v in values:
        if v is not None:
            return v
    return None
