"""Runtime defaults loaded from TURNWISE_* environment variables."""

from __future__ import annotations

from pydantic_settings import BaseSettings, SettingsConfigDict


class TurnwiseSettings(BaseSettings):
    """Process-wide defaults for the turn loop.

    All fields are read from environment variables with the ``TURNWISE_``
    prefix.  For example, ``TURNWISE_MAX_TOOL_CALLS=20`` maps to
    ``max_tool_calls``.  Per-agent ``AgentConfig`` and per-invocation
    ``ConfigOverride`` values take precedence over these.
    """

    model_config = SettingsConfigDict(
        env_prefix="TURNWISE_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    # -- Logging ---------------------------------------------------------------
    log_level: str = "INFO"

    # -- Tool execution --------------------------------------------------------
    max_tool_calls: int | None = 50
    """Ceiling on tool calls per state.  ``None`` means unlimited."""

    max_parallel_tools: int = 4
    max_tool_output_chars: int = 100_000
    """Tool output longer than this is truncated in the message history.

    The complete output is always kept in ``tool_history``.
    """

    # -- Summarization ---------------------------------------------------------
    summarization_enabled: bool = True
    summarization_max_tokens: int = 50_000
    summary_prompt_max_tokens: int = 8_000

    # -- Data storage ----------------------------------------------------------
    data_root: str = "./data"
    """Root directory for persisted snapshots."""

    data_prefix: str | None = None
    """Optional namespace prefix, giving ``{data_root}/{data_prefix}/...``."""


def get_settings() -> TurnwiseSettings:
    """Return a cached settings instance.

    Reads from environment variables and ``.env`` on first call, then returns
    the same object.  Call ``_get_settings_cached.cache_clear()`` in tests to force a
    re-read after overriding env vars.
    """
    return _get_settings_cached()


def _get_settings_cached() -> TurnwiseSettings:
    """Inner function wrapped by lru_cache (allows type-safe cache_clear)."""
    return TurnwiseSettings()


# Apply lru_cache at runtime so the function is only called once.
from functools import lru_cache  # noqa: E402

_get_settings_cached = lru_cache(maxsize=1)(_get_settings_cached)
