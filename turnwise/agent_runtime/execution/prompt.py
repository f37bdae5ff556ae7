"""Prompt and notice rendering with Jinja2.

Holds the text the loop itself injects into a conversation: the
summarization request, the tool-limit notice and the structured-output
instructions.  Caller-supplied summarization templates may use:

- ``conversation``     : str -- the budgeted transcript
- ``previous_summary`` : str -- latest prior summary, empty if none

Example template::

    Condense this for a support engineer.
    {% if previous_summary %}Earlier: {{ previous_summary }}{% endif %}
    {{ conversation }}
"""

from __future__ import annotations

import jinja2

SUMMARIZER_SYSTEM_PROMPT = "You are a helpful assistant that summarizes conversation history efficiently."

DEFAULT_SUMMARY_TEMPLATE = """\
Please summarize the following conversation history and update any previous summary.
Focus on:
- User goals and intent.
- Key decisions made and actions taken.
- Important tool outputs and data retrieved.
- Current state of the task.

Previous summary (if any):
{{ previous_summary or "(none)" }}

Conversation:
{{ conversation }}

Summary:"""

TOOL_LIMIT_NOTICE_TEMPLATE = """\
[System Notice] Tool-call limit reached. Produce the best possible final answer \
using the available context and prior tool outputs. Do not call any more tools.\
{% if output_tool %}
If a structured output is required, call tool `{{ output_tool }}` once with the final JSON object.\
{% endif %}"""

STRUCTURED_OUTPUT_HINT_TEMPLATE = """\
A structured output schema is active.
Do NOT output the final JSON directly as an assistant message.
When completely finished, call tool `{{ output_tool }}` passing the final JSON matching the schema as its arguments \
(direct object).
Call it exactly once then STOP producing further assistant messages."""

STRUCTURED_OUTPUT_FORCE_TEMPLATE = """\
A structured output schema is active.
You MUST now call tool `{{ output_tool }}` with the final JSON object that matches the schema.
Do not write the JSON in the assistant message.
Call `{{ output_tool }}` exactly once, then stop."""

_env = jinja2.Environment(autoescape=False, keep_trailing_newline=False)  # noqa: S701


def render_template(template: str, **variables: object) -> str:
    """Render *template* with *variables*.

    Text without Jinja2 syntax is returned unchanged.
    """
    if "{{" not in template and "{%" not in template:
        return template
    return _env.from_string(template).render(**variables)


def render_summary_prompt(
    conversation: str,
    previous_summary: str | None,
    *,
    template: str | None = None,
) -> str:
    """Render the user-side summarization request."""
    return render_template(
        template or DEFAULT_SUMMARY_TEMPLATE,
        conversation=conversation,
        previous_summary=previous_summary or "",
    )


def render_tool_limit_notice(output_tool: str | None = None) -> str:
    return render_template(TOOL_LIMIT_NOTICE_TEMPLATE, output_tool=output_tool)


def render_structured_output_hint(output_tool: str) -> str:
    return render_template(STRUCTURED_OUTPUT_HINT_TEMPLATE, output_tool=output_tool)


def render_structured_output_force(output_tool: str) -> str:
    return render_template(STRUCTURED_OUTPUT_FORCE_TEMPLATE, output_tool=output_tool)
