"""Execution pipeline for the agent runtime.

This package contains the loop and everything it calls:

- **tokens**: Heuristic token estimation and hard trimming
- **usage**: Provider usage normalization and per-model aggregation
- **repair**: Tool call/result shape repair for outgoing transcripts
- **prompt**: Injected prompts and notices (Jinja2 templates)
- **summarize**: Context summarization and tool-output compression
- **context_tools**: Tools that let the model read archived tool output
- **snapshot**: Snapshot capture / restore
- **approvals**: Human-in-the-loop approval resolution
- **dispatcher**: Default tool dispatcher (parallel execution, approvals, structured output)
- **resolver**: Config resolution (agent config + override + settings -> ResolvedLoopConfig)
- **controller**: Turn loop, summarization driver, handoffs and the ``Agent`` facade
"""
