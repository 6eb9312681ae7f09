"""
Observability for flow runs: structured logging with automatic run and
node correlation.

- Trace context (run_id, graph_id, node_id, scope_id) propagates via ContextVar
- JSON output for production, colored output for development
"""

from flowrun.observability.logging import (
    clear_trace_context,
    configure_logging,
    get_trace_context,
    set_trace_context,
    trace_scope,
)

__all__ = [
    "configure_logging",
    "get_trace_context",
    "set_trace_context",
    "clear_trace_context",
    "trace_scope",
]
