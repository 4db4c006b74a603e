"""
Observability: trace correlation and structured logging for workflow runs.

Every log line emitted during a run carries its run, workflow and node ids:
- Trace context propagation via ContextVar, per asyncio task
- Structured JSON logging for production
- Human-readable logging for development
- No manual id passing through executors
"""

from marketflow.observability.logging import (
    clear_trace_context,
    configure_logging,
    get_trace_context,
    set_trace_context,
)

__all__ = [
    "configure_logging",
    "get_trace_context",
    "set_trace_context",
    "clear_trace_context",
]
