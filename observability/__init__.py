"""Observability infrastructure: logging context and optional tracing.

setup_logging:
    Console + rotating file logging, text or JSON, with stream/execution context.

set_execution_context / clear_context:
    Task-local ids injected into every log record.

setup_tracing / trace_operation:
    Optional Logfire spans for ticks and stages (ENABLE_LOGFIRE=true).
"""

from observability.logging import clear_context, set_execution_context, setup_logging
from observability.tracing import TracingState, setup_tracing, trace_operation

__all__ = [
    "clear_context",
    "set_execution_context",
    "setup_logging",
    "setup_tracing",
    "trace_operation",
    "TracingState",
]
