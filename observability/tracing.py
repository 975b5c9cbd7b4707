"""Optional Logfire spans for scheduler ticks and pipeline stages.

Spans are opened with trace_operation(). With tracing off (the default) the
context manager only times the block and logs the duration at DEBUG, so call
sites never branch on whether Logfire is configured. When it is on, PydanticAI
is instrumented as well and the synthesizer's model calls nest under the
`pipeline.synthesis` span.

Enable via configuration:
    ENABLE_LOGFIRE=true
    LOGFIRE_TOKEN=your-token  # Optional for cloud dashboard

Usage:
    >>> setup_tracing(enabled=True, service_name="relay")
    >>> with trace_operation("pipeline.discovery", {"stream_id": sid}) as attrs:
    ...     attrs["sources"] = 12
"""

import logging
import time
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Iterator

logger = logging.getLogger(__name__)


@dataclass
class TracingState:
    """Process-wide tracing switch, set once by setup_tracing()."""

    enabled: bool = False
    service_name: str = "relay"


_state = TracingState()


def setup_tracing(enabled: bool = False, service_name: str = "relay", token: str = "") -> TracingState:
    """Configure Logfire when `enabled`; otherwise spans stay local no-ops.

    A missing logfire install or a configuration error downgrades to
    disabled tracing with a log line instead of failing startup.
    """
    _state.service_name = service_name
    _state.enabled = False
    if not enabled:
        logger.debug("Tracing disabled")
        return _state

    try:
        import logfire

        logfire.configure(service_name=service_name, token=token or None)
        logfire.instrument_pydantic_ai()
    except ImportError:
        logger.warning("Logfire not installed (pip install 'relay-streams[logfire]'). Tracing disabled.")
        return _state
    except Exception as e:
        logger.error("Failed to configure Logfire: %s", e)
        return _state

    _state.enabled = True
    logger.info("Logfire tracing enabled | service=%s", service_name)
    return _state


@contextmanager
def trace_operation(name: str, attributes: dict[str, Any] | None = None) -> Iterator[dict[str, Any]]:
    """Span around a block.

    Args:
        name: Span name, e.g. 'pipeline.analysis' or 'scheduler.tick'
        attributes: Attributes known when the block starts

    Yields:
        Dict the block fills with result attributes (set on the span at exit)
    """
    start = time.monotonic()
    results: dict[str, Any] = {}
    try:
        if _state.enabled:
            import logfire

            with logfire.span(name, **(attributes or {})) as span:
                yield results
                for key, value in results.items():
                    span.set_attribute(key, value)
        else:
            yield results
    finally:
        logger.debug("Span '%s' finished in %.2fs %s", name, time.monotonic() - start, results or "")
