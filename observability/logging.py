"""Logging utilities with structured output and context propagation.

This module provides enhanced logging capabilities:
    - JSON structured logging for log aggregation systems
    - Stream / execution context propagation across all log messages
    - Consistent formatting and filtering

Context variables are task-local: each pipeline execution runs in its own
asyncio task, so concurrent executions never see each other's ids.

Usage:
    >>> from observability.logging import setup_logging, set_execution_context
    >>> setup_logging(config)
    >>> set_execution_context(stream_id="s1", execution_id="e1")
    >>> logger.info("Stage started")  # Includes stream_id/execution_id automatically
"""

import contextvars
import json
import logging
import sys
from datetime import datetime, timezone
from logging.handlers import TimedRotatingFileHandler, RotatingFileHandler
from typing import Any

stream_id_var: contextvars.ContextVar[str] = contextvars.ContextVar("stream_id", default="-")
execution_id_var: contextvars.ContextVar[str] = contextvars.ContextVar("execution_id", default="-")

_RESERVED = frozenset((
    "name", "msg", "args", "created", "filename", "funcName",
    "levelname", "levelno", "lineno", "module", "msecs",
    "pathname", "process", "processName", "relativeCreated",
    "stack_info", "exc_info", "exc_text", "thread", "threadName",
    "taskName", "stream_id", "execution_id", "message",
))


def set_execution_context(stream_id: str, execution_id: str = "-") -> None:
    """Set the stream and execution ids for log context propagation."""
    stream_id_var.set(stream_id)
    execution_id_var.set(execution_id)


def clear_context() -> None:
    """Clear all logging context variables."""
    stream_id_var.set("-")
    execution_id_var.set("-")


class ContextFilter(logging.Filter):
    """Filter that injects stream_id and execution_id into log records."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.stream_id = stream_id_var.get()
        record.execution_id = execution_id_var.get()
        return True


class JsonFormatter(logging.Formatter):
    """JSON formatter for structured logging.

    Output format:
        {"timestamp": "...", "level": "INFO", "logger": "...", "message": "...", ...}
    """

    def format(self, record: logging.LogRecord) -> str:
        log_data: dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        for key in ("stream_id", "execution_id"):
            value = getattr(record, key, "-")
            if value != "-":
                log_data[key] = value

        # Source location for warnings and above
        if record.levelno >= logging.WARNING:
            log_data["source"] = {
                "file": record.filename,
                "line": record.lineno,
                "function": record.funcName,
            }

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        # Extra fields passed via logger.x(..., extra={...})
        for key, value in record.__dict__.items():
            if key in _RESERVED:
                continue
            try:
                json.dumps(value)
                log_data[key] = value
            except (TypeError, ValueError):
                log_data[key] = str(value)

        return json.dumps(log_data, ensure_ascii=False)


class TextFormatter(logging.Formatter):
    """Text formatter with context information.

    Format: TIMESTAMP [LEVEL] [stream_id/execution_id] logger: message
    """

    def __init__(self, include_date: bool = False):
        datefmt = "%Y-%m-%d %H:%M:%S" if include_date else "%H:%M:%S"
        super().__init__(
            fmt="%(asctime)s [%(levelname)s] [%(stream_id)s/%(execution_id)s] %(name)s: %(message)s",
            datefmt=datefmt,
        )


def setup_logging(
    config: Any,
    verbose: bool = False,
) -> bool:
    """Configure logging with console and file handlers.

    If the log directory is not writable, falls back to console-only logging.

    Args:
        config: Application configuration with logging settings
        verbose: If True, override config and use DEBUG level for console

    Returns:
        True if file logging is enabled, False if console-only (fallback)
    """
    if verbose:
        console_level = logging.DEBUG
    else:
        console_level = getattr(logging, config.log_level, logging.INFO)

    context_filter = ContextFilter()

    if config.log_format == "json":
        console_fmt = JsonFormatter()
        file_fmt = JsonFormatter()
    else:
        console_fmt = TextFormatter(include_date=False)
        file_fmt = TextFormatter(include_date=True)

    console = logging.StreamHandler(sys.stdout)
    console.setLevel(console_level)
    console.setFormatter(console_fmt)
    console.addFilter(context_filter)

    root = logging.getLogger()
    root.setLevel(logging.DEBUG)

    for handler in root.handlers[:]:
        root.removeHandler(handler)

    root.addHandler(console)

    file_logging_enabled = False
    try:
        config.log_dir.mkdir(parents=True, exist_ok=True)
        test_file = config.log_dir / ".write_test"
        test_file.touch()
        test_file.unlink()

        log_file = config.log_dir / "relay.log"

        if config.log_max_bytes > 0:
            file_handler = RotatingFileHandler(
                log_file,
                maxBytes=config.log_max_bytes,
                backupCount=config.log_backup_count,
                encoding="utf-8",
            )
        else:
            # Daily rotation at midnight
            file_handler = TimedRotatingFileHandler(
                log_file,
                when="midnight",
                interval=1,
                backupCount=config.log_backup_count,
                encoding="utf-8",
            )

        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(file_fmt)
        file_handler.addFilter(context_filter)
        root.addHandler(file_handler)
        file_logging_enabled = True

    except (OSError, PermissionError) as e:
        print(
            f"Warning: Cannot write to log directory '{config.log_dir}': {e}. "
            "Falling back to console-only logging.",
            file=sys.stderr
        )

    # Reduce noise from third-party libraries
    for lib in ("aiohttp", "aiohttp.access", "httpx", "httpcore", "asyncio"):
        logging.getLogger(lib).setLevel(logging.WARNING)

    return file_logging_enabled
