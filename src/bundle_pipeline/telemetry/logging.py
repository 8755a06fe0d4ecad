"""Structured logging with OpenTelemetry trace correlation.

Logs are emitted through structlog. configure_logging() installs a processor
chain that adds the log level, an ISO timestamp and, when a span is active,
its trace_id and span_id, then renders JSON (for CI log collection) or a
console format. Output goes to stderr so stdout stays machine-readable.
"""

from __future__ import annotations

import logging
import sys
from collections.abc import MutableMapping
from typing import Any

import structlog
from opentelemetry import trace
from opentelemetry.trace import INVALID_SPAN_ID, INVALID_TRACE_ID

EventDict = MutableMapping[str, Any]

_VALID_LEVELS = frozenset({"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"})


def add_trace_context(
    logger: Any,  # noqa: ARG001
    method_name: str,  # noqa: ARG001
    event_dict: EventDict,
) -> EventDict:
    """Add trace_id and span_id from the active span to the event dictionary.

    Args:
        logger: The logger instance (unused, required by the processor API).
        method_name: The log method name (unused).
        event_dict: The event dictionary to enrich.

    Returns:
        The event dictionary, with trace context when a span is active.
    """
    ctx = trace.get_current_span().get_span_context()
    if ctx.trace_id != INVALID_TRACE_ID and ctx.span_id != INVALID_SPAN_ID:
        event_dict["trace_id"] = format(ctx.trace_id, "032x")
        event_dict["span_id"] = format(ctx.span_id, "016x")
    return event_dict


def configure_logging(
    log_level: str = "INFO",
    json_output: bool = True,
) -> None:
    """Configure structlog with trace context injection.

    Args:
        log_level: Minimum level to emit (DEBUG, INFO, WARNING, ERROR, CRITICAL).
        json_output: Render JSON when True, console format otherwise.

    Raises:
        ValueError: If log_level is not a valid level name.

    Examples:
        >>> configure_logging(log_level="DEBUG", json_output=False)
        >>> structlog.get_logger().info("configured")  # doctest: +SKIP
    """
    level_name = log_level.upper()
    if level_name not in _VALID_LEVELS:
        raise ValueError(
            f"Invalid log level {log_level!r}. Valid levels: {sorted(_VALID_LEVELS)}"
        )

    renderer: Any = (
        structlog.processors.JSONRenderer()
        if json_output
        else structlog.dev.ConsoleRenderer(colors=False)
    )

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            add_trace_context,
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(
            logging.getLevelName(level_name)
        ),
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=False,
    )


__all__ = ["add_trace_context", "configure_logging"]
