"""Logging and tracing for bundle-pipeline.

Example:
    >>> from bundle_pipeline.telemetry import configure_logging, create_span
    >>> configure_logging(log_level="INFO", json_output=True)
    >>> with create_span("bundle_pipeline.run"):
    ...     pass
"""

from __future__ import annotations

from bundle_pipeline.telemetry.logging import add_trace_context, configure_logging
from bundle_pipeline.telemetry.sanitization import redact_secret, sanitize_error_message
from bundle_pipeline.telemetry.tracing import (
    create_span,
    get_tracer,
    reset_tracer,
    set_tracer,
    trace_id_of,
)

__all__ = [
    "add_trace_context",
    "configure_logging",
    "create_span",
    "get_tracer",
    "redact_secret",
    "reset_tracer",
    "sanitize_error_message",
    "set_tracer",
    "trace_id_of",
]
