"""OpenTelemetry tracing utilities.

Provides create_span() for wrapping pipeline stages and platform requests in
spans, and trace_id_of() so runs can report a trace id that links CI
output to the collected traces. Error messages recorded on spans are
sanitized to strip tokens.
"""

from __future__ import annotations

from contextlib import contextmanager
from typing import TYPE_CHECKING, Any

from opentelemetry.trace import Status, StatusCode, Tracer

from bundle_pipeline.telemetry.sanitization import sanitize_error_message
from bundle_pipeline.telemetry.tracer_factory import get_tracer as _factory_get_tracer
from bundle_pipeline.telemetry.tracer_factory import (
    reset_tracer,  # Re-exported for test isolation
)
from bundle_pipeline.telemetry.tracer_factory import set_tracer as _factory_set_tracer

if TYPE_CHECKING:
    from collections.abc import Generator

    from opentelemetry.trace import Span

_TRACER_NAME = "bundle_pipeline"


def get_tracer() -> Tracer:
    """Get the tracer used for pipeline spans."""
    return _factory_get_tracer(_TRACER_NAME)


def set_tracer(tracer: Tracer | None) -> None:
    """Set the pipeline tracer (for testing).

    Args:
        tracer: Tracer instance to use, or None to reset.
    """
    _factory_set_tracer(_TRACER_NAME, tracer)


@contextmanager
def create_span(
    name: str,
    attributes: dict[str, Any] | None = None,
) -> Generator[Span, None, None]:
    """Create a span as a context manager.

    Nested calls create parent-child relationships. Exceptions escaping the
    block mark the span as errored with a sanitized message and re-raise.

    Args:
        name: Span name, e.g. "bundle_pipeline.stage.export".
        attributes: Optional attributes to set on the span. None values are skipped.

    Yields:
        The created span.

    Examples:
        >>> with create_span("bundle_pipeline.run", attributes={"project_key": "CHURN"}):
        ...     pass
    """
    tracer = get_tracer()
    with tracer.start_as_current_span(
        name,
        record_exception=False,
        set_status_on_exception=False,
    ) as span:
        if attributes:
            for key, value in attributes.items():
                if value is not None:
                    span.set_attribute(key, value)
        try:
            yield span
        except Exception as e:
            sanitized = sanitize_error_message(str(e))
            span.set_status(Status(StatusCode.ERROR, sanitized))
            span.set_attribute("exception.type", type(e).__name__)
            span.set_attribute("exception.message", sanitized)
            raise


def trace_id_of(span: Span) -> str:
    """Return the span's trace id as 32-char hex, or "" for a non-recording span."""
    span_context = span.get_span_context()
    if not span_context.is_valid:
        return ""
    return format(span_context.trace_id, "032x")


__all__ = ["create_span", "get_tracer", "reset_tracer", "set_tracer", "trace_id_of"]
