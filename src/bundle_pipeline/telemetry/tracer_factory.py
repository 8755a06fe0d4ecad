"""Tracer factory for pipeline spans.

Tracers are resolved lazily from the global OpenTelemetry provider and cached
per instrumentation name. If the provider cannot hand out a tracer, every
later lookup gets a NoOpTracer. Tests install their own tracer with
set_tracer().
"""

from __future__ import annotations

import threading
from typing import TYPE_CHECKING

from opentelemetry import trace

if TYPE_CHECKING:
    from opentelemetry.trace import Tracer

_cache: dict[str, Tracer] = {}
_overrides: dict[str, Tracer] = {}
_disabled = False
_lock = threading.Lock()


def get_tracer(name: str = "bundle_pipeline") -> Tracer:
    """Return the tracer for an instrumentation name.

    Example:
        >>> with get_tracer().start_as_current_span("bundle_pipeline.run"):
        ...     pass
    """
    global _disabled

    with _lock:
        if name in _overrides:
            return _overrides[name]
        if _disabled:
            return trace.NoOpTracer()
        if name not in _cache:
            try:
                _cache[name] = trace.get_tracer(name)
            except Exception:  # noqa: BLE001 - provider misconfiguration
                _disabled = True
                return trace.NoOpTracer()
        return _cache[name]


def set_tracer(name: str, tracer: Tracer | None) -> None:
    """Install (or with None, remove) a tracer override for a name."""
    with _lock:
        if tracer is None:
            _overrides.pop(name, None)
        else:
            _overrides[name] = tracer


def reset_tracer() -> None:
    """Forget cached tracers and overrides and re-enable tracing."""
    global _disabled

    with _lock:
        _cache.clear()
        _overrides.clear()
        _disabled = False


__all__ = ["get_tracer", "reset_tracer", "set_tracer"]
