"""OpenTelemetry span helper.

Only the API package is required. Without an SDK installed and configured,
the global tracer is a no-op and spans cost nothing.
"""

from __future__ import annotations

from typing import Any, Dict

from opentelemetry import trace

_tracer = trace.get_tracer("research_pipeline")


def otel_span(name: str, attrs: Dict[str, Any] | None = None):
    """Return a context manager that makes ``name`` the current span."""
    clean = {k: v for k, v in (attrs or {}).items() if v is not None}
    return _tracer.start_as_current_span(name, attributes=clean)
