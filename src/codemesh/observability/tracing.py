"""OpenTelemetry tracing setup for CodeMesh.

Initializes an OTLP exporter when OTEL_EXPORTER_OTLP_ENDPOINT is set.
Without an endpoint, ``span()`` hands out a no-op span that adds zero
overhead, so pipeline code can trace unconditionally.
"""

from __future__ import annotations

import os
from collections.abc import Iterator
from contextlib import contextmanager
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from opentelemetry.trace import Tracer

TRACER_NAME = "codemesh"
TRACER_VERSION = "0.1.0"

_tracer: Tracer | None = None
_initialized = False


def init_tracing(
    endpoint: str | None = None,
    service_name: str | None = None,
) -> bool:
    """Initialize OpenTelemetry tracing.

    Args:
        endpoint: OTLP endpoint URL. Falls back to OTEL_EXPORTER_OTLP_ENDPOINT env var.
        service_name: Service name for traces. Falls back to OTEL_SERVICE_NAME env var.

    Returns:
        True if tracing was initialized, False if skipped (no endpoint or missing deps).
    """
    global _tracer, _initialized

    if _initialized:
        return _tracer is not None

    _initialized = True

    endpoint = endpoint or os.environ.get("OTEL_EXPORTER_OTLP_ENDPOINT")
    if not endpoint:
        return False

    service_name = service_name or os.environ.get("OTEL_SERVICE_NAME", "codemesh")

    try:
        from opentelemetry import trace
        from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
        from opentelemetry.sdk.resources import Resource
        from opentelemetry.sdk.trace import TracerProvider
        from opentelemetry.sdk.trace.export import BatchSpanProcessor
    except ImportError:
        return False

    provider = TracerProvider(resource=Resource.create({"service.name": service_name}))
    provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=endpoint)))
    trace.set_tracer_provider(provider)
    _tracer = trace.get_tracer(TRACER_NAME, TRACER_VERSION)
    return True


def get_tracer() -> Tracer | _NoOpTracer:
    """Get the CodeMesh tracer, or a no-op tracer without opentelemetry."""
    if _tracer is not None:
        return _tracer
    try:
        from opentelemetry import trace
    except ImportError:
        return _NoOpTracer()
    return trace.get_tracer(TRACER_NAME, TRACER_VERSION)


@contextmanager
def span(name: str, **attributes: Any) -> Iterator[Any]:
    """Open a span named ``codemesh.<name>`` with ``codemesh.*`` attributes."""
    with get_tracer().start_as_current_span(f"codemesh.{name}") as current:
        for key, value in attributes.items():
            if value is not None:
                current.set_attribute(f"codemesh.{key}", value)
        yield current


def shutdown() -> None:
    """Flush and shut down the tracer provider."""
    global _tracer, _initialized
    try:
        from opentelemetry import trace
    except ImportError:
        trace = None
    if trace is not None:
        provider = trace.get_tracer_provider()
        if hasattr(provider, "shutdown"):
            provider.shutdown()
    _tracer = None
    _initialized = False


class _NoOpSpan:
    """Minimal no-op span for when opentelemetry is not installed."""

    def __enter__(self):
        return self

    def __exit__(self, *args):
        pass

    def set_attribute(self, key: str, value: object) -> None:
        pass

    def record_exception(self, exception: BaseException) -> None:
        pass


class _NoOpTracer:
    """Minimal no-op tracer for when opentelemetry is not installed."""

    def start_as_current_span(self, name: str, **kwargs):
        return _NoOpSpan()
