"""CodeMesh Observability: OpenTelemetry tracing and metrics.

Opt-in via OTEL_EXPORTER_OTLP_ENDPOINT env var.
Without it, all tracing/metrics calls are no-ops.
"""

from codemesh.observability.metrics import (
    record_execution,
    record_provider_discovery,
    record_tool_call,
)
from codemesh.observability.tracing import get_tracer, init_tracing

__all__ = [
    "init_tracing",
    "get_tracer",
    "record_execution",
    "record_provider_discovery",
    "record_tool_call",
]
