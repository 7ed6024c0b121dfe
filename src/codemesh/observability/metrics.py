"""OpenTelemetry metrics for CodeMesh.

Counters and histograms for discovery, tool call and sandbox observability.
All functions are no-ops if opentelemetry is not installed or not configured.
"""

from __future__ import annotations

_meter = None
_discoveries_total = None
_tool_calls_total = None
_executions_total = None
_execution_duration = None
_initialized = False


def _ensure_meter() -> bool:
    """Lazily initialize the meter and instruments."""
    global _meter, _discoveries_total, _tool_calls_total, _executions_total
    global _execution_duration, _initialized

    if _initialized:
        return _meter is not None

    _initialized = True

    try:
        from opentelemetry import metrics

        _meter = metrics.get_meter("codemesh", "0.1.0")

        _discoveries_total = _meter.create_counter(
            "codemesh.provider_discoveries.total",
            description="Provider discovery attempts",
            unit="1",
        )
        _tool_calls_total = _meter.create_counter(
            "codemesh.tool_calls.total",
            description="Total proxied tool calls",
            unit="1",
        )
        _executions_total = _meter.create_counter(
            "codemesh.executions.total",
            description="Total sandbox executions",
            unit="1",
        )
        _execution_duration = _meter.create_histogram(
            "codemesh.execution.duration_seconds",
            description="Sandbox execution duration in seconds",
            unit="s",
        )
        return True
    except ImportError:
        return False


def record_provider_discovery(*, provider_id: str, success: bool, tool_count: int = 0) -> None:
    """Record the outcome of listing one provider."""
    if not _ensure_meter() or _discoveries_total is None:
        return
    _discoveries_total.add(
        1,
        {"codemesh.provider_id": provider_id, "codemesh.success": str(success), "codemesh.tool_count": str(tool_count)},
    )


def record_tool_call(*, function_name: str, success: bool, attempts: int = 1) -> None:
    """Record a proxied tool call."""
    if not _ensure_meter() or _tool_calls_total is None:
        return
    _tool_calls_total.add(
        1,
        {"codemesh.function_name": function_name, "codemesh.success": str(success), "codemesh.attempts": str(attempts)},
    )


def record_execution(*, status: str, duration_seconds: float) -> None:
    """Record a finished sandbox run and its duration."""
    if not _ensure_meter() or _executions_total is None:
        return
    _executions_total.add(1, {"codemesh.status": status})
    if _execution_duration is not None:
        _execution_duration.record(duration_seconds, {"codemesh.status": status})
