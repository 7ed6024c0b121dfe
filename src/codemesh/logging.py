"""
CodeMesh Structured Logging

Provides a configured logger for CodeMesh using stdlib logging
with structured context. No external dependencies required.

Usage:
    from codemesh.logging import get_logger

    logger = get_logger("codemesh.discovery")
    logger.info("Provider listed", extra={"provider_id": "github", "duration_ms": 41})

For production, configure with JSON output:
    from codemesh.logging import configure_logging
    configure_logging(json_output=True, level="INFO")
"""

from __future__ import annotations

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any

# Record attributes promoted into the structured payload when present
_CONTEXT_KEYS = (
    "provider_id",
    "tool_name",
    "function_name",
    "transport",
    "attempt",
    "status",
    "duration_ms",
)


class CodeMeshFormatter(logging.Formatter):
    """Structured log formatter for CodeMesh.

    Outputs either human-readable or JSON format depending on configuration.
    """

    def __init__(self, json_output: bool = False):
        super().__init__()
        self._json_output = json_output

    def format(self, record: logging.LogRecord) -> str:
        log_data: dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        for key in _CONTEXT_KEYS:
            value = getattr(record, key, None)
            if value is not None:
                log_data[key] = value

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        if self._json_output:
            return json.dumps(log_data, default=str)

        extra_keys = {
            k: v for k, v in log_data.items()
            if k not in ("timestamp", "level", "logger", "message", "exception")
        }
        extra_str = ""
        if extra_keys:
            extra_str = " | " + " ".join(f"{k}={v}" for k, v in extra_keys.items())

        line = f"[{log_data['timestamp']}] {record.levelname:8s} {record.name}: {record.getMessage()}{extra_str}"
        if "exception" in log_data:
            line = f"{line}\n{log_data['exception']}"
        return line


def configure_logging(
    level: str = "INFO",
    json_output: bool = False,
) -> None:
    """Configure CodeMesh logging.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL).
        json_output: If True, output JSON format (for production/observability).
    """
    root_logger = logging.getLogger("codemesh")
    root_logger.setLevel(getattr(logging, level.upper(), logging.INFO))

    root_logger.handlers.clear()

    # stderr: stdout belongs to stdio-speaking hosts
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(CodeMeshFormatter(json_output=json_output))
    root_logger.addHandler(handler)

    root_logger.propagate = False


def get_logger(name: str = "codemesh") -> logging.Logger:
    """Get a CodeMesh logger instance.

    Args:
        name: Logger name (usually module path like "codemesh.sandbox").

    Returns:
        Configured Logger instance.
    """
    return logging.getLogger(name)


# Auto-configure with sensible defaults on import
configure_logging()
