"""Captured console for sandboxed agent code."""

from __future__ import annotations

import json
import logging
import threading
from collections.abc import Callable
from typing import Any

DEFAULT_MAX_LINES = 1000
TRUNCATION_MARKER = "... output truncated ({dropped} more line(s))"

logger = logging.getLogger(__name__)


def render_value(value: Any) -> str:
    """Stringify one logged value; containers render as indented JSON."""
    if isinstance(value, str):
        return value
    if isinstance(value, (dict, list, tuple)):
        try:
            return json.dumps(value, indent=2, default=str, ensure_ascii=False)
        except (TypeError, ValueError):
            return repr(value)
    return str(value)


class SandboxConsole:
    """``console`` object exposed to agent code.

    Lines beyond ``max_lines`` are counted, not stored; ``lines`` ends with a
    truncation marker when anything was dropped. With a ``sink`` every
    rendered line is handed to it instead of being stored here.
    """

    def __init__(self, max_lines: int = DEFAULT_MAX_LINES, sink: Callable[[str], None] | None = None):
        self._max_lines = max_lines
        self._sink = sink or self.append
        self._lines: list[str] = []
        self._dropped = 0
        self._lock = threading.Lock()

    def _emit(self, prefix: str, values: tuple[Any, ...]) -> None:
        self._sink(prefix + " ".join(render_value(v) for v in values))

    def append(self, text: str) -> None:
        """Store one already-rendered line, subject to the line cap."""
        logger.debug("Sandbox output: %s", text)
        with self._lock:
            if len(self._lines) < self._max_lines:
                self._lines.append(text)
            else:
                self._dropped += 1

    def log(self, *values: Any) -> None:
        self._emit("", values)

    info = log

    def warn(self, *values: Any) -> None:
        self._emit("WARN: ", values)

    def error(self, *values: Any) -> None:
        self._emit("ERROR: ", values)

    @property
    def lines(self) -> list[str]:
        with self._lock:
            lines = list(self._lines)
            if self._dropped:
                lines.append(TRUNCATION_MARKER.format(dropped=self._dropped))
            return lines

    def __repr__(self) -> str:
        return "<console>"
