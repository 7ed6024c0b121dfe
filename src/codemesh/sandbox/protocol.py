"""Framing shared by the sandbox host and its worker process."""

from __future__ import annotations

import json
from typing import Any


def encode_message(message: dict[str, Any]) -> bytes:
    """One newline-terminated JSON frame. Values JSON cannot carry are sent as their ``repr``."""
    return json.dumps(message, default=repr).encode("utf-8") + b"\n"
