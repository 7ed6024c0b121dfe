"""Deterministic, collision-free function names for catalog tools."""

from __future__ import annotations

import re
from collections.abc import Iterable

from codemesh.core.models import ToolKey

_INVALID_CHARS = re.compile(r"[^A-Za-z0-9_]")
_LEADING_UNDERSCORES = re.compile(r"^_{2,}")


def sanitize_identifier(value: str) -> str:
    """Replace every non-alphanumeric character with ``_``.

    A leading digit is prefixed with ``_`` so the result is a valid
    identifier; an empty value becomes ``_``. Leading underscores collapse
    to one, since agent code may not name dunder identifiers.
    """
    cleaned = _LEADING_UNDERSCORES.sub("_", _INVALID_CHARS.sub("_", value))
    if not cleaned or cleaned[0].isdigit():
        cleaned = f"_{cleaned}"
    return cleaned


def base_function_name(key: ToolKey) -> str:
    """``tool_provider``; a tool part of bare ``_`` must not make a dunder prefix."""
    combined = f"{sanitize_identifier(key.tool_name)}_{sanitize_identifier(key.provider_id)}"
    return _LEADING_UNDERSCORES.sub("_", combined)


def derive_function_names(keys: Iterable[ToolKey]) -> dict[ToolKey, str]:
    """Assign a unique function name to every key.

    Keys are processed in sorted order and clashes are resolved by
    suffixing ``_2``, ``_3``, ... so the mapping depends only on the set of
    keys, not on discovery order.
    """
    assigned: dict[ToolKey, str] = {}
    taken: set[str] = set()
    for key in sorted(set(keys)):
        base = base_function_name(key)
        name = base
        counter = 2
        while name in taken:
            name = f"{base}_{counter}"
            counter += 1
        taken.add(name)
        assigned[key] = name
    return assigned
