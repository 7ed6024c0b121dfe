"""
CodeMesh Augmentation Store

Append-only notes that agents write after inspecting a tool's real output.

Features:
- Append-only: entries are never updated or deleted
- Insertion order: reads return entries oldest first
- Durable when given a root directory: one Markdown document per provider,
  readable by humans, each entry preceded by a one-line machine header
- Concurrent appends to the same provider are serialised; different
  providers never contend
"""

from __future__ import annotations

import json
import logging
import re
import threading
from collections.abc import Iterator
from pathlib import Path

from pydantic import ValidationError

from codemesh.core.models import Augmentation, AugmentationEntry

logger = logging.getLogger(__name__)

HEADER_PREFIX = "<!-- codemesh:augmentation "
HEADER_SUFFIX = " -->"

_UNSAFE_FILENAME = re.compile(r"[^A-Za-z0-9_.-]")
# Breaks a universal-newline read would see
_LINE_BREAK = re.compile(r"\r\n|\r|\n")


class AugmentationStore:
    """Append-only store of Augmentations keyed by (provider_id, tool_name).

    With ``root=None`` entries live in memory for the lifetime of the store.
    """

    def __init__(self, root: Path | str | None = None):
        self._root = Path(root) if root is not None else None
        self._memory: dict[str, list[Augmentation]] = {}
        self._locks: dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    @property
    def root(self) -> Path | None:
        return self._root

    def path_for(self, provider_id: str) -> Path:
        """Document path holding a provider's augmentations."""
        if self._root is None:
            raise ValueError("In-memory augmentation store has no documents")
        name = _UNSAFE_FILENAME.sub("_", provider_id).lstrip(".") or "_"
        return self._root / f"{name}.md"

    def _lock_for(self, provider_id: str) -> threading.Lock:
        with self._locks_guard:
            lock = self._locks.get(provider_id)
            if lock is None:
                lock = self._locks[provider_id] = threading.Lock()
            return lock

    # ─── Writes ──────────────────────────────────────────────

    def append(self, provider_id: str, tool_name: str, entry: AugmentationEntry) -> Augmentation:
        """Record a new augmentation and return it with its timestamp."""
        augmentation = Augmentation(
            provider_id=provider_id,
            tool_name=tool_name,
            output_shape_description=entry.output_shape_description,
            parsing_example=entry.parsing_example,
        )

        with self._lock_for(provider_id):
            if self._root is None:
                self._memory.setdefault(provider_id, []).append(augmentation)
            else:
                self._write(augmentation)

        logger.info(
            "Augmentation recorded",
            extra={"provider_id": provider_id, "tool_name": tool_name},
        )
        return augmentation

    def _write(self, augmentation: Augmentation) -> None:
        path = self.path_for(augmentation.provider_id)
        path.parent.mkdir(parents=True, exist_ok=True)
        block = render_entry(augmentation)
        if not path.exists():
            block = f"# Augmentations: {augmentation.provider_id}\n\n" + block
        # One write per entry so a reader never sees half an entry header
        with path.open("a", encoding="utf-8") as f:
            f.write(block)

    # ─── Reads ───────────────────────────────────────────────

    def read(self, provider_id: str, tool_name: str) -> tuple[Augmentation, ...]:
        """All augmentations for one tool, oldest first."""
        return tuple(a for a in self.read_provider(provider_id) if a.tool_name == tool_name)

    def has(self, provider_id: str, tool_name: str) -> bool:
        return bool(self.read(provider_id, tool_name))

    def read_provider(self, provider_id: str) -> tuple[Augmentation, ...]:
        """All augmentations for every tool of one provider, oldest first."""
        with self._lock_for(provider_id):
            if self._root is None:
                return tuple(self._memory.get(provider_id, ()))
            path = self.path_for(provider_id)
            if not path.exists():
                return ()
            text = path.read_text(encoding="utf-8")
        return tuple(a for a in parse_document(text) if a.provider_id == provider_id)


# ─── Document format ─────────────────────────────────────────

def render_entry(augmentation: Augmentation) -> str:
    """Render one entry: machine header line, then readable Markdown."""
    payload = augmentation.model_dump(mode="json")
    # ASCII only, so no Unicode line separator can split the header line;
    # '>' would close the HTML comment early
    header = json.dumps(payload, ensure_ascii=True).replace(">", "\\u003e")
    return (
        f"{HEADER_PREFIX}{header}{HEADER_SUFFIX}\n"
        f"## {augmentation.tool_name} ({augmentation.created_at.isoformat()})\n\n"
        f"### Output shape\n\n"
        f"{_body(augmentation.output_shape_description)}\n\n"
        f"### Parsing example\n\n"
        f"```python\n{_body(augmentation.parsing_example)}\n```\n\n"
    )


def _body(text: str) -> str:
    """Body text with comment openers moved off column 0, so no body line reads as a header."""
    return "\n".join(
        " " + line if line.startswith("<!--") else line
        for line in _LINE_BREAK.split(text.strip())
    )


def parse_document(text: str) -> Iterator[Augmentation]:
    """Yield every augmentation whose header line parses, in document order."""
    # Split on \n only; str.splitlines also breaks on separators JSON may carry
    for lineno, line in enumerate(text.split("\n"), start=1):
        line = line.rstrip("\r")
        if not (line.startswith(HEADER_PREFIX) and line.endswith(HEADER_SUFFIX)):
            continue
        raw = line[len(HEADER_PREFIX):-len(HEADER_SUFFIX)]
        try:
            yield Augmentation.model_validate(json.loads(raw))
        except (ValueError, ValidationError) as e:
            logger.warning("Skipping unreadable augmentation header on line %d: %s", lineno, e)
