"""
CodeMesh Core Data Models

All shared types used across the pipeline. This module is the foundation
that every other component imports from; it must have zero internal
dependencies beyond pydantic.
"""

from __future__ import annotations

from collections.abc import Iterable, Iterator
from datetime import datetime, timezone
from enum import Enum
from typing import Any, NamedTuple

from pydantic import BaseModel, ConfigDict, Field, computed_field


# ─── Enums ───────────────────────────────────────────────────

class TransportKind(str, Enum):
    """How a provider is reached."""
    HTTP = "http"              # request/response
    STDIO = "stdio"            # spawned subprocess, line-oriented
    WEBSOCKET = "websocket"    # persistent socket


class ExecutionStatus(str, Enum):
    """Terminal outcome of a sandbox run."""
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    TIMED_OUT = "TIMED_OUT"
    AUGMENTATION_REQUIRED = "AUGMENTATION_REQUIRED"


class ErrorKind(str, Enum):
    """Why a sandbox run did not complete."""
    COMPILATION_ERROR = "COMPILATION_ERROR"
    RUNTIME_ERROR = "RUNTIME_ERROR"
    EXECUTION_TIMEOUT = "EXECUTION_TIMEOUT"
    AUGMENTATION_REQUIRED = "AUGMENTATION_REQUIRED"


# ─── Providers ───────────────────────────────────────────────

class ConnectionInfo(BaseModel):
    """Everything needed to open a connection to a provider."""
    model_config = ConfigDict(frozen=True)

    url: str | None = None
    command: tuple[str, ...] = ()
    cwd: str | None = None
    env: dict[str, str] = Field(default_factory=dict)
    headers: dict[str, str] = Field(default_factory=dict)


class ProviderDescriptor(BaseModel):
    """A configured tool provider. Immutable after load."""
    model_config = ConfigDict(frozen=True)

    id: str = Field(..., min_length=1)
    display_name: str = ""
    transport: TransportKind
    connection: ConnectionInfo = Field(default_factory=ConnectionInfo)
    timeout_ms: int = Field(default=30000, gt=0)
    retry_count: int = Field(default=0, ge=0, le=10)

    @property
    def timeout_seconds(self) -> float:
        return self.timeout_ms / 1000.0

    @property
    def name(self) -> str:
        return self.display_name or self.id


# ─── Tools ───────────────────────────────────────────────────

class ToolKey(NamedTuple):
    """Catalog key: a tool name namespaced by its provider."""
    provider_id: str
    tool_name: str

    def __str__(self) -> str:
        return f"{self.provider_id}/{self.tool_name}"


class ToolDescriptor(BaseModel):
    """One tool as reported by a provider during a discovery pass."""
    model_config = ConfigDict(frozen=True)

    provider_id: str
    tool_name: str
    input_schema: dict[str, Any] = Field(default_factory=lambda: {"type": "object", "properties": {}})
    output_schema: dict[str, Any] | None = None
    description: str = ""

    @property
    def key(self) -> ToolKey:
        return ToolKey(self.provider_id, self.tool_name)


class ProviderFailure(BaseModel):
    """Per-provider annotation recorded when discovery could not list a provider."""
    provider_id: str
    error_type: str
    message: str


class ToolCatalog:
    """Namespaced tools from one discovery pass, plus per-provider failures.

    Read-only once built. Keys are ``ToolKey`` so identical tool names from
    different providers never collide.
    """

    def __init__(
        self,
        tools: Iterable[ToolDescriptor] = (),
        failures: Iterable[ProviderFailure] = (),
        providers: Iterable[str] = (),
    ):
        self._tools: dict[ToolKey, ToolDescriptor] = {}
        for tool in tools:
            if tool.key in self._tools:
                raise ValueError(f"Duplicate catalog key: {tool.key}")
            self._tools[tool.key] = tool
        self._failures = {f.provider_id: f for f in failures}
        self._providers = list(dict.fromkeys(providers))

    @property
    def failures(self) -> dict[str, ProviderFailure]:
        return dict(self._failures)

    @property
    def reachable_providers(self) -> list[str]:
        return [p for p in self._providers if p not in self._failures]

    def get(self, key: ToolKey) -> ToolDescriptor | None:
        return self._tools.get(key)

    def keys(self) -> list[ToolKey]:
        return list(self._tools.keys())

    def tools(self) -> list[ToolDescriptor]:
        return list(self._tools.values())

    def for_provider(self, provider_id: str) -> list[ToolDescriptor]:
        return [t for t in self._tools.values() if t.provider_id == provider_id]

    def __getitem__(self, key: ToolKey) -> ToolDescriptor:
        return self._tools[key]

    def __contains__(self, key: object) -> bool:
        return key in self._tools

    def __iter__(self) -> Iterator[ToolKey]:
        return iter(self._tools)

    def __len__(self) -> int:
        return len(self._tools)


# ─── Signatures ──────────────────────────────────────────────

class GeneratedSignature(BaseModel):
    """Typed surface for one tool, as shown to the agent."""
    function_name: str
    provider_id: str
    tool_name: str
    parameter_type: str
    return_type: str
    type_definitions: str = ""
    doc_text: str = ""
    typed: bool = True
    translation_error: str | None = None

    @property
    def key(self) -> ToolKey:
        return ToolKey(self.provider_id, self.tool_name)

    @property
    def stub(self) -> str:
        """Python stub: type definitions followed by the async function signature."""
        doc = self.doc_text.replace('"""', '\\"\\"\\"')
        doc_lines = "\n".join(f"    {line}".rstrip() for line in doc.splitlines())
        parts = []
        if self.type_definitions:
            parts.append(self.type_definitions)
        parts.append(
            f"async def {self.function_name}(args: {self.parameter_type}) -> {self.return_type}:\n"
            f'    """\n{doc_lines}\n    """'
        )
        return "\n\n".join(parts)


# ─── Augmentations ───────────────────────────────────────────

class AugmentationEntry(BaseModel):
    """Agent-authored notes about a tool's real output."""
    output_shape_description: str = Field(..., min_length=1)
    parsing_example: str = Field(..., min_length=1)


class Augmentation(AugmentationEntry):
    """A persisted, immutable augmentation for one (provider, tool) pair."""
    model_config = ConfigDict(frozen=True)

    provider_id: str = Field(..., min_length=1)
    tool_name: str = Field(..., min_length=1)
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


# ─── Execution ───────────────────────────────────────────────

MAX_TIMEOUT_MS = 600_000

class ExecutionRequest(BaseModel):
    """Agent code plus the tools it may reach."""
    source_code: str
    selected_tool_keys: list[ToolKey] = Field(default_factory=list)
    timeout_ms: int = Field(default=30000, gt=0, le=MAX_TIMEOUT_MS)


class ExecutionResult(BaseModel):
    """Outcome of one sandbox run.

    ``status`` is the explicit result variant callers branch on;
    ``captured_output_lines`` is always populated up to the failure point.
    """
    status: ExecutionStatus
    return_value: Any = None
    error_message: str | None = None
    error_kind: ErrorKind | None = None
    captured_output_lines: list[str] = Field(default_factory=list)
    tools_called: list[str] = Field(default_factory=list)
    missing_augmentations: list[ToolKey] = Field(default_factory=list)
    duration_ms: float = 0.0

    @computed_field  # type: ignore[prop-decorator]
    @property
    def succeeded(self) -> bool:
        return self.status == ExecutionStatus.COMPLETED
