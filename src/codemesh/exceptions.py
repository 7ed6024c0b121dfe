"""
CodeMesh Custom Exceptions

Structured exception hierarchy for the CodeMesh pipeline.
All CodeMesh-specific exceptions inherit from CodeMeshError.

Exception hierarchy:
    CodeMeshError
    +-- ConfigError                   (malformed configuration, fatal at load time)
    +-- ProviderNotFoundError         (registry lookup miss)
    +-- ProviderUnavailableError      (one provider unreachable during discovery)
    +-- NoProvidersReachableError     (every provider unreachable)
    +-- UnknownToolError              (selected tool is not in the catalog)
    +-- InvalidRequestError           (malformed run request, e.g. timeout out of range)
    +-- SchemaTranslationError        (schema has no structural equivalent)
    +-- InvalidArgumentError          (tool input failed schema validation)
    +-- TransportError                (connection / wire failure)
    |   +-- ProtocolError             (JSON-RPC error object from the provider)
    +-- ToolInvocationError           (transport failure after retries)
    +-- CompilationError              (agent code rejected before running)
    +-- ExecutionTimeoutError         (agent code exceeded its budget)
"""

from __future__ import annotations


class CodeMeshError(Exception):
    """Base exception for all CodeMesh errors."""

    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.details = details or {}


class ConfigError(CodeMeshError):
    """Raised for malformed or ambiguous provider configuration.

    ``errors`` holds one ``path: message`` line per violation when the
    failure came from schema validation.
    """

    def __init__(self, message: str, errors: list[str] | None = None, details: dict | None = None):
        super().__init__(message, details={"errors": errors or [], **(details or {})})
        self.errors = errors or []


class ProviderNotFoundError(CodeMeshError):
    """Raised when a provider id is not registered."""

    def __init__(self, provider_id: str):
        super().__init__(
            f"Provider '{provider_id}' is not registered",
            details={"provider_id": provider_id},
        )
        self.provider_id = provider_id


class ProviderUnavailableError(CodeMeshError):
    """Raised when a single provider cannot be reached or spoken to.

    Discovery records these per provider and carries on with the rest.
    """

    def __init__(self, provider_id: str, message: str, details: dict | None = None):
        super().__init__(
            f"Provider '{provider_id}' unavailable: {message}",
            details={"provider_id": provider_id, **(details or {})},
        )
        self.provider_id = provider_id


class NoProvidersReachableError(CodeMeshError):
    """Raised when a discovery pass could not reach any provider."""

    def __init__(self, failures: list | None = None):
        failures = failures or []
        summary = ", ".join(f"{f.provider_id} ({f.message})" for f in failures) or "none registered"
        super().__init__(
            f"No providers reachable: {summary}",
            details={"failures": [f.provider_id for f in failures]},
        )
        self.failures = failures


class UnknownToolError(CodeMeshError):
    """Raised when a caller selects a tool the catalog does not contain."""

    def __init__(self, key: str):
        super().__init__(f"Unknown tool '{key}'", details={"key": key})
        self.key = key


class InvalidRequestError(CodeMeshError):
    """Raised when a caller's run request is malformed; nothing is executed."""


class SchemaTranslationError(CodeMeshError):
    """Raised when a JSON Schema construct has no structural type equivalent."""

    def __init__(self, message: str, pointer: str = "#", details: dict | None = None):
        super().__init__(
            f"{message} (at {pointer})",
            details={"pointer": pointer, **(details or {})},
        )
        self.pointer = pointer


class InvalidArgumentError(CodeMeshError):
    """Raised when tool input fails validation; the provider is never contacted."""

    def __init__(self, function_name: str, message: str, details: dict | None = None):
        super().__init__(
            f"Invalid argument for '{function_name}': {message}",
            details={"function_name": function_name, **(details or {})},
        )
        self.function_name = function_name


class TransportError(CodeMeshError):
    """Raised for connection, framing or wire-level failures."""

    def __init__(self, provider_id: str, message: str, details: dict | None = None):
        super().__init__(
            f"Transport error for '{provider_id}': {message}",
            details={"provider_id": provider_id, **(details or {})},
        )
        self.provider_id = provider_id


class ProtocolError(TransportError):
    """Raised when the provider answers with a JSON-RPC error object."""

    def __init__(self, provider_id: str, code: int, message: str, data: object = None):
        super().__init__(
            provider_id,
            f"JSON-RPC error {code}: {message}",
            details={"code": code, "data": data},
        )
        self.code = code


class ToolInvocationError(CodeMeshError):
    """Raised when a tool call fails at the transport level after all retries."""

    def __init__(self, function_name: str, attempts: int, message: str, details: dict | None = None):
        super().__init__(
            f"Tool '{function_name}' failed after {attempts} attempt(s): {message}",
            details={"function_name": function_name, "attempts": attempts, **(details or {})},
        )
        self.function_name = function_name
        self.attempts = attempts


class CompilationError(CodeMeshError):
    """Raised when agent code cannot be compiled into a sandbox program."""

    def __init__(self, diagnostic: str, lineno: int | None = None):
        super().__init__(
            f"Compilation failed: {diagnostic}",
            details={"lineno": lineno},
        )
        self.diagnostic = diagnostic
        self.lineno = lineno


class ExecutionTimeoutError(CodeMeshError):
    """Raised when agent code exceeds its wall-clock budget."""

    def __init__(self, timeout_ms: int):
        super().__init__(
            f"Execution exceeded {timeout_ms}ms limit",
            details={"timeout_ms": timeout_ms},
        )
        self.timeout_ms = timeout_ms
