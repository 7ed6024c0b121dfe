"""CodeMesh Sandbox: compiles and runs agent code against injected adapters."""

from codemesh.sandbox.compiler import SANDBOX_FILENAME, CompiledProgram, compile_program
from codemesh.sandbox.console import SandboxConsole
from codemesh.sandbox.executor import (
    EXPLORATION_MARKER,
    CodeSandbox,
    SandboxConfig,
    SandboxRun,
    SandboxState,
)

__all__ = [
    "CodeSandbox",
    "CompiledProgram",
    "EXPLORATION_MARKER",
    "SANDBOX_FILENAME",
    "SandboxConfig",
    "SandboxConsole",
    "SandboxRun",
    "SandboxState",
    "compile_program",
]
