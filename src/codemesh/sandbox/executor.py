"""
CodeMesh Execution Sandbox

Runs agent code against the injected adapters and nothing else:
- Capability check at compile time (no imports, no dunder or private access)
- Agent code runs in a separate worker process with restricted
  ``__builtins__`` and a captured ``console``
- Tool calls are relayed to this process, which owns every adapter and
  connection
- Wall-clock budget enforced here: at the deadline the worker is killed and
  in-flight adapter calls are cancelled, closing their connections
- Output size cap with a truncation marker
- Exploration gate: ``# EXPLORING`` runs that touch undocumented tools
  report AUGMENTATION_REQUIRED

Each run is a single-use SandboxRun with its own worker process; nothing
survives between runs.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import re
import sys
import tempfile
import time
from collections import deque
from collections.abc import Mapping
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, Field

from codemesh.core.models import (
    MAX_TIMEOUT_MS,
    ErrorKind,
    ExecutionRequest,
    ExecutionResult,
    ExecutionStatus,
    ToolKey,
)
from codemesh.exceptions import (
    CodeMeshError,
    CompilationError,
    ExecutionTimeoutError,
    ToolInvocationError,
)
from codemesh.observability.metrics import record_execution
from codemesh.observability.tracing import span
from codemesh.sandbox.compiler import compile_program
from codemesh.sandbox.console import SandboxConsole
from codemesh.sandbox.protocol import encode_message

if TYPE_CHECKING:
    from codemesh.augmentation.store import AugmentationStore
    from codemesh.proxy.builder import CallAdapter

logger = logging.getLogger(__name__)

EXPLORATION_MARKER = re.compile(r"^\s*#\s*EXPLORING\b", re.MULTILINE)

WORKER_MODULE = "codemesh.sandbox.worker"
# Directory holding the ``codemesh`` package, so the worker imports this copy
PACKAGE_ROOT = Path(__file__).resolve().parents[2]
# Return values and tool results routinely exceed asyncio's 64 KiB line limit
STREAM_LIMIT = 16 * 1024 * 1024
STDERR_TAIL_LINES = 20


class SandboxConfig(BaseModel):
    """Limits applied to every sandbox run."""

    default_timeout_ms: int = Field(default=30000, gt=0, le=MAX_TIMEOUT_MS)
    startup_timeout_ms: int = Field(default=15000, gt=0, le=120000)
    grace_ms: int = Field(default=1000, ge=0, le=60000)
    max_output_lines: int = Field(default=1000, ge=1, le=100000)


class SandboxState(str, Enum):
    PENDING = "PENDING"
    COMPILING = "COMPILING"
    RUNNING = "RUNNING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    TIMED_OUT = "TIMED_OUT"


_TRANSITIONS: dict[SandboxState, frozenset[SandboxState]] = {
    SandboxState.PENDING: frozenset({SandboxState.COMPILING}),
    SandboxState.COMPILING: frozenset({SandboxState.RUNNING, SandboxState.FAILED}),
    SandboxState.RUNNING: frozenset({
        SandboxState.COMPLETED, SandboxState.FAILED, SandboxState.TIMED_OUT,
    }),
}


class WorkerError(CodeMeshError):
    """Raised when the worker process fails outside of agent code."""


def _worker_env() -> dict[str, str]:
    """Minimal environment: the worker sees none of the host's secrets."""
    python_path = [str(PACKAGE_ROOT)]
    if os.environ.get("PYTHONPATH"):
        python_path.append(os.environ["PYTHONPATH"])
    return {
        "PATH": os.environ.get("PATH", "/usr/bin:/usr/local/bin:/bin"),
        "HOME": tempfile.gettempdir(),
        "LANG": "en_US.UTF-8",
        "PYTHONPATH": os.pathsep.join(python_path),
        "PYTHONDONTWRITEBYTECODE": "1",
    }


# ─── Run ─────────────────────────────────────────────────────

class SandboxRun:
    """One single-use execution of agent code.

    PENDING -> COMPILING -> RUNNING -> COMPLETED | FAILED | TIMED_OUT.
    A run cannot be restarted; build a new one per request.
    """

    def __init__(
        self,
        request: ExecutionRequest,
        adapters: Mapping[str, CallAdapter],
        config: SandboxConfig | None = None,
        augmentations: AugmentationStore | None = None,
    ):
        self.request = request
        self._adapters = dict(adapters)
        self._config = config or SandboxConfig()
        self._augmentations = augmentations
        self._console = SandboxConsole(max_lines=self._config.max_output_lines)
        self._touched: list[ToolKey] = []
        self._state = SandboxState.PENDING
        self._started = 0.0
        self._calls: set[asyncio.Task] = set()
        self._write_lock = asyncio.Lock()
        self._stderr_tail: deque[str] = deque(maxlen=STDERR_TAIL_LINES)
        self._stderr_task: asyncio.Task | None = None

    @property
    def state(self) -> SandboxState:
        return self._state

    @property
    def output_lines(self) -> list[str]:
        return self._console.lines

    @property
    def tools_called(self) -> list[ToolKey]:
        return list(self._touched)

    def _transition(self, target: SandboxState) -> None:
        allowed = _TRANSITIONS.get(self._state, frozenset())
        if target not in allowed:
            raise RuntimeError(f"Illegal sandbox transition {self._state.value} -> {target.value}")
        self._state = target

    async def execute(self) -> ExecutionResult:
        """Compile and run the request. Never raises for agent-code failures."""
        self._transition(SandboxState.COMPILING)
        self._started = time.monotonic()

        try:
            compile_program(self.request.source_code)
        except CompilationError as e:
            self._transition(SandboxState.FAILED)
            return self._finish(ExecutionStatus.FAILED, error_message=str(e), error_kind=ErrorKind.COMPILATION_ERROR)

        self._transition(SandboxState.RUNNING)

        with span("execute", timeout_ms=self.request.timeout_ms, tools=len(self._adapters)) as current:
            proc: asyncio.subprocess.Process | None = None
            try:
                proc = await self._spawn()
                outcome = await self._supervise(proc)
            except ExecutionTimeoutError:
                return self._timed_out()
            except WorkerError as e:
                current.record_exception(e)
                self._transition(SandboxState.FAILED)
                return self._finish(ExecutionStatus.FAILED, error_message=str(e), error_kind=ErrorKind.RUNTIME_ERROR)
            finally:
                if proc is not None:
                    await self._stop(proc)

            if outcome.get("op") == "failed":
                self._transition(SandboxState.FAILED)
                return self._finish(
                    ExecutionStatus.FAILED,
                    error_message=outcome.get("error", "agent code failed"),
                    error_kind=ErrorKind.RUNTIME_ERROR,
                )

            self._transition(SandboxState.COMPLETED)
            return self._apply_exploration_gate(outcome.get("value"))

    # ─── Worker process ──────────────────────────────────────

    async def _spawn(self) -> asyncio.subprocess.Process:
        try:
            proc = await asyncio.create_subprocess_exec(
                sys.executable,
                "-m",
                WORKER_MODULE,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=_worker_env(),
                cwd=tempfile.gettempdir(),
                limit=STREAM_LIMIT,
            )
        except OSError as e:
            raise WorkerError(f"Sandbox worker could not be started: {e}") from e
        logger.debug("Spawned sandbox worker pid=%s", proc.pid)
        self._stderr_task = asyncio.create_task(self._drain_stderr(proc))
        return proc

    async def _supervise(self, proc: asyncio.subprocess.Process) -> dict[str, Any]:
        """Start the program, then relay until it reports an outcome.

        The budget starts once the worker has compiled the program and built
        its namespace, so interpreter start-up is not charged to agent code.
        """
        try:
            await self._send(proc, {
                "op": "run",
                "source": self.request.source_code,
                "functions": sorted(self._adapters),
            })
        except (BrokenPipeError, ConnectionResetError) as e:
            raise WorkerError(self._exit_message(await proc.wait())) from e
        try:
            async with asyncio.timeout(self._config.startup_timeout_ms / 1000):
                first = await self._receive(proc)
        except TimeoutError:
            raise WorkerError(
                f"Sandbox worker did not start within {self._config.startup_timeout_ms}ms"
            ) from None
        if first.get("op") != "ready":
            return first

        budget = asyncio.timeout(self.request.timeout_ms / 1000)
        try:
            async with budget:
                return await self._relay(proc)
        except TimeoutError:
            if budget.expired():
                raise ExecutionTimeoutError(self.request.timeout_ms) from None
            raise

    async def _relay(self, proc: asyncio.subprocess.Process) -> dict[str, Any]:
        while True:
            message = await self._receive(proc)
            op = message.get("op")
            if op == "output":
                self._console.append(str(message.get("line", "")))
            elif op == "call":
                task = asyncio.create_task(self._serve_call(proc, message))
                self._calls.add(task)
                task.add_done_callback(self._calls.discard)
            elif op in ("done", "failed"):
                return message
            else:
                logger.warning("Ignoring unknown sandbox frame %r", op)

    async def _serve_call(self, proc: asyncio.subprocess.Process, message: dict[str, Any]) -> None:
        call_id = message.get("id")
        function_name = str(message.get("function"))
        adapter = self._adapters.get(function_name)
        if adapter is None:
            reply = _error_reply(call_id, ToolInvocationError(function_name, 0, "tool was not selected for this run"))
        else:
            if adapter.key not in self._touched:
                self._touched.append(adapter.key)
            try:
                value = await adapter(message.get("arguments"))
            except CodeMeshError as e:
                reply = _error_reply(call_id, e)
            except Exception as e:
                logger.exception("Adapter %s raised unexpectedly", function_name)
                reply = _error_reply(call_id, ToolInvocationError(function_name, 1, f"{type(e).__name__}: {e}"))
            else:
                reply = {"op": "reply", "id": call_id, "value": value}
        try:
            await self._send(proc, reply)
        except (BrokenPipeError, ConnectionResetError):
            logger.debug("Sandbox worker exited before reply %s was delivered", call_id)

    async def _send(self, proc: asyncio.subprocess.Process, message: dict[str, Any]) -> None:
        assert proc.stdin is not None
        async with self._write_lock:
            proc.stdin.write(encode_message(message))
            await proc.stdin.drain()

    async def _receive(self, proc: asyncio.subprocess.Process) -> dict[str, Any]:
        assert proc.stdout is not None
        while True:
            try:
                line = await proc.stdout.readline()
            except (ValueError, asyncio.LimitOverrunError) as e:
                raise WorkerError(f"Sandbox worker sent an unreadable frame: {e}") from e
            if not line:
                returncode = await proc.wait()
                if self._stderr_task is not None:
                    await self._stderr_task
                raise WorkerError(self._exit_message(returncode))
            try:
                return json.loads(line)
            except json.JSONDecodeError:
                logger.debug("Skipping non-protocol line from sandbox worker")

    async def _drain_stderr(self, proc: asyncio.subprocess.Process) -> None:
        assert proc.stderr is not None
        async for line in proc.stderr:
            self._stderr_tail.append(line.decode("utf-8", errors="replace").rstrip())

    async def _stop(self, proc: asyncio.subprocess.Process) -> None:
        """Kill the worker if it is still running and cancel in-flight calls."""
        if proc.returncode is None:
            try:
                proc.kill()
            except ProcessLookupError:
                pass
        if proc.stdin is not None and not proc.stdin.is_closing():
            proc.stdin.close()
        calls = list(self._calls)
        for task in calls:
            task.cancel()
        # Cancelled adapter calls close their connections on the way out
        await asyncio.gather(*calls, return_exceptions=True)
        if self._stderr_task is not None and not self._stderr_task.done():
            self._stderr_task.cancel()
        try:
            await asyncio.wait_for(proc.wait(), timeout=self._config.grace_ms / 1000 or None)
        except TimeoutError:
            logger.error("Sandbox worker pid=%s did not exit after kill", proc.pid)

    def _exit_message(self, returncode: int) -> str:
        message = f"Sandbox worker exited unexpectedly with code {returncode}"
        if self._stderr_tail:
            message += ": " + self._stderr_tail[-1]
        return message

    # ─── Results ─────────────────────────────────────────────

    def _timed_out(self) -> ExecutionResult:
        self._transition(SandboxState.TIMED_OUT)
        return self._finish(
            ExecutionStatus.TIMED_OUT,
            error_message=str(ExecutionTimeoutError(self.request.timeout_ms)),
            error_kind=ErrorKind.EXECUTION_TIMEOUT,
        )

    def _apply_exploration_gate(self, value: Any) -> ExecutionResult:
        if not EXPLORATION_MARKER.search(self.request.source_code) or not self._touched:
            return self._finish(ExecutionStatus.COMPLETED, return_value=value)

        store = self._augmentations
        missing = [key for key in self._touched if store is None or not store.has(*key)]
        if not missing:
            return self._finish(ExecutionStatus.COMPLETED, return_value=value)

        logger.info(
            "Exploration run touched %d undocumented tool(s)", len(missing),
            extra={"status": ExecutionStatus.AUGMENTATION_REQUIRED.value},
        )
        return self._finish(
            ExecutionStatus.AUGMENTATION_REQUIRED,
            return_value=value,
            error_message=(
                "Exploration complete. Record an augmentation describing the output of "
                + ", ".join(str(key) for key in missing)
                + " before running non-exploratory code."
            ),
            error_kind=ErrorKind.AUGMENTATION_REQUIRED,
            missing_augmentations=missing,
        )

    def _finish(self, status: ExecutionStatus, **fields: Any) -> ExecutionResult:
        duration_ms = (time.monotonic() - self._started) * 1000
        result = ExecutionResult(
            status=status,
            captured_output_lines=self._console.lines,
            tools_called=[str(key) for key in self._touched],
            duration_ms=round(duration_ms, 1),
            **fields,
        )
        logger.info(
            "Sandbox run finished: %s", status.value,
            extra={"status": status.value, "duration_ms": result.duration_ms},
        )
        record_execution(status=status.value, duration_seconds=duration_ms / 1000)
        return result


def _error_reply(call_id: Any, error: CodeMeshError) -> dict[str, Any]:
    return {
        "op": "raise",
        "id": call_id,
        "type": type(error).__name__,
        "message": str(error),
        "details": error.details,
    }


# ─── Sandbox ─────────────────────────────────────────────────

class CodeSandbox:
    """Entry point: one fresh SandboxRun per request."""

    def __init__(self, config: SandboxConfig | None = None, augmentations: AugmentationStore | None = None):
        self.config = config or SandboxConfig()
        self.augmentations = augmentations

    async def execute(self, request: ExecutionRequest, adapters: Mapping[str, CallAdapter]) -> ExecutionResult:
        run = SandboxRun(request, adapters, self.config, self.augmentations)
        return await run.execute()
