"""
Sandbox worker process.

Runs one agent program and exits. The host starts it with
``python -m codemesh.sandbox.worker`` and talks to it over newline-delimited
JSON on stdin/stdout:

    host -> worker   {"op": "run", "source": ..., "functions": [...]}
    worker -> host   {"op": "ready"}
    worker -> host   {"op": "output", "line": ...}
    worker -> host   {"op": "call", "id": N, "function": ..., "arguments": ...}
    host -> worker   {"op": "reply", "id": N, "value": ...}
                     {"op": "raise", "id": N, "type": ..., "message": ..., "details": {...}}
    worker -> host   {"op": "done", "value": ...} | {"op": "failed", "error": ...}

The worker holds no connections: every tool call is relayed to the host,
which owns the adapters and kills this process when the budget runs out.
"""

from __future__ import annotations

import asyncio
import builtins
import json
import sys
import threading
import time
import traceback
from types import SimpleNamespace
from typing import IO, Any

from codemesh.exceptions import (
    CodeMeshError,
    CompilationError,
    InvalidArgumentError,
    ToolInvocationError,
)
from codemesh.sandbox.compiler import SANDBOX_FILENAME, compile_program
from codemesh.sandbox.console import SandboxConsole
from codemesh.sandbox.protocol import encode_message

SAFE_BUILTINS: dict[str, Any] = {
    name: getattr(builtins, name)
    for name in (
        "abs", "aiter", "all", "anext", "any", "bool", "bytes", "callable", "chr",
        "dict", "divmod", "enumerate", "filter", "float", "frozenset", "hash",
        "hex", "int", "isinstance", "issubclass", "iter", "len", "list", "map",
        "max", "min", "next", "oct", "ord", "pow", "range", "repr", "reversed",
        "round", "set", "slice", "sorted", "str", "sum", "tuple", "zip",
        "Exception", "ArithmeticError", "AssertionError", "AttributeError",
        "IndexError", "KeyError", "LookupError", "NotImplementedError",
        "RuntimeError", "StopAsyncIteration", "StopIteration", "TimeoutError",
        "TypeError", "ValueError", "ZeroDivisionError",
    )
}

RELAYED_ERRORS: dict[str, type[CodeMeshError]] = {
    "InvalidArgumentError": InvalidArgumentError,
    "ToolInvocationError": ToolInvocationError,
}


def describe_runtime_error(error: BaseException) -> str:
    """``Type: message (line N)`` with N taken from the deepest agent frame."""
    lineno = None
    for frame in traceback.extract_tb(error.__traceback__):
        if frame.filename == SANDBOX_FILENAME:
            lineno = frame.lineno
    text = f"{type(error).__name__}: {error}"
    if lineno is not None:
        text += f" (line {lineno})"
    return text


def rebuild_error(payload: dict[str, Any]) -> CodeMeshError:
    """Recreate an error raised by a host-side adapter, message unchanged."""
    cls = RELAYED_ERRORS.get(payload.get("type", ""), CodeMeshError)
    details = payload.get("details") or {}
    error = cls.__new__(cls)
    CodeMeshError.__init__(error, payload.get("message", ""), details=details)
    for name in ("function_name", "attempts"):
        if name in details:
            setattr(error, name, details[name])
    return error


async def _sleep(seconds: float) -> None:
    await asyncio.sleep(seconds)


async def _gather(*awaitables: Any) -> list[Any]:
    return list(await asyncio.gather(*awaitables))


def _now() -> float:
    return time.time()


_sleep.__name__ = "sleep"
_gather.__name__ = "gather"
_now.__name__ = "now"


class HostChannel:
    """Worker end of the pipe: frame writer plus a reader thread for replies."""

    def __init__(self, reader: IO[bytes], writer: IO[bytes]):
        self._reader = reader
        self._writer = writer
        self._write_lock = threading.Lock()
        self._pending: dict[int, asyncio.Future] = {}
        self._next_id = 0
        self._loop: asyncio.AbstractEventLoop | None = None

    def send(self, message: dict[str, Any]) -> None:
        frame = encode_message(message)
        with self._write_lock:
            self._writer.write(frame)
            self._writer.flush()

    def receive(self) -> dict[str, Any] | None:
        line = self._reader.readline()
        if not line:
            return None
        return json.loads(line)

    def start(self, loop: asyncio.AbstractEventLoop) -> None:
        self._loop = loop
        threading.Thread(target=self._read_replies, name="codemesh-sandbox-replies", daemon=True).start()

    async def call(self, function_name: str, arguments: Any) -> Any:
        assert self._loop is not None
        self._next_id += 1
        call_id = self._next_id
        message = {"op": "call", "id": call_id, "function": function_name, "arguments": arguments}
        try:
            frame = json.dumps(message).encode("utf-8") + b"\n"
        except (TypeError, ValueError) as e:
            raise InvalidArgumentError(function_name, f"arguments are not JSON-serializable: {e}") from e
        future = self._loop.create_future()
        self._pending[call_id] = future
        with self._write_lock:
            self._writer.write(frame)
            self._writer.flush()
        try:
            return await future
        finally:
            self._pending.pop(call_id, None)

    def _read_replies(self) -> None:
        assert self._loop is not None
        while True:
            message = self.receive()
            if message is None:
                self._loop.call_soon_threadsafe(self._host_gone)
                return
            self._loop.call_soon_threadsafe(self._resolve, message)

    def _resolve(self, message: dict[str, Any]) -> None:
        future = self._pending.get(message.get("id"))
        if future is None or future.done():
            return
        if message.get("op") == "raise":
            future.set_exception(rebuild_error(message))
        else:
            future.set_result(message.get("value"))

    def _host_gone(self) -> None:
        for future in self._pending.values():
            if not future.done():
                future.set_exception(RuntimeError("sandbox host closed the channel"))


def build_namespace(function_names: list[str], channel: HostChannel, console: SandboxConsole) -> dict[str, Any]:
    namespace: dict[str, Any] = {
        "__builtins__": {**SAFE_BUILTINS, "print": console.log},
        "console": console,
        "sleep": _sleep,
        "gather": _gather,
        "now": _now,
        "json": SimpleNamespace(loads=json.loads, dumps=json.dumps),
        "ToolInvocationError": ToolInvocationError,
        "InvalidArgumentError": InvalidArgumentError,
    }
    for function_name in function_names:
        namespace[function_name] = _relay_function(function_name, channel)
    return namespace


def _relay_function(function_name: str, channel: HostChannel) -> Any:
    """Plain coroutine function that forwards its arguments to the host."""

    async def call(arguments: Any = None, **kwargs: Any) -> Any:
        if kwargs:
            if arguments is not None:
                raise TypeError(f"{function_name}() takes an argument object or keyword arguments, not both")
            arguments = kwargs
        return await channel.call(function_name, arguments)

    call.__name__ = call.__qualname__ = function_name
    return call


async def run_program(request: dict[str, Any], channel: HostChannel) -> None:
    channel.start(asyncio.get_running_loop())
    console = SandboxConsole(sink=lambda line: channel.send({"op": "output", "line": line}))
    try:
        program = compile_program(request["source"])
    except CompilationError as e:
        channel.send({"op": "failed", "error": str(e)})
        return

    entrypoint = program.instantiate(build_namespace(list(request.get("functions", [])), channel, console))
    channel.send({"op": "ready"})
    try:
        value = await entrypoint()
    except Exception as e:
        channel.send({"op": "failed", "error": describe_runtime_error(e)})
    else:
        try:
            channel.send({"op": "done", "value": value})
        except ValueError as e:
            channel.send({"op": "failed", "error": f"ValueError: return value cannot be encoded: {e}"})


def main() -> int:
    # Protocol frames own the real stdout; stray writes go to stderr
    channel = HostChannel(sys.stdin.buffer, sys.stdout.buffer)
    sys.stdout = sys.stderr
    request = channel.receive()
    if request is None or request.get("op") != "run":
        return 2
    asyncio.run(run_program(request, channel))
    return 0


if __name__ == "__main__":
    sys.exit(main())
