"""STDIO transport: spawns the provider and speaks newline-delimited JSON-RPC."""

from __future__ import annotations

import asyncio
import json
import logging
import os
from typing import Any

from codemesh.core.models import ProviderDescriptor
from codemesh.exceptions import TransportError
from codemesh.transports.base import JsonRpcConnection, match_response

logger = logging.getLogger(__name__)

# Tool listings routinely exceed asyncio's 64 KiB default line limit
STREAM_LIMIT = 16 * 1024 * 1024
TERMINATE_GRACE_SECONDS = 2.0


class StdioConnection(JsonRpcConnection):
    """Connection to a provider running as a child process.

    The process lives exactly as long as the connection: it is started in
    ``connect()`` and terminated (then killed, if needed) in ``close()``.
    """

    def __init__(self, descriptor: ProviderDescriptor):
        super().__init__(descriptor)
        self._proc: asyncio.subprocess.Process | None = None

    async def _open(self) -> None:
        connection = self._descriptor.connection
        env = {**os.environ, **connection.env} if connection.env else None
        try:
            self._proc = await asyncio.create_subprocess_exec(
                *connection.command,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.DEVNULL,
                cwd=connection.cwd,
                env=env,
                limit=STREAM_LIMIT,
            )
        except OSError as e:
            raise TransportError(self.provider_id, f"failed to start {connection.command[0]!r}: {e}") from e
        logger.debug(
            "Spawned provider process pid=%s", self._proc.pid,
            extra={"provider_id": self.provider_id, "transport": "stdio"},
        )

    async def _send(self, message: dict[str, Any]) -> None:
        proc = self._require_process()
        assert proc.stdin is not None
        try:
            proc.stdin.write(json.dumps(message).encode("utf-8") + b"\n")
            await proc.stdin.drain()
        except (BrokenPipeError, ConnectionResetError) as e:
            raise TransportError(self.provider_id, f"provider closed stdin: {e}") from e

    async def _exchange(self, message: dict[str, Any]) -> dict[str, Any]:
        await self._send(message)
        proc = self._require_process()
        assert proc.stdout is not None
        while True:
            try:
                line = await proc.stdout.readline()
            except (ValueError, asyncio.LimitOverrunError) as e:
                raise TransportError(self.provider_id, f"unreadable stdout frame: {e}") from e
            if not line:
                raise TransportError(
                    self.provider_id,
                    f"provider exited before responding to {message['method']!r}",
                    details={"returncode": proc.returncode},
                )
            try:
                decoded = json.loads(line)
            except json.JSONDecodeError:
                # Providers sometimes print banners or logs to stdout
                logger.debug("Skipping non-JSON stdout line", extra={"provider_id": self.provider_id})
                continue
            if match_response(decoded, message["id"]):
                return decoded

    async def close(self) -> None:
        proc, self._proc = self._proc, None
        if proc is None or proc.returncode is not None:
            return
        if proc.stdin is not None and not proc.stdin.is_closing():
            proc.stdin.close()
        try:
            proc.terminate()
        except ProcessLookupError:
            return
        try:
            await asyncio.wait_for(proc.wait(), timeout=TERMINATE_GRACE_SECONDS)
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()

    def _require_process(self) -> asyncio.subprocess.Process:
        if self._proc is None:
            raise TransportError(self.provider_id, "connection is not open")
        return self._proc
