"""Client side of the executor daemon socket.

Used by the CLI and the JSON API to forward queue controls to the
running daemon. Communication uses newline-delimited JSON over a Unix
domain socket.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from pathlib import Path
from typing import Any

from agq.daemon import DEFAULT_SOCKET_PATH, _decode, _encode

log = logging.getLogger(__name__)


class DaemonError(Exception):
    """The daemon answered with an error response."""

    def __init__(self, message: str, code: str):
        super().__init__(message)
        self.code = code


class DaemonClient:
    def __init__(self, *, socket_path: Path = DEFAULT_SOCKET_PATH) -> None:
        self._socket_path = socket_path
        self._reader: asyncio.StreamReader | None = None
        self._writer: asyncio.StreamWriter | None = None
        self._next_id = 1

    async def start(self) -> None:
        """Connect to the daemon's Unix socket. Raises OSError if it is not running."""
        self._reader, self._writer = await asyncio.open_unix_connection(str(self._socket_path))

    async def stop(self) -> None:
        if self._writer:
            self._writer.close()
            with contextlib.suppress(ConnectionError):
                await self._writer.wait_closed()
        self._reader = None
        self._writer = None

    async def request(
        self, method: str, params: dict[str, Any] | None = None, timeout: float | None = 30
    ) -> Any:
        if not self._writer or not self._reader:
            raise RuntimeError("DaemonClient not connected")

        req_id = self._next_id
        self._next_id += 1
        msg: dict[str, Any] = {"type": "request", "id": req_id, "method": method}
        if params is not None:
            msg["params"] = params
        self._writer.write(_encode(msg))
        await self._writer.drain()

        while True:
            line = await asyncio.wait_for(self._reader.readline(), timeout=timeout)
            if not line:
                raise ConnectionError("Daemon closed the connection")
            response = _decode(line)
            if response is None or response.get("id") != req_id:
                log.debug("Dropping unexpected daemon message: %r", line)
                continue
            if "error" in response:
                err = response["error"] or {}
                raise DaemonError(err.get("message", "Unknown error"), err.get("code", "INTERNAL"))
            return response.get("result")

    async def __aenter__(self) -> DaemonClient:
        await self.start()
        return self

    async def __aexit__(self, *exc: object) -> None:
        await self.stop()


def call_daemon(
    method: str,
    params: dict[str, Any] | None = None,
    *,
    socket_path: Path = DEFAULT_SOCKET_PATH,
) -> Any:
    """Synchronous one-shot request for CLI/API callers."""

    async def _call() -> Any:
        async with DaemonClient(socket_path=socket_path) as client:
            return await client.request(method, params)

    return asyncio.run(_call())
