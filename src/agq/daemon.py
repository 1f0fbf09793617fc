"""Executor daemon: owns the task queue event loop.

The daemon runs one :class:`~agq.executor.TaskQueueExecutor` and exposes
a Unix domain socket. Controls that touch scheduler state (pause, stop,
retry, skip, ...) are sent here as requests and executed on the daemon's
loop, so the executor has a single writer.

Wire format is newline-delimited JSON::

    -> {"type": "request", "id": 1, "method": "task.retry", "params": {"id": "task_ab12cd34"}}
    <- {"type": "response", "id": 1, "result": {...}}
    <- {"type": "response", "id": 1, "error": {"code": "CONFLICT", "message": "..."}}

Run directly::

    agq-daemon            # or: agq daemon run
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import signal
import sqlite3
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import Any

from agq.capacity import ExecutionCapacity
from agq.config import Settings, load_settings
from agq.db import DEFAULT_DB_PATH, cleanup_old_history, get_connection
from agq.events import RedisNotifier
from agq.executor import TaskQueueExecutor
from agq.paths import RUNTIME_DIR
from agq.status import RedisStatusChannel
from agq.terminal import TmuxProvider

log = logging.getLogger(__name__)

DEFAULT_SOCKET_PATH = RUNTIME_DIR / "executor.sock"

NOT_FOUND = "NOT_FOUND"
INVALID_PARAMS = "INVALID_PARAMS"
INVALID_METHOD = "INVALID_METHOD"
CONFLICT = "CONFLICT"
INTERNAL = "INTERNAL"


# -- Wire protocol --------------------------------------------------------


def _encode(msg: dict) -> bytes:
    return json.dumps(msg, separators=(",", ":"), default=str).encode() + b"\n"


def _decode(line: bytes) -> dict[str, Any] | None:
    try:
        parsed = json.loads(line)
    except (json.JSONDecodeError, UnicodeDecodeError):
        return None
    return parsed if isinstance(parsed, dict) else None


class CommandError(Exception):
    def __init__(self, message: str, code: str = INTERNAL):
        super().__init__(message)
        self.code = code


def _require_id(params: dict) -> str:
    task_id = params.get("id")
    if not task_id or not isinstance(task_id, str):
        raise CommandError("Missing required param: id", INVALID_PARAMS)
    return task_id


# -- Commands -------------------------------------------------------------


def _cmd_status(executor: TaskQueueExecutor, params: dict) -> Any:
    return executor.status()


def _cmd_pause(executor: TaskQueueExecutor, params: dict) -> Any:
    executor.pause_queue()
    return executor.status()


def _cmd_unpause(executor: TaskQueueExecutor, params: dict) -> Any:
    executor.unpause_queue()
    return executor.status()


def _cmd_resume(executor: TaskQueueExecutor, params: dict) -> Any:
    return {"resumed": executor.resume_queue(), **executor.status()}


def _cmd_stop(executor: TaskQueueExecutor, params: dict) -> Any:
    return executor.stop_all_tasks()


def _cmd_tick(executor: TaskQueueExecutor, params: dict) -> Any:
    return {"started": executor.tick()}


def _cmd_retry(executor: TaskQueueExecutor, params: dict) -> Any:
    task_id = _require_id(params)
    if executor.awaiting_decision_task_id() != task_id:
        raise CommandError(_gate_mismatch(executor, task_id, "retry"), CONFLICT)
    task = executor.retry_task(task_id)
    if task is None:
        raise CommandError(f"Task not found: {task_id}", NOT_FOUND)
    return task


def _cmd_skip(executor: TaskQueueExecutor, params: dict) -> Any:
    task_id = _require_id(params)
    if executor.awaiting_decision_task_id() != task_id:
        raise CommandError(_gate_mismatch(executor, task_id, "skip"), CONFLICT)
    return {"skipped": executor.skip_task(task_id)}


def _gate_mismatch(executor: TaskQueueExecutor, task_id: str, action: str) -> str:
    awaiting = executor.awaiting_decision_task_id()
    if awaiting is None:
        return f"No task is awaiting a {action} decision"
    return f"Another task ({awaiting}) is awaiting decision, not {task_id}"


COMMANDS: dict[str, Callable[[TaskQueueExecutor, dict], Any]] = {
    "queue.status": _cmd_status,
    "queue.pause": _cmd_pause,
    "queue.unpause": _cmd_unpause,
    "queue.resume": _cmd_resume,
    "queue.stop": _cmd_stop,
    "queue.tick": _cmd_tick,
    "task.retry": _cmd_retry,
    "task.skip": _cmd_skip,
}


# -- Daemon ---------------------------------------------------------------


class ExecutorDaemon:
    """Unix-socket front end for a running executor."""

    def __init__(
        self,
        executor: TaskQueueExecutor,
        *,
        socket_path: Path = DEFAULT_SOCKET_PATH,
        on_start: Callable[[], Awaitable[None]] | None = None,
    ) -> None:
        self.executor = executor
        self._socket_path = socket_path
        self._on_start = on_start
        self._server: asyncio.AbstractServer | None = None
        self._clients: set[asyncio.StreamWriter] = set()

    def handle_request(self, method: str, params: dict | None) -> Any:
        command = COMMANDS.get(method)
        if command is None:
            raise CommandError(f"Unknown method: {method}", INVALID_METHOD)
        return command(self.executor, params or {})

    async def _handle_client(
        self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter
    ) -> None:
        self._clients.add(writer)
        try:
            while True:
                line = await reader.readline()
                if not line:
                    break
                msg = _decode(line)
                if msg is None or msg.get("type") != "request":
                    log.warning("Ignoring malformed daemon message")
                    continue
                response: dict[str, Any] = {"type": "response", "id": msg.get("id")}
                try:
                    response["result"] = self.handle_request(
                        str(msg.get("method", "")), msg.get("params")
                    )
                except CommandError as exc:
                    response["error"] = {"code": exc.code, "message": str(exc)}
                except (sqlite3.Error, ValueError) as exc:
                    log.exception("Command %s failed", msg.get("method"))
                    response["error"] = {"code": INTERNAL, "message": str(exc)}
                writer.write(_encode(response))
                await writer.drain()
        except (asyncio.CancelledError, ConnectionResetError):
            pass
        finally:
            self._clients.discard(writer)
            writer.close()

    async def start(self) -> None:
        self._socket_path.parent.mkdir(parents=True, exist_ok=True)
        # Remove stale socket
        if self._socket_path.exists():
            self._socket_path.unlink()
        self._server = await asyncio.start_unix_server(
            self._handle_client, path=str(self._socket_path)
        )
        self._socket_path.chmod(0o600)
        self._socket_path.with_suffix(".pid").write_text(str(os.getpid()))
        if self._on_start is not None:
            await self._on_start()
        self.executor.start()
        log.info("Executor daemon listening on %s", self._socket_path)

    async def stop(self) -> None:
        await self.executor.shutdown()
        for writer in list(self._clients):
            writer.close()
        self._clients.clear()
        if self._server:
            self._server.close()
            await self._server.wait_closed()
        if self._socket_path.exists():
            self._socket_path.unlink()
        pid_path = self._socket_path.with_suffix(".pid")
        if pid_path.exists():
            pid_path.unlink()
        log.info("Executor daemon stopped")

    async def serve_forever(self) -> None:
        """Run until SIGTERM/SIGINT."""
        assert self._server is not None
        stop_event = asyncio.Event()

        def on_signal() -> None:
            log.info("Signal received, shutting down")
            stop_event.set()

        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, on_signal)

        await stop_event.wait()
        await self.stop()


# -- Entry point ----------------------------------------------------------


def build_executor(conn: sqlite3.Connection, settings: Settings) -> TaskQueueExecutor:
    return TaskQueueExecutor(
        conn,
        settings=settings,
        notifier=RedisNotifier(),
        terminals=TmuxProvider(),
        status_channel=RedisStatusChannel(),
        capacity=ExecutionCapacity(settings.max_sessions),
    )


async def run_daemon(
    *, db_path: Path = DEFAULT_DB_PATH, socket_path: Path = DEFAULT_SOCKET_PATH
) -> None:
    settings = load_settings()
    conn = get_connection(db_path)

    async def prune_history() -> None:
        removed = cleanup_old_history(conn, settings.history_max_age_days)
        if removed:
            log.info("Pruned %d history row(s) older than %d days", removed, settings.history_max_age_days)

    try:
        daemon = ExecutorDaemon(
            build_executor(conn, settings), socket_path=socket_path, on_start=prune_history
        )
        await daemon.start()
        await daemon.serve_forever()
    finally:
        conn.close()


def main() -> None:
    level = os.environ.get("AGQ_LOG_LEVEL", "INFO").upper()
    logging.basicConfig(level=level, format="%(asctime)s %(levelname)s %(message)s")
    asyncio.run(run_daemon())


if __name__ == "__main__":
    main()
