"""Shared test fixtures: template DB plus in-memory fakes for the executor's collaborators."""

import asyncio
import random
import shutil
import sqlite3
import tempfile
from collections.abc import Callable, Mapping
from pathlib import Path
from typing import Any
from unittest.mock import MagicMock, patch

import pytest

from agq.capacity import ExecutionCapacity
from agq.config import Settings
from agq.db import get_connection
from agq.executor import TaskQueueExecutor


@pytest.fixture(autouse=True)
def redis_mock() -> MagicMock:
    """Keep every test off a real Redis; tests may inspect the calls."""
    mock = MagicMock()
    with (
        patch("agq.events.get_redis", return_value=mock),
        patch("agq.status.get_redis", return_value=mock),
    ):
        yield mock


@pytest.fixture(scope="session")
def _db_template_path() -> Path:
    """Create a single template DB with the full schema.

    Copying this file is cheaper than creating the schema in every test.
    """
    fd, path_str = tempfile.mkstemp(suffix=".db")
    path = Path(path_str)
    try:
        conn = get_connection(path)
        conn.close()
        yield path
    finally:
        path.unlink(missing_ok=True)


@pytest.fixture()
def db_conn(tmp_path: Path, _db_template_path: Path) -> sqlite3.Connection:
    """Per-test DB connection with schema pre-loaded."""
    db_path = tmp_path / "test.db"
    shutil.copy2(_db_template_path, db_path)
    conn = get_connection(db_path)
    try:
        yield conn
    finally:
        conn.close()


@pytest.fixture()
def db_conn_path(tmp_path: Path, _db_template_path: Path) -> tuple[sqlite3.Connection, Path]:
    """Per-test DB connection + path (for tests that re-open the DB)."""
    db_path = tmp_path / "test.db"
    shutil.copy2(_db_template_path, db_path)
    conn = get_connection(db_path)
    try:
        yield conn, db_path
    finally:
        conn.close()


# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------


class RecordingNotifier:
    def __init__(self) -> None:
        self.events: list[dict[str, Any]] = []

    def send(self, event: dict[str, Any]) -> None:
        self.events.append(event)

    def of_type(self, event_type: str) -> list[dict[str, Any]]:
        return [e for e in self.events if e["type"] == event_type]


class FakeTerminal:
    def __init__(self, provider: "FakeTerminalProvider", session_name: str) -> None:
        self._provider = provider
        self.session_name = session_name
        self.writes: list[str] = []
        self.killed = False

    def on_ready(self, callback: Callable[[], None]) -> None:
        callback()

    async def write(self, text: str) -> None:
        self.writes.append(text)

    def kill(self) -> None:
        self.killed = True
        self._provider.alive.discard(self.session_name)


class FakeTerminalProvider:
    def __init__(self) -> None:
        self.created: list[dict[str, Any]] = []
        self.terminals: dict[str, FakeTerminal] = {}
        self.alive: set[str] = set()

    async def create(self, cwd: str, session_name: str, env: Mapping[str, str]) -> FakeTerminal:
        self.created.append({"cwd": cwd, "session_name": session_name, "env": dict(env)})
        terminal = FakeTerminal(self, session_name)
        self.terminals[session_name] = terminal
        self.alive.add(session_name)
        return terminal

    async def session_exists(self, session_name: str) -> bool:
        return session_name in self.alive

    def drop(self, session_name: str) -> None:
        """Simulate the session dying on its own."""
        self.alive.discard(session_name)


class FakeStatusChannel:
    def __init__(self) -> None:
        self.statuses: dict[str, dict[str, Any]] = {}

    def get(self, session_name: str) -> dict[str, Any] | None:
        return self.statuses.get(session_name)

    def clear(self, session_name: str) -> None:
        self.statuses.pop(session_name, None)

    def set(self, session_name: str, status: str, **extra: str) -> None:
        self.statuses[session_name] = {"status": status, **extra}


class FakeProcess:
    """Stand-in for asyncio.subprocess.Process with a scripted outcome."""

    def __init__(self, returncode: int = 0, stderr: bytes = b"", *, hang: bool = False) -> None:
        self._final_returncode = returncode
        self._stderr = stderr
        self._hang = hang
        self._done = asyncio.Event()
        self.returncode: int | None = None
        self.killed = False

    async def communicate(self) -> tuple[bytes, bytes]:
        if self._hang:
            await self._done.wait()
        self.returncode = self._final_returncode
        return b"", self._stderr

    def kill(self) -> None:
        self.killed = True
        self._final_returncode = -9
        self._done.set()


@pytest.fixture()
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture()
def terminals() -> FakeTerminalProvider:
    return FakeTerminalProvider()


@pytest.fixture()
def status_channel() -> FakeStatusChannel:
    return FakeStatusChannel()


@pytest.fixture()
def settings(tmp_path: Path) -> Settings:
    return Settings(
        projects_base_path=tmp_path / "projects",
        poll_interval=0.01,
        session_check_interval=0.01,
        settle_delay=0,
        agent_command="claude",
        max_sessions=4,
    )


@pytest.fixture()
def capacity() -> ExecutionCapacity:
    return ExecutionCapacity(4)


@pytest.fixture()
def executor(
    db_conn: sqlite3.Connection,
    settings: Settings,
    notifier: RecordingNotifier,
    terminals: FakeTerminalProvider,
    status_channel: FakeStatusChannel,
    capacity: ExecutionCapacity,
) -> TaskQueueExecutor:
    return TaskQueueExecutor(
        db_conn,
        settings=settings,
        notifier=notifier,
        terminals=terminals,
        status_channel=status_channel,
        capacity=capacity,
        rng=random.Random(7),
    )


async def wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    """Yield to the loop until *predicate* holds."""
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise TimeoutError("condition not met")
        await asyncio.sleep(0.005)
