"""tmux-backed terminal sessions for interactive and trust tasks."""

from __future__ import annotations

import asyncio
import logging
import subprocess
from collections.abc import Callable, Mapping
from typing import Protocol

log = logging.getLogger(__name__)

# Exported into every session so agent hooks know which session to report for.
SESSION_ENV_VAR = "AGQ_SESSION"
HISTORY_LIMIT = 10000


class TerminalError(RuntimeError):
    """tmux refused to create or drive a session."""


class Terminal(Protocol):
    session_name: str

    def on_ready(self, callback: Callable[[], None]) -> None: ...

    async def write(self, text: str) -> None: ...

    def kill(self) -> None: ...


class TerminalProvider(Protocol):
    async def create(self, cwd: str, session_name: str, env: Mapping[str, str]) -> Terminal: ...

    async def session_exists(self, session_name: str) -> bool: ...


async def _tmux(*args: str) -> tuple[int, str]:
    proc = await asyncio.create_subprocess_exec(
        "tmux",
        *args,
        stdout=asyncio.subprocess.DEVNULL,
        stderr=asyncio.subprocess.PIPE,
    )
    _, stderr = await proc.communicate()
    return proc.returncode or 0, stderr.decode(errors="replace").strip()


class TmuxTerminal:
    """Handle on one detached tmux session."""

    def __init__(self, session_name: str) -> None:
        self.session_name = session_name
        self._ready = False
        self._ready_callbacks: list[Callable[[], None]] = []

    def on_ready(self, callback: Callable[[], None]) -> None:
        if self._ready:
            callback()
        else:
            self._ready_callbacks.append(callback)

    def _mark_ready(self) -> None:
        self._ready = True
        callbacks, self._ready_callbacks = self._ready_callbacks, []
        for callback in callbacks:
            callback()

    async def write(self, text: str) -> None:
        """Type *text* into the pane; each ``\\r`` becomes an Enter key press."""
        chunks = text.split("\r")
        for index, chunk in enumerate(chunks):
            if chunk:
                code, err = await _tmux("send-keys", "-t", self.session_name, "-l", chunk)
                if code != 0:
                    raise TerminalError(f"send-keys to {self.session_name} failed: {err}")
            if index < len(chunks) - 1:
                code, err = await _tmux("send-keys", "-t", self.session_name, "Enter")
                if code != 0:
                    raise TerminalError(f"send-keys to {self.session_name} failed: {err}")

    def kill(self) -> None:
        result = subprocess.run(
            ["tmux", "kill-session", "-t", self.session_name],
            capture_output=True,
            text=True,
            check=False,
        )
        if result.returncode != 0:
            log.debug("kill-session %s: %s", self.session_name, result.stderr.strip())


class TmuxProvider:
    async def create(self, cwd: str, session_name: str, env: Mapping[str, str]) -> TmuxTerminal:
        args = ["new-session", "-d", "-s", session_name, "-c", cwd]
        for key, value in {**env, SESSION_ENV_VAR: session_name}.items():
            args += ["-e", f"{key}={value}"]
        code, err = await _tmux(*args)
        if code != 0:
            raise TerminalError(f"tmux new-session {session_name} failed: {err or code}")
        await _tmux("set-option", "-t", session_name, "history-limit", str(HISTORY_LIMIT))
        terminal = TmuxTerminal(session_name)
        terminal._mark_ready()
        log.info("Created tmux session %s in %s", session_name, cwd)
        return terminal

    async def session_exists(self, session_name: str) -> bool:
        code, _ = await _tmux("has-session", "-t", session_name)
        return code == 0
