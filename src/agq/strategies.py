"""Launch helpers for the three execution modes.

``print`` runs the agent once as a subprocess. ``interactive`` and
``trust`` type a command line into a tmux session; ``trust`` adds the
flag that auto-approves permission prompts.
"""

from __future__ import annotations

import asyncio
import os
import random
import re
import signal
from collections.abc import Mapping
from pathlib import Path

from agq.config import TRUST_FLAG

SESSION_MODES = {"interactive", "trust"}

_ADJECTIVES = ("brave", "swift", "calm", "bold", "wise", "keen", "fair", "wild", "bright", "cool")
_NOUNS = ("lion", "hawk", "wolf", "bear", "fox", "owl", "deer", "lynx", "eagle", "tiger")

_SHELL_METACHARS = re.compile(r"[&><;|`$!(){}\[\]\\]")


class ExecutionFailure(Exception):
    """A task's process or session ended badly."""


def generate_session_name(project: str, rng: random.Random | None = None) -> str:
    """``<project>--<adjective>-<noun>-<n>``; ``/``, ``:`` and ``.`` become ``-``."""
    rng = rng or random.Random()
    safe_project = re.sub(r"[/:.]", "-", project)
    return f"{safe_project}--{rng.choice(_ADJECTIVES)}-{rng.choice(_NOUNS)}-{rng.randrange(100)}"


def sanitize_prompt(prompt: str) -> str:
    """Make a prompt safe to wrap in single quotes on a shell command line."""
    cleaned = _SHELL_METACHARS.sub("", prompt)
    cleaned = cleaned.replace("\r\n", " ").replace("\n", " ").replace("\r", " ")
    return cleaned.replace("'", "'\\''")


def build_session_command(agent_command: str, prompt: str, mode: str) -> str:
    flag = f"{TRUST_FLAG} " if mode == "trust" else ""
    return f"{agent_command} {flag}'{sanitize_prompt(prompt)}'\r"


def project_path(base_path: Path, project: str) -> Path:
    return base_path / project


async def spawn_print_process(
    agent_command: str,
    prompt: str,
    cwd: Path,
    env: Mapping[str, str],
) -> asyncio.subprocess.Process:
    """Start ``<agent> -p <prompt>``. Spawn errors surface as ExecutionFailure."""
    try:
        return await asyncio.create_subprocess_exec(
            agent_command,
            "-p",
            prompt,
            cwd=str(cwd),
            env={**os.environ, **env},
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.DEVNULL,
            stderr=asyncio.subprocess.PIPE,
        )
    except OSError as exc:
        raise ExecutionFailure(f"Failed to start {agent_command}: {exc}") from exc


def exit_message(returncode: int) -> str:
    if returncode < 0:
        try:
            name = signal.Signals(-returncode).name
        except ValueError:
            name = str(-returncode)
        return f"Process terminated by signal {name}"
    return f"Process exited with code {returncode}"


async def wait_print_process(proc: asyncio.subprocess.Process) -> None:
    """Wait for exit; raise ExecutionFailure with stderr (or the exit status) on failure."""
    _, stderr = await proc.communicate()
    returncode = proc.returncode if proc.returncode is not None else -1
    if returncode == 0:
        return
    message = stderr.decode(errors="replace").strip() if stderr else ""
    raise ExecutionFailure(message or exit_message(returncode))
