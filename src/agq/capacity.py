"""In-process registry of the agent sessions agq is driving, bounded by ``max_sessions``.

A session counts from launch until its task leaves ``running``. A session
left open after its task completed is no longer driven by agq and does not
count against the bound.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any, Protocol, TypedDict

log = logging.getLogger(__name__)


class Capacity(TypedDict):
    available: int
    running: int
    max: int


class CapacityProvider(Protocol):
    def get_capacity(self) -> Capacity: ...

    def register(
        self, session_name: str, project: str, metadata: Mapping[str, Any] | None = None
    ) -> None: ...

    def unregister(self, session_name: str) -> None: ...

    def sessions(self) -> dict[str, dict[str, Any]]: ...


class ExecutionCapacity:
    def __init__(self, max_sessions: int) -> None:
        self.max_sessions = max_sessions
        self._sessions: dict[str, dict[str, Any]] = {}

    def get_capacity(self) -> Capacity:
        running = len(self._sessions)
        return {
            "available": max(0, self.max_sessions - running),
            "running": running,
            "max": self.max_sessions,
        }

    def register(
        self, session_name: str, project: str, metadata: Mapping[str, Any] | None = None
    ) -> None:
        self._sessions[session_name] = {"project": project, **(metadata or {})}
        log.debug("Registered session %s (%d/%d)", session_name, len(self._sessions), self.max_sessions)

    def unregister(self, session_name: str) -> None:
        if self._sessions.pop(session_name, None) is not None:
            log.debug("Unregistered session %s", session_name)

    def sessions(self) -> dict[str, dict[str, Any]]:
        return dict(self._sessions)
