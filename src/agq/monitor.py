"""Per-task watcher for interactive and trust sessions."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable

from agq.status import StatusChannel
from agq.terminal import TerminalProvider

log = logging.getLogger(__name__)

LOST = "lost"
IDLE = "idle"
ATTENTION = "needs_attention"


class SessionMonitor:
    """Poll session liveness and reported status until the task settles.

    ``on_lost`` fires when the tmux session disappears, ``on_idle`` when the
    agent reports it is done. Either one ends the monitor. Attention
    requests never end it: they are expected in interactive mode and only
    logged as anomalies in trust mode.
    """

    def __init__(
        self,
        task_id: str,
        session_name: str,
        mode: str,
        *,
        terminals: TerminalProvider,
        status_channel: StatusChannel,
        interval: float,
        on_idle: Callable[[str], None],
        on_lost: Callable[[str], None],
    ) -> None:
        self.task_id = task_id
        self.session_name = session_name
        self.mode = mode
        self._terminals = terminals
        self._status_channel = status_channel
        self._interval = interval
        self._on_idle = on_idle
        self._on_lost = on_lost
        self._task: asyncio.Task[None] | None = None
        self._stopped = False
        self._last_status: str | None = None

    @property
    def active(self) -> bool:
        return not self._stopped and self._task is not None and not self._task.done()

    def start(self) -> None:
        self._task = asyncio.get_running_loop().create_task(
            self._run(), name=f"monitor-{self.task_id}"
        )

    def stop(self) -> None:
        self._stopped = True
        # A callback fired from check() may stop us from inside our own task.
        if self._task and not self._task.done() and self._task is not asyncio.current_task():
            self._task.cancel()

    async def _run(self) -> None:
        while not self._stopped:
            await asyncio.sleep(self._interval)
            if self._stopped:
                break
            try:
                await self.check()
            except Exception:
                log.exception("Session check failed for task %s", self.task_id)

    async def check(self) -> str | None:
        """Run one liveness/status check. Returns the outcome, if any."""
        if not await self._terminals.session_exists(self.session_name):
            log.warning("Session %s for task %s disappeared", self.session_name, self.task_id)
            self._stopped = True
            self._on_lost(self.task_id)
            return LOST

        report = await asyncio.to_thread(self._status_channel.get, self.session_name)
        status = report.get("status") if report else None
        changed = status != self._last_status
        self._last_status = status

        if status == IDLE:
            log.info("Session %s reported idle, task %s done", self.session_name, self.task_id)
            self._stopped = True
            self._on_idle(self.task_id)
            return IDLE
        if status == ATTENTION:
            if changed:
                reason = (report or {}).get("attention_reason") or "unspecified"
                if self.mode == "trust":
                    log.warning(
                        "Trust-mode task %s needs attention (%s); permissions should be automatic",
                        self.task_id,
                        reason,
                    )
                else:
                    log.info("Task %s is waiting for user input (%s)", self.task_id, reason)
            return ATTENTION
        return None
