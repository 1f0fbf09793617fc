"""The task queue executor.

One :class:`TaskQueueExecutor` runs inside the daemon's event loop and is
the only writer of scheduler state: the pause flag, the failure gate and
the per-task handle maps. Every tick it resolves dependencies and starts
at most one ready task. Print tasks run as subprocesses; interactive and
trust tasks run in tmux sessions watched by a :class:`SessionMonitor`.

A failure parks the failed task id in the gate and no new task starts
until someone retries or skips that exact task.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import random
import sqlite3
from collections.abc import Sequence
from typing import Any

from agq.capacity import CapacityProvider
from agq.config import Settings
from agq.db import (
    TaskRow,
    get_environment_variables,
    get_next_ready_task,
    get_task,
    increment_task_retry,
    link_task_session,
    list_dependent_tasks,
    list_tasks,
    pause_all_tasks,
    reset_task_for_retry,
    resume_all_tasks,
    update_task_status,
)
from agq.events import (
    QUEUE_PAUSED,
    QUEUE_RESUMED,
    TASK_UPDATED,
    Notifier,
    queue_event,
    task_event,
    task_failed_event,
    task_skipped_event,
    tasks_list_event,
)
from agq.monitor import SessionMonitor
from agq.resolver import propagate_skip, resolve_pending_tasks
from agq.status import StatusChannel
from agq.strategies import (
    ExecutionFailure,
    build_session_command,
    generate_session_name,
    project_path,
    spawn_print_process,
    wait_print_process,
)
from agq.terminal import Terminal, TerminalError, TerminalProvider

log = logging.getLogger(__name__)

SESSION_LOST_ERROR = "Session terminated unexpectedly"
WORKTREE_ENV_VAR = "AGQ_USE_WORKTREE"
SESSION_NAME_ATTEMPTS = 20


class TaskQueueExecutor:
    def __init__(
        self,
        conn: sqlite3.Connection,
        *,
        settings: Settings,
        notifier: Notifier,
        terminals: TerminalProvider,
        status_channel: StatusChannel,
        capacity: CapacityProvider,
        rng: random.Random | None = None,
    ) -> None:
        self._conn = conn
        self._settings = settings
        self._notifier = notifier
        self._terminal_provider = terminals
        self._status_channel = status_channel
        self._capacity = capacity
        self._rng = rng or random.Random()

        self._paused = False
        self._awaiting_decision: str | None = None

        # Per-task handles, keyed by task id. Cleared only by _teardown().
        self._processes: dict[str, asyncio.subprocess.Process] = {}
        self._terminals: dict[str, Terminal] = {}
        self._monitors: dict[str, SessionMonitor] = {}
        self._sessions: dict[str, str] = {}
        self._dispatches: dict[str, asyncio.Task[None]] = {}

        self._poll_task: asyncio.Task[None] | None = None

    # -- state queries --

    def is_paused(self) -> bool:
        return self._paused

    def awaiting_decision_task_id(self) -> str | None:
        return self._awaiting_decision

    def tracked_handles(self) -> dict[str, list[str]]:
        return {
            "processes": sorted(self._processes),
            "terminals": sorted(self._terminals),
            "monitors": sorted(self._monitors),
            "sessions": sorted(self._sessions),
            "dispatches": sorted(self._dispatches),
        }

    def status(self) -> dict[str, Any]:
        return {
            "paused": self._paused,
            "awaiting_decision": self._awaiting_decision,
            "capacity": dict(self._capacity.get_capacity()),
            "running": sorted(set(self._processes) | set(self._terminals) | set(self._dispatches)),
        }

    # -- notifications --

    def _emit(self, event: dict[str, Any]) -> None:
        self._notifier.send(event)

    def _emit_task(self, event_type: str, task_id: str) -> None:
        task = get_task(self._conn, task_id)
        if task is not None:
            self._emit(task_event(event_type, task))

    def _emit_skips(self, skipped: Sequence[str]) -> None:
        for task_id in skipped:
            task = get_task(self._conn, task_id)
            if task is None:
                continue
            others = [other for other in skipped if other != task_id]
            self._emit(task_skipped_event(task, others))

    # -- poll loop --

    def start(self) -> None:
        if self._poll_task is None or self._poll_task.done():
            self._poll_task = asyncio.get_running_loop().create_task(
                self._poll_loop(), name="agq-poll"
            )
            log.info("Task queue started (poll every %.1fs)", self._settings.poll_interval)

    async def shutdown(self) -> None:
        """Stop polling and monitoring. Live processes and sessions are left alone."""
        if self._poll_task:
            self._poll_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._poll_task
            self._poll_task = None
        for monitor in self._monitors.values():
            monitor.stop()
        for dispatch in list(self._dispatches.values()):
            dispatch.cancel()

    async def _poll_loop(self) -> None:
        while True:
            try:
                self.tick()
            except Exception:
                log.exception("Scheduler tick failed")
            await asyncio.sleep(self._settings.poll_interval)

    def tick(self) -> str | None:
        """Run one scheduling pass. Returns the id of the task started, if any."""
        if self._paused or self._awaiting_decision is not None:
            return None
        if self._capacity.get_capacity()["available"] <= 0:
            return None

        resolved = resolve_pending_tasks(self._conn)
        for task_id in resolved.promoted:
            self._emit_task(TASK_UPDATED, task_id)
        for group in resolved.skipped:
            self._emit_skips(group)

        candidate = get_next_ready_task(self._conn)
        if candidate is None:
            return None
        task = update_task_status(self._conn, candidate["id"], "running", event="started")
        if task is None:
            return None
        log.info("Starting task %s (%s, %s)", task["id"], task["name"], task["mode"])
        self._emit(task_event(TASK_UPDATED, task))
        self._dispatch(task)
        return task["id"]

    # -- dispatch --

    def _dispatch(self, task: TaskRow) -> None:
        task_id = task["id"]
        dispatch = asyncio.get_running_loop().create_task(
            self._run_task(task), name=f"dispatch-{task_id}"
        )
        self._dispatches[task_id] = dispatch
        dispatch.add_done_callback(lambda t, tid=task_id: self._on_dispatch_done(tid, t))

    def _on_dispatch_done(self, task_id: str, dispatch: asyncio.Task[None]) -> None:
        if self._dispatches.get(task_id) is dispatch:
            del self._dispatches[task_id]
        if dispatch.cancelled():
            return
        exc = dispatch.exception()
        if exc is not None:
            log.error("Dispatch for task %s crashed", task_id, exc_info=exc)

    async def _run_task(self, task: TaskRow) -> None:
        try:
            if task["mode"] == "print":
                await self._run_print(task)
            else:
                await self._run_session(task)
        except (ExecutionFailure, TerminalError) as exc:
            self.handle_task_failure(task["id"], str(exc))
        except OSError as exc:
            # tmux missing or unusable
            self.handle_task_failure(task["id"], f"Session launch failed: {exc}")

    def _task_env(self, task: TaskRow) -> dict[str, str]:
        env = get_environment_variables(self._conn, task["environment_id"])
        if task["use_worktree"]:
            env[WORKTREE_ENV_VAR] = "1"
        return env

    async def _run_print(self, task: TaskRow) -> None:
        task_id = task["id"]
        cwd = project_path(self._settings.projects_base_path, task["project"])
        proc = await spawn_print_process(
            self._settings.agent_command, task["prompt"], cwd, self._task_env(task)
        )
        self._processes[task_id] = proc
        try:
            await wait_print_process(proc)
        except ExecutionFailure:
            if self._processes.get(task_id) is not proc:
                log.info("Ignoring exit of stopped task %s", task_id)
                return
            raise
        if self._processes.get(task_id) is not proc:
            return
        self._teardown(task_id, kill=False)
        self._complete(task_id)

    async def _pick_session_name(self, project: str) -> str:
        in_use = self._capacity.sessions()
        for _ in range(SESSION_NAME_ATTEMPTS):
            session_name = generate_session_name(project, self._rng)
            if session_name in in_use:
                continue
            if await self._terminal_provider.session_exists(session_name):
                continue
            return session_name
        raise TerminalError(
            f"No free session name for project {project} after {SESSION_NAME_ATTEMPTS} attempts"
        )

    async def _run_session(self, task: TaskRow) -> None:
        task_id = task["id"]
        session_name = await self._pick_session_name(task["project"])
        # A previous session with this name may have left an "idle" report behind.
        self._status_channel.clear(session_name)
        link_task_session(self._conn, task_id, session_name)
        self._capacity.register(
            session_name,
            task["project"],
            {"task_id": task_id, "mode": task["mode"], "use_worktree": task["use_worktree"]},
        )
        self._sessions[task_id] = session_name

        cwd = project_path(self._settings.projects_base_path, task["project"])
        terminal = await self._terminal_provider.create(str(cwd), session_name, self._task_env(task))
        if self._sessions.get(task_id) != session_name:
            # Stopped while the session was being created.
            terminal.kill()
            return
        self._terminals[task_id] = terminal

        ready = asyncio.Event()
        terminal.on_ready(ready.set)
        await ready.wait()
        await asyncio.sleep(self._settings.settle_delay)
        if self._terminals.get(task_id) is not terminal:
            return
        await terminal.write(
            build_session_command(self._settings.agent_command, task["prompt"], task["mode"])
        )

        monitor = SessionMonitor(
            task_id,
            session_name,
            task["mode"],
            terminals=self._terminal_provider,
            status_channel=self._status_channel,
            interval=self._settings.session_check_interval,
            on_idle=self._on_session_idle,
            on_lost=self._on_session_lost,
        )
        self._monitors[task_id] = monitor
        monitor.start()
        log.info("Task %s running in session %s", task_id, session_name)

    # -- outcomes --

    def _complete(self, task_id: str) -> None:
        current = get_task(self._conn, task_id)
        if current is None or current["status"] != "running":
            return
        task = update_task_status(self._conn, task_id, "completed", event="completed")
        if task is not None:
            log.info("Task %s completed", task_id)
            self._emit(task_event(TASK_UPDATED, task))

    def _on_session_idle(self, task_id: str) -> None:
        # The session stays open for inspection but stops counting against capacity.
        self._teardown(task_id, kill=False)
        self._complete(task_id)

    def _on_session_lost(self, task_id: str) -> None:
        self._teardown(task_id, kill=False)
        current = get_task(self._conn, task_id)
        if current is not None and current["status"] == "running":
            self.handle_task_failure(task_id, SESSION_LOST_ERROR)

    def _teardown(self, task_id: str, *, kill: bool = True) -> None:
        """Drop every handle tracked for *task_id*, killing live ones if asked."""
        proc = self._processes.pop(task_id, None)
        if proc is not None and kill and proc.returncode is None:
            with contextlib.suppress(ProcessLookupError):
                proc.kill()

        monitor = self._monitors.pop(task_id, None)
        if monitor is not None:
            monitor.stop()

        terminal = self._terminals.pop(task_id, None)
        if terminal is not None and kill:
            terminal.kill()

        session_name = self._sessions.pop(task_id, None)
        if session_name is not None:
            self._capacity.unregister(session_name)

        dispatch = self._dispatches.pop(task_id, None)
        if dispatch is not None and not dispatch.done() and dispatch is not asyncio.current_task():
            dispatch.cancel()

    # -- failure gate --

    def handle_task_failure(self, task_id: str, error: str) -> None:
        log.error("Task %s failed: %s", task_id, error)
        increment_task_retry(self._conn, task_id)
        task = update_task_status(self._conn, task_id, "failed", error=error, event="failed")
        self._teardown(task_id)
        if task is None:
            return
        if self._awaiting_decision is None:
            self._awaiting_decision = task_id
            dependents = list_dependent_tasks(self._conn, task_id)
            self._emit(
                task_failed_event(task, awaiting_decision=True, dependent_count=len(dependents))
            )
        else:
            log.warning(
                "Task %s failed while %s awaits a decision", task_id, self._awaiting_decision
            )
            self._emit(task_failed_event(task, awaiting_decision=False))

    def retry_task(self, task_id: str) -> TaskRow | None:
        if self._awaiting_decision != task_id:
            log.warning(
                "Retry of %s ignored: awaiting decision on %s", task_id, self._awaiting_decision
            )
            return None
        self._awaiting_decision = None
        task = reset_task_for_retry(self._conn, task_id)
        if task is not None:
            log.info("Task %s queued for retry (attempt %d)", task_id, task["retry_count"] + 1)
            self._emit(task_event(TASK_UPDATED, task))
        return task

    def skip_task(self, task_id: str) -> list[str]:
        if self._awaiting_decision != task_id:
            log.warning(
                "Skip of %s ignored: awaiting decision on %s", task_id, self._awaiting_decision
            )
            return []
        self._awaiting_decision = None
        skipped = propagate_skip(self._conn, task_id)
        for skipped_id in skipped:
            self._teardown(skipped_id)
        self._emit_skips(skipped)
        return skipped

    # -- global controls --

    def stop_all_tasks(self) -> dict[str, list[str]]:
        """Kill everything running, pause it and everything queued."""
        self._awaiting_decision = None
        live = (
            set(self._processes)
            | set(self._terminals)
            | set(self._monitors)
            | set(self._sessions)
            | set(self._dispatches)
        )
        stopped: list[str] = []
        for task_id in sorted(live):
            self._teardown(task_id)
            current = get_task(self._conn, task_id)
            if current is not None and current["status"] == "running":
                update_task_status(self._conn, task_id, "paused", event="stopped")
                stopped.append(task_id)
        paused = pause_all_tasks(self._conn)
        log.info("Stopped %d running task(s), paused %d queued", len(stopped), len(paused))
        self._emit(queue_event(QUEUE_PAUSED, stopped=stopped, paused=paused))
        return {"stopped": stopped, "paused": paused}

    def pause_queue(self) -> None:
        self._paused = True
        log.info("Queue paused")
        self._emit(queue_event(QUEUE_PAUSED))

    def unpause_queue(self) -> None:
        self._paused = False
        log.info("Queue unpaused")
        self._emit(queue_event(QUEUE_RESUMED))

    def resume_queue(self) -> list[str]:
        """Return paused tasks to ``pending``. Also empties the failure gate."""
        if self._awaiting_decision is not None:
            log.warning(
                "Resume clears failure gate for %s without a retry/skip decision",
                self._awaiting_decision,
            )
        self._awaiting_decision = None
        resumed = resume_all_tasks(self._conn)
        log.info("Queue resumed (%d task(s) back to pending)", len(resumed))
        self._emit(queue_event(QUEUE_RESUMED, resumed=resumed))
        self._emit(
            tasks_list_event(list_tasks(self._conn), paused=self._paused, awaiting_decision=None)
        )
        return resumed
