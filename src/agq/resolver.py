"""Dependency resolution: promote pending tasks and cascade skips."""

from __future__ import annotations

import logging
import sqlite3
from dataclasses import dataclass, field

from agq.db import get_task, list_dependent_tasks, list_tasks, update_task_status

log = logging.getLogger(__name__)

# A task may be skipped directly from these statuses...
_SKIPPABLE_ROOT_STATUSES = {"pending", "ready", "failed"}
# ...but cascaded skips only reach tasks that have not started.
_SKIPPABLE_DEPENDENT_STATUSES = {"pending", "ready"}
_BLOCKING_DEPENDENCY_STATUSES = {"failed", "skipped"}


@dataclass
class ResolveResult:
    promoted: list[str] = field(default_factory=list)
    # One entry per cascade: the ids skipped together, root first.
    skipped: list[list[str]] = field(default_factory=list)


def propagate_skip(conn: sqlite3.Connection, task_id: str) -> list[str]:
    """Skip *task_id* and, breadth-first, every not-yet-started dependent.

    Returns the ids moved to ``skipped`` (root first, each id once).
    Calling it again for the same root returns an empty list.
    """
    skipped: list[str] = []
    root = get_task(conn, task_id)
    if root is None:
        return skipped
    if root["status"] in _SKIPPABLE_ROOT_STATUSES:
        update_task_status(conn, task_id, "skipped", event="skipped")
        skipped.append(task_id)

    to_process = [task_id]
    visited = {task_id}
    while to_process:
        current_id = to_process.pop(0)
        for dependent in list_dependent_tasks(conn, current_id):
            dependent_id = dependent["id"]
            if dependent_id in visited:
                continue
            visited.add(dependent_id)
            if dependent["status"] not in _SKIPPABLE_DEPENDENT_STATUSES:
                continue
            update_task_status(
                conn,
                dependent_id,
                "skipped",
                event="skipped",
                details={"cause": current_id},
            )
            skipped.append(dependent_id)
            to_process.append(dependent_id)

    if skipped:
        log.info("Skipped %d task(s) starting at %s: %s", len(skipped), task_id, skipped)
    return skipped


def resolve_pending_tasks(conn: sqlite3.Connection) -> ResolveResult:
    """One pass over ``pending`` tasks in position order.

    A failed or skipped dependency wins over completed ones: the task is
    skip-propagated instead of promoted. Dependency ids that no longer
    exist keep the task pending.
    """
    result = ResolveResult()
    for candidate in list_tasks(conn, status="pending"):
        # Earlier cascades in this pass may already have moved it.
        task = get_task(conn, candidate["id"])
        if task is None or task["status"] != "pending":
            continue

        dep_statuses: dict[str, str | None] = {}
        for dep_id in task["depends_on"]:
            dep = get_task(conn, dep_id)
            dep_statuses[dep_id] = dep["status"] if dep else None

        if any(status in _BLOCKING_DEPENDENCY_STATUSES for status in dep_statuses.values()):
            skipped = propagate_skip(conn, task["id"])
            if skipped:
                result.skipped.append(skipped)
            continue

        missing = [dep_id for dep_id, status in dep_statuses.items() if status is None]
        if missing:
            log.warning("Task %s depends on missing task(s) %s; leaving pending", task["id"], missing)
            continue

        if all(status == "completed" for status in dep_statuses.values()):
            update_task_status(conn, task["id"], "ready", event="dependencies_met")
            result.promoted.append(task["id"])

    return result
