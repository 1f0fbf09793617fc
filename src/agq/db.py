"""SQLite store for agq tasks, templates, history and environments."""

from __future__ import annotations

import contextlib
import json
import logging
import re
import sqlite3
import uuid
from collections.abc import Iterator, Mapping, Sequence
from pathlib import Path
from typing import Any, TypedDict, cast

from agq.paths import DEFAULT_DB_PATH

log = logging.getLogger(__name__)

VALID_TASK_STATUSES = {
    "pending",
    "ready",
    "running",
    "completed",
    "failed",
    "skipped",
    "paused",
}
TASK_TERMINAL_STATUSES = {"completed", "failed", "skipped"}
TASK_DELETABLE_STATUSES = {"pending", "ready", "paused"}
VALID_TASK_MODES = {"print", "interactive", "trust"}
DEFAULT_TASK_MODE = "interactive"


class ValidationError(ValueError):
    """Malformed create/update request. Raised before any row is written."""


# Bump when adding migrations. 0 = fresh database.
SCHEMA_VERSION = 1

SCHEMA = """\
CREATE TABLE IF NOT EXISTS tasks (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    prompt TEXT NOT NULL,
    project TEXT NOT NULL,
    mode TEXT NOT NULL DEFAULT 'interactive',
    status TEXT NOT NULL DEFAULT 'pending',
    position INTEGER NOT NULL,
    depends_on TEXT NOT NULL DEFAULT '[]',
    session_name TEXT,
    use_worktree INTEGER NOT NULL DEFAULT 0,
    environment_id TEXT,
    error TEXT,
    retry_count INTEGER NOT NULL DEFAULT 0,
    started_at TEXT,
    completed_at TEXT,
    created_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%SZ', 'now')),
    updated_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%SZ', 'now'))
);

CREATE TABLE IF NOT EXISTS task_templates (
    id TEXT PRIMARY KEY,
    name TEXT UNIQUE NOT NULL,
    description TEXT,
    steps TEXT NOT NULL,
    variables TEXT NOT NULL DEFAULT '{}',
    created_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%SZ', 'now')),
    updated_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%SZ', 'now'))
);

CREATE TABLE IF NOT EXISTS task_history (
    id TEXT PRIMARY KEY,
    task_id TEXT NOT NULL,
    status TEXT NOT NULL,
    event TEXT NOT NULL,
    details TEXT,
    created_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%SZ', 'now'))
);

CREATE TABLE IF NOT EXISTS environments (
    id TEXT PRIMARY KEY,
    name TEXT UNIQUE NOT NULL,
    provider TEXT NOT NULL DEFAULT 'local',
    variables TEXT NOT NULL DEFAULT '{}',
    is_default INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%SZ', 'now')),
    updated_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%SZ', 'now'))
);
"""

INDEXES = """\
CREATE INDEX IF NOT EXISTS idx_tasks_status ON tasks(status);
CREATE INDEX IF NOT EXISTS idx_tasks_position ON tasks(position);
CREATE INDEX IF NOT EXISTS idx_task_history_task ON task_history(task_id, created_at);
CREATE INDEX IF NOT EXISTS idx_environments_default ON environments(is_default);
"""

_NOW = "strftime('%Y-%m-%dT%H:%M:%SZ', 'now')"


class TaskRow(TypedDict):
    id: str
    name: str
    prompt: str
    project: str
    mode: str
    status: str
    position: int
    depends_on: list[str]
    session_name: str | None
    use_worktree: bool
    environment_id: str | None
    error: str | None
    retry_count: int
    started_at: str | None
    completed_at: str | None
    created_at: str
    updated_at: str


class TemplateStep(TypedDict, total=False):
    name: str
    prompt: str
    mode: str
    depends_on_step: int | None
    use_worktree: bool


class TemplateRow(TypedDict):
    id: str
    name: str
    description: str | None
    steps: list[TemplateStep]
    variables: dict[str, str | None]
    created_at: str
    updated_at: str


class TaskHistoryRow(TypedDict):
    id: str
    task_id: str
    status: str
    event: str
    details: dict[str, Any] | None
    created_at: str


class EnvironmentRow(TypedDict):
    id: str
    name: str
    provider: str
    variables: dict[str, str]
    is_default: bool
    created_at: str
    updated_at: str


# -- connection --


def get_connection(db_path: Path = DEFAULT_DB_PATH) -> sqlite3.Connection:
    db_path.parent.mkdir(parents=True, exist_ok=True, mode=0o700)
    conn = sqlite3.connect(str(db_path))
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA foreign_keys=ON")
    conn.execute("PRAGMA busy_timeout=10000")
    conn.executescript(SCHEMA)

    current_version = conn.execute("PRAGMA user_version").fetchone()[0]
    if current_version < SCHEMA_VERSION:
        conn.executescript(INDEXES)
        conn.execute(f"PRAGMA user_version = {SCHEMA_VERSION}")
        conn.commit()
    return conn


@contextlib.contextmanager
def connect(db_path: Path = DEFAULT_DB_PATH):
    """Context manager wrapper for get_connection().

    Usage:
        with connect() as conn:
            do_stuff(conn)
    # conn.close() is guaranteed even on exceptions.
    """
    conn = get_connection(db_path)
    try:
        yield conn
    finally:
        conn.close()


@contextlib.contextmanager
def _immediate(conn: sqlite3.Connection) -> Iterator[None]:
    """Run a block under ``BEGIN IMMEDIATE``; commit on success, roll back on error.

    Position re-indexing goes through here so other connections never see
    a half-shifted ordering. The caller must not hold an open transaction.
    """
    if conn.in_transaction:
        raise RuntimeError("Connection already has an open transaction; commit or roll back first")
    conn.execute("BEGIN IMMEDIATE")
    try:
        yield
    except BaseException:
        conn.rollback()
        raise
    conn.commit()


def _new_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex[:8]}"


def _task_from_row(row: sqlite3.Row) -> TaskRow:
    data = dict(row)
    data["depends_on"] = json.loads(data["depends_on"] or "[]")
    data["use_worktree"] = bool(data["use_worktree"])
    return cast(TaskRow, data)


# -- history --


def _insert_history(
    conn: sqlite3.Connection,
    task_id: str,
    status: str,
    event: str,
    details: Mapping[str, Any] | None = None,
) -> None:
    conn.execute(
        "INSERT INTO task_history (id, task_id, status, event, details) VALUES (?, ?, ?, ?, ?)",
        (
            uuid.uuid4().hex[:12],
            task_id,
            status,
            event,
            json.dumps(dict(details)) if details else None,
        ),
    )


def record_task_history(
    conn: sqlite3.Connection,
    task_id: str,
    status: str,
    event: str,
    details: Mapping[str, Any] | None = None,
) -> None:
    _insert_history(conn, task_id, status, event, details)
    conn.commit()


def list_task_history(conn: sqlite3.Connection, task_id: str) -> list[TaskHistoryRow]:
    rows = conn.execute(
        "SELECT * FROM task_history WHERE task_id = ? ORDER BY created_at, rowid",
        (task_id,),
    ).fetchall()
    result: list[TaskHistoryRow] = []
    for row in rows:
        data = dict(row)
        data["details"] = json.loads(data["details"]) if data["details"] else None
        result.append(cast(TaskHistoryRow, data))
    return result


def cleanup_old_history(conn: sqlite3.Connection, max_age_days: int) -> int:
    """Delete history rows older than *max_age_days*. Returns rows removed."""
    cursor = conn.execute(
        "DELETE FROM task_history "
        "WHERE created_at < strftime('%Y-%m-%dT%H:%M:%SZ', 'now', ?)",
        (f"-{int(max_age_days)} days",),
    )
    conn.commit()
    return cursor.rowcount


# -- tasks: reads --


def get_task(conn: sqlite3.Connection, task_id: str) -> TaskRow | None:
    row = conn.execute("SELECT * FROM tasks WHERE id = ?", (task_id,)).fetchone()
    return _task_from_row(row) if row else None


def list_tasks(
    conn: sqlite3.Connection,
    status: str | None = None,
    project: str | None = None,
) -> list[TaskRow]:
    query = "SELECT * FROM tasks"
    conditions: list[str] = []
    params: list[str] = []
    if status:
        conditions.append("status = ?")
        params.append(status)
    if project:
        conditions.append("project = ?")
        params.append(project)
    if conditions:
        query += " WHERE " + " AND ".join(conditions)
    query += " ORDER BY position"
    return [_task_from_row(row) for row in conn.execute(query, params).fetchall()]


def list_tasks_by_status(conn: sqlite3.Connection, status: str) -> list[TaskRow]:
    if status not in VALID_TASK_STATUSES:
        raise ValueError(f"Invalid task status '{status}'. Must be one of: {VALID_TASK_STATUSES}")
    return list_tasks(conn, status=status)


def get_next_ready_task(conn: sqlite3.Connection) -> TaskRow | None:
    """Lowest-position ``ready`` task, or None."""
    row = conn.execute(
        "SELECT * FROM tasks WHERE status = 'ready' ORDER BY position LIMIT 1"
    ).fetchone()
    return _task_from_row(row) if row else None


def list_dependent_tasks(conn: sqlite3.Connection, task_id: str) -> list[TaskRow]:
    """Tasks whose ``depends_on`` names *task_id*, in position order."""
    rows = conn.execute(
        "SELECT * FROM tasks WHERE EXISTS "
        "(SELECT 1 FROM json_each(tasks.depends_on) WHERE json_each.value = ?) "
        "ORDER BY position",
        (task_id,),
    ).fetchall()
    return [_task_from_row(row) for row in rows]


def _count_tasks(conn: sqlite3.Connection) -> int:
    return conn.execute("SELECT COUNT(*) FROM tasks").fetchone()[0]


def _reindex_positions(conn: sqlite3.Connection) -> None:
    rows = conn.execute("SELECT id FROM tasks ORDER BY position, created_at").fetchall()
    for index, row in enumerate(rows):
        conn.execute("UPDATE tasks SET position = ? WHERE id = ?", (index, row["id"]))


# -- tasks: create --


def _required_text(data: Mapping[str, Any], key: str) -> str:
    value = data.get(key)
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(f"Missing required field: {key}")
    return value


def _validate_task_input(data: Mapping[str, Any]) -> dict[str, Any]:
    """Normalize one create request. Dependency existence is checked later."""
    mode = data.get("mode") or DEFAULT_TASK_MODE
    if mode not in VALID_TASK_MODES:
        raise ValidationError(f"Invalid mode '{mode}'. Must be one of: {sorted(VALID_TASK_MODES)}")
    raw_deps = data.get("depends_on") or []
    if isinstance(raw_deps, str) or not isinstance(raw_deps, Sequence):
        raise ValidationError("depends_on must be a list of task ids")
    depends_on: list[str] = []
    for dep in raw_deps:
        if not isinstance(dep, str) or not dep:
            raise ValidationError(f"Invalid dependency id: {dep!r}")
        if dep not in depends_on:
            depends_on.append(dep)
    return {
        "name": _required_text(data, "name"),
        "prompt": _required_text(data, "prompt"),
        "project": _required_text(data, "project"),
        "mode": mode,
        "depends_on": depends_on,
        "use_worktree": bool(data.get("use_worktree", False)),
        "environment_id": data.get("environment_id") or None,
    }


def _check_dependencies_exist(conn: sqlite3.Connection, depends_on: Sequence[str]) -> None:
    if not depends_on:
        return
    placeholders = ",".join("?" for _ in depends_on)
    found = {
        row["id"]
        for row in conn.execute(
            f"SELECT id FROM tasks WHERE id IN ({placeholders})", list(depends_on)
        ).fetchall()
    }
    missing = [dep for dep in depends_on if dep not in found]
    if missing:
        raise ValidationError(f"Unknown dependency task id(s): {', '.join(missing)}")


def _insert_task_row(
    conn: sqlite3.Connection, task_id: str, fields: Mapping[str, Any], position: int
) -> None:
    # No dependencies means the task is eligible immediately.
    status = "pending" if fields["depends_on"] else "ready"
    conn.execute(
        "INSERT INTO tasks (id, name, prompt, project, mode, status, position, depends_on, "
        "use_worktree, environment_id) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
        (
            task_id,
            fields["name"],
            fields["prompt"],
            fields["project"],
            fields["mode"],
            status,
            position,
            json.dumps(fields["depends_on"]),
            int(fields["use_worktree"]),
            fields["environment_id"],
        ),
    )
    _insert_history(conn, task_id, status, "created")


def create_task(
    conn: sqlite3.Connection,
    *,
    name: str,
    prompt: str,
    project: str,
    mode: str | None = None,
    depends_on: Sequence[str] | None = None,
    use_worktree: bool = False,
    environment_id: str | None = None,
    position: int | None = None,
) -> TaskRow:
    """Create a task, appending it or inserting it at *position* (clamped)."""
    fields = _validate_task_input(
        {
            "name": name,
            "prompt": prompt,
            "project": project,
            "mode": mode,
            "depends_on": depends_on,
            "use_worktree": use_worktree,
            "environment_id": environment_id,
        }
    )
    task_id = _new_id("task")
    with _immediate(conn):
        _check_dependencies_exist(conn, fields["depends_on"])
        count = _count_tasks(conn)
        if position is None or position >= count:
            target = count
        else:
            target = max(0, position)
            conn.execute(
                f"UPDATE tasks SET position = position + 1, updated_at = {_NOW} "
                "WHERE position >= ?",
                (target,),
            )
        _insert_task_row(conn, task_id, fields, target)
    task = get_task(conn, task_id)
    assert task is not None
    return task


def create_tasks_batch(
    conn: sqlite3.Connection, inputs: Sequence[Mapping[str, Any]]
) -> list[TaskRow]:
    """Insert all tasks in a single transaction with contiguous trailing positions.

    Each input takes the same keys as :func:`create_task` plus an optional
    ``depends_on_index`` list naming earlier members of the same batch.
    Every input is validated before anything is written; any failure
    leaves the store untouched.
    """
    if not inputs:
        raise ValidationError("Batch must contain at least one task")

    task_ids = [_new_id("task") for _ in inputs]
    prepared: list[dict[str, Any]] = []
    for index, data in enumerate(inputs):
        fields = _validate_task_input(data)
        existing_deps = list(fields["depends_on"])
        for dep_index in data.get("depends_on_index") or []:
            if not isinstance(dep_index, int) or not 0 <= dep_index < index:
                raise ValidationError(
                    f"Task {index}: depends_on_index {dep_index!r} must name an earlier batch entry"
                )
            dep_id = task_ids[dep_index]
            if dep_id not in fields["depends_on"]:
                fields["depends_on"].append(dep_id)
        fields["existing_deps"] = existing_deps
        prepared.append(fields)

    with _immediate(conn):
        for fields in prepared:
            _check_dependencies_exist(conn, fields["existing_deps"])
        base = _count_tasks(conn)
        for offset, (task_id, fields) in enumerate(zip(task_ids, prepared, strict=True)):
            _insert_task_row(conn, task_id, fields, base + offset)

    return [cast(TaskRow, get_task(conn, task_id)) for task_id in task_ids]


# -- tasks: transitions --


def update_task_status(
    conn: sqlite3.Connection,
    task_id: str,
    status: str,
    *,
    error: str | None = None,
    event: str | None = None,
    details: Mapping[str, Any] | None = None,
) -> TaskRow | None:
    """Set status and error, stamping started/completed times; records history.

    ``started_at`` is only set on the first transition into ``running``.
    ``completed_at`` is set on every terminal status.
    """
    if status not in VALID_TASK_STATUSES:
        raise ValueError(f"Invalid task status '{status}'. Must be one of: {VALID_TASK_STATUSES}")
    extra_clauses = ""
    if status == "running":
        extra_clauses += f", started_at = COALESCE(started_at, {_NOW})"
    if status in TASK_TERMINAL_STATUSES:
        extra_clauses += f", completed_at = {_NOW}"
    cursor = conn.execute(
        f"UPDATE tasks SET status = ?, error = ?, updated_at = {_NOW}{extra_clauses} "
        "WHERE id = ?",
        (status, error, task_id),
    )
    if cursor.rowcount == 0:
        conn.commit()
        return None
    history_details = dict(details or {})
    if error:
        history_details.setdefault("error", error)
    _insert_history(conn, task_id, status, event or status, history_details or None)
    conn.commit()
    return get_task(conn, task_id)


def link_task_session(conn: sqlite3.Connection, task_id: str, session_name: str) -> bool:
    cursor = conn.execute(
        f"UPDATE tasks SET session_name = ?, updated_at = {_NOW} WHERE id = ?",
        (session_name, task_id),
    )
    conn.commit()
    return cursor.rowcount > 0


def increment_task_retry(conn: sqlite3.Connection, task_id: str) -> bool:
    """Count one failure event: ``retry_count += 1`` and reset to ``ready``.

    Error and timestamps are cleared. The failure path overwrites the
    status with ``failed`` right after.
    """
    cursor = conn.execute(
        "UPDATE tasks SET retry_count = retry_count + 1, status = 'ready', error = NULL, "
        f"started_at = NULL, completed_at = NULL, updated_at = {_NOW} WHERE id = ?",
        (task_id,),
    )
    conn.commit()
    return cursor.rowcount > 0


def reset_task_for_retry(conn: sqlite3.Connection, task_id: str) -> TaskRow | None:
    """Move a failed task back to ``ready`` without touching ``retry_count``."""
    cursor = conn.execute(
        "UPDATE tasks SET status = 'ready', error = NULL, started_at = NULL, "
        f"completed_at = NULL, session_name = NULL, updated_at = {_NOW} WHERE id = ?",
        (task_id,),
    )
    if cursor.rowcount == 0:
        conn.commit()
        return None
    _insert_history(conn, task_id, "ready", "retried")
    conn.commit()
    return get_task(conn, task_id)


def reorder_task(conn: sqlite3.Connection, task_id: str, new_position: int) -> TaskRow | None:
    """Move a task to *new_position* (clamped), shifting the rows in between."""
    with _immediate(conn):
        row = conn.execute("SELECT position FROM tasks WHERE id = ?", (task_id,)).fetchone()
        if not row:
            return None
        old_position = row["position"]
        target = min(max(0, new_position), _count_tasks(conn) - 1)
        if target < old_position:
            conn.execute(
                "UPDATE tasks SET position = position + 1 WHERE position >= ? AND position < ?",
                (target, old_position),
            )
        elif target > old_position:
            conn.execute(
                "UPDATE tasks SET position = position - 1 WHERE position > ? AND position <= ?",
                (old_position, target),
            )
        conn.execute(
            f"UPDATE tasks SET position = ?, updated_at = {_NOW} WHERE id = ?",
            (target, task_id),
        )
    return get_task(conn, task_id)


def delete_task(conn: sqlite3.Connection, task_id: str) -> bool:
    """Delete a pending/ready/paused task and close the position gap.

    The id is also removed from every other task's ``depends_on``.
    Returns False when the task does not exist.
    """
    with _immediate(conn):
        row = conn.execute(
            "SELECT status, position FROM tasks WHERE id = ?", (task_id,)
        ).fetchone()
        if not row:
            return False
        if row["status"] not in TASK_DELETABLE_STATUSES:
            raise ValidationError(
                f"Task {task_id} is {row['status']}; only "
                f"{', '.join(sorted(TASK_DELETABLE_STATUSES))} tasks can be deleted"
            )
        conn.execute("DELETE FROM tasks WHERE id = ?", (task_id,))
        conn.execute(
            "UPDATE tasks SET position = position - 1 WHERE position > ?", (row["position"],)
        )
        for dependent in list_dependent_tasks(conn, task_id):
            remaining = [dep for dep in dependent["depends_on"] if dep != task_id]
            conn.execute(
                f"UPDATE tasks SET depends_on = ?, updated_at = {_NOW} WHERE id = ?",
                (json.dumps(remaining), dependent["id"]),
            )
    return True


def pause_all_tasks(conn: sqlite3.Connection) -> list[str]:
    """pending/ready -> paused. Returns the paused ids."""
    rows = conn.execute(
        "SELECT id FROM tasks WHERE status IN ('pending', 'ready') ORDER BY position"
    ).fetchall()
    ids = [row["id"] for row in rows]
    if ids:
        conn.execute(
            f"UPDATE tasks SET status = 'paused', updated_at = {_NOW} "
            "WHERE status IN ('pending', 'ready')"
        )
        for task_id in ids:
            _insert_history(conn, task_id, "paused", "paused")
    conn.commit()
    return ids


def resume_all_tasks(conn: sqlite3.Connection) -> list[str]:
    """paused -> pending, so resumed tasks go back through dependency resolution."""
    rows = conn.execute(
        "SELECT id FROM tasks WHERE status = 'paused' ORDER BY position"
    ).fetchall()
    ids = [row["id"] for row in rows]
    if ids:
        conn.execute(
            f"UPDATE tasks SET status = 'pending', updated_at = {_NOW} WHERE status = 'paused'"
        )
        for task_id in ids:
            _insert_history(conn, task_id, "pending", "resumed")
    conn.commit()
    return ids


def cleanup_finished_tasks(conn: sqlite3.Connection) -> list[str]:
    """Delete completed/failed/skipped tasks and re-index the rest.

    A finished task stays while an unfinished task still lists it in
    ``depends_on``; the resolver needs its status to promote or skip that
    dependent. Removed ids are stripped from the surviving rows.
    """
    with _immediate(conn):
        rows = conn.execute(
            "SELECT id FROM tasks AS done "
            "WHERE done.status IN ('completed', 'failed', 'skipped') "
            "AND NOT EXISTS ("
            "  SELECT 1 FROM tasks AS waiting, json_each(waiting.depends_on) "
            "  WHERE json_each.value = done.id "
            "  AND waiting.status NOT IN ('completed', 'failed', 'skipped'))"
        ).fetchall()
        ids = [row["id"] for row in rows]
        if ids:
            placeholders = ",".join("?" for _ in ids)
            conn.execute(f"DELETE FROM tasks WHERE id IN ({placeholders})", ids)
            removed = set(ids)
            for task_id in ids:
                for dependent in list_dependent_tasks(conn, task_id):
                    remaining = [dep for dep in dependent["depends_on"] if dep not in removed]
                    conn.execute(
                        "UPDATE tasks SET depends_on = ? WHERE id = ?",
                        (json.dumps(remaining), dependent["id"]),
                    )
            _reindex_positions(conn)
    return ids


# -- templates --


def _template_from_row(row: sqlite3.Row) -> TemplateRow:
    data = dict(row)
    data["steps"] = json.loads(data["steps"])
    data["variables"] = json.loads(data["variables"] or "{}")
    return cast(TemplateRow, data)


def _validate_steps(steps: Any) -> list[TemplateStep]:
    if not isinstance(steps, list) or not steps:
        raise ValidationError("Template must have at least one step")
    normalized: list[TemplateStep] = []
    for index, step in enumerate(steps):
        if not isinstance(step, Mapping):
            raise ValidationError(f"Step {index} must be an object")
        mode = step.get("mode") or DEFAULT_TASK_MODE
        if mode not in VALID_TASK_MODES:
            raise ValidationError(f"Step {index}: invalid mode '{mode}'")
        depends_on_step = step.get("depends_on_step")
        if depends_on_step is not None and (
            not isinstance(depends_on_step, int) or not 0 <= depends_on_step < index
        ):
            raise ValidationError(f"Step {index}: depends_on_step must name an earlier step")
        normalized.append(
            {
                "name": _required_text(step, "name"),
                "prompt": _required_text(step, "prompt"),
                "mode": mode,
                "depends_on_step": depends_on_step,
                "use_worktree": bool(step.get("use_worktree", False)),
            }
        )
    return normalized


def _validate_variables(variables: Any) -> dict[str, str | None]:
    if variables is None:
        return {}
    if isinstance(variables, list):
        variables = {name: None for name in variables}
    if not isinstance(variables, Mapping):
        raise ValidationError("variables must be a list of names or a name -> default map")
    return {str(k): (None if v is None else str(v)) for k, v in variables.items()}


def create_template(
    conn: sqlite3.Connection,
    *,
    name: str,
    steps: list[Mapping[str, Any]],
    description: str | None = None,
    variables: Mapping[str, str | None] | list[str] | None = None,
) -> TemplateRow:
    if not name or not name.strip():
        raise ValidationError("Missing required field: name")
    normalized_steps = _validate_steps(steps)
    normalized_vars = _validate_variables(variables)
    template_id = _new_id("tmpl")
    try:
        conn.execute(
            "INSERT INTO task_templates (id, name, description, steps, variables) "
            "VALUES (?, ?, ?, ?, ?)",
            (
                template_id,
                name,
                description,
                json.dumps(normalized_steps),
                json.dumps(normalized_vars),
            ),
        )
    except sqlite3.IntegrityError as exc:
        conn.rollback()
        raise ValidationError(f"Template '{name}' already exists") from exc
    conn.commit()
    return cast(TemplateRow, get_template(conn, template_id))


def get_template(conn: sqlite3.Connection, template_id: str) -> TemplateRow | None:
    row = conn.execute("SELECT * FROM task_templates WHERE id = ?", (template_id,)).fetchone()
    return _template_from_row(row) if row else None


def get_template_by_name(conn: sqlite3.Connection, name: str) -> TemplateRow | None:
    row = conn.execute("SELECT * FROM task_templates WHERE name = ?", (name,)).fetchone()
    return _template_from_row(row) if row else None


def list_templates(conn: sqlite3.Connection) -> list[TemplateRow]:
    rows = conn.execute("SELECT * FROM task_templates ORDER BY name").fetchall()
    return [_template_from_row(row) for row in rows]


def update_template(
    conn: sqlite3.Connection,
    template_id: str,
    *,
    name: str | None = None,
    description: str | None = None,
    steps: list[Mapping[str, Any]] | None = None,
    variables: Mapping[str, str | None] | list[str] | None = None,
) -> TemplateRow | None:
    sets: list[str] = []
    params: list[Any] = []
    if name is not None:
        sets.append("name = ?")
        params.append(name)
    if description is not None:
        sets.append("description = ?")
        params.append(description)
    if steps is not None:
        sets.append("steps = ?")
        params.append(json.dumps(_validate_steps(steps)))
    if variables is not None:
        sets.append("variables = ?")
        params.append(json.dumps(_validate_variables(variables)))
    if sets:
        try:
            conn.execute(
                f"UPDATE task_templates SET {', '.join(sets)}, updated_at = {_NOW} WHERE id = ?",
                (*params, template_id),
            )
        except sqlite3.IntegrityError as exc:
            conn.rollback()
            raise ValidationError(f"Template '{name}' already exists") from exc
        conn.commit()
    return get_template(conn, template_id)


def delete_template(conn: sqlite3.Connection, template_id: str) -> bool:
    cursor = conn.execute("DELETE FROM task_templates WHERE id = ?", (template_id,))
    conn.commit()
    return cursor.rowcount > 0


def _substitute(text: str, variables: Mapping[str, str]) -> str:
    for key, value in variables.items():
        text = re.sub(r"\{" + re.escape(key) + r"\}", lambda _m, v=value: v, text)
    return text


def instantiate_template(
    conn: sqlite3.Connection,
    template_id: str,
    project: str,
    variables: Mapping[str, str] | None = None,
) -> list[TaskRow]:
    """Create one task per template step, atomically.

    ``{var}`` placeholders in step prompts are replaced textually; declared
    defaults fill in variables the caller did not pass. A step depends on
    its ``depends_on_step`` if set, otherwise on the step right before it.
    """
    template = get_template(conn, template_id)
    if template is None:
        raise ValidationError(f"Template not found: {template_id}")
    merged = {k: v for k, v in template["variables"].items() if v is not None}
    merged.update({str(k): str(v) for k, v in (variables or {}).items()})

    inputs: list[dict[str, Any]] = []
    for index, step in enumerate(template["steps"]):
        depends_on_step = step.get("depends_on_step")
        if depends_on_step is not None:
            dep_indexes = [depends_on_step]
        elif index > 0:
            dep_indexes = [index - 1]
        else:
            dep_indexes = []
        inputs.append(
            {
                "name": step["name"],
                "prompt": _substitute(step["prompt"], merged),
                "project": project,
                "mode": step.get("mode") or DEFAULT_TASK_MODE,
                "use_worktree": step.get("use_worktree", False),
                "depends_on_index": dep_indexes,
            }
        )
    tasks = create_tasks_batch(conn, inputs)
    log.info("Instantiated template %s into %d tasks", template["name"], len(tasks))
    return tasks


# -- environments --


def _environment_from_row(row: sqlite3.Row) -> EnvironmentRow:
    data = dict(row)
    data["variables"] = json.loads(data["variables"] or "{}")
    data["is_default"] = bool(data["is_default"])
    return cast(EnvironmentRow, data)


def create_environment(
    conn: sqlite3.Connection,
    *,
    name: str,
    variables: Mapping[str, str],
    provider: str = "local",
    is_default: bool = False,
) -> EnvironmentRow:
    if not name or not name.strip():
        raise ValidationError("Missing required field: name")
    env_id = _new_id("env")
    try:
        if is_default:
            conn.execute("UPDATE environments SET is_default = 0 WHERE is_default = 1")
        conn.execute(
            "INSERT INTO environments (id, name, provider, variables, is_default) "
            "VALUES (?, ?, ?, ?, ?)",
            (
                env_id,
                name,
                provider,
                json.dumps({str(k): str(v) for k, v in variables.items()}),
                int(is_default),
            ),
        )
    except sqlite3.IntegrityError as exc:
        conn.rollback()
        raise ValidationError(f"Environment '{name}' already exists") from exc
    conn.commit()
    return cast(EnvironmentRow, get_environment(conn, env_id))


def get_environment(conn: sqlite3.Connection, environment_id: str) -> EnvironmentRow | None:
    row = conn.execute("SELECT * FROM environments WHERE id = ?", (environment_id,)).fetchone()
    return _environment_from_row(row) if row else None


def list_environments(conn: sqlite3.Connection) -> list[EnvironmentRow]:
    rows = conn.execute("SELECT * FROM environments ORDER BY name").fetchall()
    return [_environment_from_row(row) for row in rows]


def delete_environment(conn: sqlite3.Connection, environment_id: str) -> bool:
    cursor = conn.execute("DELETE FROM environments WHERE id = ?", (environment_id,))
    conn.commit()
    return cursor.rowcount > 0


def get_environment_variables(
    conn: sqlite3.Connection, environment_id: str | None
) -> dict[str, str]:
    """Variables for *environment_id*, or the default environment's when None."""
    if environment_id:
        env = get_environment(conn, environment_id)
        if env is None:
            log.warning("Environment %s not found, running without extra variables", environment_id)
            return {}
        return dict(env["variables"])
    row = conn.execute("SELECT * FROM environments WHERE is_default = 1 LIMIT 1").fetchone()
    return dict(_environment_from_row(row)["variables"]) if row else {}
