"""JSON stdin/stdout dispatch layer for dashboards and other non-CLI consumers.

Protocol:
    stdin:  {"method": "task.show", "params": {"id": "task_ab12cd34"}}
    stdout: {"ok": true, "data": {...}}
    stdout: {"ok": false, "error": "Not found", "code": "NOT_FOUND"}

Always exits 0. Always returns JSON on stdout.
Store operations run here directly; queue controls (pause, stop, retry,
skip, ...) are forwarded to the executor daemon.
Entry point: ``agq-api`` console script (pyproject.toml).
"""

from __future__ import annotations

import json
import sqlite3
import sys
from collections.abc import Callable
from pathlib import Path
from typing import Any

from agq.config import load_settings
from agq.daemon_client import DaemonError, call_daemon
from agq.db import (
    VALID_TASK_STATUSES,
    TemplateRow,
    ValidationError,
    cleanup_finished_tasks,
    cleanup_old_history,
    connect,
    create_environment,
    create_task,
    create_tasks_batch,
    create_template,
    delete_environment,
    delete_task,
    delete_template,
    get_task,
    get_template,
    get_template_by_name,
    instantiate_template,
    list_environments,
    list_task_history,
    list_tasks,
    list_templates,
    reorder_task,
)
from agq.events import (
    TASK_CREATED,
    TASK_UPDATED,
    RedisNotifier,
    task_event,
    task_removed_event,
)

# ---------------------------------------------------------------------------
# Error codes
# ---------------------------------------------------------------------------

NOT_FOUND = "NOT_FOUND"
INVALID_PARAMS = "INVALID_PARAMS"
INVALID_METHOD = "INVALID_METHOD"
CONFLICT = "CONFLICT"
DAEMON_UNAVAILABLE = "DAEMON_UNAVAILABLE"
INTERNAL = "INTERNAL"


class ApiError(Exception):
    """Raised by handlers to produce a structured error response."""

    def __init__(self, message: str, code: str = INTERNAL):
        super().__init__(message)
        self.code = code


def _require(params: dict, key: str) -> str:
    """Extract a required string param, raising ApiError if missing."""
    val = params.get(key)
    if not val:
        raise ApiError(f"Missing required param: {key}", INVALID_PARAMS)
    return str(val)


def _optional(params: dict, key: str) -> str | None:
    val = params.get(key)
    return str(val) if val is not None else None


def _optional_int(params: dict, key: str) -> int | None:
    val = params.get(key)
    if val is None:
        return None
    try:
        return int(val)
    except (TypeError, ValueError):
        raise ApiError(f"Param {key} must be an integer", INVALID_PARAMS) from None


def _publish(event: dict) -> None:
    RedisNotifier().send(event)


def _daemon_call(method: str, params: dict | None = None) -> Any:
    try:
        return call_daemon(method, params)
    except DaemonError as exc:
        raise ApiError(str(exc), exc.code) from exc
    except OSError as exc:
        raise ApiError(f"Executor daemon is not running ({exc})", DAEMON_UNAVAILABLE) from exc


# ---------------------------------------------------------------------------
# Tasks
# ---------------------------------------------------------------------------


def _handle_task_create(conn: sqlite3.Connection, params: dict) -> Any:
    task = create_task(
        conn,
        name=_require(params, "name"),
        prompt=_require(params, "prompt"),
        project=_require(params, "project"),
        mode=_optional(params, "mode"),
        depends_on=params.get("depends_on") or [],
        use_worktree=bool(params.get("use_worktree", False)),
        environment_id=_optional(params, "environment_id"),
        position=_optional_int(params, "position"),
    )
    _publish(task_event(TASK_CREATED, task))
    return task


def _handle_task_create_batch(conn: sqlite3.Connection, params: dict) -> Any:
    inputs = params.get("tasks")
    if not isinstance(inputs, list) or not inputs:
        raise ApiError("Param tasks must be a non-empty list", INVALID_PARAMS)
    tasks = create_tasks_batch(conn, inputs)
    for task in tasks:
        _publish(task_event(TASK_CREATED, task))
    return tasks


def _handle_task_show(conn: sqlite3.Connection, params: dict) -> Any:
    task_id = _require(params, "id")
    task = get_task(conn, task_id)
    if not task:
        raise ApiError(f"Task not found: {task_id}", NOT_FOUND)
    return task


def _handle_task_list(conn: sqlite3.Connection, params: dict) -> Any:
    status = _optional(params, "status")
    if status and status not in VALID_TASK_STATUSES:
        raise ApiError(f"Invalid status: {status}", INVALID_PARAMS)
    return list_tasks(conn, status=status, project=_optional(params, "project"))


def _handle_task_delete(conn: sqlite3.Connection, params: dict) -> Any:
    task_id = _require(params, "id")
    try:
        deleted = delete_task(conn, task_id)
    except ValidationError as exc:
        raise ApiError(str(exc), CONFLICT) from exc
    if not deleted:
        raise ApiError(f"Task not found: {task_id}", NOT_FOUND)
    _publish(task_removed_event(task_id))
    return {"id": task_id, "deleted": True}


def _handle_task_reorder(conn: sqlite3.Connection, params: dict) -> Any:
    task_id = _require(params, "id")
    position = _optional_int(params, "position")
    if position is None:
        raise ApiError("Missing required param: position", INVALID_PARAMS)
    task = reorder_task(conn, task_id, position)
    if not task:
        raise ApiError(f"Task not found: {task_id}", NOT_FOUND)
    _publish(task_event(TASK_UPDATED, task))
    return task


def _handle_task_history(conn: sqlite3.Connection, params: dict) -> Any:
    task_id = _require(params, "id")
    return list_task_history(conn, task_id)


def _handle_task_retry(conn: sqlite3.Connection, params: dict) -> Any:
    return _daemon_call("task.retry", {"id": _require(params, "id")})


def _handle_task_skip(conn: sqlite3.Connection, params: dict) -> Any:
    return _daemon_call("task.skip", {"id": _require(params, "id")})


# ---------------------------------------------------------------------------
# Queue
# ---------------------------------------------------------------------------


def _status_counts(conn: sqlite3.Connection) -> dict[str, int]:
    rows = conn.execute("SELECT status, COUNT(*) AS n FROM tasks GROUP BY status").fetchall()
    return {row["status"]: row["n"] for row in rows}


def _handle_queue_status(conn: sqlite3.Connection, params: dict) -> Any:
    data: dict[str, Any] = {"counts": _status_counts(conn)}
    try:
        data["executor"] = _daemon_call("queue.status")
        data["daemon_running"] = True
    except ApiError as exc:
        if exc.code != DAEMON_UNAVAILABLE:
            raise
        data["executor"] = None
        data["daemon_running"] = False
    return data


def _forward(method: str) -> Callable[[sqlite3.Connection, dict], Any]:
    def handler(conn: sqlite3.Connection, params: dict) -> Any:
        return _daemon_call(method)

    return handler


def _handle_queue_cleanup(conn: sqlite3.Connection, params: dict) -> Any:
    max_age_days = _optional_int(params, "max_age_days")
    if max_age_days is None:
        max_age_days = load_settings().history_max_age_days
    removed_tasks = cleanup_finished_tasks(conn)
    for task_id in removed_tasks:
        _publish(task_removed_event(task_id))
    return {
        "removed_tasks": removed_tasks,
        "removed_history": cleanup_old_history(conn, max_age_days),
    }


# ---------------------------------------------------------------------------
# Templates
# ---------------------------------------------------------------------------


def _resolve_template(conn: sqlite3.Connection, params: dict) -> TemplateRow:
    ref = _require(params, "id")
    template = get_template(conn, ref) or get_template_by_name(conn, ref)
    if not template:
        raise ApiError(f"Template not found: {ref}", NOT_FOUND)
    return template


def _handle_template_create(conn: sqlite3.Connection, params: dict) -> Any:
    return create_template(
        conn,
        name=_require(params, "name"),
        steps=params.get("steps") or [],
        description=_optional(params, "description"),
        variables=params.get("variables"),
    )


def _handle_template_list(conn: sqlite3.Connection, params: dict) -> Any:
    return list_templates(conn)


def _handle_template_show(conn: sqlite3.Connection, params: dict) -> Any:
    return _resolve_template(conn, params)


def _handle_template_delete(conn: sqlite3.Connection, params: dict) -> Any:
    template = _resolve_template(conn, params)
    delete_template(conn, template["id"])
    return {"id": template["id"], "deleted": True}


def _handle_template_instantiate(conn: sqlite3.Connection, params: dict) -> Any:
    template = _resolve_template(conn, params)
    variables = params.get("variables") or {}
    if not isinstance(variables, dict):
        raise ApiError("Param variables must be an object", INVALID_PARAMS)
    tasks = instantiate_template(conn, template["id"], _require(params, "project"), variables)
    for task in tasks:
        _publish(task_event(TASK_CREATED, task))
    return tasks


# ---------------------------------------------------------------------------
# Environments
# ---------------------------------------------------------------------------


def _handle_env_create(conn: sqlite3.Connection, params: dict) -> Any:
    variables = params.get("variables") or {}
    if not isinstance(variables, dict):
        raise ApiError("Param variables must be an object", INVALID_PARAMS)
    return create_environment(
        conn,
        name=_require(params, "name"),
        variables=variables,
        provider=_optional(params, "provider") or "local",
        is_default=bool(params.get("is_default", False)),
    )


def _handle_env_list(conn: sqlite3.Connection, params: dict) -> Any:
    return list_environments(conn)


def _handle_env_delete(conn: sqlite3.Connection, params: dict) -> Any:
    env_id = _require(params, "id")
    if not delete_environment(conn, env_id):
        raise ApiError(f"Environment not found: {env_id}", NOT_FOUND)
    return {"id": env_id, "deleted": True}


# ---------------------------------------------------------------------------
# Registry + entry point
# ---------------------------------------------------------------------------

METHODS: dict[str, Callable[[sqlite3.Connection, dict], Any]] = {
    # tasks
    "task.create": _handle_task_create,
    "task.create_batch": _handle_task_create_batch,
    "task.show": _handle_task_show,
    "task.list": _handle_task_list,
    "task.delete": _handle_task_delete,
    "task.reorder": _handle_task_reorder,
    "task.history": _handle_task_history,
    "task.retry": _handle_task_retry,
    "task.skip": _handle_task_skip,
    # queue
    "queue.status": _handle_queue_status,
    "queue.stop": _forward("queue.stop"),
    "queue.pause": _forward("queue.pause"),
    "queue.unpause": _forward("queue.unpause"),
    "queue.resume": _forward("queue.resume"),
    "queue.cleanup": _handle_queue_cleanup,
    # templates
    "template.create": _handle_template_create,
    "template.list": _handle_template_list,
    "template.show": _handle_template_show,
    "template.delete": _handle_template_delete,
    "template.instantiate": _handle_template_instantiate,
    # environments
    "env.create": _handle_env_create,
    "env.list": _handle_env_list,
    "env.delete": _handle_env_delete,
}


def dispatch(request: dict, *, db_path: Path | None = None) -> dict:
    """Process a single API request and return the response dict.

    Args:
        request: ``{"method": "...", "params": {...}}``
        db_path: Override the default database path. When ``None``,
            uses ``DEFAULT_DB_PATH`` (``~/.config/agq/agq.db`` or
            ``AGQ_DB_PATH`` env var).
    """
    method = request.get("method")
    if not method or not isinstance(method, str):
        return {"ok": False, "error": "Missing or invalid 'method'", "code": INVALID_METHOD}

    handler = METHODS.get(method)
    if not handler:
        return {"ok": False, "error": f"Unknown method: {method}", "code": INVALID_METHOD}

    params = request.get("params") or {}

    try:
        with connect(db_path) if db_path else connect() as conn:
            data = handler(conn, params)
        return {"ok": True, "data": data}
    except ApiError as exc:
        return {"ok": False, "error": str(exc), "code": exc.code}
    except ValidationError as exc:
        return {"ok": False, "error": str(exc), "code": INVALID_PARAMS}
    except Exception as exc:
        return {"ok": False, "error": str(exc), "code": INTERNAL}


def main() -> None:
    """Read JSON request from stdin, dispatch, write JSON response to stdout."""
    try:
        raw = sys.stdin.read()
        if not raw.strip():
            response = {"ok": False, "error": "Empty request", "code": INVALID_PARAMS}
        else:
            request = json.loads(raw)
            response = dispatch(request)
    except json.JSONDecodeError as exc:
        response = {"ok": False, "error": f"Invalid JSON: {exc}", "code": INVALID_PARAMS}
    except Exception as exc:
        response = {"ok": False, "error": str(exc), "code": INTERNAL}

    sys.stdout.write(json.dumps(response, default=str))
    sys.stdout.write("\n")
    sys.stdout.flush()


if __name__ == "__main__":
    main()
