from __future__ import annotations

import difflib
import json
import logging
import os
from pathlib import Path
from typing import Any

import click

from agq import __version__
from agq.config import load_settings
from agq.daemon_client import DaemonError, call_daemon
from agq.db import (
    VALID_TASK_MODES,
    VALID_TASK_STATUSES,
    TemplateRow,
    ValidationError,
    cleanup_finished_tasks,
    cleanup_old_history,
    connect,
    create_environment,
    create_task,
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
    EventSubscriber,
    RedisNotifier,
    task_event,
    task_removed_event,
)
from agq.status import VALID_SESSION_STATUSES, report_session_status
from agq.terminal import SESSION_ENV_VAR

log = logging.getLogger(__name__)


class _JsonAwareGroup(click.Group):
    """Root group for ``agq``: usage errors come out as ``{"ok": false, "error": ...}``.

    Scripts and the queue UI read agq's stdout as JSON, so a mistyped
    subcommand must not fall back to click's plain-text usage dump.
    """

    def resolve_command(self, ctx, args):  # type: ignore[override]
        try:
            return super().resolve_command(ctx, args)
        except click.UsageError:
            if not args:
                raise
            close = difflib.get_close_matches(args[0], self.list_commands(ctx), n=2, cutoff=0.5)
            message = f"Unknown agq command '{args[0]}'."
            if close:
                message += f" Closest: {' or '.join(close)}."
            raise click.UsageError(message) from None

    def main(self, args=None, standalone_mode=True, **kwargs):  # type: ignore[override]
        try:
            rv = super().main(args=args, standalone_mode=False, **kwargs)
        except click.ClickException as exc:
            click.echo(json.dumps({"ok": False, "error": exc.format_message()}))
            if not standalone_mode:
                return exc.exit_code
            raise SystemExit(exc.exit_code) from None
        except click.Abort:
            if not standalone_mode:
                raise
            click.echo(json.dumps({"ok": False, "error": "Interrupted"}))
            raise SystemExit(1) from None
        if standalone_mode:
            raise SystemExit(rv or 0)
        return rv


@click.group(cls=_JsonAwareGroup)
@click.version_option(version=__version__)
def main():
    """Queue coding-agent tasks and run them in order, respecting dependencies.

    \b
    Quick start:
      agq daemon run                              Start the executor (foreground)
      agq task add NAME "Fix the login bug" -p web
      agq task add NAME2 "Write tests" -p web --depends-on TASK_ID
      agq queue status                            Gate, pause flag, capacity

    \b
    Key concepts:
      task      A prompt run by the agent in print, interactive or trust mode
      template  A reusable list of steps instantiated into dependent tasks
      gate      A failed task blocks new starts until retried or skipped
    """


def _emit(data: Any) -> None:
    click.echo(json.dumps(data, indent=2, default=str))


def _publish(event: dict) -> None:
    RedisNotifier().send(event)


def _not_found(entity: str, identifier: str) -> click.ClickException:
    hints = {
        "task": "Run 'agq task list' to see tasks.",
        "template": "Run 'agq template list' to see templates.",
        "environment": "Run 'agq env list' to see environments.",
    }
    hint = hints.get(entity)
    msg = f"{entity.capitalize()} '{identifier}' not found."
    return click.ClickException(f"{msg} {hint}" if hint else msg)


def _daemon(method: str, params: dict | None = None) -> Any:
    try:
        return call_daemon(method, params)
    except DaemonError as exc:
        raise click.ClickException(str(exc)) from exc
    except OSError as exc:
        raise click.ClickException(
            f"Executor daemon is not running ({exc}). Start it with 'agq daemon run'."
        ) from exc


def _parse_pairs(pairs: tuple[str, ...], what: str) -> dict[str, str]:
    result: dict[str, str] = {}
    for pair in pairs:
        key, sep, value = pair.partition("=")
        if not sep or not key:
            raise click.BadParameter(f"Expected KEY=VALUE, got '{pair}'", param_hint=what)
        result[key] = value
    return result


# -- task --


@main.group()
def task():
    """Create, order and inspect queued tasks."""


@task.command("add")
@click.argument("name")
@click.argument("prompt")
@click.option("--project", "-p", required=True, help="Project directory under the base path.")
@click.option(
    "--mode",
    "-m",
    type=click.Choice(sorted(VALID_TASK_MODES)),
    default=None,
    help="Execution mode (default: interactive).",
)
@click.option("--depends-on", "-d", multiple=True, help="Task ID that must complete first.")
@click.option("--worktree", is_flag=True, help="Ask the session to use a git worktree.")
@click.option("--env", "environment_id", default=None, help="Environment ID for variables.")
@click.option("--position", type=int, default=None, help="Insert at this queue position.")
def task_add(
    name: str,
    prompt: str,
    project: str,
    mode: str | None,
    depends_on: tuple[str, ...],
    worktree: bool,
    environment_id: str | None,
    position: int | None,
):
    """Queue a new task."""
    with connect() as conn:
        try:
            created = create_task(
                conn,
                name=name,
                prompt=prompt,
                project=project,
                mode=mode,
                depends_on=list(depends_on),
                use_worktree=worktree,
                environment_id=environment_id,
                position=position,
            )
        except ValidationError as exc:
            raise click.ClickException(str(exc)) from exc
    _publish(task_event(TASK_CREATED, created))
    _emit(created)


@task.command("list")
@click.option("--project", "-p", default=None, help="Filter by project.")
@click.option(
    "--status",
    "-s",
    default=None,
    type=click.Choice(sorted(VALID_TASK_STATUSES), case_sensitive=False),
    help="Filter by status.",
)
def task_list(project: str | None, status: str | None):
    """List tasks in queue order."""
    with connect() as conn:
        _emit(list_tasks(conn, status=status, project=project))


@task.command("show")
@click.argument("task_id")
def task_show(task_id: str):
    """Show one task."""
    with connect() as conn:
        found = get_task(conn, task_id)
    if not found:
        raise _not_found("task", task_id)
    _emit(found)


@task.command("rm")
@click.argument("task_id")
def task_rm(task_id: str):
    """Delete a pending, ready or paused task."""
    with connect() as conn:
        try:
            deleted = delete_task(conn, task_id)
        except ValidationError as exc:
            raise click.ClickException(str(exc)) from exc
    if not deleted:
        raise _not_found("task", task_id)
    _publish(task_removed_event(task_id))
    _emit({"id": task_id, "deleted": True})


@task.command("move")
@click.argument("task_id")
@click.argument("position", type=int)
def task_move(task_id: str, position: int):
    """Move a task to POSITION in the queue."""
    with connect() as conn:
        moved = reorder_task(conn, task_id, position)
    if not moved:
        raise _not_found("task", task_id)
    _publish(task_event(TASK_UPDATED, moved))
    _emit(moved)


@task.command("history")
@click.argument("task_id")
def task_history(task_id: str):
    """Show the status history of a task."""
    with connect() as conn:
        if not get_task(conn, task_id):
            raise _not_found("task", task_id)
        _emit(list_task_history(conn, task_id))


@task.command("retry")
@click.argument("task_id")
def task_retry(task_id: str):
    """Retry the failed task holding the gate."""
    _emit(_daemon("task.retry", {"id": task_id}))


@task.command("skip")
@click.argument("task_id")
def task_skip(task_id: str):
    """Skip the failed task holding the gate, and everything depending on it."""
    _emit(_daemon("task.skip", {"id": task_id}))


# -- queue --


@main.group()
def queue():
    """Control the running executor."""


@queue.command("status")
def queue_status():
    """Show task counts and executor state."""
    with connect() as conn:
        rows = conn.execute("SELECT status, COUNT(*) AS n FROM tasks GROUP BY status").fetchall()
    counts = {row["status"]: row["n"] for row in rows}
    try:
        executor = call_daemon("queue.status")
    except OSError:
        executor = None
    _emit({"counts": counts, "daemon_running": executor is not None, "executor": executor})


@queue.command("stop")
def queue_stop():
    """Kill running tasks and pause everything queued."""
    _emit(_daemon("queue.stop"))


@queue.command("pause")
def queue_pause():
    """Stop starting new tasks (running tasks continue)."""
    _emit(_daemon("queue.pause"))


@queue.command("unpause")
def queue_unpause():
    """Allow new tasks to start again."""
    _emit(_daemon("queue.unpause"))


@queue.command("resume")
def queue_resume():
    """Return paused tasks to pending and clear the failure gate."""
    _emit(_daemon("queue.resume"))


@queue.command("cleanup")
@click.option("--max-age-days", type=int, default=None, help="History retention in days.")
def queue_cleanup(max_age_days: int | None):
    """Delete finished tasks and old history."""
    if max_age_days is None:
        max_age_days = load_settings().history_max_age_days
    with connect() as conn:
        removed = cleanup_finished_tasks(conn)
        history = cleanup_old_history(conn, max_age_days)
    for task_id in removed:
        _publish(task_removed_event(task_id))
    _emit({"removed_tasks": removed, "removed_history": history})


# -- template --


@main.group()
def template():
    """Manage reusable multi-step task templates."""


def _find_template(conn, ref: str) -> TemplateRow:
    found = get_template(conn, ref) or get_template_by_name(conn, ref)
    if not found:
        raise _not_found("template", ref)
    return found


@template.command("add")
@click.argument("name")
@click.option(
    "--file",
    "-f",
    "path",
    required=True,
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    help='JSON file: {"steps": [...], "variables": {...}, "description": "..."}.',
)
def template_add(name: str, path: Path):
    """Create a template from a JSON definition."""
    try:
        definition = json.loads(path.read_text())
    except json.JSONDecodeError as exc:
        raise click.ClickException(f"Invalid JSON in {path}: {exc}") from exc
    if not isinstance(definition, dict):
        raise click.ClickException(f"{path} must contain a JSON object")
    with connect() as conn:
        try:
            created = create_template(
                conn,
                name=name,
                steps=definition.get("steps") or [],
                description=definition.get("description"),
                variables=definition.get("variables"),
            )
        except ValidationError as exc:
            raise click.ClickException(str(exc)) from exc
    _emit(created)


@template.command("list")
def template_list():
    """List templates."""
    with connect() as conn:
        _emit(list_templates(conn))


@template.command("show")
@click.argument("ref")
def template_show(ref: str):
    """Show a template by ID or name."""
    with connect() as conn:
        _emit(_find_template(conn, ref))


@template.command("rm")
@click.argument("ref")
def template_rm(ref: str):
    """Delete a template by ID or name."""
    with connect() as conn:
        found = _find_template(conn, ref)
        delete_template(conn, found["id"])
    _emit({"id": found["id"], "deleted": True})


@template.command("run")
@click.argument("ref")
@click.option("--project", "-p", required=True, help="Project to run the steps in.")
@click.option("--var", "-v", "pairs", multiple=True, help="Template variable KEY=VALUE.")
def template_run(ref: str, project: str, pairs: tuple[str, ...]):
    """Queue one task per template step."""
    variables = _parse_pairs(pairs, "--var")
    with connect() as conn:
        found = _find_template(conn, ref)
        try:
            tasks = instantiate_template(conn, found["id"], project, variables)
        except ValidationError as exc:
            raise click.ClickException(str(exc)) from exc
    for created in tasks:
        _publish(task_event(TASK_CREATED, created))
    _emit(tasks)


# -- env --


@main.group()
def env():
    """Manage environment variable sets for tasks."""


@env.command("add")
@click.argument("name")
@click.option("--var", "-v", "pairs", multiple=True, help="Variable KEY=VALUE.")
@click.option("--default", "is_default", is_flag=True, help="Use for tasks without --env.")
def env_add(name: str, pairs: tuple[str, ...], is_default: bool):
    """Create an environment."""
    variables = _parse_pairs(pairs, "--var")
    with connect() as conn:
        try:
            created = create_environment(
                conn, name=name, variables=variables, is_default=is_default
            )
        except ValidationError as exc:
            raise click.ClickException(str(exc)) from exc
    _emit(created)


@env.command("list")
def env_list():
    """List environments."""
    with connect() as conn:
        _emit(list_environments(conn))


@env.command("rm")
@click.argument("env_id")
def env_rm(env_id: str):
    """Delete an environment."""
    with connect() as conn:
        if not delete_environment(conn, env_id):
            raise _not_found("environment", env_id)
    _emit({"id": env_id, "deleted": True})


# -- session --


@main.group()
def session():
    """Hooks for agents running inside agq sessions."""


@session.command("report")
@click.argument("status", type=click.Choice(sorted(VALID_SESSION_STATUSES)))
@click.option(
    "--session",
    "session_name",
    default=None,
    help=f"Session name (default: ${SESSION_ENV_VAR}).",
)
@click.option("--reason", default=None, help="Why the agent needs attention.")
def session_report(status: str, session_name: str | None, reason: str | None):
    """Report the agent's state for the session monitor."""
    session_name = session_name or os.environ.get(SESSION_ENV_VAR)
    if not session_name:
        raise click.ClickException(f"No session name: pass --session or set ${SESSION_ENV_VAR}.")
    stored = report_session_status(session_name, status, attention_reason=reason)
    _emit({"session": session_name, "status": status, "stored": stored})


# -- events --


@main.group()
def events():
    """Observe queue events."""


@events.command("watch")
@click.option("--task", "task_id", default=None, help="Only events for this task.")
@click.option("--project", "-p", default=None, help="Only events for this project.")
@click.option("--type", "types", multiple=True, help="Only events of this type.")
@click.option("--timeout", type=float, default=30.0, help="Seconds per blocking read.")
def events_watch(task_id: str | None, project: str | None, types: tuple[str, ...], timeout: float):
    """Stream events as JSON lines until interrupted."""
    subscriber = EventSubscriber(task_id=task_id, project=project, types=types, timeout=timeout)
    try:
        for event in subscriber:
            if event is not None:
                click.echo(json.dumps(event, default=str))
    except KeyboardInterrupt:
        pass


# -- daemon --


@main.group()
def daemon():
    """Run the executor daemon."""


@daemon.command("run")
@click.option(
    "--log-level",
    default=lambda: os.environ.get("AGQ_LOG_LEVEL", "INFO"),
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    help="Logging level.",
)
def daemon_run(log_level: str):
    """Run the executor in the foreground."""
    import asyncio

    from agq.daemon import run_daemon

    logging.basicConfig(level=log_level.upper(), format="%(asctime)s %(levelname)s %(message)s")
    asyncio.run(run_daemon())
