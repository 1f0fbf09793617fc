"""Tests for the database layer."""

import sqlite3

import pytest

from agq.db import (
    SCHEMA_VERSION,
    ValidationError,
    cleanup_finished_tasks,
    cleanup_old_history,
    create_environment,
    create_task,
    create_tasks_batch,
    create_template,
    delete_environment,
    delete_task,
    delete_template,
    get_environment_variables,
    get_next_ready_task,
    get_task,
    get_template_by_name,
    increment_task_retry,
    instantiate_template,
    link_task_session,
    list_dependent_tasks,
    list_environments,
    list_task_history,
    list_tasks,
    list_tasks_by_status,
    pause_all_tasks,
    record_task_history,
    reorder_task,
    reset_task_for_retry,
    resume_all_tasks,
    update_task_status,
    update_template,
)
from agq.resolver import resolve_pending_tasks


def _make(conn, name, **kwargs):
    kwargs.setdefault("prompt", f"do {name}")
    kwargs.setdefault("project", "web")
    return create_task(conn, name=name, **kwargs)


def _positions(conn) -> list[tuple[str, int]]:
    return [(t["name"], t["position"]) for t in list_tasks(conn)]


# -- schema --


def test_schema_version_set(db_conn):
    assert db_conn.execute("PRAGMA user_version").fetchone()[0] == SCHEMA_VERSION


def test_indexes_exist(db_conn):
    names = {
        row[0]
        for row in db_conn.execute("SELECT name FROM sqlite_master WHERE type = 'index'").fetchall()
    }
    assert {"idx_tasks_status", "idx_tasks_position", "idx_task_history_task"} <= names


# -- create --


def test_create_task_without_dependencies_is_ready(db_conn):
    task = _make(db_conn, "a")
    assert task["id"].startswith("task_")
    assert task["status"] == "ready"
    assert task["mode"] == "interactive"
    assert task["depends_on"] == []
    assert task["retry_count"] == 0
    assert task["position"] == 0


def test_create_task_with_dependencies_is_pending(db_conn):
    a = _make(db_conn, "a")
    b = _make(db_conn, "b", depends_on=[a["id"], a["id"]])
    assert b["status"] == "pending"
    assert b["depends_on"] == [a["id"]]
    assert b["position"] == 1


@pytest.mark.parametrize("missing", ["name", "prompt", "project"])
def test_create_task_requires_fields(db_conn, missing):
    fields = {"name": "a", "prompt": "p", "project": "web"}
    fields[missing] = ""
    with pytest.raises(ValidationError, match=missing):
        create_task(db_conn, **fields)
    assert list_tasks(db_conn) == []


def test_create_task_rejects_unknown_mode(db_conn):
    with pytest.raises(ValidationError, match="mode"):
        _make(db_conn, "a", mode="yolo")


def test_create_task_rejects_unknown_dependency(db_conn):
    with pytest.raises(ValidationError, match="task_nope"):
        _make(db_conn, "a", depends_on=["task_nope"])
    assert list_tasks(db_conn) == []


def test_create_task_at_position_shifts_later_rows(db_conn):
    _make(db_conn, "a")
    _make(db_conn, "b")
    _make(db_conn, "c", position=1)
    assert _positions(db_conn) == [("a", 0), ("c", 1), ("b", 2)]


def test_create_task_position_is_clamped(db_conn):
    _make(db_conn, "a")
    _make(db_conn, "b", position=99)
    _make(db_conn, "c", position=-5)
    assert _positions(db_conn) == [("c", 0), ("a", 1), ("b", 2)]


def test_create_records_history(db_conn):
    task = _make(db_conn, "a")
    history = list_task_history(db_conn, task["id"])
    assert [(h["status"], h["event"]) for h in history] == [("ready", "created")]


# -- batch --


def test_batch_assigns_contiguous_trailing_positions(db_conn):
    _make(db_conn, "existing")
    tasks = create_tasks_batch(
        db_conn,
        [
            {"name": "a", "prompt": "p", "project": "web"},
            {"name": "b", "prompt": "p", "project": "web", "depends_on_index": [0]},
            {"name": "c", "prompt": "p", "project": "web", "mode": "print"},
        ],
    )
    assert [t["position"] for t in tasks] == [1, 2, 3]
    assert tasks[1]["depends_on"] == [tasks[0]["id"]]
    assert tasks[1]["status"] == "pending"
    assert tasks[2]["mode"] == "print"


def test_batch_is_all_or_nothing(db_conn):
    with pytest.raises(ValidationError):
        create_tasks_batch(
            db_conn,
            [
                {"name": "a", "prompt": "p", "project": "web"},
                {"name": "b", "prompt": "", "project": "web"},
            ],
        )
    assert list_tasks(db_conn) == []


def test_batch_rolls_back_on_unknown_existing_dependency(db_conn):
    with pytest.raises(ValidationError):
        create_tasks_batch(
            db_conn,
            [
                {"name": "a", "prompt": "p", "project": "web"},
                {"name": "b", "prompt": "p", "project": "web", "depends_on": ["task_gone"]},
            ],
        )
    assert list_tasks(db_conn) == []


def test_batch_rejects_forward_index_reference(db_conn):
    with pytest.raises(ValidationError, match="earlier"):
        create_tasks_batch(
            db_conn,
            [{"name": "a", "prompt": "p", "project": "web", "depends_on_index": [0]}],
        )


# -- delete / reorder --


def test_delete_middle_task_reindexes(db_conn):
    tasks = create_tasks_batch(
        db_conn, [{"name": n, "prompt": "p", "project": "web"} for n in ("a", "b", "c")]
    )
    assert [t["position"] for t in tasks] == [0, 1, 2]
    assert delete_task(db_conn, tasks[1]["id"]) is True
    assert _positions(db_conn) == [("a", 0), ("c", 1)]


def test_delete_missing_task_returns_false(db_conn):
    assert delete_task(db_conn, "task_missing") is False


@pytest.mark.parametrize("status", ["running", "completed", "failed", "skipped"])
def test_delete_rejects_non_deletable_status(db_conn, status):
    task = _make(db_conn, "a")
    update_task_status(db_conn, task["id"], status)
    with pytest.raises(ValidationError, match="can be deleted"):
        delete_task(db_conn, task["id"])
    assert get_task(db_conn, task["id"]) is not None


def test_delete_paused_task_allowed(db_conn):
    task = _make(db_conn, "a")
    pause_all_tasks(db_conn)
    assert delete_task(db_conn, task["id"]) is True


def test_delete_strips_id_from_dependents(db_conn):
    a = _make(db_conn, "a")
    b = _make(db_conn, "b", depends_on=[a["id"]])
    delete_task(db_conn, a["id"])
    assert get_task(db_conn, b["id"])["depends_on"] == []


def test_reorder_moves_up_and_down(db_conn):
    for name in ("a", "b", "c", "d"):
        _make(db_conn, name)
    d = list_tasks(db_conn)[3]
    reorder_task(db_conn, d["id"], 1)
    assert _positions(db_conn) == [("a", 0), ("d", 1), ("b", 2), ("c", 3)]
    a = list_tasks(db_conn)[0]
    reorder_task(db_conn, a["id"], 2)
    assert _positions(db_conn) == [("d", 0), ("b", 1), ("a", 2), ("c", 3)]


def test_reorder_clamps_position(db_conn):
    for name in ("a", "b", "c"):
        _make(db_conn, name)
    a = list_tasks(db_conn)[0]
    moved = reorder_task(db_conn, a["id"], 50)
    assert moved["position"] == 2
    assert sorted(p for _, p in _positions(db_conn)) == [0, 1, 2]


def test_reorder_missing_task(db_conn):
    assert reorder_task(db_conn, "task_missing", 0) is None


def test_positions_stay_dense_after_mixed_operations(db_conn):
    ids = [_make(db_conn, f"t{i}")["id"] for i in range(6)]
    delete_task(db_conn, ids[0])
    reorder_task(db_conn, ids[5], 0)
    _make(db_conn, "x", position=2)
    delete_task(db_conn, ids[3])
    positions = sorted(p for _, p in _positions(db_conn))
    assert positions == list(range(len(positions)))


# -- status transitions --


def test_update_task_status_sets_timestamps(db_conn):
    task = _make(db_conn, "a")
    running = update_task_status(db_conn, task["id"], "running")
    assert running["started_at"] is not None
    assert running["completed_at"] is None
    db_conn.execute(
        "UPDATE tasks SET started_at = '2000-01-01T00:00:00Z' WHERE id = ?", (task["id"],)
    )
    db_conn.commit()
    again = update_task_status(db_conn, task["id"], "running")
    assert again["started_at"] == "2000-01-01T00:00:00Z"
    done = update_task_status(db_conn, task["id"], "completed")
    assert done["completed_at"] is not None


def test_update_task_status_error_and_history(db_conn):
    task = _make(db_conn, "a")
    failed = update_task_status(db_conn, task["id"], "failed", error="boom", event="failed")
    assert failed["error"] == "boom"
    last = list_task_history(db_conn, task["id"])[-1]
    assert last["status"] == "failed"
    assert last["details"] == {"error": "boom"}


def test_update_task_status_rejects_unknown_status(db_conn):
    task = _make(db_conn, "a")
    with pytest.raises(ValueError):
        update_task_status(db_conn, task["id"], "exploded")


def test_update_task_status_missing_task(db_conn):
    assert update_task_status(db_conn, "task_missing", "ready") is None


def test_increment_task_retry_resets_to_ready(db_conn):
    task = _make(db_conn, "a")
    update_task_status(db_conn, task["id"], "running")
    update_task_status(db_conn, task["id"], "failed", error="boom")
    assert increment_task_retry(db_conn, task["id"]) is True
    after = get_task(db_conn, task["id"])
    assert after["retry_count"] == 1
    assert after["status"] == "ready"
    assert after["error"] is None
    assert after["started_at"] is None
    assert after["completed_at"] is None


def test_reset_task_for_retry_keeps_retry_count(db_conn):
    task = _make(db_conn, "a")
    increment_task_retry(db_conn, task["id"])
    update_task_status(db_conn, task["id"], "failed", error="boom")
    link_task_session(db_conn, task["id"], "web--calm-owl-3")
    reset = reset_task_for_retry(db_conn, task["id"])
    assert reset["status"] == "ready"
    assert reset["error"] is None
    assert reset["retry_count"] == 1
    assert reset["session_name"] is None
    assert list_task_history(db_conn, task["id"])[-1]["event"] == "retried"


def test_link_task_session(db_conn):
    task = _make(db_conn, "a")
    assert link_task_session(db_conn, task["id"], "web--bold-fox-1") is True
    assert get_task(db_conn, task["id"])["session_name"] == "web--bold-fox-1"


def test_pause_and_resume_all(db_conn):
    a = _make(db_conn, "a")
    b = _make(db_conn, "b", depends_on=[a["id"]])
    c = _make(db_conn, "c")
    update_task_status(db_conn, c["id"], "completed")
    assert pause_all_tasks(db_conn) == [a["id"], b["id"]]
    assert get_task(db_conn, c["id"])["status"] == "completed"
    assert resume_all_tasks(db_conn) == [a["id"], b["id"]]
    assert {t["status"] for t in list_tasks_by_status(db_conn, "pending")} == {"pending"}
    assert get_task(db_conn, a["id"])["status"] == "pending"


def test_get_next_ready_task_uses_position(db_conn):
    a = _make(db_conn, "a")
    b = _make(db_conn, "b")
    reorder_task(db_conn, b["id"], 0)
    assert get_next_ready_task(db_conn)["id"] == b["id"]
    update_task_status(db_conn, b["id"], "running")
    assert get_next_ready_task(db_conn)["id"] == a["id"]


def test_list_dependent_tasks(db_conn):
    a = _make(db_conn, "a")
    b = _make(db_conn, "b", depends_on=[a["id"]])
    _make(db_conn, "c")
    assert [t["id"] for t in list_dependent_tasks(db_conn, a["id"])] == [b["id"]]


def test_list_tasks_by_status_rejects_unknown(db_conn):
    with pytest.raises(ValueError):
        list_tasks_by_status(db_conn, "bogus")


# -- cleanup --


def test_cleanup_old_history_only_removes_old_rows(db_conn):
    task = _make(db_conn, "a")
    record_task_history(db_conn, task["id"], "ready", "note")
    db_conn.execute(
        "UPDATE task_history SET created_at = '2001-01-01T00:00:00Z' WHERE event = 'note'"
    )
    db_conn.commit()
    assert cleanup_old_history(db_conn, 7) == 1
    assert [h["event"] for h in list_task_history(db_conn, task["id"])] == ["created"]


def test_cleanup_finished_tasks_reindexes(db_conn):
    names = ["a", "b", "c", "d"]
    tasks = {n: _make(db_conn, n) for n in names}
    update_task_status(db_conn, tasks["a"]["id"], "completed")
    update_task_status(db_conn, tasks["c"]["id"], "skipped")
    removed = cleanup_finished_tasks(db_conn)
    assert set(removed) == {tasks["a"]["id"], tasks["c"]["id"]}
    assert _positions(db_conn) == [("b", 0), ("d", 1)]


@pytest.mark.parametrize("waiting_status", ["pending", "paused", "ready"])
def test_cleanup_keeps_finished_task_with_unfinished_dependent(db_conn, waiting_status):
    a = _make(db_conn, "a")
    b = _make(db_conn, "b", depends_on=[a["id"]])
    update_task_status(db_conn, a["id"], "completed")
    update_task_status(db_conn, b["id"], waiting_status)

    assert cleanup_finished_tasks(db_conn) == []
    assert get_task(db_conn, a["id"])["status"] == "completed"
    assert get_task(db_conn, b["id"])["depends_on"] == [a["id"]]


def test_cleanup_then_resolve_promotes_dependent(db_conn):
    a = _make(db_conn, "a")
    b = _make(db_conn, "b", depends_on=[a["id"]])
    update_task_status(db_conn, a["id"], "completed")
    cleanup_finished_tasks(db_conn)

    result = resolve_pending_tasks(db_conn)
    assert result.promoted == [b["id"]]
    assert get_task(db_conn, b["id"])["status"] == "ready"


def test_cleanup_removes_finished_chain_and_strips_ids(db_conn):
    a = _make(db_conn, "a")
    b = _make(db_conn, "b", depends_on=[a["id"]])
    c = _make(db_conn, "c", depends_on=[b["id"]])
    update_task_status(db_conn, a["id"], "completed")
    update_task_status(db_conn, b["id"], "completed")

    # c is still pending on b, so only a goes
    assert cleanup_finished_tasks(db_conn) == [a["id"]]
    assert get_task(db_conn, b["id"])["depends_on"] == []
    assert _positions(db_conn) == [("b", 0), ("c", 1)]

    update_task_status(db_conn, c["id"], "skipped")
    assert set(cleanup_finished_tasks(db_conn)) == {b["id"], c["id"]}
    assert list_tasks(db_conn) == []


# -- templates --


def _steps():
    return [
        {"name": "plan", "prompt": "Plan {feature} for {repo}"},
        {"name": "build", "prompt": "Build {feature}", "mode": "trust"},
        {"name": "docs", "prompt": "Document {feature}", "depends_on_step": 0, "mode": "print"},
    ]


def test_create_template_and_lookup(db_conn):
    tmpl = create_template(db_conn, name="feature", steps=_steps(), variables=["feature", "repo"])
    assert tmpl["id"].startswith("tmpl_")
    assert tmpl["variables"] == {"feature": None, "repo": None}
    assert get_template_by_name(db_conn, "feature")["id"] == tmpl["id"]
    assert tmpl["steps"][0]["mode"] == "interactive"


def test_create_template_duplicate_name(db_conn):
    create_template(db_conn, name="feature", steps=_steps())
    with pytest.raises(ValidationError, match="already exists"):
        create_template(db_conn, name="feature", steps=_steps())


def test_create_template_rejects_bad_steps(db_conn):
    with pytest.raises(ValidationError):
        create_template(db_conn, name="empty", steps=[])
    with pytest.raises(ValidationError, match="earlier step"):
        create_template(
            db_conn, name="fwd", steps=[{"name": "a", "prompt": "p", "depends_on_step": 0}]
        )


def test_update_and_delete_template(db_conn):
    tmpl = create_template(db_conn, name="feature", steps=_steps())
    updated = update_template(db_conn, tmpl["id"], description="ship it")
    assert updated["description"] == "ship it"
    assert delete_template(db_conn, tmpl["id"]) is True
    assert delete_template(db_conn, tmpl["id"]) is False


def test_instantiate_template_wires_dependencies(db_conn):
    tmpl = create_template(
        db_conn, name="feature", steps=_steps(), variables={"feature": None, "repo": "api"}
    )
    tasks = instantiate_template(db_conn, tmpl["id"], "web", {"feature": "login"})
    assert [t["name"] for t in tasks] == ["plan", "build", "docs"]
    assert tasks[0]["prompt"] == "Plan login for api"
    assert tasks[0]["status"] == "ready"
    assert tasks[1]["depends_on"] == [tasks[0]["id"]]
    assert tasks[2]["depends_on"] == [tasks[0]["id"]]
    assert tasks[1]["mode"] == "trust"
    assert {t["project"] for t in tasks} == {"web"}
    assert [t["position"] for t in tasks] == [0, 1, 2]


def test_instantiate_template_leaves_unknown_placeholders(db_conn):
    tmpl = create_template(db_conn, name="feature", steps=_steps())
    tasks = instantiate_template(db_conn, tmpl["id"], "web")
    assert tasks[0]["prompt"] == "Plan {feature} for {repo}"


def test_instantiate_missing_template(db_conn):
    with pytest.raises(ValidationError, match="not found"):
        instantiate_template(db_conn, "tmpl_missing", "web")


# -- environments --


def test_environment_variables_resolution(db_conn):
    assert get_environment_variables(db_conn, None) == {}
    staging = create_environment(db_conn, name="staging", variables={"API": "stage"})
    prod = create_environment(db_conn, name="prod", variables={"API": "prod"}, is_default=True)
    assert get_environment_variables(db_conn, staging["id"]) == {"API": "stage"}
    assert get_environment_variables(db_conn, None) == {"API": "prod"}
    assert get_environment_variables(db_conn, "env_missing") == {}
    assert [e["name"] for e in list_environments(db_conn)] == ["prod", "staging"]
    assert delete_environment(db_conn, prod["id"]) is True
    assert get_environment_variables(db_conn, None) == {}


def test_only_one_default_environment(db_conn):
    create_environment(db_conn, name="one", variables={}, is_default=True)
    create_environment(db_conn, name="two", variables={}, is_default=True)
    defaults = [e["name"] for e in list_environments(db_conn) if e["is_default"]]
    assert defaults == ["two"]


def test_duplicate_environment_name(db_conn):
    create_environment(db_conn, name="one", variables={})
    with pytest.raises(ValidationError):
        create_environment(db_conn, name="one", variables={})


def test_connection_survives_rolled_back_transaction(db_conn_path):
    conn, db_path = db_conn_path
    with pytest.raises(ValidationError):
        create_task(conn, name="a", prompt="p", project="web", depends_on=["task_x"])
    other = sqlite3.connect(str(db_path))
    try:
        assert other.execute("SELECT COUNT(*) FROM tasks").fetchone()[0] == 0
    finally:
        other.close()
    _make(conn, "ok")
    assert len(list_tasks(conn)) == 1


def test_reindexing_write_refuses_open_transaction(db_conn):
    a = _make(db_conn, "a")
    db_conn.execute("UPDATE tasks SET name = 'renamed' WHERE id = ?", (a["id"],))
    assert db_conn.in_transaction

    with pytest.raises(RuntimeError, match="open transaction"):
        delete_task(db_conn, a["id"])

    # the caller's uncommitted work is left for the caller to decide on
    assert db_conn.in_transaction
    db_conn.rollback()
    assert get_task(db_conn, a["id"])["name"] == "a"
