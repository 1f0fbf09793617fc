"""Tests for dependency promotion and skip propagation."""

import logging

from agq.db import create_task, get_task, list_task_history, update_task_status
from agq.resolver import propagate_skip, resolve_pending_tasks


def _make(conn, name, depends_on=None):
    return create_task(conn, name=name, prompt=f"do {name}", project="web", depends_on=depends_on)


def _status(conn, task) -> str:
    return get_task(conn, task["id"])["status"]


def test_dependent_promoted_after_dependency_completes(db_conn):
    a = _make(db_conn, "a")
    b = _make(db_conn, "b", [a["id"]])
    assert a["status"] == "ready"
    assert b["status"] == "pending"

    assert resolve_pending_tasks(db_conn).promoted == []
    update_task_status(db_conn, a["id"], "completed")
    result = resolve_pending_tasks(db_conn)
    assert result.promoted == [b["id"]]
    assert _status(db_conn, b) == "ready"


def test_not_promoted_until_all_dependencies_complete(db_conn):
    a = _make(db_conn, "a")
    b = _make(db_conn, "b")
    c = _make(db_conn, "c", [a["id"], b["id"]])
    update_task_status(db_conn, a["id"], "completed")
    resolve_pending_tasks(db_conn)
    assert _status(db_conn, c) == "pending"
    update_task_status(db_conn, b["id"], "completed")
    resolve_pending_tasks(db_conn)
    assert _status(db_conn, c) == "ready"


def test_pending_without_dependencies_is_promoted(db_conn):
    a = _make(db_conn, "a")
    update_task_status(db_conn, a["id"], "pending")
    assert resolve_pending_tasks(db_conn).promoted == [a["id"]]


def test_failed_dependency_skips_instead_of_promoting(db_conn):
    a = _make(db_conn, "a")
    b = _make(db_conn, "b")
    c = _make(db_conn, "c", [a["id"], b["id"]])
    d = _make(db_conn, "d", [c["id"]])
    update_task_status(db_conn, a["id"], "completed")
    update_task_status(db_conn, b["id"], "failed", error="boom")

    result = resolve_pending_tasks(db_conn)
    assert result.promoted == []
    assert result.skipped == [[c["id"], d["id"]]]
    assert _status(db_conn, c) == "skipped"
    assert _status(db_conn, d) == "skipped"


def test_skipped_dependency_cascades(db_conn):
    a = _make(db_conn, "a")
    b = _make(db_conn, "b", [a["id"]])
    update_task_status(db_conn, a["id"], "skipped")
    result = resolve_pending_tasks(db_conn)
    assert result.skipped == [[b["id"]]]


def test_missing_dependency_stays_pending(db_conn, caplog):
    a = _make(db_conn, "a")
    b = _make(db_conn, "b", [a["id"]])
    db_conn.execute("DELETE FROM tasks WHERE id = ?", (a["id"],))
    db_conn.commit()
    with caplog.at_level(logging.WARNING, logger="agq.resolver"):
        result = resolve_pending_tasks(db_conn)
    assert result.promoted == []
    assert _status(db_conn, b) == "pending"
    assert "missing" in caplog.text


def test_propagate_skip_returns_root_and_dependents_once(db_conn):
    # a -> b -> d and a -> c -> d (diamond)
    a = _make(db_conn, "a")
    b = _make(db_conn, "b", [a["id"]])
    c = _make(db_conn, "c", [a["id"]])
    d = _make(db_conn, "d", [b["id"], c["id"]])
    update_task_status(db_conn, a["id"], "failed", error="boom")

    skipped = propagate_skip(db_conn, a["id"])
    assert skipped == [a["id"], b["id"], c["id"], d["id"]]
    assert len(set(skipped)) == len(skipped)
    assert all(_status(db_conn, t) == "skipped" for t in (a, b, c, d))


def test_propagate_skip_is_idempotent(db_conn):
    a = _make(db_conn, "a")
    b = _make(db_conn, "b", [a["id"]])
    update_task_status(db_conn, a["id"], "failed", error="boom")
    assert propagate_skip(db_conn, a["id"]) == [a["id"], b["id"]]
    history_len = len(list_task_history(db_conn, b["id"]))
    assert propagate_skip(db_conn, a["id"]) == []
    assert len(list_task_history(db_conn, b["id"])) == history_len


def test_propagate_skip_leaves_started_dependents(db_conn):
    a = _make(db_conn, "a")
    b = _make(db_conn, "b", [a["id"]])
    c = _make(db_conn, "c", [a["id"]])
    update_task_status(db_conn, a["id"], "failed", error="boom")
    update_task_status(db_conn, b["id"], "running")
    update_task_status(db_conn, c["id"], "completed")
    assert propagate_skip(db_conn, a["id"]) == [a["id"]]
    assert _status(db_conn, b) == "running"
    assert _status(db_conn, c) == "completed"


def test_propagate_skip_records_cause(db_conn):
    a = _make(db_conn, "a")
    b = _make(db_conn, "b", [a["id"]])
    update_task_status(db_conn, a["id"], "failed", error="boom")
    propagate_skip(db_conn, a["id"])
    last = list_task_history(db_conn, b["id"])[-1]
    assert last["status"] == "skipped"
    assert last["details"] == {"cause": a["id"]}


def test_propagate_skip_unknown_task(db_conn):
    assert propagate_skip(db_conn, "task_missing") == []
