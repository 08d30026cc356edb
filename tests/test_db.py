"""Tests for the database layer."""

import sqlite3
import tempfile
from pathlib import Path

import pytest

from clork.db import (
    DEFAULT_MODEL,
    SCHEMA_VERSION,
    add_project,
    add_task_event,
    connect,
    create_session,
    create_task,
    drain_queue_into_session,
    finish_task,
    get_connection,
    get_project,
    get_running_session,
    get_session,
    get_setting,
    get_task,
    list_projects,
    list_sessions,
    list_task_events,
    list_tasks,
    mark_task_started,
    move_task,
    next_counter_value,
    next_pending_task,
    next_queued_session,
    remove_project,
    remove_session,
    reorder_sessions,
    reorder_tasks,
    set_next_session,
    set_session_active,
    set_setting,
    update_project,
    update_session,
    update_session_status,
)


def tmp_conn():
    db_path = Path(tempfile.mktemp(suffix=".db"))
    return get_connection(db_path)


def _project_id(conn) -> str:
    proj = get_project(conn, "testproj")
    assert proj is not None
    return proj["id"]


# -- schema --


def test_schema_version_is_current():
    conn = tmp_conn()
    assert conn.execute("PRAGMA user_version").fetchone()[0] == SCHEMA_VERSION
    conn.close()


def test_image_counter_seeded_by_migration():
    conn = tmp_conn()
    assert get_setting(conn, "imageCounter") == "0"
    conn.close()


def test_reopen_does_not_rerun_migrations(tmp_path):
    db_path = tmp_path / "clork.db"
    conn = get_connection(db_path)
    set_setting(conn, "imageCounter", "7")
    conn.close()
    conn = get_connection(db_path)
    assert get_setting(conn, "imageCounter") == "7"
    conn.close()


def test_connect_context_manager_closes(tmp_path):
    with connect(tmp_path / "x.db") as conn:
        conn.execute("SELECT 1")
    with pytest.raises(sqlite3.ProgrammingError):
        conn.execute("SELECT 1")


# -- projects --


def test_add_and_list_projects():
    conn = tmp_conn()
    add_project(conn, "myapp", "/tmp/myapp")
    projects = list_projects(conn)
    assert len(projects) == 1
    assert projects[0]["name"] == "myapp"
    assert projects[0]["root_dir"] == "/tmp/myapp"
    assert projects[0]["default_model"] == DEFAULT_MODEL
    assert projects[0]["permission_mode"] == "default"
    assert projects[0]["auto_continue"] == 0


def test_get_project_by_name_or_id(db_conn):
    pid = _project_id(db_conn)
    assert get_project(db_conn, pid)["name"] == "testproj"
    assert get_project(db_conn, "nope") is None


def test_add_project_rejects_unknown_permission_mode(db_conn):
    with pytest.raises(ValueError, match="permission mode"):
        add_project(db_conn, "bad", "/tmp/bad", permission_mode="yolo")


def test_update_project_keeps_unset_fields(db_conn):
    pid = _project_id(db_conn)
    updated = update_project(db_conn, pid, auto_continue=True, max_tasks_per_session=3)
    assert updated["auto_continue"] == 1
    assert updated["max_tasks_per_session"] == 3
    assert updated["name"] == "testproj"
    assert updated["root_dir"] == "/tmp/testproj"


def test_update_project_missing_returns_none(db_conn):
    assert update_project(db_conn, "missing", name="x") is None


def test_remove_project_cascades(db_conn):
    pid = _project_id(db_conn)
    session = create_session(db_conn, project_id=pid, name="s1", prompt="first")
    create_task(db_conn, project_id=pid, prompt="backlog item")
    result = remove_project(db_conn, "testproj")
    assert result == {"id": pid, "name": "testproj", "deleted": {"sessions": 1, "tasks": 2}}
    assert get_session(db_conn, session["id"]) is None
    assert db_conn.execute("SELECT COUNT(*) FROM tasks").fetchone()[0] == 0


def test_remove_missing_project_returns_none(db_conn):
    assert remove_project(db_conn, "ghost") is None


# -- sessions --


def test_create_session_appends_order_and_is_idle(db_conn):
    pid = _project_id(db_conn)
    s1 = create_session(db_conn, project_id=pid, name="one")
    s2 = create_session(db_conn, project_id=pid, name="two")
    assert s1["status"] == "idle"
    assert s1["is_active"] == 0
    assert s2["session_order"] == s1["session_order"] + 1
    assert [s["name"] for s in list_sessions(db_conn, pid)] == ["one", "two"]


def test_create_session_with_prompt_seeds_todo(db_conn):
    pid = _project_id(db_conn)
    session = create_session(db_conn, project_id=pid, name="seeded", prompt="  do it  ")
    todo = list_tasks(db_conn, session_id=session["id"], location="todo")
    assert [t["prompt"] for t in todo] == ["do it"]


def test_list_sessions_filters_by_status(db_conn):
    pid = _project_id(db_conn)
    s1 = create_session(db_conn, project_id=pid, name="one")
    create_session(db_conn, project_id=pid, name="two")
    update_session_status(db_conn, s1["id"], "completed")
    assert [s["id"] for s in list_sessions(db_conn, pid, "completed")] == [s1["id"]]


def test_update_session_status_validates(db_conn):
    pid = _project_id(db_conn)
    s1 = create_session(db_conn, project_id=pid, name="one")
    with pytest.raises(ValueError, match="session status"):
        update_session_status(db_conn, s1["id"], "paused")


def test_update_session_model_override_and_clear(db_conn):
    pid = _project_id(db_conn)
    s1 = create_session(db_conn, project_id=pid, name="one")
    assert update_session(db_conn, s1["id"], model="opus")["model"] == "opus"
    assert update_session(db_conn, s1["id"], name="renamed")["model"] == "opus"
    cleared = update_session(db_conn, s1["id"], model=None)
    assert cleared["model"] is None
    assert cleared["name"] == "renamed"


def test_running_and_queued_session_lookups(db_conn):
    pid = _project_id(db_conn)
    s1 = create_session(db_conn, project_id=pid, name="one")
    s2 = create_session(db_conn, project_id=pid, name="two")
    update_session_status(db_conn, s1["id"], "running")
    update_session_status(db_conn, s2["id"], "queued")
    assert get_running_session(db_conn, pid)["id"] == s1["id"]
    assert get_running_session(db_conn, pid, exclude=s1["id"]) is None
    # queued sessions only count once activated
    assert next_queued_session(db_conn, pid) is None
    set_session_active(db_conn, s2["id"], True)
    assert next_queued_session(db_conn, pid)["id"] == s2["id"]


def test_reorder_sessions(db_conn):
    pid = _project_id(db_conn)
    s1 = create_session(db_conn, project_id=pid, name="one")
    s2 = create_session(db_conn, project_id=pid, name="two")
    assert reorder_sessions(
        db_conn, [{"id": s1["id"], "session_order": 5}, {"id": s2["id"], "session_order": 1}]
    ) == 2
    assert [s["name"] for s in list_sessions(db_conn, pid)] == ["two", "one"]


# -- chains --


def test_set_next_session_clears_other_inbound_pointer(db_conn):
    pid = _project_id(db_conn)
    a = create_session(db_conn, project_id=pid, name="a")
    b = create_session(db_conn, project_id=pid, name="b")
    c = create_session(db_conn, project_id=pid, name="c")
    set_next_session(db_conn, a["id"], c["id"])
    set_next_session(db_conn, b["id"], c["id"])
    assert get_session(db_conn, a["id"])["next_session_id"] is None
    assert get_session(db_conn, b["id"])["next_session_id"] == c["id"]


def test_set_next_session_rejects_self_link(db_conn):
    pid = _project_id(db_conn)
    a = create_session(db_conn, project_id=pid, name="a")
    with pytest.raises(ValueError, match="itself"):
        set_next_session(db_conn, a["id"], a["id"])


def test_set_next_session_rejects_cycle(db_conn):
    pid = _project_id(db_conn)
    a = create_session(db_conn, project_id=pid, name="a")
    b = create_session(db_conn, project_id=pid, name="b")
    set_next_session(db_conn, a["id"], b["id"])
    with pytest.raises(ValueError, match="cycle"):
        set_next_session(db_conn, b["id"], a["id"])


def test_set_next_session_rejects_cross_project(db_conn):
    pid = _project_id(db_conn)
    other = add_project(db_conn, "other", "/tmp/other")
    a = create_session(db_conn, project_id=pid, name="a")
    b = create_session(db_conn, project_id=other["id"], name="b")
    with pytest.raises(ValueError, match="same project"):
        set_next_session(db_conn, a["id"], b["id"])


def test_set_next_session_none_clears(db_conn):
    pid = _project_id(db_conn)
    a = create_session(db_conn, project_id=pid, name="a")
    b = create_session(db_conn, project_id=pid, name="b")
    set_next_session(db_conn, a["id"], b["id"])
    assert set_next_session(db_conn, a["id"], None)["next_session_id"] is None


def test_remove_session_clears_inbound_pointer(db_conn):
    pid = _project_id(db_conn)
    a = create_session(db_conn, project_id=pid, name="a")
    b = create_session(db_conn, project_id=pid, name="b", prompt="task")
    set_next_session(db_conn, a["id"], b["id"])
    assert remove_session(db_conn, b["id"]) is True
    assert get_session(db_conn, a["id"])["next_session_id"] is None
    assert list_tasks(db_conn, project_id=pid) == []
    assert remove_session(db_conn, b["id"]) is False


# -- tasks --


def test_create_task_default_locations(db_conn):
    pid = _project_id(db_conn)
    session = create_session(db_conn, project_id=pid, name="s")
    backlog = create_task(db_conn, project_id=pid, prompt="later")
    todo = create_task(db_conn, project_id=pid, prompt="now", session_id=session["id"])
    assert backlog["location"] == "backlog"
    assert backlog["session_id"] is None
    assert todo["location"] == "todo"
    assert todo["status"] == "pending"


def test_create_task_project_scoped_location_drops_session(db_conn):
    pid = _project_id(db_conn)
    session = create_session(db_conn, project_id=pid, name="s")
    queued = create_task(
        db_conn, project_id=pid, prompt="q", session_id=session["id"], location="queue"
    )
    assert queued["session_id"] is None


def test_create_task_todo_requires_session(db_conn):
    pid = _project_id(db_conn)
    with pytest.raises(ValueError, match="requires a session"):
        create_task(db_conn, project_id=pid, prompt="x", location="todo")


def test_task_order_is_scoped(db_conn):
    pid = _project_id(db_conn)
    s1 = create_session(db_conn, project_id=pid, name="s1")
    s2 = create_session(db_conn, project_id=pid, name="s2")
    a = create_task(db_conn, project_id=pid, prompt="a", session_id=s1["id"])
    b = create_task(db_conn, project_id=pid, prompt="b", session_id=s1["id"])
    c = create_task(db_conn, project_id=pid, prompt="c", session_id=s2["id"])
    assert (a["task_order"], b["task_order"], c["task_order"]) == (0, 1, 0)


def test_next_pending_task_respects_order(db_conn):
    pid = _project_id(db_conn)
    s = create_session(db_conn, project_id=pid, name="s")
    a = create_task(db_conn, project_id=pid, prompt="a", session_id=s["id"])
    b = create_task(db_conn, project_id=pid, prompt="b", session_id=s["id"])
    reorder_tasks(db_conn, [{"id": a["id"], "task_order": 9}, {"id": b["id"], "task_order": 0}])
    assert next_pending_task(db_conn, s["id"])["id"] == b["id"]


def test_finish_task_moves_to_done(db_conn):
    pid = _project_id(db_conn)
    s = create_session(db_conn, project_id=pid, name="s")
    t = create_task(db_conn, project_id=pid, prompt="a", session_id=s["id"])
    mark_task_started(db_conn, t["id"])
    assert get_task(db_conn, t["id"])["started_at"] is not None
    finish_task(db_conn, t["id"], "completed")
    done = get_task(db_conn, t["id"])
    assert done["status"] == "completed"
    assert done["location"] == "done"
    assert done["completed_at"] is not None


def test_finish_task_rejects_non_terminal(db_conn):
    pid = _project_id(db_conn)
    t = create_task(db_conn, project_id=pid, prompt="a")
    with pytest.raises(ValueError):
        finish_task(db_conn, t["id"], "running")


def test_move_task_back_to_todo_resets_status(db_conn):
    pid = _project_id(db_conn)
    s = create_session(db_conn, project_id=pid, name="s")
    t = create_task(db_conn, project_id=pid, prompt="a", session_id=s["id"])
    create_task(db_conn, project_id=pid, prompt="b", session_id=s["id"])
    finish_task(db_conn, t["id"], "failed")
    moved = move_task(db_conn, t["id"], "todo")
    assert moved["status"] == "pending"
    assert moved["location"] == "todo"
    assert moved["task_order"] == 2  # appended after "b"


def test_move_task_to_backlog_clears_session(db_conn):
    pid = _project_id(db_conn)
    s = create_session(db_conn, project_id=pid, name="s")
    t = create_task(db_conn, project_id=pid, prompt="a", session_id=s["id"])
    moved = move_task(db_conn, t["id"], "backlog")
    assert moved["session_id"] is None
    assert moved["location"] == "backlog"


def test_move_running_task_rejected(db_conn):
    pid = _project_id(db_conn)
    s = create_session(db_conn, project_id=pid, name="s")
    t = create_task(db_conn, project_id=pid, prompt="a", session_id=s["id"])
    mark_task_started(db_conn, t["id"])
    with pytest.raises(ValueError, match="running"):
        move_task(db_conn, t["id"], "backlog")


def test_move_backlog_task_to_todo_needs_session(db_conn):
    pid = _project_id(db_conn)
    t = create_task(db_conn, project_id=pid, prompt="a")
    with pytest.raises(ValueError, match="requires a session"):
        move_task(db_conn, t["id"], "todo")


def test_list_done_tasks_newest_first(db_conn):
    pid = _project_id(db_conn)
    s = create_session(db_conn, project_id=pid, name="s")
    a = create_task(db_conn, project_id=pid, prompt="a", session_id=s["id"])
    b = create_task(db_conn, project_id=pid, prompt="b", session_id=s["id"])
    finish_task(db_conn, a["id"], "completed")
    finish_task(db_conn, b["id"], "completed")
    db_conn.execute(
        "UPDATE tasks SET completed_at = '2020-01-01T00:00:00Z' WHERE id = ?", (a["id"],)
    )
    done = list_tasks(db_conn, session_id=s["id"], location="done")
    assert [t["id"] for t in done] == [b["id"], a["id"]]


def test_drain_queue_into_session_respects_limit(db_conn):
    pid = _project_id(db_conn)
    s = create_session(db_conn, project_id=pid, name="s")
    queued = [
        create_task(db_conn, project_id=pid, prompt=f"q{i}", location="queue") for i in range(3)
    ]
    moved = drain_queue_into_session(db_conn, s["id"], 2)
    assert moved == [queued[0]["id"], queued[1]["id"]]
    todo = list_tasks(db_conn, session_id=s["id"], location="todo")
    assert [t["prompt"] for t in todo] == ["q0", "q1"]
    assert [t["prompt"] for t in list_tasks(db_conn, project_id=pid, location="queue")] == ["q2"]


# -- events & settings --


def test_task_events_round_trip_in_order(db_conn):
    pid = _project_id(db_conn)
    t = create_task(db_conn, project_id=pid, prompt="a")
    add_task_event(db_conn, task_id=t["id"], event_type="system", data={"type": "task_started"})
    add_task_event(db_conn, task_id=t["id"], event_type="raw", data={"type": "raw", "text": "hi"})
    events = list_task_events(db_conn, t["id"])
    assert [e["event_type"] for e in events] == ["system", "raw"]
    assert events[1]["data"]["text"] == "hi"
    assert len(list_task_events(db_conn, t["id"], limit=1)) == 1


def test_next_counter_value_increments(db_conn):
    assert next_counter_value(db_conn, "imageCounter") == 1
    assert next_counter_value(db_conn, "imageCounter") == 2
    assert next_counter_value(db_conn, "fresh") == 1
