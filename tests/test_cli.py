"""Tests for the CLI commands.

Without a daemon on the socket, every command dispatches in-process
against a per-test database.
"""

from __future__ import annotations

import json
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from click.testing import CliRunner

from clork.cli import main
from clork.db import create_session, get_project


@pytest.fixture()
def cli(db_conn_path, tmp_path):
    """Invoke the CLI with no daemon and the per-test database."""
    _conn, db_path = db_conn_path
    runner = CliRunner()

    def invoke(*args: str, input: str | None = None):
        with (
            patch("clork.cli.SOCKET_PATH", tmp_path / "no-daemon.sock"),
            patch("clork.db.DEFAULT_DB_PATH", db_path),
        ):
            return runner.invoke(main, list(args), input=input)

    return invoke


def _json(result) -> dict | list:
    return json.loads(result.output)


# ---------------------------------------------------------------------------
# JSON error handling (group-level)
# ---------------------------------------------------------------------------


def test_unknown_command_suggests_close_match(cli):
    result = cli("sesion", "list")
    assert result.exit_code != 0
    payload = _json(result)
    assert payload["ok"] is False
    assert "Did you mean: session" in payload["error"]


def test_bad_option_is_json_error(cli):
    result = cli("status", "--no-such-flag")
    assert result.exit_code != 0
    assert "no-such-flag" in _json(result)["error"]


def test_api_error_carries_code(cli):
    result = cli("project", "show", "missing")
    assert result.exit_code == 1
    assert _json(result) == {
        "ok": False,
        "error": "Project 'missing' not found",
        "code": "NOT_FOUND",
    }


def test_version(cli):
    result = cli("--version")
    assert result.exit_code == 0
    assert "version" in result.output


# ---------------------------------------------------------------------------
# Projects
# ---------------------------------------------------------------------------


def test_init_registers_directory(cli, tmp_path):
    repo = tmp_path / "myrepo"
    repo.mkdir()
    result = cli("init", str(repo))
    assert result.exit_code == 0, result.output
    data = _json(result)
    assert data["name"] == "myrepo"
    assert data["root_dir"] == str(repo.resolve())


def test_project_add_list_update_remove(cli, tmp_path):
    result = cli("project", "add", "web", "--dir", str(tmp_path), "--model", "m1")
    assert result.exit_code == 0, result.output
    assert _json(result)["default_model"] == "m1"

    names = [p["name"] for p in _json(cli("project", "list"))]
    assert sorted(names) == ["testproj", "web"]

    updated = _json(cli("project", "update", "web", "--auto-continue", "--max-tasks", "3"))
    assert updated["auto_continue"] == 1
    assert updated["max_tasks_per_session"] == 3

    removed = _json(cli("project", "remove", "web", "--yes"))
    assert removed["name"] == "web"


def test_project_remove_requires_confirmation(cli):
    result = cli("project", "remove", "testproj", input="n\n")
    assert result.exit_code == 0
    assert _json(cli("project", "show", "testproj"))["name"] == "testproj"


def test_project_add_rejects_bad_permission_mode(cli, tmp_path):
    result = cli("project", "add", "x", "--dir", str(tmp_path), "--permission-mode", "yolo")
    assert result.exit_code != 0
    assert _json(result)["ok"] is False


# ---------------------------------------------------------------------------
# Sessions and tasks
# ---------------------------------------------------------------------------


def test_session_and_task_flow(cli):
    session = _json(cli("session", "create", "refactor", "-p", "testproj", "--prompt", "step 1"))
    sid = session["id"]

    added = _json(cli("task", "add", "step 2", "-p", "testproj", "-s", sid))
    assert added["location"] == "todo"

    shown = _json(cli("session", "show", sid))
    assert [t["prompt"] for t in shown["todo"]] == ["step 1", "step 2"]

    backlog = _json(cli("task", "add", "someday", "-p", "testproj"))
    assert backlog["location"] == "backlog"

    moved = _json(cli("task", "move", backlog["id"], "todo", "-s", sid))
    assert moved["session_id"] == sid

    listed = _json(cli("task", "list", "-s", sid, "--location", "todo"))
    assert [t["prompt"] for t in listed] == ["step 1", "step 2", "someday"]

    edited = _json(cli("task", "edit", added["id"], "--prompt", "step two"))
    assert edited["prompt"] == "step two"

    assert _json(cli("task", "remove", backlog["id"]))["deleted"] is True
    assert _json(cli("task", "events", added["id"])) == []


def test_session_list_and_update(cli):
    a = _json(cli("session", "create", "a", "-p", "testproj", "--model", "m1"))
    _json(cli("session", "create", "b", "-p", "testproj"))

    listed = _json(cli("session", "list", "-p", "testproj"))
    assert [s["name"] for s in listed] == ["a", "b"]

    cleared = _json(cli("session", "update", a["id"], "--clear-model", "--name", "first"))
    assert cleared["model"] is None
    assert cleared["name"] == "first"


def test_session_chain(cli):
    a = _json(cli("session", "create", "a", "-p", "testproj"))
    b = _json(cli("session", "create", "b", "-p", "testproj"))
    assert _json(cli("session", "chain", a["id"], b["id"]))["next_session_id"] == b["id"]
    assert _json(cli("session", "chain", a["id"], "--clear"))["next_session_id"] is None

    result = cli("session", "chain", a["id"])
    assert result.exit_code != 0
    assert "--clear" in _json(result)["error"]


def test_reorder_parses_pairs(cli, db_conn_path):
    conn, _ = db_conn_path
    pid = get_project(conn, "testproj")["id"]
    a = create_session(conn, project_id=pid, name="a")
    b = create_session(conn, project_id=pid, name="b")

    result = cli("session", "reorder", f"{a['id']}:1", f"{b['id']}:0")
    assert _json(result) == {"updated": 2}
    assert [s["name"] for s in _json(cli("session", "list", "-p", "testproj"))] == ["b", "a"]


def test_reorder_rejects_malformed_pairs(cli):
    result = cli("task", "reorder", "abc")
    assert result.exit_code != 0
    assert "Expected ID:ORDER" in _json(result)["error"]

    result = cli("task", "reorder", "abc:first")
    assert "must be an integer" in _json(result)["error"]


def test_task_edit_requires_a_change(cli):
    task = _json(cli("task", "add", "x", "-p", "testproj"))
    result = cli("task", "edit", task["id"])
    assert result.exit_code != 0
    assert "Nothing to change" in _json(result)["error"]


def test_prompt_length_is_limited(cli):
    with patch("clork.cli.MAX_PROMPT_LENGTH", 5):
        result = cli("task", "add", "far too long", "-p", "testproj")
    assert result.exit_code != 0
    assert "max 5" in _json(result)["error"]


def test_runtime_commands_need_daemon(cli):
    session = _json(cli("session", "create", "a", "-p", "testproj", "--prompt", "go"))
    result = cli("session", "start", session["id"])
    assert result.exit_code == 1
    payload = _json(result)
    assert payload["code"] == "CONFLICT"
    assert "daemon" in payload["error"]

    task_id = _json(cli("task", "list", "-s", session["id"]))[0]["id"]
    assert _json(cli("task", "abort", task_id))["code"] == "CONFLICT"
    assert _json(cli("task", "respond", task_id, "yes"))["code"] == "CONFLICT"


def test_session_stop_works_offline(cli):
    session = _json(cli("session", "create", "a", "-p", "testproj"))
    stopped = _json(cli("session", "stop", session["id"]))
    assert stopped["is_active"] == 0


# ---------------------------------------------------------------------------
# Usage, settings, status
# ---------------------------------------------------------------------------


def test_usage_reads_cached_snapshot(cli):
    with patch("clork.api.get_usage_snapshot_safe", return_value={"rate_limits": []}):
        assert _json(cli("usage")) == {"rate_limits": []}
        assert _json(cli("usage", "show")) == {"rate_limits": []}


def test_usage_refresh_needs_daemon(cli):
    assert _json(cli("usage", "refresh"))["code"] == "CONFLICT"


def test_settings(cli):
    assert _json(cli("settings")) == {"theme": "dark", "image_counter": 0}
    assert _json(cli("settings", "set", "--theme", "light"))["theme"] == "light"
    result = cli("settings", "set", "--theme", "neon")
    assert result.exit_code != 0


def test_status_offline(cli):
    data = _json(cli("status"))
    assert data["daemon"] is False
    assert data["projects"] == 1


def test_requests_go_through_daemon_when_available(cli):
    fake_call = AsyncMock(return_value={"ok": True, "data": {"daemon": True}})
    with patch("clork.cli.call", fake_call):
        assert _json(cli("status")) == {"daemon": True}
    assert fake_call.await_args.args[0] == "status"


def test_daemon_connection_error_is_reported(cli):
    with patch("clork.cli.call", AsyncMock(side_effect=ConnectionResetError("reset"))):
        result = cli("status")
    assert result.exit_code == 1
    assert "Daemon connection failed" in _json(result)["error"]


# ---------------------------------------------------------------------------
# watch
# ---------------------------------------------------------------------------


def test_watch_prints_stream_events(cli):
    subscriber = MagicMock()
    subscriber.available = True
    subscriber.__iter__.return_value = iter(
        [{"type": "task:started", "id": "t1"}, None, {"type": "task:completed", "id": "t1"}]
    )
    with patch("clork.cli.EventSubscriber", return_value=subscriber) as cls:
        result = cli("watch", "-p", "p1", "--count", "2", "--from-start")
    assert result.exit_code == 0, result.output
    lines = [json.loads(line) for line in result.output.splitlines()]
    assert [e["type"] for e in lines] == ["task:started", "task:completed"]
    assert cls.call_args.kwargs["project_id"] == "p1"
    assert cls.call_args.kwargs["cursor"] == "0"


def test_watch_without_redis_or_daemon(cli):
    subscriber = MagicMock()
    subscriber.available = False
    with patch("clork.cli.EventSubscriber", return_value=subscriber):
        result = cli("watch", "--count", "1")
    assert result.exit_code == 1
    assert "Neither Redis nor the daemon" in _json(result)["error"]


# ---------------------------------------------------------------------------
# daemon
# ---------------------------------------------------------------------------


def test_daemon_status_not_running(cli, tmp_path):
    with patch("clork.cli.DEFAULT_PID_PATH", tmp_path / "none.pid"):
        data = _json(cli("daemon", "status"))
    assert data["running"] is False
    assert data["pid"] is None
    assert data["socket_exists"] is False


def test_daemon_stop_when_not_running(cli, tmp_path):
    with patch("clork.cli.DEFAULT_PID_PATH", tmp_path / "none.pid"):
        assert _json(cli("daemon", "stop")) == {"ok": True, "status": "not_running"}


def test_daemon_pid_file_with_dead_process(cli, tmp_path):
    pid_file = tmp_path / "d.pid"
    pid_file.write_text("999999999")
    with patch("clork.cli.DEFAULT_PID_PATH", pid_file):
        data = _json(cli("daemon", "status"))
    assert data["running"] is False
