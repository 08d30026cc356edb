"""SQLite database for clork state."""

from __future__ import annotations

import contextlib
import json
import sqlite3
import uuid
from collections.abc import Mapping, Sequence
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, TypedDict, cast

from clork.paths import DEFAULT_DB_PATH

DEFAULT_MODEL = "claude-sonnet-4-20250514"
DEFAULT_PERMISSION_MODE = "default"
DEFAULT_MAX_TASKS_PER_SESSION = 10
VALID_PERMISSION_MODES = {"plan", "default", "full"}

VALID_SESSION_STATUSES = {"idle", "queued", "running", "completed"}

VALID_TASK_STATUSES = {"pending", "running", "completed", "failed", "aborted"}
TASK_TERMINAL_STATUSES = {"completed", "failed", "aborted"}
VALID_TASK_LOCATIONS = {"backlog", "queue", "todo", "done"}
# backlog/queue are ordered per project; todo/done per session.
PROJECT_SCOPED_LOCATIONS = {"backlog", "queue"}

_UNSET: Any = object()


def _utcnow() -> str:
    """ISO 8601 UTC timestamp matching SQLite strftime format."""
    return datetime.now(UTC).strftime("%Y-%m-%dT%H:%M:%SZ")


def _utcnow_ms() -> str:
    """Millisecond timestamp for append-only event rows."""
    return datetime.now(UTC).strftime("%Y-%m-%dT%H:%M:%S.%f")[:-3] + "Z"


def _new_id() -> str:
    return uuid.uuid4().hex[:12]


# Bump when adding migrations. 0 = a database created before any migration ran.
SCHEMA_VERSION = 1

SCHEMA = """\
CREATE TABLE IF NOT EXISTS projects (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    root_dir TEXT NOT NULL,
    default_model TEXT NOT NULL DEFAULT 'claude-sonnet-4-20250514',
    permission_mode TEXT NOT NULL DEFAULT 'default',
    auto_continue INTEGER NOT NULL DEFAULT 0,
    max_tasks_per_session INTEGER NOT NULL DEFAULT 10,
    created_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%SZ', 'now')),
    updated_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%SZ', 'now'))
);

CREATE TABLE IF NOT EXISTS sessions (
    id TEXT PRIMARY KEY,
    project_id TEXT NOT NULL REFERENCES projects(id) ON DELETE CASCADE,
    name TEXT NOT NULL,
    model TEXT,
    status TEXT NOT NULL DEFAULT 'idle',
    session_order INTEGER NOT NULL,
    conversation_id TEXT,
    next_session_id TEXT REFERENCES sessions(id) ON DELETE SET NULL,
    is_active INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%SZ', 'now')),
    updated_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%SZ', 'now'))
);

CREATE TABLE IF NOT EXISTS tasks (
    id TEXT PRIMARY KEY,
    project_id TEXT NOT NULL REFERENCES projects(id) ON DELETE CASCADE,
    session_id TEXT REFERENCES sessions(id) ON DELETE CASCADE,
    prompt TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'pending',
    location TEXT NOT NULL DEFAULT 'backlog',
    task_order INTEGER NOT NULL,
    created_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%SZ', 'now')),
    updated_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%SZ', 'now')),
    started_at TEXT,
    completed_at TEXT
);

CREATE TABLE IF NOT EXISTS task_events (
    id TEXT PRIMARY KEY,
    task_id TEXT NOT NULL REFERENCES tasks(id) ON DELETE CASCADE,
    event_type TEXT NOT NULL,
    data TEXT NOT NULL DEFAULT '{}',
    created_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%fZ', 'now'))
);

CREATE TABLE IF NOT EXISTS settings (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL
);
"""


# -- Row TypedDicts matching table schemas --


class ProjectRow(TypedDict):
    id: str
    name: str
    root_dir: str
    default_model: str
    permission_mode: str
    auto_continue: int
    max_tasks_per_session: int
    created_at: str
    updated_at: str


class SessionRow(TypedDict):
    id: str
    project_id: str
    name: str
    model: str | None
    status: str
    session_order: int
    conversation_id: str | None
    next_session_id: str | None
    is_active: int
    created_at: str
    updated_at: str


class TaskRow(TypedDict):
    id: str
    project_id: str
    session_id: str | None
    prompt: str
    status: str
    location: str
    task_order: int
    created_at: str
    updated_at: str
    started_at: str | None
    completed_at: str | None


class TaskEventRow(TypedDict):
    id: str
    task_id: str
    event_type: str
    data: Any
    created_at: str


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
        _migrate(conn, current_version)
        _create_indexes(conn)
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


def _migrate_to_v1(conn: sqlite3.Connection) -> None:
    """v1: seed settings the app reads before anything writes them."""
    conn.execute("INSERT OR IGNORE INTO settings (key, value) VALUES ('imageCounter', '0')")


_MIGRATIONS = [
    (1, _migrate_to_v1),
]


def _migrate(conn: sqlite3.Connection, from_version: int) -> None:
    """Run schema migrations from from_version to SCHEMA_VERSION.

    Migrations run after SCHEMA, so they only touch data or add what the
    CREATE statements cannot express. Commit is handled by the caller.
    """
    for version, migration_fn in _MIGRATIONS:
        if from_version < version:
            migration_fn(conn)


def _create_indexes(conn: sqlite3.Connection) -> None:
    """Create non-PK indexes for common query patterns. Idempotent."""
    conn.executescript("""
        CREATE INDEX IF NOT EXISTS idx_sessions_project_id ON sessions(project_id);
        CREATE INDEX IF NOT EXISTS idx_sessions_project_status ON sessions(project_id, status);
        CREATE INDEX IF NOT EXISTS idx_sessions_next ON sessions(next_session_id);
        CREATE INDEX IF NOT EXISTS idx_tasks_session_location
            ON tasks(session_id, location, task_order);
        CREATE INDEX IF NOT EXISTS idx_tasks_project_location
            ON tasks(project_id, location, task_order);
        CREATE INDEX IF NOT EXISTS idx_tasks_session_status ON tasks(session_id, status);
        CREATE INDEX IF NOT EXISTS idx_task_events_task_id
            ON task_events(task_id, created_at);
    """)


def _validate_choice(kind: str, value: str, valid: set[str]) -> None:
    if value not in valid:
        raise ValueError(f"Invalid {kind} '{value}'. Must be one of: {sorted(valid)}")


# -- projects --


def add_project(
    conn: sqlite3.Connection,
    name: str,
    root_dir: str,
    *,
    default_model: str | None = None,
    permission_mode: str | None = None,
) -> ProjectRow:
    permission_mode = permission_mode or DEFAULT_PERMISSION_MODE
    _validate_choice("permission mode", permission_mode, VALID_PERMISSION_MODES)
    project_id = _new_id()
    conn.execute(
        "INSERT INTO projects (id, name, root_dir, default_model, permission_mode) "
        "VALUES (?, ?, ?, ?, ?)",
        (project_id, name, root_dir, default_model or DEFAULT_MODEL, permission_mode),
    )
    conn.commit()
    project = get_project(conn, project_id)
    assert project is not None
    return project


def list_projects(conn: sqlite3.Connection) -> list[ProjectRow]:
    rows = conn.execute("SELECT * FROM projects ORDER BY created_at DESC, rowid DESC").fetchall()
    return [cast(ProjectRow, dict(row)) for row in rows]


def get_project(conn: sqlite3.Connection, name_or_id: str) -> ProjectRow | None:
    row = conn.execute(
        "SELECT * FROM projects WHERE id = ? OR name = ? ORDER BY id = ? DESC LIMIT 1",
        (name_or_id, name_or_id, name_or_id),
    ).fetchone()
    return cast(ProjectRow, dict(row)) if row else None


def update_project(
    conn: sqlite3.Connection,
    project_id: str,
    *,
    name: str | None = None,
    root_dir: str | None = None,
    default_model: str | None = None,
    permission_mode: str | None = None,
    auto_continue: bool | None = None,
    max_tasks_per_session: int | None = None,
) -> ProjectRow | None:
    """Apply settings changes to a project. Returns the updated row or None if not found."""
    existing = get_project(conn, project_id)
    if not existing:
        return None
    if permission_mode is not None:
        _validate_choice("permission mode", permission_mode, VALID_PERMISSION_MODES)
    if max_tasks_per_session is not None and max_tasks_per_session < 1:
        raise ValueError("max_tasks_per_session must be >= 1")
    conn.execute(
        "UPDATE projects SET name = ?, root_dir = ?, default_model = ?, permission_mode = ?, "
        "auto_continue = ?, max_tasks_per_session = ?, updated_at = ? WHERE id = ?",
        (
            name or existing["name"],
            root_dir or existing["root_dir"],
            default_model or existing["default_model"],
            permission_mode or existing["permission_mode"],
            int(auto_continue) if auto_continue is not None else existing["auto_continue"],
            max_tasks_per_session or existing["max_tasks_per_session"],
            _utcnow(),
            existing["id"],
        ),
    )
    conn.commit()
    return get_project(conn, existing["id"])


def remove_project(conn: sqlite3.Connection, name_or_id: str) -> dict | None:
    """Remove a project; sessions, tasks and events cascade.

    Returns a summary dict with counts of deleted rows, or None if project not found.
    """
    project = get_project(conn, name_or_id)
    if not project:
        return None
    project_id = project["id"]
    counts = {
        "sessions": conn.execute(
            "SELECT COUNT(*) FROM sessions WHERE project_id = ?", (project_id,)
        ).fetchone()[0],
        "tasks": conn.execute(
            "SELECT COUNT(*) FROM tasks WHERE project_id = ?", (project_id,)
        ).fetchone()[0],
    }
    conn.execute("DELETE FROM projects WHERE id = ?", (project_id,))
    conn.commit()
    return {"id": project_id, "name": project["name"], "deleted": counts}


# -- sessions --


def create_session(
    conn: sqlite3.Connection,
    *,
    project_id: str,
    name: str,
    model: str | None = None,
    prompt: str | None = None,
) -> SessionRow:
    """Create a new idle session at the end of the project's ordering.

    A non-empty *prompt* seeds the session with its first todo task.
    """
    session_id = _new_id()
    max_order = conn.execute(
        "SELECT COALESCE(MAX(session_order), -1) FROM sessions WHERE project_id = ?",
        (project_id,),
    ).fetchone()[0]
    conn.execute(
        "INSERT INTO sessions (id, project_id, name, model, status, session_order) "
        "VALUES (?, ?, ?, ?, 'idle', ?)",
        (session_id, project_id, name, model or None, max_order + 1),
    )
    conn.commit()
    if prompt and prompt.strip():
        create_task(conn, project_id=project_id, session_id=session_id, prompt=prompt.strip())
    session = get_session(conn, session_id)
    assert session is not None
    return session


def get_session(conn: sqlite3.Connection, session_id: str) -> SessionRow | None:
    """Lookup a session by ID."""
    row = conn.execute("SELECT * FROM sessions WHERE id = ?", (session_id,)).fetchone()
    return cast(SessionRow, dict(row)) if row else None


def list_sessions(
    conn: sqlite3.Connection,
    project_id: str | None = None,
    status: str | None = None,
) -> list[SessionRow]:
    """List sessions in execution order with optional project/status filtering."""
    query = "SELECT * FROM sessions"
    conditions: list[str] = []
    params: list[str] = []
    if project_id:
        conditions.append("project_id = ?")
        params.append(project_id)
    if status:
        conditions.append("status = ?")
        params.append(status)
    if conditions:
        query += " WHERE " + " AND ".join(conditions)
    query += " ORDER BY session_order ASC, rowid ASC"
    rows = conn.execute(query, params).fetchall()
    return [cast(SessionRow, dict(row)) for row in rows]


def get_running_session(
    conn: sqlite3.Connection, project_id: str, *, exclude: str | None = None
) -> SessionRow | None:
    """Return a running session in the project other than *exclude*, if any."""
    row = conn.execute(
        "SELECT * FROM sessions WHERE project_id = ? AND status = 'running' AND id != ? "
        "ORDER BY session_order ASC, rowid ASC LIMIT 1",
        (project_id, exclude or ""),
    ).fetchone()
    return cast(SessionRow, dict(row)) if row else None


def next_queued_session(conn: sqlite3.Connection, project_id: str) -> SessionRow | None:
    """Earliest-ordered session waiting for the project's running slot."""
    row = conn.execute(
        "SELECT * FROM sessions WHERE project_id = ? AND status = 'queued' AND is_active = 1 "
        "ORDER BY session_order ASC, rowid ASC LIMIT 1",
        (project_id,),
    ).fetchone()
    return cast(SessionRow, dict(row)) if row else None


def update_session_status(conn: sqlite3.Connection, session_id: str, status: str) -> None:
    """Update session status. Validates against VALID_SESSION_STATUSES."""
    _validate_choice("session status", status, VALID_SESSION_STATUSES)
    conn.execute(
        "UPDATE sessions SET status = ?, updated_at = ? WHERE id = ?",
        (status, _utcnow(), session_id),
    )
    conn.commit()


def set_session_active(conn: sqlite3.Connection, session_id: str, active: bool) -> None:
    conn.execute(
        "UPDATE sessions SET is_active = ?, updated_at = ? WHERE id = ?",
        (int(active), _utcnow(), session_id),
    )
    conn.commit()


def update_session(
    conn: sqlite3.Connection,
    session_id: str,
    *,
    name: str | None = None,
    model: str | None = _UNSET,
    session_order: int | None = None,
) -> SessionRow | None:
    """Update display fields. ``model=None`` clears the override."""
    existing = get_session(conn, session_id)
    if not existing:
        return None
    new_model = existing["model"] if model is _UNSET else (model or None)
    conn.execute(
        "UPDATE sessions SET name = ?, model = ?, session_order = ?, updated_at = ? WHERE id = ?",
        (
            name or existing["name"],
            new_model,
            session_order if session_order is not None else existing["session_order"],
            _utcnow(),
            session_id,
        ),
    )
    conn.commit()
    return get_session(conn, session_id)


def set_session_conversation_id(
    conn: sqlite3.Connection, session_id: str, conversation_id: str
) -> None:
    """Store the agent conversation id used to resume the session."""
    conn.execute(
        "UPDATE sessions SET conversation_id = ?, updated_at = ? WHERE id = ?",
        (conversation_id, _utcnow(), session_id),
    )
    conn.commit()


def set_next_session(
    conn: sqlite3.Connection, session_id: str, next_session_id: str | None
) -> SessionRow | None:
    """Point *session_id* at the session that should run after it.

    Chains stay single-linked: any other session already pointing at the
    target loses its pointer first. Self-links, cross-project links and
    links that would close a cycle are rejected.
    """
    session = get_session(conn, session_id)
    if not session:
        return None
    if next_session_id:
        if next_session_id == session_id:
            raise ValueError("A session cannot chain to itself")
        target = get_session(conn, next_session_id)
        if not target:
            raise ValueError(f"Session '{next_session_id}' not found")
        if target["project_id"] != session["project_id"]:
            raise ValueError("Chained sessions must belong to the same project")
        if session_id in _chain_from(conn, next_session_id):
            raise ValueError("Chaining would create a cycle")
        with conn:
            conn.execute(
                "UPDATE sessions SET next_session_id = NULL, updated_at = ? "
                "WHERE next_session_id = ? AND id != ?",
                (_utcnow(), next_session_id, session_id),
            )
            conn.execute(
                "UPDATE sessions SET next_session_id = ?, updated_at = ? WHERE id = ?",
                (next_session_id, _utcnow(), session_id),
            )
    else:
        conn.execute(
            "UPDATE sessions SET next_session_id = NULL, updated_at = ? WHERE id = ?",
            (_utcnow(), session_id),
        )
        conn.commit()
    return get_session(conn, session_id)


def _chain_from(conn: sqlite3.Connection, session_id: str) -> list[str]:
    """Session ids reachable by following next_session_id from *session_id*."""
    seen: list[str] = []
    current: str | None = session_id
    while current and current not in seen:
        seen.append(current)
        row = conn.execute(
            "SELECT next_session_id FROM sessions WHERE id = ?", (current,)
        ).fetchone()
        current = row["next_session_id"] if row else None
    return seen


def reorder_sessions(conn: sqlite3.Connection, orders: Sequence[Mapping[str, Any]]) -> int:
    """Rewrite session_order for a batch of ``{"id", "session_order"}`` items atomically."""
    now = _utcnow()
    with conn:
        for item in orders:
            conn.execute(
                "UPDATE sessions SET session_order = ?, updated_at = ? WHERE id = ?",
                (int(item["session_order"]), now, item["id"]),
            )
    return len(orders)


def remove_session(conn: sqlite3.Connection, session_id: str) -> bool:
    """Delete a session and its tasks, clearing inbound chain pointers."""
    with conn:
        conn.execute(
            "UPDATE sessions SET next_session_id = NULL WHERE next_session_id = ?",
            (session_id,),
        )
        cur = conn.execute("DELETE FROM sessions WHERE id = ?", (session_id,))
    return cur.rowcount > 0


# -- tasks --


def _next_task_order(
    conn: sqlite3.Connection, location: str, *, project_id: str, session_id: str | None
) -> int:
    if location in PROJECT_SCOPED_LOCATIONS:
        row = conn.execute(
            "SELECT COALESCE(MAX(task_order), -1) FROM tasks WHERE project_id = ? AND location = ?",
            (project_id, location),
        ).fetchone()
    else:
        row = conn.execute(
            "SELECT COALESCE(MAX(task_order), -1) FROM tasks WHERE session_id = ? AND location = ?",
            (session_id, location),
        ).fetchone()
    return row[0] + 1


def create_task(
    conn: sqlite3.Connection,
    *,
    project_id: str,
    prompt: str,
    session_id: str | None = None,
    location: str | None = None,
) -> TaskRow:
    """Create a pending task. Defaults to the session's todo, else the project backlog."""
    location = location or ("todo" if session_id else "backlog")
    _validate_choice("task location", location, VALID_TASK_LOCATIONS)
    if location in PROJECT_SCOPED_LOCATIONS:
        session_id = None
    elif not session_id:
        raise ValueError(f"Location '{location}' requires a session")
    task_id = _new_id()
    order = _next_task_order(conn, location, project_id=project_id, session_id=session_id)
    conn.execute(
        "INSERT INTO tasks (id, project_id, session_id, prompt, status, location, task_order) "
        "VALUES (?, ?, ?, ?, 'pending', ?, ?)",
        (task_id, project_id, session_id, prompt, location, order),
    )
    conn.commit()
    task = get_task(conn, task_id)
    assert task is not None
    return task


def get_task(conn: sqlite3.Connection, task_id: str) -> TaskRow | None:
    row = conn.execute("SELECT * FROM tasks WHERE id = ?", (task_id,)).fetchone()
    return cast(TaskRow, dict(row)) if row else None


def list_tasks(
    conn: sqlite3.Connection,
    *,
    project_id: str | None = None,
    session_id: str | None = None,
    location: str | None = None,
    status: str | None = None,
) -> list[TaskRow]:
    """List tasks in scope order. ``done`` lists newest completion first."""
    query = "SELECT * FROM tasks"
    conditions: list[str] = []
    params: list[str] = []
    if project_id:
        conditions.append("project_id = ?")
        params.append(project_id)
    if session_id:
        conditions.append("session_id = ?")
        params.append(session_id)
    if location:
        conditions.append("location = ?")
        params.append(location)
    if status:
        conditions.append("status = ?")
        params.append(status)
    if conditions:
        query += " WHERE " + " AND ".join(conditions)
    if location == "done":
        query += " ORDER BY completed_at DESC, rowid DESC"
    else:
        query += " ORDER BY task_order ASC, rowid ASC"
    rows = conn.execute(query, params).fetchall()
    return [cast(TaskRow, dict(row)) for row in rows]


def next_pending_task(conn: sqlite3.Connection, session_id: str) -> TaskRow | None:
    """Earliest-ordered todo task still waiting to run in the session."""
    row = conn.execute(
        "SELECT * FROM tasks WHERE session_id = ? AND location = 'todo' AND status = 'pending' "
        "ORDER BY task_order ASC, rowid ASC LIMIT 1",
        (session_id,),
    ).fetchone()
    return cast(TaskRow, dict(row)) if row else None


def get_running_task(conn: sqlite3.Connection, session_id: str) -> TaskRow | None:
    row = conn.execute(
        "SELECT * FROM tasks WHERE session_id = ? AND status = 'running' LIMIT 1",
        (session_id,),
    ).fetchone()
    return cast(TaskRow, dict(row)) if row else None


def mark_task_started(conn: sqlite3.Connection, task_id: str) -> None:
    now = _utcnow()
    conn.execute(
        "UPDATE tasks SET status = 'running', started_at = ?, completed_at = NULL, "
        "updated_at = ? WHERE id = ?",
        (now, now, task_id),
    )
    conn.commit()


def finish_task(conn: sqlite3.Connection, task_id: str, status: str) -> None:
    """Record a terminal status and move the task to its session's done pool."""
    _validate_choice("terminal task status", status, TASK_TERMINAL_STATUSES)
    now = _utcnow()
    conn.execute(
        "UPDATE tasks SET status = ?, location = 'done', completed_at = ?, updated_at = ? "
        "WHERE id = ?",
        (status, now, now, task_id),
    )
    conn.commit()


def move_task(
    conn: sqlite3.Connection,
    task_id: str,
    location: str,
    *,
    session_id: str | None = _UNSET,
    task_order: int | None = None,
) -> TaskRow | None:
    """Move a task to another location, appending it to the new scope.

    Running tasks cannot move. Re-entering ``todo`` from a terminal state
    resets the task to ``pending``.
    """
    task = get_task(conn, task_id)
    if not task:
        return None
    if task["status"] == "running":
        raise ValueError("Cannot move a running task")
    _validate_choice("task location", location, VALID_TASK_LOCATIONS)
    if location in PROJECT_SCOPED_LOCATIONS:
        new_session_id = None
    else:
        new_session_id = task["session_id"] if session_id is _UNSET else session_id
        if not new_session_id:
            raise ValueError(f"Location '{location}' requires a session")
    if task_order is None:
        task_order = _next_task_order(
            conn, location, project_id=task["project_id"], session_id=new_session_id
        )
    status = task["status"]
    if location == "todo" and status in TASK_TERMINAL_STATUSES:
        status = "pending"
    conn.execute(
        "UPDATE tasks SET location = ?, session_id = ?, task_order = ?, status = ?, "
        "updated_at = ? WHERE id = ?",
        (location, new_session_id, task_order, status, _utcnow(), task_id),
    )
    conn.commit()
    return get_task(conn, task_id)


def reorder_tasks(conn: sqlite3.Connection, orders: Sequence[Mapping[str, Any]]) -> int:
    """Rewrite task_order for a batch of ``{"id", "task_order"}`` items atomically."""
    now = _utcnow()
    with conn:
        for item in orders:
            conn.execute(
                "UPDATE tasks SET task_order = ?, updated_at = ? WHERE id = ?",
                (int(item["task_order"]), now, item["id"]),
            )
    return len(orders)


def update_task_prompt(conn: sqlite3.Connection, task_id: str, prompt: str) -> TaskRow | None:
    conn.execute(
        "UPDATE tasks SET prompt = ?, updated_at = ? WHERE id = ?",
        (prompt, _utcnow(), task_id),
    )
    conn.commit()
    return get_task(conn, task_id)


def remove_task(conn: sqlite3.Connection, task_id: str) -> bool:
    cur = conn.execute("DELETE FROM tasks WHERE id = ?", (task_id,))
    conn.commit()
    return cur.rowcount > 0


def drain_queue_into_session(conn: sqlite3.Connection, session_id: str, limit: int) -> list[str]:
    """Move up to *limit* project-queue tasks (in queue order) into the session's todo."""
    session = get_session(conn, session_id)
    if not session or limit <= 0:
        return []
    queued = conn.execute(
        "SELECT id FROM tasks WHERE project_id = ? AND location = 'queue' "
        "ORDER BY task_order ASC, rowid ASC LIMIT ?",
        (session["project_id"], limit),
    ).fetchall()
    moved: list[str] = []
    for row in queued:
        move_task(conn, row["id"], "todo", session_id=session_id)
        moved.append(row["id"])
    return moved


# -- task events --


def add_task_event(
    conn: sqlite3.Connection,
    *,
    task_id: str,
    event_type: str,
    data: dict | None = None,
) -> TaskEventRow:
    """Append an event to a task's log. Returns the stored row."""
    event_id = str(uuid.uuid4())
    created_at = _utcnow_ms()
    payload = data or {}
    conn.execute(
        "INSERT INTO task_events (id, task_id, event_type, data, created_at) "
        "VALUES (?, ?, ?, ?, ?)",
        (event_id, task_id, event_type, json.dumps(payload, default=str), created_at),
    )
    conn.commit()
    return {
        "id": event_id,
        "task_id": task_id,
        "event_type": event_type,
        "data": payload,
        "created_at": created_at,
    }


def list_task_events(
    conn: sqlite3.Connection, task_id: str, *, limit: int | None = None
) -> list[TaskEventRow]:
    """Return task events oldest first."""
    query = "SELECT * FROM task_events WHERE task_id = ? ORDER BY created_at ASC, rowid ASC"
    params: list[object] = [task_id]
    if limit is not None:
        query += " LIMIT ?"
        params.append(limit)
    result = []
    for row in conn.execute(query, params).fetchall():
        d = dict(row)
        try:
            d["data"] = json.loads(d["data"]) if d.get("data") else {}
        except (json.JSONDecodeError, TypeError):
            d["data"] = {}
        result.append(cast(TaskEventRow, d))
    return result


# -- settings --


def get_setting(conn: sqlite3.Connection, key: str, default: str | None = None) -> str | None:
    row = conn.execute("SELECT value FROM settings WHERE key = ?", (key,)).fetchone()
    return row["value"] if row else default


def set_setting(conn: sqlite3.Connection, key: str, value: str) -> None:
    conn.execute("INSERT OR REPLACE INTO settings (key, value) VALUES (?, ?)", (key, value))
    conn.commit()


def next_counter_value(conn: sqlite3.Connection, key: str) -> int:
    """Increment an integer setting and return the new value."""
    with conn:
        conn.execute("INSERT OR IGNORE INTO settings (key, value) VALUES (?, '0')", (key,))
        conn.execute(
            "UPDATE settings SET value = CAST(CAST(value AS INTEGER) + 1 AS TEXT) WHERE key = ?",
            (key,),
        )
    row = conn.execute("SELECT value FROM settings WHERE key = ?", (key,)).fetchone()
    return int(row["value"])
