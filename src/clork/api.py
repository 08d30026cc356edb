"""Request dispatch layer for the daemon socket and the CLI.

Protocol:
    request:  {"method": "task.show", "params": {"id": "abc123"}}
    response: {"ok": true, "data": {...}}
    response: {"ok": false, "error": "Not found", "code": "NOT_FOUND"}

Handlers take ``(ctx, params)`` and return JSON-serializable data, or an
awaitable of it. ``ctx.scheduler`` and ``ctx.poller`` are only present
inside the daemon; methods that need a live runtime fail with ``CONFLICT``
without one.
"""

from __future__ import annotations

import asyncio
import inspect
import sqlite3
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from clork import db
from clork.events import get_usage_snapshot_safe
from clork.scheduler import ConflictError, NotFoundError, Scheduler
from clork.usage_poller import UsagePoller

NOT_FOUND = "NOT_FOUND"
INVALID_PARAMS = "INVALID_PARAMS"
INVALID_METHOD = "INVALID_METHOD"
CONFLICT = "CONFLICT"
INTERNAL = "INTERNAL"

IMAGE_COUNTER_KEY = "imageCounter"
DEFAULT_THEME = "dark"


class ApiError(Exception):
    """Raised by handlers to produce a structured error response."""

    def __init__(self, message: str, code: str = INTERNAL):
        super().__init__(message)
        self.code = code


@dataclass
class ApiContext:
    conn: sqlite3.Connection
    scheduler: Scheduler | None = None
    poller: UsagePoller | None = None

    def require_scheduler(self) -> Scheduler:
        if self.scheduler is None:
            raise ApiError("This operation requires the clork daemon to be running", CONFLICT)
        return self.scheduler


def _require(params: dict, key: str) -> str:
    """Extract a required string param, raising ApiError if missing."""
    val = params.get(key)
    if not val:
        raise ApiError(f"Missing required param: {key}", INVALID_PARAMS)
    return str(val)


def _optional(params: dict, key: str) -> str | None:
    val = params.get(key)
    return str(val) if val is not None else None


def _optional_int(params: dict, key: str, *, min_value: int | None = None) -> int | None:
    val = params.get(key)
    if val is None:
        return None
    try:
        parsed = int(val)
    except (TypeError, ValueError) as exc:
        raise ApiError(f"Param '{key}' must be an integer", INVALID_PARAMS) from exc
    if min_value is not None and parsed < min_value:
        raise ApiError(f"Param '{key}' must be >= {min_value}", INVALID_PARAMS)
    return parsed


def _optional_bool(params: dict, key: str) -> bool | None:
    val = params.get(key)
    if val is None:
        return None
    if isinstance(val, str):
        return val.strip().lower() in {"1", "true", "yes", "on"}
    return bool(val)


def _order_list(params: dict, key: str, order_key: str) -> list[dict[str, Any]]:
    items = params.get(key)
    if not isinstance(items, list):
        raise ApiError(f"Param '{key}' must be a list", INVALID_PARAMS)
    orders = []
    for item in items:
        if not isinstance(item, dict) or "id" not in item or order_key not in item:
            raise ApiError(f"Each '{key}' item needs 'id' and '{order_key}'", INVALID_PARAMS)
        try:
            orders.append({"id": str(item["id"]), order_key: int(item[order_key])})
        except (TypeError, ValueError) as exc:
            raise ApiError(f"'{order_key}' must be an integer", INVALID_PARAMS) from exc
    return orders


def _resolve_project(conn, params: dict, key: str = "project") -> db.ProjectRow:
    """Resolve a project from ``project_id`` or ``project`` (name or id)."""
    ref = _optional(params, "project_id") or _optional(params, key)
    if not ref:
        raise ApiError(f"Missing required param: {key}", INVALID_PARAMS)
    project = db.get_project(conn, ref)
    if not project:
        raise ApiError(f"Project '{ref}' not found", NOT_FOUND)
    return project


def _get_session(conn, session_id: str) -> db.SessionRow:
    session = db.get_session(conn, session_id)
    if not session:
        raise ApiError(f"Session '{session_id}' not found", NOT_FOUND)
    return session


def _get_task(conn, task_id: str) -> db.TaskRow:
    task = db.get_task(conn, task_id)
    if not task:
        raise ApiError(f"Task '{task_id}' not found", NOT_FOUND)
    return task


def _maybe_process(ctx: ApiContext, session_id: str | None) -> None:
    """Kick an active session after its todo list changed."""
    if ctx.scheduler is None or not session_id:
        return
    session = db.get_session(ctx.conn, session_id)
    if session and session["is_active"]:
        ctx.scheduler.schedule(ctx.scheduler.process_session(session_id))


# ---------------------------------------------------------------------------
# Handlers
# ---------------------------------------------------------------------------

# -- projects --


def _handle_project_create(ctx, params):
    try:
        project = db.add_project(
            ctx.conn,
            _require(params, "name"),
            _require(params, "root_dir"),
            default_model=_optional(params, "default_model"),
            permission_mode=_optional(params, "permission_mode"),
        )
    except ValueError as exc:
        raise ApiError(str(exc), INVALID_PARAMS) from exc
    return dict(project)


def _handle_project_list(ctx, _params):
    return [dict(p) for p in db.list_projects(ctx.conn)]


def _handle_project_show(ctx, params):
    project = _resolve_project(ctx.conn, params, "id")
    pid = project["id"]
    return {
        **project,
        "sessions": [dict(s) for s in db.list_sessions(ctx.conn, pid)],
        "backlog": [dict(t) for t in db.list_tasks(ctx.conn, project_id=pid, location="backlog")],
        "queue": [dict(t) for t in db.list_tasks(ctx.conn, project_id=pid, location="queue")],
    }


def _handle_project_update(ctx, params):
    project = _resolve_project(ctx.conn, params, "id")
    try:
        updated = db.update_project(
            ctx.conn,
            project["id"],
            name=_optional(params, "name"),
            root_dir=_optional(params, "root_dir"),
            default_model=_optional(params, "default_model"),
            permission_mode=_optional(params, "permission_mode"),
            auto_continue=_optional_bool(params, "auto_continue"),
            max_tasks_per_session=_optional_int(params, "max_tasks_per_session", min_value=1),
        )
    except ValueError as exc:
        raise ApiError(str(exc), INVALID_PARAMS) from exc
    return dict(updated) if updated else None


def _handle_project_delete(ctx, params):
    project = _resolve_project(ctx.conn, params, "id")
    if ctx.scheduler is not None:
        return ctx.scheduler.delete_project(project["id"])
    return db.remove_project(ctx.conn, project["id"])


# -- sessions --


def _session_detail(ctx: ApiContext, session: db.SessionRow) -> dict:
    running_task_id = ctx.scheduler.running_task_id_for(session["id"]) if ctx.scheduler else None
    sid = session["id"]
    return {
        **session,
        "todo": [dict(t) for t in db.list_tasks(ctx.conn, session_id=sid, location="todo")],
        "done": [dict(t) for t in db.list_tasks(ctx.conn, session_id=sid, location="done")],
        "running_task_id": running_task_id,
    }


def _handle_session_create(ctx, params):
    project = _resolve_project(ctx.conn, params)
    session = db.create_session(
        ctx.conn,
        project_id=project["id"],
        name=_require(params, "name"),
        model=_optional(params, "model"),
        prompt=_optional(params, "prompt"),
    )
    return dict(session)


def _handle_session_list(ctx, params):
    project = _resolve_project(ctx.conn, params)
    status = _optional(params, "status")
    if status and status not in db.VALID_SESSION_STATUSES:
        raise ApiError(f"Invalid status '{status}'", INVALID_PARAMS)
    return [dict(s) for s in db.list_sessions(ctx.conn, project["id"], status)]


def _handle_session_show(ctx, params):
    return _session_detail(ctx, _get_session(ctx.conn, _require(params, "id")))


def _handle_session_update(ctx, params):
    session_id = _require(params, "id")
    _get_session(ctx.conn, session_id)
    kwargs: dict[str, Any] = {
        "name": _optional(params, "name"),
        "session_order": _optional_int(params, "session_order"),
    }
    if "model" in params:
        kwargs["model"] = _optional(params, "model")
    db.update_session(ctx.conn, session_id, **kwargs)
    if "next_session_id" in params:
        _set_next(ctx, session_id, _optional(params, "next_session_id"))
    return dict(_get_session(ctx.conn, session_id))


def _set_next(ctx: ApiContext, session_id: str, next_session_id: str | None) -> db.SessionRow:
    try:
        session = db.set_next_session(ctx.conn, session_id, next_session_id or None)
    except ValueError as exc:
        raise ApiError(str(exc), INVALID_PARAMS) from exc
    if not session:
        raise ApiError(f"Session '{session_id}' not found", NOT_FOUND)
    return session


def _handle_session_chain(ctx, params):
    session_id = _require(params, "id")
    return dict(_set_next(ctx, session_id, _optional(params, "next_session_id")))


def _handle_session_delete(ctx, params):
    session_id = _require(params, "id")
    _get_session(ctx.conn, session_id)
    if ctx.scheduler is not None:
        removed = ctx.scheduler.delete_session(session_id)
    else:
        removed = db.remove_session(ctx.conn, session_id)
    return {"id": session_id, "deleted": removed}


async def _handle_session_start(ctx, params):
    scheduler = ctx.require_scheduler()
    session_id = _require(params, "id")
    try:
        session = await scheduler.start_session(session_id)
    except NotFoundError as exc:
        raise ApiError(str(exc), NOT_FOUND) from exc
    except ConflictError as exc:
        raise ApiError(str(exc), CONFLICT) from exc
    return _session_detail(ctx, session)


async def _handle_session_stop(ctx, params):
    session_id = _require(params, "id")
    session = _get_session(ctx.conn, session_id)
    if ctx.scheduler is not None:
        return dict(await ctx.scheduler.stop_session(session_id))
    db.set_session_active(ctx.conn, session_id, False)
    if session["status"] in ("running", "queued"):
        db.update_session_status(ctx.conn, session_id, "idle")
    return dict(_get_session(ctx.conn, session_id))


def _handle_session_reorder(ctx, params):
    orders = _order_list(params, "orders", "session_order")
    return {"updated": db.reorder_sessions(ctx.conn, orders)}


# -- tasks --


def _handle_task_create(ctx, params):
    project = _resolve_project(ctx.conn, params)
    session_id = _optional(params, "session_id")
    if session_id:
        session = _get_session(ctx.conn, session_id)
        if session["project_id"] != project["id"]:
            raise ApiError("Session belongs to a different project", INVALID_PARAMS)
    try:
        task = db.create_task(
            ctx.conn,
            project_id=project["id"],
            prompt=_require(params, "prompt"),
            session_id=session_id,
            location=_optional(params, "location"),
        )
    except ValueError as exc:
        raise ApiError(str(exc), INVALID_PARAMS) from exc
    if task["location"] == "todo":
        _maybe_process(ctx, task["session_id"])
    return dict(task)


def _handle_task_list(ctx, params):
    project_id = None
    if params.get("project") or params.get("project_id"):
        project_id = _resolve_project(ctx.conn, params)["id"]
    session_id = _optional(params, "session_id")
    if not project_id and not session_id:
        raise ApiError("Missing required param: project or session_id", INVALID_PARAMS)
    location = _optional(params, "location")
    if location and location not in db.VALID_TASK_LOCATIONS:
        raise ApiError(f"Invalid location '{location}'", INVALID_PARAMS)
    tasks = db.list_tasks(
        ctx.conn,
        project_id=project_id,
        session_id=session_id,
        location=location,
        status=_optional(params, "status"),
    )
    return [dict(t) for t in tasks]


def _handle_task_show(ctx, params):
    task = _get_task(ctx.conn, _require(params, "id"))
    scheduler = ctx.scheduler
    return {
        **task,
        "awaiting_input": bool(scheduler and scheduler.is_awaiting_input(task["id"])),
    }


def _handle_task_events(ctx, params):
    task = _get_task(ctx.conn, _require(params, "id"))
    limit = _optional_int(params, "limit", min_value=1)
    return [dict(e) for e in db.list_task_events(ctx.conn, task["id"], limit=limit)]


def _handle_task_update(ctx, params):
    task = _get_task(ctx.conn, _require(params, "id"))
    prompt = _optional(params, "prompt")
    if prompt is not None:
        if task["status"] == "running":
            raise ApiError("Cannot edit a running task", CONFLICT)
        if not prompt.strip():
            raise ApiError("Prompt must not be empty", INVALID_PARAMS)
        db.update_task_prompt(ctx.conn, task["id"], prompt)
    order = _optional_int(params, "task_order")
    if order is not None:
        db.reorder_tasks(ctx.conn, [{"id": task["id"], "task_order": order}])
    return dict(_get_task(ctx.conn, task["id"]))


def _handle_task_move(ctx, params):
    task = _get_task(ctx.conn, _require(params, "id"))
    if task["status"] == "running":
        raise ApiError("Cannot move a running task", CONFLICT)
    location = _require(params, "location")
    kwargs: dict[str, Any] = {"task_order": _optional_int(params, "task_order")}
    if "session_id" in params:
        session_id = _optional(params, "session_id")
        if session_id:
            session = _get_session(ctx.conn, session_id)
            if session["project_id"] != task["project_id"]:
                raise ApiError("Session belongs to a different project", INVALID_PARAMS)
        kwargs["session_id"] = session_id
    try:
        moved = db.move_task(ctx.conn, task["id"], location, **kwargs)
    except ValueError as exc:
        raise ApiError(str(exc), INVALID_PARAMS) from exc
    assert moved is not None
    if moved["location"] == "todo":
        _maybe_process(ctx, moved["session_id"])
    return dict(moved)


def _handle_task_reorder(ctx, params):
    orders = _order_list(params, "orders", "task_order")
    return {"updated": db.reorder_tasks(ctx.conn, orders)}


def _handle_task_delete(ctx, params):
    task = _get_task(ctx.conn, _require(params, "id"))
    if ctx.scheduler is not None:
        removed = ctx.scheduler.delete_task(task["id"])
    else:
        removed = db.remove_task(ctx.conn, task["id"])
    return {"id": task["id"], "deleted": removed}


def _handle_task_abort(ctx, params):
    scheduler = ctx.require_scheduler()
    task = _get_task(ctx.conn, _require(params, "id"))
    if task["status"] != "running" and not scheduler.is_awaiting_input(task["id"]):
        raise ApiError("Task is not running", CONFLICT)
    if not scheduler.abort_task(task["id"]):
        raise ApiError("No running process found for task", CONFLICT)
    return dict(_get_task(ctx.conn, task["id"]))


def _handle_task_respond(ctx, params):
    scheduler = ctx.require_scheduler()
    task = _get_task(ctx.conn, _require(params, "id"))
    follow_up = scheduler.send_human_response(task["id"], _require(params, "response"))
    if follow_up is None:
        raise ApiError("Task is not waiting for input", CONFLICT)
    return {"task_id": task["id"], "follow_up": dict(follow_up)}


# -- usage --


async def _handle_usage_show(ctx, _params):
    if ctx.poller is not None:
        # A stale cache refresh shells out to the agent CLI.
        return await asyncio.to_thread(ctx.poller.get_snapshot)
    cached = get_usage_snapshot_safe()
    if cached is None:
        raise ApiError("No usage snapshot available (daemon not running)", NOT_FOUND)
    return cached


async def _handle_usage_refresh(ctx, _params):
    if ctx.poller is None:
        raise ApiError("This operation requires the clork daemon to be running", CONFLICT)
    await ctx.poller.refresh()
    return ctx.poller.get_snapshot(refresh=False)


# -- settings --


def _handle_settings_show(ctx, _params):
    return {
        "theme": db.get_setting(ctx.conn, "theme", DEFAULT_THEME),
        "image_counter": int(db.get_setting(ctx.conn, IMAGE_COUNTER_KEY, "0") or 0),
    }


def _handle_settings_update(ctx, params):
    theme = _optional(params, "theme")
    if theme:
        db.set_setting(ctx.conn, "theme", theme)
    return _handle_settings_show(ctx, params)


def _handle_settings_next_image(ctx, _params):
    return {"image_counter": db.next_counter_value(ctx.conn, IMAGE_COUNTER_KEY)}


# -- status --


async def _handle_status(ctx, _params):
    conn = ctx.conn
    counts = {
        row["status"]: row["n"]
        for row in conn.execute("SELECT status, COUNT(*) AS n FROM sessions GROUP BY status")
    }
    data: dict[str, Any] = {
        "projects": conn.execute("SELECT COUNT(*) FROM projects").fetchone()[0],
        "sessions": counts,
        "daemon": ctx.scheduler is not None,
    }
    if ctx.scheduler is not None:
        data["running_tasks"] = ctx.scheduler.supervisor.running_task_ids()
        data["awaiting_input"] = ctx.scheduler.awaiting_input()
    if ctx.poller is not None:
        data["agent"] = await asyncio.to_thread(ctx.poller.check_status)
    return data


# ---------------------------------------------------------------------------
# Dispatch table
# ---------------------------------------------------------------------------

METHODS: dict[str, Callable] = {
    # projects
    "project.create": _handle_project_create,
    "project.list": _handle_project_list,
    "project.show": _handle_project_show,
    "project.update": _handle_project_update,
    "project.delete": _handle_project_delete,
    # sessions
    "session.create": _handle_session_create,
    "session.list": _handle_session_list,
    "session.show": _handle_session_show,
    "session.update": _handle_session_update,
    "session.delete": _handle_session_delete,
    "session.start": _handle_session_start,
    "session.stop": _handle_session_stop,
    "session.reorder": _handle_session_reorder,
    "session.chain": _handle_session_chain,
    # tasks
    "task.create": _handle_task_create,
    "task.list": _handle_task_list,
    "task.show": _handle_task_show,
    "task.events": _handle_task_events,
    "task.update": _handle_task_update,
    "task.move": _handle_task_move,
    "task.reorder": _handle_task_reorder,
    "task.delete": _handle_task_delete,
    "task.abort": _handle_task_abort,
    "task.respond": _handle_task_respond,
    # usage
    "usage.show": _handle_usage_show,
    "usage.refresh": _handle_usage_refresh,
    # settings
    "settings.show": _handle_settings_show,
    "settings.update": _handle_settings_update,
    "settings.next_image": _handle_settings_next_image,
    # status
    "status": _handle_status,
}


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


async def dispatch(
    request: dict, *, ctx: ApiContext | None = None, db_path: Path | None = None
) -> dict:
    """Process a single API request and return the response dict.

    Args:
        request: ``{"method": "...", "params": {...}}``
        ctx: Runtime context (the daemon passes its scheduler and poller).
            When ``None``, a connection to ``db_path`` (or the default
            database) is opened for the duration of the request.
    """
    method = request.get("method")
    if not method or not isinstance(method, str):
        return {"ok": False, "error": "Missing or invalid 'method'", "code": INVALID_METHOD}

    handler = METHODS.get(method)
    if not handler:
        return {"ok": False, "error": f"Unknown method: {method}", "code": INVALID_METHOD}

    params = request.get("params") or {}
    if not isinstance(params, dict):
        return {"ok": False, "error": "'params' must be an object", "code": INVALID_PARAMS}

    try:
        if ctx is not None:
            data = await _call(handler, ctx, params)
        else:
            with db.connect(db_path or db.DEFAULT_DB_PATH) as conn:
                data = await _call(handler, ApiContext(conn=conn), params)
        return {"ok": True, "data": data}
    except ApiError as exc:
        return {"ok": False, "error": str(exc), "code": exc.code}
    except Exception as exc:
        return {"ok": False, "error": str(exc), "code": INTERNAL}


async def _call(handler: Callable, ctx: ApiContext, params: dict) -> Any:
    result = handler(ctx, params)
    if inspect.isawaitable(result):
        result = await result
    return result
