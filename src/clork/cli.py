from __future__ import annotations

import asyncio
import json
import logging
import os
import signal
import subprocess
import sys
import time
from pathlib import Path
from typing import Any

import click

from clork import __version__, api, db
from clork.daemon import DEFAULT_LOG_PATH, DEFAULT_PID_PATH
from clork.daemon_client import DaemonClient, DaemonUnavailable, call
from clork.events import EventSubscriber
from clork.paths import DEFAULT_SOCKET_PATH

log = logging.getLogger(__name__)

SOCKET_PATH = DEFAULT_SOCKET_PATH

MAX_PROMPT_LENGTH = 100_000


def _validate_prompt(ctx: click.Context, param: click.Parameter, value: str) -> str:
    if value is not None and len(value) > MAX_PROMPT_LENGTH:
        raise click.BadParameter(
            f"Prompt is {len(value):,} chars (max {MAX_PROMPT_LENGTH:,}).",
            ctx=ctx,
            param=param,
        )
    return value


class RequestFailed(click.ClickException):
    """An API request came back with ``ok: false``."""

    def __init__(self, message: str, code: str | None = None) -> None:
        super().__init__(message)
        self.code = code


class _JsonAwareGroup(click.Group):
    """Group that always outputs JSON errors with command suggestions.

    Click normally writes plain-text usage errors to stderr. Every clork
    command prints JSON, so this subclass intercepts Click exceptions and
    emits a JSON error object on stdout. Unknown commands get fuzzy-matched
    suggestions via ``difflib.get_close_matches``.
    """

    def resolve_command(self, ctx, args):  # type: ignore[override]
        try:
            return super().resolve_command(ctx, args)
        except click.UsageError:
            if args:
                import difflib

                cmd_name = args[0]
                matches = difflib.get_close_matches(
                    cmd_name, self.list_commands(ctx), n=2, cutoff=0.5
                )
                hint = f" Did you mean: {', '.join(matches)}?" if matches else ""
                raise click.UsageError(f"No such command '{cmd_name}'.{hint}") from None
            raise

    def main(self, args=None, standalone_mode=True, **kwargs):  # type: ignore[override]
        try:
            rv = super().main(args=args, standalone_mode=False, **kwargs)
            if standalone_mode:
                raise SystemExit(rv or 0)
            return rv
        except click.ClickException as e:
            payload: dict[str, Any] = {"ok": False, "error": e.format_message()}
            code = getattr(e, "code", None)
            if code:
                payload["code"] = code
            click.echo(json.dumps(payload))
            exit_code = getattr(e, "exit_code", 1)
            if standalone_mode:
                raise SystemExit(exit_code) from None
            return exit_code
        except click.Abort:
            if standalone_mode:
                click.echo("Aborted!", err=True)
                raise SystemExit(1) from None
            raise


def _emit(data: Any) -> None:
    click.echo(json.dumps(data, indent=2, default=str))


def _request(method: str, params: dict[str, Any] | None = None) -> Any:
    """Run one API method through the daemon, or in-process when it is not running.

    Methods that need live processes (``session.start``, ``task.abort``...)
    fail with ``CONFLICT`` in the in-process path.
    """
    params = {k: v for k, v in (params or {}).items() if v is not None}
    try:
        response = asyncio.run(call(method, params, socket_path=SOCKET_PATH))
    except DaemonUnavailable:
        log.debug("Daemon not running; dispatching %s in-process", method)
        response = asyncio.run(
            api.dispatch({"method": method, "params": params}, db_path=db.DEFAULT_DB_PATH)
        )
    except ConnectionError as exc:
        raise click.ClickException(f"Daemon connection failed: {exc}") from exc
    if not response.get("ok"):
        raise RequestFailed(response.get("error") or "Request failed", response.get("code"))
    return response.get("data")


def _parse_orders(pairs: tuple[str, ...], order_key: str) -> list[dict[str, Any]]:
    orders = []
    for pair in pairs:
        item_id, sep, order = pair.partition(":")
        if not sep or not item_id:
            raise click.BadParameter(f"Expected ID:ORDER, got '{pair}'")
        try:
            orders.append({"id": item_id, order_key: int(order)})
        except ValueError as exc:
            raise click.BadParameter(f"Order must be an integer in '{pair}'") from exc
    return orders


@click.group(cls=_JsonAwareGroup)
@click.version_option(version=__version__)
def main():
    """Queue prompts for a coding agent and run them session by session.

    \b
    Quick start:
      clork daemon start                          Start the background daemon
      clork init                                  Register current directory as a project
      clork session create "refactor" -p PROJECT  Create a session
      clork task add "Fix the login bug" -s SID -p PROJECT
      clork session start SID                     Run the session's todo list
      clork watch -p PROJECT                      Follow live events

    \b
    Key concepts:
      project   A working directory the agent runs in
      session   An ordered todo list sharing one agent conversation
      task      One prompt; lives in backlog, queue, todo or done
    """


# -- init --


@main.command()
@click.argument("path", required=False, type=click.Path(exists=True, file_okay=False))
@click.option("--name", "-n", default=None, help="Project name (default: directory name).")
def init(path: str | None, name: str | None):
    """Register a directory (default: current) as a project."""
    root = Path(path or os.getcwd()).resolve()
    _emit(_request("project.create", {"name": name or root.name, "root_dir": str(root)}))


# -- project --


@main.group()
def project():
    """Register, configure, and inspect projects."""


@project.command("add")
@click.argument("name")
@click.option("--dir", "-d", "directory", required=True, type=click.Path(exists=True))
@click.option("--model", default=None, help="Default model for the project's sessions.")
@click.option(
    "--permission-mode",
    type=click.Choice(sorted(db.VALID_PERMISSION_MODES)),
    default=None,
)
def project_add(name: str, directory: str, model: str | None, permission_mode: str | None):
    """Register a project."""
    _emit(
        _request(
            "project.create",
            {
                "name": name,
                "root_dir": str(Path(directory).resolve()),
                "default_model": model,
                "permission_mode": permission_mode,
            },
        )
    )


@project.command("list")
def project_list():
    """List all projects."""
    _emit(_request("project.list"))


@project.command("show")
@click.argument("name_or_id")
def project_show(name_or_id: str):
    """Show a project with its sessions, backlog and queue."""
    _emit(_request("project.show", {"id": name_or_id}))


@project.command("update")
@click.argument("name_or_id")
@click.option("--name", default=None)
@click.option("--dir", "-d", "directory", default=None, type=click.Path(exists=True))
@click.option("--model", default=None)
@click.option(
    "--permission-mode",
    type=click.Choice(sorted(db.VALID_PERMISSION_MODES)),
    default=None,
)
@click.option("--auto-continue/--no-auto-continue", default=None)
@click.option("--max-tasks", type=click.IntRange(min=1), default=None)
def project_update(
    name_or_id: str,
    name: str | None,
    directory: str | None,
    model: str | None,
    permission_mode: str | None,
    auto_continue: bool | None,
    max_tasks: int | None,
):
    """Change project settings."""
    _emit(
        _request(
            "project.update",
            {
                "id": name_or_id,
                "name": name,
                "root_dir": str(Path(directory).resolve()) if directory else None,
                "default_model": model,
                "permission_mode": permission_mode,
                "auto_continue": auto_continue,
                "max_tasks_per_session": max_tasks,
            },
        )
    )


@project.command("remove")
@click.argument("name_or_id")
@click.option("--yes", "-y", is_flag=True, help="Skip confirmation prompt.")
def project_remove(name_or_id: str, yes: bool):
    """Remove a project with all its sessions, tasks and events."""
    if not yes and not click.confirm(f"Remove project '{name_or_id}'?", err=True):
        return
    _emit(_request("project.delete", {"id": name_or_id}))


# -- session --


@main.group()
def session():
    """Create, order, chain and run sessions."""


@session.command("create")
@click.argument("name")
@click.option("--project", "-p", required=True, help="Project name or id.")
@click.option("--model", default=None, help="Model override for this session.")
@click.option("--prompt", default=None, callback=_validate_prompt, help="Initial todo task.")
def session_create(name: str, project: str, model: str | None, prompt: str | None):
    """Create a session, optionally with a first task."""
    _emit(
        _request(
            "session.create", {"project": project, "name": name, "model": model, "prompt": prompt}
        )
    )


@session.command("list")
@click.option("--project", "-p", required=True, help="Project name or id.")
@click.option("--status", type=click.Choice(sorted(db.VALID_SESSION_STATUSES)), default=None)
def session_list(project: str, status: str | None):
    """List a project's sessions in execution order."""
    _emit(_request("session.list", {"project": project, "status": status}))


@session.command("show")
@click.argument("session_id")
def session_show(session_id: str):
    """Show a session with its todo and done tasks."""
    _emit(_request("session.show", {"id": session_id}))


@session.command("update")
@click.argument("session_id")
@click.option("--name", default=None)
@click.option("--model", default=None)
@click.option("--clear-model", is_flag=True, help="Use the project's default model.")
@click.option("--order", type=int, default=None, help="New session_order.")
def session_update(
    session_id: str, name: str | None, model: str | None, clear_model: bool, order: int | None
):
    """Rename a session or change its model or order."""
    # An empty model survives the None filter in _request and clears the override.
    params = {
        "id": session_id,
        "name": name,
        "session_order": order,
        "model": "" if clear_model else model,
    }
    _emit(_request("session.update", params))


@session.command("chain")
@click.argument("session_id")
@click.argument("next_session_id", required=False)
@click.option("--clear", is_flag=True, help="Remove the chain pointer.")
def session_chain(session_id: str, next_session_id: str | None, clear: bool):
    """Run NEXT_SESSION_ID automatically after SESSION_ID completes."""
    if not next_session_id and not clear:
        raise click.UsageError("Give NEXT_SESSION_ID or --clear")
    _emit(
        _request(
            "session.chain",
            {"id": session_id, "next_session_id": None if clear else next_session_id},
        )
    )


@session.command("reorder")
@click.argument("orders", nargs=-1, required=True)
def session_reorder(orders: tuple[str, ...]):
    """Set session order, e.g. ``clork session reorder abc:0 def:1``."""
    _emit(_request("session.reorder", {"orders": _parse_orders(orders, "session_order")}))


@session.command("start")
@click.argument("session_id")
def session_start(session_id: str):
    """Activate a session and start its next pending task (daemon required)."""
    _emit(_request("session.start", {"id": session_id}))


@session.command("stop")
@click.argument("session_id")
def session_stop(session_id: str):
    """Deactivate a session; the running task finishes, nothing new starts."""
    _emit(_request("session.stop", {"id": session_id}))


@session.command("remove")
@click.argument("session_id")
def session_remove(session_id: str):
    """Delete a session and its tasks, aborting any running task."""
    _emit(_request("session.delete", {"id": session_id}))


# -- task --


@main.group()
def task():
    """Add, move and control tasks."""


@task.command("add")
@click.argument("prompt", callback=_validate_prompt)
@click.option("--project", "-p", required=True, help="Project name or id.")
@click.option("--session", "-s", "session_id", default=None, help="Target session (todo).")
@click.option("--location", type=click.Choice(sorted(db.VALID_TASK_LOCATIONS)), default=None)
def task_add(prompt: str, project: str, session_id: str | None, location: str | None):
    """Add a task to a session's todo list or the project backlog."""
    _emit(
        _request(
            "task.create",
            {"project": project, "prompt": prompt, "session_id": session_id, "location": location},
        )
    )


@task.command("list")
@click.option("--project", "-p", default=None, help="Project name or id.")
@click.option("--session", "-s", "session_id", default=None)
@click.option("--location", type=click.Choice(sorted(db.VALID_TASK_LOCATIONS)), default=None)
@click.option("--status", type=click.Choice(sorted(db.VALID_TASK_STATUSES)), default=None)
def task_list(
    project: str | None, session_id: str | None, location: str | None, status: str | None
):
    """List tasks by project, session, location or status."""
    _emit(
        _request(
            "task.list",
            {
                "project": project,
                "session_id": session_id,
                "location": location,
                "status": status,
            },
        )
    )


@task.command("show")
@click.argument("task_id")
def task_show(task_id: str):
    """Show task details."""
    _emit(_request("task.show", {"id": task_id}))


@task.command("events")
@click.argument("task_id")
@click.option("--limit", type=click.IntRange(min=1), default=None)
def task_events(task_id: str, limit: int | None):
    """Show the stored event log of a task."""
    _emit(_request("task.events", {"id": task_id, "limit": limit}))


@task.command("edit")
@click.argument("task_id")
@click.option("--prompt", default=None, callback=_validate_prompt)
@click.option("--order", type=int, default=None, help="New task_order.")
def task_edit(task_id: str, prompt: str | None, order: int | None):
    """Change a task's prompt or order."""
    if prompt is None and order is None:
        raise click.UsageError("Nothing to change: give --prompt or --order")
    _emit(_request("task.update", {"id": task_id, "prompt": prompt, "task_order": order}))


@task.command("move")
@click.argument("task_id")
@click.argument("location", type=click.Choice(sorted(db.VALID_TASK_LOCATIONS)))
@click.option("--session", "-s", "session_id", default=None, help="Target session.")
@click.option("--order", type=int, default=None)
def task_move(task_id: str, location: str, session_id: str | None, order: int | None):
    """Move a task to backlog, queue, todo or done."""
    _emit(
        _request(
            "task.move",
            {"id": task_id, "location": location, "session_id": session_id, "task_order": order},
        )
    )


@task.command("reorder")
@click.argument("orders", nargs=-1, required=True)
def task_reorder(orders: tuple[str, ...]):
    """Set task order, e.g. ``clork task reorder abc:0 def:1``."""
    _emit(_request("task.reorder", {"orders": _parse_orders(orders, "task_order")}))


@task.command("remove")
@click.argument("task_id")
def task_remove(task_id: str):
    """Delete a task, aborting it first if it is running."""
    _emit(_request("task.delete", {"id": task_id}))


@task.command("abort")
@click.argument("task_id")
def task_abort(task_id: str):
    """Kill a running task's agent process (daemon required)."""
    _emit(_request("task.abort", {"id": task_id}))


@task.command("respond")
@click.argument("task_id")
@click.argument("response", callback=_validate_prompt)
def task_respond(task_id: str, response: str):
    """Answer a task that is waiting for input (daemon required)."""
    _emit(_request("task.respond", {"id": task_id, "response": response}))


# -- usage --


@main.group(invoke_without_command=True)
@click.pass_context
def usage(ctx: click.Context):
    """Show account rate limits, spend and local stats."""
    if ctx.invoked_subcommand is None:
        _emit(_request("usage.show"))


@usage.command("show")
def usage_show():
    """Print the latest usage snapshot."""
    _emit(_request("usage.show"))


@usage.command("refresh")
def usage_refresh():
    """Run a quota probe now (daemon required)."""
    _emit(_request("usage.refresh"))


# -- settings --


@main.group(invoke_without_command=True)
@click.pass_context
def settings(ctx: click.Context):
    """Show or change UI settings."""
    if ctx.invoked_subcommand is None:
        _emit(_request("settings.show"))


@settings.command("set")
@click.option("--theme", type=click.Choice(["dark", "light"]), required=True)
def settings_set(theme: str):
    """Change settings."""
    _emit(_request("settings.update", {"theme": theme}))


# -- status --


@main.command()
def status():
    """Show projects, session counts and (with the daemon) running work."""
    _emit(_request("status"))


# -- watch --


@main.command()
@click.option("--project", "-p", "project_id", default=None, help="Filter by project id.")
@click.option("--session", "-s", "session_id", default=None, help="Filter by session id.")
@click.option("--task", "-t", "task_id", default=None, help="Filter by task id.")
@click.option("--count", type=click.IntRange(min=1), default=None, help="Stop after N events.")
@click.option("--timeout", type=float, default=30.0, show_default=True)
@click.option("--from-start", is_flag=True, help="Replay events retained in the stream.")
def watch(
    project_id: str | None,
    session_id: str | None,
    task_id: str | None,
    count: int | None,
    timeout: float,
    from_start: bool,
):
    """Print live events as JSON lines (Redis stream, else the daemon socket)."""
    subscriber = EventSubscriber(
        project_id=project_id,
        session_id=session_id,
        task_id=task_id,
        timeout=timeout,
        cursor="0" if from_start else "$",
    )
    if not subscriber.available:
        _watch_daemon(project_id, session_id, task_id, count, timeout)
        return
    seen = 0
    for event in subscriber:
        if event is None:
            continue
        click.echo(json.dumps(event, default=str))
        seen += 1
        if count is not None and seen >= count:
            return


def _watch_daemon(
    project_id: str | None,
    session_id: str | None,
    task_id: str | None,
    count: int | None,
    timeout: float,
) -> None:
    async def _follow() -> None:
        async with DaemonClient(socket_path=SOCKET_PATH) as client:
            await client.subscribe(project_id=project_id, session_id=session_id, task_id=task_id)
            seen = 0
            while count is None or seen < count:
                event = await client.next_event(timeout=timeout)
                if event is None:
                    continue
                click.echo(json.dumps(event, default=str))
                seen += 1

    try:
        asyncio.run(_follow())
    except DaemonUnavailable as exc:
        raise click.ClickException(
            "Neither Redis nor the daemon is reachable. Start it with: clork daemon start"
        ) from exc


# -- daemon --


@main.group(invoke_without_command=True)
@click.pass_context
def daemon(ctx: click.Context) -> None:
    """Manage the clork daemon."""
    if ctx.invoked_subcommand is None:
        click.echo(ctx.get_help())


def _daemon_pid() -> int | None:
    """Read PID from file and verify the process is alive."""
    if not DEFAULT_PID_PATH.exists():
        return None
    try:
        pid = int(DEFAULT_PID_PATH.read_text().strip())
        os.kill(pid, 0)  # check if alive
        return pid
    except (ValueError, ProcessLookupError, PermissionError):
        return None


@daemon.command()
def start() -> None:
    """Start the clork daemon in the background."""
    existing = _daemon_pid()
    if existing:
        click.echo(json.dumps({"ok": True, "status": "already_running", "pid": existing}))
        return

    # Clean stale PID file if process is dead
    if DEFAULT_PID_PATH.exists():
        DEFAULT_PID_PATH.unlink()

    DEFAULT_LOG_PATH.parent.mkdir(parents=True, exist_ok=True)
    with open(DEFAULT_LOG_PATH, "a") as log_file:
        subprocess.Popen(
            [sys.executable, "-m", "clork.daemon"],
            stdout=log_file,
            stderr=subprocess.STDOUT,
            start_new_session=True,
        )

    # Wait for socket to appear (daemon is ready)
    for _ in range(50):  # 5 seconds max
        time.sleep(0.1)
        if SOCKET_PATH.exists():
            break

    pid = _daemon_pid()
    if pid:
        click.echo(json.dumps({"ok": True, "pid": pid, "log": str(DEFAULT_LOG_PATH)}))
    else:
        raise click.ClickException(f"Daemon failed to start. Check logs: {DEFAULT_LOG_PATH}")


@daemon.command()
def stop() -> None:
    """Stop the running daemon; running tasks are aborted."""
    pid = _daemon_pid()
    if not pid:
        click.echo(json.dumps({"ok": True, "status": "not_running"}))
        return

    os.kill(pid, signal.SIGTERM)

    # Wait for process to exit
    for _ in range(100):  # 10 seconds max
        time.sleep(0.1)
        try:
            os.kill(pid, 0)
        except ProcessLookupError:
            break

    click.echo(json.dumps({"ok": True, "pid": pid}))


@daemon.command("status")
def daemon_status() -> None:
    """Show daemon status."""
    pid = _daemon_pid()
    click.echo(
        json.dumps(
            {
                "running": pid is not None,
                "pid": pid,
                "socket": str(SOCKET_PATH),
                "socket_exists": SOCKET_PATH.exists(),
                "log": str(DEFAULT_LOG_PATH),
            }
        )
    )


if __name__ == "__main__":
    main()
