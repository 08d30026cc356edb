"""Session/task scheduler: the policy layer over the process supervisor.

Rules enforced here (by check-then-act on a single event loop):

- at most one running task per session;
- at most one running session per project; a started session that finds
  another one running is marked ``queued`` and picked up later;
- a session with no pending ``todo`` work is completed, optionally after
  draining the project queue when the project has auto-continue on, and
  then hands over to its chained successor or the next queued session.

Supervisor callbacks persist every stream record as a task event, forward
telemetry to the usage poller, and publish lifecycle notifications through
the ``notify`` hook.
"""

from __future__ import annotations

import asyncio
import logging
import sqlite3
from collections.abc import Callable, Coroutine
from dataclasses import dataclass
from typing import Any

from clork import db, events
from clork.paths import bool_env
from clork.prompts import detect_question
from clork.stream import conversation_id, record_text
from clork.supervisor import Callbacks, ExecutionOptions, ExecutionOutcome, ProcessSupervisor
from clork.usage_poller import UsagePoller

log = logging.getLogger(__name__)

PAUSE_ON_QUESTION = bool_env("CLORK_PAUSE_ON_QUESTION", False)

# Stream record types that change the usage picture.
USAGE_RECORD_TYPES = frozenset({"rate_limit_event", "result"})

Notifier = Callable[..., Any]


class SchedulerError(Exception):
    """Base class for rejected scheduler operations."""


class NotFoundError(SchedulerError):
    pass


class ConflictError(SchedulerError):
    """The operation is not allowed in the entity's current state."""


@dataclass
class AwaitingInput:
    session_id: str
    project_id: str
    prompt: str


class TaskEventHandler(logging.Handler):
    """Logging handler that stores log records mentioning a task as ``log`` events."""

    def __init__(self, conn: sqlite3.Connection, task_id: str, level: int = logging.WARNING):
        super().__init__(level)
        self.conn = conn
        self.task_id = task_id

    def emit(self, record: logging.LogRecord) -> None:
        try:
            if self.task_id not in record.getMessage():
                return
            db.add_task_event(
                self.conn,
                task_id=self.task_id,
                event_type="log",
                data={"type": "log", "level": record.levelname, "text": self.format(record)},
            )
        except Exception:
            self.handleError(record)


class Scheduler:
    def __init__(
        self,
        conn: sqlite3.Connection,
        supervisor: ProcessSupervisor,
        poller: UsagePoller,
        *,
        notify: Notifier = events.publish_event,
        publish_usage: Callable[[dict], Any] = events.publish_usage,
        pause_on_question: bool = PAUSE_ON_QUESTION,
    ) -> None:
        self.conn = conn
        self.supervisor = supervisor
        self.poller = poller
        self._notify = notify
        self._publish_usage = publish_usage
        self.pause_on_question = pause_on_question

        self._running: dict[str, str] = {}  # task_id -> session_id
        self._awaiting_input: dict[str, AwaitingInput] = {}
        self._aborted: set[str] = set()
        self._deleted: set[str] = set()
        self._result_text: dict[str, list[str]] = {}
        self._log_handlers: dict[str, TaskEventHandler] = {}
        self._background: set[asyncio.Task[Any]] = set()

    # -- Queries ----------------------------------------------------------

    def running_task_id_for(self, session_id: str) -> str | None:
        for task_id, sid in self._running.items():
            if sid == session_id and task_id not in self._deleted:
                return task_id
        return None

    def _has_live_process(self, session_id: str) -> bool:
        """Any tracked process for the session, including deleted tasks still exiting."""
        return session_id in self._running.values()

    def is_task_running(self, task_id: str) -> bool:
        return task_id in self._running

    def is_awaiting_input(self, task_id: str) -> bool:
        return task_id in self._awaiting_input

    def awaiting_input(self) -> dict[str, dict[str, str]]:
        return {
            task_id: {"session_id": a.session_id, "project_id": a.project_id, "prompt": a.prompt}
            for task_id, a in self._awaiting_input.items()
        }

    # -- Background work --------------------------------------------------

    def schedule(self, coro: Coroutine[Any, Any, Any]) -> asyncio.Task[Any]:
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    async def drain(self) -> None:
        """Wait for scheduled follow-up work (and the work it schedules) to finish."""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    # -- Session processing -----------------------------------------------

    async def process_session(self, session_id: str) -> None:
        """Start the next eligible task in a session. Never raises."""
        try:
            await self._process_session(session_id)
        except Exception:
            log.exception("process_session failed for session %s", session_id)

    async def _process_session(
        self, session_id: str, _chain: frozenset[str] = frozenset()
    ) -> None:
        session = db.get_session(self.conn, session_id)
        if not session:
            return
        project = db.get_project(self.conn, session["project_id"])
        if not project:
            return

        if self._has_live_process(session_id):
            return
        running = db.get_running_task(self.conn, session_id)
        if running:
            self._reconcile_stale_task(running)

        if any(a.session_id == session_id for a in self._awaiting_input.values()):
            log.info("Session %s is waiting for human input", session_id)
            return

        if not session["is_active"]:
            if session["status"] in ("running", "queued"):
                self._set_session_status(session_id, "idle")
                await self._advance_project(session, _chain)
            return

        task = db.next_pending_task(self.conn, session_id)
        if task is None and session["status"] == "running" and project["auto_continue"]:
            moved = db.drain_queue_into_session(
                self.conn, session_id, project["max_tasks_per_session"]
            )
            if moved:
                log.info("Moved %d queued task(s) into session %s", len(moved), session_id)
                for moved_id in moved:
                    self._notify_task(events.TASK_CREATED, moved_id)
                task = db.next_pending_task(self.conn, session_id)

        if task is None:
            if session["status"] in ("running", "queued"):
                self._set_session_status(session_id, "completed")
                log.info("Session %s completed", session_id)
                await self._advance_project(session, _chain)
            return

        other = db.get_running_session(self.conn, project["id"], exclude=session_id)
        if other:
            if session["status"] != "queued":
                self._set_session_status(session_id, "queued")
                log.info("Session %s queued behind running session %s", session_id, other["id"])
            return

        await self._start_task(task, session, project)

    def _reconcile_stale_task(self, task: db.TaskRow) -> None:
        log.warning("Task %s was stuck in running state; marking failed", task["id"])
        db.finish_task(self.conn, task["id"], "failed")
        db.add_task_event(
            self.conn,
            task_id=task["id"],
            event_type="error",
            data={"type": "error", "text": "Task was stuck in running state", "reason": "stuck"},
        )
        self._notify_task(
            events.TASK_FAILED,
            task["id"],
            extra={"error": "Task was stuck in running state", "reason": "stuck"},
        )

    async def _advance_project(
        self, finished: db.SessionRow, chain: frozenset[str] = frozenset()
    ) -> None:
        """Hand the project's running slot to the chained successor or the next queued session."""
        chain = chain | {finished["id"]}
        next_id = finished["next_session_id"]
        if next_id and next_id not in chain:
            nxt = db.get_session(self.conn, next_id)
            if nxt and nxt["is_active"] and nxt["status"] in ("idle", "queued"):
                log.info("Advancing chain %s -> %s", finished["id"], next_id)
                if db.next_pending_task(self.conn, next_id) is None:
                    self._set_session_status(next_id, "completed")
                    await self._advance_project(nxt, chain)
                    return
                await self._process_session(next_id, chain)
                return
        queued = db.next_queued_session(self.conn, finished["project_id"])
        if queued and queued["id"] not in chain:
            await self._process_session(queued["id"], chain)

    async def _start_task(
        self, task: db.TaskRow, session: db.SessionRow, project: db.ProjectRow
    ) -> None:
        task_id, session_id = task["id"], session["id"]
        model = session["model"] or project["default_model"]

        if session["status"] != "running":
            self._set_session_status(session_id, "running")
        db.mark_task_started(self.conn, task_id)
        self._running[task_id] = session_id
        self._result_text[task_id] = []
        log.info("Starting task %s in session %s (model=%s)", task_id, session_id, model)
        self._notify_task(events.TASK_STARTED, task_id)

        self._record(
            task_id,
            session,
            "system",
            {"type": "task_started", "prompt": task["prompt"], "model": model},
        )
        handler = TaskEventHandler(self.conn, task_id)
        logging.getLogger("clork.supervisor").addHandler(handler)
        self._log_handlers[task_id] = handler

        options = ExecutionOptions(
            prompt=task["prompt"],
            cwd=project["root_dir"],
            model=model,
            permission_mode=project["permission_mode"],
            resume_conversation_id=session["conversation_id"],
        )
        await self.supervisor.execute(task_id, options, self._callbacks(task_id, session))

    # -- Supervisor callbacks ---------------------------------------------

    def _callbacks(self, task_id: str, session: db.SessionRow) -> Callbacks:
        def guarded(fn: Callable[[Any], None], *, terminal: bool = False) -> Callable[[Any], None]:
            def _call(arg: Any) -> None:
                if task_id in self._deleted:
                    # Task row is gone; release in-memory state, then let the
                    # session move on now that the process has exited.
                    if terminal:
                        self._deleted.discard(task_id)
                        self._aborted.discard(task_id)
                        self._result_text.pop(task_id, None)
                        self._release(task_id, session, arg)
                        self.schedule(self.process_session(session["id"]))
                    return
                try:
                    fn(arg)
                except Exception:
                    log.exception("Callback %s failed for task %s", fn.__name__, task_id)

            return _call

        def on_data(record: dict[str, Any]) -> None:
            self._record(task_id, session, record.get("type") or "raw", record)
            self.poller.track_event(task_id, record)
            if record.get("type") in USAGE_RECORD_TYPES:
                self._publish_usage(self.poller.get_snapshot(refresh=False))
            cid = conversation_id(record)
            if cid:
                db.set_session_conversation_id(self.conn, session["id"], cid)
            text = record_text(record)
            if text and task_id in self._result_text:
                self._result_text[task_id].append(text)

        def on_human_input(record: dict[str, Any]) -> None:
            self._record(task_id, session, "human_input", record)
            prompt = record.get("text") or record_text(record) or str(record)
            self._await_input(task_id, session, prompt)

        def on_complete(outcome: ExecutionOutcome) -> None:
            self.poller.track_completion(task_id, True)
            result = outcome.to_dict()
            self._record(task_id, session, "result", {"type": "task_completed", **result})
            self._finish(task_id, session, "completed", outcome)
            self._notify_task(events.TASK_COMPLETED, task_id, extra={"result": result})

            text = "\n".join(self._result_text.pop(task_id, [])).strip()
            if self.pause_on_question and detect_question(text):
                log.info("Question detected in result of task %s", task_id)
                self._await_input(task_id, session, text)
                return
            self.schedule(self.process_session(session["id"]))

        def on_error(outcome: ExecutionOutcome) -> None:
            self.poller.track_completion(task_id, False)
            event_type = "aborted" if outcome.aborted else "error"
            self._record(task_id, session, event_type, {"type": event_type, **outcome.to_dict()})
            self._result_text.pop(task_id, None)
            if self._awaiting_input.pop(task_id, None) is not None:
                self._notify_task(events.TASK_HUMAN_INPUT_CLEARED, task_id)
            if task_id in self._aborted:
                # abort_task already stored the terminal state and notified.
                self._aborted.discard(task_id)
                self._release(task_id, session, outcome)
            else:
                if not outcome.aborted:
                    log.error("Task %s failed: %s", task_id, outcome.error or outcome.exit_code)
                self._finish(task_id, session, "aborted" if outcome.aborted else "failed", outcome)
                self._notify_task(
                    events.TASK_ABORTED if outcome.aborted else events.TASK_FAILED,
                    task_id,
                    extra={"error": outcome.error or f"Exit code: {outcome.exit_code}"},
                )
            self.schedule(self.process_session(session["id"]))

        return Callbacks(
            on_data=guarded(on_data),
            on_complete=guarded(on_complete, terminal=True),
            on_error=guarded(on_error, terminal=True),
            on_human_input=guarded(on_human_input),
        )

    def _await_input(self, task_id: str, session: db.SessionRow, prompt: str) -> None:
        self._awaiting_input[task_id] = AwaitingInput(
            session_id=session["id"], project_id=session["project_id"], prompt=prompt
        )
        log.info("Task %s is waiting for human input", task_id)
        self._notify_task(events.TASK_HUMAN_INPUT, task_id, extra={"prompt": prompt})

    def _finish(
        self, task_id: str, session: db.SessionRow, status: str, outcome: ExecutionOutcome
    ) -> None:
        db.finish_task(self.conn, task_id, status)
        self._release(task_id, session, outcome)

    def _release(self, task_id: str, session: db.SessionRow, outcome: ExecutionOutcome) -> None:
        self._running.pop(task_id, None)
        if outcome.conversation_id:
            db.set_session_conversation_id(self.conn, session["id"], outcome.conversation_id)
        handler = self._log_handlers.pop(task_id, None)
        if handler is not None:
            logging.getLogger("clork.supervisor").removeHandler(handler)

    # -- Operations -------------------------------------------------------

    async def start_session(self, session_id: str) -> db.SessionRow:
        session = db.get_session(self.conn, session_id)
        if not session:
            raise NotFoundError(f"Session '{session_id}' not found")
        if session["status"] == "running":
            raise ConflictError("Session is already running")
        if session["status"] == "completed":
            if db.next_pending_task(self.conn, session_id) is None:
                raise ConflictError("No pending tasks in this session")
            self._set_session_status(session_id, "idle")
        db.set_session_active(self.conn, session_id, True)
        await self.process_session(session_id)
        updated = db.get_session(self.conn, session_id)
        assert updated is not None
        return updated

    async def stop_session(self, session_id: str) -> db.SessionRow:
        """Deactivate a session. A running task finishes; nothing new starts."""
        session = db.get_session(self.conn, session_id)
        if not session:
            raise NotFoundError(f"Session '{session_id}' not found")
        db.set_session_active(self.conn, session_id, False)
        if self.running_task_id_for(session_id) is None:
            await self.process_session(session_id)
        updated = db.get_session(self.conn, session_id)
        assert updated is not None
        return updated

    def abort_task(self, task_id: str) -> bool:
        """Abort a running task or clear a task's pending human-input wait."""
        pending = self._awaiting_input.pop(task_id, None)
        if pending is not None:
            self._notify_task(events.TASK_HUMAN_INPUT_CLEARED, task_id)
            if not self.supervisor.abort(task_id):
                self.schedule(self.process_session(pending.session_id))
                return True
        elif not self.supervisor.abort(task_id):
            return False

        db.finish_task(self.conn, task_id, "aborted")
        self._aborted.add(task_id)
        session_id = self._running.get(task_id)
        log.info("Aborted task %s", task_id)
        if session_id:
            self._notify_task(events.TASK_ABORTED, task_id)
        return True

    def send_human_response(self, task_id: str, response: str) -> db.TaskRow | None:
        """Answer a task waiting for input by queueing a follow-up task.

        The agent runs non-interactively with its output redirected, so the
        reply cannot reach the live process. It becomes the prompt of a new
        ``todo`` task in the same session, which resumes the conversation.
        Returns the follow-up task, or None if *task_id* was not waiting.
        """
        pending = self._awaiting_input.pop(task_id, None)
        if pending is None:
            return None
        db.add_task_event(
            self.conn,
            task_id=task_id,
            event_type="human_response",
            data={"type": "human_response", "text": response},
        )
        self._notify_task(events.TASK_HUMAN_INPUT_CLEARED, task_id)
        follow_up = db.create_task(
            self.conn,
            project_id=pending.project_id,
            session_id=pending.session_id,
            prompt=response,
            location="todo",
        )
        self._notify_task(events.TASK_CREATED, follow_up["id"])
        if task_id not in self._running:
            self.schedule(self.process_session(pending.session_id))
        return follow_up

    def delete_task(self, task_id: str) -> bool:
        task = db.get_task(self.conn, task_id)
        if not task:
            return False
        if task["status"] == "running":
            self.abort_task(task_id)
        live = task_id in self._running
        if live:
            # The session is re-processed once the process exits.
            self._deleted.add(task_id)
        self._awaiting_input.pop(task_id, None)
        db.remove_task(self.conn, task_id)
        if task["session_id"] and not live:
            self.schedule(self.process_session(task["session_id"]))
        return True

    def delete_session(self, session_id: str) -> bool:
        session = db.get_session(self.conn, session_id)
        if not session:
            return False
        running_id = self.running_task_id_for(session_id)
        if running_id:
            self.abort_task(running_id)
            self._deleted.add(running_id)
        for task_id in [t for t, a in self._awaiting_input.items() if a.session_id == session_id]:
            self._awaiting_input.pop(task_id, None)
        removed = db.remove_session(self.conn, session_id)
        queued = db.next_queued_session(self.conn, session["project_id"])
        if queued:
            self.schedule(self.process_session(queued["id"]))
        return removed

    def delete_project(self, name_or_id: str) -> dict | None:
        """Abort the project's running work, then cascade-delete it."""
        project = db.get_project(self.conn, name_or_id)
        if not project:
            return None
        session_ids = {s["id"] for s in db.list_sessions(self.conn, project["id"])}
        for task_id, session_id in list(self._running.items()):
            if session_id in session_ids:
                self.abort_task(task_id)
                self._deleted.add(task_id)
        for task_id, pending in list(self._awaiting_input.items()):
            if pending.project_id == project["id"]:
                self._awaiting_input.pop(task_id, None)
        return db.remove_project(self.conn, project["id"])

    async def shutdown(self) -> None:
        await self.supervisor.shutdown()
        await self.drain()

    # -- Persistence + notification helpers -------------------------------

    def _record(
        self, task_id: str, session: db.SessionRow, event_type: str, data: dict[str, Any]
    ) -> None:
        event = db.add_task_event(self.conn, task_id=task_id, event_type=event_type, data=data)
        self._notify(
            events.TASK_PROGRESS,
            task_id,
            project_id=session["project_id"],
            session_id=session["id"],
            extra={"task_id": task_id, "event": dict(event)},
        )

    def _set_session_status(self, session_id: str, status: str) -> None:
        db.update_session_status(self.conn, session_id, status)
        session = db.get_session(self.conn, session_id)
        if session:
            self._notify(
                events.SESSION_UPDATED,
                session_id,
                project_id=session["project_id"],
                session_id=session_id,
                extra={"session": dict(session)},
            )

    def _notify_task(self, event_type: str, task_id: str, *, extra: dict | None = None) -> None:
        task = db.get_task(self.conn, task_id)
        if not task:
            return
        payload: dict[str, Any] = {"task_id": task_id, "task": dict(task)}
        if extra:
            payload.update(extra)
        self._notify(
            event_type,
            task_id,
            project_id=task["project_id"],
            session_id=task["session_id"],
            extra=payload,
        )
