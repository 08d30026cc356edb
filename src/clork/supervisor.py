"""Process supervisor: one external agent subprocess per task.

The agent is launched through the shell with stdout/stderr redirected to a
per-task scratch file. Output is picked up by polling that file every
``POLL_INTERVAL`` seconds rather than by reading a pipe, and each complete
line is routed to the caller's callbacks as a stream record.

Exactly one terminal outcome is reported per task: ``on_complete`` for a
zero exit, ``on_error`` (with ``aborted`` set for signal exits or explicit
aborts) otherwise. If the agent never wrote a ``result`` record, one is
synthesized before the terminal callback.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import os
import signal
import subprocess
import sys
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from clork.paths import SCRATCH_DIR, float_env, int_env
from clork.prompts import looks_like_permission_prompt
from clork.stream import (
    OutputTail,
    conversation_id,
    is_result,
    needs_human_input,
    parse_record,
    raw_text_record,
)

log = logging.getLogger(__name__)

AGENT_COMMAND = os.environ.get("CLORK_AGENT_COMMAND", "claude")
POLL_INTERVAL = int_env("CLORK_POLL_INTERVAL_MS", 150, min_value=10) / 1000
SILENCE_WARNING_SECONDS = float_env("CLORK_SILENCE_WARNING_SECONDS", 30.0, min_value=0.0)

IS_WINDOWS = sys.platform == "win32"

SUMMARY_WITH_OUTPUT = "(Task completed - see event log for details)"
SUMMARY_NO_OUTPUT = "(Task completed with no output)"

# Shell exit statuses (128 + N) for an agent that a wrapping shell saw die by signal.
if IS_WINDOWS:
    SIGNAL_EXIT_CODES: frozenset[int] = frozenset()
else:
    SIGNAL_EXIT_CODES = frozenset(
        128 + sig for sig in (signal.SIGHUP, signal.SIGINT, signal.SIGKILL, signal.SIGTERM)
    )


class SupervisorError(Exception):
    """Base class for process supervisor failures."""


class SpawnError(SupervisorError):
    """The agent process could not be created."""


@dataclass
class ExecutionOptions:
    prompt: str
    cwd: str
    model: str | None = None
    permission_mode: str = "default"
    resume_conversation_id: str | None = None


@dataclass
class ExecutionOutcome:
    """Terminal result passed to ``on_complete`` / ``on_error``."""

    exit_code: int | None
    conversation_id: str | None = None
    aborted: bool = False
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"exitCode": self.exit_code, "sessionId": self.conversation_id}
        if self.aborted:
            data["aborted"] = True
        if self.error:
            data["error"] = self.error
        return data


@dataclass
class Callbacks:
    on_data: Callable[[dict[str, Any]], None]
    on_complete: Callable[[ExecutionOutcome], None]
    on_error: Callable[[ExecutionOutcome], None]
    on_human_input: Callable[[dict[str, Any]], None]


@dataclass
class _Run:
    """Per-task state owned by the supervisor until the terminal callback fires."""

    callbacks: Callbacks
    tail: OutputTail
    conversation_id: str | None = None
    received_data: bool = False
    saw_result: bool = False
    abort_requested: bool = False


def escape_prompt(prompt: str) -> str:
    """Make *prompt* safe inside a double-quoted shell argument on one line."""
    flat = prompt.replace("\r\n", " ").replace("\n", " ").replace("\r", " ")
    if IS_WINDOWS:
        return flat.replace('"', '\\"')
    for ch in ("\\", '"', "$", "`"):
        flat = flat.replace(ch, "\\" + ch)
    return flat


def build_command(
    options: ExecutionOptions, output_path: Path, *, agent_command: str = AGENT_COMMAND
) -> str:
    parts = [
        agent_command,
        "-p",
        f'"{escape_prompt(options.prompt)}"',
        "--output-format",
        "stream-json",
        "--verbose",
    ]
    if options.model:
        parts += ["--model", options.model]
    if options.permission_mode == "full":
        parts.append("--dangerously-skip-permissions")
    if options.resume_conversation_id:
        parts += ["--resume", options.resume_conversation_id]
    if not IS_WINDOWS:
        # The agent replaces the shell, so a signal death surfaces as a negative returncode.
        parts.insert(0, "exec")
    return " ".join(parts) + f' > "{output_path}" 2>&1'


def _agent_env() -> dict[str, str]:
    env = {k: v for k, v in os.environ.items() if k != "CLAUDECODE"}
    env["FORCE_COLOR"] = "0"
    return env


class ProcessSupervisor:
    """Owns agent subprocesses, their poll loops and scratch files."""

    def __init__(
        self,
        *,
        agent_command: str = AGENT_COMMAND,
        scratch_dir: Path = SCRATCH_DIR,
        poll_interval: float = POLL_INTERVAL,
        silence_warning: float = SILENCE_WARNING_SECONDS,
    ) -> None:
        self._agent_command = agent_command
        self._scratch_dir = scratch_dir
        self._poll_interval = poll_interval
        self._silence_warning = silence_warning

        self._processes: dict[str, asyncio.subprocess.Process] = {}
        self._pollers: dict[str, asyncio.Task[None]] = {}
        self._watchdogs: dict[str, asyncio.TimerHandle] = {}
        self._output_files: dict[str, Path] = {}
        self._waiters: dict[str, asyncio.Task[None]] = {}
        self._runs: dict[str, _Run] = {}

    # -- Public API -------------------------------------------------------

    def has_running_tasks(self) -> bool:
        return bool(self._processes)

    def running_task_ids(self) -> list[str]:
        return list(self._processes)

    def output_path(self, task_id: str) -> Path:
        return self._scratch_dir / f"clork-task-{task_id}.jsonl"

    async def execute(self, task_id: str, options: ExecutionOptions, callbacks: Callbacks) -> None:
        """Spawn the agent for *task_id* and start polling its output.

        Returns once the process is running. Spawn failures are reported
        through ``callbacks.on_error`` rather than raised.
        """
        if task_id in self._runs:
            raise SupervisorError(f"Task {task_id} is already executing")

        out_path = self.output_path(task_id)
        try:
            self._scratch_dir.mkdir(parents=True, exist_ok=True)
            out_path.write_bytes(b"")
            command = build_command(options, out_path, agent_command=self._agent_command)
            proc = await self._spawn(command, options.cwd)
        except (OSError, SpawnError) as exc:
            log.error("Failed to spawn agent for task %s: %s", task_id, exc)
            with contextlib.suppress(OSError):
                out_path.unlink(missing_ok=True)
            message = f"Failed to spawn agent: {exc}"
            callbacks.on_data({"type": "error", "text": message})
            callbacks.on_error(ExecutionOutcome(exit_code=None, error=message))
            return

        log.info("Started task %s (pid=%d, model=%s)", task_id, proc.pid, options.model)
        self._runs[task_id] = _Run(callbacks=callbacks, tail=OutputTail(out_path))
        self._processes[task_id] = proc
        self._output_files[task_id] = out_path
        self._pollers[task_id] = asyncio.create_task(self._poll_loop(task_id))
        self._waiters[task_id] = asyncio.create_task(self._wait_for_exit(task_id, proc))
        if self._silence_warning > 0:
            loop = asyncio.get_running_loop()
            self._watchdogs[task_id] = loop.call_later(
                self._silence_warning, self._silence_check, task_id
            )

    def abort(self, task_id: str) -> bool:
        """Terminate the process tree for *task_id*.

        Returns whether a process was found, not whether the kill succeeded.
        The terminal callback fires once the process actually exits.
        """
        proc = self._processes.get(task_id)
        if proc is None:
            return False
        run = self._runs.get(task_id)
        if run is not None:
            run.abort_requested = True
        log.info("Aborting task %s (pid=%d)", task_id, proc.pid)
        _terminate_tree(proc)
        self.cleanup(task_id)
        return True

    def cleanup(self, task_id: str) -> None:
        """Release the process handle, poll loop, watchdog and scratch file. Idempotent."""
        self._processes.pop(task_id, None)
        poller = self._pollers.pop(task_id, None)
        if poller is not None and poller is not asyncio.current_task():
            poller.cancel()
        watchdog = self._watchdogs.pop(task_id, None)
        if watchdog is not None:
            watchdog.cancel()
        out_path = self._output_files.pop(task_id, None)
        if out_path is not None:
            with contextlib.suppress(OSError):
                out_path.unlink(missing_ok=True)

    async def wait(self, task_id: str) -> None:
        """Wait until the terminal callback for *task_id* has been delivered."""
        waiter = self._waiters.get(task_id)
        if waiter is not None:
            await asyncio.shield(waiter)

    async def shutdown(self) -> None:
        """Abort every running task and wait for their exits."""
        waiters = list(self._waiters.values())
        for task_id in list(self._processes):
            self.abort(task_id)
        if waiters:
            await asyncio.gather(*waiters, return_exceptions=True)

    # -- Internals --------------------------------------------------------

    async def _spawn(self, command: str, cwd: str) -> asyncio.subprocess.Process:
        kwargs: dict[str, Any] = {
            "cwd": cwd,
            "env": _agent_env(),
            "stdin": asyncio.subprocess.DEVNULL,
            "stdout": asyncio.subprocess.DEVNULL,
            "stderr": asyncio.subprocess.DEVNULL,
        }
        if IS_WINDOWS:
            kwargs["creationflags"] = subprocess.CREATE_NO_WINDOW
        else:
            # Own process group so abort can signal the whole tree.
            kwargs["start_new_session"] = True
        if not Path(cwd).is_dir():
            raise SpawnError(f"Working directory does not exist: {cwd}")
        return await asyncio.create_subprocess_shell(command, **kwargs)

    async def _poll_loop(self, task_id: str) -> None:
        while True:
            await asyncio.sleep(self._poll_interval)
            run = self._runs.get(task_id)
            if run is None:
                return
            try:
                lines = run.tail.read_new()
            except OSError as exc:
                log.debug("Output read failed for task %s: %s", task_id, exc)
                continue
            self._route_lines(run, lines)

    def _route_lines(self, run: _Run, lines: list[str]) -> None:
        for line in lines:
            run.received_data = True
            record = parse_record(line)
            if record is None:
                if looks_like_permission_prompt(line):
                    run.callbacks.on_human_input({"type": "permission_request", "text": line})
                else:
                    run.callbacks.on_data(raw_text_record(line))
                continue
            cid = conversation_id(record)
            if cid:
                run.conversation_id = cid
            if is_result(record):
                run.saw_result = True
            if needs_human_input(record):
                run.callbacks.on_human_input(record)
            else:
                run.callbacks.on_data(record)

    async def _wait_for_exit(self, task_id: str, proc: asyncio.subprocess.Process) -> None:
        try:
            try:
                returncode: int | None = await proc.wait()
            except OSError as exc:
                log.error("Process error for task %s: %s", task_id, exc)
                self._finish_with_fault(task_id, str(exc))
                return
            self._finish(task_id, returncode)
        finally:
            self._waiters.pop(task_id, None)

    def _finish_with_fault(self, task_id: str, message: str) -> None:
        run = self._runs.pop(task_id, None)
        self.cleanup(task_id)
        if run is None:
            return
        run.callbacks.on_data({"type": "error", "text": f"Process error: {message}"})
        run.callbacks.on_error(
            ExecutionOutcome(exit_code=None, conversation_id=run.conversation_id, error=message)
        )

    def _finish(self, task_id: str, returncode: int | None) -> None:
        run = self._runs.pop(task_id, None)
        if run is None:
            return
        log.info("Task %s exited (code=%s)", task_id, returncode)

        poller = self._pollers.pop(task_id, None)
        if poller is not None:
            poller.cancel()
        try:
            lines = run.tail.drain()
        except OSError as exc:
            log.warning("Final output read failed for task %s: %s", task_id, exc)
            lines = []
        self._route_lines(run, lines)

        if not run.saw_result:
            run.callbacks.on_data(
                {
                    "type": "result",
                    "subtype": "success" if returncode == 0 else "error",
                    "result": SUMMARY_WITH_OUTPUT if run.received_data else SUMMARY_NO_OUTPUT,
                }
            )
        self.cleanup(task_id)

        cid = run.conversation_id
        if returncode == 0 and not run.abort_requested:
            run.callbacks.on_complete(ExecutionOutcome(exit_code=0, conversation_id=cid))
        elif run.abort_requested or _killed_by_signal(returncode):
            run.callbacks.on_data({"type": "aborted", "text": "Task was aborted"})
            run.callbacks.on_error(
                ExecutionOutcome(
                    exit_code=returncode if returncode is not None else -1,
                    conversation_id=cid,
                    aborted=True,
                )
            )
        else:
            message = f"Process exited with code {returncode}"
            run.callbacks.on_data({"type": "error", "text": message})
            run.callbacks.on_error(
                ExecutionOutcome(exit_code=returncode, conversation_id=cid, error=message)
            )

    def _silence_check(self, task_id: str) -> None:
        self._watchdogs.pop(task_id, None)
        run = self._runs.get(task_id)
        if run is None or run.received_data or task_id not in self._processes:
            return
        log.warning(
            "No output from task %s after %ss; still waiting", task_id, self._silence_warning
        )
        run.callbacks.on_data(
            {"type": "system", "text": "The agent has not responded yet. Still waiting..."}
        )


def _killed_by_signal(returncode: int | None) -> bool:
    return returncode is None or returncode < 0 or returncode in SIGNAL_EXIT_CODES


def _terminate_tree(proc: asyncio.subprocess.Process) -> None:
    if IS_WINDOWS:
        try:
            subprocess.run(
                ["taskkill", "/pid", str(proc.pid), "/T", "/F"],
                check=True,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
            )
            return
        except (OSError, subprocess.CalledProcessError):
            log.debug("taskkill failed for pid %d; falling back to terminate()", proc.pid)
    else:
        try:
            os.killpg(proc.pid, signal.SIGTERM)
            return
        except (ProcessLookupError, PermissionError):
            log.debug("killpg failed for pid %d; falling back to terminate()", proc.pid)
    with contextlib.suppress(ProcessLookupError):
        proc.terminate()
