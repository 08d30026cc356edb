"""Client side of the clork daemon socket.

Used by the CLI for every runtime operation and by tests. Communication
uses newline-delimited JSON over a Unix domain socket; see
``clork.daemon`` for the message shapes.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
from collections.abc import AsyncIterator
from pathlib import Path
from typing import Any

from clork.daemon import _encode
from clork.paths import DEFAULT_SOCKET_PATH

log = logging.getLogger(__name__)


class DaemonUnavailable(ConnectionError):
    """No daemon is listening on the socket."""


class DaemonClient:
    """Async client for one daemon connection.

    ``request()`` returns the daemon's response envelope
    (``{"ok": ..., "data" | "error"/"code": ...}``), the same shape
    ``clork.api.dispatch`` returns, so callers can fall back to in-process
    dispatch transparently.
    """

    def __init__(self, *, socket_path: Path = DEFAULT_SOCKET_PATH) -> None:
        self._socket_path = socket_path
        self._reader: asyncio.StreamReader | None = None
        self._writer: asyncio.StreamWriter | None = None
        self._reader_task: asyncio.Task[None] | None = None
        self._next_id = 1
        self._pending: dict[int, asyncio.Future[dict[str, Any]]] = {}
        self._events: asyncio.Queue[dict[str, Any] | None] = asyncio.Queue()

    async def start(self) -> None:
        """Connect to the daemon's Unix socket."""
        try:
            self._reader, self._writer = await asyncio.open_unix_connection(
                str(self._socket_path), limit=10 * 1024 * 1024
            )
        except (FileNotFoundError, ConnectionRefusedError) as exc:
            raise DaemonUnavailable(f"No daemon at {self._socket_path}") from exc
        self._reader_task = asyncio.create_task(self._read_loop())

    async def stop(self) -> None:
        """Disconnect from the daemon."""
        if self._reader_task:
            self._reader_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._reader_task
        if self._writer:
            self._writer.close()
            with contextlib.suppress(Exception):
                await self._writer.wait_closed()
        self._reader = None
        self._writer = None
        self._reader_task = None

    # -- Requests -------------------------------------------------------------

    async def request(
        self,
        method: str,
        params: dict[str, Any] | None = None,
        timeout: float | None = 60,
    ) -> dict[str, Any]:
        """Send one API request and wait for its response envelope."""
        if not self._writer:
            raise RuntimeError("DaemonClient not connected")

        req_id = self._next_id
        self._next_id += 1

        msg: dict[str, Any] = {"type": "request", "id": req_id, "method": method}
        if params is not None:
            msg["params"] = params

        future: asyncio.Future[dict[str, Any]] = asyncio.get_running_loop().create_future()
        self._pending[req_id] = future

        try:
            self._writer.write(_encode(msg))
            await self._writer.drain()
        except Exception:
            self._pending.pop(req_id, None)
            raise

        try:
            if timeout is not None:
                return await asyncio.wait_for(future, timeout=timeout)
            return await future
        except (TimeoutError, asyncio.CancelledError):
            self._pending.pop(req_id, None)
            raise

    # -- Events ---------------------------------------------------------------

    async def subscribe(
        self,
        *,
        project_id: str | None = None,
        session_id: str | None = None,
        task_id: str | None = None,
    ) -> None:
        if not self._writer:
            raise RuntimeError("DaemonClient not connected")
        msg: dict[str, Any] = {"type": "subscribe"}
        for key, value in (
            ("project_id", project_id),
            ("session_id", session_id),
            ("task_id", task_id),
        ):
            if value is not None:
                msg[key] = value
        self._writer.write(_encode(msg))
        await self._writer.drain()

    async def events(self) -> AsyncIterator[dict[str, Any]]:
        """Yield pushed events until the daemon disconnects."""
        while True:
            event = await self._events.get()
            if event is None:
                return
            yield event

    async def next_event(self, timeout: float | None = None) -> dict[str, Any] | None:
        """Next pushed event, or None on disconnect or timeout."""
        try:
            return await asyncio.wait_for(self._events.get(), timeout=timeout)
        except TimeoutError:
            return None

    # -- Internal read loop ---------------------------------------------------

    async def _read_loop(self) -> None:
        assert self._reader is not None
        while True:
            line = await self._reader.readline()
            if not line:
                self._handle_eof()
                break
            try:
                msg = json.loads(line)
            except (json.JSONDecodeError, UnicodeDecodeError):
                continue
            if not isinstance(msg, dict):
                continue
            self._dispatch(msg)

    def _dispatch(self, msg: dict[str, Any]) -> None:
        msg_type = msg.get("type")

        if msg_type == "response":
            self._handle_response(msg)
        elif msg_type == "event" and isinstance(msg.get("event"), dict):
            self._events.put_nowait(msg["event"])
        elif msg_type == "subscribed":
            log.debug("Subscribed with filters %s", msg.get("filters"))

    def _handle_response(self, msg: dict[str, Any]) -> None:
        msg_id = msg.get("id")
        if not isinstance(msg_id, int) or msg_id not in self._pending:
            return
        future = self._pending.pop(msg_id)
        if future.done():
            return
        envelope = {k: v for k, v in msg.items() if k not in ("type", "id")}
        future.set_result(envelope)

    def _handle_eof(self) -> None:
        """Daemon disconnected: fail all pending requests and end the event feed."""
        err = ConnectionError("Daemon connection closed")
        for future in self._pending.values():
            if not future.done():
                future.set_exception(err)
        self._pending.clear()
        self._events.put_nowait(None)

    # -- Context manager ------------------------------------------------------

    async def __aenter__(self) -> DaemonClient:
        await self.start()
        return self

    async def __aexit__(self, *exc: object) -> None:
        await self.stop()


async def call(
    method: str, params: dict[str, Any] | None = None, *, socket_path: Path = DEFAULT_SOCKET_PATH
) -> dict[str, Any]:
    """One-shot request over a fresh connection."""
    async with DaemonClient(socket_path=socket_path) as client:
        return await client.request(method, params)
