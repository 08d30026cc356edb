"""clork daemon: the long-lived host for supervisor, poller and scheduler.

The daemon owns the agent subprocesses, so everything that starts, stops or
observes a task goes through it. Clients talk to it over a Unix domain
socket with newline-delimited JSON:

- ``{"type": "request", "id": 1, "method": "task.show", "params": {...}}``
  is answered with ``{"type": "response", "id": 1, "ok": true, "data": ...}``
  (or ``"ok": false`` with ``error`` and ``code``), see ``clork.api``;
- ``{"type": "subscribe", "project_id": ...}`` turns the connection into
  an event feed: the current agent status is pushed right away, then every
  lifecycle notification as ``{"type": "event", "event": {...}}``.

Every notification is also appended to the Redis stream for readers that
are not connected to the socket.

Run directly::

    clork-daemon                 # foreground
    python -m clork.daemon
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import signal
import sqlite3
from pathlib import Path
from typing import Any

from clork import api, db, events
from clork.paths import DEFAULT_DB_PATH, DEFAULT_SOCKET_PATH, RUNTIME_DIR, bool_env
from clork.scheduler import Scheduler
from clork.supervisor import ProcessSupervisor
from clork.usage_poller import UsagePoller

log = logging.getLogger(__name__)

DEFAULT_PID_PATH = DEFAULT_SOCKET_PATH.with_suffix(".pid")
DEFAULT_LOG_PATH = RUNTIME_DIR / "daemon.log"

REDIS_EVENTS = bool_env("CLORK_REDIS_EVENTS", True)
USAGE_POLLING = bool_env("CLORK_USAGE_POLLING", True)

# Filter keys a subscriber may send; matched against the event's own fields.
_SUBSCRIBE_FILTERS = ("project_id", "session_id", "task_id")


# -- Wire protocol (daemon <-> client) ------------------------------------


def _encode(msg: dict) -> bytes:
    return json.dumps(msg, separators=(",", ":"), default=str).encode() + b"\n"


def _decode(line: bytes) -> dict[str, Any] | None:
    try:
        parsed = json.loads(line)
    except (json.JSONDecodeError, UnicodeDecodeError):
        return None
    return parsed if isinstance(parsed, dict) else None


# -- Client connection ----------------------------------------------------


class _Client:
    """State for one connected client."""

    __slots__ = ("reader", "writer", "addr", "subscribed", "filters")

    def __init__(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        self.reader = reader
        self.writer = writer
        self.addr = writer.get_extra_info("peername") or "unknown"
        self.subscribed = False
        self.filters: dict[str, str] = {}

    def send(self, msg: dict) -> None:
        """Queue a message to this client (non-blocking)."""
        try:
            self.writer.write(_encode(msg))
        except Exception:
            log.debug("Failed to write to client %s", self.addr)

    def wants(self, event: dict[str, Any]) -> bool:
        if not self.subscribed:
            return False
        for key, expected in self.filters.items():
            actual = event.get(key)
            if key == "task_id" and actual is None:
                actual = event.get("id")
            if actual != expected:
                return False
        return True

    async def drain(self) -> None:
        await self.writer.drain()

    def close(self) -> None:
        self.writer.close()


# -- Daemon ---------------------------------------------------------------


class ClorkDaemon:
    """Socket server composing the process supervisor, usage poller and scheduler."""

    def __init__(
        self,
        *,
        socket_path: Path = DEFAULT_SOCKET_PATH,
        db_path: Path = DEFAULT_DB_PATH,
        supervisor: ProcessSupervisor | None = None,
        poller: UsagePoller | None = None,
        redis_events: bool = REDIS_EVENTS,
        usage_polling: bool = USAGE_POLLING,
    ) -> None:
        self._socket_path = socket_path
        self._db_path = db_path
        self._redis_events = redis_events
        self._usage_polling = usage_polling

        self.supervisor = supervisor or ProcessSupervisor()
        self.poller = poller or UsagePoller()
        self.poller.publish = self.publish_usage
        self.conn: sqlite3.Connection | None = None
        self.scheduler: Scheduler | None = None

        self._clients: set[_Client] = set()
        self._server: asyncio.AbstractServer | None = None
        self._agent_status: dict[str, Any] | None = None

    @property
    def pid_path(self) -> Path:
        return self._socket_path.with_suffix(".pid")

    def api_context(self) -> api.ApiContext:
        assert self.conn is not None
        return api.ApiContext(conn=self.conn, scheduler=self.scheduler, poller=self.poller)

    # -- Notifications ----------------------------------------------------

    def notify(
        self,
        event_type: str,
        entity_id: str,
        *,
        project_id: str | None = None,
        session_id: str | None = None,
        extra: dict | None = None,
    ) -> dict[str, Any]:
        """Publish one lifecycle event to Redis and to subscribed clients."""
        event = events.build_event(
            event_type, entity_id, project_id=project_id, session_id=session_id, extra=extra
        )
        if self._redis_events:
            events.publish(event)
        self.broadcast(event)
        return event

    def publish_usage(self, snapshot: dict[str, Any]) -> None:
        if self._redis_events:
            events.store_usage_snapshot(snapshot)
        self.notify(events.USAGE_UPDATED, "usage", extra={"usage": snapshot})

    def broadcast(self, event: dict[str, Any]) -> None:
        for client in list(self._clients):
            if client.wants(event):
                client.send({"type": "event", "event": event})

    async def agent_status(self, *, refresh: bool = False) -> dict[str, Any]:
        if self._agent_status is None or refresh:
            self._agent_status = await asyncio.to_thread(self.poller.check_status)
        return self._agent_status

    # -- Client connection handling ---------------------------------------

    async def _handle_client(
        self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter
    ) -> None:
        client = _Client(reader, writer)
        self._clients.add(client)
        log.debug("Client connected: %s (total: %d)", client.addr, len(self._clients))

        try:
            while True:
                line = await reader.readline()
                if not line:
                    break
                msg = _decode(line)
                if msg is None:
                    continue
                await self._dispatch_client_message(client, msg)
                await client.drain()
        except (asyncio.CancelledError, ConnectionResetError, BrokenPipeError):
            pass
        finally:
            self._disconnect_client(client)

    async def _dispatch_client_message(self, client: _Client, msg: dict) -> None:
        msg_type = msg.get("type")

        if msg_type == "request":
            response = await api.dispatch(
                {"method": msg.get("method"), "params": msg.get("params")},
                ctx=self.api_context(),
            )
            if not response["ok"] and response.get("code") == api.INTERNAL:
                log.error("Request %s failed: %s", msg.get("method"), response.get("error"))
            client.send({"type": "response", "id": msg.get("id"), **response})
        elif msg_type == "subscribe":
            client.subscribed = True
            client.filters = {
                key: str(msg[key]) for key in _SUBSCRIBE_FILTERS if msg.get(key) is not None
            }
            client.send({"type": "subscribed", "filters": client.filters})
            status = await self.agent_status()
            client.send(
                {
                    "type": "event",
                    "event": events.build_event(
                        events.AGENT_STATUS, "agent", extra={"status": status}
                    ),
                }
            )
        elif msg_type == "unsubscribe":
            client.subscribed = False
            client.filters = {}
        else:
            log.warning("Unknown client message type: %s", msg_type)

    def _disconnect_client(self, client: _Client) -> None:
        self._clients.discard(client)
        client.close()
        log.debug("Client disconnected: %s (total: %d)", client.addr, len(self._clients))

    # -- Public API -------------------------------------------------------

    async def start(self) -> None:
        """Open the database, start polling, then listen on the socket."""
        self.conn = db.get_connection(self._db_path)
        self.scheduler = Scheduler(
            self.conn,
            self.supervisor,
            self.poller,
            notify=self.notify,
            publish_usage=self.publish_usage,
        )
        if self._usage_polling:
            self.poller.start()

        self._socket_path.parent.mkdir(parents=True, exist_ok=True, mode=0o700)
        # Remove stale socket
        if self._socket_path.exists():
            self._socket_path.unlink()

        self._server = await asyncio.start_unix_server(
            self._handle_client,
            path=str(self._socket_path),
            limit=10 * 1024 * 1024,
        )
        # Make socket accessible to the user only
        self._socket_path.chmod(0o600)
        self.pid_path.write_text(str(os.getpid()))

        log.info("Daemon listening on %s (db=%s)", self._socket_path, self._db_path)

    async def stop(self) -> None:
        """Abort running tasks, stop polling, close the socket and database."""
        for client in list(self._clients):
            client.close()
        self._clients.clear()
        if self._server:
            self._server.close()
            await self._server.wait_closed()
            self._server = None
        if self.scheduler is not None:
            await self.scheduler.shutdown()
        await self.poller.stop()
        if self.conn is not None:
            self.conn.close()
            self.conn = None
        if self._socket_path.exists():
            self._socket_path.unlink()
        if self.pid_path.exists():
            self.pid_path.unlink()
        log.info("Daemon stopped")

    async def serve_forever(self) -> None:
        """Run until SIGTERM or SIGINT."""
        assert self._server is not None
        stop_event = asyncio.Event()

        def on_signal() -> None:
            log.info("Signal received, shutting down")
            stop_event.set()

        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, on_signal)

        await stop_event.wait()
        await self.stop()


# -- Entry point ----------------------------------------------------------


async def _main() -> None:
    daemon = ClorkDaemon()
    await daemon.start()
    await daemon.serve_forever()


def main() -> None:
    level = os.environ.get("CLORK_LOG_LEVEL", "INFO").upper()
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )
    asyncio.run(_main())


if __name__ == "__main__":
    main()
