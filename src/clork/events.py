"""Realtime event publication over a Redis Stream.

The daemon publishes task lifecycle notifications and usage snapshots
here; any number of readers (``clork watch``, a web frontend) follow the
stream with ``EventSubscriber``. Publication is best-effort: a missing
Redis never breaks task execution.
"""

from __future__ import annotations

import json
import logging
import os
import time
import uuid
from datetime import UTC, datetime
from typing import Any

from redis import ConnectionPool, Redis
from redis.exceptions import RedisError

from clork.paths import int_env

log = logging.getLogger(__name__)

REDIS_URL = os.environ.get("CLORK_REDIS_URL", "redis://localhost:6379/0")

EVENTS_STREAM = "clork:events:stream"
# Max entries retained in the stream
EVENTS_STREAM_MAXLEN = int_env("CLORK_EVENTS_STREAM_MAXLEN", 1000, min_value=1)

USAGE_SNAPSHOT_KEY = "clork:usage:latest"
USAGE_SNAPSHOT_TTL = 21600  # 6 hours

EVENT_VERSION = 1  # Bump when payload shape changes

# Lifecycle notification types
TASK_CREATED = "task:created"
TASK_STARTED = "task:started"
TASK_PROGRESS = "task:progress"
TASK_COMPLETED = "task:completed"
TASK_FAILED = "task:failed"
TASK_ABORTED = "task:aborted"
TASK_HUMAN_INPUT = "task:human_input"
TASK_HUMAN_INPUT_CLEARED = "task:human_input_cleared"
SESSION_UPDATED = "session:updated"
USAGE_UPDATED = "usage:updated"
AGENT_STATUS = "agent:status"


_pool = ConnectionPool.from_url(REDIS_URL, socket_connect_timeout=2)


def get_redis() -> Redis:
    return Redis(connection_pool=_pool)


def build_event(
    event_type: str,
    entity_id: str,
    *,
    project_id: str | None = None,
    session_id: str | None = None,
    source: str = "daemon",
    extra: dict | None = None,
) -> dict[str, Any]:
    event: dict[str, Any] = {
        "event_id": str(uuid.uuid4()),
        "type": event_type,
        "id": entity_id,
        "project_id": project_id,
        "session_id": session_id,
        "source": source,
        "v": EVENT_VERSION,
        "ts": datetime.now(UTC).isoformat(),
    }
    if extra:
        event.update(extra)
    return event


def publish(event: dict[str, Any]) -> None:
    """Append a built event to the Redis Stream. Best-effort, never raises RedisError."""
    payload = json.dumps(event, default=str)
    try:
        r = get_redis()
        r.xadd(EVENTS_STREAM, {"data": payload}, maxlen=EVENTS_STREAM_MAXLEN, approximate=True)
    except RedisError:
        log.warning(
            "Event publish failed (Redis unavailable): %s %s", event.get("type"), event.get("id")
        )


def publish_event(
    event_type: str,
    entity_id: str,
    *,
    project_id: str | None = None,
    session_id: str | None = None,
    source: str = "daemon",
    extra: dict | None = None,
) -> dict[str, Any]:
    """Build and publish one lifecycle event. Returns the event dict."""
    event = build_event(
        event_type,
        entity_id,
        project_id=project_id,
        session_id=session_id,
        source=source,
        extra=extra,
    )
    publish(event)
    return event


def store_usage_snapshot(snapshot: dict) -> None:
    """Best-effort cache of the latest usage snapshot for offline readers."""
    try:
        get_redis().set(
            USAGE_SNAPSHOT_KEY, json.dumps(snapshot, default=str), ex=USAGE_SNAPSHOT_TTL
        )
    except RedisError:
        log.debug("Usage snapshot storage failed (Redis unavailable)")


def get_usage_snapshot_safe() -> dict | None:
    """Read the cached usage snapshot. Returns None on miss or error."""
    try:
        raw: bytes | None = get_redis().get(USAGE_SNAPSHOT_KEY)  # type: ignore[assignment]
        if not raw:
            return None
        data = json.loads(raw)
        return data if isinstance(data, dict) else None
    except (RedisError, json.JSONDecodeError):
        return None


def publish_usage(snapshot: dict) -> dict[str, Any]:
    store_usage_snapshot(snapshot)
    return publish_event(USAGE_UPDATED, "usage", extra={"usage": snapshot})


class EventSubscriber:
    """Iterator over Redis Stream events with optional filtering.

    Uses ``XREAD BLOCK`` for cursor-based delivery. Blocks up to ``timeout``
    seconds waiting for the next event and returns the parsed event dict,
    or ``None`` on timeout. When Redis is unavailable ``__next__`` sleeps
    for ``timeout`` and returns ``None``.
    """

    def __init__(
        self,
        *,
        project_id: str | None = None,
        session_id: str | None = None,
        task_id: str | None = None,
        timeout: float = 30.0,
        cursor: str = "$",
    ):
        self.project_id = project_id
        self.session_id = session_id
        self.task_id = task_id
        self.timeout = timeout
        self._cursor = cursor  # "$" = only new entries, "0" = from beginning
        self._redis: Redis | None
        try:
            self._redis = get_redis()
            self._redis.ping()
        except RedisError:
            self._redis = None

    @property
    def available(self) -> bool:
        return self._redis is not None

    def __iter__(self):
        return self

    def _xread_batch(self) -> list:
        assert self._redis is not None
        timeout_ms = int(self.timeout * 1000)
        return self._redis.xread(  # type: ignore[return-value]
            {EVENTS_STREAM: self._cursor}, block=timeout_ms, count=10
        )

    @staticmethod
    def _decode_stream_event(entry_id, fields) -> dict | None:
        data = fields.get("data") or fields.get(b"data")
        if not data:
            return None
        if isinstance(data, bytes):
            data = data.decode()
        try:
            event = json.loads(data)
        except (json.JSONDecodeError, TypeError):
            return None
        if not isinstance(event, dict):
            return None
        event["_stream_id"] = entry_id.decode() if isinstance(entry_id, bytes) else entry_id
        return event

    def _matches_filters(self, event: dict) -> bool:
        if self.project_id and event.get("project_id") != self.project_id:
            return False
        if self.session_id and event.get("session_id") != self.session_id:
            return False
        return not (self.task_id and event.get("task_id", event.get("id")) != self.task_id)

    def __next__(self) -> dict | None:
        if self._redis is None:
            time.sleep(self.timeout)
            return None
        while True:
            # XREAD BLOCK returns list of [stream_name, [(entry_id, fields), ...]]
            result = self._xread_batch()
            if not result:
                return None
            for _stream_name, entries in result:
                for entry_id, fields in entries:
                    self._cursor = entry_id
                    event = self._decode_stream_event(entry_id, fields)
                    if event is None or not self._matches_filters(event):
                        continue
                    return event
