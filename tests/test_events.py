"""Tests for event publishing, usage snapshot caching and stream subscription."""

from __future__ import annotations

import json
from unittest.mock import MagicMock, patch

import pytest
from redis.exceptions import RedisError

from clork.events import (
    EVENT_VERSION,
    EVENTS_STREAM,
    EVENTS_STREAM_MAXLEN,
    TASK_STARTED,
    USAGE_SNAPSHOT_KEY,
    USAGE_SNAPSHOT_TTL,
    USAGE_UPDATED,
    EventSubscriber,
    build_event,
    get_usage_snapshot_safe,
    publish_event,
    publish_usage,
    store_usage_snapshot,
)


def test_publish_event_best_effort():
    """publish_event swallows Redis transport errors so task execution is never affected."""
    with patch("clork.events.get_redis", side_effect=RedisError("Redis down")):
        event = publish_event(TASK_STARTED, "task-1", project_id="p1")
    assert event["type"] == TASK_STARTED


def test_publish_event_non_redis_exception_propagates():
    with (
        patch("clork.events.get_redis", side_effect=ValueError("boom")),
        pytest.raises(ValueError, match="boom"),
    ):
        publish_event(TASK_STARTED, "task-1")


def test_publish_event_payload_shape():
    mock_redis = MagicMock()
    with patch("clork.events.get_redis", return_value=mock_redis):
        publish_event(
            TASK_STARTED,
            "task-abc",
            project_id="proj-1",
            session_id="sess-1",
            extra={"task_id": "task-abc"},
        )

    mock_redis.xadd.assert_called_once()
    call_args = mock_redis.xadd.call_args
    assert call_args[0][0] == EVENTS_STREAM

    payload = json.loads(call_args[0][1]["data"])
    assert payload["type"] == TASK_STARTED
    assert payload["id"] == "task-abc"
    assert payload["project_id"] == "proj-1"
    assert payload["session_id"] == "sess-1"
    assert payload["task_id"] == "task-abc"
    assert payload["source"] == "daemon"
    assert payload["v"] == EVENT_VERSION
    assert "ts" in payload
    assert "event_id" in payload

    assert call_args[1]["maxlen"] == EVENTS_STREAM_MAXLEN
    assert call_args[1]["approximate"] is True


def test_build_event_ids_are_unique():
    a = build_event(TASK_STARTED, "t1")
    b = build_event(TASK_STARTED, "t1")
    assert a["event_id"] != b["event_id"]
    assert a["project_id"] is None


def test_store_usage_snapshot_sets_ttl():
    mock_redis = MagicMock()
    with patch("clork.events.get_redis", return_value=mock_redis):
        store_usage_snapshot({"rate_limits": []})
    mock_redis.set.assert_called_once_with(
        USAGE_SNAPSHOT_KEY, json.dumps({"rate_limits": []}), ex=USAGE_SNAPSHOT_TTL
    )


def test_store_usage_snapshot_best_effort():
    with patch("clork.events.get_redis", side_effect=RedisError("down")):
        store_usage_snapshot({"rate_limits": []})


def test_get_usage_snapshot_safe():
    mock_redis = MagicMock()
    mock_redis.get.return_value = b'{"clork_stats": {"task_count": 2}}'
    with patch("clork.events.get_redis", return_value=mock_redis):
        assert get_usage_snapshot_safe() == {"clork_stats": {"task_count": 2}}

    mock_redis.get.return_value = None
    with patch("clork.events.get_redis", return_value=mock_redis):
        assert get_usage_snapshot_safe() is None

    mock_redis.get.return_value = b"not json"
    with patch("clork.events.get_redis", return_value=mock_redis):
        assert get_usage_snapshot_safe() is None

    with patch("clork.events.get_redis", side_effect=RedisError("down")):
        assert get_usage_snapshot_safe() is None


def test_publish_usage_stores_and_publishes():
    mock_redis = MagicMock()
    with patch("clork.events.get_redis", return_value=mock_redis):
        event = publish_usage({"rate_limits": []})
    assert event["type"] == USAGE_UPDATED
    assert event["usage"] == {"rate_limits": []}
    mock_redis.set.assert_called_once()
    mock_redis.xadd.assert_called_once()


# ---------------------------------------------------------------------------
# EventSubscriber tests
# ---------------------------------------------------------------------------


def _make_stream_entry(event_data: dict, entry_id: str = "1-0") -> list:
    """Build a mock XREAD response with a single event."""
    return [[EVENTS_STREAM, [(entry_id, {"data": json.dumps(event_data)})]]]


def test_event_subscriber_returns_matching_event():
    event = {"type": TASK_STARTED, "id": "task-1", "project_id": "p1", "session_id": "s1"}
    mock_redis = MagicMock()
    mock_redis.xread.return_value = _make_stream_entry(event)

    with patch("clork.events.get_redis", return_value=mock_redis):
        sub = EventSubscriber(project_id="p1", timeout=1.0)
        result = next(sub)

    assert result is not None
    assert result["id"] == "task-1"
    assert result["_stream_id"] == "1-0"


def test_event_subscriber_filters_by_session():
    wrong_event = _make_stream_entry(
        {"type": TASK_STARTED, "id": "task-1", "project_id": "p1", "session_id": "other"}
    )
    mock_redis = MagicMock()
    # First call returns non-matching event, second call times out
    mock_redis.xread.side_effect = [wrong_event, []]

    with patch("clork.events.get_redis", return_value=mock_redis):
        sub = EventSubscriber(session_id="s1", timeout=0.01)
        result = next(sub)

    assert result is None


def test_event_subscriber_task_filter_uses_task_id_field():
    progress = _make_stream_entry(
        {"type": "task:progress", "id": "task-1", "task_id": "task-1", "project_id": "p1"},
        entry_id="2-0",
    )
    mock_redis = MagicMock()
    mock_redis.xread.side_effect = [
        _make_stream_entry({"type": TASK_STARTED, "id": "task-other"}),
        progress,
    ]

    with patch("clork.events.get_redis", return_value=mock_redis):
        sub = EventSubscriber(task_id="task-1", timeout=0.01)
        result = next(sub)

    assert result is not None
    assert result["_stream_id"] == "2-0"


def test_event_subscriber_advances_cursor():
    mock_redis = MagicMock()
    mock_redis.xread.side_effect = [
        _make_stream_entry({"type": TASK_STARTED, "id": "a"}, entry_id="5-0"),
        [],
    ]
    with patch("clork.events.get_redis", return_value=mock_redis):
        sub = EventSubscriber(timeout=0.01)
        next(sub)
        next(sub)
    assert mock_redis.xread.call_args_list[1][0][0] == {EVENTS_STREAM: "5-0"}


def test_event_subscriber_skips_malformed_entries():
    mock_redis = MagicMock()
    mock_redis.xread.side_effect = [
        [[EVENTS_STREAM, [("1-0", {"data": "not json"}), ("2-0", {"other": "x"})]]],
        _make_stream_entry({"type": TASK_STARTED, "id": "ok"}, entry_id="3-0"),
    ]
    with patch("clork.events.get_redis", return_value=mock_redis):
        result = next(EventSubscriber(timeout=0.01))
    assert result is not None
    assert result["id"] == "ok"


def test_event_subscriber_decodes_bytes():
    mock_redis = MagicMock()
    mock_redis.xread.return_value = [
        [EVENTS_STREAM, [(b"7-0", {b"data": json.dumps({"type": "x", "id": "y"}).encode()})]]
    ]
    with patch("clork.events.get_redis", return_value=mock_redis):
        result = next(EventSubscriber(timeout=0.01))
    assert result == {"type": "x", "id": "y", "_stream_id": "7-0"}


def test_event_subscriber_unavailable_returns_none():
    mock_redis = MagicMock()
    mock_redis.ping.side_effect = RedisError("down")
    with patch("clork.events.get_redis", return_value=mock_redis):
        sub = EventSubscriber(timeout=0.01)
    assert not sub.available
    assert next(sub) is None
