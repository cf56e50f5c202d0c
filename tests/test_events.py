"""Tests for lifecycle event publishing and subscription."""

from __future__ import annotations

import json
from unittest.mock import MagicMock, patch

import pytest
from redis.exceptions import RedisError

from blackboard.events import EVENTS_STREAM, EVENTS_STREAM_MAXLEN, EventSubscriber, publish_event


def test_publish_event_best_effort():
    """publish_event swallows Redis transport errors so commands never fail on them."""
    with patch("blackboard.events.get_redis", side_effect=RedisError("Redis down")):
        publish_event("worker:spawned", "w-123", "running", thread="auth")


def test_publish_event_non_redis_exception_propagates():
    with (
        patch("blackboard.events.get_redis", side_effect=ValueError("boom")),
        pytest.raises(ValueError, match="boom"),
    ):
        publish_event("worker:spawned", "w-123", "running")


def test_publish_event_payload_shape():
    mock_redis = MagicMock()
    with patch("blackboard.events.get_redis", return_value=mock_redis):
        publish_event(
            "worker:spawned",
            "w-abc",
            "running",
            thread="auth",
            source="farm",
            extra={"container_id": "0123456789ab"},
        )

    mock_redis.xadd.assert_called_once()
    call_args = mock_redis.xadd.call_args
    assert call_args[0][0] == EVENTS_STREAM

    payload = json.loads(call_args[0][1]["data"])
    assert payload["type"] == "worker:spawned"
    assert payload["id"] == "w-abc"
    assert payload["thread"] == "auth"
    assert payload["status"] == "running"
    assert payload["source"] == "farm"
    assert payload["container_id"] == "0123456789ab"
    assert "ts" in payload
    assert "event_id" in payload

    assert call_args[1]["maxlen"] == EVENTS_STREAM_MAXLEN
    assert call_args[1]["approximate"] is True


def test_spawn_publishes_event(db_conn, fake_runtime, spawn_options):
    from blackboard.orchestrator import spawn_worker

    mock_redis = MagicMock()
    with patch("blackboard.events.get_redis", return_value=mock_redis):
        result = spawn_worker(db_conn, fake_runtime, "testthread", spawn_options)
    payload = json.loads(mock_redis.xadd.call_args[0][1]["data"])
    assert payload["type"] == "worker:spawned"
    assert payload["id"] == result.worker_id
    assert payload["thread"] == "testthread"


# -- EventSubscriber --


def _stream_entry(event_data: dict, entry_id: str = "1-0") -> list:
    return [[EVENTS_STREAM, [(entry_id, {"data": json.dumps(event_data)})]]]


def test_subscriber_returns_matching_event():
    mock_redis = MagicMock()
    mock_redis.xread.return_value = _stream_entry({"type": "worker:killed", "id": "w1", "thread": "a"})
    with patch("blackboard.events.get_redis", return_value=mock_redis):
        sub = EventSubscriber(thread="a", timeout=1.0)
        event = next(sub)
    assert event["id"] == "w1"
    assert event["_stream_id"] == "1-0"


def test_subscriber_filters_and_advances_cursor():
    mock_redis = MagicMock()
    mock_redis.xread.side_effect = [
        _stream_entry({"type": "worker:killed", "id": "w1", "thread": "other"}, "1-0"),
        _stream_entry({"type": "worker:killed", "id": "w2", "thread": "a"}, "2-0"),
    ]
    with patch("blackboard.events.get_redis", return_value=mock_redis):
        sub = EventSubscriber(thread="a", timeout=0.01)
        event = next(sub)
    assert event["id"] == "w2"
    second_call = mock_redis.xread.call_args_list[1]
    assert second_call[0][0] == {EVENTS_STREAM: "1-0"}


def test_subscriber_filters_by_worker():
    mock_redis = MagicMock()
    mock_redis.xread.side_effect = [
        _stream_entry({"type": "worker:spawned", "id": "w1", "thread": "a"}),
        [],
    ]
    with patch("blackboard.events.get_redis", return_value=mock_redis):
        sub = EventSubscriber(worker_id="w9", timeout=0.01)
        assert next(sub) is None


def test_subscriber_skips_malformed_entries():
    mock_redis = MagicMock()
    mock_redis.xread.side_effect = [
        [[EVENTS_STREAM, [("1-0", {"data": "not json"}), ("2-0", {})]]],
        [],
    ]
    with patch("blackboard.events.get_redis", return_value=mock_redis):
        sub = EventSubscriber(timeout=0.01)
        assert next(sub) is None


def test_subscriber_without_redis_times_out():
    mock_redis = MagicMock()
    mock_redis.ping.side_effect = RedisError("down")
    with (
        patch("blackboard.events.get_redis", return_value=mock_redis),
        patch("blackboard.events.time.sleep") as mock_sleep,
    ):
        sub = EventSubscriber(timeout=5.0)
        assert next(sub) is None
    mock_sleep.assert_called_once_with(5.0)
    mock_redis.xread.assert_not_called()


def test_subscriber_delivers_every_match_in_a_batch():
    mock_redis = MagicMock()
    mock_redis.xread.return_value = [
        [
            EVENTS_STREAM,
            [
                ("1-0", {b"data": json.dumps({"id": "w1", "thread": "a"}).encode()}),
                ("2-0", {"data": json.dumps({"id": "w2", "thread": "b"})}),
                ("3-0", {"data": json.dumps({"id": "w3", "thread": "a"})}),
            ],
        ]
    ]
    with patch("blackboard.events.get_redis", return_value=mock_redis):
        sub = EventSubscriber(thread="a", timeout=0.01)
        first, second = next(sub), next(sub)
    assert (first["id"], first["_stream_id"]) == ("w1", "1-0")
    assert (second["id"], second["_stream_id"]) == ("w3", "3-0")
    mock_redis.xread.assert_called_once()
