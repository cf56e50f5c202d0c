"""Worker lifecycle events on a Redis stream.

Spawn, kill, drain and farm append one JSON entry per worker transition to
:data:`EVENTS_STREAM`; ``blackboard events`` tails it. The SQLite store stays
authoritative, so an unreachable Redis only costs the event.
"""

from __future__ import annotations

import json
import logging
import os
import time
import uuid
from collections import deque
from dataclasses import dataclass
from datetime import UTC, datetime

from redis import ConnectionPool, Redis
from redis.exceptions import RedisError

log = logging.getLogger(__name__)

REDIS_URL = os.environ.get("BLACKBOARD_REDIS_URL", "redis://localhost:6379/0")

EVENTS_STREAM = "blackboard:events"
EVENTS_STREAM_MAXLEN = int(os.environ.get("BLACKBOARD_EVENTS_STREAM_MAXLEN", "1000"))
EVENT_VERSION = 1

_READ_BATCH = 10

_pool: ConnectionPool | None = None


def get_redis() -> Redis:
    global _pool
    if _pool is None:
        _pool = ConnectionPool.from_url(REDIS_URL, socket_connect_timeout=2)
    return Redis(connection_pool=_pool)


def _envelope(
    event_type: str, worker_id: str, status: str, thread: str | None, source: str
) -> dict:
    return {
        "event_id": uuid.uuid4().hex,
        "v": EVENT_VERSION,
        "ts": datetime.now(UTC).isoformat(),
        "type": event_type,
        "source": source,
        "thread": thread,
        "id": worker_id,
        "status": status,
    }


def publish_event(
    event_type: str,
    entity_id: str,
    status: str,
    *,
    thread: str | None = None,
    source: str = "cli",
    extra: dict | None = None,
) -> None:
    """Append a ``worker:*`` event; Redis errors are logged, not raised."""
    event = _envelope(event_type, entity_id, status, thread, source)
    event.update(extra or {})
    try:
        get_redis().xadd(
            EVENTS_STREAM,
            {"data": json.dumps(event)},
            maxlen=EVENTS_STREAM_MAXLEN,
            approximate=True,
        )
    except RedisError as exc:
        log.warning("Dropped %s event for %s: %s", event_type, entity_id, exc)


@dataclass(frozen=True)
class EventFilter:
    thread: str | None = None
    worker_id: str | None = None

    def matches(self, event: dict) -> bool:
        if self.thread is not None and event.get("thread") != self.thread:
            return False
        if self.worker_id is not None and event.get("id") != self.worker_id:
            return False
        return True


def _text(value) -> str:
    return value.decode() if isinstance(value, bytes) else value


def parse_entry(entry_id, fields: dict) -> dict | None:
    """Event dict for one stream entry, tagged with ``_stream_id``; None if unreadable."""
    raw = fields.get("data", fields.get(b"data"))
    if not raw:
        return None
    try:
        event = json.loads(_text(raw))
    except (json.JSONDecodeError, TypeError, UnicodeDecodeError):
        return None
    if not isinstance(event, dict):
        return None
    event["_stream_id"] = _text(entry_id)
    return event


class EventSubscriber:
    """Follow the event stream, yielding events that pass the filter.

    Each ``next()`` blocks for at most *timeout* seconds and yields None when
    nothing matching arrived, so callers can interleave their own checks.
    *cursor* ``"$"`` starts at new entries and ``"0"`` replays the stream.
    """

    def __init__(
        self,
        *,
        thread: str | None = None,
        worker_id: str | None = None,
        timeout: float = 30.0,
        cursor: str = "$",
    ):
        self.filter = EventFilter(thread, worker_id)
        self.timeout = timeout
        self._cursor = cursor
        self._buffer: deque[dict] = deque()
        self._redis: Redis | None = get_redis()
        try:
            self._redis.ping()
        except RedisError as exc:
            log.warning("Not following events, Redis at %s is unreachable: %s", REDIS_URL, exc)
            self._redis = None

    def __iter__(self):
        return self

    def _fill(self) -> bool:
        assert self._redis is not None
        batches = self._redis.xread(
            {EVENTS_STREAM: self._cursor}, block=int(self.timeout * 1000), count=_READ_BATCH
        )
        if not batches:
            return False
        for _stream, entries in batches:
            for entry_id, fields in entries:
                self._cursor = entry_id
                event = parse_entry(entry_id, fields)
                if event is not None and self.filter.matches(event):
                    self._buffer.append(event)
        return True

    def __next__(self) -> dict | None:
        if self._redis is None:
            time.sleep(self.timeout)
            return None
        while not self._buffer:
            if not self._fill():
                return None
        return self._buffer.popleft()
