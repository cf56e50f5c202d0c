"""Worker registry: one row per container executing a thread.

Rows are created by spawn and afterwards only change through heartbeats and
status transitions. Finished rows are kept for ``blackboard workers --all``.
"""

from __future__ import annotations

import sqlite3
from datetime import UTC, datetime, timedelta
from typing import TypedDict, cast

from blackboard.db import transaction

VALID_WORKER_STATUSES = {"running", "completed", "failed", "killed"}
WORKER_TERMINAL_STATUSES = {"completed", "failed", "killed"}
VALID_AUTH_MODES = {"env", "config", "oauth"}
VALID_LOG_STREAMS = {"stdout", "stderr", "system"}


class WorkerRow(TypedDict):
    id: str
    container_id: str
    thread_id: str
    status: str
    auth_mode: str | None
    iteration: int
    max_iterations: int
    last_heartbeat: str | None
    created_at: str
    finished_at: str | None


class WorkerWithThreadRow(WorkerRow):
    thread_name: str


class WorkerLogRow(TypedDict):
    id: int
    worker_id: str
    stream: str
    line: str
    iteration: int
    created_at: str


def _ts(moment: datetime | None = None) -> str:
    return (moment or datetime.now(UTC)).strftime("%Y-%m-%dT%H:%M:%SZ")


def insert_worker(
    conn: sqlite3.Connection,
    *,
    worker_id: str,
    container_id: str,
    thread_id: str,
    auth_mode: str,
    max_iterations: int,
) -> WorkerRow:
    if auth_mode not in VALID_AUTH_MODES:
        raise ValueError(f"Invalid auth mode '{auth_mode}'. Must be one of: {VALID_AUTH_MODES}")
    now = _ts()
    with transaction(conn):
        conn.execute(
            "INSERT INTO workers (id, container_id, thread_id, status, auth_mode, iteration, "
            "max_iterations, last_heartbeat, created_at) "
            "VALUES (?, ?, ?, 'running', ?, 0, ?, ?, ?)",
            (worker_id, container_id, thread_id, auth_mode, max_iterations, now, now),
        )
    return {
        "id": worker_id,
        "container_id": container_id,
        "thread_id": thread_id,
        "status": "running",
        "auth_mode": auth_mode,
        "iteration": 0,
        "max_iterations": max_iterations,
        "last_heartbeat": now,
        "created_at": now,
        "finished_at": None,
    }


def get_worker(conn: sqlite3.Connection, worker_id: str) -> WorkerRow | None:
    row = conn.execute("SELECT * FROM workers WHERE id = ?", (worker_id,)).fetchone()
    return cast(WorkerRow, dict(row)) if row else None


def find_workers_by_prefix(conn: sqlite3.Connection, prefix: str) -> list[WorkerRow]:
    """Running workers whose id starts with *prefix*."""
    if not prefix:
        return []
    rows = conn.execute(
        "SELECT * FROM workers WHERE status = 'running' AND substr(id, 1, ?) = ? "
        "ORDER BY created_at DESC",
        (len(prefix), prefix),
    ).fetchall()
    return [cast(WorkerRow, dict(r)) for r in rows]


def update_worker_status(conn: sqlite3.Connection, worker_id: str, status: str) -> bool:
    """Move a running worker to a terminal status.

    ``running`` is the only state a worker can leave; anything else (already
    terminal, unknown id, or a non-terminal target) changes nothing and
    returns False.
    """
    if status not in VALID_WORKER_STATUSES:
        raise ValueError(
            f"Invalid worker status '{status}'. Must be one of: {VALID_WORKER_STATUSES}"
        )
    if status not in WORKER_TERMINAL_STATUSES:
        return False
    with transaction(conn):
        cursor = conn.execute(
            "UPDATE workers SET status = ?, finished_at = ? WHERE id = ? AND status = 'running'",
            (status, _ts(), worker_id),
        )
    return cursor.rowcount > 0


def record_heartbeat(
    conn: sqlite3.Connection,
    worker_id: str,
    *,
    iteration: int | None = None,
    now: datetime | None = None,
) -> bool:
    """Write a heartbeat for a running worker.

    Heartbeat time and iteration only move forward; an out-of-order write is
    ignored and reported as False.
    """
    stamp = _ts(now)
    with transaction(conn):
        cursor = conn.execute(
            "UPDATE workers SET last_heartbeat = ?, iteration = COALESCE(?, iteration) "
            "WHERE id = ? AND status = 'running' "
            "AND (last_heartbeat IS NULL OR last_heartbeat <= ?) "
            "AND (? IS NULL OR iteration <= ?)",
            (stamp, iteration, worker_id, stamp, iteration, iteration),
        )
    return cursor.rowcount > 0


_WITH_THREAD = (
    "SELECT w.*, t.name AS thread_name FROM workers w JOIN threads t ON t.id = w.thread_id"
)


def get_active_workers(conn: sqlite3.Connection) -> list[WorkerWithThreadRow]:
    """Running workers with their thread name, newest first."""
    rows = conn.execute(
        f"{_WITH_THREAD} WHERE w.status = 'running' ORDER BY w.created_at DESC, w.rowid DESC"
    ).fetchall()
    return [cast(WorkerWithThreadRow, dict(r)) for r in rows]


def list_workers(
    conn: sqlite3.Connection, *, include_finished: bool = False
) -> list[WorkerWithThreadRow]:
    if not include_finished:
        return get_active_workers(conn)
    rows = conn.execute(f"{_WITH_THREAD} ORDER BY w.created_at DESC, w.rowid DESC").fetchall()
    return [cast(WorkerWithThreadRow, dict(r)) for r in rows]


def get_workers_for_thread(conn: sqlite3.Connection, thread_id: str) -> list[WorkerRow]:
    rows = conn.execute(
        "SELECT * FROM workers WHERE thread_id = ? ORDER BY created_at DESC, rowid DESC",
        (thread_id,),
    ).fetchall()
    return [cast(WorkerRow, dict(r)) for r in rows]


def get_stale_workers(
    conn: sqlite3.Connection, timeout_seconds: float, *, now: datetime | None = None
) -> list[WorkerWithThreadRow]:
    """Running workers whose last heartbeat is older than *timeout_seconds*."""
    cutoff = _ts((now or datetime.now(UTC)) - timedelta(seconds=timeout_seconds))
    rows = conn.execute(
        f"{_WITH_THREAD} WHERE w.status = 'running' "
        "AND COALESCE(w.last_heartbeat, w.created_at) < ? ORDER BY w.created_at",
        (cutoff,),
    ).fetchall()
    return [cast(WorkerWithThreadRow, dict(r)) for r in rows]


# -- Worker logs --


def add_worker_log(
    conn: sqlite3.Connection,
    worker_id: str,
    line: str,
    *,
    stream: str = "stdout",
    iteration: int = 0,
) -> int:
    if stream not in VALID_LOG_STREAMS:
        raise ValueError(f"Invalid log stream '{stream}'. Must be one of: {VALID_LOG_STREAMS}")
    with transaction(conn):
        cursor = conn.execute(
            "INSERT INTO worker_logs (worker_id, stream, line, iteration, created_at) "
            "VALUES (?, ?, ?, ?, ?)",
            (worker_id, stream, line, iteration, _ts()),
        )
    return cast(int, cursor.lastrowid)


def list_worker_logs(
    conn: sqlite3.Connection,
    worker_id: str,
    *,
    after_id: int = 0,
    limit: int | None = None,
) -> list[WorkerLogRow]:
    sql = "SELECT * FROM worker_logs WHERE worker_id = ? AND id > ? ORDER BY id"
    params: tuple = (worker_id, after_id)
    if limit is not None:
        sql += " LIMIT ?"
        params = (worker_id, after_id, limit)
    return [cast(WorkerLogRow, dict(r)) for r in conn.execute(sql, params).fetchall()]
