"""Tests for the worker registry."""

from datetime import UTC, datetime, timedelta

import pytest

from blackboard.db import create_thread, get_thread
from blackboard.errors import ConsistencyError
from blackboard.registry import (
    add_worker_log,
    find_workers_by_prefix,
    get_active_workers,
    get_stale_workers,
    get_worker,
    get_workers_for_thread,
    insert_worker,
    list_worker_logs,
    list_workers,
    record_heartbeat,
    update_worker_status,
)


def _insert(conn, worker_id: str, thread_name: str = "testthread") -> dict:
    thread = get_thread(conn, thread_name)
    return insert_worker(
        conn,
        worker_id=worker_id,
        container_id=f"c-{worker_id}",
        thread_id=thread["id"],
        auth_mode="env",
        max_iterations=10,
    )


def test_insert_worker_is_running(db_conn):
    row = _insert(db_conn, "aaaa1111")
    stored = get_worker(db_conn, "aaaa1111")
    assert stored == row
    assert stored["status"] == "running"
    assert stored["iteration"] == 0
    assert stored["finished_at"] is None


def test_insert_worker_requires_existing_thread(db_conn):
    with pytest.raises(ConsistencyError):
        insert_worker(
            db_conn,
            worker_id="x",
            container_id="c",
            thread_id="missing",
            auth_mode="env",
            max_iterations=1,
        )


def test_insert_worker_rejects_unknown_auth_mode(db_conn):
    thread = get_thread(db_conn, "testthread")
    with pytest.raises(ValueError):
        insert_worker(
            db_conn,
            worker_id="x",
            container_id="c",
            thread_id=thread["id"],
            auth_mode="password",
            max_iterations=1,
        )


@pytest.mark.parametrize("status", ["completed", "failed", "killed"])
def test_running_to_terminal(db_conn, status):
    _insert(db_conn, "w1")
    assert update_worker_status(db_conn, "w1", status)
    row = get_worker(db_conn, "w1")
    assert row["status"] == status
    assert row["finished_at"] is not None


def test_terminal_status_is_final(db_conn):
    _insert(db_conn, "w1")
    update_worker_status(db_conn, "w1", "completed")
    assert not update_worker_status(db_conn, "w1", "killed")
    assert not update_worker_status(db_conn, "w1", "running")
    assert get_worker(db_conn, "w1")["status"] == "completed"


def test_update_worker_status_validates(db_conn):
    _insert(db_conn, "w1")
    with pytest.raises(ValueError):
        update_worker_status(db_conn, "w1", "paused")
    assert not update_worker_status(db_conn, "missing", "killed")


def test_heartbeat_moves_forward_only(db_conn):
    _insert(db_conn, "w1")
    t0 = datetime(2030, 1, 1, tzinfo=UTC)
    assert record_heartbeat(db_conn, "w1", iteration=3, now=t0)
    assert record_heartbeat(db_conn, "w1", iteration=4, now=t0 + timedelta(seconds=10))
    # Older timestamp: ignored.
    assert not record_heartbeat(db_conn, "w1", iteration=5, now=t0)
    # Lower iteration: ignored.
    assert not record_heartbeat(db_conn, "w1", iteration=2, now=t0 + timedelta(seconds=20))
    row = get_worker(db_conn, "w1")
    assert row["iteration"] == 4
    assert row["last_heartbeat"] == "2030-01-01T00:00:10Z"


def test_heartbeat_without_iteration_keeps_count(db_conn):
    _insert(db_conn, "w1")
    record_heartbeat(db_conn, "w1", iteration=7, now=datetime(2030, 1, 1, tzinfo=UTC))
    assert record_heartbeat(db_conn, "w1", now=datetime(2030, 1, 2, tzinfo=UTC))
    assert get_worker(db_conn, "w1")["iteration"] == 7


def test_heartbeat_ignored_after_termination(db_conn):
    _insert(db_conn, "w1")
    update_worker_status(db_conn, "w1", "failed")
    assert not record_heartbeat(db_conn, "w1", iteration=1, now=datetime(2030, 1, 1, tzinfo=UTC))


def test_active_workers_join_thread_name_newest_first(db_conn):
    create_thread(db_conn, "second")
    _insert(db_conn, "w1")
    _insert(db_conn, "w2", "second")
    _insert(db_conn, "w3")
    db_conn.execute("UPDATE workers SET created_at = '2030-01-01T00:00:00Z' WHERE id = 'w2'")
    update_worker_status(db_conn, "w3", "completed")
    active = get_active_workers(db_conn)
    assert [(w["id"], w["thread_name"]) for w in active] == [("w2", "second"), ("w1", "testthread")]
    assert {w["id"] for w in list_workers(db_conn, include_finished=True)} == {"w1", "w2", "w3"}
    assert [w["id"] for w in list_workers(db_conn)] == ["w2", "w1"]


def test_workers_for_thread_and_prefix(db_conn):
    _insert(db_conn, "abc11111")
    _insert(db_conn, "abc22222")
    _insert(db_conn, "def33333")
    thread = get_thread(db_conn, "testthread")
    assert len(get_workers_for_thread(db_conn, thread["id"])) == 3
    assert len(find_workers_by_prefix(db_conn, "abc")) == 2
    assert [w["id"] for w in find_workers_by_prefix(db_conn, "def")] == ["def33333"]
    assert find_workers_by_prefix(db_conn, "") == []
    update_worker_status(db_conn, "abc11111", "completed")
    assert [w["id"] for w in find_workers_by_prefix(db_conn, "abc")] == ["abc22222"]


def test_stale_workers(db_conn):
    _insert(db_conn, "fresh")
    _insert(db_conn, "stale")
    _insert(db_conn, "done")
    db_conn.execute(
        "UPDATE workers SET last_heartbeat = '2030-01-01T00:00:00Z' WHERE id IN ('stale', 'done')"
    )
    db_conn.execute("UPDATE workers SET last_heartbeat = '2030-01-01T00:09:30Z' WHERE id = 'fresh'")
    update_worker_status(db_conn, "done", "completed")
    now = datetime(2030, 1, 1, 0, 10, tzinfo=UTC)
    assert [w["id"] for w in get_stale_workers(db_conn, 120, now=now)] == ["stale"]


def test_worker_logs(db_conn):
    _insert(db_conn, "w1")
    first = add_worker_log(db_conn, "w1", "hello")
    add_worker_log(db_conn, "w1", "oops", stream="stderr", iteration=2)
    add_worker_log(db_conn, "other", "not mine")
    lines = list_worker_logs(db_conn, "w1")
    assert [(l["line"], l["stream"]) for l in lines] == [("hello", "stdout"), ("oops", "stderr")]
    assert [l["line"] for l in list_worker_logs(db_conn, "w1", after_id=first)] == ["oops"]
    with pytest.raises(ValueError):
        add_worker_log(db_conn, "w1", "x", stream="stdin")
