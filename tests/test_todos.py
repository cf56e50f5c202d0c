"""Tests for todo normalization and capture into plan steps."""

import pytest

from blackboard.db import (
    IncomingStep,
    SessionContext,
    add_step,
    get_current_plan,
    get_plan,
    get_thread,
    list_steps,
)
from blackboard.errors import ValidationError
from blackboard.todos import capture_todos, normalize_todo_items, normalize_todo_status


@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        ("completed", "completed"),
        ("done", "completed"),
        ("DONE", "completed"),
        ("in_progress", "in_progress"),
        ("pending", "pending"),
        ("blocked", "pending"),
        (None, "pending"),
        (3, "pending"),
    ],
)
def test_normalize_todo_status(raw, expected):
    assert normalize_todo_status(raw) == expected


def test_normalize_todo_items_picks_first_text_field():
    items = [
        {"content": "From content", "text": "ignored", "status": "done"},
        {"text": "From text", "status": "in_progress"},
        {"description": "From description"},
        {"content": "   ", "text": "Blank content falls through"},
        {"status": "completed"},
        "not an object",
    ]
    assert normalize_todo_items(items) == [
        IncomingStep("From content", "completed"),
        IncomingStep("From text", "in_progress"),
        IncomingStep("From description", "pending"),
        IncomingStep("Blank content falls through", "pending"),
    ]


def test_capture_todos_merges_and_sets_plan_in_progress(db_conn):
    result = capture_todos(
        db_conn,
        SessionContext(),
        [{"content": "Write code", "status": "completed"}, {"content": "Ship"}],
        thread_or_plan="testthread",
    )
    assert result.thread == "testthread"
    assert result.plan_status == "in_progress"
    assert result.merge.added == 2
    assert get_plan(db_conn, result.plan_id)["status"] == "in_progress"


def test_capture_todos_completes_plan_when_every_step_done(db_conn):
    result = capture_todos(
        db_conn,
        SessionContext(),
        [{"content": "Write code", "status": "done"}],
        thread_or_plan="testthread",
    )
    assert result.plan_status == "completed"


def test_capture_todos_refuses_empty_list_over_existing_steps(db_conn):
    thread = get_thread(db_conn, "testthread")
    plan = get_current_plan(db_conn, thread["id"])
    add_step(db_conn, plan["id"], "Keep me")
    with pytest.raises(ValidationError, match="empty todo list"):
        capture_todos(db_conn, SessionContext(), [], thread_or_plan="testthread")
    assert len(list_steps(db_conn, plan["id"])) == 1


def test_capture_todos_uses_session_selection(db_conn):
    thread = get_thread(db_conn, "testthread")
    ctx = SessionContext().with_thread(thread["id"])
    result = capture_todos(db_conn, ctx, [{"content": "Via context"}])
    assert result.thread == "testthread"
