"""Tests for step merge, insert, reorder and removal."""

import pytest

from blackboard.db import (
    IncomingStep,
    add_breadcrumb,
    add_step,
    get_current_plan,
    get_thread,
    list_breadcrumbs,
    list_steps,
    merge_steps_for_plan,
    normalize_description,
    remove_step,
    reorder_step,
    update_step_status,
)
from blackboard.errors import ValidationError


@pytest.fixture()
def plan_id(db_conn) -> str:
    thread = get_thread(db_conn, "testthread")
    return get_current_plan(db_conn, thread["id"])["id"]


def _seed(conn, plan_id: str, *specs: tuple[str, str]) -> None:
    for description, status in specs:
        add_step(conn, plan_id, description, status=status)


def _summary(conn, plan_id: str) -> list[tuple[int, str, str]]:
    return [(s["step_order"], s["description"], s["status"]) for s in list_steps(conn, plan_id)]


def _assert_dense(conn, plan_id: str) -> None:
    orders = [s["step_order"] for s in list_steps(conn, plan_id)]
    assert orders == list(range(1, len(orders) + 1))


# -- merge --


def test_merge_scenario_preserves_completed_and_drops_missing(db_conn, plan_id):
    _seed(db_conn, plan_id, ("A", "pending"), ("B", "completed"), ("C", "pending"))
    result = merge_steps_for_plan(
        db_conn, plan_id, [IncomingStep("B"), IncomingStep("C"), IncomingStep("D")]
    )
    assert _summary(db_conn, plan_id) == [
        (1, "B", "completed"),
        (2, "C", "pending"),
        (3, "D", "pending"),
    ]
    assert (result.added, result.updated, result.preserved) == (1, 1, 1)


@pytest.mark.parametrize("status", ["completed", "failed", "skipped"])
def test_merge_never_overwrites_terminal_status(db_conn, plan_id, status):
    _seed(db_conn, plan_id, ("Write tests", status))
    before = list_steps(db_conn, plan_id)[0]
    merge_steps_for_plan(db_conn, plan_id, [IncomingStep("write  TESTS", "in_progress")])
    after = list_steps(db_conn, plan_id)[0]
    assert after["id"] == before["id"]
    assert after["status"] == status
    assert after["description"] == "Write tests"


def test_merge_takes_incoming_status_for_open_steps(db_conn, plan_id):
    _seed(db_conn, plan_id, ("One", "pending"), ("Two", "in_progress"))
    ids = [s["id"] for s in list_steps(db_conn, plan_id)]
    result = merge_steps_for_plan(
        db_conn, plan_id, [IncomingStep("Two", "completed"), IncomingStep("One", "in_progress")]
    )
    assert _summary(db_conn, plan_id) == [(1, "Two", "completed"), (2, "One", "in_progress")]
    assert [s["id"] for s in list_steps(db_conn, plan_id)] == [ids[1], ids[0]]
    assert (result.added, result.updated, result.preserved) == (0, 2, 0)


def test_merge_unchanged_list_updates_nothing(db_conn, plan_id):
    _seed(db_conn, plan_id, ("One", "pending"), ("Two", "in_progress"))
    result = merge_steps_for_plan(
        db_conn, plan_id, [IncomingStep("one"), IncomingStep("Two", "in_progress")]
    )
    assert (result.added, result.updated, result.preserved) == (0, 0, 0)
    assert _summary(db_conn, plan_id) == [(1, "One", "pending"), (2, "Two", "in_progress")]


def test_merge_detaches_breadcrumbs_of_dropped_steps(db_conn, plan_id):
    _seed(db_conn, plan_id, ("Old", "pending"), ("Keep", "pending"))
    old = list_steps(db_conn, plan_id)[0]
    add_breadcrumb(db_conn, plan_id, "worked on old", step_id=old["id"])
    merge_steps_for_plan(db_conn, plan_id, [IncomingStep("Keep")])
    crumbs = list_breadcrumbs(db_conn, plan_id)
    assert len(crumbs) == 1
    assert crumbs[0]["step_id"] is None


def test_merge_collapses_duplicate_incoming_descriptions(db_conn, plan_id):
    result = merge_steps_for_plan(
        db_conn, plan_id, [IncomingStep("Same"), IncomingStep(" same "), IncomingStep("Other")]
    )
    assert _summary(db_conn, plan_id) == [(1, "Same", "pending"), (2, "Other", "pending")]
    assert result.added == 2


def test_merge_with_empty_list_deletes_nothing(db_conn, plan_id):
    _seed(db_conn, plan_id, ("A", "pending"), ("B", "completed"))
    result = merge_steps_for_plan(db_conn, plan_id, [])
    assert (result.added, result.updated, result.preserved) == (0, 0, 0)
    assert len(list_steps(db_conn, plan_id)) == 2


def test_merge_unknown_plan(db_conn):
    with pytest.raises(ValidationError):
        merge_steps_for_plan(db_conn, "missing", [IncomingStep("x")])


def test_merge_keeps_orders_dense_over_many_rounds(db_conn, plan_id):
    rounds = [
        ["a", "b", "c", "d"],
        ["d", "x", "a"],
        ["y"],
        ["y", "a", "b", "c", "z", "w"],
    ]
    for descriptions in rounds:
        merge_steps_for_plan(db_conn, plan_id, [IncomingStep(d) for d in descriptions])
        _assert_dense(db_conn, plan_id)
        assert [s["description"] for s in list_steps(db_conn, plan_id)] == descriptions


def test_incoming_step_validates():
    with pytest.raises(ValidationError):
        IncomingStep("   ")
    with pytest.raises(ValidationError):
        IncomingStep("x", "done")


def test_normalize_description():
    assert normalize_description("  Fix   the\tBug \n") == "fix the bug"


# -- insert --


def test_insert_at_position_shifts_later_steps(db_conn, plan_id):
    _seed(db_conn, plan_id, ("A", "pending"), ("B", "pending"), ("C", "pending"))
    row = add_step(db_conn, plan_id, "E", position=2)
    assert row["step_order"] == 2
    assert [d for _, d, _ in _summary(db_conn, plan_id)] == ["A", "E", "B", "C"]
    _assert_dense(db_conn, plan_id)


def test_insert_appends_by_default_and_accepts_n_plus_one(db_conn, plan_id):
    add_step(db_conn, plan_id, "first")
    add_step(db_conn, plan_id, "second")
    add_step(db_conn, plan_id, "third", position=3)
    add_step(db_conn, plan_id, "zeroth", position=1)
    assert [d for _, d, _ in _summary(db_conn, plan_id)] == ["zeroth", "first", "second", "third"]


@pytest.mark.parametrize("position", [0, 3, -1])
def test_insert_rejects_out_of_range(db_conn, plan_id, position):
    add_step(db_conn, plan_id, "only")
    with pytest.raises(ValidationError, match="between 1 and 2"):
        add_step(db_conn, plan_id, "bad", position=position)
    assert len(list_steps(db_conn, plan_id)) == 1


# -- reorder --


def test_reorder_up(db_conn, plan_id):
    _seed(db_conn, plan_id, *[(d, "pending") for d in "ABCDE"])
    result = reorder_step(db_conn, plan_id, 4, 2)
    assert result.moved
    assert [d for _, d, _ in _summary(db_conn, plan_id)] == list("ADBCE")
    _assert_dense(db_conn, plan_id)


def test_reorder_down(db_conn, plan_id):
    _seed(db_conn, plan_id, *[(d, "pending") for d in "ABCDE"])
    reorder_step(db_conn, plan_id, 1, 5)
    assert [d for _, d, _ in _summary(db_conn, plan_id)] == list("BCDEA")
    _assert_dense(db_conn, plan_id)


def test_reorder_same_position_is_noop(db_conn, plan_id):
    _seed(db_conn, plan_id, ("A", "pending"), ("B", "pending"))
    before = list_steps(db_conn, plan_id)
    result = reorder_step(db_conn, plan_id, 2, 2)
    assert not result.moved
    assert "already at that position" in result.message
    assert list_steps(db_conn, plan_id) == before


@pytest.mark.parametrize(("old", "new"), [(0, 1), (1, 3), (3, 1)])
def test_reorder_rejects_out_of_range(db_conn, plan_id, old, new):
    _seed(db_conn, plan_id, ("A", "pending"), ("B", "pending"))
    with pytest.raises(ValidationError):
        reorder_step(db_conn, plan_id, old, new)


# -- remove / status --


def test_remove_renumbers(db_conn, plan_id):
    _seed(db_conn, plan_id, *[(d, "pending") for d in "ABCD"])
    removed = remove_step(db_conn, plan_id, 2)
    assert removed["description"] == "B"
    assert _summary(db_conn, plan_id) == [(1, "A", "pending"), (2, "C", "pending"), (3, "D", "pending")]


def test_remove_completed_requires_force(db_conn, plan_id):
    _seed(db_conn, plan_id, ("Done", "completed"), ("Next", "pending"))
    with pytest.raises(ValidationError, match="completed"):
        remove_step(db_conn, plan_id, 1)
    remove_step(db_conn, plan_id, 1, force=True)
    assert _summary(db_conn, plan_id) == [(1, "Next", "pending")]


def test_remove_missing_step(db_conn, plan_id):
    with pytest.raises(ValidationError):
        remove_step(db_conn, plan_id, 1)


def test_update_step_status(db_conn, plan_id):
    _seed(db_conn, plan_id, ("A", "pending"))
    row = update_step_status(db_conn, plan_id, 1, "in_progress")
    assert row["status"] == "in_progress"
    assert list_steps(db_conn, plan_id)[0]["status"] == "in_progress"
    with pytest.raises(ValidationError):
        update_step_status(db_conn, plan_id, 1, "blocked")
    with pytest.raises(ValidationError):
        update_step_status(db_conn, plan_id, 9, "completed")
