"""Turn todo lists from the host agent into plan steps.

Todo items arrive as loosely shaped JSON objects: the text may sit under
``content``, ``text`` or ``description`` and statuses use the host's own
vocabulary. Everything is normalized into :class:`~blackboard.db.IncomingStep`
here so the merge logic only ever sees one shape.
"""

from __future__ import annotations

import logging
import sqlite3
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from typing import Any

from blackboard.db import (
    IncomingStep,
    MergeResult,
    SessionContext,
    list_steps,
    merge_steps_for_plan,
    resolve_target_plan,
    transaction,
    update_plan_status,
)
from blackboard.errors import ValidationError

log = logging.getLogger(__name__)

_DESCRIPTION_KEYS = ("content", "text", "description")
_STATUS_MAP = {
    "completed": "completed",
    "done": "completed",
    "in_progress": "in_progress",
}


def normalize_todo_status(raw: Any) -> str:
    if not isinstance(raw, str):
        return "pending"
    return _STATUS_MAP.get(raw.strip().lower(), "pending")


def normalize_todo_item(item: Mapping[str, Any]) -> IncomingStep | None:
    """Return the step for one todo object, or None if it has no text."""
    for key in _DESCRIPTION_KEYS:
        value = item.get(key)
        if isinstance(value, str) and value.strip():
            return IncomingStep(value.strip(), normalize_todo_status(item.get("status")))
    return None


def normalize_todo_items(items: Iterable[Any]) -> list[IncomingStep]:
    steps: list[IncomingStep] = []
    for item in items:
        if not isinstance(item, Mapping):
            log.debug("Skipping non-object todo item: %r", item)
            continue
        step = normalize_todo_item(item)
        if step is not None:
            steps.append(step)
    return steps


@dataclass
class CaptureResult:
    thread: str
    plan_id: str
    plan_status: str
    merge: MergeResult


def capture_todos(
    conn: sqlite3.Connection,
    ctx: SessionContext,
    items: Iterable[Any],
    *,
    thread_or_plan: str | None = None,
) -> CaptureResult:
    """Merge a todo list into the target plan and roll the plan status forward.

    An empty list is refused when the plan already has steps; clearing a
    plan must be an explicit action, not a side effect of an empty payload.
    """
    steps = normalize_todo_items(items)
    with transaction(conn):
        thread, plan = resolve_target_plan(conn, ctx, thread_or_plan)
        if not steps and list_steps(conn, plan["id"]):
            raise ValidationError(
                f"Refusing to merge an empty todo list into plan '{plan['id']}' "
                "which already has steps"
            )
        result = merge_steps_for_plan(conn, plan["id"], steps)
        if steps:
            merged = list_steps(conn, plan["id"])
            done = all(s["status"] == "completed" for s in merged)
            status = "completed" if done else "in_progress"
            update_plan_status(conn, plan["id"], status)
        else:
            status = plan["status"]
    return CaptureResult(thread["name"], plan["id"], status, result)
