"""SQLite store for threads, plans, steps and progress records."""

from __future__ import annotations

import contextlib
import json
import logging
import re
import sqlite3
import uuid
from collections.abc import Callable, Iterator, Sequence
from dataclasses import dataclass, replace
from datetime import UTC, datetime
from pathlib import Path
from typing import TypedDict, cast

from blackboard.errors import ConsistencyError, ValidationError
from blackboard.paths import DEFAULT_DB_PATH

log = logging.getLogger(__name__)

VALID_THREAD_STATUSES = {"active", "paused", "completed", "archived"}
VALID_PLAN_STATUSES = {"accepted", "in_progress", "completed"}
VALID_STEP_STATUSES = {"pending", "in_progress", "completed", "failed", "skipped"}
# Statuses a merge never overwrites.
STEP_PRESERVED_STATUSES = {"completed", "failed", "skipped"}
VALID_BUG_STATUSES = {"open", "resolved", "wontfix"}

THREAD_NAME_RE = re.compile(r"^[a-z][a-z0-9]*(-[a-z0-9]+)*$")
PLAN_DESCRIPTION_MAX = 200
BUSY_TIMEOUT_MS = 30000


def _utcnow() -> str:
    """ISO 8601 UTC timestamp matching SQLite strftime format."""
    return datetime.now(UTC).strftime("%Y-%m-%dT%H:%M:%SZ")


def new_id() -> str:
    """Short random token used for every entity id."""
    return uuid.uuid4().hex[:8]


SCHEMA = """
CREATE TABLE IF NOT EXISTS threads (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL UNIQUE,
    status TEXT NOT NULL DEFAULT 'active'
        CHECK(status IN ('active', 'paused', 'completed', 'archived')),
    current_plan_id TEXT,
    git_branches TEXT,
    created_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%SZ', 'now')),
    updated_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%SZ', 'now'))
);

CREATE TABLE IF NOT EXISTS plans (
    id TEXT PRIMARY KEY,
    thread_id TEXT NOT NULL REFERENCES threads(id),
    status TEXT NOT NULL DEFAULT 'accepted'
        CHECK(status IN ('accepted', 'in_progress', 'completed')),
    description TEXT,
    plan_markdown TEXT NOT NULL,
    session_id TEXT,
    created_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%SZ', 'now'))
);

CREATE TABLE IF NOT EXISTS plan_steps (
    id TEXT PRIMARY KEY,
    plan_id TEXT NOT NULL REFERENCES plans(id) ON DELETE CASCADE,
    step_order INTEGER NOT NULL,
    description TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'pending'
        CHECK(status IN ('pending', 'in_progress', 'completed', 'failed', 'skipped')),
    created_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%SZ', 'now')),
    updated_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%SZ', 'now')),
    UNIQUE(plan_id, step_order)
);

CREATE TABLE IF NOT EXISTS breadcrumbs (
    id TEXT PRIMARY KEY,
    plan_id TEXT NOT NULL REFERENCES plans(id),
    step_id TEXT REFERENCES plan_steps(id) ON DELETE SET NULL,
    agent_type TEXT,
    summary TEXT NOT NULL,
    files_touched TEXT,
    issues TEXT,
    next_context TEXT,
    created_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%SZ', 'now'))
);

CREATE TABLE IF NOT EXISTS corrections (
    id TEXT PRIMARY KEY,
    plan_id TEXT REFERENCES plans(id),
    step_id TEXT REFERENCES plan_steps(id) ON DELETE SET NULL,
    mistake TEXT NOT NULL,
    pattern TEXT,
    correction TEXT NOT NULL,
    tags TEXT,
    created_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%SZ', 'now'))
);

CREATE TABLE IF NOT EXISTS bug_reports (
    id TEXT PRIMARY KEY,
    plan_id TEXT REFERENCES plans(id),
    title TEXT NOT NULL,
    repro_steps TEXT NOT NULL,
    evidence TEXT,
    status TEXT NOT NULL DEFAULT 'open' CHECK(status IN ('open', 'resolved', 'wontfix')),
    created_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%SZ', 'now'))
);

CREATE TABLE IF NOT EXISTS reflections (
    id TEXT PRIMARY KEY,
    plan_id TEXT REFERENCES plans(id),
    what_worked TEXT,
    what_failed TEXT,
    patterns_noticed TEXT,
    created_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%SZ', 'now'))
);

CREATE INDEX IF NOT EXISTS idx_threads_status ON threads(status, updated_at);
CREATE INDEX IF NOT EXISTS idx_plans_thread ON plans(thread_id);
CREATE INDEX IF NOT EXISTS idx_breadcrumbs_plan ON breadcrumbs(plan_id);
CREATE INDEX IF NOT EXISTS idx_corrections_plan ON corrections(plan_id);
"""


# -- Row TypedDicts matching table schemas --


class ThreadRow(TypedDict):
    id: str
    name: str
    status: str
    current_plan_id: str | None
    git_branches: list[str]
    created_at: str
    updated_at: str


class PlanRow(TypedDict):
    id: str
    thread_id: str
    status: str
    description: str | None
    plan_markdown: str
    session_id: str | None
    created_at: str


class StepRow(TypedDict):
    id: str
    plan_id: str
    step_order: int
    description: str
    status: str
    created_at: str
    updated_at: str


class BreadcrumbRow(TypedDict):
    id: str
    plan_id: str
    step_id: str | None
    agent_type: str | None
    summary: str
    files_touched: list[str]
    issues: str | None
    next_context: str | None
    created_at: str


@dataclass(frozen=True)
class SessionContext:
    """Which thread a caller has selected, passed explicitly into operations.

    Several logical sessions can share one store; each carries its own
    context rather than writing a "current thread" into process state.
    """

    selected_thread_id: str | None = None
    session_id: str | None = None

    def with_thread(self, thread_id: str) -> SessionContext:
        return replace(self, selected_thread_id=thread_id)


@dataclass(frozen=True)
class IncomingStep:
    """A step as supplied from outside the model, already normalized."""

    description: str
    status: str = "pending"

    def __post_init__(self) -> None:
        if not self.description.strip():
            raise ValidationError("Step description must not be empty")
        if self.status not in VALID_STEP_STATUSES:
            raise ValidationError(
                f"Invalid step status '{self.status}'. Must be one of: "
                f"{', '.join(sorted(VALID_STEP_STATUSES))}"
            )


@dataclass
class MergeResult:
    added: int = 0
    updated: int = 0
    preserved: int = 0


@dataclass
class ReorderResult:
    moved: bool
    message: str


# -- Connection and transactions --


def get_connection(db_path: Path = DEFAULT_DB_PATH) -> sqlite3.Connection:
    db_path.parent.mkdir(parents=True, exist_ok=True, mode=0o700)
    # Autocommit mode: every write goes through transaction(), which takes
    # the write lock up front with BEGIN IMMEDIATE.
    conn = sqlite3.connect(str(db_path), isolation_level=None)
    conn.row_factory = sqlite3.Row
    conn.execute(f"PRAGMA busy_timeout={BUSY_TIMEOUT_MS}")
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA foreign_keys=ON")
    conn.executescript(SCHEMA)
    current_version = conn.execute("PRAGMA user_version").fetchone()[0]
    if current_version < SCHEMA_VERSION:
        applied = _migrate(conn, current_version)
        if applied > current_version:
            conn.execute(f"PRAGMA user_version = {applied}")
    return conn


@contextlib.contextmanager
def connect(db_path: Path = DEFAULT_DB_PATH) -> Iterator[sqlite3.Connection]:
    """Context manager wrapper for get_connection().

    Usage:
        with connect() as conn:
            do_stuff(conn)
    # conn.close() is guaranteed even on exceptions.
    """
    conn = get_connection(db_path)
    try:
        yield conn
    finally:
        conn.close()


@contextlib.contextmanager
def transaction(conn: sqlite3.Connection) -> Iterator[sqlite3.Connection]:
    """Run a block as one write transaction.

    ``BEGIN IMMEDIATE`` takes the database write lock before the first read,
    so two CLI processes never race on a read-then-write. Any exception rolls
    everything back; integrity violations surface as ConsistencyError.
    Nested use joins the enclosing transaction.
    """
    if conn.in_transaction:
        yield conn
        return
    conn.execute("BEGIN IMMEDIATE")
    try:
        yield conn
    except sqlite3.IntegrityError as exc:
        conn.rollback()
        raise ConsistencyError(str(exc)) from exc
    except BaseException:
        conn.rollback()
        raise
    else:
        conn.commit()


# -- Migrations --


def _table_exists(conn: sqlite3.Connection, table: str) -> bool:
    row = conn.execute(
        "SELECT 1 FROM sqlite_master WHERE type = 'table' AND name = ?", (table,)
    ).fetchone()
    return row is not None


def _table_columns(conn: sqlite3.Connection, table: str) -> set[str]:
    return {row[1] for row in conn.execute(f"PRAGMA table_info({table})").fetchall()}


def _add_column_if_missing(
    conn: sqlite3.Connection, table: str, column: str, col_def: str
) -> None:
    if column not in _table_columns(conn, table):
        conn.execute(f"ALTER TABLE {table} ADD COLUMN {column} {col_def}")


def _migrate_to_v1(conn: sqlite3.Connection) -> None:
    """Workers: one row per container executing a thread."""
    if not _table_exists(conn, "workers"):
        conn.execute("""
            CREATE TABLE workers (
                id TEXT PRIMARY KEY,
                container_id TEXT NOT NULL,
                thread_id TEXT NOT NULL REFERENCES threads(id),
                status TEXT NOT NULL DEFAULT 'running'
                    CHECK(status IN ('running', 'completed', 'failed', 'killed')),
                auth_mode TEXT CHECK(auth_mode IN ('env', 'config', 'oauth')),
                iteration INTEGER NOT NULL DEFAULT 0,
                max_iterations INTEGER NOT NULL DEFAULT 50,
                last_heartbeat TEXT,
                created_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%SZ', 'now'))
            )
        """)
    conn.execute("CREATE INDEX IF NOT EXISTS idx_workers_status ON workers(status)")
    conn.execute("CREATE INDEX IF NOT EXISTS idx_workers_thread ON workers(thread_id)")


def _migrate_to_v2(conn: sqlite3.Connection) -> None:
    _add_column_if_missing(conn, "workers", "finished_at", "TEXT")


def _migrate_to_v3(conn: sqlite3.Connection) -> None:
    if not _table_exists(conn, "thread_sessions"):
        conn.execute("""
            CREATE TABLE thread_sessions (
                thread_id TEXT NOT NULL REFERENCES threads(id),
                session_id TEXT NOT NULL,
                created_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%SZ', 'now')),
                PRIMARY KEY (thread_id, session_id)
            )
        """)


def _migrate_to_v4(conn: sqlite3.Connection) -> None:
    if not _table_exists(conn, "worker_logs"):
        conn.execute("""
            CREATE TABLE worker_logs (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                worker_id TEXT NOT NULL,
                stream TEXT NOT NULL DEFAULT 'stdout'
                    CHECK(stream IN ('stdout', 'stderr', 'system')),
                line TEXT NOT NULL,
                iteration INTEGER NOT NULL DEFAULT 0,
                created_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%SZ', 'now'))
            )
        """)
    conn.execute("CREATE INDEX IF NOT EXISTS idx_worker_logs_worker ON worker_logs(worker_id, id)")


_MIGRATIONS: list[tuple[int, Callable[[sqlite3.Connection], None]]] = [
    (1, _migrate_to_v1),
    (2, _migrate_to_v2),
    (3, _migrate_to_v3),
    (4, _migrate_to_v4),
]

SCHEMA_VERSION = _MIGRATIONS[-1][0]


def _migrate(conn: sqlite3.Connection, from_version: int) -> int:
    """Run pending migrations, each in its own transaction.

    A failing migration is logged and skipped; later ones still run. Returns
    the highest version reached without a gap, so a failed migration is
    attempted again on the next open. Every migration checks for existing
    tables/columns first, which makes re-running the later ones harmless.
    """
    reached = from_version
    contiguous = True
    for version, migration_fn in _MIGRATIONS:
        if version <= from_version:
            continue
        try:
            with transaction(conn):
                migration_fn(conn)
        except (sqlite3.Error, ConsistencyError):
            log.exception("Migration %d failed", version)
            contiguous = False
            continue
        if contiguous:
            reached = version
    return reached


# -- Threads --


def _thread_from_row(row: sqlite3.Row) -> ThreadRow:
    data = dict(row)
    data["git_branches"] = [b for b in (data.get("git_branches") or "").split(",") if b]
    return cast(ThreadRow, data)


def validate_thread_name(name: str) -> None:
    if not THREAD_NAME_RE.match(name):
        raise ValidationError(
            f"Invalid thread name '{name}'. Use kebab-case: lowercase letters, "
            "digits and single hyphens, starting with a letter."
        )


def create_thread(conn: sqlite3.Connection, name: str, *, status: str = "active") -> ThreadRow:
    validate_thread_name(name)
    if status not in VALID_THREAD_STATUSES:
        raise ValidationError(f"Invalid thread status '{status}'")
    thread_id = new_id()
    now = _utcnow()
    with transaction(conn):
        if conn.execute("SELECT 1 FROM threads WHERE name = ?", (name,)).fetchone():
            raise ValidationError(f"Thread '{name}' already exists")
        conn.execute(
            "INSERT INTO threads (id, name, status, created_at, updated_at) "
            "VALUES (?, ?, ?, ?, ?)",
            (thread_id, name, status, now, now),
        )
    return {
        "id": thread_id,
        "name": name,
        "status": status,
        "current_plan_id": None,
        "git_branches": [],
        "created_at": now,
        "updated_at": now,
    }


def get_thread(conn: sqlite3.Connection, name_or_id: str) -> ThreadRow | None:
    """Resolve a thread by exact name first, then by exact id."""
    row = conn.execute("SELECT * FROM threads WHERE name = ?", (name_or_id,)).fetchone()
    if row is None:
        row = conn.execute("SELECT * FROM threads WHERE id = ?", (name_or_id,)).fetchone()
    return _thread_from_row(row) if row else None


def list_threads(conn: sqlite3.Connection, status: str | None = None) -> list[ThreadRow]:
    if status is None:
        rows = conn.execute("SELECT * FROM threads ORDER BY updated_at DESC, name").fetchall()
    else:
        rows = conn.execute(
            "SELECT * FROM threads WHERE status = ? ORDER BY updated_at DESC, name", (status,)
        ).fetchall()
    return [_thread_from_row(r) for r in rows]


def get_current_thread(conn: sqlite3.Connection) -> ThreadRow | None:
    """Most recently touched active thread, or None."""
    row = conn.execute(
        "SELECT * FROM threads WHERE status = 'active' "
        "ORDER BY updated_at DESC, rowid DESC LIMIT 1"
    ).fetchone()
    return _thread_from_row(row) if row else None


def touch_thread(conn: sqlite3.Connection, thread_id: str) -> None:
    with transaction(conn):
        conn.execute("UPDATE threads SET updated_at = ? WHERE id = ?", (_utcnow(), thread_id))


def update_thread_status(conn: sqlite3.Connection, thread_id: str, status: str) -> bool:
    if status not in VALID_THREAD_STATUSES:
        raise ValidationError(
            f"Invalid thread status '{status}'. Must be one of: "
            f"{', '.join(sorted(VALID_THREAD_STATUSES))}"
        )
    with transaction(conn):
        cursor = conn.execute(
            "UPDATE threads SET status = ?, updated_at = ? WHERE id = ?",
            (status, _utcnow(), thread_id),
        )
    return cursor.rowcount > 0


def add_git_branch(conn: sqlite3.Connection, thread_id: str, branch: str) -> list[str]:
    branch = branch.strip()
    if not branch or "," in branch:
        raise ValidationError(f"Invalid branch name '{branch}'")
    with transaction(conn):
        row = conn.execute("SELECT git_branches FROM threads WHERE id = ?", (thread_id,)).fetchone()
        if row is None:
            raise ValidationError(f"Thread '{thread_id}' not found")
        branches = [b for b in (row["git_branches"] or "").split(",") if b]
        if branch not in branches:
            branches.append(branch)
        conn.execute(
            "UPDATE threads SET git_branches = ?, updated_at = ? WHERE id = ?",
            (",".join(branches), _utcnow(), thread_id),
        )
    return branches


def add_session_to_thread(conn: sqlite3.Connection, thread_id: str, session_id: str) -> None:
    with transaction(conn):
        conn.execute(
            "INSERT OR IGNORE INTO thread_sessions (thread_id, session_id, created_at) "
            "VALUES (?, ?, ?)",
            (thread_id, session_id, _utcnow()),
        )
        conn.execute("UPDATE threads SET updated_at = ? WHERE id = ?", (_utcnow(), thread_id))


def list_thread_sessions(conn: sqlite3.Connection, thread_id: str) -> list[str]:
    rows = conn.execute(
        "SELECT session_id FROM thread_sessions WHERE thread_id = ? ORDER BY created_at, rowid",
        (thread_id,),
    ).fetchall()
    return [r["session_id"] for r in rows]


def list_threads_with_pending_steps(conn: sqlite3.Connection) -> list[ThreadRow]:
    """Active threads whose current plan still has pending steps."""
    rows = conn.execute(
        "SELECT t.* FROM threads t JOIN plans p ON p.id = t.current_plan_id "
        "WHERE t.status = 'active' AND EXISTS ("
        "  SELECT 1 FROM plan_steps s WHERE s.plan_id = p.id AND s.status = 'pending'"
        ") ORDER BY t.updated_at DESC, t.name"
    ).fetchall()
    return [_thread_from_row(r) for r in rows]


# -- Plans --


def derive_plan_description(plan_markdown: str) -> str:
    """First non-empty line with heading markers stripped, capped in length."""
    for line in plan_markdown.splitlines():
        text = line.strip().lstrip("#").strip()
        if text:
            return text[:PLAN_DESCRIPTION_MAX]
    return ""


def create_plan(
    conn: sqlite3.Connection,
    thread_id: str,
    plan_markdown: str,
    *,
    description: str | None = None,
    session_id: str | None = None,
) -> PlanRow:
    """Store an accepted plan and make it the thread's current plan."""
    if not plan_markdown.strip():
        raise ValidationError("Plan markdown must not be empty")
    if description is None:
        description = derive_plan_description(plan_markdown)
    plan_id = new_id()
    now = _utcnow()
    with transaction(conn):
        if not conn.execute("SELECT 1 FROM threads WHERE id = ?", (thread_id,)).fetchone():
            raise ValidationError(f"Thread '{thread_id}' not found")
        conn.execute(
            "INSERT INTO plans (id, thread_id, status, description, plan_markdown, "
            "session_id, created_at) VALUES (?, ?, 'accepted', ?, ?, ?, ?)",
            (plan_id, thread_id, description, plan_markdown, session_id, now),
        )
        conn.execute(
            "UPDATE threads SET current_plan_id = ?, updated_at = ? WHERE id = ?",
            (plan_id, now, thread_id),
        )
    return {
        "id": plan_id,
        "thread_id": thread_id,
        "status": "accepted",
        "description": description,
        "plan_markdown": plan_markdown,
        "session_id": session_id,
        "created_at": now,
    }


def get_plan(conn: sqlite3.Connection, plan_id: str) -> PlanRow | None:
    row = conn.execute("SELECT * FROM plans WHERE id = ?", (plan_id,)).fetchone()
    return cast(PlanRow, dict(row)) if row else None


def get_current_plan(conn: sqlite3.Connection, thread_id: str) -> PlanRow | None:
    row = conn.execute(
        "SELECT p.* FROM plans p JOIN threads t ON t.current_plan_id = p.id "
        "WHERE t.id = ? AND p.thread_id = t.id",
        (thread_id,),
    ).fetchone()
    return cast(PlanRow, dict(row)) if row else None


def list_plans(conn: sqlite3.Connection, thread_id: str) -> list[PlanRow]:
    rows = conn.execute(
        "SELECT * FROM plans WHERE thread_id = ? ORDER BY created_at DESC, rowid DESC",
        (thread_id,),
    ).fetchall()
    return [cast(PlanRow, dict(r)) for r in rows]


def update_plan_status(conn: sqlite3.Connection, plan_id: str, status: str) -> bool:
    if status not in VALID_PLAN_STATUSES:
        raise ValidationError(
            f"Invalid plan status '{status}'. Must be one of: "
            f"{', '.join(sorted(VALID_PLAN_STATUSES))}"
        )
    with transaction(conn):
        cursor = conn.execute("UPDATE plans SET status = ? WHERE id = ?", (status, plan_id))
    return cursor.rowcount > 0


def update_plan_markdown(conn: sqlite3.Connection, plan_id: str, plan_markdown: str) -> bool:
    if not plan_markdown.strip():
        raise ValidationError("Plan markdown must not be empty")
    with transaction(conn):
        cursor = conn.execute(
            "UPDATE plans SET plan_markdown = ? WHERE id = ?", (plan_markdown, plan_id)
        )
    return cursor.rowcount > 0


def _touch_plan_thread(conn: sqlite3.Connection, plan_id: str | None) -> None:
    if plan_id is None:
        return
    conn.execute(
        "UPDATE threads SET updated_at = ? "
        "WHERE id = (SELECT thread_id FROM plans WHERE id = ?)",
        (_utcnow(), plan_id),
    )


# -- Target resolution --


def resolve_thread(
    conn: sqlite3.Connection, ctx: SessionContext, name_or_id: str | None = None
) -> ThreadRow | None:
    """Explicit argument first, then the context's selection, then the current thread.

    A selection in *ctx* that names no thread is an error, never a fallback.
    """
    if name_or_id:
        return get_thread(conn, name_or_id)
    if ctx.selected_thread_id:
        thread = get_thread(conn, ctx.selected_thread_id)
        if thread is None:
            raise ValidationError(f"Thread '{ctx.selected_thread_id}' not found")
        return thread
    return get_current_thread(conn)


def resolve_target_plan(
    conn: sqlite3.Connection, ctx: SessionContext, thread_or_plan: str | None = None
) -> tuple[ThreadRow, PlanRow]:
    """Find the plan a progress command should write to.

    *thread_or_plan* may name a thread (its current plan is used) or be a
    plan id. Without it the context and then the current thread decide.
    """
    if thread_or_plan:
        thread = get_thread(conn, thread_or_plan)
        if thread is None:
            plan = get_plan(conn, thread_or_plan)
            if plan is None:
                raise ValidationError(f"No thread or plan matches '{thread_or_plan}'")
            owner = get_thread(conn, plan["thread_id"])
            if owner is None:
                raise ValidationError(f"Plan '{plan['id']}' has no owning thread")
            return owner, plan
    else:
        thread = resolve_thread(conn, ctx)
        if thread is None:
            raise ValidationError(
                "No active thread. Create one with 'blackboard thread new NAME'."
            )
    plan = get_current_plan(conn, thread["id"])
    if plan is None:
        raise ValidationError(f"Thread '{thread['name']}' has no current plan")
    return thread, plan


# -- Steps --


def normalize_description(description: str) -> str:
    return " ".join(description.split()).lower()


def list_steps(conn: sqlite3.Connection, plan_id: str) -> list[StepRow]:
    rows = conn.execute(
        "SELECT * FROM plan_steps WHERE plan_id = ? ORDER BY step_order", (plan_id,)
    ).fetchall()
    return [cast(StepRow, dict(r)) for r in rows]


def get_step(conn: sqlite3.Connection, plan_id: str, step_order: int) -> StepRow | None:
    row = conn.execute(
        "SELECT * FROM plan_steps WHERE plan_id = ? AND step_order = ?", (plan_id, step_order)
    ).fetchone()
    return cast(StepRow, dict(row)) if row else None


def step_status_counts(conn: sqlite3.Connection, plan_id: str) -> dict[str, int]:
    counts = dict.fromkeys(sorted(VALID_STEP_STATUSES), 0)
    for row in conn.execute(
        "SELECT status, COUNT(*) AS n FROM plan_steps WHERE plan_id = ? GROUP BY status",
        (plan_id,),
    ):
        counts[row["status"]] = row["n"]
    return counts


def _step_count(conn: sqlite3.Connection, plan_id: str) -> int:
    return conn.execute(
        "SELECT COUNT(*) FROM plan_steps WHERE plan_id = ?", (plan_id,)
    ).fetchone()[0]


def _require_plan(conn: sqlite3.Connection, plan_id: str) -> None:
    if not conn.execute("SELECT 1 FROM plans WHERE id = ?", (plan_id,)).fetchone():
        raise ValidationError(f"Plan '{plan_id}' not found")


def _unpark_orders(conn: sqlite3.Connection, plan_id: str) -> None:
    conn.execute(
        "UPDATE plan_steps SET step_order = -step_order WHERE plan_id = ? AND step_order < 0",
        (plan_id,),
    )


# Order shifts go through negative values: rows are first moved to
# -(new_order), then flipped back, so UNIQUE(plan_id, step_order) never sees
# two rows on the same slot mid-statement.


def merge_steps_for_plan(
    conn: sqlite3.Connection, plan_id: str, incoming: Sequence[IncomingStep]
) -> MergeResult:
    """Reconcile a plan's steps with a freshly supplied ordered list.

    Steps are matched on normalized description. A matched step whose status
    is completed, failed or skipped keeps its status and row (``preserved``);
    any other match takes the incoming status and counts as ``updated`` when
    its status or position changed; unknown descriptions are inserted
    (``added``). Orders become the incoming
    positions 1..N and existing steps missing from the list are deleted, their
    breadcrumbs detached.

    An empty *incoming* reconciles nothing and deletes nothing.
    """
    result = MergeResult()
    if not incoming:
        return result

    now = _utcnow()
    with transaction(conn):
        _require_plan(conn, plan_id)
        existing: dict[str, StepRow] = {}
        for step in list_steps(conn, plan_id):
            existing.setdefault(normalize_description(step["description"]), step)

        conn.execute(
            "UPDATE plan_steps SET step_order = -step_order WHERE plan_id = ?", (plan_id,)
        )

        seen: set[str] = set()
        order = 0
        for item in incoming:
            key = normalize_description(item.description)
            if key in seen:
                continue
            seen.add(key)
            order += 1
            match = existing.get(key)
            if match is None:
                conn.execute(
                    "INSERT INTO plan_steps "
                    "(id, plan_id, step_order, description, status, created_at, updated_at) "
                    "VALUES (?, ?, ?, ?, ?, ?, ?)",
                    (new_id(), plan_id, order, item.description.strip(), item.status, now, now),
                )
                result.added += 1
            elif match["status"] in STEP_PRESERVED_STATUSES:
                conn.execute(
                    "UPDATE plan_steps SET step_order = ? WHERE id = ?", (order, match["id"])
                )
                result.preserved += 1
            elif match["status"] == item.status and match["step_order"] == order:
                conn.execute(
                    "UPDATE plan_steps SET step_order = ? WHERE id = ?", (order, match["id"])
                )
            else:
                conn.execute(
                    "UPDATE plan_steps SET step_order = ?, status = ?, description = ?, "
                    "updated_at = ? WHERE id = ?",
                    (order, item.status, item.description.strip(), now, match["id"]),
                )
                result.updated += 1

        # Whatever is still parked was not in the incoming list.
        conn.execute("DELETE FROM plan_steps WHERE plan_id = ? AND step_order < 0", (plan_id,))
        _touch_plan_thread(conn, plan_id)
    return result


def add_step(
    conn: sqlite3.Connection,
    plan_id: str,
    description: str,
    *,
    position: int | None = None,
    status: str = "pending",
) -> StepRow:
    """Insert a step at *position* (1..N+1), appending when omitted."""
    item = IncomingStep(description.strip(), status)
    step_id = new_id()
    now = _utcnow()
    with transaction(conn):
        _require_plan(conn, plan_id)
        count = _step_count(conn, plan_id)
        if position is None:
            position = count + 1
        elif not 1 <= position <= count + 1:
            raise ValidationError(f"Position must be between 1 and {count + 1}, got {position}")
        conn.execute(
            "UPDATE plan_steps SET step_order = -(step_order + 1) "
            "WHERE plan_id = ? AND step_order >= ?",
            (plan_id, position),
        )
        _unpark_orders(conn, plan_id)
        conn.execute(
            "INSERT INTO plan_steps "
            "(id, plan_id, step_order, description, status, created_at, updated_at) "
            "VALUES (?, ?, ?, ?, ?, ?, ?)",
            (step_id, plan_id, position, item.description, item.status, now, now),
        )
        _touch_plan_thread(conn, plan_id)
    return {
        "id": step_id,
        "plan_id": plan_id,
        "step_order": position,
        "description": item.description,
        "status": item.status,
        "created_at": now,
        "updated_at": now,
    }


def reorder_step(
    conn: sqlite3.Connection, plan_id: str, from_order: int, to_order: int
) -> ReorderResult:
    with transaction(conn):
        count = _step_count(conn, plan_id)
        for value in (from_order, to_order):
            if not 1 <= value <= count:
                raise ValidationError(f"Position must be between 1 and {count}, got {value}")
        if from_order == to_order:
            return ReorderResult(False, f"Step {from_order} is already at that position")

        step = get_step(conn, plan_id, from_order)
        if step is None:
            raise ConsistencyError(f"Plan '{plan_id}' has no step at position {from_order}")
        conn.execute("UPDATE plan_steps SET step_order = 0 WHERE id = ?", (step["id"],))
        if to_order < from_order:
            conn.execute(
                "UPDATE plan_steps SET step_order = -(step_order + 1) "
                "WHERE plan_id = ? AND step_order >= ? AND step_order < ?",
                (plan_id, to_order, from_order),
            )
        else:
            conn.execute(
                "UPDATE plan_steps SET step_order = -(step_order - 1) "
                "WHERE plan_id = ? AND step_order > ? AND step_order <= ?",
                (plan_id, from_order, to_order),
            )
        _unpark_orders(conn, plan_id)
        conn.execute(
            "UPDATE plan_steps SET step_order = ?, updated_at = ? WHERE id = ?",
            (to_order, _utcnow(), step["id"]),
        )
        _touch_plan_thread(conn, plan_id)
    return ReorderResult(True, f"Moved step from position {from_order} to {to_order}")


def remove_step(
    conn: sqlite3.Connection, plan_id: str, step_order: int, *, force: bool = False
) -> StepRow:
    """Delete a step and close the gap it leaves."""
    with transaction(conn):
        step = get_step(conn, plan_id, step_order)
        if step is None:
            raise ValidationError(f"No step at position {step_order}")
        if step["status"] == "completed" and not force:
            raise ValidationError(
                f"Step {step_order} is completed; pass force to remove it anyway"
            )
        conn.execute("DELETE FROM plan_steps WHERE id = ?", (step["id"],))
        conn.execute(
            "UPDATE plan_steps SET step_order = -(step_order - 1) "
            "WHERE plan_id = ? AND step_order > ?",
            (plan_id, step_order),
        )
        _unpark_orders(conn, plan_id)
        _touch_plan_thread(conn, plan_id)
    return step


def update_step_status(
    conn: sqlite3.Connection, plan_id: str, step_order: int, status: str
) -> StepRow:
    if status not in VALID_STEP_STATUSES:
        raise ValidationError(
            f"Invalid step status '{status}'. Must be one of: "
            f"{', '.join(sorted(VALID_STEP_STATUSES))}"
        )
    now = _utcnow()
    with transaction(conn):
        step = get_step(conn, plan_id, step_order)
        if step is None:
            raise ValidationError(f"No step at position {step_order}")
        conn.execute(
            "UPDATE plan_steps SET status = ?, updated_at = ? WHERE id = ?",
            (status, now, step["id"]),
        )
        _touch_plan_thread(conn, plan_id)
    step["status"] = status
    step["updated_at"] = now
    return step


# -- Progress records --


def _breadcrumb_from_row(row: sqlite3.Row) -> BreadcrumbRow:
    data = dict(row)
    data["files_touched"] = json.loads(data["files_touched"]) if data["files_touched"] else []
    return cast(BreadcrumbRow, data)


def add_breadcrumb(
    conn: sqlite3.Connection,
    plan_id: str,
    summary: str,
    *,
    step_id: str | None = None,
    agent_type: str | None = None,
    files_touched: Sequence[str] = (),
    issues: str | None = None,
    next_context: str | None = None,
) -> str:
    if not summary.strip():
        raise ValidationError("Breadcrumb summary must not be empty")
    crumb_id = new_id()
    with transaction(conn):
        _require_plan(conn, plan_id)
        conn.execute(
            "INSERT INTO breadcrumbs (id, plan_id, step_id, agent_type, summary, "
            "files_touched, issues, next_context, created_at) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
            (
                crumb_id,
                plan_id,
                step_id,
                agent_type,
                summary,
                json.dumps(list(files_touched)) if files_touched else None,
                issues,
                next_context,
                _utcnow(),
            ),
        )
        _touch_plan_thread(conn, plan_id)
    return crumb_id


def list_breadcrumbs(
    conn: sqlite3.Connection, plan_id: str, *, limit: int | None = None
) -> list[BreadcrumbRow]:
    sql = "SELECT * FROM breadcrumbs WHERE plan_id = ? ORDER BY created_at DESC, rowid DESC"
    params: tuple = (plan_id,)
    if limit is not None:
        sql += " LIMIT ?"
        params = (plan_id, limit)
    return [_breadcrumb_from_row(r) for r in conn.execute(sql, params).fetchall()]


def add_correction(
    conn: sqlite3.Connection,
    plan_id: str | None,
    mistake: str,
    correction: str,
    *,
    step_id: str | None = None,
    pattern: str | None = None,
    tags: Sequence[str] = (),
) -> str:
    if not mistake.strip() or not correction.strip():
        raise ValidationError("Both the mistake and the correction are required")
    correction_id = new_id()
    with transaction(conn):
        conn.execute(
            "INSERT INTO corrections (id, plan_id, step_id, mistake, pattern, correction, "
            "tags, created_at) VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
            (
                correction_id,
                plan_id,
                step_id,
                mistake,
                pattern,
                correction,
                ",".join(tags) or None,
                _utcnow(),
            ),
        )
        _touch_plan_thread(conn, plan_id)
    return correction_id


def list_corrections(conn: sqlite3.Connection, plan_id: str | None = None) -> list[dict]:
    if plan_id is None:
        rows = conn.execute("SELECT * FROM corrections ORDER BY created_at DESC, rowid DESC")
    else:
        rows = conn.execute(
            "SELECT * FROM corrections WHERE plan_id = ? ORDER BY created_at DESC, rowid DESC",
            (plan_id,),
        )
    return [dict(r) for r in rows.fetchall()]


def add_bug_report(
    conn: sqlite3.Connection,
    title: str,
    repro_steps: str,
    *,
    plan_id: str | None = None,
    evidence: str | None = None,
) -> str:
    if not title.strip() or not repro_steps.strip():
        raise ValidationError("A bug report needs a title and reproduction steps")
    bug_id = new_id()
    with transaction(conn):
        conn.execute(
            "INSERT INTO bug_reports (id, plan_id, title, repro_steps, evidence, status, "
            "created_at) VALUES (?, ?, ?, ?, ?, 'open', ?)",
            (bug_id, plan_id, title, repro_steps, evidence, _utcnow()),
        )
        _touch_plan_thread(conn, plan_id)
    return bug_id


def update_bug_report_status(conn: sqlite3.Connection, bug_id: str, status: str) -> bool:
    if status not in VALID_BUG_STATUSES:
        raise ValidationError(
            f"Invalid bug status '{status}'. Must be one of: "
            f"{', '.join(sorted(VALID_BUG_STATUSES))}"
        )
    with transaction(conn):
        cursor = conn.execute("UPDATE bug_reports SET status = ? WHERE id = ?", (status, bug_id))
    return cursor.rowcount > 0


def list_bug_reports(conn: sqlite3.Connection, status: str | None = None) -> list[dict]:
    if status is None:
        rows = conn.execute("SELECT * FROM bug_reports ORDER BY created_at DESC, rowid DESC")
    else:
        rows = conn.execute(
            "SELECT * FROM bug_reports WHERE status = ? ORDER BY created_at DESC, rowid DESC",
            (status,),
        )
    return [dict(r) for r in rows.fetchall()]


def add_reflection(
    conn: sqlite3.Connection,
    plan_id: str | None,
    *,
    what_worked: str | None = None,
    what_failed: str | None = None,
    patterns_noticed: str | None = None,
) -> str:
    if not any(v and v.strip() for v in (what_worked, what_failed, patterns_noticed)):
        raise ValidationError("A reflection needs at least one non-empty field")
    reflection_id = new_id()
    with transaction(conn):
        conn.execute(
            "INSERT INTO reflections (id, plan_id, what_worked, what_failed, "
            "patterns_noticed, created_at) VALUES (?, ?, ?, ?, ?, ?)",
            (reflection_id, plan_id, what_worked, what_failed, patterns_noticed, _utcnow()),
        )
        _touch_plan_thread(conn, plan_id)
    return reflection_id


def list_reflections(conn: sqlite3.Connection, plan_id: str | None = None) -> list[dict]:
    if plan_id is None:
        rows = conn.execute("SELECT * FROM reflections ORDER BY created_at DESC, rowid DESC")
    else:
        rows = conn.execute(
            "SELECT * FROM reflections WHERE plan_id = ? ORDER BY created_at DESC, rowid DESC",
            (plan_id,),
        )
    return [dict(r) for r in rows.fetchall()]
