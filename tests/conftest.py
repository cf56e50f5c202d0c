"""Shared test fixtures: template DB for fast per-test isolation, fake docker."""

import shutil
import sqlite3
import tempfile
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest

from blackboard.containers import RunOptions
from blackboard.db import create_plan, create_thread, get_connection
from blackboard.errors import BuildError, LaunchError, StopError
from blackboard.orchestrator import SpawnOptions

TEST_PLAN = "# Ship the widget\n\n1. Build it\n2. Test it\n"


@pytest.fixture(scope="session")
def _db_template_path() -> Path:
    """Create a single template DB with full schema + a default thread and plan.

    Copying this file is much cheaper than running every migration in each
    test function.
    """
    fd, path_str = tempfile.mkstemp(suffix=".db")
    path = Path(path_str)
    try:
        conn = get_connection(path)
        thread = create_thread(conn, "testthread")
        create_plan(conn, thread["id"], TEST_PLAN)
        conn.close()
        yield path
    finally:
        path.unlink(missing_ok=True)


@pytest.fixture()
def db_conn(tmp_path: Path, _db_template_path: Path) -> sqlite3.Connection:
    """Per-test DB connection with schema + testthread pre-loaded."""
    db_path = tmp_path / "test.db"
    shutil.copy2(_db_template_path, db_path)
    conn = get_connection(db_path)
    try:
        yield conn
    finally:
        conn.close()


@pytest.fixture()
def db_conn_path(tmp_path: Path, _db_template_path: Path) -> tuple[sqlite3.Connection, Path]:
    """Per-test DB connection + path (for tests that re-open the DB)."""
    db_path = tmp_path / "test.db"
    shutil.copy2(_db_template_path, db_path)
    conn = get_connection(db_path)
    try:
        yield conn, db_path
    finally:
        conn.close()


@pytest.fixture(autouse=True)
def _no_redis():
    """Keep event publishing off the network; tests that care patch again."""
    with patch("blackboard.events.get_redis", return_value=MagicMock()):
        yield


class FakeRuntime:
    """In-memory ContainerRuntime recording every call."""

    def __init__(self) -> None:
        self.available = True
        self.ignore_graceful = False
        self.build_error: BuildError | None = None
        self.fail_run_for: set[str] = set()
        self.fail_stop_for: set[str] = set()
        self.running: set[str] = set()
        self.started: list[RunOptions] = []
        self.builds: list[tuple[str, Path, Path]] = []
        self.stops: list[tuple[str, bool]] = []
        self.removed: list[str] = []
        self._count = 0

    def is_available(self) -> bool:
        return self.available

    def build(self, tag: str, context_path: Path, dockerfile_path: Path) -> None:
        if self.build_error is not None:
            raise self.build_error
        self.builds.append((tag, context_path, dockerfile_path))

    def run(self, options: RunOptions) -> str:
        if options.thread_name in self.fail_run_for:
            raise LaunchError(f"cannot start {options.thread_name}")
        self._count += 1
        container_id = f"{self._count:04d}" + "f" * 60
        self.started.append(options)
        self.running.add(container_id)
        return container_id

    def stop(self, container_id: str, *, graceful: bool) -> None:
        self.stops.append((container_id, graceful))
        if container_id in self.fail_stop_for:
            raise StopError(f"cannot stop {container_id[:12]}")
        if graceful and self.ignore_graceful:
            return
        self.running.discard(container_id)

    def is_running(self, container_id: str) -> bool:
        return container_id in self.running

    def remove(self, container_id: str) -> None:
        if container_id in self.fail_stop_for:
            raise StopError(f"cannot remove {container_id[:12]}")
        self.removed.append(container_id)
        self.running.discard(container_id)


@pytest.fixture()
def fake_runtime() -> FakeRuntime:
    return FakeRuntime()


@pytest.fixture()
def spawn_options(tmp_path: Path) -> SpawnOptions:
    return SpawnOptions(store_dir=tmp_path, repo_dir=tmp_path, credential="sk-test")
