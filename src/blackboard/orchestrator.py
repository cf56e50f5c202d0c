"""Worker lifecycle: spawn, kill, drain and farm.

Every operation takes an open store connection and a
:class:`~blackboard.containers.ContainerRuntime`. Waiting is done by polling
the store or the runtime with an injectable ``sleep`` so tests can drive the
loops without real delays.
"""

from __future__ import annotations

import logging
import os
import sqlite3
import time
from collections import deque
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path

from blackboard.config import WorkerSettings
from blackboard.containers import CREDENTIAL_ENV, ContainerRuntime, RunOptions
from blackboard.db import (
    ThreadRow,
    get_thread,
    list_threads_with_pending_steps,
    new_id,
    touch_thread,
)
from blackboard.errors import (
    BlackboardError,
    OrphanedContainerError,
    RuntimeUnavailable,
    StopError,
    ValidationError,
)
from blackboard.events import publish_event
from blackboard.registry import (
    WORKER_TERMINAL_STATUSES,
    WorkerRow,
    find_workers_by_prefix,
    get_active_workers,
    get_stale_workers,
    get_worker,
    get_workers_for_thread,
    insert_worker,
    update_worker_status,
)

log = logging.getLogger(__name__)

SPAWNABLE_THREAD_STATUSES = {"active", "paused"}
DEFAULT_WORKER_DOCKERFILE = "Dockerfile.worker"


@dataclass
class SpawnOptions:
    store_dir: Path
    repo_dir: Path
    image: str = WorkerSettings.image
    auth_mode: str = WorkerSettings.auth_mode
    credential: str | None = None
    max_iterations: int = WorkerSettings.max_iterations
    memory: str = WorkerSettings.memory
    build: bool = False
    dockerfile: Path | None = None
    context_dir: Path | None = None
    config_dir: Path | None = None

    @classmethod
    def from_settings(
        cls, settings: WorkerSettings, *, store_dir: Path, repo_dir: Path, **overrides
    ) -> SpawnOptions:
        values = {
            "image": settings.image,
            "auth_mode": settings.auth_mode,
            "max_iterations": settings.max_iterations,
            "memory": settings.memory,
        }
        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls(store_dir=store_dir, repo_dir=repo_dir, **values)


@dataclass
class SpawnResult:
    worker_id: str
    container_id: str
    thread_id: str
    thread_name: str


@dataclass
class KillResult:
    worker_id: str
    thread_id: str
    status: str
    killed: bool
    message: str


@dataclass
class DrainOutcome:
    worker_id: str
    thread_name: str
    container_id: str
    method: str = "forced"
    status: str = "running"
    error: str | None = None


@dataclass
class DrainResult:
    outcomes: list[DrainOutcome] = field(default_factory=list)

    @property
    def graceful(self) -> int:
        return sum(1 for o in self.outcomes if o.method == "graceful")

    @property
    def forced(self) -> int:
        return sum(1 for o in self.outcomes if o.method == "forced")


@dataclass
class FarmOutcome:
    thread: str
    worker_id: str | None = None
    status: str = "queued"
    error: str | None = None


@dataclass
class FarmResult:
    outcomes: list[FarmOutcome] = field(default_factory=list)
    max_concurrent: int = 0

    @property
    def completed(self) -> int:
        return sum(1 for o in self.outcomes if o.status == "completed")

    @property
    def failed(self) -> int:
        return sum(1 for o in self.outcomes if o.status != "completed")


# -- Preconditions --


def _require_runtime(runtime: ContainerRuntime) -> None:
    if not runtime.is_available():
        raise RuntimeUnavailable(
            "Docker is not available. Install Docker and make sure the daemon is running."
        )


def _require_spawnable_thread(conn: sqlite3.Connection, thread_ref: str) -> ThreadRow:
    thread = get_thread(conn, thread_ref)
    if thread is None:
        raise ValidationError(f"Thread '{thread_ref}' not found")
    if thread["status"] not in SPAWNABLE_THREAD_STATUSES:
        raise ValidationError(
            f"Thread '{thread['name']}' is {thread['status']}; "
            "only active or paused threads can get a worker"
        )
    return thread


def _resolve_credential(options: SpawnOptions) -> str | None:
    var = CREDENTIAL_ENV.get(options.auth_mode)
    if var is not None:
        credential = options.credential or os.environ.get(var)
        if not credential:
            raise ValidationError(f"Auth mode '{options.auth_mode}' requires {var} to be set")
        return credential
    if options.auth_mode == "config":
        config_dir = options.config_dir or Path.home() / ".claude"
        if not config_dir.is_dir():
            raise ValidationError(f"Auth mode 'config' requires {config_dir} to exist")
        return None
    raise ValidationError(f"Unknown auth mode '{options.auth_mode}'")


def _build_image(runtime: ContainerRuntime, options: SpawnOptions) -> None:
    dockerfile = options.dockerfile or options.repo_dir / DEFAULT_WORKER_DOCKERFILE
    if not dockerfile.is_file():
        raise ValidationError(f"Dockerfile not found: {dockerfile}")
    runtime.build(options.image, options.context_dir or dockerfile.parent, dockerfile)


def _launch(
    conn: sqlite3.Connection,
    runtime: ContainerRuntime,
    thread: ThreadRow,
    options: SpawnOptions,
    credential: str | None,
    *,
    source: str = "cli",
) -> SpawnResult:
    worker_id = new_id()
    container_id = runtime.run(
        RunOptions(
            image=options.image,
            thread_name=thread["name"],
            worker_id=worker_id,
            store_dir=options.store_dir,
            repo_dir=options.repo_dir,
            auth_mode=options.auth_mode,
            max_iterations=options.max_iterations,
            memory=options.memory,
            credential=credential,
            config_dir=options.config_dir,
        )
    )
    try:
        insert_worker(
            conn,
            worker_id=worker_id,
            container_id=container_id,
            thread_id=thread["id"],
            auth_mode=options.auth_mode,
            max_iterations=options.max_iterations,
        )
    except Exception as exc:
        log.error(
            "Container %s is running but worker %s could not be registered: %s",
            container_id[:12],
            worker_id,
            exc,
        )
        raise OrphanedContainerError(container_id, worker_id, exc) from exc

    touch_thread(conn, thread["id"])
    log.info("Spawned worker %s for thread %s", worker_id, thread["name"])
    publish_event(
        "worker:spawned",
        worker_id,
        "running",
        thread=thread["name"],
        source=source,
        extra={"container_id": container_id[:12]},
    )
    return SpawnResult(worker_id, container_id, thread["id"], thread["name"])


# -- Spawn / kill --


def spawn_worker(
    conn: sqlite3.Connection,
    runtime: ContainerRuntime,
    thread_ref: str,
    options: SpawnOptions,
) -> SpawnResult:
    """Start a container working on *thread_ref* and register it.

    Raises ValidationError for an unknown or inactive thread or missing
    credentials, RuntimeUnavailable when docker is absent, BuildError or
    LaunchError from the runtime, and OrphanedContainerError when the
    container started but its row could not be written.
    """
    thread = _require_spawnable_thread(conn, thread_ref)
    _require_runtime(runtime)
    credential = _resolve_credential(options)
    if options.build:
        _build_image(runtime, options)
    return _launch(conn, runtime, thread, options, credential)


def resolve_worker(conn: sqlite3.Connection, target: str) -> WorkerRow:
    """Find a worker by id, owning thread, or unique prefix of a running worker's id."""
    worker = get_worker(conn, target)
    if worker is not None:
        return worker

    thread = get_thread(conn, target)
    if thread is not None:
        workers = get_workers_for_thread(conn, thread["id"])
        running = [w for w in workers if w["status"] == "running"]
        if len(running) > 1:
            ids = ", ".join(w["id"] for w in running)
            raise ValidationError(
                f"Thread '{thread['name']}' has {len(running)} running workers ({ids}); "
                "pass a worker id"
            )
        if running:
            return running[0]
        if workers:
            return workers[0]
        raise ValidationError(f"Thread '{thread['name']}' has no workers")

    matches = find_workers_by_prefix(conn, target)
    if len(matches) > 1:
        ids = ", ".join(w["id"] for w in matches)
        raise ValidationError(f"Worker prefix '{target}' is ambiguous: {ids}")
    if matches:
        return matches[0]
    raise ValidationError(f"No worker or thread matches '{target}'")


def _container_alive(
    runtime: ContainerRuntime, worker: WorkerRow, *, if_unknown: bool = False
) -> bool:
    try:
        return runtime.is_running(worker["container_id"])
    except StopError as exc:
        log.warning("Could not inspect worker %s: %s", worker["id"], exc)
        return if_unknown


def kill_worker(conn: sqlite3.Connection, runtime: ContainerRuntime, target: str) -> KillResult:
    worker = resolve_worker(conn, target)
    if worker["status"] != "running":
        if not _container_alive(runtime, worker):
            return KillResult(
                worker["id"],
                worker["thread_id"],
                worker["status"],
                False,
                f"Worker {worker['id']} already {worker['status']}",
            )
        # The row was finalized but its container outlived it.
        try:
            runtime.stop(worker["container_id"], graceful=False)
        except StopError as exc:
            log.warning("Could not stop container for worker %s: %s", worker["id"], exc)
            return KillResult(
                worker["id"], worker["thread_id"], worker["status"], False, str(exc)
            )
        return KillResult(
            worker["id"],
            worker["thread_id"],
            worker["status"],
            True,
            f"Stopped leftover container of worker {worker['id']} ({worker['status']})",
        )

    try:
        runtime.stop(worker["container_id"], graceful=False)
    except StopError as exc:
        log.warning("Could not stop container for worker %s: %s", worker["id"], exc)

    killed = update_worker_status(conn, worker["id"], "killed")
    current = get_worker(conn, worker["id"])
    status = current["status"] if current else "killed"
    publish_event("worker:killed", worker["id"], status)
    message = f"Killed worker {worker['id']}" if killed else f"Worker {worker['id']} already {status}"
    return KillResult(worker["id"], worker["thread_id"], status, killed, message)


# -- Drain --


def drain_workers(
    conn: sqlite3.Connection,
    runtime: ContainerRuntime,
    *,
    grace_period: float = WorkerSettings.grace_period,
    force: bool = False,
    poll_interval: float = 0.5,
    sleep: Callable[[float], None] = time.sleep,
    clock: Callable[[], float] = time.monotonic,
) -> DrainResult:
    """Stop every running worker, gracefully first unless *force*.

    Workers are marked ``killed`` before any signal is sent, so a worker that
    exits on SIGTERM and reports its own finish cannot override the drain.
    All workers get SIGTERM at once and share one deadline of *grace_period*
    seconds. Containers still running at the deadline are killed. Failures
    are recorded on the worker's outcome and never stop the others.
    """
    _require_runtime(runtime)
    workers = get_active_workers(conn)
    result = DrainResult()
    if not workers:
        return result

    outcomes = {
        w["id"]: DrainOutcome(w["id"], w["thread_name"], w["container_id"]) for w in workers
    }
    result.outcomes = list(outcomes.values())

    for w in workers:
        update_worker_status(conn, w["id"], "killed")
        current = get_worker(conn, w["id"])
        outcomes[w["id"]].status = current["status"] if current else "killed"

    pending = list(workers)
    try:
        if not force:
            deadline = clock() + grace_period
            for w in workers:
                try:
                    runtime.stop(w["container_id"], graceful=True)
                except StopError as exc:
                    log.warning("Graceful stop failed for worker %s: %s", w["id"], exc)
                    outcomes[w["id"]].error = str(exc)

            while True:
                still_running = []
                for w in pending:
                    try:
                        running = runtime.is_running(w["container_id"])
                    except StopError as exc:
                        log.warning("Could not inspect worker %s: %s", w["id"], exc)
                        running = True
                    if running:
                        still_running.append(w)
                    else:
                        outcomes[w["id"]].method = "graceful"
                pending = still_running
                remaining = deadline - clock()
                if not pending or remaining <= 0:
                    break
                sleep(min(poll_interval, remaining))
    finally:
        # Survivors of the grace period, or everyone when interrupted.
        for w in pending:
            try:
                runtime.stop(w["container_id"], graceful=False)
            except StopError as exc:
                log.warning("Force kill failed for worker %s: %s", w["id"], exc)
                outcomes[w["id"]].error = str(exc)

    for w in workers:
        outcome = outcomes[w["id"]]
        publish_event(
            "worker:killed",
            w["id"],
            outcome.status,
            thread=w["thread_name"],
            extra={"method": outcome.method},
        )
    return result


# -- Farm --


def _fail_stale_workers(
    conn: sqlite3.Connection,
    runtime: ContainerRuntime,
    window: dict[str, str],
    outcomes: dict[str, FarmOutcome],
    stale_after: float,
    now: datetime,
) -> None:
    for worker in get_stale_workers(conn, stale_after, now=now):
        if worker["id"] not in window:
            continue
        log.warning(
            "Worker %s for thread %s missed heartbeats for %ss; marking failed",
            worker["id"],
            worker["thread_name"],
            stale_after,
        )
        try:
            runtime.remove(worker["container_id"])
        except StopError as exc:
            log.warning("Could not remove stale worker %s: %s", worker["id"], exc)
        update_worker_status(conn, worker["id"], "failed")
        outcomes[window[worker["id"]]].error = "heartbeat timed out"


def farm(
    conn: sqlite3.Connection,
    runtime: ContainerRuntime,
    thread_names: Sequence[str] | None,
    options: SpawnOptions,
    *,
    concurrency: int = WorkerSettings.concurrency,
    poll_interval: float = WorkerSettings.poll_interval,
    stale_after: float | None = None,
    sleep: Callable[[float], None] = time.sleep,
    now: Callable[[], datetime] = lambda: datetime.now(UTC),
) -> FarmResult:
    """Run workers for many threads with at most *concurrency* at a time.

    Each thread is spawned once. A spawn failure is recorded on that
    thread's outcome and the farm moves on; nothing is retried. When
    *thread_names* is None every active thread with pending steps is queued.
    A worker whose container is gone while its row still says running is
    marked failed, as is one whose heartbeat is older than *stale_after*.
    """
    if concurrency < 1:
        raise ValidationError(f"Concurrency must be at least 1, got {concurrency}")
    _require_runtime(runtime)
    if thread_names is None:
        names = [t["name"] for t in list_threads_with_pending_steps(conn)]
    else:
        names = list(dict.fromkeys(thread_names))
    credential = _resolve_credential(options)
    if options.build:
        _build_image(runtime, options)

    outcomes = {name: FarmOutcome(name) for name in names}
    result = FarmResult(list(outcomes.values()))
    queue = deque(names)
    window: dict[str, str] = {}

    log.info("Farm starting: %d thread(s), concurrency %d", len(names), concurrency)
    while queue or window:
        while queue and len(window) < concurrency:
            name = queue.popleft()
            try:
                thread = _require_spawnable_thread(conn, name)
                spawned = _launch(conn, runtime, thread, options, credential, source="farm")
            except BlackboardError as exc:
                log.warning("Farm: could not spawn a worker for %s: %s", name, exc)
                outcomes[name].status = "spawn_failed"
                outcomes[name].error = str(exc)
                continue
            outcomes[name].worker_id = spawned.worker_id
            outcomes[name].status = "running"
            window[spawned.worker_id] = name
            result.max_concurrent = max(result.max_concurrent, len(window))

        if not window:
            continue

        sleep(poll_interval)
        if stale_after is not None:
            _fail_stale_workers(conn, runtime, window, outcomes, stale_after, now())
        for worker_id in list(window):
            worker = get_worker(conn, worker_id)
            status = worker["status"] if worker else "failed"
            if status == "running" and not _container_alive(runtime, worker, if_unknown=True):
                if update_worker_status(conn, worker_id, "failed"):
                    log.warning("Farm: worker %s exited without reporting a status", worker_id)
                    outcomes[window[worker_id]].error = "container exited without reporting"
                current = get_worker(conn, worker_id)
                status = current["status"] if current else "failed"
            if status in WORKER_TERMINAL_STATUSES:
                name = window.pop(worker_id)
                outcomes[name].status = status
                log.info("Farm: worker %s for %s finished (%s)", worker_id, name, status)

    return result
