"""Health checks and optional remediation for blackboard infrastructure."""

from __future__ import annotations

import logging
import sqlite3
import subprocess
from pathlib import Path
from typing import Literal, TypedDict

from redis.exceptions import RedisError

from blackboard.containers import DockerCli
from blackboard.db import connect
from blackboard.errors import StopError
from blackboard.events import REDIS_URL, get_redis
from blackboard.paths import DEFAULT_DB_PATH
from blackboard.registry import (
    WORKER_TERMINAL_STATUSES,
    get_active_workers,
    get_stale_workers,
    get_worker,
    update_worker_status,
)

log = logging.getLogger(__name__)

Status = Literal["pass", "warning", "fail"]
_STATUS_RANK: dict[Status, int] = {"pass": 0, "warning": 1, "fail": 2}


class _CheckFindingRequired(TypedDict):
    status: Status
    message: str


class CheckFinding(_CheckFindingRequired, total=False):
    details: dict[str, object]


class CheckReport(TypedDict):
    name: str
    status: Status
    summary: str
    findings: list[CheckFinding]


class _DoctorReportRequired(TypedDict):
    status: Status
    summary: str
    checks: list[CheckReport]


class DoctorReport(_DoctorReportRequired, total=False):
    fixed: dict[str, int]


def run_doctor(
    db_path: Path | None = None,
    *,
    runtime: DockerCli | None = None,
    stale_after: float = 120.0,
    fix: bool = False,
) -> DoctorReport:
    """Run all health checks.

    With *fix*, stale workers are marked failed and their containers removed,
    then exited containers of finished workers are removed. Running
    containers with no worker record are only reported.
    """
    resolved_db_path = Path(db_path).expanduser() if db_path is not None else DEFAULT_DB_PATH
    runtime = runtime or DockerCli()
    fixed: dict[str, int] = {}
    if fix:
        fixed["stale_workers"] = _fix_stale_workers(resolved_db_path, runtime, stale_after)
        fixed["exited_containers"] = _fix_exited_containers(resolved_db_path, runtime)

    checks = [
        _check_sqlite_integrity(resolved_db_path),
        _check_docker(runtime),
        _check_redis(),
        _check_stale_workers(resolved_db_path, stale_after),
        _check_orphaned_containers(resolved_db_path, runtime),
    ]
    report: DoctorReport = {
        "status": _worst_status([check["status"] for check in checks]),
        "summary": _report_summary(checks),
        "checks": checks,
    }
    if fix:
        report["fixed"] = fixed
    return report


def _worst_status(statuses: list[Status]) -> Status:
    if not statuses:
        return "pass"
    return max(statuses, key=lambda s: _STATUS_RANK[s])


def _report_summary(checks: list[CheckReport]) -> str:
    counts: dict[Status, int] = {"pass": 0, "warning": 0, "fail": 0}
    for check in checks:
        counts[check["status"]] += 1
    return f"{counts['pass']} checks passed, {counts['warning']} warnings, {counts['fail']} failed."


def _check_sqlite_integrity(db_path: Path) -> CheckReport:
    try:
        with connect(db_path) as conn:
            rows = conn.execute("PRAGMA integrity_check").fetchall()
    except Exception as exc:
        return {
            "name": "sqlite",
            "status": "fail",
            "summary": "SQLite is unavailable.",
            "findings": [{"status": "fail", "message": f"Failed to check {db_path}: {exc}"}],
        }
    messages = [str(row[0]) for row in rows if row]
    if messages == ["ok"]:
        return {
            "name": "sqlite",
            "status": "pass",
            "summary": "SQLite integrity check passed.",
            "findings": [{"status": "pass", "message": f"Database integrity is OK: {db_path}"}],
        }
    return {
        "name": "sqlite",
        "status": "fail",
        "summary": f"SQLite integrity check failed with {len(messages)} issue(s).",
        "findings": [
            {"status": "fail", "message": message, "details": {"database": str(db_path)}}
            for message in messages
        ],
    }


def _check_docker(runtime: DockerCli) -> CheckReport:
    if runtime.is_available():
        return {
            "name": "docker",
            "status": "pass",
            "summary": "Docker daemon reachable.",
            "findings": [],
        }
    # Only workers need docker; threads and steps work without it.
    return {
        "name": "docker",
        "status": "warning",
        "summary": "Docker is unavailable; spawn, drain and farm will not work.",
        "findings": [
            {"status": "warning", "message": f"'{runtime.binary} info' failed or not installed"}
        ],
    }


def _check_redis() -> CheckReport:
    try:
        get_redis().ping()
    except RedisError as exc:
        return {
            "name": "redis",
            "status": "warning",
            "summary": "Redis is unavailable; lifecycle events are not published.",
            "findings": [
                {"status": "warning", "message": f"Failed to reach {REDIS_URL}: {exc}"}
            ],
        }
    return {"name": "redis", "status": "pass", "summary": "Redis reachable.", "findings": []}


def _check_stale_workers(db_path: Path, stale_after: float) -> CheckReport:
    try:
        with connect(db_path) as conn:
            stale = get_stale_workers(conn, stale_after)
    except sqlite3.Error as exc:
        return {
            "name": "stale_workers",
            "status": "fail",
            "summary": "Could not read workers.",
            "findings": [{"status": "fail", "message": str(exc)}],
        }
    if not stale:
        return {
            "name": "stale_workers",
            "status": "pass",
            "summary": "No stale workers.",
            "findings": [],
        }
    return {
        "name": "stale_workers",
        "status": "warning",
        "summary": f"{len(stale)} running worker(s) missed heartbeats for over {stale_after:g}s.",
        "findings": [
            {
                "status": "warning",
                "message": f"Worker {w['id']} ({w['thread_name']}) last seen {w['last_heartbeat']}",
                "details": {"worker_id": w["id"], "container_id": w["container_id"]},
            }
            for w in stale
        ],
    }


def _check_orphaned_containers(db_path: Path, runtime: DockerCli) -> CheckReport:
    try:
        containers = runtime.list_managed()
    except (OSError, subprocess.CalledProcessError, subprocess.TimeoutExpired) as exc:
        return {
            "name": "containers",
            "status": "warning",
            "summary": "Could not list worker containers.",
            "findings": [{"status": "warning", "message": str(exc)}],
        }
    try:
        with connect(db_path) as conn:
            running_ids = {w["id"] for w in get_active_workers(conn)}
    except sqlite3.Error as exc:
        return {
            "name": "containers",
            "status": "fail",
            "summary": "Could not read workers.",
            "findings": [{"status": "fail", "message": str(exc)}],
        }
    orphans = [c for c in containers if c.state == "running" and c.worker_id not in running_ids]
    if not orphans:
        return {
            "name": "containers",
            "status": "pass",
            "summary": f"{len(containers)} managed container(s), none orphaned.",
            "findings": [],
        }
    return {
        "name": "containers",
        "status": "warning",
        "summary": f"{len(orphans)} running container(s) have no running worker record.",
        "findings": [
            {
                "status": "warning",
                "message": (
                    f"Container {c.container_id[:12]} (worker {c.worker_id}, "
                    f"thread {c.thread_name}) is orphaned"
                ),
                "details": {"container_id": c.container_id, "worker_id": c.worker_id},
            }
            for c in orphans
        ],
    }


def _remove_container(runtime: DockerCli, container_id: str) -> bool:
    try:
        runtime.remove(container_id)
    except StopError as exc:
        log.warning("Could not remove container %s: %s", container_id[:12], exc)
        return False
    return True


def _fix_stale_workers(db_path: Path, runtime: DockerCli, stale_after: float) -> int:
    fixed = 0
    try:
        with connect(db_path) as conn:
            for w in get_stale_workers(conn, stale_after):
                if update_worker_status(conn, w["id"], "failed"):
                    fixed += 1
                    _remove_container(runtime, w["container_id"])
    except sqlite3.Error:
        log.warning("Could not fix stale workers in %s", db_path, exc_info=True)
    return fixed


def _fix_exited_containers(db_path: Path, runtime: DockerCli) -> int:
    try:
        containers = runtime.list_managed()
    except (OSError, subprocess.CalledProcessError, subprocess.TimeoutExpired) as exc:
        log.warning("Could not list worker containers: %s", exc)
        return 0
    removable = []
    try:
        with connect(db_path) as conn:
            for c in containers:
                if c.state == "running":
                    continue
                worker = get_worker(conn, c.worker_id)
                if worker is not None and worker["status"] in WORKER_TERMINAL_STATUSES:
                    removable.append(c.container_id)
    except sqlite3.Error:
        log.warning("Could not read workers in %s", db_path, exc_info=True)
        return 0
    return sum(1 for container_id in removable if _remove_container(runtime, container_id))
