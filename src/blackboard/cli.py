from __future__ import annotations

import contextlib
import json
import logging
import os
import sys
import time
from collections.abc import Iterator
from dataclasses import asdict
from pathlib import Path
from typing import Any

import click

from blackboard import __version__
from blackboard.config import VALID_AUTH_MODES, load_settings
from blackboard.containers import DockerCli
from blackboard.db import (
    VALID_BUG_STATUSES,
    VALID_STEP_STATUSES,
    VALID_THREAD_STATUSES,
    SessionContext,
    add_breadcrumb,
    add_bug_report,
    add_correction,
    add_git_branch,
    add_reflection,
    add_session_to_thread,
    add_step,
    connect,
    create_plan,
    create_thread,
    get_current_plan,
    get_step,
    list_breadcrumbs,
    list_plans,
    list_steps,
    list_thread_sessions,
    list_threads,
    remove_step,
    reorder_step,
    resolve_target_plan,
    resolve_thread,
    step_status_counts,
    update_bug_report_status,
    update_step_status,
    update_thread_status,
)
from blackboard.errors import BlackboardError, OrphanedContainerError
from blackboard.events import EventSubscriber
from blackboard.orchestrator import (
    SpawnOptions,
    drain_workers,
    farm,
    kill_worker,
    resolve_worker,
    spawn_worker,
)
from blackboard.paths import DEFAULT_DB_PATH
from blackboard.registry import (
    VALID_LOG_STREAMS,
    WORKER_TERMINAL_STATUSES,
    add_worker_log,
    get_worker,
    list_worker_logs,
    list_workers,
    record_heartbeat,
    update_worker_status,
)
from blackboard.todos import capture_todos

log = logging.getLogger(__name__)


class _JsonAwareGroup(click.Group):
    """Group that always outputs JSON errors with command suggestions.

    Click exceptions and domain errors (:class:`BlackboardError`) become a
    JSON object on stdout with a non-zero exit code. Unknown commands get
    fuzzy-matched suggestions via ``difflib.get_close_matches``.
    """

    def resolve_command(self, ctx, args):  # type: ignore[override]
        try:
            return super().resolve_command(ctx, args)
        except click.UsageError:
            if args:
                import difflib

                cmd_name = args[0]
                matches = difflib.get_close_matches(
                    cmd_name, self.list_commands(ctx), n=2, cutoff=0.5
                )
                hint = f" Did you mean: {', '.join(matches)}?" if matches else ""
                raise click.UsageError(f"No such command '{cmd_name}'.{hint}") from None
            raise

    def main(self, args=None, standalone_mode=True, **kwargs):  # type: ignore[override]
        try:
            rv = super().main(args=args, standalone_mode=False, **kwargs)
            if standalone_mode:
                raise SystemExit(rv or 0)
            return rv
        except click.ClickException as e:
            return self._fail({"ok": False, "error": e.format_message()}, e.exit_code, standalone_mode)
        except OrphanedContainerError as e:
            payload = {
                "ok": False,
                "error": str(e),
                "container_id": e.container_id,
                "worker_id": e.worker_id,
            }
            return self._fail(payload, 1, standalone_mode)
        except BlackboardError as e:
            return self._fail({"ok": False, "error": str(e)}, 1, standalone_mode)
        except click.Abort:
            if standalone_mode:
                click.echo("Aborted!", err=True)
                raise SystemExit(1) from None
            raise

    @staticmethod
    def _fail(payload: dict[str, Any], code: int, standalone_mode: bool) -> int:
        click.echo(json.dumps(payload))
        if standalone_mode:
            raise SystemExit(code) from None
        return code


def _emit(data: Any) -> None:
    click.echo(json.dumps(data, indent=2, default=str))


def _db_path(ctx: click.Context) -> Path:
    return ctx.obj["db_path"]


def _session(ctx: click.Context) -> SessionContext:
    return ctx.obj["session"]


@contextlib.contextmanager
def _store(ctx: click.Context) -> Iterator[Any]:
    with connect(_db_path(ctx)) as conn:
        yield conn


def _split_csv(value: str | None) -> list[str]:
    return [part.strip() for part in (value or "").split(",") if part.strip()]


@click.group(cls=_JsonAwareGroup)
@click.version_option(version=__version__)
@click.option(
    "--db",
    "db_path",
    type=click.Path(dir_okay=False, path_type=Path),
    default=None,
    help="Database file (default: $BLACKBOARD_DB_PATH or ~/.config/blackboard/blackboard.db).",
)
@click.option(
    "--thread",
    "selected_thread",
    envvar="BLACKBOARD_THREAD",
    default=None,
    help="Thread this invocation works on (default: most recently active thread).",
)
@click.option("--session", "session_id", envvar="BLACKBOARD_SESSION", default=None, hidden=True)
@click.pass_context
def main(
    ctx: click.Context, db_path: Path | None, selected_thread: str | None, session_id: str | None
):
    """Track work threads, plans and steps, and run containerized workers on them.

    \b
    Quick start:
      blackboard thread new auth-refactor       Create a thread
      blackboard plan store plan.md             Attach a plan to the current thread
      blackboard step list                      Show the plan's steps
      blackboard crumb "Wired the token cache"  Record progress
      blackboard spawn auth-refactor            Run a worker on the thread
    """
    logging.basicConfig(
        level=os.environ.get("BLACKBOARD_LOG_LEVEL", "WARNING").upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )
    ctx.ensure_object(dict)
    ctx.obj["db_path"] = db_path.expanduser() if db_path else DEFAULT_DB_PATH
    ctx.obj["session"] = SessionContext(selected_thread_id=selected_thread, session_id=session_id)


# -- threads --


@main.group()
def thread():
    """Create, inspect and change the status of threads."""


@thread.command("new")
@click.argument("name")
@click.option("--paused", is_flag=True, help="Create the thread paused.")
@click.pass_context
def thread_new(ctx: click.Context, name: str, paused: bool):
    """Create a thread named NAME (kebab-case)."""
    with _store(ctx) as conn:
        row = create_thread(conn, name, status="paused" if paused else "active")
        session_id = _session(ctx).session_id
        if session_id:
            add_session_to_thread(conn, row["id"], session_id)
    _emit(row)


@thread.command("list")
@click.option("--status", type=click.Choice(sorted(VALID_THREAD_STATUSES)), default=None)
@click.pass_context
def thread_list(ctx: click.Context, status: str | None):
    """List threads, most recently active first."""
    with _store(ctx) as conn:
        threads = list_threads(conn, status)
    _emit(threads)


@thread.command("status")
@click.argument("name", required=False)
@click.option("--crumbs", default=5, show_default=True, help="Recent breadcrumbs to include.")
@click.pass_context
def thread_status(ctx: click.Context, name: str | None, crumbs: int):
    """Show a thread with its current plan, steps and recent breadcrumbs."""
    with _store(ctx) as conn:
        row = resolve_thread(conn, _session(ctx), name)
        if row is None:
            raise click.ClickException(
                f"Thread '{name}' not found." if name else "No active thread."
            )
        plan = get_current_plan(conn, row["id"])
        output: dict[str, Any] = dict(row)
        output["sessions"] = list_thread_sessions(conn, row["id"])
        output["plan_count"] = len(list_plans(conn, row["id"]))
        output["plan"] = plan
        if plan is not None:
            output["steps"] = list_steps(conn, plan["id"])
            output["step_counts"] = step_status_counts(conn, plan["id"])
            output["breadcrumbs"] = list_breadcrumbs(conn, plan["id"], limit=crumbs)
    _emit(output)


@thread.command("update")
@click.argument("name")
@click.option("--status", type=click.Choice(sorted(VALID_THREAD_STATUSES)), default=None)
@click.option("--branch", default=None, help="Record a git branch touched by this thread.")
@click.pass_context
def thread_update(ctx: click.Context, name: str, status: str | None, branch: str | None):
    """Change a thread's status or record a branch."""
    if status is None and branch is None:
        raise click.UsageError("Nothing to update: pass --status and/or --branch.")
    with _store(ctx) as conn:
        row = resolve_thread(conn, _session(ctx), name)
        if row is None:
            raise click.ClickException(f"Thread '{name}' not found.")
        if status is not None:
            update_thread_status(conn, row["id"], status)
        if branch is not None:
            add_git_branch(conn, row["id"], branch)
        row = resolve_thread(conn, _session(ctx), row["id"])
    _emit(row)


# -- plans --


@main.group()
def plan():
    """Store plans for threads."""


@plan.command("store")
@click.argument("source", type=click.File("r"), default="-")
@click.option("--description", default=None, help="Override the derived description.")
@click.pass_context
def plan_store(ctx: click.Context, source, description: str | None):
    """Store the plan markdown in SOURCE (default stdin) as the thread's current plan."""
    markdown = source.read()
    session = _session(ctx)
    with _store(ctx) as conn:
        row = resolve_thread(conn, session)
        if row is None:
            raise click.ClickException("No active thread. Create one with 'blackboard thread new'.")
        stored = create_plan(
            conn, row["id"], markdown, description=description, session_id=session.session_id
        )
    _emit(stored)


# -- steps --


@main.group()
def step():
    """Inspect and edit the steps of a plan."""


_TARGET_OPTION = click.option(
    "--target", "-t", default=None, help="Thread name or plan id (default: current thread)."
)


@step.command("list")
@_TARGET_OPTION
@click.pass_context
def step_list(ctx: click.Context, target: str | None):
    """List steps of the target plan in order."""
    with _store(ctx) as conn:
        _, target_plan = resolve_target_plan(conn, _session(ctx), target)
        steps = list_steps(conn, target_plan["id"])
    _emit({"plan_id": target_plan["id"], "steps": steps})


@step.command("add")
@click.argument("description")
@click.option("--at", "position", type=int, default=None, help="1-based position (default: end).")
@_TARGET_OPTION
@click.pass_context
def step_add(ctx: click.Context, description: str, position: int | None, target: str | None):
    """Insert a step, shifting later steps down."""
    with _store(ctx) as conn:
        _, target_plan = resolve_target_plan(conn, _session(ctx), target)
        row = add_step(conn, target_plan["id"], description, position=position)
    _emit(row)


@step.command("status")
@click.argument("order", type=int)
@click.argument("status", type=click.Choice(sorted(VALID_STEP_STATUSES)))
@_TARGET_OPTION
@click.pass_context
def step_status(ctx: click.Context, order: int, status: str, target: str | None):
    """Set the status of the step at ORDER."""
    with _store(ctx) as conn:
        _, target_plan = resolve_target_plan(conn, _session(ctx), target)
        row = update_step_status(conn, target_plan["id"], order, status)
    _emit(row)


@step.command("remove")
@click.argument("order", type=int)
@click.option("--force", is_flag=True, help="Allow removing a completed step.")
@_TARGET_OPTION
@click.pass_context
def step_remove(ctx: click.Context, order: int, force: bool, target: str | None):
    """Remove the step at ORDER and renumber the rest."""
    with _store(ctx) as conn:
        _, target_plan = resolve_target_plan(conn, _session(ctx), target)
        removed = remove_step(conn, target_plan["id"], order, force=force)
        remaining = list_steps(conn, target_plan["id"])
    _emit({"removed": removed, "steps": remaining})


@step.command("reorder")
@click.argument("from_order", type=int)
@click.argument("to_order", type=int)
@_TARGET_OPTION
@click.pass_context
def step_reorder(ctx: click.Context, from_order: int, to_order: int, target: str | None):
    """Move the step at FROM_ORDER to TO_ORDER."""
    with _store(ctx) as conn:
        _, target_plan = resolve_target_plan(conn, _session(ctx), target)
        result = reorder_step(conn, target_plan["id"], from_order, to_order)
        steps = list_steps(conn, target_plan["id"])
    _emit({"moved": result.moved, "message": result.message, "steps": steps})


@main.command("todos")
@_TARGET_OPTION
@click.pass_context
def todos(ctx: click.Context, target: str | None):
    """Merge a JSON todo list from stdin into the target plan's steps.

    Accepts a JSON array of todo objects or an object with a ``todos`` array.
    """
    try:
        payload = json.loads(sys.stdin.read() or "[]")
    except json.JSONDecodeError as e:
        raise click.ClickException(f"Invalid JSON on stdin: {e}") from None
    items = payload.get("todos", []) if isinstance(payload, dict) else payload
    if not isinstance(items, list):
        raise click.ClickException("Expected a JSON array of todo items.")
    with _store(ctx) as conn:
        result = capture_todos(conn, _session(ctx), items, thread_or_plan=target)
    _emit(
        {
            "thread": result.thread,
            "plan_id": result.plan_id,
            "plan_status": result.plan_status,
            **asdict(result.merge),
        }
    )


# -- progress records --


@main.command()
@click.argument("summary")
@click.option("--step", "step_order", type=int, default=None, help="Attach to the step at this position.")
@click.option("--agent", "agent_type", default=None, help="Agent type that did the work.")
@click.option("--files", default=None, help="Comma-separated files touched.")
@click.option("--issues", default=None)
@click.option("--next", "next_context", default=None, help="Context for whoever continues.")
@_TARGET_OPTION
@click.pass_context
def crumb(
    ctx: click.Context,
    summary: str,
    step_order: int | None,
    agent_type: str | None,
    files: str | None,
    issues: str | None,
    next_context: str | None,
    target: str | None,
):
    """Record a breadcrumb on the target plan."""
    with _store(ctx) as conn:
        _, target_plan = resolve_target_plan(conn, _session(ctx), target)
        step_id = None
        if step_order is not None:
            found = get_step(conn, target_plan["id"], step_order)
            if found is None:
                raise click.ClickException(f"No step at position {step_order}.")
            step_id = found["id"]
        crumb_id = add_breadcrumb(
            conn,
            target_plan["id"],
            summary,
            step_id=step_id,
            agent_type=agent_type,
            files_touched=_split_csv(files),
            issues=issues,
            next_context=next_context,
        )
    _emit({"id": crumb_id, "plan_id": target_plan["id"]})


@main.command()
@click.argument("mistake")
@click.option("--fix", "correction", required=True, help="What should have been done.")
@click.option("--pattern", default=None, help="The general pattern to watch for.")
@click.option("--tags", default=None, help="Comma-separated tags.")
@_TARGET_OPTION
@click.pass_context
def oops(
    ctx: click.Context,
    mistake: str,
    correction: str,
    pattern: str | None,
    tags: str | None,
    target: str | None,
):
    """Record a mistake and its correction."""
    with _store(ctx) as conn:
        _, target_plan = resolve_target_plan(conn, _session(ctx), target)
        correction_id = add_correction(
            conn, target_plan["id"], mistake, correction, pattern=pattern, tags=_split_csv(tags)
        )
    _emit({"id": correction_id, "plan_id": target_plan["id"]})


@main.command("bug-report")
@click.argument("title")
@click.option("--steps", "repro_steps", default=None, help="Reproduction steps.")
@click.option("--evidence", default=None)
@click.option("--resolve", "resolve_id", default=None, help="Set the status of an existing report.")
@click.option("--status", type=click.Choice(sorted(VALID_BUG_STATUSES)), default="resolved")
@_TARGET_OPTION
@click.pass_context
def bug_report(
    ctx: click.Context,
    title: str,
    repro_steps: str | None,
    evidence: str | None,
    resolve_id: str | None,
    status: str,
    target: str | None,
):
    """File a bug report against the target plan."""
    with _store(ctx) as conn:
        if resolve_id:
            if not update_bug_report_status(conn, resolve_id, status):
                raise click.ClickException(f"Bug report '{resolve_id}' not found.")
            _emit({"id": resolve_id, "status": status})
            return
        if not repro_steps:
            raise click.UsageError("--steps is required when filing a report.")
        _, target_plan = resolve_target_plan(conn, _session(ctx), target)
        bug_id = add_bug_report(
            conn, title, repro_steps, plan_id=target_plan["id"], evidence=evidence
        )
    _emit({"id": bug_id, "plan_id": target_plan["id"], "status": "open"})


@main.command()
@click.option("--worked", default=None, help="What worked.")
@click.option("--failed", default=None, help="What failed.")
@click.option("--patterns", default=None, help="Patterns noticed.")
@_TARGET_OPTION
@click.pass_context
def reflect(
    ctx: click.Context,
    worked: str | None,
    failed: str | None,
    patterns: str | None,
    target: str | None,
):
    """Record a reflection on the target plan."""
    with _store(ctx) as conn:
        _, target_plan = resolve_target_plan(conn, _session(ctx), target)
        reflection_id = add_reflection(
            conn, target_plan["id"], what_worked=worked, what_failed=failed, patterns_noticed=patterns
        )
    _emit({"id": reflection_id, "plan_id": target_plan["id"]})


# -- worker-side commands (called from inside containers) --


@main.group()
def worker():
    """Heartbeat, status and log writes made by a running worker."""


@worker.command("heartbeat")
@click.argument("worker_id")
@click.option("--iteration", type=int, default=None)
@click.pass_context
def worker_heartbeat(ctx: click.Context, worker_id: str, iteration: int | None):
    """Record that WORKER_ID is alive."""
    with _store(ctx) as conn:
        accepted = record_heartbeat(conn, worker_id, iteration=iteration)
    _emit({"id": worker_id, "accepted": accepted})


@worker.command("finish")
@click.argument("worker_id")
@click.argument("status", type=click.Choice(sorted(WORKER_TERMINAL_STATUSES)))
@click.pass_context
def worker_finish(ctx: click.Context, worker_id: str, status: str):
    """Move WORKER_ID from running to a terminal STATUS."""
    with _store(ctx) as conn:
        changed = update_worker_status(conn, worker_id, status)
        row = get_worker(conn, worker_id)
    if row is None:
        raise click.ClickException(f"Worker '{worker_id}' not found.")
    _emit({"id": worker_id, "changed": changed, "status": row["status"]})


@worker.command("log")
@click.argument("worker_id")
@click.argument("line")
@click.option("--stream", type=click.Choice(sorted(VALID_LOG_STREAMS)), default="stdout")
@click.option("--iteration", type=int, default=0)
@click.pass_context
def worker_log(ctx: click.Context, worker_id: str, line: str, stream: str, iteration: int):
    """Append a log line for WORKER_ID."""
    with _store(ctx) as conn:
        log_id = add_worker_log(conn, worker_id, line, stream=stream, iteration=iteration)
    _emit({"id": log_id})


# -- orchestration --


def _spawn_options(ctx: click.Context, **overrides: Any) -> SpawnOptions:
    repo_dir = overrides.pop("repo_dir", None) or Path.cwd()
    return SpawnOptions.from_settings(
        load_settings(),
        store_dir=_db_path(ctx).parent,
        repo_dir=Path(repo_dir).resolve(),
        **overrides,
    )


_SPAWN_OPTIONS = [
    click.option("--image", default=None, help="Worker image (default from config.toml)."),
    click.option("--build", is_flag=True, help="Build the image before running."),
    click.option(
        "--dockerfile",
        type=click.Path(exists=True, dir_okay=False, path_type=Path),
        default=None,
        help="Dockerfile for --build (default: REPO/Dockerfile.worker).",
    ),
    click.option("--auth", "auth_mode", type=click.Choice(VALID_AUTH_MODES), default=None),
    click.option("--max-iterations", type=int, default=None),
    click.option("--memory", default=None, help="Container memory limit, e.g. 512m."),
    click.option(
        "--repo",
        "repo_dir",
        type=click.Path(exists=True, file_okay=False, path_type=Path),
        default=None,
        help="Repository mounted into the worker (default: current directory).",
    ),
]


def _with_spawn_options(fn):
    for option in reversed(_SPAWN_OPTIONS):
        fn = option(fn)
    return fn


@main.command()
@click.argument("thread_name")
@_with_spawn_options
@click.pass_context
def spawn(ctx: click.Context, thread_name: str, **spawn_kwargs: Any):
    """Start a worker container on THREAD_NAME."""
    options = _spawn_options(ctx, **spawn_kwargs)
    with _store(ctx) as conn:
        result = spawn_worker(conn, DockerCli(), thread_name, options)
    _emit(asdict(result))


@main.command()
@click.argument("target")
@click.pass_context
def kill(ctx: click.Context, target: str):
    """Kill a worker by id, thread name or running-worker id prefix."""
    with _store(ctx) as conn:
        result = kill_worker(conn, DockerCli(), target)
    _emit(asdict(result))


@main.command()
@click.option("--grace", "grace_period", type=float, default=None, help="Seconds to wait (default 30).")
@click.option("--force", is_flag=True, help="Kill immediately without a grace period.")
@click.pass_context
def drain(ctx: click.Context, grace_period: float | None, force: bool):
    """Stop every running worker, gracefully then forcefully."""
    settings = load_settings()
    with _store(ctx) as conn:
        result = drain_workers(
            conn,
            DockerCli(),
            grace_period=settings.grace_period if grace_period is None else grace_period,
            force=force,
        )
    _emit(
        {
            "graceful": result.graceful,
            "forced": result.forced,
            "workers": [asdict(o) for o in result.outcomes],
        }
    )


@main.command("farm")
@click.argument("thread_names", nargs=-1)
@click.option("--concurrency", "-c", type=int, default=None, help="Maximum simultaneous workers.")
@click.option("--poll", "poll_interval", type=float, default=None, help="Seconds between polls.")
@_with_spawn_options
@click.pass_context
def farm_cmd(
    ctx: click.Context,
    thread_names: tuple[str, ...],
    concurrency: int | None,
    poll_interval: float | None,
    **spawn_kwargs: Any,
):
    """Run workers over THREAD_NAMES (default: active threads with pending steps)."""
    settings = load_settings()
    options = _spawn_options(ctx, **spawn_kwargs)
    with _store(ctx) as conn:
        result = farm(
            conn,
            DockerCli(),
            list(thread_names) or None,
            options,
            concurrency=settings.concurrency if concurrency is None else concurrency,
            poll_interval=settings.poll_interval if poll_interval is None else poll_interval,
            stale_after=settings.stale_after,
        )
    _emit(
        {
            "completed": result.completed,
            "failed": result.failed,
            "max_concurrent": result.max_concurrent,
            "threads": [asdict(o) for o in result.outcomes],
        }
    )


@main.command()
@click.option("--all", "show_all", is_flag=True, help="Include finished workers.")
@click.pass_context
def workers(ctx: click.Context, show_all: bool):
    """List running workers (or all with --all)."""
    with _store(ctx) as conn:
        rows = list_workers(conn, include_finished=show_all)
    _emit(rows)


@main.command()
@click.argument("target")
@click.option("--follow", "-f", is_flag=True, help="Keep polling for new lines.")
@click.option("--interval", type=float, default=1.0, show_default=True)
@click.option("--tail", type=int, default=None, help="Only the last N lines.")
@click.pass_context
def logs(ctx: click.Context, target: str, follow: bool, interval: float, tail: int | None):
    """Print log lines of a worker (id, prefix or thread name)."""
    with _store(ctx) as conn:
        found = resolve_worker(conn, target)
        lines = list_worker_logs(conn, found["id"])
        last_id = lines[-1]["id"] if lines else 0
        if tail is not None:
            lines = lines[-tail:] if tail > 0 else []
        for entry in lines:
            click.echo(json.dumps(entry))
        while follow:
            current = get_worker(conn, found["id"])
            for entry in list_worker_logs(conn, found["id"], after_id=last_id):
                click.echo(json.dumps(entry))
                last_id = entry["id"]
            if current is None or current["status"] in WORKER_TERMINAL_STATUSES:
                break
            time.sleep(interval)


@main.command()
@click.option("--thread", "thread_name", default=None, help="Only events for this thread.")
@click.option("--worker", "worker_id", default=None, help="Only events for this worker id.")
@click.option("--from-start", is_flag=True, help="Replay the retained stream first.")
@click.option("--timeout", type=float, default=30.0, show_default=True)
@click.option("--count", type=int, default=None, help="Stop after N events.")
def events(
    thread_name: str | None,
    worker_id: str | None,
    from_start: bool,
    timeout: float,
    count: int | None,
):
    """Print lifecycle events from Redis as JSON lines until interrupted."""
    subscriber = EventSubscriber(
        thread=thread_name, worker_id=worker_id, timeout=timeout, cursor="0" if from_start else "$"
    )
    seen = 0
    for event in subscriber:
        if event is None:
            continue
        click.echo(json.dumps(event))
        seen += 1
        if count is not None and seen >= count:
            break


# -- doctor --


@main.command()
@click.option(
    "--fix",
    is_flag=True,
    help="Fail stale workers and remove exited containers of finished workers.",
)
@click.pass_context
def doctor(ctx: click.Context, fix: bool):
    """Run health checks on blackboard infrastructure."""
    from blackboard.doctor import run_doctor

    report = run_doctor(_db_path(ctx), stale_after=load_settings().stale_after, fix=fix)
    click.echo(json.dumps(report))
    if report["status"] == "fail":
        raise click.ClickException("Doctor checks failed.")
