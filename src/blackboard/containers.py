"""Container runtime adapter backed by the ``docker`` CLI.

The orchestrator only depends on the :class:`ContainerRuntime` protocol, so
tests substitute an in-memory runtime. :class:`DockerCli` raises domain
errors (BuildError, LaunchError, StopError) carrying docker's stderr rather
than ``CalledProcessError``.
"""

from __future__ import annotations

import logging
import os
import subprocess
from collections.abc import Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Protocol

from blackboard.errors import BuildError, LaunchError, StopError
from blackboard.paths import CONTAINER_DB_DIR, CONTAINER_REPO_DIR

log = logging.getLogger(__name__)

LABEL_MANAGED = "blackboard.managed"
LABEL_THREAD = "blackboard.thread"
LABEL_WORKER = "blackboard.worker-id"
CONTAINER_NAME_PREFIX = "blackboard-worker-"

# Credential variable per auth mode; "config" mounts a directory instead.
CREDENTIAL_ENV = {
    "env": "ANTHROPIC_API_KEY",
    "oauth": "CLAUDE_CODE_OAUTH_TOKEN",
}
CONTAINER_CONFIG_DIR = "/home/worker/.claude"

_DOCKER_TIMEOUT_SECONDS = 60
_BUILD_TIMEOUT_SECONDS = 1800


@dataclass
class RunOptions:
    image: str
    thread_name: str
    worker_id: str
    store_dir: Path
    repo_dir: Path
    auth_mode: str
    max_iterations: int
    memory: str
    credential: str | None = None
    config_dir: Path | None = None
    extra_labels: dict[str, str] = field(default_factory=dict)


@dataclass
class ManagedContainer:
    container_id: str
    worker_id: str
    thread_name: str
    state: str


class ContainerRuntime(Protocol):
    def is_available(self) -> bool: ...

    def build(self, tag: str, context_path: Path, dockerfile_path: Path) -> None: ...

    def run(self, options: RunOptions) -> str: ...

    def stop(self, container_id: str, *, graceful: bool) -> None: ...

    def is_running(self, container_id: str) -> bool: ...

    def remove(self, container_id: str) -> None: ...


def container_name(worker_id: str) -> str:
    return f"{CONTAINER_NAME_PREFIX}{worker_id}"


def build_run_args(options: RunOptions) -> list[str]:
    """Arguments after ``docker`` for launching one worker.

    Credentials are passed as ``-e NAME`` without a value so they are read
    from the client environment and never appear on the command line.
    """
    args = [
        "run",
        "--detach",
        "--name",
        container_name(options.worker_id),
        "--label",
        f"{LABEL_MANAGED}=true",
        "--label",
        f"{LABEL_THREAD}={options.thread_name}",
        "--label",
        f"{LABEL_WORKER}={options.worker_id}",
    ]
    for key, value in sorted(options.extra_labels.items()):
        args += ["--label", f"{key}={value}"]
    args += [
        "--memory",
        options.memory,
        "-v",
        f"{options.store_dir}:{CONTAINER_DB_DIR}:rw",
        "-v",
        f"{options.repo_dir}:{CONTAINER_REPO_DIR}:rw",
        "-e",
        f"THREAD_NAME={options.thread_name}",
        "-e",
        f"WORKER_ID={options.worker_id}",
        "-e",
        f"MAX_ITERATIONS={options.max_iterations}",
    ]
    if options.auth_mode in CREDENTIAL_ENV:
        args += ["-e", CREDENTIAL_ENV[options.auth_mode]]
    elif options.auth_mode == "config":
        config_dir = options.config_dir or Path.home() / ".claude"
        args += ["-v", f"{config_dir}:{CONTAINER_CONFIG_DIR}:ro"]
    else:
        raise LaunchError(f"Unknown auth mode '{options.auth_mode}'")
    args.append(options.image)
    return args


class DockerCli:
    """:class:`ContainerRuntime` implemented with ``subprocess`` calls to docker."""

    def __init__(self, binary: str = "docker") -> None:
        self.binary = binary

    def _run(
        self,
        args: Sequence[str],
        *,
        timeout: float = _DOCKER_TIMEOUT_SECONDS,
        env: dict[str, str] | None = None,
    ) -> subprocess.CompletedProcess[str]:
        return subprocess.run(
            [self.binary, *args],
            check=True,
            capture_output=True,
            text=True,
            timeout=timeout,
            env=env,
        )

    def is_available(self) -> bool:
        try:
            self._run(["info", "--format", "{{.ID}}"], timeout=15)
        except (OSError, subprocess.CalledProcessError, subprocess.TimeoutExpired):
            return False
        return True

    def build(self, tag: str, context_path: Path, dockerfile_path: Path) -> None:
        log.info("Building image %s from %s", tag, dockerfile_path)
        try:
            self._run(
                ["build", "-t", tag, "-f", str(dockerfile_path), str(context_path)],
                timeout=_BUILD_TIMEOUT_SECONDS,
            )
        except subprocess.CalledProcessError as e:
            raise BuildError(f"docker build failed: {e.stderr.strip()}") from None
        except subprocess.TimeoutExpired:
            raise BuildError(f"docker build timed out after {_BUILD_TIMEOUT_SECONDS}s") from None
        except OSError as e:
            raise BuildError(f"Could not run {self.binary}: {e}") from None

    def run(self, options: RunOptions) -> str:
        env = None
        var = CREDENTIAL_ENV.get(options.auth_mode)
        if var is not None:
            if not options.credential:
                raise LaunchError(f"Auth mode '{options.auth_mode}' needs {var}")
            env = {**os.environ, var: options.credential}
        try:
            result = self._run(build_run_args(options), env=env)
        except subprocess.CalledProcessError as e:
            raise LaunchError(f"docker run failed: {e.stderr.strip()}") from None
        except subprocess.TimeoutExpired:
            raise LaunchError("docker run timed out") from None
        except OSError as e:
            raise LaunchError(f"Could not run {self.binary}: {e}") from None
        container_id = result.stdout.strip()
        if not container_id:
            raise LaunchError("docker run returned no container id")
        return container_id

    def stop(self, container_id: str, *, graceful: bool) -> None:
        """Send SIGTERM when *graceful*, otherwise kill outright. Does not wait."""
        args = ["kill", "--signal", "SIGTERM", container_id] if graceful else ["kill", container_id]
        try:
            self._run(args)
        except subprocess.CalledProcessError as e:
            raise StopError(f"docker kill {container_id[:12]} failed: {e.stderr.strip()}") from None
        except (OSError, subprocess.TimeoutExpired) as e:
            raise StopError(f"docker kill {container_id[:12]} failed: {e}") from None

    def is_running(self, container_id: str) -> bool:
        try:
            result = self._run(["inspect", "--format", "{{.State.Running}}", container_id])
        except subprocess.CalledProcessError:
            # No such container: it is certainly not running.
            return False
        except (OSError, subprocess.TimeoutExpired) as e:
            raise StopError(f"docker inspect {container_id[:12]} failed: {e}") from None
        return result.stdout.strip() == "true"

    def remove(self, container_id: str) -> None:
        """Delete the container, killing it first if it is still up."""
        try:
            self._run(["rm", "-f", container_id])
        except subprocess.CalledProcessError as e:
            raise StopError(f"docker rm {container_id[:12]} failed: {e.stderr.strip()}") from None
        except (OSError, subprocess.TimeoutExpired) as e:
            raise StopError(f"docker rm {container_id[:12]} failed: {e}") from None

    def list_managed(self) -> list[ManagedContainer]:
        """Every container carrying the managed label, running or not."""
        fmt = (
            "{{.ID}}\t{{.Label \"" + LABEL_WORKER + "\"}}\t"
            "{{.Label \"" + LABEL_THREAD + "\"}}\t{{.State}}"
        )
        result = self._run(
            ["ps", "-a", "--filter", f"label={LABEL_MANAGED}=true", "--format", fmt]
        )
        containers: list[ManagedContainer] = []
        for line in result.stdout.splitlines():
            parts = line.split("\t")
            if len(parts) != 4:
                log.debug("Unexpected docker ps line: %r", line)
                continue
            containers.append(ManagedContainer(*parts))
        return containers
