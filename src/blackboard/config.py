"""Worker settings from ``config.toml`` and environment overrides.

The file lives at ``~/.config/blackboard/config.toml`` (or under
``$BLACKBOARD_CONFIG_DIR``)::

    [worker]
    image = "blackboard-worker:latest"
    memory = "1g"
    max_iterations = 80
    auth_mode = "config"
    grace_period = 30
    poll_interval = 2
    concurrency = 3
    stale_after = 120

Every key is optional. Environment variables win over the file:
``BLACKBOARD_WORKER_IMAGE``, ``BLACKBOARD_WORKER_MEMORY``,
``BLACKBOARD_MAX_ITERATIONS`` and ``BLACKBOARD_AUTH_MODE``.
"""

from __future__ import annotations

import dataclasses
import logging
import os
import tomllib
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from blackboard.paths import CONFIG_FILE

log = logging.getLogger(__name__)

VALID_AUTH_MODES = ("env", "config", "oauth")

_ENV_OVERRIDES = {
    "BLACKBOARD_WORKER_IMAGE": "image",
    "BLACKBOARD_WORKER_MEMORY": "memory",
    "BLACKBOARD_MAX_ITERATIONS": "max_iterations",
    "BLACKBOARD_AUTH_MODE": "auth_mode",
}


@dataclass(frozen=True)
class WorkerSettings:
    image: str = "blackboard-worker:latest"
    memory: str = "512m"
    max_iterations: int = 50
    auth_mode: str = "env"
    grace_period: float = 30.0
    poll_interval: float = 2.0
    concurrency: int = 3
    stale_after: float = 120.0


def _coerce(field: dataclasses.Field, value: Any) -> Any:
    if field.type in ("int", int):
        return int(value)
    if field.type in ("float", float):
        return float(value)
    return str(value)


def _read_worker_section(path: Path) -> dict[str, Any]:
    if not path.exists():
        return {}
    try:
        with open(path, "rb") as f:
            data = tomllib.load(f)
    except (OSError, tomllib.TOMLDecodeError):
        log.warning("Failed to parse %s", path, exc_info=True)
        return {}
    section = data.get("worker", {})
    if not isinstance(section, dict):
        log.warning("%s: [worker] must be a table, ignoring", path)
        return {}
    return section


def load_settings(
    path: Path | None = None, env: Mapping[str, str] | None = None
) -> WorkerSettings:
    """Merge defaults, the ``[worker]`` table and environment overrides.

    Unknown keys and values that fail to convert are logged and skipped so a
    typo in the config file never blocks a spawn.
    """
    path = CONFIG_FILE if path is None else path
    env = os.environ if env is None else env

    raw = _read_worker_section(path)
    for var, key in _ENV_OVERRIDES.items():
        if env.get(var):
            raw[key] = env[var]

    fields = {f.name: f for f in dataclasses.fields(WorkerSettings)}
    values: dict[str, Any] = {}
    for key, value in raw.items():
        field = fields.get(key)
        if field is None:
            log.warning("Unknown worker setting '%s' ignored", key)
            continue
        try:
            values[key] = _coerce(field, value)
        except (TypeError, ValueError):
            log.warning("Invalid value for worker setting '%s': %r", key, value)

    if values.get("auth_mode", "env") not in VALID_AUTH_MODES:
        log.warning("Invalid auth_mode %r, using 'env'", values["auth_mode"])
        values.pop("auth_mode")
    return WorkerSettings(**values)
