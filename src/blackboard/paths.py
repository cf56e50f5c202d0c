"""Canonical filesystem paths for blackboard configuration and state."""

from __future__ import annotations

import os
from pathlib import Path

_env_config = os.environ.get("BLACKBOARD_CONFIG_DIR")
BLACKBOARD_CONFIG_DIR = (
    Path(_env_config).expanduser() if _env_config else Path.home() / ".config" / "blackboard"
)

CONFIG_FILE = BLACKBOARD_CONFIG_DIR / "config.toml"

_env_db = os.environ.get("BLACKBOARD_DB_PATH")
DEFAULT_DB_PATH = (
    Path(_env_db).expanduser() if _env_db else BLACKBOARD_CONFIG_DIR / "blackboard.db"
)

# Mounted into worker containers; the entrypoint expects the store here.
CONTAINER_DB_DIR = "/app/db"
CONTAINER_REPO_DIR = "/app/repo"
