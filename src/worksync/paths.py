"""Canonical filesystem paths for worksync configuration and state."""

from __future__ import annotations

import os
from pathlib import Path

WORKSYNC_CONFIG_DIR = Path.home() / ".config" / "worksync"

LOG_DIR = WORKSYNC_CONFIG_DIR / "logs"

_env_db = os.environ.get("WORKSYNC_DB_PATH")
DEFAULT_DB_PATH = Path(_env_db).expanduser() if _env_db else WORKSYNC_CONFIG_DIR / "worksync.db"

# Per-repository config, relative to the project root.
PROJECT_CONFIG_FILE = Path(".worksync") / "sync.toml"
