"""Per-project sync configuration.

Projects may override where their markdown files live and tune sync
defaults in ``.worksync/sync.toml``::

    [files]
    tasks = "planning/TODO.md"
    backlog = "planning/ideas.md"

    [sync]
    default_priority = "P3"

    [quality]
    stale_hours = 48

Without the file every setting falls back to its default.
"""

from __future__ import annotations

import logging
import os
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from worksync.db import DEFAULT_PRIORITY, VALID_PRIORITIES
from worksync.paths import PROJECT_CONFIG_FILE

log = logging.getLogger(__name__)

DEFAULT_STALE_HOURS = 24.0
FILE_KINDS = ("tasks", "backlog", "status", "intent")


@dataclass(frozen=True)
class SyncConfig:
    files: dict[str, str] = field(default_factory=dict)
    default_priority: str = DEFAULT_PRIORITY
    stale_hours: float | None = None


def load_project_config(project_dir: str | Path | None) -> dict[str, Any] | None:
    """Load ``.worksync/sync.toml`` from a project directory.

    Returns the parsed TOML dict, or None if the file doesn't exist
    or the project dir is unknown.
    """
    if not project_dir:
        return None

    path = Path(project_dir) / PROJECT_CONFIG_FILE
    if not path.exists():
        return None

    try:
        with open(path, "rb") as f:
            return tomllib.load(f)
    except (OSError, tomllib.TOMLDecodeError):
        log.warning("Failed to parse %s", path, exc_info=True)
        return None


def _positive_float(value: Any, source: str) -> float | None:
    if value is None:
        return None
    try:
        hours = float(value)
    except (TypeError, ValueError):
        log.warning("%s: stale_hours %r is not a number", source, value)
        return None
    if hours <= 0:
        log.warning("%s: stale_hours must be positive, got %r", source, value)
        return None
    return hours


def resolve_sync_config(project_dir: str | Path | None) -> SyncConfig:
    raw = load_project_config(project_dir) or {}

    files: dict[str, str] = {}
    for kind, value in (raw.get("files") or {}).items():
        if kind not in FILE_KINDS:
            log.warning("sync.toml: unknown file kind '%s'", kind)
            continue
        if not isinstance(value, str) or not value.strip():
            log.warning("sync.toml: files.%s must be a path string", kind)
            continue
        files[kind] = value.strip()

    priority = (raw.get("sync") or {}).get("default_priority", DEFAULT_PRIORITY)
    if priority not in VALID_PRIORITIES:
        log.warning(
            "sync.toml: default_priority %r is invalid, using %s", priority, DEFAULT_PRIORITY
        )
        priority = DEFAULT_PRIORITY

    stale_hours = _positive_float((raw.get("quality") or {}).get("stale_hours"), "sync.toml")
    return SyncConfig(files=files, default_priority=priority, stale_hours=stale_hours)


def resolve_stale_hours(explicit: float | None = None) -> float:
    """Staleness threshold: explicit value, else ``WORKSYNC_STALE_HOURS``, else 24."""
    if explicit is not None:
        hours = _positive_float(explicit, "argument")
        if hours is not None:
            return hours
    env_hours = _positive_float(os.environ.get("WORKSYNC_STALE_HOURS"), "WORKSYNC_STALE_HOURS")
    return env_hours if env_hours is not None else DEFAULT_STALE_HOURS
