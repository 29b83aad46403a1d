"""Find a project's markdown files, parse them and hand the result to the reconciler."""

from __future__ import annotations

import logging
import sqlite3
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from worksync.config import SyncConfig, resolve_sync_config
from worksync.db import (
    ProjectRow,
    connector_config,
    get_connector,
    get_project,
    list_projects,
)
from worksync.parser import (
    parse_backlog_md,
    parse_intent_summary,
    parse_status_md,
    parse_tasks_md,
)
from worksync.reconcile import ingest

log = logging.getLogger(__name__)

SEARCH_DIRS = ("", "docs", "docs/adf")
FILE_CANDIDATES: dict[str, tuple[str, ...]] = {
    "tasks": ("tasks.md", "task.md"),
    "backlog": ("BACKLOG.md", "backlog.md"),
    "status": ("status.md",),
    "intent": ("intent.md",),
}


@dataclass(frozen=True)
class ProjectFiles:
    tasks: Path | None = None
    backlog: Path | None = None
    status: Path | None = None
    intent: Path | None = None

    def to_dict(self) -> dict[str, str | None]:
        return {
            "tasks": str(self.tasks) if self.tasks else None,
            "backlog": str(self.backlog) if self.backlog else None,
            "status": str(self.status) if self.status else None,
            "intent": str(self.intent) if self.intent else None,
        }


def _find_file(root: Path, kind: str, config: SyncConfig | None) -> Path | None:
    if config and kind in config.files:
        configured = root / config.files[kind]
        if configured.is_file():
            return configured
        log.warning("Configured %s file %s does not exist", kind, configured)
        return None
    for directory in SEARCH_DIRS:
        for name in FILE_CANDIDATES[kind]:
            candidate = root / directory / name
            if candidate.is_file():
                return candidate
    return None


def discover_project_files(root: str | Path, config: SyncConfig | None = None) -> ProjectFiles:
    """Locate the tasks, backlog, status and intent files under *root*.

    Paths configured in ``.worksync/sync.toml`` win; otherwise the root,
    ``docs/`` and ``docs/adf/`` are searched in that order.
    """
    root = Path(root)
    if config is None:
        config = resolve_sync_config(root)
    return ProjectFiles(
        tasks=_find_file(root, "tasks", config),
        backlog=_find_file(root, "backlog", config),
        status=_find_file(root, "status", config),
        intent=_find_file(root, "intent", config),
    )


def resolve_repo_path(conn: sqlite3.Connection, project: ProjectRow) -> Path:
    path = connector_config(get_connector(conn, project["id"])).get("path")
    return Path(path or project["dir"])


def sync_project(
    conn: sqlite3.Connection, name_or_id: str, repo_path: str | Path | None = None
) -> dict[str, Any]:
    """Parse a project's files and ingest them. Returns the ingest result."""
    project = get_project(conn, name_or_id)
    if project is None:
        raise ValueError(f"Project '{name_or_id}' not found")
    root = Path(repo_path) if repo_path else resolve_repo_path(conn, project)
    if not root.is_dir():
        raise ValueError(f"Repository path '{root}' is not a directory")

    config = resolve_sync_config(root)
    files = discover_project_files(root, config)
    if files.tasks is None and files.backlog is None:
        log.warning("No tasks or backlog file found under %s", root)

    tasks = parse_tasks_md(files.tasks)
    backlog = parse_backlog_md(files.backlog)
    status = parse_status_md(files.status) if files.status else None
    intent = parse_intent_summary(files.intent)

    result: dict[str, Any] = dict(
        ingest(
            conn,
            project_id=project["id"],
            repo_path=root,
            tasks=tasks,
            backlog=backlog,
            status=status,
            intent_summary=intent,
            default_priority=config.default_priority,
        )
    )
    result["project"] = project["name"]
    result["parsed_tasks"] = len(tasks)
    result["parsed_backlog"] = len(backlog)
    result["files"] = files.to_dict()
    return result


def sync_all_projects(conn: sqlite3.Connection) -> list[dict[str, Any]]:
    """Sync every project whose connector is not paused."""
    results: list[dict[str, Any]] = []
    for project in list_projects(conn):
        connector = get_connector(conn, project["id"])
        if connector and connector["status"] == "paused":
            log.info("Skipping project %s: connector paused", project["name"])
            results.append({"project": project["name"], "skipped": "paused"})
            continue
        try:
            results.append(sync_project(conn, project["id"]))
        except ValueError as exc:
            log.warning("Sync of project %s failed: %s", project["name"], exc)
            results.append({"project": project["name"], "error": str(exc)})
    return results
