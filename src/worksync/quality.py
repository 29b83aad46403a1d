"""Sync health grading and remediation for connected projects.

Each project with a connector is graded ``red``, ``yellow`` or ``green``
from its heartbeat age and the shape of its synced records. The report is
read-only; :func:`remediate` runs the idempotent repair actions.
"""

from __future__ import annotations

import logging
import math
import re
import sqlite3
from collections import Counter, defaultdict
from collections.abc import Iterable, Mapping
from datetime import UTC, datetime
from typing import Any, Literal, TypedDict

from worksync.config import resolve_stale_hours, resolve_sync_config
from worksync.db import (
    ENTITY_TABLES,
    ProjectRow,
    compare_and_set_entity,
    delete_rows,
    get_connector,
    get_project,
    list_projects,
    select_rows,
    set_connector_status,
)
from worksync.locator import is_absolute_source_id, normalize_source_id
from worksync.sync import resolve_repo_path

log = logging.getLogger(__name__)

Severity = Literal["red", "yellow", "green"]
_SEVERITY_RANK: dict[Severity, int] = {"red": 0, "yellow": 1, "green": 2}

# Heartbeats older than this multiple of the threshold are graded red.
STALE_RED_FACTOR = 7

REMEDIATION_ACTIONS = (
    "normalize_absolute_source_ids",
    "dedupe_source_ids",
    "activate_connector",
)


class SyncStats(TypedDict):
    connector_status: str
    last_sync_at: str | None
    last_sync_age_hours: float | None
    synced_tasks: int
    synced_backlog: int
    synced_without_source: int
    absolute_source_ids: int
    duplicate_source_ids: int
    duplicate_titles: int


class QualityRow(SyncStats):
    project_id: str
    project_name: str
    stage: str
    stale_hours: float
    severity: Severity


class QualityTotals(TypedDict):
    projects: int
    red: int
    yellow: int
    green: int
    synced_tasks: int
    synced_backlog: int


class QualityReport(TypedDict):
    generated_at: str
    stale_hours_threshold: float
    totals: QualityTotals
    rows: list[QualityRow]


def hours_since(timestamp: str | None, now: datetime | None = None) -> float:
    if not timestamp:
        return math.inf
    try:
        then = datetime.fromisoformat(timestamp)
    except ValueError:
        log.warning("Unparseable heartbeat timestamp %r", timestamp)
        return math.inf
    if then.tzinfo is None:
        then = then.replace(tzinfo=UTC)
    now = now or datetime.now(UTC)
    return (now - then).total_seconds() / 3600


def normalize_title(title: str | None) -> str:
    if not title:
        return ""
    lowered = re.sub(r"\s+", " ", title.lower())
    return re.sub(r"[^\w\s-]", "", lowered).strip()


def count_duplicates(values: Iterable[str]) -> int:
    """Number of values that repeat an earlier one (empty values ignored)."""
    counts = Counter(v for v in values if v)
    return sum(n - 1 for n in counts.values() if n > 1)


def evaluate_severity(stats: Mapping[str, Any], stale_hours: float) -> Severity:
    """Grade one project's sync health. First matching rule wins."""
    age = stats.get("last_sync_age_hours")
    age = math.inf if age is None else age
    if stats.get("connector_status") != "active":
        return "red"
    if math.isinf(age) or age > stale_hours * STALE_RED_FACTOR:
        return "red"
    if stats.get("duplicate_source_ids", 0) > 0:
        return "red"
    if stats.get("synced_without_source", 0) > 0:
        return "red"
    if age > stale_hours:
        return "yellow"
    if stats.get("absolute_source_ids", 0) > 0:
        return "yellow"
    if stats.get("duplicate_titles", 0) > 0:
        return "yellow"
    return "green"


def collect_sync_stats(
    conn: sqlite3.Connection, project_id: str, now: datetime | None = None
) -> SyncStats:
    connector = get_connector(conn, project_id)
    tasks = select_rows(conn, "tasks", {"project_id": project_id, "data_origin": "synced"})
    backlog = select_rows(
        conn, "backlog_items", {"project_id": project_id, "data_origin": "synced"}
    )
    combined = tasks + backlog
    last_sync_at = connector["last_sync_at"] if connector else None
    age = hours_since(last_sync_at, now)
    return {
        "connector_status": connector["status"] if connector else "missing",
        "last_sync_at": last_sync_at,
        "last_sync_age_hours": None if math.isinf(age) else round(age, 1),
        "synced_tasks": len(tasks),
        "synced_backlog": len(backlog),
        "synced_without_source": sum(
            1 for r in combined if not (r["source_id"] or "").strip()
        ),
        "absolute_source_ids": sum(1 for r in combined if is_absolute_source_id(r["source_id"])),
        "duplicate_source_ids": count_duplicates(r["source_id"] for r in combined),
        "duplicate_titles": count_duplicates(normalize_title(r["title"]) for r in combined),
    }


def _project_threshold(
    conn: sqlite3.Connection, project: ProjectRow, explicit: float | None, default: float
) -> float:
    if explicit is not None:
        return default
    configured = resolve_sync_config(resolve_repo_path(conn, project)).stale_hours
    return configured if configured is not None else default


def build_sync_quality_report(
    conn: sqlite3.Connection,
    project_id: str | None = None,
    stale_hours: float | None = None,
    include_unconfigured: bool = False,
    now: datetime | None = None,
) -> QualityReport:
    """Grade every connected project (or one), worst first."""
    now = now or datetime.now(UTC)
    threshold = resolve_stale_hours(stale_hours)

    if project_id:
        project = get_project(conn, project_id)
        if project is None:
            raise ValueError(f"Project '{project_id}' not found")
        projects = [project]
    else:
        projects = list_projects(conn)

    rows: list[QualityRow] = []
    for project in projects:
        if get_connector(conn, project["id"]) is None and not include_unconfigured:
            continue
        stats = collect_sync_stats(conn, project["id"], now)
        project_threshold = _project_threshold(conn, project, stale_hours, threshold)
        rows.append(
            {
                "project_id": project["id"],
                "project_name": project["name"],
                "stage": project["current_stage"] or "n/a",
                "stale_hours": project_threshold,
                **stats,
                "severity": evaluate_severity(stats, project_threshold),
            }
        )

    rows.sort(key=lambda r: (_SEVERITY_RANK[r["severity"]], r["project_name"]))
    severities = Counter(r["severity"] for r in rows)
    return {
        "generated_at": now.strftime("%Y-%m-%dT%H:%M:%S.%fZ"),
        "stale_hours_threshold": threshold,
        "totals": {
            "projects": len(rows),
            "red": severities["red"],
            "yellow": severities["yellow"],
            "green": severities["green"],
            "synced_tasks": sum(r["synced_tasks"] for r in rows),
            "synced_backlog": sum(r["synced_backlog"] for r in rows),
        },
        "rows": rows,
    }


# -- Remediation --


def _normalize_absolute_source_ids(
    conn: sqlite3.Connection, project: ProjectRow
) -> dict[str, int]:
    root = resolve_repo_path(conn, project)
    updated = skipped = 0
    for entity_type, table in ENTITY_TABLES.items():
        for row in select_rows(conn, table, {"project_id": project["id"], "data_origin": "synced"}):
            if not row["source_id"]:
                continue
            normalized = normalize_source_id(row["source_id"], root)
            if normalized == row["source_id"]:
                if is_absolute_source_id(normalized):
                    skipped += 1
                continue
            if compare_and_set_entity(
                conn, entity_type, row["id"], row["updated_at"], {"source_id": normalized}
            ):
                updated += 1
            else:
                skipped += 1
    conn.commit()
    return {"updated": updated, "skipped": skipped}


def duplicate_ids_by_source_id(rows: Iterable[Mapping[str, Any]]) -> list[str]:
    """Ids to delete so each source_id keeps only its most recently updated row."""
    grouped: dict[str, list[Mapping[str, Any]]] = defaultdict(list)
    for row in rows:
        if row["source_id"]:
            grouped[row["source_id"]].append(row)
    stale: list[str] = []
    for group in grouped.values():
        if len(group) < 2:
            continue
        group.sort(key=lambda r: r["updated_at"], reverse=True)
        stale.extend(r["id"] for r in group[1:])
    return stale


def _dedupe_source_ids(conn: sqlite3.Connection, project: ProjectRow) -> dict[str, int]:
    result: dict[str, int] = {}
    for key, table in (("deleted_tasks", "tasks"), ("deleted_backlog", "backlog_items")):
        rows = select_rows(conn, table, {"project_id": project["id"], "data_origin": "synced"})
        result[key] = delete_rows(conn, table, duplicate_ids_by_source_id(rows))
    return result


def remediate(conn: sqlite3.Connection, project_id: str, action: str) -> dict[str, Any]:
    """Run one remediation *action* for a project. Safe to repeat."""
    if action not in REMEDIATION_ACTIONS:
        raise ValueError(
            f"Invalid remediation action '{action}'. Valid: {', '.join(REMEDIATION_ACTIONS)}"
        )
    project = get_project(conn, project_id)
    if project is None:
        raise ValueError(f"Project '{project_id}' not found")
    if get_connector(conn, project["id"]) is None:
        raise ValueError(f"Project '{project['name']}' has no connector")

    if action == "activate_connector":
        set_connector_status(conn, project["id"], "active")
        outcome: dict[str, Any] = {"updated": 1}
    elif action == "normalize_absolute_source_ids":
        outcome = _normalize_absolute_source_ids(conn, project)
    else:
        outcome = _dedupe_source_ids(conn, project)

    log.info("Remediation %s on project %s: %s", action, project["name"], outcome)
    return {"project_id": project["id"], "action": action, **outcome}
