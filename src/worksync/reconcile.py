"""Reconciler: make the store's synced records match one parse of the source files.

``ingest`` runs its steps in order and commits after each one, so a store
failure leaves the earlier steps applied and skips the rest. Running it
again with the same input changes nothing (``updated_at`` included).
"""

from __future__ import annotations

import logging
import sqlite3
from collections.abc import Iterable, Mapping, Sequence
from pathlib import Path
from typing import Any, TypedDict

from worksync.db import (
    DEFAULT_PRIORITY,
    delete_rows,
    ensure_connector,
    get_project,
    select_rows,
    touch_connector_heartbeat,
    update_project_status,
    upsert_rows,
    validate_entity_fields,
)
from worksync.locator import normalize_source_id
from worksync.parser import (
    ExtractedBacklogItem,
    ExtractedStatus,
    ExtractedTask,
    derive_stage,
)

log = logging.getLogger(__name__)

RecordInput = ExtractedTask | ExtractedBacklogItem | Mapping[str, Any]
StatusInput = ExtractedStatus | Mapping[str, Any]

_DEFAULT_STATUS = {"task": "pending", "backlog": "captured"}
_TABLES = {"task": "tasks", "backlog": "backlog_items"}


class IngestResult(TypedDict):
    project_id: str
    tasks_count: int
    backlog_count: int
    dropped_task_duplicates: int
    dropped_backlog_duplicates: int
    deleted_stale_tasks: int
    deleted_stale_backlog: int
    status_synced: bool


def _record_fields(record: RecordInput) -> dict[str, Any]:
    if isinstance(record, ExtractedTask | ExtractedBacklogItem):
        return record.to_dict()
    return dict(record)


def prepare_records(
    records: Iterable[RecordInput],
    entity_type: str,
    *,
    project_id: str,
    repo_path: str | Path | None = None,
    default_priority: str = DEFAULT_PRIORITY,
) -> list[dict[str, Any]]:
    """Turn extracted records into store rows, normalizing their locators.

    Raises ValueError on a record without a source_id or with an invalid
    status or priority.
    """
    rows: list[dict[str, Any]] = []
    for record in records:
        fields = _record_fields(record)
        source_id = fields.get("source_id")
        if not isinstance(source_id, str) or not source_id.strip():
            raise ValueError(f"{entity_type} record is missing a source_id: {fields!r}")
        source_id = source_id.strip()
        if repo_path:
            source_id = normalize_source_id(source_id, repo_path)
        row = {
            "project_id": project_id,
            "source_id": source_id,
            "title": str(fields.get("title") or "").strip(),
            "description": fields.get("description") or None,
            "status": fields.get("status") or _DEFAULT_STATUS[entity_type],
            "priority": fields.get("priority") or default_priority,
            "data_origin": "synced",
        }
        validate_entity_fields(entity_type, row)
        rows.append(row)
    return rows


def dedupe_by_source_id(rows: Sequence[dict[str, Any]]) -> tuple[list[dict[str, Any]], int]:
    """Keep the first row per source_id. Returns (survivors, dropped count)."""
    seen: set[str] = set()
    survivors: list[dict[str, Any]] = []
    for row in rows:
        if row["source_id"] in seen:
            continue
        seen.add(row["source_id"])
        survivors.append(row)
    return survivors, len(rows) - len(survivors)


def _delete_stale(
    conn: sqlite3.Connection, table: str, project_id: str, keep: set[str]
) -> int:
    existing = select_rows(conn, table, {"project_id": project_id, "data_origin": "synced"})
    stale = [r["id"] for r in existing if r["source_id"] is None or r["source_id"] not in keep]
    if not stale:
        return 0
    return delete_rows(conn, table, stale)


def _status_fields(status: StatusInput | None) -> dict[str, Any]:
    if status is None:
        return {}
    if isinstance(status, ExtractedStatus):
        return status.to_dict()
    return dict(status)


def ingest(
    conn: sqlite3.Connection,
    *,
    project_id: str,
    tasks: Iterable[RecordInput] = (),
    backlog: Iterable[RecordInput] = (),
    repo_path: str | Path | None = None,
    status: StatusInput | None = None,
    intent_summary: str | None = None,
    default_priority: str = DEFAULT_PRIORITY,
) -> IngestResult:
    """Upsert one parse worth of records and drop the synced rows it no longer has."""
    if get_project(conn, project_id) is None:
        raise ValueError(f"Project '{project_id}' not found")
    ensure_connector(conn, project_id, str(repo_path) if repo_path else None)

    task_rows = prepare_records(
        tasks,
        "task",
        project_id=project_id,
        repo_path=repo_path,
        default_priority=default_priority,
    )
    backlog_rows = prepare_records(
        backlog,
        "backlog",
        project_id=project_id,
        repo_path=repo_path,
        default_priority=default_priority,
    )

    task_rows, dropped_tasks = dedupe_by_source_id(task_rows)
    backlog_rows, dropped_backlog = dedupe_by_source_id(backlog_rows)
    if dropped_tasks or dropped_backlog:
        log.info(
            "Project %s: dropped %d duplicate task(s), %d duplicate backlog item(s)",
            project_id,
            dropped_tasks,
            dropped_backlog,
        )

    conflict_key = ("project_id", "source_id")
    upsert_rows(conn, _TABLES["task"], task_rows, conflict_key)
    upsert_rows(conn, _TABLES["backlog"], backlog_rows, conflict_key)

    deleted_tasks = _delete_stale(
        conn, _TABLES["task"], project_id, {r["source_id"] for r in task_rows}
    )
    deleted_backlog = _delete_stale(
        conn, _TABLES["backlog"], project_id, {r["source_id"] for r in backlog_rows}
    )

    status_fields = _status_fields(status)
    if status_fields or intent_summary:
        update_project_status(
            conn,
            project_id,
            current_stage=(
                status_fields.get("current_stage")
                or derive_stage(status_fields.get("current_status"))
            ),
            focus=status_fields.get("focus") or intent_summary or None,
            blockers=status_fields.get("blockers") or [],
            pending_decisions=status_fields.get("pending_decisions") or [],
        )
    else:
        log.debug("Project %s: no status or intent to sync", project_id)

    touch_connector_heartbeat(conn, project_id)

    log.info(
        "Ingested project %s: %d task(s), %d backlog item(s), %d+%d stale removed",
        project_id,
        len(task_rows),
        len(backlog_rows),
        deleted_tasks,
        deleted_backlog,
    )
    return {
        "project_id": project_id,
        "tasks_count": len(task_rows),
        "backlog_count": len(backlog_rows),
        "dropped_task_duplicates": dropped_tasks,
        "dropped_backlog_duplicates": dropped_backlog,
        "deleted_stale_tasks": deleted_tasks,
        "deleted_stale_backlog": deleted_backlog,
        "status_synced": bool(status_fields or intent_summary),
    }
