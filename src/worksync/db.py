"""SQLite record store for worksync state."""

from __future__ import annotations

import contextlib
import json
import sqlite3
import uuid
from collections.abc import Callable, Iterable, Mapping, Sequence
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, TypedDict, cast

from worksync.paths import DEFAULT_DB_PATH

VALID_TASK_STATUSES = {"pending", "in_progress", "blocked", "done"}
VALID_BACKLOG_STATUSES = {"captured", "triaged", "prioritized", "promoted", "archived"}
VALID_PRIORITIES = {"P1", "P2", "P3"}
DEFAULT_PRIORITY = "P2"
VALID_DATA_ORIGINS = {"synced", "native"}
VALID_CONNECTOR_STATUSES = {"active", "paused", "error"}
CONNECTOR_TYPE = "markdown"

# entity_type -> table
ENTITY_TABLES = {"task": "tasks", "backlog": "backlog_items"}
ENTITY_STATUSES = {"task": VALID_TASK_STATUSES, "backlog": VALID_BACKLOG_STATUSES}

DELETE_CHUNK_SIZE = 200


def _utcnow() -> str:
    """ISO 8601 UTC timestamp with microseconds.

    Microsecond precision keeps ``updated_at`` usable as a concurrency
    token when several writes land within the same second.
    """
    return datetime.now(UTC).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


# Bump when adding migrations. 0 = legacy (pre-versioning).
SCHEMA_VERSION = 1

SCHEMA = """\
CREATE TABLE IF NOT EXISTS projects (
    id TEXT PRIMARY KEY,
    name TEXT UNIQUE NOT NULL,
    dir TEXT UNIQUE NOT NULL,
    current_stage TEXT,
    focus TEXT,
    blockers TEXT NOT NULL DEFAULT '[]',
    pending_decisions TEXT NOT NULL DEFAULT '[]',
    created_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%fZ', 'now')),
    updated_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%fZ', 'now'))
);

CREATE TABLE IF NOT EXISTS connectors (
    id TEXT PRIMARY KEY,
    project_id TEXT NOT NULL REFERENCES projects(id),
    connector_type TEXT NOT NULL DEFAULT 'markdown',
    status TEXT NOT NULL DEFAULT 'active'
        CHECK (status IN ('active', 'paused', 'error')),
    config TEXT NOT NULL DEFAULT '{}',
    last_sync_at TEXT,
    created_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%fZ', 'now')),
    updated_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%fZ', 'now')),
    UNIQUE (project_id, connector_type)
);

CREATE TABLE IF NOT EXISTS tasks (
    id TEXT PRIMARY KEY,
    project_id TEXT NOT NULL REFERENCES projects(id),
    source_id TEXT,
    title TEXT NOT NULL,
    description TEXT,
    status TEXT NOT NULL DEFAULT 'pending',
    priority TEXT NOT NULL DEFAULT 'P2',
    data_origin TEXT NOT NULL DEFAULT 'native'
        CHECK (data_origin IN ('synced', 'native')),
    created_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%fZ', 'now')),
    updated_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%fZ', 'now')),
    CHECK (data_origin = 'synced' OR source_id IS NULL)
);

CREATE TABLE IF NOT EXISTS backlog_items (
    id TEXT PRIMARY KEY,
    project_id TEXT NOT NULL REFERENCES projects(id),
    source_id TEXT,
    title TEXT NOT NULL,
    description TEXT,
    status TEXT NOT NULL DEFAULT 'captured',
    priority TEXT,
    data_origin TEXT NOT NULL DEFAULT 'native'
        CHECK (data_origin IN ('synced', 'native')),
    created_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%fZ', 'now')),
    updated_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%fZ', 'now')),
    CHECK (data_origin = 'synced' OR source_id IS NULL)
);
"""

# Columns each table accepts through the generic operations.
_TABLE_COLUMNS: dict[str, tuple[str, ...]] = {
    "projects": (
        "id",
        "name",
        "dir",
        "current_stage",
        "focus",
        "blockers",
        "pending_decisions",
        "created_at",
        "updated_at",
    ),
    "connectors": (
        "id",
        "project_id",
        "connector_type",
        "status",
        "config",
        "last_sync_at",
        "created_at",
        "updated_at",
    ),
    "tasks": (
        "id",
        "project_id",
        "source_id",
        "title",
        "description",
        "status",
        "priority",
        "data_origin",
        "created_at",
        "updated_at",
    ),
    "backlog_items": (
        "id",
        "project_id",
        "source_id",
        "title",
        "description",
        "status",
        "priority",
        "data_origin",
        "created_at",
        "updated_at",
    ),
}


# -- Row TypedDicts matching table schemas --


class ProjectRow(TypedDict):
    id: str
    name: str
    dir: str
    current_stage: str | None
    focus: str | None
    blockers: str
    pending_decisions: str
    created_at: str
    updated_at: str


class ConnectorRow(TypedDict):
    id: str
    project_id: str
    connector_type: str
    status: str
    config: str
    last_sync_at: str | None
    created_at: str
    updated_at: str


class EntityRow(TypedDict):
    id: str
    project_id: str
    source_id: str | None
    title: str
    description: str | None
    status: str
    priority: str | None
    data_origin: str
    created_at: str
    updated_at: str


class UpsertCounts(TypedDict):
    inserted: int
    updated: int
    unchanged: int


def get_connection(db_path: Path = DEFAULT_DB_PATH) -> sqlite3.Connection:
    db_path.parent.mkdir(parents=True, exist_ok=True, mode=0o700)
    conn = sqlite3.connect(str(db_path))
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA foreign_keys=ON")
    conn.execute("PRAGMA busy_timeout=10000")
    conn.executescript(SCHEMA)

    current_version = conn.execute("PRAGMA user_version").fetchone()[0]
    if current_version < SCHEMA_VERSION:
        _migrate(conn, current_version)
        _create_indexes(conn)
        conn.execute(f"PRAGMA user_version = {SCHEMA_VERSION}")
        conn.commit()
    return conn


@contextlib.contextmanager
def connect(db_path: Path = DEFAULT_DB_PATH):
    """Context manager wrapper for get_connection().

    Usage:
        with connect() as conn:
            do_stuff(conn)
    # conn.close() is guaranteed even on exceptions.
    """
    conn = get_connection(db_path)
    try:
        yield conn
    finally:
        conn.close()


def _table_columns(conn: sqlite3.Connection, table: str) -> set[str]:
    return {row[1] for row in conn.execute(f"PRAGMA table_info({table})").fetchall()}


def _add_column_if_missing(
    conn: sqlite3.Connection, table: str, column: str, col_def: str, cols: set[str]
) -> None:
    if column not in cols:
        conn.execute(f"ALTER TABLE {table} ADD COLUMN {column} {col_def}")


def _migrate_to_v1(conn: sqlite3.Connection) -> None:
    """Pre-v1: project status columns were added after the initial schema."""
    cols = _table_columns(conn, "projects")
    _add_column_if_missing(conn, "projects", "current_stage", "TEXT", cols)
    _add_column_if_missing(conn, "projects", "focus", "TEXT", cols)
    _add_column_if_missing(conn, "projects", "blockers", "TEXT NOT NULL DEFAULT '[]'", cols)
    _add_column_if_missing(
        conn, "projects", "pending_decisions", "TEXT NOT NULL DEFAULT '[]'", cols
    )


_MIGRATIONS: list[tuple[int, Callable[[sqlite3.Connection], None]]] = [
    (1, _migrate_to_v1),
]


def _migrate(conn: sqlite3.Connection, from_version: int) -> None:
    for version, migration_fn in _MIGRATIONS:
        if from_version < version:
            migration_fn(conn)


def _create_indexes(conn: sqlite3.Connection) -> None:
    # (project_id, source_id) is indexed but deliberately not UNIQUE: the
    # reconciler dedups per batch and remediation repairs older rows.
    conn.executescript("""
        CREATE INDEX IF NOT EXISTS idx_tasks_project_source ON tasks(project_id, source_id);
        CREATE INDEX IF NOT EXISTS idx_backlog_project_source
            ON backlog_items(project_id, source_id);
        CREATE INDEX IF NOT EXISTS idx_tasks_project_origin ON tasks(project_id, data_origin);
        CREATE INDEX IF NOT EXISTS idx_backlog_project_origin
            ON backlog_items(project_id, data_origin);
    """)


# -- Generic record operations --


def _check_table(table: str) -> tuple[str, ...]:
    columns = _TABLE_COLUMNS.get(table)
    if columns is None:
        raise ValueError(f"Unknown table '{table}'. Valid: {', '.join(sorted(_TABLE_COLUMNS))}")
    return columns


def _check_columns(table: str, names: Iterable[str]) -> None:
    columns = _check_table(table)
    unknown = [n for n in names if n not in columns]
    if unknown:
        raise ValueError(f"Unknown column(s) for {table}: {', '.join(sorted(unknown))}")


def _where(filters: Mapping[str, Any]) -> tuple[str, list[Any]]:
    clauses: list[str] = []
    params: list[Any] = []
    for column, value in filters.items():
        if value is None:
            clauses.append(f"{column} IS NULL")
        elif isinstance(value, list | tuple | set | frozenset):
            values = list(value)
            if not values:
                clauses.append("0")
                continue
            placeholders = ", ".join("?" for _ in values)
            clauses.append(f"{column} IN ({placeholders})")
            params.extend(values)
        else:
            clauses.append(f"{column} = ?")
            params.append(value)
    return (" WHERE " + " AND ".join(clauses)) if clauses else "", params


def select_rows(
    conn: sqlite3.Connection,
    table: str,
    filters: Mapping[str, Any] | None = None,
    *,
    order_by: str = "created_at",
) -> list[dict[str, Any]]:
    """Return rows of *table* matching *filters*.

    A ``None`` filter value matches NULL, a list/tuple/set matches any of
    its members, anything else matches by equality.
    """
    filters = filters or {}
    _check_columns(table, [*filters, order_by])
    where, params = _where(filters)
    rows = conn.execute(
        f"SELECT * FROM {table}{where} ORDER BY {order_by}, rowid", params
    ).fetchall()
    return [dict(row) for row in rows]


def upsert_rows(
    conn: sqlite3.Connection,
    table: str,
    rows: Sequence[Mapping[str, Any]],
    conflict_key: Sequence[str],
) -> UpsertCounts:
    """Insert or update *rows* keyed on the *conflict_key* columns.

    Existing rows are only written when a field actually differs, so
    re-applying the same rows leaves ``updated_at`` untouched.
    """
    counts: UpsertCounts = {"inserted": 0, "updated": 0, "unchanged": 0}
    if not conflict_key:
        raise ValueError("conflict_key must name at least one column")
    for row in rows:
        _check_columns(table, row)
        missing = [k for k in conflict_key if k not in row]
        if missing:
            raise ValueError(f"Row is missing conflict key column(s): {', '.join(missing)}")
        where, params = _where({k: row[k] for k in conflict_key})
        existing = conn.execute(f"SELECT * FROM {table}{where}", params).fetchall()
        fields = {k: v for k, v in row.items() if k not in ("id", "created_at", "updated_at")}
        if not existing:
            now = _utcnow()
            record = {"id": uuid.uuid4().hex[:12], "created_at": now, "updated_at": now}
            record.update(row)
            cols = ", ".join(record)
            placeholders = ", ".join("?" for _ in record)
            conn.execute(
                f"INSERT INTO {table} ({cols}) VALUES ({placeholders})", list(record.values())
            )
            counts["inserted"] += 1
            continue
        for current in existing:
            changed = {k: v for k, v in fields.items() if current[k] != v}
            if not changed:
                counts["unchanged"] += 1
                continue
            changed["updated_at"] = _utcnow()
            assignments = ", ".join(f"{k} = ?" for k in changed)
            conn.execute(
                f"UPDATE {table} SET {assignments} WHERE id = ?",
                [*changed.values(), current["id"]],
            )
            counts["updated"] += 1
    conn.commit()
    return counts


def delete_rows(conn: sqlite3.Connection, table: str, ids: Sequence[str]) -> int:
    """Delete rows by id in chunks. Returns the number of rows removed."""
    _check_table(table)
    deleted = 0
    for start in range(0, len(ids), DELETE_CHUNK_SIZE):
        chunk = list(ids[start : start + DELETE_CHUNK_SIZE])
        placeholders = ", ".join("?" for _ in chunk)
        cur = conn.execute(f"DELETE FROM {table} WHERE id IN ({placeholders})", chunk)
        deleted += cur.rowcount
    conn.commit()
    return deleted


# -- Projects --


def get_project_by_dir(conn: sqlite3.Connection, directory: str) -> ProjectRow | None:
    row = conn.execute("SELECT * FROM projects WHERE dir = ?", (directory,)).fetchone()
    return cast(ProjectRow, dict(row)) if row else None


def add_project(conn: sqlite3.Connection, name: str, directory: str) -> dict:
    # Check for duplicate directory before insert for a clear error message
    existing = get_project_by_dir(conn, directory)
    if existing:
        raise ValueError(
            f"Directory '{directory}' is already registered as project '{existing['name']}'"
        )
    if get_project(conn, name):
        raise ValueError(f"Project name '{name}' is already taken")
    project_id = uuid.uuid4().hex[:12]
    now = _utcnow()
    conn.execute(
        "INSERT INTO projects (id, name, dir, created_at, updated_at) VALUES (?, ?, ?, ?, ?)",
        (project_id, name, directory, now, now),
    )
    conn.commit()
    return {"id": project_id, "name": name, "dir": directory}


def list_projects(conn: sqlite3.Connection) -> list[ProjectRow]:
    rows = conn.execute("SELECT * FROM projects ORDER BY created_at").fetchall()
    return [cast(ProjectRow, dict(row)) for row in rows]


def get_project(conn: sqlite3.Connection, name_or_id: str) -> ProjectRow | None:
    row = conn.execute(
        "SELECT * FROM projects WHERE id = ? OR name = ?",
        (name_or_id, name_or_id),
    ).fetchone()
    return cast(ProjectRow, dict(row)) if row else None


def project_to_dict(project: ProjectRow) -> dict[str, Any]:
    """Decode the JSON list columns of a project row."""
    item: dict[str, Any] = dict(project)
    for key in ("blockers", "pending_decisions"):
        try:
            item[key] = json.loads(project[key] or "[]")
        except json.JSONDecodeError:
            item[key] = []
    return item


def update_project_status(
    conn: sqlite3.Connection,
    project_id: str,
    *,
    current_stage: str | None,
    focus: str | None,
    blockers: Sequence[str],
    pending_decisions: Sequence[str],
) -> bool:
    """Write the status-derived project fields. Returns True if anything changed."""
    counts = upsert_rows(
        conn,
        "projects",
        [
            {
                "id": project_id,
                "current_stage": current_stage,
                "focus": focus,
                "blockers": json.dumps(list(blockers)),
                "pending_decisions": json.dumps(list(pending_decisions)),
            }
        ],
        conflict_key=("id",),
    )
    return counts["updated"] > 0


def compare_and_set_project(
    conn: sqlite3.Connection,
    project_id: str,
    expected_updated_at: str | None,
    fields: Mapping[str, Any],
) -> bool:
    """Update project *fields* only if ``updated_at`` still matches.

    With ``expected_updated_at=None`` the update is unconditional.
    Does not commit.
    """
    _check_columns("projects", fields)
    assignments = ", ".join(f"{k} = ?" for k in fields)
    params: list[Any] = [*fields.values(), _utcnow(), project_id]
    sql = f"UPDATE projects SET {assignments}, updated_at = ? WHERE id = ?"
    if expected_updated_at is not None:
        sql += " AND updated_at = ?"
        params.append(expected_updated_at)
    return conn.execute(sql, params).rowcount == 1


def remove_project(conn: sqlite3.Connection, name_or_id: str) -> dict | None:
    """Remove a project and cascade-delete its records.

    Returns a summary dict with counts of deleted rows, or None if project not found.
    """
    project = get_project(conn, name_or_id)
    if not project:
        return None
    project_id = project["id"]
    tasks = conn.execute("DELETE FROM tasks WHERE project_id = ?", (project_id,)).rowcount
    backlog = conn.execute(
        "DELETE FROM backlog_items WHERE project_id = ?", (project_id,)
    ).rowcount
    connectors = conn.execute(
        "DELETE FROM connectors WHERE project_id = ?", (project_id,)
    ).rowcount
    conn.execute("DELETE FROM projects WHERE id = ?", (project_id,))
    conn.commit()
    return {
        "project": project["name"],
        "tasks": tasks,
        "backlog_items": backlog,
        "connectors": connectors,
    }


# -- Connectors --


def get_connector(conn: sqlite3.Connection, project_id: str) -> ConnectorRow | None:
    row = conn.execute(
        "SELECT * FROM connectors WHERE project_id = ? AND connector_type = ?",
        (project_id, CONNECTOR_TYPE),
    ).fetchone()
    return cast(ConnectorRow, dict(row)) if row else None


def connector_config(connector: ConnectorRow | None) -> dict[str, Any]:
    if not connector:
        return {}
    try:
        config = json.loads(connector["config"] or "{}")
    except json.JSONDecodeError:
        return {}
    return config if isinstance(config, dict) else {}


def ensure_connector(
    conn: sqlite3.Connection, project_id: str, path: str | None = None
) -> ConnectorRow:
    """Create the project's connector if missing; record ``config.path`` when given."""
    connector = get_connector(conn, project_id)
    if connector is None:
        now = _utcnow()
        config = {"path": path} if path else {}
        conn.execute(
            "INSERT INTO connectors (id, project_id, connector_type, status, config,"
            " created_at, updated_at) VALUES (?, ?, ?, 'active', ?, ?, ?)",
            (uuid.uuid4().hex[:12], project_id, CONNECTOR_TYPE, json.dumps(config), now, now),
        )
        conn.commit()
    elif path and connector_config(connector).get("path") != path:
        set_connector_path(conn, project_id, path)
    connector = get_connector(conn, project_id)
    assert connector is not None
    return connector


def set_connector_path(conn: sqlite3.Connection, project_id: str, path: str) -> None:
    connector = get_connector(conn, project_id)
    if connector is None:
        ensure_connector(conn, project_id, path)
        return
    config = connector_config(connector)
    config["path"] = path
    conn.execute(
        "UPDATE connectors SET config = ?, updated_at = ? WHERE id = ?",
        (json.dumps(config), _utcnow(), connector["id"]),
    )
    conn.commit()


def set_connector_status(conn: sqlite3.Connection, project_id: str, status: str) -> bool:
    if status not in VALID_CONNECTOR_STATUSES:
        raise ValueError(
            f"Invalid connector status '{status}'. "
            f"Valid: {', '.join(sorted(VALID_CONNECTOR_STATUSES))}"
        )
    cur = conn.execute(
        "UPDATE connectors SET status = ?, updated_at = ? "
        "WHERE project_id = ? AND connector_type = ?",
        (status, _utcnow(), project_id, CONNECTOR_TYPE),
    )
    conn.commit()
    return cur.rowcount > 0


def touch_connector_heartbeat(conn: sqlite3.Connection, project_id: str) -> str:
    """Record a successful sync: ``last_sync_at = now`` and ``status = active``."""
    ensure_connector(conn, project_id)
    now = _utcnow()
    conn.execute(
        "UPDATE connectors SET last_sync_at = ?, status = 'active', updated_at = ? "
        "WHERE project_id = ? AND connector_type = ?",
        (now, now, project_id, CONNECTOR_TYPE),
    )
    conn.commit()
    return now


# -- Tasks and backlog items --


def entity_table(entity_type: str) -> str:
    table = ENTITY_TABLES.get(entity_type)
    if table is None:
        raise ValueError(
            f"Invalid entity type '{entity_type}'. Valid: {', '.join(sorted(ENTITY_TABLES))}"
        )
    return table


def validate_entity_fields(entity_type: str, fields: Mapping[str, Any]) -> None:
    """Raise ValueError when *fields* carry an invalid status or priority."""
    statuses = ENTITY_STATUSES[entity_type]
    status = fields.get("status")
    if status is not None and status not in statuses:
        raise ValueError(
            f"Invalid {entity_type} status '{status}'. Valid: {', '.join(sorted(statuses))}"
        )
    priority = fields.get("priority")
    if priority is not None and priority not in VALID_PRIORITIES:
        raise ValueError(
            f"Invalid priority '{priority}'. Valid: {', '.join(sorted(VALID_PRIORITIES))}"
        )
    title = fields.get("title")
    if "title" in fields and (not isinstance(title, str) or not title.strip()):
        raise ValueError("Title must be a non-empty string")


def add_native_entity(
    conn: sqlite3.Connection,
    entity_type: str,
    *,
    project_id: str,
    title: str,
    status: str | None = None,
    priority: str | None = None,
    description: str | None = None,
) -> EntityRow:
    """Create a store-only record that no markdown file backs."""
    table = entity_table(entity_type)
    if status is None:
        status = "pending" if entity_type == "task" else "captured"
    if priority is None and entity_type == "task":
        priority = DEFAULT_PRIORITY
    validate_entity_fields(entity_type, {"title": title, "status": status, "priority": priority})
    entity_id = uuid.uuid4().hex[:12]
    now = _utcnow()
    conn.execute(
        f"INSERT INTO {table} (id, project_id, source_id, title, description, status,"
        " priority, data_origin, created_at, updated_at)"
        " VALUES (?, ?, NULL, ?, ?, ?, ?, 'native', ?, ?)",
        (entity_id, project_id, title, description, status, priority, now, now),
    )
    conn.commit()
    entity = get_entity(conn, entity_type, entity_id)
    assert entity is not None
    return entity


def get_entity(
    conn: sqlite3.Connection, entity_type: str, entity_id: str, project_id: str | None = None
) -> EntityRow | None:
    filters: dict[str, Any] = {"id": entity_id}
    if project_id is not None:
        filters["project_id"] = project_id
    rows = select_rows(conn, entity_table(entity_type), filters)
    return cast(EntityRow, rows[0]) if rows else None


def list_entities(
    conn: sqlite3.Connection,
    entity_type: str,
    project_id: str,
    *,
    status: str | None = None,
    data_origin: str | None = None,
) -> list[EntityRow]:
    filters: dict[str, Any] = {"project_id": project_id}
    if status:
        filters["status"] = status
    if data_origin:
        if data_origin not in VALID_DATA_ORIGINS:
            raise ValueError(
                f"Invalid data origin '{data_origin}'. "
                f"Valid: {', '.join(sorted(VALID_DATA_ORIGINS))}"
            )
        filters["data_origin"] = data_origin
    return [cast(EntityRow, r) for r in select_rows(conn, entity_table(entity_type), filters)]


def compare_and_set_entity(
    conn: sqlite3.Connection,
    entity_type: str,
    entity_id: str,
    expected_updated_at: str | None,
    fields: Mapping[str, Any],
) -> bool:
    """Update an entity only if its ``updated_at`` still equals the token.

    Returns False when another writer moved the token first. Does not commit.
    """
    table = entity_table(entity_type)
    _check_columns(table, fields)
    assignments = ", ".join(f"{k} = ?" for k in fields)
    params: list[Any] = [*fields.values(), _utcnow(), entity_id]
    sql = f"UPDATE {table} SET {assignments}, updated_at = ? WHERE id = ?"
    if expected_updated_at is not None:
        sql += " AND updated_at = ?"
        params.append(expected_updated_at)
    return conn.execute(sql, params).rowcount == 1
