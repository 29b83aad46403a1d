"""JSON stdin/stdout dispatch layer for the dashboard (and any non-CLI consumer).

Protocol:
    stdin:  {"method": "task.list", "params": {"project": "web"}}
    stdout: {"ok": true, "data": {...}}
    stdout: {"ok": false, "error": "Not found", "code": "NOT_FOUND"}

Always exits 0. Always returns JSON on stdout. No stderr parsing needed.
Entry point: ``worksync-api`` console script (pyproject.toml).
"""

from __future__ import annotations

import json
import sys
from collections.abc import Callable
from pathlib import Path
from typing import Any

from jsonschema import ValidationError, validate

from worksync.db import (
    ProjectRow,
    connect,
    connector_config,
    get_connector,
    get_project,
    list_entities,
    list_projects,
    project_to_dict,
)
from worksync.quality import REMEDIATION_ACTIONS, build_sync_quality_report, remediate
from worksync.reconcile import ingest
from worksync.status_reference import get_status_reference
from worksync.sync import sync_project
from worksync.writeback import OPERATION_ENTITY_TYPES, run_writeback

# ---------------------------------------------------------------------------
# Error codes
# ---------------------------------------------------------------------------

NOT_FOUND = "NOT_FOUND"
INVALID_PARAMS = "INVALID_PARAMS"
INVALID_METHOD = "INVALID_METHOD"
CONFLICT = "CONFLICT"
INTERNAL = "INTERNAL"


class ApiError(Exception):
    """Raised by handlers to produce a structured error response."""

    def __init__(self, message: str, code: str = INTERNAL, data: Any = None, status: int = 400):
        super().__init__(message)
        self.code = code
        self.data = data
        self.status = status


def _require(params: dict, key: str) -> str:
    """Extract a required string param, raising ApiError if missing."""
    val = params.get(key)
    if not val:
        raise ApiError(f"Missing required param: {key}", INVALID_PARAMS)
    return str(val)


def _optional(params: dict, key: str) -> str | None:
    val = params.get(key)
    return str(val) if val is not None else None


def _optional_bool(params: dict, key: str, default: bool = False) -> bool:
    val = params.get(key)
    if val is None:
        return default
    if isinstance(val, bool):
        return val
    if isinstance(val, str):
        return val.lower() in ("1", "true", "yes")
    return bool(val)


def _validate(params: dict, schema: dict) -> None:
    try:
        validate(instance=params, schema=schema)
    except ValidationError as exc:
        where = "/".join(str(p) for p in exc.absolute_path)
        prefix = f"{where}: " if where else ""
        raise ApiError(f"{prefix}{exc.message}", INVALID_PARAMS) from None


def _resolve_project(conn, params: dict) -> ProjectRow:
    name_or_id = params.get("project") or params.get("project_id")
    if not name_or_id:
        raise ApiError("Missing required param: project", INVALID_PARAMS)
    project = get_project(conn, str(name_or_id))
    if not project:
        raise ApiError(f"Project '{name_or_id}' not found", NOT_FOUND)
    return project


# ---------------------------------------------------------------------------
# Request schemas
# ---------------------------------------------------------------------------

_RECORD_SCHEMA = {
    "type": "object",
    "required": ["source_id", "title"],
    "properties": {
        "source_id": {"type": "string", "minLength": 1},
        "title": {"type": "string"},
        "status": {"type": "string"},
        "priority": {"type": ["string", "null"], "enum": ["P1", "P2", "P3", None]},
        "description": {"type": ["string", "null"]},
    },
}

# Either the project name or its id identifies the target.
_PROJECT_REF = [{"required": ["project"]}, {"required": ["project_id"]}]
_PROJECT_PROPERTIES = {
    "project": {"type": "string", "minLength": 1},
    "project_id": {"type": "string", "minLength": 1},
}

INGEST_SCHEMA = {
    "type": "object",
    "anyOf": _PROJECT_REF,
    "properties": {
        **_PROJECT_PROPERTIES,
        "repo_path": {"type": ["string", "null"]},
        "tasks": {"type": "array", "items": _RECORD_SCHEMA},
        "backlog": {"type": "array", "items": _RECORD_SCHEMA},
        "status": {
            "type": ["object", "null"],
            "properties": {
                "current_status": {"type": "string"},
                "current_stage": {"type": ["string", "null"]},
                "focus": {"type": ["string", "null"]},
                "blockers": {"type": "array", "items": {"type": "string"}},
                "pending_decisions": {"type": "array", "items": {"type": "string"}},
            },
        },
        "intent_summary": {"type": ["string", "null"]},
    },
}

WRITEBACK_SCHEMA = {
    "type": "object",
    "required": ["operations"],
    "anyOf": _PROJECT_REF,
    "properties": {
        **_PROJECT_PROPERTIES,
        "dry_run": {"type": "boolean"},
        "strict_conflicts": {"type": "boolean"},
        "operations": {
            "type": "array",
            "minItems": 1,
            "items": {
                "type": "object",
                "required": ["entity_type", "patch"],
                "properties": {
                    "entity_type": {"enum": list(OPERATION_ENTITY_TYPES)},
                    "entity_id": {"type": ["string", "null"]},
                    "expected_updated_at": {"type": ["string", "null"]},
                    "patch": {"type": "object"},
                },
            },
        },
    },
}


# ---------------------------------------------------------------------------
# Handlers
# ---------------------------------------------------------------------------


def _handle_project_list(conn, params: dict) -> list[dict]:
    return [project_to_dict(p) for p in list_projects(conn)]


def _handle_project_show(conn, params: dict) -> dict:
    project = _resolve_project(conn, params)
    data = project_to_dict(project)
    connector = get_connector(conn, project["id"])
    data["connector"] = (
        {**connector, "config": connector_config(connector)} if connector else None
    )
    return data


def _entity_list(conn, params: dict, entity_type: str) -> list[dict]:
    project = _resolve_project(conn, params)
    try:
        rows = list_entities(
            conn,
            entity_type,
            project["id"],
            status=_optional(params, "status"),
            data_origin=_optional(params, "data_origin"),
        )
    except ValueError as exc:
        raise ApiError(str(exc), INVALID_PARAMS) from None
    return [dict(r) for r in rows]


def _handle_task_list(conn, params: dict) -> list[dict]:
    return _entity_list(conn, params, "task")


def _handle_backlog_list(conn, params: dict) -> list[dict]:
    return _entity_list(conn, params, "backlog")


def _handle_connector_show(conn, params: dict) -> dict:
    project = _resolve_project(conn, params)
    connector = get_connector(conn, project["id"])
    if not connector:
        raise ApiError(f"Project '{project['name']}' has no connector", NOT_FOUND)
    return {**connector, "config": connector_config(connector)}


def _handle_sync_project(conn, params: dict) -> dict:
    project = _resolve_project(conn, params)
    try:
        return sync_project(conn, project["id"], _optional(params, "repo_path"))
    except ValueError as exc:
        raise ApiError(str(exc), INVALID_PARAMS) from None


def _handle_sync_ingest(conn, params: dict) -> dict:
    _validate(params, INGEST_SCHEMA)
    project = _resolve_project(conn, params)
    try:
        return dict(
            ingest(
                conn,
                project_id=project["id"],
                repo_path=params.get("repo_path"),
                tasks=params.get("tasks") or [],
                backlog=params.get("backlog") or [],
                status=params.get("status"),
                intent_summary=params.get("intent_summary"),
            )
        )
    except ValueError as exc:
        raise ApiError(str(exc), INVALID_PARAMS) from None


def _handle_writeback(conn, params: dict) -> dict:
    _validate(params, WRITEBACK_SCHEMA)
    project = _resolve_project(conn, params)
    result = run_writeback(
        conn,
        project_id=project["id"],
        operations=params["operations"],
        dry_run=_optional_bool(params, "dry_run"),
        strict_conflicts=_optional_bool(params, "strict_conflicts", default=True),
    )
    if result["rejected"]:
        raise ApiError(
            f"Writeback rejected: {len(result['conflicts'])} conflict(s)",
            CONFLICT,
            data=result,
            status=409,
        )
    return dict(result)


def _handle_sync_quality(conn, params: dict) -> dict:
    stale_hours = params.get("stale_hours")
    if stale_hours is not None and not isinstance(stale_hours, int | float):
        raise ApiError("stale_hours must be a number", INVALID_PARAMS)
    project_id = None
    if params.get("project"):
        project_id = _resolve_project(conn, params)["id"]
    return dict(
        build_sync_quality_report(
            conn,
            project_id=project_id,
            stale_hours=stale_hours,
            include_unconfigured=_optional_bool(params, "include_unconfigured"),
        )
    )


def _handle_sync_quality_remediate(conn, params: dict) -> dict:
    project = _resolve_project(conn, params)
    action = _require(params, "action")
    if action not in REMEDIATION_ACTIONS:
        raise ApiError(
            f"Invalid action '{action}'. Valid: {', '.join(REMEDIATION_ACTIONS)}",
            INVALID_PARAMS,
        )
    if get_connector(conn, project["id"]) is None:
        raise ApiError(f"Project '{project['name']}' has no connector", NOT_FOUND)
    return remediate(conn, project["id"], action)


def _handle_help_status(conn, params: dict) -> dict:
    return get_status_reference()


METHODS: dict[str, Callable] = {
    # projects
    "project.list": _handle_project_list,
    "project.show": _handle_project_show,
    "connector.show": _handle_connector_show,
    # records
    "task.list": _handle_task_list,
    "backlog.list": _handle_backlog_list,
    # sync
    "sync.project": _handle_sync_project,
    "sync.ingest": _handle_sync_ingest,
    "writeback": _handle_writeback,
    "sync_quality": _handle_sync_quality,
    "sync_quality.remediate": _handle_sync_quality_remediate,
    # reference
    "help_status": _handle_help_status,
}


def dispatch(request: dict, *, db_path: Path | None = None) -> dict:
    """Process a single API request and return the response dict.

    Args:
        request: ``{"method": "...", "params": {...}}``
        db_path: Override the default database path. When ``None``,
            uses ``DEFAULT_DB_PATH`` (``~/.config/worksync/worksync.db`` or
            ``WORKSYNC_DB_PATH`` env var).
    """
    method = request.get("method")
    if not method or not isinstance(method, str):
        return {"ok": False, "error": "Missing or invalid 'method'", "code": INVALID_METHOD}

    handler = METHODS.get(method)
    if not handler:
        return {"ok": False, "error": f"Unknown method: {method}", "code": INVALID_METHOD}

    params = request.get("params") or {}
    if not isinstance(params, dict):
        return {"ok": False, "error": "'params' must be an object", "code": INVALID_PARAMS}

    try:
        with connect(db_path) if db_path else connect() as conn:
            data = handler(conn, params)
        return {"ok": True, "data": data}
    except ApiError as exc:
        response: dict[str, Any] = {"ok": False, "error": str(exc), "code": exc.code}
        if exc.data is not None:
            response["data"] = exc.data
            response["status"] = exc.status
        return response
    except Exception as exc:
        return {"ok": False, "error": str(exc), "code": INTERNAL}


def main() -> None:
    """Read JSON request from stdin, dispatch, write JSON response to stdout."""
    try:
        raw = sys.stdin.read()
        if not raw.strip():
            response = {"ok": False, "error": "Empty request", "code": INVALID_PARAMS}
        else:
            request = json.loads(raw)
            response = dispatch(request)
    except json.JSONDecodeError as exc:
        response = {"ok": False, "error": f"Invalid JSON: {exc}", "code": INVALID_PARAMS}
    except Exception as exc:
        response = {"ok": False, "error": str(exc), "code": INTERNAL}

    sys.stdout.write(json.dumps(response, default=str))
    sys.stdout.write("\n")
    sys.stdout.flush()


if __name__ == "__main__":
    main()
