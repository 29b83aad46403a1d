"""Writeback engine: turn a store-side change into a one-line edit of the source file.

A record is found again through its locator, the single line holding it is
patched (checkbox marker, title, priority or table cells) and the file is
rewritten whole. Batches go through :func:`run_writeback`, which
preflights every operation before touching any file::

    run_writeback(conn, project_id=pid, operations=[
        {"entity_type": "task", "entity_id": "ab12cd34ef56",
         "expected_updated_at": "2026-10-19T08:00:00.000000Z",
         "patch": {"status": "done"}},
    ])
"""

from __future__ import annotations

import logging
import re
import sqlite3
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, TypedDict

from worksync.db import (
    ProjectRow,
    compare_and_set_entity,
    compare_and_set_project,
    get_entity,
    get_project,
    touch_connector_heartbeat,
    validate_entity_fields,
)
from worksync.locator import (
    IdLocator,
    Locator,
    LocatorError,
    SlugLocator,
    normalize_token,
    parse_locator,
    resolve_locator_path,
    slugify,
)
from worksync.parser import (
    classify_line,
    extract_inline_id,
    parse_priority,
    resolve_columns,
    split_table_row,
)
from worksync.sync import discover_project_files, resolve_repo_path

log = logging.getLogger(__name__)

# Error codes
UNSUPPORTED_LOCATOR = "UNSUPPORTED_LOCATOR"
FILE_NOT_FOUND = "FILE_NOT_FOUND"
LOCATE_FAILED = "LOCATE_FAILED"
NO_WRITABLE_FIELDS = "NO_WRITABLE_FIELDS"
CONFLICT = "CONFLICT"
NOT_FOUND = "NOT_FOUND"
NOT_SYNCED = "NOT_SYNCED"
MISSING_SOURCE_ID = "MISSING_SOURCE_ID"
INVALID_PATCH = "INVALID_PATCH"
STATUS_FILE_MISSING = "STATUS_FILE_MISSING"

ENTITY_PATCH_FIELDS = ("status", "title", "priority", "description")
STATUS_PATCH_FIELDS = ("current_stage", "focus")
# Operation entity_type -> store entity type. ``backlog`` is kept as an alias.
OPERATION_ENTITY_TYPES = {
    "task": "task",
    "backlog_item": "backlog",
    "backlog": "backlog",
    "project_status": "project_status",
}
VALID_OPERATION_TYPES = ("task", "backlog_item", "project_status")
CHECKED_STATUSES = {"done", "archived"}

_CHECKBOX_RE = re.compile(r"^(\s*[-*+]\s*\[)([ xX])(\]\s*)(.*)$")
_ID_MARKER_RE = re.compile(
    r"<!--\s*id\s*:[^>]+-->|\b(?:id|source_id)\s*[:=]\s*[a-zA-Z0-9._:-]+", re.IGNORECASE
)
_PRIORITY_TOKEN_RE = re.compile(r"\bP[1-3]\b", re.IGNORECASE)
_PAREN_PRIORITY_RE = re.compile(r"\(P[1-3]\)", re.IGNORECASE)


class WritebackError(Exception):
    """Raised when a patch cannot be written back; ``code`` names the failure."""

    def __init__(self, message: str, code: str):
        super().__init__(message)
        self.code = code


class Preview(TypedDict):
    file_path: str
    line: int
    before: str
    after: str


# -- File I/O --


def _read_lines(path: Path) -> list[str]:
    try:
        raw = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        raise WritebackError(f"File not found: {path}", FILE_NOT_FOUND) from None
    except (OSError, UnicodeDecodeError) as exc:
        raise WritebackError(f"Cannot read {path}: {exc}", FILE_NOT_FOUND) from exc
    lines = raw.replace("\r", "").split("\n")
    if lines and lines[-1] == "":
        lines.pop()
    return lines


def _write_lines(path: Path, lines: Sequence[str]) -> None:
    path.write_text("\n".join(lines) + "\n", encoding="utf-8")


# -- Locating --


def _locate_by_id(lines: Sequence[str], token: str) -> int | None:
    escaped = re.escape(token)
    patterns = (
        re.compile(rf"<!--\s*id\s*:\s*{escaped}\s*-->", re.IGNORECASE),
        re.compile(rf"\b(?:id|source_id)\s*[:=]\s*{escaped}(?![a-zA-Z0-9._:-])", re.IGNORECASE),
    )
    for pattern in patterns:
        for idx, line in enumerate(lines):
            if pattern.search(line):
                return idx
    for idx, line in enumerate(lines):
        classified = classify_line(line)
        if classified.kind == "table_row" and any(
            normalize_token(cell) == token for cell in classified.cells
        ):
            return idx
    return None


def _line_title_slugs(line: str) -> list[str]:
    classified = classify_line(line)
    if classified.kind == "checklist":
        title, _ = extract_inline_id(classified.text)
        title, _ = parse_priority(title)
        return [slugify(title)]
    if classified.kind == "table_row":
        return [slugify(parse_priority(cell)[0]) for cell in classified.cells]
    return []


def _locate_by_slug(lines: Sequence[str], locator: SlugLocator) -> int | None:
    exact: list[int] = []
    loose: list[int] = []
    section: str | None = None
    for idx, line in enumerate(lines):
        classified = classify_line(line)
        if classified.kind == "heading":
            section = slugify(classified.text)
            continue
        slugs = [s for s in _line_title_slugs(line) if s]
        if not slugs:
            continue
        in_section = section is None or section == locator.section
        if in_section and locator.title in slugs:
            exact.append(idx)
        elif any(locator.title in s or s in locator.title for s in slugs):
            loose.append(idx)
    if len(exact) >= locator.ordinal:
        return exact[locator.ordinal - 1]
    if locator.ordinal > 1:
        # Earlier occurrences belong to other records.
        log.warning(
            "Slug locator %s: only %d matching line(s), occurrence %d is gone",
            locator.serialize(),
            len(exact),
            locator.ordinal,
        )
        return None
    candidates = loose
    if not candidates:
        return None
    if len(candidates) == 1:
        log.warning(
            "Slug locator %s has no exact match; using similar line %d",
            locator.serialize(),
            candidates[0] + 1,
        )
    else:
        log.warning(
            "Slug locator %s matches %d lines; using line %d",
            locator.serialize(),
            len(candidates),
            candidates[0] + 1,
        )
    return candidates[0]


def locate_line(lines: Sequence[str], locator: Locator) -> int | None:
    """0-based index of the line holding the record, or None."""
    if isinstance(locator, IdLocator):
        return _locate_by_id(lines, locator.token)
    return _locate_by_slug(lines, locator)


def table_header(lines: Sequence[str], row_idx: int) -> tuple[str, ...] | None:
    """Header cells of the table containing ``lines[row_idx]``."""
    for idx in range(row_idx - 1, -1, -1):
        kind = classify_line(lines[idx]).kind
        if kind == "table_separator":
            if idx == 0:
                return None
            header = classify_line(lines[idx - 1])
            return header.cells if header.kind == "table_row" else None
        if kind != "table_row":
            return None
    return None


# -- Line patching --


def patch_checkbox_line(line: str, patch: Mapping[str, Any]) -> str:
    m = _CHECKBOX_RE.match(line)
    if not m:
        return line
    mark = m.group(2)
    if patch.get("status"):
        mark = "x" if patch["status"] in CHECKED_STATUSES else " "
    body = m.group(4)

    title = (patch.get("title") or "").strip()
    if title:
        id_marker = _ID_MARKER_RE.search(body)
        rest = _ID_MARKER_RE.sub("", body)
        priority_marker = _PAREN_PRIORITY_RE.search(rest) or _PRIORITY_TOKEN_RE.search(rest)
        parts = [title]
        if priority_marker and not patch.get("priority"):
            parts.append(priority_marker.group(0))
        if id_marker:
            parts.append(id_marker.group(0))
        body = " ".join(parts)

    priority = patch.get("priority")
    if priority:
        marker = _ID_MARKER_RE.search(body)
        head, tail = (body[: marker.start()], body[marker.start() :]) if marker else (body, "")
        paren = _PAREN_PRIORITY_RE.search(head)
        if paren:
            head = f"{head[: paren.start()]}({priority}){head[paren.end() :]}"
        elif _PRIORITY_TOKEN_RE.search(head):
            head = _PRIORITY_TOKEN_RE.sub(priority, head, count=1)
        else:
            head = f"{head.rstrip()} ({priority})" + (" " if tail else "")
        body = head + tail

    return f"{m.group(1)}{mark}{m.group(3)}{body}".rstrip()


def patch_table_line(line: str, header: Sequence[str], patch: Mapping[str, Any]) -> str:
    """Rewrite the mapped cells of a table row; returns *line* when nothing changes."""
    columns = resolve_columns(header)
    cells = list(split_table_row(line))
    if len(cells) < len(header):
        cells.extend([""] * (len(header) - len(cells)))

    updates: dict[int, str] = {}
    if columns.status is not None and patch.get("status"):
        updates[columns.status] = patch["status"]
    if columns.title is not None and (patch.get("title") or "").strip():
        updates[columns.title] = patch["title"].strip()
    if columns.priority is not None and patch.get("priority"):
        updates[columns.priority] = patch["priority"]
    if columns.description is not None and isinstance(patch.get("description"), str):
        updates[columns.description] = patch["description"].replace("|", "/").strip()

    changed = {idx: value for idx, value in updates.items() if cells[idx] != value}
    if not changed:
        return line
    for idx, value in changed.items():
        cells[idx] = value
    indent = line[: len(line) - len(line.lstrip())]
    return f"{indent}| {' | '.join(cells)} |"


# -- Single-record writeback --


def apply_entity_writeback(
    source_id: str,
    project_root: str | Path,
    patch: Mapping[str, Any],
    dry_run: bool = False,
) -> Preview:
    """Patch the line *source_id* points at. Returns the before/after preview.

    Raises WritebackError with UNSUPPORTED_LOCATOR, FILE_NOT_FOUND,
    LOCATE_FAILED or NO_WRITABLE_FIELDS.
    """
    try:
        locator = parse_locator(source_id)
    except LocatorError as exc:
        raise WritebackError(str(exc), UNSUPPORTED_LOCATOR) from exc
    path = resolve_locator_path(locator, project_root)
    lines = _read_lines(path)

    idx = locate_line(lines, locator)
    if idx is None:
        raise WritebackError(f"Could not locate source_id in file: {source_id}", LOCATE_FAILED)

    before = lines[idx]
    if classify_line(before).kind == "table_row":
        header = table_header(lines, idx)
        after = patch_table_line(before, header, patch) if header else before
    else:
        after = patch_checkbox_line(before, patch)

    if after == before:
        raise WritebackError(
            f"No writable fields mapped for source_id: {source_id}", NO_WRITABLE_FIELDS
        )

    if not dry_run:
        lines[idx] = after
        _write_lines(path, lines)
        log.info("Wrote %s line %d", path, idx + 1)
    return {"file_path": str(path), "line": idx + 1, "before": before, "after": after}


def apply_status_writeback(
    status_file: str | Path,
    patch: Mapping[str, Any],
    dry_run: bool = False,
) -> list[Preview]:
    """Upsert ``current_stage:`` / ``focus:`` lines in a status file."""
    path = Path(status_file)
    lines = _read_lines(path)
    previews: list[Preview] = []

    for key in STATUS_PATCH_FIELDS:
        value = patch.get(key)
        if not isinstance(value, str) or not value.strip():
            continue
        replacement = f'{key}: "{value.strip()}"'
        idx = next(
            (i for i, line in enumerate(lines) if line.strip().lower().startswith(f"{key}:")),
            None,
        )
        if idx is None:
            lines.append(replacement)
            previews.append(
                {"file_path": str(path), "line": len(lines), "before": "", "after": replacement}
            )
        elif lines[idx] != replacement:
            previews.append(
                {
                    "file_path": str(path),
                    "line": idx + 1,
                    "before": lines[idx],
                    "after": replacement,
                }
            )
            lines[idx] = replacement

    if not previews:
        raise WritebackError("No status fields to write back", NO_WRITABLE_FIELDS)
    if not dry_run:
        _write_lines(path, lines)
        log.info("Wrote %d status line(s) to %s", len(previews), path)
    return previews


# -- Batch writeback --


class Conflict(TypedDict):
    entity_type: str
    entity_id: str | None
    code: str
    error: str


class OperationPreview(Preview):
    entity_type: str
    entity_id: str | None


class WritebackResult(TypedDict):
    project_id: str
    dry_run: bool
    strict_conflicts: bool
    rejected: bool
    status: int
    applied: int
    conflicts: list[Conflict]
    previews: list[OperationPreview]


@dataclass
class _Planned:
    entity_type: str
    entity_id: str | None
    fields: dict[str, Any]
    token: str | None
    source_id: str | None = None
    status_file: Path | None = None
    previews: list[Preview] = field(default_factory=list)


def _clean_patch(patch: Any, allowed: Sequence[str]) -> dict[str, Any]:
    if not isinstance(patch, Mapping) or not patch:
        raise WritebackError("patch must be a non-empty object", INVALID_PATCH)
    unknown = sorted(set(patch) - set(allowed))
    if unknown:
        raise WritebackError(
            f"Unsupported patch field(s): {', '.join(unknown)}. Valid: {', '.join(allowed)}",
            INVALID_PATCH,
        )
    fields = {k: v for k, v in patch.items() if v is not None}
    if not fields:
        raise WritebackError("patch has no values to write", NO_WRITABLE_FIELDS)
    return fields


def _preflight(
    conn: sqlite3.Connection,
    project: ProjectRow,
    root: Path,
    operation: Mapping[str, Any],
    strict: bool,
) -> _Planned:
    requested_type = operation.get("entity_type")
    entity_id = operation.get("entity_id")
    expected = operation.get("expected_updated_at")
    if requested_type not in OPERATION_ENTITY_TYPES:
        raise WritebackError(
            f"Invalid entity_type '{requested_type}'. Valid: {', '.join(VALID_OPERATION_TYPES)}",
            INVALID_PATCH,
        )
    entity_type = OPERATION_ENTITY_TYPES[requested_type]

    if entity_type == "project_status":
        fields = _clean_patch(operation.get("patch"), STATUS_PATCH_FIELDS)
        if expected and expected != project["updated_at"]:
            raise WritebackError(
                f"Project changed since {expected} (now {project['updated_at']})", CONFLICT
            )
        status_file = discover_project_files(root).status
        if status_file is None:
            raise WritebackError(f"No status file found under {root}", STATUS_FILE_MISSING)
        planned = _Planned(entity_type, project["id"], fields, project["updated_at"])
        planned.status_file = status_file
        planned.previews = apply_status_writeback(status_file, fields, dry_run=True)
        return planned

    fields = _clean_patch(operation.get("patch"), ENTITY_PATCH_FIELDS)
    try:
        validate_entity_fields(entity_type, fields)
    except ValueError as exc:
        raise WritebackError(str(exc), INVALID_PATCH) from exc
    if not entity_id:
        raise WritebackError("entity_id is required", INVALID_PATCH)
    entity = get_entity(conn, entity_type, entity_id, project["id"])
    if entity is None:
        raise WritebackError(f"{entity_type} '{entity_id}' not found in project", NOT_FOUND)
    if entity["data_origin"] != "synced":
        raise WritebackError(f"{entity_type} '{entity_id}' is not synced from a file", NOT_SYNCED)
    if not entity["source_id"]:
        raise WritebackError(f"{entity_type} '{entity_id}' has no source_id", MISSING_SOURCE_ID)
    if strict and not expected:
        raise WritebackError("expected_updated_at is required in strict mode", CONFLICT)
    if expected and expected != entity["updated_at"]:
        raise WritebackError(
            f"{entity_type} '{entity_id}' changed since {expected} (now {entity['updated_at']})",
            CONFLICT,
        )
    planned = _Planned(entity_type, entity_id, fields, entity["updated_at"], entity["source_id"])
    planned.previews = [apply_entity_writeback(entity["source_id"], root, fields, dry_run=True)]
    return planned


def _conflict(operation: Mapping[str, Any], exc: WritebackError) -> Conflict:
    return {
        "entity_type": str(operation.get("entity_type")),
        "entity_id": operation.get("entity_id"),
        "code": exc.code,
        "error": str(exc),
    }


def _operation_previews(planned: _Planned, previews: Sequence[Preview]) -> list[OperationPreview]:
    return [
        {"entity_type": planned.entity_type, "entity_id": planned.entity_id, **preview}
        for preview in previews
    ]


def _apply(
    conn: sqlite3.Connection, project_id: str, root: Path, planned: _Planned
) -> list[Preview]:
    if planned.entity_type == "project_status":
        if not compare_and_set_project(conn, project_id, planned.token, planned.fields):
            raise WritebackError("Project changed during writeback", CONFLICT)
        assert planned.status_file is not None
        return apply_status_writeback(planned.status_file, planned.fields)

    assert planned.entity_id is not None and planned.source_id is not None
    if not compare_and_set_entity(
        conn, planned.entity_type, planned.entity_id, planned.token, planned.fields
    ):
        raise WritebackError(
            f"{planned.entity_type} '{planned.entity_id}' changed during writeback", CONFLICT
        )
    return [apply_entity_writeback(planned.source_id, root, planned.fields)]


def run_writeback(
    conn: sqlite3.Connection,
    *,
    project_id: str,
    operations: Sequence[Mapping[str, Any]],
    dry_run: bool = False,
    strict_conflicts: bool = True,
) -> WritebackResult:
    """Preflight and apply a batch of writeback operations.

    In strict mode a single failed preflight rejects the whole batch
    before any file is written (``status`` 409). Otherwise failed
    operations are reported in ``conflicts`` and the rest go ahead.
    """
    project = get_project(conn, project_id)
    if project is None:
        raise ValueError(f"Project '{project_id}' not found")
    root = resolve_repo_path(conn, project)
    result: WritebackResult = {
        "project_id": project["id"],
        "dry_run": dry_run,
        "strict_conflicts": strict_conflicts,
        "rejected": False,
        "status": 200,
        "applied": 0,
        "conflicts": [],
        "previews": [],
    }

    planned_ops: list[_Planned] = []
    for operation in operations:
        try:
            planned = _preflight(conn, project, root, operation, strict_conflicts)
        except WritebackError as exc:
            result["conflicts"].append(_conflict(operation, exc))
            continue
        planned_ops.append(planned)
        result["previews"].extend(_operation_previews(planned, planned.previews))

    if strict_conflicts and result["conflicts"]:
        log.info(
            "Writeback for project %s rejected: %d conflict(s)",
            project["name"],
            len(result["conflicts"]),
        )
        result["rejected"] = True
        result["status"] = 409
        return result
    if dry_run or not planned_ops:
        return result

    result["previews"] = []
    for planned in planned_ops:
        try:
            previews = _apply(conn, project["id"], root, planned)
        except WritebackError as exc:
            conn.rollback()
            result["conflicts"].append(
                _conflict({"entity_type": planned.entity_type, "entity_id": planned.entity_id}, exc)
            )
            continue
        conn.commit()
        result["applied"] += 1
        result["previews"].extend(_operation_previews(planned, previews))

    if result["applied"]:
        touch_connector_heartbeat(conn, project["id"])
    log.info(
        "Writeback for project %s: %d applied, %d conflict(s)",
        project["name"],
        result["applied"],
        len(result["conflicts"]),
    )
    return result
