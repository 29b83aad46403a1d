"""Markdown extractor for task, backlog, status and intent files.

Two record dialects are understood, checklist items and pipe tables::

    ## Sprint 1
    - [ ] Fix login bug (P1) <!-- id: login-bug -->
    - [x] Write docs

    | ID  | Item      | Status      | Priority |
    |-----|-----------|-------------|----------|
    | B12 | Add OAuth | In Progress | P2       |

plus one status-block dialect (``key: value`` lines and headed sections).

Every line is classified first (:func:`classify_line`); each dialect is
then a small state machine over the classified lines. Parsing never
raises on content: a missing or unreadable file yields an empty result.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Literal

from worksync.locator import Locator, LocatorAssigner

log = logging.getLogger(__name__)

LineKind = Literal[
    "heading",
    "checklist",
    "table_separator",
    "table_row",
    "key_value",
    "bullet",
    "blank",
    "text",
]

_HEADING_RE = re.compile(r"^(#{1,6})\s+(.*?)(?:\s+#+)?\s*$")
_CHECKLIST_RE = re.compile(r"^[-*+]\s+\[([ xX])\]\s*(.*)$")
_BULLET_RE = re.compile(r"^(?:[-*+]|\d+[.)])\s+(.*)$")
_KEY_VALUE_RE = re.compile(r"^([A-Za-z][A-Za-z0-9 _-]*?)\s*:\s*(\S.*)$")
_SEPARATOR_CELL_RE = re.compile(r"^:?-{3,}:?$")

_PAREN_PRIORITY_RE = re.compile(r"\((P[1-3])\)", re.IGNORECASE)
_BARE_PRIORITY_RE = re.compile(r"\b(P[1-3])\b", re.IGNORECASE)
_COMMENT_ID_RE = re.compile(r"<!--\s*id\s*:\s*([a-zA-Z0-9._:-]+)\s*-->", re.IGNORECASE)
_INLINE_ID_RE = re.compile(r"\b(?:id|source_id)\s*[:=]\s*([a-zA-Z0-9._:-]+)", re.IGNORECASE)
_COMMENT_RE = re.compile(r"<!--.*?-->")
_SPACES_RE = re.compile(r"\s{2,}")

DEFAULT_TASK_PRIORITY = "P2"
INTENT_MIN_LENGTH = 24
INTENT_MAX_LENGTH = 220

STAGE_KEYWORDS = (
    "discover",
    "design",
    "develop",
    "build",
    "validate",
    "deliver",
    "operate",
    "improve",
)

_TASK_STATUS_KEYWORDS: tuple[tuple[tuple[str, ...], str], ...] = (
    (("done", "complete"), "done"),
    (("progress", "doing", "active"), "in_progress"),
    (("block",), "blocked"),
)

_BACKLOG_STATUS_KEYWORDS: tuple[tuple[tuple[str, ...], str], ...] = (
    (("archive",), "archived"),
    (("promot",), "promoted"),
    (("priorit",), "prioritized"),
    (("triage",), "triaged"),
    (("captur", "queue"), "captured"),
    (("progress", "doing", "active"), "triaged"),
)

_TASK_HEADER_KEYWORDS = ("task", "status")
_BACKLOG_HEADER_KEYWORDS = ("item", "task", "status")


# -- Line classification --


@dataclass(frozen=True)
class Line:
    kind: LineKind
    raw: str
    text: str = ""
    checked: bool = False
    cells: tuple[str, ...] = ()
    key: str = ""


def split_table_row(text: str) -> tuple[str, ...]:
    body = text.strip()
    if body.startswith("|"):
        body = body[1:]
    if body.endswith("|"):
        body = body[:-1]
    return tuple(cell.strip() for cell in body.split("|"))


def classify_line(raw: str) -> Line:
    stripped = raw.strip()
    if not stripped:
        return Line("blank", raw)
    m = _HEADING_RE.match(stripped)
    if m:
        return Line("heading", raw, text=m.group(2).strip())
    m = _CHECKLIST_RE.match(stripped)
    if m:
        return Line("checklist", raw, text=m.group(2).strip(), checked=m.group(1) in "xX")
    if stripped.startswith("|"):
        cells = split_table_row(stripped)
        non_empty = [c for c in cells if c]
        if non_empty and all(_SEPARATOR_CELL_RE.match(c) for c in non_empty):
            return Line("table_separator", raw, cells=cells)
        return Line("table_row", raw, cells=cells)
    m = _BULLET_RE.match(stripped)
    if m:
        return Line("bullet", raw, text=m.group(1).strip())
    m = _KEY_VALUE_RE.match(stripped)
    if m:
        key = re.sub(r"[\s-]+", "_", m.group(1).strip().lower())
        return Line("key_value", raw, text=m.group(2).strip(), key=key)
    return Line("text", raw, text=stripped)


def classify_lines(text: str) -> list[Line]:
    return [classify_line(raw) for raw in text.replace("\r", "").split("\n")]


# -- Field helpers --


def parse_priority(text: str) -> tuple[str, str | None]:
    """Split a ``P1``-``P3`` marker off *text*. Returns (cleaned text, priority)."""
    m = _PAREN_PRIORITY_RE.search(text) or _BARE_PRIORITY_RE.search(text)
    if not m:
        return text, None
    cleaned = _SPACES_RE.sub(" ", text[: m.start()] + text[m.end() :]).strip()
    return cleaned, m.group(1).upper()


def extract_inline_id(text: str) -> tuple[str, str | None]:
    """Split an explicit identifier off *text*. Returns (cleaned text, identifier)."""
    identifier = None
    m = _COMMENT_ID_RE.search(text) or _INLINE_ID_RE.search(text)
    if m:
        identifier = m.group(1)
        text = text[: m.start()] + text[m.end() :]
    text = _COMMENT_RE.sub("", text)
    return _SPACES_RE.sub(" ", text).strip(), identifier


def _match_keywords(
    value: str, table: tuple[tuple[tuple[str, ...], str], ...]
) -> str | None:
    lowered = value.lower()
    for keywords, status in table:
        if any(k in lowered for k in keywords):
            return status
    return None


def map_task_status(raw: str) -> str:
    if raw.strip().lower() == "x":
        return "done"
    return _match_keywords(raw, _TASK_STATUS_KEYWORDS) or "pending"


def map_backlog_status(raw: str, section: str = "") -> str:
    return (
        _match_keywords(raw, _BACKLOG_STATUS_KEYWORDS)
        or _match_keywords(section, _BACKLOG_STATUS_KEYWORDS)
        or "captured"
    )


def strip_wrapping_quotes(value: str) -> str:
    value = value.strip()
    if len(value) >= 2 and value[0] == value[-1] and value[0] in "\"'":
        return value[1:-1].strip()
    return value


def normalize_stage(raw: str | None) -> str | None:
    """Map free text onto one of the canonical stage names, if any keyword occurs."""
    if not raw:
        return None
    lowered = strip_wrapping_quotes(raw).lower()
    for keyword in STAGE_KEYWORDS:
        if keyword in lowered:
            return keyword.capitalize()
    return None


def derive_stage(current_status: str | None) -> str | None:
    return normalize_stage(current_status)


# -- Records --


@dataclass(frozen=True)
class ExtractedTask:
    title: str
    status: str
    priority: str
    locator: Locator
    description: str | None = None

    @property
    def source_id(self) -> str:
        return self.locator.serialize()

    def to_dict(self) -> dict[str, Any]:
        return {
            "source_id": self.source_id,
            "title": self.title,
            "status": self.status,
            "priority": self.priority,
            "description": self.description,
        }


@dataclass(frozen=True)
class ExtractedBacklogItem:
    title: str
    status: str
    locator: Locator
    priority: str | None = None
    description: str | None = None

    @property
    def source_id(self) -> str:
        return self.locator.serialize()

    def to_dict(self) -> dict[str, Any]:
        return {
            "source_id": self.source_id,
            "title": self.title,
            "status": self.status,
            "priority": self.priority,
            "description": self.description,
        }


@dataclass(frozen=True)
class ExtractedStatus:
    current_status: str
    current_stage: str | None = None
    focus: str | None = None
    blockers: tuple[str, ...] = ()
    pending_decisions: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {
            "current_status": self.current_status,
            "current_stage": self.current_stage,
            "focus": self.focus,
            "blockers": list(self.blockers),
            "pending_decisions": list(self.pending_decisions),
        }


UNKNOWN_STATUS = ExtractedStatus(current_status="Unknown")


# -- Table dialect --


@dataclass(frozen=True)
class TableColumns:
    title: int | None = None
    status: int | None = None
    id: int | None = None
    priority: int | None = None
    description: int | None = None


def _first(headers: Sequence[str], predicate, exclude: int | None = None) -> int | None:
    for idx, header in enumerate(headers):
        if idx != exclude and predicate(header):
            return idx
    return None


def resolve_columns(header: Sequence[str]) -> TableColumns:
    """Map header cells to column indices by case-insensitive keyword match."""
    headers = [h.strip().lower() for h in header]
    id_idx = _first(headers, lambda h: h == "id")
    if id_idx is None:
        id_idx = _first(headers, lambda h: re.search(r"\bid\b", h) is not None)
    return TableColumns(
        title=_first(headers, lambda h: any(k in h for k in ("task", "item", "title")), id_idx),
        status=_first(headers, lambda h: "status" in h),
        id=id_idx,
        priority=_first(headers, lambda h: "priority" in h or h == "pri"),
        description=_first(
            headers, lambda h: any(k in h for k in ("description", "note", "detail"))
        ),
    )


def _cell(cells: Sequence[str], idx: int | None) -> str:
    if idx is None or idx >= len(cells):
        return ""
    return cells[idx]


@dataclass
class _RowFields:
    title: str
    raw_status: str | None
    explicit_id: str | None
    priority: str | None
    description: str | None


@dataclass
class _TableMachine:
    """``outside`` -> ``header`` -> ``rows``; any non-table line goes back to ``outside``."""

    header_keywords: tuple[str, ...]
    state: Literal["outside", "header", "rows"] = "outside"
    columns: TableColumns = field(default_factory=TableColumns)

    def reset(self) -> None:
        self.state = "outside"
        self.columns = TableColumns()

    def feed(self, line: Line) -> _RowFields | None:
        if line.kind == "table_separator":
            if self.state == "header":
                self.state = "rows"
            return None
        if line.kind != "table_row":
            self.reset()
            return None
        if self.state == "outside":
            if any(k in c.lower() for c in line.cells for k in self.header_keywords):
                self.columns = resolve_columns(line.cells)
                self.state = "header"
            return None
        self.state = "rows"
        return self._row(line.cells)

    def _row(self, cells: Sequence[str]) -> _RowFields | None:
        cols = self.columns
        if cols.title is None:
            return None
        title, inline_id = extract_inline_id(_cell(cells, cols.title))
        title, title_priority = parse_priority(title)
        if not title:
            return None
        column_priority = None
        if cols.priority is not None:
            _, column_priority = parse_priority(_cell(cells, cols.priority))
        return _RowFields(
            title=title,
            raw_status=_cell(cells, cols.status) if cols.status is not None else None,
            explicit_id=_cell(cells, cols.id) or inline_id,
            priority=column_priority or title_priority,
            description=_cell(cells, cols.description) or None,
        )


# -- Record dialects --


def extract_tasks(text: str, file_path: str) -> list[ExtractedTask]:
    """Extract tasks in document order from the text of a tasks file."""
    assigner = LocatorAssigner(file_path)
    table = _TableMachine(_TASK_HEADER_KEYWORDS)
    section = "tasks"
    tasks: list[ExtractedTask] = []

    for line in classify_lines(text):
        if line.kind == "heading":
            section = line.text
        if line.kind == "checklist":
            table.reset()
            title, explicit_id = extract_inline_id(line.text)
            title, priority = parse_priority(title)
            if not title:
                continue
            status = "done" if line.checked else map_task_status(title)
            tasks.append(
                ExtractedTask(
                    title=title,
                    status=status,
                    priority=priority or DEFAULT_TASK_PRIORITY,
                    locator=assigner.assign(section, title, explicit_id),
                )
            )
            continue
        row = table.feed(line)
        if row is None:
            continue
        tasks.append(
            ExtractedTask(
                title=row.title,
                status=map_task_status(row.raw_status) if row.raw_status else "pending",
                priority=row.priority or DEFAULT_TASK_PRIORITY,
                locator=assigner.assign(section, row.title, row.explicit_id),
                description=row.description,
            )
        )
    return tasks


def extract_backlog(text: str, file_path: str) -> list[ExtractedBacklogItem]:
    """Extract backlog items in document order from the text of a backlog file."""
    assigner = LocatorAssigner(file_path)
    table = _TableMachine(_BACKLOG_HEADER_KEYWORDS)
    section = "backlog"
    items: list[ExtractedBacklogItem] = []

    for line in classify_lines(text):
        if line.kind == "heading":
            section = line.text
        if line.kind == "checklist":
            table.reset()
            title, explicit_id = extract_inline_id(line.text)
            title, priority = parse_priority(title)
            if not title:
                continue
            status = "archived" if line.checked else map_backlog_status(title, section)
            items.append(
                ExtractedBacklogItem(
                    title=title,
                    status=status,
                    priority=priority,
                    locator=assigner.assign(section, title, explicit_id),
                )
            )
            continue
        row = table.feed(line)
        if row is None:
            continue
        items.append(
            ExtractedBacklogItem(
                title=row.title,
                status=map_backlog_status(row.raw_status or "", section),
                priority=row.priority,
                locator=assigner.assign(section, row.title, row.explicit_id),
                description=row.description,
            )
        )
    return items


# -- Status dialect --

_STATUS_KEYS = {
    "current_status": "status",
    "status": "status",
    "current_stage": "stage",
    "stage": "stage",
    "focus": "focus",
}


def _status_section(heading: str) -> str | None:
    h = heading.lower()
    if "current status" in h or h == "status":
        return "status"
    if "current stage" in h or h == "stage":
        return "stage"
    if "blocker" in h:
        return "blockers"
    if "pending decision" in h:
        return "pending_decisions"
    if h == "focus" or "current focus" in h:
        return "focus"
    return None


def extract_status(text: str) -> ExtractedStatus:
    current_status = "Unknown"
    stage: str | None = None
    focus: str | None = None
    blockers: list[str] = []
    decisions: list[str] = []
    section: str | None = None

    for line in classify_lines(text):
        if line.kind == "key_value" and line.key in _STATUS_KEYS:
            value = strip_wrapping_quotes(line.text)
            target = _STATUS_KEYS[line.key]
            if target == "focus":
                focus = value
            elif target == "stage":
                stage = value
            else:
                current_status = value
            continue
        if line.kind == "heading":
            section = _status_section(line.text)
            continue
        if line.kind == "blank" or section is None:
            continue

        is_item = line.kind in ("bullet", "checklist")
        if section in ("status", "stage"):
            if not is_item:
                value = strip_wrapping_quotes(line.raw.strip())
                if section == "status":
                    current_status = value
                else:
                    stage = value
                section = None
        elif section == "focus":
            if focus is None:
                focus = line.text if is_item else line.raw.strip()
            section = None
        elif is_item and line.text:
            (blockers if section == "blockers" else decisions).append(line.text)

    return ExtractedStatus(
        current_status=current_status,
        current_stage=normalize_stage(stage) or normalize_stage(current_status) or stage,
        focus=focus,
        blockers=tuple(blockers),
        pending_decisions=tuple(decisions),
    )


def extract_intent_summary(text: str) -> str | None:
    """First substantial prose line of an intent file, or None."""
    in_frontmatter = False
    for raw in text.replace("\r", "").split("\n"):
        line = raw.strip()
        if not line:
            continue
        if line == "---":
            in_frontmatter = not in_frontmatter
            continue
        if in_frontmatter or line.startswith("#"):
            continue
        cleaned = re.sub(r"^[-*]\s+", "", line).strip()
        if re.match(r"^[a-z0-9_]+\s*:", cleaned, re.IGNORECASE):
            continue
        if len(cleaned) >= INTENT_MIN_LENGTH:
            return cleaned[:INTENT_MAX_LENGTH]
    return None


# -- File wrappers --


def _read_text(path: str | Path | None) -> str | None:
    if path is None:
        return None
    try:
        return Path(path).read_text(encoding="utf-8")
    except FileNotFoundError:
        log.debug("No file at %s", path)
    except (OSError, UnicodeDecodeError):
        log.warning("Failed to read %s", path, exc_info=True)
    return None


def parse_tasks_md(path: str | Path | None, label: str | None = None) -> list[ExtractedTask]:
    """Parse a tasks file. *label* overrides the file part of the locators."""
    text = _read_text(path)
    if text is None:
        return []
    return extract_tasks(text, label or str(path))


def parse_backlog_md(
    path: str | Path | None, label: str | None = None
) -> list[ExtractedBacklogItem]:
    text = _read_text(path)
    if text is None:
        return []
    return extract_backlog(text, label or str(path))


def parse_status_md(path: str | Path | None) -> ExtractedStatus:
    text = _read_text(path)
    if text is None:
        return UNKNOWN_STATUS
    return extract_status(text)


def parse_intent_summary(path: str | Path | None) -> str | None:
    text = _read_text(path)
    if text is None:
        return None
    return extract_intent_summary(text)
