"""Stable record identity: locators, slugging and source-id path normalization.

A locator pins a parsed record to its place in a markdown file. It is kept
as a tagged value while parsing and only turned into the string form
``<file>:<mode>:<token>`` (the ``source_id``) at the store boundary::

    ./docs/tasks.md:id:login-bug
    ./docs/tasks.md:slug:sprint-1:write-docs:2
"""

from __future__ import annotations

import posixpath
import re
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import ClassVar

SOURCE_ID_RE = re.compile(r"^(.*?):(id|slug):(.*)$")
_DRIVE_RE = re.compile(r"^[a-zA-Z]:[\\/]")
_TAG_RE = re.compile(r"<[^>]+>")
_NON_ALNUM_RE = re.compile(r"[^a-z0-9]+")
_TOKEN_CHARS_RE = re.compile(r"[^a-z0-9._:-]+")

SLUG_MAX_LENGTH = 80


class LocatorError(ValueError):
    """Raised when a source_id does not follow the locator grammar."""


def slugify(value: str) -> str:
    slug = _TAG_RE.sub("", value.lower())
    slug = _NON_ALNUM_RE.sub("-", slug).strip("-")
    return slug[:SLUG_MAX_LENGTH]


def normalize_token(value: str) -> str:
    """Canonical form of an explicit identifier (``Login Bug`` -> ``login-bug``)."""
    return _TOKEN_CHARS_RE.sub("-", value.strip().lower()).strip("-")


@dataclass(frozen=True)
class IdLocator:
    file_path: str
    token: str

    mode: ClassVar[str] = "id"

    def serialize(self) -> str:
        return f"{self.file_path}:id:{self.token}"


@dataclass(frozen=True)
class SlugLocator:
    file_path: str
    section: str
    title: str
    ordinal: int = 1

    mode: ClassVar[str] = "slug"

    @property
    def token(self) -> str:
        token = f"{self.section}:{self.title}"
        return f"{token}:{self.ordinal}" if self.ordinal > 1 else token

    def serialize(self) -> str:
        return f"{self.file_path}:slug:{self.token}"


Locator = IdLocator | SlugLocator


@dataclass
class LocatorAssigner:
    """Hands out locators for one parse of one file.

    Repeated (section, title) slug pairs get ordinals 2, 3, ... in
    document order. Create a fresh assigner per parse.
    """

    file_path: str
    _seen: dict[tuple[str, str], int] = field(default_factory=dict, init=False, repr=False)

    def assign(self, section: str, title: str, explicit_id: str | None = None) -> Locator:
        if explicit_id:
            token = normalize_token(explicit_id)
            if token:
                return IdLocator(self.file_path, token)
        section_slug = slugify(section or "section") or "section"
        title_slug = slugify(title or "item") or "item"
        key = (section_slug, title_slug)
        ordinal = self._seen.get(key, 0) + 1
        self._seen[key] = ordinal
        return SlugLocator(self.file_path, section_slug, title_slug, ordinal)


def parse_locator(source_id: str) -> Locator:
    match = SOURCE_ID_RE.match(source_id or "")
    if not match:
        raise LocatorError(f"Unsupported source_id format: {source_id!r}")
    file_path, mode, token = match.groups()
    if not file_path or not token:
        raise LocatorError(f"Unsupported source_id format: {source_id!r}")
    if mode == "id":
        return IdLocator(file_path, token)
    parts = token.split(":")
    ordinal = 1
    if len(parts) >= 3 and parts[-1].isdigit():
        ordinal = int(parts.pop())
    if len(parts) == 1:
        return SlugLocator(file_path, "", parts[0], ordinal)
    return SlugLocator(file_path, parts[0], ":".join(parts[1:]), ordinal)


def with_file_path(locator: Locator, file_path: str) -> Locator:
    return replace(locator, file_path=file_path)


def is_absolute_source_id(source_id: str | None) -> bool:
    if not source_id:
        return False
    return source_id.startswith("/") or bool(_DRIVE_RE.match(source_id))


def _path_parts(path_text: str, root_text: str) -> list[str]:
    """Lexically resolve *path_text* against *root_text* and split it."""
    path_text = path_text.replace("\\", "/")
    if _DRIVE_RE.match(path_text):
        drive, rest = path_text[:2], path_text[2:]
        return [drive.upper(), *[p for p in posixpath.normpath(rest).split("/") if p]]
    if not path_text.startswith("/"):
        path_text = posixpath.join(root_text, path_text)
    return ["/", *[p for p in posixpath.normpath(path_text).split("/") if p]]


def _join_parts(parts: list[str]) -> str:
    if parts[0] == "/":
        return "/" + "/".join(parts[1:])
    return parts[0] + "/" + "/".join(parts[1:])


def normalize_path(file_path: str, project_root: str | Path) -> str:
    """Rewrite *file_path* relative to *project_root* (``./docs/tasks.md``).

    Paths outside the root are relativized from the last path component
    equal to the root's base name; anything else stays absolute.
    """
    root_text = str(project_root).replace("\\", "/")
    root_parts = _path_parts(root_text, "/")
    parts = _path_parts(file_path, _join_parts(root_parts))

    if parts[: len(root_parts)] == root_parts:
        rel = parts[len(root_parts) :]
        return "./" + "/".join(rel) if rel else "."

    base = root_parts[-1] if len(root_parts) > 1 else ""
    if base:
        for idx in range(len(parts) - 2, 0, -1):
            if parts[idx] == base:
                return "./" + "/".join(parts[idx + 1 :])

    return _join_parts(parts)


def normalize_source_id(source_id: str, project_root: str | Path) -> str:
    """Normalize the file part of *source_id*; the mode and token are untouched.

    Strings that are not locators are returned as-is.
    """
    match = SOURCE_ID_RE.match(source_id or "")
    if not match:
        return source_id
    file_path, mode, token = match.groups()
    if not file_path:
        return source_id
    return f"{normalize_path(file_path, project_root)}:{mode}:{token}"


def resolve_locator_path(locator: Locator, project_root: str | Path) -> Path:
    """Filesystem path of the file a locator points into."""
    path_text = locator.file_path.replace("\\", "/")
    if path_text.startswith("/") or _DRIVE_RE.match(path_text):
        return Path(path_text)
    return Path(project_root) / path_text
