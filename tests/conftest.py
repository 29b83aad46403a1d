"""Shared test fixtures: template DB for fast per-test isolation."""

import shutil
import sqlite3
import tempfile
from pathlib import Path

import pytest

from worksync.db import add_project, get_connection, get_project

TASKS_MD = """\
# Tasks

## Sprint 1
- [ ] Fix login bug (P1) <!-- id: login-bug -->
- [x] Write docs
- [ ] Write docs
- [ ] Ship release in progress

## Later
| ID | Task | Status | Priority |
|----|------|--------|----------|
| T-7 | Migrate storage | blocked | P3 |
"""

BACKLOG_MD = """\
# Backlog

| ID | Item | Type | Component | Pri | Size | Status |
|----|------|------|-----------|-----|------|--------|
| B12 | Add export | Bug | UI | P2 | M | In Progress |
| B13 | Dark mode | Feature | UI | P3 | S | Captured |

## Ideas
- [ ] Offline support
- [x] Old idea
"""

STATUS_MD = """\
# Status

current_status: "Develop phase, API hardening"
focus: "Stabilize sync"

## Blockers
- Waiting on API keys

## Pending Decisions
- Pick a queue backend
"""


@pytest.fixture(scope="session")
def _db_template_path() -> Path:
    """Create a single template DB with full schema + a default project.

    Copying this file is much cheaper than running the schema and
    migrations again in every test function.
    """
    fd, path_str = tempfile.mkstemp(suffix=".db")
    path = Path(path_str)
    try:
        conn = get_connection(path)
        add_project(conn, "testproj", "/tmp/testproj")
        conn.close()
        yield path
    finally:
        path.unlink(missing_ok=True)


@pytest.fixture()
def db_conn(tmp_path: Path, _db_template_path: Path) -> sqlite3.Connection:
    """Per-test DB connection with schema + testproj pre-loaded."""
    db_path = tmp_path / "test.db"
    shutil.copy2(_db_template_path, db_path)
    conn = get_connection(db_path)
    try:
        yield conn
    finally:
        conn.close()


@pytest.fixture()
def db_conn_path(db_conn: sqlite3.Connection, tmp_path: Path) -> tuple[sqlite3.Connection, Path]:
    """Per-test DB connection + path (for tests that re-open the DB)."""
    return db_conn, tmp_path / "test.db"


@pytest.fixture()
def repo_root(tmp_path: Path) -> Path:
    """A repository with tasks, backlog and status files under ``docs/``."""
    root = tmp_path / "repo"
    (root / "docs").mkdir(parents=True)
    (root / "docs" / "tasks.md").write_text(TASKS_MD)
    (root / "docs" / "BACKLOG.md").write_text(BACKLOG_MD)
    (root / "docs" / "status.md").write_text(STATUS_MD)
    return root


@pytest.fixture()
def repo_project(db_conn: sqlite3.Connection, repo_root: Path) -> dict:
    """Project ``repo`` registered on :func:`repo_root`."""
    add_project(db_conn, "repo", str(repo_root))
    project = get_project(db_conn, "repo")
    assert project is not None
    return project
