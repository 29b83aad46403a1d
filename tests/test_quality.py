"""Tests for sync quality grading and remediation."""

import math
from datetime import UTC, datetime, timedelta

import pytest

from worksync.db import (
    add_project,
    ensure_connector,
    get_connector,
    get_project,
    list_entities,
    set_connector_status,
    upsert_rows,
)
from worksync.quality import (
    build_sync_quality_report,
    count_duplicates,
    duplicate_ids_by_source_id,
    evaluate_severity,
    hours_since,
    normalize_title,
    remediate,
)
from worksync.sync import sync_project

NOW = datetime(2026, 10, 19, 12, 0, tzinfo=UTC)


def _stamp(hours_ago: float) -> str:
    return (NOW - timedelta(hours=hours_ago)).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


def _stats(**overrides) -> dict:
    stats = {
        "connector_status": "active",
        "last_sync_age_hours": 1.0,
        "duplicate_source_ids": 0,
        "synced_without_source": 0,
        "absolute_source_ids": 0,
        "duplicate_titles": 0,
    }
    stats.update(overrides)
    return stats


def _set_heartbeat(conn, project_id: str, stamp: str | None) -> None:
    conn.execute(
        "UPDATE connectors SET last_sync_at = ? WHERE project_id = ?", (stamp, project_id)
    )
    conn.commit()


def _synced_task(pid: str, source_id: str, title: str = "Thing") -> dict:
    return {
        "project_id": pid,
        "source_id": source_id,
        "title": title,
        "status": "pending",
        "priority": "P2",
        "data_origin": "synced",
    }


def _insert_duplicate(conn, pid: str, source_id: str, row_id: str, updated_at: str) -> None:
    conn.execute(
        "INSERT INTO tasks (id, project_id, source_id, title, data_origin, created_at, updated_at)"
        " VALUES (?, ?, ?, 'Copy', 'synced', ?, ?)",
        (row_id, pid, source_id, updated_at, updated_at),
    )
    conn.commit()


# -- helpers --


def test_hours_since():
    assert hours_since(_stamp(5), NOW) == pytest.approx(5.0)
    assert math.isinf(hours_since(None, NOW))
    assert math.isinf(hours_since("not a date", NOW))


def test_normalize_title_and_duplicates():
    assert normalize_title("  Fix   Login-Bug! ") == "fix login-bug"
    assert count_duplicates(["a", "b", "a", "a", "", ""]) == 2


class TestEvaluateSeverity:
    def test_green(self):
        assert evaluate_severity(_stats(), 24) == "green"

    @pytest.mark.parametrize(
        "overrides",
        [
            {"connector_status": "paused"},
            {"connector_status": "error"},
            {"last_sync_age_hours": None},
            {"last_sync_age_hours": 24 * 7 + 0.1},
            {"duplicate_source_ids": 1},
            {"synced_without_source": 2},
        ],
    )
    def test_red(self, overrides):
        assert evaluate_severity(_stats(**overrides), 24) == "red"

    @pytest.mark.parametrize(
        "overrides",
        [
            {"last_sync_age_hours": 24.1},
            {"absolute_source_ids": 1},
            {"duplicate_titles": 1},
        ],
    )
    def test_yellow(self, overrides):
        assert evaluate_severity(_stats(**overrides), 24) == "yellow"

    def test_threshold_boundaries(self):
        assert evaluate_severity(_stats(last_sync_age_hours=24.0), 24) == "green"
        assert evaluate_severity(_stats(last_sync_age_hours=168.0), 24) == "yellow"

    def test_red_beats_yellow(self):
        stats = _stats(absolute_source_ids=3, duplicate_source_ids=1)
        assert evaluate_severity(stats, 24) == "red"


def test_duplicate_ids_keep_newest():
    rows = [
        {"id": "old", "source_id": "s", "updated_at": "2026-01-01T00:00:00.000000Z"},
        {"id": "new", "source_id": "s", "updated_at": "2026-02-01T00:00:00.000000Z"},
        {"id": "solo", "source_id": "t", "updated_at": "2026-01-01T00:00:00.000000Z"},
        {"id": "native", "source_id": None, "updated_at": "2026-01-01T00:00:00.000000Z"},
    ]
    assert duplicate_ids_by_source_id(rows) == ["old"]


# -- report --


class TestReport:
    def test_after_sync_flags_duplicate_titles(self, db_conn, repo_project, monkeypatch):
        monkeypatch.delenv("WORKSYNC_STALE_HOURS", raising=False)
        sync_project(db_conn, "repo")
        report = build_sync_quality_report(db_conn, project_id=repo_project["id"])
        (row,) = report["rows"]
        assert row["severity"] == "yellow"
        assert row["duplicate_titles"] == 1
        assert row["synced_tasks"] == 5
        assert row["synced_backlog"] == 4
        assert row["stage"] == "Develop"
        assert report["totals"]["yellow"] == 1

    def test_unconfigured_projects_skipped(self, db_conn):
        report = build_sync_quality_report(db_conn, now=NOW)
        assert report["rows"] == []
        report = build_sync_quality_report(db_conn, include_unconfigured=True, now=NOW)
        (row,) = report["rows"]
        assert row["connector_status"] == "missing"
        assert row["severity"] == "red"

    def test_stale_heartbeat(self, db_conn):
        pid = get_project(db_conn, "testproj")["id"]
        ensure_connector(db_conn, pid)
        _set_heartbeat(db_conn, pid, _stamp(30))
        report = build_sync_quality_report(db_conn, stale_hours=24, now=NOW)
        assert report["rows"][0]["severity"] == "yellow"
        assert report["rows"][0]["last_sync_age_hours"] == 30.0
        _set_heartbeat(db_conn, pid, _stamp(24 * 8))
        report = build_sync_quality_report(db_conn, stale_hours=24, now=NOW)
        assert report["rows"][0]["severity"] == "red"

    def test_explicit_threshold_used(self, db_conn):
        pid = get_project(db_conn, "testproj")["id"]
        ensure_connector(db_conn, pid)
        _set_heartbeat(db_conn, pid, _stamp(30))
        report = build_sync_quality_report(db_conn, stale_hours=48, now=NOW)
        assert report["stale_hours_threshold"] == 48.0
        assert report["rows"][0]["severity"] == "green"

    def test_project_config_threshold(self, db_conn, repo_project, repo_root, monkeypatch):
        monkeypatch.delenv("WORKSYNC_STALE_HOURS", raising=False)
        (repo_root / ".worksync").mkdir()
        (repo_root / ".worksync" / "sync.toml").write_text("[quality]\nstale_hours = 100\n")
        ensure_connector(db_conn, repo_project["id"])
        _set_heartbeat(db_conn, repo_project["id"], _stamp(50))
        report = build_sync_quality_report(db_conn, project_id="repo", now=NOW)
        assert report["rows"][0]["stale_hours"] == 100.0
        assert report["rows"][0]["severity"] == "green"

    def test_sorted_worst_first(self, db_conn):
        pid = get_project(db_conn, "testproj")["id"]
        ensure_connector(db_conn, pid)
        _set_heartbeat(db_conn, pid, _stamp(1))
        other = add_project(db_conn, "alpha", "/tmp/alpha")
        ensure_connector(db_conn, other["id"])
        set_connector_status(db_conn, other["id"], "paused")
        report = build_sync_quality_report(db_conn, stale_hours=24, now=NOW)
        assert [(r["project_name"], r["severity"]) for r in report["rows"]] == [
            ("alpha", "red"),
            ("testproj", "green"),
        ]
        assert report["totals"]["projects"] == 2

    def test_report_is_read_only(self, db_conn):
        pid = get_project(db_conn, "testproj")["id"]
        ensure_connector(db_conn, pid)
        before = get_connector(db_conn, pid)
        build_sync_quality_report(db_conn, now=NOW)
        assert get_connector(db_conn, pid) == before

    def test_unknown_project(self, db_conn):
        with pytest.raises(ValueError, match="not found"):
            build_sync_quality_report(db_conn, project_id="ghost")


# -- remediation --


class TestRemediate:
    def test_activate_connector(self, db_conn):
        pid = get_project(db_conn, "testproj")["id"]
        ensure_connector(db_conn, pid)
        set_connector_status(db_conn, pid, "error")
        result = remediate(db_conn, pid, "activate_connector")
        assert result == {"project_id": pid, "action": "activate_connector", "updated": 1}
        assert get_connector(db_conn, pid)["status"] == "active"

    def test_normalize_absolute_source_ids(self, db_conn):
        pid = get_project(db_conn, "testproj")["id"]
        ensure_connector(db_conn, pid)
        upsert_rows(
            db_conn,
            "tasks",
            [
                _synced_task(pid, "/tmp/testproj/docs/tasks.md:id:a"),
                _synced_task(pid, "/elsewhere/tasks.md:id:b", "Other"),
                _synced_task(pid, "./tasks.md:id:c", "Third"),
            ],
            ("project_id", "source_id"),
        )
        result = remediate(db_conn, pid, "normalize_absolute_source_ids")
        assert result["updated"] == 1
        assert result["skipped"] == 1
        source_ids = {r["source_id"] for r in list_entities(db_conn, "task", pid)}
        assert "./docs/tasks.md:id:a" in source_ids

        again = remediate(db_conn, pid, "normalize_absolute_source_ids")
        assert again["updated"] == 0

    def test_dedupe_source_ids(self, db_conn):
        pid = get_project(db_conn, "testproj")["id"]
        ensure_connector(db_conn, pid)
        _insert_duplicate(db_conn, pid, "./t.md:id:a", "old", "2026-01-01T00:00:00.000000Z")
        _insert_duplicate(db_conn, pid, "./t.md:id:a", "new", "2026-02-01T00:00:00.000000Z")
        result = remediate(db_conn, pid, "dedupe_source_ids")
        assert result["deleted_tasks"] == 1
        assert result["deleted_backlog"] == 0
        assert [r["id"] for r in list_entities(db_conn, "task", pid)] == ["new"]
        assert remediate(db_conn, pid, "dedupe_source_ids")["deleted_tasks"] == 0

    def test_duplicates_graded_red_then_fixed(self, db_conn):
        pid = get_project(db_conn, "testproj")["id"]
        ensure_connector(db_conn, pid)
        _set_heartbeat(db_conn, pid, _stamp(1))
        _insert_duplicate(db_conn, pid, "./t.md:id:a", "one", "2026-01-01T00:00:00.000000Z")
        _insert_duplicate(db_conn, pid, "./t.md:id:a", "two", "2026-02-01T00:00:00.000000Z")
        report = build_sync_quality_report(db_conn, stale_hours=24, now=NOW)
        assert report["rows"][0]["severity"] == "red"
        remediate(db_conn, pid, "dedupe_source_ids")
        report = build_sync_quality_report(db_conn, stale_hours=24, now=NOW)
        assert report["rows"][0]["severity"] == "green"

    def test_invalid_action(self, db_conn):
        pid = get_project(db_conn, "testproj")["id"]
        with pytest.raises(ValueError, match="Invalid remediation action"):
            remediate(db_conn, pid, "reboot")

    def test_requires_connector(self, db_conn):
        pid = get_project(db_conn, "testproj")["id"]
        with pytest.raises(ValueError, match="no connector"):
            remediate(db_conn, pid, "activate_connector")
