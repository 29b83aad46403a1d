"""Tests for worksync.parser: markdown dialects and file wrappers."""

from pathlib import Path

import pytest

from worksync.parser import (
    UNKNOWN_STATUS,
    classify_line,
    extract_backlog,
    extract_intent_summary,
    extract_inline_id,
    extract_status,
    extract_tasks,
    map_backlog_status,
    map_task_status,
    normalize_stage,
    parse_backlog_md,
    parse_intent_summary,
    parse_priority,
    parse_status_md,
    parse_tasks_md,
    resolve_columns,
)


def _sample(repo_root: Path, name: str) -> str:
    return (repo_root / "docs" / name).read_text()


# ---------------------------------------------------------------------------
# Line classification
# ---------------------------------------------------------------------------


@pytest.mark.parametrize(
    "raw, kind",
    [
        ("## Sprint 1", "heading"),
        ("- [ ] Fix bug", "checklist"),
        ("  * [x] Done thing", "checklist"),
        ("|----|:---:|", "table_separator"),
        ("| a | b |", "table_row"),
        ("- plain bullet", "bullet"),
        ("1. numbered", "bullet"),
        ("Current Stage: Build", "key_value"),
        ("", "blank"),
        ("Just prose here.", "text"),
    ],
)
def test_classify_line(raw, kind):
    assert classify_line(raw).kind == kind


def test_classify_key_value_normalizes_key():
    line = classify_line("Current-Stage : Build")
    assert line.key == "current_stage"
    assert line.text == "Build"


def test_classify_checklist_checked():
    assert classify_line("- [X] Done").checked is True
    assert classify_line("- [ ] Todo").checked is False


# ---------------------------------------------------------------------------
# Field helpers
# ---------------------------------------------------------------------------


class TestFieldHelpers:
    def test_parse_priority_parenthesized(self):
        assert parse_priority("Fix login bug (P1)") == ("Fix login bug", "P1")

    def test_parse_priority_bare(self):
        assert parse_priority("p3 Tidy up") == ("Tidy up", "P3")

    def test_parse_priority_none(self):
        assert parse_priority("No marker") == ("No marker", None)

    def test_extract_inline_id_comment(self):
        assert extract_inline_id("Fix it <!-- id: fix-1 -->") == ("Fix it", "fix-1")

    def test_extract_inline_id_token(self):
        assert extract_inline_id("Fix it id:fix-2") == ("Fix it", "fix-2")

    def test_extract_inline_id_strips_other_comments(self):
        assert extract_inline_id("Fix it <!-- note -->") == ("Fix it", None)

    @pytest.mark.parametrize(
        "raw, expected",
        [
            ("x", "done"),
            ("Completed", "done"),
            ("In Progress", "in_progress"),
            ("doing", "in_progress"),
            ("Blocked on infra", "blocked"),
            ("todo", "pending"),
        ],
    )
    def test_map_task_status(self, raw, expected):
        assert map_task_status(raw) == expected

    @pytest.mark.parametrize(
        "raw, section, expected",
        [
            ("Archived", "", "archived"),
            ("promoted", "", "promoted"),
            ("Prioritized", "", "prioritized"),
            ("needs triage", "", "triaged"),
            ("In Progress", "", "triaged"),
            ("queued", "", "captured"),
            ("", "Prioritized", "prioritized"),
            ("", "Ideas", "captured"),
        ],
    )
    def test_map_backlog_status(self, raw, section, expected):
        assert map_backlog_status(raw, section) == expected

    def test_normalize_stage(self):
        assert normalize_stage('"Build phase"') == "Build"
        assert normalize_stage("nothing canonical") is None
        assert normalize_stage(None) is None


def test_resolve_columns_prefers_exact_id():
    cols = resolve_columns(["Task ID", "ID", "Task", "Status", "Pri", "Notes"])
    assert cols.id == 1
    assert cols.title == 0
    assert cols.status == 3
    assert cols.priority == 4
    assert cols.description == 5


def test_resolve_columns_title_skips_id_column():
    cols = resolve_columns(["Item ID", "Item", "Status"])
    assert cols.id == 0
    assert cols.title == 1


# ---------------------------------------------------------------------------
# Task dialect
# ---------------------------------------------------------------------------


class TestExtractTasks:
    def test_checklist_with_explicit_id(self):
        tasks = extract_tasks(
            "## Tasks\n- [ ] Fix login bug (P1) <!-- id: login-bug -->\n", "./docs/tasks.md"
        )
        assert len(tasks) == 1
        assert tasks[0].to_dict() == {
            "source_id": "./docs/tasks.md:id:login-bug",
            "title": "Fix login bug",
            "status": "pending",
            "priority": "P1",
            "description": None,
        }

    def test_duplicate_titles_get_ordinals(self):
        tasks = extract_tasks("## Tasks\n- [ ] Write docs\n- [ ] Write docs\n", "tasks.md")
        assert [t.source_id for t in tasks] == [
            "tasks.md:slug:tasks:write-docs",
            "tasks.md:slug:tasks:write-docs:2",
        ]

    def test_default_section_before_heading(self):
        tasks = extract_tasks("- [ ] Loose item\n", "tasks.md")
        assert tasks[0].source_id == "tasks.md:slug:tasks:loose-item"

    def test_checked_is_done_and_default_priority(self):
        (task,) = extract_tasks("- [x] Ship it\n", "tasks.md")
        assert task.status == "done"
        assert task.priority == "P2"

    def test_keyword_status_from_text(self):
        (task,) = extract_tasks("- [ ] Refactor (in progress)\n", "tasks.md")
        assert task.status == "in_progress"

    def test_empty_title_skipped(self):
        assert extract_tasks("- [ ] (P1)\n- [ ] <!-- id: x -->\n", "tasks.md") == []

    def test_table_rows(self):
        text = (
            "| ID | Task | Status | Priority | Notes |\n"
            "|----|------|--------|----------|-------|\n"
            "| T-1 | Migrate DB | done | P1 | careful |\n"
            "| T-2 | Add cache | | | |\n"
            "|  |  | pending | P3 | |\n"
        )
        tasks = extract_tasks(text, "tasks.md")
        assert [t.to_dict() for t in tasks] == [
            {
                "source_id": "tasks.md:id:t-1",
                "title": "Migrate DB",
                "status": "done",
                "priority": "P1",
                "description": "careful",
            },
            {
                "source_id": "tasks.md:id:t-2",
                "title": "Add cache",
                "status": "pending",
                "priority": "P2",
                "description": None,
            },
        ]

    def test_table_without_header_keyword_ignored(self):
        text = "| Name | Value |\n|------|-------|\n| a | b |\n"
        assert extract_tasks(text, "tasks.md") == []

    def test_mixed_dialects_in_document_order(self, repo_root):
        tasks = extract_tasks(_sample(repo_root, "tasks.md"), "./docs/tasks.md")
        assert [(t.title, t.status, t.priority) for t in tasks] == [
            ("Fix login bug", "pending", "P1"),
            ("Write docs", "done", "P2"),
            ("Write docs", "pending", "P2"),
            ("Ship release in progress", "in_progress", "P2"),
            ("Migrate storage", "blocked", "P3"),
        ]
        assert tasks[2].source_id == "./docs/tasks.md:slug:sprint-1:write-docs:2"
        assert tasks[4].source_id == "./docs/tasks.md:id:t-7"

    def test_reparse_is_stable(self, repo_root):
        text = _sample(repo_root, "tasks.md")
        first = [t.to_dict() for t in extract_tasks(text, "tasks.md")]
        second = [t.to_dict() for t in extract_tasks(text, "tasks.md")]
        assert first == second

    def test_appending_does_not_move_existing_locators(self, repo_root):
        text = _sample(repo_root, "tasks.md")
        before = [t.source_id for t in extract_tasks(text, "tasks.md")]
        after = [
            t.source_id for t in extract_tasks(text + "- [ ] Brand new\n", "tasks.md")
        ]
        assert after[: len(before)] == before


# ---------------------------------------------------------------------------
# Backlog dialect
# ---------------------------------------------------------------------------


class TestExtractBacklog:
    def test_table_row_with_short_priority_header(self):
        text = (
            "| ID | Item | Type | Component | Pri | Size | Status |\n"
            "|----|------|------|-----------|-----|------|--------|\n"
            "| B12 | Add export | Bug | UI | P2 | M | In Progress |\n"
        )
        (item,) = extract_backlog(text, "BACKLOG.md")
        assert item.status == "triaged"
        assert item.priority == "P2"
        assert item.source_id == "BACKLOG.md:id:b12"

    def test_checklist_items(self, repo_root):
        items = extract_backlog(_sample(repo_root, "BACKLOG.md"), "BACKLOG.md")
        by_title = {i.title: i for i in items}
        assert by_title["Offline support"].status == "captured"
        assert by_title["Offline support"].priority is None
        assert by_title["Offline support"].source_id == "BACKLOG.md:slug:ideas:offline-support"
        assert by_title["Old idea"].status == "archived"
        assert by_title["Dark mode"].status == "captured"
        assert by_title["Dark mode"].priority == "P3"

    def test_section_heading_supplies_status(self):
        (item,) = extract_backlog("## Prioritized\n- [ ] Search\n", "BACKLOG.md")
        assert item.status == "prioritized"


# ---------------------------------------------------------------------------
# Status and intent dialects
# ---------------------------------------------------------------------------


class TestExtractStatus:
    def test_key_values_and_sections(self, repo_root):
        status = extract_status(_sample(repo_root, "status.md"))
        assert status.current_status == "Develop phase, API hardening"
        assert status.current_stage == "Develop"
        assert status.focus == "Stabilize sync"
        assert status.blockers == ("Waiting on API keys",)
        assert status.pending_decisions == ("Pick a queue backend",)

    def test_heading_sections(self):
        text = (
            "## Current Status\n"
            "Validate the beta\n\n"
            "## Focus\n"
            "- Fix flaky tests\n\n"
            "## Blockers\n"
            "- [ ] Legal review\n"
        )
        status = extract_status(text)
        assert status.current_status == "Validate the beta"
        assert status.current_stage == "Validate"
        assert status.focus == "Fix flaky tests"
        assert status.blockers == ("Legal review",)

    def test_explicit_stage_kept_when_not_canonical(self):
        status = extract_status("stage: Hardening\n")
        assert status.current_stage == "Hardening"

    def test_repeated_key_last_wins(self):
        status = extract_status("focus: Old plan\nstatus: Design\nfocus: New plan\n")
        assert status.focus == "New plan"
        assert status.current_stage == "Design"

    def test_nothing_found(self):
        status = extract_status("Some prose.\n")
        assert status.current_status == "Unknown"
        assert status.current_stage is None


class TestIntentSummary:
    def test_skips_frontmatter_headings_and_metadata(self):
        text = (
            "---\ntitle: x\n---\n"
            "# Intent\n"
            "owner: team\n"
            "short\n"
            "- Keep markdown plans and the dashboard store in agreement.\n"
        )
        assert extract_intent_summary(text) == (
            "Keep markdown plans and the dashboard store in agreement."
        )

    def test_truncates(self):
        assert len(extract_intent_summary("word " * 100)) == 220

    def test_none_when_too_short(self):
        assert extract_intent_summary("tiny\n") is None


# ---------------------------------------------------------------------------
# File wrappers
# ---------------------------------------------------------------------------


class TestFileWrappers:
    def test_missing_files_yield_empty_results(self, tmp_path: Path):
        missing = tmp_path / "nope.md"
        assert parse_tasks_md(missing) == []
        assert parse_backlog_md(missing) == []
        assert parse_status_md(missing) == UNKNOWN_STATUS
        assert parse_intent_summary(missing) is None
        assert parse_tasks_md(None) == []

    def test_label_overrides_locator_path(self, tmp_path: Path):
        path = tmp_path / "tasks.md"
        path.write_text("- [ ] One thing\n")
        (task,) = parse_tasks_md(path, label="./tasks.md")
        assert task.source_id == "./tasks.md:slug:tasks:one-thing"

    def test_default_label_is_path(self, tmp_path: Path):
        path = tmp_path / "tasks.md"
        path.write_text("- [ ] One thing\n")
        (task,) = parse_tasks_md(path)
        assert task.source_id.startswith(str(path) + ":slug:")

    def test_undecodable_file_is_empty(self, tmp_path: Path):
        path = tmp_path / "tasks.md"
        path.write_bytes(b"\xff\xfe\x00bad")
        assert parse_tasks_md(path) == []

    def test_crlf_input(self, tmp_path: Path):
        path = tmp_path / "tasks.md"
        path.write_bytes(b"## A\r\n- [ ] One\r\n- [x] Two\r\n")
        assert [t.status for t in parse_tasks_md(path)] == ["pending", "done"]
