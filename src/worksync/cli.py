from __future__ import annotations

import json
import logging
import sys
from pathlib import Path
from typing import Any

import click

from worksync import __version__
from worksync.db import (
    VALID_BACKLOG_STATUSES,
    VALID_CONNECTOR_STATUSES,
    VALID_DATA_ORIGINS,
    VALID_PRIORITIES,
    VALID_TASK_STATUSES,
    ProjectRow,
    add_native_entity,
    add_project,
    connect,
    connector_config,
    ensure_connector,
    get_connector,
    get_project,
    get_project_by_dir,
    list_entities,
    list_projects,
    project_to_dict,
    remove_project,
    set_connector_path,
    set_connector_status,
)
from worksync.parser import (
    parse_backlog_md,
    parse_intent_summary,
    parse_status_md,
    parse_tasks_md,
)
from worksync.quality import REMEDIATION_ACTIONS, build_sync_quality_report, remediate
from worksync.reconcile import ingest
from worksync.status_reference import get_status_reference
from worksync.sync import sync_all_projects, sync_project
from worksync.writeback import OPERATION_ENTITY_TYPES, run_writeback

log = logging.getLogger(__name__)


class _JsonAwareGroup(click.Group):
    """Group that always outputs JSON errors with command suggestions.

    Click normally writes plain-text usage errors to stderr.  Since all
    commands output JSON unconditionally, this subclass intercepts Click
    exceptions and emits a JSON error object on stdout.  Unknown commands
    get fuzzy-matched suggestions via ``difflib.get_close_matches``.
    """

    def resolve_command(self, ctx, args):  # type: ignore[override]
        try:
            return super().resolve_command(ctx, args)
        except click.UsageError:
            if args:
                import difflib

                cmd_name = args[0]
                matches = difflib.get_close_matches(
                    cmd_name, self.list_commands(ctx), n=2, cutoff=0.5
                )
                hint = f" Did you mean: {', '.join(matches)}?" if matches else ""
                raise click.UsageError(f"No such command '{cmd_name}'.{hint}") from None
            raise

    def main(self, args=None, standalone_mode=True, **kwargs):  # type: ignore[override]
        try:
            rv = super().main(args=args, standalone_mode=False, **kwargs)
            if standalone_mode:
                raise SystemExit(rv or 0)
            return rv
        except click.ClickException as e:
            click.echo(json.dumps({"ok": False, "error": e.format_message()}))
            code = getattr(e, "exit_code", 1)
            if standalone_mode:
                raise SystemExit(code) from None
            return code
        except click.Abort:
            if standalone_mode:
                click.echo("Aborted!", err=True)
                raise SystemExit(1) from None
            raise


def _echo(payload: Any) -> None:
    click.echo(json.dumps(payload, indent=2, default=str))


def _not_found(entity: str, identifier: str) -> click.ClickException:
    """Build a ClickException with an actionable suggestion for missing entities."""
    hints = {
        "project": "Run 'worksync project list' to see registered projects.",
        "connector": "Run 'worksync sync -p PROJECT' to create one.",
    }
    msg = f"{entity.title()} '{identifier}' not found."
    hint = hints.get(entity)
    if hint:
        msg += f"\n{hint}"
    return click.ClickException(msg)


def _resolve_project_by_name(name: str) -> ProjectRow:
    with connect() as conn:
        proj = get_project(conn, name)
    if not proj:
        raise _not_found("project", name)
    return proj


def _project_option(help_text: str = "Target project by name or id."):
    return click.option("-p", "--project", "project_name", required=True, help=help_text)


def _read_json_input(source: str) -> Any:
    """Load JSON from a file path, or from stdin when *source* is ``-``."""
    try:
        if source == "-":
            return json.load(sys.stdin)
        with open(source, encoding="utf-8") as f:
            return json.load(f)
    except OSError as exc:
        raise click.ClickException(f"Cannot read {source}: {exc}") from None
    except json.JSONDecodeError as exc:
        raise click.ClickException(f"Invalid JSON in {source}: {exc}") from None


@click.group(cls=_JsonAwareGroup)
@click.version_option(version=__version__)
@click.option("--verbose", "-v", is_flag=True, help="Log progress to stderr.")
def main(verbose: bool):
    """Keep hand-edited markdown task files and the worksync store in sync.

    \b
    Quick start:
      worksync init                      Register current directory as a project
      worksync sync -p PROJECT           Parse markdown files into the store
      worksync writeback -p PROJECT ...  Push a store change back into the file
      worksync quality                   Grade sync health of every project

    \b
    Key concepts:
      project    A repository whose markdown files are synced
      connector  Per-project sync heartbeat (active, paused, error)
      source_id  Stable locator of a record inside its file
    """
    if verbose:
        logging.basicConfig(
            level=logging.INFO,
            format="%(asctime)s %(levelname)s %(name)s %(message)s",
            stream=sys.stderr,
        )


# -- init --


@main.command()
@click.argument(
    "path",
    required=False,
    type=click.Path(exists=True, file_okay=False, resolve_path=True),
)
@click.option("--name", "-n", default=None, help="Project name (default: directory name).")
def init(path: str | None, name: str | None):
    """Register a repository as a project and create its connector."""
    target = Path(path) if path else Path.cwd().resolve()
    project_name = name or target.name

    with connect() as conn:
        existing = get_project_by_dir(conn, str(target))
        if existing:
            project = existing
        else:
            by_name = get_project(conn, project_name)
            if by_name:
                raise click.ClickException(
                    f"Project name '{project_name}' is already registered for "
                    f"'{by_name['dir']}'. Use --name to choose a different name."
                )
            add_project(conn, project_name, str(target))
            project = get_project(conn, project_name)
            assert project is not None
        ensure_connector(conn, project["id"], str(target))
        _echo(project_to_dict(project))


# -- project --


@main.group()
def project():
    """Manage registered projects."""


@project.command("add")
@click.argument("name")
@click.argument("directory", type=click.Path(exists=True, file_okay=False, resolve_path=True))
def project_add(name: str, directory: str):
    """Register DIRECTORY as project NAME."""
    with connect() as conn:
        try:
            created = add_project(conn, name, directory)
        except ValueError as exc:
            raise click.ClickException(str(exc)) from None
        ensure_connector(conn, created["id"], directory)
    _echo(created)


@project.command("list")
def project_list():
    """List all projects."""
    with connect() as conn:
        _echo([project_to_dict(p) for p in list_projects(conn)])


@project.command("show")
@click.argument("name_or_id")
def project_show(name_or_id: str):
    """Show project details, including its connector."""
    with connect() as conn:
        p = get_project(conn, name_or_id)
        if not p:
            raise _not_found("project", name_or_id)
        payload = project_to_dict(p)
        connector = get_connector(conn, p["id"])
        payload["connector"] = (
            {**connector, "config": connector_config(connector)} if connector else None
        )
    _echo(payload)


@project.command("remove")
@click.argument("name_or_id")
def project_remove(name_or_id: str):
    """Remove a project with its records and connector."""
    with connect() as conn:
        summary = remove_project(conn, name_or_id)
    if summary is None:
        raise _not_found("project", name_or_id)
    _echo(summary)


# -- connector --


@main.group()
def connector():
    """Inspect and control a project's sync connector."""


@connector.command("show")
@_project_option()
def connector_show(project_name: str):
    """Show the connector heartbeat and config."""
    proj = _resolve_project_by_name(project_name)
    with connect() as conn:
        row = get_connector(conn, proj["id"])
    if not row:
        raise _not_found("connector", proj["name"])
    _echo({**row, "config": connector_config(row)})


@connector.command("status")
@_project_option()
@click.argument("status", type=click.Choice(sorted(VALID_CONNECTOR_STATUSES)))
def connector_status(project_name: str, status: str):
    """Set the connector status (pause or reactivate syncing)."""
    proj = _resolve_project_by_name(project_name)
    with connect() as conn:
        if not set_connector_status(conn, proj["id"], status):
            raise _not_found("connector", proj["name"])
    _echo({"project": proj["name"], "status": status})


@connector.command("path")
@_project_option()
@click.argument("path", type=click.Path(exists=True, file_okay=False, resolve_path=True))
def connector_path(project_name: str, path: str):
    """Point the connector at a different repository checkout."""
    proj = _resolve_project_by_name(project_name)
    with connect() as conn:
        set_connector_path(conn, proj["id"], path)
    _echo({"project": proj["name"], "path": path})


# -- parse / sync / ingest --


@main.command("parse")
@click.argument("file", type=click.Path(dir_okay=False))
@click.option(
    "--kind",
    "-k",
    type=click.Choice(["tasks", "backlog", "status", "intent"]),
    default="tasks",
    show_default=True,
    help="Dialect to parse FILE as.",
)
def parse_cmd(file: str, kind: str):
    """Parse a markdown FILE and print the extracted records (no store access)."""
    if kind == "tasks":
        payload: Any = [t.to_dict() for t in parse_tasks_md(file)]
    elif kind == "backlog":
        payload = [b.to_dict() for b in parse_backlog_md(file)]
    elif kind == "status":
        payload = parse_status_md(file).to_dict()
    else:
        payload = {"intent_summary": parse_intent_summary(file)}
    _echo(payload)


@main.command("sync")
@click.option("-p", "--project", "project_name", default=None, help="Project to sync.")
@click.option("--all", "all_projects", is_flag=True, help="Sync every non-paused project.")
@click.option(
    "--repo-path",
    type=click.Path(exists=True, file_okay=False, resolve_path=True),
    default=None,
    help="Override the repository root for this run.",
)
@click.option("--enqueue", is_flag=True, help="Run in a background rq worker.")
def sync_cmd(
    project_name: str | None, all_projects: bool, repo_path: str | None, enqueue: bool
):
    """Parse project files and reconcile them into the store."""
    if bool(project_name) == all_projects:
        raise click.ClickException("Use exactly one of -p PROJECT or --all.")

    if enqueue:
        from redis.exceptions import RedisError

        from worksync.queue import enqueue_project_sync

        if repo_path:
            raise click.ClickException("--repo-path cannot be combined with --enqueue.")
        with connect() as conn:
            targets = (
                list_projects(conn) if all_projects else [_resolve_project_by_name(project_name)]
            )
        try:
            jobs = [
                {"project": p["name"], "job_id": enqueue_project_sync(p["id"]).id}
                for p in targets
            ]
        except RedisError:
            raise click.ClickException("Redis unavailable, cannot enqueue sync.") from None
        _echo({"enqueued": jobs})
        return

    with connect() as conn:
        try:
            if all_projects:
                payload: Any = sync_all_projects(conn)
            else:
                payload = sync_project(conn, project_name, repo_path)
        except ValueError as exc:
            raise click.ClickException(str(exc)) from None
    _echo(payload)


@main.command("ingest")
@_project_option()
@click.option(
    "--file",
    "-f",
    "source",
    default="-",
    show_default=True,
    help="JSON payload with tasks, backlog, status and intent_summary (- for stdin).",
)
def ingest_cmd(project_name: str, source: str):
    """Ingest already-parsed records from JSON."""
    payload = _read_json_input(source)
    if not isinstance(payload, dict):
        raise click.ClickException("Ingest payload must be a JSON object.")
    proj = _resolve_project_by_name(project_name)
    with connect() as conn:
        try:
            result = ingest(
                conn,
                project_id=proj["id"],
                repo_path=payload.get("repo_path"),
                tasks=payload.get("tasks") or [],
                backlog=payload.get("backlog") or [],
                status=payload.get("status"),
                intent_summary=payload.get("intent_summary"),
            )
        except ValueError as exc:
            raise click.ClickException(str(exc)) from None
    _echo(result)


# -- writeback --


def _single_operation(
    entity_type: str | None,
    entity_id: str | None,
    expected: str | None,
    fields: dict[str, Any],
) -> dict[str, Any]:
    if not entity_type:
        raise click.ClickException("Pass --ops FILE or --type with patch options.")
    patch = {k: v for k, v in fields.items() if v is not None}
    if not patch:
        raise click.ClickException("Nothing to write back: give at least one patch option.")
    return {
        "entity_type": entity_type,
        "entity_id": entity_id,
        "expected_updated_at": expected,
        "patch": patch,
    }


@main.command("writeback")
@_project_option()
@click.option("--ops", "ops_source", default=None, help="JSON list of operations (- for stdin).")
@click.option(
    "--type",
    "entity_type",
    type=click.Choice(list(OPERATION_ENTITY_TYPES)),
    default=None,
    help="Entity type for a single operation.",
)
@click.option("--id", "entity_id", default=None, help="Entity id for a single operation.")
@click.option("--expected", default=None, help="updated_at the change was based on.")
@click.option("--status", default=None, help="New status.")
@click.option("--title", default=None, help="New title.")
@click.option(
    "--priority", type=click.Choice(sorted(VALID_PRIORITIES)), default=None, help="New priority."
)
@click.option("--description", default=None, help="New description (table rows only).")
@click.option("--stage", default=None, help="New current_stage (project_status).")
@click.option("--focus", default=None, help="New focus (project_status).")
@click.option("--dry-run", is_flag=True, help="Preview line edits without writing.")
@click.option(
    "--no-strict",
    "no_strict",
    is_flag=True,
    help="Skip conflicting operations instead of rejecting the batch.",
)
def writeback_cmd(
    project_name: str,
    ops_source: str | None,
    entity_type: str | None,
    entity_id: str | None,
    expected: str | None,
    status: str | None,
    title: str | None,
    priority: str | None,
    description: str | None,
    stage: str | None,
    focus: str | None,
    dry_run: bool,
    no_strict: bool,
):
    """Write store-side changes back into the project's markdown files."""
    if ops_source:
        operations = _read_json_input(ops_source)
        if not isinstance(operations, list):
            raise click.ClickException("--ops must contain a JSON list of operations.")
    elif entity_type == "project_status":
        operations = [
            _single_operation(entity_type, None, expected, {"current_stage": stage, "focus": focus})
        ]
    else:
        operations = [
            _single_operation(
                entity_type,
                entity_id,
                expected,
                {
                    "status": status,
                    "title": title,
                    "priority": priority,
                    "description": description,
                },
            )
        ]

    proj = _resolve_project_by_name(project_name)
    with connect() as conn:
        result = run_writeback(
            conn,
            project_id=proj["id"],
            operations=operations,
            dry_run=dry_run,
            strict_conflicts=not no_strict,
        )
    _echo(result)
    if result["rejected"]:
        raise SystemExit(1)


# -- task / backlog --


@main.group()
def task():
    """List and add tasks."""


@task.command("list")
@_project_option()
@click.option("--status", type=click.Choice(sorted(VALID_TASK_STATUSES)), default=None)
@click.option("--origin", type=click.Choice(sorted(VALID_DATA_ORIGINS)), default=None)
def task_list(project_name: str, status: str | None, origin: str | None):
    """List a project's tasks."""
    proj = _resolve_project_by_name(project_name)
    with connect() as conn:
        rows = list_entities(conn, "task", proj["id"], status=status, data_origin=origin)
    _echo([dict(r) for r in rows])


@task.command("add")
@_project_option()
@click.argument("title")
@click.option("--status", type=click.Choice(sorted(VALID_TASK_STATUSES)), default=None)
@click.option("--priority", type=click.Choice(sorted(VALID_PRIORITIES)), default=None)
@click.option("--description", default=None)
def task_add(
    project_name: str,
    title: str,
    status: str | None,
    priority: str | None,
    description: str | None,
):
    """Add a native task that no markdown file backs."""
    proj = _resolve_project_by_name(project_name)
    with connect() as conn:
        try:
            row = add_native_entity(
                conn,
                "task",
                project_id=proj["id"],
                title=title,
                status=status,
                priority=priority,
                description=description,
            )
        except ValueError as exc:
            raise click.ClickException(str(exc)) from None
    _echo(dict(row))


@main.group()
def backlog():
    """List and add backlog items."""


@backlog.command("list")
@_project_option()
@click.option("--status", type=click.Choice(sorted(VALID_BACKLOG_STATUSES)), default=None)
@click.option("--origin", type=click.Choice(sorted(VALID_DATA_ORIGINS)), default=None)
def backlog_list(project_name: str, status: str | None, origin: str | None):
    """List a project's backlog items."""
    proj = _resolve_project_by_name(project_name)
    with connect() as conn:
        rows = list_entities(conn, "backlog", proj["id"], status=status, data_origin=origin)
    _echo([dict(r) for r in rows])


@backlog.command("add")
@_project_option()
@click.argument("title")
@click.option("--status", type=click.Choice(sorted(VALID_BACKLOG_STATUSES)), default=None)
@click.option("--priority", type=click.Choice(sorted(VALID_PRIORITIES)), default=None)
@click.option("--description", default=None)
def backlog_add(
    project_name: str,
    title: str,
    status: str | None,
    priority: str | None,
    description: str | None,
):
    """Add a native backlog item that no markdown file backs."""
    proj = _resolve_project_by_name(project_name)
    with connect() as conn:
        try:
            row = add_native_entity(
                conn,
                "backlog",
                project_id=proj["id"],
                title=title,
                status=status,
                priority=priority,
                description=description,
            )
        except ValueError as exc:
            raise click.ClickException(str(exc)) from None
    _echo(dict(row))


# -- quality --


@main.command("quality")
@click.option("-p", "--project", "project_name", default=None, help="Scope to a single project.")
@click.option("--stale-hours", type=float, default=None, help="Heartbeat staleness threshold.")
@click.option(
    "--include-unconfigured", is_flag=True, help="Also grade projects without a connector."
)
def quality_cmd(project_name: str | None, stale_hours: float | None, include_unconfigured: bool):
    """Grade each project's sync health red, yellow or green."""
    project_id = _resolve_project_by_name(project_name)["id"] if project_name else None
    with connect() as conn:
        report = build_sync_quality_report(
            conn,
            project_id=project_id,
            stale_hours=stale_hours,
            include_unconfigured=include_unconfigured,
        )
    _echo(report)


@main.command("remediate")
@_project_option()
@click.argument("action", type=click.Choice(REMEDIATION_ACTIONS))
def remediate_cmd(project_name: str, action: str):
    """Run a sync remediation ACTION for a project."""
    proj = _resolve_project_by_name(project_name)
    with connect() as conn:
        try:
            result = remediate(conn, proj["id"], action)
        except ValueError as exc:
            raise click.ClickException(str(exc)) from None
    _echo(result)


# -- queue --


@main.group()
def queue():
    """Inspect the background sync queue."""


@queue.command("status")
def queue_status():
    """Show job counts per queue."""
    from redis.exceptions import RedisError

    from worksync.queue import get_queue_counts

    try:
        counts = get_queue_counts()
    except RedisError:
        raise click.ClickException("Redis unavailable, cannot access queue data.") from None
    _echo(counts)


@main.command("help-status")
def help_status():
    """Show canonical status definitions for tasks, backlog, connectors and severity."""
    click.echo(json.dumps(get_status_reference(), indent=2, sort_keys=False))
