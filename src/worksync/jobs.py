"""Job functions executed by rq workers."""

from __future__ import annotations

import logging

from worksync.db import connect, get_project, set_connector_status
from worksync.sync import sync_project

log = logging.getLogger(__name__)


def run_project_sync(project_id: str) -> dict:
    """Parse and ingest one project inside a worker."""
    with connect() as conn:
        result = sync_project(conn, project_id)
    log.info(
        "Background sync of %s done: %d task(s), %d backlog item(s)",
        result["project"],
        result["tasks_count"],
        result["backlog_count"],
    )
    return result


def on_sync_failure(job, _connection, _exc_type, exc_value, _traceback):
    """Callback when a sync job fails. Marks the project's connector as errored."""
    project_id = job.args[0] if job.args else None
    if not project_id:
        return
    with connect() as conn:
        project = get_project(conn, project_id)
        if not project:
            log.warning("Sync failure callback for %s skipped: project not found", project_id)
            return
        set_connector_status(conn, project["id"], "error")
    log.error("Sync of project %s failed: %s", project_id, exc_value)
