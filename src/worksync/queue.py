"""rq-based job queue for background project syncs.

``worksync sync --enqueue`` pushes a job here and spawns a burst worker,
so syncs of large repositories never block the caller.
"""

from __future__ import annotations

import logging
import os
import subprocess
import sys

from redis import ConnectionPool, Redis
from rq import Callback, Queue
from rq.job import Job
from rq.registry import FailedJobRegistry, StartedJobRegistry

from worksync.paths import LOG_DIR

log = logging.getLogger(__name__)

REDIS_URL = os.environ.get("WORKSYNC_REDIS_URL", "redis://localhost:6379/0")

QUEUE_SYNC = "worksync:sync"
WORKSYNC_QUEUE_NAMES = (QUEUE_SYNC,)

FAILURE_TTL = 7 * 24 * 3600  # 7 days, auto-expire failed jobs from Redis


_pool = ConnectionPool.from_url(REDIS_URL)


def get_redis() -> Redis:
    return Redis(connection_pool=_pool)


def get_queue(name: str = QUEUE_SYNC) -> Queue:
    # No rq-level timeout (-1 disables). Burst workers exit when the
    # queue drains.
    return Queue(name, connection=get_redis(), default_timeout=-1)


def enqueue_project_sync(project_id: str) -> Job:
    """Enqueue a sync of one project and ensure a worker is running.

    The job id is derived from the project, so a second enqueue while the
    first is still queued reuses the existing job.
    """
    from worksync.jobs import run_project_sync

    q = get_queue(QUEUE_SYNC)
    job_id = f"sync-{project_id}"
    existing = get_job(job_id)
    if existing is not None and existing.get_status() in ("queued", "started"):
        log.info("Sync for %s already %s", project_id, existing.get_status())
        return existing
    job = q.enqueue(
        run_project_sync,
        project_id,
        job_id=job_id,
        on_failure=Callback("worksync.jobs.on_sync_failure"),
        failure_ttl=FAILURE_TTL,
        description=f"Sync {project_id}",
    )
    _spawn_worker(QUEUE_SYNC, job_id=job_id)
    return job


def _spawn_worker(queue_name: str = QUEUE_SYNC, *, job_id: str | None = None) -> None:
    """Spawn a background rq worker process for a queue.

    The worker processes jobs until the queue is empty (burst mode),
    then exits. When job_id is provided, worker stdout/stderr is captured
    to ``LOG_DIR/{job_id}.log``.
    """
    cmd = [
        sys.executable,
        "-m",
        "rq.cli",
        "worker",
        "--burst",
        "--url",
        REDIS_URL,
        queue_name,
    ]

    log_fh = None
    try:
        if job_id:
            LOG_DIR.mkdir(parents=True, exist_ok=True, mode=0o700)
            log_fh = open(LOG_DIR / f"{job_id}.log", "w")  # noqa: SIM115
            stdout_target = log_fh
            stderr_target = subprocess.STDOUT
        else:
            stdout_target = subprocess.DEVNULL
            stderr_target = subprocess.DEVNULL

        proc = subprocess.Popen(
            cmd,
            stdout=stdout_target,
            stderr=stderr_target,
            start_new_session=True,
        )
    except Exception:
        if log_fh is not None:
            log_fh.close()
        raise

    if log_fh is not None:
        log_fh.close()  # parent closes its copy; child keeps writing

    log.info("Spawned worker pid=%d for %s", proc.pid, queue_name)


def get_job(job_id: str) -> Job | None:
    """Fetch a job by ID."""
    try:
        return Job.fetch(job_id, connection=get_redis())
    except Exception:
        return None


def get_queue_counts() -> dict[str, dict[str, int]]:
    """Return job counts per queue for status display."""
    redis = get_redis()
    result = {}
    for name in WORKSYNC_QUEUE_NAMES:
        q = Queue(name, connection=redis)
        result[name] = {
            "queued": len(q),
            "running": len(StartedJobRegistry(queue=q)),
            "failed": len(FailedJobRegistry(queue=q)),
        }
    return result
