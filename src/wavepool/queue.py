"""Redis connection, event stream publishing and rq worker dispatch.

Coordination state never lives in Redis; the session documents on disk
are the source of truth. Redis carries two optional things: a stream of
events for live observers, and the rq queue used to launch worker
processes in the background.
"""

from __future__ import annotations

import json
import logging
import os
import subprocess
import sys
from pathlib import Path

from redis import ConnectionPool, Redis
from redis.exceptions import RedisError
from rq import Queue
from rq.job import Job

log = logging.getLogger(__name__)

REDIS_URL = os.environ.get("WAVEPOOL_REDIS_URL", "redis://localhost:6379/0")

QUEUE_WORKERS = "wavepool:workers"

FAILURE_TTL = 7 * 24 * 3600

EVENTS_STREAM = "wavepool:events:stream"
EVENTS_STREAM_MAXLEN = int(os.environ.get("WAVEPOOL_EVENTS_STREAM_MAXLEN", "1000"))

EVENT_VERSION = 1

_pool = ConnectionPool.from_url(REDIS_URL)


def get_redis() -> Redis:
    return Redis(connection_pool=_pool)


def get_queue(name: str = QUEUE_WORKERS) -> Queue:
    # Workers run until their session has no work left, so no rq timeout.
    return Queue(name, connection=get_redis(), default_timeout=-1)


def publish_event(event: dict) -> None:
    """Append *event* to the Redis stream. Best-effort, never raises."""
    payload = json.dumps({**event, "v": EVENT_VERSION})
    try:
        r = get_redis()
        r.xadd(EVENTS_STREAM, {"data": payload}, maxlen=EVENTS_STREAM_MAXLEN, approximate=True)
    except RedisError:
        log.debug("Event publish skipped (Redis unavailable): %s", event.get("type"))


def read_stream_events(count: int = 100) -> list[dict]:
    """Most recent stream events, oldest first. Empty if Redis is down."""
    try:
        entries = get_redis().xrevrange(EVENTS_STREAM, count=count)
    except RedisError:
        return []
    events = []
    for _entry_id, fields in reversed(entries):
        data = fields.get("data") or fields.get(b"data")
        if isinstance(data, bytes):
            data = data.decode()
        try:
            event = json.loads(data) if data else None
        except (json.JSONDecodeError, TypeError):
            continue
        if isinstance(event, dict):
            events.append(event)
    return events


def enqueue_worker_job(
    project_root: Path,
    session_id: str,
    worker_id: str,
    *,
    log_dir: Path,
) -> Job:
    """Enqueue one worker loop for *worker_id* and spawn a process to run it."""
    from wavepool.worker import run_worker_job

    q = get_queue(QUEUE_WORKERS)
    job_id = f"worker-{session_id}-{worker_id}"
    job = q.enqueue(
        run_worker_job,
        str(project_root),
        session_id,
        worker_id,
        job_id=job_id,
        failure_ttl=FAILURE_TTL,
        description=f"Worker {worker_id} for {session_id}",
    )
    _spawn_worker(QUEUE_WORKERS, job_id=job_id, log_dir=log_dir)
    return job


def _spawn_worker(
    queue_name: str = QUEUE_WORKERS,
    *,
    job_id: str | None = None,
    log_dir: Path | None = None,
) -> None:
    """Spawn a background rq worker process for *queue_name*.

    The worker runs in burst mode and exits once the queue is empty. When
    *job_id* and *log_dir* are given, its stdout/stderr go to
    ``<log_dir>/<job_id>.log``.
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
        if job_id and log_dir is not None:
            log_dir.mkdir(parents=True, exist_ok=True, mode=0o700)
            log_fh = open(log_dir / f"{job_id}.log", "w")  # noqa: SIM115
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
        log_fh.close()

    log.info("Spawned worker pid=%d for %s", proc.pid, queue_name)
