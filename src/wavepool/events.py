"""Structured event log.

Every state-changing coordination operation appends one event to
``.wavepool/events.jsonl`` and mirrors it to the Redis stream. Both sinks
are best-effort: an event that cannot be written is logged and dropped,
never allowed to fail the operation that produced it.
"""

from __future__ import annotations

import json
import logging
import uuid
from typing import Any

from wavepool import queue
from wavepool.models import utcnow_iso
from wavepool.store import StateStore, file_lock

log = logging.getLogger(__name__)

SESSION_INITIALIZED = "session_initialized"
SESSION_STATUS_CHANGED = "session_status_changed"
SESSION_CLEARED = "session_cleared"
WORKER_REGISTERED = "worker_registered"
WORKER_TERMINATED = "worker_terminated"
TASK_CLAIMED = "task_claimed"
TASK_COMPLETED = "task_completed"
TASK_FAILED = "task_failed"
TASK_RELEASED = "task_released"
TASK_RETRIED = "task_retried"
TASKS_UNBLOCKED = "tasks_unblocked"
RUN_COMPLETED = "run_completed"
RUN_FAILED = "run_failed"
CHECKPOINT_CREATED = "checkpoint_created"
ROLLBACK_INITIATED = "rollback_initiated"
ROLLBACK_COMPLETED = "rollback_completed"


def emit_event(
    store: StateStore,
    event_type: str,
    payload: dict[str, Any] | None = None,
    *,
    source: str = "coordinator",
) -> dict[str, Any]:
    event = {
        "id": uuid.uuid4().hex,
        "type": event_type,
        "timestamp": utcnow_iso(),
        "source": source,
        "payload": payload or {},
    }
    line = json.dumps(event, separators=(",", ":"))
    try:
        store.paths.events_file.parent.mkdir(parents=True, exist_ok=True)
        with file_lock(store.paths.lock_for("events")):
            with store.paths.events_file.open("a", encoding="utf-8") as handle:
                handle.write(line + "\n")
    except OSError:
        log.warning("Failed to append %s event to %s", event_type, store.paths.events_file)
    queue.publish_event(event)
    return event


def poll_events(store: StateStore, since_line: int = 0) -> tuple[list[dict[str, Any]], int]:
    """Events after line *since_line*, plus the line count to resume from.

    Malformed lines are skipped but still counted.
    """
    try:
        with store.paths.events_file.open(encoding="utf-8") as handle:
            lines = handle.read().splitlines()
    except FileNotFoundError:
        return [], since_line

    events = []
    for raw in lines[since_line:]:
        if not raw.strip():
            continue
        try:
            event = json.loads(raw)
        except json.JSONDecodeError:
            log.debug("Skipping malformed event line")
            continue
        if isinstance(event, dict):
            events.append(event)
    return events, len(lines)
