"""Worker pool coordination and the pull-based claim protocol.

Every operation here is one transaction against the session document:
load under the session lock, apply a single logical change, write it back.
Workers are separate processes; they never talk to each other, only to
the document. Events are emitted after the transaction commits.

Worker state machine::

    idle -> claiming -> executing -> completed | failed | terminated

A worker that completed or failed a task may claim again; a terminated
worker may not. ``claiming`` lasts only inside the claim transaction and
is never written to the document.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Iterator, Sequence
from contextlib import contextmanager
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any

from wavepool import checkpoint, events
from wavepool.config import SwarmConfig
from wavepool.graph import (
    GraphError,
    blocked_by_failure,
    build_tasks,
    execution_order,
    recompute_availability,
    wave_complete,
)
from wavepool.models import (
    SESSION_CLAIMABLE_STATUSES,
    SESSION_TERMINAL_STATUSES,
    STATE_SCHEMA_VERSION,
    TASK_IN_FLIGHT_STATUSES,
    TASK_OPEN_STATUSES,
    WORKER_ACTIVE_STATUSES,
    SessionState,
    SessionStats,
    TaskDescriptor,
    TaskRecord,
    WorkerRecord,
    find_task,
    find_worker,
    format_ts,
    parse_ts,
)
from wavepool.ownership import is_reserved, normalize_path, release, release_all, try_acquire
from wavepool.store import StateStore

log = logging.getLogger(__name__)

STALE_WORKER_ERROR = "Worker timed out"


def _utcnow() -> datetime:
    return datetime.now(UTC)


@dataclass
class ClaimResult:
    """Outcome of one claim attempt.

    ``outcome`` is one of ``claimed``, ``none_available`` (work exists but
    nothing is claimable right now), ``no_tasks`` (nothing left to run),
    ``stalled`` (only tasks blocked behind failures remain), ``at_capacity``,
    ``busy`` (the worker already holds a task), ``terminated`` or
    ``inactive`` (session paused or finished).
    """

    outcome: str
    worker_id: str
    task: TaskRecord | None = None
    files: list[str] = field(default_factory=list)
    inputs: list[str] = field(default_factory=list)
    conflicts: list[dict[str, str]] = field(default_factory=list)
    session_status: str | None = None

    @property
    def claimed(self) -> bool:
        return self.outcome == "claimed"

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class TaskOutcome:
    accepted: bool
    task_id: str
    reason: str | None = None
    promoted: list[str] = field(default_factory=list)
    run_completed: bool = False

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@contextmanager
def _session(store: StateStore, session_id: str) -> Iterator[SessionState]:
    """Store transaction that refreshes aggregate stats before committing."""
    with store.transaction(session_id) as state:
        yield state
        state["stats"] = calculate_stats(state)


def _swarm_config(state: SessionState) -> SwarmConfig:
    return SwarmConfig.from_dict(state["config"])


# -- Stats / queries --


def executing_count(state: SessionState) -> int:
    return sum(1 for worker in state["workers"] if worker["status"] == "executing")


def can_spawn_more(state: SessionState, limit: int | None = None) -> bool:
    """True iff fewer than *limit* workers are executing."""
    if limit is None:
        limit = _swarm_config(state).max_workers
    return executing_count(state) < limit


def calculate_stats(state: SessionState) -> SessionStats:
    counts = dict.fromkeys(("pending", "available", "completed", "failed", "in_flight"), 0)
    total_time = 0
    for task in state["tasks"]:
        status = task["status"]
        counts["in_flight" if status in TASK_IN_FLIGHT_STATUSES else status] += 1
        result = task.get("result") or {}
        total_time += result.get("execution_time_ms") or 0
    return {
        "total_tasks": len(state["tasks"]),
        "completed_tasks": counts["completed"],
        "failed_tasks": counts["failed"],
        "in_progress_tasks": counts["in_flight"],
        "available_tasks": counts["available"],
        "blocked_tasks": counts["pending"],
        "blocked_by_failure": len(blocked_by_failure(state)),
        "active_workers": sum(
            1 for worker in state["workers"] if worker["status"] in WORKER_ACTIVE_STATUSES
        ),
        "total_execution_time_ms": total_time,
    }


def get_status(store: StateStore, session_id: str) -> dict[str, Any]:
    state = store.load(session_id)
    return {
        "session_id": session_id,
        "status": state["status"],
        "stats": calculate_stats(state),
        "version": state["version"],
        "updated_at": state["updated_at"],
    }


def _run_finished(state: SessionState) -> bool:
    return not any(task["status"] in TASK_OPEN_STATUSES for task in state["tasks"])


# -- Session lifecycle --


def initialize_session(
    store: StateStore,
    descriptors: Sequence[TaskDescriptor],
    *,
    session_id: str | None = None,
    plan_path: str | None = None,
    config: SwarmConfig | None = None,
    overwrite: bool = False,
) -> SessionState:
    """Build the task graph and persist a fresh session document.

    Raises PlanValidationError or GraphError for a malformed plan (including
    a task that declares a coordinator-reserved file, which no worker could
    ever lease), and StateConflictError if the session exists and
    *overwrite* is false.
    """
    tasks = build_tasks(descriptors)
    swarm = config or store.config.swarm
    for task in tasks:
        for path in task["files"]:
            if is_reserved(normalize_path(path), swarm.reserved_files):
                raise GraphError(
                    f"Task {task['id']!r} declares reserved file {path!r}; "
                    "it can never be leased to a worker"
                )
    now = format_ts(_utcnow())
    state: SessionState = {
        "schema": STATE_SCHEMA_VERSION,
        "version": 0,
        "session_id": session_id or f"run-{uuid.uuid4().hex[:12]}",
        "plan_path": plan_path,
        "config": swarm.to_dict(),
        "status": "initializing",
        "tasks": tasks,
        "workers": [],
        "ownership": {},
        "stats": {},  # type: ignore[typeddict-item]
        "started_at": now,
        "updated_at": now,
        "completed_at": None,
    }
    state["stats"] = calculate_stats(state)
    store.create(state, overwrite=overwrite)
    log.info("Initialized session %s with %d tasks", state["session_id"], len(tasks))
    events.emit_event(
        store,
        events.SESSION_INITIALIZED,
        {"session_id": state["session_id"], "task_count": len(tasks), "plan_path": plan_path},
    )
    return state


def _transition(
    store: StateStore, session_id: str, target: str, allowed_from: set[str]
) -> bool:
    with _session(store, session_id) as state:
        previous = state["status"]
        if previous not in allowed_from:
            return False
        state["status"] = target
        if target in SESSION_TERMINAL_STATUSES:
            state["completed_at"] = format_ts(_utcnow())
    events.emit_event(
        store,
        events.SESSION_STATUS_CHANGED,
        {"session_id": session_id, "from": previous, "to": target},
    )
    return True


def start_session(store: StateStore, session_id: str) -> bool:
    return _transition(store, session_id, "running", {"initializing", "paused"})


def pause_session(store: StateStore, session_id: str) -> bool:
    """Stop handing out claims; in-flight tasks may still finish."""
    return _transition(store, session_id, "paused", {"initializing", "running"})


def resume_session(store: StateStore, session_id: str) -> bool:
    return _transition(store, session_id, "running", {"paused"})


def end_session(store: StateStore, session_id: str) -> bool:
    return _transition(
        store, session_id, "completed", {"initializing", "running", "paused"}
    )


def mark_session_failed(store: StateStore, session_id: str) -> bool:
    return _transition(
        store, session_id, "failed", {"initializing", "running", "paused"}
    )


def clear_session(store: StateStore, session_id: str, *, archive: bool = True) -> Path | None:
    """Remove a session from the live state tree, archiving it by default."""
    if archive:
        target: Path | None = store.archive(session_id)
    else:
        store.delete(session_id)
        target = None
    events.emit_event(
        store,
        events.SESSION_CLEARED,
        {"session_id": session_id, "archived_to": str(target) if target else None},
    )
    return target


# -- Workers --


def _add_worker(state: SessionState, worker_id: str | None, now: datetime) -> WorkerRecord:
    index = len(state["workers"]) + 1
    worker: WorkerRecord = {
        "id": worker_id or f"worker-{uuid.uuid4().hex[:8]}",
        "name": f"Worker-{index}",
        "index": index,
        "status": "idle",
        "current_task_id": None,
        "last_heartbeat": format_ts(now),
        "completed_tasks": [],
        "failed_tasks": [],
        "error": None,
        "registered_at": format_ts(now),
    }
    state["workers"].append(worker)
    return worker


def register_worker(
    store: StateStore, session_id: str, worker_id: str | None = None
) -> WorkerRecord:
    """Add a worker to the session. Re-registering a known id is a no-op."""
    with _session(store, session_id) as state:
        existing = find_worker(state, worker_id) if worker_id else None
        if existing is not None:
            return existing
        worker = _add_worker(state, worker_id, _utcnow())
    events.emit_event(
        store,
        events.WORKER_REGISTERED,
        {"session_id": session_id, "worker_id": worker["id"], "name": worker["name"]},
    )
    return worker


def heartbeat(store: StateStore, session_id: str, worker_id: str) -> bool:
    """Record a liveness signal. False for unknown or terminated workers."""
    with _session(store, session_id) as state:
        worker = find_worker(state, worker_id)
        if worker is None or worker["status"] == "terminated":
            return False
        worker["last_heartbeat"] = format_ts(_utcnow())
    return True


def _return_to_queue(state: SessionState, task: TaskRecord) -> None:
    """Clear claim fields and make *task* claimable again."""
    status = {t["id"]: t["status"] for t in state["tasks"]}
    ready = all(status.get(dep) == "completed" for dep in task["blocked_by"])
    task["status"] = "available" if ready else "pending"
    task["claimed_by"] = None
    task["claimed_at"] = None
    task["started_at"] = None


def _cleanup_stale_locked(
    state: SessionState, timeout_ms: int, now: datetime
) -> list[tuple[str, str | None]]:
    cutoff = now - timedelta(milliseconds=timeout_ms)
    terminated = []
    for worker in state["workers"]:
        if worker["status"] == "terminated":
            continue
        if parse_ts(worker["last_heartbeat"]) >= cutoff:
            continue
        task_id = worker["current_task_id"]
        task = find_task(state, task_id) if task_id else None
        if task is not None and task["claimed_by"] == worker["id"]:
            if task["status"] in TASK_IN_FLIGHT_STATUSES:
                _return_to_queue(state, task)
        release_all(state["ownership"], worker["id"])
        worker["status"] = "terminated"
        worker["current_task_id"] = None
        worker["error"] = STALE_WORKER_ERROR
        terminated.append((worker["id"], task_id))
        log.warning(
            "Terminated stale worker %s (last heartbeat %s); released task %s",
            worker["id"],
            worker["last_heartbeat"],
            task_id,
        )
    return terminated


def worker_heartbeats(store: StateStore, session_id: str) -> dict[str, str]:
    """Current ``last_heartbeat`` of every worker in the session."""
    state = store.load(session_id)
    return {worker["id"]: worker["last_heartbeat"] for worker in state["workers"]}


def _carry_heartbeats(state: SessionState, heartbeats: dict[str, str]) -> None:
    for worker in state["workers"]:
        if worker["status"] == "terminated":
            continue
        stamp = heartbeats.get(worker["id"])
        if stamp is not None and parse_ts(stamp) > parse_ts(worker["last_heartbeat"]):
            worker["last_heartbeat"] = stamp


def _emit_terminated(
    store: StateStore, session_id: str, terminated: list[tuple[str, str | None]]
) -> None:
    for worker_id, task_id in terminated:
        events.emit_event(
            store,
            events.WORKER_TERMINATED,
            {"session_id": session_id, "worker_id": worker_id, "task_id": task_id},
        )


def cleanup_stale(
    store: StateStore,
    session_id: str,
    timeout_ms: int | None = None,
    *,
    now: datetime | None = None,
) -> list[str]:
    """Terminate workers whose last heartbeat is older than *timeout_ms*.

    Their in-flight tasks go back to ``available`` and their files are
    released. Returns the terminated worker ids.
    """
    with _session(store, session_id) as state:
        if timeout_ms is None:
            timeout_ms = _swarm_config(state).worker_timeout_ms
        terminated = _cleanup_stale_locked(state, timeout_ms, now or _utcnow())
    _emit_terminated(store, session_id, terminated)
    return [worker_id for worker_id, _ in terminated]


# -- Claim protocol --


def _claim_inputs(state: SessionState, task: TaskRecord) -> list[str]:
    """Outputs of the task's nearest completed predecessors."""
    blockers = [find_task(state, dep) for dep in task["blocked_by"]]
    done = [b for b in blockers if b is not None and b["status"] == "completed"]
    if not done:
        return []
    nearest = max(b["wave"] for b in done)
    return [
        (b.get("result") or {}).get("output") or ""
        for b in execution_order(done)
        if b["wave"] == nearest
    ]


def _no_claim_outcome(state: SessionState) -> str:
    statuses = {task["status"] for task in state["tasks"]}
    if not statuses & TASK_OPEN_STATUSES:
        return "no_tasks"
    if not statuses & (TASK_IN_FLIGHT_STATUSES | {"available"}):
        return "stalled"
    return "none_available"


def _claim_locked(
    state: SessionState, worker_id: str, config: SwarmConfig, now: datetime
) -> ClaimResult:
    if state["status"] not in SESSION_CLAIMABLE_STATUSES:
        if state["status"] == "completed" and _run_finished(state):
            return ClaimResult("no_tasks", worker_id)
        return ClaimResult("inactive", worker_id)
    if state["status"] == "initializing":
        state["status"] = "running"

    worker = find_worker(state, worker_id) or _add_worker(state, worker_id, now)
    if worker["status"] == "terminated":
        return ClaimResult("terminated", worker_id)
    worker["last_heartbeat"] = format_ts(now)

    current = find_task(state, worker["current_task_id"]) if worker["current_task_id"] else None
    if (
        current is not None
        and current["claimed_by"] == worker_id
        and current["status"] in TASK_IN_FLIGHT_STATUSES
    ):
        return ClaimResult("busy", worker_id, task=current, files=list(current["files"]))

    if worker["status"] != "executing" and executing_count(state) >= config.max_workers:
        return ClaimResult("at_capacity", worker_id)

    conflicts = []
    for task in execution_order(state["tasks"]):
        if task["status"] != "available":
            continue
        lease = try_acquire(state["ownership"], worker_id, task["files"], config.reserved_files)
        if not lease.granted:
            conflicts.append(
                {"task_id": task["id"], "path": lease.conflict_path, "owner": lease.owner}
            )
            continue
        stamp = format_ts(now)
        task["status"] = "executing"
        task["claimed_by"] = worker_id
        task["claimed_at"] = stamp
        task["started_at"] = stamp
        task["attempts"] = task.get("attempts", 0) + 1
        worker["status"] = "executing"
        worker["current_task_id"] = task["id"]
        worker["error"] = None
        return ClaimResult(
            "claimed",
            worker_id,
            task=task,
            files=lease.paths,
            inputs=_claim_inputs(state, task),
            conflicts=conflicts,
        )

    outcome = _no_claim_outcome(state)
    if outcome == "no_tasks":
        # Empty plan, or the last open task failed: nothing will ever finish it.
        state["status"] = "completed"
        state["completed_at"] = format_ts(now)
    return ClaimResult(outcome, worker_id, conflicts=conflicts)


def claim_task(
    store: StateStore,
    session_id: str,
    worker_id: str,
    *,
    now: datetime | None = None,
) -> ClaimResult:
    """Claim the first available task whose files can all be leased.

    Candidates are scanned by ascending wave, then id. A candidate whose
    files conflict with another worker's lease is skipped. Stale workers
    are cleaned up first when the session has ``auto_release_stale``.
    """
    now = now or _utcnow()
    with _session(store, session_id) as state:
        config = _swarm_config(state)
        terminated = []
        if config.auto_release_stale:
            terminated = _cleanup_stale_locked(state, config.worker_timeout_ms, now)
        was_terminal = state["status"] in SESSION_TERMINAL_STATUSES
        result = _claim_locked(state, worker_id, config, now)
        result.session_status = state["status"]

    _emit_terminated(store, session_id, terminated)
    if result.session_status == "completed" and not was_terminal:
        log.info("Session %s completed", session_id)
        events.emit_event(store, events.RUN_COMPLETED, {"session_id": session_id})
    if result.conflicts:
        log.debug("Worker %s skipped %d conflicting tasks", worker_id, len(result.conflicts))
    if result.claimed:
        log.info("Worker %s claimed %s", worker_id, result.task["id"])
        events.emit_event(
            store,
            events.TASK_CLAIMED,
            {
                "session_id": session_id,
                "worker_id": worker_id,
                "task_id": result.task["id"],
                "files": result.files,
            },
            source="worker",
        )
    return result


def _check_owner(
    state: SessionState, worker_id: str, task_id: str
) -> tuple[TaskRecord | None, str | None]:
    task = find_task(state, task_id)
    if task is None:
        return None, "unknown_task"
    if task["status"] not in TASK_IN_FLIGHT_STATUSES:
        return task, "not_in_flight"
    if task["claimed_by"] != worker_id:
        return task, "not_owner"
    return task, None


def _normalize_result(result: dict[str, Any] | None, success: bool) -> dict[str, Any]:
    result = dict(result or {})
    normalized = {
        "success": success,
        "output": result.get("output"),
        "error": result.get("error"),
        "execution_time_ms": result.get("execution_time_ms"),
    }
    if result.get("files_modified"):
        normalized["files_modified"] = list(result["files_modified"])
    return normalized


def _finish_worker(worker: WorkerRecord | None, status: str, task_id: str, now: datetime) -> None:
    if worker is None:
        return
    worker["status"] = status
    worker["current_task_id"] = None
    worker["last_heartbeat"] = format_ts(now)
    target = worker["completed_tasks"] if status == "completed" else worker["failed_tasks"]
    if task_id not in target:
        target.append(task_id)


def complete_task(
    store: StateStore,
    session_id: str,
    worker_id: str,
    task_id: str,
    result: dict[str, Any] | None = None,
) -> TaskOutcome:
    """Mark a task completed, release its files and unblock dependents.

    Only the worker currently holding the task may complete it.
    """
    now = _utcnow()
    with _session(store, session_id) as state:
        task, reason = _check_owner(state, worker_id, task_id)
        if reason is not None:
            log.info("Rejected completion of %s by %s: %s", task_id, worker_id, reason)
            return TaskOutcome(False, task_id, reason=reason)

        task["status"] = "completed"
        task["completed_at"] = format_ts(now)
        task["result"] = _normalize_result(result, True)
        release(state["ownership"], worker_id, task["files"])
        promoted = recompute_availability(state)
        _finish_worker(find_worker(state, worker_id), "completed", task_id, now)

        run_completed = _run_finished(state) and state["status"] not in SESSION_TERMINAL_STATUSES
        if run_completed:
            state["status"] = "completed"
            state["completed_at"] = format_ts(now)
        config = _swarm_config(state)
        wave = task["wave"]
        checkpoint_wave = config.checkpoint_on_wave and wave_complete(state, wave)

    events.emit_event(
        store,
        events.TASK_COMPLETED,
        {"session_id": session_id, "worker_id": worker_id, "task_id": task_id},
        source="worker",
    )
    if promoted:
        events.emit_event(
            store, events.TASKS_UNBLOCKED, {"session_id": session_id, "task_ids": promoted}
        )
    if run_completed:
        log.info("Session %s completed", session_id)
        events.emit_event(store, events.RUN_COMPLETED, {"session_id": session_id})
    if checkpoint_wave:
        _checkpoint_wave(store, session_id, wave)
    return TaskOutcome(True, task_id, promoted=promoted, run_completed=run_completed)


def _checkpoint_wave(store: StateStore, session_id: str, wave: int) -> None:
    created = checkpoint.create_checkpoint(
        store, phase=session_id, wave=wave, description=f"wave {wave} complete"
    )
    if not created.success:
        log.warning("Wave %d checkpoint for %s failed: %s", wave, session_id, created.error)


def fail_task(
    store: StateStore,
    session_id: str,
    worker_id: str,
    task_id: str,
    error: str | None = None,
    result: dict[str, Any] | None = None,
) -> TaskOutcome:
    """Mark a task failed and release its files.

    Dependents stay blocked until the task is retried and completes.
    """
    now = _utcnow()
    payload = dict(result or {})
    if error is not None:
        payload["error"] = error
    with _session(store, session_id) as state:
        task, reason = _check_owner(state, worker_id, task_id)
        if reason is not None:
            log.info("Rejected failure report of %s by %s: %s", task_id, worker_id, reason)
            return TaskOutcome(False, task_id, reason=reason)

        task["status"] = "failed"
        task["completed_at"] = format_ts(now)
        task["result"] = _normalize_result(payload, False)
        release(state["ownership"], worker_id, task["files"])
        worker = find_worker(state, worker_id)
        _finish_worker(worker, "failed", task_id, now)
        if worker is not None:
            worker["error"] = payload.get("error")

    events.emit_event(
        store,
        events.TASK_FAILED,
        {
            "session_id": session_id,
            "worker_id": worker_id,
            "task_id": task_id,
            "error": payload.get("error"),
        },
        source="worker",
    )
    return TaskOutcome(True, task_id)


def release_task(
    store: StateStore, session_id: str, worker_id: str, task_id: str
) -> TaskOutcome:
    """Give a claimed task back without completing or failing it."""
    with _session(store, session_id) as state:
        task, reason = _check_owner(state, worker_id, task_id)
        if reason is not None:
            return TaskOutcome(False, task_id, reason=reason)
        _return_to_queue(state, task)
        release(state["ownership"], worker_id, task["files"])
        worker = find_worker(state, worker_id)
        if worker is not None:
            worker["status"] = "idle"
            worker["current_task_id"] = None

    events.emit_event(
        store,
        events.TASK_RELEASED,
        {"session_id": session_id, "worker_id": worker_id, "task_id": task_id},
        source="worker",
    )
    return TaskOutcome(True, task_id)


def retry_task(store: StateStore, session_id: str, task_id: str) -> TaskOutcome:
    """Put a failed task back in the queue so its dependents can eventually run."""
    with _session(store, session_id) as state:
        task = find_task(state, task_id)
        if task is None:
            return TaskOutcome(False, task_id, reason="unknown_task")
        if task["status"] != "failed":
            return TaskOutcome(False, task_id, reason="not_failed")
        _return_to_queue(state, task)
        task["completed_at"] = None
        task["result"] = None
        if state["status"] == "completed":
            state["status"] = "running"
            state["completed_at"] = None

    events.emit_event(
        store, events.TASK_RETRIED, {"session_id": session_id, "task_id": task_id}
    )
    return TaskOutcome(True, task_id)


def release_in_flight(
    store: StateStore,
    session_id: str,
    *,
    worker_id: str | None = None,
    task_id: str | None = None,
    heartbeats: dict[str, str] | None = None,
) -> list[str]:
    """Return in-flight tasks to the queue and free their leases.

    Narrowed to one worker's or one task's claim when given. *heartbeats*
    maps worker ids to liveness stamps taken before a rollback; a restored
    worker keeps the newer of its two stamps so the rollback alone never
    makes it look stale. Returns the released task ids.
    """
    released = []
    with _session(store, session_id) as state:
        if heartbeats:
            _carry_heartbeats(state, heartbeats)
        for task in execution_order(state["tasks"]):
            if task["status"] not in TASK_IN_FLIGHT_STATUSES:
                continue
            if worker_id is not None and task["claimed_by"] != worker_id:
                continue
            if task_id is not None and task["id"] != task_id:
                continue
            owner = task["claimed_by"]
            if owner is not None:
                release(state["ownership"], owner, task["files"])
                worker = find_worker(state, owner)
                if worker is not None and worker["current_task_id"] == task["id"]:
                    worker["current_task_id"] = None
                    if worker["status"] != "terminated":
                        worker["status"] = "idle"
            _return_to_queue(state, task)
            released.append(task["id"])

    for released_id in released:
        events.emit_event(
            store, events.TASK_RELEASED, {"session_id": session_id, "task_id": released_id}
        )
    return released
