"""Record shapes of the persisted session document.

Records are plain dicts (JSON round-trips them unchanged); the TypedDicts
below document their keys.
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any, Literal, NotRequired, TypedDict

STATE_SCHEMA_VERSION = 1

VALID_TASK_STATUSES = {"pending", "available", "claimed", "executing", "completed", "failed"}
TASK_IN_FLIGHT_STATUSES = {"claimed", "executing"}
TASK_TERMINAL_STATUSES = {"completed", "failed"}
TASK_OPEN_STATUSES = {"pending", "available", "claimed", "executing"}

# A claim is one transaction, so "claiming" is never persisted between writes.
VALID_WORKER_STATUSES = {"idle", "claiming", "executing", "completed", "failed", "terminated"}
WORKER_ACTIVE_STATUSES = {"executing"}

VALID_SESSION_STATUSES = {"initializing", "running", "paused", "completed", "failed"}
SESSION_CLAIMABLE_STATUSES = {"initializing", "running"}
SESSION_TERMINAL_STATUSES = {"completed", "failed"}

COORDINATOR_OWNER = "coordinator"


def utcnow_iso() -> str:
    """ISO 8601 UTC timestamp with millisecond precision."""
    return format_ts(datetime.now(UTC))


def format_ts(moment: datetime) -> str:
    return moment.astimezone(UTC).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def parse_ts(value: str) -> datetime:
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


# -- Execution units (tagged union on "kind") --


class TaskUnit(TypedDict):
    kind: Literal["task"]
    action: Any


class StageUnit(TypedDict):
    kind: Literal["stage"]
    agent: str
    model: str | None
    prompt_template: str
    timeout_ms: int | None
    input: NotRequired[str]


ExecutionUnit = TaskUnit | StageUnit


class TaskDescriptor(TypedDict):
    """Parsed plan entry supplied by the planning layer."""

    id: str
    name: str
    wave: int
    files: list[str]
    action: NotRequired[Any]
    unit: NotRequired[ExecutionUnit]
    depends_on: NotRequired[list[str]]


# -- Persisted records --


class TaskResult(TypedDict, total=False):
    success: bool
    output: str | None
    error: str | None
    execution_time_ms: int | None
    files_modified: list[str]


class TaskRecord(TypedDict):
    id: str
    name: str
    wave: int
    unit: ExecutionUnit
    files: list[str]
    blocked_by: list[str]
    status: str
    claimed_by: str | None
    claimed_at: str | None
    started_at: str | None
    completed_at: str | None
    attempts: int
    result: TaskResult | None


class WorkerRecord(TypedDict):
    id: str
    name: str
    index: int
    status: str
    current_task_id: str | None
    last_heartbeat: str
    completed_tasks: list[str]
    failed_tasks: list[str]
    error: str | None
    registered_at: str


class SessionStats(TypedDict):
    total_tasks: int
    completed_tasks: int
    failed_tasks: int
    in_progress_tasks: int
    available_tasks: int
    blocked_tasks: int
    blocked_by_failure: int
    active_workers: int
    total_execution_time_ms: int


class SessionState(TypedDict):
    schema: int
    version: int
    session_id: str
    plan_path: str | None
    config: dict[str, Any]
    status: str
    tasks: list[TaskRecord]
    workers: list[WorkerRecord]
    ownership: dict[str, str]
    stats: SessionStats
    started_at: str
    updated_at: str
    completed_at: str | None


class RecoveryState(TypedDict):
    is_recovering: bool
    last_error_at: str | None
    error_count: int
    last_error: str | None
    cooldown_until: str | None


class Checkpoint(TypedDict):
    id: str
    commit_hash: str
    created_at: str
    phase: str
    plan: int
    wave: int
    description: str
    state_files: list[str]


def default_recovery_state() -> RecoveryState:
    return {
        "is_recovering": False,
        "last_error_at": None,
        "error_count": 0,
        "last_error": None,
        "cooldown_until": None,
    }


def find_task(state: SessionState, task_id: str) -> TaskRecord | None:
    for task in state["tasks"]:
        if task["id"] == task_id:
            return task
    return None


def find_worker(state: SessionState, worker_id: str) -> WorkerRecord | None:
    for worker in state["workers"]:
        if worker["id"] == worker_id:
            return worker
    return None
