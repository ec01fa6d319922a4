"""Worker processes: claim, execute, report, repeat.

A worker is any process running :func:`run_worker` against a session.
Several may run at once; they coordinate only through the session
document. Background workers are launched through rq
(:func:`spawn_workers`), one burst rq worker per wavepool worker.
"""

from __future__ import annotations

import logging
import os
import subprocess
import threading
import time
from collections.abc import Callable, Sequence
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any

from wavepool import coordinator, queue
from wavepool.config import SwarmConfig, WorkerConfig
from wavepool.graph import build_stage_prompt
from wavepool.models import SESSION_TERMINAL_STATUSES, TaskRecord
from wavepool.store import PersistenceError, StateNotFoundError, StateStore

log = logging.getLogger(__name__)

# Claim outcomes after which a worker loop exits.
EXIT_OUTCOMES = {"no_tasks", "stalled", "terminated"}


@dataclass
class ExecutionResult:
    success: bool
    output: str | None = None
    error: str | None = None
    execution_time_ms: int | None = None
    files_modified: list[str] = field(default_factory=list)

    def to_result(self) -> dict[str, Any]:
        return asdict(self)


Executor = Callable[[TaskRecord, Sequence[str]], ExecutionResult]


class ShellExecutor:
    """Run task actions as shell commands in the project root.

    A task unit's ``action`` is a command string (or ``{"command": ...}``).
    Stage units are piped, as a rendered prompt, to ``agent_command``;
    ``WAVEPOOL_AGENT`` and ``WAVEPOOL_MODEL`` are set in its environment.
    """

    def __init__(
        self,
        root: Path,
        *,
        agent_command: str | None = None,
        timeout_s: float | None = None,
    ):
        self.root = Path(root)
        self.agent_command = agent_command
        self.timeout_s = timeout_s

    def __call__(self, task: TaskRecord, inputs: Sequence[str] = ()) -> ExecutionResult:
        unit = task["unit"]
        if unit["kind"] == "stage":
            return self._run_stage(unit, inputs)

        action = unit.get("action")
        if action is None:
            return ExecutionResult(True, output="", execution_time_ms=0)
        if isinstance(action, dict) and isinstance(action.get("command"), str):
            command = action["command"]
        elif isinstance(action, str):
            command = action
        else:
            return ExecutionResult(False, error=f"Unsupported action payload for {task['id']}")
        return self._run(command, timeout_s=self.timeout_s)

    def _run_stage(self, unit: dict, inputs: Sequence[str]) -> ExecutionResult:
        if not self.agent_command:
            return ExecutionResult(False, error="No agent_command configured for stage tasks")
        prompt = build_stage_prompt(unit, inputs)
        timeout_s = unit["timeout_ms"] / 1000 if unit.get("timeout_ms") else self.timeout_s
        env = {
            **os.environ,
            "WAVEPOOL_AGENT": unit["agent"],
            "WAVEPOOL_MODEL": unit.get("model") or "",
        }
        return self._run(self.agent_command, stdin=prompt, timeout_s=timeout_s, env=env)

    def _run(
        self,
        command: str,
        *,
        stdin: str | None = None,
        timeout_s: float | None = None,
        env: dict[str, str] | None = None,
    ) -> ExecutionResult:
        started = time.monotonic()
        try:
            proc = subprocess.run(
                command,
                shell=True,
                cwd=self.root,
                input=stdin,
                capture_output=True,
                text=True,
                timeout=timeout_s,
                env=env,
            )
        except subprocess.TimeoutExpired:
            return ExecutionResult(
                False,
                error=f"Timed out after {timeout_s}s",
                execution_time_ms=int((time.monotonic() - started) * 1000),
            )
        elapsed = int((time.monotonic() - started) * 1000)
        if proc.returncode != 0:
            error = proc.stderr.strip() or f"exit code {proc.returncode}"
            return ExecutionResult(
                False, output=proc.stdout, error=error, execution_time_ms=elapsed
            )
        return ExecutionResult(True, output=proc.stdout, execution_time_ms=elapsed)


@dataclass
class WorkerSummary:
    worker_id: str
    completed: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)
    exit_reason: str = ""

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def _heartbeat_loop(
    store: StateStore, session_id: str, worker_id: str, interval_s: float, stop: threading.Event
) -> None:
    while not stop.wait(interval_s):
        try:
            if not coordinator.heartbeat(store, session_id, worker_id):
                log.warning("Heartbeat rejected for %s; stopping heartbeats", worker_id)
                return
        except (PersistenceError, StateNotFoundError) as exc:
            log.warning("Heartbeat for %s failed: %s", worker_id, exc)


def _execute(executor: Executor, task: TaskRecord, inputs: Sequence[str]) -> ExecutionResult:
    try:
        return executor(task, inputs)
    except Exception as exc:
        log.exception("Executor crashed on %s", task["id"])
        return ExecutionResult(False, error=f"{type(exc).__name__}: {exc}")


def run_worker(
    store: StateStore,
    session_id: str,
    worker_id: str | None = None,
    *,
    executor: Executor | None = None,
    config: WorkerConfig | None = None,
    sleep: Callable[[float], None] = time.sleep,
) -> WorkerSummary:
    """Claim and execute tasks until the session has nothing left for us."""
    config = config or store.config.worker
    executor = executor or ShellExecutor(
        store.root, agent_command=config.agent_command, timeout_s=config.command_timeout_s
    )
    worker = coordinator.register_worker(store, session_id, worker_id)
    summary = WorkerSummary(worker["id"])
    swarm = SwarmConfig.from_dict(store.load(session_id)["config"])

    stop = threading.Event()
    beat = threading.Thread(
        target=_heartbeat_loop,
        args=(store, session_id, summary.worker_id, swarm.heartbeat_interval_ms / 1000, stop),
        name=f"heartbeat-{summary.worker_id}",
        daemon=True,
    )
    beat.start()
    idle_polls = 0
    try:
        while True:
            claim = coordinator.claim_task(store, session_id, summary.worker_id)
            if claim.task is not None and claim.outcome in ("claimed", "busy"):
                idle_polls = 0
                task = claim.task
                log.info("%s executing %s", summary.worker_id, task["id"])
                result = _execute(executor, task, claim.inputs)
                if result.success:
                    outcome = coordinator.complete_task(
                        store, session_id, summary.worker_id, task["id"], result.to_result()
                    )
                    target = summary.completed
                else:
                    outcome = coordinator.fail_task(
                        store,
                        session_id,
                        summary.worker_id,
                        task["id"],
                        result.error,
                        result.to_result(),
                    )
                    target = summary.failed
                if outcome.accepted:
                    target.append(task["id"])
                else:
                    log.warning(
                        "Report for %s by %s rejected: %s",
                        task["id"],
                        summary.worker_id,
                        outcome.reason,
                    )
                continue

            if claim.outcome in EXIT_OUTCOMES:
                summary.exit_reason = claim.outcome
                break
            if claim.session_status in SESSION_TERMINAL_STATUSES:
                summary.exit_reason = f"session_{claim.session_status}"
                break
            idle_polls += 1
            if idle_polls >= config.max_idle_polls:
                summary.exit_reason = "idle"
                break
            sleep(config.poll_interval_s)
    finally:
        stop.set()
        beat.join(timeout=5)

    log.info(
        "%s exiting (%s): %d completed, %d failed",
        summary.worker_id,
        summary.exit_reason,
        len(summary.completed),
        len(summary.failed),
    )
    return summary


def run_worker_job(project_root: str, session_id: str, worker_id: str) -> dict[str, Any]:
    """rq entrypoint for a background worker."""
    store = StateStore(project_root)
    return run_worker(store, session_id, worker_id).to_dict()


def spawn_workers(store: StateStore, session_id: str, count: int) -> list[dict[str, str]]:
    """Register up to *count* workers (bounded by free capacity) and launch them."""
    state = store.load(session_id)
    limit = SwarmConfig.from_dict(state["config"]).max_workers
    free = max(0, limit - coordinator.executing_count(state))
    spawned = []
    for _ in range(min(count, free)):
        worker = coordinator.register_worker(store, session_id)
        job = queue.enqueue_worker_job(
            store.root, session_id, worker["id"], log_dir=store.paths.logs_dir
        )
        spawned.append({"worker_id": worker["id"], "job_id": job.id})
    if count > free:
        log.info("Spawned %d of %d requested workers (limit %d)", len(spawned), count, limit)
    return spawned
