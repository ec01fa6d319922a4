"""Task graph construction and wave scheduling.

A task in wave N is blocked by every task in waves 1..N-1, plus any ids
it names in ``depends_on``. Pipelines are expressed as the same graph:
each stage becomes a task whose execution unit is ``{"kind": "stage"}``.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Sequence
from typing import Any

from wavepool.models import (
    ExecutionUnit,
    SessionState,
    StageUnit,
    TaskDescriptor,
    TaskRecord,
)
from wavepool.schema import validate_descriptors

log = logging.getLogger(__name__)

DEFAULT_FIRST_STAGE_TEMPLATE = "{input}"
DEFAULT_NEXT_STAGE_TEMPLATE = "Continue with:\n{input}"


class GraphError(ValueError):
    """The task list does not form a valid wave-ordered DAG."""


def order_key(task: TaskRecord | TaskDescriptor) -> tuple[int, str]:
    return task["wave"], str(task["id"])


def execution_order(tasks: Iterable[TaskRecord]) -> list[TaskRecord]:
    """Tasks sorted by ascending wave, then ascending id."""
    return sorted(tasks, key=order_key)


def _check_acyclic(graph: dict[str, list[str]]) -> None:
    # Iterative DFS; long same-wave chains must not hit the recursion limit.
    done: set[str] = set()
    for root in sorted(graph):
        if root in done:
            continue
        trail = [root]
        on_trail = {root}
        pending = [iter(graph[root])]
        while pending:
            dep = next(pending[-1], None)
            if dep is None:
                pending.pop()
                node = trail.pop()
                on_trail.discard(node)
                done.add(node)
            elif dep in on_trail:
                cycle = trail[trail.index(dep) :] + [dep]
                raise GraphError(f"Dependency cycle: {' -> '.join(cycle)}")
            elif dep not in done:
                trail.append(dep)
                on_trail.add(dep)
                pending.append(iter(graph[dep]))


def build_dependency_map(descriptors: Sequence[TaskDescriptor]) -> dict[str, list[str]]:
    """Map each task id to its sorted blocking set.

    Raises PlanValidationError for malformed descriptors and GraphError for
    duplicate ids, unknown predecessors, predecessors in a later wave, and
    cycles.
    """
    validate_descriptors(list(descriptors))

    waves: dict[str, int] = {}
    for desc in descriptors:
        if desc["id"] in waves:
            raise GraphError(f"Duplicate task id {desc['id']!r}")
        waves[desc["id"]] = desc["wave"]

    deps: dict[str, list[str]] = {}
    for desc in descriptors:
        task_id, wave = desc["id"], desc["wave"]
        blocked = {other for other, other_wave in waves.items() if other_wave < wave}
        for pred in desc.get("depends_on", []):
            if pred not in waves:
                raise GraphError(f"Task {task_id!r} depends on unknown task {pred!r}")
            if pred == task_id:
                raise GraphError(f"Task {task_id!r} depends on itself")
            if waves[pred] > wave:
                raise GraphError(
                    f"Task {task_id!r} (wave {wave}) depends on {pred!r} in later wave "
                    f"{waves[pred]}"
                )
            blocked.add(pred)
        deps[task_id] = sorted(blocked, key=lambda tid: (waves[tid], tid))

    _check_acyclic(deps)
    return deps


def _unit_for(desc: TaskDescriptor) -> ExecutionUnit:
    unit = desc.get("unit")
    if unit is not None:
        return dict(unit)  # type: ignore[return-value]
    return {"kind": "task", "action": desc.get("action")}


def build_tasks(descriptors: Sequence[TaskDescriptor]) -> list[TaskRecord]:
    """Turn validated descriptors into fresh task records in execution order."""
    deps = build_dependency_map(descriptors)
    tasks: list[TaskRecord] = []
    for desc in descriptors:
        blocked_by = deps[desc["id"]]
        tasks.append(
            {
                "id": desc["id"],
                "name": desc.get("name") or desc["id"],
                "wave": desc["wave"],
                "unit": _unit_for(desc),
                "files": list(dict.fromkeys(desc.get("files", []))),
                "blocked_by": blocked_by,
                "status": "pending" if blocked_by else "available",
                "claimed_by": None,
                "claimed_at": None,
                "started_at": None,
                "completed_at": None,
                "attempts": 0,
                "result": None,
            }
        )
    return execution_order(tasks)


def recompute_availability(state: SessionState) -> list[str]:
    """Promote every pending task whose blockers have all completed.

    Returns the promoted ids.
    """
    status = {task["id"]: task["status"] for task in state["tasks"]}
    promoted = []
    for task in execution_order(state["tasks"]):
        if task["status"] != "pending":
            continue
        if all(status.get(dep) == "completed" for dep in task["blocked_by"]):
            task["status"] = "available"
            status[task["id"]] = "available"
            promoted.append(task["id"])
    if promoted:
        log.debug("Unblocked %s", ", ".join(promoted))
    return promoted


def blocked_by_failure(state: SessionState) -> set[str]:
    """Pending tasks that can never run because a predecessor failed."""
    by_id = {task["id"]: task for task in state["tasks"]}
    failed = {tid for tid, task in by_id.items() if task["status"] == "failed"}
    doomed: set[str] = set()
    for task in execution_order(state["tasks"]):
        if task["status"] != "pending":
            continue
        if any(dep in failed or dep in doomed for dep in task["blocked_by"]):
            doomed.add(task["id"])
    return doomed


def wave_complete(state: SessionState, wave: int) -> bool:
    return all(task["status"] == "completed" for task in state["tasks"] if task["wave"] == wave)


# -- Pipelines --


def parse_pipeline_string(spec: str) -> list[dict[str, Any]]:
    """Parse ``"agent:model -> agent:model"`` into stage dicts."""
    stages: list[dict[str, Any]] = []
    parts = [part.strip() for part in spec.split("->")]
    for index, part in enumerate(parts):
        if not part:
            raise GraphError(f"Empty stage in pipeline {spec!r}")
        agent, _, model = (piece.strip() for piece in part.partition(":"))
        if not agent:
            raise GraphError(f"Stage {index + 1} of {spec!r} has no agent")
        stages.append(
            {
                "name": f"stage-{index + 1}",
                "agent": agent,
                "model": model or None,
                "prompt_template": (
                    DEFAULT_FIRST_STAGE_TEMPLATE if index == 0 else DEFAULT_NEXT_STAGE_TEMPLATE
                ),
            }
        )
    return stages


def pipeline_descriptors(
    name: str,
    stages: Sequence[dict[str, Any]],
    initial_input: str | None = None,
) -> list[TaskDescriptor]:
    """Express an ordered stage list as wave-ordered task descriptors.

    Consecutive stages marked ``parallel`` share a wave; every other stage
    starts a new one, so each sequential stage is blocked by all earlier
    stages.
    """
    if not stages:
        raise GraphError(f"Pipeline {name!r} has no stages")
    descriptors: list[TaskDescriptor] = []
    wave = 0
    previous_parallel = False
    for index, stage in enumerate(stages):
        parallel = bool(stage.get("parallel"))
        if not (parallel and previous_parallel):
            wave += 1
        previous_parallel = parallel

        unit: StageUnit = {
            "kind": "stage",
            "agent": stage["agent"],
            "model": stage.get("model"),
            "prompt_template": stage.get("prompt_template") or DEFAULT_FIRST_STAGE_TEMPLATE,
            "timeout_ms": stage.get("timeout_ms"),
        }
        if wave == 1 and initial_input is not None:
            unit["input"] = initial_input
        descriptors.append(
            {
                "id": f"{name}-{index + 1:03d}",
                "name": stage.get("name") or f"stage-{index + 1}",
                "wave": wave,
                "files": list(stage.get("files", [])),
                "unit": unit,
            }
        )
    return descriptors


def build_stage_prompt(unit: StageUnit, inputs: Sequence[str] = ()) -> str:
    """Render a stage's prompt from its seeded input and upstream outputs."""
    pieces = [unit["input"]] if unit.get("input") else []
    pieces.extend(text for text in inputs if text)
    return unit["prompt_template"].replace("{input}", "\n\n".join(pieces))
