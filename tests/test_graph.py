"""Tests for dependency maps, availability and pipeline graphs."""

import pytest

from wavepool.graph import (
    GraphError,
    blocked_by_failure,
    build_dependency_map,
    build_stage_prompt,
    build_tasks,
    execution_order,
    parse_pipeline_string,
    pipeline_descriptors,
    recompute_availability,
)
from wavepool.schema import PlanValidationError


def _task(task_id, wave, **extra):
    return {"id": task_id, "name": task_id, "wave": wave, "files": [], **extra}


def _state(descriptors):
    return {"tasks": build_tasks(descriptors)}


def _by_id(state):
    return {t["id"]: t for t in state["tasks"]}


def test_wave_rule_blocks_on_all_earlier_waves():
    deps = build_dependency_map(
        [_task("t1", 1), _task("t2", 1), _task("t3", 2), _task("t4", 3)]
    )
    assert deps == {
        "t1": [],
        "t2": [],
        "t3": ["t1", "t2"],
        "t4": ["t1", "t2", "t3"],
    }


def test_wave_monotonicity_holds_for_every_task():
    descriptors = [_task(f"t{i}", (i % 4) + 1) for i in range(12)]
    deps = build_dependency_map(descriptors)
    for desc in descriptors:
        earlier = {d["id"] for d in descriptors if d["wave"] < desc["wave"]}
        assert earlier <= set(deps[desc["id"]])


def test_explicit_same_wave_dependency():
    deps = build_dependency_map(
        [_task("a", 1), _task("b", 1, depends_on=["a"]), _task("c", 2)]
    )
    assert deps["b"] == ["a"]
    assert deps["c"] == ["a", "b"]


def test_cycle_rejected():
    with pytest.raises(GraphError, match="cycle"):
        build_dependency_map(
            [_task("a", 1, depends_on=["b"]), _task("b", 1, depends_on=["a"])]
        )


def test_long_same_wave_chain():
    chain = [_task("t00000", 1)] + [
        _task(f"t{i:05d}", 1, depends_on=[f"t{i - 1:05d}"]) for i in range(1, 1500)
    ]
    deps = build_dependency_map(chain)
    assert deps["t01499"] == ["t01498"]

    chain[0] = _task("t00000", 1, depends_on=["t01499"])
    with pytest.raises(GraphError, match="cycle"):
        build_dependency_map(chain)


def test_dependency_on_later_wave_rejected():
    with pytest.raises(GraphError, match="later wave"):
        build_dependency_map([_task("a", 1, depends_on=["b"]), _task("b", 2)])


def test_self_dependency_rejected():
    with pytest.raises(GraphError, match="itself"):
        build_dependency_map([_task("a", 1, depends_on=["a"])])


def test_duplicate_ids_rejected():
    with pytest.raises(GraphError, match="Duplicate"):
        build_dependency_map([_task("a", 1), _task("a", 2)])


def test_unknown_predecessor_rejected():
    with pytest.raises(GraphError, match="unknown"):
        build_dependency_map([_task("a", 1, depends_on=["ghost"])])


@pytest.mark.parametrize(
    "bad",
    [
        [{"id": "a", "wave": 0}],
        [{"id": "a", "wave": -1}],
        [{"id": "a", "wave": "1"}],
        [{"wave": 1}],
        [{"id": "a", "wave": 1, "files": "a.py"}],
        {"id": "a", "wave": 1},
    ],
)
def test_malformed_descriptors_rejected(bad):
    with pytest.raises(PlanValidationError):
        build_dependency_map(bad)


def test_build_tasks_initial_statuses_and_unit():
    tasks = build_tasks(
        [_task("t1", 1, action="make build", files=["a.py", "a.py"]), _task("t2", 2)]
    )
    t1, t2 = tasks
    assert t1["status"] == "available"
    assert t1["unit"] == {"kind": "task", "action": "make build"}
    assert t1["files"] == ["a.py"]
    assert t2["status"] == "pending"
    assert t2["blocked_by"] == ["t1"]
    assert t2["claimed_by"] is None
    assert t2["attempts"] == 0


def test_execution_order_wave_then_id():
    tasks = build_tasks([_task("b", 2), _task("z", 1), _task("a", 1), _task("a2", 2)])
    assert [t["id"] for t in execution_order(tasks)] == ["a", "z", "a2", "b"]


def test_recompute_promotes_only_when_every_blocker_completed():
    state = _state([_task("task1", 1), _task("task2", 1), _task("task3", 2)])
    tasks = _by_id(state)

    tasks["task1"]["status"] = "completed"
    assert recompute_availability(state) == []
    assert tasks["task3"]["status"] == "pending"

    tasks["task2"]["status"] = "completed"
    assert recompute_availability(state) == ["task3"]
    assert tasks["task3"]["status"] == "available"


def test_failed_blocker_never_promotes():
    state = _state([_task("a", 1), _task("b", 2)])
    _by_id(state)["a"]["status"] = "failed"
    assert recompute_availability(state) == []
    assert _by_id(state)["b"]["status"] == "pending"


def test_blocked_by_failure_is_transitive():
    state = _state([_task("a", 1), _task("b", 1), _task("c", 2, depends_on=["a"]), _task("d", 3)])
    tasks = _by_id(state)
    tasks["a"]["status"] = "failed"
    tasks["b"]["status"] = "completed"
    assert blocked_by_failure(state) == {"c", "d"}


def test_parse_pipeline_string():
    stages = parse_pipeline_string("explore:haiku -> architect:opus -> executor")
    assert [s["agent"] for s in stages] == ["explore", "architect", "executor"]
    assert [s["model"] for s in stages] == ["haiku", "opus", None]
    assert stages[0]["prompt_template"] == "{input}"
    assert stages[1]["prompt_template"] == "Continue with:\n{input}"


def test_parse_pipeline_string_rejects_empty_stage():
    with pytest.raises(GraphError):
        parse_pipeline_string("explore -> -> executor")


def test_pipeline_parallel_stages_share_a_wave():
    descriptors = pipeline_descriptors(
        "review",
        [
            {"agent": "explore"},
            {"agent": "security", "parallel": True},
            {"agent": "quality", "parallel": True},
            {"agent": "writer"},
        ],
        initial_input="src/",
    )
    assert [d["wave"] for d in descriptors] == [1, 2, 2, 3]
    assert descriptors[0]["unit"]["input"] == "src/"
    assert "input" not in descriptors[1]["unit"]
    tasks = build_tasks(descriptors)
    assert tasks[-1]["blocked_by"] == ["review-001", "review-002", "review-003"]


def test_pipeline_without_stages_rejected():
    with pytest.raises(GraphError):
        pipeline_descriptors("empty", [])


def test_build_stage_prompt_joins_seed_and_upstream_outputs():
    unit = {"kind": "stage", "agent": "a", "model": None, "prompt_template": "Do: {input}",
            "timeout_ms": None, "input": "seed"}
    assert build_stage_prompt(unit, ["one", "", "two"]) == "Do: seed\n\none\n\ntwo"
