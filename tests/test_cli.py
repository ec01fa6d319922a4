"""Tests for the CLI commands."""

from __future__ import annotations

import json
from pathlib import Path
from unittest.mock import patch

from click.testing import CliRunner

from wavepool.cli import main


def _invoke(project: Path, *args: str, input: str | None = None):
    runner = CliRunner()
    return runner.invoke(main, ["--project-dir", str(project), *args], input=input)


def _write_tasks(project: Path, tasks) -> Path:
    path = project / "tasks.json"
    path.write_text(json.dumps(tasks))
    return path


def _init_session(project: Path, **extra) -> dict:
    tasks = _write_tasks(
        project,
        [
            {"id": "a", "wave": 1, "files": ["a.py"]},
            {"id": "b", "wave": 1, "files": ["a.py"]},
            {"id": "c", "wave": 2},
        ],
    )
    args = ["session", "init", str(tasks), "--session-id", "demo"]
    for key, value in extra.items():
        args += [f"--{key.replace('_', '-')}", str(value)]
    result = _invoke(project, *args)
    assert result.exit_code == 0, result.output
    return json.loads(result.stdout)


def test_session_init_from_file(project_root):
    payload = _init_session(project_root, max_workers=2)
    assert payload["session_id"] == "demo"
    assert payload["status"] == "initializing"
    assert payload["stats"]["total_tasks"] == 3

    shown = json.loads(_invoke(project_root, "session", "show", "demo").stdout)
    assert shown["config"]["max_workers"] == 2
    assert shown["plan_path"] == str((project_root / "tasks.json").resolve())


def test_session_init_from_stdin_with_tasks_key(project_root):
    doc = json.dumps({"tasks": [{"id": "only", "wave": 1}]})
    result = _invoke(project_root, "session", "init", "-", "--session-id", "piped", input=doc)
    assert result.exit_code == 0, result.output
    shown = json.loads(_invoke(project_root, "session", "show", "piped").stdout)
    assert shown["plan_path"] is None


def test_session_init_pipeline(project_root):
    result = _invoke(
        project_root,
        "session",
        "init",
        "--pipeline",
        "explore:haiku -> executor",
        "--input",
        "src/",
        "--session-id",
        "pipe",
    )
    assert result.exit_code == 0, result.output
    shown = json.loads(_invoke(project_root, "session", "show", "pipe").stdout)
    assert [t["id"] for t in shown["tasks"]] == ["pipe-001", "pipe-002"]
    assert shown["tasks"][0]["unit"]["input"] == "src/"


def test_session_init_rejects_cycle(project_root):
    tasks = _write_tasks(
        project_root,
        [{"id": "a", "wave": 1, "depends_on": ["b"]}, {"id": "b", "wave": 1, "depends_on": ["a"]}],
    )
    result = _invoke(project_root, "session", "init", str(tasks))
    assert result.exit_code == 1
    payload = json.loads(result.stdout)
    assert payload["ok"] is False
    assert "cycle" in payload["error"]


def test_session_init_rejects_invalid_wave(project_root):
    tasks = _write_tasks(project_root, [{"id": "a", "wave": 0}])
    result = _invoke(project_root, "session", "init", str(tasks))
    assert result.exit_code == 1
    assert json.loads(result.stdout)["ok"] is False


def test_session_init_requires_input(project_root):
    result = _invoke(project_root, "session", "init")
    assert result.exit_code == 1
    assert "TASKS_FILE" in json.loads(result.stdout)["error"]


def test_status_for_missing_session(project_root):
    result = _invoke(project_root, "session", "status", "ghost")
    assert result.exit_code == 1
    payload = json.loads(result.stdout)
    assert payload == {"ok": False, "error": "No session state for 'ghost'"}


def test_unknown_command_suggests(project_root):
    result = _invoke(project_root, "sesion")
    assert result.exit_code == 2
    assert "Did you mean: session" in json.loads(result.stdout)["error"]


def test_claim_protocol_round_trip(project_root):
    _init_session(project_root)

    first = json.loads(_invoke(project_root, "worker", "claim", "demo", "w1").stdout)
    assert first["outcome"] == "claimed"
    assert first["task"]["id"] == "a"

    second = json.loads(_invoke(project_root, "worker", "claim", "demo", "w2").stdout)
    assert second["outcome"] == "none_available"
    assert second["conflicts"][0]["task_id"] == "b"

    args = ["worker", "complete", "demo", "w1", "a", "--output", "ok", "--file", "a.py"]
    done = json.loads(_invoke(project_root, *args).stdout)
    assert done["accepted"] is True

    status = json.loads(_invoke(project_root, "session", "status", "demo").stdout)
    assert status["status"] == "running"
    assert status["stats"]["completed_tasks"] == 1


def test_fail_and_retry(project_root):
    _init_session(project_root)
    _invoke(project_root, "worker", "claim", "demo", "w1")
    failed = json.loads(
        _invoke(project_root, "worker", "fail", "demo", "w1", "a", "--error", "boom").stdout
    )
    assert failed["accepted"] is True

    retried = json.loads(_invoke(project_root, "task", "retry", "demo", "a").stdout)
    assert retried["accepted"] is True
    again = json.loads(_invoke(project_root, "task", "retry", "demo", "a").stdout)
    assert again["reason"] == "not_failed"


def test_lifecycle_commands(project_root):
    _init_session(project_root)
    paused = json.loads(_invoke(project_root, "session", "pause", "demo").stdout)
    assert paused == {"session_id": "demo", "changed": True, "status": "paused"}
    claim = json.loads(_invoke(project_root, "worker", "claim", "demo", "w1").stdout)
    assert claim["outcome"] == "inactive"
    resumed = json.loads(_invoke(project_root, "session", "resume", "demo").stdout)
    assert resumed["status"] == "running"


def test_session_list_and_clear(project_root):
    _init_session(project_root)
    listed = json.loads(_invoke(project_root, "session", "list").stdout)
    assert [s["session_id"] for s in listed] == ["demo"]

    cleared = json.loads(_invoke(project_root, "session", "clear", "demo", "--no-archive").stdout)
    assert cleared["archived_to"] is None
    assert json.loads(_invoke(project_root, "session", "list").stdout) == []

    missing = _invoke(project_root, "session", "clear", "demo")
    assert missing.exit_code == 1
    assert "not found" in json.loads(missing.stdout)["error"]


def test_worker_spawn_uses_queue(project_root):
    _init_session(project_root, max_workers=2)
    with patch("wavepool.worker.queue.enqueue_worker_job") as enqueue:
        enqueue.return_value.id = "job-1"
        result = _invoke(project_root, "worker", "spawn", "demo", "--count", "3")
    assert result.exit_code == 0, result.output
    assert len(json.loads(result.stdout)["spawned"]) == 2
    assert enqueue.call_count == 2


def test_recovery_commands(project_root):
    handled = json.loads(_invoke(project_root, "recovery", "handle", "disk full").stdout)
    assert handled["success"] is True
    assert handled["can_retry"] is True

    status = json.loads(_invoke(project_root, "recovery", "status").stdout)
    assert status["error_count"] == 1
    assert status["last_error"] == "disk full"

    cleared = json.loads(_invoke(project_root, "recovery", "clear").stdout)
    assert cleared == {"cleared": True}
    assert json.loads(_invoke(project_root, "recovery", "can-retry").stdout)["can_retry"] is True


def test_events_command(project_root):
    _init_session(project_root)
    _invoke(project_root, "worker", "claim", "demo", "w1")
    payload = json.loads(_invoke(project_root, "events").stdout)
    assert [e["type"] for e in payload["events"]] == ["session_initialized", "task_claimed"]
    assert payload["next"] == 2
    later = json.loads(_invoke(project_root, "events", "--since", "2").stdout)
    assert later == {"events": [], "next": 2}


def test_checkpoint_outside_git(project_root):
    _init_session(project_root)
    result = json.loads(_invoke(project_root, "checkpoint", "create", "-m", "manual").stdout)
    assert result["success"] is False
    assert result["error"] == "Not a git repository"
