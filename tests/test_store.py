"""Tests for the session document store."""

import json
import os

import pytest

from wavepool.store import (
    PersistenceError,
    StateConflictError,
    StateNotFoundError,
    StateStore,
    atomic_write_json,
    read_json,
)


def _state(session_id: str = "s1") -> dict:
    return {
        "schema": 1,
        "version": 0,
        "session_id": session_id,
        "plan_path": None,
        "config": {"max_workers": 5},
        "status": "initializing",
        "tasks": [],
        "workers": [],
        "ownership": {},
        "stats": {},
        "started_at": "2026-01-01T00:00:00.000Z",
        "updated_at": "2026-01-01T00:00:00.000Z",
        "completed_at": None,
    }


def test_create_then_load_round_trip(store):
    store.create(_state())
    loaded = store.load("s1")
    assert loaded["version"] == 1
    assert loaded["session_id"] == "s1"
    assert store.paths.session_file("s1").exists()


def test_load_missing_session_raises_not_found(store):
    with pytest.raises(StateNotFoundError):
        store.load("nope")


def test_load_corrupt_json_raises_persistence_error(store):
    path = store.paths.session_file("s1")
    path.parent.mkdir(parents=True)
    path.write_text("{not json")
    with pytest.raises(PersistenceError, match="Corrupt JSON"):
        store.load("s1")


def test_load_schema_violation_raises_persistence_error(store):
    path = store.paths.session_file("s1")
    path.parent.mkdir(parents=True)
    path.write_text(json.dumps({"session_id": "s1"}))
    with pytest.raises(PersistenceError, match="Invalid session state"):
        store.load("s1")


def test_invalid_session_id_rejected(store):
    with pytest.raises(ValueError):
        store.load("../escape")
    with pytest.raises(ValueError):
        store.create(_state(".hidden"))


def test_create_refuses_existing_unless_overwrite(store):
    store.create(_state())
    with pytest.raises(StateConflictError):
        store.create(_state())
    replaced = _state()
    replaced["status"] = "running"
    store.create(replaced, overwrite=True)
    assert store.load("s1")["status"] == "running"


def test_transaction_commits_and_bumps_version(store):
    store.create(_state())
    with store.transaction("s1") as state:
        state["status"] = "running"
    loaded = store.load("s1")
    assert loaded["status"] == "running"
    assert loaded["version"] == 2


def test_transaction_exception_writes_nothing(store):
    store.create(_state())
    with pytest.raises(RuntimeError, match="boom"):
        with store.transaction("s1") as state:
            state["status"] = "running"
            raise RuntimeError("boom")
    loaded = store.load("s1")
    assert loaded["status"] == "initializing"
    assert loaded["version"] == 1


def test_unchanged_transaction_does_not_write(store):
    store.create(_state())
    with store.transaction("s1"):
        pass
    assert store.load("s1")["version"] == 1


def test_save_with_stale_version_conflicts(store):
    store.create(_state())
    first = store.load("s1")
    second = store.load("s1")

    first["status"] = "running"
    store.save(first)
    assert first["version"] == 2

    second["status"] = "paused"
    with pytest.raises(StateConflictError):
        store.save(second)
    assert store.load("s1")["status"] == "running"


def test_failed_write_leaves_previous_document(store, monkeypatch):
    store.create(_state())

    def _boom(src, dst):
        raise OSError("disk full")

    monkeypatch.setattr("wavepool.store.os.replace", _boom)
    with pytest.raises(PersistenceError, match="disk full"):
        with store.transaction("s1") as state:
            state["status"] = "running"
    monkeypatch.undo()

    assert store.load("s1")["status"] == "initializing"
    leftovers = [p for p in os.listdir(store.paths.sessions_dir) if p.endswith(".tmp")]
    assert leftovers == []


def test_atomic_write_rejects_unserializable(tmp_path):
    with pytest.raises(PersistenceError, match="serialize"):
        atomic_write_json(tmp_path / "x.json", {"bad": object()})
    assert not (tmp_path / "x.json").exists()


def test_read_json_default_for_missing(tmp_path):
    assert read_json(tmp_path / "missing.json", {"a": 1}) == {"a": 1}


def test_list_sessions_sorted(store):
    store.create(_state("b"))
    store.create(_state("a"))
    assert store.list_sessions() == ["a", "b"]


def test_list_sessions_empty_without_workspace(store):
    assert store.list_sessions() == []


def test_archive_moves_document_out_of_state_tree(store):
    store.create(_state())
    target = store.archive("s1")
    assert target.exists()
    assert target.parent == store.paths.archive_dir
    assert not store.exists("s1")
    with pytest.raises(StateNotFoundError):
        store.archive("s1")


def test_delete(store):
    store.create(_state())
    assert store.delete("s1") is True
    assert store.delete("s1") is False


def test_update_document_read_modify_write(store):
    path = store.paths.base / "side.json"
    with store.update_document(path, "side", {"count": 0}) as doc:
        doc["count"] += 1
    with store.update_document(path, "side", {"count": 0}) as doc:
        doc["count"] += 1
    assert store.read_document(path) == {"count": 2}


def test_lock_files_live_outside_state_tree(store):
    store.create(_state())
    assert store.paths.session_lock("s1").exists()
    assert store.paths.state_dir not in store.paths.session_lock("s1").parents


def test_config_loaded_lazily_from_workspace(project_root):
    (project_root / ".wavepool").mkdir()
    (project_root / ".wavepool" / "config.toml").write_text("[swarm]\nmax_workers = 2\n")
    assert StateStore(project_root).config.swarm.max_workers == 2
