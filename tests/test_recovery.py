"""Tests for bounded, cooldown-gated error recovery."""

from datetime import UTC, datetime, timedelta

from wavepool import recovery
from wavepool.checkpoint import RollbackResult
from wavepool.config import RecoveryConfig, SwarmConfig, WavepoolConfig
from wavepool.coordinator import claim_task, heartbeat, initialize_session, register_worker
from wavepool.models import find_task, find_worker, format_ts
from wavepool.recovery import (
    ErrorContext,
    can_retry,
    clear_recovery_state,
    get_recovery_state,
    handle_error,
    record_success,
    set_recovery_state,
)
from wavepool.store import StateStore


def _config(**overrides) -> RecoveryConfig:
    values = {"cooldown_ms": 1000, "max_retries": 3, "rollback_on_error": False}
    values.update(overrides)
    return RecoveryConfig(**values)


def test_fresh_state_allows_retry(store):
    state = get_recovery_state(store)
    assert state["error_count"] == 0
    assert state["cooldown_until"] is None
    assert can_retry(store, _config())


def test_retry_budget_is_bounded(store):
    config = _config()
    start = datetime.now(UTC)
    verdicts = []
    for i in range(3):
        now = start + timedelta(seconds=10 * i)
        result = handle_error(store, f"error {i}", config=config, now=now)
        verdicts.append(result.can_retry)
        last = result

    assert verdicts == [True, True, False]
    assert last.action == "max_retries_exceeded"
    assert last.success is False
    assert last.error == "Max retries (3) exceeded"
    assert get_recovery_state(store)["error_count"] == 3
    assert not can_retry(store, config, now=start + timedelta(hours=1))


def test_cooldown_gates_retry(store):
    config = _config(cooldown_ms=5000)
    now = datetime.now(UTC)
    result = handle_error(store, "boom", config=config, now=now)
    assert result.success
    assert result.action == "cooldown_set"

    assert not can_retry(store, config, now=now + timedelta(seconds=4))
    assert can_retry(store, config, now=now + timedelta(seconds=5))


def test_cooldown_survives_a_fresh_process(project_root):
    config = _config(cooldown_ms=60_000)
    now = datetime.now(UTC)
    handle_error(StateStore(project_root, config=WavepoolConfig()), "boom", config=config, now=now)

    fresh = StateStore(project_root, config=WavepoolConfig())
    assert get_recovery_state(fresh)["last_error"] == "boom"
    assert not can_retry(fresh, config, now=now + timedelta(seconds=30))


def test_rollback_without_checkpoint_reports_no_checkpoint(store, monkeypatch):
    monkeypatch.setattr(recovery.checkpoint, "get_latest_checkpoint", lambda store: None)
    result = handle_error(store, "boom", config=_config(rollback_on_error=True))
    assert result.success
    assert result.can_retry
    assert result.action == "no_checkpoint"


def test_rollback_to_latest_checkpoint(store, monkeypatch):
    checkpoint = {"id": "cp1", "commit_hash": "abc", "state_files": []}
    calls = []

    def fake_rollback(store, checkpoint_id):
        calls.append(checkpoint_id)
        return RollbackResult(True, checkpoint=checkpoint)

    monkeypatch.setattr(recovery.checkpoint, "get_latest_checkpoint", lambda store: checkpoint)
    monkeypatch.setattr(recovery.checkpoint, "rollback_to_checkpoint", fake_rollback)
    result = handle_error(store, "boom", config=_config(rollback_on_error=True))
    assert calls == ["cp1"]
    assert result.action == "rolled_back"
    assert result.checkpoint_id == "cp1"


def test_failed_rollback_still_sets_cooldown(store, monkeypatch):
    checkpoint = {"id": "cp1", "commit_hash": "abc", "state_files": []}
    monkeypatch.setattr(recovery.checkpoint, "get_latest_checkpoint", lambda store: checkpoint)
    monkeypatch.setattr(
        recovery.checkpoint,
        "rollback_to_checkpoint",
        lambda store, checkpoint_id: RollbackResult(False, error="git checkout failed"),
    )
    result = handle_error(store, "boom", config=_config(rollback_on_error=True))
    assert result.success
    assert result.action == "cooldown_set"
    assert get_recovery_state(store)["cooldown_until"] == result.retry_after


def test_error_releases_in_flight_claims(store):
    initialize_session(
        store, [{"id": "a", "wave": 1, "files": ["a.py"]}], session_id="s1", config=SwarmConfig()
    )
    claim_task(store, "s1", "w1")
    result = handle_error(
        store, "worker crashed", ErrorContext(session_id="s1", worker_id="w1"), config=_config()
    )
    assert result.released_tasks == ["a"]
    state = store.load("s1")
    assert find_task(state, "a")["status"] == "available"
    assert state["ownership"] == {}


def test_exhausted_budget_marks_session_failed(store, published_events):
    initialize_session(store, [{"id": "a", "wave": 1}], session_id="s1", config=SwarmConfig())
    config = _config(max_retries=1)
    result = handle_error(store, "fatal", ErrorContext(session_id="s1"), config=config)
    assert result.action == "max_retries_exceeded"
    assert store.load("s1")["status"] == "failed"
    run_failed = [e for e in published_events if e["type"] == "run_failed"]
    assert run_failed[0]["payload"]["error_count"] == 1


def test_unknown_session_in_context_is_tolerated(store):
    result = handle_error(store, "boom", ErrorContext(session_id="missing"), config=_config())
    assert result.success
    assert result.released_tasks == []


def test_record_success_resets_budget(store):
    assert record_success(store) is False
    handle_error(store, "boom", config=_config())
    assert record_success(store) is True
    assert get_recovery_state(store)["error_count"] == 0


def test_set_and_clear_recovery_state(store):
    set_recovery_state(store, is_recovering=True, last_error="x")
    assert get_recovery_state(store)["is_recovering"] is True
    assert clear_recovery_state(store) is True
    assert clear_recovery_state(store) is False
    assert get_recovery_state(store)["last_error"] is None


def test_rollback_keeps_live_workers_from_looking_stale(store, monkeypatch):
    initialize_session(
        store,
        [{"id": "a", "wave": 1}, {"id": "b", "wave": 1}],
        session_id="s1",
        config=SwarmConfig(worker_timeout_ms=60_000),
    )
    register_worker(store, "s1", "w1")
    register_worker(store, "s1", "gone")
    snapshot = store.load("s1")
    checkpoint = {"id": "cp1", "commit_hash": "abc", "state_files": []}

    def fake_rollback(store, checkpoint_id):
        store.create(snapshot, overwrite=True)
        return RollbackResult(True, checkpoint=checkpoint)

    later = datetime.now(UTC) + timedelta(minutes=10)
    monkeypatch.setattr(recovery.coordinator, "_utcnow", lambda: later)
    assert heartbeat(store, "s1", "w1")
    monkeypatch.setattr(recovery.checkpoint, "get_latest_checkpoint", lambda store: checkpoint)
    monkeypatch.setattr(recovery.checkpoint, "rollback_to_checkpoint", fake_rollback)

    result = handle_error(
        store, "boom", ErrorContext(session_id="s1"), config=_config(rollback_on_error=True)
    )
    assert result.action == "rolled_back"
    assert find_worker(store.load("s1"), "w1")["last_heartbeat"] == format_ts(later)

    assert claim_task(store, "s1", "w2", now=later).claimed
    state = store.load("s1")
    assert find_worker(state, "w1")["status"] == "idle"
    assert find_worker(state, "gone")["status"] == "terminated"
    assert claim_task(store, "s1", "w1", now=later).claimed
