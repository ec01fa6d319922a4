"""Bounded, cooldown-gated recovery from system-level errors.

Recovery state lives in ``.wavepool/recovery.json``, outside the state
tree, so rolling the tree back never rewinds the error count or the
cooldown. It survives restarts: a retry attempted before
``cooldown_until`` is refused by a fresh process too.

Each :func:`handle_error` call:

1. bumps ``error_count`` and records the error;
2. gives up (``max_retries_exceeded``) once the count reaches ``max_retries``;
3. otherwise rolls the state tree back to the latest checkpoint, if enabled;
4. returns in-flight claims to the queue, keeping pre-rollback worker heartbeats;
5. sets ``cooldown_until = now + cooldown_ms``.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime, timedelta
from typing import Any

from wavepool import checkpoint, coordinator, events
from wavepool.config import RecoveryConfig
from wavepool.models import RecoveryState, default_recovery_state, format_ts, parse_ts
from wavepool.store import PersistenceError, StateNotFoundError, StateStore

log = logging.getLogger(__name__)

RECOVERY_LOCK = "recovery"


def _utcnow() -> datetime:
    return datetime.now(UTC)


@dataclass
class ErrorContext:
    session_id: str | None = None
    phase: str = "run"
    plan: int = 0
    worker_id: str | None = None
    task_id: str | None = None


@dataclass
class RecoveryResult:
    success: bool
    can_retry: bool
    action: str
    retry_after: str | None = None
    error: str | None = None
    checkpoint_id: str | None = None
    released_tasks: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def get_recovery_state(store: StateStore) -> RecoveryState:
    data = store.read_document(store.paths.recovery_file)
    state = default_recovery_state()
    if isinstance(data, dict):
        state.update({k: v for k, v in data.items() if k in state})
    return state


def set_recovery_state(store: StateStore, **changes: Any) -> RecoveryState:
    """Merge *changes* into the persisted recovery state."""
    with store.update_document(
        store.paths.recovery_file, RECOVERY_LOCK, default_recovery_state()
    ) as state:
        state.update(changes)
        merged = dict(state)
    return merged  # type: ignore[return-value]


def clear_recovery_state(store: StateStore) -> bool:
    """Forget all recorded errors. True if there was anything to clear."""
    path = store.paths.recovery_file
    try:
        path.unlink()
    except FileNotFoundError:
        return False
    except OSError as exc:
        raise PersistenceError(f"Failed to clear {path}: {exc}") from exc
    return True


def record_success(store: StateStore) -> bool:
    """Call after a retried operation succeeds; resets the error budget."""
    error_count = get_recovery_state(store)["error_count"]
    if error_count == 0:
        return False
    log.info("Recovered after %d errors", error_count)
    return clear_recovery_state(store)


def can_retry(
    store: StateStore, config: RecoveryConfig | None = None, *, now: datetime | None = None
) -> bool:
    """False once the retry budget is spent or while a cooldown is running."""
    config = config or store.config.recovery
    state = get_recovery_state(store)
    if state["error_count"] >= config.max_retries:
        return False
    if state["cooldown_until"]:
        return (now or _utcnow()) >= parse_ts(state["cooldown_until"])
    return True


def _rollback_latest(store: StateStore) -> tuple[str, str | None]:
    latest = checkpoint.get_latest_checkpoint(store)
    if latest is None:
        log.warning("No checkpoint to roll back to")
        return "no_checkpoint", None
    restored = checkpoint.rollback_to_checkpoint(store, latest["id"])
    if not restored.success:
        log.warning("Rollback to %s failed: %s", latest["id"], restored.error)
        return "cooldown_set", latest["id"]
    return "rolled_back", latest["id"]


def _heartbeats_before_rollback(store: StateStore, context: ErrorContext) -> dict[str, str]:
    if context.session_id is None:
        return {}
    try:
        return coordinator.worker_heartbeats(store, context.session_id)
    except (StateNotFoundError, PersistenceError) as exc:
        log.warning("Could not read worker heartbeats for %s: %s", context.session_id, exc)
        return {}


def _release_claims(
    store: StateStore, context: ErrorContext, heartbeats: dict[str, str]
) -> list[str]:
    if context.session_id is None:
        return []
    try:
        return coordinator.release_in_flight(
            store,
            context.session_id,
            worker_id=context.worker_id,
            task_id=context.task_id,
            heartbeats=heartbeats,
        )
    except (StateNotFoundError, PersistenceError) as exc:
        log.warning("Could not clear in-flight claims for %s: %s", context.session_id, exc)
        return []


def handle_error(
    store: StateStore,
    error: BaseException | str,
    context: ErrorContext | None = None,
    config: RecoveryConfig | None = None,
    *,
    now: datetime | None = None,
) -> RecoveryResult:
    context = context or ErrorContext()
    config = config or store.config.recovery
    now = now or _utcnow()
    message = str(error)

    with store.update_document(
        store.paths.recovery_file, RECOVERY_LOCK, default_recovery_state()
    ) as state:
        state["error_count"] = state.get("error_count", 0) + 1
        state["last_error"] = message
        state["last_error_at"] = format_ts(now)
        state["is_recovering"] = True
        error_count = state["error_count"]

    base_payload = {
        "error": message,
        "session_id": context.session_id,
        "phase": context.phase,
        "plan": context.plan,
        "error_count": error_count,
    }

    if error_count >= config.max_retries:
        log.error("Giving up after %d errors: %s", error_count, message)
        events.emit_event(
            store, events.RUN_FAILED, {**base_payload, "reason": "max_retries"}, source="recovery"
        )
        if context.session_id is not None:
            try:
                coordinator.mark_session_failed(store, context.session_id)
            except (StateNotFoundError, PersistenceError) as exc:
                log.warning("Could not mark %s failed: %s", context.session_id, exc)
        return RecoveryResult(
            False,
            False,
            "max_retries_exceeded",
            error=f"Max retries ({config.max_retries}) exceeded",
        )

    action, checkpoint_id = "cooldown_set", None
    heartbeats: dict[str, str] = {}
    if config.rollback_on_error:
        # A restored document carries checkpoint-time heartbeats.
        heartbeats = _heartbeats_before_rollback(store, context)
        action, checkpoint_id = _rollback_latest(store)
    released = _release_claims(store, context, heartbeats)

    retry_after = format_ts(now + timedelta(milliseconds=config.cooldown_ms))
    set_recovery_state(store, cooldown_until=retry_after, is_recovering=True)

    log.warning("Recovery %s after error %d: %s", action, error_count, message)
    events.emit_event(
        store,
        events.ROLLBACK_INITIATED,
        {
            **base_payload,
            "retry_after": retry_after,
            "rollback_succeeded": action == "rolled_back",
            "checkpoint_id": checkpoint_id,
        },
        source="recovery",
    )
    return RecoveryResult(
        True,
        True,
        action,
        retry_after=retry_after,
        checkpoint_id=checkpoint_id,
        released_tasks=released,
    )
