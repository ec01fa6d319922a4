"""Exclusive file leases for concurrently executing tasks.

The ledger is the ``ownership`` mapping of a session document
(``path -> worker id``). Callers mutate it inside a store transaction, so
the check-and-grant below is atomic with respect to other workers.
"""

from __future__ import annotations

import fnmatch
import logging
import posixpath
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field

from wavepool.models import COORDINATOR_OWNER, TASK_IN_FLIGHT_STATUSES, SessionState

log = logging.getLogger(__name__)


@dataclass
class LeaseResult:
    granted: bool
    paths: list[str] = field(default_factory=list)
    conflict_path: str | None = None
    owner: str | None = None


def normalize_path(path: str) -> str:
    """Canonical ledger key: POSIX separators, no ``./`` prefix or ``..`` hops."""
    cleaned = posixpath.normpath(path.replace("\\", "/"))
    return cleaned[2:] if cleaned.startswith("./") else cleaned


def is_reserved(path: str, reserved: Sequence[str]) -> bool:
    return any(fnmatch.fnmatch(path, pattern) for pattern in reserved)


def owner_of(ledger: dict[str, str], path: str, reserved: Sequence[str] = ()) -> str | None:
    key = normalize_path(path)
    if is_reserved(key, reserved):
        return COORDINATOR_OWNER
    return ledger.get(key)


def try_acquire(
    ledger: dict[str, str],
    worker_id: str,
    paths: Iterable[str],
    reserved: Sequence[str] = (),
) -> LeaseResult:
    """Grant *worker_id* every path in *paths*, or none of them.

    Paths the worker already holds are left alone; on conflict only the
    paths newly granted by this call are rolled back.
    """
    requested = list(dict.fromkeys(normalize_path(p) for p in paths))
    newly_granted: list[str] = []
    for path in requested:
        owner = owner_of(ledger, path, reserved)
        if owner is not None and owner != worker_id:
            for granted in newly_granted:
                del ledger[granted]
            log.debug("Lease conflict for %s on %s (held by %s)", worker_id, path, owner)
            return LeaseResult(False, conflict_path=path, owner=owner)
        if owner is None:
            ledger[path] = worker_id
            newly_granted.append(path)
    return LeaseResult(True, paths=requested)


def release(ledger: dict[str, str], worker_id: str, paths: Iterable[str]) -> list[str]:
    """Drop *worker_id*'s lease on each path it holds. Returns the freed paths.

    Paths held by someone else, or by no one, are ignored.
    """
    freed = []
    for path in dict.fromkeys(normalize_path(p) for p in paths):
        if ledger.get(path) == worker_id:
            del ledger[path]
            freed.append(path)
    return freed


def release_all(ledger: dict[str, str], worker_id: str) -> list[str]:
    return release(ledger, worker_id, paths_owned_by(ledger, worker_id))


def paths_owned_by(ledger: dict[str, str], worker_id: str) -> list[str]:
    return sorted(path for path, owner in ledger.items() if owner == worker_id)


def find_conflicts(state: SessionState) -> dict[str, list[str]]:
    """Paths declared by more than one in-flight task, with the task ids.

    Empty whenever the lease invariant holds.
    """
    claims: dict[str, list[str]] = {}
    for task in state["tasks"]:
        if task["status"] not in TASK_IN_FLIGHT_STATUSES:
            continue
        for path in task["files"]:
            claims.setdefault(normalize_path(path), []).append(task["id"])
    return {path: ids for path, ids in claims.items() if len(ids) > 1}
