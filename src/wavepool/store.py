"""Durable per-session state documents.

Each coordination session is one JSON document under
``.wavepool/state/sessions/<id>.json``. Every mutation is a
read-modify-write inside :meth:`StateStore.transaction`, which holds an
exclusive ``fcntl`` lock on the session and checks the document's
``version`` field before replacing it, so worker processes sharing a
project never interleave claims.

Lock order is fixed: ``recovery`` -> ``_tree`` -> ``<session>`` ->
``checkpoints``. Locks are ``flock`` based and not re-entrant, so code
already holding one must use the ``*_locked`` helpers rather than calling
back into a locking method.
"""

from __future__ import annotations

import copy
import fcntl
import json
import logging
import os
import shutil
import tempfile
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Any

from wavepool.config import WavepoolConfig, load_config
from wavepool.models import SessionState, utcnow_iso
from wavepool.paths import WorkspacePaths, validate_session_id
from wavepool.schema import state_errors

log = logging.getLogger(__name__)


class PersistenceError(RuntimeError):
    """State could not be read or written; the operation did not happen."""


class StateConflictError(PersistenceError):
    """The on-disk document changed underneath a read-modify-write."""


class StateNotFoundError(LookupError):
    """No state document exists for the requested session."""


@contextmanager
def file_lock(path: Path, *, exclusive: bool = True) -> Iterator[None]:
    """Hold an advisory ``flock`` on *path* for the duration of the block."""
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("a") as handle:
        fcntl.flock(handle.fileno(), fcntl.LOCK_EX if exclusive else fcntl.LOCK_SH)
        try:
            yield
        finally:
            fcntl.flock(handle.fileno(), fcntl.LOCK_UN)


def atomic_write_json(path: Path, data: Any) -> None:
    """Replace *path* with *data* serialized as JSON, all or nothing.

    Raises PersistenceError on any failure; the previous file is untouched.
    """
    try:
        content = json.dumps(data, indent=2, sort_keys=False)
    except (TypeError, ValueError) as exc:
        raise PersistenceError(f"Failed to serialize {path.name}: {exc}") from exc

    tmp_name: str | None = None
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(content)
            handle.write("\n")
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(tmp_name, path)
        tmp_name = None
    except OSError as exc:
        raise PersistenceError(f"Failed to write {path}: {exc}") from exc
    finally:
        if tmp_name is not None:
            Path(tmp_name).unlink(missing_ok=True)


def read_json(path: Path, default: Any = None) -> Any:
    """Read a JSON file, returning *default* when it does not exist."""
    try:
        raw = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return default
    except OSError as exc:
        raise PersistenceError(f"Failed to read {path}: {exc}") from exc
    try:
        return json.loads(raw)
    except json.JSONDecodeError as exc:
        raise PersistenceError(f"Corrupt JSON in {path}: {exc}") from exc


class StateStore:
    """Explicit context object for one project's coordination files."""

    def __init__(self, project_root: Path | str, config: WavepoolConfig | None = None):
        self.root = Path(project_root).resolve()
        self.paths = WorkspacePaths(self.root)
        self._config = config

    def __repr__(self) -> str:
        return f"StateStore({str(self.root)!r})"

    @property
    def config(self) -> WavepoolConfig:
        if self._config is None:
            self._config = load_config(self.paths.config_file)
        return self._config

    def ensure_layout(self) -> None:
        for directory in (self.paths.sessions_dir, self.paths.locks_dir):
            directory.mkdir(parents=True, exist_ok=True)

    # -- Locks --

    @contextmanager
    def tree_lock(self, *, exclusive: bool = False) -> Iterator[None]:
        """Shared by per-session writers, exclusive for whole-tree restores."""
        with file_lock(self.paths.tree_lock, exclusive=exclusive):
            yield

    @contextmanager
    def session_lock(self, session_id: str) -> Iterator[None]:
        with file_lock(self.paths.session_lock(session_id)):
            yield

    # -- Session documents --

    def exists(self, session_id: str) -> bool:
        return self.paths.session_file(session_id).exists()

    def list_sessions(self) -> list[str]:
        if not self.paths.sessions_dir.is_dir():
            return []
        return sorted(p.stem for p in self.paths.sessions_dir.glob("*.json"))

    def load(self, session_id: str) -> SessionState:
        """Return the latest committed document for *session_id*.

        Raises StateNotFoundError if absent, PersistenceError if unreadable.
        """
        validate_session_id(session_id)
        with self.tree_lock():
            return self.load_locked(session_id)

    def load_locked(self, session_id: str) -> SessionState:
        path = self.paths.session_file(session_id)
        document = read_json(path)
        if document is None:
            raise StateNotFoundError(f"No session state for {session_id!r}")
        errors = state_errors(document)
        if errors:
            raise PersistenceError(f"Invalid session state in {path}: {errors[0]}")
        return document

    def save(self, state: SessionState) -> SessionState:
        """Replace the stored document with *state*.

        *state* must carry the version it was loaded at; a concurrent
        writer that got there first raises StateConflictError.
        """
        session_id = validate_session_id(state["session_id"])
        with self.tree_lock(), self.session_lock(session_id):
            self._write_locked(state, base_version=state["version"])
        return state

    def create(self, state: SessionState, *, overwrite: bool = False) -> SessionState:
        """Persist a brand-new session document at version 1."""
        session_id = validate_session_id(state["session_id"])
        self.ensure_layout()
        with self.tree_lock(), self.session_lock(session_id):
            path = self.paths.session_file(session_id)
            if path.exists() and not overwrite:
                raise StateConflictError(f"Session {session_id!r} already exists")
            state["version"] = 1
            state["updated_at"] = utcnow_iso()
            atomic_write_json(path, state)
        log.debug("Created session %s", session_id)
        return state

    @contextmanager
    def transaction(self, session_id: str) -> Iterator[SessionState]:
        """Load, let the caller mutate, then commit one logical change.

        If the block raises, nothing is written. A block that leaves the
        document unchanged writes nothing either.
        """
        validate_session_id(session_id)
        with self.tree_lock(), self.session_lock(session_id):
            state = self.load_locked(session_id)
            base_version = state["version"]
            before = copy.deepcopy(state)
            yield state
            if state != before:
                self._write_locked(state, base_version=base_version)

    def _write_locked(self, state: SessionState, *, base_version: int) -> None:
        path = self.paths.session_file(state["session_id"])
        current = read_json(path)
        if current is not None and current.get("version") != base_version:
            raise StateConflictError(
                f"Session {state['session_id']!r} changed on disk "
                f"(expected version {base_version}, found {current.get('version')})"
            )
        updated = dict(state)
        updated["version"] = base_version + 1
        updated["updated_at"] = utcnow_iso()
        atomic_write_json(path, updated)
        state["version"] = updated["version"]
        state["updated_at"] = updated["updated_at"]

    def delete(self, session_id: str) -> bool:
        with self.tree_lock(), self.session_lock(session_id):
            path = self.paths.session_file(session_id)
            if not path.exists():
                return False
            path.unlink()
        log.debug("Deleted session %s", session_id)
        return True

    def archive(self, session_id: str) -> Path:
        """Move a session document out of the live state tree."""
        with self.tree_lock(), self.session_lock(session_id):
            path = self.paths.session_file(session_id)
            if not path.exists():
                raise StateNotFoundError(f"No session state for {session_id!r}")
            stamp = utcnow_iso().replace(":", "").replace("-", "").replace(".", "")
            target = self.paths.archive_dir / f"{session_id}-{stamp}.json"
            target.parent.mkdir(parents=True, exist_ok=True)
            try:
                shutil.move(str(path), target)
            except OSError as exc:
                raise PersistenceError(f"Failed to archive {session_id}: {exc}") from exc
        log.info("Archived session %s to %s", session_id, target)
        return target

    # -- Side documents (outside the state tree) --

    def read_document(self, path: Path, default: Any = None) -> Any:
        return read_json(path, default)

    @contextmanager
    def update_document(self, path: Path, lock_name: str, default: Any) -> Iterator[Any]:
        """Locked read-modify-write of a small JSON document."""
        with file_lock(self.paths.lock_for(lock_name)):
            data = read_json(path, default)
            yield data
            atomic_write_json(path, data)
