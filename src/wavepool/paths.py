"""Canonical filesystem paths for wavepool configuration and state."""

from __future__ import annotations

import os
import re
from dataclasses import dataclass
from pathlib import Path

_env_config = os.environ.get("WAVEPOOL_CONFIG_DIR")
WAVEPOOL_CONFIG_DIR = (
    Path(_env_config).expanduser() if _env_config else Path.home() / ".config" / "wavepool"
)

WORKSPACE_DIRNAME = ".wavepool"

_SESSION_ID_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*$")


def validate_session_id(session_id: str) -> str:
    """Reject ids that could escape the state directory."""
    if not isinstance(session_id, str) or not _SESSION_ID_RE.match(session_id):
        raise ValueError(f"Invalid session id {session_id!r}")
    return session_id


@dataclass(frozen=True)
class WorkspacePaths:
    """On-disk layout of one project's coordination files."""

    root: Path

    @property
    def base(self) -> Path:
        return self.root / WORKSPACE_DIRNAME

    @property
    def state_dir(self) -> Path:
        # The only tree checkpoints snapshot and rollback restores.
        return self.base / "state"

    @property
    def sessions_dir(self) -> Path:
        return self.state_dir / "sessions"

    @property
    def locks_dir(self) -> Path:
        return self.base / "locks"

    @property
    def archive_dir(self) -> Path:
        return self.base / "archive"

    @property
    def logs_dir(self) -> Path:
        return self.base / "logs"

    @property
    def recovery_file(self) -> Path:
        return self.base / "recovery.json"

    @property
    def checkpoint_index(self) -> Path:
        return self.base / "checkpoints.json"

    @property
    def events_file(self) -> Path:
        return self.base / "events.jsonl"

    @property
    def config_file(self) -> Path:
        return self.base / "config.toml"

    @property
    def tree_lock(self) -> Path:
        return self.locks_dir / "_tree.lock"

    def session_file(self, session_id: str) -> Path:
        return self.sessions_dir / f"{validate_session_id(session_id)}.json"

    def session_lock(self, session_id: str) -> Path:
        return self.locks_dir / f"{validate_session_id(session_id)}.lock"

    def lock_for(self, name: str) -> Path:
        return self.locks_dir / f"{name}.lock"

    def state_relpath(self) -> str:
        """State tree path relative to the project root, as git expects it."""
        return f"{WORKSPACE_DIRNAME}/state"
