"""Git-backed checkpoints of the coordination-state tree.

A checkpoint is a commit containing only ``.wavepool/state``; the index of
checkpoints lives next to (not inside) that tree so restoring an old
snapshot never forgets newer checkpoints. Restores hold the tree lock
exclusively, so no session transaction can interleave with a rollback.

Git failures raise RuntimeError internally; the public operations turn
them into result objects.
"""

from __future__ import annotations

import logging
import subprocess
import uuid
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any

from wavepool import events
from wavepool.models import Checkpoint, utcnow_iso
from wavepool.store import StateStore

log = logging.getLogger(__name__)

RETAIN_COUNT = 10
PHASE_TAG_TEMPLATE = "phase-{}-complete"
DEFAULT_SOURCE_PATTERNS = ("src/", "lib/")
DEFAULT_EXCLUDE_PATTERNS = (".wavepool/", ".git/", "node_modules/")


@dataclass
class CheckpointResult:
    success: bool
    checkpoint: Checkpoint | None = None
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class RollbackResult:
    success: bool
    checkpoint: Checkpoint | None = None
    files_restored: int = 0
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class SelectiveRollbackOptions:
    rollback_state: bool = True
    rollback_source: bool = False
    source_patterns: list[str] = field(default_factory=lambda: list(DEFAULT_SOURCE_PATTERNS))
    exclude_patterns: list[str] = field(default_factory=lambda: list(DEFAULT_EXCLUDE_PATTERNS))
    dry_run: bool = False


@dataclass
class SelectiveRollbackResult:
    success: bool
    state_files_rolled_back: int = 0
    source_files_rolled_back: int = 0
    files_changed: list[str] | None = None
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class RollbackPreview:
    state_files: list[str] = field(default_factory=list)
    source_files: list[str] = field(default_factory=list)
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def _git(root: Path, *args: str) -> str:
    try:
        proc = subprocess.run(
            ["git", *args],
            cwd=root,
            check=True,
            capture_output=True,
            text=True,
        )
    except subprocess.CalledProcessError as e:
        raise RuntimeError(f"git {args[0]} failed: {e.stderr.strip()}") from None
    except FileNotFoundError:
        raise RuntimeError("git is not installed") from None
    return proc.stdout.strip()


def _lines(output: str) -> list[str]:
    return [line for line in output.splitlines() if line]


def is_git_repo(root: Path) -> bool:
    try:
        proc = subprocess.run(
            ["git", "rev-parse", "--is-inside-work-tree"],
            cwd=root,
            capture_output=True,
            text=True,
        )
    except FileNotFoundError:
        return False
    return proc.returncode == 0 and proc.stdout.strip() == "true"


def _state_files(store: StateStore) -> list[str]:
    state_dir = store.paths.state_dir
    if not state_dir.is_dir():
        return []
    return sorted(
        path.relative_to(store.root).as_posix() for path in state_dir.rglob("*") if path.is_file()
    )


# -- Index --


def _load_index(store: StateStore) -> list[Checkpoint]:
    data = store.read_document(store.paths.checkpoint_index, {"checkpoints": []})
    return list(data.get("checkpoints", []))


def list_checkpoints(store: StateStore) -> list[Checkpoint]:
    """All recorded checkpoints, newest first."""
    indexed = list(enumerate(_load_index(store)))
    indexed.sort(key=lambda pair: (pair[1]["created_at"], pair[0]), reverse=True)
    return [checkpoint for _, checkpoint in indexed]


def get_latest_checkpoint(store: StateStore) -> Checkpoint | None:
    checkpoints = list_checkpoints(store)
    return checkpoints[0] if checkpoints else None


def find_checkpoint(store: StateStore, checkpoint_id: str) -> Checkpoint | None:
    for checkpoint in _load_index(store):
        if checkpoint["id"] == checkpoint_id:
            return checkpoint
    return None


def prune_old_checkpoints(store: StateStore, retain: int = RETAIN_COUNT) -> int:
    """Forget all but the *retain* newest checkpoints. Returns how many were dropped.

    The commits themselves stay in git history.
    """
    keep_ids = {checkpoint["id"] for checkpoint in list_checkpoints(store)[:retain]}
    with store.update_document(
        store.paths.checkpoint_index, "checkpoints", {"checkpoints": []}
    ) as index:
        before = len(index["checkpoints"])
        index["checkpoints"] = [cp for cp in index["checkpoints"] if cp["id"] in keep_ids]
        pruned = before - len(index["checkpoints"])
    if pruned:
        log.info("Pruned %d old checkpoints", pruned)
    return pruned


# -- Create / restore --


def create_checkpoint(
    store: StateStore,
    phase: str = "run",
    plan: int = 0,
    wave: int = 0,
    description: str = "checkpoint",
) -> CheckpointResult:
    """Commit the current state tree and record it in the index."""
    if not is_git_repo(store.root):
        return CheckpointResult(False, error="Not a git repository")

    rel = store.paths.state_relpath()
    message = f"checkpoint({phase}/{plan}): {description}"
    with store.tree_lock(exclusive=True):
        state_files = _state_files(store)
        if not state_files:
            return CheckpointResult(False, error="No coordination state to checkpoint")
        try:
            # -f: the workspace directory is usually gitignored.
            _git(store.root, "add", "-f", "-A", "--", rel)
            _git(store.root, "commit", "--allow-empty", "--no-verify", "-m", message, "--", rel)
            commit_hash = _git(store.root, "rev-parse", "HEAD")
        except RuntimeError as exc:
            log.warning("Checkpoint failed: %s", exc)
            return CheckpointResult(False, error=str(exc))

        checkpoint: Checkpoint = {
            "id": uuid.uuid4().hex,
            "commit_hash": commit_hash,
            "created_at": utcnow_iso(),
            "phase": phase,
            "plan": plan,
            "wave": wave,
            "description": description,
            "state_files": state_files,
        }
        with store.update_document(
            store.paths.checkpoint_index, "checkpoints", {"checkpoints": []}
        ) as index:
            index["checkpoints"].append(checkpoint)

    log.info("Created checkpoint %s at %s", checkpoint["id"], commit_hash[:12])
    events.emit_event(
        store,
        events.CHECKPOINT_CREATED,
        {"checkpoint_id": checkpoint["id"], "commit": commit_hash, "wave": wave},
        source="checkpoint",
    )
    return CheckpointResult(True, checkpoint=checkpoint)


def rollback_to_checkpoint(store: StateStore, checkpoint_id: str) -> RollbackResult:
    """Restore the state tree to *checkpoint_id*'s snapshot.

    Only files present in the snapshot are restored; state files created
    after the checkpoint are left in place.
    """
    if not is_git_repo(store.root):
        return RollbackResult(False, error="Not a git repository")
    checkpoint = find_checkpoint(store, checkpoint_id)
    if checkpoint is None:
        return RollbackResult(False, error=f"Checkpoint not found: {checkpoint_id}")

    with store.tree_lock(exclusive=True):
        try:
            _git(
                store.root, "checkout", checkpoint["commit_hash"], "--", store.paths.state_relpath()
            )
        except RuntimeError as exc:
            log.warning("Rollback to %s failed: %s", checkpoint_id, exc)
            return RollbackResult(False, checkpoint=checkpoint, error=str(exc))

    log.warning("Rolled back coordination state to checkpoint %s", checkpoint_id)
    events.emit_event(
        store,
        events.ROLLBACK_COMPLETED,
        {"checkpoint_id": checkpoint_id, "commit": checkpoint["commit_hash"]},
        source="checkpoint",
    )
    return RollbackResult(
        True, checkpoint=checkpoint, files_restored=len(checkpoint["state_files"])
    )


def preview_rollback(
    store: StateStore,
    checkpoint_id: str,
    source_patterns: list[str] | None = None,
) -> RollbackPreview:
    """Files that differ from *checkpoint_id*, without touching anything."""
    if not is_git_repo(store.root):
        return RollbackPreview(error="Not a git repository")
    checkpoint = find_checkpoint(store, checkpoint_id)
    if checkpoint is None:
        return RollbackPreview(error=f"Checkpoint not found: {checkpoint_id}")

    commit = checkpoint["commit_hash"]
    preview = RollbackPreview()
    try:
        preview.state_files = _lines(
            _git(store.root, "diff", "--name-only", commit, "--", store.paths.state_relpath())
        )
    except RuntimeError:
        log.debug("No state diff for %s", checkpoint_id)
    for pattern in source_patterns or ["src/"]:
        try:
            preview.source_files.extend(
                _lines(_git(store.root, "diff", "--name-only", commit, "--", pattern))
            )
        except RuntimeError:
            log.debug("No source diff for %s under %s", checkpoint_id, pattern)
    return preview


def _rollback_source(
    store: StateStore, commit: str, options: SelectiveRollbackOptions
) -> tuple[int, list[str]]:
    count = 0
    changed: list[str] = []
    for pattern in options.source_patterns:
        if any(pattern.startswith(exclude) for exclude in options.exclude_patterns):
            continue
        try:
            files = _lines(_git(store.root, "diff", "--name-only", commit, "--", pattern))
            if not options.dry_run and files:
                _git(store.root, "checkout", commit, "--", pattern)
        except RuntimeError:
            # Pattern absent from the checkpoint commit.
            log.debug("Skipping source pattern %s", pattern)
            continue
        count += len(files)
        changed.extend(files)
    return count, changed


def selective_rollback(
    store: StateStore,
    checkpoint_id: str,
    options: SelectiveRollbackOptions | None = None,
) -> SelectiveRollbackResult:
    """Roll back the state tree and/or named source patterns.

    With ``dry_run`` the result lists the files that would change and
    nothing is modified.
    """
    options = options or SelectiveRollbackOptions()
    if not is_git_repo(store.root):
        return SelectiveRollbackResult(False, error="Not a git repository")
    checkpoint = find_checkpoint(store, checkpoint_id)
    if checkpoint is None:
        return SelectiveRollbackResult(False, error=f"Checkpoint not found: {checkpoint_id}")

    commit = checkpoint["commit_hash"]
    result = SelectiveRollbackResult(True)
    changed: list[str] = []
    try:
        if options.rollback_state:
            if options.dry_run:
                rel = store.paths.state_relpath()
                files = _lines(_git(store.root, "diff", "--name-only", commit, "--", rel))
                changed.extend(files)
                result.state_files_rolled_back = len(files)
            else:
                restored = rollback_to_checkpoint(store, checkpoint_id)
                if not restored.success:
                    return SelectiveRollbackResult(False, error=restored.error)
                result.state_files_rolled_back = restored.files_restored
        if options.rollback_source:
            count, files = _rollback_source(store, commit, options)
            result.source_files_rolled_back = count
            changed.extend(files)
    except RuntimeError as exc:
        return SelectiveRollbackResult(False, error=str(exc))

    if options.dry_run:
        result.files_changed = changed
    return result


# -- Phase tags --


def tag_phase_complete(store: StateStore, phase: int, ref: str = "HEAD") -> dict[str, Any]:
    """Point the ``phase-<n>-complete`` tag at *ref*."""
    tag = PHASE_TAG_TEMPLATE.format(phase)
    try:
        _git(store.root, "tag", "-f", tag, ref)
        commit = _git(store.root, "rev-parse", f"{tag}^{{commit}}")
    except RuntimeError as exc:
        return {"success": False, "tag": tag, "error": str(exc)}
    log.info("Tagged %s at %s", tag, commit[:12])
    return {"success": True, "tag": tag, "commit": commit}


def rollback_to_phase(
    store: StateStore,
    phase: int,
    options: SelectiveRollbackOptions | None = None,
) -> SelectiveRollbackResult:
    """Roll back to the commit tagged ``phase-<n>-complete``."""
    options = options or SelectiveRollbackOptions()
    if not is_git_repo(store.root):
        return SelectiveRollbackResult(False, error="Not a git repository")

    tag = PHASE_TAG_TEMPLATE.format(phase)
    try:
        commit = _git(store.root, "rev-parse", f"{tag}^{{commit}}")
    except RuntimeError as exc:
        return SelectiveRollbackResult(False, error=str(exc))

    for checkpoint in list_checkpoints(store):
        if checkpoint["commit_hash"] == commit:
            return selective_rollback(store, checkpoint["id"], options)

    # Tag without a recorded checkpoint: only source files can be restored.
    result = SelectiveRollbackResult(True)
    if options.rollback_source:
        try:
            count, files = _rollback_source(store, commit, options)
        except RuntimeError as exc:
            return SelectiveRollbackResult(False, error=str(exc))
        result.source_files_rolled_back = count
        if options.dry_run:
            result.files_changed = files
    return result


def available_rollback_targets(store: StateStore) -> dict[str, Any]:
    if not is_git_repo(store.root):
        return {"checkpoints": [], "phase_tags": []}
    phase_tags = []
    try:
        for tag in _lines(_git(store.root, "tag", "-l", PHASE_TAG_TEMPLATE.format("*"))):
            commit = _git(store.root, "rev-parse", f"{tag}^{{commit}}")
            phase_tags.append({"tag": tag, "commit": commit})
    except RuntimeError:
        log.debug("Could not list phase tags", exc_info=True)
    return {"checkpoints": list_checkpoints(store), "phase_tags": phase_tags}
