"""Configuration for swarm sessions, recovery and worker processes.

Values come from, lowest to highest precedence: built-in defaults, the
project's ``.wavepool/config.toml``, ``WAVEPOOL_*`` environment variables,
and explicit overrides passed by the caller (CLI options)::

    [swarm]
    max_workers = 5
    worker_timeout_ms = 300000
    reserved_files = ["pyproject.toml", ".env*"]

    [recovery]
    cooldown_ms = 5000
    max_retries = 3

    [worker]
    poll_interval_s = 2.0
    agent_command = "claude -p"
"""

from __future__ import annotations

import logging
import os
import tomllib
from dataclasses import asdict, dataclass, field, fields, replace
from pathlib import Path
from typing import Any

log = logging.getLogger(__name__)

DEFAULT_MAX_WORKERS = 5
DEFAULT_WORKER_TIMEOUT_MS = 300_000
DEFAULT_HEARTBEAT_INTERVAL_MS = 30_000
DEFAULT_COOLDOWN_MS = 5_000
DEFAULT_MAX_RETRIES = 3


def _int_env(name: str, default: int, *, min_value: int) -> int:
    raw = os.environ.get(name)
    if raw is None:
        return default
    try:
        return max(min_value, int(raw))
    except ValueError:
        log.warning("Invalid %s=%r; falling back to %d", name, raw, default)
        return default


@dataclass
class SwarmConfig:
    max_workers: int = DEFAULT_MAX_WORKERS
    worker_timeout_ms: int = DEFAULT_WORKER_TIMEOUT_MS
    heartbeat_interval_ms: int = DEFAULT_HEARTBEAT_INTERVAL_MS
    auto_release_stale: bool = True
    reserved_files: list[str] = field(default_factory=list)
    checkpoint_on_wave: bool = False

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> SwarmConfig:
        return _from_section(cls, data or {})


@dataclass
class RecoveryConfig:
    cooldown_ms: int = DEFAULT_COOLDOWN_MS
    max_retries: int = DEFAULT_MAX_RETRIES
    rollback_on_error: bool = True


@dataclass
class WorkerConfig:
    poll_interval_s: float = 2.0
    max_idle_polls: int = 30
    command_timeout_s: float | None = None
    agent_command: str | None = None


@dataclass
class WavepoolConfig:
    swarm: SwarmConfig = field(default_factory=SwarmConfig)
    recovery: RecoveryConfig = field(default_factory=RecoveryConfig)
    worker: WorkerConfig = field(default_factory=WorkerConfig)


def _from_section(cls, section: dict[str, Any]):
    """Build a config dataclass from a TOML section, ignoring unknown keys."""
    known = {f.name for f in fields(cls)}
    unknown = sorted(set(section) - known)
    if unknown:
        log.warning("Ignoring unknown %s keys: %s", cls.__name__, ", ".join(unknown))
    return cls(**{k: v for k, v in section.items() if k in known})


def _read_toml_file(path: Path) -> dict[str, Any]:
    """Read a TOML file, returning an empty dict on any read/parse failure."""
    try:
        with path.open("rb") as handle:
            raw = tomllib.load(handle)
    except FileNotFoundError:
        return {}
    except (OSError, tomllib.TOMLDecodeError):
        log.warning("Failed to parse %s", path, exc_info=True)
        return {}
    return raw if isinstance(raw, dict) else {}


def _section(raw: dict[str, Any], name: str) -> dict[str, Any]:
    value = raw.get(name, {})
    return value if isinstance(value, dict) else {}


def load_config(config_file: Path | None = None) -> WavepoolConfig:
    """Load configuration from *config_file* (if any) and the environment."""
    raw = _read_toml_file(config_file) if config_file is not None else {}
    try:
        swarm = _from_section(SwarmConfig, _section(raw, "swarm"))
        recovery = _from_section(RecoveryConfig, _section(raw, "recovery"))
        worker = _from_section(WorkerConfig, _section(raw, "worker"))
    except TypeError:
        log.warning("Malformed configuration in %s; using defaults", config_file, exc_info=True)
        swarm, recovery, worker = SwarmConfig(), RecoveryConfig(), WorkerConfig()

    swarm = replace(
        swarm,
        max_workers=_int_env("WAVEPOOL_MAX_WORKERS", swarm.max_workers, min_value=1),
        worker_timeout_ms=_int_env(
            "WAVEPOOL_WORKER_TIMEOUT_MS", swarm.worker_timeout_ms, min_value=1
        ),
        heartbeat_interval_ms=_int_env(
            "WAVEPOOL_HEARTBEAT_INTERVAL_MS", swarm.heartbeat_interval_ms, min_value=1
        ),
    )
    recovery = replace(
        recovery,
        cooldown_ms=_int_env("WAVEPOOL_COOLDOWN_MS", recovery.cooldown_ms, min_value=0),
        max_retries=_int_env("WAVEPOOL_MAX_RETRIES", recovery.max_retries, min_value=1),
    )
    return WavepoolConfig(swarm=swarm, recovery=recovery, worker=worker)
