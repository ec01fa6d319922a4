"""Shared test fixtures: a throwaway project workspace per test."""

from pathlib import Path

import pytest

from wavepool.config import WavepoolConfig
from wavepool.store import StateStore

_ENV_VARS = (
    "WAVEPOOL_MAX_WORKERS",
    "WAVEPOOL_WORKER_TIMEOUT_MS",
    "WAVEPOOL_HEARTBEAT_INTERVAL_MS",
    "WAVEPOOL_COOLDOWN_MS",
    "WAVEPOOL_MAX_RETRIES",
    "WAVEPOOL_PROJECT_DIR",
)


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch):
    for name in _ENV_VARS:
        monkeypatch.delenv(name, raising=False)


@pytest.fixture(autouse=True)
def published_events(monkeypatch) -> list[dict]:
    """Keep tests off Redis; collect what would have been published."""
    published: list[dict] = []
    monkeypatch.setattr("wavepool.queue.publish_event", published.append)
    return published


@pytest.fixture()
def project_root(tmp_path: Path) -> Path:
    root = tmp_path / "project"
    root.mkdir()
    return root


@pytest.fixture()
def store(project_root: Path) -> StateStore:
    return StateStore(project_root, config=WavepoolConfig())
