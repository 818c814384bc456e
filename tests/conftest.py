"""Shared test fixtures for Colony test suite."""

from __future__ import annotations

import os
from pathlib import Path

import pytest

from colony.config import ColonyConfig, LearningConfig, MemoryConfig, SwarmConfig
from colony.gateway import MockGateway
from colony.memory import InMemoryBackend, MemoryStore, SQLiteBackend


@pytest.fixture(autouse=True)
def clean_colony_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Keep COLONY_* variables from the outer shell out of config tests."""
    for name in list(os.environ):
        if name.startswith("COLONY_"):
            monkeypatch.delenv(name, raising=False)


@pytest.fixture
def tmp_data_dir(tmp_path: Path) -> Path:
    """Temp directory for test isolation."""
    data_dir = tmp_path / "colony_data"
    data_dir.mkdir()
    return data_dir


@pytest.fixture
def memory() -> MemoryStore:
    """In-memory store with the default promotion threshold of 5."""
    store = MemoryStore(
        backend=InMemoryBackend(),
        config=MemoryConfig(backend="memory"),
        learning=LearningConfig(),
    )
    yield store
    store.close()


@pytest.fixture
def sqlite_memory(tmp_data_dir: Path) -> MemoryStore:
    """SQLite-backed store in a temp directory."""
    store = MemoryStore(
        backend=SQLiteBackend(tmp_data_dir / "memory.db"),
        config=MemoryConfig(),
        learning=LearningConfig(),
    )
    yield store
    store.close()


@pytest.fixture(params=["memory", "sqlite"])
def any_memory(request: pytest.FixtureRequest, tmp_data_dir: Path) -> MemoryStore:
    """The same store contract over each backend."""
    if request.param == "sqlite":
        backend = SQLiteBackend(tmp_data_dir / "memory.db")
    else:
        backend = InMemoryBackend()
    store = MemoryStore(backend=backend, config=MemoryConfig(), learning=LearningConfig())
    yield store
    store.close()


@pytest.fixture
def mock_gateway() -> MockGateway:
    """Gateway answering every call with a fixed payload."""
    return MockGateway(default_payload="Mock result.")


@pytest.fixture
def fast_swarm_config() -> SwarmConfig:
    """Swarm timings shrunk so sessions finish in milliseconds."""
    return SwarmConfig(
        retry_backoff_seconds=0.01,
        poll_interval_seconds=0.01,
        dispatch_wait_seconds=0.2,
        cancel_grace_seconds=2.0,
    )


@pytest.fixture
def colony_config(tmp_data_dir: Path, fast_swarm_config: SwarmConfig) -> ColonyConfig:
    return ColonyConfig(
        data_dir=tmp_data_dir,
        log_to_file=False,
        swarm=fast_swarm_config,
        memory=MemoryConfig(backend="memory"),
    )
