"""Shared test fixtures for treesync."""

from pathlib import Path

import pytest

from treesync.config.models import RetryConfig, SyncSettings
from treesync.persistence import MemoryTreeStore
from treesync.remote import LocalTreeService
from treesync.storage import LocalObjectStore
from treesync.sync import SyncCoordinator
from treesync.workspace import LocalWorkspace


@pytest.fixture
def fast_settings() -> SyncSettings:
    """Two transfer slots, two attempts, no backoff sleeps."""
    return SyncSettings(
        max_concurrency=2,
        max_version_retries=2,
        retry=RetryConfig(max_attempts=2, base_delay=0, max_delay=0),
    )


@pytest.fixture
def object_store(tmp_path: Path) -> LocalObjectStore:
    return LocalObjectStore(tmp_path / "remote" / "blobs", secret=b"test-secret")


@pytest.fixture
def remote_service() -> LocalTreeService:
    return LocalTreeService(MemoryTreeStore())


@pytest.fixture
def make_device(tmp_path, object_store, remote_service, fast_settings):
    """Factory for coordinators on separate workspaces sharing one remote."""

    def _make(name: str, persistence: MemoryTreeStore | None = None) -> SyncCoordinator:
        root = tmp_path / name
        root.mkdir(exist_ok=True)
        coordinator = SyncCoordinator(
            name,
            LocalWorkspace(root),
            remote_service,
            object_store,
            persistence=persistence if persistence is not None else MemoryTreeStore(),
            settings=fast_settings,
        )
        coordinator.restore()
        return coordinator

    return _make
