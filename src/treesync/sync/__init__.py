"""Reconciliation between a device's workspace and the authoritative tree."""

import os
from pathlib import Path

from treesync.config.models import TreeSyncConfig
from treesync.persistence import SQLiteTreeStore
from treesync.remote import LocalTreeService
from treesync.storage import LocalObjectStore, ObjectKeyResolver
from treesync.sync.coordinator import SyncCoordinator, conflict_copy_path, remote_wins
from treesync.sync.local import LocalIndexer, LocalTree
from treesync.sync.models import ConflictRecord, FileFailure, SyncReport, SyncState
from treesync.uploads import PendingUploadTracker
from treesync.workspace import LocalWorkspace


def state_path(config: TreeSyncConfig) -> Path:
    """Location of the device's snapshot database; relative dirs live in the workspace."""
    directory = Path(config.state.directory).expanduser()
    if not directory.is_absolute():
        directory = Path(config.workspace.root).expanduser() / directory
    return directory / config.state.database


def create_coordinator(config: TreeSyncConfig, *, restore: bool = True) -> SyncCoordinator:
    """Wire a coordinator from app-level config.

    The authoritative tree and object store live under ``remote.root``, a
    directory every device can reach. The presign secret is read from the
    env var named in ``remote.presign_secret_env``.
    """
    remote_root = Path(config.remote.root).expanduser()
    secret = os.environ.get(config.remote.presign_secret_env)
    store = LocalObjectStore(remote_root / "blobs", secret=secret.encode() if secret else None)
    retry = config.sync.retry

    coordinator = SyncCoordinator(
        config.device_id,
        LocalWorkspace(config.workspace.root, config.workspace.ignore_patterns),
        LocalTreeService(SQLiteTreeStore(str(remote_root / "trees.db")), tree_id=config.remote.tree_id),
        store,
        resolver=ObjectKeyResolver(store, prefix=config.remote.key_prefix),
        tracker=PendingUploadTracker(
            max_attempts=retry.max_attempts,
            base_delay=retry.base_delay,
            max_delay=retry.max_delay,
        ),
        persistence=SQLiteTreeStore(str(state_path(config))),
        settings=config.sync,
    )
    if restore:
        coordinator.restore()
    return coordinator


__all__ = [
    "ConflictRecord",
    "FileFailure",
    "LocalIndexer",
    "LocalTree",
    "SyncCoordinator",
    "SyncReport",
    "SyncState",
    "conflict_copy_path",
    "create_coordinator",
    "remote_wins",
    "state_path",
]
