"""Filesystem watch feed."""

from treesync.watch.watcher import WorkspaceWatcher

__all__ = ["WorkspaceWatcher"]
