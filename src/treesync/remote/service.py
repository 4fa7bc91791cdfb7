"""Authoritative tree service backed by a TreePersistence."""

from __future__ import annotations

import asyncio
import logging

from treesync.errors import NotFoundError, VersionConflictError
from treesync.interfaces.persistence import TreePersistence
from treesync.merkle.differ import apply_diff
from treesync.merkle.models import DiffResult
from treesync.merkle.tree import Tree

logger = logging.getLogger(__name__)


class LocalTreeService:
    """Holds the one shared authoritative tree all devices reconcile against.

    Pushes are accepted only when the caller's ``expected_version`` matches
    the stored version; a stale push raises VersionConflictError and leaves
    the tree untouched.
    """

    def __init__(self, store: TreePersistence, tree_id: str = "authoritative") -> None:
        self._store = store
        self.tree_id = tree_id
        self._lock = asyncio.Lock()

    def _load(self) -> tuple[Tree, int | None]:
        """Current tree plus the stored version (None before the first push)."""
        try:
            tree = self._store.load_tree(self.tree_id)
        except NotFoundError:
            return Tree.empty(self.tree_id), None
        return tree, tree.version

    async def get_remote_tree(self, device_id: str) -> Tree:
        tree, _ = self._load()
        logger.debug("Serving %s v%d to %s", self.tree_id, tree.version, device_id)
        return tree

    async def push_diff(
        self, device_id: str, changes: DiffResult, expected_version: int
    ) -> Tree:
        for entry in changes.changed_entries():
            if entry.remote_key is None:
                raise ValueError(f"pushed entry {entry.path} has no remote key")

        async with self._lock:
            current, stored_version = self._load()
            if current.version != expected_version:
                raise VersionConflictError(self.tree_id, expected_version, current.version)
            if not changes.has_changes:
                return current

            updated = apply_diff(current, changes)
            self._store.save_tree(self.tree_id, updated, expected_version=stored_version)

        logger.info(
            "Accepted push from %s: +%d ~%d -%d (v%d -> v%d)",
            device_id,
            len(changes.added),
            len(changes.modified),
            len(changes.removed_entries),
            current.version,
            updated.version,
        )
        return updated
