"""Authoritative diff service interface."""

from __future__ import annotations

from typing import Protocol, runtime_checkable

from treesync.merkle.models import DiffResult
from treesync.merkle.tree import Tree


@runtime_checkable
class RemoteTreeService(Protocol):
    """The shared, authoritative tree every device reconciles against."""

    async def get_remote_tree(self, device_id: str) -> Tree: ...

    async def push_diff(
        self, device_id: str, changes: DiffResult, expected_version: int
    ) -> Tree:
        """Apply *changes* and return the new authoritative tree.

        Raises VersionConflictError, leaving the tree untouched, when
        *expected_version* is not the current version.
        """
        ...
