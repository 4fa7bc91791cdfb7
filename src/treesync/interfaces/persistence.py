"""Tree persistence interface."""

from __future__ import annotations

from typing import Protocol, runtime_checkable

from treesync.merkle.tree import Tree


@runtime_checkable
class TreePersistence(Protocol):
    """Durable storage for tree snapshots keyed by tree id.

    ``load_tree`` raises NotFoundError for an unknown id and CorruptTreeError
    for a snapshot that fails verification. ``save_tree`` raises
    VersionConflictError unless the stored version equals *expected_version*
    (``None`` means "no snapshot stored yet"). ``stored_version`` reports the
    version column without decoding the snapshot, so a writer can recover
    from a corrupt payload.
    """

    def load_tree(self, device_id: str) -> Tree: ...

    def save_tree(self, device_id: str, tree: Tree, expected_version: int | None) -> None: ...

    def stored_version(self, device_id: str) -> int | None: ...
