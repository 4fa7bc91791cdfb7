"""In-memory TreePersistence, for tests and single-process setups."""

from __future__ import annotations

import threading

from treesync.errors import NotFoundError, VersionConflictError
from treesync.merkle.tree import Tree


class MemoryTreeStore:
    """Keeps serialized snapshots in a dict so loads still verify hashes."""

    def __init__(self) -> None:
        self._payloads: dict[str, tuple[int, str]] = {}
        self._lock = threading.Lock()

    def load_tree(self, device_id: str) -> Tree:
        with self._lock:
            stored = self._payloads.get(device_id)
        if stored is None:
            raise NotFoundError("tree", device_id)
        return Tree.from_json(stored[1])

    def save_tree(self, device_id: str, tree: Tree, expected_version: int | None) -> None:
        payload = tree.to_json(indent=None)
        with self._lock:
            stored = self._payloads.get(device_id)
            current = stored[0] if stored is not None else None
            if current != expected_version:
                raise VersionConflictError(device_id, expected_version, current)
            self._payloads[device_id] = (tree.version, payload)

    def stored_version(self, device_id: str) -> int | None:
        with self._lock:
            stored = self._payloads.get(device_id)
        return stored[0] if stored is not None else None
