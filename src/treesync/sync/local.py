"""The device's live tree and the indexer that feeds it from watch events."""

from __future__ import annotations

import asyncio
import logging
import threading
from collections.abc import AsyncIterable, Callable, Iterable

from treesync.errors import VersionConflictError
from treesync.interfaces.watch import EventKind, WatchEvent
from treesync.merkle.models import FileEntry
from treesync.merkle.tree import Tree
from treesync.uploads.tracker import PendingUploadTracker
from treesync.workspace import LocalWorkspace

logger = logging.getLogger(__name__)


def _without(tree: Tree, paths: set[str]) -> Tree:
    entries = {p: e for p, e in tree.entries.items() if p not in paths}
    if len(entries) == len(tree):
        return tree
    return Tree(tree.device_id, entries, tree.version + 1)


class LocalTree:
    """Holds the current device tree for many concurrent producers.

    Readers take ``snapshot()`` without locking; the snapshot is immutable.
    Writers go through ``mutate()``, which swaps the new tree in only if no
    other writer committed since it read (compare-and-swap on the snapshot),
    retrying otherwise.
    """

    MAX_CAS_RETRIES = 32

    def __init__(self, tree: Tree) -> None:
        self._tree = tree
        self._lock = threading.Lock()

    @property
    def device_id(self) -> str:
        return self._tree.device_id

    def snapshot(self) -> Tree:
        return self._tree

    def mutate(self, fn: Callable[[Tree], Tree]) -> Tree:
        """Apply *fn* atomically and return the committed tree.

        Exceptions raised by *fn* propagate and leave the tree untouched.
        """
        seen = self._tree
        for _ in range(self.MAX_CAS_RETRIES):
            seen = self._tree
            updated = fn(seen)
            with self._lock:
                if self._tree is seen:
                    self._tree = updated
                    return updated
        raise VersionConflictError(seen.device_id, seen.version, self._tree.version)

    def replace(self, tree: Tree) -> None:
        """Unconditionally install *tree*, e.g. after a rebuild from disk."""
        with self._lock:
            self._tree = tree


class LocalIndexer:
    """Turns watch events into tree mutations.

    Created/modified files are re-hashed and upserted; a write that leaves
    the content hash unchanged is ignored. Deleted files are removed.
    *on_change* is called after every committed mutation.
    """

    def __init__(
        self,
        local: LocalTree,
        workspace: LocalWorkspace,
        tracker: PendingUploadTracker,
        on_change: Callable[[], None] | None = None,
    ) -> None:
        self.local = local
        self.workspace = workspace
        self.tracker = tracker
        self.on_change = on_change

    def apply(self, event: WatchEvent) -> bool:
        """Apply one event; returns True when the tree changed."""
        path = event.path
        if self.workspace.is_ignored(path):
            return False

        info = None if event.kind is EventKind.deleted else self.workspace.stat(path)
        before = self.local.snapshot()
        if info is None:
            # A deleted directory takes every tracked file below it along
            prefix = path + "/"
            doomed = {
                p for p in before.entries
                if (p == path or p.startswith(prefix)) and not self.workspace.resolve(p).is_file()
            }
            after = self.local.mutate(lambda t: _without(t, doomed))
            for gone in doomed:
                self.tracker.discard(gone)
        else:
            current = before.get(path)
            if current is not None and current.content_hash == info.content_hash:
                return False
            after = self.local.mutate(
                lambda t: t.upsert(
                    path,
                    info.content_hash,
                    size=info.size,
                    mime_type=info.mime_type,
                    modified_at=info.modified_at,
                    local_ref=info.local_ref,
                )
            )
            self.tracker.mark_pending(path, info.content_hash)

        changed = after is not before and after.root_hash != before.root_hash
        if changed:
            logger.debug("Indexed %s %s", event.kind.value, path)
            if self.on_change is not None:
                self.on_change()
        return changed

    def consume(self, events: Iterable[WatchEvent]) -> int:
        """Drain a (possibly endless) event feed; returns the number of changes."""
        changes = 0
        for event in events:
            try:
                changes += self.apply(event)
            except (OSError, ValueError):
                logger.exception("Failed to index %s", event.path)
        return changes

    async def consume_async(self, events: AsyncIterable[WatchEvent]) -> int:
        changes = 0
        async for event in events:
            try:
                changes += await asyncio.to_thread(self.apply, event)
            except (OSError, ValueError):
                logger.exception("Failed to index %s", event.path)
        return changes

    def rescan(self) -> Tree:
        """Rebuild the tree from a full workspace scan.

        Entries whose content is unchanged keep their remote key, so a
        rebuild never forces re-uploads of content already stored.
        """
        previous = self.local.snapshot()
        scanned = self.workspace.scan()
        entries: dict[str, FileEntry] = {}
        for path, info in scanned.items():
            old = previous.get(path)
            key = old.remote_key if old is not None and old.content_hash == info.content_hash else None
            if key is None:
                key = self.tracker.known_key(info.content_hash)
            entries[path] = FileEntry(
                path=path,
                content_hash=info.content_hash,
                size=info.size,
                mime_type=info.mime_type,
                modified_at=info.modified_at,
                local_ref=info.local_ref,
                remote_key=key,
            )
        rebuilt = Tree(previous.device_id, entries, previous.version + 1)
        self.local.replace(rebuilt)
        for stale in set(previous.entries) - set(entries):
            self.tracker.discard(stale)
        self.tracker.register_entries(entries.values())
        logger.info("Rescanned %s: %d files, root %s", self.workspace.root, len(entries), rebuilt.root_hash[:12])
        return rebuilt
