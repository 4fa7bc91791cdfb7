"""Diff engine: compare two trees into an add/modify/remove plan."""

from __future__ import annotations

import logging

from treesync.merkle.models import DiffResult, FileEntry, ModifiedEntry
from treesync.merkle.tree import Tree, entry_from_dict, entry_to_dict

logger = logging.getLogger(__name__)


def diff(base: Tree, target: Tree) -> DiffResult:
    """Compare *base* against *target* by merge-walking both path orders.

    Entries are equal when their content hashes are equal; size, mime type
    and timestamps never make two entries differ here (see diff_metadata).
    """
    old = base.entries
    new = target.entries
    if base.root_hash == target.root_hash:
        return DiffResult(old_root_hash=base.root_hash, new_root_hash=target.root_hash)

    old_paths = sorted(old)
    new_paths = sorted(new)
    added: list[FileEntry] = []
    modified: list[ModifiedEntry] = []
    removed: list[FileEntry] = []

    i = j = 0
    while i < len(old_paths) or j < len(new_paths):
        if j >= len(new_paths) or (i < len(old_paths) and old_paths[i] < new_paths[j]):
            removed.append(old[old_paths[i]])
            i += 1
        elif i >= len(old_paths) or new_paths[j] < old_paths[i]:
            added.append(new[new_paths[j]])
            j += 1
        else:
            before, after = old[old_paths[i]], new[new_paths[j]]
            if before.content_hash != after.content_hash:
                modified.append(
                    ModifiedEntry(
                        path=after.path,
                        old_hash=before.content_hash,
                        new_hash=after.content_hash,
                        entry=after,
                    )
                )
            i += 1
            j += 1

    return DiffResult(
        added=tuple(added),
        modified=tuple(modified),
        removed_entries=tuple(removed),
        old_root_hash=base.root_hash,
        new_root_hash=target.root_hash,
    )


def diff_metadata(base: Tree, target: Tree) -> list[str]:
    """Paths whose content matches but whose descriptive metadata drifted."""
    drifted = []
    for path in sorted(set(base.entries) & set(target.entries)):
        before, after = base.entries[path], target.entries[path]
        if before.content_hash == after.content_hash and not before.same_metadata(after):
            drifted.append(path)
    return drifted


def apply_diff(tree: Tree, changes: DiffResult) -> Tree:
    """Apply *changes* to *tree* as one committed mutation.

    A removal only takes effect while the entry at that path still holds the
    content hash the diff removed; newer content at the same path survives.
    """
    if not changes.has_changes:
        return tree
    entries = dict(tree.entries)
    for entry in changes.changed_entries():
        entries[entry.path] = entry
    for gone in changes.removed_entries:
        current = entries.get(gone.path)
        if current is None:
            continue
        if current.content_hash != gone.content_hash:
            logger.info(
                "Keeping %s: removal targeted %s but tree holds %s",
                gone.path,
                gone.content_hash[:12],
                current.content_hash[:12],
            )
            continue
        del entries[gone.path]
    return Tree(tree.device_id, entries, tree.version + 1)


# ----------------------------------------------------------------------
# Wire form
# ----------------------------------------------------------------------


def diff_to_dict(changes: DiffResult) -> dict:
    """JSON-ready form of a diff, using the tree wire entry layout."""
    return {
        "oldRootHash": changes.old_root_hash,
        "newRootHash": changes.new_root_hash,
        "added": {e.path: entry_to_dict(e, wire=True) for e in changes.added},
        "modified": {
            m.path: {"oldHash": m.old_hash, **entry_to_dict(m.entry, wire=True)}
            for m in changes.modified
        },
        "removed": {e.path: entry_to_dict(e, wire=True) for e in changes.removed_entries},
    }


def diff_from_dict(data: dict) -> DiffResult:
    modified = []
    for path, raw in data.get("modified", {}).items():
        entry = entry_from_dict(path, raw)
        modified.append(
            ModifiedEntry(path=entry.path, old_hash=raw["oldHash"],
                          new_hash=entry.content_hash, entry=entry)
        )
    return DiffResult(
        added=tuple(entry_from_dict(p, raw) for p, raw in data.get("added", {}).items()),
        modified=tuple(modified),
        removed_entries=tuple(
            entry_from_dict(p, raw) for p, raw in data.get("removed", {}).items()
        ),
        old_root_hash=data.get("oldRootHash", ""),
        new_root_hash=data.get("newRootHash", ""),
    )
