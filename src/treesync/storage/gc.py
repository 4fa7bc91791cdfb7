"""Sweep stored objects that no known tree references."""

from __future__ import annotations

import logging
import time
from collections.abc import Iterable

from treesync.errors import NotFoundError
from treesync.merkle.tree import Tree
from treesync.storage.local import LocalObjectStore

logger = logging.getLogger(__name__)

# Objects younger than this may belong to an upload whose push has not landed yet
DEFAULT_MIN_AGE = 3600.0


async def collect_garbage(
    tree: Tree,
    store: LocalObjectStore,
    *,
    keep: Iterable[Tree] = (),
    min_age: float = DEFAULT_MIN_AGE,
    now: float | None = None,
    dry_run: bool = False,
) -> list[str]:
    """Delete objects no entry of *tree* or *keep* points at; return those keys.

    Device trees passed in *keep* protect keys that were uploaded but never
    pushed. Objects written less than *min_age* seconds ago are left alone
    for devices whose trees are not visible here.
    """
    referenced = {e.remote_key for t in (tree, *keep) for e in t.entries.values() if e.remote_key}
    cutoff = (now if now is not None else time.time()) - min_age
    orphans = []
    for key in store.keys():
        if key in referenced:
            continue
        try:
            if store.modified_at(key) > cutoff:
                logger.debug("Keeping recent unreferenced object %s", key)
                continue
        except NotFoundError:
            continue
        orphans.append(key)

    for key in orphans:
        if dry_run:
            logger.info("Would delete unreferenced object %s", key)
            continue
        await store.delete(key)
        logger.info("Deleted unreferenced object %s", key)
    return orphans
