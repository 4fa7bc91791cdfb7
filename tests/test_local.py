"""Tests for the local tree holder and the watch-feed indexer."""

from __future__ import annotations

import shutil
import threading
from pathlib import Path
from unittest.mock import MagicMock

import pytest

from treesync.interfaces import EventKind, WatchEvent
from treesync.merkle import Tree, compute_hash
from treesync.sync import LocalIndexer, LocalTree
from treesync.uploads import PendingUploadTracker
from treesync.workspace import LocalWorkspace

H1 = compute_hash(b"one")
H2 = compute_hash(b"two")


@pytest.fixture
def workspace(tmp_path: Path) -> LocalWorkspace:
    root = tmp_path / "ws"
    root.mkdir()
    return LocalWorkspace(root)


@pytest.fixture
def indexer(workspace) -> LocalIndexer:
    return LocalIndexer(
        LocalTree(Tree.empty("laptop")), workspace, PendingUploadTracker(), on_change=MagicMock()
    )


def _event(path: str, kind: str = "created") -> WatchEvent:
    return WatchEvent(path=path, kind=EventKind(kind))


# ── LocalTree ────────────────────────────────────────────────────────


class TestLocalTree:
    def test_mutate_commits(self):
        local = LocalTree(Tree.empty("laptop"))
        committed = local.mutate(lambda t: t.upsert("a", H1))
        assert local.snapshot() is committed
        assert committed.version == 1

    def test_mutate_retries_after_concurrent_commit(self):
        local = LocalTree(Tree.empty("laptop"))
        calls = 0

        def fn(tree: Tree) -> Tree:
            nonlocal calls
            calls += 1
            if calls == 1:
                local.mutate(lambda t: t.upsert("other", H2))
            return tree.upsert("mine", H1)

        result = local.mutate(fn)
        assert calls == 2
        assert result.paths() == ["mine", "other"]

    def test_failed_mutation_leaves_tree(self):
        local = LocalTree(Tree.empty("laptop").upsert("a", H1))
        before = local.snapshot()
        with pytest.raises(KeyError):
            local.mutate(lambda t: t.set_remote_key("missing", "k"))
        assert local.snapshot() is before

    def test_snapshots_are_stable(self):
        local = LocalTree(Tree.empty("laptop"))
        snap = local.snapshot()
        local.mutate(lambda t: t.upsert("a", H1))
        assert len(snap) == 0

    def test_concurrent_writers_lose_nothing(self):
        local = LocalTree(Tree.empty("laptop"))

        def writer(n: int) -> None:
            for i in range(25):
                local.mutate(lambda t, i=i: t.upsert(f"w{n}/f{i}", H1))

        threads = [threading.Thread(target=writer, args=(n,)) for n in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert len(local.snapshot()) == 100


# ── LocalIndexer ─────────────────────────────────────────────────────


class TestIndexer:
    def test_created_file_is_indexed(self, indexer, workspace):
        (workspace.root / "a.txt").write_bytes(b"one")
        assert indexer.apply(_event("a.txt"))
        entry = indexer.local.snapshot().get("a.txt")
        assert entry.content_hash == H1
        assert entry.remote_key is None
        assert entry.local_ref == str(workspace.root / "a.txt")
        assert indexer.tracker.is_pending("a.txt")
        indexer.on_change.assert_called_once()

    def test_unchanged_content_is_skipped(self, indexer, workspace):
        (workspace.root / "a.txt").write_bytes(b"one")
        indexer.apply(_event("a.txt"))
        version = indexer.local.snapshot().version
        assert not indexer.apply(_event("a.txt", "modified"))
        assert indexer.local.snapshot().version == version
        assert indexer.on_change.call_count == 1

    def test_deleted_file_is_removed(self, indexer, workspace):
        (workspace.root / "a.txt").write_bytes(b"one")
        indexer.apply(_event("a.txt"))
        (workspace.root / "a.txt").unlink()
        assert indexer.apply(_event("a.txt", "deleted"))
        assert "a.txt" not in indexer.local.snapshot()
        assert not indexer.tracker.is_pending("a.txt")

    def test_missing_file_reported_as_modified_is_removed(self, indexer, workspace):
        (workspace.root / "a.txt").write_bytes(b"one")
        indexer.apply(_event("a.txt"))
        (workspace.root / "a.txt").unlink()
        assert indexer.apply(_event("a.txt", "modified"))
        assert len(indexer.local.snapshot()) == 0

    def test_deleted_directory_removes_children(self, indexer, workspace):
        (workspace.root / "docs").mkdir()
        (workspace.root / "docs" / "a.md").write_bytes(b"one")
        (workspace.root / "docs" / "b.md").write_bytes(b"two")
        (workspace.root / "docs-other.md").write_bytes(b"two")
        indexer.consume([_event("docs/a.md"), _event("docs/b.md"), _event("docs-other.md")])
        shutil.rmtree(workspace.root / "docs")
        assert indexer.apply(_event("docs", "deleted"))
        assert indexer.local.snapshot().paths() == ["docs-other.md"]

    def test_ignored_paths(self, indexer, workspace):
        (workspace.root / ".git").mkdir()
        (workspace.root / ".git" / "HEAD").write_bytes(b"one")
        assert not indexer.apply(_event(".git/HEAD"))
        assert len(indexer.local.snapshot()) == 0

    def test_consume_counts_changes(self, indexer, workspace):
        (workspace.root / "a.txt").write_bytes(b"one")
        (workspace.root / "b.txt").write_bytes(b"two")
        events = [_event("a.txt"), _event("a.txt", "modified"), _event("b.txt")]
        assert indexer.consume(events) == 2

    @pytest.mark.asyncio
    async def test_consume_async(self, indexer, workspace):
        (workspace.root / "a.txt").write_bytes(b"one")

        async def feed():
            yield _event("a.txt")
            yield _event("gone.txt", "deleted")

        assert await indexer.consume_async(feed()) == 1
        assert indexer.local.snapshot().paths() == ["a.txt"]

    def test_rescan_keeps_keys_for_unchanged_content(self, indexer, workspace):
        (workspace.root / "same.txt").write_bytes(b"one")
        (workspace.root / "edited.txt").write_bytes(b"one")
        indexer.rescan()
        indexer.local.mutate(lambda t: t.set_remote_key("same.txt", "objects/one"))
        indexer.local.mutate(lambda t: t.set_remote_key("edited.txt", "objects/one"))

        (workspace.root / "edited.txt").write_bytes(b"two")
        (workspace.root / "new.txt").write_bytes(b"one")
        tree = indexer.rescan()

        assert tree.get("same.txt").remote_key == "objects/one"
        assert tree.get("edited.txt").remote_key is None
        assert indexer.tracker.is_pending("edited.txt")

    def test_rescan_reuses_known_stored_content(self, indexer, workspace):
        indexer.tracker.register_stored(H1, "objects/one")
        (workspace.root / "copy.txt").write_bytes(b"one")
        tree = indexer.rescan()
        assert tree.get("copy.txt").remote_key == "objects/one"
        assert not indexer.tracker.is_pending("copy.txt")

    def test_rescan_drops_vanished_files(self, indexer, workspace):
        (workspace.root / "a.txt").write_bytes(b"one")
        indexer.rescan()
        (workspace.root / "a.txt").unlink()
        assert len(indexer.rescan()) == 0
        assert not indexer.tracker.is_pending("a.txt")
