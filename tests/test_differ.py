"""Tests for the diff engine."""

from __future__ import annotations

import json
from datetime import UTC, datetime, timedelta

from treesync.merkle import (
    Tree,
    apply_diff,
    compute_hash,
    diff,
    diff_from_dict,
    diff_metadata,
    diff_to_dict,
)

T0 = datetime(2026, 1, 1, tzinfo=UTC)


def _tree(files: dict[str, bytes], device: str = "laptop") -> Tree:
    tree = Tree.empty(device)
    for path, content in files.items():
        tree = tree.upsert(path, compute_hash(content), size=len(content), modified_at=T0)
    return tree


def test_diff_with_itself_is_empty():
    tree = _tree({"a": b"1", "d/b": b"2"})
    result = diff(tree, tree)
    assert not result.has_changes
    assert len(result) == 0


def test_equal_content_across_devices_is_empty():
    assert not diff(_tree({"a": b"1"}, "laptop"), _tree({"a": b"1"}, "desktop")).has_changes


def test_partition():
    base = _tree({"keep": b"k", "change": b"old", "gone": b"g"})
    target = _tree({"keep": b"k", "change": b"new", "fresh": b"f"})
    result = diff(base, target)

    assert [e.path for e in result.added] == ["fresh"]
    assert [m.path for m in result.modified] == ["change"]
    assert result.removed == ("gone",)
    assert result.modified[0].old_hash == compute_hash(b"old")
    assert result.modified[0].new_hash == compute_hash(b"new")
    assert result.modified[0].entry.content_hash == compute_hash(b"new")
    assert result.paths == {"fresh", "change", "gone"}
    assert result.old_root_hash == base.root_hash
    assert result.new_root_hash == target.root_hash


def test_disjoint_trees():
    base = _tree({"a": b"1", "b": b"2"})
    target = _tree({"c": b"3"})
    result = diff(base, target)
    assert sorted(e.path for e in result.added) == ["c"]
    assert sorted(result.removed) == ["a", "b"]
    assert not result.modified


def test_from_empty_everything_is_added():
    result = diff(Tree.empty("x"), _tree({"a": b"1", "d/b": b"2"}))
    assert [e.path for e in result.changed_entries()] == ["a", "d/b"]


def test_metadata_only_change_is_not_a_diff():
    base = _tree({"a.txt": b"1"})
    touched = base.upsert("a.txt", compute_hash(b"1"), size=1, modified_at=T0 + timedelta(hours=1))
    assert not diff(base, touched).has_changes
    assert diff_metadata(base, touched) == ["a.txt"]


def test_diff_is_directional():
    a = _tree({"x": b"1"})
    b = _tree({"x": b"1", "y": b"2"})
    assert [e.path for e in diff(a, b).added] == ["y"]
    assert diff(b, a).removed == ("y",)


# ── apply_diff ───────────────────────────────────────────────────────


class TestApplyDiff:
    def test_reaches_target(self):
        base = _tree({"keep": b"k", "change": b"old", "gone": b"g"})
        target = _tree({"keep": b"k", "change": b"new", "fresh": b"f"})
        applied = apply_diff(base, diff(base, target))
        assert applied.root_hash == target.root_hash
        assert applied.version == base.version + 1

    def test_empty_diff_returns_same_tree(self):
        tree = _tree({"a": b"1"})
        assert apply_diff(tree, diff(tree, tree)) is tree

    def test_removal_is_keyed_by_content(self):
        base = _tree({"a": b"old"})
        removal = diff(base, Tree.empty("laptop"))
        newer = base.upsert("a", compute_hash(b"newer"))
        assert apply_diff(newer, removal).get("a").content_hash == compute_hash(b"newer")

    def test_removal_of_absent_path(self):
        base = _tree({"a": b"1"})
        removal = diff(base, Tree.empty("laptop"))
        assert len(apply_diff(Tree.empty("other"), removal)) == 0


def test_wire_form_round_trip():
    base = _tree({"change": b"old", "gone": b"g"})
    target = _tree({"change": b"new", "fresh": b"f"}).set_remote_key("fresh", "objects/f")
    result = diff(base, target)
    restored = diff_from_dict(json.loads(json.dumps(diff_to_dict(result))))
    assert restored.paths == result.paths
    assert restored.added[0].remote_key == "objects/f"
    assert restored.modified[0].old_hash == compute_hash(b"old")
    assert apply_diff(base, restored).root_hash == target.root_hash
