"""Hash tree subsystem: entries, deterministic root hashing and diffs."""

from treesync.merkle.differ import apply_diff, diff, diff_from_dict, diff_metadata, diff_to_dict
from treesync.merkle.models import DiffResult, FileEntry, ModifiedEntry, TreeNode
from treesync.merkle.tree import (
    Tree,
    compute_file_hash,
    compute_hash,
    compute_merkle_hash,
    leaf_hash,
    normalize_path,
)

__all__ = [
    "DiffResult",
    "FileEntry",
    "ModifiedEntry",
    "Tree",
    "TreeNode",
    "apply_diff",
    "compute_file_hash",
    "compute_hash",
    "compute_merkle_hash",
    "diff",
    "diff_from_dict",
    "diff_metadata",
    "diff_to_dict",
    "leaf_hash",
    "normalize_path",
]
