"""Data models for the hash tree subsystem."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import UTC, datetime

_HEX64_RE = re.compile(r"[a-f0-9]{64}")


def _utcnow() -> datetime:
    return datetime.now(UTC)


@dataclass(frozen=True)
class FileEntry:
    """One tracked file on one device tree.

    ``remote_key`` is the only "uploaded" flag: it stays ``None`` until the
    object store has confirmed the content is stored.
    """

    path: str
    content_hash: str
    size: int = 0
    mime_type: str | None = None
    modified_at: datetime = field(default_factory=_utcnow)
    local_ref: str | None = None
    remote_key: str | None = None

    def __post_init__(self) -> None:
        if not _HEX64_RE.fullmatch(self.content_hash):
            raise ValueError(
                f"content_hash must be 64-char hex, got {self.content_hash!r}"
            )
        if self.size < 0:
            raise ValueError(f"size must be >= 0, got {self.size}")
        if self.modified_at.tzinfo is None:
            object.__setattr__(self, "modified_at", self.modified_at.replace(tzinfo=UTC))

    @property
    def is_uploaded(self) -> bool:
        return self.remote_key is not None

    def same_content(self, other: FileEntry | None) -> bool:
        return other is not None and other.content_hash == self.content_hash

    def same_metadata(self, other: FileEntry) -> bool:
        return (
            self.size == other.size
            and self.mime_type == other.mime_type
            and self.modified_at == other.modified_at
        )


@dataclass(frozen=True)
class TreeNode:
    """A node of the derived hash view: a file leaf or a directory.

    Directory keys end with ``/``; the root directory is ``""``.
    """

    path: str
    hash: str
    children: tuple[str, ...] = ()
    content_hash: str | None = None

    @property
    def is_leaf(self) -> bool:
        return self.content_hash is not None


@dataclass(frozen=True)
class ModifiedEntry:
    """A path present on both sides whose content hash differs."""

    path: str
    old_hash: str
    new_hash: str
    entry: FileEntry


@dataclass(frozen=True)
class DiffResult:
    """Result of comparing a base tree against a target tree."""

    added: tuple[FileEntry, ...] = ()
    modified: tuple[ModifiedEntry, ...] = ()
    removed_entries: tuple[FileEntry, ...] = ()
    old_root_hash: str = ""
    new_root_hash: str = ""

    @property
    def removed(self) -> tuple[str, ...]:
        return tuple(e.path for e in self.removed_entries)

    @property
    def has_changes(self) -> bool:
        return bool(self.added or self.modified or self.removed_entries)

    @property
    def paths(self) -> set[str]:
        """Every path touched by this diff."""
        return (
            {e.path for e in self.added}
            | {m.path for m in self.modified}
            | set(self.removed)
        )

    def changed_entries(self) -> list[FileEntry]:
        """Target-side entries for added and modified paths, in path order."""
        entries = list(self.added) + [m.entry for m in self.modified]
        return sorted(entries, key=lambda e: e.path)

    def __len__(self) -> int:
        return len(self.added) + len(self.modified) + len(self.removed_entries)
