"""Versioned, content-addressed hash tree over one device's file set."""

from __future__ import annotations

import hashlib
import json
from collections import defaultdict
from collections.abc import Callable, Iterable, Mapping
from dataclasses import replace
from datetime import UTC, datetime
from pathlib import Path, PurePosixPath
from types import MappingProxyType
from typing import Any

from treesync.errors import CorruptTreeError, NotFoundError
from treesync.merkle.models import FileEntry, TreeNode

_CHUNK_SIZE = 1024 * 1024


def compute_hash(content: bytes) -> str:
    """Full SHA-256 hex digest of *content*."""
    return hashlib.sha256(content).hexdigest()


def compute_file_hash(path: Path) -> str:
    """Stream a file from disk and return its SHA-256 hex digest."""
    digest = hashlib.sha256()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(_CHUNK_SIZE), b""):
            digest.update(chunk)
    return digest.hexdigest()


def _framed(text: str) -> bytes:
    raw = text.encode("utf-8")
    return f"{len(raw)}:".encode() + raw


def leaf_hash(path: str, content_hash: str) -> str:
    """Hash of a leaf: the file's path bound to its content hash."""
    return compute_hash(b"leaf\0" + _framed(path) + content_hash.encode())


def compute_merkle_hash(children: Iterable[tuple[str, str, str]]) -> str:
    """Compute a directory hash from ``(kind, name, hash)`` child triples.

    Children are sorted by name and every field is length-prefixed, so the
    encoding is unambiguous regardless of child count or name contents.
    """
    ordered = sorted(children, key=lambda c: (c[1], c[0]))
    parts = [b"node\0", f"{len(ordered)}:".encode()]
    for kind, name, child_hash in ordered:
        parts.append(kind.encode() + _framed(name) + child_hash.encode())
    return compute_hash(b"".join(parts))


def normalize_path(path: str) -> str:
    """Normalize a relative path to forward-slash form.

    Raises ValueError for empty paths and for paths that climb with ``..``.
    """
    cleaned = path.replace("\\", "/").strip()
    parts = [p for p in PurePosixPath(cleaned).parts if p.strip("/") and p != "."]
    if not parts:
        raise ValueError(f"empty path: {path!r}")
    if ".." in parts:
        raise ValueError(f"path escapes the tree root: {path!r}")
    return "/".join(parts)


def _dir_key(parts: list[str]) -> str:
    return "/".join(parts) + "/" if parts else ""


# -- wire format ---------------------------------------------------------------


def entry_to_dict(entry: FileEntry, *, wire: bool = False) -> dict[str, Any]:
    data: dict[str, Any] = {
        "contentHash": entry.content_hash,
        "size": entry.size,
        "mimeType": entry.mime_type,
        "modifiedAt": entry.modified_at.isoformat(),
        "remoteKey": entry.remote_key,
    }
    if not wire:
        data["localRef"] = entry.local_ref
    return data


def entry_from_dict(path: str, data: Mapping[str, Any]) -> FileEntry:
    return FileEntry(
        path=normalize_path(path),
        content_hash=data["contentHash"],
        size=int(data.get("size", 0)),
        mime_type=data.get("mimeType"),
        modified_at=datetime.fromisoformat(data["modifiedAt"]),
        local_ref=data.get("localRef"),
        remote_key=data.get("remoteKey"),
    )


def _migrate_v0(data: dict[str, Any]) -> dict[str, Any]:
    """Schema 0 stored entries as a list of records carrying their own path."""
    entries = {rec["path"]: {k: v for k, v in rec.items() if k != "path"}
               for rec in data.get("entries", [])}
    return {**data, "entries": entries, "schemaVersion": 1}


# from-version -> upgrade step
_MIGRATIONS: dict[int, Callable[[dict[str, Any]], dict[str, Any]]] = {
    0: _migrate_v0,
}


class Tree:
    """An immutable snapshot of one device's tracked files.

    Every mutation returns a new ``Tree`` with ``version`` incremented, so a
    reader holding a snapshot never observes a half-applied change. The
    directory node view and ``root_hash`` are derived from ``entries`` alone.
    """

    SCHEMA_VERSION = 1
    algorithm: str = "sha256"

    def __init__(
        self,
        device_id: str,
        entries: Mapping[str, FileEntry] | None = None,
        version: int = 0,
    ) -> None:
        if version < 0:
            raise ValueError(f"version must be >= 0, got {version}")
        self.device_id = device_id
        self.version = version
        self._entries: dict[str, FileEntry] = dict(entries or {})
        self._nodes: dict[str, TreeNode] | None = None

    @classmethod
    def empty(cls, device_id: str) -> Tree:
        return cls(device_id=device_id)

    # ------------------------------------------------------------------
    # Read access
    # ------------------------------------------------------------------

    @property
    def entries(self) -> Mapping[str, FileEntry]:
        return MappingProxyType(self._entries)

    def get(self, path: str) -> FileEntry | None:
        return self._entries.get(path)

    def paths(self) -> list[str]:
        return sorted(self._entries)

    def __contains__(self, path: object) -> bool:
        return path in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Tree):
            return NotImplemented
        return (
            self.device_id == other.device_id
            and self.version == other.version
            and self._entries == other._entries
        )

    def __hash__(self) -> int:
        return hash((self.device_id, self.version, self.root_hash))

    def __repr__(self) -> str:
        return (
            f"Tree(device_id={self.device_id!r}, version={self.version}, "
            f"entries={len(self._entries)}, root_hash={self.root_hash[:12]!r})"
        )

    # ------------------------------------------------------------------
    # Mutation (copy-on-write)
    # ------------------------------------------------------------------

    def _committed(self, entries: dict[str, FileEntry]) -> Tree:
        return Tree(self.device_id, entries, self.version + 1)

    def upsert(
        self,
        path: str,
        content_hash: str,
        *,
        size: int = 0,
        mime_type: str | None = None,
        modified_at: datetime | None = None,
        local_ref: str | None = None,
    ) -> Tree:
        """Insert or replace the entry at *path*; the upload state resets."""
        path = normalize_path(path)
        entry = FileEntry(
            path=path,
            content_hash=content_hash,
            size=size,
            mime_type=mime_type,
            modified_at=modified_at or datetime.now(UTC),
            local_ref=local_ref,
            remote_key=None,
        )
        return self.put_entry(entry)

    def put_entry(self, entry: FileEntry) -> Tree:
        """Insert *entry* verbatim, keeping whatever ``remote_key`` it carries."""
        path = normalize_path(entry.path)
        if path != entry.path:
            entry = replace(entry, path=path)
        entries = dict(self._entries)
        entries[path] = entry
        return self._committed(entries)

    def remove(self, path: str) -> Tree:
        """Delete the entry at *path*. Removing an absent path is a no-op."""
        path = normalize_path(path)
        if path not in self._entries:
            return self
        entries = dict(self._entries)
        del entries[path]
        return self._committed(entries)

    def set_remote_key(self, path: str, key: str) -> Tree:
        """Record a confirmed upload for *path*."""
        path = normalize_path(path)
        current = self._entries.get(path)
        if current is None:
            raise NotFoundError("entry", path)
        entries = dict(self._entries)
        entries[path] = replace(current, remote_key=key)
        return self._committed(entries)

    def with_device(self, device_id: str) -> Tree:
        """Same entries and version under another tree id."""
        return Tree(device_id, self._entries, self.version)

    # ------------------------------------------------------------------
    # Hashing
    # ------------------------------------------------------------------

    def nodes(self) -> dict[str, TreeNode]:
        """Derived node view keyed by path (directories end with ``/``)."""
        if self._nodes is None:
            self._nodes = self._build_nodes()
        return self._nodes

    def _build_nodes(self) -> dict[str, TreeNode]:
        nodes: dict[str, TreeNode] = {}
        # dir key -> {(kind, name): child key}
        children_map: dict[str, dict[tuple[str, str], str]] = defaultdict(dict)
        children_map[""] = {}

        for path, entry in self._entries.items():
            nodes[path] = TreeNode(
                path=path,
                hash=leaf_hash(path, entry.content_hash),
                content_hash=entry.content_hash,
            )
            parts = path.split("/")
            children_map[_dir_key(parts[:-1])][("f", parts[-1])] = path
            # Link every ancestor directory into its own parent
            for depth in range(len(parts) - 1, 0, -1):
                child = _dir_key(parts[:depth])
                children_map[_dir_key(parts[: depth - 1])][("d", parts[depth - 1])] = child

        # Deepest directories first so child hashes exist before parents
        for dkey in sorted(children_map, key=lambda d: d.count("/"), reverse=True):
            kids = children_map[dkey]
            nodes[dkey] = TreeNode(
                path=dkey,
                hash=compute_merkle_hash(
                    (kind, name, nodes[ckey].hash) for (kind, name), ckey in kids.items()
                ),
                children=tuple(sorted(kids.values())),
            )
        return nodes

    @property
    def root_hash(self) -> str:
        return self.nodes()[""].hash

    # ------------------------------------------------------------------
    # Serialization
    # ------------------------------------------------------------------

    def to_dict(self, *, wire: bool = False) -> dict[str, Any]:
        """Serialize the tree; *wire* drops device-local fields."""
        return {
            "schemaVersion": self.SCHEMA_VERSION,
            "deviceId": self.device_id,
            "version": self.version,
            "rootHash": self.root_hash,
            "entries": {
                path: entry_to_dict(self._entries[path], wire=wire)
                for path in sorted(self._entries)
            },
        }

    def to_json(self, *, wire: bool = False, indent: int | None = 2) -> str:
        return json.dumps(self.to_dict(wire=wire), indent=indent)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> Tree:
        """Rebuild a tree, recomputing and checking its root hash.

        Raises CorruptTreeError on a malformed payload, an unsupported schema
        or a root hash that is missing or does not match the entries.
        """
        try:
            obj = dict(data)
            schema = original = int(obj.get("schemaVersion", 0))
            if schema > cls.SCHEMA_VERSION:
                raise CorruptTreeError(f"unsupported tree schema version {schema}")
            while schema < cls.SCHEMA_VERSION:
                obj = _MIGRATIONS[schema](obj)
                schema = int(obj["schemaVersion"])

            entries = {}
            for path, raw in obj["entries"].items():
                entry = entry_from_dict(path, raw)
                entries[entry.path] = entry
            tree = cls(
                device_id=str(obj["deviceId"]),
                entries=entries,
                version=int(obj["version"]),
            )
        except CorruptTreeError:
            raise
        except (KeyError, TypeError, ValueError, AttributeError) as e:
            raise CorruptTreeError(f"malformed tree payload: {e}") from e

        claimed = obj.get("rootHash")
        if claimed is None:
            # schema 0 never recorded a root hash
            if original > 0:
                raise CorruptTreeError(f"tree payload for {tree.device_id} has no rootHash")
            return tree
        if claimed != tree.root_hash:
            raise CorruptTreeError(
                f"root hash mismatch for {tree.device_id}: "
                f"claimed {claimed}, computed {tree.root_hash}"
            )
        return tree

    @classmethod
    def from_json(cls, data: str) -> Tree:
        try:
            obj = json.loads(data)
        except json.JSONDecodeError as e:
            raise CorruptTreeError(f"tree is not valid JSON: {e}") from e
        if not isinstance(obj, dict):
            raise CorruptTreeError("tree payload must be a JSON object")
        return cls.from_dict(obj)

    def save(self, path: Path) -> None:
        """Write the tree to a JSON file."""
        path.write_text(self.to_json())

    @classmethod
    def load(cls, path: Path) -> Tree:
        """Read a tree from a JSON file."""
        return cls.from_json(path.read_text())
