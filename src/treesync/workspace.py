"""Local directory access for the reconciliation engine."""

from __future__ import annotations

import fnmatch
import mimetypes
import os
import tempfile
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path

from treesync.merkle.tree import compute_file_hash, normalize_path

# Directories always skipped, plus temp files written by write_atomic
DEFAULT_IGNORE = {
    ".git",
    "node_modules",
    "__pycache__",
    ".venv",
    ".treesync",
}
_TEMP_PREFIX = ".treesync-part-"


@dataclass(frozen=True)
class FileStat:
    """What the workspace knows about one file on disk."""

    path: str
    content_hash: str
    size: int
    mime_type: str | None
    modified_at: datetime
    local_ref: str


def _matches_any(path: Path, patterns: set[str]) -> bool:
    """Check whether any component of *path* matches one of *patterns*."""
    return any(
        part in patterns or any(fnmatch.fnmatch(part, pat) for pat in patterns)
        for part in path.parts
    )


class LocalWorkspace:
    """A synced directory. Paths in and out are tree-relative, ``/``-separated."""

    def __init__(self, root: str | Path, ignore_patterns: list[str] | None = None) -> None:
        self.root = Path(root).expanduser().resolve()
        self.ignore = set(DEFAULT_IGNORE)
        if ignore_patterns:
            self.ignore.update(ignore_patterns)

    def resolve(self, path: str) -> Path:
        """Absolute location of *path*; refuses anything outside the root."""
        target = (self.root / normalize_path(path)).resolve()
        # Guard against symlinks or odd names escaping root
        if not target.is_relative_to(self.root):
            raise ValueError(f"path escapes workspace root: {path!r}")
        return target

    def relative(self, absolute: str | Path) -> str:
        return normalize_path(Path(absolute).resolve().relative_to(self.root).as_posix())

    def is_ignored(self, path: str) -> bool:
        return Path(path).name.startswith(_TEMP_PREFIX) or _matches_any(Path(path), self.ignore)

    # -- reading ---------------------------------------------------------------

    def stat(self, path: str) -> FileStat | None:
        """Hash and describe *path*, or None when it is not a regular file."""
        target = self.resolve(path)
        if not target.is_file():
            return None
        st = target.stat()
        mime, _ = mimetypes.guess_type(target.name)
        return FileStat(
            path=normalize_path(path),
            content_hash=compute_file_hash(target),
            size=st.st_size,
            mime_type=mime,
            modified_at=datetime.fromtimestamp(st.st_mtime, UTC),
            local_ref=str(target),
        )

    def scan(self) -> dict[str, FileStat]:
        """Walk the workspace and describe every non-ignored file."""
        found: dict[str, FileStat] = {}
        for p in sorted(self.root.rglob("*")):
            rel = p.relative_to(self.root)
            if not p.is_file() or self.is_ignored(rel.as_posix()):
                continue
            info = self.stat(rel.as_posix())
            if info is not None:
                found[info.path] = info
        return found

    def read_bytes(self, path: str) -> bytes:
        return self.resolve(path).read_bytes()

    # -- writing ---------------------------------------------------------------

    def write_atomic(self, path: str, data: bytes, modified_at: datetime | None = None) -> FileStat:
        """Write *data* at *path* so the file is either old or complete.

        Returns the stat of the flushed file; callers commit tree entries only
        after this returns.
        """
        target = self.resolve(path)
        target.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(dir=target.parent, prefix=_TEMP_PREFIX)
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(data)
                f.flush()
                os.fsync(f.fileno())
            if modified_at is not None:
                ts = modified_at.timestamp()
                os.utime(tmp, (ts, ts))
            os.replace(tmp, target)
        except BaseException:
            Path(tmp).unlink(missing_ok=True)
            raise
        info = self.stat(path)
        if info is None:
            raise FileNotFoundError(target)
        return info

    def delete(self, path: str) -> bool:
        """Remove *path* if present and prune emptied parent directories."""
        target = self.resolve(path)
        existed = target.is_file()
        target.unlink(missing_ok=True)
        parent = target.parent
        while parent != self.root and parent.is_dir() and not any(parent.iterdir()):
            parent.rmdir()
            parent = parent.parent
        return existed

    def move(self, src: str, dst: str) -> None:
        source = self.resolve(src)
        target = self.resolve(dst)
        target.parent.mkdir(parents=True, exist_ok=True)
        os.replace(source, target)
