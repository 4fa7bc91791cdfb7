"""TreePersistence implementation backed by a local SQLite database."""

from __future__ import annotations

import sqlite3
import threading
from datetime import UTC, datetime
from pathlib import Path

from treesync.errors import NotFoundError, VersionConflictError
from treesync.merkle.tree import Tree

_SCHEMA = """\
CREATE TABLE IF NOT EXISTS trees (
    tree_id TEXT PRIMARY KEY,
    version INTEGER NOT NULL,
    root_hash TEXT NOT NULL,
    payload_json TEXT NOT NULL,
    updated_at TEXT NOT NULL
);
"""


class SQLiteTreeStore:
    """TreePersistence using SQLite with WAL mode.

    Each tree id holds one snapshot. Saves are compare-and-swap on the stored
    version, so two writers racing on one id cannot both win.
    """

    def __init__(self, db_path: str = ".treesync/state.db") -> None:
        path = Path(db_path).expanduser()
        path.parent.mkdir(parents=True, exist_ok=True)

        self.db_path = str(path)
        # isolation_level=None => autocommit mode, giving us manual
        # transaction control for the version check.
        self._conn = sqlite3.connect(
            self.db_path, isolation_level=None, timeout=5, check_same_thread=False
        )
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.executescript(_SCHEMA)
        self._lock = threading.Lock()

    def close(self) -> None:
        self._conn.close()

    # -- TreePersistence protocol ----------------------------------------------

    def load_tree(self, device_id: str) -> Tree:
        """Return the stored snapshot; its root hash is re-verified on load."""
        with self._lock:
            row = self._conn.execute(
                "SELECT payload_json FROM trees WHERE tree_id = ?", (device_id,)
            ).fetchone()
        if row is None:
            raise NotFoundError("tree", device_id)
        return Tree.from_json(row[0])

    def save_tree(self, device_id: str, tree: Tree, expected_version: int | None) -> None:
        """Store *tree* if the stored version still equals *expected_version*.

        Uses BEGIN IMMEDIATE to hold the write lock across the
        check-then-write, so another connection cannot slip in between.
        """
        payload = tree.to_json(indent=None)
        with self._lock:
            cursor = self._conn.cursor()
            try:
                cursor.execute("BEGIN IMMEDIATE")
                row = cursor.execute(
                    "SELECT version FROM trees WHERE tree_id = ?", (device_id,)
                ).fetchone()
                current = row[0] if row is not None else None
                if current != expected_version:
                    cursor.execute("ROLLBACK")
                    raise VersionConflictError(device_id, expected_version, current)

                cursor.execute(
                    "INSERT OR REPLACE INTO trees (tree_id, version, root_hash, payload_json, updated_at) "
                    "VALUES (?, ?, ?, ?, ?)",
                    (device_id, tree.version, tree.root_hash, payload, datetime.now(UTC).isoformat()),
                )
                cursor.execute("COMMIT")
            except VersionConflictError:
                raise
            except Exception:
                self._conn.rollback()
                raise

    # -- extras ----------------------------------------------------------------

    def tree_ids(self) -> list[str]:
        with self._lock:
            rows = self._conn.execute("SELECT tree_id FROM trees ORDER BY tree_id").fetchall()
        return [r[0] for r in rows]

    def stored_version(self, device_id: str) -> int | None:
        with self._lock:
            row = self._conn.execute(
                "SELECT version FROM trees WHERE tree_id = ?", (device_id,)
            ).fetchone()
        return row[0] if row is not None else None
