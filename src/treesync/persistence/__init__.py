"""Tree snapshot persistence backends."""

from treesync.persistence.memory import MemoryTreeStore
from treesync.persistence.sqlite_store import SQLiteTreeStore

__all__ = ["MemoryTreeStore", "SQLiteTreeStore"]
