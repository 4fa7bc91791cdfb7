"""Boundary contracts between the reconciliation core and its collaborators."""

from treesync.interfaces.object_store import ObjectStore
from treesync.interfaces.persistence import TreePersistence
from treesync.interfaces.remote import RemoteTreeService
from treesync.interfaces.watch import EventKind, WatchEvent

__all__ = [
    "EventKind",
    "ObjectStore",
    "RemoteTreeService",
    "TreePersistence",
    "WatchEvent",
]
