"""Object storage: permanent keys, access descriptors and a local store."""

from treesync.storage.gc import collect_garbage
from treesync.storage.keys import AccessDescriptor, ObjectKeyResolver
from treesync.storage.local import LocalObjectStore

__all__ = [
    "AccessDescriptor",
    "LocalObjectStore",
    "ObjectKeyResolver",
    "collect_garbage",
]
