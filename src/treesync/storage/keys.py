"""Permanent object keys and short-lived access descriptors."""

from __future__ import annotations

import re
from collections.abc import Callable
from datetime import UTC, datetime, timedelta

from pydantic import BaseModel, ConfigDict

from treesync.interfaces.object_store import ObjectStore
from treesync.merkle.tree import normalize_path

_HEX64_RE = re.compile(r"[a-f0-9]{64}")


class AccessDescriptor(BaseModel):
    """Time-limited read access to one stored object. Never persisted."""

    model_config = ConfigDict(frozen=True)

    key: str
    url: str
    expires_at: datetime

    def is_expired(self, now: datetime | None = None) -> bool:
        return (now or datetime.now(UTC)) >= self.expires_at


class ObjectKeyResolver:
    """Maps content hashes to permanent keys and keys to access descriptors.

    Keys depend on the content hash only, so identical content uploaded from
    any path or device lands on one object.
    """

    def __init__(
        self,
        store: ObjectStore,
        prefix: str = "objects",
        clock: Callable[[], datetime] = lambda: datetime.now(UTC),
    ) -> None:
        self._store = store
        self._prefix = prefix.strip("/")
        self._clock = clock

    def permanent_key_for(self, content_hash: str, path: str) -> str:
        if not _HEX64_RE.fullmatch(content_hash):
            raise ValueError(f"content_hash must be 64-char hex, got {content_hash!r}")
        normalize_path(path)
        fanout = f"{content_hash[:2]}/{content_hash[2:4]}/{content_hash}"
        return f"{self._prefix}/{fanout}" if self._prefix else fanout

    async def access_descriptor_for(self, key: str, ttl: int) -> AccessDescriptor:
        """Generate a fresh descriptor; raises NotFoundError for a collected key."""
        if ttl <= 0:
            raise ValueError(f"ttl must be positive, got {ttl}")
        issued = self._clock()
        url = await self._store.presign(key, ttl)
        return AccessDescriptor(key=key, url=url, expires_at=issued + timedelta(seconds=ttl))
