"""Tracks files whose content is committed locally but not yet stored remotely."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Iterable
from datetime import UTC, datetime

from pydantic import BaseModel, Field

from treesync.errors import UploadFailedError
from treesync.merkle.models import FileEntry
from treesync.retry import retry_async

logger = logging.getLogger(__name__)


class PendingUpload(BaseModel):
    """An entry waiting for its content to be confirmed in the object store.

    Mutable: attempts and the last error change while uploads are retried.
    """

    path: str
    content_hash: str
    attempts: int = Field(default=0, ge=0)
    last_error: str | None = None
    queued_at: datetime = Field(default_factory=lambda: datetime.now(UTC))


class UploadOutcome(BaseModel):
    path: str
    content_hash: str
    remote_key: str
    reused: bool = False


class PendingUploadTracker:
    """Pending-upload bookkeeping with content-addressed reuse.

    Storage keys are permanent and keyed by content, so once any entry's
    content hash is known to be stored, every other path with that hash
    resolves to the same key without a second physical upload.
    """

    def __init__(
        self,
        max_attempts: int = 5,
        base_delay: float = 0.5,
        max_delay: float = 30.0,
        sleep: Callable[[float], Awaitable[object]] = asyncio.sleep,
    ) -> None:
        if max_attempts < 1:
            raise ValueError(f"max_attempts must be >= 1, got {max_attempts}")
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.max_delay = max_delay
        self._sleep = sleep
        self._pending: dict[str, PendingUpload] = {}
        # content hash -> permanent key confirmed stored
        self._stored: dict[str, str] = {}
        # live only while some upload of that hash is running or waiting
        self._hash_locks: dict[str, asyncio.Lock] = {}
        self._lock_users: dict[str, int] = {}
        self.physical_uploads = 0

    # -- bookkeeping -----------------------------------------------------------

    def mark_pending(self, path: str, content_hash: str) -> PendingUpload:
        """Queue *path*; re-marking with new content resets its attempt count."""
        current = self._pending.get(path)
        if current is not None and current.content_hash == content_hash:
            return current
        pending = PendingUpload(path=path, content_hash=content_hash)
        self._pending[path] = pending
        return pending

    def resolve(self, path: str, remote_key: str) -> None:
        """Mark *path* uploaded and remember its key for content reuse."""
        pending = self._pending.pop(path, None)
        if pending is not None:
            self._stored[pending.content_hash] = remote_key

    def _settle(self, path: str, pending: PendingUpload, key: str) -> None:
        self._stored.setdefault(pending.content_hash, key)
        # The path may have been re-marked with newer content meanwhile
        if self._pending.get(path) is pending:
            del self._pending[path]

    def discard(self, path: str) -> None:
        """Forget a pending path, e.g. after it was deleted locally."""
        self._pending.pop(path, None)

    def is_pending(self, path: str) -> bool:
        return path in self._pending

    def pending_entries(self) -> list[PendingUpload]:
        return [self._pending[p] for p in sorted(self._pending)]

    def register_stored(self, content_hash: str, remote_key: str) -> None:
        self._stored.setdefault(content_hash, remote_key)

    def register_entries(self, entries: Iterable[FileEntry]) -> None:
        """Learn stored keys from entries, and queue the ones without a key."""
        for entry in entries:
            if entry.remote_key is not None:
                self.register_stored(entry.content_hash, entry.remote_key)
            else:
                self.mark_pending(entry.path, entry.content_hash)

    def known_key(self, content_hash: str) -> str | None:
        return self._stored.get(content_hash)

    def forget(self, content_hash: str) -> None:
        """Drop a stored key, e.g. after its object vanished from the store."""
        self._stored.pop(content_hash, None)

    # -- uploading -------------------------------------------------------------

    def _acquire(self, content_hash: str) -> asyncio.Lock:
        lock = self._hash_locks.get(content_hash)
        if lock is None:
            lock = self._hash_locks[content_hash] = asyncio.Lock()
        self._lock_users[content_hash] = self._lock_users.get(content_hash, 0) + 1
        return lock

    def _release(self, content_hash: str) -> None:
        self._lock_users[content_hash] -= 1
        if not self._lock_users[content_hash]:
            del self._lock_users[content_hash]
            del self._hash_locks[content_hash]

    async def ensure_uploaded(
        self,
        path: str,
        content_hash: str,
        upload: Callable[[], Awaitable[str]],
        exists: Callable[[str], Awaitable[bool]] | None = None,
    ) -> UploadOutcome:
        """Make sure *content_hash* is stored, uploading at most once per hash.

        *upload* performs one physical upload attempt and returns the
        permanent key. Failed attempts are retried with exponential backoff;
        after ``max_attempts`` the path stays pending and UploadFailedError
        is raised for the caller to report. When *exists* is given, a known
        key is only reused if the store still holds it.
        """
        pending = self.mark_pending(path, content_hash)
        lock = self._acquire(content_hash)
        try:
            async with lock:
                return await self._ensure_locked(path, content_hash, pending, upload, exists)
        finally:
            self._release(content_hash)

    async def _ensure_locked(
        self,
        path: str,
        content_hash: str,
        pending: PendingUpload,
        upload: Callable[[], Awaitable[str]],
        exists: Callable[[str], Awaitable[bool]] | None,
    ) -> UploadOutcome:
        key = self._stored.get(content_hash)
        if key is not None and exists is not None and not await exists(key):
            logger.warning("Stored object %s for %s is gone; uploading again", key, path)
            self.forget(content_hash)
            key = None
        if key is not None:
            self._settle(path, pending, key)
            logger.debug("Reused stored object %s for %s", key, path)
            return UploadOutcome(path=path, content_hash=content_hash, remote_key=key, reused=True)

        def _record(attempt: int, exc: BaseException) -> None:
            pending.attempts += 1
            pending.last_error = str(exc)

        async def _attempt() -> str:
            self.physical_uploads += 1
            return await upload()

        try:
            key = await retry_async(
                _attempt,
                max_attempts=self.max_attempts,
                base_delay=self.base_delay,
                max_delay=self.max_delay,
                description=f"upload {path}",
                sleep=self._sleep,
                on_failure=_record,
            )
        except UploadFailedError as e:
            logger.warning("Upload of %s failed after %d attempts: %s", path, pending.attempts, e.reason)
            raise UploadFailedError(
                path, content_hash, e.reason, attempts=pending.attempts
            ) from e
        except Exception as e:
            logger.warning("Upload of %s failed after %d attempts: %s", path, pending.attempts, e)
            raise UploadFailedError(
                path, content_hash, str(e), attempts=pending.attempts
            ) from e

        self._stored[content_hash] = key
        self._settle(path, pending, key)
        return UploadOutcome(path=path, content_hash=content_hash, remote_key=key)
