"""Reconciliation cycle between one device tree and the authoritative tree."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterable
from dataclasses import replace
from datetime import UTC, datetime
from pathlib import PurePosixPath

from treesync.config.models import SyncSettings
from treesync.errors import (
    CorruptTreeError,
    DownloadFailedError,
    LostUpdateError,
    NotFoundError,
    TreeSyncError,
    UploadFailedError,
    VersionConflictError,
)
from treesync.interfaces import ObjectStore, RemoteTreeService, TreePersistence
from treesync.merkle.differ import apply_diff, diff
from treesync.merkle.models import DiffResult, FileEntry, ModifiedEntry
from treesync.merkle.tree import Tree, compute_hash
from treesync.retry import retry_async
from treesync.storage.keys import ObjectKeyResolver
from treesync.sync.local import LocalIndexer, LocalTree
from treesync.sync.models import ConflictRecord, FileFailure, SyncReport, SyncState
from treesync.uploads.tracker import PendingUploadTracker
from treesync.workspace import LocalWorkspace

logger = logging.getLogger(__name__)


class _Stale(Exception):
    """The local entry moved on after the cycle observed it."""


class _Abandoned(Exception):
    """A queued transfer was dropped because the coordinator is stopping."""


def conflict_copy_path(path: str, content_hash: str) -> str:
    """``dir/name (conflict 1a2b3c4d).ext``: where the losing version of *path* is kept."""
    p = PurePosixPath(path)
    return str(p.with_name(f"{p.stem} (conflict {content_hash[:8]}){p.suffix}"))


def remote_wins(local: FileEntry, remote: FileEntry) -> bool:
    """Last writer wins by ``modified_at``; a tie goes to the larger hash."""
    if local.modified_at != remote.modified_at:
        return remote.modified_at > local.modified_at
    return remote.content_hash > local.content_hash


def _same_content(a: FileEntry | None, b: FileEntry | None) -> bool:
    if a is None or b is None:
        return a is None and b is None
    return a.content_hash == b.content_hash


class SyncCoordinator:
    """Runs the Idle -> Diffing -> Applying -> Settling -> Idle cycle for one device.

    The coordinator keeps a *base* snapshot: the last tree both sides agreed
    on. Each cycle diffs the base against the authoritative tree (inbound)
    and against the local tree (outbound), applies inbound changes to disk,
    resolves paths changed on both sides, uploads new local content and
    pushes the local changes with the remote version it diffed against.

    Per-file failures are recorded in the cycle's SyncReport and retried on
    a later cycle; a failing cycle never raises out of ``sync_once``.
    """

    def __init__(
        self,
        device_id: str,
        workspace: LocalWorkspace,
        remote: RemoteTreeService,
        store: ObjectStore,
        *,
        resolver: ObjectKeyResolver | None = None,
        tracker: PendingUploadTracker | None = None,
        persistence: TreePersistence | None = None,
        settings: SyncSettings | None = None,
    ) -> None:
        self.device_id = device_id
        self.workspace = workspace
        self.remote = remote
        self.store = store
        self.settings = settings or SyncSettings()
        retry = self.settings.retry
        self.resolver = resolver or ObjectKeyResolver(store)
        self.tracker = tracker or PendingUploadTracker(
            max_attempts=retry.max_attempts,
            base_delay=retry.base_delay,
            max_delay=retry.max_delay,
        )
        self.persistence = persistence

        self.local = LocalTree(Tree.empty(device_id))
        self.indexer = LocalIndexer(self.local, workspace, self.tracker, on_change=self.request_sync)
        self.base = Tree.empty(self.base_id)
        self.state = SyncState.idle
        self.last_report: SyncReport | None = None

        self._saved_versions: dict[str, int | None] = {}
        self._cycles = 0
        self._cycle_lock = asyncio.Lock()
        self._wake = asyncio.Event()
        self._loop: asyncio.AbstractEventLoop | None = None
        self._stopping = False
        self._slots = asyncio.Semaphore(self.settings.max_concurrency)
        self._path_locks: dict[str, asyncio.Lock] = {}

    @property
    def base_id(self) -> str:
        return f"{self.device_id}:base"

    @property
    def stopping(self) -> bool:
        return self._stopping

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    def restore(self) -> Tree:
        """Load persisted snapshots, then rescan the workspace.

        The rescan picks up edits made while nothing was watching. A missing
        or corrupt local snapshot is rebuilt from the scan alone; a corrupt
        base is dropped, so the next cycle reconciles every path from
        scratch through conflict resolution.
        """
        if self.persistence is not None:
            for tree_id in (self.device_id, self.base_id):
                self._saved_versions[tree_id] = self.persistence.stored_version(tree_id)
            try:
                self.local.replace(self.persistence.load_tree(self.device_id))
            except NotFoundError:
                logger.info("No saved tree for %s; indexing %s", self.device_id, self.workspace.root)
            except CorruptTreeError as e:
                logger.error("Saved tree for %s is corrupt, rebuilding from disk: %s", self.device_id, e)
            try:
                self.base = self.persistence.load_tree(self.base_id).with_device(self.base_id)
            except NotFoundError:
                self.base = Tree.empty(self.base_id)
            except CorruptTreeError as e:
                logger.error("Saved base for %s is corrupt, reconciling from scratch: %s", self.device_id, e)
                self.base = Tree.empty(self.base_id)

        for entry in self.base.entries.values():
            if entry.remote_key is not None:
                self.tracker.register_stored(entry.content_hash, entry.remote_key)
        return self.indexer.rescan()

    def save_state(self) -> None:
        """Persist the local tree and the base snapshot (compare-and-swap on both)."""
        if self.persistence is None:
            return
        for tree_id, tree in ((self.device_id, self.local.snapshot()), (self.base_id, self.base)):
            self.persistence.save_tree(tree_id, tree, expected_version=self._saved_versions.get(tree_id))
            self._saved_versions[tree_id] = tree.version

    def _rebase(self, remote: Tree, base: Tree, deferred: Iterable[str]) -> Tree:
        """*remote* with every deferred path rolled back to its *base* entry."""
        entries = dict(remote.entries)
        for path in deferred:
            old = base.get(path)
            if old is None:
                entries.pop(path, None)
            else:
                entries[path] = old
        return Tree(self.base_id, entries, remote.version)

    # ------------------------------------------------------------------
    # Scheduling
    # ------------------------------------------------------------------

    def _signal(self) -> None:
        loop = self._loop
        if loop is not None and not loop.is_closed():
            try:
                running = asyncio.get_running_loop()
            except RuntimeError:
                running = None
            if running is not loop:
                loop.call_soon_threadsafe(self._wake.set)
                return
        self._wake.set()

    def request_sync(self) -> None:
        """Ask for a cycle soon. Safe to call from watcher threads.

        Requests arriving while a cycle runs collapse into a single rerun.
        """
        self._signal()

    def stop(self) -> None:
        """Stop after the current step; queued transfers are abandoned."""
        self._stopping = True
        if not self._cycle_lock.locked():
            self.state = SyncState.stopped
        self._signal()

    async def shutdown(self) -> None:
        """Stop and wait for an in-flight cycle to finish."""
        self.stop()
        async with self._cycle_lock:
            self.state = SyncState.stopped

    async def run_forever(self) -> None:
        """Cycle on every request and at least every ``interval`` seconds."""
        self._loop = asyncio.get_running_loop()
        logger.info("Syncing %s as %s every %.0fs", self.workspace.root, self.device_id, self.settings.interval)
        self._wake.set()
        while not self._stopping:
            try:
                await asyncio.wait_for(self._wake.wait(), timeout=self.settings.interval)
            except asyncio.TimeoutError:
                pass
            if self._stopping:
                break
            self._wake.clear()
            await self.sync_once()
        self.state = SyncState.stopped

    # ------------------------------------------------------------------
    # Cycle
    # ------------------------------------------------------------------

    async def sync_once(self) -> SyncReport:
        """Run one reconciliation cycle and report what happened."""
        async with self._cycle_lock:
            self._cycles += 1
            report = SyncReport(device_id=self.device_id, cycle=self._cycles)
            if not self._stopping:
                try:
                    await self._run_cycle(report)
                except Exception as e:
                    report.error = f"{type(e).__name__}: {e}"
                    logger.error(
                        "Sync cycle %d failed: %s", report.cycle, e,
                        exc_info=not isinstance(e, (TreeSyncError, OSError)),
                    )
                try:
                    self.save_state()
                except (TreeSyncError, OSError) as e:
                    logger.error("Could not persist sync state for %s: %s", self.device_id, e)
                    report.error = report.error or f"{type(e).__name__}: {e}"

            self._path_locks.clear()
            report.cancelled = self._stopping
            report.finished_at = datetime.now(UTC)
            self.state = SyncState.stopped if self._stopping else SyncState.idle
            self.last_report = report
            self._log_report(report)
            return report

    async def _run_cycle(self, report: SyncReport) -> None:
        attempts = self.settings.max_version_retries + 1
        last_conflict: VersionConflictError | None = None
        for attempt in range(1, attempts + 1):
            if self._stopping:
                return
            self.state = SyncState.diffing
            remote = await self.remote.get_remote_tree(self.device_id)
            local = self.local.snapshot()
            base = self.base
            report.remote_version = remote.version

            if remote.root_hash == base.root_hash == local.root_hash:
                report.skipped = True
                report.root_hash = local.root_hash
                return

            for entry in remote.entries.values():
                if entry.remote_key is not None:
                    self.tracker.register_stored(entry.content_hash, entry.remote_key)
            inbound = diff(base, remote)
            outbound = diff(base, local)
            logger.debug(
                "Cycle %d diff: %d inbound, %d outbound (remote v%d)",
                report.cycle, len(inbound), len(outbound), remote.version,
            )

            if self._stopping:
                return
            self.state = SyncState.applying
            deferred = await self._apply_inbound(remote, local, inbound, outbound, report)
            # Applied downloads are agreed state even if the push below loses
            self.base = self._rebase(remote, base, deferred)
            if deferred:
                report.deferred.extend(p for p in sorted(deferred) if p not in report.deferred)
            if self._stopping:
                return

            self.state = SyncState.settling
            push = await self._collect_outbound(self.base, deferred, report)
            if push.has_changes:
                try:
                    pushed = await self.remote.push_diff(self.device_id, push, expected_version=remote.version)
                except VersionConflictError as e:
                    last_conflict = e
                    report.version_retries += 1
                    logger.warning("Push rejected (%s); re-diffing, attempt %d/%d", e, attempt, attempts)
                    continue
                report.deleted_remote.extend(push.removed)
                report.remote_version = pushed.version
                self.base = self._rebase(pushed, base, deferred)
            report.root_hash = self.local.snapshot().root_hash
            return

        raise TreeSyncError(f"push rejected {attempts} times, retrying next cycle") from last_conflict

    def _log_report(self, report: SyncReport) -> None:
        if report.skipped:
            logger.debug("Cycle %d: in sync at %s", report.cycle, (report.root_hash or "")[:12])
            return
        logger.info(
            "Cycle %d: %d downloaded, %d uploaded (%d reused), %d deleted locally, "
            "%d deleted remotely, %d conflicts, %d failed%s",
            report.cycle,
            len(report.downloaded),
            len(report.uploaded),
            len(report.reused),
            len(report.deleted_local),
            len(report.deleted_remote),
            len(report.conflicts),
            len(report.failed),
            " (cancelled)" if report.cancelled else "",
        )

    # ------------------------------------------------------------------
    # Applying
    # ------------------------------------------------------------------

    def _path_lock(self, path: str) -> asyncio.Lock:
        return self._path_locks.setdefault(path, asyncio.Lock())

    @staticmethod
    def _checked(tree: Tree, path: str, expected: FileEntry | None) -> Tree:
        if not _same_content(tree.get(path), expected):
            raise _Stale(path)
        return tree

    def _disk_matches(self, path: str, expected: FileEntry | None) -> bool:
        info = self.workspace.stat(path)
        if expected is None:
            return info is None
        return info is not None and info.content_hash == expected.content_hash

    async def _apply_inbound(
        self,
        remote: Tree,
        local: Tree,
        inbound: DiffResult,
        outbound: DiffResult,
        report: SyncReport,
    ) -> set[str]:
        """Bring remote changes to disk; returns the paths left unsettled."""
        local_changed = outbound.paths
        paths = sorted(inbound.paths)
        jobs = []
        for path in paths:
            ours, theirs = local.get(path), remote.get(path)
            if path in local_changed:
                jobs.append(self._resolve_conflict(path, ours, theirs, report))
            elif theirs is None:
                jobs.append(self._delete_local(path, ours, report))
            else:
                jobs.append(self._download(path, theirs, ours, report))

        results = await asyncio.gather(*jobs, return_exceptions=True)
        deferred = set()
        for path, result in zip(paths, results):
            if isinstance(result, BaseException):
                logger.error("Applying %s failed: %s", path, result, exc_info=result)
                deferred.add(path)
            elif not result:
                deferred.add(path)
        return deferred

    async def _fetch(self, entry: FileEntry) -> bytes:
        if entry.remote_key is None:
            raise DownloadFailedError(entry.path, entry.content_hash, "entry has no remote key")

        async def attempt() -> bytes:
            async with self._slots:
                if self._stopping:
                    raise _Abandoned(entry.path)
                data = await self.store.get(entry.remote_key)
            if compute_hash(data) != entry.content_hash:
                raise DownloadFailedError(entry.path, entry.content_hash, "checksum mismatch", retryable=True)
            return data

        retry = self.settings.retry
        try:
            return await retry_async(
                attempt,
                max_attempts=retry.max_attempts,
                base_delay=retry.base_delay,
                max_delay=retry.max_delay,
                description=f"download {entry.path}",
            )
        except (_Abandoned, DownloadFailedError):
            raise
        except Exception as e:
            raise DownloadFailedError(entry.path, entry.content_hash, str(e)) from e

    async def _download(
        self,
        path: str,
        entry: FileEntry,
        expected: FileEntry | None,
        report: SyncReport,
        *,
        target: str | None = None,
    ) -> bool:
        """Write *entry*'s content at *target* and commit it to the local tree.

        *expected* is the local entry at *target* the cycle observed; if the
        file or the tree moved on since, the path is left for the next cycle.
        """
        target = target or path
        async with self._path_lock(target):
            if self._stopping:
                return False
            try:
                data = await self._fetch(entry)
                if not await asyncio.to_thread(self._disk_matches, target, expected):
                    logger.info("%s changed locally during sync; deferring", target)
                    return False
                info = await asyncio.to_thread(self.workspace.write_atomic, target, data, entry.modified_at)
                committed = replace(entry, path=target, local_ref=info.local_ref)
                self.local.mutate(lambda t: self._checked(t, target, expected).put_entry(committed))
            except _Abandoned:
                return False
            except _Stale:
                logger.info("%s was re-indexed during download; deferring", target)
                return False
            except DownloadFailedError as e:
                logger.warning("Download of %s failed: %s", target, e.reason)
                report.failed.append(FileFailure(path=target, operation="download", error=e.reason))
                return False
            except (OSError, ValueError) as e:
                logger.warning("Writing %s failed: %s", target, e)
                report.failed.append(FileFailure(path=target, operation="download", error=str(e)))
                return False

        self.tracker.register_stored(entry.content_hash, entry.remote_key)
        self.tracker.discard(target)
        report.downloaded.append(target)
        return True

    async def _delete_local(self, path: str, expected: FileEntry | None, report: SyncReport) -> bool:
        async with self._path_lock(path):
            if self._stopping:
                return False
            try:
                if not await asyncio.to_thread(self._disk_matches, path, expected):
                    logger.info("%s changed locally during sync; keeping it", path)
                    return False
                await asyncio.to_thread(self.workspace.delete, path)
                self.local.mutate(lambda t: self._checked(t, path, expected).remove(path))
            except _Stale:
                return False
            except OSError as e:
                logger.warning("Deleting %s failed: %s", path, e)
                report.failed.append(FileFailure(path=path, operation="delete", error=str(e)))
                return False

        self.tracker.discard(path)
        report.deleted_local.append(path)
        return True

    async def _preserve_local(self, path: str, copy: str, ours: FileEntry, report: SyncReport) -> bool:
        """Move the losing local version of *path* aside to *copy*."""
        async with self._path_lock(path):
            if self._stopping:
                return False
            try:
                if not await asyncio.to_thread(self._disk_matches, path, ours):
                    return False
                await asyncio.to_thread(self.workspace.move, path, copy)
                preserved = replace(ours, path=copy, local_ref=str(self.workspace.resolve(copy)))
                self.local.mutate(lambda t: self._checked(t, path, ours).remove(path).put_entry(preserved))
            except _Stale:
                # The file already sits at the copy path; the watch feed indexes it
                return False
            except (OSError, ValueError) as e:
                logger.warning("Moving %s aside failed: %s", path, e)
                report.failed.append(FileFailure(path=path, operation="move", error=str(e)))
                return False
        if ours.remote_key is None:
            self.tracker.discard(path)
            self.tracker.mark_pending(copy, ours.content_hash)
        return True

    async def _resolve_conflict(
        self,
        path: str,
        ours: FileEntry | None,
        theirs: FileEntry | None,
        report: SyncReport,
    ) -> bool:
        """Settle a path both sides changed since the base."""
        if ours is None and theirs is None:
            return True

        if ours is not None and theirs is not None and ours.content_hash == theirs.content_hash:
            if ours.remote_key != theirs.remote_key:
                try:
                    self.local.mutate(
                        lambda t: self._checked(t, path, ours).set_remote_key(path, theirs.remote_key)
                    )
                except _Stale:
                    return False
            self.tracker.register_stored(theirs.content_hash, theirs.remote_key)
            self.tracker.discard(path)
            return True

        record = ConflictRecord(
            path=path,
            winner="remote",
            local_hash=ours.content_hash if ours else None,
            remote_hash=theirs.content_hash if theirs else None,
        )
        if ours is None:
            logger.info("Conflict on %s: deleted locally, changed remotely; keeping remote", path)
            report.conflicts.append(record)
            return await self._download(path, theirs, None, report)

        if theirs is None:
            logger.info("Conflict on %s: changed locally, deleted remotely; keeping local", path)
            report.conflicts.append(record.model_copy(update={"winner": "local"}))
            return True

        if remote_wins(ours, theirs):
            copy = conflict_copy_path(path, ours.content_hash)
            logger.info("Conflict on %s: remote is newer; local version kept as %s", path, copy)
            report.conflicts.append(record.model_copy(update={"conflict_copy": copy}))
            if not await self._preserve_local(path, copy, ours, report):
                return False
            return await self._download(path, theirs, None, report)

        copy = conflict_copy_path(path, theirs.content_hash)
        logger.info("Conflict on %s: local is newer; remote version kept as %s", path, copy)
        report.conflicts.append(record.model_copy(update={"winner": "local", "conflict_copy": copy}))
        existing = self.local.snapshot().get(copy)
        return await self._download(path, theirs, existing, report, target=copy)

    # ------------------------------------------------------------------
    # Settling
    # ------------------------------------------------------------------

    async def _collect_outbound(self, base: Tree, deferred: set[str], report: SyncReport) -> DiffResult:
        """Upload new local content and build the diff to push against *base*."""
        local = self.local.snapshot()
        outbound = diff(base, local)
        changed = [e for e in outbound.changed_entries() if e.path not in deferred]
        removed = tuple(
            replace(e, local_ref=None) for e in outbound.removed_entries if e.path not in deferred
        )

        known = {e.remote_key for e in base.entries.values() if e.remote_key}
        stored = await asyncio.gather(*(self._upload(e, report, known) for e in changed))
        added: list[FileEntry] = []
        modified: list[ModifiedEntry] = []
        for entry in stored:
            if entry is None:
                continue
            entry = replace(entry, local_ref=None)
            previous = base.get(entry.path)
            if previous is None:
                added.append(entry)
            else:
                modified.append(
                    ModifiedEntry(
                        path=entry.path,
                        old_hash=previous.content_hash,
                        new_hash=entry.content_hash,
                        entry=entry,
                    )
                )

        push = DiffResult(added=tuple(added), modified=tuple(modified), removed_entries=removed)
        return replace(
            push,
            old_root_hash=base.root_hash,
            new_root_hash=apply_diff(base, push).root_hash,
        )

    @staticmethod
    def _confirm(tree: Tree, entry: FileEntry, key: str) -> Tree:
        current = tree.get(entry.path)
        if current is None:
            raise LostUpdateError(entry.path)
        if current.content_hash != entry.content_hash:
            raise _Stale(entry.path)
        return tree.set_remote_key(entry.path, key)

    async def _upload(self, entry: FileEntry, report: SyncReport, known: set[str]) -> FileEntry | None:
        """Store *entry*'s content unless the store already holds its key.

        A key no agreed entry references is only trusted after checking the
        store: the object may have been swept before the push carrying it
        was accepted.
        """
        if entry.remote_key is not None:
            if entry.remote_key in known or await self.store.exists(entry.remote_key):
                return entry
            logger.warning("Object %s for %s is missing; uploading again", entry.remote_key, entry.path)
            self.tracker.forget(entry.content_hash)
            entry = replace(entry, remote_key=None)
        if self._stopping:
            return None
        try:
            outcome = await self.tracker.ensure_uploaded(
                entry.path, entry.content_hash, lambda: self._put(entry), exists=self.store.exists
            )
        except UploadFailedError as e:
            if not self._stopping:
                report.failed.append(
                    FileFailure(path=entry.path, operation="upload", error=e.reason, attempts=e.attempts)
                )
            return None

        try:
            self.local.mutate(lambda t: self._confirm(t, entry, outcome.remote_key))
        except LostUpdateError as e:
            logger.info("%s", e)
            report.lost_updates.append(entry.path)
            return None
        except _Stale:
            logger.debug("%s changed again before its upload was confirmed", entry.path)
            return None

        (report.reused if outcome.reused else report.uploaded).append(entry.path)
        return replace(entry, remote_key=outcome.remote_key)

    async def _put(self, entry: FileEntry) -> str:
        """One physical upload attempt; returns the permanent key."""
        async with self._slots:
            if self._stopping:
                raise UploadFailedError(entry.path, entry.content_hash, "sync stopped")
            try:
                data = await asyncio.to_thread(self.workspace.read_bytes, entry.path)
            except FileNotFoundError as e:
                raise UploadFailedError(entry.path, entry.content_hash, "file no longer exists") from e
            if compute_hash(data) != entry.content_hash:
                raise UploadFailedError(entry.path, entry.content_hash, "content changed since it was indexed")
            key = self.resolver.permanent_key_for(entry.content_hash, entry.path)
            await self.store.put(key, data)
        return key
