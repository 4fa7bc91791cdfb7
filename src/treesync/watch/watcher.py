"""Watchdog-backed watch feed with a trailing debounce window."""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Iterator
from pathlib import Path

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from treesync.interfaces.watch import EventKind, WatchEvent
from treesync.workspace import LocalWorkspace

logger = logging.getLogger(__name__)

_KINDS = {
    "created": EventKind.created,
    "modified": EventKind.modified,
    "closed": EventKind.modified,
    "deleted": EventKind.deleted,
}


class _DebouncedHandler(FileSystemEventHandler):
    """Buffers raw filesystem events per path; the latest kind wins."""

    def __init__(
        self,
        workspace: LocalWorkspace,
        pending: dict[str, tuple[EventKind, float]],
        lock: threading.Lock,
    ) -> None:
        super().__init__()
        self._workspace = workspace
        self._pending = pending
        self._lock = lock

    def _record(self, absolute: str | bytes, kind: EventKind) -> None:
        if isinstance(absolute, bytes):
            absolute = absolute.decode()
        try:
            path = self._workspace.relative(absolute)
        except ValueError:
            return
        if self._workspace.is_ignored(path):
            return
        with self._lock:
            self._pending[path] = (kind, time.monotonic())

    def on_any_event(self, event: FileSystemEvent) -> None:
        if event.event_type == "moved":
            self._record(event.src_path, EventKind.deleted)
            if event.is_directory:
                dest = event.dest_path
                for child in Path(dest.decode() if isinstance(dest, bytes) else dest).rglob("*"):
                    if child.is_file():
                        self._record(str(child), EventKind.created)
            else:
                self._record(event.dest_path, EventKind.created)
            return

        kind = _KINDS.get(event.event_type)
        if kind is None:
            return
        # Directory deletes matter: the indexer drops everything under them
        if event.is_directory and kind is not EventKind.deleted:
            return
        self._record(event.src_path, kind)


class WorkspaceWatcher:
    """Watches a workspace and yields debounced ``WatchEvent``s.

    An event is released once its path has been quiet for
    ``debounce_seconds``, so editor save patterns (temp file + rename,
    several writes) collapse into one event. The watcher can be stopped and
    started again; ``events()`` is iterable once per start.
    """

    def __init__(
        self,
        workspace: LocalWorkspace,
        debounce_seconds: float = 1.0,
        poll_interval: float = 0.1,
    ) -> None:
        self._workspace = workspace
        self._debounce = debounce_seconds
        self._poll = poll_interval
        self._lock = threading.Lock()
        self._pending: dict[str, tuple[EventKind, float]] = {}
        self._stopped = threading.Event()
        self._stopped.set()
        self._observer: Observer | None = None
        self._handler = _DebouncedHandler(workspace, self._pending, self._lock)

    @property
    def running(self) -> bool:
        return not self._stopped.is_set()

    def start(self) -> None:
        """Begin watching the workspace recursively."""
        if self._observer is not None:
            return
        self._stopped.clear()
        self._observer = Observer()
        self._observer.schedule(self._handler, str(self._workspace.root), recursive=True)
        self._observer.start()
        logger.info("Watching %s for changes", self._workspace.root)

    def stop(self) -> None:
        """Stop watching; a blocked ``events()`` drains what is buffered and ends."""
        if self._observer is None:
            return
        self._observer.stop()
        self._observer.join(timeout=5)
        self._observer = None
        self._stopped.set()
        logger.info("Stopped watching %s", self._workspace.root)

    def _drain(self, *, everything: bool = False) -> list[WatchEvent]:
        cutoff = time.monotonic() - self._debounce
        with self._lock:
            ready = [p for p, (_, seen) in self._pending.items() if everything or seen <= cutoff]
            released = [(p, self._pending.pop(p)[0]) for p in sorted(ready)]
        return [WatchEvent(path=p, kind=kind) for p, kind in released]

    def events(self) -> Iterator[WatchEvent]:
        """Yield debounced events until ``stop()`` is called."""
        while not self._stopped.wait(self._poll):
            yield from self._drain()
        yield from self._drain(everything=True)
