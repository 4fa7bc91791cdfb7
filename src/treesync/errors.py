"""Exception taxonomy shared by the tree, tracker and coordinator."""

from __future__ import annotations


class TreeSyncError(Exception):
    """Base class for all treesync errors."""


class NotFoundError(TreeSyncError, KeyError):
    """An entry, tree or stored object is absent."""

    def __init__(self, kind: str, key: str) -> None:
        self.kind = kind
        self.key = key
        super().__init__(f"{kind} not found: {key}")

    def __str__(self) -> str:
        # KeyError.__str__ would repr() the message
        return self.args[0]


class VersionConflictError(TreeSyncError):
    """Optimistic-concurrency loss: the caller's version is stale."""

    def __init__(self, tree_id: str, expected: int | None, actual: int | None) -> None:
        self.tree_id = tree_id
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"version conflict on {tree_id}: expected {expected}, found {actual}"
        )


class CorruptTreeError(TreeSyncError):
    """A tree snapshot failed verification and must be rebuilt."""


class TransferError(TreeSyncError):
    """An object transfer failed for one file."""

    operation = "transfer"

    def __init__(
        self,
        path: str,
        content_hash: str,
        reason: str,
        *,
        attempts: int = 0,
        retryable: bool = False,
    ) -> None:
        self.path = path
        self.content_hash = content_hash
        self.reason = reason
        self.attempts = attempts
        self.retryable = retryable
        super().__init__(f"{self.operation} failed for {path}: {reason}")


class UploadFailedError(TransferError):
    operation = "upload"


class DownloadFailedError(TransferError):
    operation = "download"


class LostUpdateError(TreeSyncError):
    """An upload was confirmed for a path that has since been deleted locally."""

    def __init__(self, path: str) -> None:
        self.path = path
        super().__init__(f"upload confirmed for deleted path: {path}")
