"""Pending-upload tracking with content-addressed reuse."""

from treesync.uploads.tracker import PendingUpload, PendingUploadTracker, UploadOutcome

__all__ = ["PendingUpload", "PendingUploadTracker", "UploadOutcome"]
