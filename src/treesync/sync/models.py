from datetime import UTC, datetime
from enum import Enum
from typing import Literal

from pydantic import BaseModel, Field


class SyncState(str, Enum):
    idle = "idle"
    diffing = "diffing"
    applying = "applying"
    settling = "settling"
    stopped = "stopped"


class FileFailure(BaseModel):
    path: str
    operation: Literal["upload", "download", "delete", "move"]
    error: str
    attempts: int = 0


class ConflictRecord(BaseModel):
    """How a path changed on both sides since the last agreed state was settled."""

    path: str
    winner: Literal["local", "remote"]
    local_hash: str | None = None
    remote_hash: str | None = None
    conflict_copy: str | None = None


class SyncReport(BaseModel):
    device_id: str
    cycle: int
    started_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    finished_at: datetime | None = None
    skipped: bool = False
    cancelled: bool = False
    downloaded: list[str] = []
    deleted_local: list[str] = []
    uploaded: list[str] = []
    reused: list[str] = []
    deleted_remote: list[str] = []
    deferred: list[str] = []
    lost_updates: list[str] = []
    conflicts: list[ConflictRecord] = []
    failed: list[FileFailure] = []
    version_retries: int = 0
    remote_version: int | None = None
    root_hash: str | None = None
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None and not self.failed

    @property
    def duration(self) -> float:
        if self.finished_at is None:
            return 0.0
        return (self.finished_at - self.started_at).total_seconds()
