import socket
from typing import Literal

from pydantic import BaseModel, Field, field_validator


class WorkspaceConfig(BaseModel):
    root: str = "."
    ignore_patterns: list[str] = Field(default_factory=lambda: [
        ".git", "node_modules", "__pycache__", ".venv", ".treesync", "*.tmp", "*~", "*.log",
    ])


class RemoteConfig(BaseModel):
    root: str = "~/.treesync/remote"
    tree_id: str = "authoritative"
    key_prefix: str = "objects"
    presign_secret_env: str = "TREESYNC_PRESIGN_SECRET"
    access_ttl: int = Field(default=3600, gt=0)


class RetryConfig(BaseModel):
    max_attempts: int = Field(default=5, gt=0)
    base_delay: float = Field(default=0.5, ge=0)
    max_delay: float = Field(default=30.0, ge=0)


class SyncSettings(BaseModel):
    interval: float = Field(default=30.0, gt=0)
    max_concurrency: int = Field(default=4, gt=0)
    max_version_retries: int = Field(default=3, ge=0)
    debounce_seconds: float = Field(default=1.0, ge=0)
    retry: RetryConfig = Field(default_factory=RetryConfig)


class StateConfig(BaseModel):
    directory: str = ".treesync"
    database: str = "state.db"


class TreeSyncConfig(BaseModel):
    device_id: str = Field(default_factory=socket.gethostname)
    workspace: WorkspaceConfig = Field(default_factory=WorkspaceConfig)
    remote: RemoteConfig = Field(default_factory=RemoteConfig)
    sync: SyncSettings = Field(default_factory=SyncSettings)
    state: StateConfig = Field(default_factory=StateConfig)
    log_level: Literal["debug", "info", "warn", "error"] = "info"
    log_format: Literal["text", "json"] = "text"

    @field_validator("device_id")
    @classmethod
    def validate_device_id(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("device_id cannot be empty or whitespace")
        if ":" in v:
            raise ValueError("device_id cannot contain ':'")
        return v.strip()
