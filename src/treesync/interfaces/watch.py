"""File-system watch feed models."""

from __future__ import annotations

from enum import Enum

from pydantic import BaseModel, ConfigDict, field_validator

from treesync.merkle.tree import normalize_path


class EventKind(str, Enum):
    """Kinds of change reported by a watch feed."""

    created = "created"
    modified = "modified"
    deleted = "deleted"


class WatchEvent(BaseModel):
    """One change observed at a workspace-relative path."""

    model_config = ConfigDict(frozen=True)

    path: str
    kind: EventKind

    @field_validator("path")
    @classmethod
    def validate_path(cls, v: str) -> str:
        return normalize_path(v)
