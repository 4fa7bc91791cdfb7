"""Authoritative tree service implementations."""

from treesync.remote.service import LocalTreeService

__all__ = ["LocalTreeService"]
