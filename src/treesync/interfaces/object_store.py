"""Object store interface."""

from __future__ import annotations

from typing import Protocol, runtime_checkable


@runtime_checkable
class ObjectStore(Protocol):
    """Blob storage addressed by permanent keys.

    ``get`` and ``presign`` raise NotFoundError for a missing key; ``delete``
    of a missing key succeeds and ``exists`` reports it as False.
    """

    async def put(self, key: str, data: bytes) -> None: ...

    async def get(self, key: str) -> bytes: ...

    async def delete(self, key: str) -> None: ...

    async def exists(self, key: str) -> bool: ...

    async def presign(self, key: str, ttl: int) -> str: ...
