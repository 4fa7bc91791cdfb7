"""ObjectStore implementation backed by a local directory."""

from __future__ import annotations

import asyncio
import hashlib
import hmac
import logging
import os
import secrets
import tempfile
import time
from pathlib import Path
from urllib.parse import parse_qs, urlsplit

from treesync.errors import NotFoundError

logger = logging.getLogger(__name__)


class LocalObjectStore:
    """Stores each object as a file under *root*, named by its key.

    Writes go through a temp file and ``os.replace`` so readers never see a
    partial object. Presigned descriptors are ``file://`` URLs carrying an
    expiry and an HMAC signature.
    """

    def __init__(self, root: str | Path, secret: bytes | None = None) -> None:
        self.root = Path(root).expanduser().resolve()
        self.root.mkdir(parents=True, exist_ok=True)
        if secret is None:
            logger.warning("No presign secret configured; descriptors are only valid in-process")
            secret = secrets.token_bytes(32)
        self._secret = secret

    # -- helpers ---------------------------------------------------------------

    def _path(self, key: str) -> Path:
        target = (self.root / key).resolve()
        if not target.is_relative_to(self.root) or target == self.root:
            raise ValueError(f"object key escapes the store root: {key!r}")
        return target

    def _sign(self, key: str, expires: int) -> str:
        return hmac.new(self._secret, f"{key}\n{expires}".encode(), hashlib.sha256).hexdigest()

    def _write(self, key: str, data: bytes) -> None:
        target = self._path(key)
        target.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(dir=target.parent, prefix=".upload-")
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(data)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp, target)
        except BaseException:
            Path(tmp).unlink(missing_ok=True)
            raise

    def _read(self, key: str) -> bytes:
        try:
            return self._path(key).read_bytes()
        except FileNotFoundError as e:
            raise NotFoundError("object", key) from e

    # -- ObjectStore protocol --------------------------------------------------

    async def put(self, key: str, data: bytes) -> None:
        await asyncio.to_thread(self._write, key, data)

    async def get(self, key: str) -> bytes:
        return await asyncio.to_thread(self._read, key)

    async def delete(self, key: str) -> None:
        await asyncio.to_thread(self._path(key).unlink, missing_ok=True)

    async def exists(self, key: str) -> bool:
        return await asyncio.to_thread(self._path(key).is_file)

    async def presign(self, key: str, ttl: int) -> str:
        path = self._path(key)
        if not path.is_file():
            raise NotFoundError("object", key)
        expires = int(time.time()) + ttl
        return f"{path.as_uri()}?key={key}&expires={expires}&signature={self._sign(key, expires)}"

    # -- extras ----------------------------------------------------------------

    def verify(self, url: str, now: float | None = None) -> bool:
        """Check a descriptor's signature and expiry."""
        query = parse_qs(urlsplit(url).query)
        try:
            key = query["key"][0]
            expires = int(query["expires"][0])
            signature = query["signature"][0]
        except (KeyError, IndexError, ValueError):
            return False
        if (now if now is not None else time.time()) >= expires:
            return False
        return hmac.compare_digest(signature, self._sign(key, expires))

    def modified_at(self, key: str) -> float:
        """Epoch seconds of the last write to *key*."""
        try:
            return self._path(key).stat().st_mtime
        except FileNotFoundError as e:
            raise NotFoundError("object", key) from e

    def keys(self) -> list[str]:
        """All stored keys, sorted."""
        return sorted(
            p.relative_to(self.root).as_posix()
            for p in self.root.rglob("*")
            if p.is_file() and not p.name.startswith(".upload-")
        )
