"""Blob storage for process and company documents.

The database only ever holds the internal path returned by ``put``;
clients reach the bytes through a short-lived signed reference
(see ``processflow.core.security.sign_storage_path``).
"""

from __future__ import annotations

import logging
import os
import re
import tempfile
import uuid
from pathlib import Path
from typing import Protocol

import aiofiles
import aiofiles.os

from processflow.core.exceptions import Forbidden, NotFound, StorageFailure

logger = logging.getLogger(__name__)

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9._-]+")


def safe_filename(name: str) -> str:
    base = os.path.basename(name or "").strip()
    base = _UNSAFE_CHARS.sub("_", base).strip("._")
    return base[:150] or "file"


def build_document_path(process_id: int, filename: str) -> str:
    return f"processos/{process_id}/{uuid.uuid4().hex}_{safe_filename(filename)}"


def build_company_document_path(company_id: int, filename: str) -> str:
    return f"empresas/{company_id}/{uuid.uuid4().hex}_{safe_filename(filename)}"


class StorageBackend(Protocol):
    async def put(self, path: str, data: bytes, content_type: str | None = None) -> str: ...

    async def get(self, path: str) -> bytes: ...

    async def delete(self, path: str) -> bool: ...

    async def exists(self, path: str) -> bool: ...


class LocalStorage:
    """Filesystem store rooted at ``root`` with atomic writes and traversal checks."""

    def __init__(self, root: str) -> None:
        self.root = Path(root).resolve()
        self.root.mkdir(parents=True, exist_ok=True)

    def _full_path(self, path: str) -> Path:
        full = (self.root / path).resolve()
        try:
            full.relative_to(self.root)
        except ValueError as e:
            raise Forbidden(f"Storage path escapes the storage root: {path}") from e
        return full

    async def put(self, path: str, data: bytes, content_type: str | None = None) -> str:
        target = self._full_path(path)
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_path = tempfile.mkstemp(dir=target.parent, prefix=".tmp_")
            os.close(fd)
            try:
                async with aiofiles.open(tmp_path, "wb") as f:
                    await f.write(data)
                os.replace(tmp_path, target)
            finally:
                if os.path.exists(tmp_path):
                    os.unlink(tmp_path)
        except OSError as e:
            logger.exception("Failed to store %s", path)
            raise StorageFailure(f"Could not store file: {e}") from e
        return path

    async def get(self, path: str) -> bytes:
        target = self._full_path(path)
        if not target.is_file():
            raise NotFound("Stored file", path)
        try:
            async with aiofiles.open(target, "rb") as f:
                return await f.read()
        except OSError as e:
            raise StorageFailure(f"Could not read file: {e}") from e

    async def delete(self, path: str) -> bool:
        target = self._full_path(path)
        if not target.exists():
            return False
        try:
            await aiofiles.os.remove(target)
        except OSError as e:
            raise StorageFailure(f"Could not delete file: {e}") from e
        return True

    async def exists(self, path: str) -> bool:
        return self._full_path(path).is_file()
