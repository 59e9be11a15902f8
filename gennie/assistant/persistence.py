"""Key-value blob storage for wake-word exemplars."""

from __future__ import annotations

import asyncio
import logging
import re
from pathlib import Path

LOGGER = logging.getLogger("gennie-assistant.persistence")

_KEY_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.-]*$")


class BlobStore:
    """Directory-backed store holding one file per key.

    Writes go through a temporary file and an atomic rename so a crash never
    leaves a half-written blob behind.
    """

    def __init__(self, root: Path, logger: logging.Logger | None = None) -> None:
        self.root = Path(root)
        self._logger = logger or LOGGER

    def _path_for(self, key: str) -> Path:
        if not _KEY_RE.match(key):
            raise ValueError(f"Invalid blob key: {key!r}")
        return self.root / f"{key}.blob"

    async def get(self, key: str) -> bytes | None:
        path = self._path_for(key)
        return await asyncio.to_thread(self._read, path)

    async def put(self, key: str, data: bytes) -> None:
        path = self._path_for(key)
        await asyncio.to_thread(self._write, path, data)
        self._logger.debug("Stored blob %s (%d bytes)", key, len(data))

    async def delete(self, key: str) -> bool:
        path = self._path_for(key)
        removed = await asyncio.to_thread(self._remove, path)
        if removed:
            self._logger.debug("Deleted blob %s", key)
        return removed

    async def exists(self, key: str) -> bool:
        path = self._path_for(key)
        return await asyncio.to_thread(path.is_file)

    @staticmethod
    def _read(path: Path) -> bytes | None:
        try:
            return path.read_bytes()
        except FileNotFoundError:
            return None

    @staticmethod
    def _write(path: Path, data: bytes) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = path.with_suffix(".tmp")
        tmp_path.write_bytes(data)
        tmp_path.replace(path)

    @staticmethod
    def _remove(path: Path) -> bool:
        try:
            path.unlink()
        except FileNotFoundError:
            return False
        return True
