"""
Local file backing store.

Appends go through one long-lived append-mode handle; flush() calls
fsync on it. atomic_replace() writes a temp file in the same directory,
fsyncs it, renames it over the live file and fsyncs the directory so the
rename itself survives a crash.

Invariants:
    - The live file is only ever modified by appends or by os.replace()
    - A crash during atomic_replace() leaves the old file intact
    - Temp files use the ".tmp_" prefix and are removed on failure

How to change safely:
    - Test on the filesystems you deploy to (rename atomicity differs on
      network filesystems)
    - Keep the directory fsync, without it the rename can be lost
"""

from __future__ import annotations

import asyncio
import logging
import os
import tempfile
from pathlib import Path
from typing import Any

import aiofiles
import aiofiles.os

from ..errors import WriteFailed
from .base import CommitToken

logger = logging.getLogger(__name__)


class LocalFileBackingStore:
    """BackingStore on a local file.

    Attributes:
        path: Collection file path
        fsync: Whether flush() and atomic_replace() call fsync. Disable only
            for throwaway data; without it a crash can lose flushed writes.

    Example:
        >>> store = LocalFileBackingStore(Path("/var/lib/linedb/users.jsonl"))
        >>> token = await store.append(b'{"id":"a","rev":1}\\n')
        >>> await store.flush(token)
    """

    def __init__(self, path: Path | str, fsync: bool = True) -> None:
        self.path = Path(path)
        self.fsync = fsync
        self._file: Any = None
        self._size: int | None = None

    @property
    def name(self) -> str:
        return str(self.path)

    async def _ensure_open(self) -> Any:
        if self._file is None:
            try:
                await aiofiles.os.makedirs(self.path.parent, exist_ok=True)
                self._file = await aiofiles.open(self.path, "ab")
                self._size = (await aiofiles.os.stat(self.path)).st_size
            except OSError as e:
                raise WriteFailed(f"Cannot open {self.path}: {e}", operation="open") from e
        return self._file

    async def append(self, data: bytes) -> CommitToken:
        f = await self._ensure_open()
        offset = self._size or 0
        try:
            await f.write(data)
        except OSError as e:
            # Unknown how much reached the file; re-stat on next use
            await self._reset_handle()
            raise WriteFailed(f"Append to {self.path} failed: {e}") from e
        self._size = offset + len(data)
        return CommitToken(offset=offset, length=len(data))

    async def flush(self, token: CommitToken) -> None:
        if self._file is None:
            raise WriteFailed(f"No open handle for {self.path}", operation="flush")
        try:
            await self._file.flush()
            if self.fsync:
                await asyncio.to_thread(os.fsync, self._file.fileno())
        except OSError as e:
            await self._reset_handle()
            raise WriteFailed(f"Flush of {self.path} at {token} failed: {e}", operation="flush") from e

    async def read_all(self) -> bytes:
        if self._file is not None:
            await self._file.flush()
        try:
            async with aiofiles.open(self.path, "rb") as f:
                return await f.read()
        except FileNotFoundError:
            return b""

    async def atomic_replace(self, data: bytes) -> None:
        try:
            await aiofiles.os.makedirs(self.path.parent, exist_ok=True)
        except OSError as e:
            raise WriteFailed(f"Cannot create {self.path.parent}: {e}", operation="replace") from e

        try:
            fd, temp_path = await asyncio.to_thread(
                tempfile.mkstemp, dir=self.path.parent, prefix=".tmp_", suffix=self.path.suffix
            )
        except OSError as e:
            raise WriteFailed(f"Cannot create temp file in {self.path.parent}: {e}", operation="replace") from e
        try:
            await asyncio.to_thread(os.close, fd)
            async with aiofiles.open(temp_path, "wb") as f:
                await f.write(data)
                await f.flush()
                if self.fsync:
                    await asyncio.to_thread(os.fsync, f.fileno())

            # The append handle points at the old inode; drop it before the swap
            await self._reset_handle()
            await aiofiles.os.replace(temp_path, self.path)
            if self.fsync:
                await asyncio.to_thread(_fsync_dir, self.path.parent)
        except OSError as e:
            try:
                await aiofiles.os.remove(temp_path)
            except OSError:
                logger.warning("Could not remove temp file", extra={"path": temp_path})
            raise WriteFailed(f"Replace of {self.path} failed: {e}", operation="replace") from e

        logger.debug("Replaced collection file", extra={"path": str(self.path), "size": len(data)})

    async def close(self) -> None:
        await self._reset_handle()

    async def _reset_handle(self) -> None:
        f, self._file = self._file, None
        self._size = None
        if f is not None:
            try:
                await f.close()
            except OSError as e:
                logger.warning("Error closing collection file", extra={"path": str(self.path), "error": str(e)})


def _fsync_dir(path: Path) -> None:
    fd = os.open(path, os.O_RDONLY)
    try:
        os.fsync(fd)
    finally:
        os.close(fd)
