"""
Database: a directory of collections.

Each collection lives in its own file under the data directory:

    data/
        users.jsonl
        orders.jsonl

Collections are opened lazily and stay open until the database is closed.
While open, a background loop periodically compacts collections whose
files carry enough superseded lines, the way a snapshotter periodically
backs up databases.

Invariants:
    - At most one open Collection per name
    - Collection names map to file names through sanitize_name()
    - Background compaction failures are logged, never raised

How to change safely:
    - Changing sanitize_name() changes which file a name maps to; treat it as
      a data format change
    - Keep the compaction loop cancellable at every await
"""

from __future__ import annotations

import asyncio
import logging
import re
from pathlib import Path
from typing import Any

import aiofiles.os

from .backing.base import create_backing_store
from .collection import Collection
from .config import LinedbConfig, StorageBackend
from .engine.compactor import CompactionReport, needs_compaction
from .errors import LinedbError

logger = logging.getLogger(__name__)

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9_.-]")


def sanitize_name(name: str) -> str:
    """Map a collection name to a file-safe name.

    Characters other than letters, digits, "_", "-" and "." become "_";
    leading dots are dropped so a collection never maps to a hidden file.

    Raises:
        ValueError: If nothing usable is left
    """
    safe = _UNSAFE_CHARS.sub("_", name).lstrip(".")
    if not safe:
        raise ValueError(f"Invalid collection name: {name!r}")
    return safe


class Database:
    """Opens and manages the collections of one data directory.

    Attributes:
        config: Engine configuration (storage.data_dir is the directory)

    Example:
        >>> async with Database(config) as db:
        ...     users = await db.open_collection("users")
        ...     await users.insert({"id": "alice"})
    """

    def __init__(self, config: LinedbConfig | None = None) -> None:
        self.config = config or LinedbConfig()
        self._collections: dict[str, Collection] = {}
        self._open_lock = asyncio.Lock()
        self._compaction_task: asyncio.Task | None = None
        self._running = False
        self._closed = False

    @property
    def data_dir(self) -> Path:
        return self.config.storage.data_dir

    async def open_collection(self, name: str) -> Collection:
        """Open (or return the already open) collection called name.

        Raises:
            ValueError: If the name is unusable
            CorruptStore: If the collection file cannot be replayed
            LinedbError: If the database is closed
        """
        if self._closed:
            raise LinedbError("Database is closed", code="DATABASE_CLOSED")
        safe = sanitize_name(name)
        async with self._open_lock:
            collection = self._collections.get(safe)
            if collection is None:
                backing = create_backing_store(self.config.storage, safe)
                collection = await Collection.open(safe, backing, self.config)
                self._collections[safe] = collection
            return collection

    async def collection_names(self) -> list[str]:
        """Names of all collections: open ones plus those with a file on disk."""
        names = set(self._collections)
        if self.config.storage.backend == StorageBackend.FILE and await aiofiles.os.path.isdir(self.data_dir):
            prefix, _, suffix = self.config.storage.file_pattern.partition("{collection}")
            for entry in await aiofiles.os.listdir(self.data_dir):
                if entry.startswith(prefix) and entry.endswith(suffix) and not entry.startswith(".tmp_"):
                    name = entry[len(prefix) : len(entry) - len(suffix)]
                    if name:
                        names.add(name)
        return sorted(names)

    async def drop_collection(self, name: str) -> bool:
        """Close a collection and delete its file.

        Returns:
            True if there was anything to drop
        """
        safe = sanitize_name(name)
        dropped = False
        async with self._open_lock:
            collection = self._collections.pop(safe, None)
            if collection is not None:
                await collection.close(compact=False)
                dropped = True

        if self.config.storage.backend == StorageBackend.FILE:
            path = self.data_dir / self.config.storage.file_pattern.format(collection=safe)
            try:
                await aiofiles.os.remove(path)
                dropped = True
            except FileNotFoundError:
                pass

        if dropped:
            logger.info("Dropped collection", extra={"collection": safe})
        return dropped

    async def compact_all(self, force: bool = False) -> dict[str, CompactionReport]:
        """Compact open collections that need it (all of them if force).

        Failures are logged and skipped.

        Returns:
            Reports of the collections that were compacted, by name
        """
        policy = self.config.compaction
        reports: dict[str, CompactionReport] = {}
        for name, collection in list(self._collections.items()):
            if collection.closed:
                continue
            if not force and not needs_compaction(
                collection.store, policy.min_superseded_lines, policy.garbage_ratio
            ):
                continue
            try:
                reports[name] = await collection.compact()
            except LinedbError as e:
                logger.error(
                    f"Failed to compact collection {name}: {e.message}",
                    extra={"collection": name, "code": e.code},
                )
        return reports

    async def run_compaction_loop(self) -> None:
        """Compact collections every compaction.interval_seconds until stopped."""
        if self._running:
            logger.warning("Compaction loop already running")
            return

        self._running = True
        logger.info(
            "Starting compaction loop",
            extra={"interval_seconds": self.config.compaction.interval_seconds},
        )
        try:
            while self._running:
                await asyncio.sleep(self.config.compaction.interval_seconds)
                reports = await self.compact_all()
                if reports:
                    logger.info(f"Compaction cycle compacted {len(reports)} collections")
        except asyncio.CancelledError:
            logger.info("Compaction loop cancelled")
        finally:
            self._running = False

    def start(self) -> None:
        """Run the compaction loop in the background (if compaction is enabled)."""
        if not self.config.compaction.enabled or self._compaction_task is not None:
            return
        self._compaction_task = asyncio.ensure_future(self.run_compaction_loop())

    async def stop(self) -> None:
        """Stop the background compaction loop."""
        self._running = False
        task, self._compaction_task = self._compaction_task, None
        if task is not None:
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
            logger.info("Stopped compaction loop")

    async def close(self) -> None:
        """Stop background work and close every open collection."""
        if self._closed:
            return
        self._closed = True
        await self.stop()
        async with self._open_lock:
            collections, self._collections = list(self._collections.values()), {}
        for collection in collections:
            await collection.close()

    async def __aenter__(self) -> Database:
        self.start()
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.close()
