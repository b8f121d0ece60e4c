"""
Compactor: rewrites a collection file into its minimal canonical form.

Over time a collection file accumulates superseded revisions and
tombstones. Compaction replaces the whole file with exactly one canonical
line per live document, sorted by id:

    before                                   after
    {"id":"b","n":1,"rev":1}                 {"id":"a","n":5,"rev":2}
    {"id":"a","n":4,"rev":1}                 {"id":"b","n":1,"rev":1}
    {"id":"a","n":5,"rev":2}
    {"_deleted":true,"id":"c","rev":2}

The new bytes go through BackingStore.atomic_replace(), so a crash leaves
either the old file or the new one, never a mix.

Invariants:
    - Live documents and their revisions are unchanged by compaction
    - Compacting twice without a mutation in between is byte-identical
    - A failed compaction leaves the previous file and the in-memory state

How to change safely:
    - Always run under the Mutation Log's write lock
    - The output must replay to the same snapshot it was rendered from
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass

from ..backing.base import BackingStore
from ..codec import encode
from ..errors import CompactionFailed, WriteFailed
from .mutations import MutationLog
from .store import CollectionStore, Snapshot

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CompactionReport:
    """Result of one compaction.

    Attributes:
        documents: Live documents written
        lines_before: Record lines in the file before compaction
        bytes_before: File size before compaction
        bytes_after: File size after compaction
        duration_ms: Time spent holding the write lock
    """

    documents: int
    lines_before: int
    bytes_before: int
    bytes_after: int
    duration_ms: int

    @property
    def lines_dropped(self) -> int:
        return self.lines_before - self.documents


def render(snapshot: Snapshot) -> bytes:
    """Canonical file content for a snapshot: one line per document, sorted by id."""
    return "".join(encode(doc) + "\n" for doc in snapshot.documents()).encode("utf-8")


def needs_compaction(store: CollectionStore, min_superseded_lines: int, garbage_ratio: float) -> bool:
    """True when enough of the file is garbage to be worth a rewrite."""
    superseded = store.superseded_lines
    if superseded <= 0 or superseded < min_superseded_lines:
        return False
    return superseded / max(store.line_count, 1) > garbage_ratio


class Compactor:
    """Rewrites the backing store of one collection.

    Attributes:
        store: Collection store the file is rendered from
        backing: Backing store to rewrite
        log: Mutation log whose write lock serializes compaction with writes

    Example:
        >>> compactor = Compactor(store, backing, log)
        >>> report = await compactor.compact()
        >>> report.lines_dropped
        12
    """

    def __init__(self, store: CollectionStore, backing: BackingStore, log: MutationLog) -> None:
        self.store = store
        self.backing = backing
        self.log = log
        self._compaction_count = 0

    @property
    def compaction_count(self) -> int:
        return self._compaction_count

    async def compact(self, timeout: float | None = None) -> CompactionReport:
        """Rewrite the backing store with one line per live document.

        Args:
            timeout: Seconds to wait for the write lock

        Returns:
            CompactionReport

        Raises:
            CompactionFailed: If the rewrite did not complete
            MutationTimeout: If the write lock was not acquired in time
        """
        return await self.log.run_exclusive(self._compact_locked, timeout=timeout)

    async def _compact_locked(self) -> CompactionReport:
        start_time = time.monotonic()
        snapshot = self.store.snapshot()
        data = render(snapshot)
        lines_before = self.store.line_count
        bytes_before = self.store.committed_size

        try:
            await self.backing.atomic_replace(data)
        except WriteFailed as e:
            logger.error(
                "Compaction failed",
                extra={"collection": self.store.name, "error": e.message},
            )
            raise CompactionFailed(f"Compaction of {self.store.name} failed: {e.message}") from e

        self.store.mark_compacted(len(data))
        # The rewrite also discarded any bytes left by an earlier failed append
        self.log.mark_repaired()
        self._compaction_count += 1

        report = CompactionReport(
            documents=len(snapshot),
            lines_before=lines_before,
            bytes_before=bytes_before,
            bytes_after=len(data),
            duration_ms=int((time.monotonic() - start_time) * 1000),
        )
        logger.info(
            "Compacted collection",
            extra={
                "collection": self.store.name,
                "documents": report.documents,
                "lines_dropped": report.lines_dropped,
                "bytes_before": report.bytes_before,
                "bytes_after": report.bytes_after,
            },
        )
        return report
