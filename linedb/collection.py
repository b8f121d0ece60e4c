"""
Collection: one named set of documents backed by one collection file.

The Collection wires the engine components together and is what
applications use:

    collection = await Collection.open("users", backing, config)
    await collection.insert({"id": "alice", "email": "a@example.com"})
    for doc in collection.query(where("email").exists()):
        ...
    await collection.close()

On open the backing store is replayed into the Collection Store. A torn
tail left by a crash is cut off before the first write is accepted, so new
lines are never appended after half a line.

Invariants:
    - One Collection instance per backing store
    - Mutations and compaction are serialized by the Mutation Log lock
    - After close() no mutation is accepted

How to change safely:
    - Keep auto-compaction failures out of the mutation result; the
      mutation is already durable when compaction runs
    - New read helpers must go through a snapshot, never the live state
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator, Callable, Iterator, Mapping, Sequence
from dataclasses import dataclass
from typing import Any

from .backing.base import BackingStore
from .codec import Document
from .config import LinedbConfig
from .engine.compactor import CompactionReport, Compactor, needs_compaction
from .engine.feed import ChangeEvent, ChangeFeed
from .engine.mutations import MutationLog, MutationRequest, MutationResult, generate_id
from .engine.query import Predicate, QueryEngine
from .engine.store import CollectionStore, LoadReport, Snapshot
from .engine.views import IndexKey, Indexer, ViewRegistry
from .errors import CollectionClosed, CompactionFailed

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CollectionStats:
    """Point-in-time counters of a collection.

    Attributes:
        name: Collection name
        documents: Live documents
        lines: Record lines in the backing store
        superseded_lines: Lines compaction would drop
        size_bytes: Committed size of the backing store
        feed_offset: Offset the next change event will get
        commits: Committed mutation calls since open
        compactions: Compactions since open
    """

    name: str
    documents: int
    lines: int
    superseded_lines: int
    size_bytes: int
    feed_offset: int
    commits: int
    compactions: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "documents": self.documents,
            "lines": self.lines,
            "superseded_lines": self.superseded_lines,
            "size_bytes": self.size_bytes,
            "feed_offset": self.feed_offset,
            "commits": self.commits,
            "compactions": self.compactions,
        }


class Collection:
    """A named, durable, queryable set of JSON documents.

    Use Collection.open() to create one; it loads the backing store.

    Attributes:
        name: Collection name
        backing: Backing store holding the collection file
        config: Engine configuration
        load_report: What was replayed when the collection was opened

    Example:
        >>> async with await Collection.open("notes", InMemoryBackingStore()) as notes:
        ...     result = await notes.insert({"title": "hello"})
        ...     notes.get(result.document.id)
    """

    def __init__(
        self,
        name: str,
        backing: BackingStore,
        config: LinedbConfig | None = None,
        id_factory: Callable[[], str] = generate_id,
    ) -> None:
        self.name = name
        self.backing = backing
        self.config = config or LinedbConfig()
        self.store = CollectionStore(name)
        self.feed = ChangeFeed(retention=self.config.feed.retention)
        self.log = MutationLog(
            self.store,
            backing,
            self.feed,
            default_timeout=self.config.mutation.default_timeout,
            id_factory=id_factory,
        )
        self.compactor = Compactor(self.store, backing, self.log)
        self.views = ViewRegistry(self.store, self.feed)
        self._engine = QueryEngine(self.store)
        self.load_report: LoadReport | None = None
        self._closed = False

    @classmethod
    async def open(
        cls,
        name: str,
        backing: BackingStore,
        config: LinedbConfig | None = None,
        id_factory: Callable[[], str] = generate_id,
    ) -> Collection:
        """Open a collection and replay its backing store.

        Raises:
            CorruptStore: If the backing store cannot be replayed
            WriteFailed: If a torn tail could not be cut off
        """
        collection = cls(name, backing, config, id_factory=id_factory)
        await collection._load()
        return collection

    async def _load(self) -> None:
        data = await self.backing.read_all()
        report = self.store.load(data)
        if report.has_torn_tail:
            await self.backing.atomic_replace(data[: report.committed_size])
            logger.warning(
                "Removed torn tail from collection file",
                extra={"collection": self.name, "torn_tail_bytes": report.torn_tail_bytes},
            )
        self.load_report = report
        logger.info(
            "Opened collection",
            extra={
                "collection": self.name,
                "backing": self.backing.name,
                "documents": report.documents,
                "lines": report.lines,
            },
        )

    @property
    def closed(self) -> bool:
        return self._closed

    def __len__(self) -> int:
        return len(self.store)

    def __contains__(self, doc_id: object) -> bool:
        return doc_id in self.store.snapshot()

    # Mutations

    async def insert(self, doc: Mapping[str, Any], timeout: float | None = None) -> MutationResult:
        """Insert a document; an id is generated if doc has none.

        Raises:
            DuplicateId, InvalidDocument, WriteFailed, MutationTimeout, CollectionClosed
        """
        result = await self.log.insert(doc, timeout=timeout)
        await self._maybe_compact()
        return result

    async def update(
        self,
        doc_id: str,
        patch: Mapping[str, Any],
        expected_rev: int | None = None,
        replace: bool = False,
        timeout: float | None = None,
    ) -> MutationResult:
        """Merge patch into a live document (or replace its body).

        Raises:
            NotFound, RevisionConflict, InvalidDocument, WriteFailed,
            MutationTimeout, CollectionClosed
        """
        result = await self.log.update(doc_id, patch, expected_rev=expected_rev, replace=replace, timeout=timeout)
        await self._maybe_compact()
        return result

    async def delete(
        self,
        doc_id: str,
        expected_rev: int | None = None,
        timeout: float | None = None,
    ) -> MutationResult:
        """Delete a live document.

        Raises:
            NotFound, RevisionConflict, WriteFailed, MutationTimeout, CollectionClosed
        """
        result = await self.log.delete(doc_id, expected_rev=expected_rev, timeout=timeout)
        await self._maybe_compact()
        return result

    async def bulk_apply(
        self,
        requests: Sequence[MutationRequest],
        timeout: float | None = None,
    ) -> MutationResult:
        """Apply Insert/Update/Delete requests atomically.

        Raises:
            BulkPartialFailure, WriteFailed, MutationTimeout, CollectionClosed
        """
        result = await self.log.bulk_apply(requests, timeout=timeout)
        await self._maybe_compact()
        return result

    async def _maybe_compact(self) -> None:
        policy = self.config.compaction
        if not policy.enabled or self._closed:
            return
        if not needs_compaction(self.store, policy.min_superseded_lines, policy.garbage_ratio):
            return
        try:
            await self.compactor.compact()
        except CompactionFailed as e:
            logger.warning(
                "Automatic compaction failed",
                extra={"collection": self.name, "error": e.message},
            )

    # Reads

    def get(self, doc_id: str, rev: int | None = None) -> Document | None:
        """Live document by id; with rev, only if that is its current revision."""
        doc = self.store.get(doc_id)
        if doc is not None and rev is not None and doc.rev != rev:
            return None
        return doc

    def snapshot(self) -> Snapshot:
        return self.store.snapshot()

    def query(
        self,
        predicate: Predicate | Mapping[str, Any] | None = None,
        projection: Sequence[str] | None = None,
        limit: int | None = None,
    ) -> Iterator[Document]:
        """Lazily iterate matching documents in id order. See QueryEngine.query()."""
        return self._engine.query(predicate, projection=projection, limit=limit)

    def count(self, predicate: Predicate | Mapping[str, Any] | None = None) -> int:
        return self._engine.count(predicate)

    def first(self, predicate: Predicate | Mapping[str, Any] | None = None) -> Document | None:
        return self._engine.first(predicate)

    # Change feed and views

    def subscribe_from(self, offset: int = 0) -> Iterator[ChangeEvent]:
        return self.feed.subscribe_from(offset)

    def follow(self, offset: int = 0) -> AsyncIterator[ChangeEvent]:
        return self.feed.follow(offset)

    def add_view(self, name: str, indexer: Indexer) -> None:
        """Register a secondary index. indexer maps a document to its keys."""
        self.views.add(name, indexer)

    def remove_view(self, name: str) -> None:
        self.views.remove(name)

    def find_by_view(self, name: str, key: IndexKey) -> list[Document]:
        """Live documents indexed under key in the named view.

        Raises:
            ViewNotFound: If no view has this name
        """
        return self.views.find(name, key)

    # Maintenance

    async def compact(self, timeout: float | None = None) -> CompactionReport:
        """Rewrite the backing store with one line per live document.

        Raises:
            CompactionFailed, MutationTimeout, CollectionClosed
        """
        if self._closed:
            raise CollectionClosed(self.name)
        return await self.compactor.compact(timeout=timeout)

    def stats(self) -> CollectionStats:
        return CollectionStats(
            name=self.name,
            documents=len(self.store),
            lines=self.store.line_count,
            superseded_lines=self.store.superseded_lines,
            size_bytes=self.store.committed_size,
            feed_offset=self.feed.next_offset,
            commits=self.log.commit_count,
            compactions=self.compactor.compaction_count,
        )

    async def close(self, compact: bool | None = None) -> None:
        """Compact if configured, then stop accepting mutations and release the backing store.

        Args:
            compact: Override compaction.compact_on_close for this call

        Bytes left behind by a failed write are cut off before the backing
        store is released. Closing twice is a no-op.
        """
        if self._closed:
            return
        if compact is None:
            compact = self.config.compaction.compact_on_close
        if compact and self.store.superseded_lines > 0:
            try:
                await self.compactor.compact()
            except CompactionFailed as e:
                logger.warning(
                    "Compaction on close failed",
                    extra={"collection": self.name, "error": e.message},
                )
        self._closed = True
        await self.log.close()
        self.feed.close()
        await self.backing.close()
        logger.info("Closed collection", extra={"collection": self.name})

    async def __aenter__(self) -> Collection:
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.close()

    def __repr__(self) -> str:
        return f"Collection({self.name!r}, documents={len(self)}, backing={self.backing.name!r})"
