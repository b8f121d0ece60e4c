"""
Mutation log: the write path of a collection.

Every mutation call goes through two explicit phases:

    1. resolve   requests -> Resolution (records, lines, change events)
                 pure, against one consistent view of the store; all
                 validation failures surface here, before any I/O
    2. write     Resolution -> WriteOutcome (committed or failed)
                 one append of all lines, then one flush

The lines of a multi-record call carry a bulk marker so a reload applies
them together or not at all. Single-record calls are written unmarked.

Only a committed outcome is applied to the Collection Store and published
to the Change Feed. A failed outcome leaves memory untouched and marks the
backing store for repair: before the next write it is cut back to the last
committed size, so a half-written line can never end up in the middle of
the file.

Invariants:
    - At most one mutation (or compaction) holds the write lock at a time
    - No bytes are appended unless every request in the call resolved
    - The store and the feed change only after the flush succeeded
    - An accepted mutation runs to completion even if its caller is cancelled

How to change safely:
    - New request types must resolve without I/O
    - Keep the lock shared with the Compactor; the swap must not race an append
    - Test every failure branch with the in-memory backend's injection switches
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections.abc import Awaitable, Callable, Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any, TypeVar, Union

from ..backing.base import BackingStore, CommitToken
from ..codec import ID_FIELD, REV_FIELD, Document, Record, Tombstone, canonicalize, encode
from ..errors import (
    BulkPartialFailure,
    CollectionClosed,
    DuplicateId,
    InvalidDocument,
    LinedbError,
    MutationTimeout,
    NotFound,
    RevisionConflict,
    WriteFailed,
)
from .feed import ChangeEvent, ChangeFeed, ChangeKind
from .store import CollectionStore

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class Insert:
    """Create a document. A missing id is generated."""

    doc: Mapping[str, Any]


@dataclass(frozen=True)
class Update:
    """Change a live document.

    Attributes:
        id: Target document
        patch: JSON merge patch (None removes a key), or the full new body
            when replace is True
        expected_rev: Fail with RevisionConflict unless this is the current rev
        replace: Replace the body instead of merging
    """

    id: str
    patch: Mapping[str, Any]
    expected_rev: int | None = None
    replace: bool = False


@dataclass(frozen=True)
class Delete:
    """Tombstone a live document."""

    id: str
    expected_rev: int | None = None


MutationRequest = Union[Insert, Update, Delete]


@dataclass
class Resolution:
    """Everything a mutation call will write, computed before any I/O."""

    records: list[Record] = field(default_factory=list)
    lines: list[str] = field(default_factory=list)
    events: list[ChangeEvent] = field(default_factory=list)

    @property
    def payload(self) -> bytes:
        return "".join(line + "\n" for line in self.lines).encode("utf-8")


@dataclass(frozen=True)
class WriteOutcome:
    """Result of the durable write phase.

    Attributes:
        committed: True once the payload is appended and flushed
        token: Commit token of the append (None if the append failed)
        error: Why the write failed (None when committed)
    """

    committed: bool
    token: CommitToken | None = None
    error: WriteFailed | None = None


@dataclass(frozen=True)
class MutationResult:
    """What a committed mutation call produced.

    Attributes:
        records: Resulting documents and tombstones, in request order
        events: Published change events, in request order
    """

    records: list[Record]
    events: list[ChangeEvent]

    @property
    def document(self) -> Document | None:
        """Resulting document of a single insert or update."""
        if self.records and isinstance(self.records[0], Document):
            return self.records[0]
        return None

    @property
    def rev(self) -> int | None:
        return self.records[0].rev if self.records else None


def merge_patch(target: Any, patch: Any) -> Any:
    """Apply a JSON merge patch (RFC 7386) without modifying target."""
    if not isinstance(patch, Mapping):
        return patch
    result = dict(target) if isinstance(target, Mapping) else {}
    for key, value in patch.items():
        if value is None:
            result.pop(key, None)
        else:
            result[key] = merge_patch(result.get(key), value)
    return result


def generate_id() -> str:
    return uuid.uuid4().hex


class _PendingView:
    """The store as seen by one call: base state plus earlier requests of the call."""

    def __init__(self, store: CollectionStore) -> None:
        self._store = store
        self._base = store.snapshot()
        self._pending: dict[str, Record] = {}

    def current(self, doc_id: str) -> Document | None:
        if doc_id in self._pending:
            record = self._pending[doc_id]
            return record if isinstance(record, Document) else None
        return self._base.get(doc_id)

    def last_rev(self, doc_id: str) -> int:
        """Highest revision known for doc_id, live or tombstoned."""
        if doc_id in self._pending:
            return self._pending[doc_id].rev
        doc = self._base.get(doc_id)
        if doc is not None:
            return doc.rev
        return self._store.tombstone_rev(doc_id) or 0

    def stage(self, record: Record) -> None:
        self._pending[record.id] = record


class MutationLog:
    """Serialized, durable write path for one collection.

    Attributes:
        store: Collection store updated after each commit
        backing: Backing store receiving the record lines
        feed: Change feed receiving the events
        default_timeout: Seconds a call may wait for the write lock

    Example:
        >>> log = MutationLog(store, backing, feed)
        >>> result = await log.insert({"id": "a", "name": "x"})
        >>> result.rev
        1
    """

    def __init__(
        self,
        store: CollectionStore,
        backing: BackingStore,
        feed: ChangeFeed,
        default_timeout: float | None = None,
        id_factory: Callable[[], str] = generate_id,
    ) -> None:
        self.store = store
        self.backing = backing
        self.feed = feed
        self.default_timeout = default_timeout
        self.id_factory = id_factory
        self.lock = asyncio.Lock()
        self._needs_repair = False
        self._closed = False
        self._commit_count = 0

    @property
    def commit_count(self) -> int:
        """Number of committed mutation calls since the log was created."""
        return self._commit_count

    async def insert(self, doc: Mapping[str, Any], timeout: float | None = None) -> MutationResult:
        """Insert a new document.

        Raises:
            DuplicateId: If the id is already live
            InvalidDocument: If the document cannot be stored
            WriteFailed: If the durable write failed
        """
        return await self._submit([Insert(doc)], bulk=False, timeout=timeout)

    async def update(
        self,
        doc_id: str,
        patch: Mapping[str, Any],
        expected_rev: int | None = None,
        replace: bool = False,
        timeout: float | None = None,
    ) -> MutationResult:
        """Update a live document with a merge patch or a replacement body.

        Raises:
            NotFound: If there is no live document with doc_id
            RevisionConflict: If expected_rev is given and differs
            InvalidDocument: If the result cannot be stored
            WriteFailed: If the durable write failed
        """
        request = Update(doc_id, patch, expected_rev=expected_rev, replace=replace)
        return await self._submit([request], bulk=False, timeout=timeout)

    async def delete(
        self,
        doc_id: str,
        expected_rev: int | None = None,
        timeout: float | None = None,
    ) -> MutationResult:
        """Delete a live document by appending a tombstone.

        Raises:
            NotFound: If there is no live document with doc_id
            RevisionConflict: If expected_rev is given and differs
            WriteFailed: If the durable write failed
        """
        return await self._submit([Delete(doc_id, expected_rev)], bulk=False, timeout=timeout)

    async def bulk_apply(
        self,
        requests: Sequence[MutationRequest],
        timeout: float | None = None,
    ) -> MutationResult:
        """Apply a sequence of requests atomically.

        Requests are resolved in order against the state at call start; a
        request sees the effects of earlier requests in the same sequence.

        Raises:
            BulkPartialFailure: If any request fails validation; nothing applied
            WriteFailed: If the durable write failed; nothing applied
        """
        return await self._submit(list(requests), bulk=True, timeout=timeout)

    async def close(self) -> None:
        """Reject further mutations once the in-flight one (if any) finished.

        Bytes left behind by a failed write are cut off before returning, so
        a reopen never sees them. A failed repair is logged, not raised; the
        next open ignores a torn tail and a partial bulk write on its own.
        """
        async with self.lock:
            self._closed = True
            try:
                await self.repair_if_needed()
            except WriteFailed as e:
                logger.error(
                    "Could not discard uncommitted bytes on close",
                    extra={"collection": self.store.name, "error": e.message},
                )

    async def _submit(
        self,
        requests: list[MutationRequest],
        bulk: bool,
        timeout: float | None,
    ) -> MutationResult:
        return await self.run_exclusive(lambda: self._run(requests, bulk), timeout=timeout)

    async def run_exclusive(self, func: Callable[[], Awaitable[T]], timeout: float | None = None) -> T:
        """Run func while holding the collection write lock.

        timeout bounds only the wait for the lock. Once the lock is held, func
        runs to completion even if the caller is cancelled.

        Raises:
            MutationTimeout: If the lock was not acquired in time
        """
        timeout = timeout if timeout is not None else self.default_timeout
        try:
            if timeout is None:
                await self.lock.acquire()
            else:
                await asyncio.wait_for(self.lock.acquire(), timeout)
        except asyncio.TimeoutError:
            raise MutationTimeout(timeout) from None

        task = asyncio.ensure_future(self._holding_lock(func))
        task.add_done_callback(_retrieve_exception)
        return await asyncio.shield(task)

    async def _holding_lock(self, func: Callable[[], Awaitable[T]]) -> T:
        try:
            return await func()
        finally:
            self.lock.release()

    async def _run(self, requests: list[MutationRequest], bulk: bool) -> MutationResult:
        if self._closed:
            raise CollectionClosed(self.store.name)
        if not requests:
            return MutationResult(records=[], events=[])

        await self.repair_if_needed()
        resolution = self.resolve(requests, bulk=bulk)
        outcome = await self.write(resolution)
        if outcome.committed and outcome.token is not None:
            return self._apply(resolution, outcome.token)
        raise outcome.error or WriteFailed(f"Write to {self.store.name} was not committed")

    def resolve(self, requests: Sequence[MutationRequest], bulk: bool = True) -> Resolution:
        """Phase 1: validate requests and compute the records to write.

        Raises:
            BulkPartialFailure: For a failing request when bulk is True
            DuplicateId, NotFound, RevisionConflict, InvalidDocument: For a
                failing request when bulk is False
        """
        view = _PendingView(self.store)
        resolution = Resolution()

        for index, request in enumerate(requests):
            try:
                record, kind = self._resolve_one(request, view)
                line, record = canonicalize(record)
            except LinedbError as e:
                if bulk:
                    raise BulkPartialFailure(index, e) from e
                raise

            view.stage(record)
            resolution.records.append(record)
            resolution.lines.append(line)
            value = record.to_dict() if isinstance(record, Document) else None
            resolution.events.append(ChangeEvent(kind=kind, id=record.id, rev=record.rev, value=value))

        if len(resolution.records) > 1:
            # Tag every line so a reload can tell a complete bulk from a torn one
            count = len(resolution.records)
            resolution.lines = [
                encode(record, batch=(position, count)) for position, record in enumerate(resolution.records, 1)
            ]
        return resolution

    def _resolve_one(self, request: MutationRequest, view: _PendingView) -> tuple[Record, ChangeKind]:
        if isinstance(request, Insert):
            if not isinstance(request.doc, Mapping):
                raise InvalidDocument(f"Document must be an object, got {type(request.doc).__name__}")
            data = dict(request.doc)
            doc_id = data.pop(ID_FIELD, None)
            if doc_id is None:
                doc_id = self.id_factory()
            if not isinstance(doc_id, str) or not doc_id:
                raise InvalidDocument(f"Document id must be a non-empty string, got {doc_id!r}")
            if REV_FIELD in data:
                raise InvalidDocument("'rev' is assigned by the engine", doc_id)
            if view.current(doc_id) is not None:
                raise DuplicateId(doc_id)
            return Document(id=doc_id, rev=view.last_rev(doc_id) + 1, data=data), ChangeKind.CREATED

        if isinstance(request, Update):
            current = self._current_for(request.id, request.expected_rev, view)
            if not isinstance(request.patch, Mapping):
                raise InvalidDocument(f"Patch must be an object, got {type(request.patch).__name__}", request.id)
            patch = dict(request.patch)
            patch_id = patch.pop(ID_FIELD, request.id)
            if patch_id != request.id:
                raise InvalidDocument(f"Cannot change id {request.id} to {patch_id!r}", request.id)
            if REV_FIELD in patch:
                raise InvalidDocument("'rev' is assigned by the engine", request.id)
            data = patch if request.replace else merge_patch(current.data, patch)
            return Document(id=request.id, rev=current.rev + 1, data=data), ChangeKind.UPDATED

        if isinstance(request, Delete):
            current = self._current_for(request.id, request.expected_rev, view)
            return Tombstone(id=request.id, rev=current.rev + 1), ChangeKind.DELETED

        raise InvalidDocument(f"Unknown mutation request: {type(request).__name__}")

    @staticmethod
    def _current_for(doc_id: str, expected_rev: int | None, view: _PendingView) -> Document:
        current = view.current(doc_id)
        if current is None:
            raise NotFound(doc_id)
        if expected_rev is not None and expected_rev != current.rev:
            raise RevisionConflict(doc_id, expected_rev, current.rev)
        return current

    async def write(self, resolution: Resolution) -> WriteOutcome:
        """Phase 2: append all lines as one write and flush it.

        Never raises for storage failures; they come back as a failed
        outcome and mark the backing store for repair.
        """
        payload = resolution.payload
        try:
            token = await self.backing.append(payload)
            if token.offset != self.store.committed_size:
                raise WriteFailed(
                    f"Append landed at offset {token.offset}, expected {self.store.committed_size}"
                )
            await self.backing.flush(token)
        except WriteFailed as e:
            self._needs_repair = True
            logger.warning(
                "Durable write failed",
                extra={"collection": self.store.name, "records": len(resolution.records), "error": e.message},
            )
            return WriteOutcome(committed=False, error=e)
        return WriteOutcome(committed=True, token=token)

    def _apply(self, resolution: Resolution, token: CommitToken) -> MutationResult:
        self.store.apply(resolution.records, token.length)
        events = self.feed.publish(resolution.events)
        self._commit_count += 1
        logger.debug(
            "Committed mutation",
            extra={
                "collection": self.store.name,
                "records": len(resolution.records),
                "token": str(token),
            },
        )
        return MutationResult(records=list(resolution.records), events=events)

    async def repair_if_needed(self) -> None:
        """Cut the backing store back to the last committed size after a failed write.

        Raises:
            WriteFailed: If the repair itself fails (the flag stays set)
        """
        if not self._needs_repair:
            return
        data = await self.backing.read_all()
        committed_size = self.store.committed_size
        if len(data) != committed_size:
            await self.backing.atomic_replace(data[:committed_size])
            logger.warning(
                "Discarded uncommitted bytes from backing store",
                extra={"collection": self.store.name, "discarded_bytes": len(data) - committed_size},
            )
        self._needs_repair = False

    def mark_repaired(self) -> None:
        """Called after a rewrite of the whole backing store (compaction)."""
        self._needs_repair = False


def _retrieve_exception(task: asyncio.Task) -> None:
    # The caller may have been cancelled and never await the task
    if not task.cancelled() and task.exception() is not None:
        logger.debug("Mutation finished with error", extra={"error": str(task.exception())})
