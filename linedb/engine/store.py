"""
Collection store: the authoritative in-memory view of one collection.

The store holds the live documents keyed by id and publishes them as
immutable Snapshot values. Every applied mutation publishes a new
snapshot (copy-on-write), so readers holding an older snapshot are never
affected by later writes and never need a lock.

The store is rebuilt from the backing store with load(), which replays
record lines in file order:

    {"id":"a","name":"x","rev":1}          -> a@1 live
    {"id":"a","name":"y","rev":2}          -> a@2 live (a@1 superseded)
    {"_deleted":true,"id":"a","rev":3}     -> a removed, tombstone a@3
    {"id":"b","r                           -> torn tail, ignored

Lines tagged with a bulk marker ("_txn": [position, count]) are applied
together once the last one is read. A bulk cut short at the end of the
file is a torn tail; one cut short in the middle is corruption.

Invariants:
    - The snapshot equals a replay of the committed bytes of the backing store
    - rev strictly increases per id in file order; a regression is corruption
    - A bulk append is replayed entirely or not at all
    - apply() is only called after the write it reflects is durable

How to change safely:
    - Never mutate a published mapping; build a new one
    - Keep load() and apply() producing identical state for identical records
"""

from __future__ import annotations

import logging
from collections.abc import Iterator, Mapping, Sequence
from dataclasses import dataclass
from functools import cached_property
from types import MappingProxyType

from ..codec import Document, Record, Tombstone, decode_line
from ..errors import CorruptStore, MalformedRecord

logger = logging.getLogger(__name__)


class Snapshot(Mapping[str, Document]):
    """Immutable point-in-time view of the live documents of a collection.

    Attributes:
        version: Number of mutations applied when the snapshot was taken
    """

    def __init__(self, documents: Mapping[str, Document], version: int = 0) -> None:
        if not isinstance(documents, MappingProxyType):
            documents = MappingProxyType(dict(documents))
        self._documents = documents
        self.version = version

    def __getitem__(self, doc_id: str) -> Document:
        return self._documents[doc_id]

    def __iter__(self) -> Iterator[str]:
        return iter(self.ids)

    def __len__(self) -> int:
        return len(self._documents)

    def __contains__(self, doc_id: object) -> bool:
        return doc_id in self._documents

    @cached_property
    def ids(self) -> tuple[str, ...]:
        """Live ids in sorted order."""
        return tuple(sorted(self._documents))

    def documents(self) -> Iterator[Document]:
        """Live documents in id order."""
        for doc_id in self.ids:
            yield self._documents[doc_id]

    def __repr__(self) -> str:
        return f"Snapshot(version={self.version}, documents={len(self)})"


@dataclass(frozen=True)
class LoadReport:
    """Outcome of replaying a backing store.

    Attributes:
        documents: Live documents after replay
        tombstones: Tombstones still present in the file
        lines: Record lines accepted
        committed_size: Byte length of the accepted prefix
        torn_tail_bytes: Bytes after the accepted prefix (uncommitted write)
    """

    documents: int
    tombstones: int
    lines: int
    committed_size: int
    torn_tail_bytes: int

    @property
    def superseded_lines(self) -> int:
        return self.lines - self.documents

    @property
    def has_torn_tail(self) -> bool:
        return self.torn_tail_bytes > 0


class CollectionStore:
    """Live documents of one collection plus the bookkeeping compaction needs.

    The Mutation Log is the only writer. Readers use get() and snapshot().

    Example:
        >>> store = CollectionStore("users")
        >>> report = store.load(await backing.read_all())
        >>> store.get("alice")
        Document(id='alice', rev=3, data={...})
    """

    def __init__(self, name: str = "collection") -> None:
        self.name = name
        self._snapshot = Snapshot(MappingProxyType({}), version=0)
        self._tombstones: dict[str, int] = {}
        self._lines = 0
        self._committed_size = 0

    def load(self, data: bytes) -> LoadReport:
        """Replace the current state with a replay of data.

        Args:
            data: Full contents of the backing store

        Returns:
            LoadReport describing what was replayed

        Raises:
            CorruptStore: On an undecodable line before the final one, on a
                revision that does not increase for its id, or on a bulk write
                interrupted before the end of the file
        """
        last_newline = data.rfind(b"\n")
        ends_with_newline = last_newline == len(data) - 1
        raw_lines = data[: last_newline + 1].split(b"\n")[:-1]

        live: dict[str, Document] = {}
        tombstones: dict[str, int] = {}
        last_rev: dict[str, int] = {}
        accepted_lines = 0
        committed_size = 0
        # Lines of a multi-record append read so far; applied at its last line
        batch: list[Record] = []
        batch_bytes = 0
        batch_start = batch_count = 0

        for index, raw in enumerate(raw_lines):
            line_no = index + 1
            if not raw.strip():
                if batch:
                    raise self._interrupted_batch(batch_start, line_no)
                committed_size += len(raw) + 1
                accepted_lines += 1
                continue

            try:
                record, marker = decode_line(raw, line_no)
            except MalformedRecord as e:
                if index == len(raw_lines) - 1 and ends_with_newline:
                    # A terminated but undecodable final line is still an
                    # unfinished write, not corruption
                    logger.warning(
                        "Discarding undecodable final line",
                        extra={"collection": self.name, "line_no": line_no, "error": e.message},
                    )
                    break
                raise CorruptStore(
                    f"Undecodable record at line {line_no} of {self.name}: {e.message}",
                    line_no=line_no,
                ) from e

            previous = last_rev.get(record.id)
            if previous is not None and record.rev <= previous:
                raise CorruptStore(
                    f"Revision regression for {record.id} at line {line_no} of {self.name}: "
                    f"{record.rev} after {previous}",
                    line_no=line_no,
                    doc_id=record.id,
                )
            last_rev[record.id] = record.rev

            if marker is None:
                if batch:
                    raise self._interrupted_batch(batch_start, line_no)
                _apply_record(live, tombstones, record)
                accepted_lines += 1
                committed_size += len(raw) + 1
                continue

            position, count = marker
            if position != len(batch) + 1 or (batch and count != batch_count):
                raise CorruptStore(
                    f"Bulk line {position} of {count} out of sequence at line {line_no} of {self.name}",
                    line_no=line_no,
                    doc_id=record.id,
                )
            if not batch:
                batch_start, batch_count = line_no, count
            batch.append(record)
            batch_bytes += len(raw) + 1
            if position == count:
                for pending in batch:
                    _apply_record(live, tombstones, pending)
                accepted_lines += count
                committed_size += batch_bytes
                batch, batch_bytes = [], 0

        if batch:
            logger.warning(
                "Discarding incomplete bulk write",
                extra={"collection": self.name, "line_no": batch_start, "records": len(batch)},
            )
        torn_tail = len(data) - committed_size

        self._snapshot = Snapshot(MappingProxyType(live), version=0)
        self._tombstones = tombstones
        self._lines = accepted_lines
        self._committed_size = committed_size

        report = LoadReport(
            documents=len(live),
            tombstones=len(tombstones),
            lines=accepted_lines,
            committed_size=committed_size,
            torn_tail_bytes=torn_tail,
        )
        if report.has_torn_tail:
            logger.warning(
                "Ignoring torn tail of collection file",
                extra={"collection": self.name, "torn_tail_bytes": torn_tail},
            )
        logger.debug(
            "Loaded collection",
            extra={"collection": self.name, "documents": report.documents, "lines": report.lines},
        )
        return report

    def _interrupted_batch(self, batch_start: int, line_no: int) -> CorruptStore:
        return CorruptStore(
            f"Bulk write starting at line {batch_start} of {self.name} is interrupted at line {line_no}",
            line_no=line_no,
        )

    def get(self, doc_id: str) -> Document | None:
        return self._snapshot.get(doc_id)

    def snapshot(self) -> Snapshot:
        """Current immutable snapshot. O(1)."""
        return self._snapshot

    def tombstone_rev(self, doc_id: str) -> int | None:
        """Revision of the tombstone for doc_id still present in the file, if any."""
        return self._tombstones.get(doc_id)

    def apply(self, records: Sequence[Record], appended_bytes: int) -> Snapshot:
        """Install durably written records and publish a new snapshot.

        Args:
            records: Records in the order they were appended
            appended_bytes: Size of the append they came from

        Returns:
            The newly published snapshot
        """
        live = dict(self._snapshot._documents)
        for record in records:
            _apply_record(live, self._tombstones, record)
        self._lines += len(records)
        self._committed_size += appended_bytes
        self._snapshot = Snapshot(MappingProxyType(live), version=self._snapshot.version + 1)
        return self._snapshot

    def mark_compacted(self, size: int) -> None:
        """Record that the backing store now holds exactly one line per live document."""
        self._tombstones = {}
        self._lines = len(self._snapshot)
        self._committed_size = size

    @property
    def committed_size(self) -> int:
        """Byte length of the backing store content this state reflects."""
        return self._committed_size

    @property
    def line_count(self) -> int:
        return self._lines

    @property
    def superseded_lines(self) -> int:
        """Lines compaction would drop (old revisions, tombstones, blanks)."""
        return self._lines - len(self._snapshot)

    def __len__(self) -> int:
        return len(self._snapshot)


def _apply_record(live: dict[str, Document], tombstones: dict[str, int], record: Record) -> None:
    if isinstance(record, Tombstone):
        live.pop(record.id, None)
        tombstones[record.id] = record.rev
    else:
        live[record.id] = record
        tombstones.pop(record.id, None)
