"""
linedb - Embedded document store on newline-delimited JSON files.

Every collection is one text file with one JSON document per line, so the
data diffs and merges cleanly under version control while staying
queryable from Python:

    {"email":"a@example.com","id":"alice","rev":2}
    {"_deleted":true,"id":"bob","rev":4}

Architecture:
    ┌─────────────┐     ┌─────────────┐     ┌─────────────────┐
    │ Application │────▶│ Collection  │────▶│   MutationLog   │
    │             │     │             │     │ resolve → write │
    └─────────────┘     └──────┬──────┘     └────────┬────────┘
                               │                     │ append + flush
                               │                     ▼
                               │        ┌─────────────────────────┐
                               │        │ BackingStore (*.jsonl)  │
                               │        └─────────────────────────┘
                               │                     ▲ atomic_replace
                        ┌──────┴───────┬─────────────┼──────────┐
                        ▼              ▼             │          ▼
                  ┌───────────┐  ┌──────────┐  ┌─────┴─────┐ ┌──────────┐
                  │QueryEngine│  │ChangeFeed│  │ Compactor │ │  Views   │
                  │(snapshots)│  │          │  │           │ │          │
                  └───────────┘  └──────────┘  └───────────┘ └──────────┘

Invariants:
    - The collection file is the source of truth; memory is a replay of it
    - A mutation is visible only after its bytes are durable
    - rev strictly increases per id; there is one live document per id
    - Bulk mutations are all-or-nothing for readers and for the file

How to change safely:
    - The canonical line format is a file format; change it additively
    - Keep readers lock-free: they only ever see immutable snapshots
"""

from ._version import __version__
from .backing import InMemoryBackingStore, LocalFileBackingStore
from .codec import Document, Tombstone
from .collection import Collection, CollectionStats
from .config import LinedbConfig
from .database import Database
from .engine import ChangeEvent, ChangeKind, Delete, Insert, MutationResult, Update, where
from .errors import (
    BulkPartialFailure,
    CollectionClosed,
    CompactionFailed,
    CorruptStore,
    DuplicateId,
    FeedOffsetExpired,
    InvalidDocument,
    LinedbError,
    MalformedRecord,
    MutationTimeout,
    NotFound,
    RevisionConflict,
    ViewNotFound,
    WriteFailed,
)
from .observability import setup_logging

__all__ = [
    "__version__",
    # Entry points
    "Database",
    "Collection",
    "CollectionStats",
    "LinedbConfig",
    "setup_logging",
    # Data
    "Document",
    "Tombstone",
    "Insert",
    "Update",
    "Delete",
    "MutationResult",
    "ChangeEvent",
    "ChangeKind",
    "where",
    # Backing stores
    "LocalFileBackingStore",
    "InMemoryBackingStore",
    # Errors
    "LinedbError",
    "MalformedRecord",
    "CorruptStore",
    "InvalidDocument",
    "DuplicateId",
    "NotFound",
    "RevisionConflict",
    "BulkPartialFailure",
    "WriteFailed",
    "CompactionFailed",
    "MutationTimeout",
    "CollectionClosed",
    "FeedOffsetExpired",
    "ViewNotFound",
]
