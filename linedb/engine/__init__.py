"""
Storage, mutation and query engine for linedb collections.

Components of one collection:

    MutationLog ──▶ BackingStore (append + flush)
         │
         ├──▶ CollectionStore (snapshot) ◀── QueryEngine, ViewRegistry
         │
         └──▶ ChangeFeed ──▶ ViewRegistry, external consumers

    Compactor ──▶ BackingStore (atomic_replace), under the MutationLog lock

Invariants:
    - The backing store is the source of truth; the store is a replay of it
    - Memory changes only after the bytes are durable
    - Readers never take a lock
"""

from .compactor import CompactionReport, Compactor, needs_compaction, render
from .feed import ChangeEvent, ChangeFeed, ChangeKind
from .mutations import (
    Delete,
    Insert,
    MutationLog,
    MutationRequest,
    MutationResult,
    Resolution,
    Update,
    WriteOutcome,
    merge_patch,
)
from .query import (
    ABSENT,
    And,
    Contains,
    Eq,
    Exists,
    FieldRef,
    Ge,
    Gt,
    In,
    Le,
    Lt,
    Match,
    Ne,
    Not,
    Or,
    Predicate,
    QueryEngine,
    project,
    resolve_path,
    where,
)
from .store import CollectionStore, LoadReport, Snapshot
from .views import View, ViewRegistry

__all__ = [
    # Store
    "CollectionStore",
    "LoadReport",
    "Snapshot",
    # Mutations
    "MutationLog",
    "MutationRequest",
    "MutationResult",
    "Insert",
    "Update",
    "Delete",
    "Resolution",
    "WriteOutcome",
    "merge_patch",
    # Query
    "QueryEngine",
    "Predicate",
    "FieldRef",
    "where",
    "Eq",
    "Ne",
    "Lt",
    "Le",
    "Gt",
    "Ge",
    "In",
    "Contains",
    "Exists",
    "Match",
    "And",
    "Or",
    "Not",
    "ABSENT",
    "project",
    "resolve_path",
    # Compaction
    "Compactor",
    "CompactionReport",
    "needs_compaction",
    "render",
    # Feed and views
    "ChangeFeed",
    "ChangeEvent",
    "ChangeKind",
    "View",
    "ViewRegistry",
]
