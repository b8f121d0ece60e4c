"""
Backing store abstraction for linedb.

This module provides the byte-level storage interface a collection file
lives on:
- Local file (aiofiles, fsync, atomic rename)
- In-memory (for testing and ephemeral collections)

The backing store only moves bytes. Record encoding, replay and the
durability protocol live in the engine.

Invariants:
    - flush() returns only after durable storage is confirmed
    - atomic_replace() is all-or-nothing
    - A failed append may leave a partial tail; the engine repairs it

How to change safely:
    - New backends must implement the BackingStore protocol
    - Run the shared backing store tests against every implementation
"""

from .base import BackingStore, CommitToken, create_backing_store
from .file import LocalFileBackingStore
from .memory import InMemoryBackingStore

__all__ = [
    # Protocol and types
    "BackingStore",
    "CommitToken",
    # Factory
    "create_backing_store",
    # Implementations
    "LocalFileBackingStore",
    "InMemoryBackingStore",
]
