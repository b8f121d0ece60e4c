"""
Base protocol and types for backing stores.

A backing store is the byte-level home of one collection file. The engine
needs only four primitives from it:

    append(data)          -> CommitToken   buffered write of whole lines
    flush(token)                            make that write durable
    read_all()            -> bytes          full current contents
    atomic_replace(data)                    swap contents in one step

Invariants:
    - flush() returns only after the appended bytes are durable
    - atomic_replace() leaves either the old or the new contents, never a mix
    - read_all() reflects every append made so far, flushed or not

How to change safely:
    - Protocol changes require updating all implementations
    - New backends must pass the shared backing store tests
    - Encryption or alternate encodings wrap a backend, they do not change
      this protocol
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Protocol, runtime_checkable

if TYPE_CHECKING:
    from ..config import StorageConfig


@dataclass(frozen=True)
class CommitToken:
    """Identifies one append so it can be flushed.

    Attributes:
        offset: Byte offset where the appended data starts
        length: Number of bytes appended
    """

    offset: int
    length: int

    @property
    def end(self) -> int:
        return self.offset + self.length

    def __str__(self) -> str:
        return f"{self.offset}+{self.length}"


@runtime_checkable
class BackingStore(Protocol):
    """Protocol for the durable byte store behind a collection.

    Implementations:
        - LocalFileBackingStore: a file on the local filesystem
        - InMemoryBackingStore: process memory, for tests

    Errors:
        Implementations raise WriteFailed from append/flush/atomic_replace
        when the storage layer reports a failure.
    """

    @property
    def name(self) -> str:
        """Human readable location used in log records."""
        ...

    async def append(self, data: bytes) -> CommitToken:
        """Append bytes at the end of the store.

        The write may still be buffered; call flush() with the returned
        token to make it durable.
        """
        ...

    async def flush(self, token: CommitToken) -> None:
        """Make the write identified by token durable."""
        ...

    async def read_all(self) -> bytes:
        """Return the full current contents (empty for a new store)."""
        ...

    async def atomic_replace(self, data: bytes) -> None:
        """Replace the full contents with data in one durable step."""
        ...

    async def close(self) -> None:
        """Release any handles. The store may be reopened later."""
        ...


def create_backing_store(config: StorageConfig, collection: str) -> BackingStore:
    """Factory function to create the backing store for a collection.

    Args:
        config: Storage configuration
        collection: Sanitized collection name

    Returns:
        Appropriate BackingStore implementation

    Raises:
        ValueError: If backend is not supported
    """
    from ..config import StorageBackend
    from .file import LocalFileBackingStore
    from .memory import InMemoryBackingStore

    if config.backend == StorageBackend.FILE:
        path = config.data_dir / config.file_pattern.format(collection=collection)
        return LocalFileBackingStore(path, fsync=config.fsync)
    elif config.backend == StorageBackend.MEMORY:
        return InMemoryBackingStore(name=collection)
    else:
        raise ValueError(f"Unsupported storage backend: {config.backend}")
