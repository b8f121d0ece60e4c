"""
In-memory backing store implementation for testing.

This module provides a backing store that keeps the collection bytes in
process memory for:
- Unit tests
- Crash and failure simulation (torn writes, failed flushes)
- Ephemeral collections that never need to outlive the process

Invariants:
    - All data is lost on process exit
    - Provides the same append/flush/replace semantics as the file backend
    - Tracks the durable prefix separately from buffered bytes

How to change safely:
    - Keep interface compatible with the BackingStore protocol
    - Add failure modes as explicit one-shot switches
"""

from __future__ import annotations

import asyncio
import logging

from ..errors import WriteFailed
from .base import CommitToken

logger = logging.getLogger(__name__)


class InMemoryBackingStore:
    """In-memory implementation of BackingStore.

    Attributes:
        name: Label used in log records

    Failure injection:
        fail_next_append: Next append raises WriteFailed, nothing written
        torn_next_append: Next append writes only this many bytes, then fails
        fail_next_flush: Next flush raises WriteFailed (bytes stay buffered)
        fail_next_replace: Next atomic_replace raises WriteFailed

    Example:
        >>> store = InMemoryBackingStore()
        >>> token = await store.append(b'{"id":"a","rev":1}\\n')
        >>> await store.flush(token)
    """

    def __init__(self, initial: bytes = b"", name: str = "memory") -> None:
        self._name = name
        self._data = bytearray(initial)
        self._durable_size = len(initial)
        self._lock = asyncio.Lock()
        self.append_count = 0
        self.replace_count = 0
        self.fail_next_append = False
        self.torn_next_append: int | None = None
        self.fail_next_flush = False
        self.fail_next_replace = False

    @property
    def name(self) -> str:
        return self._name

    async def append(self, data: bytes) -> CommitToken:
        async with self._lock:
            if self.fail_next_append:
                self.fail_next_append = False
                raise WriteFailed(f"Injected append failure on {self._name}")

            offset = len(self._data)
            if self.torn_next_append is not None:
                keep = self.torn_next_append
                self.torn_next_append = None
                self._data.extend(data[:keep])
                raise WriteFailed(f"Injected torn write on {self._name} ({keep} of {len(data)} bytes)")

            self._data.extend(data)
            self.append_count += 1
            return CommitToken(offset=offset, length=len(data))

    async def flush(self, token: CommitToken) -> None:
        async with self._lock:
            if self.fail_next_flush:
                self.fail_next_flush = False
                raise WriteFailed(f"Injected flush failure on {self._name}", operation="flush")
            if token.end > len(self._data):
                raise WriteFailed(f"Token {token} is beyond the end of {self._name}", operation="flush")
            self._durable_size = max(self._durable_size, token.end)

    async def read_all(self) -> bytes:
        return bytes(self._data)

    async def atomic_replace(self, data: bytes) -> None:
        async with self._lock:
            if self.fail_next_replace:
                self.fail_next_replace = False
                raise WriteFailed(f"Injected replace failure on {self._name}", operation="replace")
            self._data = bytearray(data)
            self._durable_size = len(data)
            self.replace_count += 1
        logger.debug("In-memory store replaced", extra={"store": self._name, "size": len(data)})

    async def close(self) -> None:
        """Nothing to release; contents survive so the store can be reopened."""

    # Testing helpers

    @property
    def durable_size(self) -> int:
        return self._durable_size

    def simulate_crash(self, keep_unflushed: int = 0) -> None:
        """Drop buffered bytes as a crash would.

        Args:
            keep_unflushed: Number of unflushed bytes that made it to storage
                anyway (models a torn write)
        """
        end = min(len(self._data), self._durable_size + keep_unflushed)
        del self._data[end:]

    def lines(self) -> list[str]:
        """Complete lines currently stored (testing helper)."""
        text = bytes(self._data).decode("utf-8", errors="replace")
        return text.split("\n")[:-1]
