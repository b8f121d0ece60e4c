"""
Change feed: ordered in-process log of resolved mutations.

Every committed mutation publishes one ChangeEvent per affected document,
in application order, right after the Collection Store is updated. A bulk
request publishes one event per constituent request.

Consumers read by absolute offset:

    for event in feed.subscribe_from(0):         # what exists now
        ...
    async for event in feed.follow(next_offset):  # keeps waiting for more
        ...

Views and any future live-query layer are built as consumers of this feed;
the feed does no network delivery itself.

Invariants:
    - Offsets start at 0 and increase by one per event, without gaps
    - Events are never modified or reordered once published
    - An event is published only after its mutation is durable

How to change safely:
    - Keep publish() synchronous so it cannot interleave with another write
    - Retention only drops the oldest events; offsets never shift
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Iterator, Sequence
from dataclasses import dataclass, replace
from enum import Enum
from typing import Any

from ..errors import FeedOffsetExpired

logger = logging.getLogger(__name__)


class ChangeKind(str, Enum):
    """What happened to a document."""

    CREATED = "created"
    UPDATED = "updated"
    DELETED = "deleted"


@dataclass(frozen=True)
class ChangeEvent:
    """One resolved mutation.

    Attributes:
        kind: created, updated or deleted
        id: Document id
        rev: Revision after the mutation (the tombstone rev for deletes)
        value: New document body including id and rev (None for deletes)
        offset: Position in the feed, assigned on publish
    """

    kind: ChangeKind
    id: str
    rev: int
    value: dict[str, Any] | None = None
    offset: int = -1

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind.value,
            "id": self.id,
            "rev": self.rev,
            "value": self.value,
            "offset": self.offset,
        }


class ChangeFeed:
    """Append-only, replayable log of ChangeEvents for one collection.

    Attributes:
        retention: Keep at least this many recent events (0 = keep all).
            Older events are dropped in batches once twice as many are held.

    Thread safety:
        Single event loop. publish() is called by the Mutation Log while it
        holds the collection write lock.
    """

    def __init__(self, retention: int = 0) -> None:
        self.retention = retention
        self._events: list[ChangeEvent] = []
        self._first_offset = 0
        self._signal = asyncio.Event()
        self._closed = False

    @property
    def first_offset(self) -> int:
        """Oldest offset still retained."""
        return self._first_offset

    @property
    def next_offset(self) -> int:
        """Offset the next published event will get."""
        return self._first_offset + len(self._events)

    def __len__(self) -> int:
        return len(self._events)

    def publish(self, events: Sequence[ChangeEvent]) -> list[ChangeEvent]:
        """Assign offsets to events and append them.

        Returns:
            The published events with their offsets
        """
        published = []
        for event in events:
            event = replace(event, offset=self.next_offset)
            self._events.append(event)
            published.append(event)

        if self.retention and len(self._events) >= 2 * self.retention:
            excess = len(self._events) - self.retention
            del self._events[:excess]
            self._first_offset += excess
            logger.debug("Trimmed change feed", extra={"dropped": excess, "first_offset": self._first_offset})

        if published:
            signal, self._signal = self._signal, asyncio.Event()
            signal.set()
        return published

    def subscribe_from(self, offset: int = 0) -> Iterator[ChangeEvent]:
        """Lazily iterate events from offset to the current end of the feed.

        Each call returns a fresh iterator, so a consumer can restart from any
        retained offset.

        Raises:
            FeedOffsetExpired: If offset is older than the retained window
            ValueError: If offset is negative
        """
        if offset < 0:
            raise ValueError(f"Offset must be non-negative, got {offset}")
        if offset < self._first_offset:
            raise FeedOffsetExpired(offset, self._first_offset)
        return self._iter_from(offset)

    def _iter_from(self, offset: int) -> Iterator[ChangeEvent]:
        position = offset
        while True:
            index = position - self._first_offset
            if index < 0:
                raise FeedOffsetExpired(position, self._first_offset)
            if index >= len(self._events):
                return
            yield self._events[index]
            position += 1

    async def follow(self, offset: int = 0) -> AsyncIterator[ChangeEvent]:
        """Iterate events from offset, waiting for new ones until the feed closes.

        Raises:
            FeedOffsetExpired: If the consumer falls behind the retained window
        """
        position = offset
        while True:
            signal = self._signal
            for event in self.subscribe_from(position):
                yield event
                position = event.offset + 1
            if self._closed:
                return
            if position >= self.next_offset:
                await signal.wait()

    def close(self) -> None:
        """Stop all followers once they have drained the feed."""
        self._closed = True
        self._signal.set()
