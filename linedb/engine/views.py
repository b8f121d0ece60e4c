"""
Views: secondary indexes over a collection.

A view is a named indexer function mapping a document to zero or more
index keys. The registry builds each view from the current snapshot and
then keeps it current as a Change Feed consumer:

    views.add("by_email", lambda doc: doc.get("email"))
    views.find("by_email", "a@example.com")   -> [Document(...)]

Views are caught up lazily, right before a lookup, so writes never pay for
indexing. If the feed no longer retains the events a view needs, the view
is rebuilt from the snapshot.

Invariants:
    - find() only returns live documents, in id order
    - A view reflects every event up to the feed offset it has consumed
    - Index keys are strings or integers

How to change safely:
    - Indexers must be pure functions of the document
    - Keep catch-up and lookup free of awaits so they see one consistent state
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from typing import Any, Union

from ..codec import Document
from ..errors import FeedOffsetExpired, ViewNotFound
from .feed import ChangeEvent, ChangeFeed, ChangeKind
from .store import CollectionStore, Snapshot

logger = logging.getLogger(__name__)

IndexKey = Union[str, int]
Indexer = Callable[[Document], Any]


def index_keys(indexer: Indexer, doc: Document) -> tuple[IndexKey, ...]:
    """Run an indexer and normalize its result to a tuple of keys.

    The indexer may return None (no keys), a single key, or an iterable of keys.

    Raises:
        TypeError: If a key is not a string or an integer
    """
    result = indexer(doc)
    if result is None:
        return ()
    keys: Iterable[Any] = (result,) if isinstance(result, (str, int)) else result
    normalized = []
    for key in keys:
        if isinstance(key, bool) or not isinstance(key, (str, int)):
            raise TypeError(f"Index key must be str or int, got {type(key).__name__}")
        if key not in normalized:
            normalized.append(key)
    return tuple(normalized)


class View:
    """One secondary index, maintained from change events.

    Attributes:
        name: View name
        indexer: Function from document to index keys
        offset: Next feed offset this view has not consumed
    """

    def __init__(self, name: str, indexer: Indexer) -> None:
        self.name = name
        self.indexer = indexer
        self.offset = 0
        self._ids_by_key: dict[IndexKey, set[str]] = {}
        self._keys_by_id: dict[str, tuple[IndexKey, ...]] = {}

    def rebuild(self, snapshot: Snapshot, offset: int) -> None:
        self._ids_by_key = {}
        self._keys_by_id = {}
        for doc in snapshot.documents():
            self._index(doc.id, index_keys(self.indexer, doc))
        self.offset = offset

    def apply(self, event: ChangeEvent) -> None:
        self._unindex(event.id)
        if event.kind is not ChangeKind.DELETED and event.value is not None:
            doc = Document.from_dict(event.value)
            self._index(doc.id, index_keys(self.indexer, doc))
        self.offset = event.offset + 1

    def ids_for(self, key: IndexKey) -> list[str]:
        return sorted(self._ids_by_key.get(key, ()))

    def keys(self) -> list[IndexKey]:
        return list(self._ids_by_key)

    def _index(self, doc_id: str, keys: tuple[IndexKey, ...]) -> None:
        if not keys:
            return
        self._keys_by_id[doc_id] = keys
        for key in keys:
            self._ids_by_key.setdefault(key, set()).add(doc_id)

    def _unindex(self, doc_id: str) -> None:
        for key in self._keys_by_id.pop(doc_id, ()):
            ids = self._ids_by_key.get(key)
            if ids is None:
                continue
            ids.discard(doc_id)
            if not ids:
                del self._ids_by_key[key]

    def __repr__(self) -> str:
        return f"View({self.name!r}, keys={len(self._ids_by_key)}, offset={self.offset})"


class ViewRegistry:
    """Named views of one collection.

    Example:
        >>> views = ViewRegistry(store, feed)
        >>> views.add("by_tag", lambda doc: doc.get("tags"))
        >>> [doc.id for doc in views.find("by_tag", "red")]
        ['a', 'c']
    """

    def __init__(self, store: CollectionStore, feed: ChangeFeed) -> None:
        self.store = store
        self.feed = feed
        self._views: dict[str, View] = {}

    def add(self, name: str, indexer: Indexer) -> View:
        """Register a view and build it from the current snapshot.

        Registering an existing name replaces that view.
        """
        view = View(name, indexer)
        view.rebuild(self.store.snapshot(), self.feed.next_offset)
        if name in self._views:
            logger.info("Replacing view", extra={"collection": self.store.name, "view": name})
        self._views[name] = view
        return view

    def remove(self, name: str) -> None:
        if self._views.pop(name, None) is None:
            raise ViewNotFound(name)

    def names(self) -> list[str]:
        return sorted(self._views)

    def get(self, name: str) -> View:
        """The named view, caught up with the feed.

        Raises:
            ViewNotFound: If no view has this name
        """
        view = self._views.get(name)
        if view is None:
            raise ViewNotFound(name)
        self._catch_up(view)
        return view

    def find(self, name: str, key: IndexKey) -> list[Document]:
        """Live documents indexed under key in the named view, in id order.

        Raises:
            ViewNotFound: If no view has this name
        """
        view = self.get(name)
        snapshot = self.store.snapshot()
        return [snapshot[doc_id] for doc_id in view.ids_for(key) if doc_id in snapshot]

    def _catch_up(self, view: View) -> None:
        try:
            for event in self.feed.subscribe_from(view.offset):
                view.apply(event)
        except FeedOffsetExpired:
            logger.info(
                "View fell behind the change feed, rebuilding",
                extra={"collection": self.store.name, "view": view.name, "offset": view.offset},
            )
            view.rebuild(self.store.snapshot(), self.feed.next_offset)
