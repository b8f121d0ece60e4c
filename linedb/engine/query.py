"""
Query engine: predicates and projections over collection snapshots.

A query captures the current snapshot when it is called and then lazily
walks it in id order. Mutations committed while a query is being iterated
are not visible to it; calling query() again sees them.

Predicates evaluate to one of three values:

    True    the document matches
    False   the document does not match
    None    the predicate cannot be decided (field absent, or values of
            different kinds compared for order)

And/Or/Not combine them with Kleene logic and a document is returned only
when the whole predicate is True, so a predicate over a field some
documents lack simply excludes those documents.

Example:
    >>> adults = where("age") >= 18
    >>> named = where("name").exists()
    >>> list(engine.query(adults & ~(where("role") == "admin"), projection=["name"]))

Invariants:
    - Queries never modify the store or the snapshot they read
    - Values of different kinds are never equal (1 != True, 1 != "1")
    - Only numbers and strings have an order

How to change safely:
    - New predicates must return None, not raise, for absent fields
    - Keep evaluation free of I/O; queries must never wait on storage
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable, Iterator, Mapping, Sequence
from typing import Any

from ..codec import ID_FIELD, REV_FIELD, Document, FrozenDict, ValueKind, kind_of
from .store import CollectionStore, Snapshot

logger = logging.getLogger(__name__)


class _Absent:
    def __repr__(self) -> str:
        return "ABSENT"


ABSENT: Any = _Absent()

_ORDERED_KINDS = (ValueKind.NUMBER, ValueKind.STRING)


def resolve_path(doc: Document, path: str) -> Any:
    """Value at a dotted path, or ABSENT.

    Numeric segments index arrays: "tags.0" is the first tag.
    """
    head, _, rest = path.partition(".")
    if head == ID_FIELD and not rest:
        return doc.id
    if head == REV_FIELD and not rest:
        return doc.rev
    if head not in doc.data:
        return ABSENT
    value = doc.data[head]
    if not rest:
        return value
    for segment in rest.split("."):
        if isinstance(value, Mapping):
            if segment not in value:
                return ABSENT
            value = value[segment]
        elif isinstance(value, list) and segment.isdigit():
            index = int(segment)
            if index >= len(value):
                return ABSENT
            value = value[index]
        else:
            return ABSENT
    return value


def values_equal(left: Any, right: Any) -> bool:
    """Kind-aware equality: values of different kinds are never equal."""
    left_kind, right_kind = kind_of(left), kind_of(right)
    if left_kind is not right_kind:
        return False
    if left_kind is ValueKind.ARRAY:
        return len(left) == len(right) and all(values_equal(a, b) for a, b in zip(left, right))
    if left_kind is ValueKind.OBJECT:
        return left.keys() == right.keys() and all(values_equal(left[k], right[k]) for k in left)
    return left == right


def compare(left: Any, right: Any) -> int | None:
    """Three-way comparison of two numbers or two strings; None otherwise."""
    left_kind, right_kind = kind_of(left), kind_of(right)
    if left_kind is not right_kind or left_kind not in _ORDERED_KINDS:
        return None
    return (left > right) - (left < right)


class Predicate:
    """Base class for query predicates.

    Subclasses implement evaluate(). Predicates compose with `&`, `|`, `~`.
    """

    def evaluate(self, doc: Document) -> bool | None:
        raise NotImplementedError

    def matches(self, doc: Document) -> bool:
        return self.evaluate(doc) is True

    def __and__(self, other: Predicate) -> And:
        return And(self, other)

    def __or__(self, other: Predicate) -> Or:
        return Or(self, other)

    def __invert__(self) -> Not:
        return Not(self)


class _FieldPredicate(Predicate):
    def __init__(self, path: str, value: Any = None) -> None:
        self.path = path
        self.value = value

    def evaluate(self, doc: Document) -> bool | None:
        actual = resolve_path(doc, self.path)
        if actual is ABSENT:
            return None
        return self.test(actual)

    def test(self, actual: Any) -> bool | None:
        raise NotImplementedError

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.path!r}, {self.value!r})"


class Eq(_FieldPredicate):
    def test(self, actual: Any) -> bool | None:
        return values_equal(actual, self.value)


class Ne(_FieldPredicate):
    def test(self, actual: Any) -> bool | None:
        return not values_equal(actual, self.value)


class _Ordered(_FieldPredicate):
    def test(self, actual: Any) -> bool | None:
        result = compare(actual, self.value)
        if result is None:
            return None
        return self.accept(result)

    def accept(self, result: int) -> bool:
        raise NotImplementedError


class Lt(_Ordered):
    def accept(self, result: int) -> bool:
        return result < 0


class Le(_Ordered):
    def accept(self, result: int) -> bool:
        return result <= 0


class Gt(_Ordered):
    def accept(self, result: int) -> bool:
        return result > 0


class Ge(_Ordered):
    def accept(self, result: int) -> bool:
        return result >= 0


class In(_FieldPredicate):
    """Field equals one of the given values."""

    def __init__(self, path: str, values: Iterable[Any]) -> None:
        super().__init__(path, tuple(values))

    def test(self, actual: Any) -> bool | None:
        return any(values_equal(actual, candidate) for candidate in self.value)


class Contains(_FieldPredicate):
    """Array field holds the value, string field has the substring, or object field has the key."""

    def test(self, actual: Any) -> bool | None:
        kind = kind_of(actual)
        if kind is ValueKind.ARRAY:
            return any(values_equal(item, self.value) for item in actual)
        if kind in (ValueKind.STRING, ValueKind.OBJECT) and isinstance(self.value, str):
            return self.value in actual
        return None


class Exists(Predicate):
    """Field is present (null counts as present). Never undecided."""

    def __init__(self, path: str) -> None:
        self.path = path

    def evaluate(self, doc: Document) -> bool | None:
        return resolve_path(doc, self.path) is not ABSENT

    def __repr__(self) -> str:
        return f"Exists({self.path!r})"


class Match(Predicate):
    """Arbitrary test on the whole document."""

    def __init__(self, func: Callable[[Document], bool | None]) -> None:
        self.func = func

    def evaluate(self, doc: Document) -> bool | None:
        return self.func(doc)


class And(Predicate):
    def __init__(self, *operands: Predicate) -> None:
        self.operands = operands

    def evaluate(self, doc: Document) -> bool | None:
        undecided = False
        for operand in self.operands:
            result = operand.evaluate(doc)
            if result is False:
                return False
            if result is None:
                undecided = True
        return None if undecided else True

    def __repr__(self) -> str:
        return f"And{self.operands!r}"


class Or(Predicate):
    def __init__(self, *operands: Predicate) -> None:
        self.operands = operands

    def evaluate(self, doc: Document) -> bool | None:
        undecided = False
        for operand in self.operands:
            result = operand.evaluate(doc)
            if result is True:
                return True
            if result is None:
                undecided = True
        return None if undecided else False

    def __repr__(self) -> str:
        return f"Or{self.operands!r}"


class Not(Predicate):
    def __init__(self, operand: Predicate) -> None:
        self.operand = operand

    def evaluate(self, doc: Document) -> bool | None:
        result = self.operand.evaluate(doc)
        return None if result is None else not result

    def __repr__(self) -> str:
        return f"Not({self.operand!r})"


class FieldRef:
    """Builds predicates on one field path: `where("age") >= 18`."""

    __hash__ = None  # type: ignore[assignment]

    def __init__(self, path: str) -> None:
        self.path = path

    def __eq__(self, value: Any) -> Eq:  # type: ignore[override]
        return Eq(self.path, value)

    def __ne__(self, value: Any) -> Ne:  # type: ignore[override]
        return Ne(self.path, value)

    def __lt__(self, value: Any) -> Lt:
        return Lt(self.path, value)

    def __le__(self, value: Any) -> Le:
        return Le(self.path, value)

    def __gt__(self, value: Any) -> Gt:
        return Gt(self.path, value)

    def __ge__(self, value: Any) -> Ge:
        return Ge(self.path, value)

    def isin(self, values: Iterable[Any]) -> In:
        return In(self.path, values)

    def contains(self, value: Any) -> Contains:
        return Contains(self.path, value)

    def exists(self) -> Exists:
        return Exists(self.path)


def where(path: str) -> FieldRef:
    return FieldRef(path)


def as_predicate(criteria: Predicate | Mapping[str, Any] | None) -> Predicate | None:
    """Accept a Predicate or an equality mapping such as {"status": "open"}."""
    if criteria is None or isinstance(criteria, Predicate):
        return criteria
    if isinstance(criteria, Mapping):
        return And(*(Eq(path, value) for path, value in criteria.items()))
    raise TypeError(f"Not a predicate: {criteria!r}")


def project(doc: Document, paths: Sequence[str]) -> Document:
    """Document keeping only the given paths of doc (id and rev are always kept).

    Paths address object fields; a path that crosses an array keeps the
    whole array at that point. Kept values are shared with doc, which is
    safe because document bodies are frozen.
    """
    data: dict[str, Any] = {}
    for path in paths:
        if path in (ID_FIELD, REV_FIELD):
            continue
        found = _walk_for_projection(doc.data, path.split("."))
        if found is None:
            continue
        keys, value = found
        target = data
        for key in keys[:-1]:
            target = target.setdefault(key, {})
            if isinstance(target, FrozenDict):
                # An enclosing path is already kept whole
                break
        else:
            target[keys[-1]] = value
    return Document(id=doc.id, rev=doc.rev, data=data)


def _walk_for_projection(source: Any, segments: list[str]) -> tuple[list[str], Any] | None:
    for depth, segment in enumerate(segments):
        if not isinstance(source, Mapping) or segment not in source:
            return None
        value = source[segment]
        if depth == len(segments) - 1 or isinstance(value, list):
            return segments[: depth + 1], value
        source = value
    return None


class QueryEngine:
    """Evaluates predicates and projections against collection snapshots.

    Example:
        >>> engine = QueryEngine(store)
        >>> for doc in engine.query(where("status") == "open", limit=10):
        ...     print(doc.id)
    """

    def __init__(self, store: CollectionStore) -> None:
        self.store = store

    def query(
        self,
        predicate: Predicate | Mapping[str, Any] | None = None,
        projection: Sequence[str] | None = None,
        limit: int | None = None,
    ) -> Iterator[Document]:
        """Lazily yield matching documents in id order.

        The snapshot is captured now, not at first iteration.

        Args:
            predicate: Filter (None matches everything)
            projection: Field paths to keep (None returns full documents)
            limit: Maximum number of documents to yield
        """
        if limit is not None and limit < 0:
            raise ValueError(f"limit must be non-negative, got {limit}")
        snapshot = self.store.snapshot()
        return self._scan(snapshot, as_predicate(predicate), projection, limit)

    @staticmethod
    def _scan(
        snapshot: Snapshot,
        predicate: Predicate | None,
        projection: Sequence[str] | None,
        limit: int | None,
    ) -> Iterator[Document]:
        produced = 0
        for doc in snapshot.documents():
            if limit is not None and produced >= limit:
                return
            if predicate is not None and not predicate.matches(doc):
                continue
            produced += 1
            yield project(doc, projection) if projection is not None else doc

    def count(self, predicate: Predicate | Mapping[str, Any] | None = None) -> int:
        if predicate is None:
            return len(self.store)
        return sum(1 for _ in self.query(predicate))

    def first(self, predicate: Predicate | Mapping[str, Any] | None = None) -> Document | None:
        return next(self.query(predicate, limit=1), None)
