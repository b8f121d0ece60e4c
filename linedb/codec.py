"""
Record codec for linedb collection files.

A collection file is a sequence of record lines. Each line is one JSON
object carrying the engine-managed fields `id` and `rev`; a line that also
carries the reserved marker `"_deleted": true` is a tombstone.

Canonical form:
    {"a":1,"id":"doc-1","name":"x","rev":3}

    - keys sorted at every nesting level
    - no insignificant whitespace (separators "," and ":")
    - non-ASCII text written as UTF-8, not escaped
    - integers in decimal form, floats in shortest round-trip form
    - NaN and Infinity rejected

Bulk marker:
    The lines of one multi-record append carry `"_txn": [position, count]`
    (1-based position). A replay applies them only once the line with
    position == count has been read, so an append cut short by a crash is
    discarded as a whole:

    {"_txn":[1,2],"id":"a","rev":1}
    {"_txn":[2,2],"id":"b","rev":1}

    Single-record appends and compaction output carry no marker.

Document bodies are read-only (FrozenDict / FrozenList all the way down),
so a document handed to a reader can never change the stored state.

Invariants:
    - encode() never produces an embedded line terminator
    - Semantically equal records encode to byte-identical lines
    - encode(decode(line)) == line for any canonical line without a bulk marker

How to change safely:
    - Any change to the canonical form rewrites every line on the next
      compaction; treat it as a file format change
    - Keep the tombstone and bulk marker names stable, old files depend on them
"""

from __future__ import annotations

import json
import math
from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, NoReturn, Union

from .errors import InvalidDocument, MalformedRecord

ID_FIELD = "id"
REV_FIELD = "rev"
DELETED_FIELD = "_deleted"
BATCH_FIELD = "_txn"

RESERVED_FIELDS = frozenset({ID_FIELD, REV_FIELD, DELETED_FIELD, BATCH_FIELD})

BatchMarker = tuple[int, int]


class FrozenDict(dict):
    """Read-only dict. Compares and serializes like a dict.

    copy.copy() and copy.deepcopy() return plain, mutable containers.
    """

    __slots__ = ()

    def _readonly(self, *args: Any, **kwargs: Any) -> NoReturn:
        raise TypeError(f"'{type(self).__name__}' object is read-only")

    __setitem__ = __delitem__ = __ior__ = _readonly  # type: ignore[assignment]
    clear = pop = popitem = setdefault = update = _readonly  # type: ignore[assignment]

    def __copy__(self) -> dict[str, Any]:
        return dict(self)

    def __deepcopy__(self, memo: dict[int, Any]) -> dict[str, Any]:
        return thaw(self)

    def __reduce__(self) -> tuple[Any, ...]:
        return (FrozenDict, (dict(self),))


class FrozenList(list):
    """Read-only list. Compares and serializes like a list."""

    __slots__ = ()

    def _readonly(self, *args: Any, **kwargs: Any) -> NoReturn:
        raise TypeError(f"'{type(self).__name__}' object is read-only")

    __setitem__ = __delitem__ = __iadd__ = __imul__ = _readonly  # type: ignore[assignment]
    append = extend = insert = pop = remove = clear = sort = reverse = _readonly  # type: ignore[assignment]

    def __copy__(self) -> list[Any]:
        return list(self)

    def __deepcopy__(self, memo: dict[int, Any]) -> list[Any]:
        return thaw(self)

    def __reduce__(self) -> tuple[Any, ...]:
        return (FrozenList, (list(self),))


def freeze(value: Any) -> Any:
    """Read-only copy of a JSON value (objects and arrays are converted recursively)."""
    if isinstance(value, (FrozenDict, FrozenList)):
        return value
    if isinstance(value, Mapping):
        return FrozenDict((key, freeze(item)) for key, item in value.items())
    if isinstance(value, (list, tuple)):
        return FrozenList(freeze(item) for item in value)
    return value


def thaw(value: Any) -> Any:
    """Plain mutable copy of a (possibly frozen) JSON value."""
    if isinstance(value, Mapping):
        return {key: thaw(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [thaw(item) for item in value]
    return value


class ValueKind(Enum):
    """Kinds of JSON values a document field can hold."""

    NULL = "null"
    BOOL = "bool"
    NUMBER = "number"
    STRING = "string"
    ARRAY = "array"
    OBJECT = "object"


def kind_of(value: Any) -> ValueKind:
    """Classify a decoded JSON value.

    Raises:
        TypeError: If the value is not representable as JSON
    """
    if value is None:
        return ValueKind.NULL
    # bool before int: True is an int in Python but not a number in JSON
    if isinstance(value, bool):
        return ValueKind.BOOL
    if isinstance(value, (int, float)):
        return ValueKind.NUMBER
    if isinstance(value, str):
        return ValueKind.STRING
    if isinstance(value, (list, tuple)):
        return ValueKind.ARRAY
    if isinstance(value, Mapping):
        return ValueKind.OBJECT
    raise TypeError(f"Not a JSON value: {type(value).__name__}")


@dataclass(frozen=True)
class Document:
    """A live document.

    Attributes:
        id: Unique identifier within the collection, immutable
        rev: Revision, starts at 1 and increases with every update
        data: User fields (never contains `id` or `rev`), frozen on construction

    Updates produce a new Document; `data` itself raises TypeError on any
    attempt to modify it. Use thaw(doc.data) for an editable copy.
    """

    id: str
    rev: int
    data: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(self, "data", freeze(self.data))

    def to_dict(self) -> dict[str, Any]:
        """Full record including the engine-managed fields."""
        record = dict(self.data)
        record[ID_FIELD] = self.id
        record[REV_FIELD] = self.rev
        return record

    @classmethod
    def from_dict(cls, record: Mapping[str, Any]) -> Document:
        """Inverse of to_dict()."""
        data = dict(record)
        return cls(id=data.pop(ID_FIELD), rev=data.pop(REV_FIELD), data=data)

    def get(self, key: str, default: Any = None) -> Any:
        if key == ID_FIELD:
            return self.id
        if key == REV_FIELD:
            return self.rev
        return self.data.get(key, default)

    def __getitem__(self, key: str) -> Any:
        if key == ID_FIELD:
            return self.id
        if key == REV_FIELD:
            return self.rev
        return self.data[key]


@dataclass(frozen=True)
class Tombstone:
    """Deletion marker for `id` at revision `rev`."""

    id: str
    rev: int

    def to_dict(self) -> dict[str, Any]:
        return {DELETED_FIELD: True, ID_FIELD: self.id, REV_FIELD: self.rev}


Record = Union[Document, Tombstone]


def validate_data(data: Mapping[str, Any], doc_id: str | None = None) -> None:
    """Check that a document body can be stored.

    Raises:
        InvalidDocument: On non-string keys, reserved keys, or values that
            are not JSON (sets, bytes, NaN, arbitrary objects)
    """
    if not isinstance(data, Mapping):
        raise InvalidDocument(f"Document must be an object, got {type(data).__name__}", doc_id)
    for reserved in (DELETED_FIELD, BATCH_FIELD):
        if reserved in data:
            raise InvalidDocument(f"'{reserved}' is a reserved field", doc_id)
    _validate_value(data, doc_id, path="")


def _validate_value(value: Any, doc_id: str | None, path: str) -> None:
    try:
        kind = kind_of(value)
    except TypeError as e:
        raise InvalidDocument(f"{e} at '{path or '.'}'", doc_id) from e

    if kind is ValueKind.NUMBER and isinstance(value, float) and not math.isfinite(value):
        raise InvalidDocument(f"Non-finite number at '{path or '.'}'", doc_id)
    elif kind is ValueKind.ARRAY:
        for i, item in enumerate(value):
            _validate_value(item, doc_id, f"{path}.{i}" if path else str(i))
    elif kind is ValueKind.OBJECT:
        for key, item in value.items():
            if not isinstance(key, str):
                raise InvalidDocument(f"Non-string key {key!r} at '{path or '.'}'", doc_id)
            _validate_value(item, doc_id, f"{path}.{key}" if path else key)


def encode(record: Record, batch: BatchMarker | None = None) -> str:
    """Encode a document or tombstone as one canonical line (no terminator).

    Args:
        record: Document or Tombstone
        batch: (position, count) of the line within a multi-record append

    Raises:
        InvalidDocument: If the document body is not storable
    """
    if isinstance(record, Document):
        validate_data(record.data, record.id)
    obj = record.to_dict()
    if batch is not None:
        obj[BATCH_FIELD] = list(batch)
    try:
        return json.dumps(
            obj,
            sort_keys=True,
            separators=(",", ":"),
            ensure_ascii=False,
            allow_nan=False,
        )
    except (TypeError, ValueError) as e:
        raise InvalidDocument(f"Cannot encode record: {e}", record.id) from e


def _reject_constant(name: str) -> Any:
    raise ValueError(f"non-finite number {name}")


def decode(line: str | bytes, line_no: int | None = None) -> Record:
    """Decode one record line, ignoring any bulk marker.

    Raises:
        MalformedRecord: If the line is not a valid record
    """
    return decode_line(line, line_no)[0]


def decode_line(line: str | bytes, line_no: int | None = None) -> tuple[Record, BatchMarker | None]:
    """Decode one record line together with its bulk marker.

    Args:
        line: Line text, with or without its trailing newline
        line_no: 1-based line number, used in error reports

    Returns:
        (Document or Tombstone, (position, count) or None)

    Raises:
        MalformedRecord: If the line is not a valid record
    """
    try:
        if isinstance(line, bytes):
            line = line.decode("utf-8")
        obj = json.loads(line, parse_constant=_reject_constant)
    except (UnicodeDecodeError, ValueError) as e:
        raise MalformedRecord(f"Invalid JSON: {e}", line_no) from e

    if not isinstance(obj, dict):
        raise MalformedRecord(f"Record must be an object, got {type(obj).__name__}", line_no)

    doc_id = obj.pop(ID_FIELD, None)
    if not isinstance(doc_id, str) or not doc_id:
        raise MalformedRecord("Record has a missing or invalid 'id'", line_no)

    rev = obj.pop(REV_FIELD, None)
    if isinstance(rev, bool) or not isinstance(rev, int) or rev < 1:
        raise MalformedRecord(f"Record {doc_id} has a missing or invalid 'rev'", line_no)

    batch = _pop_batch(obj, doc_id, line_no)

    if DELETED_FIELD in obj:
        if obj.pop(DELETED_FIELD) is not True or obj:
            raise MalformedRecord(f"Tombstone for {doc_id} is malformed", line_no)
        return Tombstone(id=doc_id, rev=rev), batch

    return Document(id=doc_id, rev=rev, data=obj), batch


def _pop_batch(obj: dict[str, Any], doc_id: str, line_no: int | None) -> BatchMarker | None:
    if BATCH_FIELD not in obj:
        return None
    marker = obj.pop(BATCH_FIELD)
    if (
        isinstance(marker, list)
        and len(marker) == 2
        and all(isinstance(n, int) and not isinstance(n, bool) for n in marker)
        and 1 <= marker[0] <= marker[1]
    ):
        return marker[0], marker[1]
    raise MalformedRecord(f"Record {doc_id} has an invalid '{BATCH_FIELD}' marker", line_no)


def canonicalize(record: Record) -> tuple[str, Record]:
    """Encode a record and decode it back.

    The returned record is exactly what a replay of the returned line
    produces (tuples become lists, the body is a private frozen copy).
    """
    line = encode(record)
    return line, decode(line)
