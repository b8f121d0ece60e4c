"""
Error types for linedb.

This module defines every exception raised by the engine:
- LinedbError: Base exception
- MalformedRecord: One record line could not be decoded
- CorruptStore: Collection file is inconsistent and cannot be loaded
- DuplicateId / NotFound / RevisionConflict: Expected mutation failures
- BulkPartialFailure: A bulk request was rejected as a whole
- WriteFailed: The durable append did not complete

Invariants:
    - All errors inherit from LinedbError
    - Errors carry a stable code plus structured details for logging
    - Validation failures leave collection state untouched

How to change safely:
    - Add new error types as subclasses, never rename codes
    - Keep details JSON-serializable (they end up in log records)
"""

from __future__ import annotations

from typing import Any


class LinedbError(Exception):
    """Base exception for all linedb errors.

    Attributes:
        message: Error message
        code: Error code for programmatic handling
        details: Additional error context
    """

    def __init__(
        self,
        message: str,
        code: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or "LINEDB_ERROR"
        self.details = details or {}


class MalformedRecord(LinedbError):
    """A record line is not a valid document or tombstone.

    Raised when:
    - The line is not valid JSON
    - The top-level value is not an object
    - `id` is missing, empty or not a string
    - `rev` is missing or not a positive integer
    """

    def __init__(self, message: str, line_no: int | None = None) -> None:
        super().__init__(message, code="MALFORMED_RECORD", details={"line_no": line_no})
        self.line_no = line_no


class CorruptStore(LinedbError):
    """The backing store cannot be replayed into a consistent snapshot.

    Fatal to the load of that collection. The file must be repaired
    (see `linedb-check`) before the collection can be opened.
    """

    def __init__(self, message: str, line_no: int | None = None, doc_id: str | None = None) -> None:
        super().__init__(
            message,
            code="CORRUPT_STORE",
            details={"line_no": line_no, "id": doc_id},
        )
        self.line_no = line_no
        self.doc_id = doc_id


class InvalidDocument(LinedbError):
    """Document body cannot be stored (non-JSON value, reserved key, id clash)."""

    def __init__(self, message: str, doc_id: str | None = None) -> None:
        super().__init__(message, code="INVALID_DOCUMENT", details={"id": doc_id})
        self.doc_id = doc_id


class DuplicateId(LinedbError):
    """Insert targeted an id that is already live."""

    def __init__(self, doc_id: str) -> None:
        super().__init__(f"Document already exists: {doc_id}", code="DUPLICATE_ID", details={"id": doc_id})
        self.doc_id = doc_id


class NotFound(LinedbError):
    """Update or delete targeted an id with no live document."""

    def __init__(self, doc_id: str) -> None:
        super().__init__(f"Document not found: {doc_id}", code="NOT_FOUND", details={"id": doc_id})
        self.doc_id = doc_id


class RevisionConflict(LinedbError):
    """The expected revision does not match the current one.

    Raised by optimistic concurrency checks. The caller decides whether to
    re-read and retry or to merge.
    """

    def __init__(self, doc_id: str, expected_rev: int, actual_rev: int) -> None:
        super().__init__(
            f"Revision conflict on {doc_id}: expected {expected_rev}, current {actual_rev}",
            code="REVISION_CONFLICT",
            details={"id": doc_id, "expected_rev": expected_rev, "actual_rev": actual_rev},
        )
        self.doc_id = doc_id
        self.expected_rev = expected_rev
        self.actual_rev = actual_rev


class BulkPartialFailure(LinedbError):
    """One request of a bulk operation failed, so none of them was applied.

    Attributes:
        index: Position of the failing request in the bulk sequence
        cause: The error that request produced
    """

    def __init__(self, index: int, cause: LinedbError) -> None:
        super().__init__(
            f"Bulk request {index} failed: {cause.message}",
            code="BULK_PARTIAL_FAILURE",
            details={"index": index, "cause": cause.code},
        )
        self.index = index
        self.cause = cause


class WriteFailed(LinedbError):
    """The durable append or flush did not complete.

    Collection state is the pre-call state; retrying the same request is safe.
    """

    def __init__(self, message: str, operation: str = "append") -> None:
        super().__init__(message, code="WRITE_FAILED", details={"operation": operation})
        self.operation = operation


class CompactionFailed(LinedbError):
    """Rewrite of the backing store failed; the previous file is still the durable state."""

    def __init__(self, message: str) -> None:
        super().__init__(message, code="COMPACTION_FAILED")


class MutationTimeout(LinedbError):
    """The mutation was not accepted before its timeout elapsed. Nothing was written."""

    def __init__(self, timeout: float) -> None:
        super().__init__(
            f"Mutation not accepted within {timeout}s",
            code="MUTATION_TIMEOUT",
            details={"timeout": timeout},
        )
        self.timeout = timeout


class CollectionClosed(LinedbError):
    """Operation attempted on a collection that has been closed."""

    def __init__(self, name: str) -> None:
        super().__init__(f"Collection is closed: {name}", code="COLLECTION_CLOSED", details={"collection": name})
        self.name = name


class FeedOffsetExpired(LinedbError):
    """Requested change feed offset is older than the retained window."""

    def __init__(self, offset: int, first_retained: int) -> None:
        super().__init__(
            f"Offset {offset} is no longer retained (first retained: {first_retained})",
            code="FEED_OFFSET_EXPIRED",
            details={"offset": offset, "first_retained": first_retained},
        )
        self.offset = offset
        self.first_retained = first_retained


class ViewNotFound(LinedbError):
    """No view is registered under the requested name."""

    def __init__(self, name: str) -> None:
        super().__init__(f"View not found: {name}", code="VIEW_NOT_FOUND", details={"view": name})
        self.name = name
