"""
Error types for VoteStore.

This module defines the exception taxonomy shared by the store, the
query cache and the reconciliation engine:
- VoteStoreError: Base exception
- StoreUnavailable: Platform storage not open yet (or failed to open)
- DuplicateKey: Document id or unique index collision on write
- DocumentNotFound: Update/delete of a missing document
- UnknownCollection: Collection not declared in the catalog
- InvalidDocument: Field value outside the supported value kinds
- MalformedSelector: Unsupported operator or selector shape
- ReconciliationDrift: Optimistic cache disagrees with the store

Invariants:
    - All errors inherit from VoteStoreError
    - Errors carry a stable code plus structured details
    - MalformedSelector and ReconciliationDrift are never raised to UI
      readers; they are logged and handled where detected
"""

from __future__ import annotations

from typing import Any, Dict, Optional


class VoteStoreError(Exception):
    """Base exception for all VoteStore errors.

    Attributes:
        message: Error message
        code: Error code for programmatic handling
        details: Additional error context
    """

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or "VOTESTORE_ERROR"
        self.details = details or {}


class StoreUnavailable(VoteStoreError):
    """Document store is not open.

    Raised when:
    - An operation is issued before open() completed
    - The underlying SQLite file cannot be opened

    Callers waiting on readiness retry; the store never retries itself.
    """

    def __init__(self, message: str, path: Optional[str] = None) -> None:
        super().__init__(message, code="STORE_UNAVAILABLE", details={"path": path})
        self.path = path


class DuplicateKey(VoteStoreError):
    """A write collided with an existing id or unique index key."""

    def __init__(
        self,
        message: str,
        collection: str,
        index: str,
        key: Any = None,
    ) -> None:
        super().__init__(
            message,
            code="DUPLICATE_KEY",
            details={"collection": collection, "index": index, "key": key},
        )
        self.collection = collection
        self.index = index
        self.key = key


class DocumentNotFound(VoteStoreError):
    """Document does not exist in the collection."""

    def __init__(self, collection: str, doc_id: str) -> None:
        super().__init__(
            f"Document '{doc_id}' not found in {collection}",
            code="DOCUMENT_NOT_FOUND",
            details={"collection": collection, "id": doc_id},
        )
        self.collection = collection
        self.doc_id = doc_id


class UnknownCollection(VoteStoreError):
    """Collection is not part of the store catalog."""

    def __init__(self, collection: str) -> None:
        super().__init__(
            f"Unknown collection: {collection}",
            code="UNKNOWN_COLLECTION",
            details={"collection": collection},
        )
        self.collection = collection


class InvalidDocument(VoteStoreError):
    """Document contains a value of an unsupported kind."""

    def __init__(self, message: str, field_name: Optional[str] = None) -> None:
        super().__init__(message, code="INVALID_DOCUMENT", details={"field": field_name})
        self.field_name = field_name


class MalformedSelector(VoteStoreError):
    """Selector uses an unsupported operator or shape.

    Read paths treat a malformed selector as matching nothing.
    """

    def __init__(self, message: str, operator: Optional[str] = None) -> None:
        super().__init__(message, code="MALFORMED_SELECTOR", details={"operator": operator})
        self.operator = operator


class ReconciliationDrift(VoteStoreError):
    """Optimistic cache and document store disagree for a student.

    Detected and corrected by the background revalidation pass.
    """

    def __init__(
        self,
        course: str,
        student_id: str,
        cached: Optional[Dict[str, Any]],
        truth: Dict[str, Any],
    ) -> None:
        super().__init__(
            f"Cache drift for student {student_id} in {course}",
            code="RECONCILIATION_DRIFT",
            details={
                "course": course,
                "student_id": student_id,
                "cached": cached,
                "truth": truth,
            },
        )
        self.course = course
        self.student_id = student_id
        self.cached = cached
        self.truth = truth
