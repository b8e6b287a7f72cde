"""
Store module for VoteStore - documents, indexes and query caching.

This module handles:
- Embedded SQLite document store with a fixed envelope
- Single-field and composite secondary indexes
- Selector evaluation ($ne, $exists, $regex, $or)
- Read-through query cache invalidated per collection

Indexes are derived data. They can be rebuilt from document contents at
any time and never change query results, only their cost.

Invariants:
    - A document write and its index entries commit atomically
    - Unique indexes reject colliding writes with DuplicateKey
    - Every write invalidates the cached queries of its collection

How to change safely:
    - Declare new indexes in collections.py
    - Add selector operators in selector.py only
    - Extend CACHEABLE_QUERIES for new repeated access patterns
"""

from .collections import (
    ACTIVATION_CODES,
    CANDIDATE_LISTS,
    CONFIG,
    DEFAULT_COLLECTIONS,
    SESSIONS,
    STUDENTS,
    VOTES,
    CollectionDef,
    DocType,
    IndexDef,
)
from .document_store import (
    BulkItemResult,
    BulkResult,
    Document,
    DocumentStore,
    FindResult,
    QueryPlan,
    WriteResult,
)
from .query_cache import QueryCache, is_cacheable, make_key
from .selector import compile_selector, matches, validate_selector

__all__ = [
    "ACTIVATION_CODES",
    "CANDIDATE_LISTS",
    "CONFIG",
    "DEFAULT_COLLECTIONS",
    "SESSIONS",
    "STUDENTS",
    "VOTES",
    "CollectionDef",
    "DocType",
    "IndexDef",
    "BulkItemResult",
    "BulkResult",
    "Document",
    "DocumentStore",
    "FindResult",
    "QueryPlan",
    "WriteResult",
    "QueryCache",
    "is_cacheable",
    "make_key",
    "compile_selector",
    "matches",
    "validate_selector",
]
