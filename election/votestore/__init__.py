"""
VoteStore - persistence and consistency core for student elections.

This package implements the client-side storage layer of a single-device
student election:
- An embedded document store (SQLite) with secondary indexes and a
  selector query language
- A read-through query cache invalidated per collection
- A reconciliation engine that keeps the per-course optimistic status
  cache, the document store and the append-only vote log consistent

Architecture:
    ┌─────────────┐     ┌──────────────────────┐
    │  UI layer   │────▶│ ReconciliationEngine │──────────────┐
    └──────┬──────┘     └──────────┬───────────┘              │
           │                       │                          ▼
           │                       ▼                 ┌─────────────────┐
           │              ┌─────────────────┐        │ OptimisticCache │
           └─────────────▶│  DocumentStore  │        │ (SQLite, course)│
                          └────────┬────────┘        └─────────────────┘
                                   │
                          ┌────────┴────────┐
                          ▼                 ▼
                    ┌───────────┐     ┌───────────┐
                    │QueryCache │     │  SQLite   │
                    │ (memory)  │     │(documents)│
                    └───────────┘     └───────────┘

Invariants:
    - The document store owns all durable documents and vote records
    - The optimistic cache is a disposable projection; it can always be
      rebuilt from the store and the vote log
    - Document ids are immutable once assigned
    - Index use never changes query results, only their cost

How to change safely:
    - Declare new indexes in store/collections.py; they are rebuilt from
      document contents on open
    - Add cacheable query shapes to the allow-list in store/query_cache.py
    - Keep reconciliation merges idempotent
"""

from ._version import __version__

__all__ = ["__version__"]
