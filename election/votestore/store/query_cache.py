"""
Read-through query cache for the VoteStore document store.

Entries are keyed by a stable encoding of (collection, selector, limit,
sort) and tagged with their collection. Any write to a collection drops
every entry carrying that collection's tag.

Only a fixed allow-list of query shapes is cacheable: pure scalar
equality selectors whose field set is one of the commonly repeated
access patterns of the collection ("all students in course X", "all
lists of a level"). Selectors using $regex, $ne, $exists or $or are never
cached.

Invariants:
    - Structurally identical queries produce the same key regardless of
      dict ordering or call site
    - Invalidation is per collection, never per document id
    - Values are deep-copied on set and get; callers cannot mutate a
      cached result in place

How to change safely:
    - Extend CACHEABLE_QUERIES to cache a new access pattern
    - Do not introduce per-id invalidation without tracking every
      key -> id dependency
"""

from __future__ import annotations

import copy
import hashlib
import json
import logging
import time
from dataclasses import dataclass
from typing import Any

from ..config import CacheConfig
from .collections import (
    ACTIVATION_CODES,
    CANDIDATE_LISTS,
    CONFIG,
    SESSIONS,
    STUDENTS,
    VOTES,
)
from .selector import Selector, is_pure_equality

logger = logging.getLogger(__name__)


CACHEABLE_QUERIES: dict[str, frozenset[frozenset[str]]] = {
    STUDENTS: frozenset(
        {
            frozenset({"type"}),
            frozenset({"type", "course"}),
            frozenset({"type", "level"}),
            frozenset({"type", "level", "course"}),
        }
    ),
    CANDIDATE_LISTS: frozenset({frozenset({"type"}), frozenset({"type", "level"})}),
    VOTES: frozenset({frozenset({"type"})}),
    SESSIONS: frozenset({frozenset({"type", "course"})}),
    CONFIG: frozenset({frozenset({"type"}), frozenset({"type", "key"})}),
    ACTIVATION_CODES: frozenset({frozenset({"type"}), frozenset({"type", "course"})}),
}


class _Miss:
    def __repr__(self) -> str:
        return "<cache miss>"

    def __bool__(self) -> bool:
        return False


MISS: Any = _Miss()


@dataclass
class CacheEntry:
    """A cached query result.

    Attributes:
        key: Stable query key
        value: Cached value (private copy)
        tag: Collection the value was read from
        stored_at: Monotonic time the entry was stored
        hits: Number of reads served from this entry
    """

    key: str
    value: Any
    tag: str
    stored_at: float
    hits: int = 0


def make_key(
    collection: str,
    selector: Selector | None,
    limit: int | None = None,
    sort: list[tuple[str, str]] | None = None,
) -> str:
    """Stable cache key for a query."""
    payload = json.dumps(
        {
            "selector": selector or {},
            "limit": limit,
            "sort": [list(s) for s in sort] if sort else None,
        },
        sort_keys=True,
        separators=(",", ":"),
        default=str,
    )
    digest = hashlib.sha256(payload.encode("utf-8")).hexdigest()[:32]
    return f"{collection}:{digest}"


def is_cacheable(collection: str, selector: Selector | None) -> bool:
    """Whether a query shape is on the collection's allow-list."""
    allowed = CACHEABLE_QUERIES.get(collection)
    if not allowed or not selector:
        return False
    if not is_pure_equality(selector):
        return False
    return frozenset(selector) in allowed


class QueryCache:
    """In-memory query result cache with coarse per-collection invalidation.

    Example:
        >>> cache = QueryCache()
        >>> key = make_key("students", {"type": "student"})
        >>> cache.set(key, ["doc"], "students")
        >>> cache.get(key, "students")
        ['doc']
        >>> cache.invalidate_pattern("students")
        1
    """

    def __init__(self, config: CacheConfig | None = None) -> None:
        self.config = config or CacheConfig()
        self._entries: dict[str, CacheEntry] = {}
        self._hits = 0
        self._misses = 0
        self._evictions = 0
        self._invalidations = 0

    def __len__(self) -> int:
        return len(self._entries)

    def get(self, key: str, tag: str) -> Any:
        """Return the cached value or MISS.

        An entry stored under a different tag, or older than the TTL of its
        tag, is treated as a miss and dropped.
        """
        entry = self._entries.get(key)
        if entry is None or entry.tag != tag:
            self._misses += 1
            return MISS

        ttl = self.config.ttl_for(tag)
        if ttl > 0:
            age = time.monotonic() - entry.stored_at
            if age > ttl:
                del self._entries[key]
                self._misses += 1
                logger.debug("Cache entry expired", extra={"key": key, "tag": tag})
                return MISS

        entry.hits += 1
        self._hits += 1
        return copy.deepcopy(entry.value)

    def set(self, key: str, value: Any, tag: str) -> None:
        """Store a value under a collection tag."""
        if key not in self._entries and len(self._entries) >= self.config.max_entries:
            self._evict_least_used()
        self._entries[key] = CacheEntry(
            key=key,
            value=copy.deepcopy(value),
            tag=tag,
            stored_at=time.monotonic(),
        )

    def invalidate_pattern(self, tag: str) -> int:
        """Drop every entry tagged with a collection.

        Returns:
            Number of entries removed
        """
        stale = [key for key, entry in self._entries.items() if entry.tag == tag]
        for key in stale:
            del self._entries[key]
        if stale:
            self._invalidations += len(stale)
            logger.debug(f"Invalidated {len(stale)} cache entries", extra={"tag": tag})
        return len(stale)

    def clear(self) -> None:
        self._entries.clear()
        logger.debug("Query cache cleared")

    def _evict_least_used(self) -> None:
        if not self._entries:
            return
        victim = min(self._entries.values(), key=lambda e: (e.hits, e.stored_at))
        del self._entries[victim.key]
        self._evictions += 1
        logger.debug("Evicted least used cache entry", extra={"key": victim.key, "hits": victim.hits})

    def stats(self) -> dict[str, int]:
        return {
            "size": len(self._entries),
            "max_size": self.config.max_entries,
            "hits": self._hits,
            "misses": self._misses,
            "evictions": self._evictions,
            "invalidations": self._invalidations,
        }
