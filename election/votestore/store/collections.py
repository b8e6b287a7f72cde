"""
Collection and index definitions for the VoteStore document store.

This module defines:
- DocType: Document type tags stored in every envelope
- IndexDef: A single-field or composite (tuple) secondary index
- CollectionDef: A named collection with its indexes and natural key
- DEFAULT_COLLECTIONS: The catalog used by the election application

Invariants:
    - Index names are unique within a collection
    - Every index can be rebuilt purely from document contents
    - A unique index only constrains documents that carry every indexed
      field with a scalar value

How to change safely:
    - Adding an index is safe; indexes are rebuilt on open
    - Turning an existing index unique can fail on open if stored data
      already collides; clean the data first
    - Never rename a collection; exported backups reference it by name

Example:
    >>> students = CollectionDef(
    ...     name="students",
    ...     indexes=(IndexDef("by_cedula", ("cedula",), unique=True),),
    ...     natural_key="cedula",
    ... )
    >>> students.get_index("by_cedula").is_composite
    False
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class DocType(Enum):
    """Document type tags stored in the ``type`` envelope field."""

    STUDENT = "student"
    CANDIDATE = "candidate"
    LIST = "list"
    VOTE = "vote"
    SESSION = "session"
    CONFIG = "election_config"
    BACKUP = "backup"
    ACTIVATION_CODE = "activation_code"


@dataclass(frozen=True)
class IndexDef:
    """Secondary index over one or more document fields.

    Attributes:
        name: Index name, unique within the collection
        fields: Field paths covered by the index (dotted paths allowed)
        unique: Whether two documents may share the same key
    """

    name: str
    fields: tuple[str, ...]
    unique: bool = False

    def __post_init__(self) -> None:
        if not self.fields:
            raise ValueError(f"Index '{self.name}' must cover at least one field")
        if len(set(self.fields)) != len(self.fields):
            raise ValueError(f"Index '{self.name}' repeats a field")

    @property
    def is_composite(self) -> bool:
        return len(self.fields) > 1


@dataclass(frozen=True)
class CollectionDef:
    """A named collection of documents.

    Attributes:
        name: Collection name
        indexes: Secondary indexes
        natural_key: Field whose value derives a stable document id
    """

    name: str
    indexes: tuple[IndexDef, ...] = ()
    natural_key: str | None = None

    def __post_init__(self) -> None:
        names = [idx.name for idx in self.indexes]
        if len(set(names)) != len(names):
            raise ValueError(f"Collection '{self.name}' declares duplicate index names")

    def get_index(self, name: str) -> IndexDef | None:
        for idx in self.indexes:
            if idx.name == name:
                return idx
        return None

    @property
    def unique_indexes(self) -> tuple[IndexDef, ...]:
        return tuple(idx for idx in self.indexes if idx.unique)


def index(name: str, *fields: str, unique: bool = False) -> IndexDef:
    """Shorthand for IndexDef(name, fields, unique)."""
    return IndexDef(name=name, fields=tuple(fields), unique=unique)


STUDENTS = "students"
CANDIDATE_LISTS = "candidateLists"
VOTES = "votes"
SESSIONS = "sessions"
CONFIG = "config"
ACTIVATION_CODES = "activationCodes"


DEFAULT_COLLECTIONS: tuple[CollectionDef, ...] = (
    CollectionDef(
        name=STUDENTS,
        indexes=(
            index("type", "type"),
            index("course", "course"),
            index("level", "level"),
            index("cedula", "cedula", unique=True),
            index("type_course", "type", "course"),
            index("type_level_course", "type", "level", "course"),
            index("type_cedula", "type", "cedula"),
            index("type_numero", "type", "numero"),
        ),
        natural_key="cedula",
    ),
    CollectionDef(
        name=CANDIDATE_LISTS,
        indexes=(
            index("type", "type"),
            index("level", "level"),
            index("type_level", "type", "level"),
        ),
    ),
    CollectionDef(
        name=VOTES,
        indexes=(
            index("type", "type"),
            index("student_id", "studentId"),
            index("type_student_id", "type", "studentId"),
            index("type_level_course", "type", "level", "course"),
            index("timestamp", "timestamp"),
        ),
    ),
    CollectionDef(
        name=SESSIONS,
        indexes=(
            index("type", "type"),
            index("type_course", "type", "course"),
            index("type_status", "type", "status"),
        ),
    ),
    CollectionDef(
        name=CONFIG,
        indexes=(
            index("type", "type"),
            index("type_key", "type", "key"),
        ),
        natural_key="key",
    ),
    CollectionDef(
        name=ACTIVATION_CODES,
        indexes=(
            index("code", "code", unique=True),
            index("course", "course"),
            index("is_active", "is_active"),
            index("type_course", "type", "course"),
        ),
        natural_key="code",
    ),
)
