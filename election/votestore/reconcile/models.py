"""
Value types shared by the reconciliation engine and the optimistic cache.

This module defines:
- StudentStatus: pending / voted / absent
- StudentStatusRecord: Per-student status within a course session
- VoteRecord: Append-only vote log entry
- SessionContext: Course context supplied by the tutor login
- derive_status: Initial status of a student document
- student_key: Canonical string form of a student identifier
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass, replace
from datetime import datetime
from enum import Enum
from typing import Any

from ..store.document_store import Document
from ..store.selector import normalize_scalar

VOTED_FLAGS = ("votado", "voted", "hasVoted")


def student_key(value: Any) -> str | None:
    """Canonical string form of an id, numero or cedula (None if unusable).

    Numbers are normalized first so 5.0 and 5 give the same key.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return str(normalize_scalar(value))
    value = str(value).strip()
    return value or None


class StudentStatus(Enum):
    PENDING = "pending"
    VOTED = "voted"
    ABSENT = "absent"


@dataclass(frozen=True)
class StudentStatusRecord:
    """Status of one student in a course session.

    Attributes:
        student_id: Student document id
        status: Current status
        voted_at: Time of the (earliest) vote, ISO-8601
        is_absent: Explicit absence flag set by the tutor
    """

    student_id: str
    status: StudentStatus = StudentStatus.PENDING
    voted_at: str | None = None
    is_absent: bool = False

    @classmethod
    def pending(cls, student_id: str) -> StudentStatusRecord:
        return cls(student_id)

    @classmethod
    def voted(cls, student_id: str, voted_at: str | None) -> StudentStatusRecord:
        return cls(student_id, StudentStatus.VOTED, voted_at, False)

    @classmethod
    def absent(cls, student_id: str) -> StudentStatusRecord:
        return cls(student_id, StudentStatus.ABSENT, None, True)

    def with_vote(self, voted_at: str | None) -> StudentStatusRecord:
        """Upgrade to voted, keeping the absence flag as it was."""
        return replace(self, status=StudentStatus.VOTED, voted_at=voted_at)

    def to_dict(self) -> dict[str, Any]:
        return {
            "studentId": self.student_id,
            "status": self.status.value,
            "votedAt": self.voted_at,
            "isAbsent": self.is_absent,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> StudentStatusRecord:
        return cls(
            student_id=str(data["studentId"]),
            status=StudentStatus(data.get("status", "pending")),
            voted_at=data.get("votedAt"),
            is_absent=bool(data.get("isAbsent", False)),
        )


@dataclass(frozen=True)
class VoteRecord:
    """An entry of the append-only vote log.

    Attributes:
        student_id: Student reference as written by the voting booth
            (document id, numero or cedula), None if the entry has none
        choice_id: Chosen list or candidate id
        timestamp: Vote time, ISO-8601
        course: Course of the voter
        level: Education level of the voter
    """

    student_id: str | None
    choice_id: str | None
    timestamp: str
    course: str | None = None
    level: str | None = None

    def to_fields(self) -> dict[str, Any]:
        return {
            "studentId": self.student_id,
            "choiceId": self.choice_id,
            "timestamp": self.timestamp,
            "course": self.course,
            "level": self.level,
        }

    @classmethod
    def from_document(cls, doc: Document) -> VoteRecord:
        return cls(
            student_id=student_key(doc.get("studentId")),
            choice_id=doc.get("choiceId"),
            timestamp=doc.get("timestamp") or doc.created_at,
            course=doc.get("course"),
            level=doc.get("level"),
        )


@dataclass(frozen=True)
class SessionContext:
    """Context handed over by the tutor login at session start."""

    student_roster_key: str
    course: str
    level: str | None = None


def has_voted_flag(doc: Document) -> bool:
    return any(doc.get(flag) is True for flag in VOTED_FLAGS)


def derive_status(doc: Document) -> StudentStatusRecord:
    """Initial status of a student document.

    isAbsent wins over any voted flag; a voted flag keeps the document's
    votedAt.
    """
    if doc.get("isAbsent") is True:
        return StudentStatusRecord.absent(doc.id)
    if has_voted_flag(doc):
        return StudentStatusRecord.voted(doc.id, doc.get("votedAt"))
    return StudentStatusRecord.pending(doc.id)


def _timestamp_key(value: str) -> tuple[int, Any]:
    try:
        return (0, datetime.fromisoformat(value.replace("Z", "+00:00")).timestamp())
    except (AttributeError, ValueError):
        return (1, str(value))


def earliest_timestamp(votes: Iterable[VoteRecord]) -> str | None:
    stamps = [v.timestamp for v in votes if v.timestamp]
    if not stamps:
        return None
    return min(stamps, key=_timestamp_key)
