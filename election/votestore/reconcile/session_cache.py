"""
Optimistic per-course status cache.

The tutor panel reads student status from this cache so the UI reflects
every action immediately, before (or without) the document store
confirming it. When a store write fails the change is queued as a pending
write and replayed on the next reconciliation pass; apart from that queue
the cache is a projection reconciliation can rebuild from the document
store and the vote log.

This module provides:
- CourseSessionCache: Value object with merge/repair operations
- PendingWrite: A student document update the store has not confirmed
- OptimisticCacheStore: SQLite persistence, one row per (course, student)

Invariants:
    - Records are keyed by course, then student id
    - merge() never drops a cache-only student
    - For students known to the store, store-derived records win, except
      students with a pending write, whose optimistic record is kept
    - A pending write is removed only after the store accepted it
    - save() replaces a course atomically; other courses are untouched

How to change safely:
    - Keep merge/repair idempotent; background passes may run late and
      more than once
    - Deleting the cache file loses unconfirmed tutor actions (pending
      writes); everything else is derivable from the document store

Table schema:
    course_status:
        - course TEXT
        - student_id TEXT
        - status TEXT (pending, voted, absent)
        - voted_at TEXT
        - is_absent INTEGER
        - updated_at TEXT
        - PRIMARY KEY (course, student_id)

    pending_writes:
        - student_id TEXT PRIMARY KEY
        - course TEXT (cache the optimistic record lives in)
        - changes TEXT (JSON field changes for the student document)
        - queued_at TEXT
"""

from __future__ import annotations

import json
import logging
import sqlite3
from collections.abc import Collection, Iterator, Mapping
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from ..errors import StoreUnavailable
from ..store.document_store import utc_now_iso
from .models import StudentStatus, StudentStatusRecord

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Correction:
    """A cache entry overwritten with store truth."""

    student_id: str
    cached: StudentStatusRecord | None
    truth: StudentStatusRecord


@dataclass
class CourseSessionCache:
    """Optimistic status records of one course.

    Attributes:
        course: Course identifier the records belong to
        records: Status records keyed by student id
    """

    course: str
    records: dict[str, StudentStatusRecord] = field(default_factory=dict)

    def __len__(self) -> int:
        return len(self.records)

    def get(self, student_id: str) -> StudentStatusRecord | None:
        return self.records.get(student_id)

    def put(self, record: StudentStatusRecord) -> None:
        self.records[record.student_id] = record

    def merge(
        self,
        store_records: Mapping[str, StudentStatusRecord],
        pinned: Collection[str] = (),
    ) -> CourseSessionCache:
        """Combine with store-derived records.

        Students only present in the cache are kept; for students present
        in both, the store-derived record wins unless the student is
        pinned (a pending write the store has not accepted yet).
        """
        merged = dict(self.records)
        for student_id, record in store_records.items():
            if student_id in pinned and student_id in self.records:
                continue
            merged[student_id] = record
        return CourseSessionCache(self.course, merged)

    def repair(
        self,
        truth: Mapping[str, StudentStatusRecord],
        pinned: Collection[str] = (),
    ) -> list[Correction]:
        """Overwrite entries that diverge from store truth in place.

        Pinned students keep their cached record.

        Returns:
            One Correction per overwritten entry
        """
        corrections = []
        for student_id, record in truth.items():
            if student_id in pinned and student_id in self.records:
                continue
            cached = self.records.get(student_id)
            if cached != record:
                corrections.append(Correction(student_id, cached, record))
                self.records[student_id] = record
        return corrections

    def to_dict(self) -> dict[str, Any]:
        return {
            "course": self.course,
            "records": {sid: r.to_dict() for sid, r in self.records.items()},
        }


@dataclass(frozen=True)
class PendingWrite:
    """Student document changes queued after a failed store write.

    Attributes:
        student_id: Student document id
        course: Course cache holding the optimistic record
        changes: Fields to apply to the student document
        queued_at: When the write was queued, ISO-8601
    """

    student_id: str
    course: str
    changes: dict[str, Any]
    queued_at: str


class OptimisticCacheStore:
    """SQLite persistence for CourseSessionCache objects.

    Thread safety:
        Each operation opens its own connection. Designed for a single
        asyncio event loop.

    Example:
        >>> cache_store = OptimisticCacheStore("/var/lib/votaciones")
        >>> await cache_store.open()
        >>> session = await cache_store.load("8vo A")
        >>> session.put(StudentStatusRecord.absent("student_0987654321"))
        >>> await cache_store.save(session)
    """

    def __init__(
        self,
        data_dir: str,
        db_filename: str = "course_status.db",
        wal_mode: bool = True,
        busy_timeout_ms: int = 5000,
    ) -> None:
        self.data_dir = Path(data_dir)
        self.db_path = self.data_dir / db_filename
        self.wal_mode = wal_mode
        self.busy_timeout_ms = busy_timeout_ms
        self._open = False

    @property
    def is_open(self) -> bool:
        return self._open

    @contextmanager
    def _get_connection(self) -> Iterator[sqlite3.Connection]:
        if not self._open:
            raise StoreUnavailable("Optimistic cache is not open", str(self.db_path))

        conn = sqlite3.connect(
            str(self.db_path),
            timeout=self.busy_timeout_ms / 1000.0,
            isolation_level=None,
        )
        conn.row_factory = sqlite3.Row
        try:
            if self.wal_mode:
                conn.execute("PRAGMA journal_mode = WAL")
            yield conn
        finally:
            conn.close()

    async def open(self) -> None:
        """Create the cache file and schema.

        Raises:
            StoreUnavailable: If the file cannot be opened
        """
        try:
            self.data_dir.mkdir(parents=True, exist_ok=True)
            self._open = True
            with self._get_connection() as conn:
                conn.executescript("""
                    CREATE TABLE IF NOT EXISTS course_status (
                        course TEXT NOT NULL,
                        student_id TEXT NOT NULL,
                        status TEXT NOT NULL DEFAULT 'pending',
                        voted_at TEXT,
                        is_absent INTEGER NOT NULL DEFAULT 0,
                        updated_at TEXT NOT NULL,
                        PRIMARY KEY (course, student_id)
                    );

                    CREATE TABLE IF NOT EXISTS pending_writes (
                        student_id TEXT PRIMARY KEY,
                        course TEXT NOT NULL,
                        changes TEXT NOT NULL,
                        queued_at TEXT NOT NULL
                    );
                """)
        except (sqlite3.Error, OSError) as e:
            self._open = False
            raise StoreUnavailable(f"Failed to open optimistic cache: {e}", str(self.db_path)) from e
        logger.info(f"Opened optimistic cache: {self.db_path}")

    async def close(self) -> None:
        self._open = False

    @staticmethod
    def _row_to_record(row: sqlite3.Row) -> StudentStatusRecord:
        return StudentStatusRecord(
            student_id=row["student_id"],
            status=StudentStatus(row["status"]),
            voted_at=row["voted_at"],
            is_absent=bool(row["is_absent"]),
        )

    async def load(self, course: str) -> CourseSessionCache:
        """Load the cached records of a course (empty if none)."""
        with self._get_connection() as conn:
            cursor = conn.execute(
                "SELECT * FROM course_status WHERE course = ?",
                (course,),
            )
            records = {row["student_id"]: self._row_to_record(row) for row in cursor.fetchall()}
        return CourseSessionCache(course, records)

    @staticmethod
    def _upsert(conn: sqlite3.Connection, course: str, record: StudentStatusRecord, now: str) -> None:
        conn.execute(
            """
            INSERT INTO course_status (course, student_id, status, voted_at, is_absent, updated_at)
            VALUES (?, ?, ?, ?, ?, ?)
            ON CONFLICT (course, student_id) DO UPDATE SET
                status = excluded.status,
                voted_at = excluded.voted_at,
                is_absent = excluded.is_absent,
                updated_at = excluded.updated_at
            """,
            (
                course,
                record.student_id,
                record.status.value,
                record.voted_at,
                1 if record.is_absent else 0,
                now,
            ),
        )

    async def save(self, session: CourseSessionCache) -> None:
        """Replace every cached record of the session's course."""
        now = utc_now_iso()
        with self._get_connection() as conn:
            conn.execute("BEGIN IMMEDIATE")
            try:
                conn.execute("DELETE FROM course_status WHERE course = ?", (session.course,))
                for record in session.records.values():
                    self._upsert(conn, session.course, record, now)
                conn.execute("COMMIT")
            except Exception:
                conn.execute("ROLLBACK")
                raise
        logger.debug(
            "Saved course cache",
            extra={"course": session.course, "records": len(session.records)},
        )

    async def put_record(
        self,
        course: str,
        record: StudentStatusRecord,
        pending: Mapping[str, Any] | None = None,
    ) -> PendingWrite | None:
        """Insert or replace a single record of a course.

        Args:
            course: Course cache to write to
            record: Optimistic record
            pending: Student document changes to queue until the store
                accepts them (written in the same transaction)

        Returns:
            The queued PendingWrite, if any
        """
        now = utc_now_iso()
        queued = None
        if pending is not None:
            queued = PendingWrite(record.student_id, course, dict(pending), now)
        with self._get_connection() as conn:
            conn.execute("BEGIN IMMEDIATE")
            try:
                self._upsert(conn, course, record, now)
                if queued is not None:
                    conn.execute(
                        """
                        INSERT INTO pending_writes (student_id, course, changes, queued_at)
                        VALUES (?, ?, ?, ?)
                        ON CONFLICT (student_id) DO UPDATE SET
                            course = excluded.course,
                            changes = excluded.changes,
                            queued_at = excluded.queued_at
                        """,
                        (queued.student_id, course, json.dumps(queued.changes), now),
                    )
                conn.execute("COMMIT")
            except Exception:
                conn.execute("ROLLBACK")
                raise
        return queued

    async def pending_writes(self, course: str | None = None) -> list[PendingWrite]:
        """Queued store writes, oldest first (optionally of one course)."""
        with self._get_connection() as conn:
            if course is None:
                cursor = conn.execute("SELECT * FROM pending_writes ORDER BY queued_at")
            else:
                cursor = conn.execute(
                    "SELECT * FROM pending_writes WHERE course = ? ORDER BY queued_at",
                    (course,),
                )
            return [
                PendingWrite(
                    student_id=row["student_id"],
                    course=row["course"],
                    changes=json.loads(row["changes"]),
                    queued_at=row["queued_at"],
                )
                for row in cursor.fetchall()
            ]

    async def clear_pending(self, student_id: str, replayed: PendingWrite | None = None) -> bool:
        """Remove a student's pending write.

        When replayed is given, the row is removed only if it still holds
        that write, so a newer write queued meanwhile survives.

        Returns:
            True if a pending write was removed
        """
        with self._get_connection() as conn:
            if replayed is None:
                cursor = conn.execute(
                    "DELETE FROM pending_writes WHERE student_id = ?", (student_id,)
                )
            else:
                cursor = conn.execute(
                    """
                    DELETE FROM pending_writes
                    WHERE student_id = ? AND queued_at = ? AND changes = ?
                    """,
                    (student_id, replayed.queued_at, json.dumps(replayed.changes)),
                )
            return cursor.rowcount > 0

    async def courses(self) -> list[str]:
        with self._get_connection() as conn:
            cursor = conn.execute("SELECT DISTINCT course FROM course_status ORDER BY course")
            return [row["course"] for row in cursor.fetchall()]

    async def clear_all(self) -> int:
        """Drop every cached record and pending write of every course.

        Returns:
            Number of records removed
        """
        with self._get_connection() as conn:
            conn.execute("BEGIN IMMEDIATE")
            try:
                removed = conn.execute("DELETE FROM course_status").rowcount
                dropped = conn.execute("DELETE FROM pending_writes").rowcount
                conn.execute("COMMIT")
            except Exception:
                conn.execute("ROLLBACK")
                raise
        logger.info(
            "Cleared optimistic cache",
            extra={"removed": removed, "pending_dropped": dropped},
        )
        return removed
