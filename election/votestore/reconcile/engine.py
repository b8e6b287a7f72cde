"""
Reconciliation engine for per-course student status.

Three sources describe whether a student has voted:
- The student document in the document store (votado/isAbsent flags)
- The append-only vote log (votes collection)
- The optimistic per-course cache the tutor panel writes first

A course load merges them into one status view:

    1. Load roster      students of the course (exact, then fuzzy match)
    2. Cross-reference  pending students with a vote become voted
    3. Merge            cache-only students kept, store-derived records win
    4. Persist          merged view saved to the cache, vote upgrades
                        written back to the store, revalidation scheduled

Invariants:
    - A student flagged absent is never flipped to voted by a vote record
    - Steps 1-3 are idempotent; running them twice on unchanged data
      yields the same records
    - The optimistic cache is updated before the store on every mutation;
      a failed store write never rolls the cache back; it is queued and
      replayed to the store before the next reconciliation pass
    - A mutation writes to the cache of the student's own course
    - Drift between cache and store is corrected and logged, never raised
    - A store outage degrades a course load to cache-only

How to change safely:
    - Keep revalidation idempotent; it may run after another course was
      selected
    - Identifier resolution order is fixed: document id, numero, cedula
"""

from __future__ import annotations

import asyncio
import logging
import re
import sqlite3
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field
from typing import Any, Union

from ..config import ReconcileConfig
from ..errors import ReconciliationDrift, StoreUnavailable, VoteStoreError
from ..store.collections import STUDENTS, VOTES, DocType
from ..store.document_store import Document, DocumentStore, utc_now_iso
from .course_matching import courses_match, find_matching_course
from .models import (
    VOTED_FLAGS,
    SessionContext,
    StudentStatus,
    StudentStatusRecord,
    VoteRecord,
    derive_status,
    earliest_timestamp,
    student_key,
)
from .session_cache import Correction, CourseSessionCache, OptimisticCacheStore, PendingWrite

logger = logging.getLogger(__name__)

StudentRef = Union[str, int, Document, Mapping[str, Any]]

# Generated ids look like student_<cedula> or student_<cedula>_<timestamp>_<random>
_COMPOSITE_ID = re.compile(r"^student_(\d+)")

# Errors that degrade an operation instead of failing it
_STORE_ERRORS = (VoteStoreError, sqlite3.Error)


@dataclass
class CourseLoadResult:
    """Outcome of a course load.

    Attributes:
        course: Requested course
        records: Merged status records keyed by student id
        roster: Student documents of the course (empty when degraded)
        degraded: True if served from the optimistic cache only
        error: Reason for degraded mode
        revalidation: Scheduled background revalidation, if any
    """

    course: str
    records: dict[str, StudentStatusRecord]
    roster: list[Document] = field(default_factory=list)
    degraded: bool = False
    error: str | None = None
    revalidation: asyncio.Task | None = None


@dataclass
class MutationResult:
    """Outcome of a tutor action on one student.

    Attributes:
        student_id: Resolved document id (or the raw reference if the
            student is unknown to the store)
        record: Optimistic record now shown to the UI
        store_updated: Whether the store document was written
        error: Why the store was not updated
    """

    student_id: str
    record: StudentStatusRecord
    store_updated: bool
    error: str | None = None


@dataclass
class _StoreTruth:
    records: dict[str, StudentStatusRecord]
    upgrades: dict[str, str | None]


def _ref_key(ref: StudentRef) -> str:
    if isinstance(ref, Document):
        return ref.id
    if isinstance(ref, Mapping):
        for name in ("id", "_id", "numero", "cedula"):
            key = student_key(ref.get(name))
            if key:
                return key
        raise ValueError("Student reference has no id, numero or cedula")
    key = student_key(ref)
    if key is None:
        raise ValueError(f"Invalid student reference: {ref!r}")
    return key


class _RosterIndex:
    """Identifier lookup over a roster (id, then numero, then cedula)."""

    def __init__(self, roster: Iterable[Document]) -> None:
        self.by_id: dict[str, Document] = {}
        self.by_numero: dict[str, Document] = {}
        self.by_cedula: dict[str, Document] = {}
        for doc in roster:
            self.by_id[doc.id] = doc
            numero = student_key(doc.get("numero"))
            if numero:
                self.by_numero.setdefault(numero, doc)
            cedula = student_key(doc.get("cedula"))
            if cedula:
                self.by_cedula.setdefault(cedula, doc)

    def resolve(self, key: str | None) -> Document | None:
        if not key:
            return None
        for table in (self.by_id, self.by_numero, self.by_cedula):
            if key in table:
                return table[key]
        composite = _COMPOSITE_ID.match(key)
        if composite:
            return self.by_cedula.get(composite.group(1))
        return None


class ReconciliationEngine:
    """Keeps optimistic cache, document store and vote log consistent.

    One engine serves one tutor session. The store and cache store are
    injected and owned by the caller.

    Example:
        >>> engine = ReconciliationEngine(store, cache_store, ReconcileConfig())
        >>> result = await engine.load_course(SessionContext("roster-1", "8vo A", "EGB"))
        >>> await engine.mark_absent("0987654321")
        >>> engine.get_stats()
    """

    def __init__(
        self,
        store: DocumentStore,
        cache_store: OptimisticCacheStore,
        config: ReconcileConfig | None = None,
    ) -> None:
        self.store = store
        self.cache_store = cache_store
        self.config = config or ReconcileConfig()
        self.context: SessionContext | None = None
        self.roster: list[Document] = []
        self.session: CourseSessionCache | None = None
        self._tasks: set[asyncio.Task] = set()

    @property
    def current_course(self) -> str | None:
        return self.context.course if self.context else None

    @property
    def pending_tasks(self) -> list[asyncio.Task]:
        return [task for task in self._tasks if not task.done()]

    # ------------------------------------------------------------------
    # Course load
    # ------------------------------------------------------------------

    async def load_course(self, context: SessionContext) -> CourseLoadResult:
        """Load, reconcile and persist the status view of a course.

        Never raises on store failures; the result is marked degraded and
        served from the optimistic cache instead. Pending writes left by
        failed mutations are replayed to the store first.
        """
        course = context.course
        self.context = context
        await self._replay_pending_writes()

        try:
            roster = await self._load_roster(course)
            truth = await self._store_truth(roster)
        except _STORE_ERRORS as e:
            logger.warning(
                f"Store unavailable, serving {course} from optimistic cache: {e}",
                extra={"course": course},
            )
            session = await self._load_cached(course)
            self.roster = []
            self.session = session
            return CourseLoadResult(
                course=course,
                records=dict(session.records),
                degraded=True,
                error=str(e),
            )

        merged = (await self._load_cached(course)).merge(truth.records, await self._pinned(course))
        self.roster = roster
        self.session = merged

        try:
            await self.cache_store.save(merged)
        except _STORE_ERRORS as e:
            logger.warning(f"Failed to persist course cache: {e}", extra={"course": course})

        await self._write_back_upgrades(roster, truth.upgrades)
        task = self._schedule_revalidation(course)

        logger.info(
            f"Loaded course {course}",
            extra={
                "course": course,
                "students": len(roster),
                "records": len(merged.records),
                "vote_upgrades": len(truth.upgrades),
            },
        )
        return CourseLoadResult(
            course=course,
            records=dict(merged.records),
            roster=list(roster),
            revalidation=task,
        )

    async def reconcile(self, course: str) -> dict[str, StudentStatusRecord]:
        """Compute the merged status view of a course without writing.

        Students with a pending write keep their optimistic record.

        Raises:
            VoteStoreError: If the document store cannot be read
        """
        roster = await self._load_roster(course)
        truth = await self._store_truth(roster)
        merged = (await self._load_cached(course)).merge(truth.records, await self._pinned(course))
        return merged.records

    async def _load_roster(self, course: str) -> list[Document]:
        result = await self.store.find(STUDENTS, {"type": DocType.STUDENT.value, "course": course})
        if result.docs:
            return result.docs

        everyone = await self.store.find(STUDENTS, {"type": DocType.STUDENT.value})
        available = sorted(
            {doc.get("course") for doc in everyone.docs if isinstance(doc.get("course"), str)}
        )
        matched = find_matching_course(course, available)
        if matched is None:
            logger.info(
                f"No students found for course {course}",
                extra={"course": course, "available_courses": available},
            )
            return []

        logger.info(f"Course {course} matched to {matched}", extra={"course": course})
        return [doc for doc in everyone.docs if courses_match(doc.get("course"), matched)]

    async def _store_truth(self, roster: list[Document]) -> _StoreTruth:
        records = {doc.id: derive_status(doc) for doc in roster}
        upgrades: dict[str, str | None] = {}

        for student_id, votes in (await self._votes_by_student(roster)).items():
            record = records[student_id]
            if record.status is StudentStatus.PENDING:
                voted_at = earliest_timestamp(votes)
                records[student_id] = record.with_vote(voted_at)
                upgrades[student_id] = voted_at

        return _StoreTruth(records, upgrades)

    async def _votes_by_student(self, roster: list[Document]) -> dict[str, list[VoteRecord]]:
        """Vote records of the roster keyed by student document id."""
        if not roster:
            return {}
        index = _RosterIndex(roster)
        result = await self.store.find(VOTES, {"type": DocType.VOTE.value})

        grouped: dict[str, list[VoteRecord]] = {}
        for doc in result.docs:
            vote = VoteRecord.from_document(doc)
            student = index.resolve(vote.student_id)
            if student is not None:
                grouped.setdefault(student.id, []).append(vote)
        return grouped

    async def _load_cached(self, course: str) -> CourseSessionCache:
        try:
            return await self.cache_store.load(course)
        except _STORE_ERRORS as e:
            logger.warning(f"Optimistic cache unavailable: {e}", extra={"course": course})
            return CourseSessionCache(course)

    async def _write_back_upgrades(
        self,
        roster: list[Document],
        upgrades: Mapping[str, str | None],
    ) -> None:
        by_id = {doc.id: doc for doc in roster}
        for student_id, voted_at in upgrades.items():
            doc = by_id[student_id]
            try:
                await self.store.update(
                    STUDENTS, {**doc.to_dict(), "votado": True, "votedAt": voted_at}
                )
            except _STORE_ERRORS as e:
                logger.warning(
                    f"Failed to write vote upgrade back to store: {e}",
                    extra={"student_id": student_id},
                )

    async def _pinned(self, course: str) -> set[str]:
        """Students of a course whose pending write the store has not accepted."""
        try:
            return {write.student_id for write in await self.cache_store.pending_writes(course)}
        except _STORE_ERRORS as e:
            logger.warning(f"Pending writes unavailable: {e}", extra={"course": course})
            return set()

    async def _replay_pending_writes(self) -> int:
        """Apply queued student updates to the store.

        A write is dequeued only once the store accepted it, or when its
        student no longer exists. Replay stops at the first sign the store
        is unavailable.

        Returns:
            Number of writes dequeued
        """
        try:
            pending = await self.cache_store.pending_writes()
        except _STORE_ERRORS as e:
            logger.warning(f"Pending writes unavailable: {e}")
            return 0

        dequeued = 0
        for write in pending:
            try:
                doc = await self.store.get(STUDENTS, write.student_id)
                if doc is not None:
                    await self.store.update(STUDENTS, {**doc.to_dict(), **write.changes})
            except StoreUnavailable as e:
                logger.warning(
                    f"Store unavailable, pending writes kept: {e}",
                    extra={"pending": len(pending) - dequeued},
                )
                break
            except _STORE_ERRORS as e:
                logger.error(
                    f"Replaying pending write failed: {e}",
                    extra={"student_id": write.student_id, "course": write.course},
                )
                continue

            if doc is None:
                logger.warning(
                    "Dropping pending write for a student missing from the store",
                    extra={"student_id": write.student_id, "course": write.course},
                )
            try:
                await self.cache_store.clear_pending(write.student_id, write)
            except _STORE_ERRORS as e:
                logger.warning(
                    f"Failed to dequeue pending write: {e}",
                    extra={"student_id": write.student_id},
                )
                continue
            dequeued += 1

        if dequeued:
            logger.info(f"Replayed {dequeued} pending writes", extra={"pending": len(pending)})
        return dequeued

    # ------------------------------------------------------------------
    # Background revalidation
    # ------------------------------------------------------------------

    def _schedule_revalidation(self, course: str) -> asyncio.Task | None:
        if not self.config.revalidate_enabled:
            return None
        task = asyncio.create_task(self._revalidate_later(course))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _revalidate_later(self, course: str) -> list[Correction]:
        await asyncio.sleep(self.config.revalidate_delay_seconds)
        try:
            return await self.revalidate(course)
        except _STORE_ERRORS as e:
            logger.warning(f"Revalidation of {course} skipped: {e}", extra={"course": course})
            return []

    async def revalidate(self, course: str) -> list[Correction]:
        """Overwrite cached records of a course that diverge from the store.

        Pending writes are replayed first. Cache-only records and records
        still waiting on a pending write are left alone. Each correction is
        logged as a ReconciliationDrift.
        """
        await self._replay_pending_writes()
        roster = await self._load_roster(course)
        truth = await self._store_truth(roster)
        session = await self.cache_store.load(course)
        corrections = session.repair(truth.records, await self._pinned(course))

        if corrections:
            await self.cache_store.save(session)
        for correction in corrections:
            drift = ReconciliationDrift(
                course,
                correction.student_id,
                correction.cached.to_dict() if correction.cached else None,
                correction.truth.to_dict(),
            )
            logger.warning(drift.message, extra={"code": drift.code, **drift.details})

        if self.session is not None and self.session.course == course == self.current_course:
            for correction in corrections:
                self.session.put(correction.truth)
        return corrections

    async def drain(self) -> None:
        """Wait for every scheduled revalidation to finish."""
        while self.pending_tasks:
            await asyncio.gather(*self.pending_tasks, return_exceptions=True)

    async def close(self) -> None:
        """Cancel outstanding background work (session end)."""
        tasks = self.pending_tasks
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        logger.debug("Reconciliation engine closed", extra={"cancelled": len(tasks)})

    # ------------------------------------------------------------------
    # Identifier resolution
    # ------------------------------------------------------------------

    async def resolve_student(self, ref: StudentRef) -> Document | None:
        """Find a student by document id, numero or cedula.

        The loaded roster is searched first, then the store.

        Raises:
            VoteStoreError: If the store lookup fails
        """
        key = _ref_key(ref)
        found = _RosterIndex(self.roster).resolve(key)
        if found is not None:
            return found

        doc = await self.store.get(STUDENTS, key)
        if doc is not None:
            return doc

        candidates: list[Any] = [key]
        if key.isdigit():
            candidates.append(int(key))
        for field_name in ("numero", "cedula"):
            for value in candidates:
                result = await self.store.find(
                    STUDENTS,
                    {"type": DocType.STUDENT.value, field_name: value},
                    use_cache=False,
                )
                if result.docs:
                    return result.docs[0]

        composite = _COMPOSITE_ID.match(key)
        if composite:
            result = await self.store.find(
                STUDENTS,
                {"type": DocType.STUDENT.value, "cedula": composite.group(1)},
                use_cache=False,
            )
            if result.docs:
                return result.docs[0]
        return None

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    async def mark_voted(self, ref: StudentRef, voted_at: str | None = None) -> MutationResult:
        voted_at = voted_at or utc_now_iso()
        return await self._mutate(
            ref,
            lambda sid: StudentStatusRecord.voted(sid, voted_at),
            {"votado": True, "votedAt": voted_at, "isAbsent": False},
        )

    async def mark_absent(self, ref: StudentRef) -> MutationResult:
        return await self._mutate(
            ref,
            StudentStatusRecord.absent,
            {"votado": False, "votedAt": None, "isAbsent": True},
        )

    async def mark_present(self, ref: StudentRef) -> MutationResult:
        return await self._mutate(
            ref,
            StudentStatusRecord.pending,
            {"votado": False, "votedAt": None, "isAbsent": False},
        )

    async def record_vote(self, ref: StudentRef, choice_id: str | None) -> MutationResult:
        """Append a vote to the log and mark the student voted.

        Raises:
            VoteStoreError: If the vote record cannot be stored
        """
        doc = await self._resolve_safely(ref)
        vote = VoteRecord(
            student_id=doc.id if doc else _ref_key(ref),
            choice_id=choice_id,
            timestamp=utc_now_iso(),
            course=(doc.get("course") if doc else None) or self.current_course,
            level=(doc.get("level") if doc else None) or (self.context.level if self.context else None),
        )
        await self.store.create(VOTES, vote.to_fields(), DocType.VOTE)
        logger.info("Vote recorded", extra={"student_id": vote.student_id, "course": vote.course})
        return await self.mark_voted(doc if doc is not None else ref, vote.timestamp)

    async def _resolve_safely(self, ref: StudentRef) -> Document | None:
        try:
            return await self.resolve_student(ref)
        except _STORE_ERRORS as e:
            logger.warning(f"Student lookup failed: {e}", extra={"ref": _ref_key(ref)})
            return None

    def _cache_course(self, doc: Document | None) -> str:
        """Course whose optimistic cache holds a student's record.

        Students of the loaded course (or unknown to the store) belong to
        the current session; anyone else belongs to their own course.
        """
        current = self.session.course if self.session is not None else self.current_course
        if doc is None:
            return current or ""
        own = doc.get("course")
        if not isinstance(own, str) or not own:
            return current or ""
        if current and (
            own == current
            or courses_match(own, current)
            or any(d.id == doc.id for d in self.roster)
        ):
            return current
        return own

    async def _mutate(
        self,
        ref: StudentRef,
        make_record: Callable[[str], StudentStatusRecord],
        changes: Mapping[str, Any],
    ) -> MutationResult:
        doc = await self._resolve_safely(ref)
        student_id = doc.id if doc is not None else _ref_key(ref)
        record = make_record(student_id)

        course = self._cache_course(doc)
        if self.session is None and (self.current_course is None or course == self.current_course):
            self.session = CourseSessionCache(course)
        if self.session is not None and self.session.course == course:
            self.session.put(record)

        queued: PendingWrite | None = None
        try:
            queued = await self.cache_store.put_record(
                course, record, pending=changes if doc is not None else None
            )
        except _STORE_ERRORS as e:
            logger.warning(f"Failed to persist optimistic record: {e}", extra={"student_id": student_id})

        if doc is None:
            logger.warning(
                "Student not found in store; only the optimistic cache was updated",
                extra={"student_id": student_id},
            )
            return MutationResult(student_id, record, False, "Student not found in store")

        try:
            await self.store.update(STUDENTS, {**doc.to_dict(), **changes})
            updated = await self.store.get(STUDENTS, doc.id)
        except _STORE_ERRORS as e:
            logger.error(
                f"Store update failed, optimistic record kept for replay: {e}",
                extra={"student_id": student_id, "queued": queued is not None},
            )
            return MutationResult(student_id, record, False, str(e))

        if queued is not None:
            try:
                await self.cache_store.clear_pending(student_id, queued)
            except _STORE_ERRORS as e:
                logger.warning(f"Failed to dequeue pending write: {e}", extra={"student_id": student_id})

        if updated is not None:
            self.roster = [updated if d.id == doc.id else d for d in self.roster]
        logger.info(
            f"Student marked {record.status.value}",
            extra={"student_id": student_id, "course": course},
        )
        return MutationResult(student_id, record, True)

    async def reset_roster(self, course: str | None = None) -> int:
        """Reset every student of a course to pending in store and cache.

        Pending writes of the course's students are discarded. The vote log
        is untouched; votes upgrade students again on the next load. Use
        reset_election() to start a new election.

        Returns:
            Number of students reset
        """
        course = course or self.current_course
        if not course:
            raise ValueError("No course loaded")

        roster = await self._load_roster(course)
        for doc in roster:
            await self.store.update(STUDENTS, {**doc.to_dict(), **self._cleared_flags(doc)})
            await self.cache_store.clear_pending(doc.id)

        session = CourseSessionCache(
            course, {doc.id: StudentStatusRecord.pending(doc.id) for doc in roster}
        )
        await self.cache_store.save(session)
        if course == self.current_course:
            self.session = session
            self.roster = await self._load_roster(course)
        logger.info(f"Reset course {course}", extra={"course": course, "students": len(roster)})
        return len(roster)

    async def reset_election(self) -> dict[str, int]:
        """Start a new election: delete the vote log, clear student flags and caches."""
        votes = await self.store.clear_collection(VOTES)
        students = await self.store.find(STUDENTS, {"type": DocType.STUDENT.value}, use_cache=False)
        reset = 0
        for doc in students.docs:
            if doc.get("isAbsent") is True or any(doc.get(f) is True for f in VOTED_FLAGS):
                await self.store.update(STUDENTS, {**doc.to_dict(), **self._cleared_flags(doc)})
                reset += 1
        cleared = await self.cache_store.clear_all()

        if self.current_course:
            self.roster = await self._load_roster(self.current_course)
            self.session = CourseSessionCache(
                self.current_course,
                {doc.id: StudentStatusRecord.pending(doc.id) for doc in self.roster},
            )
        logger.info(
            "Election reset",
            extra={"votes_removed": votes, "students_reset": reset, "cache_records": cleared},
        )
        return {"votes": votes, "students": reset, "cache": cleared}

    @staticmethod
    def _cleared_flags(doc: Document) -> dict[str, Any]:
        flags: dict[str, Any] = {"votado": False, "votedAt": None, "isAbsent": False}
        for name in VOTED_FLAGS:
            if doc.get(name) is not None:
                flags[name] = False
        return flags

    # ------------------------------------------------------------------
    # Summaries
    # ------------------------------------------------------------------

    def status_of(self, student_id: str) -> StudentStatusRecord:
        record = self.session.get(student_id) if self.session else None
        return record or StudentStatusRecord.pending(student_id)

    def students_by_status(self) -> dict[StudentStatus, list[Document]]:
        grouped: dict[StudentStatus, list[Document]] = {status: [] for status in StudentStatus}
        for doc in self.roster:
            grouped[self.status_of(doc.id).status].append(doc)
        return grouped

    def get_stats(self) -> dict[str, int]:
        grouped = self.students_by_status()
        total = len(self.roster)
        voted = len(grouped[StudentStatus.VOTED])
        return {
            "total": total,
            "voted": voted,
            "pending": len(grouped[StudentStatus.PENDING]),
            "absent": len(grouped[StudentStatus.ABSENT]),
            "participation": int(voted * 100 / total + 0.5) if total else 0,
        }

    def filter_students(
        self,
        search_term: str | None = None,
        status: StudentStatus | str | None = None,
    ) -> list[Document]:
        """Roster filtered by name search and status ("all" or None for any)."""
        students = list(self.roster)

        if search_term:
            term = search_term.lower()

            def _matches(doc: Document) -> bool:
                nombres = str(doc.get("nombres") or "").lower()
                apellidos = str(doc.get("apellidos") or "").lower()
                return term in nombres or term in apellidos or term in f"{nombres} {apellidos}"

            students = [doc for doc in students if _matches(doc)]

        if status is not None and status != "all":
            wanted = status if isinstance(status, StudentStatus) else StudentStatus(status)
            students = [doc for doc in students if self.status_of(doc.id).status is wanted]
        return students
