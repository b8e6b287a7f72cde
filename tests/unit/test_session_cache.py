"""
Unit tests for the optimistic per-course cache.

Tests cover:
- CourseSessionCache merge and repair (including pinned students)
- OptimisticCacheStore persistence per course
- Pending writes queued with optimistic records
- Student identifier normalization
"""

import tempfile

import pytest

from election.votestore.errors import StoreUnavailable
from election.votestore.reconcile.models import (
    StudentStatus,
    StudentStatusRecord,
    VoteRecord,
    student_key,
)
from election.votestore.reconcile.session_cache import CourseSessionCache, OptimisticCacheStore
from election.votestore.store import Document


class TestCourseSessionCache:
    """Tests for the CourseSessionCache value object."""

    def test_merge_keeps_cache_only_students(self):
        cached = CourseSessionCache("8vo A", {"s9": StudentStatusRecord.absent("s9")})

        merged = cached.merge({"s1": StudentStatusRecord.pending("s1")})

        assert set(merged.records) == {"s1", "s9"}
        assert merged.get("s9").status is StudentStatus.ABSENT

    def test_merge_store_record_wins(self):
        cached = CourseSessionCache("8vo A", {"s1": StudentStatusRecord.absent("s1")})

        merged = cached.merge({"s1": StudentStatusRecord.voted("s1", "2026-05-04T10:00:00Z")})

        assert merged.get("s1").status is StudentStatus.VOTED
        assert cached.get("s1").status is StudentStatus.ABSENT

    def test_merge_is_idempotent(self):
        cached = CourseSessionCache("8vo A", {"s9": StudentStatusRecord.absent("s9")})
        truth = {"s1": StudentStatusRecord.pending("s1")}

        once = cached.merge(truth)
        twice = once.merge(truth)

        assert once.records == twice.records

    def test_repair_reports_corrections(self):
        cache = CourseSessionCache(
            "8vo A",
            {
                "s1": StudentStatusRecord.pending("s1"),
                "s2": StudentStatusRecord.pending("s2"),
                "s9": StudentStatusRecord.absent("s9"),
            },
        )
        truth = {
            "s1": StudentStatusRecord.pending("s1"),
            "s2": StudentStatusRecord.voted("s2", "2026-05-04T10:00:00Z"),
            "s3": StudentStatusRecord.pending("s3"),
        }

        corrections = cache.repair(truth)

        assert {c.student_id for c in corrections} == {"s2", "s3"}
        assert cache.get("s2").status is StudentStatus.VOTED
        assert cache.get("s9").status is StudentStatus.ABSENT
        assert cache.repair(truth) == []

    def test_merge_keeps_pinned_cached_record(self):
        cached = CourseSessionCache("8vo A", {"s1": StudentStatusRecord.absent("s1")})
        truth = {
            "s1": StudentStatusRecord.pending("s1"),
            "s2": StudentStatusRecord.pending("s2"),
        }

        merged = cached.merge(truth, pinned={"s1", "s2"})

        assert merged.get("s1").status is StudentStatus.ABSENT
        assert merged.get("s2") == StudentStatusRecord.pending("s2")

    def test_repair_skips_pinned(self):
        cache = CourseSessionCache("8vo A", {"s1": StudentStatusRecord.absent("s1")})

        corrections = cache.repair({"s1": StudentStatusRecord.pending("s1")}, pinned={"s1"})

        assert corrections == []
        assert cache.get("s1").status is StudentStatus.ABSENT

    def test_record_dict_round_trip(self):
        record = StudentStatusRecord.voted("s2", "2026-05-04T10:00:00Z")

        assert StudentStatusRecord.from_dict(record.to_dict()) == record


class TestStudentKey:
    """Tests for student identifier normalization."""

    @pytest.mark.parametrize(
        "value, expected",
        [(5, "5"), (5.0, "5"), (" 0912345678 ", "0912345678"), (None, None), ("", None), (True, None)],
    )
    def test_student_key(self, value, expected):
        assert student_key(value) == expected

    def test_vote_record_normalizes_student_id(self):
        base = {"id": "vote_1", "type": "vote", "timestamp": "2026-05-04T10:00:00.000Z"}

        numeric = VoteRecord.from_document(Document.from_dict({**base, "studentId": 5.0}))
        missing = VoteRecord.from_document(Document.from_dict({**base, "studentId": None}))

        assert numeric.student_id == "5"
        assert missing.student_id is None


class TestOptimisticCacheStore:
    """Tests for OptimisticCacheStore."""

    @pytest.fixture
    def data_dir(self):
        """Create temporary data directory."""
        with tempfile.TemporaryDirectory() as tmpdir:
            yield tmpdir

    @pytest.fixture
    async def cache_store(self, data_dir):
        store = OptimisticCacheStore(data_dir, wal_mode=False)
        await store.open()
        yield store
        await store.close()

    @pytest.mark.asyncio
    async def test_not_open(self, data_dir):
        store = OptimisticCacheStore(data_dir, wal_mode=False)

        with pytest.raises(StoreUnavailable):
            await store.load("8vo A")

    @pytest.mark.asyncio
    async def test_load_empty_course(self, cache_store):
        session = await cache_store.load("8vo A")

        assert session.course == "8vo A"
        assert len(session) == 0

    @pytest.mark.asyncio
    async def test_save_and_load(self, cache_store):
        session = CourseSessionCache("8vo A")
        session.put(StudentStatusRecord.absent("s1"))
        session.put(StudentStatusRecord.voted("s2", "2026-05-04T10:00:00Z"))

        await cache_store.save(session)
        loaded = await cache_store.load("8vo A")

        assert loaded.records == session.records

    @pytest.mark.asyncio
    async def test_save_replaces_only_its_course(self, cache_store):
        await cache_store.save(CourseSessionCache("8vo A", {"s1": StudentStatusRecord.absent("s1")}))
        await cache_store.save(CourseSessionCache("8vo B", {"s5": StudentStatusRecord.pending("s5")}))

        await cache_store.save(CourseSessionCache("8vo A", {"s2": StudentStatusRecord.pending("s2")}))

        assert set((await cache_store.load("8vo A")).records) == {"s2"}
        assert set((await cache_store.load("8vo B")).records) == {"s5"}
        assert await cache_store.courses() == ["8vo A", "8vo B"]

    @pytest.mark.asyncio
    async def test_put_record_upserts(self, cache_store):
        await cache_store.put_record("8vo A", StudentStatusRecord.pending("s1"))
        await cache_store.put_record("8vo A", StudentStatusRecord.absent("s1"))

        loaded = await cache_store.load("8vo A")
        assert loaded.get("s1") == StudentStatusRecord.absent("s1")

    @pytest.mark.asyncio
    async def test_clear_all(self, cache_store):
        await cache_store.put_record("8vo A", StudentStatusRecord.pending("s1"))
        await cache_store.put_record("8vo B", StudentStatusRecord.pending("s2"))

        await cache_store.put_record(
            "8vo B", StudentStatusRecord.absent("s3"), pending={"isAbsent": True}
        )

        removed = await cache_store.clear_all()

        assert removed == 3
        assert await cache_store.courses() == []
        assert await cache_store.pending_writes() == []

    @pytest.mark.asyncio
    async def test_put_record_queues_pending_write(self, cache_store):
        queued = await cache_store.put_record(
            "8vo A", StudentStatusRecord.absent("s1"), pending={"isAbsent": True, "votedAt": None}
        )

        pending = await cache_store.pending_writes()

        assert pending == [queued]
        assert queued.changes == {"isAbsent": True, "votedAt": None}
        assert queued.course == "8vo A"
        assert await cache_store.pending_writes("8vo B") == []
        assert (await cache_store.load("8vo A")).get("s1") == StudentStatusRecord.absent("s1")

    @pytest.mark.asyncio
    async def test_put_record_without_pending_queues_nothing(self, cache_store):
        assert await cache_store.put_record("8vo A", StudentStatusRecord.pending("s1")) is None
        assert await cache_store.pending_writes() == []

    @pytest.mark.asyncio
    async def test_newer_pending_write_replaces_older(self, cache_store):
        await cache_store.put_record("8vo A", StudentStatusRecord.absent("s1"), pending={"isAbsent": True})
        newer = await cache_store.put_record(
            "8vo A", StudentStatusRecord.pending("s1"), pending={"isAbsent": False}
        )

        assert await cache_store.pending_writes() == [newer]

    @pytest.mark.asyncio
    async def test_clear_pending_only_removes_replayed_write(self, cache_store):
        older = await cache_store.put_record(
            "8vo A", StudentStatusRecord.absent("s1"), pending={"isAbsent": True}
        )
        await cache_store.put_record("8vo A", StudentStatusRecord.pending("s1"), pending={"isAbsent": False})

        assert await cache_store.clear_pending("s1", older) is False
        assert len(await cache_store.pending_writes()) == 1
        assert await cache_store.clear_pending("s1") is True
        assert await cache_store.pending_writes() == []

    @pytest.mark.asyncio
    async def test_save_keeps_pending_writes(self, cache_store):
        await cache_store.put_record("8vo A", StudentStatusRecord.absent("s1"), pending={"isAbsent": True})

        await cache_store.save(CourseSessionCache("8vo A", {"s2": StudentStatusRecord.pending("s2")}))

        assert [w.student_id for w in await cache_store.pending_writes("8vo A")] == ["s1"]
