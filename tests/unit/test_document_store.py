"""
Unit tests for the SQLite document store.

Tests cover:
- Lifecycle (not open, open, wait_ready)
- Document CRUD and envelope stamping
- Unique index enforcement
- Index planning and scan/index equivalence
- Bulk create with partial failure
- Query cache integration
- Search, export/import and index rebuild
"""

import asyncio
import tempfile

import pytest

from election.votestore.config import CacheConfig
from election.votestore.errors import (
    DocumentNotFound,
    DuplicateKey,
    InvalidDocument,
    StoreUnavailable,
    UnknownCollection,
)
from election.votestore.store import (
    STUDENTS,
    VOTES,
    CollectionDef,
    DocType,
    DocumentStore,
    IndexDef,
    QueryCache,
)


def make_student(cedula, nombres, apellidos, course, level="Bachillerato", **extra):
    return {
        "cedula": cedula,
        "nombres": nombres,
        "apellidos": apellidos,
        "course": course,
        "level": level,
        **extra,
    }


ROSTER = [
    make_student("0912345678", "Ana", "Torres", "1ro Bach A", numero=1),
    make_student("0923456789", "Bruno", "Vera", "1ro Bach A", numero=2),
    make_student("0934567890", "Carla", "Mendoza", "1ro Bach B", numero=3),
    make_student("0945678901", "Diego", "Alvarado", "8vo A", level="EGB", numero=4),
    make_student("0956789012", "Elena", "Castro", "8vo A", level="EGB", numero=5, isAbsent=True),
]


class TestDocumentStoreLifecycle:
    """Tests for open/close and readiness."""

    @pytest.fixture
    def data_dir(self):
        """Create temporary data directory."""
        with tempfile.TemporaryDirectory() as tmpdir:
            yield tmpdir

    @pytest.mark.asyncio
    async def test_operation_before_open_raises(self, data_dir):
        """Store rejects operations until opened."""
        store = DocumentStore(data_dir, wal_mode=False)

        with pytest.raises(StoreUnavailable):
            await store.find(STUDENTS, {"type": "student"})

    @pytest.mark.asyncio
    async def test_wait_ready_times_out(self, data_dir):
        store = DocumentStore(data_dir, wal_mode=False)

        with pytest.raises(StoreUnavailable):
            await store.wait_ready(timeout=0.01)

    @pytest.mark.asyncio
    async def test_wait_ready_released_by_open(self, data_dir):
        """Callers awaiting readiness resume once open() completes."""
        store = DocumentStore(data_dir, wal_mode=False)
        waiter = asyncio.create_task(store.wait_ready(timeout=5))

        await store.open()
        await waiter
        assert store.is_ready

    @pytest.mark.asyncio
    async def test_data_survives_reopen(self, data_dir):
        store = DocumentStore(data_dir, wal_mode=False)
        await store.open()
        result = await store.create(STUDENTS, ROSTER[0], DocType.STUDENT)
        await store.close()

        reopened = DocumentStore(data_dir, wal_mode=False)
        await reopened.open()
        doc = await reopened.get(STUDENTS, result.id)
        assert doc is not None
        assert doc.get("nombres") == "Ana"

    @pytest.mark.asyncio
    async def test_new_unique_index_on_colliding_data_fails_open(self, data_dir):
        """Turning an index unique over colliding data fails open()."""
        loose = (CollectionDef("people", (IndexDef("name", ("name",)),)),)
        store = DocumentStore(data_dir, collections=loose, wal_mode=False)
        await store.open()
        await store.create("people", {"name": "Ana"}, "person")
        await store.create("people", {"name": "Ana"}, "person")
        await store.close()

        strict = (CollectionDef("people", (IndexDef("name", ("name",), unique=True),)),)
        reopened = DocumentStore(data_dir, collections=strict, wal_mode=False)
        with pytest.raises(DuplicateKey):
            await reopened.open()
        assert not reopened.is_ready


class TestDocumentStore:
    """Tests for DocumentStore operations."""

    @pytest.fixture
    def data_dir(self):
        """Create temporary data directory."""
        with tempfile.TemporaryDirectory() as tmpdir:
            yield tmpdir

    @pytest.fixture
    async def store(self, data_dir):
        """Create and open a store."""
        store = DocumentStore(data_dir, wal_mode=False)
        await store.open()
        yield store
        await store.close()

    @pytest.fixture
    async def roster(self, store):
        """Store with the sample roster loaded."""
        result = await store.bulk_create(STUDENTS, ROSTER, DocType.STUDENT)
        assert result.successful == len(ROSTER)
        return store

    @pytest.mark.asyncio
    async def test_create_assigns_natural_key_id(self, store):
        result = await store.create(STUDENTS, ROSTER[0], DocType.STUDENT)

        assert result.id == "student_0912345678"

    @pytest.mark.asyncio
    async def test_create_assigns_random_id_without_natural_key(self, store):
        first = await store.create(VOTES, {"studentId": "x", "choiceId": "l1"}, DocType.VOTE)
        second = await store.create(VOTES, {"studentId": "x", "choiceId": "l1"}, DocType.VOTE)

        assert first.id.startswith("vote_")
        assert first.id != second.id

    @pytest.mark.asyncio
    async def test_create_keeps_explicit_id(self, store):
        result = await store.create(STUDENTS, {"id": "custom-1", **ROSTER[0]}, DocType.STUDENT)

        assert result.id == "custom-1"

    @pytest.mark.asyncio
    async def test_create_then_find_round_trip(self, store):
        """A created document is found by id with all domain fields intact."""
        doc = make_student(
            "0999999999",
            "Zoe",
            "Ruiz",
            "10mo B",
            numero=10,
            votado=False,
            promedio=9.5,
            contacto={"telefono": "0999", "tags": ["a", "b"]},
        )
        result = await store.create(STUDENTS, doc, DocType.STUDENT)

        found = await store.find(STUDENTS, {"id": result.id})
        assert found.total == 1
        stored = found.docs[0]
        assert stored.fields == doc
        assert stored.type == "student"
        assert stored.created_at == stored.updated_at
        envelope = stored.to_dict()
        assert envelope["id"] == result.id
        assert envelope["createdAt"].endswith("Z")

    @pytest.mark.asyncio
    async def test_create_duplicate_id_raises(self, store):
        await store.create(STUDENTS, ROSTER[0], DocType.STUDENT)

        with pytest.raises(DuplicateKey) as exc_info:
            await store.create(STUDENTS, {"id": "student_0912345678", "cedula": "1"}, DocType.STUDENT)
        assert exc_info.value.index == "_id"

    @pytest.mark.asyncio
    async def test_create_duplicate_unique_key_writes_nothing(self, store):
        await store.create(STUDENTS, ROSTER[0], DocType.STUDENT)

        with pytest.raises(DuplicateKey) as exc_info:
            await store.create(
                STUDENTS, {"id": "other", **ROSTER[0]}, DocType.STUDENT
            )
        assert exc_info.value.index == "cedula"
        assert exc_info.value.key == ["0912345678"]
        assert await store.get(STUDENTS, "other") is None
        assert await store.count(STUDENTS) == 1

    @pytest.mark.asyncio
    async def test_create_rejects_unsupported_value(self, store):
        with pytest.raises(InvalidDocument):
            await store.create(STUDENTS, {"cedula": "1", "photo": b"raw"}, DocType.STUDENT)

    @pytest.mark.asyncio
    async def test_unknown_collection(self, store):
        with pytest.raises(UnknownCollection):
            await store.find("parents", {})

    @pytest.mark.asyncio
    async def test_update_replaces_document(self, roster):
        store = roster
        original = await store.get(STUDENTS, "student_0912345678")

        await store.update(STUDENTS, {"id": original.id, "cedula": "0912345678", "course": "2do Bach A"})

        updated = await store.get(STUDENTS, original.id)
        assert updated.fields == {"cedula": "0912345678", "course": "2do Bach A"}
        assert updated.type == "student"
        assert updated.created_at == original.created_at
        assert updated.updated_at >= original.updated_at

    @pytest.mark.asyncio
    async def test_update_reindexes(self, roster):
        store = roster
        doc = await store.get(STUDENTS, "student_0912345678")

        await store.update(STUDENTS, {**doc.to_dict(), "course": "3ro Bach C"})

        moved = await store.find(STUDENTS, {"type": "student", "course": "3ro Bach C"})
        assert [d.id for d in moved.docs] == [doc.id]
        stayed = await store.find(STUDENTS, {"type": "student", "course": "1ro Bach A"})
        assert doc.id not in {d.id for d in stayed.docs}

    @pytest.mark.asyncio
    async def test_update_missing_document_raises(self, store):
        with pytest.raises(DocumentNotFound):
            await store.update(STUDENTS, {"id": "student_nobody", "nombres": "X"})

    @pytest.mark.asyncio
    async def test_update_without_id_raises(self, store):
        with pytest.raises(InvalidDocument):
            await store.update(STUDENTS, {"nombres": "X"})

    @pytest.mark.asyncio
    async def test_update_unique_collision_keeps_previous_version(self, roster):
        store = roster
        doc = await store.get(STUDENTS, "student_0912345678")

        with pytest.raises(DuplicateKey):
            await store.update(STUDENTS, {**doc.to_dict(), "cedula": "0923456789"})

        unchanged = await store.get(STUDENTS, doc.id)
        assert unchanged.get("cedula") == "0912345678"
        found = await store.find(STUDENTS, {"cedula": "0912345678"})
        assert found.total == 1

    @pytest.mark.asyncio
    async def test_delete(self, roster):
        store = roster

        await store.delete(STUDENTS, "student_0912345678")

        assert await store.get(STUDENTS, "student_0912345678") is None
        found = await store.find(STUDENTS, {"cedula": "0912345678"})
        assert found.total == 0
        # The unique key is free again
        await store.create(STUDENTS, ROSTER[0], DocType.STUDENT)

    @pytest.mark.asyncio
    async def test_delete_missing_raises(self, store):
        with pytest.raises(DocumentNotFound):
            await store.delete(STUDENTS, "student_nobody")

    @pytest.mark.asyncio
    async def test_bulk_create_partial_failure(self, store):
        """Five valid rows and one duplicate: five stored, one reported."""
        rows = ROSTER + [make_student("0923456789", "Bruno", "Duplicado", "1ro Bach A")]

        result = await store.bulk_create(STUDENTS, rows, DocType.STUDENT)

        assert result.successful == 5
        assert result.total == 6
        assert len(result.results) == 6
        assert [r.ok for r in result.results] == [True] * 5 + [False]
        failure = result.failed[0]
        assert failure.code == "DUPLICATE_KEY"
        assert failure.id == "student_0923456789"
        assert failure.error
        assert await store.count(STUDENTS) == 5

    @pytest.mark.asyncio
    async def test_bulk_create_reports_invalid_rows(self, store):
        rows = [ROSTER[0], {"cedula": "1", "when": object()}, ROSTER[1]]

        result = await store.bulk_create(STUDENTS, rows, DocType.STUDENT)

        assert result.successful == 2
        assert result.results[1].ok is False
        assert result.results[1].code == "INVALID_DOCUMENT"

    @pytest.mark.asyncio
    async def test_bulk_create_reports_non_mapping_rows(self, store):
        rows = [ROSTER[0], "0912345678;Ana;Torres", None, ROSTER[1]]

        result = await store.bulk_create(STUDENTS, rows, DocType.STUDENT)

        assert result.successful == 2
        assert result.total == 4
        assert [r.ok for r in result.results] == [True, False, False, True]
        assert {r.code for r in result.failed} == {"INVALID_DOCUMENT"}
        assert result.failed[0].id is None
        assert await store.count(STUDENTS) == 2

    @pytest.mark.asyncio
    async def test_create_rejects_non_mapping(self, store):
        with pytest.raises(InvalidDocument):
            await store.create(STUDENTS, ["cedula", "1"], DocType.STUDENT)

    @pytest.mark.asyncio
    async def test_find_with_sort_and_limit(self, roster):
        store = roster

        result = await store.find(
            STUDENTS,
            {"type": "student"},
            sort=[("numero", "desc")],
            limit=2,
        )

        assert [d.get("numero") for d in result.docs] == [5, 4]

    @pytest.mark.asyncio
    async def test_find_malformed_selector_returns_nothing(self, roster):
        result = await roster.find(STUDENTS, {"numero": {"$gt": 1}})

        assert result.docs == []

    @pytest.mark.asyncio
    async def test_search(self, roster):
        result = await roster.search(STUDENTS, "mendoza")
        assert [d.get("nombres") for d in result.docs] == ["Carla"]

        by_cedula = await roster.search(STUDENTS, "094567")
        assert [d.get("nombres") for d in by_cedula.docs] == ["Diego"]

    @pytest.mark.asyncio
    async def test_search_treats_text_literally(self, roster):
        result = await roster.search(STUDENTS, "(")

        assert result.docs == []

    @pytest.mark.asyncio
    async def test_clear_collection(self, roster):
        removed = await roster.clear_collection(STUDENTS)

        assert removed == len(ROSTER)
        assert await roster.count(STUDENTS) == 0

    @pytest.mark.asyncio
    async def test_rebuild_indexes(self, roster):
        indexed = await roster.rebuild_indexes(STUDENTS)

        assert indexed == len(ROSTER)
        result = await roster.find(STUDENTS, {"type": "student", "level": "EGB", "course": "8vo A"})
        assert result.total == 2

    @pytest.mark.asyncio
    async def test_export_import_round_trip(self, roster, data_dir):
        store = roster
        await store.create(VOTES, {"studentId": "student_0923456789", "choiceId": "l1"}, DocType.VOTE)
        exported = await store.export_all()

        with tempfile.TemporaryDirectory() as other_dir:
            target = DocumentStore(other_dir, wal_mode=False)
            await target.open()
            results = await target.import_backup({**exported, "unknown": [{"x": 1}]})

            assert set(results) == set(exported)
            assert results[STUDENTS].successful == len(ROSTER)
            reimported = await target.export_all()
            for name, docs in exported.items():
                assert sorted(reimported[name], key=lambda d: d["id"]) == sorted(
                    docs, key=lambda d: d["id"]
                )
            await target.close()

    @pytest.mark.asyncio
    async def test_get_stats(self, roster):
        await roster.find(STUDENTS, {"type": "student"})

        stats = await roster.get_stats()

        assert stats["collections"][STUDENTS] == len(ROSTER)
        assert stats["collections"][VOTES] == 0
        assert stats["cache"]["size"] == 1


class TestQueryPlanning:
    """Index selection never changes results."""

    @pytest.fixture
    def data_dir(self):
        """Create temporary data directory."""
        with tempfile.TemporaryDirectory() as tmpdir:
            yield tmpdir

    @pytest.fixture
    async def store(self, data_dir):
        """Open store with the sample roster."""
        store = DocumentStore(data_dir, wal_mode=False, cache=QueryCache(CacheConfig(enabled=False)))
        await store.open()
        await store.bulk_create(STUDENTS, ROSTER, DocType.STUDENT)
        yield store
        await store.close()

    @pytest.mark.asyncio
    async def test_exact_composite_index_preferred(self, store):
        plan = store.explain(STUDENTS, {"type": "student", "level": "EGB", "course": "8vo A"})

        assert plan.strategy == "composite"
        assert plan.index_name == "type_level_course"
        assert plan.key == ("student", "EGB", "8vo A")

    @pytest.mark.asyncio
    async def test_widest_covered_composite(self, store):
        plan = store.explain(
            STUDENTS, {"type": "student", "course": "8vo A", "nombres": "Diego"}
        )

        assert plan.index_name == "type_course"

    @pytest.mark.asyncio
    async def test_single_field_prefers_unique(self, store):
        plan = store.explain(STUDENTS, {"cedula": "0912345678", "course": "1ro Bach A"})

        assert plan.strategy == "single"
        assert plan.index_name == "cedula"

    @pytest.mark.asyncio
    async def test_scan_without_equality(self, store):
        plan = store.explain(STUDENTS, {"nombres": {"$regex": "a"}})

        assert plan.strategy == "scan"

    @pytest.mark.parametrize(
        "selector",
        [
            {"type": "student"},
            {"type": "student", "course": "1ro Bach A"},
            {"type": "student", "level": "EGB", "course": "8vo A"},
            {"type": "student", "course": "8vo A", "isAbsent": True},
            {"type": "student", "course": "8vo A", "isAbsent": {"$ne": True}},
            {"cedula": "0934567890"},
            {"cedula": "0934567890", "course": "8vo A"},
            {"type": "student", "numero": 3.0},
            {"course": "1ro Bach A", "$or": [{"numero": 1}, {"nombres": {"$regex": "car"}}]},
            {"level": "Bachillerato", "numero": {"$exists": True}},
            {"type": "student", "course": {"$regex": "bach"}},
        ],
    )
    @pytest.mark.asyncio
    async def test_index_and_scan_agree(self, store, selector):
        indexed = await store.find(STUDENTS, selector)
        scanned = await store.find(STUDENTS, selector, use_index=False)

        assert scanned.plan.strategy == "scan"
        assert {d.id for d in indexed.docs} == {d.id for d in scanned.docs}

    @pytest.mark.asyncio
    async def test_document_missing_unique_field_indexed_elsewhere(self, store):
        await store.create(STUDENTS, {"nombres": "Sin cedula", "course": "8vo A"}, DocType.STUDENT)

        indexed = await store.find(STUDENTS, {"type": "student", "course": "8vo A"})
        assert "Sin cedula" in {d.get("nombres") for d in indexed.docs}


class TestStoreQueryCache:
    """Query cache integration."""

    @pytest.fixture
    def data_dir(self):
        """Create temporary data directory."""
        with tempfile.TemporaryDirectory() as tmpdir:
            yield tmpdir

    @pytest.fixture
    async def store(self, data_dir):
        store = DocumentStore(data_dir, wal_mode=False)
        await store.open()
        await store.bulk_create(STUDENTS, ROSTER, DocType.STUDENT)
        yield store
        await store.close()

    @pytest.mark.asyncio
    async def test_repeated_cacheable_find_served_from_cache(self, store):
        first = await store.find(STUDENTS, {"type": "student", "course": "1ro Bach A"})
        second = await store.find(STUDENTS, {"course": "1ro Bach A", "type": "student"})

        assert first.from_cache is False
        assert second.from_cache is True
        assert {d.id for d in second.docs} == {d.id for d in first.docs}

    @pytest.mark.asyncio
    async def test_update_invalidates_cached_find(self, store):
        """A cacheable find after update never returns the pre-update value."""
        before = await store.find(STUDENTS, {"type": "student", "course": "1ro Bach A"})
        doc = before.docs[0]

        await store.update(STUDENTS, {**doc.to_dict(), "votado": True})

        after = await store.find(STUDENTS, {"type": "student", "course": "1ro Bach A"})
        assert after.from_cache is False
        updated = {d.id: d for d in after.docs}[doc.id]
        assert updated.get("votado") is True

    @pytest.mark.asyncio
    async def test_write_to_other_collection_keeps_cache(self, store):
        await store.find(STUDENTS, {"type": "student"})

        await store.create(VOTES, {"studentId": "x"}, DocType.VOTE)

        again = await store.find(STUDENTS, {"type": "student"})
        assert again.from_cache is True

    @pytest.mark.asyncio
    async def test_cached_result_cannot_be_mutated(self, store):
        first = await store.find(STUDENTS, {"type": "student"})
        first.docs[0].fields["nombres"] = "Mutated"
        first.docs.clear()

        again = await store.find(STUDENTS, {"type": "student"})
        assert again.from_cache is True
        assert again.total == len(ROSTER)
        assert "Mutated" not in {d.get("nombres") for d in again.docs}

    @pytest.mark.asyncio
    async def test_non_cacheable_queries_bypass_cache(self, store):
        await store.find(STUDENTS, {"nombres": {"$regex": "ana"}})
        again = await store.find(STUDENTS, {"nombres": {"$regex": "ana"}})

        assert again.from_cache is False
        assert len(store.cache) == 0
