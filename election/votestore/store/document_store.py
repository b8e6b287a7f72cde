"""
Embedded SQLite document store for VoteStore.

This module manages the single SQLite database that stores:
- Documents of every collection (students, candidateLists, votes, ...)
- Secondary index entries (single-field and composite)
- The index catalog used to detect index definition changes

Documents are schema-light JSON bodies wrapped in a fixed envelope
(id, type, createdAt, updatedAt). Selector queries are answered by an
index lookup when one applies and are always re-filtered in memory, so
index choice only affects cost.

Invariants:
    - Document ids are immutable; (collection, id) is unique
    - Index entries are derived from document contents only and can be
      rebuilt at any time (rebuild_indexes)
    - A document write and its index entries commit in one transaction
    - Every write invalidates the query cache for its collection
    - Constraint violations raise DuplicateKey and write nothing

How to change safely:
    - Declare indexes in collections.py; changed definitions are rebuilt
      on the next open()
    - Keep envelope field names stable; exported backups depend on them
    - Never add retries inside the store; callers await wait_ready()

Table schema:
    documents:
        - collection TEXT
        - doc_id TEXT
        - type TEXT
        - body_json TEXT (domain fields)
        - created_at TEXT (ISO-8601)
        - updated_at TEXT (ISO-8601)
        - PRIMARY KEY (collection, doc_id)

    index_entries:
        - collection TEXT
        - index_name TEXT
        - key_json TEXT (JSON array of normalized scalars)
        - doc_id TEXT
        - is_unique INTEGER
        - PRIMARY KEY (collection, index_name, key_json, doc_id)
        - UNIQUE (collection, index_name, key_json) WHERE is_unique = 1

    index_catalog:
        - collection TEXT
        - index_name TEXT
        - definition_json TEXT
        - PRIMARY KEY (collection, index_name)
"""

from __future__ import annotations

import asyncio
import json
import logging
import re
import sqlite3
import uuid
from collections.abc import Iterable, Iterator, Mapping
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from pathlib import Path
from typing import Any

from ..config import CacheConfig
from ..errors import (
    DocumentNotFound,
    DuplicateKey,
    InvalidDocument,
    StoreUnavailable,
    UnknownCollection,
    VoteStoreError,
)
from .collections import DEFAULT_COLLECTIONS, CollectionDef, DocType, IndexDef
from .query_cache import MISS, QueryCache, is_cacheable, make_key
from .selector import (
    MISSING,
    Selector,
    compile_selector,
    equality_fields,
    get_field,
    is_scalar,
    normalize_scalar,
)

logger = logging.getLogger(__name__)

ENVELOPE_FIELDS = ("id", "type", "createdAt", "updatedAt")


def utc_now_iso() -> str:
    """Current UTC time as ISO-8601 with millisecond precision."""
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def _normalize_value(value: Any, path: str) -> Any:
    """Coerce a field value into the supported value kinds.

    Timestamps become ISO-8601 strings; maps and lists are walked.

    Raises:
        InvalidDocument: On any other value kind
    """
    if value is None or isinstance(value, (str, bool, int)):
        return value
    if isinstance(value, float):
        if value != value or value in (float("inf"), float("-inf")):
            raise InvalidDocument(f"Field '{path}' must be a finite number", path)
        return value
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.isoformat().replace("+00:00", "Z")
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, Mapping):
        normalized = {}
        for key, item in value.items():
            if not isinstance(key, str):
                raise InvalidDocument(f"Field '{path}' has a non-string key {key!r}", path)
            normalized[key] = _normalize_value(item, f"{path}.{key}")
        return normalized
    if isinstance(value, (list, tuple)):
        return [_normalize_value(item, f"{path}[{i}]") for i, item in enumerate(value)]
    raise InvalidDocument(
        f"Field '{path}' has unsupported value kind {type(value).__name__}", path
    )


@dataclass
class Document:
    """A stored document.

    Attributes:
        id: Unique id within the collection (immutable)
        type: Document type tag (see DocType)
        created_at: Creation time (ISO-8601)
        updated_at: Last write time (ISO-8601)
        fields: Domain fields
    """

    id: str
    type: str
    created_at: str
    updated_at: str
    fields: dict[str, Any] = field(default_factory=dict)

    def get(self, name: str, default: Any = None) -> Any:
        if name in ENVELOPE_FIELDS:
            return self.to_dict()[name]
        value = get_field(self.fields, name)
        return default if value is MISSING else value

    def to_dict(self) -> dict[str, Any]:
        """Envelope representation (persisted layout)."""
        return {
            **self.fields,
            "id": self.id,
            "type": self.type,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> Document:
        """Create from an envelope dictionary.

        Raises:
            InvalidDocument: If id or type is missing
        """
        doc_id = data.get("id", data.get("_id"))
        if not doc_id or not data.get("type"):
            raise InvalidDocument("Envelope requires id and type")
        now = utc_now_iso()
        return cls(
            id=str(doc_id),
            type=str(data["type"]),
            created_at=data.get("createdAt") or now,
            updated_at=data.get("updatedAt") or now,
            fields=split_fields(data),
        )


def split_fields(data: Mapping[str, Any]) -> dict[str, Any]:
    """Domain fields of an envelope (envelope keys and _id removed)."""
    return {k: v for k, v in data.items() if k not in ENVELOPE_FIELDS and k != "_id"}


def normalize_fields(fields: Mapping[str, Any]) -> dict[str, Any]:
    """Validate and normalize top-level domain fields.

    Raises:
        InvalidDocument: If a key is not a string or a value kind is unsupported
    """
    normalized = {}
    for key, value in fields.items():
        if not isinstance(key, str):
            raise InvalidDocument(f"Field names must be strings, got {key!r}")
        normalized[key] = _normalize_value(value, key)
    return normalized


@dataclass
class WriteResult:
    """Result of a single-document write."""

    id: str


@dataclass
class BulkItemResult:
    """Outcome of one document in a bulk write.

    Attributes:
        ok: Whether the document was stored
        id: Document id (assigned or supplied)
        error: Error message if the document was rejected
        code: Error code if the document was rejected
    """

    ok: bool
    id: str | None = None
    error: str | None = None
    code: str | None = None


@dataclass
class BulkResult:
    """Per-document report of a bulk write."""

    successful: int
    total: int
    results: list[BulkItemResult] = field(default_factory=list)

    @property
    def failed(self) -> list[BulkItemResult]:
        return [r for r in self.results if not r.ok]


@dataclass(frozen=True)
class QueryPlan:
    """How a find() was (or would be) answered.

    Attributes:
        strategy: "composite", "single", "scan" or "cache"
        index_name: Index used, if any
        key: Index key values, if any
    """

    strategy: str
    index_name: str | None = None
    key: tuple[Any, ...] | None = None


@dataclass
class FindResult:
    """Result of a find()."""

    docs: list[Document]
    plan: QueryPlan
    from_cache: bool = False

    @property
    def total(self) -> int:
        return len(self.docs)


def _encode_key(values: Iterable[Any]) -> str:
    return json.dumps([normalize_scalar(v) for v in values], separators=(",", ":"))


def _sort_key(value: Any) -> tuple[int, Any]:
    if value is MISSING or value is None:
        return (0, 0)
    if isinstance(value, bool):
        return (1, int(value))
    if isinstance(value, (int, float)):
        return (2, value)
    if isinstance(value, str):
        return (3, value)
    return (4, json.dumps(value, sort_keys=True))


class DocumentStore:
    """SQLite-backed document store with secondary indexes.

    This class provides:
    - Document CRUD with envelope stamping
    - Selector queries with index planning
    - Unique index enforcement
    - Bulk create with per-document results
    - Backup export/import

    Thread safety:
        Designed for a single asyncio event loop. Each operation opens
        its own connection; writes run in one IMMEDIATE transaction.

    Example:
        >>> store = DocumentStore("/var/lib/votaciones")
        >>> await store.open()
        >>> result = await store.create(
        ...     "students",
        ...     {"cedula": "0987654321", "nombres": "Ana", "course": "8vo A"},
        ...     DocType.STUDENT,
        ... )
        >>> found = await store.find("students", {"type": "student", "course": "8vo A"})
    """

    def __init__(
        self,
        data_dir: str,
        collections: Iterable[CollectionDef] = DEFAULT_COLLECTIONS,
        cache: QueryCache | None = None,
        db_filename: str = "votaciones.db",
        wal_mode: bool = True,
        busy_timeout_ms: int = 5000,
    ) -> None:
        """Initialize the document store.

        Args:
            data_dir: Directory for the SQLite database file
            collections: Collection catalog
            cache: Optional query cache (created with defaults if omitted)
            db_filename: Database file name inside data_dir
            wal_mode: Enable SQLite WAL mode
            busy_timeout_ms: SQLite busy timeout
        """
        self.data_dir = Path(data_dir)
        self.db_path = self.data_dir / db_filename
        self.collections: dict[str, CollectionDef] = {c.name: c for c in collections}
        self.cache = cache if cache is not None else QueryCache(CacheConfig())
        self.wal_mode = wal_mode
        self.busy_timeout_ms = busy_timeout_ms
        self._ready = asyncio.Event()

    @property
    def is_ready(self) -> bool:
        return self._ready.is_set()

    @contextmanager
    def _get_connection(self) -> Iterator[sqlite3.Connection]:
        """Open a connection to the store database.

        Raises:
            StoreUnavailable: If the store has not been opened
        """
        if not self._ready.is_set():
            raise StoreUnavailable("Document store is not open", str(self.db_path))

        conn = sqlite3.connect(
            str(self.db_path),
            timeout=self.busy_timeout_ms / 1000.0,
            isolation_level=None,  # Autocommit by default, explicit transactions
        )
        conn.row_factory = sqlite3.Row
        try:
            conn.execute(f"PRAGMA busy_timeout = {self.busy_timeout_ms}")
            if self.wal_mode:
                conn.execute("PRAGMA journal_mode = WAL")
            conn.execute("PRAGMA synchronous = NORMAL")
            yield conn
        finally:
            conn.close()

    def _create_schema(self, conn: sqlite3.Connection) -> None:
        conn.executescript("""
            CREATE TABLE IF NOT EXISTS schema_version (
                version INTEGER PRIMARY KEY,
                applied_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS documents (
                collection TEXT NOT NULL,
                doc_id TEXT NOT NULL,
                type TEXT NOT NULL,
                body_json TEXT NOT NULL DEFAULT '{}',
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                PRIMARY KEY (collection, doc_id)
            );

            CREATE TABLE IF NOT EXISTS index_entries (
                collection TEXT NOT NULL,
                index_name TEXT NOT NULL,
                key_json TEXT NOT NULL,
                doc_id TEXT NOT NULL,
                is_unique INTEGER NOT NULL DEFAULT 0,
                PRIMARY KEY (collection, index_name, key_json, doc_id)
            );

            CREATE UNIQUE INDEX IF NOT EXISTS idx_entries_unique
                ON index_entries(collection, index_name, key_json) WHERE is_unique = 1;
            CREATE INDEX IF NOT EXISTS idx_entries_doc
                ON index_entries(collection, doc_id);

            CREATE TABLE IF NOT EXISTS index_catalog (
                collection TEXT NOT NULL,
                index_name TEXT NOT NULL,
                definition_json TEXT NOT NULL,
                PRIMARY KEY (collection, index_name)
            );

            INSERT OR IGNORE INTO schema_version (version, applied_at)
            VALUES (1, strftime('%Y-%m-%dT%H:%M:%SZ', 'now'));
        """)

    async def open(self) -> None:
        """Create the database file and schema and mark the store ready.

        Index definitions that changed since the last open are rebuilt.

        Raises:
            StoreUnavailable: If the database cannot be opened
            DuplicateKey: If a new unique index collides with stored data
        """
        if self._ready.is_set():
            return
        try:
            self.data_dir.mkdir(parents=True, exist_ok=True)
            self._ready.set()
            with self._get_connection() as conn:
                self._create_schema(conn)
                stale = self._stale_collections(conn)
        except (sqlite3.Error, OSError) as e:
            self._ready.clear()
            raise StoreUnavailable(f"Failed to open document store: {e}", str(self.db_path)) from e

        for name in stale:
            try:
                await self.rebuild_indexes(name)
            except VoteStoreError:
                self._ready.clear()
                raise
        logger.info(
            f"Opened document store: {self.db_path}",
            extra={"collections": sorted(self.collections), "rebuilt": stale},
        )

    def _stale_collections(self, conn: sqlite3.Connection) -> list[str]:
        """Collections whose declared indexes differ from the stored catalog."""
        cursor = conn.execute("SELECT collection, index_name, definition_json FROM index_catalog")
        stored: dict[str, dict[str, str]] = {}
        for row in cursor.fetchall():
            stored.setdefault(row["collection"], {})[row["index_name"]] = row["definition_json"]

        stale = []
        for name, coldef in self.collections.items():
            declared = {idx.name: self._index_definition(idx) for idx in coldef.indexes}
            if stored.get(name, {}) != declared:
                stale.append(name)
        return stale

    @staticmethod
    def _index_definition(idx: IndexDef) -> str:
        return json.dumps({"fields": list(idx.fields), "unique": idx.unique})

    async def wait_ready(self, timeout: float | None = None) -> None:
        """Wait until open() completed.

        Raises:
            StoreUnavailable: If the store is not ready within timeout
        """
        try:
            await asyncio.wait_for(self._ready.wait(), timeout)
        except asyncio.TimeoutError:
            raise StoreUnavailable(
                f"Document store not ready after {timeout}s", str(self.db_path)
            )

    async def close(self) -> None:
        """Mark the store closed and drop cached query results."""
        self._ready.clear()
        self.cache.clear()
        logger.info(f"Closed document store: {self.db_path}")

    def _collection(self, name: str) -> CollectionDef:
        coldef = self.collections.get(name)
        if coldef is None:
            raise UnknownCollection(name)
        return coldef

    def _generate_id(self, coldef: CollectionDef, type_tag: str, fields: Mapping[str, Any]) -> str:
        if coldef.natural_key:
            natural = fields.get(coldef.natural_key)
            if is_scalar(natural) and str(natural).strip():
                return f"{type_tag}_{str(natural).strip()}"
        return f"{type_tag}_{uuid.uuid4().hex[:12]}"

    @staticmethod
    def _type_tag(doc_type: DocType | str) -> str:
        return doc_type.value if isinstance(doc_type, DocType) else str(doc_type)

    def _prepare(
        self,
        coldef: CollectionDef,
        doc: Mapping[str, Any] | Document,
        doc_type: DocType | str,
        preserve_envelope: bool = False,
    ) -> Document:
        """Build the document to insert (id assigned, fields validated)."""
        if isinstance(doc, Document):
            data = doc.to_dict()
        elif isinstance(doc, Mapping):
            data = dict(doc)
        else:
            raise InvalidDocument(f"Document must be a mapping, got {type(doc).__name__}")
        type_tag = self._type_tag(doc_type)
        fields = normalize_fields(split_fields(data))
        doc_id = data.get("id", data.get("_id"))
        if doc_id is not None and (not isinstance(doc_id, str) or not doc_id):
            raise InvalidDocument("Document id must be a non-empty string", "id")
        now = utc_now_iso()
        return Document(
            id=doc_id or self._generate_id(coldef, type_tag, fields),
            type=type_tag,
            created_at=(data.get("createdAt") if preserve_envelope else None) or now,
            updated_at=(data.get("updatedAt") if preserve_envelope else None) or now,
            fields=fields,
        )

    def _index_entries(self, coldef: CollectionDef, doc: Document) -> list[tuple[IndexDef, str]]:
        flat = doc.to_dict()
        entries = []
        for idx in coldef.indexes:
            values = [get_field(flat, f) for f in idx.fields]
            if all(is_scalar(v) for v in values):
                entries.append((idx, _encode_key(values)))
        return entries

    def _write_index_entries(
        self,
        conn: sqlite3.Connection,
        coldef: CollectionDef,
        doc: Document,
    ) -> None:
        """Insert index entries for a document.

        Raises:
            DuplicateKey: On a unique index collision
        """
        for idx, key_json in self._index_entries(coldef, doc):
            try:
                conn.execute(
                    """
                    INSERT INTO index_entries (collection, index_name, key_json, doc_id, is_unique)
                    VALUES (?, ?, ?, ?, ?)
                    """,
                    (coldef.name, idx.name, key_json, doc.id, 1 if idx.unique else 0),
                )
            except sqlite3.IntegrityError:
                raise DuplicateKey(
                    f"Unique index '{idx.name}' violated in {coldef.name}: {key_json}",
                    collection=coldef.name,
                    index=idx.name,
                    key=json.loads(key_json),
                )

    def _insert(self, conn: sqlite3.Connection, coldef: CollectionDef, doc: Document) -> None:
        """Insert a prepared document inside one transaction."""
        conn.execute("BEGIN IMMEDIATE")
        try:
            cursor = conn.execute(
                "SELECT 1 FROM documents WHERE collection = ? AND doc_id = ?",
                (coldef.name, doc.id),
            )
            if cursor.fetchone() is not None:
                raise DuplicateKey(
                    f"Document id '{doc.id}' already exists in {coldef.name}",
                    collection=coldef.name,
                    index="_id",
                    key=doc.id,
                )

            conn.execute(
                """
                INSERT INTO documents (collection, doc_id, type, body_json, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    coldef.name,
                    doc.id,
                    doc.type,
                    json.dumps(doc.fields),
                    doc.created_at,
                    doc.updated_at,
                ),
            )
            self._write_index_entries(conn, coldef, doc)
            conn.execute("COMMIT")
        except Exception:
            conn.execute("ROLLBACK")
            raise

    @staticmethod
    def _row_to_document(row: sqlite3.Row) -> Document:
        return Document(
            id=row["doc_id"],
            type=row["type"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            fields=json.loads(row["body_json"]),
        )

    def _invalidate(self, collection: str) -> None:
        self.cache.invalidate_pattern(collection)

    async def create(
        self,
        collection: str,
        doc: Mapping[str, Any] | Document,
        doc_type: DocType | str,
    ) -> WriteResult:
        """Create a document.

        Args:
            collection: Collection name
            doc: Domain fields, optionally with an explicit "id"
            doc_type: Document type tag

        Returns:
            WriteResult with the assigned id

        Raises:
            DuplicateKey: If the id or a unique index key already exists
            InvalidDocument: If a field value is not supported
        """
        coldef = self._collection(collection)
        prepared = self._prepare(coldef, doc, doc_type)

        with self._get_connection() as conn:
            self._insert(conn, coldef, prepared)

        self._invalidate(collection)
        logger.debug(
            "Created document",
            extra={"collection": collection, "doc_id": prepared.id, "type": prepared.type},
        )
        return WriteResult(id=prepared.id)

    async def get(self, collection: str, doc_id: str) -> Document | None:
        """Get a document by id."""
        self._collection(collection)
        with self._get_connection() as conn:
            cursor = conn.execute(
                "SELECT * FROM documents WHERE collection = ? AND doc_id = ?",
                (collection, doc_id),
            )
            row = cursor.fetchone()
            return self._row_to_document(row) if row else None

    def explain(self, collection: str, selector: Selector | None) -> QueryPlan:
        """Choose how a selector would be answered.

        Preference order: composite index whose fields are exactly the
        selector's equality fields, the widest composite index covered by
        them, a single-field index (unique first), then a full scan.
        """
        coldef = self._collection(collection)
        eq = equality_fields(selector)
        if not eq:
            return QueryPlan("scan")

        eq_fields = set(eq)
        composites = [
            idx for idx in coldef.indexes if idx.is_composite and set(idx.fields) <= eq_fields
        ]
        if composites:
            exact = [idx for idx in composites if set(idx.fields) == eq_fields]
            chosen = exact[0] if exact else max(composites, key=lambda i: len(i.fields))
            return QueryPlan(
                "composite", chosen.name, tuple(eq[f] for f in chosen.fields)
            )

        singles = [
            idx for idx in coldef.indexes if not idx.is_composite and idx.fields[0] in eq_fields
        ]
        if singles:
            chosen = sorted(singles, key=lambda i: not i.unique)[0]
            return QueryPlan("single", chosen.name, (eq[chosen.fields[0]],))

        return QueryPlan("scan")

    async def find(
        self,
        collection: str,
        selector: Selector | None = None,
        limit: int | None = None,
        sort: list[tuple[str, str]] | None = None,
        use_cache: bool = True,
        use_index: bool = True,
    ) -> FindResult:
        """Find documents matching a selector.

        Args:
            collection: Collection name
            selector: Selector (None or {} matches everything)
            limit: Maximum documents to return
            sort: Optional [(field, "asc"|"desc"), ...]; otherwise order is
                unspecified
            use_cache: Serve/store cacheable queries through the query cache
            use_index: Allow index planning (False forces a full scan)

        Returns:
            FindResult with matching documents and the plan used
        """
        self._collection(collection)
        cacheable = (
            use_cache
            and self.cache.config.enabled
            and is_cacheable(collection, selector)
        )
        cache_key = make_key(collection, selector, limit, sort) if cacheable else None
        if cache_key is not None:
            cached = self.cache.get(cache_key, collection)
            if cached is not MISS:
                return FindResult(docs=cached, plan=QueryPlan("cache"), from_cache=True)

        predicate = compile_selector(selector)
        plan = self.explain(collection, selector) if use_index else QueryPlan("scan")

        with self._get_connection() as conn:
            if plan.index_name is not None:
                cursor = conn.execute(
                    """
                    SELECT d.* FROM index_entries e
                    JOIN documents d ON d.collection = e.collection AND d.doc_id = e.doc_id
                    WHERE e.collection = ? AND e.index_name = ? AND e.key_json = ?
                    """,
                    (collection, plan.index_name, _encode_key(plan.key or ())),
                )
            else:
                cursor = conn.execute(
                    "SELECT * FROM documents WHERE collection = ?",
                    (collection,),
                )
            docs = [
                doc
                for doc in (self._row_to_document(row) for row in cursor.fetchall())
                if predicate(doc.to_dict())
            ]

        if sort:
            for sort_field, direction in reversed(sort):
                docs.sort(
                    key=lambda d: _sort_key(get_field(d.to_dict(), sort_field)),
                    reverse=direction.lower() == "desc",
                )
        if limit is not None:
            docs = docs[:limit]

        if cache_key is not None:
            self.cache.set(cache_key, docs, collection)

        return FindResult(docs=docs, plan=plan)

    async def update(self, collection: str, doc: Mapping[str, Any] | Document) -> WriteResult:
        """Replace a document keyed by id (last write wins).

        createdAt is preserved and updatedAt restamped. The type is kept
        unless the new body carries one.

        Raises:
            DocumentNotFound: If no document has that id
            DuplicateKey: If the new body collides on a unique index
            InvalidDocument: If id is missing or a value is not supported
        """
        coldef = self._collection(collection)
        data = doc.to_dict() if isinstance(doc, Document) else dict(doc)
        doc_id = data.get("id", data.get("_id"))
        if not doc_id:
            raise InvalidDocument("update() requires the document id", "id")
        fields = normalize_fields(split_fields(data))

        with self._get_connection() as conn:
            conn.execute("BEGIN IMMEDIATE")
            try:
                cursor = conn.execute(
                    "SELECT * FROM documents WHERE collection = ? AND doc_id = ?",
                    (collection, doc_id),
                )
                row = cursor.fetchone()
                if row is None:
                    raise DocumentNotFound(collection, doc_id)

                updated = Document(
                    id=doc_id,
                    type=str(data.get("type") or row["type"]),
                    created_at=row["created_at"],
                    updated_at=utc_now_iso(),
                    fields=fields,
                )
                conn.execute(
                    """
                    UPDATE documents SET type = ?, body_json = ?, updated_at = ?
                    WHERE collection = ? AND doc_id = ?
                    """,
                    (updated.type, json.dumps(fields), updated.updated_at, collection, doc_id),
                )
                conn.execute(
                    "DELETE FROM index_entries WHERE collection = ? AND doc_id = ?",
                    (collection, doc_id),
                )
                self._write_index_entries(conn, coldef, updated)
                conn.execute("COMMIT")
            except Exception:
                conn.execute("ROLLBACK")
                raise

        self._invalidate(collection)
        logger.debug("Updated document", extra={"collection": collection, "doc_id": doc_id})
        return WriteResult(id=doc_id)

    async def delete(self, collection: str, doc_id: str) -> WriteResult:
        """Delete a document and its index entries.

        Raises:
            DocumentNotFound: If no document has that id
        """
        self._collection(collection)
        with self._get_connection() as conn:
            conn.execute("BEGIN IMMEDIATE")
            try:
                conn.execute(
                    "DELETE FROM index_entries WHERE collection = ? AND doc_id = ?",
                    (collection, doc_id),
                )
                cursor = conn.execute(
                    "DELETE FROM documents WHERE collection = ? AND doc_id = ?",
                    (collection, doc_id),
                )
                if cursor.rowcount == 0:
                    raise DocumentNotFound(collection, doc_id)
                conn.execute("COMMIT")
            except Exception:
                conn.execute("ROLLBACK")
                raise

        self._invalidate(collection)
        logger.debug("Deleted document", extra={"collection": collection, "doc_id": doc_id})
        return WriteResult(id=doc_id)

    async def bulk_create(
        self,
        collection: str,
        docs: Iterable[Mapping[str, Any] | Document],
        doc_type: DocType | str,
        preserve_envelope: bool = False,
    ) -> BulkResult:
        """Create many documents, each attempted independently.

        Args:
            collection: Collection name
            docs: Documents to create
            doc_type: Type tag for every document
            preserve_envelope: Keep supplied createdAt/updatedAt (backup import)

        Returns:
            BulkResult with one BulkItemResult per input document
        """
        coldef = self._collection(collection)
        docs = list(docs)
        results: list[BulkItemResult] = []

        with self._get_connection() as conn:
            for position, doc in enumerate(docs):
                prepared: Document | None = None
                try:
                    prepared = self._prepare(coldef, doc, doc_type, preserve_envelope)
                    self._insert(conn, coldef, prepared)
                    results.append(BulkItemResult(ok=True, id=prepared.id))
                except VoteStoreError as e:
                    results.append(
                        BulkItemResult(
                            ok=False,
                            id=prepared.id if prepared else None,
                            error=e.message,
                            code=e.code,
                        )
                    )
                    logger.warning(
                        f"Bulk create rejected document #{position}: {e.message}",
                        extra={"collection": collection, "code": e.code},
                    )
                except sqlite3.Error as e:
                    results.append(
                        BulkItemResult(
                            ok=False,
                            id=prepared.id if prepared else None,
                            error=str(e),
                            code="SQLITE_ERROR",
                        )
                    )
                    logger.error(
                        f"Bulk create failed for document #{position}: {e}",
                        extra={"collection": collection},
                    )

        successful = sum(1 for r in results if r.ok)
        if successful:
            self._invalidate(collection)
        logger.info(
            f"Bulk created {successful}/{len(docs)} documents in {collection}",
            extra={"collection": collection},
        )
        return BulkResult(successful=successful, total=len(docs), results=results)

    async def search(
        self,
        collection: str,
        text: str,
        fields: Iterable[str] = ("nombres", "apellidos", "cedula"),
        limit: int = 50,
    ) -> FindResult:
        """Case-insensitive substring search over a few fields (never cached)."""
        pattern = re.escape(text.strip())
        selector = {"$or": [{f: {"$regex": pattern}} for f in fields]}
        return await self.find(collection, selector, limit=limit, use_cache=False)

    async def count(self, collection: str) -> int:
        self._collection(collection)
        with self._get_connection() as conn:
            cursor = conn.execute(
                "SELECT COUNT(*) FROM documents WHERE collection = ?", (collection,)
            )
            return cursor.fetchone()[0]

    async def clear_collection(self, collection: str) -> int:
        """Delete every document of a collection.

        Returns:
            Number of documents removed
        """
        self._collection(collection)
        with self._get_connection() as conn:
            conn.execute("BEGIN IMMEDIATE")
            try:
                conn.execute("DELETE FROM index_entries WHERE collection = ?", (collection,))
                cursor = conn.execute("DELETE FROM documents WHERE collection = ?", (collection,))
                removed = cursor.rowcount
                conn.execute("COMMIT")
            except Exception:
                conn.execute("ROLLBACK")
                raise

        self._invalidate(collection)
        logger.info(f"Cleared collection {collection}", extra={"removed": removed})
        return removed

    async def rebuild_indexes(self, collection: str) -> int:
        """Rebuild every index of a collection from document contents.

        Returns:
            Number of documents indexed

        Raises:
            DuplicateKey: If stored documents collide on a unique index
        """
        coldef = self._collection(collection)
        with self._get_connection() as conn:
            conn.execute("BEGIN IMMEDIATE")
            try:
                conn.execute("DELETE FROM index_entries WHERE collection = ?", (collection,))
                cursor = conn.execute(
                    "SELECT * FROM documents WHERE collection = ?", (collection,)
                )
                rows = cursor.fetchall()
                for row in rows:
                    self._write_index_entries(conn, coldef, self._row_to_document(row))

                conn.execute("DELETE FROM index_catalog WHERE collection = ?", (collection,))
                for idx in coldef.indexes:
                    conn.execute(
                        """
                        INSERT INTO index_catalog (collection, index_name, definition_json)
                        VALUES (?, ?, ?)
                        """,
                        (collection, idx.name, self._index_definition(idx)),
                    )
                conn.execute("COMMIT")
            except Exception:
                conn.execute("ROLLBACK")
                raise

        logger.info(f"Rebuilt indexes for {collection}", extra={"documents": len(rows)})
        return len(rows)

    async def get_stats(self) -> dict[str, Any]:
        """Per-collection document counts plus query cache statistics."""
        stats: dict[str, Any] = {"collections": {}}
        for name in self.collections:
            stats["collections"][name] = await self.count(name)
        stats["cache"] = self.cache.stats()
        return stats

    async def export_all(self) -> dict[str, list[dict[str, Any]]]:
        """Export every collection as envelope dictionaries."""
        exported = {}
        for name in self.collections:
            result = await self.find(name, use_cache=False)
            exported[name] = [doc.to_dict() for doc in result.docs]
        return exported

    async def import_backup(self, data: Mapping[str, Any]) -> dict[str, BulkResult]:
        """Replace known collections with the documents of a backup.

        Unknown collections and non-list entries are skipped. Ids and
        timestamps of the backup are kept.
        """
        results: dict[str, BulkResult] = {}
        for name, docs in data.items():
            if name not in self.collections or not isinstance(docs, list):
                logger.warning(f"Skipping backup entry {name}")
                continue
            await self.clear_collection(name)
            by_type: dict[str, list[Mapping[str, Any]]] = {}
            for doc in docs:
                by_type.setdefault(str(doc.get("type") or "document"), []).append(doc)

            merged = BulkResult(successful=0, total=0)
            for type_tag, group in by_type.items():
                partial = await self.bulk_create(name, group, type_tag, preserve_envelope=True)
                merged.successful += partial.successful
                merged.total += partial.total
                merged.results.extend(partial.results)
            results[name] = merged

        logger.info("Backup data imported", extra={"collections": sorted(results)})
        return results
