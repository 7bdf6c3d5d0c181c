"""
Relational Adapter - SQLite table with a monotonic version column.

Each record is one row in `documents`:
- (ns, id) is unique; `seq` keeps insertion order
- `version` increases by one on every successful mutation
- soft delete sets `deleted_at`; reads filter `deleted_at IS NULL`
- hard delete removes the row

Every operation is one local transaction. Optimistic concurrency is a
conditional UPDATE (`WHERE version = expected`); zero affected rows is a
Conflict.
"""

import json
import sqlite3
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, Generator

from docstore.core.config import settings, get_logger
from docstore.core.errors import BackendError, ConflictError
from docstore.core.types import (
    DeleteResult,
    DocumentRecord,
    ListFilter,
    ListResult,
    SearchQuery,
    SearchResult,
    SetResult,
)
from docstore.storage.base import StorageAdapter, check_preconditions, coerce_record, normalize_id
from docstore.storage.query import apply_list, apply_search, normalize_types

logger = get_logger("storage.relational")


class RelationalAdapter(StorageAdapter):
    """
    SQLite-backed document table.

    Tables:
    - documents: one row per record, versioned
    """

    kind = "relational"

    def __init__(
        self,
        db_path: Path | None = None,
        namespace: str | None = None,
        timeout: float | None = None,
    ):
        """Initialize the relational adapter."""
        self.db_path = Path(db_path or settings.relational_db)
        self.namespace = namespace or settings.namespace
        self.timeout = timeout if timeout is not None else settings.sqlite_timeout
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    def _init_db(self) -> None:
        """Initialize the database schema."""
        with self._get_connection() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS documents (
                    seq INTEGER PRIMARY KEY AUTOINCREMENT,
                    ns TEXT NOT NULL,
                    id TEXT NOT NULL,
                    type TEXT,
                    context TEXT,
                    data TEXT NOT NULL DEFAULT '{}',
                    content TEXT NOT NULL DEFAULT '',
                    version INTEGER NOT NULL DEFAULT 1,
                    deleted_at TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    UNIQUE (ns, id)
                )
            """)

            conn.execute("CREATE INDEX IF NOT EXISTS idx_documents_type ON documents(ns, type)")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_documents_deleted ON documents(ns, deleted_at)")

    @contextmanager
    def _get_connection(self) -> Generator[sqlite3.Connection, None, None]:
        """Get a database connection with row factory, in autocommit mode."""
        conn = sqlite3.connect(self.db_path, timeout=self.timeout, isolation_level=None)
        conn.row_factory = sqlite3.Row
        try:
            yield conn
        finally:
            conn.close()

    @contextmanager
    def _transaction(self) -> Generator[sqlite3.Connection, None, None]:
        """Run a block inside one write transaction."""
        with self._get_connection() as conn:
            try:
                conn.execute("BEGIN IMMEDIATE")
            except sqlite3.OperationalError as e:
                raise BackendError(f"Could not start transaction on {self.db_path}: {e}") from e
            try:
                yield conn
            except BaseException:
                conn.execute("ROLLBACK")
                raise
            else:
                conn.execute("COMMIT")

    # ============================================
    # Row mapping
    # ============================================

    @staticmethod
    def _row_to_record(row: sqlite3.Row) -> DocumentRecord:
        return DocumentRecord(
            id=row["id"],
            type=row["type"],
            context=json.loads(row["context"]) if row["context"] else None,
            data=json.loads(row["data"]) if row["data"] else {},
            content=row["content"] or "",
            version=row["version"],
            deleted_at=row["deleted_at"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    # ============================================
    # Contract
    # ============================================

    def get(self, doc_id: str, ns: str | None = None) -> DocumentRecord | None:
        """Get a live document by ID."""
        doc_id = normalize_id(doc_id)
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT * FROM documents WHERE ns = ? AND id = ? AND deleted_at IS NULL",
                (ns or self.namespace, doc_id),
            ).fetchone()

            if row:
                return self._row_to_record(row)
            return None

    def set(
        self,
        doc_id: str,
        record: DocumentRecord | dict[str, Any],
        *,
        create_only: bool = False,
        update_only: bool = False,
        version: int | str | None = None,
    ) -> SetResult:
        """
        Create or replace a document.

        A soft-deleted row counts as absent: writing to it revives the row
        (created=True) while the version keeps increasing.
        """
        doc_id = normalize_id(doc_id)
        doc = coerce_record(record, doc_id)
        now = datetime.now().isoformat()
        context_str = json.dumps(doc.context) if doc.context is not None else None
        data_str = json.dumps(doc.data)

        with self._transaction() as conn:
            row = conn.execute(
                "SELECT version, deleted_at, created_at FROM documents WHERE ns = ? AND id = ?",
                (self.namespace, doc_id),
            ).fetchone()
            live = row is not None and row["deleted_at"] is None
            check_preconditions(
                doc_id, row["version"] if live else None, live, create_only, update_only, version
            )

            if row is None:
                conn.execute("""
                    INSERT INTO documents (ns, id, type, context, data, content, version, created_at, updated_at)
                    VALUES (?, ?, ?, ?, ?, ?, 1, ?, ?)
                """, (self.namespace, doc_id, doc.type, context_str, data_str, doc.content, now, now))
                logger.debug(f"Inserted document {doc_id} (version 1)")
                return SetResult(id=doc_id, created=True, version=1)

            expected = int(version) if version is not None else row["version"]
            created_at = row["created_at"] if live else now
            cursor = conn.execute("""
                UPDATE documents SET
                    type = ?,
                    context = ?,
                    data = ?,
                    content = ?,
                    version = version + 1,
                    deleted_at = NULL,
                    created_at = ?,
                    updated_at = ?
                WHERE ns = ? AND id = ? AND version = ?
            """, (doc.type, context_str, data_str, doc.content, created_at, now,
                  self.namespace, doc_id, expected))

            if cursor.rowcount == 0:
                raise ConflictError(doc_id, f"version {expected} is no longer current")

            new_version = expected + 1
            logger.debug(f"Updated document {doc_id} (version {new_version})")
            return SetResult(id=doc_id, created=not live, version=new_version)

    def delete(self, doc_id: str, *, soft: bool = False) -> DeleteResult:
        """
        Delete a document.

        soft=True marks deleted_at and keeps the row.
        soft=False removes the row, including an already soft-deleted one.
        """
        doc_id = normalize_id(doc_id)
        now = datetime.now().isoformat()

        with self._transaction() as conn:
            if soft:
                cursor = conn.execute("""
                    UPDATE documents SET deleted_at = ?, updated_at = ?, version = version + 1
                    WHERE ns = ? AND id = ? AND deleted_at IS NULL
                """, (now, now, self.namespace, doc_id))
                deleted = cursor.rowcount > 0
            else:
                live = conn.execute(
                    "SELECT 1 FROM documents WHERE ns = ? AND id = ? AND deleted_at IS NULL",
                    (self.namespace, doc_id),
                ).fetchone()
                conn.execute(
                    "DELETE FROM documents WHERE ns = ? AND id = ?", (self.namespace, doc_id)
                )
                deleted = live is not None

        if deleted:
            logger.debug(f"{'Soft' if soft else 'Hard'} deleted document {doc_id}")
        return DeleteResult(id=doc_id, deleted=deleted)

    def _candidates(
        self,
        type_filter: str | list[str] | None,
        prefix: str | None,
        ns: str | None = None,
    ) -> list[DocumentRecord]:
        """Live rows in insertion order, with type and prefix pushed down into SQL."""
        conditions = ["ns = ?", "deleted_at IS NULL"]
        params: list[Any] = [ns or self.namespace]

        types = normalize_types(type_filter)
        if types is not None:
            if not types:
                return []
            conditions.append(f"type IN ({', '.join('?' for _ in types)})")
            params.extend(sorted(types))
        if prefix:
            conditions.append("substr(id, 1, ?) = ?")
            params.extend([len(prefix), prefix])

        with self._get_connection() as conn:
            rows = conn.execute(
                f"SELECT * FROM documents WHERE {' AND '.join(conditions)} ORDER BY seq",
                params,
            ).fetchall()
            return [self._row_to_record(row) for row in rows]

    def list(self, flt: ListFilter | None = None) -> ListResult:
        flt = flt or ListFilter()
        return apply_list(self._candidates(flt.type, flt.prefix, flt.ns), flt)

    def search(self, query: SearchQuery) -> SearchResult:
        return apply_search(self._candidates(query.type, query.prefix, query.ns), query)

    def raw(self, doc_id: str) -> dict[str, Any] | None:
        """The stored row, soft-deleted or not."""
        doc_id = normalize_id(doc_id)
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT * FROM documents WHERE ns = ? AND id = ?", (self.namespace, doc_id)
            ).fetchone()
            return dict(row) if row else None
