"""
StorageAdapter contract.

Every backend implements the same surface:

    get(id)                 → DocumentRecord | None
    set(id, record, ...)    → SetResult
    delete(id, soft=...)    → DeleteResult
    list(filter)            → ListResult
    search(query)           → SearchResult
    raw(id)                 → backend-specific view of the stored artifact

Backends own storage and preconditions. Filtering, ranking and
pagination live in storage.query so they behave the same everywhere.
"""

from __future__ import annotations

import re
from abc import ABC, abstractmethod
from typing import Any

from docstore.core.config import get_logger
from docstore.core.errors import ConflictError, DocstoreError, ValidationError
from docstore.core.types import (
    BatchItemResult,
    BatchResult,
    DeleteResult,
    DocumentRecord,
    ListFilter,
    ListResult,
    SearchQuery,
    SearchResult,
    SetResult,
)

logger = get_logger("storage.base")

DEFAULT_EXTENSIONS = (".mdx", ".md")


def normalize_id(doc_id: str, extensions: tuple[str, ...] | list[str] = DEFAULT_EXTENSIONS) -> str:
    """
    Normalize a document id.

    Strips leading/trailing slashes, collapses repeated slashes and removes
    a recognized content-file extension ("posts/hello.mdx" → "posts/hello").
    """
    normalized = re.sub(r"/{2,}", "/", (doc_id or "").strip()).strip("/")
    for ext in extensions:
        if normalized.endswith(ext) and len(normalized) > len(ext):
            normalized = normalized[: -len(ext)]
            break
    if not normalized:
        raise ValidationError("Document id must not be empty")
    return normalized


class StorageAdapter(ABC):
    """
    Operation set every backend implements.

    Subclasses must implement get, set, delete, list, search and raw.
    create, update, set_many and the context-manager protocol are shared.
    """

    kind: str = "abstract"

    # ── Required ──────────────────────────────────────────────

    @abstractmethod
    def get(self, doc_id: str, ns: str | None = None) -> DocumentRecord | None:
        """
        Return the live record for doc_id, or None. Never raises for a missing id.

        ns reads another namespace than the adapter's own.
        """
        ...

    @abstractmethod
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
        Create or replace a record.

        Raises ConflictError when create_only finds a live record,
        update_only finds none, or version does not match the live record.
        """
        ...

    @abstractmethod
    def delete(self, doc_id: str, *, soft: bool = False) -> DeleteResult:
        """Remove (or with soft=True, mark) a record. deleted=False when absent."""
        ...

    @abstractmethod
    def list(self, flt: ListFilter | None = None) -> ListResult:
        ...

    @abstractmethod
    def search(self, query: SearchQuery) -> SearchResult:
        ...

    @abstractmethod
    def raw(self, doc_id: str) -> dict[str, Any] | None:
        """Inspect the backing artifact, including soft-deleted ones."""
        ...

    # ── Shared ────────────────────────────────────────────────

    def create(self, doc_id: str, record: DocumentRecord | dict[str, Any]) -> SetResult:
        return self.set(doc_id, record, create_only=True)

    def update(
        self,
        doc_id: str,
        record: DocumentRecord | dict[str, Any],
        version: int | str | None = None,
    ) -> SetResult:
        return self.set(doc_id, record, update_only=True, version=version)

    def set_many(self, records: list[DocumentRecord | dict[str, Any]]) -> BatchResult:
        """
        Write several records, each independently.

        A failing item is reported in its BatchItemResult; it never aborts
        the batch or discards items that already succeeded.
        """
        result = BatchResult()
        for record in records:
            doc = coerce_record(record)
            try:
                outcome = self.set(doc.id, doc)
            except DocstoreError as e:
                logger.warning(f"Batch item {doc.id} failed: {e}")
                result.items.append(BatchItemResult(id=doc.id, ok=False, error=str(e)))
                continue
            result.items.append(
                BatchItemResult(id=outcome.id, ok=True, created=outcome.created, version=outcome.version)
            )
        logger.info(f"Batch write on {self.kind}: {result.succeeded} ok, {result.failed} failed")
        return result

    def close(self) -> None:
        """Release connections. Override where the backend holds any."""

    def __enter__(self):
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def __repr__(self):
        return f"<{self.__class__.__name__}>"


# ============================================
# Helpers shared by the adapters
# ============================================

def coerce_record(record: DocumentRecord | dict[str, Any], doc_id: str | None = None) -> DocumentRecord:
    """Accept a DocumentRecord or a plain mapping; doc_id overrides any id in the payload."""
    if isinstance(record, DocumentRecord):
        doc = record
    else:
        payload = dict(record)
        payload.setdefault("id", doc_id or "")
        doc = DocumentRecord.model_validate(payload)
    if doc_id is not None and doc.id != doc_id:
        doc = doc.model_copy(update={"id": doc_id})
    return doc


def check_preconditions(
    doc_id: str,
    current_version: int | str | None,
    exists: bool,
    create_only: bool,
    update_only: bool,
    version: int | str | None,
) -> None:
    """Apply the create_only / update_only / version preconditions uniformly."""
    if create_only and exists:
        raise ConflictError(doc_id, "document already exists")
    if update_only and not exists:
        raise ConflictError(doc_id, "document does not exist")
    if version is not None:
        if not exists:
            raise ConflictError(doc_id, f"expected version {version} but document does not exist")
        if str(version) != str(current_version):
            raise ConflictError(doc_id, f"expected version {version}, found {current_version}")
