"""
Storage layer - one contract, three backends.

    relational  → RelationalAdapter  (SQLite table, version counter)
    content     → ContentAdapter     (GitHub repository, blob sha)
    analytical  → AnalyticalAdapter  (ClickHouse / embedded, merge sequence)
"""

from docstore.core.config import BackendKind, settings
from docstore.core.errors import ValidationError
from docstore.storage.analytical import AnalyticalAdapter
from docstore.storage.base import StorageAdapter, normalize_id
from docstore.storage.content import ContentAdapter
from docstore.storage.executors import ClickHouseExecutor, Executor, SQLiteExecutor, create_executor
from docstore.storage.processor import Processor
from docstore.storage.relational import RelationalAdapter

ADAPTERS: dict[str, type[StorageAdapter]] = {
    "relational": RelationalAdapter,
    "content": ContentAdapter,
    "analytical": AnalyticalAdapter,
}


def create_adapter(kind: BackendKind | None = None, **overrides) -> StorageAdapter:
    """
    Build an adapter for a backend kind.

    Settings supply the defaults; keyword overrides are passed straight to
    the adapter constructor.

    Usage:
        with create_adapter("relational", db_path=tmp / "docs.sqlite") as store:
            store.set("posts/hello", {"content": "# Hello"})
    """
    kind = kind or settings.backend
    adapter_cls = ADAPTERS.get(kind)
    if adapter_cls is None:
        raise ValidationError(f"Unknown backend: {kind!r}. Expected one of {sorted(ADAPTERS)}")
    return adapter_cls(**overrides)


__all__ = [
    "ADAPTERS",
    "create_adapter",
    "normalize_id",
    "StorageAdapter",
    "RelationalAdapter",
    "ContentAdapter",
    "AnalyticalAdapter",
    "Processor",
    "Executor",
    "ClickHouseExecutor",
    "SQLiteExecutor",
    "create_executor",
]
