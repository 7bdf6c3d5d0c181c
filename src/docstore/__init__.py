"""
docstore

A document store abstraction for semi-structured content records,
implemented identically over a relational table, a content-addressed
git repository and an append-only analytical table with a staged
Action queue.
"""

__version__ = "0.1.0"

from docstore.core.config import settings
from docstore.core.errors import ConflictError, DocstoreError
from docstore.core.types import (
    Action,
    ActionStatus,
    DocumentRecord,
    ListFilter,
    SearchQuery,
)
from docstore.storage import create_adapter

__all__ = [
    "settings",
    "ConflictError",
    "DocstoreError",
    "Action",
    "ActionStatus",
    "DocumentRecord",
    "ListFilter",
    "SearchQuery",
    "create_adapter",
]
