"""
Core module - Configuration, logging, error types and the record model.
"""

from docstore.core.config import settings, get_logger, setup_logging
from docstore.core.errors import (
    BackendError,
    ConflictError,
    DocstoreError,
    InvalidTransitionError,
    ValidationError,
)
from docstore.core.types import (
    Action,
    ActionStatus,
    DocumentRecord,
    ListFilter,
    Relation,
    ScoredRecord,
    SearchQuery,
)

__all__ = [
    "settings",
    "get_logger",
    "setup_logging",
    "BackendError",
    "ConflictError",
    "DocstoreError",
    "InvalidTransitionError",
    "ValidationError",
    "Action",
    "ActionStatus",
    "DocumentRecord",
    "ListFilter",
    "Relation",
    "ScoredRecord",
    "SearchQuery",
]
