"""
Core type definitions for docstore.

These types are the shared shape every backend reads and writes:
- DocumentRecord, ScoredRecord
- Relation (analytical backend only)
- Action (staged publish work)
- Filters and result envelopes for the StorageAdapter contract
"""

from datetime import datetime
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field


# ============================================
# Enums
# ============================================

class ActionStatus(str, Enum):
    """Lifecycle states of a staged Action."""
    PENDING = "pending"        # Staged, waiting for a Processor run
    ACTIVE = "active"          # Claimed and being materialized
    COMPLETED = "completed"    # Terminal: every document materialized
    FAILED = "failed"          # Terminal: error retained on the Action


ACTION_TRANSITIONS: dict[ActionStatus, set[ActionStatus]] = {
    ActionStatus.PENDING: {ActionStatus.ACTIVE},
    ActionStatus.ACTIVE: {ActionStatus.COMPLETED, ActionStatus.FAILED},
    ActionStatus.COMPLETED: set(),
    ActionStatus.FAILED: set(),
}


class _Model(BaseModel):
    """Base model: accepts both field names and camelCase aliases."""

    model_config = ConfigDict(populate_by_name=True)


# ============================================
# Documents
# ============================================

class DocumentRecord(_Model):
    """A semi-structured content record."""

    id: str
    """Forward-slash-delimited hierarchical key, unique per namespace."""

    type: str | None = None
    """Optional type tag."""

    context: str | dict[str, Any] | None = None
    """Optional linked-data context."""

    data: dict[str, Any] = Field(default_factory=dict)
    """Arbitrary key/value payload."""

    content: str = ""
    """Free-text body."""

    version: int | str | None = None
    """Opaque version token: counter, content hash or merge sequence."""

    deleted_at: datetime | None = Field(default=None, alias="deletedAt")
    created_at: datetime | None = Field(default=None, alias="createdAt")
    updated_at: datetime | None = Field(default=None, alias="updatedAt")

    @property
    def is_live(self) -> bool:
        return self.deleted_at is None


class ScoredRecord(DocumentRecord):
    """A DocumentRecord returned by search, carrying its relevance score."""

    score: float = 0.0


class Relation(_Model):
    """Directed typed edge between two documents."""

    type: str
    from_id: str = Field(alias="from")
    to_id: str = Field(alias="to")
    data: dict[str, Any] | None = None
    created_at: datetime | None = Field(default=None, alias="createdAt")


# ============================================
# Actions
# ============================================

class Action(_Model):
    """A staged unit of publish work."""

    ns: str
    id: str
    actor: str = "system"
    documents: list[DocumentRecord] = Field(default_factory=list)
    status: ActionStatus = ActionStatus.PENDING
    progress: int = 0
    total: int = 0
    result: dict[str, Any] | None = None
    error: str | None = None

    # Git metadata carried over from the publish request
    repo: str = ""
    branch: str = "main"
    commit: str = ""
    commit_message: str = Field(default="", alias="commitMessage")

    # Claim/lease held by the processor currently working on it
    claimed_by: str | None = Field(default=None, alias="claimedBy")
    lease_expires_at: datetime | None = Field(default=None, alias="leaseExpiresAt")

    created_at: datetime | None = Field(default=None, alias="createdAt")
    updated_at: datetime | None = Field(default=None, alias="updatedAt")
    started_at: datetime | None = Field(default=None, alias="startedAt")
    completed_at: datetime | None = Field(default=None, alias="completedAt")

    @property
    def is_terminal(self) -> bool:
        return not ACTION_TRANSITIONS[ActionStatus(self.status)]

    def can_transition(self, target: ActionStatus) -> bool:
        """Check whether the state machine allows moving to target."""
        return ActionStatus(target) in ACTION_TRANSITIONS[ActionStatus(self.status)]


# ============================================
# Queries
# ============================================

class ListFilter(_Model):
    """Filter, sort and pagination options for list()."""

    ns: str | None = None
    """Namespace to read. Defaults to the adapter's own."""

    type: str | list[str] | None = None
    """Single type or set of types (OR semantics)."""

    prefix: str | None = None
    """String prefix on id."""

    where: dict[str, Any] | None = None
    """Exact-match equality over dotted data paths; all must match."""

    sort_by: str | None = Field(default=None, alias="sortBy")
    """'id' or a data field. Default is backend insertion order."""

    sort_order: Literal["asc", "desc"] = Field(default="asc", alias="sortOrder")
    limit: int = Field(default=100, ge=0)
    offset: int = Field(default=0, ge=0)


class SearchQuery(_Model):
    """Options for search(). Results are always ranked by score."""

    query: str
    ns: str | None = None
    fields: list[str] | None = None
    """Restrict matching to these data fields (content is always searched)."""

    type: str | list[str] | None = None
    prefix: str | None = None
    where: dict[str, Any] | None = None
    limit: int = Field(default=100, ge=0)
    offset: int = Field(default=0, ge=0)


# ============================================
# Results
# ============================================

class SetResult(_Model):
    id: str
    created: bool
    version: int | str


class DeleteResult(_Model):
    id: str
    deleted: bool


class ListResult(_Model):
    documents: list[DocumentRecord]
    total: int
    has_more: bool = Field(alias="hasMore")


class SearchResult(_Model):
    documents: list[ScoredRecord]
    total: int
    has_more: bool = Field(alias="hasMore")


class BatchItemResult(_Model):
    """Outcome of one item in a batch write."""

    id: str
    ok: bool
    created: bool | None = None
    version: int | str | None = None
    error: str | None = None


class BatchResult(_Model):
    """Per-item outcome of a batch write. Never all-or-nothing."""

    items: list[BatchItemResult] = Field(default_factory=list)

    @property
    def succeeded(self) -> int:
        return sum(1 for item in self.items if item.ok)

    @property
    def failed(self) -> int:
        return sum(1 for item in self.items if not item.ok)


class ProcessResult(_Model):
    """Summary of one Processor run."""

    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0
    things: int = 0
    errors: list[str] = Field(default_factory=list)
