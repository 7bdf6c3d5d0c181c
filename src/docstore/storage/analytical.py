"""
Analytical Adapter - append-only tables with merge-on-read.

Tables (all append-only, every row tagged with a monotonically increasing
`seq` assigned here):
- things: document rows keyed by (ns, type, id)
- relationships: directed edges keyed by (ns, type, from_id, to_id)
- actions: staged publish work keyed by id

There is no update in place. A write appends a row that shadows older rows
for the same key, and every read goes through _materialize(), which keeps
only the highest seq per key. For documents the contract key is the id
alone, so when an id has rows under several types the highest seq wins.

Hard delete is the only statement that removes rows (compaction).
"""

from __future__ import annotations

import json
import threading
import time
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any

from docstore.core.config import settings, get_logger
from docstore.core.errors import InvalidTransitionError, ValidationError
from docstore.core.types import (
    Action,
    ActionStatus,
    DeleteResult,
    DocumentRecord,
    ListFilter,
    ListResult,
    Relation,
    SearchQuery,
    SearchResult,
    SetResult,
)
from docstore.storage.base import StorageAdapter, check_preconditions, coerce_record, normalize_id
from docstore.storage.executors import Executor, create_executor
from docstore.storage.query import apply_list, apply_search

logger = get_logger("storage.analytical")


# ============================================
# Schema
# ============================================

THINGS_COLUMNS = [
    ("seq", "Int64"),
    ("ns", "String"),
    ("type", "String"),
    ("id", "String"),
    ("context", "String"),
    ("data", "String"),
    ("content", "String"),
    ("meta", "String"),
    ("repo", "String"),
    ("branch", "String"),
    ("commit_sha", "String"),
    ("event", "String"),
    ("deleted_at", "Nullable(String)"),
    ("created_at", "String"),
    ("updated_at", "String"),
]

RELATIONSHIPS_COLUMNS = [
    ("seq", "Int64"),
    ("ns", "String"),
    ("type", "String"),
    ("from_id", "String"),
    ("to_id", "String"),
    ("data", "String"),
    ("deleted", "UInt8"),
    ("created_at", "String"),
]

ACTIONS_COLUMNS = [
    ("seq", "Int64"),
    ("ns", "String"),
    ("id", "String"),
    ("actor", "String"),
    ("documents", "String"),
    ("status", "String"),
    ("progress", "UInt32"),
    ("total", "UInt32"),
    ("result", "Nullable(String)"),
    ("error", "Nullable(String)"),
    ("repo", "String"),
    ("branch", "String"),
    ("commit_sha", "String"),
    ("commit_message", "String"),
    ("claimed_by", "Nullable(String)"),
    ("lease_expires_at", "Nullable(String)"),
    ("created_at", "String"),
    ("updated_at", "String"),
    ("started_at", "Nullable(String)"),
    ("completed_at", "Nullable(String)"),
]

THING_KEY = ("ns", "type", "id")
RELATION_KEY = ("ns", "type", "from_id", "to_id")
ACTION_KEY = ("id",)

TABLES = {
    "things": (THINGS_COLUMNS, THING_KEY),
    "relationships": (RELATIONSHIPS_COLUMNS, RELATION_KEY),
    "actions": (ACTIONS_COLUMNS, ACTION_KEY),
}


_seq_lock = threading.Lock()
_last_seq = 0


def next_seq() -> int:
    """Nanosecond clock, strictly increasing within the process."""
    global _last_seq
    with _seq_lock:
        _last_seq = max(time.time_ns(), _last_seq + 1)
        return _last_seq


def now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _dumps(value: Any) -> str:
    return json.dumps(value, default=str)


def _loads(value: str | None, default: Any = None) -> Any:
    if value is None or value == "":
        return default
    return json.loads(value)


def infer_type(doc_id: str) -> str:
    """Type name from the first path segment: "posts/hello" → "Post"."""
    parts = doc_id.split("/")
    if len(parts) >= 2 and parts[0]:
        plural = parts[0]
        return plural[0].upper() + plural[1:-1] if len(plural) > 1 else plural.upper()
    return "Document"


class AnalyticalAdapter(StorageAdapter):
    """
    Append-only document store with a staged Action queue.

    Besides the StorageAdapter contract it exposes the raw executor
    primitives (query, command, insert), publish/get_action/list_actions
    for the Action queue, and relation traversal.
    """

    kind = "analytical"

    def __init__(
        self,
        executor: Executor | None = None,
        namespace: str | None = None,
    ):
        """Initialize the analytical adapter and create its tables."""
        self._owns_executor = executor is None
        self.executor = executor or create_executor()
        self.namespace = namespace or settings.namespace
        self._write_lock = threading.Lock()
        self._init_tables()

    def _init_tables(self) -> None:
        for table, (columns, key) in TABLES.items():
            self.executor.create_table(table, columns, [*key, "seq"])

    def close(self) -> None:
        if self._owns_executor:
            self.executor.close()

    # ============================================
    # Raw primitives
    # ============================================

    def query(self, sql: str, params: dict[str, Any] | None = None) -> list[dict[str, Any]]:
        return self.executor.query(sql, params)

    def command(self, sql: str, params: dict[str, Any] | None = None) -> None:
        self.executor.command(sql, params)

    def insert(self, table: str, rows: list[dict[str, Any]]) -> None:
        self.executor.insert(table, rows)

    # ============================================
    # Merge-on-read
    # ============================================

    def _materialize(
        self,
        table: str,
        scope: str = "",
        where: str = "",
        params: dict[str, Any] | None = None,
        order_by: str = "seq",
        limit: int | None = None,
    ) -> list[dict[str, Any]]:
        """
        Latest row per key of table.

        scope filters rows before the merge and must only touch key
        columns; where filters the merged rows.
        """
        key = ", ".join(TABLES[table][1])
        inner = f"SELECT {key}, max(seq) FROM {table}"
        if scope:
            inner += f" WHERE {scope}"
        inner += f" GROUP BY {key}"

        sql = f"SELECT * FROM {table} WHERE ({key}, seq) IN ({inner})"
        for condition in (scope, where):
            if condition:
                sql += f" AND {condition}"
        sql += f" ORDER BY {order_by}"

        params = dict(params or {})
        if limit is not None:
            sql += " LIMIT {limit:UInt32}"
            params["limit"] = limit
        return self.executor.query(sql, params)

    @staticmethod
    def _latest_by_id(rows: list[dict[str, Any]]) -> list[dict[str, Any]]:
        """Collapse rows sharing an id across types, highest seq wins, in seq order."""
        latest: dict[str, dict[str, Any]] = {}
        for row in rows:
            current = latest.get(row["id"])
            if current is None or row["seq"] > current["seq"]:
                latest[row["id"]] = row
        return sorted(latest.values(), key=lambda r: r["seq"])

    def _current(self, doc_id: str, ns: str | None = None) -> dict[str, Any] | None:
        rows = self._materialize(
            "things",
            scope="ns = {ns:String} AND id = {id:String}",
            params={"ns": ns or self.namespace, "id": doc_id},
        )
        merged = self._latest_by_id(rows)
        return merged[0] if merged else None

    # ============================================
    # Row mapping
    # ============================================

    @staticmethod
    def _row_to_record(row: dict[str, Any]) -> DocumentRecord:
        return DocumentRecord(
            id=row["id"],
            type=row["type"] or None,
            context=_loads(row["context"]),
            data=_loads(row["data"], {}),
            content=row["content"] or "",
            version=int(row["seq"]),
            deleted_at=row["deleted_at"] or None,
            created_at=row["created_at"] or None,
            updated_at=row["updated_at"] or None,
        )

    @staticmethod
    def _thing_row(
        ns: str,
        doc: DocumentRecord,
        created_at: str,
        *,
        meta: dict[str, Any] | None = None,
        repo: str = "",
        branch: str = "",
        commit: str = "",
        event: str = "created",
        deleted_at: str | None = None,
    ) -> dict[str, Any]:
        return {
            "seq": next_seq(),
            "ns": ns,
            "type": doc.type or "",
            "id": doc.id,
            "context": _dumps(doc.context) if doc.context is not None else "",
            "data": _dumps(doc.data),
            "content": doc.content,
            "meta": _dumps(meta or {}),
            "repo": repo,
            "branch": branch,
            "commit_sha": commit,
            "event": event,
            "deleted_at": deleted_at,
            "created_at": created_at,
            "updated_at": now_utc().isoformat(),
        }

    # ============================================
    # Contract
    # ============================================

    def get(self, doc_id: str, ns: str | None = None) -> DocumentRecord | None:
        doc_id = normalize_id(doc_id)
        row = self._current(doc_id, ns)
        if row is None or row["deleted_at"]:
            return None
        return self._row_to_record(row)

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
        Append a new row for the document.

        The precondition check and the append are serialized inside this
        adapter instance; writers in other processes are not.
        """
        doc_id = normalize_id(doc_id)
        doc = coerce_record(record, doc_id)

        with self._write_lock:
            current = self._current(doc_id)
            live = current is not None and not current["deleted_at"]
            check_preconditions(
                doc_id, current["seq"] if live else None, live, create_only, update_only, version
            )

            created_at = current["created_at"] if live else now_utc().isoformat()
            row = self._thing_row(
                self.namespace, doc, created_at, event="updated" if live else "created"
            )
            self.executor.insert("things", [row])

        logger.debug(f"Appended {doc_id} at seq {row['seq']}")
        return SetResult(id=doc_id, created=not live, version=row["seq"])

    def delete(self, doc_id: str, *, soft: bool = False) -> DeleteResult:
        """
        Delete a document.

        soft=True appends a shadow row carrying deleted_at.
        soft=False physically removes every row for the id.
        """
        doc_id = normalize_id(doc_id)

        with self._write_lock:
            current = self._current(doc_id)
            live = current is not None and not current["deleted_at"]

            if soft:
                if live:
                    record = self._row_to_record(current)
                    now = now_utc().isoformat()
                    self.executor.insert("things", [self._thing_row(
                        self.namespace, record, current["created_at"],
                        meta=_loads(current["meta"], {}), event="deleted", deleted_at=now,
                    )])
            elif current is not None:
                self.executor.delete_rows(
                    "things",
                    "ns = {ns:String} AND id = {id:String}",
                    {"ns": self.namespace, "id": doc_id},
                )

        if live:
            logger.debug(f"{'Soft' if soft else 'Hard'} deleted {doc_id}")
        return DeleteResult(id=doc_id, deleted=live)

    def _candidates(self, prefix: str | None, ns: str | None = None) -> list[DocumentRecord]:
        """Live merged documents in seq order, prefix pushed down."""
        scope = "ns = {ns:String}"
        params: dict[str, Any] = {"ns": ns or self.namespace}
        if prefix:
            scope += " AND substr(id, 1, {plen:UInt32}) = {prefix:String}"
            params.update(plen=len(prefix), prefix=prefix)

        rows = self._latest_by_id(self._materialize("things", scope=scope, params=params))
        return [self._row_to_record(row) for row in rows if not row["deleted_at"]]

    def list(self, flt: ListFilter | None = None) -> ListResult:
        flt = flt or ListFilter()
        return apply_list(self._candidates(flt.prefix, flt.ns), flt)

    def search(self, query: SearchQuery) -> SearchResult:
        return apply_search(self._candidates(query.prefix, query.ns), query)

    def raw(self, doc_id: str) -> dict[str, Any] | None:
        """Every stored row for the id, shadowed ones included, oldest first."""
        doc_id = normalize_id(doc_id)
        rows = self.executor.query(
            "SELECT * FROM things WHERE ns = {ns:String} AND id = {id:String} ORDER BY seq",
            {"ns": self.namespace, "id": doc_id},
        )
        if not rows:
            return None
        return {"id": doc_id, "rows": rows}

    # ============================================
    # Things written by the Processor
    # ============================================

    def append_things(self, action: Action) -> int:
        """Insert one things row per document of action. Returns the row count."""
        now = now_utc().isoformat()
        rows = []
        for doc in action.documents:
            if not doc.type:
                doc = doc.model_copy(update={"type": infer_type(doc.id)})
            rows.append(self._thing_row(
                action.ns,
                doc,
                now,
                meta={"actionId": action.id, "context": doc.context},
                repo=action.repo,
                branch=action.branch,
                commit=action.commit,
            ))
        self.executor.insert("things", rows)
        return len(rows)

    # ============================================
    # Action queue
    # ============================================

    @staticmethod
    def _action_row(action: Action) -> dict[str, Any]:
        def iso(value: datetime | None) -> str | None:
            return value.isoformat() if value else None

        return {
            "seq": next_seq(),
            "ns": action.ns,
            "id": action.id,
            "actor": action.actor,
            "documents": _dumps([doc.model_dump(mode="json") for doc in action.documents]),
            "status": ActionStatus(action.status).value,
            "progress": action.progress,
            "total": action.total,
            "result": _dumps(action.result) if action.result is not None else None,
            "error": action.error,
            "repo": action.repo,
            "branch": action.branch,
            "commit_sha": action.commit,
            "commit_message": action.commit_message,
            "claimed_by": action.claimed_by,
            "lease_expires_at": iso(action.lease_expires_at),
            "created_at": iso(action.created_at) or now_utc().isoformat(),
            "updated_at": iso(action.updated_at) or now_utc().isoformat(),
            "started_at": iso(action.started_at),
            "completed_at": iso(action.completed_at),
        }

    @staticmethod
    def _row_to_action(row: dict[str, Any]) -> Action:
        return Action(
            ns=row["ns"],
            id=row["id"],
            actor=row["actor"],
            documents=_loads(row["documents"], []),
            status=row["status"],
            progress=row["progress"],
            total=row["total"],
            result=_loads(row["result"]),
            error=row["error"] or None,
            repo=row["repo"],
            branch=row["branch"],
            commit=row["commit_sha"],
            commit_message=row["commit_message"],
            claimed_by=row["claimed_by"] or None,
            lease_expires_at=row["lease_expires_at"] or None,
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            started_at=row["started_at"] or None,
            completed_at=row["completed_at"] or None,
        )

    def publish(
        self,
        ns: str,
        documents: list[DocumentRecord | dict[str, Any]],
        actor: str = "system",
        repo: str = "",
        branch: str = "main",
        commit: str = "",
        commit_message: str = "",
    ) -> Action:
        """
        Stage documents for materialization.

        Appends one pending Action and returns it. Never waits for the
        Processor.
        """
        if not ns:
            raise ValidationError("Namespace (ns) is required")
        if not documents:
            raise ValidationError("At least one document is required")

        docs = []
        for item in documents:
            doc = coerce_record(item)
            docs.append(doc.model_copy(update={"id": normalize_id(doc.id)}))

        now = now_utc()
        action = Action(
            ns=ns,
            id=str(uuid.uuid4()),
            actor=actor or "system",
            documents=docs,
            total=len(docs),
            repo=repo,
            branch=branch or "main",
            commit=commit,
            commit_message=commit_message,
            created_at=now,
            updated_at=now,
        )
        self.executor.insert("actions", [self._action_row(action)])
        logger.info(f"Staged action {action.id} in {ns} with {len(docs)} documents")
        return action

    def get_action(self, action_id: str) -> Action | None:
        rows = self._materialize("actions", scope="id = {id:String}", params={"id": action_id})
        if not rows:
            return None
        return self._row_to_action(rows[-1])

    def list_actions(
        self,
        ns: str | None = None,
        status: ActionStatus | str | None = ActionStatus.PENDING,
        limit: int = 100,
    ) -> list[Action]:
        """Merged Actions, oldest first. status=None returns every state."""
        conditions = []
        params: dict[str, Any] = {}
        if ns:
            conditions.append("ns = {ns:String}")
            params["ns"] = ns
        if status is not None:
            conditions.append("status = {status:String}")
            params["status"] = ActionStatus(status).value

        rows = self._materialize(
            "actions",
            where=" AND ".join(conditions),
            params=params,
            order_by="created_at, id",
            limit=limit,
        )
        return [self._row_to_action(row) for row in rows]

    def append_action(self, action: Action) -> Action:
        """Append a new row for action as is. Callers own the state machine."""
        self.executor.insert("actions", [self._action_row(action)])
        return action

    def transition_action(self, action: Action, target: ActionStatus, **changes: Any) -> Action:
        """
        Move action to target and append the new state.

        Raises InvalidTransitionError for moves the state machine does not
        allow; completed and failed are final.
        """
        if not action.can_transition(target):
            raise InvalidTransitionError(action.id, ActionStatus(action.status).value, ActionStatus(target).value)

        updated = action.model_copy(update={**changes, "status": ActionStatus(target), "updated_at": now_utc()})
        self.append_action(updated)
        logger.debug(f"Action {action.id}: {ActionStatus(action.status).value} → {ActionStatus(target).value}")
        return updated

    def claim_action(self, action: Action, owner: str, lease_seconds: int) -> Action | None:
        """
        Reserve a pending Action for owner.

        The caller's copy may be stale, so the merged row is read again
        first: only a pending Action without an unexpired foreign lease can
        be claimed. The claim is a pending row appended on top of that
        state. Concurrent claimers settle on the first row appended after
        the state they all observed; everyone else gets None.
        """
        rows = self._materialize("actions", scope="id = {id:String}", params={"id": action.id})
        if not rows:
            return None
        observed = rows[-1]
        current = self._row_to_action(observed)

        now = now_utc()
        if current.status != ActionStatus.PENDING:
            return None
        if current.claimed_by and current.claimed_by != owner and current.lease_expires_at:
            if current.lease_expires_at > now:
                return None

        claim = current.model_copy(update={
            "claimed_by": owner,
            "lease_expires_at": now + timedelta(seconds=lease_seconds),
            "updated_at": now,
        })
        row = self._action_row(claim)
        self.executor.insert("actions", [row])

        first = self.executor.query(
            "SELECT seq FROM actions WHERE id = {id:String} AND seq > {seq:Int64} ORDER BY seq LIMIT 1",
            {"id": action.id, "seq": observed["seq"]},
        )
        if not first or int(first[0]["seq"]) != row["seq"]:
            logger.debug(f"Lost claim race for action {action.id}")
            return None
        return claim

    # ============================================
    # Relations
    # ============================================

    def relate(self, from_id: str, rel_type: str, to_id: str, data: dict[str, Any] | None = None) -> Relation:
        """Append an edge; a repeated (from, type, to) supersedes the earlier one."""
        from_id, to_id = normalize_id(from_id), normalize_id(to_id)
        if not rel_type:
            raise ValidationError("Relation type is required")
        now = now_utc()
        self.executor.insert("relationships", [{
            "seq": next_seq(),
            "ns": self.namespace,
            "type": rel_type,
            "from_id": from_id,
            "to_id": to_id,
            "data": _dumps(data) if data is not None else "",
            "deleted": 0,
            "created_at": now.isoformat(),
        }])
        return Relation(type=rel_type, from_id=from_id, to_id=to_id, data=data, created_at=now)

    def unrelate(self, from_id: str, rel_type: str, to_id: str) -> bool:
        """Append a tombstone for the edge. Returns whether a live edge existed."""
        from_id, to_id = normalize_id(from_id), normalize_id(to_id)
        existing = [
            r for r in self.relationships(from_id, rel_type, direction="from") if r.to_id == to_id
        ]
        if not existing:
            return False
        self.executor.insert("relationships", [{
            "seq": next_seq(),
            "ns": self.namespace,
            "type": rel_type,
            "from_id": from_id,
            "to_id": to_id,
            "data": "",
            "deleted": 1,
            "created_at": now_utc().isoformat(),
        }])
        return True

    def relationships(
        self,
        doc_id: str,
        rel_type: str | None = None,
        direction: str = "from",
    ) -> list[Relation]:
        """
        Live edges touching doc_id.

        direction="from" returns outgoing edges, direction="to" incoming.
        """
        if direction not in ("from", "to"):
            raise ValidationError(f"direction must be 'from' or 'to', got {direction!r}")
        column = "from_id" if direction == "from" else "to_id"

        scope = f"ns = {{ns:String}} AND {column} = {{id:String}}"
        params: dict[str, Any] = {"ns": self.namespace, "id": normalize_id(doc_id)}
        if rel_type:
            scope += " AND type = {type:String}"
            params["type"] = rel_type

        rows = self._materialize("relationships", scope=scope, where="deleted = 0", params=params)
        return [
            Relation(
                type=row["type"],
                from_id=row["from_id"],
                to_id=row["to_id"],
                data=_loads(row["data"]),
                created_at=row["created_at"],
            )
            for row in rows
        ]

    def related(
        self,
        doc_id: str,
        rel_type: str | None = None,
        direction: str = "from",
    ) -> list[DocumentRecord]:
        """Live documents at the other end of doc_id's edges."""
        records = []
        seen = set()
        for rel in self.relationships(doc_id, rel_type, direction):
            other = rel.to_id if direction == "from" else rel.from_id
            if other in seen:
                continue
            seen.add(other)
            record = self.get(other)
            if record:
                records.append(record)
        return records
