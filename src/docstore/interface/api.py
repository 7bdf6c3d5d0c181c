"""
FastAPI boundary for a docstore adapter.

Provides REST endpoints for:
- Documents: GET/PUT/DELETE /{id}, GET / (list), GET /search
- Action queue (analytical backend): POST /publish, GET /actions, GET /actions/{id}
- Processor trigger: POST /process

Document ids are hierarchical ("posts/hello"), so the id routes are
registered last and take the rest of the path.
"""

import json
from typing import Any

from fastapi import FastAPI, HTTPException, Query
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field

from docstore import __version__
from docstore.core.config import get_logger
from docstore.core.errors import BackendError, ConflictError, DocstoreError, ValidationError
from docstore.core.types import DocumentRecord, ListFilter, SearchQuery
from docstore.storage.analytical import AnalyticalAdapter
from docstore.storage.base import StorageAdapter, normalize_id
from docstore.storage.processor import Processor

logger = get_logger("api")


# ==========================================
# Request Models
# ==========================================

class PutDocumentRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    type: str | None = None
    context: str | dict[str, Any] | None = None
    data: dict[str, Any] = Field(default_factory=dict)
    content: str | None = None
    create_only: bool = Field(default=False, alias="createOnly")
    update_only: bool = Field(default=False, alias="updateOnly")
    version: int | str | None = None


class PublishRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    ns: str
    documents: list[DocumentRecord]
    actor: str = "system"
    repo: str = ""
    branch: str = "main"
    commit: str = ""
    commit_message: str = Field(default="", alias="commitMessage")


def _dump(model: BaseModel) -> dict[str, Any]:
    return model.model_dump(mode="json", by_alias=True)


def _http_error(e: DocstoreError) -> HTTPException:
    """Map a docstore error onto an HTTP status."""
    if isinstance(e, ConflictError):
        return HTTPException(status_code=409, detail=str(e))
    if isinstance(e, ValidationError):
        return HTTPException(status_code=400, detail=str(e))
    logger.error(f"Backend failure: {e}")
    if isinstance(e, BackendError):
        return HTTPException(status_code=500, detail=str(e))
    return HTTPException(status_code=500, detail="Internal error")


def create_app(adapter: StorageAdapter, processor: Processor | None = None) -> FastAPI:
    """Build the HTTP app around an adapter (and, for analytical, its Processor)."""
    app = FastAPI(
        title="docstore API",
        description="Document store over relational, content-addressed and analytical backends",
        version=__version__,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    if processor is None and isinstance(adapter, AnalyticalAdapter):
        processor = Processor(adapter)

    def queue() -> AnalyticalAdapter:
        if not isinstance(adapter, AnalyticalAdapter):
            raise HTTPException(status_code=400, detail="The action queue requires the analytical backend")
        return adapter

    # ==========================================
    # Status
    # ==========================================

    @app.get("/health")
    def health():
        return {"status": "ok", "backend": adapter.kind}

    # ==========================================
    # Listing & search
    # ==========================================

    @app.get("/")
    def list_documents(
        type: list[str] | None = Query(default=None),
        prefix: str | None = None,
        ns: str | None = Query(default=None, description="Namespace to read instead of the default"),
        where: str | None = Query(default=None, description="JSON object of dotted path → value"),
        sort_by: str | None = Query(default=None, alias="sortBy"),
        sort_order: str = Query(default="asc", alias="sortOrder"),
        limit: int = Query(default=100, ge=0),
        offset: int = Query(default=0, ge=0),
    ):
        """List live documents."""
        try:
            conditions = json.loads(where) if where else None
        except json.JSONDecodeError as e:
            raise HTTPException(status_code=400, detail=f"where is not valid JSON: {e}")
        if conditions is not None and not isinstance(conditions, dict):
            raise HTTPException(status_code=400, detail="where must be a JSON object")
        if sort_order not in ("asc", "desc"):
            raise HTTPException(status_code=400, detail="sortOrder must be 'asc' or 'desc'")

        flt = ListFilter(
            ns=ns,
            type=type,
            prefix=prefix,
            where=conditions,
            sort_by=sort_by,
            sort_order=sort_order,
            limit=limit,
            offset=offset,
        )
        try:
            return _dump(adapter.list(flt))
        except DocstoreError as e:
            raise _http_error(e)

    @app.get("/search")
    def search_documents(
        q: str,
        fields: str | None = Query(default=None, description="Comma-separated data fields"),
        ns: str | None = None,
        type: list[str] | None = Query(default=None),
        prefix: str | None = None,
        limit: int = Query(default=100, ge=0),
        offset: int = Query(default=0, ge=0),
    ):
        """Ranked full-text search."""
        query = SearchQuery(
            query=q,
            ns=ns,
            fields=[f.strip() for f in fields.split(",") if f.strip()] if fields else None,
            type=type,
            prefix=prefix,
            limit=limit,
            offset=offset,
        )
        try:
            return _dump(adapter.search(query))
        except DocstoreError as e:
            raise _http_error(e)

    # ==========================================
    # Action queue
    # ==========================================

    @app.post("/publish", status_code=201)
    def publish(request: PublishRequest):
        """Stage documents as a pending Action."""
        try:
            action = queue().publish(
                request.ns,
                request.documents,
                actor=request.actor,
                repo=request.repo,
                branch=request.branch,
                commit=request.commit,
                commit_message=request.commit_message,
            )
        except DocstoreError as e:
            raise _http_error(e)
        return {"actionId": action.id, "status": action.status.value}

    @app.get("/actions")
    def list_actions(
        ns: str | None = None,
        status: str = Query(default="pending", description="pending, active, completed, failed or all"),
        limit: int = Query(default=100, ge=0),
    ):
        try:
            actions = queue().list_actions(ns=ns, status=None if status == "all" else status, limit=limit)
        except ValueError:
            raise HTTPException(status_code=400, detail=f"Unknown status: {status}")
        except DocstoreError as e:
            raise _http_error(e)
        return {"actions": [_dump(a) for a in actions]}

    @app.get("/actions/{action_id}")
    def get_action(action_id: str):
        try:
            action = queue().get_action(action_id)
        except DocstoreError as e:
            raise _http_error(e)
        if action is None:
            raise HTTPException(status_code=404, detail="Action not found")
        return _dump(action)

    @app.post("/process")
    def process(ns: str | None = None, limit: int | None = Query(default=None, ge=1)):
        """Run the Processor once."""
        queue()
        return _dump(processor.run(ns=ns, limit=limit))

    # ==========================================
    # Documents
    # ==========================================

    @app.get("/{doc_id:path}")
    def get_document(doc_id: str, ns: str | None = None):
        try:
            record = adapter.get(normalize_id(doc_id), ns=ns)
        except DocstoreError as e:
            raise _http_error(e)
        if record is None:
            raise HTTPException(status_code=404, detail="Document not found")
        return _dump(record)

    @app.put("/{doc_id:path}")
    def put_document(doc_id: str, request: PutDocumentRequest):
        """Create or replace a document."""
        if request.content is None:
            raise HTTPException(status_code=400, detail="content is required")
        try:
            doc_id = normalize_id(doc_id)
            result = adapter.set(
                doc_id,
                DocumentRecord(
                    id=doc_id,
                    type=request.type,
                    context=request.context,
                    data=request.data,
                    content=request.content,
                ),
                create_only=request.create_only,
                update_only=request.update_only,
                version=request.version,
            )
        except DocstoreError as e:
            raise _http_error(e)
        return JSONResponse(status_code=201 if result.created else 200, content=_dump(result))

    @app.delete("/{doc_id:path}")
    def delete_document(doc_id: str, soft: bool = False):
        try:
            result = adapter.delete(normalize_id(doc_id), soft=soft)
        except DocstoreError as e:
            raise _http_error(e)
        return _dump(result)

    return app
