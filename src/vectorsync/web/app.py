from __future__ import annotations

import logging
from dataclasses import asdict, is_dataclass
from typing import Any

from fastapi import FastAPI, HTTPException, Query
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from vectorsync.application.services.bulk_embed_service import BulkEmbedService, build_bulk_embed_service
from vectorsync.application.services.project_service import ProjectService
from vectorsync.application.services.search_service import VectorSearchService
from vectorsync.core.config import AppPaths
from vectorsync.core.errors import (
    BatchNotFoundError,
    ConfigurationError,
    RunConflictError,
    RunNotFoundError,
    ValidationError,
    VectorSyncError,
)
from vectorsync.domain.models.knowledge_pool import KnowledgePool
from vectorsync.infrastructure.db.repos.document_repo import DocumentRepo
from vectorsync.infrastructure.db.repos.embedding_repo import EmbeddingRepo
from vectorsync.infrastructure.pools import load_pools

logger = logging.getLogger(__name__)


class BulkEmbedRequest(BaseModel):
    knowledge_pool: str


class RetryBatchRequest(BaseModel):
    batch_id: str


class DocumentRequest(BaseModel):
    data: dict[str, Any]


class VectorSearchRequest(BaseModel):
    knowledge_pool: str
    query: str
    limit: int = 10
    where: dict[str, Any] = Field(default_factory=dict)


def _jsonable(value: Any) -> Any:
    if is_dataclass(value):
        return asdict(value)
    if isinstance(value, list):
        return [_jsonable(v) for v in value]
    if isinstance(value, dict):
        return {str(k): _jsonable(v) for k, v in value.items()}
    return value


def _http_error(exc: VectorSyncError) -> HTTPException:
    if isinstance(exc, (RunNotFoundError, BatchNotFoundError)):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, RunConflictError):
        return HTTPException(status_code=409, detail=str(exc))
    if isinstance(exc, (ConfigurationError, ValidationError)):
        return HTTPException(status_code=400, detail=str(exc))
    return HTTPException(status_code=500, detail=str(exc))


def create_app(
    paths: AppPaths,
    pools: dict[str, KnowledgePool] | None = None,
    *,
    vector_store: Any = None,
    start_worker: bool = False,
) -> FastAPI:
    app = FastAPI(title="vectorsync", version="0.1.0")

    project_service = ProjectService(paths)
    project_service.init_project()
    resolved_pools = pools if pools is not None else load_pools(paths)
    if vector_store is None:
        from vectorsync.infrastructure.vector.qdrant_store import QdrantVectorStore

        vector_store = QdrantVectorStore(storage_path=paths.qdrant_dir)

    bulk_service = build_bulk_embed_service(paths, resolved_pools, vector_store=vector_store)
    app.state.bulk_service = bulk_service
    if start_worker:
        bulk_service.task_queue.start()

    @app.on_event("shutdown")
    def _shutdown_task_queue() -> None:
        bulk_service.task_queue.shutdown()

    def get_bulk_service() -> BulkEmbedService:
        return bulk_service

    def get_search_service() -> VectorSearchService:
        return VectorSearchService(
            pools=resolved_pools,
            embedding_repo=EmbeddingRepo(paths.db_path),
            vector_store=vector_store,
        )

    def run_payload(run_id: str) -> dict[str, Any]:
        view = get_bulk_service().get_run_status(run_id)
        return {
            "run": _jsonable(view.run),
            "batches": _jsonable(view.batches),
            "pending_metadata": view.pending_metadata,
        }

    @app.post("/api/init")
    def api_init() -> dict[str, Any]:
        result = project_service.init_project()
        return {
            "ok": True,
            "db_path": str(result.db_path),
            "paths_created": [str(p) for p in result.paths_created],
        }

    @app.get("/api/pools")
    def api_pools() -> dict[str, Any]:
        return {
            "pools": [
                {
                    "name": pool.name,
                    "embedding_version": pool.embedding_version,
                    "collections": sorted(pool.collections),
                    "bulk": pool.provider is not None,
                }
                for pool in resolved_pools.values()
            ]
        }

    @app.put("/api/documents/{collection}/{doc_id}")
    def api_put_document(collection: str, doc_id: str, req: DocumentRequest) -> dict[str, Any]:
        document = DocumentRepo(paths.db_path).upsert(collection, doc_id, req.data)
        return {"ok": True, "document": _jsonable(document)}

    @app.delete("/api/documents/{collection}/{doc_id}")
    def api_delete_document(collection: str, doc_id: str) -> dict[str, Any]:
        if not DocumentRepo(paths.db_path).delete(collection, doc_id):
            raise HTTPException(status_code=404, detail=f"Document not found: {collection}:{doc_id}")
        return {"ok": True}

    @app.post("/api/bulk-embed", status_code=202)
    def api_bulk_embed(req: BulkEmbedRequest) -> Any:
        try:
            result = get_bulk_service().start_bulk_embed(req.knowledge_pool)
        except VectorSyncError as exc:
            raise _http_error(exc) from exc
        if result.conflict:
            return JSONResponse(
                status_code=409,
                content={
                    "error": result.message,
                    "run_id": result.run_id,
                    "status": result.status,
                    "conflict": True,
                },
            )
        return {"run_id": result.run_id, "status": result.status}

    @app.post("/api/retry-failed-batch", status_code=202)
    def api_retry_failed_batch(req: RetryBatchRequest) -> dict[str, Any]:
        if not req.batch_id.strip():
            raise HTTPException(status_code=400, detail="batch_id is required")
        try:
            result = get_bulk_service().retry_failed_batch(req.batch_id.strip())
        except VectorSyncError as exc:
            raise _http_error(exc) from exc
        return _jsonable(result)

    @app.get("/api/runs")
    def api_runs(
        pool: str | None = Query(default=None),
        limit: int = Query(default=50, ge=1, le=1000),
    ) -> dict[str, Any]:
        return {"runs": _jsonable(get_bulk_service().list_runs(pool=pool, limit=limit))}

    @app.get("/api/runs/{run_id}")
    def api_run(run_id: str) -> dict[str, Any]:
        try:
            return run_payload(run_id)
        except VectorSyncError as exc:
            raise _http_error(exc) from exc

    @app.get("/api/runs/{run_id}/failed-batches")
    def api_run_failed_batches(run_id: str) -> dict[str, Any]:
        try:
            batches = get_bulk_service().list_failed_batches(run_id)
        except VectorSyncError as exc:
            raise _http_error(exc) from exc
        return {"run_id": run_id, "batches": _jsonable(batches)}

    @app.post("/api/runs/{run_id}/cancel")
    def api_cancel_run(run_id: str) -> dict[str, Any]:
        try:
            run = get_bulk_service().cancel_run(run_id)
        except VectorSyncError as exc:
            raise _http_error(exc) from exc
        return {"run": _jsonable(run)}

    @app.post("/api/vector-search")
    def api_vector_search(req: VectorSearchRequest) -> dict[str, Any]:
        try:
            hits = get_search_service().search(req.knowledge_pool, req.query, limit=req.limit, where=req.where)
        except VectorSyncError as exc:
            raise _http_error(exc) from exc
        return {"query": req.query, "results": _jsonable(hits)}

    return app
