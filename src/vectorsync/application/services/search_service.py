from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from vectorsync.core.errors import ConfigurationError, ValidationError
from vectorsync.domain.models.knowledge_pool import KnowledgePool
from vectorsync.infrastructure.db.repos.embedding_repo import EmbeddingRepo

_ROW_FILTER_KEYS = {"source_collection", "doc_id", "chunk_index", "embedding_version", "bulk_run_id"}


@dataclass(slots=True)
class SearchHit:
    score: float
    record_id: str
    source_collection: str
    doc_id: str
    chunk_index: int
    chunk_text: str
    embedding_version: str
    extension_fields: dict[str, Any] = field(default_factory=dict)


class VectorSearchService:
    def __init__(self, *, pools: dict[str, KnowledgePool], embedding_repo: EmbeddingRepo, vector_store) -> None:
        self.pools = pools
        self.embedding_repo = embedding_repo
        self.vector_store = vector_store

    def search(
        self,
        pool_name: str,
        query: str,
        *,
        limit: int = 10,
        where: dict[str, Any] | None = None,
    ) -> list[SearchHit]:
        if not query or not query.strip():
            raise ValidationError("Search query must not be empty")
        pool = self.pools.get(pool_name)
        if pool is None:
            raise ConfigurationError(f"Unknown knowledge pool {pool_name!r}")
        if pool.query_embedder is None:
            raise ConfigurationError(f"Knowledge pool {pool_name!r} has no query embedder")

        safe_limit = max(1, int(limit))
        where = dict(where or {})
        store_filter = {key: value for key, value in where.items() if key in _ROW_FILTER_KEYS}
        query_vector = pool.query_embedder.embed_texts([query.strip()])[0]
        # Over-fetch so extension-field filters applied below can still fill the page.
        raw_hits = self.vector_store.search(pool.name, query_vector, safe_limit * 4 if where else safe_limit, store_filter)

        scores = {str(hit["id"]): float(hit.get("score", 0.0)) for hit in raw_hits}
        records = self.embedding_repo.get_by_ids(list(scores))
        hits: list[SearchHit] = []
        for record in records:
            if not _matches(record, where):
                continue
            hits.append(
                SearchHit(
                    score=scores[record.id],
                    record_id=record.id,
                    source_collection=record.source_collection,
                    doc_id=record.doc_id,
                    chunk_index=record.chunk_index,
                    chunk_text=record.chunk_text,
                    embedding_version=record.embedding_version,
                    extension_fields=dict(record.extension_fields),
                )
            )
        hits.sort(key=lambda hit: hit.score, reverse=True)
        return hits[:safe_limit]


def _matches(record, where: dict[str, Any]) -> bool:
    for key, expected in where.items():
        if key in _ROW_FILTER_KEYS:
            actual = getattr(record, key)
        else:
            actual = record.extension_fields.get(key)
        if actual != expected:
            return False
    return True
