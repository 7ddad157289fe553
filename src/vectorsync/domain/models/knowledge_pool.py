from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable

from vectorsync.domain.models.provider import BulkEmbeddingProvider

ToChunksFn = Callable[[dict[str, Any]], list[dict[str, Any]]]
ShouldEmbedFn = Callable[[dict[str, Any]], bool]


@dataclass(slots=True)
class CollectionSource:
    to_chunks: ToChunksFn
    should_embed: ShouldEmbedFn | None = None


@dataclass(slots=True)
class KnowledgePool:
    name: str
    embedding_version: str
    collections: dict[str, CollectionSource] = field(default_factory=dict)
    provider: BulkEmbeddingProvider | None = None
    # Anything with ``embed_texts(list[str]) -> list[list[float]]``; used for search queries.
    query_embedder: Any = None
