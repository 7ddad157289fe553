from __future__ import annotations

import logging
import os
import re
from pathlib import Path
from typing import Any, Sequence

from vectorsync.core.config import read_bool_env, read_float_env
from vectorsync.core.errors import PersistenceError

logger = logging.getLogger(__name__)

_COLLECTION_SAFE = re.compile(r"[^A-Za-z0-9_-]+")


class QdrantVectorStore:
    """Vector storage adapter backed by one Qdrant collection per knowledge pool.

    Point ids are the embedding row ids; the payload mirrors the row key plus the
    run that wrote it, which is what scoped deletes filter on.
    """

    def __init__(
        self,
        *,
        storage_path: Path,
        collection_prefix: str | None = None,
        url: str | None = None,
        api_key: str | None = None,
        prefer_grpc: bool | None = None,
        timeout_seconds: float | None = None,
    ) -> None:
        self.storage_path = storage_path
        self.server_url = self._resolve_server_url(url)
        self.collection_prefix = collection_prefix or os.getenv("VECTORSYNC_QDRANT_PREFIX") or "vectorsync"
        self.api_key = api_key or os.getenv("VECTORSYNC_QDRANT_API_KEY")
        self.prefer_grpc = (
            prefer_grpc
            if prefer_grpc is not None
            else read_bool_env("VECTORSYNC_QDRANT_PREFER_GRPC", False)
        )
        self.timeout_seconds = (
            timeout_seconds
            if timeout_seconds is not None
            else read_float_env("VECTORSYNC_QDRANT_TIMEOUT_SECONDS", 10.0)
        )
        self.backend_name = "qdrant-server" if self.server_url else "qdrant-local"
        self._client = None
        self._models = None
        self._ready_collections: set[str] = set()

    def collection_name(self, pool: str) -> str:
        safe_pool = _COLLECTION_SAFE.sub("_", pool).strip("_") or "pool"
        return f"{self.collection_prefix}_{safe_pool}"

    def ensure_collection(self, pool: str, vector_size: int) -> None:
        if vector_size <= 0:
            raise ValueError("vector_size must be positive")
        name = self.collection_name(pool)
        if name in self._ready_collections:
            return
        client, models = self._client_and_models()

        if not self._collection_exists(client, name):
            client.create_collection(
                collection_name=name,
                vectors_config=models.VectorParams(size=vector_size, distance=models.Distance.COSINE),
            )
            self._ready_collections.add(name)
            return

        info = client.get_collection(collection_name=name)
        params = getattr(getattr(info, "config", None), "params", None)
        configured_dim = getattr(getattr(params, "vectors", None), "size", None)
        if configured_dim is not None and int(configured_dim) != int(vector_size):
            raise PersistenceError(
                f"Qdrant collection '{name}' has vector size {configured_dim}, "
                f"but the provider produced {vector_size}."
            )
        self._ready_collections.add(name)

    def store_embedding(
        self,
        pool: str,
        collection: str,
        doc_id: str,
        record_id: str,
        vector: Sequence[float],
        *,
        run_id: str | None = None,
        payload: dict[str, Any] | None = None,
    ) -> None:
        values = [float(x) for x in vector]
        if not values:
            raise PersistenceError(f"Refusing to store an empty vector for {collection}:{doc_id}.")
        self.ensure_collection(pool, len(values))
        client, models = self._client_and_models()
        point_payload = dict(payload or {})
        point_payload.update(
            {
                "pool": pool,
                "source_collection": collection,
                "doc_id": str(doc_id),
                "bulk_run_id": run_id,
            }
        )
        client.upsert(
            collection_name=self.collection_name(pool),
            wait=True,
            points=[models.PointStruct(id=record_id, vector=values, payload=point_payload)],
        )

    def delete_embeddings(
        self,
        pool: str,
        collection: str,
        doc_id: str,
        *,
        exclude_run_id: str | None = None,
    ) -> None:
        client, models = self._client_and_models()
        name = self.collection_name(pool)
        if not self._collection_exists(client, name):
            return
        must = [
            models.FieldCondition(key="source_collection", match=models.MatchValue(value=collection)),
            models.FieldCondition(key="doc_id", match=models.MatchValue(value=str(doc_id))),
        ]
        must_not = []
        if exclude_run_id:
            must_not.append(
                models.FieldCondition(key="bulk_run_id", match=models.MatchValue(value=exclude_run_id))
            )
        client.delete(
            collection_name=name,
            points_selector=models.FilterSelector(filter=models.Filter(must=must, must_not=must_not or None)),
            wait=True,
        )

    def search(
        self,
        pool: str,
        query_vector: Sequence[float],
        limit: int,
        filter: dict[str, Any] | None = None,
    ) -> list[dict[str, Any]]:
        client, models = self._client_and_models()
        name = self.collection_name(pool)
        if not self._collection_exists(client, name):
            return []
        clauses = [
            models.FieldCondition(key=key, match=models.MatchValue(value=value))
            for key, value in (filter or {}).items()
            if value is not None
        ]
        query_filter = models.Filter(must=clauses) if clauses else None
        if hasattr(client, "query_points"):
            response = client.query_points(
                collection_name=name,
                query=[float(x) for x in query_vector],
                query_filter=query_filter,
                with_payload=True,
                with_vectors=False,
                limit=max(1, limit),
            )
            hits = list(getattr(response, "points", []) or [])
        else:
            hits = client.search(
                collection_name=name,
                query_vector=[float(x) for x in query_vector],
                query_filter=query_filter,
                with_payload=True,
                with_vectors=False,
                limit=max(1, limit),
            )
        return [
            {
                "id": str(getattr(hit, "id", "")),
                "score": float(getattr(hit, "score", 0.0)),
                "payload": dict(getattr(hit, "payload", {}) or {}),
            }
            for hit in hits
        ]

    def count_points(self, pool: str) -> int:
        client, _ = self._client_and_models()
        name = self.collection_name(pool)
        if not self._collection_exists(client, name):
            return 0
        result = client.count(collection_name=name, exact=True)
        return int(getattr(result, "count", 0))

    @staticmethod
    def _collection_exists(client, name: str) -> bool:
        try:
            return bool(client.collection_exists(collection_name=name))
        except Exception as exc:
            raise PersistenceError(f"Could not check Qdrant collection '{name}': {exc}") from exc

    def _client_and_models(self):
        if self._client is not None and self._models is not None:
            return self._client, self._models

        try:
            from qdrant_client import QdrantClient
            from qdrant_client.http import models
        except ImportError as exc:  # pragma: no cover - dependency guard
            raise RuntimeError("Qdrant dependency is missing. Install with `pip install qdrant-client`.") from exc

        if self.server_url:
            self._client = QdrantClient(
                url=self.server_url,
                api_key=self.api_key,
                prefer_grpc=self.prefer_grpc,
                timeout=self.timeout_seconds,
            )
        else:
            self._client = self._open_local_client(QdrantClient, self.storage_path)
        logger.debug("Using %s vector backend at %s", self.backend_name, self.server_url or self.storage_path)
        self._models = models
        return self._client, self._models

    def _open_local_client(self, qdrant_client_cls: type, base_path: Path) -> object:
        target = base_path.expanduser().resolve()
        target.mkdir(parents=True, exist_ok=True)
        try:
            return qdrant_client_cls(path=str(target))
        except Exception as exc:
            if not self._is_storage_lock_error(exc):
                raise
            raise PersistenceError(
                f"Local Qdrant storage {target} is locked by another process. "
                "Run the queue worker inside `vectorsync web`, or point every process "
                "at a Qdrant server with VECTORSYNC_QDRANT_URL."
            ) from exc

    @staticmethod
    def _is_storage_lock_error(exc: Exception) -> bool:
        return "already accessed by another instance of qdrant client" in str(exc).lower()

    def _resolve_server_url(self, explicit_url: str | None) -> str | None:
        if explicit_url and explicit_url.strip():
            return explicit_url.strip()

        env_url = os.getenv("VECTORSYNC_QDRANT_URL")
        if env_url and env_url.strip():
            return env_url.strip()

        config_path = self.storage_path.parent / "qdrant_url.txt"
        if config_path.exists():
            value = config_path.read_text(encoding="utf-8").strip()
            if value:
                return value
        return None
