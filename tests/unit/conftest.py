from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable

import pytest

from vectorsync.application.services.bulk_embed_service import BulkEmbedService, build_bulk_embed_service
from vectorsync.core.config import AppPaths, BulkSettings
from vectorsync.domain.models.knowledge_pool import CollectionSource, KnowledgePool
from vectorsync.domain.models.provider import BatchSubmission, BulkEmbeddingInput, BulkEmbeddingOutput, PollResult
from vectorsync.infrastructure.db.repos.batch_repo import BatchRepo
from vectorsync.infrastructure.db.repos.chunk_metadata_repo import ChunkMetadataRepo
from vectorsync.infrastructure.db.repos.document_repo import DocumentRepo
from vectorsync.infrastructure.db.repos.embedding_repo import EmbeddingRepo
from vectorsync.infrastructure.db.repos.run_repo import RunRepo
from vectorsync.infrastructure.db.sqlite import initialize_schema
from vectorsync.infrastructure.providers.buffered import BufferedBatchProvider


class FakeEmbedder:
    model_name = "fake-model"

    def __init__(self) -> None:
        self.calls: list[list[str]] = []

    def embedding_dim(self) -> int:
        return 3

    def embed_texts(self, texts: list[str]) -> list[list[float]]:
        self.calls.append(list(texts))
        out: list[list[float]] = []
        for text in texts:
            length = float(len(text))
            vowels = float(sum(1 for c in text.lower() if c in {"a", "e", "i", "o", "u"}))
            out.append([length, vowels, 1.0])
        return out


class FakeVectorStore:
    def __init__(self) -> None:
        self.points: dict[tuple[str, str], dict[str, Any]] = {}
        self.fail_on_store = False
        self.store_calls = 0
        self.delete_calls: list[tuple[str, str, str, str | None]] = []

    def store_embedding(self, pool, collection, doc_id, record_id, vector, *, run_id=None, payload=None) -> None:
        self.store_calls += 1
        if self.fail_on_store:
            raise RuntimeError("vector column write failed")
        point_payload = dict(payload or {})
        point_payload.update({"source_collection": collection, "doc_id": doc_id, "bulk_run_id": run_id})
        self.points[(pool, record_id)] = {"vector": list(vector), "payload": point_payload}

    def delete_embeddings(self, pool, collection, doc_id, *, exclude_run_id=None) -> None:
        self.delete_calls.append((pool, collection, doc_id, exclude_run_id))
        for key in list(self.points):
            payload = self.points[key]["payload"]
            if key[0] != pool or payload["source_collection"] != collection or payload["doc_id"] != doc_id:
                continue
            if exclude_run_id and payload["bulk_run_id"] == exclude_run_id:
                continue
            del self.points[key]

    def search(self, pool, query_vector, limit, filter=None) -> list[dict[str, Any]]:
        scored = []
        for (point_pool, point_id), point in self.points.items():
            if point_pool != pool:
                continue
            if any(point["payload"].get(k) != v for k, v in (filter or {}).items()):
                continue
            score = sum(float(a) * float(b) for a, b in zip(query_vector, point["vector"], strict=True))
            scored.append({"id": point_id, "score": score, "payload": point["payload"]})
        scored.sort(key=lambda row: row["score"], reverse=True)
        return scored[:limit]

    def count_points(self, pool: str) -> int:
        return sum(1 for point_pool, _ in self.points if point_pool == pool)


class ScriptedProvider(BufferedBatchProvider):
    """Flush-after-N provider whose poll outcomes are scripted per submitted batch.

    ``statuses[n]`` is the sequence of statuses reported for the n-th submitted
    batch (the last one repeats); outputs are streamed when it reports succeeded.
    ``partial_outputs[n]`` outputs of the n-th batch are streamed before it
    reports failed.
    """

    def __init__(
        self,
        *,
        batch_size: int = 100,
        statuses: dict[int, list[str]] | None = None,
        chunk_errors: set[str] | None = None,
        before_complete: Callable[[str], None] | None = None,
        partial_outputs: dict[int, int] | None = None,
    ) -> None:
        super().__init__(batch_size=batch_size)
        self.embedder = FakeEmbedder()
        self.statuses = statuses or {}
        self.chunk_errors = chunk_errors or set()
        self.before_complete = before_complete
        self.partial_outputs = partial_outputs or {}
        self.submitted: list[tuple[str, list[BulkEmbeddingInput]]] = []
        self.polls: dict[str, int] = {}
        self.errors: list[tuple[list[str], str, list]] = []
        self.released: list[str] = []

    def prepare_batch(self, inputs: list[BulkEmbeddingInput]) -> BatchSubmission:
        provider_batch_id = f"fake-{len(self.submitted)}"
        self.submitted.append((provider_batch_id, list(inputs)))
        return BatchSubmission(provider_batch_id=provider_batch_id)

    def poll_or_complete(self, provider_batch_id, on_chunk) -> PollResult:
        number = int(provider_batch_id.split("-")[1])
        script = self.statuses.get(number, ["succeeded"])
        count = self.polls.get(provider_batch_id, 0)
        self.polls[provider_batch_id] = count + 1
        status = script[min(count, len(script) - 1)]
        if status == "failed":
            self._stream(provider_batch_id, on_chunk, limit=self.partial_outputs.get(number, 0))
            return PollResult(status="failed", error=f"provider rejected {provider_batch_id}")
        if status != "succeeded":
            return PollResult(status=status)
        if self.before_complete is not None:
            self.before_complete(provider_batch_id)
        self._stream(provider_batch_id, on_chunk)
        return PollResult(status="succeeded")

    def _stream(self, provider_batch_id: str, on_chunk, *, limit: int | None = None) -> None:
        inputs = dict(self.submitted)[provider_batch_id][:limit]
        if not inputs:
            return
        vectors = self.embedder.embed_texts([item.text for item in inputs])
        for item, vector in zip(inputs, vectors):
            if item.id in self.chunk_errors:
                on_chunk(BulkEmbeddingOutput(id=item.id, error="model refused input"))
            else:
                on_chunk(BulkEmbeddingOutput(id=item.id, embedding=vector))

    def on_error(self, provider_batch_ids, error, failed_chunk_data) -> None:
        self.errors.append((list(provider_batch_ids), error, list(failed_chunk_data or [])))

    def release(self, provider_batch_ids) -> None:
        self.released.extend(provider_batch_ids)


def title_chunks(doc: dict[str, Any]) -> list[dict[str, Any]]:
    return [{"text": doc["title"]}]


def make_pool(
    provider,
    *,
    name: str = "default",
    version: str = "v1",
    to_chunks=title_chunks,
    should_embed=None,
) -> KnowledgePool:
    return KnowledgePool(
        name=name,
        embedding_version=version,
        collections={"posts": CollectionSource(to_chunks=to_chunks, should_embed=should_embed)},
        provider=provider,
        query_embedder=getattr(provider, "embedder", None),
    )


@dataclass(slots=True)
class BulkEnv:
    paths: AppPaths
    service: BulkEmbedService
    store: FakeVectorStore
    documents: DocumentRepo
    embeddings: EmbeddingRepo
    runs: RunRepo
    batches: BatchRepo
    metadata: ChunkMetadataRepo

    def drain(self, max_tasks: int = 200) -> int:
        return self.service.task_queue.run_pending(max_tasks=max_tasks)

    def run_to_completion(self, pool_name: str = "default") -> str:
        result = self.service.start_bulk_embed(pool_name)
        assert not result.conflict, result.message
        self.drain()
        return result.run_id


def make_paths(root: Path) -> AppPaths:
    state_dir = root / ".vectorsync"
    return AppPaths(
        project_root=root,
        state_dir=state_dir,
        db_path=state_dir / "vectorsync.db",
        vector_dir=state_dir / "vector",
        qdrant_dir=state_dir / "vector" / "qdrant",
        pools_path=state_dir / "pools.toml",
    )


TEST_SETTINGS = BulkSettings(
    poll_interval_seconds=0.0,
    task_max_attempts=3,
    prepare_queue_name="default",
    poll_queue_name="default",
    document_page_size=2,
)


@pytest.fixture
def fake_embedder() -> FakeEmbedder:
    return FakeEmbedder()


@pytest.fixture
def vector_store() -> FakeVectorStore:
    return FakeVectorStore()


@pytest.fixture
def scripted_provider() -> Callable[..., ScriptedProvider]:
    return ScriptedProvider


@pytest.fixture
def pool_factory() -> Callable[..., KnowledgePool]:
    return make_pool


@pytest.fixture
def bulk_env(tmp_path: Path, vector_store: FakeVectorStore) -> Callable[..., BulkEnv]:
    def _make(*pools: KnowledgePool) -> BulkEnv:
        paths = make_paths(tmp_path)
        initialize_schema(paths.db_path)
        service = build_bulk_embed_service(
            paths,
            {pool.name: pool for pool in pools},
            vector_store=vector_store,
            settings=TEST_SETTINGS,
        )
        return BulkEnv(
            paths=paths,
            service=service,
            store=vector_store,
            documents=DocumentRepo(paths.db_path),
            embeddings=EmbeddingRepo(paths.db_path),
            runs=RunRepo(paths.db_path),
            batches=BatchRepo(paths.db_path),
            metadata=ChunkMetadataRepo(paths.db_path),
        )

    return _make
