from __future__ import annotations

import logging

from vectorsync.core.ids import new_uuid
from vectorsync.domain.models.bulk_embedding import STATUS_FAILED, STATUS_QUEUED, STATUS_SUCCEEDED
from vectorsync.domain.models.provider import (
    BatchSubmission,
    BulkEmbeddingInput,
    BulkEmbeddingOutput,
    OnChunk,
    PollResult,
)
from vectorsync.infrastructure.providers.batch_store import BatchStore, InMemoryBatchStore
from vectorsync.infrastructure.providers.buffered import BufferedBatchProvider
from vectorsync.infrastructure.vector.embeddings import embed_in_slices

logger = logging.getLogger(__name__)


class LocalEmbedderProvider(BufferedBatchProvider):
    """Bulk provider that embeds synchronously with a local embedder.

    ``prepare_batch`` only records the inputs; the work happens on the first
    ``poll_or_complete``. Stored inputs are kept until ``release`` so a poll
    repeated after a crash can replay the same outputs.
    """

    def __init__(
        self,
        *,
        embedder,
        batch_size: int = 64,
        store: BatchStore | None = None,
        encode_batch_size: int | None = None,
    ) -> None:
        super().__init__(batch_size=batch_size)
        self.embedder = embedder
        self.store = store if store is not None else InMemoryBatchStore()
        self.encode_batch_size = max(1, encode_batch_size or batch_size)

    def prepare_batch(self, inputs: list[BulkEmbeddingInput]) -> BatchSubmission:
        provider_batch_id = f"local-{new_uuid()}"
        self.store.put(provider_batch_id, inputs)
        logger.debug("Staged local batch %s with %s input(s)", provider_batch_id, len(inputs))
        return BatchSubmission(provider_batch_id=provider_batch_id, status=STATUS_QUEUED, input_count=len(inputs))

    def poll_or_complete(self, provider_batch_id: str, on_chunk: OnChunk) -> PollResult:
        inputs = self.store.get(provider_batch_id)
        if inputs is None:
            return PollResult(status=STATUS_FAILED, error=f"Unknown local batch: {provider_batch_id}")

        embeddable = [item for item in inputs if item.text.strip()]
        try:
            vectors = self._embed([item.text for item in embeddable])
        except Exception as exc:
            logger.warning("Local embedding failed for batch %s: %s", provider_batch_id, exc)
            return PollResult(status=STATUS_FAILED, error=str(exc))

        by_id = {item.id: vector for item, vector in zip(embeddable, vectors)}
        for item in inputs:
            vector = by_id.get(item.id)
            if vector is None:
                on_chunk(BulkEmbeddingOutput(id=item.id, error="Empty chunk text"))
            else:
                on_chunk(BulkEmbeddingOutput(id=item.id, embedding=vector))
        return PollResult(status=STATUS_SUCCEEDED)

    def release(self, provider_batch_ids: list[str]) -> None:
        for provider_batch_id in provider_batch_ids:
            self.store.delete(provider_batch_id)

    def on_error(self, provider_batch_ids: list[str], error: str, failed_chunk_data) -> None:
        logger.warning(
            "Bulk embedding reported failure for %s local batch(es): %s",
            len(provider_batch_ids),
            error,
        )

    def _embed(self, texts: list[str]) -> list[list[float]]:
        return embed_in_slices(self.embedder, texts, self.encode_batch_size)
