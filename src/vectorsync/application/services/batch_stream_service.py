from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Iterator

from vectorsync.application.services.eligibility_service import EligibilityScanner
from vectorsync.core.errors import ChunkDataError, ConfigurationError
from vectorsync.core.ids import chunk_input_id, new_uuid
from vectorsync.core.time import now_utc_iso
from vectorsync.domain.models.bulk_embedding import (
    STATUS_QUEUED,
    BulkEmbeddingBatch,
    BulkEmbeddingRun,
    ChunkMetadata,
)
from vectorsync.domain.models.knowledge_pool import KnowledgePool
from vectorsync.domain.models.provider import BatchSubmission, BulkEmbeddingInput, BulkEmbeddingProvider
from vectorsync.infrastructure.db.repos.batch_repo import BatchRepo

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class PendingChunk:
    collection: str
    doc_id: str
    chunk_index: int
    text: str
    extension_fields: dict[str, Any] = field(default_factory=dict)

    @property
    def input_id(self) -> str:
        return chunk_input_id(self.collection, self.doc_id, self.chunk_index)

    def as_input(self) -> BulkEmbeddingInput:
        return BulkEmbeddingInput(id=self.input_id, text=self.text)


@dataclass(slots=True)
class StreamSummary:
    inputs: int
    total_batches: int
    batch_ids: list[str]


def validate_chunk_data(entries: Any, *, collection: str, doc_id: str) -> list[dict[str, Any]]:
    """Check converter output: a list of mappings, each carrying a string ``text``."""
    if not isinstance(entries, (list, tuple)):
        raise ChunkDataError(
            f"Converter for collection {collection!r} must return a list of entries with a required 'text' string"
        )
    invalid = [
        idx
        for idx, entry in enumerate(entries)
        if not isinstance(entry, dict) or not isinstance(entry.get("text"), str)
    ]
    if invalid:
        noun = "entry" if len(invalid) == 1 else "entries"
        raise ChunkDataError(
            f"Converter returned {len(invalid)} invalid {noun} for document {doc_id} in collection "
            f"{collection!r}. Each entry must be a mapping with a 'text' string. "
            f"Invalid indices: {', '.join(str(idx) for idx in invalid)}"
        )
    return list(entries)


class ChunkBatchStreamer:
    """Turns eligible documents into provider batches without holding the corpus in memory.

    ``count_chunks`` walks the eligible set once to validate converter output and
    learn the total; ``stream`` walks it again, offering each chunk to the
    provider's ``add_chunk`` with ``is_last_chunk`` set on the final one, and
    persists a batch plus its chunk metadata at every flush.
    """

    def __init__(self, *, scanner: EligibilityScanner, batch_repo: BatchRepo) -> None:
        self.scanner = scanner
        self.batch_repo = batch_repo

    def iter_chunks(self, pool: KnowledgePool, baseline: BulkEmbeddingRun | None) -> Iterator[PendingChunk]:
        for eligible in self.scanner.iter_eligible(pool, baseline):
            source = pool.collections[eligible.collection]
            document = eligible.document
            entries = validate_chunk_data(
                source.to_chunks(document.to_payload()),
                collection=eligible.collection,
                doc_id=document.id,
            )
            for chunk_index, entry in enumerate(entries):
                yield PendingChunk(
                    collection=eligible.collection,
                    doc_id=document.id,
                    chunk_index=chunk_index,
                    text=entry["text"],
                    extension_fields={key: value for key, value in entry.items() if key != "text"},
                )

    def count_chunks(self, pool: KnowledgePool, baseline: BulkEmbeddingRun | None) -> int:
        return sum(1 for _ in self.iter_chunks(pool, baseline))

    def stream(
        self,
        run: BulkEmbeddingRun,
        pool: KnowledgePool,
        provider: BulkEmbeddingProvider,
        baseline: BulkEmbeddingRun | None,
        *,
        total_chunks: int,
    ) -> StreamSummary:
        reset = getattr(provider, "reset", None)
        if callable(reset):
            reset()

        pending: list[PendingChunk] = []
        batch_ids: list[str] = []
        offered = 0
        for chunk in self.iter_chunks(pool, baseline):
            offered += 1
            pending.append(chunk)
            if offered > total_chunks:
                # Documents changed between passes; leftovers go out in the trailing batch.
                continue
            is_last = offered == total_chunks
            submission = provider.add_chunk(chunk.as_input(), is_last_chunk=is_last)
            if submission is None:
                continue
            covered = self._covered_chunks(pending, submission, is_last=is_last)
            if not covered:
                continue
            batch_ids.append(self._persist_batch(run, covered, submission, batch_index=len(batch_ids)))
            pending = pending[len(covered):]

        if offered != total_chunks:
            logger.warning(
                "Run %s: converters yielded %s chunk(s) on the second pass, expected %s",
                run.id,
                offered,
                total_chunks,
            )
        if pending:
            submission = provider.prepare_batch([chunk.as_input() for chunk in pending])
            batch_ids.append(self._persist_batch(run, pending, submission, batch_index=len(batch_ids)))

        return StreamSummary(inputs=offered, total_batches=len(batch_ids), batch_ids=batch_ids)

    @staticmethod
    def _covered_chunks(
        pending: list[PendingChunk],
        submission: BatchSubmission,
        *,
        is_last: bool,
    ) -> list[PendingChunk]:
        if is_last:
            if submission.input_count is None:
                return list(pending)
            return pending[: max(0, min(submission.input_count, len(pending)))]
        covered = pending[:-1]
        if not covered:
            raise ConfigurationError(
                "Provider flushed a batch before any chunk was buffered; add_chunk must only "
                "submit previously offered chunks"
            )
        return covered

    def _persist_batch(
        self,
        run: BulkEmbeddingRun,
        chunks: list[PendingChunk],
        submission: BatchSubmission,
        *,
        batch_index: int,
    ) -> str:
        batch_id = new_uuid()
        now = now_utc_iso()
        batch = BulkEmbeddingBatch(
            id=batch_id,
            run_id=run.id,
            batch_index=batch_index,
            provider_batch_id=submission.provider_batch_id,
            status=STATUS_QUEUED,
            input_count=len(chunks),
            succeeded_count=0,
            failed_count=0,
            error=None,
            retry_count=0,
            submitted_at=now,
            completed_at=None,
        )
        metadata = [
            ChunkMetadata(
                id=new_uuid(),
                run_id=run.id,
                batch_id=batch_id,
                input_id=chunk.input_id,
                text=chunk.text,
                source_collection=chunk.collection,
                doc_id=chunk.doc_id,
                chunk_index=chunk.chunk_index,
                embedding_version=run.embedding_version,
                extension_fields=chunk.extension_fields,
                created_at=now,
            )
            for chunk in chunks
        ]
        self.batch_repo.insert_batch(batch, metadata=metadata)
        logger.info(
            "Run %s: batch %s (%s) submitted with %s chunk(s)",
            run.id,
            batch_index,
            submission.provider_batch_id,
            len(chunks),
        )
        return batch_id
